"""Simulated firmware update: the staged workflow and its launch gate."""

from edgetwin.update.coordinator import UpdateCoordinator
from edgetwin.update.workflow import UpdateTask, UpdateWorkflow

__all__ = ["UpdateCoordinator", "UpdateTask", "UpdateWorkflow"]
