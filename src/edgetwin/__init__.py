"""edgetwin - Async device twin synchronization agent for simulated IoT edge devices."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("edgetwin")
except PackageNotFoundError:
    __version__ = "0+local"
from edgetwin._mqtt import MqttTransport
from edgetwin.commands import CommandDispatcher
from edgetwin.config import AgentConfig
from edgetwin.engine import SyncEngine
from edgetwin.exceptions import (
    ConfigError,
    EdgeTwinError,
    MalformedInboundMessage,
    TransportError,
    UpdateAbortedError,
)
from edgetwin.models import (
    CommandInvocation,
    CommandResponse,
    InboundMessage,
    UpdatePolicy,
    UpdateStage,
)
from edgetwin.state import StateStore
from edgetwin.update import UpdateCoordinator, UpdateTask, UpdateWorkflow

__all__ = [
    "__version__",
    "AgentConfig",
    "CommandDispatcher",
    "CommandInvocation",
    "CommandResponse",
    "ConfigError",
    "EdgeTwinError",
    "InboundMessage",
    "MalformedInboundMessage",
    "MqttTransport",
    "StateStore",
    "SyncEngine",
    "TransportError",
    "UpdateAbortedError",
    "UpdateCoordinator",
    "UpdatePolicy",
    "UpdateStage",
    "UpdateTask",
    "UpdateWorkflow",
]
