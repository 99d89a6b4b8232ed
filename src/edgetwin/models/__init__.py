"""Typed models exchanged between the transport and the engine."""

from edgetwin.models.command import CommandInvocation, CommandResponse
from edgetwin.models.message import InboundMessage
from edgetwin.models.update import (
    FIRMWARE_UPDATE_STATUS_KEY,
    FIRMWARE_VERSION_KEY,
    NO_UPDATE_STATUS,
    UpdatePolicy,
    UpdateStage,
)

__all__ = [
    "FIRMWARE_UPDATE_STATUS_KEY",
    "FIRMWARE_VERSION_KEY",
    "NO_UPDATE_STATUS",
    "CommandInvocation",
    "CommandResponse",
    "InboundMessage",
    "UpdatePolicy",
    "UpdateStage",
]
