"""Custom exception hierarchy for edgetwin."""

from __future__ import annotations


class EdgeTwinError(Exception):
    """Base exception for all edgetwin errors."""


class ConfigError(EdgeTwinError):
    """Invalid or missing configuration."""


class TransportError(EdgeTwinError, ConnectionError):
    """Channel-level failure (not connected, publish rejected, timeout).

    Subclasses :class:`ConnectionError` so callers that only know about the
    built-in network errors still catch it.
    """

    def __init__(
        self,
        message: str,
        *,
        topic: str = "",
        status_code: int | None = None,
    ) -> None:
        self.topic = topic
        self.status_code = status_code
        super().__init__(message)


class MalformedInboundMessage(EdgeTwinError):
    """Inbound cloud-to-device message body could not be decoded."""

    def __init__(self, message: str, *, message_id: str | None = None) -> None:
        self.message_id = message_id
        super().__init__(message)


class UpdateAbortedError(EdgeTwinError):
    """Firmware update stopped because a stage could not be published."""

    def __init__(self, message: str, *, target_version: str, stage: str) -> None:
        self.target_version = target_version
        self.stage = stage
        super().__init__(message)
