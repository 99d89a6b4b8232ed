"""Transport channel interface consumed by the sync engine.

The engine only talks to the control plane through this protocol. The
production implementation is :class:`edgetwin._mqtt.MqttTransport`; tests
pass lightweight doubles.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Protocol

from edgetwin.models.command import CommandInvocation, CommandResponse
from edgetwin.models.message import InboundMessage

CommandHandler = Callable[[CommandInvocation], Awaitable[CommandResponse]]
DesiredStateCallback = Callable[[Mapping[str, Any]], Awaitable[None]]


class TransportChannel(Protocol):
    """Bidirectional connection carrying messages, methods and twin updates.

    Every method raises :class:`edgetwin.exceptions.TransportError` when the
    underlying link is unavailable. Retry and backoff are left to the
    implementation.
    """

    @property
    def is_open(self) -> bool:
        ...

    async def open(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def send(self, payload: Mapping[str, Any]) -> None:
        ...

    async def receive(self) -> InboundMessage | None:
        """Wait for the next inbound message; ``None`` once the channel closes."""
        ...

    async def complete(self, message: InboundMessage) -> None:
        ...

    async def publish_reported_state(self, document: Mapping[str, str]) -> None:
        ...

    def set_command_handler(self, name: str, handler: CommandHandler) -> None:
        ...

    def set_default_command_handler(self, handler: CommandHandler) -> None:
        ...

    def set_desired_state_changed_callback(self, callback: DesiredStateCallback) -> None:
        ...
