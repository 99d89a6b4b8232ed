from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

import pytest

from edgetwin._transport import CommandHandler, DesiredStateCallback
from edgetwin.exceptions import TransportError
from edgetwin.models.message import InboundMessage


class FakeTransport:
    """In-memory transport double that records everything the engine does."""

    def __init__(self) -> None:
        self.published: list[dict[str, str]] = []
        self.sent: list[dict[str, Any]] = []
        self.completed: list[InboundMessage] = []
        self.handlers: dict[str, CommandHandler] = {}
        self.default_handler: CommandHandler | None = None
        self.desired_callback: DesiredStateCallback | None = None
        self.fail_publish_at: set[int] = set()
        self.fail_all_publishes = False
        self.open_calls = 0
        self._inbox: asyncio.Queue[InboundMessage | None] = asyncio.Queue()
        self._open = False
        self._publish_attempts = 0

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self) -> None:
        self.open_calls += 1
        self._open = True

    async def close(self) -> None:
        self._open = False
        self._inbox.put_nowait(None)

    async def send(self, payload: Mapping[str, Any]) -> None:
        if not self._open:
            raise TransportError("not connected")
        self.sent.append(dict(payload))

    async def receive(self) -> InboundMessage | None:
        return await self._inbox.get()

    async def complete(self, message: InboundMessage) -> None:
        self.completed.append(message)

    async def publish_reported_state(self, document: Mapping[str, str]) -> None:
        attempt = self._publish_attempts
        self._publish_attempts += 1
        if self.fail_all_publishes or attempt in self.fail_publish_at:
            raise TransportError("publish failed", status_code=503)
        self.published.append(dict(document))

    def set_command_handler(self, name: str, handler: CommandHandler) -> None:
        self.handlers[name] = handler

    def set_default_command_handler(self, handler: CommandHandler) -> None:
        self.default_handler = handler

    def set_desired_state_changed_callback(self, callback: DesiredStateCallback) -> None:
        self.desired_callback = callback

    def push_message(self, message: InboundMessage) -> None:
        self._inbox.put_nowait(message)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()
