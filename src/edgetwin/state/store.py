"""In-memory reported-state document.

The document lives only in process memory; it is rebuilt from the
initial values every time the agent starts.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping

from edgetwin._redact import redact_for_log
from edgetwin._transport import TransportChannel
from edgetwin.models.update import FIRMWARE_UPDATE_STATUS_KEY, FIRMWARE_VERSION_KEY, NO_UPDATE_STATUS

_logger = logging.getLogger(__name__)


class StateStore:
    """Owner of the device's reported twin document.

    ``set`` only touches memory. ``publish`` and ``commit`` push the whole
    document through the transport while holding the store lock, so
    published documents always reach the transport in the order their
    changes were made.
    """

    def __init__(self, transport: TransportChannel) -> None:
        self._transport = transport
        self._document: dict[str, str] = {}
        self._lock = asyncio.Lock()

    def get(self, key: str) -> str | None:
        return self._document.get(key)

    def set(self, key: str, value: str) -> None:
        self._document[key] = value

    def snapshot(self) -> dict[str, str]:
        return dict(self._document)

    async def publish(self) -> None:
        """Send the full document to the control plane.

        Raises
        ------
        TransportError
            If the transport rejects or cannot deliver the document.
        """
        async with self._lock:
            await self._publish_locked()

    async def commit(self, patch: Mapping[str, str] | None = None, **fields: str) -> None:
        """Apply *patch* and *fields*, then publish, as one step."""
        async with self._lock:
            if patch:
                self._document.update(patch)
            self._document.update(fields)
            await self._publish_locked()

    async def initialize(self, firmware_version: str = "1.0") -> None:
        """Seed the document with startup values and publish it once."""
        await self.commit(
            {
                FIRMWARE_VERSION_KEY: firmware_version,
                FIRMWARE_UPDATE_STATUS_KEY: NO_UPDATE_STATUS,
            }
        )

    async def _publish_locked(self) -> None:
        document = self.snapshot()
        _logger.debug("Publishing reported state %s", redact_for_log(document))
        await self._transport.publish_reported_state(document)
