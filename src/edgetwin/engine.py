"""Device twin synchronization engine.

Wires the state store, the direct method dispatcher and the firmware
update coordinator to a transport channel.

Usage::

    async with SyncEngine(config, MqttTransport(config)) as engine:
        await engine.send_event({"status": "ok"})
        await stop_requested.wait()
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Mapping
from typing import Any

from edgetwin._redact import redact_for_log
from edgetwin._transport import TransportChannel
from edgetwin.commands import CommandDispatcher
from edgetwin.config import AgentConfig
from edgetwin.exceptions import EdgeTwinError, MalformedInboundMessage, TransportError
from edgetwin.models.message import InboundMessage
from edgetwin.models.update import FIRMWARE_VERSION_KEY
from edgetwin.state.store import StateStore
from edgetwin.update.coordinator import UpdateCoordinator
from edgetwin.update.workflow import StageObserver

_logger = logging.getLogger(__name__)


class SyncEngine:
    """Keeps the reported twin in sync and serves the control plane."""

    def __init__(
        self,
        config: AgentConfig,
        transport: TransportChannel,
        *,
        dispatcher: CommandDispatcher | None = None,
        on_stage: StageObserver | None = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self.dispatcher = dispatcher or CommandDispatcher.with_builtin_handlers()
        self.store = StateStore(transport)
        self.updates = UpdateCoordinator(
            self.store,
            policy=config.update_policy,
            stage_delay=config.stage_delay,
            abort_on_publish_failure=config.abort_on_publish_failure,
            on_stage=on_stage,
        )
        self._receive_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> SyncEngine:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    async def start(self) -> None:
        """Connect, register callbacks and publish the initial reported state.

        Raises
        ------
        TransportError
            If the transport cannot be opened or the initial reported
            state cannot be published. The agent cannot run without it.
        """
        _logger.info("Initializing device agent %s", self._config.device_id)
        await self._transport.open()
        self._receive_task = asyncio.create_task(self.run_receive_loop(), name="edgetwin-receive")

        self._transport.set_default_command_handler(self.dispatcher.dispatch)
        for name in self.dispatcher.names():
            self._transport.set_command_handler(name, self.dispatcher.dispatch)
        _logger.info("Device %s is connected", self._config.device_id)

        try:
            await self.store.initialize(self._config.initial_firmware_version)
        except TransportError:
            _logger.error("Could not publish initial reported state for %s", self._config.device_id)
            await self.stop()
            raise
        self._transport.set_desired_state_changed_callback(self.on_desired_state_changed)

    async def stop(self) -> None:
        receive_task = self._receive_task
        self._receive_task = None
        if receive_task is not None:
            receive_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await receive_task
        await self.updates.aclose()
        await self._transport.close()

    # ------------------------------------------------------------------
    # Transport callbacks
    # ------------------------------------------------------------------

    async def on_desired_state_changed(self, desired: Mapping[str, Any]) -> None:
        """Start a firmware update when the desired version diverges.

        Returns as soon as the update is handed to the coordinator.
        """
        _logger.debug("Desired state changed %s", redact_for_log(dict(desired)))
        desired_version = desired.get(FIRMWARE_VERSION_KEY)
        if desired_version is None:
            _logger.debug("Desired state has no %s, nothing to reconcile", FIRMWARE_VERSION_KEY)
            return
        desired_version = str(desired_version)

        current_version = self.store.get(FIRMWARE_VERSION_KEY)
        # While updates run, the reported version lags; compare with where they lead.
        expected_version = self.updates.effective_target or current_version
        if expected_version == desired_version:
            return

        _logger.info(
            "Firmware update requested. Current version: '%s' - Requested version: '%s'",
            current_version,
            desired_version,
        )
        self.updates.request(desired_version)

    async def on_inbound_message(self, message: InboundMessage) -> None:
        """Log an inbound message and acknowledge it, decodable or not."""
        try:
            _logger.info("Received message from cloud: '%s'", message.text())
        except MalformedInboundMessage:
            _logger.warning("Discarding undecodable message id=%s", message.message_id, exc_info=True)
        await self._transport.complete(message)

    async def run_receive_loop(self) -> None:
        """Handle inbound messages until the transport closes."""
        while True:
            message = await self._transport.receive()
            if message is None:
                if not self._transport.is_open:
                    _logger.debug("Transport closed, receive loop exiting")
                    return
                continue
            try:
                await self.on_inbound_message(message)
            except EdgeTwinError:
                _logger.warning("Could not acknowledge message id=%s", message.message_id, exc_info=True)

    # ------------------------------------------------------------------
    # Device-to-cloud
    # ------------------------------------------------------------------

    async def send_event(self, payload: Mapping[str, Any]) -> None:
        await self._transport.send(payload)
        _logger.debug("Event sent to the cloud %s", redact_for_log(dict(payload)))
