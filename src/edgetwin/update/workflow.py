"""Staged firmware update state machine.

A run moves through ``DOWNLOADING -> UNZIPPING -> APPLYING -> COMPLETE``.
Each stage is written to the reported document and published before the
workflow suspends for the stage delay, so the control plane can follow
progress.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from edgetwin.exceptions import TransportError, UpdateAbortedError
from edgetwin.models.update import (
    FIRMWARE_UPDATE_STATUS_KEY,
    FIRMWARE_VERSION_KEY,
    NO_UPDATE_STATUS,
    UpdateStage,
)
from edgetwin.state.store import StateStore

_logger = logging.getLogger(__name__)

_WORK_STAGES: tuple[UpdateStage, ...] = (
    UpdateStage.DOWNLOADING,
    UpdateStage.UNZIPPING,
    UpdateStage.APPLYING,
)


def stage_status(stage: UpdateStage, target_version: str) -> str:
    """Human-readable ``firmwareUpdateStatus`` for a work stage."""
    if stage == UpdateStage.DOWNLOADING:
        return f"Downloading zip file for firmware {target_version}..."
    if stage == UpdateStage.UNZIPPING:
        return "Unzipping Package"
    if stage == UpdateStage.APPLYING:
        return "Applying Update"
    raise ValueError(f"{stage} has no progress status")


def failure_status(target_version: str) -> str:
    return f"Update to {target_version} failed"


@dataclass(slots=True)
class UpdateTask:
    """One firmware update run.

    ``stages`` records every stage entered, in order.
    """

    target_version: str
    stage: UpdateStage = UpdateStage.IDLE
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    stages: list[UpdateStage] = field(default_factory=list)
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.stage == UpdateStage.COMPLETE


StageObserver = Callable[[UpdateTask], None]


class UpdateWorkflow:
    """Runs a single firmware update against the state store.

    The workflow itself is not re-entrant and does not guard against a
    second workflow writing the same store; :class:`UpdateCoordinator`
    makes sure only one runs at a time.
    """

    def __init__(
        self,
        store: StateStore,
        target_version: str,
        *,
        stage_delay: float = 5.0,
        abort_on_publish_failure: bool = True,
        on_stage: StageObserver | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._stage_delay = stage_delay
        self._abort_on_publish_failure = abort_on_publish_failure
        self._on_stage = on_stage
        self._sleep = sleep
        self._previous_version = store.get(FIRMWARE_VERSION_KEY)
        self.task = UpdateTask(target_version=target_version)

    @property
    def target_version(self) -> str:
        return self.task.target_version

    async def run(self) -> UpdateTask:
        """Drive the update to ``COMPLETE`` (or ``FAILED``) and return the task."""
        target = self.task.target_version
        _logger.info("Beginning firmware update to %s", target)
        try:
            for stage in _WORK_STAGES:
                await self._enter(stage, {FIRMWARE_UPDATE_STATUS_KEY: stage_status(stage, target)})
                await self._sleep(self._stage_delay)
            await self._enter(
                UpdateStage.COMPLETE,
                {
                    FIRMWARE_UPDATE_STATUS_KEY: NO_UPDATE_STATUS,
                    FIRMWARE_VERSION_KEY: target,
                },
            )
        except UpdateAbortedError as exc:
            self.task.error = str(exc)
            self._advance(UpdateStage.FAILED)
            await self._report_failure()
            return self.task

        _logger.info("Firmware update to %s complete", target)
        return self.task

    def _advance(self, stage: UpdateStage) -> None:
        self.task.stage = stage
        self.task.stages.append(stage)
        if self._on_stage is not None:
            self._on_stage(self.task)

    async def _enter(self, stage: UpdateStage, patch: dict[str, str]) -> None:
        self._advance(stage)
        _logger.debug("Firmware update to %s entered stage %s", self.task.target_version, stage)
        try:
            await self._store.commit(patch)
        except TransportError as exc:
            if not self._abort_on_publish_failure:
                _logger.warning(
                    "Could not publish firmware update stage %s, continuing",
                    stage,
                    exc_info=True,
                )
                return
            raise UpdateAbortedError(
                f"Publishing stage {stage} failed: {exc}",
                target_version=self.task.target_version,
                stage=str(stage),
            ) from exc

    async def _report_failure(self) -> None:
        target = self.task.target_version
        _logger.error("Firmware update to %s failed: %s", target, self.task.error)
        patch = {FIRMWARE_UPDATE_STATUS_KEY: failure_status(target)}
        if self._previous_version is not None:
            patch[FIRMWARE_VERSION_KEY] = self._previous_version
        try:
            await self._store.commit(patch)
        except TransportError:
            _logger.warning("Could not publish failed status for firmware %s", target, exc_info=True)
