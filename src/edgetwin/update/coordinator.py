"""Single-in-flight gate for firmware updates.

Divergence notifications can arrive while an update is still running.
The coordinator keeps exactly one workflow writing the reported document
and applies an :class:`UpdatePolicy` to the requests that arrive in the
meantime.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from collections.abc import Callable

from edgetwin.models.update import FIRMWARE_VERSION_KEY, UpdatePolicy, UpdateStage
from edgetwin.state.store import StateStore
from edgetwin.update.workflow import StageObserver, UpdateTask, UpdateWorkflow

_logger = logging.getLogger(__name__)


class UpdateCoordinator:
    """Launches update workflows one at a time on the running event loop.

    :meth:`request` never waits for an update; it either starts a
    background worker, records the target as pending, or drops it.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        policy: UpdatePolicy = UpdatePolicy.COALESCE,
        stage_delay: float = 5.0,
        abort_on_publish_failure: bool = True,
        on_stage: StageObserver | None = None,
        on_finished: Callable[[UpdateTask], None] | None = None,
    ) -> None:
        self._store = store
        self._policy = policy
        self._stage_delay = stage_delay
        self._abort_on_publish_failure = abort_on_publish_failure
        self._on_stage = on_stage
        self._on_finished = on_finished
        self._pending: deque[str] = deque()
        self._active: UpdateWorkflow | None = None
        self._worker: asyncio.Task[None] | None = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._history: list[UpdateTask] = []

    @property
    def policy(self) -> UpdatePolicy:
        return self._policy

    @property
    def active(self) -> UpdateTask | None:
        """The update currently writing the reported document, if any."""
        return self._active.task if self._active is not None else None

    @property
    def pending(self) -> list[str]:
        return list(self._pending)

    @property
    def effective_target(self) -> str | None:
        """Version the device will end on once running and pending updates finish."""
        if self._pending:
            return self._pending[-1]
        return self._active.target_version if self._active is not None else None

    @property
    def history(self) -> list[UpdateTask]:
        """Finished updates, oldest first."""
        return list(self._history)

    def request(self, target_version: str) -> bool:
        """Ask for an update to *target_version*.

        Returns ``True`` when a workflow was started, the target was
        queued, or pending targets were dropped because the request moved
        back to the in-flight target. Returns ``False`` when the request
        was a duplicate or rejected.
        """
        active = self._active
        if active is None:
            self._launch(target_version)
            return True

        if target_version == active.target_version:
            if self._pending:
                _logger.info(
                    "Dropping pending firmware updates %s: target is back to in-flight %s",
                    list(self._pending),
                    target_version,
                )
                self._pending.clear()
                return True
            _logger.debug("Firmware update to %s already in progress", target_version)
            return False

        if self._policy == UpdatePolicy.REJECT:
            _logger.warning(
                "Rejecting firmware update to %s: update to %s still in progress",
                target_version,
                active.target_version,
            )
            return False

        if self._pending and self._pending[-1] == target_version:
            _logger.debug("Firmware update to %s already pending", target_version)
            return False

        if self._policy == UpdatePolicy.COALESCE and self._pending:
            _logger.info("Replacing pending firmware update %s with %s", self._pending[-1], target_version)
            self._pending.clear()
        self._pending.append(target_version)
        _logger.info(
            "Firmware update to %s pending behind %s (policy=%s)",
            target_version,
            active.target_version,
            self._policy,
        )
        return True

    async def wait_idle(self) -> None:
        """Wait until no update is running or pending."""
        await self._idle.wait()

    async def aclose(self) -> None:
        """Drop pending requests and cancel the running update, if any."""
        self._pending.clear()
        worker = self._worker
        if worker is None:
            return
        worker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await worker

    def _new_workflow(self, target_version: str) -> UpdateWorkflow:
        workflow = UpdateWorkflow(
            self._store,
            target_version,
            stage_delay=self._stage_delay,
            abort_on_publish_failure=self._abort_on_publish_failure,
            on_stage=self._on_stage,
        )
        self._active = workflow
        return workflow

    def _launch(self, target_version: str) -> None:
        workflow = self._new_workflow(target_version)
        self._idle.clear()
        self._worker = asyncio.create_task(
            self._drain(workflow),
            name=f"edgetwin-update-{target_version}",
        )

    def _next_workflow(self) -> UpdateWorkflow | None:
        while self._pending:
            target = self._pending.popleft()
            current = self._store.get(FIRMWARE_VERSION_KEY)
            if target == current:
                _logger.info("Skipping pending firmware update to %s: already reported", target)
                continue
            return self._new_workflow(target)
        return None

    async def _drain(self, workflow: UpdateWorkflow | None) -> None:
        try:
            while workflow is not None:
                try:
                    task = await workflow.run()
                except Exception:
                    _logger.exception("Firmware update to %s crashed", workflow.target_version)
                    task = workflow.task
                    task.error = task.error or "crashed"
                    if not task.stage.is_terminal:
                        task.stage = UpdateStage.FAILED
                        task.stages.append(UpdateStage.FAILED)
                self._history.append(task)
                if self._on_finished is not None:
                    try:
                        self._on_finished(task)
                    except Exception:
                        _logger.exception("Update finished callback failed for %s", task.target_version)
                workflow = self._next_workflow()
        finally:
            self._active = None
            self._worker = None
            self._idle.set()
