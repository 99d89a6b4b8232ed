"""Firmware update stages and the in-flight serialization policy."""

from __future__ import annotations

import enum

#: Reported status value while no firmware update is in progress.
NO_UPDATE_STATUS = "n/a"

FIRMWARE_VERSION_KEY = "firmwareVersion"
FIRMWARE_UPDATE_STATUS_KEY = "firmwareUpdateStatus"


class UpdateStage(enum.StrEnum):
    """Stages of a simulated firmware update, in execution order."""

    IDLE = "idle"
    DOWNLOADING = "downloading"
    UNZIPPING = "unzipping"
    APPLYING = "applying"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (UpdateStage.COMPLETE, UpdateStage.FAILED)


class UpdatePolicy(enum.StrEnum):
    """How a firmware update requested during another update is handled.

    ``reject`` drops it, ``queue`` runs every request in arrival order,
    ``coalesce`` keeps only the most recent pending target.
    """

    REJECT = "reject"
    QUEUE = "queue"
    COALESCE = "coalesce"
