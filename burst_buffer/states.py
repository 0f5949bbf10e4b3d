from __future__ import annotations

import enum


@enum.unique
class BbState(enum.IntEnum):
    """
    Ordered lifecycle of a job's burst buffer and of allocation records.

    Comparisons are meaningful: a job at or past STAGING_IN has already been
    allocated, and anything past STAGING_OUT is being released.
    """

    PENDING = 1
    ALLOCATING = 2
    ALLOCATED = 3
    DELETING = 4
    DELETED = 5
    STAGING_IN = 6
    STAGED_IN = 7
    RUNNING = 8
    STAGING_OUT = 9
    STAGED_OUT = 10
    TEARDOWN = 11
    COMPLETE = 12

    def __str__(self) -> str:
        return self.name.lower().replace("_", "-")


TERMINAL_BUFFER_STATES = (BbState.ALLOCATED, BbState.DELETED)
ACTIVE_BUFFER_STATES = (BbState.ALLOCATING, BbState.DELETING)


@enum.unique
class Admission(enum.Enum):
    ADMIT = "admit"
    DEFERRED_OVER_LIMIT = "deferred_over_limit"
    DEFERRED_NO_SPACE = "deferred_no_space"


@enum.unique
class StageStatus(enum.IntEnum):
    NOT_READY = -1
    UNDERWAY = 0
    COMPLETE = 1
