"""Run-state and test-phase enumerations."""
from __future__ import annotations

from enum import IntEnum


class RunState(IntEnum):
    """Lifecycle of a single controller."""

    CONFIGURING = 0
    ADDING_SERVERS = 1
    SERVER_SELECTED = 2
    RUNNING = 3
    DONE = 4


class TestPhase(IntEnum):
    """Phase reported by the background worker in every status snapshot."""

    NOT_STARTED = -1
    STARTING = 0
    DOWNLOAD = 1
    PING_JITTER = 2
    UPLOAD = 3
    FINISHED = 4
    ABORTED = 5

    @property
    def is_terminal(self) -> bool:
        return self in (TestPhase.FINISHED, TestPhase.ABORTED)
