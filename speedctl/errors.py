"""Exception hierarchy for the speed test controller."""
from __future__ import annotations

from typing import Optional


class SpeedctlError(Exception):
    """Base class for every error raised by ``speedctl``."""


class InvalidServerDefinition(SpeedctlError, ValueError):
    """A server definition is missing a required field or has the wrong type."""

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class InvalidStateTransition(SpeedctlError, RuntimeError):
    """An operation was attempted in a run state that forbids it."""
