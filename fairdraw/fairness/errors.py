"""Exception hierarchy raised by the fairness engine and its workflows."""

from __future__ import annotations


class FairDrawError(Exception):
    """Base exception for draw related errors."""


class InvalidConfigurationError(FairDrawError, ValueError):
    """Raised when a roulette configuration cannot be drawn.

    Detected before any PRNG state is consumed, so no partial result exists.
    """


class EmptyPoolDrawError(FairDrawError, ValueError):
    """Raised when a random index is requested from an empty pool."""


class AlreadyFinalizedError(FairDrawError):
    """Raised when a result is recorded for a project that already has one."""

    def __init__(self, project_id: int) -> None:
        super().__init__(f"Project {project_id} already has a recorded draw")
        self.project_id = project_id


class LoopGuardExceededError(FairDrawError, RuntimeError):
    """Raised when an elimination loop stops making progress.

    This signals a defect in the engine and aborts the draw entirely.
    """


class ProjectStateError(FairDrawError):
    """Raised when a project's status or type does not allow the operation."""


class StaleConfigurationError(FairDrawError):
    """Raised when a configuration write or draw targets an outdated version."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(
            f"Configuration version mismatch: expected {expected}, found {actual}"
        )
        self.expected = expected
        self.actual = actual


class PermissionDeniedError(FairDrawError):
    """Raised when the acting identity may not manage the project."""


__all__ = [
    "AlreadyFinalizedError",
    "EmptyPoolDrawError",
    "FairDrawError",
    "InvalidConfigurationError",
    "LoopGuardExceededError",
    "PermissionDeniedError",
    "ProjectStateError",
    "StaleConfigurationError",
]
