"""Shared error types.

The goal is to make errors explicit and easy to handle at the queue boundary.
Render failures are never raised out of the scheduler: the supervisor turns
them into a ``failed`` job with a readable ``error_detail``.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(eq=False)
class AppError(Exception):
    """Base error for application-level failures."""

    message: str
    cause: Exception | None = None

    def __str__(self) -> str:  # pragma: no cover
        if self.cause is None:
            return self.message
        return f"{self.message} (cause: {self.cause})"


class ValidationError(AppError):
    """Invalid user input or configuration."""


class InfrastructureError(AppError):
    """IO/OS/driver/FS failures."""


class CancelledError(AppError):
    """User-initiated cancellation."""


class EngineNotFound(InfrastructureError):
    """Render engine executable is missing or not runnable."""

    kind = "engine_not_found"


class InputNotFound(ValidationError):
    """Scene file to render does not exist."""

    kind = "input_not_found"


class SpawnFailure(InfrastructureError):
    """The OS refused to start the engine process."""

    kind = "spawn_failure"


@dataclass(eq=False)
class NonZeroExit(AppError):
    """Engine ran and exited with a failure code."""

    exit_code: int = 1
    stderr_tail: str = ""

    kind = "non_zero_exit"


class KilledByRequest(CancelledError):
    """Engine process was terminated because cancellation was requested."""

    kind = "killed_by_request"
