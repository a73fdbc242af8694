from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from renderfarm.core.jobs.models import Job


@dataclass(frozen=True, slots=True)
class JobCreated:
    job: Job


@dataclass(frozen=True, slots=True)
class JobUpdated:
    """Full snapshot, emitted on every status or progress change."""

    job: Job


@dataclass(frozen=True, slots=True)
class JobsRemoved:
    job_ids: frozenset[str]


@dataclass(frozen=True, slots=True)
class JobLogLine:
    """Engine output for one job, possibly several lines joined by newlines.

    Intended for UI tail views.
    """

    job_id: str
    line: str


@dataclass(frozen=True, slots=True)
class JobWarning:
    """Error-looking engine output. Advisory: the exit code decides the outcome."""

    job_id: str
    message: str


@dataclass(frozen=True, slots=True)
class FrameSaved:
    job_id: str
    path: str


@dataclass(frozen=True, slots=True)
class QueueStateChanged:
    paused: bool
    max_concurrent: int


@dataclass(frozen=True, slots=True)
class QueueReordered:
    job_ids: tuple[str, ...]
