from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from renderfarm.config import ENGINES, FILE_FORMATS
from renderfarm.core.errors import ValidationError


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
RETRYABLE_STATUSES = frozenset({JobStatus.FAILED, JobStatus.CANCELLED})


@dataclass(frozen=True, slots=True)
class FrameRange:
    """Inclusive frame range."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValidationError(f"Frame range end {self.end} is before start {self.start}")

    @property
    def total(self) -> int:
        return self.end - self.start + 1

    @property
    def is_single(self) -> bool:
        return self.start == self.end

    @classmethod
    def parse(cls, text: str) -> FrameRange:
        """Parse ``"12"``, ``"1-250"`` or ``"1..250"``."""
        raw = text.strip().replace("..", "-")
        try:
            if "-" in raw[1:]:
                idx = raw.index("-", 1)
                return cls(int(raw[:idx]), int(raw[idx + 1 :]))
            frame = int(raw)
        except ValueError as e:
            raise ValidationError(f"Invalid frame range: {text!r}", cause=e) from e
        return cls(frame, frame)


@dataclass(frozen=True, slots=True)
class RenderOptions:
    """Engine settings captured when the job is submitted.

    ``None`` (or 0 for threads, False for gpu) keeps whatever the scene file says.
    """

    engine: str | None = None
    samples: int | None = None
    resolution: tuple[int, int] | None = None
    file_format: str | None = None
    quality: int | None = None
    threads: int = 0
    gpu: bool = False

    def has_overrides(self) -> bool:
        return any(
            (
                self.engine is not None,
                self.samples is not None,
                self.resolution is not None,
                self.file_format is not None,
                self.quality is not None,
                self.threads > 0,
                self.gpu,
            )
        )

    def validate(self) -> None:
        if self.engine is not None and self.engine.upper() not in ENGINES:
            raise ValidationError(f"Unknown render engine: {self.engine!r}")
        if self.file_format is not None and self.file_format.upper() not in FILE_FORMATS:
            raise ValidationError(f"Unknown output format: {self.file_format!r}")
        if self.samples is not None and self.samples < 1:
            raise ValidationError(f"Sample count must be positive, got {self.samples}")
        if self.resolution is not None and (self.resolution[0] < 1 or self.resolution[1] < 1):
            raise ValidationError(f"Invalid resolution: {self.resolution!r}")
        if self.quality is not None and not 0 <= self.quality <= 100:
            raise ValidationError(f"Quality must be within 0..100, got {self.quality}")
        if self.threads < 0:
            raise ValidationError(f"Thread count must not be negative, got {self.threads}")


@dataclass(frozen=True, slots=True)
class JobSpec:
    """What a caller submits to the scheduler."""

    input_file: str
    output_target: str
    frame_range: FrameRange | None = None
    options: RenderOptions = field(default_factory=RenderOptions)
    name: str | None = None

    def validate(self) -> None:
        if not str(self.input_file).strip():
            raise ValidationError("Input file is required")
        if not str(self.output_target).strip():
            raise ValidationError("Output target is required")
        self.options.validate()

    @property
    def display_name(self) -> str:
        return self.name or Path(self.input_file).stem


@dataclass(slots=True)
class Job:
    id: str
    name: str
    input_file: str
    output_target: str
    frame_range: FrameRange | None
    options: RenderOptions
    status: JobStatus = JobStatus.PENDING
    progress_percent: int = 0
    current_frame: int | None = None
    total_frames: int | None = None
    created_at: datetime = field(default_factory=datetime.now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_detail: str | None = None
    failure_kind: str | None = None
    exit_code: int | None = None
    pid: int | None = None
    command: str | None = None
    time_remaining: str | None = None
    last_warning: str | None = None
    output_files: list[str] = field(default_factory=list)
    attempt: int = 0

    @classmethod
    def from_spec(cls, job_id: str, spec: JobSpec) -> Job:
        return cls(
            id=job_id,
            name=spec.display_name,
            input_file=str(spec.input_file),
            output_target=str(spec.output_target),
            frame_range=spec.frame_range,
            options=spec.options,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def reset_run_state(self) -> None:
        """Clear everything a previous run wrote; identity and configuration stay."""
        self.status = JobStatus.PENDING
        self.progress_percent = 0
        self.current_frame = None
        self.total_frames = None
        self.started_at = None
        self.completed_at = None
        self.error_detail = None
        self.failure_kind = None
        self.exit_code = None
        self.pid = None
        self.command = None
        self.time_remaining = None
        self.last_warning = None
        self.output_files = []


@dataclass(frozen=True, slots=True)
class QueueStats:
    total: int
    pending: int
    running: int
    completed: int
    failed: int
    cancelled: int
    paused: bool
    max_concurrent: int
