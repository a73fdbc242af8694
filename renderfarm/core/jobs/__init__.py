"""Render jobs infrastructure.

A thread-based queue that runs Blender subprocesses with bounded concurrency,
so neither a UI nor the CLI ever blocks on a render.
"""

from .job_event_store import JobEventStore, JobJournal, JsonlJobEventStore, pack_job_event
from .job_store import JobStore
from .models import FrameRange, Job, JobSpec, JobStatus, QueueStats, RenderOptions
from .scheduler import Scheduler
from .supervisor import ProcessSupervisor, RenderHandle, RunOutcome

__all__ = [
    "FrameRange",
    "Job",
    "JobSpec",
    "JobStatus",
    "QueueStats",
    "RenderOptions",
    "JobStore",
    "Scheduler",
    "ProcessSupervisor",
    "RenderHandle",
    "RunOutcome",
    "JobEventStore",
    "JobJournal",
    "JsonlJobEventStore",
    "pack_job_event",
]
