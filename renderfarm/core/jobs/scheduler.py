"""Render queue: ordering, admission control and queue commands.

All job status and queue-order mutations happen under ``Scheduler._lock``.
Supervisors run on the executor and report back through ``_on_spawn``,
``_on_progress`` and ``_on_exit``, which take the same lock and drop anything
that belongs to a run the job has already left (cancelled, or retried into a
newer attempt).

A job whose cancelled run is still shutting down can be retried, but it is
not admitted again until that old process has exited.

Control commands on a job in the wrong state are no-ops that return False.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from threading import Condition, RLock
from typing import Any, Protocol

from renderfarm.config import DEFAULT_MAX_CONCURRENT, DEFAULT_TERMINATE_GRACE_SEC, MAX_WORKERS
from renderfarm.core.errors import InfrastructureError, ValidationError
from renderfarm.core.events import (
    FrameSaved,
    JobCreated,
    JobsRemoved,
    JobUpdated,
    JobWarning,
    NotificationHub,
    QueueReordered,
    QueueStateChanged,
)
from renderfarm.core.jobs.job_store import JobStore
from renderfarm.core.jobs.log_buffer import JobLogBuffer
from renderfarm.core.jobs.models import (
    RETRYABLE_STATUSES,
    Job,
    JobSpec,
    JobStatus,
    QueueStats,
)
from renderfarm.core.jobs.progress_parser import ProgressUpdate
from renderfarm.core.jobs.supervisor import ProcessSupervisor, RenderHandle, RunOutcome

logger = logging.getLogger(__name__)


class Supervisor(Protocol):
    def start(self) -> RunOutcome: ...

    def cancel(self) -> None: ...


SupervisorFactory = Callable[..., Supervisor]


class Scheduler:
    """Runs submitted jobs, at most ``max_concurrent`` at a time."""

    def __init__(
        self,
        hub: NotificationHub,
        *,
        engine_path: str | None = None,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        clear_includes_cancelled: bool = False,
        terminate_grace_sec: float = DEFAULT_TERMINATE_GRACE_SEC,
        factory_startup: bool = False,
        extra_args: Sequence[str] = (),
        paused: bool = False,
        supervisor_factory: SupervisorFactory | None = None,
        store: JobStore | None = None,
        max_workers: int = MAX_WORKERS,
    ) -> None:
        self._hub = hub
        self._store = store or JobStore()
        self._engine_path = engine_path
        self._clear_includes_cancelled = clear_includes_cancelled
        self._grace = terminate_grace_sec
        self._factory_startup = factory_startup
        self._extra_args = tuple(extra_args)
        self._supervisor_factory = supervisor_factory or self._default_supervisor
        self._max_workers = max(1, int(max_workers))
        self._max_concurrent = self._checked_limit(max_concurrent)
        self._paused = paused
        self._closed = False
        self._handles: dict[str, RenderHandle] = {}
        # Cancelled runs whose process has not exited yet.
        self._draining: dict[str, RenderHandle] = {}
        self._lock = RLock()
        self._changed = Condition(self._lock)
        self._executor = ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix="render"
        )

    # --- Queries ---
    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def clear_includes_cancelled(self) -> bool:
        return self._clear_includes_cancelled

    def get(self, job_id: str) -> Job | None:
        return self._store.get(job_id)

    def list_all(self) -> list[Job]:
        return self._store.list_all()

    def stats(self) -> QueueStats:
        with self._lock:
            jobs = self._store.records()
            count = {status: 0 for status in JobStatus}
            for job in jobs:
                count[job.status] += 1
            return QueueStats(
                total=len(jobs),
                pending=count[JobStatus.PENDING],
                running=count[JobStatus.RUNNING],
                completed=count[JobStatus.COMPLETED],
                failed=count[JobStatus.FAILED],
                cancelled=count[JobStatus.CANCELLED],
                paused=self._paused,
                max_concurrent=self._max_concurrent,
            )

    # --- Submission ---
    def submit(self, spec: JobSpec) -> str:
        """Queue a job and return its id without waiting for it to run."""
        spec.validate()
        job = Job.from_spec(uuid.uuid4().hex, spec)
        with self._lock:
            if self._closed:
                raise InfrastructureError("Render queue is shut down")
            self._store.put(job)
            self._hub.publish(JobCreated(job=self._snapshot(job)))
            logger.info("Job queued: %s", job.name, extra={"job_id": job.id})
            self._admit_locked()
        return job.id

    # --- Per-job commands ---
    def cancel(self, job_id: str) -> bool:
        with self._lock:
            job = self._store.record(job_id)
            if job is None or job.is_terminal:
                return False
            handle = self._cancel_locked(job)
            self._admit_locked()
        if handle is not None:
            handle.cancel()
        return True

    def remove(self, job_id: str) -> bool:
        with self._lock:
            job = self._store.record(job_id)
            if job is None:
                return False
            handle = None if job.is_terminal else self._cancel_locked(job)
            self._store.delete(job_id)
            self._hub.publish(JobsRemoved(job_ids=frozenset({job_id})))
            logger.info("Job removed: %s", job.name, extra={"job_id": job_id})
            self._admit_locked()
        if handle is not None:
            handle.cancel()
        return True

    def retry(self, job_id: str) -> bool:
        with self._lock:
            job = self._store.record(job_id)
            if job is None or job.status not in RETRYABLE_STATUSES:
                return False
            job.reset_run_state()
            self._store.move_to_end(job_id)
            self._publish_updated(job)
            self._hub.publish(QueueReordered(job_ids=self._order()))
            logger.info("Job re-queued: %s", job.name, extra={"job_id": job_id})
            self._admit_locked()
        return True

    def move_up(self, job_id: str) -> bool:
        return self._move(job_id, -1)

    def move_down(self, job_id: str) -> bool:
        return self._move(job_id, +1)

    def _move(self, job_id: str, delta: int) -> bool:
        with self._lock:
            if not self._store.move(job_id, delta):
                return False
            self._hub.publish(QueueReordered(job_ids=self._order()))
            self._admit_locked()
        return True

    # --- Queue commands ---
    def pause(self) -> None:
        """Stop admitting jobs; running renders carry on."""
        with self._lock:
            if self._paused:
                return
            self._paused = True
            self._publish_queue_state()

    def resume(self) -> None:
        with self._lock:
            if self._closed:
                return
            if self._paused:
                self._paused = False
                self._publish_queue_state()
            self._admit_locked()

    start = resume

    def stop_all(self) -> None:
        """Pause admission and cancel every running render. Pending jobs stay pending."""
        with self._lock:
            was_paused = self._paused
            self._paused = True
            handles = [
                self._cancel_locked(job) for job in self._store.records([JobStatus.RUNNING])
            ]
            if not was_paused:
                self._publish_queue_state()
        for handle in handles:
            if handle is not None:
                handle.cancel()

    def clear_terminal(self) -> set[str]:
        """Drop completed and failed jobs (cancelled too, if so configured)."""
        statuses = {JobStatus.COMPLETED, JobStatus.FAILED}
        if self._clear_includes_cancelled:
            statuses.add(JobStatus.CANCELLED)
        with self._lock:
            removed = {job.id for job in self._store.records(statuses)}
            for job_id in removed:
                self._store.delete(job_id)
            if removed:
                self._hub.publish(JobsRemoved(job_ids=frozenset(removed)))
                logger.info("Cleared %d finished job(s)", len(removed))
        return removed

    def set_max_concurrent(self, value: int) -> None:
        limit = self._checked_limit(value)
        with self._lock:
            if limit == self._max_concurrent:
                return
            self._max_concurrent = limit
            self._publish_queue_state()
            self._admit_locked()

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until nothing runs and nothing more can be admitted."""
        with self._changed:
            return self._changed.wait_for(self._is_idle_locked, timeout)

    def shutdown(self, *, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
        self.stop_all()
        self._executor.shutdown(wait=wait)

    # --- Admission ---
    def _admit_locked(self) -> None:
        while not self._paused and not self._closed:
            if len(self._store.records([JobStatus.RUNNING])) >= self._max_concurrent:
                return
            pending = [
                job
                for job in self._store.records([JobStatus.PENDING])
                if job.id not in self._draining
            ]
            if not pending:
                return
            self._launch_locked(pending[0])

    def _launch_locked(self, job: Job) -> None:
        job.status = JobStatus.RUNNING
        job.started_at = datetime.now()
        job.attempt += 1
        job.total_frames = job.frame_range.total if job.frame_range is not None else 1
        job_id, attempt = job.id, job.attempt
        logs = JobLogBuffer(self._hub, job_id)

        supervisor = self._supervisor_factory(
            self._snapshot(job),
            on_spawn=lambda pid, cmdline: self._on_spawn(job_id, attempt, pid, cmdline),
            on_progress=lambda update: self._on_progress(job_id, attempt, update),
            on_output=logs.add_lines,
        )
        handle = RenderHandle(job_id=job_id, attempt=attempt, supervisor=supervisor)  # type: ignore[arg-type]
        self._handles[job_id] = handle
        self._publish_updated(job)
        logger.info(
            "Job started: %s (attempt %d)", job.name, attempt, extra={"job_id": job_id}
        )
        handle.future = self._executor.submit(self._run_supervisor, handle, logs)

    def _run_supervisor(self, handle: RenderHandle, logs: JobLogBuffer) -> RunOutcome:
        try:
            outcome = handle.supervisor.start()
        except Exception as e:  # noqa: BLE001
            logger.exception("Supervisor crashed", extra={"job_id": handle.job_id})
            outcome = RunOutcome(
                JobStatus.FAILED, error_detail=f"Internal error: {e!r}", failure_kind="internal"
            )
        logs.flush(force=True)
        self._on_exit(handle, outcome)
        return outcome

    # --- Supervisor callbacks ---
    def _current_run_locked(self, job_id: str, attempt: int) -> Job | None:
        job = self._store.record(job_id)
        if job is None or job.status is not JobStatus.RUNNING or job.attempt != attempt:
            return None
        return job

    def _on_spawn(self, job_id: str, attempt: int, pid: int, cmdline: str) -> None:
        with self._lock:
            job = self._current_run_locked(job_id, attempt)
            if job is None:
                return
            job.pid = pid
            job.command = cmdline
            self._publish_updated(job)

    def _on_progress(self, job_id: str, attempt: int, update: ProgressUpdate) -> None:
        with self._lock:
            job = self._current_run_locked(job_id, attempt)
            if job is None:
                return
            changed = False
            if update.current_frame is not None and update.current_frame != job.current_frame:
                job.current_frame = update.current_frame
                changed = True
            if update.total_frames is not None and update.total_frames != job.total_frames:
                job.total_frames = update.total_frames
                changed = True
            # Never goes backwards within a run.
            if update.progress_percent is not None and update.progress_percent > job.progress_percent:
                job.progress_percent = update.progress_percent
                changed = True
            if update.time_remaining is not None and update.time_remaining != job.time_remaining:
                job.time_remaining = update.time_remaining
                changed = True
            for path in update.saved_files:
                job.output_files.append(path)
                self._hub.publish(FrameSaved(job_id=job_id, path=path))
                changed = True
            for message in update.errors:
                job.last_warning = message
                self._hub.publish(JobWarning(job_id=job_id, message=message))
                changed = True
            if changed:
                self._publish_updated(job)

    def _on_exit(self, handle: RenderHandle, outcome: RunOutcome) -> None:
        with self._lock:
            if self._handles.get(handle.job_id) is handle:
                del self._handles[handle.job_id]
            if self._draining.get(handle.job_id) is handle:
                del self._draining[handle.job_id]
            job = self._current_run_locked(handle.job_id, handle.attempt)
            if job is not None:
                self._finish_locked(job, outcome)
            self._admit_locked()
            self._changed.notify_all()

    def _finish_locked(self, job: Job, outcome: RunOutcome) -> None:
        job.status = outcome.status
        job.completed_at = datetime.now()
        job.pid = None
        job.exit_code = outcome.exit_code
        if outcome.status is JobStatus.COMPLETED:
            job.progress_percent = 100
            if job.frame_range is not None:
                job.current_frame = job.frame_range.end
        elif outcome.status is JobStatus.FAILED:
            job.error_detail = outcome.error_detail
            job.failure_kind = outcome.failure_kind
        self._publish_updated(job)
        logger.info(
            "Job %s: %s",
            job.status.value,
            job.name,
            extra={"job_id": job.id, "status": job.status.value, "exit_code": job.exit_code},
        )

    # --- Helpers ---
    def _cancel_locked(self, job: Job) -> RenderHandle | None:
        """Flip a live job to cancelled; return the handle whose process must be stopped."""
        handle = self._handles.pop(job.id, None) if job.status is JobStatus.RUNNING else None
        if handle is not None:
            self._draining[job.id] = handle
        job.status = JobStatus.CANCELLED
        job.completed_at = datetime.now()
        job.pid = None
        self._publish_updated(job)
        logger.info("Job cancelled: %s", job.name, extra={"job_id": job.id})
        return handle

    def _default_supervisor(self, job: Job, **callbacks: Any) -> ProcessSupervisor:
        return ProcessSupervisor(
            job,
            self._engine_path,
            terminate_grace_sec=self._grace,
            factory_startup=self._factory_startup,
            extra_args=self._extra_args,
            **callbacks,
        )

    def _checked_limit(self, value: int) -> int:
        limit = int(value)
        if limit < 1:
            raise ValidationError(f"Concurrency limit must be at least 1, got {value}")
        if limit > self._max_workers:
            logger.warning("Concurrency limit %d capped at %d", limit, self._max_workers)
            limit = self._max_workers
        return limit

    def _is_idle_locked(self) -> bool:
        if self._store.records([JobStatus.RUNNING]):
            return False
        return self._paused or self._closed or not self._store.records([JobStatus.PENDING])

    def _order(self) -> tuple[str, ...]:
        return tuple(job.id for job in self._store.records())

    def _snapshot(self, job: Job) -> Job:
        snap = self._store.get(job.id)
        return job if snap is None else snap

    def _publish_updated(self, job: Job) -> None:
        self._hub.publish(JobUpdated(job=self._snapshot(job)))
        self._changed.notify_all()

    def _publish_queue_state(self) -> None:
        self._hub.publish(
            QueueStateChanged(paused=self._paused, max_concurrent=self._max_concurrent)
        )
        self._changed.notify_all()
