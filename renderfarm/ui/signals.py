"""
Thread-safe signal bridge: hub events are re-emitted as Qt signals.
Handlers run on the hub's dispatcher thread; Qt queues the emits to the
receiver's thread, so a View can connect slots directly on the main thread.
"""

from __future__ import annotations

from PySide6.QtCore import QObject, Signal

from renderfarm.core.events import (
    FrameSaved,
    JobCreated,
    JobLogLine,
    JobsRemoved,
    JobUpdated,
    JobWarning,
    NotificationHub,
    QueueReordered,
    QueueStateChanged,
    Subscription,
)


class JobSignals(QObject):
    """Signals for the render queue. Emitted from the hub thread; slots run on the main thread."""

    job_created = Signal(object)  # Job snapshot
    job_updated = Signal(object)  # Job snapshot
    jobs_removed = Signal(list)  # list[str] job ids
    log_lines = Signal(str, list)  # (job_id, list[str]) batched for fewer UI updates
    warning = Signal(str, str)  # (job_id, message)
    frame_saved = Signal(str, str)  # (job_id, path)
    queue_state = Signal(bool, int)  # (paused, max_concurrent)
    queue_reordered = Signal(list)  # list[str] job ids in queue order

    def __init__(self, hub: NotificationHub, parent: QObject | None = None) -> None:
        super().__init__(parent)
        self._hub = hub
        self._subs: list[Subscription] = [
            hub.subscribe_weak(JobCreated, self._on_created),
            hub.subscribe_weak(JobUpdated, self._on_updated),
            hub.subscribe_weak(JobsRemoved, self._on_removed),
            hub.subscribe_weak(JobLogLine, self._on_log),
            hub.subscribe_weak(JobWarning, self._on_warning),
            hub.subscribe_weak(FrameSaved, self._on_frame_saved),
            hub.subscribe_weak(QueueStateChanged, self._on_queue_state),
            hub.subscribe_weak(QueueReordered, self._on_reordered),
        ]

    def detach(self) -> None:
        for s in self._subs:
            self._hub.unsubscribe(s)
        self._subs.clear()

    def _on_created(self, e: JobCreated) -> None:
        self.job_created.emit(e.job)

    def _on_updated(self, e: JobUpdated) -> None:
        self.job_updated.emit(e.job)

    def _on_removed(self, e: JobsRemoved) -> None:
        self.jobs_removed.emit(sorted(e.job_ids))

    def _on_log(self, e: JobLogLine) -> None:
        self.log_lines.emit(e.job_id, e.line.splitlines())

    def _on_warning(self, e: JobWarning) -> None:
        self.warning.emit(e.job_id, e.message)

    def _on_frame_saved(self, e: FrameSaved) -> None:
        self.frame_saved.emit(e.job_id, e.path)

    def _on_queue_state(self, e: QueueStateChanged) -> None:
        self.queue_state.emit(e.paused, e.max_concurrent)

    def _on_reordered(self, e: QueueReordered) -> None:
        self.queue_reordered.emit(list(e.job_ids))
