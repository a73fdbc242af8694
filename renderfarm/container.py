"""Composition root / DI container.

Front ends (the CLI, a desktop window) should not build the queue by hand.
The container wires the hub, the optional journal and the scheduler from one
``FarmSettings``.
"""

from __future__ import annotations

from pathlib import Path

from renderfarm.core.events import NotificationHub
from renderfarm.core.jobs import JobJournal, JsonlJobEventStore, Scheduler
from renderfarm.core.paths import get_app_state_dir
from renderfarm.settings import FarmSettings, load_settings


class Container:
    """Resolves application services. Single place to swap implementations if needed."""

    def __init__(self, settings: FarmSettings | None = None, *, state_dir: Path | None = None) -> None:
        self._settings = settings
        self._state_dir = state_dir
        self._hub: NotificationHub | None = None
        self._journal_store: JsonlJobEventStore | None = None
        self._journal: JobJournal | None = None
        self._scheduler: Scheduler | None = None

    @property
    def settings(self) -> FarmSettings:
        if self._settings is None:
            self._settings = load_settings()
        return self._settings

    @property
    def state_dir(self) -> Path:
        if self._state_dir is None:
            self._state_dir = get_app_state_dir()
        return self._state_dir

    @property
    def hub(self) -> NotificationHub:
        if self._hub is None:
            self._hub = NotificationHub()
        return self._hub

    @property
    def journal_store(self) -> JsonlJobEventStore:
        if self._journal_store is None:
            self._journal_store = JsonlJobEventStore(self.state_dir / "jobs" / "renders.jsonl")
        return self._journal_store

    @property
    def journal(self) -> JobJournal | None:
        if not self.settings.journal_enabled:
            return None
        if self._journal is None:
            self._journal = JobJournal(self.hub, self.journal_store)
        return self._journal

    @property
    def scheduler(self) -> Scheduler:
        # Journal must be subscribed before the first JobCreated is published.
        _ = self.journal
        if self._scheduler is None:
            s = self.settings
            self._scheduler = Scheduler(
                self.hub,
                engine_path=s.blender_path,
                max_concurrent=s.max_concurrent,
                clear_includes_cancelled=s.clear_includes_cancelled,
                terminate_grace_sec=s.terminate_grace_sec,
                factory_startup=s.factory_startup,
                extra_args=s.extra_args,
            )
        return self._scheduler

    def shutdown(self) -> None:
        """Stop running renders, drain pending notifications and stop the hub."""
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=True)
        if self._hub is not None:
            self._hub.flush(timeout=5.0)
            if self._journal is not None:
                self._journal.close()
            self._hub.close()
