from __future__ import annotations

import json
import logging
from dataclasses import asdict, is_dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Protocol, cast

from renderfarm.core.events import (
    JobCreated,
    JobsRemoved,
    JobUpdated,
    NotificationHub,
    Subscription,
)
from renderfarm.core.jobs.models import JobStatus

logger = logging.getLogger(__name__)

JobEvent = JobCreated | JobUpdated | JobsRemoved


class JobEventStore(Protocol):
    def load(self) -> list[dict[str, Any]]:
        """Load previously stored events."""

    def append(self, event: dict[str, Any]) -> None:
        """Append a single event record."""

    def clear(self) -> None:
        """Clear all stored events."""


class JsonlJobEventStore:
    """Append-only JSONL journal of job events.

    Stores one JSON object per line. Designed to be resilient:
    - ignores malformed lines on load
    - creates parent dirs automatically
    - rotates the file once it grows past ``max_bytes``
    """

    def __init__(
        self,
        path: Path,
        *,
        max_bytes: int = 5 * 1024 * 1024,
        max_archives: int = 5,
    ) -> None:
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._max_bytes = int(max_bytes)
        self._max_archives = int(max_archives)

    @property
    def path(self) -> Path:
        return self._path

    def _rotate_if_needed(self) -> None:
        if self._max_bytes <= 0 or not self._path.exists():
            return
        if self._path.stat().st_size <= self._max_bytes:
            return
        ts = datetime.now().strftime("%Y%m%d-%H%M%S-%f")
        self._path.replace(self._path.with_name(f"{self._path.stem}.{ts}{self._path.suffix}"))
        archives = sorted(
            self._path.parent.glob(f"{self._path.stem}.*{self._path.suffix}"),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        for p in archives[self._max_archives :]:
            p.unlink(missing_ok=True)

    def load(self) -> list[dict[str, Any]]:
        if not self._path.exists():
            return []
        out: list[dict[str, Any]] = []
        with self._path.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    obj = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if isinstance(obj, dict) and "type" in obj and "data" in obj:
                    out.append(obj)
        return out

    def append(self, event: dict[str, Any]) -> None:
        try:
            self._rotate_if_needed()
            with self._path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(event, ensure_ascii=False) + "\n")
        except OSError:
            # Journal write failures are logged, never raised.
            logger.warning("Could not write job journal %s", self._path, exc_info=True)

    def clear(self) -> None:
        self._path.unlink(missing_ok=True)


def _safe_serialize(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    if is_dataclass(value) and not isinstance(value, type):
        return {k: _safe_serialize(v) for k, v in asdict(cast(Any, value)).items()}
    if isinstance(value, dict):
        return {str(k): _safe_serialize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = sorted(value) if isinstance(value, (set, frozenset)) else value
        return [_safe_serialize(v) for v in items]
    return repr(value)[:1000]


def pack_job_event(e: JobEvent) -> dict[str, Any]:
    """Convert a job event to a JSON-serializable dict."""
    return {
        "type": type(e).__name__,
        "data": _safe_serialize(e),
        "ts": datetime.now().isoformat(),
    }


class JobJournal:
    """Hub observer that appends job lifecycle events to a store.

    ``JobUpdated`` is journalled only when the job's status changes; progress
    ticks within a status are skipped.
    """

    def __init__(self, hub: NotificationHub, store: JobEventStore) -> None:
        self._hub = hub
        self._store = store
        self._statuses: dict[str, JobStatus] = {}
        self._subscriptions: list[Subscription] = [
            hub.subscribe(JobCreated, self._on_created),
            hub.subscribe(JobUpdated, self._on_updated),
            hub.subscribe(JobsRemoved, self._on_removed),
        ]

    def _on_created(self, e: JobCreated) -> None:
        self._statuses[e.job.id] = e.job.status
        self._append(e)

    def _on_updated(self, e: JobUpdated) -> None:
        if self._statuses.get(e.job.id) is e.job.status:
            return
        self._statuses[e.job.id] = e.job.status
        self._append(e)

    def _on_removed(self, e: JobsRemoved) -> None:
        for job_id in e.job_ids:
            self._statuses.pop(job_id, None)
        self._append(e)

    def _append(self, e: JobEvent) -> None:
        self._store.append(pack_job_event(e))

    def close(self) -> None:
        for sub in self._subscriptions:
            self._hub.unsubscribe(sub)
        self._subscriptions.clear()
