from __future__ import annotations

import re
import time
from collections.abc import Iterable
from threading import Lock

from renderfarm.core.events import JobLogLine, NotificationHub

LOG_BATCH_INTERVAL_SEC = 0.15
LOG_BATCH_MAX_LINES = 40
_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")
_CTRL_RE = re.compile(r"[\x00-\x08\x0B-\x1F\x7F-\x9F]")


def clean_log_line(line: str) -> str:
    return _CTRL_RE.sub("", _ANSI_RE.sub("", str(line))).strip()


class JobLogBuffer:
    """Batches engine output lines into JobLogLine events.

    Blender prints a status line per sample; publishing each one would flood
    observers, so lines are grouped per ``LOG_BATCH_INTERVAL_SEC``.
    """

    def __init__(self, hub: NotificationHub, job_id: str) -> None:
        self._hub = hub
        self._job_id = job_id
        self._pending: list[str] = []
        self._last_flush_ts = 0.0
        self._lock = Lock()

    def add_lines(self, lines: Iterable[str]) -> None:
        with self._lock:
            for line in lines:
                ln = clean_log_line(line)
                if ln:
                    self._pending.append(ln)
        self.flush()

    def flush(self, *, force: bool = False) -> None:
        with self._lock:
            if not self._pending:
                return
            now = time.monotonic()
            if not force and (now - self._last_flush_ts) < LOG_BATCH_INTERVAL_SEC:
                return
            while self._pending:
                chunk = self._pending[:LOG_BATCH_MAX_LINES]
                del self._pending[:LOG_BATCH_MAX_LINES]
                self._hub.publish(JobLogLine(job_id=self._job_id, line="\n".join(chunk)))
            self._last_flush_ts = now
