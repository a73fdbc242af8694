from __future__ import annotations

import sys
import threading
import time
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from renderfarm.core.events import NotificationHub
from renderfarm.core.jobs import Job, JobStatus, RunOutcome, Scheduler

FAKE_PID = 4242


class FakeSupervisor:
    """Stands in for a Blender run; the test decides when and how it ends."""

    def __init__(self, job: Job, *, on_spawn, on_progress, on_output) -> None:
        self.job = job
        self.on_spawn = on_spawn
        self.on_progress = on_progress
        self.on_output = on_output
        self.started = threading.Event()
        self.cancelled = threading.Event()
        self.crash: Exception | None = None
        self.ignores_cancel = False
        self._done = threading.Event()
        self._exit_code = 0

    def start(self) -> RunOutcome:
        if self.crash is not None:
            raise self.crash
        self.on_spawn(FAKE_PID, f"blender --background {self.job.input_file}")
        self.started.set()
        self._done.wait(timeout=10.0)
        if self.cancelled.is_set():
            return RunOutcome(JobStatus.CANCELLED, spawned=True)
        if self._exit_code == 0:
            return RunOutcome(JobStatus.COMPLETED, exit_code=0, spawned=True)
        return RunOutcome(
            JobStatus.FAILED,
            exit_code=self._exit_code,
            error_detail=f"Render process exited with code {self._exit_code}",
            failure_kind="non_zero_exit",
            spawned=True,
        )

    def cancel(self) -> None:
        self.cancelled.set()
        if not self.ignores_cancel:
            self._done.set()

    def finish(self, exit_code: int = 0) -> None:
        self._exit_code = exit_code
        self._done.set()


class FakeEngine:
    """Supervisor factory that records every run the scheduler starts."""

    def __init__(self) -> None:
        self.pid = FAKE_PID
        self.runs: list[FakeSupervisor] = []
        self.crash_next: Exception | None = None
        self.ignore_cancel = False

    def __call__(self, job: Job, **callbacks) -> FakeSupervisor:
        sup = FakeSupervisor(job, **callbacks)
        if self.crash_next is not None:
            sup.crash, self.crash_next = self.crash_next, None
        sup.ignores_cancel = self.ignore_cancel
        self.runs.append(sup)
        return sup

    def run_for(self, job_id: str) -> FakeSupervisor:
        return [s for s in self.runs if s.job.id == job_id][-1]

    def spawned_ids(self) -> list[str]:
        return [s.job.id for s in self.runs]


def _wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def wait_until() -> Callable[..., bool]:
    return _wait_until


@pytest.fixture
def hub() -> Iterator[NotificationHub]:
    h = NotificationHub()
    yield h
    h.close()


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def make_scheduler(hub: NotificationHub, engine: FakeEngine) -> Iterator[Callable[..., Scheduler]]:
    created: list[Scheduler] = []

    def _make(**kwargs) -> Scheduler:
        s = Scheduler(hub, supervisor_factory=engine, **kwargs)
        created.append(s)
        return s

    yield _make
    for s in created:
        s.shutdown(wait=True)


FAKE_BLENDER = """#!{python}
import os
import signal
import sys
import time

args = sys.argv[1:]
if "--version" in args:
    print("Blender 4.1.0")
    print("\\tbuild date: 2024-03-25")
    sys.exit(0)

out = args[args.index("--render-output") + 1]
mode = os.environ.get("FAKE_BLENDER_MODE", "ok")
print("Blender 4.1.0 (hash 1234)", flush=True)
if mode == "ok":
    print("Fra:1 Mem:10.0M (Peak 12.0M) | Time:00:00.50 | Remaining:00:01.50 | Scene | Sample 16/32")
    print("Fra:1 Mem:10.0M (Peak 12.0M) | Time:00:01.00 | Remaining:00:00.00 | Scene | Sample 32/32")
    print("Saved: '" + out + ".png'")
    sys.exit(0)
if mode == "fail":
    print("Error: Cannot read file 'scene.blend'", flush=True)
    print("boom: unsupported file", file=sys.stderr, flush=True)
    sys.exit(3)
if mode == "hang":
    print("Fra:1 Mem:10.0M | Sample 1/4096", flush=True)
    time.sleep(60)
    sys.exit(0)
if mode == "stubborn":
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
    print("Fra:1 Mem:10.0M | Sample 1/4096", flush=True)
    time.sleep(60)
    sys.exit(0)
sys.exit(9)
"""


@pytest.fixture
def fake_blender(tmp_path: Path) -> str:
    if sys.platform.startswith("win"):
        pytest.skip("fake engine script needs a POSIX shebang")
    script = tmp_path / "blender"
    script.write_text(FAKE_BLENDER.format(python=sys.executable), encoding="utf-8")
    script.chmod(0o755)
    return str(script)


@pytest.fixture
def blend_file(tmp_path: Path) -> Path:
    p = tmp_path / "scene.blend"
    p.write_bytes(b"BLENDER-v401")
    return p
