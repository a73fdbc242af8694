from __future__ import annotations

import threading
import time
from pathlib import Path

import psutil

from renderfarm.core.jobs import Job, JobSpec, JobStatus, ProcessSupervisor, RunOutcome
from renderfarm.core.jobs.progress_parser import ProgressUpdate


class _Recorder:
    def __init__(self) -> None:
        self.spawned = threading.Event()
        self.pid: int | None = None
        self.cmdline = ""
        self.updates: list[ProgressUpdate] = []
        self.output: list[str] = []

    def on_spawn(self, pid: int, cmdline: str) -> None:
        self.pid = pid
        self.cmdline = cmdline
        self.spawned.set()

    def on_progress(self, update: ProgressUpdate) -> None:
        self.updates.append(update)

    def on_output(self, lines) -> None:
        self.output.extend(lines)


def _supervisor(job: Job, engine: str, rec: _Recorder, **kwargs) -> ProcessSupervisor:
    return ProcessSupervisor(
        job,
        engine,
        on_spawn=rec.on_spawn,
        on_progress=rec.on_progress,
        on_output=rec.on_output,
        **kwargs,
    )


def _job(blend: Path, tmp_path: Path) -> Job:
    spec = JobSpec(input_file=str(blend), output_target=str(tmp_path / "out" / "still"))
    return Job.from_spec("job-1", spec)


def test_successful_render_reports_progress_and_saved_file(
    fake_blender: str, blend_file: Path, tmp_path: Path, monkeypatch
) -> None:
    monkeypatch.setenv("FAKE_BLENDER_MODE", "ok")
    rec = _Recorder()

    outcome = _supervisor(_job(blend_file, tmp_path), fake_blender, rec).start()

    assert outcome == RunOutcome(JobStatus.COMPLETED, exit_code=0, spawned=True)
    assert rec.pid is not None
    assert rec.cmdline.startswith(fake_blender)
    assert "--render-frame 1" in rec.cmdline
    assert (tmp_path / "out").is_dir()
    percents = [u.progress_percent for u in rec.updates if u.progress_percent is not None]
    assert percents[-1] == 100
    saved = [p for u in rec.updates for p in u.saved_files]
    assert saved == [str(tmp_path / "out" / "still") + ".png"]
    assert any(ln.startswith("Fra:1") for ln in rec.output)


def test_failed_render_carries_exit_code_and_stderr(
    fake_blender: str, blend_file: Path, tmp_path: Path, monkeypatch
) -> None:
    monkeypatch.setenv("FAKE_BLENDER_MODE", "fail")
    rec = _Recorder()

    outcome = _supervisor(_job(blend_file, tmp_path), fake_blender, rec).start()

    assert outcome.status is JobStatus.FAILED
    assert outcome.exit_code == 3
    assert outcome.failure_kind == "non_zero_exit"
    assert "exited with code 3" in (outcome.error_detail or "")
    assert "boom: unsupported file" in (outcome.error_detail or "")
    assert [e for u in rec.updates for e in u.errors] == ["Error: Cannot read file 'scene.blend'"]


def test_cancel_terminates_running_render(
    fake_blender: str, blend_file: Path, tmp_path: Path, monkeypatch
) -> None:
    monkeypatch.setenv("FAKE_BLENDER_MODE", "hang")
    rec = _Recorder()
    sup = _supervisor(_job(blend_file, tmp_path), fake_blender, rec, terminate_grace_sec=1.0)
    result: list[RunOutcome] = []
    worker = threading.Thread(target=lambda: result.append(sup.start()))
    worker.start()
    assert rec.spawned.wait(timeout=5.0)

    sup.cancel()
    sup.cancel()
    worker.join(timeout=10.0)

    assert not worker.is_alive()
    assert result[0].status is JobStatus.CANCELLED
    assert result[0].spawned


def test_cancel_kills_engine_that_ignores_terminate(
    fake_blender: str, blend_file: Path, tmp_path: Path, monkeypatch, wait_until
) -> None:
    monkeypatch.setenv("FAKE_BLENDER_MODE", "stubborn")
    rec = _Recorder()
    sup = _supervisor(_job(blend_file, tmp_path), fake_blender, rec, terminate_grace_sec=0.5)
    result: list[RunOutcome] = []
    worker = threading.Thread(target=lambda: result.append(sup.start()))
    worker.start()
    assert wait_until(lambda: any(ln.startswith("Fra:1") for ln in rec.output), 5.0)

    started = time.monotonic()
    sup.cancel()
    worker.join(timeout=10.0)

    assert not worker.is_alive()
    assert time.monotonic() - started >= 0.4
    assert result[0].status is JobStatus.CANCELLED
    assert result[0].exit_code == -9
    assert rec.pid is not None
    assert not psutil.pid_exists(rec.pid)


def test_cancel_before_start_never_spawns(
    fake_blender: str, blend_file: Path, tmp_path: Path
) -> None:
    rec = _Recorder()
    sup = _supervisor(_job(blend_file, tmp_path), fake_blender, rec)

    sup.cancel()
    outcome = sup.start()

    assert outcome == RunOutcome(JobStatus.CANCELLED)
    assert not rec.spawned.is_set()


def test_missing_input_fails_without_spawning(fake_blender: str, tmp_path: Path) -> None:
    rec = _Recorder()
    outcome = _supervisor(_job(tmp_path / "gone.blend", tmp_path), fake_blender, rec).start()

    assert outcome.status is JobStatus.FAILED
    assert outcome.failure_kind == "input_not_found"
    assert not outcome.spawned
    assert not rec.spawned.is_set()


def test_missing_engine_fails_without_spawning(blend_file: Path, tmp_path: Path) -> None:
    rec = _Recorder()
    engine = str(tmp_path / "no-such-blender")

    outcome = _supervisor(_job(blend_file, tmp_path), engine, rec).start()

    assert outcome.status is JobStatus.FAILED
    assert outcome.failure_kind == "engine_not_found"
    assert "no-such-blender" in (outcome.error_detail or "")
    assert not rec.spawned.is_set()


def test_unexpected_exit_code_is_failure(
    fake_blender: str, blend_file: Path, tmp_path: Path, monkeypatch
) -> None:
    monkeypatch.setenv("FAKE_BLENDER_MODE", "unknown-mode")

    outcome = _supervisor(_job(blend_file, tmp_path), fake_blender, _Recorder()).start()

    assert outcome.status is JobStatus.FAILED
    assert outcome.exit_code == 9
