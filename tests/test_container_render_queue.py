from __future__ import annotations

import json
from pathlib import Path

import psutil

from renderfarm.container import Container
from renderfarm.core.jobs import FrameRange, JobSpec, JobStatus
from renderfarm.settings import FarmSettings


def test_container_journals_failed_job_when_engine_missing(tmp_path: Path) -> None:
    settings = FarmSettings(blender_path=str(tmp_path / "missing-blender"), journal_enabled=True)
    container = Container(settings, state_dir=tmp_path / "state")

    job_id = container.scheduler.submit(
        JobSpec(input_file=str(tmp_path / "a.blend"), output_target=str(tmp_path / "out"))
    )
    assert container.scheduler.wait_idle(timeout=5.0)

    job = container.scheduler.get(job_id)
    assert job.status is JobStatus.FAILED
    assert job.failure_kind == "engine_not_found"

    container.shutdown()
    journal = tmp_path / "state" / "jobs" / "renders.jsonl"
    types = [json.loads(line)["type"] for line in journal.read_text("utf-8").splitlines()]
    assert types[0] == "JobCreated"
    assert types[-1] == "JobUpdated"


def test_container_without_journal(tmp_path: Path) -> None:
    container = Container(FarmSettings(journal_enabled=False), state_dir=tmp_path)

    assert container.journal is None
    assert container.scheduler.max_concurrent == 1

    container.shutdown()
    assert not (tmp_path / "jobs").exists()


def test_real_supervisor_runs_frame_range_end_to_end(
    fake_blender: str, blend_file: Path, tmp_path: Path, monkeypatch
) -> None:
    monkeypatch.setenv("FAKE_BLENDER_MODE", "ok")
    container = Container(
        FarmSettings(blender_path=fake_blender, journal_enabled=False), state_dir=tmp_path
    )

    job_id = container.scheduler.submit(
        JobSpec(
            input_file=str(blend_file),
            output_target=str(tmp_path / "out" / "shot"),
            frame_range=FrameRange(1, 4),
        )
    )
    assert container.scheduler.wait_idle(timeout=10.0)

    job = container.scheduler.get(job_id)
    assert job.status is JobStatus.COMPLETED
    assert job.progress_percent == 100
    assert job.current_frame == 4
    assert job.total_frames == 4
    assert job.output_files == [str(tmp_path / "out" / "shot_####") + ".png"]
    assert "--frame-start 1 --frame-end 4 --render-anim" in (job.command or "")
    container.shutdown()


def test_retry_starts_new_engine_only_after_old_one_is_gone(
    fake_blender: str, blend_file: Path, tmp_path: Path, monkeypatch, wait_until
) -> None:
    monkeypatch.setenv("FAKE_BLENDER_MODE", "stubborn")
    container = Container(
        FarmSettings(blender_path=fake_blender, journal_enabled=False, terminate_grace_sec=0.5),
        state_dir=tmp_path,
    )
    scheduler = container.scheduler
    job_id = scheduler.submit(
        JobSpec(input_file=str(blend_file), output_target=str(tmp_path / "out" / "still"))
    )
    assert wait_until(lambda: scheduler.get(job_id).current_frame == 1, 5.0)
    old_pid = scheduler.get(job_id).pid
    assert old_pid is not None

    scheduler.cancel(job_id)
    monkeypatch.setenv("FAKE_BLENDER_MODE", "ok")
    assert scheduler.retry(job_id)

    assert scheduler.get(job_id).status is JobStatus.PENDING
    assert psutil.pid_exists(old_pid)
    assert scheduler.wait_idle(timeout=10.0)

    job = scheduler.get(job_id)
    assert job.status is JobStatus.COMPLETED
    assert job.attempt == 2
    assert not psutil.pid_exists(old_pid)
    container.shutdown()
