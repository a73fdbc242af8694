"""Headless batch front end.

``renderfarm render scene.blend -o out/frame --frames 1-24 -j 2`` queues one
job per file, prints status changes and exits once the queue is idle.
``renderfarm check`` reports which Blender would be used.
``renderfarm history`` prints the job journal; ``--clear`` deletes it.
"""

from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from renderfarm.container import Container
from renderfarm.core.errors import AppError, EngineNotFound, ValidationError
from renderfarm.core.events import JobUpdated, JobWarning
from renderfarm.core.jobs import FrameRange, Job, JobSpec, JobStatus, RenderOptions
from renderfarm.core.observability.logging_config import setup_logging
from renderfarm.engine import locate_engine, probe_version
from renderfarm.settings import load_settings

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130


def parse_resolution(text: str) -> tuple[int, int]:
    """Parse ``1920x1080``."""
    try:
        w, h = text.lower().split("x", 1)
        return int(w), int(h)
    except ValueError as e:
        raise ValidationError(f"Invalid resolution {text!r}, expected WIDTHxHEIGHT", cause=e) from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="renderfarm", description="Queue Blender renders.")
    parser.add_argument("--config", type=Path, default=None, help="settings JSON file")
    parser.add_argument("--blender", default=None, help="path to the Blender executable")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    render = sub.add_parser("render", help="render one or more .blend files")
    render.add_argument("files", nargs="+", help="scene files to render")
    render.add_argument("-o", "--output", required=True, help="output path or directory")
    render.add_argument("--frames", default=None, help="frame N or range A-B")
    render.add_argument("--engine", default=None, choices=["CYCLES", "EEVEE", "WORKBENCH"])
    render.add_argument("--samples", type=int, default=None)
    render.add_argument("--resolution", default=None, help="WIDTHxHEIGHT")
    render.add_argument(
        "--format", dest="file_format", default=None, choices=["PNG", "JPEG", "TIFF", "EXR", "FFMPEG"]
    )
    render.add_argument("--quality", type=int, default=None, help="0..100")
    render.add_argument("--threads", type=int, default=0, help="0 lets Blender decide")
    render.add_argument("--gpu", action="store_true", help="render Cycles on the GPU")
    render.add_argument("-j", "--jobs", type=int, default=None, help="renders at a time")
    render.add_argument("--factory-startup", action="store_true", default=None)

    sub.add_parser("check", help="locate Blender and print its version")
    history = sub.add_parser("history", help="show the job journal")
    history.add_argument("--clear", action="store_true", help="delete the journal")
    return parser


def _output_for(output: str, input_file: str, many: bool) -> str:
    # Several inputs into one output: one sub-directory per scene.
    if not many:
        return output
    return str(Path(output) / Path(input_file).stem / "frame")


def _build_specs(args: argparse.Namespace) -> list[JobSpec]:
    frame_range = FrameRange.parse(args.frames) if args.frames else None
    options = RenderOptions(
        engine=args.engine,
        samples=args.samples,
        resolution=parse_resolution(args.resolution) if args.resolution else None,
        file_format=args.file_format,
        quality=args.quality,
        threads=args.threads,
        gpu=args.gpu,
    )
    many = len(args.files) > 1
    specs = [
        JobSpec(
            input_file=f,
            output_target=_output_for(args.output, f, many),
            frame_range=frame_range,
            options=options,
        )
        for f in args.files
    ]
    for spec in specs:
        spec.validate()
    return specs


class _StatusPrinter:
    """Prints a line whenever a job changes status or advances by 10%."""

    def __init__(self) -> None:
        self._seen: dict[str, tuple[JobStatus, int]] = {}

    def on_updated(self, e: JobUpdated) -> None:
        job = e.job
        step = job.progress_percent // 10
        if self._seen.get(job.id) == (job.status, step):
            return
        self._seen[job.id] = (job.status, step)
        print(self.describe(job), flush=True)

    def on_warning(self, e: JobWarning) -> None:
        print(f"  warning [{e.job_id[:8]}]: {e.message}", flush=True)

    @staticmethod
    def describe(job: Job) -> str:
        line = f"{job.name}: {job.status.value} {job.progress_percent}%"
        if job.current_frame is not None and job.total_frames:
            line += f" (frame {job.current_frame}, {job.total_frames} total)"
        if job.time_remaining:
            line += f" remaining {job.time_remaining}"
        if job.status is JobStatus.FAILED and job.error_detail:
            line += f"\n  {job.error_detail}"
        return line


def _run_render(args: argparse.Namespace, container: Container) -> int:
    specs = _build_specs(args)
    scheduler = container.scheduler
    if args.jobs is not None:
        scheduler.set_max_concurrent(args.jobs)

    printer = _StatusPrinter()
    container.hub.subscribe(JobUpdated, printer.on_updated)
    container.hub.subscribe(JobWarning, printer.on_warning)

    job_ids = [scheduler.submit(spec) for spec in specs]
    try:
        # Short waits keep the main thread responsive to Ctrl+C.
        while not scheduler.wait_idle(timeout=0.5):
            pass
    except KeyboardInterrupt:
        print("Interrupted, stopping renders...", file=sys.stderr, flush=True)
        scheduler.stop_all()
        return EXIT_INTERRUPTED
    finally:
        container.hub.flush(timeout=5.0)

    jobs = [job for job in (scheduler.get(jid) for jid in job_ids) if job is not None]
    done = sum(1 for job in jobs if job.status is JobStatus.COMPLETED)
    print(f"{done}/{len(jobs)} render(s) completed", flush=True)
    return EXIT_OK if done == len(jobs) else EXIT_FAILED


def _run_check(container: Container) -> int:
    try:
        engine = locate_engine(container.settings.blender_path)
        version = probe_version(engine)
    except EngineNotFound as e:
        print(str(e), file=sys.stderr)
        return EXIT_FAILED
    print(f"{version} ({engine})")
    return EXIT_OK


def describe_record(record: dict[str, Any]) -> str:
    """One journal line: timestamp, short job id, name and status."""
    ts = str(record.get("ts", ""))[:19].replace("T", " ")
    data = record.get("data") or {}
    if record.get("type") == "JobsRemoved":
        ids = ", ".join(str(i)[:8] for i in data.get("job_ids") or [])
        return f"{ts}  removed {ids}"
    job = data.get("job") or {}
    line = f"{ts}  {str(job.get('id', ''))[:8]}  {job.get('name', '?')}: {job.get('status', '?')}"
    if job.get("error_detail"):
        line += f" ({job['error_detail']})"
    return line


def _run_history(args: argparse.Namespace, container: Container) -> int:
    store = container.journal_store
    if args.clear:
        store.clear()
        print(f"Cleared {store.path}")
        return EXIT_OK
    records = store.load()
    if not records:
        print("Journal is empty")
    for record in records:
        print(describe_record(record))
    return EXIT_OK


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(level="DEBUG" if args.verbose else None)

    settings = load_settings(args.config)
    if args.blender:
        settings.blender_path = args.blender
    if getattr(args, "factory_startup", None):
        settings.factory_startup = True
    container = Container(settings)
    try:
        if args.command == "check":
            return _run_check(container)
        if args.command == "history":
            return _run_history(args, container)
        return _run_render(args, container)
    except ValidationError as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_USAGE
    except AppError as e:
        logger.exception("Render queue error")
        print(f"error: {e}", file=sys.stderr)
        return EXIT_FAILED
    finally:
        container.shutdown()
