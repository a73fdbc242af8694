"""One Blender invocation for one job run.

The supervisor runs on a worker thread: it may block on pipe I/O for as long as
the render takes. It never touches the job store; everything it learns goes
out through the callbacks, and the final verdict is the returned RunOutcome.
Termination signals the whole process tree (via psutil), since Blender may
start helper processes of its own.
"""

from __future__ import annotations

import codecs
import contextlib
import logging
import subprocess
import threading
from collections import deque
from collections.abc import Callable, Sequence
from concurrent.futures import Future
from dataclasses import dataclass
from pathlib import Path
from typing import IO

import psutil

from renderfarm.config import DEFAULT_TERMINATE_GRACE_SEC, STDERR_TAIL_CHARS, STDOUT_CHUNK_BYTES
from renderfarm.core.errors import (
    EngineNotFound,
    InputNotFound,
    KilledByRequest,
    NonZeroExit,
    SpawnFailure,
)
from renderfarm.core.jobs import progress_parser
from renderfarm.core.jobs.models import Job, JobStatus
from renderfarm.core.jobs.progress_parser import ProgressContext, ProgressUpdate
from renderfarm.engine.blender import (
    build_render_command,
    format_command,
    locate_engine,
    output_pattern,
)

logger = logging.getLogger(__name__)

SpawnFn = Callable[[int, str], None]
ProgressFn = Callable[[ProgressUpdate], None]
OutputFn = Callable[[Sequence[str]], None]


@dataclass(frozen=True, slots=True)
class RunOutcome:
    status: JobStatus
    exit_code: int | None = None
    error_detail: str | None = None
    failure_kind: str | None = None
    spawned: bool = False


@dataclass(slots=True)
class RenderHandle:
    job_id: str
    attempt: int
    supervisor: ProcessSupervisor
    future: Future[RunOutcome] | None = None

    def cancel(self) -> None:
        self.supervisor.cancel()


def _signal_tree(pid: int, *, kill: bool) -> None:
    try:
        parent = psutil.Process(pid)
        procs = [*parent.children(recursive=True), parent]
    except psutil.NoSuchProcess:
        return
    for p in procs:
        with contextlib.suppress(psutil.NoSuchProcess):
            if kill:
                p.kill()
            else:
                p.terminate()


class _StderrTail(threading.Thread):
    """Drains stderr so the engine never blocks on a full pipe; keeps the tail."""

    def __init__(self, stream: IO[bytes], on_output: OutputFn | None) -> None:
        super().__init__(name="render-stderr", daemon=True)
        self._stream = stream
        self._on_output = on_output
        self._chunks: deque[str] = deque()
        self._size = 0

    def run(self) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        for raw in iter(self._stream.readline, b""):
            text = decoder.decode(raw)
            self._chunks.append(text)
            self._size += len(text)
            while self._size > STDERR_TAIL_CHARS and len(self._chunks) > 1:
                self._size -= len(self._chunks.popleft())
            if self._on_output is not None and text.strip():
                self._on_output([text.rstrip()])

    @property
    def text(self) -> str:
        return "".join(self._chunks).strip()[-STDERR_TAIL_CHARS:]


class ProcessSupervisor:
    """Owns the full lifecycle of one engine process for one job run."""

    def __init__(
        self,
        job: Job,
        engine_path: str | None = None,
        *,
        on_spawn: SpawnFn | None = None,
        on_progress: ProgressFn | None = None,
        on_output: OutputFn | None = None,
        terminate_grace_sec: float = DEFAULT_TERMINATE_GRACE_SEC,
        factory_startup: bool = False,
        extra_args: Sequence[str] = (),
    ) -> None:
        self._job = job
        self._engine_path = engine_path
        self._on_spawn = on_spawn
        self._on_progress = on_progress
        self._on_output = on_output
        self._grace = terminate_grace_sec
        self._factory_startup = factory_startup
        self._extra_args = tuple(extra_args)
        self._lock = threading.Lock()
        self._proc: subprocess.Popen[bytes] | None = None
        self._cancel_requested = False
        self._kill_timer: threading.Timer | None = None

    @property
    def job_id(self) -> str:
        return self._job.id

    def start(self) -> RunOutcome:
        """Run the render to completion and report how it ended."""
        try:
            return self._run()
        finally:
            timer = self._kill_timer
            if timer is not None:
                timer.cancel()

    def cancel(self) -> None:
        """Request termination: SIGTERM now, SIGKILL after the grace period.

        Idempotent, returns immediately. Cancelling before the spawn prevents it.
        """
        with self._lock:
            if self._cancel_requested:
                return
            self._cancel_requested = True
            proc = self._proc
        if proc is None or proc.poll() is not None:
            return
        logger.info(
            "Terminating render process",
            extra={"job_id": self._job.id, "pid": proc.pid},
        )
        try:
            _signal_tree(proc.pid, kill=False)
        except psutil.Error:
            logger.warning("Tree terminate failed; signalling the engine only", exc_info=True)
            proc.terminate()
        timer = threading.Timer(self._grace, self._force_kill, args=(proc,))
        timer.daemon = True
        self._kill_timer = timer
        timer.start()

    def _force_kill(self, proc: subprocess.Popen[bytes]) -> None:
        if proc.poll() is not None:
            return
        logger.warning(
            "Render process ignored terminate; killing",
            extra={"job_id": self._job.id, "pid": proc.pid},
        )
        try:
            _signal_tree(proc.pid, kill=True)
        except psutil.Error:
            proc.kill()

    def _run(self) -> RunOutcome:
        job = self._job
        try:
            cmd = self._prepare()
            proc = self._spawn(cmd)
        except (EngineNotFound, InputNotFound, SpawnFailure) as e:
            logger.warning(
                "Render could not start: %s", e, extra={"job_id": job.id, "event": e.kind}
            )
            return RunOutcome(JobStatus.FAILED, error_detail=str(e), failure_kind=e.kind)
        if proc is None:
            return RunOutcome(JobStatus.CANCELLED)

        assert proc.stdout is not None and proc.stderr is not None
        stderr_tail = _StderrTail(proc.stderr, self._on_output)
        stderr_tail.start()
        try:
            self._pump_stdout(proc.stdout)
        except BaseException:
            proc.kill()
            raise
        finally:
            exit_code = proc.wait()
            stderr_tail.join(timeout=2.0)
            proc.stdout.close()
            proc.stderr.close()
        return self._outcome(exit_code, stderr_tail.text)

    def _prepare(self) -> list[str]:
        job = self._job
        engine = locate_engine(self._engine_path)
        if not Path(job.input_file).is_file():
            raise InputNotFound(f"Input file not found: {job.input_file}")
        out_dir = Path(output_pattern(job.output_target, job.frame_range)).parent
        try:
            out_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SpawnFailure(f"Cannot create output directory {out_dir}", cause=e) from e
        return build_render_command(
            engine,
            job.input_file,
            job.output_target,
            job.frame_range,
            job.options,
            factory_startup=self._factory_startup,
            extra_args=self._extra_args,
        )

    def _spawn(self, cmd: list[str]) -> subprocess.Popen[bytes] | None:
        cmdline = format_command(cmd)
        with self._lock:
            if self._cancel_requested:
                return None
            try:
                proc = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    bufsize=0,
                )
            except OSError as e:
                raise SpawnFailure(f"Failed to start Blender: {e}", cause=e) from e
            self._proc = proc
        logger.info(
            "Started render: %s", cmdline, extra={"job_id": self._job.id, "pid": proc.pid}
        )
        if self._on_spawn is not None:
            self._on_spawn(proc.pid, cmdline)
        return proc

    def _pump_stdout(self, stream: IO[bytes]) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        ctx = ProgressContext(frame_range=self._job.frame_range)
        while True:
            data = stream.read(STDOUT_CHUNK_BYTES)
            if not data:
                break
            ctx = self._feed(progress_parser.parse(decoder.decode(data), ctx))
        tail = decoder.decode(b"", final=True)
        if tail:
            ctx = self._feed(progress_parser.parse(tail, ctx))
        self._feed(progress_parser.flush(ctx))

    def _feed(self, update: ProgressUpdate) -> ProgressContext:
        for line in update.anomalies:
            logger.debug("Unparsed progress line: %r", line, extra={"job_id": self._job.id})
        if self._cancel_requested:
            return update.context
        if update.lines and self._on_output is not None:
            self._on_output(update.lines)
        if self._on_progress is not None and (
            update.has_progress or update.saved_files or update.errors or update.time_remaining
        ):
            self._on_progress(update)
        return update.context

    def _outcome(self, exit_code: int, stderr_text: str) -> RunOutcome:
        if self._cancel_requested:
            reason = KilledByRequest(f"Render process stopped on request (exit code {exit_code})")
            logger.info("%s", reason, extra={"job_id": self._job.id, "exit_code": exit_code})
            return RunOutcome(JobStatus.CANCELLED, exit_code=exit_code, spawned=True)
        if exit_code == 0:
            return RunOutcome(JobStatus.COMPLETED, exit_code=0, spawned=True)
        if exit_code < 0:
            message = f"Render process terminated by signal {-exit_code}"
        else:
            message = f"Render process exited with code {exit_code}"
        if stderr_text:
            message = f"{message}: {stderr_text}"
        err = NonZeroExit(message, exit_code=exit_code, stderr_tail=stderr_text)
        logger.warning(
            "Render failed", extra={"job_id": self._job.id, "exit_code": exit_code}
        )
        return RunOutcome(
            JobStatus.FAILED,
            exit_code=exit_code,
            error_detail=str(err),
            failure_kind=err.kind,
            spawned=True,
        )
