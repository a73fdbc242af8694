"""Blender stdout -> progress.

Blender has no structured progress channel; everything is scraped from its
status lines, e.g.::

    Fra:12 Mem:102.4M (Peak 180.1M) | Time:00:03.21 | Remaining:00:41.90 | Scene | Sample 32/128
    Saved: '/renders/shot_0012.png'

``parse`` is a pure function. Chunks from the pipe do not line up with log
lines, so the incomplete tail of a chunk is carried forward in the returned
context and prepended to the next chunk.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, replace

from renderfarm.core.jobs.models import FrameRange

_LINE_SPLIT_RE = re.compile(r"\r\n|\r|\n")
_FRAME_RE = re.compile(r"\bFra:\s*(-?\d+)")
_PERCENT_RE = re.compile(r"(\d+(?:\.\d+)?)\s*%")
_SAMPLE_RE = re.compile(r"\b(?:Sample|Rendering)\s+(\d+)\s*/\s*(\d+)")
_TIME_RE = re.compile(r"\bTime:\s*([\d:.]+)")
_REMAINING_RE = re.compile(r"\bRemaining:\s*([\d:.]+s?)")
_SAVED_RE = re.compile(r"^\s*Saved:\s*['\"]?(.+?)['\"]?\s*$")
_ERROR_RE = re.compile(r"(?:^|\s)(?:Error:|ERROR\b|EXCEPTION|Traceback \(most recent call last\))")


@dataclass(frozen=True, slots=True)
class ProgressContext:
    frame_range: FrameRange | None = None
    last_frame: int | None = None
    last_percent: int | None = None
    pending: str = ""

    @property
    def total_frames(self) -> int:
        return self.frame_range.total if self.frame_range is not None else 1


@dataclass(frozen=True, slots=True)
class ProgressUpdate:
    context: ProgressContext
    current_frame: int | None = None
    total_frames: int | None = None
    progress_percent: int | None = None
    reported_percent: float | None = None
    time_elapsed: str | None = None
    time_remaining: str | None = None
    saved_files: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()
    lines: tuple[str, ...] = ()
    anomalies: tuple[str, ...] = ()
    has_progress: bool = False


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def frame_percent(frame: int, frame_range: FrameRange) -> int:
    total = frame_range.end - frame_range.start + 1
    if total <= 0:
        return 100
    pct = _round_half_up(100 * (frame - frame_range.start + 1) / total)
    return max(0, min(100, pct))


def _clamp_percent(value: float) -> int:
    return max(0, min(100, _round_half_up(value)))


def parse(chunk: str, context: ProgressContext) -> ProgressUpdate:
    """Parse one chunk of engine stdout on top of ``context``."""
    parts = _LINE_SPLIT_RE.split(context.pending + chunk)
    pending = parts.pop()
    lines = [ln.strip() for ln in parts if ln.strip()]

    frame = context.last_frame
    percent = context.last_percent
    reported: float | None = None
    elapsed: str | None = None
    remaining: str | None = None
    saved: list[str] = []
    errors: list[str] = []
    anomalies: list[str] = []

    for line in lines:
        frame_match = _FRAME_RE.search(line)
        if frame_match:
            frame = int(frame_match.group(1))
            if context.frame_range is not None and not context.frame_range.is_single:
                percent = frame_percent(frame, context.frame_range)
        elif "Fra:" in line:
            anomalies.append(line)

        line_percent: float | None = None
        sample_match = _SAMPLE_RE.search(line)
        if sample_match:
            done, total = int(sample_match.group(1)), int(sample_match.group(2))
            if total > 0:
                line_percent = 100.0 * done / total
            else:
                anomalies.append(line)
        pct_match = _PERCENT_RE.search(line)
        if pct_match:
            line_percent = float(pct_match.group(1))
        if line_percent is not None:
            reported = line_percent
            # Frame position wins for multi-frame jobs; sample/percent markers
            # only describe the frame being rendered.
            if context.frame_range is None or context.frame_range.is_single:
                percent = _clamp_percent(line_percent)

        if m := _TIME_RE.search(line):
            elapsed = m.group(1)
        if m := _REMAINING_RE.search(line):
            remaining = m.group(1)
        if m := _SAVED_RE.match(line):
            saved.append(m.group(1))
        if _ERROR_RE.search(line):
            errors.append(line)

    has_progress = frame != context.last_frame or percent != context.last_percent
    next_context = replace(context, last_frame=frame, last_percent=percent, pending=pending)
    return ProgressUpdate(
        context=next_context,
        current_frame=frame,
        total_frames=context.total_frames,
        progress_percent=percent,
        reported_percent=reported,
        time_elapsed=elapsed,
        time_remaining=remaining,
        saved_files=tuple(saved),
        errors=tuple(errors),
        lines=tuple(lines),
        anomalies=tuple(anomalies),
        has_progress=has_progress,
    )


def flush(context: ProgressContext) -> ProgressUpdate:
    """Parse whatever is still buffered once the stream has ended."""
    return parse("\n", context)
