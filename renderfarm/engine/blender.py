"""Blender command-line contract.

Everything the queue knows about the engine lives here: where to find the
executable, how to ask its version, and how a job turns into argv.
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING

from renderfarm.config import (
    DEFAULT_SINGLE_FRAME,
    ENGINE_CANDIDATE_PATHS,
    ENGINE_EXECUTABLE,
    ENGINES,
    FILE_FORMATS,
    FRAME_PLACEHOLDER,
    VERSION_PROBE_TIMEOUT_SEC,
)
from renderfarm.core.errors import EngineNotFound

if TYPE_CHECKING:
    from renderfarm.core.jobs.models import FrameRange, RenderOptions

logger = logging.getLogger(__name__)

_GPU_BACKENDS = ("OPTIX", "CUDA", "HIP", "METAL", "ONEAPI")


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def locate_engine(configured: str | None = None) -> str:
    """Resolve the Blender executable.

    An explicitly configured path must exist; otherwise ``PATH`` and the usual
    install locations are searched.
    """
    if configured:
        p = Path(configured).expanduser()
        if _is_executable(p):
            return str(p)
        found = shutil.which(configured)
        if found:
            return found
        raise EngineNotFound(f"Blender not found at {configured!r}")

    found = shutil.which(ENGINE_EXECUTABLE)
    if found:
        return found
    for candidate in ENGINE_CANDIDATE_PATHS:
        if _is_executable(Path(candidate)):
            return candidate
    raise EngineNotFound(
        "Blender installation not found. Install Blender, add it to PATH or set its path."
    )


def probe_version(engine_path: str, *, timeout: float = VERSION_PROBE_TIMEOUT_SEC) -> str:
    """Return the first line of ``blender --version`` (e.g. ``Blender 4.1.0``)."""
    try:
        out = subprocess.run(
            [engine_path, "--version"],
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        raise EngineNotFound(f"Could not run {engine_path!r}", cause=e) from e
    if out.returncode != 0:
        raise EngineNotFound(f"{engine_path!r} --version exited with code {out.returncode}")
    for line in out.stdout.splitlines():
        if line.strip():
            return line.strip()
    return "unknown"


def output_pattern(output_target: str, frame_range: FrameRange | None) -> str:
    """Output path for ``--render-output``; ranges get a ``####`` frame placeholder."""
    if frame_range is None or frame_range.is_single:
        return output_target
    if "#" in Path(output_target).name:
        return output_target
    if output_target.endswith(("/", "\\")):
        return f"{output_target}frame{FRAME_PLACEHOLDER}"
    return f"{output_target}{FRAME_PLACEHOLDER}"


def build_settings_script(options: RenderOptions) -> str | None:
    """Python run inside Blender (``--python-expr``) to apply render overrides."""
    if not options.has_overrides():
        return None
    lines = [
        "import bpy",
        "scene = bpy.context.scene",
        "render = scene.render",
    ]
    if options.engine is not None:
        lines.append(f"render.engine = {ENGINES[options.engine.upper()]!r}")
    if options.samples is not None:
        lines += [
            "if render.engine == 'CYCLES':",
            f"    scene.cycles.samples = {int(options.samples)}",
            "elif render.engine.startswith('BLENDER_EEVEE'):",
            f"    scene.eevee.taa_render_samples = {int(options.samples)}",
        ]
    if options.resolution is not None:
        width, height = options.resolution
        lines += [
            f"render.resolution_x = {int(width)}",
            f"render.resolution_y = {int(height)}",
            "render.resolution_percentage = 100",
        ]
    if options.file_format is not None:
        lines.append(
            f"render.image_settings.file_format = {FILE_FORMATS[options.file_format.upper()]!r}"
        )
    if options.quality is not None:
        q = int(options.quality)
        lines += [
            f"render.image_settings.quality = {q}",
            "if render.image_settings.file_format == 'PNG':",
            f"    render.image_settings.compression = {100 - q}",
        ]
    if options.threads > 0:
        lines += [
            "render.threads_mode = 'FIXED'",
            f"render.threads = {int(options.threads)}",
        ]
    if options.gpu:
        lines += [
            "if render.engine == 'CYCLES':",
            "    prefs = bpy.context.preferences.addons['cycles'].preferences",
            f"    for backend in {_GPU_BACKENDS!r}:",
            "        try:",
            "            prefs.compute_device_type = backend",
            "            break",
            "        except TypeError:",
            "            continue",
            "    prefs.get_devices()",
            "    for device in prefs.devices:",
            "        device.use = True",
            "    scene.cycles.device = 'GPU'",
        ]
    return "\n".join(lines)


def build_render_command(
    engine_path: str,
    input_file: str,
    output_target: str,
    frame_range: FrameRange | None,
    options: RenderOptions,
    *,
    factory_startup: bool = False,
    extra_args: Sequence[str] = (),
) -> list[str]:
    """argv for one headless render.

    Blender applies arguments in order, so the scene is loaded first, then the
    settings script and output path, and the render flag comes last.
    """
    cmd = [engine_path, "--background"]
    if factory_startup:
        cmd.append("--factory-startup")
    cmd.append(str(input_file))
    script = build_settings_script(options)
    if script is not None:
        cmd += ["--python-expr", script]
    cmd += ["--render-output", output_pattern(output_target, frame_range)]
    cmd += list(extra_args)
    if frame_range is None:
        cmd += ["--render-frame", str(DEFAULT_SINGLE_FRAME)]
    elif frame_range.is_single:
        cmd += ["--render-frame", str(frame_range.start)]
    else:
        cmd += [
            "--frame-start",
            str(frame_range.start),
            "--frame-end",
            str(frame_range.end),
            "--render-anim",
        ]
    return cmd


def format_command(cmd: Sequence[str]) -> str:
    return " ".join(shlex.quote(c) for c in cmd)
