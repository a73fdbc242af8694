"""Render engine integration (Blender)."""

from .blender import (
    build_render_command,
    build_settings_script,
    format_command,
    locate_engine,
    output_pattern,
    probe_version,
)

__all__ = [
    "build_render_command",
    "build_settings_script",
    "format_command",
    "locate_engine",
    "output_pattern",
    "probe_version",
]
