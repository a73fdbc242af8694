from __future__ import annotations

from pathlib import Path

import pytest

from renderfarm.core.errors import EngineNotFound, ValidationError
from renderfarm.core.jobs import FrameRange, RenderOptions
from renderfarm.engine import blender
from renderfarm.engine.blender import (
    build_render_command,
    build_settings_script,
    format_command,
    locate_engine,
    output_pattern,
    probe_version,
)


def test_command_without_range_renders_single_default_frame() -> None:
    cmd = build_render_command("blender", "/s/a.blend", "/out/a", None, RenderOptions())

    assert cmd == [
        "blender",
        "--background",
        "/s/a.blend",
        "--render-output",
        "/out/a",
        "--render-frame",
        "1",
    ]


def test_command_for_single_frame() -> None:
    cmd = build_render_command("blender", "/s/a.blend", "/out/a", FrameRange(12, 12), RenderOptions())

    assert cmd[-2:] == ["--render-frame", "12"]
    assert "--render-anim" not in cmd


def test_command_for_frame_range_renders_animation() -> None:
    cmd = build_render_command(
        "blender",
        "/s/a.blend",
        "/out/a",
        FrameRange(1, 250),
        RenderOptions(),
        factory_startup=True,
        extra_args=["-noaudio"],
    )

    assert cmd[:4] == ["blender", "--background", "--factory-startup", "/s/a.blend"]
    assert cmd[cmd.index("--render-output") + 1] == "/out/a_####"
    assert cmd[-5:] == ["--frame-start", "1", "--frame-end", "250", "--render-anim"]
    assert cmd.index("-noaudio") < cmd.index("--frame-start")


def test_render_flags_come_after_settings_script() -> None:
    cmd = build_render_command(
        "blender", "/s/a.blend", "/out/a", FrameRange(1, 2), RenderOptions(samples=64)
    )

    assert cmd.index("--python-expr") < cmd.index("--render-output") < cmd.index("--render-anim")


@pytest.mark.parametrize(
    ("target", "expected"),
    [
        ("/out/shot", "/out/shot_####"),
        ("/out/", "/out/frame_####"),
        ("/out/shot_###.png", "/out/shot_###.png"),
    ],
)
def test_output_pattern_for_ranges(target: str, expected: str) -> None:
    assert output_pattern(target, FrameRange(1, 10)) == expected


def test_output_pattern_for_single_frame_is_untouched() -> None:
    assert output_pattern("/out/still", FrameRange(3, 3)) == "/out/still"
    assert output_pattern("/out/still", None) == "/out/still"


def test_settings_script_only_when_overridden() -> None:
    assert build_settings_script(RenderOptions()) is None

    script = build_settings_script(
        RenderOptions(
            engine="eevee",
            samples=64,
            resolution=(1280, 720),
            file_format="EXR",
            quality=90,
            threads=8,
            gpu=True,
        )
    )

    assert script is not None
    assert "render.engine = 'BLENDER_EEVEE'" in script
    assert "scene.cycles.samples = 64" in script
    assert "render.resolution_x = 1280" in script
    assert "render.resolution_y = 720" in script
    assert "file_format = 'OPEN_EXR'" in script
    assert "render.threads = 8" in script
    assert "scene.cycles.device = 'GPU'" in script
    compile(script, "<settings>", "exec")


def test_invalid_options_are_rejected() -> None:
    with pytest.raises(ValidationError):
        RenderOptions(engine="LUXCORE").validate()
    with pytest.raises(ValidationError):
        RenderOptions(quality=101).validate()
    with pytest.raises(ValidationError):
        FrameRange(10, 1)


@pytest.mark.parametrize(
    ("text", "expected"),
    [("12", FrameRange(12, 12)), ("1-250", FrameRange(1, 250)), ("1..24", FrameRange(1, 24))],
)
def test_frame_range_parse(text: str, expected: FrameRange) -> None:
    assert FrameRange.parse(text) == expected


def test_frame_range_parse_rejects_garbage() -> None:
    with pytest.raises(ValidationError):
        FrameRange.parse("one-two")


def test_format_command_quotes_arguments() -> None:
    assert format_command(["blender", "/my scenes/a.blend"]) == "blender '/my scenes/a.blend'"


def test_locate_engine_prefers_configured_path(tmp_path: Path) -> None:
    exe = tmp_path / "blender"
    exe.write_text("#!/bin/sh\n", encoding="utf-8")
    exe.chmod(0o755)

    assert locate_engine(str(exe)) == str(exe)


def test_locate_engine_missing_configured_path(tmp_path: Path) -> None:
    with pytest.raises(EngineNotFound):
        locate_engine(str(tmp_path / "nope" / "blender"))


def test_locate_engine_nothing_installed(monkeypatch) -> None:
    monkeypatch.setattr(blender.shutil, "which", lambda _name: None)
    monkeypatch.setattr(blender, "ENGINE_CANDIDATE_PATHS", ())

    with pytest.raises(EngineNotFound):
        locate_engine()


def test_locate_engine_searches_path(monkeypatch) -> None:
    monkeypatch.setattr(blender.shutil, "which", lambda name: f"/usr/bin/{name}")

    assert locate_engine() == "/usr/bin/blender"


def test_probe_version_reads_first_line(fake_blender: str) -> None:
    assert probe_version(fake_blender) == "Blender 4.1.0"


def test_probe_version_unrunnable_engine(tmp_path: Path) -> None:
    with pytest.raises(EngineNotFound):
        probe_version(str(tmp_path / "missing"))
