"""Render farm settings (JSON).

Stored as a flat JSON object next to the project (``SETTINGS_PATH``) or at a
path given on the command line. Data is normalized through a typed dataclass:

- missing keys are filled with defaults
- basic type coercion is applied (e.g. "2" -> 2)
- unknown keys are ignored (forward compatibility)

Environment variables ``RENDERFARM_BLENDER`` and ``RENDERFARM_MAX_CONCURRENT``
override the file.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from renderfarm.config import DEFAULT_MAX_CONCURRENT, DEFAULT_TERMINATE_GRACE_SEC, SETTINGS_PATH

logger = logging.getLogger(__name__)

ENV_BLENDER = "RENDERFARM_BLENDER"
ENV_MAX_CONCURRENT = "RENDERFARM_MAX_CONCURRENT"


def _as_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        v = value.strip().lower()
        if v in {"true", "1", "yes", "y", "on"}:
            return True
        if v in {"false", "0", "no", "n", "off"}:
            return False
    if isinstance(value, (int, float)):
        return bool(value)
    return default


def _as_int(value: Any, default: int) -> int:
    try:
        if isinstance(value, bool):
            return default
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_float(value: Any, default: float) -> float:
    try:
        if isinstance(value, bool):
            return default
        return float(value)
    except (TypeError, ValueError):
        return default


def _as_opt_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _as_str_list(value: Any) -> list[str]:
    if isinstance(value, str):
        return value.split()
    if isinstance(value, list):
        return [str(v) for v in value if v is not None and not isinstance(v, (dict, list))]
    return []


@dataclass(slots=True)
class FarmSettings:
    blender_path: str | None = None
    max_concurrent: int = DEFAULT_MAX_CONCURRENT
    terminate_grace_sec: float = DEFAULT_TERMINATE_GRACE_SEC
    clear_includes_cancelled: bool = False
    factory_startup: bool = False
    extra_args: list[str] = field(default_factory=list)
    journal_enabled: bool = True

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> FarmSettings:
        m = data if isinstance(data, Mapping) else {}
        return cls(
            blender_path=_as_opt_str(m.get("blender_path")),
            max_concurrent=max(1, _as_int(m.get("max_concurrent"), DEFAULT_MAX_CONCURRENT)),
            terminate_grace_sec=max(
                0.0, _as_float(m.get("terminate_grace_sec"), DEFAULT_TERMINATE_GRACE_SEC)
            ),
            clear_includes_cancelled=_as_bool(m.get("clear_includes_cancelled"), False),
            factory_startup=_as_bool(m.get("factory_startup"), False),
            extra_args=_as_str_list(m.get("extra_args")),
            journal_enabled=_as_bool(m.get("journal_enabled"), True),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def with_env(self, environ: Mapping[str, str] | None = None) -> FarmSettings:
        """Return a copy with environment overrides applied."""
        env = os.environ if environ is None else environ
        data = self.to_dict()
        if env.get(ENV_BLENDER):
            data["blender_path"] = env[ENV_BLENDER]
        if env.get(ENV_MAX_CONCURRENT):
            data["max_concurrent"] = env[ENV_MAX_CONCURRENT]
        return FarmSettings.from_dict(data)


def load_settings(
    path: Path | None = None, *, environ: Mapping[str, str] | None = None
) -> FarmSettings:
    """Load settings from JSON, then apply environment overrides.

    Returns defaults if the file is missing or invalid.
    """
    p = path or SETTINGS_PATH
    settings = FarmSettings()
    if p.exists():
        try:
            with open(p, encoding="utf-8") as f:
                settings = FarmSettings.from_dict(json.load(f))
        except (json.JSONDecodeError, OSError):
            logger.warning("Ignoring unreadable settings file %s", p, exc_info=True)
    return settings.with_env(environ)


def save_settings(settings: FarmSettings, path: Path | None = None) -> None:
    p = path or SETTINGS_PATH
    p.parent.mkdir(parents=True, exist_ok=True)
    with open(p, "w", encoding="utf-8") as f:
        json.dump(FarmSettings.from_dict(settings.to_dict()).to_dict(), f, indent=2, ensure_ascii=False)
