"""Render farm constants and default paths.

Contains the project root, settings file location, queue defaults and the
places where a Blender installation is usually found.
"""

from pathlib import Path

# Base paths
PROJECT_ROOT = Path(__file__).resolve().parent.parent
SETTINGS_PATH = PROJECT_ROOT / "renderfarm_settings.json"

# Queue
DEFAULT_MAX_CONCURRENT = 1
MAX_WORKERS = 16  # upper bound for the supervisor pool; max_concurrent is clamped to it
DEFAULT_TERMINATE_GRACE_SEC = 5.0

# Engine
ENGINE_EXECUTABLE = "blender"
ENGINE_CANDIDATE_PATHS = (
    "/usr/bin/blender",
    "/usr/local/bin/blender",
    "/snap/bin/blender",
    "/Applications/Blender.app/Contents/MacOS/Blender",
    r"C:\Program Files\Blender Foundation\Blender 4.2\blender.exe",
    r"C:\Program Files\Blender Foundation\Blender 4.1\blender.exe",
    r"C:\Program Files\Blender Foundation\Blender 4.0\blender.exe",
    r"C:\Program Files\Blender Foundation\Blender 3.6\blender.exe",
)
VERSION_PROBE_TIMEOUT_SEC = 30.0
DEFAULT_SINGLE_FRAME = 1
FRAME_PLACEHOLDER = "_####"

# Supervisor
STDOUT_CHUNK_BYTES = 4096
STDERR_TAIL_CHARS = 4000

# Render engine name -> scene.render.engine identifier
ENGINES = {
    "CYCLES": "CYCLES",
    "EEVEE": "BLENDER_EEVEE",
    "WORKBENCH": "BLENDER_WORKBENCH",
}
# Output format -> scene.render.image_settings.file_format identifier
FILE_FORMATS = {
    "PNG": "PNG",
    "JPEG": "JPEG",
    "TIFF": "TIFF",
    "EXR": "OPEN_EXR",
    "FFMPEG": "FFMPEG",
}
