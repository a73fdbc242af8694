"""
Entry point for the headless render queue.

Run: python main.py render scene.blend -o out/frame --frames 1-24
Requires: pip install -e .
"""
from __future__ import annotations

import sys

from renderfarm.cli import main

if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        sys.exit(130)
