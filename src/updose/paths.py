from __future__ import annotations

import os
from pathlib import Path

from .errors import PathTraversalError


def ensure_within_dir(root: str | Path, dest_path: str) -> Path:
    """
    Resolve dest_path against root and make sure the result stays inside root.

    Absolute paths and "../" escapes are rejected rather than clamped.
    """
    base = Path(os.path.abspath(root))
    resolved = Path(os.path.abspath(os.path.join(base, dest_path)))
    if resolved != base and base not in resolved.parents:
        raise PathTraversalError(f'Path traversal detected: "{dest_path}" resolves outside the project directory')
    return resolved


def to_posix(path: str) -> str:
    return path.replace("\\", "/")
