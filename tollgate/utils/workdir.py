"""Resolve the project directory that settings and path checks are anchored to."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional, Union

from tollgate.utils.log import get_logger

logger = get_logger()

# Captured at import so a deleted cwd still has somewhere to fall back to.
_STARTUP_DIR = Path(os.getcwd()).resolve()


def startup_dir() -> Path:
    return _STARTUP_DIR


def resolve_workdir(path: Optional[Union[str, Path]] = None) -> Path:
    """Return ``path`` (or the current directory) as an absolute, resolved path.

    If the current directory cannot be read, for example because it was
    removed underneath the process, the directory tollgate started in is
    used instead.
    """
    if path is not None and str(path).strip():
        return Path(path).expanduser().resolve()
    try:
        return Path(os.getcwd()).resolve()
    except (OSError, RuntimeError, ValueError) as exc:
        logger.warning(
            "[workdir] Current directory unavailable (%s: %s); using %s",
            type(exc).__name__,
            exc,
            _STARTUP_DIR,
        )
        return _STARTUP_DIR


__all__ = ["resolve_workdir", "startup_dir"]
