"""Workspace containment checks that see through symlinks and `..` traversal."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Iterable, Optional, Union

from tollgate.utils.log import get_logger

logger = get_logger()

PathLike = Union[str, "os.PathLike[str]"]

_GLOB_PATTERN = re.compile(r"[*?\[\]{}]")


def _expand_tilde(path_str: str) -> str:
    if path_str.startswith("~"):
        return os.path.expanduser(path_str)
    return path_str


def extract_directory_from_glob(glob_pattern: str) -> str:
    """Return the static directory prefix of a glob, or the pattern itself."""
    match = _GLOB_PATTERN.search(glob_pattern)
    if not match or match.start() == 0:
        return glob_pattern
    prefix = glob_pattern[: match.start()]
    if "/" not in prefix:
        return "."
    return prefix.rsplit("/", 1)[0] or "/"


def resolve_real_path(path: PathLike, base: Optional[PathLike] = None) -> Path:
    """Resolve ``path`` to its canonical real location.

    Relative paths are joined onto ``base`` (the process cwd when omitted).
    A path that does not exist yet is resolved through its nearest existing
    ancestor, so a missing file under a symlinked directory still lands on the
    symlink target. Raises ``OSError``/``ValueError``/``RuntimeError`` when the
    path cannot be resolved.
    """
    candidate = Path(_expand_tilde(os.fspath(path)))
    if not candidate.is_absolute():
        root = Path(_expand_tilde(os.fspath(base))) if base is not None else Path(os.getcwd())
        candidate = root / candidate

    existing = candidate
    remainder: list[str] = []
    # lexists keeps dangling symlinks so realpath can follow them to their target.
    while not os.path.lexists(existing):
        parent = existing.parent
        if parent == existing:
            break
        remainder.append(existing.name)
        existing = parent

    resolved = Path(os.path.realpath(existing))
    for part in reversed(remainder):
        if part == "..":
            resolved = resolved.parent
        elif part not in ("", "."):
            resolved = resolved / part
    return resolved


def is_inside(candidate: PathLike, root: PathLike, base: Optional[PathLike] = None) -> bool:
    """Return True only if ``candidate`` resolves to ``root`` or somewhere below it.

    Relative candidates are resolved against ``base``, defaulting to ``root``.
    Any resolution failure counts as "not inside".
    """
    try:
        resolved_root = resolve_real_path(root)
        resolved = resolve_real_path(candidate, base if base is not None else resolved_root)
    except (OSError, RuntimeError, ValueError) as exc:
        logger.debug(
            "[path_safety] Failed to resolve path: %s: %s",
            type(exc).__name__,
            exc,
            extra={"candidate": str(candidate), "root": str(root)},
        )
        return False
    return resolved == resolved_root or resolved_root in resolved.parents


def is_inside_any(
    candidate: PathLike, roots: Iterable[PathLike], base: Optional[PathLike] = None
) -> bool:
    """Return True if ``candidate`` is inside at least one of ``roots``."""
    return any(is_inside(candidate, root, base=base) for root in roots)


__all__ = [
    "extract_directory_from_glob",
    "is_inside",
    "is_inside_any",
    "resolve_real_path",
]
