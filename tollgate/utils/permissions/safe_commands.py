"""Built-in shell verbs that never need a prompt while confined to the workspace."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable, List, Sequence

from tollgate.utils.permissions.command_decomposer import SimpleCommand
from tollgate.utils.permissions.path_safety import extract_directory_from_glob, is_inside_any

ALWAYS_SAFE_COMMANDS = frozenset({"pwd", "true", "false"})
PATH_CONFINED_COMMANDS = frozenset({"cd", "ls"})
SAFE_COMMANDS = ALWAYS_SAFE_COMMANDS | PATH_CONFINED_COMMANDS


def _path_arguments(args: Sequence[str]) -> List[str]:
    targets: List[str] = []
    options_done = False
    for arg in args:
        if not options_done and arg == "--":
            options_done = True
            continue
        if not options_done and arg.startswith("-") and arg != "-":
            continue
        targets.append(arg)
    return targets


def touched_paths(command: SimpleCommand) -> List[str]:
    """Paths a confined command would visit, or an empty list if it is not one."""
    if command.executable not in PATH_CONFINED_COMMANDS:
        return []
    targets = _path_arguments(command.args)
    if not targets:
        return ["~"] if command.executable == "cd" else ["."]
    return targets


def _provably_inside(target: str, roots: Sequence[Path], cwd: Path) -> bool:
    # Variables, `cd -`, brace expansion and `~+`/`~-`/`~user` are expanded by the shell, not here.
    if "$" in target or "{" in target or target == "-":
        return False
    if target.startswith("~") and target != "~" and not target.startswith("~/"):
        return False
    directory = extract_directory_from_glob(target)
    return is_inside_any(os.path.expanduser(directory), roots, base=cwd)


def is_safe_command(command: SimpleCommand, roots: Iterable[Path], cwd: Path) -> bool:
    """Return True if ``command`` is a built-in safe verb confined to ``roots``."""
    if command.needs_review:
        return False
    executable = command.executable
    if executable in ALWAYS_SAFE_COMMANDS:
        return True
    if executable not in PATH_CONFINED_COMMANDS:
        return False
    zone = list(roots)
    return all(_provably_inside(target, zone, cwd) for target in touched_paths(command))


def is_out_of_bounds(command: SimpleCommand, roots: Iterable[Path], cwd: Path) -> bool:
    """True for a cd/ls that reaches outside the safe zone."""
    if command.executable not in PATH_CONFINED_COMMANDS:
        return False
    return not is_safe_command(command, roots, cwd)


__all__ = [
    "ALWAYS_SAFE_COMMANDS",
    "PATH_CONFINED_COMMANDS",
    "SAFE_COMMANDS",
    "is_out_of_bounds",
    "is_safe_command",
    "touched_paths",
]
