"""Propose conservative "don't ask again" rules for approved shell commands.

Known command families keep their executable plus subcommand
(``git commit``, ``npm run dev``, ``python -m pytest``) and drop the rest as
dynamic arguments. Blacklisted executables, commands with substitutions and
unrecognized subcommands of known families only ever get an exact rule.
"""

from __future__ import annotations

import os
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence

from tollgate.utils.permissions.command_decomposer import SimpleCommand
from tollgate.utils.permissions.rule_syntax import (
    PREFIX_MARKER,
    PermissionRule,
    parse_permission_rule,
)

SHELL_TOOL_NAME = "Bash"

# Deletion, permission changes, privilege escalation and shell invocation.
DANGEROUS_COMMANDS: FrozenSet[str] = frozenset(
    {
        "rm",
        "rmdir",
        "unlink",
        "shred",
        "mv",
        "dd",
        "chmod",
        "chown",
        "chgrp",
        "sudo",
        "su",
        "doas",
        "sh",
        "bash",
        "zsh",
        "dash",
        "ksh",
        "fish",
        "eval",
        "exec",
        "source",
        ".",
        "apt",
        "apt-get",
        "yum",
        "dnf",
    }
)

_JS_PACKAGE_MANAGERS = frozenset({"npm", "pnpm", "yarn", "bun", "deno"})
_JS_SUBCOMMANDS = frozenset(
    {"install", "i", "ci", "add", "remove", "test", "t", "build", "start", "dev", "lint"}
)
_JS_SCOPED_OPTIONS = frozenset({"--prefix", "-C", "-F", "--filter"})

_GIT_SUBCOMMANDS = frozenset(
    {
        "commit",
        "push",
        "pull",
        "checkout",
        "switch",
        "add",
        "status",
        "diff",
        "show",
        "branch",
        "merge",
        "rebase",
        "log",
        "fetch",
        "remote",
        "stash",
        "tag",
    }
)

_PIP_SUBCOMMANDS = frozenset({"install", "uninstall", "download", "list", "show", "freeze"})

_SUBCOMMANDS: Dict[str, FrozenSet[str]] = {
    "pip": _PIP_SUBCOMMANDS,
    "pip3": _PIP_SUBCOMMANDS,
    "poetry": frozenset({"install", "add", "remove", "run", "build", "lock", "show", "check"}),
    "uv": frozenset({"run", "sync", "add", "remove", "lock", "build", "venv"}),
    "conda": frozenset({"install", "create", "remove", "update", "list"}),
    "cargo": frozenset({"build", "test", "run", "add", "check", "clippy", "fmt", "doc", "bench"}),
    "go": frozenset({"build", "test", "run", "get", "mod", "vet", "fmt", "generate"}),
    "docker": frozenset({"run", "build", "ps", "exec", "up", "down", "logs", "images", "pull"}),
    "docker-compose": frozenset({"up", "down", "build", "ps", "logs", "run", "exec", "pull"}),
    "kubectl": frozenset({"get", "describe", "apply", "logs"}),
    "helm": frozenset({"install", "upgrade", "list", "template", "lint", "status"}),
    "terraform": frozenset({"plan", "apply", "destroy", "init", "validate", "fmt", "output"}),
}

# First positional argument is a goal or target name.
_GOAL_TOOLS = frozenset({"mvn", "gradle", "./gradlew", "gradlew", "make"})

# Interpreters: only structured forms (e.g. `python -m module`) are generalized.
_INTERPRETERS = frozenset({"python", "python3", "node", "perl", "ruby", "java"})


def _js_prefix(argv: Sequence[str]) -> Optional[int]:
    i = 1
    while i < len(argv):
        token = argv[i]
        if (token in _JS_SCOPED_OPTIONS or token == "workspace") and i + 1 < len(argv):
            i += 2
            continue
        break
    if i >= len(argv):
        return None
    sub = argv[i]
    if sub in ("run", "task") and i + 1 < len(argv):
        return i + 2
    if sub in _JS_SUBCOMMANDS:
        return i + 1
    return None


def _git_prefix(argv: Sequence[str]) -> Optional[int]:
    i = 1
    while i + 1 < len(argv) and argv[i] == "-C":
        i += 2
    if i < len(argv) and argv[i] in _GIT_SUBCOMMANDS:
        return i + 1
    return None


def _interpreter_prefix(argv: Sequence[str]) -> Optional[int]:
    exe = argv[0]
    if exe == "java":
        return 2 if len(argv) > 1 and argv[1] == "-jar" else None
    if exe in ("python", "python3") and len(argv) > 2 and argv[1] == "-m":
        if argv[2] == "pip" and len(argv) > 3 and argv[3] in _PIP_SUBCOMMANDS:
            return 4
        return 3
    return None


def _goal_prefix(argv: Sequence[str]) -> Optional[int]:
    if len(argv) > 1 and not argv[1].startswith("-"):
        return 2
    return None


def _docker_prefix(argv: Sequence[str]) -> Optional[int]:
    if len(argv) > 2 and argv[1] == "compose" and argv[2] in _SUBCOMMANDS["docker-compose"]:
        return 3
    return _table_prefix(argv)


def _table_prefix(argv: Sequence[str]) -> Optional[int]:
    subcommands = _SUBCOMMANDS.get(argv[0], frozenset())
    if len(argv) > 1 and argv[1] in subcommands:
        return 2
    return None


_FamilyHandler = Callable[[Sequence[str]], Optional[int]]


def _family_handler(executable: str) -> Optional[_FamilyHandler]:
    if executable in _JS_PACKAGE_MANAGERS:
        return _js_prefix
    if executable == "git":
        return _git_prefix
    if executable == "docker":
        return _docker_prefix
    if executable in _SUBCOMMANDS:
        return _table_prefix
    if executable in _GOAL_TOOLS:
        return _goal_prefix
    if executable in _INTERPRETERS:
        return _interpreter_prefix
    return None


def is_dangerous_command(command: SimpleCommand) -> bool:
    executable = command.executable
    return executable in DANGEROUS_COMMANDS or os.path.basename(executable) in DANGEROUS_COMMANDS


def smart_prefix(command: SimpleCommand) -> Optional[str]:
    """Return the generalized prefix text for a known command family, if any."""
    if command.needs_review or is_dangerous_command(command):
        return None
    argv = command.argv
    if not argv:
        return None
    handler = _family_handler(argv[0])
    if handler is None:
        return None
    count = handler(argv)
    if count is None:
        return None
    return " ".join(command.words[:count])


def _rule(content: str) -> PermissionRule:
    return parse_permission_rule(f"{SHELL_TOOL_NAME}({content})")


def suggest(command: SimpleCommand) -> PermissionRule:
    """Propose a rule for a simple command the human just approved.

    The result is only a proposal; persisting it is up to the caller.
    """
    text = command.text
    if not text or command.needs_review or is_dangerous_command(command):
        return _rule(text)
    prefix = smart_prefix(command)
    if prefix is not None:
        return _rule(f"{prefix}{PREFIX_MARKER}")
    if _family_handler(command.executable) is not None:
        # Known family, unrecognized subcommand: do not generalize.
        return _rule(text)
    return _rule(f"{command.words[0]}{PREFIX_MARKER}")


def suggest_all(commands: Sequence[SimpleCommand]) -> List[PermissionRule]:
    """Suggest one rule per command, dropping duplicates."""
    suggestions: List[PermissionRule] = []
    for command in commands:
        rule = suggest(command)
        if rule not in suggestions:
            suggestions.append(rule)
    return suggestions


__all__ = [
    "DANGEROUS_COMMANDS",
    "SHELL_TOOL_NAME",
    "is_dangerous_command",
    "smart_prefix",
    "suggest",
    "suggest_all",
]
