"""Permission rule syntax parsing and matching helpers.

Rules have the form ``Tool`` or ``Tool(content)``:

- ``Bash(git status)`` exact: the rendered action must be byte-equal.
- ``Bash(git commit:*)`` prefix: the content ends with ``:*``; anywhere else
  the marker is literal text.
- ``Read(src/**)`` path pattern: only for single-path tools, glob-matched
  against the tool's path argument.
- ``Bash`` a bare tool name matches every invocation of that tool.

Patterns are never regular expressions.
"""

from __future__ import annotations

import fnmatch
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional, Set

from tollgate.core.errors import InvalidPermissionRule
from tollgate.core.tool import ToolCatalog, ToolKind, default_catalog
from tollgate.utils.permissions.path_safety import resolve_real_path

PREFIX_MARKER = ":*"

_TOOL_WITH_CONTENT_RE = re.compile(r"^([A-Za-z0-9_-]+)\((.*)\)$", re.DOTALL)
_TOOL_ONLY_RE = re.compile(r"^[A-Za-z0-9_-]+$")

_DEFAULT_CATALOG = default_catalog()


class RuleKind(str, Enum):
    TOOL = "tool"
    EXACT = "exact"
    PREFIX = "prefix"
    PATH_PATTERN = "path_pattern"


# Higher wins when several rules match the same action.
_SPECIFICITY = {
    RuleKind.TOOL: 0,
    RuleKind.PREFIX: 1,
    RuleKind.PATH_PATTERN: 2,
    RuleKind.EXACT: 3,
}


@dataclass(frozen=True)
class PermissionRule:
    """Parsed, immutable form of a permission rule string."""

    pattern: str
    tool_name: str
    content: Optional[str]
    kind: RuleKind

    @property
    def prefix(self) -> Optional[str]:
        """Content without the trailing marker, for prefix rules."""
        if self.kind is not RuleKind.PREFIX or self.content is None:
            return None
        return self.content[: -len(PREFIX_MARKER)]

    def __str__(self) -> str:
        return self.pattern


@dataclass(frozen=True)
class ActionDescriptor:
    """One concrete action a rule can be matched against."""

    tool_name: str
    argument: str
    path: Optional[str] = None
    cwd: Optional[Path] = None

    @property
    def rendering(self) -> str:
        return f"{self.tool_name}({self.argument})"


def parse_permission_rule(
    rule: object, *, catalog: Optional[ToolCatalog] = None
) -> PermissionRule:
    """Parse ``rule`` or raise ``InvalidPermissionRule``."""
    if not isinstance(rule, str):
        raise InvalidPermissionRule(
            f"Permission rule must be a string, got {type(rule).__name__}", rule
        )
    text = rule.strip()
    if not text:
        raise InvalidPermissionRule("Permission rule is empty", rule)

    tools = catalog or _DEFAULT_CATALOG
    if _TOOL_ONLY_RE.match(text):
        return PermissionRule(pattern=text, tool_name=text, content=None, kind=RuleKind.TOOL)

    match = _TOOL_WITH_CONTENT_RE.match(text)
    if not match:
        raise InvalidPermissionRule(
            f"Permission rule must look like Tool or Tool(content): {text!r}", rule
        )
    tool_name, content = match.group(1), match.group(2)
    if not content:
        raise InvalidPermissionRule(f"Permission rule has empty content: {text!r}", rule)

    if content.endswith(PREFIX_MARKER):
        kind = RuleKind.PREFIX
    elif tools.get(tool_name).kind is ToolKind.SINGLE_PATH:
        kind = RuleKind.PATH_PATTERN
    else:
        kind = RuleKind.EXACT
    return PermissionRule(pattern=text, tool_name=tool_name, content=content, kind=kind)


def try_parse_permission_rule(
    rule: object, *, catalog: Optional[ToolCatalog] = None
) -> Optional[PermissionRule]:
    try:
        return parse_permission_rule(rule, catalog=catalog)
    except InvalidPermissionRule:
        return None


def _normalize_path_text(value: str) -> str:
    return value.replace("\\", "/")


def _path_candidates(path_value: str, cwd: Optional[Path]) -> Set[str]:
    candidates = {_normalize_path_text(path_value.strip())}
    try:
        resolved = resolve_real_path(path_value, cwd)
    except (OSError, RuntimeError, ValueError):
        resolved = None
    if resolved is not None:
        candidates.add(_normalize_path_text(str(resolved)))
        if cwd is not None:
            try:
                rel = resolved.relative_to(resolve_real_path(cwd))
                rel_text = _normalize_path_text(str(rel))
                candidates.add(rel_text)
                candidates.add(f"./{rel_text}" if rel_text != "." else ".")
            except (OSError, RuntimeError, ValueError):
                pass
    return {c for c in candidates if c}


def _glob_matches(pattern: str, values: Iterable[str]) -> bool:
    patterns = [pattern]
    if pattern.startswith("**/"):
        # `**/.env` also matches a top-level `.env`.
        patterns.append(pattern[3:])
    return any(fnmatch.fnmatchcase(value, p) for value in values for p in patterns)


def matches(rule: PermissionRule, action: ActionDescriptor) -> bool:
    """Return whether ``rule`` applies to ``action``. Case and whitespace exact."""
    if rule.tool_name != action.tool_name:
        return False
    if rule.kind is RuleKind.TOOL:
        return True
    if rule.kind is RuleKind.EXACT:
        return rule.pattern == action.rendering
    if rule.kind is RuleKind.PREFIX:
        return action.rendering.startswith(f"{rule.tool_name}({rule.prefix}")
    if action.path is None or rule.content is None:
        return False
    candidates = _path_candidates(action.path, action.cwd)
    return _glob_matches(_normalize_path_text(rule.content), candidates)


def _specificity(rule: PermissionRule) -> tuple:
    return (_SPECIFICITY[rule.kind], len(rule.pattern), rule.pattern)


def find_matching_rule(
    rules: Iterable[PermissionRule], action: ActionDescriptor
) -> Optional[PermissionRule]:
    """Return the most specific rule matching ``action``, independent of list order."""
    matched = [rule for rule in rules if matches(rule, action)]
    if not matched:
        return None
    return max(matched, key=_specificity)


__all__ = [
    "ActionDescriptor",
    "PREFIX_MARKER",
    "PermissionRule",
    "RuleKind",
    "find_matching_rule",
    "matches",
    "parse_permission_rule",
    "try_parse_permission_rule",
]
