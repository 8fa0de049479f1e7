"""Decision types and the immutable rule snapshot used by the permission engine."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from tollgate.utils.permissions.rule_syntax import PermissionRule


class PermissionMode(str, Enum):
    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    BYPASS_PERMISSIONS = "bypassPermissions"
    PLAN = "plan"


_MODE_CYCLE: Tuple[PermissionMode, ...] = (
    PermissionMode.DEFAULT,
    PermissionMode.ACCEPT_EDITS,
    PermissionMode.BYPASS_PERMISSIONS,
)

PERMISSION_MODE_LABELS: Dict[PermissionMode, str] = {
    PermissionMode.DEFAULT: "Default",
    PermissionMode.ACCEPT_EDITS: "Accept edits",
    PermissionMode.BYPASS_PERMISSIONS: "Bypass permissions",
    PermissionMode.PLAN: "Plan",
}


def next_permission_mode(mode: PermissionMode) -> PermissionMode:
    """Cycle Default -> AcceptEdits -> BypassPermissions -> Default. Plan leaves to Default."""
    if mode not in _MODE_CYCLE:
        return PermissionMode.DEFAULT
    index = _MODE_CYCLE.index(mode)
    return _MODE_CYCLE[(index + 1) % len(_MODE_CYCLE)]


def parse_permission_mode(value: object) -> Optional[PermissionMode]:
    if isinstance(value, PermissionMode):
        return value
    if not isinstance(value, str):
        return None
    try:
        return PermissionMode(value.strip())
    except ValueError:
        return None


class PermissionBehavior(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    ASK = "ask"


@dataclass(frozen=True)
class PermissionDecision:
    """Outcome of a permission check."""

    behavior: PermissionBehavior
    reason: Optional[str] = None
    rule: Optional[PermissionRule] = None

    @classmethod
    def allow(
        cls, reason: Optional[str] = None, rule: Optional[PermissionRule] = None
    ) -> "PermissionDecision":
        return cls(PermissionBehavior.ALLOW, reason, rule)

    @classmethod
    def deny(cls, reason: str, rule: Optional[PermissionRule] = None) -> "PermissionDecision":
        return cls(PermissionBehavior.DENY, reason, rule)

    @classmethod
    def ask(cls, reason: str) -> "PermissionDecision":
        return cls(PermissionBehavior.ASK, reason)

    @property
    def allowed(self) -> bool:
        return self.behavior is PermissionBehavior.ALLOW


@dataclass
class ToolPermissionContext:
    """The unit of input to a permission decision."""

    tool_name: str
    tool_input: Mapping[str, Any]
    mode: PermissionMode
    workdir: Path
    additional_directories: Tuple[Path, ...] = ()
    plan_file_path: Optional[Path] = None

    @property
    def safe_roots(self) -> List[Path]:
        return [self.workdir, *self.additional_directories]

    @property
    def command_cwd(self) -> Path:
        """Directory relative shell paths are resolved against."""
        for key in ("workdir", "cwd"):
            value = self.tool_input.get(key)
            if isinstance(value, str) and value.strip():
                candidate = Path(value).expanduser()
                return candidate if candidate.is_absolute() else self.workdir / candidate
        return self.workdir


def _dedupe(rules: Iterable[PermissionRule]) -> Tuple[PermissionRule, ...]:
    seen: Dict[str, PermissionRule] = {}
    for rule in rules:
        seen.setdefault(rule.pattern, rule)
    return tuple(seen.values())


@dataclass(frozen=True)
class RuleSet:
    """Immutable snapshot of the merged rules from every configuration scope."""

    allow: Tuple[PermissionRule, ...] = ()
    deny: Tuple[PermissionRule, ...] = ()
    default_mode: Optional[PermissionMode] = None
    additional_directories: Tuple[Path, ...] = field(default_factory=tuple)

    @classmethod
    def merge(cls, layers: Iterable["RuleSet"]) -> "RuleSet":
        """Union rule lists; scalar settings come from the first layer that sets them.

        ``layers`` must be given in precedence order (local, project, user).
        """
        layer_list = list(layers)
        default_mode = next(
            (layer.default_mode for layer in layer_list if layer.default_mode is not None),
            None,
        )
        directories: Dict[Path, None] = {}
        for layer in layer_list:
            for directory in layer.additional_directories:
                directories.setdefault(directory, None)
        return cls(
            allow=_dedupe(rule for layer in layer_list for rule in layer.allow),
            deny=_dedupe(rule for layer in layer_list for rule in layer.deny),
            default_mode=default_mode,
            additional_directories=tuple(directories),
        )

    def with_rule(self, rule: PermissionRule, behavior: PermissionBehavior) -> "RuleSet":
        if behavior is PermissionBehavior.DENY:
            return replace(self, deny=_dedupe((*self.deny, rule)))
        if behavior is PermissionBehavior.ALLOW:
            return replace(self, allow=_dedupe((*self.allow, rule)))
        raise ValueError(f"Rules can only allow or deny, not {behavior.value}")


__all__ = [
    "PERMISSION_MODE_LABELS",
    "PermissionBehavior",
    "PermissionDecision",
    "PermissionMode",
    "RuleSet",
    "ToolPermissionContext",
    "next_permission_mode",
    "parse_permission_mode",
]
