"""Permission utilities: command decomposition, path safety and rule matching."""

from .command_decomposer import SimpleCommand, decompose, split_command
from .path_safety import is_inside, is_inside_any, resolve_real_path
from .prefix_heuristic import DANGEROUS_COMMANDS, smart_prefix, suggest
from .rule_syntax import (
    ActionDescriptor,
    PermissionRule,
    RuleKind,
    find_matching_rule,
    matches,
    parse_permission_rule,
)

__all__ = [
    "ActionDescriptor",
    "DANGEROUS_COMMANDS",
    "PermissionRule",
    "RuleKind",
    "SimpleCommand",
    "decompose",
    "find_matching_rule",
    "is_inside",
    "is_inside_any",
    "matches",
    "parse_permission_rule",
    "resolve_real_path",
    "smart_prefix",
    "split_command",
    "suggest",
]
