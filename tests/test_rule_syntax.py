"""Tests for permission rule syntax parsing and matching."""

from pathlib import Path

import pytest

from tollgate.core.errors import InvalidPermissionRule
from tollgate.core.tool import ToolCatalog, ToolDescriptor, ToolKind
from tollgate.utils.permissions.rule_syntax import (
    ActionDescriptor,
    RuleKind,
    find_matching_rule,
    matches,
    parse_permission_rule,
    try_parse_permission_rule,
)


def _bash(argument: str) -> ActionDescriptor:
    return ActionDescriptor("Bash", argument)


def test_parse_rule_kinds():
    tool_only = parse_permission_rule("Bash")
    assert tool_only.kind is RuleKind.TOOL
    assert tool_only.content is None

    exact = parse_permission_rule("Bash(git status)")
    assert exact.kind is RuleKind.EXACT
    assert exact.tool_name == "Bash"
    assert exact.content == "git status"

    prefix = parse_permission_rule("Bash(git commit:*)")
    assert prefix.kind is RuleKind.PREFIX
    assert prefix.prefix == "git commit"

    path = parse_permission_rule("Write(src/**)")
    assert path.kind is RuleKind.PATH_PATTERN
    assert path.prefix is None


def test_path_patterns_only_for_single_path_tools():
    assert parse_permission_rule("Bash(src/**)").kind is RuleKind.EXACT

    catalog = ToolCatalog(
        [ToolDescriptor(name="Upload", kind=ToolKind.SINGLE_PATH, path_fields=("path",))]
    )
    assert parse_permission_rule("Upload(*.zip)", catalog=catalog).kind is RuleKind.PATH_PATTERN


def test_surrounding_whitespace_is_trimmed():
    assert parse_permission_rule("  Bash(ls)  ").pattern == "Bash(ls)"


@pytest.mark.parametrize(
    "rule",
    ["", "   ", "Bash(", "Bash()", "Bash git", "(ls)", 42, None],
)
def test_invalid_rules_raise(rule):
    with pytest.raises(InvalidPermissionRule):
        parse_permission_rule(rule)
    assert try_parse_permission_rule(rule) is None


def test_invalid_rule_is_a_value_error():
    with pytest.raises(ValueError):
        parse_permission_rule("Bash(")


def test_exact_match_is_case_and_whitespace_sensitive():
    rule = parse_permission_rule("Bash(git status)")
    assert matches(rule, _bash("git status"))
    assert not matches(rule, _bash("git  status"))
    assert not matches(rule, _bash("Git status"))
    assert not matches(rule, _bash("git status --short"))
    assert not matches(rule, ActionDescriptor("Shell", "git status"))


def test_prefix_match_boundary():
    rule = parse_permission_rule("Bash(git commit:*)")
    assert matches(rule, _bash('git commit -m "x"'))
    assert matches(rule, _bash("git commit --amend"))
    assert matches(rule, _bash("git commit"))
    assert not matches(rule, _bash("git push"))


def test_marker_in_the_middle_is_literal():
    rule = parse_permission_rule("Bash(echo :* test)")
    assert rule.kind is RuleKind.EXACT
    assert matches(rule, _bash("echo :* test"))
    assert not matches(rule, _bash("echo hello test"))


def test_tool_rule_matches_any_argument():
    rule = parse_permission_rule("Bash")
    assert matches(rule, _bash("anything at all"))
    assert not matches(rule, ActionDescriptor("Write", "a.txt", path="a.txt"))


def test_path_pattern_matches_relative_and_absolute_paths(tmp_path: Path):
    rule = parse_permission_rule("Write(src/**)")
    assert matches(rule, ActionDescriptor("Write", "src/a.py", path="src/a.py", cwd=tmp_path))
    absolute = str(tmp_path / "src" / "pkg" / "b.py")
    assert matches(rule, ActionDescriptor("Write", absolute, path=absolute, cwd=tmp_path))
    assert not matches(
        rule, ActionDescriptor("Write", "docs/a.md", path="docs/a.md", cwd=tmp_path)
    )


def test_double_star_prefix_matches_top_level_files(tmp_path: Path):
    rule = parse_permission_rule("Read(**/.env)")
    assert matches(rule, ActionDescriptor("Read", ".env", path=".env", cwd=tmp_path))
    nested = str(tmp_path / "config" / ".env")
    assert matches(rule, ActionDescriptor("Read", nested, path=nested, cwd=tmp_path))
    assert not matches(rule, ActionDescriptor("Read", ".envrc", path=".envrc", cwd=tmp_path))


def test_path_pattern_requires_a_path():
    rule = parse_permission_rule("Write(src/**)")
    assert not matches(rule, ActionDescriptor("Write", ""))


def test_most_specific_rule_wins_regardless_of_order():
    action = _bash("git commit -m wip")
    broad = parse_permission_rule("Bash(git:*)")
    narrow = parse_permission_rule("Bash(git commit:*)")
    exact = parse_permission_rule("Bash(git commit -m wip)")
    tool = parse_permission_rule("Bash")

    assert find_matching_rule([broad, narrow], action) == narrow
    assert find_matching_rule([narrow, broad], action) == narrow
    assert find_matching_rule([tool, broad, exact, narrow], action) == exact
    assert find_matching_rule([tool], action) == tool
    assert find_matching_rule([], action) is None
