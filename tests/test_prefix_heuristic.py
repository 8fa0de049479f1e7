"""Tests for "don't ask again" rule suggestions."""

import pytest

from tollgate.utils.permissions.command_decomposer import decompose
from tollgate.utils.permissions.prefix_heuristic import (
    is_dangerous_command,
    smart_prefix,
    suggest,
    suggest_all,
)
from tollgate.utils.permissions.rule_syntax import RuleKind


def _suggest(command: str) -> str:
    (simple,) = decompose(command)
    return suggest(simple).pattern


@pytest.mark.parametrize(
    ("command", "expected"),
    [
        ("git commit -m 'fix bug'", "Bash(git commit:*)"),
        ("git -C repo status", "Bash(git -C repo status:*)"),
        ("npm install lodash", "Bash(npm install:*)"),
        ("npm run dev --port 3000", "Bash(npm run dev:*)"),
        ("pnpm --filter web build", "Bash(pnpm --filter web build:*)"),
        ("python -m pytest tests/ -x", "Bash(python -m pytest:*)"),
        ("python -m pip install requests", "Bash(python -m pip install:*)"),
        ("docker compose up -d", "Bash(docker compose up:*)"),
        ("cargo test --release", "Bash(cargo test:*)"),
        ("make test", "Bash(make test:*)"),
    ],
)
def test_known_families_keep_the_subcommand(command, expected):
    assert _suggest(command) == expected


@pytest.mark.parametrize(
    "command",
    [
        "git frobnicate --now",
        "kubectl delete pod web-1",
        "python script.py",
        "make -j4",
    ],
)
def test_unrecognized_subcommands_get_exact_rules(command):
    assert _suggest(command) == f"Bash({command})"


@pytest.mark.parametrize(
    "command",
    [
        "rm -rf build",
        "/bin/rm -rf build",
        "sudo apt install jq",
        "chmod 777 deploy.sh",
        "bash -c 'echo hi'",
        "mv a b",
    ],
)
def test_blacklisted_commands_are_never_generalized(command):
    (simple,) = decompose(command)
    assert is_dangerous_command(simple)
    assert smart_prefix(simple) is None
    rule = suggest(simple)
    assert rule.kind is RuleKind.EXACT
    assert rule.content == simple.text


def test_unknown_executable_gets_executable_prefix():
    assert _suggest("jq .name package.json") == "Bash(jq:*)"


def test_substitution_gets_exact_rule():
    assert _suggest("echo $(date)") == "Bash(echo $(date))"


def test_suggest_all_drops_duplicates():
    rules = suggest_all(decompose("npm test && npm test -- --watch && git status"))
    assert [rule.pattern for rule in rules] == ["Bash(npm test:*)", "Bash(git status:*)"]
