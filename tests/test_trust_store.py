"""Tests for loading and persisting permission rules."""

import json
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from tollgate.core.config import ConfigScope
from tollgate.core.errors import TrustStoreError
from tollgate.core.permissions import PermissionBehavior, PermissionMode
from tollgate.core import trust_store as trust_store_module
from tollgate.core.trust_store import TrustStore
from tollgate.utils.permissions.rule_syntax import parse_permission_rule


def _write_scope(store: TrustStore, scope: ConfigScope, permissions: dict) -> Path:
    path = store.scope_path(scope)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"permissions": permissions}))
    return path


def _patterns(rules) -> list[str]:
    return [rule.pattern for rule in rules]


def test_empty_configuration_loads_empty_rule_set(workspace: Path):
    rule_set = TrustStore(workspace).load()
    assert rule_set.allow == ()
    assert rule_set.deny == ()
    assert rule_set.default_mode is None


def test_scopes_are_merged_in_precedence_order(workspace: Path):
    store = TrustStore(workspace)
    _write_scope(store, ConfigScope.USER, {"allow": ["Bash(ls)"], "defaultMode": "acceptEdits"})
    _write_scope(
        store, ConfigScope.PROJECT, {"allow": ["Bash(npm test:*)"], "deny": ["Bash(rm:*)"]}
    )
    _write_scope(
        store, ConfigScope.LOCAL, {"allow": ["Bash(ls)", "Bash(git status)"], "defaultMode": "plan"}
    )

    rule_set = store.load()
    assert _patterns(rule_set.allow) == ["Bash(ls)", "Bash(git status)", "Bash(npm test:*)"]
    assert _patterns(rule_set.deny) == ["Bash(rm:*)"]
    assert rule_set.default_mode is PermissionMode.PLAN


def test_loading_twice_is_idempotent(workspace: Path):
    store = TrustStore(workspace)
    _write_scope(store, ConfigScope.PROJECT, {"allow": ["Bash(ls)", "Bash(ls)"]})
    _write_scope(store, ConfigScope.USER, {"allow": ["Bash(ls)"]})

    first = store.load()
    assert first == store.load()
    assert _patterns(first.allow) == ["Bash(ls)"]


def test_malformed_entries_are_skipped(workspace: Path):
    store = TrustStore(workspace)
    _write_scope(
        store,
        ConfigScope.PROJECT,
        {"allow": ["Bash(ls)", 42, "Bash(", ""], "defaultMode": "yolo"},
    )

    rule_set = store.load()
    assert _patterns(rule_set.allow) == ["Bash(ls)"]
    assert rule_set.default_mode is None


def test_corrupt_scope_does_not_hide_other_scopes(workspace: Path):
    store = TrustStore(workspace)
    store.scope_path(ConfigScope.LOCAL).parent.mkdir(parents=True)
    store.scope_path(ConfigScope.LOCAL).write_text("{oops")
    _write_scope(store, ConfigScope.USER, {"deny": ["Bash(rm:*)"]})

    assert _patterns(store.load().deny) == ["Bash(rm:*)"]


def test_additional_directories_resolve_against_workdir(tmp_path: Path, workspace: Path):
    store = TrustStore(workspace)
    _write_scope(
        store,
        ConfigScope.PROJECT,
        {"additionalDirectories": ["../shared", str(tmp_path / "abs"), 7]},
    )
    assert store.load().additional_directories == (
        workspace / "../shared",
        tmp_path / "abs",
    )


def test_save_then_load_round_trips(workspace: Path):
    store = TrustStore(workspace)
    rule = parse_permission_rule("Bash(npm test:*)")

    entry = store.save(ConfigScope.LOCAL, rule)
    assert entry.scope is ConfigScope.LOCAL
    assert entry.behavior is PermissionBehavior.ALLOW

    written = json.loads(store.scope_path(ConfigScope.LOCAL).read_text())
    assert written["permissions"]["allow"] == ["Bash(npm test:*)"]
    assert TrustStore(workspace).load().allow == (rule,)
    assert "settings.local.json" in (workspace / ".tollgate" / ".gitignore").read_text()


def test_save_is_idempotent_and_keeps_existing_rules(workspace: Path):
    store = TrustStore(workspace)
    _write_scope(store, ConfigScope.PROJECT, {"allow": ["Bash(ls)"]})
    rule = parse_permission_rule("Bash(git status)")

    store.save(ConfigScope.PROJECT, rule)
    store.save(ConfigScope.PROJECT, rule)
    assert store.read_scope(ConfigScope.PROJECT).allow == ["Bash(ls)", "Bash(git status)"]


def test_save_deny_rule(workspace: Path):
    store = TrustStore(workspace)
    store.save(ConfigScope.USER, parse_permission_rule("Bash(rm:*)"), PermissionBehavior.DENY)
    assert store.read_scope(ConfigScope.USER).deny == ["Bash(rm:*)"]
    with pytest.raises(ValueError):
        store.save(ConfigScope.USER, parse_permission_rule("Bash(ls)"), PermissionBehavior.ASK)


def test_save_refuses_to_overwrite_corrupt_file(workspace: Path):
    store = TrustStore(workspace)
    path = store.scope_path(ConfigScope.LOCAL)
    path.parent.mkdir(parents=True)
    path.write_text("{oops")

    with pytest.raises(TrustStoreError) as excinfo:
        store.save(ConfigScope.LOCAL, parse_permission_rule("Bash(ls)"))
    assert excinfo.value.path == path
    assert path.read_text() == "{oops"


def test_remove(workspace: Path):
    store = TrustStore(workspace)
    rule = parse_permission_rule("Bash(ls)")
    assert store.remove(ConfigScope.LOCAL, rule) is False

    store.save(ConfigScope.LOCAL, rule)
    assert store.remove(ConfigScope.LOCAL, rule) is True
    assert store.remove(ConfigScope.LOCAL, rule) is False
    assert store.read_scope(ConfigScope.LOCAL).allow == []


def test_set_default_mode(workspace: Path):
    store = TrustStore(workspace)
    store.set_default_mode(ConfigScope.PROJECT, PermissionMode.ACCEPT_EDITS)
    assert store.load().default_mode is PermissionMode.ACCEPT_EDITS

    store.set_default_mode(ConfigScope.PROJECT, None)
    written = json.loads(store.scope_path(ConfigScope.PROJECT).read_text())
    assert "defaultMode" not in written["permissions"]


def test_concurrent_saves_are_not_lost(workspace: Path):
    store = TrustStore(workspace)
    rules = [parse_permission_rule(f"Bash(tool-{index}:*)") for index in range(20)]

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(lambda rule: store.save(ConfigScope.LOCAL, rule), rules))

    saved = store.read_scope(ConfigScope.LOCAL).allow
    assert sorted(saved) == sorted(rule.pattern for rule in rules)


def test_save_takes_a_lock_file_next_to_the_scope(workspace: Path):
    store = TrustStore(workspace)
    store.save(ConfigScope.PROJECT, parse_permission_rule("Bash(make:*)"))
    scope_file = store.scope_path(ConfigScope.PROJECT)
    assert scope_file.with_name(scope_file.name + ".lock").exists()


def test_file_lock_is_released_after_the_block(tmp_path: Path):
    lock_file = tmp_path / "locks" / "settings.json.lock"
    with trust_store_module._file_lock(lock_file):
        assert lock_file.exists()
    # A second acquisition would block forever if the first were still held.
    with trust_store_module._file_lock(lock_file):
        pass


def test_file_lock_without_flock(tmp_path: Path, monkeypatch):
    monkeypatch.setattr(trust_store_module, "fcntl", None)
    store = TrustStore(tmp_path)
    store.save(ConfigScope.LOCAL, parse_permission_rule("Bash(make:*)"))
    assert store.read_scope(ConfigScope.LOCAL).allow == ["Bash(make:*)"]
