"""Loading and persisting permission rules across configuration scopes.

``TrustStore`` is the only component that writes settings files. Writes to a
scope file are serialized twice over: a per-file ``threading.Lock`` for
concurrent approvals inside one process, and an ``fcntl`` lock file for other
processes sharing the same project. Each write is a read-modify-write of the
current file contents followed by an atomic rename, so two rules approved at
the same moment both survive.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Dict, Iterator, List, Optional, Sequence, Tuple

try:
    import fcntl
except ImportError:  # Windows
    fcntl = None  # type: ignore[assignment]

from tollgate.core.config import (
    SCOPE_PRECEDENCE,
    ConfigManager,
    ConfigScope,
    PermissionSettings,
)
from tollgate.core.errors import InvalidPermissionRule, TrustStoreError
from tollgate.core.permissions import (
    PermissionBehavior,
    PermissionMode,
    RuleSet,
    parse_permission_mode,
)
from tollgate.core.tool import ToolCatalog
from tollgate.utils.log import get_logger
from tollgate.utils.permissions.rule_syntax import PermissionRule, parse_permission_rule

logger = get_logger()

_REGISTRY_LOCK = threading.Lock()
_SCOPE_LOCKS: Dict[Path, threading.Lock] = {}


def _scope_lock(path: Path) -> threading.Lock:
    key = path.absolute()
    with _REGISTRY_LOCK:
        lock = _SCOPE_LOCKS.get(key)
        if lock is None:
            lock = threading.Lock()
            _SCOPE_LOCKS[key] = lock
        return lock


def _lock_path(config_path: Path) -> Path:
    return config_path.with_suffix(config_path.suffix + ".lock")


def _flock(handle: IO[str], exclusive: bool) -> bool:
    if fcntl is None:
        return False
    operation = fcntl.LOCK_EX if exclusive else fcntl.LOCK_UN
    try:
        fcntl.flock(handle.fileno(), operation)
    except OSError as exc:
        logger.debug("[trust_store] flock on %s failed: %s", handle.name, exc)
        return False
    return True


@contextmanager
def _file_lock(lock_file: Path) -> Iterator[None]:
    """Hold an exclusive advisory lock on ``lock_file`` for the duration of the block.

    Where ``flock`` is unavailable only the in-process lock serializes writers.
    """
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    with lock_file.open("a+", encoding="utf-8") as handle:
        held = _flock(handle, exclusive=True)
        try:
            yield
        finally:
            if held:
                _flock(handle, exclusive=False)


@dataclass(frozen=True)
class TrustedCommandEntry:
    """A rule a human asked to remember, and where it was written."""

    rule: PermissionRule
    scope: ConfigScope
    behavior: PermissionBehavior = PermissionBehavior.ALLOW
    saved_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _rule_list_key(behavior: PermissionBehavior) -> str:
    if behavior is PermissionBehavior.ALLOW:
        return "allow"
    if behavior is PermissionBehavior.DENY:
        return "deny"
    raise ValueError(f"Rules can only allow or deny, not {behavior.value}")


class TrustStore:
    """Owns the on-disk permission settings for one project."""

    def __init__(
        self,
        workdir: Optional[Path] = None,
        *,
        config_manager: Optional[ConfigManager] = None,
        catalog: Optional[ToolCatalog] = None,
    ) -> None:
        self.config = config_manager or ConfigManager(project_path=workdir)
        self.catalog = catalog

    @property
    def workdir(self) -> Path:
        return self.config.project_path

    def scope_path(self, scope: ConfigScope) -> Path:
        return self.config.scope_path(scope)

    def read_scope(self, scope: ConfigScope) -> PermissionSettings:
        return self.config.load_scope(scope).permissions

    def _parse_rules(
        self, entries: Sequence[object], scope: ConfigScope, list_name: str
    ) -> Tuple[PermissionRule, ...]:
        rules: List[PermissionRule] = []
        for entry in entries:
            try:
                rules.append(parse_permission_rule(entry, catalog=self.catalog))
            except InvalidPermissionRule as exc:
                logger.warning(
                    "[trust_store] Skipping malformed %s rule in %s settings: %s",
                    list_name,
                    scope.value,
                    exc,
                    extra={"entry": repr(entry), "path": str(self.scope_path(scope))},
                )
        return tuple(rules)

    def _directories(self, entries: Sequence[object], scope: ConfigScope) -> Tuple[Path, ...]:
        directories: List[Path] = []
        for entry in entries:
            if not isinstance(entry, str) or not entry.strip():
                logger.warning(
                    "[trust_store] Skipping invalid additional directory in %s settings",
                    scope.value,
                    extra={"entry": repr(entry)},
                )
                continue
            path = Path(entry).expanduser()
            directories.append(path if path.is_absolute() else self.workdir / path)
        return tuple(directories)

    def _load_layer(self, scope: ConfigScope) -> RuleSet:
        permissions = self.read_scope(scope)
        default_mode: Optional[PermissionMode] = None
        if permissions.default_mode is not None:
            default_mode = parse_permission_mode(permissions.default_mode)
            if default_mode is None:
                logger.warning(
                    "[trust_store] Ignoring invalid defaultMode in %s settings: %r",
                    scope.value,
                    permissions.default_mode,
                )
        return RuleSet(
            allow=self._parse_rules(permissions.allow, scope, "allow"),
            deny=self._parse_rules(permissions.deny, scope, "deny"),
            default_mode=default_mode,
            additional_directories=self._directories(permissions.additional_directories, scope),
        )

    def load(self, workdir: Optional[Path] = None) -> RuleSet:
        """Merge every scope into one snapshot. Never raises for bad settings."""
        if workdir is not None and Path(workdir) != self.config.project_path:
            self.config = ConfigManager(
                project_path=Path(workdir), user_config_dir=self.config.user_config_dir
            )
        rule_set = RuleSet.merge(self._load_layer(scope) for scope in SCOPE_PRECEDENCE)
        logger.debug(
            "[trust_store] Loaded permission rules",
            extra={
                "workdir": str(self.workdir),
                "allow_count": len(rule_set.allow),
                "deny_count": len(rule_set.deny),
                "default_mode": rule_set.default_mode.value if rule_set.default_mode else None,
            },
        )
        return rule_set

    @contextmanager
    def _update_scope(self, scope: ConfigScope) -> Iterator[PermissionSettings]:
        """Serialize a read-modify-write of one scope file."""
        config_path = self.scope_path(scope)
        with _scope_lock(config_path):
            try:
                with _file_lock(_lock_path(config_path)):
                    settings = self.config.load_scope_for_update(scope)
                    yield settings.permissions
                    self.config.save_scope(scope, settings)
            except OSError as exc:
                raise TrustStoreError(
                    f"Failed to write {scope.value} settings at {config_path}: {exc}",
                    config_path,
                ) from exc

    def save(
        self,
        scope: ConfigScope,
        rule: PermissionRule,
        behavior: PermissionBehavior = PermissionBehavior.ALLOW,
    ) -> TrustedCommandEntry:
        """Append ``rule`` to one scope, creating the file if needed."""
        key = _rule_list_key(behavior)
        with self._update_scope(scope) as permissions:
            entries = getattr(permissions, key)
            if rule.pattern not in entries:
                entries.append(rule.pattern)
        logger.info(
            "[trust_store] Saved %s rule %s to %s settings",
            key,
            rule.pattern,
            scope.value,
            extra={"path": str(self.scope_path(scope))},
        )
        return TrustedCommandEntry(rule=rule, scope=scope, behavior=behavior)

    def remove(
        self,
        scope: ConfigScope,
        rule: PermissionRule,
        behavior: PermissionBehavior = PermissionBehavior.ALLOW,
    ) -> bool:
        """Remove ``rule`` from one scope. Returns False if it was not present."""
        key = _rule_list_key(behavior)
        if not self.scope_path(scope).exists():
            return False
        with self._update_scope(scope) as permissions:
            entries = getattr(permissions, key)
            before = len(entries)
            entries[:] = [entry for entry in entries if entry != rule.pattern]
            removed = len(entries) != before
        return removed

    def set_default_mode(self, scope: ConfigScope, mode: Optional[PermissionMode]) -> None:
        with self._update_scope(scope) as permissions:
            permissions.default_mode = mode.value if mode is not None else None


__all__ = ["TrustStore", "TrustedCommandEntry"]
