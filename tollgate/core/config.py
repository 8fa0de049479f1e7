"""Configuration management for tollgate.

Permission settings live in three scopes, each a JSON file with a
``permissions`` object:

- user:    ``~/.tollgate/settings.json`` (``TOLLGATE_CONFIG_DIR`` overrides the directory)
- project: ``<project>/.tollgate/settings.json`` (checked into git)
- local:   ``<project>/.tollgate/settings.local.json`` (git-ignored)

Keys this package does not know about are preserved when a file is rewritten.
"""

import json
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from tollgate.core.errors import TrustStoreError
from tollgate.utils.log import get_logger
from tollgate.utils.workdir import resolve_workdir


logger = get_logger()

CONFIG_DIR_NAME = ".tollgate"
SETTINGS_FILENAME = "settings.json"
LOCAL_SETTINGS_FILENAME = "settings.local.json"

_READ_ERRORS = (
    json.JSONDecodeError,
    OSError,
    UnicodeDecodeError,
    ValueError,
    TypeError,
)


class ConfigScope(str, Enum):
    LOCAL = "local"
    PROJECT = "project"
    USER = "user"


# Highest precedence first.
SCOPE_PRECEDENCE: Tuple[ConfigScope, ...] = (
    ConfigScope.LOCAL,
    ConfigScope.PROJECT,
    ConfigScope.USER,
)

_SCOPE_ALIASES: Dict[str, ConfigScope] = {
    "user": ConfigScope.USER,
    "global": ConfigScope.USER,
    "project": ConfigScope.PROJECT,
    "local": ConfigScope.LOCAL,
    "project-local": ConfigScope.LOCAL,
    "projectlocal": ConfigScope.LOCAL,
}


def parse_scope(value: Any) -> ConfigScope:
    if isinstance(value, ConfigScope):
        return value
    scope = _SCOPE_ALIASES.get(str(value).strip().lower())
    if scope is None:
        raise ValueError(f"Unknown scope {value!r}. Use user, project, or local.")
    return scope


class PermissionSettings(BaseModel):
    """The ``permissions`` object of one settings file.

    Entries are validated individually when rules are loaded, so malformed
    ones can be skipped without rejecting the whole file.
    """

    allow: list[Any] = Field(default_factory=list)
    deny: list[Any] = Field(default_factory=list)
    default_mode: Optional[Any] = Field(default=None, alias="defaultMode")
    additional_directories: list[Any] = Field(
        default_factory=list, alias="additionalDirectories"
    )
    model_config = ConfigDict(extra="allow", validate_by_alias=True, validate_by_name=True)


class ScopeSettings(BaseModel):
    """Contents of one settings file."""

    permissions: PermissionSettings = Field(default_factory=PermissionSettings)
    model_config = ConfigDict(extra="allow")

    def to_json(self) -> str:
        return json.dumps(
            self.model_dump(by_alias=True, exclude_none=True), indent=2, ensure_ascii=False
        )


def _write_json_atomic(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as fh:
        fh.write(text)
        fh.write("\n")
    tmp_path.replace(path)


class ConfigManager:
    """Reads and writes the per-scope settings files for one project."""

    def __init__(
        self,
        project_path: Optional[Path] = None,
        user_config_dir: Optional[Path] = None,
    ) -> None:
        self.project_path = resolve_workdir(project_path)
        env_dir = os.getenv("TOLLGATE_CONFIG_DIR")
        if user_config_dir is not None:
            self.user_config_dir = Path(user_config_dir)
        elif env_dir:
            self.user_config_dir = Path(env_dir).expanduser()
        else:
            self.user_config_dir = Path.home() / CONFIG_DIR_NAME

    def scope_path(self, scope: ConfigScope) -> Path:
        if scope is ConfigScope.USER:
            return self.user_config_dir / SETTINGS_FILENAME
        if scope is ConfigScope.PROJECT:
            return self.project_path / CONFIG_DIR_NAME / SETTINGS_FILENAME
        return self.project_path / CONFIG_DIR_NAME / LOCAL_SETTINGS_FILENAME

    def _parse(self, config_path: Path) -> ScopeSettings:
        data = json.loads(config_path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise TypeError(f"expected a JSON object, got {type(data).__name__}")
        return ScopeSettings.model_validate(data)

    def load_scope(self, scope: ConfigScope) -> ScopeSettings:
        """Load one scope. Missing or unreadable files yield empty settings."""
        config_path = self.scope_path(scope)
        if not config_path.exists():
            logger.debug(
                "[config] %s settings not found; using defaults",
                scope.value,
                extra={"path": str(config_path)},
            )
            return ScopeSettings()
        try:
            settings = self._parse(config_path)
        except _READ_ERRORS as e:
            logger.warning(
                "Error loading %s settings: %s: %s",
                scope.value,
                type(e).__name__,
                e,
                extra={"error": str(e), "path": str(config_path)},
            )
            return ScopeSettings()
        logger.debug(
            "[config] Loaded %s settings",
            scope.value,
            extra={
                "path": str(config_path),
                "allow_count": len(settings.permissions.allow),
                "deny_count": len(settings.permissions.deny),
            },
        )
        return settings

    def load_scope_for_update(self, scope: ConfigScope) -> ScopeSettings:
        """Load one scope before rewriting it. A corrupt file raises instead of being replaced."""
        config_path = self.scope_path(scope)
        if not config_path.exists():
            return ScopeSettings()
        try:
            return self._parse(config_path)
        except _READ_ERRORS as e:
            raise TrustStoreError(
                f"Refusing to overwrite unreadable {scope.value} settings at {config_path}: {e}",
                config_path,
            ) from e

    def save_scope(self, scope: ConfigScope, settings: ScopeSettings) -> Path:
        config_path = self.scope_path(scope)
        _write_json_atomic(config_path, settings.to_json())
        if scope is ConfigScope.LOCAL:
            self._ensure_gitignore_entry(LOCAL_SETTINGS_FILENAME)
        logger.debug(
            "[config] Saved %s settings",
            scope.value,
            extra={"path": str(config_path), "project_path": str(self.project_path)},
        )
        return config_path

    def _ensure_gitignore_entry(self, entry: str) -> bool:
        """Ensure an entry exists in .tollgate/.gitignore. Returns True if added."""
        gitignore_path = self.project_path / CONFIG_DIR_NAME / ".gitignore"
        try:
            text = ""
            if gitignore_path.exists():
                text = gitignore_path.read_text(encoding="utf-8", errors="ignore")
                if entry in text.splitlines():
                    return False
            with gitignore_path.open("a", encoding="utf-8") as f:
                if text and not text.endswith("\n"):
                    f.write("\n")
                f.write(f"{entry}\n")
            return True
        except OSError as e:
            logger.warning(
                "[config] Failed to update .gitignore: %s: %s",
                type(e).__name__,
                e,
                extra={"path": str(gitignore_path)},
            )
            return False


__all__ = [
    "ConfigManager",
    "ConfigScope",
    "PermissionSettings",
    "SCOPE_PRECEDENCE",
    "ScopeSettings",
    "parse_scope",
]
