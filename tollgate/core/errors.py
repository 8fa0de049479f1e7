"""Error types raised by the permission engine."""

from __future__ import annotations

from pathlib import Path
from typing import Optional


class TollgateError(Exception):
    """Base exception for all tollgate errors."""

    def __str__(self) -> str:
        return self.args[0] if self.args else "An error occurred in tollgate"


class InvalidPermissionRule(TollgateError, ValueError):
    """Raised when a rule string does not follow the ``Tool(content)`` grammar."""

    def __init__(self, message: str, rule: object = None) -> None:
        super().__init__(message)
        self.rule = rule


class TrustStoreError(TollgateError):
    """Raised when a settings scope cannot be read for update or written."""

    def __init__(self, message: str, path: Optional[Path] = None) -> None:
        super().__init__(message)
        self.path = path


class PermissionRequestCancelled(TollgateError):
    """Raised to the caller awaiting a confirmation that was cancelled."""

    def __init__(self, message: str, request_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.request_id = request_id


__all__ = [
    "InvalidPermissionRule",
    "PermissionRequestCancelled",
    "TollgateError",
    "TrustStoreError",
]
