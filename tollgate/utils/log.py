"""Logging for tollgate.

Console output goes to stderr at ``TOLLGATE_LOG_LEVEL`` (WARNING by default).
Setting ``TOLLGATE_LOG_FILE`` mirrors every record, debug included, into that
file with UTC timestamps and any ``extra=`` context serialized as JSON.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

LOGGER_NAME = "tollgate"
LEVEL_ENV = "TOLLGATE_LOG_LEVEL"
FILE_ENV = "TOLLGATE_LOG_FILE"

# Attribute names every LogRecord carries; anything else came in through ``extra=``.
_STANDARD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


def _record_context(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _STANDARD_ATTRS and not key.startswith("_")
    }


class StructuredFormatter(logging.Formatter):
    """Formatter producing ``<utc time> [LEVEL] message | {context}`` lines."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s [%(levelname)s] %(message)s")

    def formatTime(self, record: logging.LogRecord, datefmt: Optional[str] = None) -> str:
        stamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
        return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = _record_context(record)
        if not context:
            return line
        try:
            rendered = json.dumps(context, sort_keys=True, default=str)
        except (TypeError, ValueError):
            rendered = repr(context)
        return f"{line} | {rendered}"


def _console_level() -> int:
    level = logging.getLevelName(os.getenv(LEVEL_ENV, "WARNING").strip().upper())
    return level if isinstance(level, int) else logging.WARNING


class TollgateLogger:
    """Thin wrapper over the ``tollgate`` stdlib logger.

    Call sites prefix messages with the emitting component, e.g.
    ``logger.warning("[trust_store] ...")``.
    """

    def __init__(self, log_file: Optional[Path] = None):
        self.logger = logging.getLogger(LOGGER_NAME)
        self.logger.setLevel(logging.DEBUG)
        self.logger.propagate = False
        self.log_file: Optional[Path] = None

        if not any(getattr(h, "_tollgate_console", False) for h in self.logger.handlers):
            console = logging.StreamHandler(sys.stderr)
            console.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
            console._tollgate_console = True  # type: ignore[attr-defined]
            self.logger.addHandler(console)
        for handler in self.logger.handlers:
            if getattr(handler, "_tollgate_console", False):
                handler.setLevel(_console_level())

        self._drop_file_handlers()
        if log_file is not None:
            self.mirror_to(log_file)

    def _drop_file_handlers(self) -> None:
        for handler in list(self.logger.handlers):
            if isinstance(handler, logging.FileHandler):
                self.logger.removeHandler(handler)
                handler.close()

    def mirror_to(self, log_file: Path) -> Path:
        """Write all records to ``log_file`` in addition to the console."""
        log_file = Path(log_file).expanduser()
        if self.log_file == log_file:
            return log_file
        self._drop_file_handlers()
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_file, encoding="utf-8")
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(StructuredFormatter())
        self.logger.addHandler(handler)
        self.log_file = log_file
        return log_file

    def _log(self, level: int, message: str, args: Any, kwargs: Dict[str, Any]) -> None:
        kwargs.setdefault("stacklevel", 3)
        self.logger.log(level, message, *args, **kwargs)

    def debug(self, message: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.DEBUG, message, args, kwargs)

    def info(self, message: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.INFO, message, args, kwargs)

    def warning(self, message: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.WARNING, message, args, kwargs)

    def error(self, message: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.ERROR, message, args, kwargs)

    def exception(self, message: str, *args: Any, **kwargs: Any) -> None:
        kwargs.setdefault("exc_info", True)
        self._log(logging.ERROR, message, args, kwargs)


_logger: Optional[TollgateLogger] = None


def init_logger(log_file: Optional[Path] = None) -> TollgateLogger:
    """(Re)build the shared logger; ``log_file`` falls back to ``TOLLGATE_LOG_FILE``."""
    global _logger
    if log_file is None and os.getenv(FILE_ENV):
        log_file = Path(os.environ[FILE_ENV])
    _logger = TollgateLogger(log_file=log_file)
    return _logger


def get_logger() -> TollgateLogger:
    if _logger is None:
        return init_logger()
    return _logger
