"""Tests for the small shared helpers.

Tests cover:
- log.py: console level and structured file mirroring
- workdir.py: project directory resolution
"""

import logging
import os
from pathlib import Path

from tollgate.utils import log as log_module
from tollgate.utils.log import StructuredFormatter, init_logger
from tollgate.utils.workdir import resolve_workdir, startup_dir


# ─────────────────────────────────────────────────────────────────────────────
# log.py Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestLogging:
    def test_file_mirror_includes_context(self, tmp_path: Path):
        log_file = tmp_path / "logs" / "tollgate.log"
        logger = init_logger(log_file)
        try:
            logger.debug("[engine] decided %s", "allow", extra={"rule": "Bash(ls:*)"})
            text = log_file.read_text(encoding="utf-8")
        finally:
            init_logger()

        assert "[DEBUG] [engine] decided allow" in text
        assert '| {"rule": "Bash(ls:*)"}' in text

    def test_reinit_without_file_detaches_mirror(self, tmp_path: Path):
        init_logger(tmp_path / "first.log")
        logger = init_logger()
        assert logger.log_file is None
        assert not any(isinstance(h, logging.FileHandler) for h in logger.logger.handlers)

    def test_log_file_from_environment(self, tmp_path: Path, monkeypatch):
        target = tmp_path / "env.log"
        monkeypatch.setenv(log_module.FILE_ENV, str(target))
        logger = init_logger()
        try:
            assert logger.log_file == target
        finally:
            monkeypatch.delenv(log_module.FILE_ENV)
            init_logger()

    def test_console_level_from_environment(self, monkeypatch):
        monkeypatch.setenv(log_module.LEVEL_ENV, "debug")
        assert log_module._console_level() == logging.DEBUG
        monkeypatch.setenv(log_module.LEVEL_ENV, "chatty")
        assert log_module._console_level() == logging.WARNING

    def test_formatter_uses_utc_timestamps(self):
        record = logging.makeLogRecord(
            {"msg": "hello", "levelname": "INFO", "created": 0.0, "msecs": 0.0}
        )
        line = StructuredFormatter().format(record)
        assert line == "1970-01-01T00:00:00.000Z [INFO] hello"


# ─────────────────────────────────────────────────────────────────────────────
# workdir.py Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestResolveWorkdir:
    def test_explicit_path_is_resolved(self, tmp_path: Path):
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        assert resolve_workdir(str(nested / "..")) == (tmp_path / "a").resolve()

    def test_defaults_to_current_directory(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        assert resolve_workdir() == tmp_path.resolve()
        assert resolve_workdir("  ") == tmp_path.resolve()

    def test_falls_back_when_cwd_is_gone(self, monkeypatch):
        def missing_cwd():
            raise FileNotFoundError("directory removed")

        monkeypatch.setattr(os, "getcwd", missing_cwd)
        assert resolve_workdir() == startup_dir()
