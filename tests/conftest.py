"""Pytest configuration and fixtures for all tests."""

from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def isolated_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point ``~`` and the user settings directory at a throwaway location.

    The home directory sits next to (not inside) the workspace, so ``cd`` with
    no arguments always leaves the safe zone.
    """
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("TOLLGATE_CONFIG_DIR", str(home / ".tollgate"))
    return home


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    project = tmp_path / "project"
    (project / "src").mkdir(parents=True)
    return project
