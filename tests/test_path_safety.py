"""Tests for workspace containment checks."""

import os
from pathlib import Path

from tollgate.utils.permissions.path_safety import (
    extract_directory_from_glob,
    is_inside,
    is_inside_any,
    resolve_real_path,
)


def test_paths_below_root_are_inside(workspace: Path):
    assert is_inside(workspace / "src" / "a.ts", workspace)
    assert is_inside(workspace / "not" / "created" / "yet.txt", workspace)
    assert is_inside(workspace, workspace)


def test_relative_candidates_resolve_against_base(workspace: Path):
    assert is_inside("src/a.ts", workspace)
    assert is_inside("../README.md", workspace, base=workspace / "src")
    assert not is_inside("../../outside", workspace, base=workspace / "src")
    assert not is_inside("../etc/passwd", workspace)


def test_dotdot_traversal_is_detected(workspace: Path):
    assert not is_inside(f"{workspace}/../etc/passwd", workspace)
    assert is_inside(f"{workspace}/src/../README.md", workspace)


def test_sibling_with_shared_prefix_is_outside(tmp_path: Path, workspace: Path):
    sibling = tmp_path / "project-evil"
    sibling.mkdir()
    assert not is_inside(sibling / "x", workspace)


def test_symlink_pointing_outside_is_outside(tmp_path: Path, workspace: Path):
    outside = tmp_path / "outside"
    outside.mkdir()
    (workspace / "escape").symlink_to(outside, target_is_directory=True)

    assert not is_inside(workspace / "escape", workspace)
    assert not is_inside(workspace / "escape" / "new-file.txt", workspace)


def test_dangling_symlink_is_followed(tmp_path: Path, workspace: Path):
    (workspace / "dangling").symlink_to(tmp_path / "outside" / "missing.txt")
    assert not is_inside(workspace / "dangling", workspace)


def test_symlink_within_workspace_stays_inside(workspace: Path):
    (workspace / "alias").symlink_to(workspace / "src", target_is_directory=True)
    assert is_inside(workspace / "alias" / "a.ts", workspace)


def test_symlinked_root_is_resolved(tmp_path: Path, workspace: Path):
    link = tmp_path / "project-link"
    link.symlink_to(workspace, target_is_directory=True)
    assert is_inside(workspace / "src", link)
    assert is_inside(link / "src", workspace)


def test_tilde_expands_to_home(isolated_home: Path):
    expected = Path(os.path.realpath(isolated_home)) / "notes.txt"
    assert resolve_real_path("~/notes.txt") == expected


def test_is_inside_any(tmp_path: Path, workspace: Path):
    extra = tmp_path / "shared"
    extra.mkdir()
    assert is_inside_any(extra / "lib", [workspace, extra])
    assert not is_inside_any(tmp_path / "elsewhere", [workspace, extra])
    assert not is_inside_any(workspace, [])


def test_extract_directory_from_glob():
    assert extract_directory_from_glob("src/**/*.py") == "src"
    assert extract_directory_from_glob("docs/a?.md") == "docs"
    assert extract_directory_from_glob("foo*") == "."
    assert extract_directory_from_glob("/etc/*.conf") == "/etc"
    assert extract_directory_from_glob("plain/path") == "plain/path"
