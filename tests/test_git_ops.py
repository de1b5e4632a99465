"""Tests for git_ops module."""

import os
import shutil
import subprocess
from pathlib import Path

import pytest

from forge.db import create_task, list_tasks
from forge.git_ops import (
    HOOK_MARKER,
    ensure_excluded,
    ensure_gitignore,
    ensure_merge_attributes,
    find_repo_root,
    install_hooks,
    merge_driver_for,
)
from forge.paths import RECORD_STORE_RELPATH
from forge.workspace import auto_export, find_workspace, init_workspace, open_index

pytestmark = [
    pytest.mark.slow,
    pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed"),
]


@pytest.fixture(autouse=True)
def git_identity_env(monkeypatch, tmp_path):
    """Ensure commits succeed without relying on global git config."""
    monkeypatch.setenv("GIT_AUTHOR_NAME", "forge-tests")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "forge-tests@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "forge-tests")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "forge-tests@example.com")
    monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path))


def _git(cwd: Path, *args: str) -> str:
    return subprocess.run(
        ["git", *args], cwd=cwd, check=True, capture_output=True, text=True
    ).stdout.strip()


def _repo(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    _git(path, "init", "-q")
    return path


def test_find_repo_root(tmp_path):
    repo = _repo(tmp_path / "repo")
    nested = repo / "a" / "b"
    nested.mkdir(parents=True)

    assert find_repo_root(nested).resolve() == repo.resolve()


def test_find_repo_root_outside_git(tmp_path):
    plain = tmp_path / "plain"
    plain.mkdir()
    assert find_repo_root(plain) is None


def test_ensure_merge_attributes_is_idempotent(tmp_path):
    repo = _repo(tmp_path / "repo")
    (repo / ".gitattributes").write_text("*.png binary")

    assert merge_driver_for(repo, RECORD_STORE_RELPATH) is None
    assert ensure_merge_attributes(repo, RECORD_STORE_RELPATH) is True
    assert ensure_merge_attributes(repo, RECORD_STORE_RELPATH) is False

    lines = (repo / ".gitattributes").read_text().splitlines()
    assert lines == ["*.png binary", f"{RECORD_STORE_RELPATH} merge=union"]
    assert merge_driver_for(repo, RECORD_STORE_RELPATH) == "union"


def test_ensure_excluded_writes_local_exclude(tmp_path):
    repo = _repo(tmp_path / "repo")

    assert ensure_excluded(repo, ".forge/") is True
    assert ensure_excluded(repo, ".forge/") is False

    exclude = (repo / ".git" / "info" / "exclude").read_text().splitlines()
    assert exclude.count(".forge/") == 1
    (repo / ".forge").mkdir()
    (repo / ".forge" / "tasks.jsonl").write_text("")
    assert _git(repo, "status", "--porcelain") == ""


def test_ensure_gitignore_reports_added_entries(tmp_path):
    assert ensure_gitignore(tmp_path, ["a", "b"]) == ["a", "b"]
    assert ensure_gitignore(tmp_path, ["b", "c"]) == ["c"]
    assert (tmp_path / ".gitignore").read_text().splitlines() == ["a", "b", "c"]


def test_install_hooks(tmp_path):
    repo = _repo(tmp_path / "repo")

    first = install_hooks(repo, RECORD_STORE_RELPATH)
    second = install_hooks(repo, RECORD_STORE_RELPATH)

    assert first == {"pre-commit": "installed", "post-merge": "installed"}
    assert second == {"pre-commit": "updated", "post-merge": "updated"}
    pre_commit = repo / ".git" / "hooks" / "pre-commit"
    text = pre_commit.read_text()
    assert HOOK_MARKER in text
    assert "forge export" in text
    assert f"git add {RECORD_STORE_RELPATH}" in text
    assert os.access(pre_commit, os.X_OK)
    assert "forge import" in (repo / ".git" / "hooks" / "post-merge").read_text()


def test_install_hooks_leaves_foreign_hooks_alone(tmp_path):
    repo = _repo(tmp_path / "repo")
    hooks = repo / ".git" / "hooks"
    hooks.mkdir(parents=True, exist_ok=True)
    (hooks / "pre-commit").write_text("#!/bin/sh\nmake lint\n")

    outcome = install_hooks(repo, RECORD_STORE_RELPATH)

    assert outcome["pre-commit"] == "skipped"
    assert outcome["post-merge"] == "installed"
    assert (hooks / "pre-commit").read_text() == "#!/bin/sh\nmake lint\n"


def test_index_files_are_not_tracked(tmp_path):
    repo = _repo(tmp_path / "repo")
    init_workspace(repo)
    _git(repo, "add", "-A")

    tracked = _git(repo, "diff", "--cached", "--name-only").splitlines()
    assert ".forge/tasks.jsonl" in tracked
    assert ".forge/config.toml" in tracked
    assert not any(path.startswith(".forge/forge.db") for path in tracked)


def test_union_merge_of_two_clones_keeps_both_tasks(tmp_path):
    origin = _repo(tmp_path / "origin")
    init_workspace(origin)
    ensure_merge_attributes(origin, RECORD_STORE_RELPATH)
    ws_origin = find_workspace(origin)
    with open_index(ws_origin) as conn:
        create_task(conn, title="base")
        auto_export(ws_origin, conn)
    _git(origin, "add", "-A")
    _git(origin, "commit", "-q", "-m", "init")
    branch = _git(origin, "rev-parse", "--abbrev-ref", "HEAD")

    clone = tmp_path / "clone"
    _git(tmp_path, "clone", "-q", str(origin), str(clone))
    ws_clone = find_workspace(clone)
    with open_index(ws_clone) as conn:
        create_task(conn, title="from clone")
        auto_export(ws_clone, conn)
    _git(clone, "commit", "-q", "-am", "clone task")

    with open_index(ws_origin) as conn:
        create_task(conn, title="from origin")
        auto_export(ws_origin, conn)
    _git(origin, "commit", "-q", "-am", "origin task")

    _git(origin, "pull", "-q", "--no-rebase", "--no-edit", str(clone), branch)

    assert "<<<<<<<" not in ws_origin.store.path.read_text()
    with open_index(ws_origin) as conn:
        titles = sorted(t["title"] for t in list_tasks(conn))
    assert titles == ["base", "from clone", "from origin"]
