"""Shared test fixtures: template DB for fast per-test isolation, workspaces."""

import shutil
import sqlite3
import tempfile
from pathlib import Path

import pytest

from forge.db import get_connection
from forge.records import RecordStore
from forge.workspace import Workspace, init_workspace


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the developer's own forge settings out of every test."""
    monkeypatch.delenv("FORGE_DIR", raising=False)
    monkeypatch.delenv("FORGE_DB_PATH", raising=False)
    monkeypatch.setenv("FORGE_ACTOR", "tester")


@pytest.fixture(scope="session")
def _db_template_path() -> Path:
    """Create a single template DB with the full schema.

    Copying this file is cheaper than creating the schema in every test.
    """
    fd, path_str = tempfile.mkstemp(suffix=".db")
    path = Path(path_str)
    try:
        conn = get_connection(path)
        conn.close()
        yield path
    finally:
        path.unlink(missing_ok=True)
        for suffix in ("-wal", "-shm"):
            Path(f"{path}{suffix}").unlink(missing_ok=True)


@pytest.fixture()
def db_conn(tmp_path: Path, _db_template_path: Path) -> sqlite3.Connection:
    """Per-test DB connection with the schema pre-created."""
    db_path = tmp_path / "test.db"
    shutil.copy2(_db_template_path, db_path)
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture()
def db_conn_path(tmp_path: Path, _db_template_path: Path) -> tuple[sqlite3.Connection, Path]:
    """Per-test DB connection + path (for tests that re-open the DB)."""
    db_path = tmp_path / "test.db"
    shutil.copy2(_db_template_path, db_path)
    conn = get_connection(db_path)
    try:
        yield conn, db_path
    finally:
        conn.close()


@pytest.fixture()
def store(tmp_path: Path) -> RecordStore:
    return RecordStore(tmp_path / "tasks.jsonl")


@pytest.fixture()
def workspace(tmp_path: Path) -> Workspace:
    """Initialized workspace in a plain (non-git) directory."""
    root = tmp_path / "repo"
    root.mkdir()
    return init_workspace(root)
