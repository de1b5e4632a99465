"""Workspace discovery and the index handle used by every command."""

from __future__ import annotations

import contextlib
import logging
import sqlite3
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

from forge.config import ForgeConfig, load_config, with_prefix, write_config
from forge.db import get_connection
from forge.errors import WorkspaceNotFoundError
from forge.git_ops import ensure_gitignore
from forge.paths import (
    FORGE_DIR_NAME,
    INDEX_FILE_NAME,
    config_path,
    find_forge_dir,
    index_path,
    record_store_path,
)
from forge.records import RecordStore
from forge.sync import ExportResult, export_records, import_if_stale, rebuild_index

log = logging.getLogger(__name__)

# Index files are local caches and never travel through git.
INDEX_IGNORE_ENTRIES = [INDEX_FILE_NAME, f"{INDEX_FILE_NAME}-*", ".tasks_*.jsonl.tmp"]


@dataclass(frozen=True)
class Workspace:
    forge_dir: Path
    config: ForgeConfig

    @property
    def root(self) -> Path:
        return self.forge_dir.parent

    @property
    def db_path(self) -> Path:
        return index_path(self.forge_dir)

    @property
    def store(self) -> RecordStore:
        return RecordStore(record_store_path(self.forge_dir))


def find_workspace(start: Path | None = None) -> Workspace:
    forge_dir = find_forge_dir(start)
    if forge_dir is None or not forge_dir.is_dir():
        raise WorkspaceNotFoundError(
            f"No {FORGE_DIR_NAME}/ directory found. Run 'forge init' first."
        )
    return Workspace(forge_dir=forge_dir, config=load_config(forge_dir))


def init_workspace(root: Path, *, prefix: str | None = None) -> Workspace:
    """Create (or complete) a workspace under *root*. Idempotent.

    An existing config keeps its settings unless *prefix* is given.
    """
    forge_dir = root / FORGE_DIR_NAME
    forge_dir.mkdir(parents=True, exist_ok=True)
    config = load_config(forge_dir)
    if prefix is not None:
        config = with_prefix(config, prefix)
    if prefix is not None or not config_path(forge_dir).exists():
        write_config(forge_dir, config)
    workspace = Workspace(forge_dir=forge_dir, config=config)
    ensure_gitignore(forge_dir, INDEX_IGNORE_ENTRIES)
    workspace.store.ensure()
    with open_index(workspace):
        pass
    return workspace


def _open_or_rebuild(workspace: Workspace) -> sqlite3.Connection:
    timeout = workspace.config.busy_timeout_ms
    try:
        conn = get_connection(workspace.db_path, busy_timeout_ms=timeout)
        try:
            conn.execute("SELECT COUNT(*) FROM tasks").fetchone()
        except BaseException:
            conn.close()
            raise
        return conn
    except sqlite3.DatabaseError as exc:
        log.warning(
            "Index %s is unreadable (%s); rebuilding from %s",
            workspace.db_path,
            exc,
            workspace.store.path,
        )
    rebuild_index(workspace.db_path, workspace.store, busy_timeout_ms=timeout)
    return get_connection(workspace.db_path, busy_timeout_ms=timeout)


@contextlib.contextmanager
def open_index(
    workspace: Workspace, *, auto_import: bool | None = None
) -> Iterator[sqlite3.Connection]:
    """Open the workspace index, recovering from corruption by rebuilding.

    When auto-import is on (config default), snapshots merged into the
    record store since the last sync are imported before the handle is
    returned.
    """
    conn = _open_or_rebuild(workspace)
    try:
        if workspace.config.auto_import if auto_import is None else auto_import:
            import_if_stale(conn, workspace.store)
        yield conn
    finally:
        conn.close()


def auto_export(workspace: Workspace, conn: sqlite3.Connection) -> ExportResult | None:
    """Export after a write when the workspace asks for it."""
    if not workspace.config.auto_export:
        return None
    return export_records(conn, workspace.store)
