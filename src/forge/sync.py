"""Reconciliation between the SQLite index and the JSONL record store.

Export projects the index into the store; import upserts the store into
the index. Conflicting snapshots for one id are settled by whole-record
last-writer-wins on ``updated_at`` (see records.prefer_snapshot); fields
are never merged.
"""

from __future__ import annotations

import contextlib
import logging
import sqlite3
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from forge.config import DEFAULT_BUSY_TIMEOUT_MS
from forge.db import (
    DEFAULT_PRIORITY,
    DEFAULT_TASK_TYPE,
    TaskRow,
    clear_deletions,
    get_connection,
    get_meta,
    get_task,
    is_deleted,
    list_deletions,
    list_dependencies,
    list_tasks,
    replace_dependencies,
    set_meta,
    transaction,
    write_task_row,
)
from forge.records import RecordStore, ScanStats, encode_snapshot, prefer_snapshot

log = logging.getLogger(__name__)

STORE_HASH_META_KEY = "record_store_hash"

_SNAPSHOT_DEFAULTS: dict[str, Any] = {
    "description": "",
    "close_reason": None,
    "priority": DEFAULT_PRIORITY,
    "type": DEFAULT_TASK_TYPE,
    "assignee": None,
    "parent_id": None,
    "external_ref": None,
    "closed_at": None,
}


@dataclass
class ExportResult:
    mode: str
    tasks: int
    lines_appended: int = 0
    lines_written: int = 0
    deletions_applied: int = 0
    malformed_dropped: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ImportResult:
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped_deleted: int = 0
    malformed: int = 0
    dependencies: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def normalize_snapshot(snapshot: Mapping[str, Any]) -> dict[str, Any]:
    """Canonical snapshot: known fields only, defaults filled, lists sorted."""
    normalized: dict[str, Any] = {
        key: snapshot.get(key, default) for key, default in _SNAPSHOT_DEFAULTS.items()
    }
    normalized.update(
        id=snapshot["id"],
        title=snapshot["title"],
        status=snapshot["status"],
        created_at=snapshot["created_at"],
        updated_at=snapshot["updated_at"],
        labels=sorted(set(snapshot.get("labels") or [])),
        metadata=dict(snapshot.get("metadata") or {}),
    )
    deps = {
        (dep["depends_on_id"], dep["type"]): dep.get("created_at") or snapshot["updated_at"]
        for dep in snapshot.get("dependencies") or []
        if dep["depends_on_id"] != snapshot["id"]
    }
    normalized["dependencies"] = [
        {"depends_on_id": depends_on_id, "type": dep_type, "created_at": created_at}
        for (depends_on_id, dep_type), created_at in sorted(deps.items())
    ]
    return normalized


def task_snapshot(conn: sqlite3.Connection, task: TaskRow) -> dict[str, Any]:
    """Full-state snapshot of one indexed task, edges included."""
    snapshot: dict[str, Any] = dict(task)
    snapshot["dependencies"] = [
        {
            "depends_on_id": dep["depends_on_id"],
            "type": dep["type"],
            "created_at": dep["created_at"],
        }
        for dep in list_dependencies(conn, task["id"])
    ]
    return normalize_snapshot(snapshot)


def index_snapshots(conn: sqlite3.Connection) -> dict[str, dict[str, Any]]:
    return {task["id"]: task_snapshot(conn, task) for task in list_tasks(conn)}


def _differs(a: Mapping[str, Any], b: Mapping[str, Any]) -> bool:
    return encode_snapshot(a) != encode_snapshot(b)


def export_records(
    conn: sqlite3.Connection, store: RecordStore, *, gc: bool = False
) -> ExportResult:
    """Write the index's current task set into the record store.

    By default only tasks whose index state beats the store's latest line
    are appended, one line each. With *gc*, or when administrative deletes
    are pending, the store is rewritten with exactly one line per id.
    Snapshots in the store that are newer than the index are kept.
    The stored sync hash only advances when the index had already seen
    everything in the store, so merged-in lines are still imported later.
    """
    with transaction(conn):
        was_fresh = not index_is_stale(conn, store)
        snapshots = index_snapshots(conn)
        pending_deletions = list_deletions(conn)
        stats = ScanStats()
        stored = {
            task_id: normalize_snapshot(snapshot)
            for task_id, snapshot in store.latest(stats).items()
        }

        if gc or pending_deletions:
            merged = {
                task_id: snapshot
                for task_id, snapshot in stored.items()
                if task_id not in pending_deletions
            }
            for task_id, snapshot in snapshots.items():
                existing = merged.get(task_id)
                merged[task_id] = (
                    snapshot if existing is None else dict(prefer_snapshot(snapshot, existing))
                )
            written = store.write_all(merged[task_id] for task_id in sorted(merged))
            clear_deletions(conn, pending_deletions)
            if stats.malformed:
                log.warning(
                    "Dropped %d malformed line(s) while rewriting %s",
                    len(stats.malformed),
                    store.path,
                )
            result = ExportResult(
                mode="rewrite",
                tasks=len(snapshots),
                lines_written=written,
                deletions_applied=len(pending_deletions),
                malformed_dropped=len(stats.malformed),
            )
        else:
            to_append = []
            for task_id in sorted(snapshots):
                snapshot = snapshots[task_id]
                existing = stored.get(task_id)
                if existing is None or (
                    prefer_snapshot(snapshot, existing) is snapshot and _differs(snapshot, existing)
                ):
                    to_append.append(snapshot)
            appended = store.append(to_append)
            result = ExportResult(mode="append", tasks=len(snapshots), lines_appended=appended)

        if was_fresh:
            set_meta(conn, STORE_HASH_META_KEY, store.content_hash())
        else:
            log.info("Store %s has unimported snapshots; index stays stale", store.path)
    log.info("Exported %d task(s) to %s (%s)", result.tasks, store.path, result.mode)
    return result


def import_records(conn: sqlite3.Connection, store: RecordStore) -> ImportResult:
    """Upsert every snapshot in the record store into the index.

    A snapshot replaces the indexed record (fields and outgoing edges) only
    when it wins on updated_at; a later line with an older timestamp never
    overwrites newer state. Malformed lines are skipped with a warning.
    """
    result = ImportResult()
    stats = ScanStats()
    with transaction(conn):
        known: dict[str, dict[str, Any]] = {}
        for raw in store.iter_snapshots(stats):
            incoming = normalize_snapshot(raw)
            task_id = incoming["id"]
            if is_deleted(conn, task_id):
                result.skipped_deleted += 1
                continue
            current = known.get(task_id)
            if current is None:
                task = get_task(conn, task_id)
                current = task_snapshot(conn, task) if task else None
            if current is None:
                _apply_snapshot(conn, incoming)
                result.created += 1
                result.dependencies += len(incoming["dependencies"])
                known[task_id] = incoming
            elif prefer_snapshot(incoming, current) is incoming and _differs(incoming, current):
                _apply_snapshot(conn, incoming)
                result.updated += 1
                result.dependencies += len(incoming["dependencies"])
                known[task_id] = incoming
            else:
                result.unchanged += 1
                known[task_id] = current
        result.malformed = len(stats.malformed)
        set_meta(conn, STORE_HASH_META_KEY, store.content_hash())
    log.info(
        "Imported %s: %d created, %d updated, %d unchanged, %d malformed",
        store.path,
        result.created,
        result.updated,
        result.unchanged,
        result.malformed,
    )
    return result


def _apply_snapshot(conn: sqlite3.Connection, snapshot: Mapping[str, Any]) -> None:
    row = {key: value for key, value in snapshot.items() if key != "dependencies"}
    write_task_row(conn, row)
    replace_dependencies(conn, snapshot["id"], snapshot["dependencies"])


def index_is_stale(conn: sqlite3.Connection, store: RecordStore) -> bool:
    """True when the store changed since this index last imported or exported it."""
    return (get_meta(conn, STORE_HASH_META_KEY) or "") != store.content_hash()


def import_if_stale(conn: sqlite3.Connection, store: RecordStore) -> ImportResult | None:
    if not store.exists() or not index_is_stale(conn, store):
        return None
    return import_records(conn, store)


def rebuild_index(
    db_path: Path, store: RecordStore, *, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS
) -> ImportResult:
    """Discard the index files and re-import everything from the store.

    This is the recovery procedure for a corrupt or lost index. Pending
    administrative deletions that were never exported are lost with it.
    """
    for suffix in ("", "-wal", "-shm", "-journal"):
        with contextlib.suppress(FileNotFoundError):
            Path(f"{db_path}{suffix}").unlink()
    log.warning("Rebuilding index %s from %s", db_path, store.path)
    conn = get_connection(db_path, busy_timeout_ms=busy_timeout_ms)
    try:
        return import_records(conn, store)
    finally:
        conn.close()
