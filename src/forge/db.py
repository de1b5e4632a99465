"""SQLite query index for the task graph.

The index is a rebuildable projection of the record store. Every process
opens its own connection; writers serialise through SQLite's single writer
lock (``BEGIN IMMEDIATE``) under a bounded busy timeout.
"""

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
from collections.abc import Iterable, Iterator, Mapping
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, TypedDict, cast

from forge.config import DEFAULT_BUSY_TIMEOUT_MS, DEFAULT_PREFIX
from forge.errors import (
    IndexLockTimeout,
    InvalidTransitionError,
    TaskNotFoundError,
    TaskValidationError,
)
from forge.ids import DEFAULT_ID_LENGTH, mint

log = logging.getLogger(__name__)

VALID_TASK_STATUSES = {"open", "in_progress", "closed"}
VALID_TASK_TYPES = {"task", "bug", "feature", "epic", "message"}
VALID_DEPENDENCY_TYPES = {"blocks", "related", "discovered-from"}
MIN_PRIORITY = 0
MAX_PRIORITY = 4
DEFAULT_PRIORITY = 2
DEFAULT_TASK_TYPE = "task"

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# Bump when the table layout changes. The index is disposable, so older
# files are simply rebuilt from the record store.
SCHEMA_VERSION = 1

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        status TEXT NOT NULL DEFAULT 'open'
            CHECK (status IN ('open', 'in_progress', 'closed')),
        close_reason TEXT,
        priority INTEGER NOT NULL DEFAULT 2 CHECK (priority BETWEEN 0 AND 4),
        type TEXT NOT NULL DEFAULT 'task',
        assignee TEXT,
        parent_id TEXT,
        labels TEXT NOT NULL DEFAULT '[]',
        external_ref TEXT,
        metadata TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        closed_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS dependencies (
        task_id TEXT NOT NULL,
        depends_on_id TEXT NOT NULL,
        type TEXT NOT NULL DEFAULT 'blocks',
        created_at TEXT NOT NULL,
        PRIMARY KEY (task_id, depends_on_id, type)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS deletions (
        id TEXT PRIMARY KEY,
        deleted_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS index_meta (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    )
    """,
)

_INDEX_STATEMENTS = (
    "CREATE INDEX IF NOT EXISTS idx_tasks_status_priority "
    "ON tasks(status, priority, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_assignee ON tasks(assignee)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_parent_id ON tasks(parent_id)",
    "CREATE INDEX IF NOT EXISTS idx_dependencies_task ON dependencies(task_id, type)",
    "CREATE INDEX IF NOT EXISTS idx_dependencies_depends_on "
    "ON dependencies(depends_on_id, type)",
)

_TASK_COLUMNS = (
    "id",
    "title",
    "description",
    "status",
    "close_reason",
    "priority",
    "type",
    "assignee",
    "parent_id",
    "labels",
    "external_ref",
    "metadata",
    "created_at",
    "updated_at",
    "closed_at",
)

UPDATABLE_FIELDS = frozenset(
    {
        "title",
        "description",
        "status",
        "close_reason",
        "priority",
        "type",
        "assignee",
        "parent_id",
        "labels",
        "external_ref",
        "metadata",
    }
)


class TaskRow(TypedDict):
    id: str
    title: str
    description: str
    status: str
    close_reason: str | None
    priority: int
    type: str
    assignee: str | None
    parent_id: str | None
    labels: list[str]
    external_ref: str | None
    metadata: dict[str, Any]
    created_at: str
    updated_at: str
    closed_at: str | None


class DependencyRow(TypedDict):
    task_id: str
    depends_on_id: str
    type: str
    created_at: str


# -- timestamps --


def utcnow() -> str:
    """ISO 8601 UTC timestamp with microseconds; sorts lexicographically."""
    return datetime.now(UTC).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def next_timestamp(previous: str | None) -> str:
    """Current time, but always strictly after *previous*."""
    now = datetime.now(UTC)
    if previous:
        floor = parse_timestamp(previous) + timedelta(microseconds=1)
        if floor > now:
            now = floor
    return now.strftime(TIMESTAMP_FORMAT)


# -- connections and transactions --


def _is_lock_error(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return "locked" in message or "busy" in message


def _lock_timeout(exc: sqlite3.OperationalError) -> IndexLockTimeout:
    return IndexLockTimeout(f"Timed out waiting for the index writer lock: {exc}")


def get_connection(
    db_path: Path, *, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS
) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=busy_timeout_ms / 1000, isolation_level=None)
    conn.row_factory = sqlite3.Row
    try:
        conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        conn.execute("PRAGMA journal_mode=WAL")
        current_version = conn.execute("PRAGMA user_version").fetchone()[0]
        if current_version < SCHEMA_VERSION:
            with transaction(conn):
                for statement in (*_SCHEMA_STATEMENTS, *_INDEX_STATEMENTS):
                    conn.execute(statement)
                conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
    except sqlite3.OperationalError as exc:
        conn.close()
        if _is_lock_error(exc):
            raise _lock_timeout(exc) from exc
        raise
    except BaseException:
        conn.close()
        raise
    return conn


@contextlib.contextmanager
def connect(db_path: Path, *, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS):
    """Context manager wrapper for get_connection().

    Usage:
        with connect(path) as conn:
            do_stuff(conn)
    # conn.close() is guaranteed even on exceptions.
    """
    conn = get_connection(db_path, busy_timeout_ms=busy_timeout_ms)
    try:
        yield conn
    finally:
        conn.close()


@contextlib.contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run the block under the single writer lock.

    Re-entrant: a nested call joins the outer transaction. Lock waits past
    the busy timeout surface as IndexLockTimeout.
    """
    if conn.in_transaction:
        yield conn
        return
    try:
        conn.execute("BEGIN IMMEDIATE")
    except sqlite3.OperationalError as exc:
        if _is_lock_error(exc):
            raise _lock_timeout(exc) from exc
        raise
    try:
        yield conn
        conn.execute("COMMIT")
    except sqlite3.OperationalError as exc:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        if _is_lock_error(exc):
            raise _lock_timeout(exc) from exc
        raise
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise


# -- validation --


def validate_title(title: object) -> str:
    if not isinstance(title, str) or not title.strip():
        raise TaskValidationError("Task title must be a non-empty string.")
    return title.strip()


def validate_priority(priority: object) -> int:
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise TaskValidationError(f"Invalid priority {priority!r}. Must be an integer 0-4.")
    if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
        raise TaskValidationError(
            f"Invalid priority {priority}. Must be between {MIN_PRIORITY} and {MAX_PRIORITY}."
        )
    return priority


def validate_task_type(task_type: object) -> str:
    if task_type not in VALID_TASK_TYPES:
        raise TaskValidationError(
            f"Invalid task type '{task_type}'. Must be one of: {sorted(VALID_TASK_TYPES)}"
        )
    return cast(str, task_type)


def validate_status(status: object) -> str:
    if status not in VALID_TASK_STATUSES:
        raise TaskValidationError(
            f"Invalid task status '{status}'. Must be one of: {sorted(VALID_TASK_STATUSES)}"
        )
    return cast(str, status)


def validate_dependency_type(dep_type: object) -> str:
    if dep_type not in VALID_DEPENDENCY_TYPES:
        raise TaskValidationError(
            f"Invalid dependency type '{dep_type}'. "
            f"Must be one of: {sorted(VALID_DEPENDENCY_TYPES)}"
        )
    return cast(str, dep_type)


def validate_labels(labels: Iterable[object]) -> list[str]:
    if isinstance(labels, str):
        raise TaskValidationError("Labels must be a collection of strings, not a string.")
    normalized: set[str] = set()
    for label in labels:
        if not isinstance(label, str) or not label.strip():
            raise TaskValidationError(f"Invalid label {label!r}. Must be a non-empty string.")
        normalized.add(label.strip())
    return sorted(normalized)


def validate_metadata(metadata: object) -> dict[str, Any]:
    if not isinstance(metadata, dict) or not all(isinstance(k, str) for k in metadata):
        raise TaskValidationError("Task metadata must be a JSON object with string keys.")
    try:
        json.dumps(metadata)
    except (TypeError, ValueError) as exc:
        raise TaskValidationError(f"Task metadata is not JSON-serializable: {exc}") from None
    return dict(metadata)


def _optional_text(field: str, value: object) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise TaskValidationError(f"'{field}' must be a string or null.")
    stripped = value.strip()
    return stripped or None


def _normalize_changes(changes: Mapping[str, object]) -> dict[str, Any]:
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise TaskValidationError(
            f"Cannot update field(s): {', '.join(sorted(unknown))}. "
            f"Updatable: {', '.join(sorted(UPDATABLE_FIELDS))}"
        )
    normalized: dict[str, Any] = {}
    for field, value in changes.items():
        if field == "title":
            normalized[field] = validate_title(value)
        elif field == "description":
            if not isinstance(value, str):
                raise TaskValidationError("'description' must be a string.")
            normalized[field] = value
        elif field == "status":
            normalized[field] = validate_status(value)
        elif field == "priority":
            normalized[field] = validate_priority(value)
        elif field == "type":
            normalized[field] = validate_task_type(value)
        elif field == "labels":
            normalized[field] = validate_labels(cast(Iterable[object], value))
        elif field == "metadata":
            normalized[field] = validate_metadata(value)
        else:
            normalized[field] = _optional_text(field, value)
    return normalized


# -- rows --


def row_to_task(row: sqlite3.Row) -> TaskRow:
    task = dict(row)
    task["labels"] = json.loads(task["labels"] or "[]")
    task["metadata"] = json.loads(task["metadata"] or "{}")
    return cast(TaskRow, task)


def _task_params(task: Mapping[str, Any]) -> tuple[Any, ...]:
    values = dict(task)
    values["labels"] = json.dumps(sorted(values.get("labels") or []))
    values["metadata"] = json.dumps(values.get("metadata") or {}, sort_keys=True)
    return tuple(values.get(column) for column in _TASK_COLUMNS)


_INSERT_OR_REPLACE_TASK = (
    f"INSERT OR REPLACE INTO tasks ({', '.join(_TASK_COLUMNS)}) "
    f"VALUES ({', '.join('?' for _ in _TASK_COLUMNS)})"
)


def write_task_row(conn: sqlite3.Connection, task: Mapping[str, Any]) -> None:
    """Persist a full task row, replacing any existing row with the same id."""
    conn.execute(_INSERT_OR_REPLACE_TASK, _task_params(task))


def _task_exists(conn: sqlite3.Connection, task_id: str) -> bool:
    return conn.execute("SELECT 1 FROM tasks WHERE id = ?", (task_id,)).fetchone() is not None


def _id_taken(conn: sqlite3.Connection, task_id: str) -> bool:
    if _task_exists(conn, task_id):
        return True
    return conn.execute("SELECT 1 FROM deletions WHERE id = ?", (task_id,)).fetchone() is not None


def _check_parent(conn: sqlite3.Connection, parent_id: str, task_id: str | None) -> None:
    if parent_id == task_id:
        raise TaskValidationError("A task cannot be its own parent.")
    parent = get_task(conn, parent_id)
    if parent is None:
        raise TaskNotFoundError(parent_id)
    if parent["type"] != "epic":
        raise TaskValidationError(
            f"Parent '{parent_id}' is a {parent['type']}; only epics can have subtasks."
        )


def touch_task(conn: sqlite3.Connection, task_id: str) -> str | None:
    """Advance a task's updated_at. Returns the new value, None if absent."""
    row = conn.execute("SELECT updated_at FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if row is None:
        return None
    updated_at = next_timestamp(row["updated_at"])
    conn.execute("UPDATE tasks SET updated_at = ? WHERE id = ?", (updated_at, task_id))
    return updated_at


# -- tasks --


def create_task(
    conn: sqlite3.Connection,
    *,
    title: str,
    prefix: str = DEFAULT_PREFIX,
    type: str = DEFAULT_TASK_TYPE,
    priority: int = DEFAULT_PRIORITY,
    description: str = "",
    parent_id: str | None = None,
    external_ref: str | None = None,
    labels: Iterable[str] = (),
    metadata: Mapping[str, Any] | None = None,
    id_length: int = DEFAULT_ID_LENGTH,
) -> TaskRow:
    """Mint an ID and insert a new open task."""
    fields = _normalize_changes(
        {
            "title": title,
            "type": type,
            "priority": priority,
            "description": description,
            "parent_id": parent_id,
            "external_ref": external_ref,
            "labels": labels,
            "metadata": dict(metadata or {}),
        }
    )
    with transaction(conn):
        if fields["parent_id"]:
            _check_parent(conn, fields["parent_id"], None)
        task_id = mint(
            prefix, exists=lambda candidate: _id_taken(conn, candidate), length=id_length
        )
        now = utcnow()
        task = cast(
            TaskRow,
            {
                **fields,
                "id": task_id,
                "status": "open",
                "close_reason": None,
                "assignee": None,
                "created_at": now,
                "updated_at": now,
                "closed_at": None,
            },
        )
        conn.execute(
            f"INSERT INTO tasks ({', '.join(_TASK_COLUMNS)}) "
            f"VALUES ({', '.join('?' for _ in _TASK_COLUMNS)})",
            _task_params(task),
        )
    log.info("Created task %s: %s", task_id, fields["title"])
    return task


def get_task(conn: sqlite3.Connection, task_id: str) -> TaskRow | None:
    row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    return row_to_task(row) if row else None


def require_task(conn: sqlite3.Connection, task_id: str) -> TaskRow:
    task = get_task(conn, task_id)
    if task is None:
        raise TaskNotFoundError(task_id)
    return task


def list_tasks(
    conn: sqlite3.Connection,
    *,
    status: str | None = None,
    assignee: str | None = None,
    type: str | None = None,
    parent_id: str | None = None,
    label: str | None = None,
    priority: int | None = None,
) -> list[TaskRow]:
    conditions: list[str] = []
    params: list[Any] = []
    if status:
        conditions.append("status = ?")
        params.append(validate_status(status))
    if assignee:
        conditions.append("assignee = ?")
        params.append(assignee)
    if type:
        conditions.append("type = ?")
        params.append(validate_task_type(type))
    if parent_id:
        conditions.append("parent_id = ?")
        params.append(parent_id)
    if label:
        conditions.append("EXISTS (SELECT 1 FROM json_each(tasks.labels) WHERE value = ?)")
        params.append(label)
    if priority is not None:
        conditions.append("priority = ?")
        params.append(validate_priority(priority))
    query = "SELECT * FROM tasks"
    if conditions:
        query += " WHERE " + " AND ".join(conditions)
    query += " ORDER BY priority, created_at, id"
    return [row_to_task(row) for row in conn.execute(query, params).fetchall()]


def count_tasks(conn: sqlite3.Connection) -> int:
    return conn.execute("SELECT COUNT(*) FROM tasks").fetchone()[0]


def _apply_status_rules(current: TaskRow, merged: dict[str, Any], changes: dict[str, Any]) -> None:
    old_status = current["status"]
    new_status = merged["status"]

    if old_status == "closed" and new_status != "closed":
        raise InvalidTransitionError(
            f"Task '{current['id']}' is closed; closed tasks cannot be reopened."
        )
    if "close_reason" in changes and new_status != "closed":
        raise TaskValidationError("close_reason can only be set when closing a task.")

    if new_status == "closed":
        if changes.get("assignee"):
            raise TaskValidationError("A closed task cannot have an assignee.")
        if old_status != "closed" and not changes.get("close_reason"):
            raise TaskValidationError("Closing a task requires a non-empty close_reason.")
        if "close_reason" in changes and not changes["close_reason"]:
            raise TaskValidationError("close_reason cannot be cleared on a closed task.")
        merged["assignee"] = None
    elif new_status == "in_progress":
        if not merged["assignee"]:
            raise TaskValidationError("An in_progress task requires an assignee.")
        if old_status == "in_progress" and merged["assignee"] != current["assignee"]:
            raise InvalidTransitionError(
                f"Task '{current['id']}' is held by '{current['assignee']}'; "
                "release it before another agent claims it."
            )
    else:
        if changes.get("assignee"):
            raise TaskValidationError(
                "Only in_progress tasks can have an assignee; claim the task instead."
            )
        merged["assignee"] = None


def update_task(
    conn: sqlite3.Connection, task_id: str, changes: Mapping[str, object]
) -> TaskRow:
    """Apply a partial field update and return the resulting task.

    Raises TaskNotFoundError if the task is absent and TaskValidationError
    (or InvalidTransitionError) if the change is rejected. A change that
    leaves every field as-is does not advance updated_at.
    """
    normalized = _normalize_changes(changes)
    with transaction(conn):
        current = require_task(conn, task_id)
        merged: dict[str, Any] = {**current, **normalized}
        _apply_status_rules(current, merged, normalized)
        if normalized.get("parent_id") and normalized["parent_id"] != current["parent_id"]:
            _check_parent(conn, normalized["parent_id"], task_id)
        before: dict[str, Any] = dict(current)
        if all(merged[field] == before[field] for field in UPDATABLE_FIELDS):
            return current
        merged["updated_at"] = next_timestamp(current["updated_at"])
        if merged["status"] == "closed" and current["status"] != "closed":
            merged["closed_at"] = merged["updated_at"]
        write_task_row(conn, merged)
    return cast(TaskRow, merged)


def delete_task(conn: sqlite3.Connection, task_id: str) -> dict[str, Any]:
    """Administrative hard delete; cascades to every edge touching the task.

    Dependents and subtasks lose their reference and get a fresh updated_at
    so the removal travels with their snapshots. The id is remembered until
    the next export rewrites the record store without it.
    """
    with transaction(conn):
        require_task(conn, task_id)
        dependent_ids = [
            row["task_id"]
            for row in conn.execute(
                "SELECT DISTINCT task_id FROM dependencies "
                "WHERE depends_on_id = ? AND task_id != ?",
                (task_id, task_id),
            ).fetchall()
        ]
        child_ids = [
            row["id"]
            for row in conn.execute(
                "SELECT id FROM tasks WHERE parent_id = ? AND id != ?", (task_id, task_id)
            ).fetchall()
        ]
        cursor = conn.execute(
            "DELETE FROM dependencies WHERE task_id = ? OR depends_on_id = ?",
            (task_id, task_id),
        )
        edges_removed = cursor.rowcount
        conn.execute("UPDATE tasks SET parent_id = NULL WHERE parent_id = ?", (task_id,))
        for other_id in sorted({*dependent_ids, *child_ids}):
            touch_task(conn, other_id)
        conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        conn.execute(
            "INSERT OR REPLACE INTO deletions (id, deleted_at) VALUES (?, ?)",
            (task_id, utcnow()),
        )
    log.info("Deleted task %s (%d dependency edge(s) removed)", task_id, edges_removed)
    return {
        "id": task_id,
        "dependencies_removed": edges_removed,
        "dependents_updated": sorted(dependent_ids),
        "children_orphaned": sorted(child_ids),
    }


def list_deletions(conn: sqlite3.Connection) -> list[str]:
    return [row["id"] for row in conn.execute("SELECT id FROM deletions ORDER BY id").fetchall()]


def is_deleted(conn: sqlite3.Connection, task_id: str) -> bool:
    return conn.execute("SELECT 1 FROM deletions WHERE id = ?", (task_id,)).fetchone() is not None


def clear_deletions(conn: sqlite3.Connection, task_ids: Iterable[str]) -> None:
    conn.executemany("DELETE FROM deletions WHERE id = ?", [(task_id,) for task_id in task_ids])


# -- dependencies --


def add_dependency(
    conn: sqlite3.Connection, task_id: str, depends_on_id: str, type: str = "blocks"
) -> bool:
    """Record that *task_id* depends on *depends_on_id*.

    Returns False when the edge already exists. The referent may be absent
    locally (created on another branch and not merged yet).
    """
    dep_type = validate_dependency_type(type)
    if task_id == depends_on_id:
        raise TaskValidationError("A task cannot depend on itself.")
    with transaction(conn):
        require_task(conn, task_id)
        if not _task_exists(conn, depends_on_id):
            log.info(
                "Dependency target %s is not in the local index; keeping edge from %s",
                depends_on_id,
                task_id,
            )
        cursor = conn.execute(
            "INSERT OR IGNORE INTO dependencies (task_id, depends_on_id, type, created_at) "
            "VALUES (?, ?, ?, ?)",
            (task_id, depends_on_id, dep_type, utcnow()),
        )
        if cursor.rowcount == 0:
            return False
        touch_task(conn, task_id)
    return True


def remove_dependency(
    conn: sqlite3.Connection, task_id: str, depends_on_id: str, type: str = "blocks"
) -> bool:
    dep_type = validate_dependency_type(type)
    with transaction(conn):
        require_task(conn, task_id)
        cursor = conn.execute(
            "DELETE FROM dependencies WHERE task_id = ? AND depends_on_id = ? AND type = ?",
            (task_id, depends_on_id, dep_type),
        )
        if cursor.rowcount == 0:
            return False
        touch_task(conn, task_id)
    return True


def list_dependencies(conn: sqlite3.Connection, task_id: str) -> list[DependencyRow]:
    """Outgoing edges: what *task_id* depends on."""
    rows = conn.execute(
        "SELECT * FROM dependencies WHERE task_id = ? ORDER BY depends_on_id, type",
        (task_id,),
    ).fetchall()
    return [cast(DependencyRow, dict(row)) for row in rows]


def list_dependents(conn: sqlite3.Connection, task_id: str) -> list[DependencyRow]:
    """Incoming edges: tasks that depend on *task_id*."""
    rows = conn.execute(
        "SELECT * FROM dependencies WHERE depends_on_id = ? ORDER BY task_id, type",
        (task_id,),
    ).fetchall()
    return [cast(DependencyRow, dict(row)) for row in rows]


def replace_dependencies(
    conn: sqlite3.Connection, task_id: str, dependencies: Iterable[Mapping[str, Any]]
) -> int:
    """Make *task_id*'s outgoing edge set exactly *dependencies*."""
    conn.execute("DELETE FROM dependencies WHERE task_id = ?", (task_id,))
    inserted = 0
    for dep in dependencies:
        cursor = conn.execute(
            "INSERT OR IGNORE INTO dependencies (task_id, depends_on_id, type, created_at) "
            "VALUES (?, ?, ?, ?)",
            (task_id, dep["depends_on_id"], dep["type"], dep["created_at"]),
        )
        inserted += cursor.rowcount
    return inserted


# -- bookkeeping --


def get_meta(conn: sqlite3.Connection, key: str) -> str | None:
    row = conn.execute("SELECT value FROM index_meta WHERE key = ?", (key,)).fetchone()
    return row["value"] if row else None


def set_meta(conn: sqlite3.Connection, key: str, value: str) -> None:
    conn.execute("INSERT OR REPLACE INTO index_meta (key, value) VALUES (?, ?)", (key, value))


def inspect_sqlite_integrity(conn: sqlite3.Connection) -> dict:
    """Run PRAGMA integrity_check and normalize output for diagnostics.

    Returns:
      {
        "ok": bool,                # True only when every non-empty row is "ok"
        "rows": list[str],         # normalized raw rows
        "failures": list[str],     # non-ok rows suitable for surfacing
      }
    """
    rows = conn.execute("PRAGMA integrity_check").fetchall()
    normalized: list[str] = []
    for row in rows:
        text = str(row[0]).strip() if row and row[0] is not None else ""
        if text:
            normalized.append(text)

    if not normalized:
        return {
            "ok": False,
            "rows": [],
            "failures": ["integrity_check returned no rows"],
        }

    failures = [row for row in normalized if row.lower() != "ok"]
    return {"ok": not failures, "rows": normalized, "failures": failures}
