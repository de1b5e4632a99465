"""Task ownership state machine.

claim: open -> in_progress. release: in_progress -> open.
close: open or in_progress -> closed (terminal).

Every transition is a single BEGIN IMMEDIATE transaction, so two callers
racing to claim the same task can never both win.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any

from forge.db import TaskRow, get_task, next_timestamp, transaction
from forge.deps import ready_tasks
from forge.errors import TaskNotFoundError, TaskValidationError

log = logging.getLogger(__name__)


def _load_state(conn: sqlite3.Connection, task_id: str) -> sqlite3.Row:
    row = conn.execute(
        "SELECT status, assignee, updated_at FROM tasks WHERE id = ?", (task_id,)
    ).fetchone()
    if row is None:
        raise TaskNotFoundError(task_id)
    return row


def claim_task(conn: sqlite3.Connection, task_id: str, agent: str) -> bool:
    """Take exclusive ownership of an open, unassigned task.

    Returns False when someone else got there first (or the task is not
    open). That is a normal outcome under contention, not an error.
    """
    if not isinstance(agent, str) or not agent.strip():
        raise TaskValidationError("Agent identity must be a non-empty string.")
    agent = agent.strip()
    with transaction(conn):
        state = _load_state(conn, task_id)
        if state["status"] != "open" or state["assignee"] is not None:
            log.debug("Claim of %s by %s lost (status=%s)", task_id, agent, state["status"])
            return False
        cursor = conn.execute(
            "UPDATE tasks SET status = 'in_progress', assignee = ?, updated_at = ? "
            "WHERE id = ? AND status = 'open' AND assignee IS NULL",
            (agent, next_timestamp(state["updated_at"]), task_id),
        )
        if cursor.rowcount == 0:
            return False
    log.info("Task %s claimed by %s", task_id, agent)
    return True


def claim_next(conn: sqlite3.Connection, agent: str, **filters: Any) -> TaskRow | None:
    """Claim the first ready task that is still free, trying candidates in order."""
    for candidate in ready_tasks(conn, **filters):
        if claim_task(conn, candidate["id"], agent):
            return get_task(conn, candidate["id"])
    return None


def release_task(conn: sqlite3.Connection, task_id: str) -> bool:
    """Return a task to the open pool and clear its assignee.

    Any caller may release any claim. Releasing an open, unassigned task is a
    no-op. Closed tasks stay closed and False is returned.
    """
    with transaction(conn):
        state = _load_state(conn, task_id)
        if state["status"] == "closed":
            return False
        if state["status"] == "open" and state["assignee"] is None:
            return True
        conn.execute(
            "UPDATE tasks SET status = 'open', assignee = NULL, updated_at = ? WHERE id = ?",
            (next_timestamp(state["updated_at"]), task_id),
        )
    log.info("Task %s released (was %s)", task_id, state["assignee"])
    return True


def close_task(conn: sqlite3.Connection, task_id: str, reason: str) -> bool:
    """Close a task for good. Returns False if it was already closed."""
    if not isinstance(reason, str) or not reason.strip():
        raise TaskValidationError("A close reason is required.")
    with transaction(conn):
        state = _load_state(conn, task_id)
        if state["status"] == "closed":
            return False
        closed_at = next_timestamp(state["updated_at"])
        conn.execute(
            "UPDATE tasks SET status = 'closed', close_reason = ?, assignee = NULL, "
            "closed_at = ?, updated_at = ? WHERE id = ?",
            (reason.strip(), closed_at, closed_at, task_id),
        )
    log.info("Task %s closed: %s", task_id, reason.strip())
    return True
