"""Ready-set and dependency-tree queries over the index.

Edges are inserted independently on different branches, so the graph is
not guaranteed to be acyclic. Traversals use a visited set and a hard
depth cap instead of assuming a DAG.
"""

from __future__ import annotations

import sqlite3
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Any

from forge.config import DEFAULT_MAX_TREE_DEPTH
from forge.db import (
    TaskRow,
    get_task,
    require_task,
    row_to_task,
    validate_dependency_type,
    validate_priority,
    validate_task_type,
)
from forge.errors import TaskValidationError

TREE_DIRECTIONS = ("down", "up")

# An edge blocks until its referent is known locally and closed.
_HAS_OPEN_BLOCKER = """
    EXISTS (
        SELECT 1 FROM dependencies d
        LEFT JOIN tasks blocker ON blocker.id = d.depends_on_id
        WHERE d.task_id = t.id
          AND d.type = 'blocks'
          AND (blocker.id IS NULL OR blocker.status != 'closed')
    )
"""


@dataclass(frozen=True)
class TreeNode:
    depth: int
    path: tuple[str, ...]
    task_id: str
    task: TaskRow | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "depth": self.depth,
            "path": list(self.path),
            "id": self.task_id,
            "task": self.task,
        }


def ready_tasks(
    conn: sqlite3.Connection,
    *,
    type: str | None = None,
    label: str | None = None,
    priority_max: int | None = None,
    parent_id: str | None = None,
    limit: int | None = None,
) -> list[TaskRow]:
    """Open, unassigned tasks with no open ``blocks`` dependency.

    Ordered by priority, then creation time. Read-only.
    """
    conditions = ["t.status = 'open'", "t.assignee IS NULL", f"NOT {_HAS_OPEN_BLOCKER}"]
    params: list[Any] = []
    if type:
        conditions.append("t.type = ?")
        params.append(validate_task_type(type))
    if label:
        conditions.append("EXISTS (SELECT 1 FROM json_each(t.labels) WHERE value = ?)")
        params.append(label)
    if priority_max is not None:
        conditions.append("t.priority <= ?")
        params.append(validate_priority(priority_max))
    if parent_id:
        conditions.append("t.parent_id = ?")
        params.append(parent_id)
    query = (
        "SELECT t.* FROM tasks t WHERE "
        + " AND ".join(conditions)
        + " ORDER BY t.priority, t.created_at, t.id"
    )
    if limit is not None:
        if limit < 1:
            raise TaskValidationError("limit must be a positive integer.")
        query += " LIMIT ?"
        params.append(limit)
    return [row_to_task(row) for row in conn.execute(query, params).fetchall()]


def open_blockers(conn: sqlite3.Connection, task_id: str) -> list[str]:
    """Ids this task waits on: missing referents and non-closed tasks."""
    rows = conn.execute(
        "SELECT d.depends_on_id FROM dependencies d "
        "LEFT JOIN tasks blocker ON blocker.id = d.depends_on_id "
        "WHERE d.task_id = ? AND d.type = 'blocks' "
        "AND (blocker.id IS NULL OR blocker.status != 'closed') "
        "ORDER BY d.depends_on_id",
        (task_id,),
    ).fetchall()
    return [row[0] for row in rows]


def blocked_tasks(conn: sqlite3.Connection) -> list[dict[str, Any]]:
    rows = conn.execute(
        f"SELECT t.* FROM tasks t WHERE t.status != 'closed' AND {_HAS_OPEN_BLOCKER} "
        "ORDER BY t.priority, t.created_at, t.id"
    ).fetchall()
    blocked = []
    for row in rows:
        task = row_to_task(row)
        blocked.append({**task, "blocked_by": open_blockers(conn, task["id"])})
    return blocked


def _neighbors(
    conn: sqlite3.Connection, task_id: str, direction: str, dep_type: str | None
) -> list[str]:
    if direction == "down":
        query = (
            "SELECT d.depends_on_id FROM dependencies d "
            "LEFT JOIN tasks t ON t.id = d.depends_on_id "
            "WHERE d.task_id = ?"
        )
        order = " ORDER BY COALESCE(t.priority, 99), d.depends_on_id"
    else:
        query = (
            "SELECT d.task_id FROM dependencies d "
            "JOIN tasks t ON t.id = d.task_id "
            "WHERE d.depends_on_id = ?"
        )
        order = " ORDER BY t.priority, d.task_id"
    params: list[Any] = [task_id]
    if dep_type is not None:
        query += " AND d.type = ?"
        params.append(dep_type)
    seen: dict[str, None] = {}
    for row in conn.execute(query + order, params).fetchall():
        seen.setdefault(row[0], None)
    return list(seen)


def dependency_tree(
    conn: sqlite3.Connection,
    root_id: str,
    *,
    max_depth: int = DEFAULT_MAX_TREE_DEPTH,
    direction: str = "down",
    dep_type: str | None = "blocks",
) -> list[TreeNode]:
    """Breadth-first walk from *root_id*.

    ``down`` follows a task to what it depends on; ``up`` follows it to its
    dependents. Each task is reported once, at its shallowest depth, with
    the path that reached it. Nodes at *max_depth* are not expanded, so a
    cyclic graph still yields a finite result. Referents missing from the
    index appear with ``task=None``.
    """
    if isinstance(max_depth, bool) or not isinstance(max_depth, int) or max_depth < 0:
        raise TaskValidationError("max_depth must be a non-negative integer.")
    if direction not in TREE_DIRECTIONS:
        raise TaskValidationError(f"direction must be one of: {', '.join(TREE_DIRECTIONS)}")
    if dep_type is not None:
        dep_type = validate_dependency_type(dep_type)

    root = TreeNode(depth=0, path=(root_id,), task_id=root_id, task=require_task(conn, root_id))
    nodes = [root]
    visited = {root_id}
    queue = deque([root])
    while queue:
        node = queue.popleft()
        if node.depth >= max_depth or node.task is None:
            continue
        for neighbor_id in _neighbors(conn, node.task_id, direction, dep_type):
            if neighbor_id in visited:
                continue
            visited.add(neighbor_id)
            child = TreeNode(
                depth=node.depth + 1,
                path=(*node.path, neighbor_id),
                task_id=neighbor_id,
                task=get_task(conn, neighbor_id),
            )
            nodes.append(child)
            queue.append(child)
    return nodes


def find_cycles(conn: sqlite3.Connection, dep_type: str = "blocks") -> list[list[str]]:
    """Strongly connected components with more than one task.

    Each returned list is sorted; the list of cycles is sorted too.
    """
    dep_type = validate_dependency_type(dep_type)
    graph: dict[str, list[str]] = defaultdict(list)
    reverse: dict[str, list[str]] = defaultdict(list)
    for row in conn.execute(
        "SELECT task_id, depends_on_id FROM dependencies WHERE type = ? "
        "ORDER BY task_id, depends_on_id",
        (dep_type,),
    ).fetchall():
        graph[row[0]].append(row[1])
        reverse[row[1]].append(row[0])

    # Kosaraju: finish order on the graph, then collect on the reverse graph.
    finished: list[str] = []
    seen: set[str] = set()
    for start in sorted(graph):
        if start in seen:
            continue
        seen.add(start)
        stack = [(start, iter(graph.get(start, ())))]
        while stack:
            node, successors = stack[-1]
            for successor in successors:
                if successor not in seen:
                    seen.add(successor)
                    stack.append((successor, iter(graph.get(successor, ()))))
                    break
            else:
                stack.pop()
                finished.append(node)

    assigned: set[str] = set()
    cycles: list[list[str]] = []
    for node in reversed(finished):
        if node in assigned:
            continue
        assigned.add(node)
        component = []
        pending = [node]
        while pending:
            current = pending.pop()
            component.append(current)
            for predecessor in reverse.get(current, ()):
                if predecessor not in assigned:
                    assigned.add(predecessor)
                    pending.append(predecessor)
        if len(component) > 1:
            cycles.append(sorted(component))
    return sorted(cycles)
