"""Health checks and optional remediation for a forge workspace."""

from __future__ import annotations

import shutil
import sqlite3
from typing import Literal, TypedDict

from forge.db import connect, inspect_sqlite_integrity
from forge.deps import find_cycles
from forge.git_ops import ensure_merge_attributes, find_repo_root, merge_driver_for
from forge.sync import import_records, index_is_stale, rebuild_index
from forge.workspace import Workspace

Status = Literal["pass", "warning", "fail"]
_STATUS_RANK: dict[Status, int] = {"pass": 0, "warning": 1, "fail": 2}
_MAX_FINDINGS = 20


class _CheckFindingRequired(TypedDict):
    status: Status
    message: str


class CheckFinding(_CheckFindingRequired, total=False):
    details: dict[str, object]


class CheckReport(TypedDict):
    name: str
    status: Status
    summary: str
    findings: list[CheckFinding]


class FixAction(TypedDict):
    attempted: int
    fixed: int
    failed: int
    failures: list[dict[str, str]]


class _DoctorReportRequired(TypedDict):
    status: Status
    summary: str
    checks: list[CheckReport]


class DoctorReport(_DoctorReportRequired, total=False):
    fix_actions: dict[str, FixAction]


def run_doctor(workspace: Workspace, *, fix: bool = False) -> DoctorReport:
    """Run all health checks and optionally apply remediation."""
    checks = [
        _check_sqlite_integrity(workspace),
        _check_record_store(workspace),
        _check_index_freshness(workspace),
        _check_task_invariants(workspace),
        _check_dangling_dependencies(workspace),
        _check_dependency_cycles(workspace),
        _check_git_merge_attributes(workspace),
    ]

    fix_actions: dict[str, FixAction] = {}
    if fix:
        fix_actions = _apply_fixes(workspace, checks)
        checks = _rerun_fixable_checks(workspace, checks)

    status = _worst_status([check["status"] for check in checks])
    summary = _report_summary(checks)
    report: DoctorReport = {
        "status": status,
        "summary": summary,
        "checks": checks,
    }
    if fix:
        report["fix_actions"] = fix_actions
    return report


def _worst_status(statuses: list[Status]) -> Status:
    if not statuses:
        return "pass"
    return max(statuses, key=lambda s: _STATUS_RANK[s])


def _report_summary(checks: list[CheckReport]) -> str:
    counts: dict[Status, int] = {"pass": 0, "warning": 0, "fail": 0}
    for check in checks:
        counts[check["status"]] += 1
    return f"{counts['pass']} checks passed, {counts['warning']} warnings, {counts['fail']} failed."


def _unavailable(name: str, workspace: Workspace, exc: Exception) -> CheckReport:
    return {
        "name": name,
        "status": "fail",
        "summary": "Index is unavailable.",
        "findings": [
            {
                "status": "fail",
                "message": f"Failed to open index {workspace.db_path}: {exc}",
            }
        ],
    }


def _index_missing(name: str, workspace: Workspace) -> CheckReport | None:
    if workspace.db_path.exists():
        return None
    return {
        "name": name,
        "status": "warning",
        "summary": "Skipped: index has not been built yet.",
        "findings": [],
    }


def _check_sqlite_integrity(workspace: Workspace) -> CheckReport:
    db_path = workspace.db_path
    if not db_path.exists():
        return {
            "name": "sqlite",
            "status": "warning",
            "summary": "Index has not been built yet.",
            "findings": [
                {"status": "warning", "message": f"{db_path} does not exist; run 'forge import'."}
            ],
        }
    try:
        with connect(db_path, busy_timeout_ms=workspace.config.busy_timeout_ms) as conn:
            result = inspect_sqlite_integrity(conn)
    except sqlite3.DatabaseError as exc:
        return _unavailable("sqlite", workspace, exc)

    if result["ok"]:
        return {
            "name": "sqlite",
            "status": "pass",
            "summary": "SQLite integrity check passed.",
            "findings": [{"status": "pass", "message": f"Index integrity is OK: {db_path}"}],
        }
    return {
        "name": "sqlite",
        "status": "fail",
        "summary": f"SQLite integrity check failed with {len(result['failures'])} issue(s).",
        "findings": [
            {"status": "fail", "message": message, "details": {"database": str(db_path)}}
            for message in result["failures"][:_MAX_FINDINGS]
        ],
    }


def _check_record_store(workspace: Workspace) -> CheckReport:
    store = workspace.store
    if not store.exists():
        return {
            "name": "record_store",
            "status": "fail",
            "summary": "Record store is missing.",
            "findings": [
                {"status": "fail", "message": f"{store.path} does not exist; run 'forge init'."}
            ],
        }
    stats = store.scan()
    findings: list[CheckFinding] = [
        {
            "status": "warning",
            "message": f"Malformed record skipped at {error}",
            "details": {"line": error.line_no},
        }
        for error in stats.malformed[:_MAX_FINDINGS]
    ]
    if stats.superseded:
        findings.append(
            {
                "status": "pass",
                "message": f"{stats.superseded} superseded line(s); 'forge compact' removes them.",
                "details": {"superseded": stats.superseded},
            }
        )
    status: Status = "warning" if stats.malformed else "pass"
    return {
        "name": "record_store",
        "status": status,
        "summary": (
            f"{stats.valid} valid line(s) for {len(stats.latest_ids)} task(s), "
            f"{len(stats.malformed)} malformed."
        ),
        "findings": findings,
    }


def _check_index_freshness(workspace: Workspace) -> CheckReport:
    missing = _index_missing("index_freshness", workspace)
    if missing is not None:
        return missing
    try:
        with connect(workspace.db_path, busy_timeout_ms=workspace.config.busy_timeout_ms) as conn:
            stale = index_is_stale(conn, workspace.store)
    except sqlite3.DatabaseError as exc:
        return _unavailable("index_freshness", workspace, exc)
    if stale:
        return {
            "name": "index_freshness",
            "status": "warning",
            "summary": "Record store changed since the index last synced.",
            "findings": [
                {"status": "warning", "message": "Run 'forge import' to load merged snapshots."}
            ],
        }
    return {
        "name": "index_freshness",
        "status": "pass",
        "summary": "Index is in sync with the record store.",
        "findings": [],
    }


_INVARIANT_QUERIES = {
    "assignee set on a task that is not in_progress": (
        "SELECT id FROM tasks WHERE assignee IS NOT NULL AND status != 'in_progress'"
    ),
    "in_progress task without an assignee": (
        "SELECT id FROM tasks WHERE status = 'in_progress' AND assignee IS NULL"
    ),
    "closed task missing closed_at or close_reason": (
        "SELECT id FROM tasks WHERE status = 'closed' "
        "AND (closed_at IS NULL OR close_reason IS NULL)"
    ),
    "open task carrying closed_at or close_reason": (
        "SELECT id FROM tasks WHERE status != 'closed' "
        "AND (closed_at IS NOT NULL OR close_reason IS NOT NULL)"
    ),
    "updated_at earlier than created_at": "SELECT id FROM tasks WHERE updated_at < created_at",
}


def _check_task_invariants(workspace: Workspace) -> CheckReport:
    missing = _index_missing("task_invariants", workspace)
    if missing is not None:
        return missing
    findings: list[CheckFinding] = []
    try:
        with connect(workspace.db_path, busy_timeout_ms=workspace.config.busy_timeout_ms) as conn:
            for problem, query in _INVARIANT_QUERIES.items():
                ids = [row[0] for row in conn.execute(query).fetchall()]
                if ids:
                    findings.append(
                        {
                            "status": "warning",
                            "message": f"{len(ids)} task(s): {problem}",
                            "details": {"task_ids": ids[:_MAX_FINDINGS]},
                        }
                    )
    except sqlite3.DatabaseError as exc:
        return _unavailable("task_invariants", workspace, exc)
    return {
        "name": "task_invariants",
        "status": "warning" if findings else "pass",
        "summary": (
            f"{len(findings)} invariant violation type(s) found."
            if findings
            else "All tasks satisfy status/assignee/closure invariants."
        ),
        "findings": findings,
    }


def _check_dangling_dependencies(workspace: Workspace) -> CheckReport:
    missing = _index_missing("dangling_dependencies", workspace)
    if missing is not None:
        return missing
    try:
        with connect(workspace.db_path, busy_timeout_ms=workspace.config.busy_timeout_ms) as conn:
            edges = conn.execute(
                "SELECT d.task_id, d.depends_on_id, d.type FROM dependencies d "
                "LEFT JOIN tasks t ON t.id = d.depends_on_id "
                "WHERE t.id IS NULL ORDER BY d.task_id, d.depends_on_id"
            ).fetchall()
            parents = conn.execute(
                "SELECT c.id, c.parent_id FROM tasks c "
                "LEFT JOIN tasks p ON p.id = c.parent_id "
                "WHERE c.parent_id IS NOT NULL AND p.id IS NULL ORDER BY c.id"
            ).fetchall()
    except sqlite3.DatabaseError as exc:
        return _unavailable("dangling_dependencies", workspace, exc)

    findings: list[CheckFinding] = [
        {
            "status": "warning",
            "message": f"{row[0]} {row[2]} {row[1]}, which is not in the index",
            "details": {"task_id": row[0], "depends_on_id": row[1], "type": row[2]},
        }
        for row in edges[:_MAX_FINDINGS]
    ]
    findings.extend(
        {
            "status": "warning",
            "message": f"{row[0]} has parent {row[1]}, which is not in the index",
            "details": {"task_id": row[0], "parent_id": row[1]},
        }
        for row in parents[:_MAX_FINDINGS]
    )
    total = len(edges) + len(parents)
    return {
        "name": "dangling_dependencies",
        "status": "warning" if total else "pass",
        "summary": (
            f"{total} reference(s) to tasks not yet visible locally "
            "(expected until the other branch is merged)."
            if total
            else "All references resolve."
        ),
        "findings": findings,
    }


def _check_dependency_cycles(workspace: Workspace) -> CheckReport:
    missing = _index_missing("dependency_cycles", workspace)
    if missing is not None:
        return missing
    try:
        with connect(workspace.db_path, busy_timeout_ms=workspace.config.busy_timeout_ms) as conn:
            cycles = find_cycles(conn)
    except sqlite3.DatabaseError as exc:
        return _unavailable("dependency_cycles", workspace, exc)
    return {
        "name": "dependency_cycles",
        "status": "warning" if cycles else "pass",
        "summary": (
            f"{len(cycles)} blocking cycle(s); tasks in a cycle never become ready."
            if cycles
            else "No blocking cycles."
        ),
        "findings": [
            {
                "status": "warning",
                "message": " -> ".join(cycle),
                "details": {"task_ids": cycle},
            }
            for cycle in cycles[:_MAX_FINDINGS]
        ],
    }


def _check_git_merge_attributes(workspace: Workspace) -> CheckReport:
    repo = find_repo_root(workspace.root)
    if repo is None:
        return {
            "name": "git_merge_attributes",
            "status": "warning",
            "summary": "Workspace is not inside a git repository.",
            "findings": [
                {
                    "status": "warning",
                    "message": "The record store is only shared through git; run 'git init'.",
                }
            ],
        }
    store_relpath = workspace.store.path.resolve().relative_to(repo.resolve()).as_posix()
    try:
        driver = merge_driver_for(repo, store_relpath)
    except RuntimeError as exc:
        driver = None
        detail = str(exc)
    else:
        detail = f"merge attribute for {store_relpath}: {driver or 'unspecified'}"
    if driver == "union":
        return {
            "name": "git_merge_attributes",
            "status": "pass",
            "summary": "Record store uses the union merge driver.",
            "findings": [{"status": "pass", "message": detail}],
        }
    return {
        "name": "git_merge_attributes",
        "status": "warning",
        "summary": "Record store is not set to merge=union; concurrent appends will conflict.",
        "findings": [{"status": "warning", "message": detail}],
    }


def _new_action() -> FixAction:
    return {"attempted": 0, "fixed": 0, "failed": 0, "failures": []}


def _apply_fixes(workspace: Workspace, checks: list[CheckReport]) -> dict[str, FixAction]:
    """Apply best-effort remediation for fixable checks."""
    actions: dict[str, FixAction] = {}
    checks_by_name = {c["name"]: c for c in checks}

    store_check = checks_by_name.get("record_store")
    if store_check and store_check["status"] == "warning":
        actions["compact_record_store"] = _fix_record_store(workspace)

    sqlite_check = checks_by_name.get("sqlite")
    freshness = checks_by_name.get("index_freshness")
    if (sqlite_check and sqlite_check["status"] != "pass") or (
        freshness and freshness["status"] == "fail"
    ):
        actions["rebuild_index"] = _fix_rebuild_index(workspace)
    elif (freshness and freshness["status"] == "warning") or "compact_record_store" in actions:
        actions["import_records"] = _fix_import(workspace)

    attributes = checks_by_name.get("git_merge_attributes")
    if attributes and attributes["status"] != "pass":
        actions["git_merge_attributes"] = _fix_git_merge_attributes(workspace)

    return actions


def _fix_record_store(workspace: Workspace) -> FixAction:
    action = _new_action()
    action["attempted"] = 1
    store = workspace.store
    backup = store.path.with_suffix(".jsonl.bak")
    try:
        shutil.copy2(store.path, backup)
        store.compact()
    except (OSError, RuntimeError) as exc:
        action["failed"] = 1
        action["failures"].append({"path": str(store.path), "error": str(exc)})
    else:
        action["fixed"] = 1
    return action


def _fix_rebuild_index(workspace: Workspace) -> FixAction:
    action = _new_action()
    action["attempted"] = 1
    try:
        rebuild_index(
            workspace.db_path, workspace.store, busy_timeout_ms=workspace.config.busy_timeout_ms
        )
    except (OSError, sqlite3.Error) as exc:
        action["failed"] = 1
        action["failures"].append({"path": str(workspace.db_path), "error": str(exc)})
    else:
        action["fixed"] = 1
    return action


def _fix_import(workspace: Workspace) -> FixAction:
    action = _new_action()
    action["attempted"] = 1
    try:
        with connect(workspace.db_path, busy_timeout_ms=workspace.config.busy_timeout_ms) as conn:
            import_records(conn, workspace.store)
    except (OSError, sqlite3.Error) as exc:
        action["failed"] = 1
        action["failures"].append({"path": str(workspace.db_path), "error": str(exc)})
    else:
        action["fixed"] = 1
    return action


def _fix_git_merge_attributes(workspace: Workspace) -> FixAction:
    action = _new_action()
    repo = find_repo_root(workspace.root)
    if repo is None:
        return action
    action["attempted"] = 1
    store_relpath = workspace.store.path.resolve().relative_to(repo.resolve()).as_posix()
    try:
        ensure_merge_attributes(repo, store_relpath)
    except OSError as exc:
        action["failed"] = 1
        action["failures"].append({"path": str(repo / ".gitattributes"), "error": str(exc)})
    else:
        action["fixed"] = 1
    return action


def _rerun_fixable_checks(workspace: Workspace, checks: list[CheckReport]) -> list[CheckReport]:
    """Re-run checks that can be fixed by --fix.

    Everything read from the index is re-run too, since a rebuild or import
    replaces its contents.
    """
    rerun = {
        "sqlite": _check_sqlite_integrity,
        "record_store": _check_record_store,
        "index_freshness": _check_index_freshness,
        "task_invariants": _check_task_invariants,
        "dangling_dependencies": _check_dangling_dependencies,
        "dependency_cycles": _check_dependency_cycles,
        "git_merge_attributes": _check_git_merge_attributes,
    }
    return [
        rerun[check["name"]](workspace) if check["name"] in rerun else check for check in checks
    ]

