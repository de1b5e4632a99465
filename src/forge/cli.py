from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import sys
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import click

from forge import __version__
from forge.claims import claim_next, claim_task, close_task, release_task
from forge.config import default_actor
from forge.db import (
    DEFAULT_PRIORITY,
    DEFAULT_TASK_TYPE,
    MAX_PRIORITY,
    MIN_PRIORITY,
    VALID_DEPENDENCY_TYPES,
    VALID_TASK_STATUSES,
    VALID_TASK_TYPES,
    add_dependency,
    create_task,
    delete_task,
    get_task,
    list_dependencies,
    list_dependents,
    list_tasks,
    remove_dependency,
    require_task,
    transaction,
    update_task,
)
from forge.deps import blocked_tasks, dependency_tree, open_blockers, ready_tasks
from forge.errors import ForgeError, TaskNotFoundError
from forge.git_ops import ensure_excluded, ensure_merge_attributes, find_repo_root, install_hooks
from forge.sync import export_records, import_records, rebuild_index
from forge.workspace import Workspace, auto_export, find_workspace, init_workspace, open_index

log = logging.getLogger(__name__)

_LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"


class _JsonAwareGroup(click.Group):
    """Group that always outputs JSON errors with command suggestions.

    Click normally writes plain-text usage errors to stderr.  Every forge
    command prints JSON, so this subclass intercepts Click exceptions and
    emits a JSON error object on stdout.  Unknown commands get
    fuzzy-matched suggestions via ``difflib.get_close_matches``.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if args:
                import difflib

                cmd_name = args[0]
                matches = difflib.get_close_matches(
                    cmd_name, self.list_commands(ctx), n=2, cutoff=0.5
                )
                hint = f" Did you mean: {', '.join(matches)}?" if matches else ""
                raise click.UsageError(f"No such command '{cmd_name}'.{hint}") from None
            raise

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
            if standalone_mode:
                raise SystemExit(rv or 0)
            return rv
        except click.ClickException as e:
            click.echo(json.dumps({"ok": False, "error": e.format_message()}))
            code = getattr(e, "exit_code", 1)
            if standalone_mode:
                raise SystemExit(code) from None
            return code
        except click.Abort:
            if standalone_mode:
                click.echo("Aborted!", err=True)
                raise SystemExit(1) from None
            raise


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Log progress to stderr.")
def main(verbose: bool):
    """Track a task graph that travels with your git repository.

    \b
    Quick start:
      forge init                        Create .forge/ in the current repo
      forge task create "Fix login"     Add a task
      forge ready                       Tasks with no open blockers
      forge task claim ID -a AGENT      Take a task atomically
      forge task close ID -r "done"     Finish it

    \b
    Key concepts:
      record store  .forge/tasks.jsonl, committed and merged by git
      index         .forge/forge.db, a local SQLite cache rebuilt on demand
      ready         open, unassigned, and not blocked by an open task
    """
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format=_LOG_FORMAT,
        stream=sys.stderr,
    )


def _emit(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def _not_found(entity: str, identifier: str) -> click.ClickException:
    """Build a ClickException with an actionable suggestion for missing entities."""
    hints = {
        "task": "Run 'forge task list' to see tasks.",
    }
    msg = f"{entity.title()} '{identifier}' not found."
    hint = hints.get(entity)
    if hint:
        msg += f"\n{hint}"
    return click.ClickException(msg)


def _workspace() -> Workspace:
    try:
        return find_workspace()
    except ForgeError as exc:
        raise click.ClickException(str(exc)) from None
    except ValueError as exc:
        raise click.ClickException(f"Invalid forge config: {exc}") from None


@contextlib.contextmanager
def _session(*, write: bool = False) -> Iterator[tuple[Workspace, sqlite3.Connection]]:
    """Open the workspace index; export afterwards when *write* is set."""
    workspace = _workspace()
    try:
        with open_index(workspace) as conn:
            yield workspace, conn
            if write:
                auto_export(workspace, conn)
    except TaskNotFoundError as exc:
        raise _not_found("task", exc.task_id) from None
    except ForgeError as exc:
        raise click.ClickException(str(exc)) from None
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from None


# -- init --


@main.command()
@click.option("--prefix", default=None, help="ID prefix for new tasks (default: fg).")
@click.option(
    "--stealth",
    is_flag=True,
    help="Keep .forge/ out of git via .git/info/exclude instead of committing it.",
)
@click.option("--hooks", is_flag=True, help="Install export and import git hooks.")
def init(prefix: str | None, stealth: bool, hooks: bool):
    """Set up forge in the current directory.

    Safe to re-run: existing tasks and settings are kept. Inside a git
    repository the record store is marked for git's union merge driver.
    """
    root = Path.cwd()
    repo = find_repo_root(root)
    if repo is None and (stealth or hooks):
        raise click.ClickException("--stealth and --hooks need a git repository.")

    try:
        workspace = init_workspace(root, prefix=prefix)
    except ForgeError as exc:
        raise click.ClickException(str(exc)) from None
    except ValueError as exc:
        raise click.ClickException(f"Invalid forge config: {exc}") from None

    payload: dict[str, Any] = {
        "ok": True,
        "forge_dir": str(workspace.forge_dir),
        "prefix": workspace.config.prefix,
        "record_store": str(workspace.store.path),
        "index": str(workspace.db_path),
    }
    if repo is None:
        payload["warnings"] = [
            "Not inside a git repository; tasks are not shared until the directory is "
            "committed to one."
        ]
        _emit(payload)
        return

    repo = repo.resolve()
    store_relpath = workspace.store.path.resolve().relative_to(repo).as_posix()
    try:
        if stealth:
            forge_relpath = workspace.forge_dir.resolve().relative_to(repo).as_posix()
            payload["excluded"] = ensure_excluded(repo, f"{forge_relpath}/")
        else:
            payload["gitattributes_updated"] = ensure_merge_attributes(repo, store_relpath)
        if hooks:
            payload["hooks"] = install_hooks(repo, store_relpath)
    except (OSError, RuntimeError) as exc:
        raise click.ClickException(str(exc)) from None
    _emit(payload)


# -- tasks --


@main.group()
def task():
    """Create, inspect, claim, and close tasks."""


@task.command("create")
@click.argument("title")
@click.option(
    "--type",
    "-t",
    "task_type",
    default=DEFAULT_TASK_TYPE,
    show_default=True,
    type=click.Choice(sorted(VALID_TASK_TYPES)),
)
@click.option(
    "--priority",
    "-p",
    default=DEFAULT_PRIORITY,
    show_default=True,
    type=click.IntRange(MIN_PRIORITY, MAX_PRIORITY),
    help="0 is most urgent.",
)
@click.option("--description", "-d", default="", help="Longer description.")
@click.option("--parent", "parent_id", default=None, help="Epic this task belongs to.")
@click.option("--external-ref", default=None, help="Reference in another system (e.g. gh-42).")
@click.option("--label", "-l", "labels", multiple=True, help="Label (repeatable).")
def task_create(
    title: str,
    task_type: str,
    priority: int,
    description: str,
    parent_id: str | None,
    external_ref: str | None,
    labels: tuple[str, ...],
):
    """Create a task."""
    with _session(write=True) as (workspace, conn):
        created = create_task(
            conn,
            title=title,
            prefix=workspace.config.prefix,
            id_length=workspace.config.id_length,
            type=task_type,
            priority=priority,
            description=description,
            parent_id=parent_id,
            external_ref=external_ref,
            labels=labels,
        )
    _emit(created)


@task.command("show")
@click.argument("task_id")
def task_show(task_id: str):
    """Show a task with its dependencies and dependents."""
    with _session() as (_, conn):
        payload = {
            **require_task(conn, task_id),
            "dependencies": list_dependencies(conn, task_id),
            "dependents": list_dependents(conn, task_id),
            "blocked_by": open_blockers(conn, task_id),
        }
    _emit(payload)


@task.command("list")
@click.option(
    "--status",
    "-s",
    default=None,
    type=click.Choice(sorted(VALID_TASK_STATUSES)),
    help="Filter by status.",
)
@click.option("--assignee", "-a", default=None, help="Filter by assignee.")
@click.option(
    "--type", "-t", "task_type", default=None, type=click.Choice(sorted(VALID_TASK_TYPES))
)
@click.option("--parent", "parent_id", default=None, help="Subtasks of this epic.")
@click.option("--label", "-l", default=None, help="Filter by label.")
def task_list(
    status: str | None,
    assignee: str | None,
    task_type: str | None,
    parent_id: str | None,
    label: str | None,
):
    """List tasks by priority, then creation time."""
    with _session() as (_, conn):
        tasks = list_tasks(
            conn,
            status=status,
            assignee=assignee,
            type=task_type,
            parent_id=parent_id,
            label=label,
        )
    _emit(tasks)


@task.command("update")
@click.argument("task_id")
@click.option(
    "--status", "-s", default=None, type=click.Choice(sorted(VALID_TASK_STATUSES))
)
@click.option("--assignee", "-a", default=None)
@click.option(
    "--priority", "-p", default=None, type=click.IntRange(MIN_PRIORITY, MAX_PRIORITY)
)
@click.option("--title", default=None)
@click.option("--description", "-d", default=None)
@click.option("--reason", "-r", "close_reason", default=None, help="Close reason.")
@click.option("--external-ref", default=None)
@click.option(
    "--type", "-t", "task_type", default=None, type=click.Choice(sorted(VALID_TASK_TYPES))
)
def task_update(task_id: str, **options: Any):
    """Change task fields. Status changes follow the claim rules."""
    changes = {key: value for key, value in options.items() if value is not None}
    if "task_type" in changes:
        changes["type"] = changes.pop("task_type")
    if not changes:
        raise click.ClickException("Nothing to update; pass at least one option.")
    with _session(write=True) as (_, conn):
        updated = update_task(conn, task_id, changes)
    _emit(updated)


@task.command("claim")
@click.argument("task_id")
@click.option("--agent", "-a", default=None, help="Claiming identity (default: $FORGE_ACTOR).")
def task_claim(task_id: str, agent: str | None):
    """Take an open, unassigned task. Exactly one concurrent claimer wins."""
    with _session(write=True) as (_, conn):
        claimed = claim_task(conn, task_id, agent or default_actor())
        current = get_task(conn, task_id)
    _emit({"claimed": claimed, "task": current})


@task.command("claim-next")
@click.option("--agent", "-a", default=None, help="Claiming identity (default: $FORGE_ACTOR).")
@click.option(
    "--type", "-t", "task_type", default=None, type=click.Choice(sorted(VALID_TASK_TYPES))
)
@click.option("--label", "-l", default=None)
def task_claim_next(agent: str | None, task_type: str | None, label: str | None):
    """Claim the highest-priority ready task nobody else holds."""
    with _session(write=True) as (_, conn):
        claimed = claim_next(conn, agent or default_actor(), type=task_type, label=label)
    _emit({"claimed": claimed is not None, "task": claimed})


@task.command("release")
@click.argument("task_id")
def task_release(task_id: str):
    """Return a claimed task to the open pool."""
    with _session(write=True) as (_, conn):
        released = release_task(conn, task_id)
        current = get_task(conn, task_id)
    _emit({"released": released, "task": current})


@task.command("close")
@click.argument("task_id")
@click.option("--reason", "-r", required=True, help="Why the task is done.")
def task_close(task_id: str, reason: str):
    """Close a task. Closed tasks stay closed."""
    with _session(write=True) as (_, conn):
        closed = close_task(conn, task_id, reason)
        current = get_task(conn, task_id)
    _emit({"closed": closed, "task": current})


@task.command("delete")
@click.argument("task_id")
@click.option("--yes", is_flag=True, help="Confirm the delete.")
def task_delete(task_id: str, yes: bool):
    """Remove a task and every edge touching it.

    The next export rewrites the record store without the task.
    """
    if not yes:
        raise click.ClickException("Refusing to delete without --yes.")
    with _session(write=True) as (_, conn):
        result = delete_task(conn, task_id)
    _emit(result)


# -- graph queries --


@main.command()
@click.option(
    "--type", "-t", "task_type", default=None, type=click.Choice(sorted(VALID_TASK_TYPES))
)
@click.option("--label", "-l", default=None)
@click.option(
    "--priority-max", default=None, type=click.IntRange(MIN_PRIORITY, MAX_PRIORITY)
)
@click.option("--parent", "parent_id", default=None)
@click.option("--limit", default=None, type=click.IntRange(min=1))
def ready(
    task_type: str | None,
    label: str | None,
    priority_max: int | None,
    parent_id: str | None,
    limit: int | None,
):
    """Open, unassigned tasks with no open blockers."""
    with _session() as (_, conn):
        tasks = ready_tasks(
            conn,
            type=task_type,
            label=label,
            priority_max=priority_max,
            parent_id=parent_id,
            limit=limit,
        )
    _emit(tasks)


@main.command()
def blocked():
    """Unclosed tasks waiting on at least one open blocker."""
    with _session() as (_, conn):
        tasks = blocked_tasks(conn)
    _emit(tasks)


@main.group()
def dep():
    """Manage dependency edges."""


_dep_type_option = click.option(
    "--type",
    "dep_type",
    default="blocks",
    show_default=True,
    type=click.Choice(sorted(VALID_DEPENDENCY_TYPES)),
)


@dep.command("add")
@click.argument("task_id")
@click.argument("depends_on_id")
@_dep_type_option
def dep_add(task_id: str, depends_on_id: str, dep_type: str):
    """Record that TASK_ID depends on DEPENDS_ON_ID."""
    with _session(write=True) as (_, conn):
        added = add_dependency(conn, task_id, depends_on_id, dep_type)
        known = get_task(conn, depends_on_id) is not None
    payload: dict[str, Any] = {
        "added": added,
        "task_id": task_id,
        "depends_on_id": depends_on_id,
        "type": dep_type,
    }
    if not known:
        payload["warnings"] = [f"{depends_on_id} is not in the local index yet."]
    _emit(payload)


@dep.command("remove")
@click.argument("task_id")
@click.argument("depends_on_id")
@_dep_type_option
def dep_remove(task_id: str, depends_on_id: str, dep_type: str):
    """Delete the edge TASK_ID -> DEPENDS_ON_ID."""
    with _session(write=True) as (_, conn):
        removed = remove_dependency(conn, task_id, depends_on_id, dep_type)
    _emit(
        {
            "removed": removed,
            "task_id": task_id,
            "depends_on_id": depends_on_id,
            "type": dep_type,
        }
    )


@dep.command("tree")
@click.argument("task_id")
@click.option("--max-depth", default=None, type=click.IntRange(min=0))
@click.option("--up", is_flag=True, help="Walk to dependents instead of dependencies.")
@_dep_type_option
def dep_tree(task_id: str, max_depth: int | None, up: bool, dep_type: str):
    """Walk the dependency graph from TASK_ID."""
    direction = "up" if up else "down"
    with _session() as (workspace, conn):
        depth = workspace.config.max_tree_depth if max_depth is None else max_depth
        nodes = dependency_tree(
            conn, task_id, max_depth=depth, direction=direction, dep_type=dep_type
        )
    _emit(
        {
            "root": task_id,
            "direction": direction,
            "max_depth": depth,
            "nodes": [node.to_dict() for node in nodes],
        }
    )


# -- sync --


@main.command("export")
@click.option("--gc", is_flag=True, help="Rewrite the store with one line per task.")
def export_cmd(gc: bool):
    """Write index changes into the record store."""
    with _session() as (workspace, conn):
        result = export_records(conn, workspace.store, gc=gc)
    _emit(result.to_dict())


@main.command("import")
def import_cmd():
    """Load the record store into the index (newest snapshot wins)."""
    workspace = _workspace()
    try:
        with open_index(workspace, auto_import=False) as conn:
            result = import_records(conn, workspace.store)
    except ForgeError as exc:
        raise click.ClickException(str(exc)) from None
    _emit(result.to_dict())


@main.command()
def compact():
    """Drop superseded and malformed lines from the record store."""
    with _session() as (workspace, conn):
        with transaction(conn):
            result = workspace.store.compact()
            import_records(conn, workspace.store)
    _emit(result)


@main.command()
def rebuild():
    """Delete the index and re-import it from the record store."""
    workspace = _workspace()
    try:
        result = rebuild_index(
            workspace.db_path, workspace.store, busy_timeout_ms=workspace.config.busy_timeout_ms
        )
    except (OSError, sqlite3.Error, ForgeError) as exc:
        raise click.ClickException(str(exc)) from None
    _emit(result.to_dict())


# -- doctor --


@main.command()
@click.option("--fix", is_flag=True, help="Rebuild a bad index, compact a damaged store.")
def doctor(fix: bool):
    """Run health checks on the workspace."""
    from forge.doctor import run_doctor

    report = run_doctor(_workspace(), fix=fix)
    _emit(report)
    if report["status"] == "fail":
        raise click.ClickException("Doctor checks failed.")
