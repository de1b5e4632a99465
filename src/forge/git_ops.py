"""Git plumbing for distributing the record store.

Functions raise RuntimeError on failure (not ClickException),
so they can be used from both cli.py and doctor.py.
"""

from __future__ import annotations

import logging
import stat
import subprocess
from pathlib import Path

log = logging.getLogger(__name__)

HOOK_MARKER = "# installed by forge"

_HOOK_SCRIPTS = {
    "pre-commit": f"""#!/bin/sh
{HOOK_MARKER}
# Flush index changes into the record store before each commit.
forge export || exit 1
git add {{store}}
""",
    "post-merge": f"""#!/bin/sh
{HOOK_MARKER}
# Pull merged snapshots from the record store into the local index.
forge import
""",
}


def _git(repo: Path, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
    try:
        return subprocess.run(
            ["git", *args],
            cwd=str(repo),
            check=check,
            capture_output=True,
            text=True,
        )
    except FileNotFoundError:
        raise RuntimeError("git not found on PATH") from None
    except subprocess.CalledProcessError as exc:
        detail = (exc.stderr or exc.stdout or "").strip()
        raise RuntimeError(f"git {' '.join(args)} failed: {detail}") from None


def find_repo_root(path: Path) -> Path | None:
    """Top-level directory of the work tree containing *path*, or None."""
    try:
        result = _git(path, "rev-parse", "--show-toplevel", check=False)
    except RuntimeError:
        return None
    if result.returncode != 0:
        return None
    return Path(result.stdout.strip())


def _git_path(repo: Path, name: str) -> Path:
    """Resolve a path inside the git dir (works for worktrees too)."""
    raw = _git(repo, "rev-parse", "--git-path", name).stdout.strip()
    resolved = Path(raw)
    return resolved if resolved.is_absolute() else repo / resolved


def _append_line_if_missing(path: Path, entry: str) -> bool:
    if path.exists():
        content = path.read_text()
        if any(line.strip() == entry for line in content.splitlines()):
            return False
        with open(path, "a") as f:
            if content and not content.endswith("\n"):
                f.write("\n")
            f.write(f"{entry}\n")
    else:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"{entry}\n")
    return True


def merge_attribute_line(store_relpath: str) -> str:
    return f"{store_relpath} merge=union"


def ensure_merge_attributes(repo: Path, store_relpath: str) -> bool:
    """Mark the record store for git's union merge driver.

    Concurrent appends on two branches then merge into both lines instead
    of a conflict; the import step settles duplicates by updated_at.
    Returns True when .gitattributes was changed.
    """
    return _append_line_if_missing(repo / ".gitattributes", merge_attribute_line(store_relpath))


def merge_driver_for(repo: Path, store_relpath: str) -> str | None:
    """Merge attribute git resolves for the store path (None if unspecified)."""
    output = _git(repo, "check-attr", "merge", "--", store_relpath).stdout.strip()
    # "<path>: merge: <value>"
    value = output.rsplit(":", 1)[-1].strip() if output else ""
    return None if value in ("", "unspecified") else value


def ensure_excluded(repo: Path, entry: str) -> bool:
    """Add *entry* to .git/info/exclude (local-only ignore)."""
    return _append_line_if_missing(_git_path(repo, "info/exclude"), entry)


def ensure_gitignore(directory: Path, entries: list[str]) -> list[str]:
    """Append missing *entries* to directory/.gitignore; returns what was added."""
    gitignore = directory / ".gitignore"
    return [entry for entry in entries if _append_line_if_missing(gitignore, entry)]


def install_hooks(repo: Path, store_relpath: str) -> dict[str, str]:
    """Install pre-commit (export) and post-merge (import) hooks.

    Existing hooks not written by forge are left alone and reported as
    "skipped".
    """
    hooks_dir = _git_path(repo, "hooks")
    hooks_dir.mkdir(parents=True, exist_ok=True)
    outcome: dict[str, str] = {}
    for name, template in _HOOK_SCRIPTS.items():
        hook = hooks_dir / name
        if hook.exists() and HOOK_MARKER not in hook.read_text(errors="replace"):
            log.warning("Leaving existing %s hook in place: %s", name, hook)
            outcome[name] = "skipped"
            continue
        outcome[name] = "updated" if hook.exists() else "installed"
        hook.write_text(template.replace("{store}", store_relpath))
        hook.chmod(hook.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return outcome
