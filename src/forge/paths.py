"""Canonical filesystem layout of a forge workspace."""

from __future__ import annotations

import os
from pathlib import Path

FORGE_DIR_NAME = ".forge"
CONFIG_FILE_NAME = "config.toml"
RECORD_STORE_FILE_NAME = "tasks.jsonl"
INDEX_FILE_NAME = "forge.db"

# Relative to the repository root; used for .gitattributes and exclude entries.
RECORD_STORE_RELPATH = f"{FORGE_DIR_NAME}/{RECORD_STORE_FILE_NAME}"


def find_forge_dir(start: Path | None = None) -> Path | None:
    """Return the nearest .forge directory at or above *start*.

    ``FORGE_DIR`` in the environment wins over discovery.
    """
    env_dir = os.environ.get("FORGE_DIR")
    if env_dir:
        return Path(env_dir).expanduser()
    current = (start or Path.cwd()).resolve()
    for candidate in (current, *current.parents):
        forge_dir = candidate / FORGE_DIR_NAME
        if forge_dir.is_dir():
            return forge_dir
    return None


def index_path(forge_dir: Path) -> Path:
    env_db = os.environ.get("FORGE_DB_PATH")
    return Path(env_db).expanduser() if env_db else forge_dir / INDEX_FILE_NAME


def record_store_path(forge_dir: Path) -> Path:
    return forge_dir / RECORD_STORE_FILE_NAME


def config_path(forge_dir: Path) -> Path:
    return forge_dir / CONFIG_FILE_NAME
