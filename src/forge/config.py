"""Workspace configuration loaded from .forge/config.toml."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, replace
from pathlib import Path
from string import Template
from typing import Any

from forge.ids import DEFAULT_ID_LENGTH, validate_prefix
from forge.paths import config_path

DEFAULT_PREFIX = "fg"
DEFAULT_BUSY_TIMEOUT_MS = 5000
DEFAULT_MAX_TREE_DEPTH = 50
MIN_ID_LENGTH = 3
MAX_ID_LENGTH = 12

_CONFIG_TEMPLATE = Template(
    """# forge workspace settings
[forge]
prefix = "${prefix}"
id_length = ${id_length}
busy_timeout_ms = ${busy_timeout_ms}
max_tree_depth = ${max_tree_depth}
auto_import = ${auto_import}
auto_export = ${auto_export}
"""
)


@dataclass(frozen=True)
class ForgeConfig:
    prefix: str = DEFAULT_PREFIX
    id_length: int = DEFAULT_ID_LENGTH
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS
    max_tree_depth: int = DEFAULT_MAX_TREE_DEPTH
    auto_import: bool = True
    auto_export: bool = True


def _read_toml_file(path: Path) -> dict[str, Any]:
    """Read a TOML file, returning an empty dict on any read/parse failure."""
    try:
        with path.open("rb") as handle:
            raw = tomllib.load(handle)
    except (FileNotFoundError, OSError, tomllib.TOMLDecodeError):
        return {}
    return raw if isinstance(raw, dict) else {}


def _int_setting(section: dict[str, Any], key: str, default: int, *, minimum: int) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise ValueError(f"config: '{key}' must be an integer >= {minimum}, got {value!r}")
    return value


def _bool_setting(section: dict[str, Any], key: str, default: bool) -> bool:
    value = section.get(key, default)
    if not isinstance(value, bool):
        raise ValueError(f"config: '{key}' must be true or false, got {value!r}")
    return value


def parse_config(document: dict[str, Any]) -> ForgeConfig:
    """Build a ForgeConfig from a parsed TOML document.

    Missing keys take defaults; present keys with bad values raise ValueError.
    """
    section = document.get("forge", {})
    if not isinstance(section, dict):
        raise ValueError("config: [forge] must be a table")

    prefix = section.get("prefix", DEFAULT_PREFIX)
    if not isinstance(prefix, str):
        raise ValueError(f"config: 'prefix' must be a string, got {prefix!r}")
    id_length = _int_setting(section, "id_length", DEFAULT_ID_LENGTH, minimum=MIN_ID_LENGTH)
    if id_length > MAX_ID_LENGTH:
        raise ValueError(f"config: 'id_length' must be <= {MAX_ID_LENGTH}, got {id_length}")

    return ForgeConfig(
        prefix=validate_prefix(prefix),
        id_length=id_length,
        busy_timeout_ms=_int_setting(
            section, "busy_timeout_ms", DEFAULT_BUSY_TIMEOUT_MS, minimum=1
        ),
        max_tree_depth=_int_setting(
            section, "max_tree_depth", DEFAULT_MAX_TREE_DEPTH, minimum=1
        ),
        auto_import=_bool_setting(section, "auto_import", True),
        auto_export=_bool_setting(section, "auto_export", True),
    )


def load_config(forge_dir: Path) -> ForgeConfig:
    return parse_config(_read_toml_file(config_path(forge_dir)))


def render_config(config: ForgeConfig) -> str:
    return _CONFIG_TEMPLATE.substitute(
        prefix=config.prefix,
        id_length=config.id_length,
        busy_timeout_ms=config.busy_timeout_ms,
        max_tree_depth=config.max_tree_depth,
        auto_import=str(config.auto_import).lower(),
        auto_export=str(config.auto_export).lower(),
    )


def write_config(forge_dir: Path, config: ForgeConfig) -> Path:
    path = config_path(forge_dir)
    path.write_text(render_config(config))
    return path


def with_prefix(config: ForgeConfig, prefix: str) -> ForgeConfig:
    return replace(config, prefix=validate_prefix(prefix))


def default_actor() -> str:
    """Agent identity used when a command does not name one."""
    return os.environ.get("FORGE_ACTOR") or os.environ.get("USER", "unknown")
