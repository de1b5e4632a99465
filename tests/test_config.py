"""Tests for workspace configuration."""

from __future__ import annotations

import pytest

from forge.config import (
    DEFAULT_BUSY_TIMEOUT_MS,
    ForgeConfig,
    default_actor,
    load_config,
    parse_config,
    render_config,
    with_prefix,
    write_config,
)


def test_parse_empty_document_gives_defaults():
    config = parse_config({})
    assert config == ForgeConfig()
    assert config.prefix == "fg"
    assert config.id_length == 4
    assert config.busy_timeout_ms == DEFAULT_BUSY_TIMEOUT_MS
    assert config.auto_import is True
    assert config.auto_export is True


def test_parse_overrides():
    config = parse_config(
        {
            "forge": {
                "prefix": "Web",
                "id_length": 6,
                "busy_timeout_ms": 250,
                "max_tree_depth": 5,
                "auto_export": False,
            }
        }
    )
    assert config.prefix == "web"
    assert config.id_length == 6
    assert config.busy_timeout_ms == 250
    assert config.max_tree_depth == 5
    assert config.auto_export is False
    assert config.auto_import is True


@pytest.mark.parametrize(
    "section",
    [
        {"prefix": 5},
        {"prefix": "bad-prefix"},
        {"id_length": 2},
        {"id_length": 13},
        {"id_length": True},
        {"busy_timeout_ms": 0},
        {"max_tree_depth": "deep"},
        {"auto_import": "yes"},
    ],
)
def test_parse_rejects_bad_values(section):
    with pytest.raises(ValueError):
        parse_config({"forge": section})


def test_parse_rejects_non_table_section():
    with pytest.raises(ValueError, match="table"):
        parse_config({"forge": "oops"})


def test_write_then_load(tmp_path):
    config = ForgeConfig(prefix="ops", id_length=5, auto_import=False)
    path = write_config(tmp_path, config)

    assert path.read_text() == render_config(config)
    assert load_config(tmp_path) == config


def test_unreadable_config_falls_back_to_defaults(tmp_path):
    (tmp_path / "config.toml").write_text("[forge\nprefix = ")
    assert load_config(tmp_path) == ForgeConfig()


def test_with_prefix_validates():
    assert with_prefix(ForgeConfig(), "api").prefix == "api"
    with pytest.raises(ValueError):
        with_prefix(ForgeConfig(), "9lives")


def test_default_actor_prefers_forge_actor(monkeypatch):
    monkeypatch.setenv("FORGE_ACTOR", "bot-7")
    assert default_actor() == "bot-7"
    monkeypatch.delenv("FORGE_ACTOR")
    monkeypatch.setenv("USER", "alice")
    assert default_actor() == "alice"
    monkeypatch.delenv("USER")
    assert default_actor() == "unknown"
