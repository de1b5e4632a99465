"""Tests for export/import between the index and the record store."""

from __future__ import annotations

import shutil
import sqlite3
from pathlib import Path

import pytest

from forge.claims import claim_task, close_task
from forge.db import (
    add_dependency,
    create_task,
    delete_task,
    get_connection,
    get_task,
    list_dependencies,
    list_tasks,
    update_task,
)
from forge.records import RecordStore, encode_snapshot
from forge.sync import (
    export_records,
    import_if_stale,
    import_records,
    index_is_stale,
    index_snapshots,
    normalize_snapshot,
    rebuild_index,
)


@pytest.fixture()
def other_conn(tmp_path: Path) -> sqlite3.Connection:
    """A second, independent index (another clone of the repository)."""
    conn = get_connection(tmp_path / "other.db")
    try:
        yield conn
    finally:
        conn.close()


def _lines(store: RecordStore) -> list[str]:
    return store.path.read_text().splitlines()


def _merge_union(target: Path, *sources: Path) -> None:
    """Concatenate the unique lines of several stores, like git's union merge."""
    seen: dict[str, None] = {}
    for source in sources:
        for line in source.read_text().splitlines():
            seen.setdefault(line, None)
    target.write_text("".join(f"{line}\n" for line in seen))


# -- export --


def test_export_appends_one_line_per_task(db_conn, store):
    a = create_task(db_conn, title="a")
    create_task(db_conn, title="b")

    result = export_records(db_conn, store)

    assert result.mode == "append"
    assert result.lines_appended == 2
    assert len(_lines(store)) == 2
    assert store.latest()[a["id"]]["title"] == "a"


def test_export_twice_appends_nothing_new(db_conn, store):
    create_task(db_conn, title="a")
    export_records(db_conn, store)
    assert export_records(db_conn, store).lines_appended == 0
    assert len(_lines(store)) == 1


def test_export_appends_only_changed_tasks(db_conn, store):
    a = create_task(db_conn, title="a")
    create_task(db_conn, title="b")
    export_records(db_conn, store)

    claim_task(db_conn, a["id"], "agent-a")
    result = export_records(db_conn, store)

    assert result.lines_appended == 1
    assert store.latest()[a["id"]]["assignee"] == "agent-a"


def test_export_carries_dependencies_with_the_dependent(db_conn, store):
    a = create_task(db_conn, title="a")
    b = create_task(db_conn, title="b")
    add_dependency(db_conn, a["id"], b["id"])
    export_records(db_conn, store)

    deps = store.latest()[a["id"]]["dependencies"]
    assert [(d["depends_on_id"], d["type"]) for d in deps] == [(b["id"], "blocks")]
    assert store.latest()[b["id"]]["dependencies"] == []


def test_export_gc_rewrites_one_line_per_id(db_conn, store):
    a = create_task(db_conn, title="a")
    export_records(db_conn, store)
    update_task(db_conn, a["id"], {"title": "a2"})
    export_records(db_conn, store)
    assert len(_lines(store)) == 2

    result = export_records(db_conn, store, gc=True)

    assert result.mode == "rewrite"
    assert result.lines_written == 1
    assert len(_lines(store)) == 1
    assert store.latest()[a["id"]]["title"] == "a2"


def test_export_keeps_newer_store_snapshot(db_conn, other_conn, store):
    task = create_task(db_conn, title="original")
    export_records(db_conn, store)
    import_records(other_conn, store)

    update_task(other_conn, task["id"], {"title": "from other clone"})
    export_records(other_conn, store)

    # db_conn has not imported yet; its older state must not win.
    export_records(db_conn, store)
    assert store.latest()[task["id"]]["title"] == "from other clone"
    export_records(db_conn, store, gc=True)
    assert store.latest()[task["id"]]["title"] == "from other clone"


def test_export_applies_pending_deletions(db_conn, store):
    keep = create_task(db_conn, title="keep")
    doomed = create_task(db_conn, title="doomed")
    add_dependency(db_conn, keep["id"], doomed["id"])
    export_records(db_conn, store)

    delete_task(db_conn, doomed["id"])
    result = export_records(db_conn, store)

    assert result.mode == "rewrite"
    assert result.deletions_applied == 1
    latest = store.latest()
    assert doomed["id"] not in latest
    assert latest[keep["id"]]["dependencies"] == []
    assert all(doomed["id"] != line_id for line_id in (s["id"] for s in store.iter_snapshots()))


def test_import_skips_ids_pending_deletion(db_conn, store):
    doomed = create_task(db_conn, title="doomed")
    export_records(db_conn, store)
    delete_task(db_conn, doomed["id"])

    result = import_records(db_conn, store)

    assert result.skipped_deleted == 1
    assert get_task(db_conn, doomed["id"]) is None


# -- import --


def test_round_trip_rebuild_reproduces_index(db_conn, tmp_path, store):
    epic = create_task(db_conn, title="epic", type="epic", labels=["x"])
    child = create_task(db_conn, title="child", parent_id=epic["id"], metadata={"k": [1]})
    other = create_task(db_conn, title="other", external_ref="gh-1")
    add_dependency(db_conn, child["id"], other["id"])
    add_dependency(db_conn, other["id"], "fg-away", "related")
    claim_task(db_conn, other["id"], "agent-a")
    close_task(db_conn, epic["id"], "done")
    export_records(db_conn, store)

    db_path = tmp_path / "rebuilt.db"
    result = rebuild_index(db_path, store)

    assert result.created == 3
    conn = get_connection(db_path)
    try:
        assert index_snapshots(conn) == index_snapshots(db_conn)
    finally:
        conn.close()


def test_import_is_idempotent(db_conn, other_conn, store):
    a = create_task(db_conn, title="a")
    add_dependency(db_conn, a["id"], "fg-away")
    export_records(db_conn, store)

    first = import_records(other_conn, store)
    snapshot = index_snapshots(other_conn)
    second = import_records(other_conn, store)

    assert first.created == 1
    assert second.created == 0
    assert second.updated == 0
    assert second.unchanged == 1
    assert index_snapshots(other_conn) == snapshot


def test_import_older_line_never_overwrites_newer(db_conn, other_conn, store):
    task = create_task(db_conn, title="v1")
    export_records(db_conn, store)
    v1_line = _lines(store)[0]
    update_task(db_conn, task["id"], {"title": "v2"})
    export_records(db_conn, store)
    with store.path.open("a") as handle:
        handle.write(v1_line + "\n")

    import_records(other_conn, store)
    assert get_task(other_conn, task["id"])["title"] == "v2"


def test_import_replaces_whole_record_including_edges(db_conn, other_conn, store):
    a = create_task(db_conn, title="a")
    b = create_task(db_conn, title="b")
    add_dependency(db_conn, a["id"], b["id"])
    export_records(db_conn, store)
    import_records(other_conn, store)

    db_conn.execute("DELETE FROM dependencies")
    update_task(db_conn, a["id"], {"title": "a without deps"})
    export_records(db_conn, store)
    import_records(other_conn, store)

    assert get_task(other_conn, a["id"])["title"] == "a without deps"
    assert list_dependencies(other_conn, a["id"]) == []


def test_import_counts_malformed_lines(db_conn, other_conn, store):
    create_task(db_conn, title="a")
    export_records(db_conn, store)
    with store.path.open("a") as handle:
        handle.write('{"id": "fg-half"\n')

    result = import_records(other_conn, store)

    assert result.created == 1
    assert result.malformed == 1


def test_import_skips_lines_with_invalid_utf8(db_conn, other_conn, store):
    good = create_task(db_conn, title="good")
    bad = create_task(db_conn, title="caf")
    export_records(db_conn, store)
    raw = store.path.read_bytes().replace(b'"title":"caf"', b'"title":"caf\xff\xfe"')
    store.path.write_bytes(raw)

    result = import_records(other_conn, store)

    assert result.created == 1
    assert result.malformed == 1
    assert get_task(other_conn, good["id"])["title"] == "good"
    assert get_task(other_conn, bad["id"]) is None


def test_import_normalizes_sparse_snapshots(other_conn, store):
    sparse = {
        "id": "fg-abcd",
        "title": "from another tool",
        "status": "open",
        "priority": 1,
        "type": "bug",
        "created_at": "2024-01-01T00:00:00Z",
        "updated_at": "2024-01-01T00:00:00Z",
        "dependencies": [{"depends_on_id": "fg-abcd", "type": "blocks"}],
    }
    store.path.write_text(encode_snapshot(sparse) + "\n")

    import_records(other_conn, store)

    task = get_task(other_conn, "fg-abcd")
    assert task["description"] == ""
    assert task["labels"] == []
    assert list_dependencies(other_conn, "fg-abcd") == []


@pytest.mark.parametrize("order", ["ours_first", "theirs_first"])
def test_concurrent_edits_converge_by_updated_at(db_conn, other_conn, store, tmp_path, order):
    task = create_task(db_conn, title="shared", priority=2)
    export_records(db_conn, store)
    import_records(other_conn, store)

    ours = RecordStore(tmp_path / "ours.jsonl")
    theirs = RecordStore(tmp_path / "theirs.jsonl")
    shutil.copy2(store.path, ours.path)
    shutil.copy2(store.path, theirs.path)

    update_task(db_conn, task["id"], {"title": "renamed on ours"})
    export_records(db_conn, ours)
    update_task(other_conn, task["id"], {"priority": 0})
    export_records(other_conn, theirs)

    sources = (ours.path, theirs.path) if order == "ours_first" else (theirs.path, ours.path)
    merged = RecordStore(tmp_path / "merged.jsonl")
    _merge_union(merged.path, *sources)

    conn = get_connection(tmp_path / f"{order}.db")
    try:
        import_records(conn, merged)
        result = get_task(conn, task["id"])
    finally:
        conn.close()

    # Whole-record last-writer-wins: theirs was written last.
    assert result["priority"] == 0
    assert result["title"] == "shared"


def test_new_tasks_from_both_clones_survive_union_merge(db_conn, other_conn, store, tmp_path):
    ours = RecordStore(tmp_path / "ours.jsonl")
    theirs = RecordStore(tmp_path / "theirs.jsonl")
    mine = create_task(db_conn, title="mine")
    yours = create_task(other_conn, title="yours")
    add_dependency(db_conn, mine["id"], yours["id"])
    export_records(db_conn, ours)
    export_records(other_conn, theirs)

    _merge_union(store.path, ours.path, theirs.path)
    import_records(db_conn, store)

    assert {t["id"] for t in list_tasks(db_conn)} == {mine["id"], yours["id"]}
    assert list_dependencies(db_conn, mine["id"])[0]["depends_on_id"] == yours["id"]


# -- staleness --


def test_index_staleness_tracks_store_hash(db_conn, other_conn, store):
    create_task(db_conn, title="a")
    export_records(db_conn, store)
    assert not index_is_stale(db_conn, store)
    assert index_is_stale(other_conn, store)

    assert import_if_stale(other_conn, store).created == 1
    assert import_if_stale(other_conn, store) is None


def test_export_does_not_hide_unimported_store_lines(db_conn, other_conn, store):
    shared = create_task(db_conn, title="shared")
    export_records(db_conn, store)
    import_records(other_conn, store)

    update_task(other_conn, shared["id"], {"title": "remote edit"})
    export_records(other_conn, store)

    # db_conn writes and exports before importing the other clone's line.
    create_task(db_conn, title="local")
    export_records(db_conn, store)

    assert index_is_stale(db_conn, store)
    assert import_if_stale(db_conn, store).updated == 1
    assert get_task(db_conn, shared["id"])["title"] == "remote edit"
    assert not index_is_stale(db_conn, store)


def test_rebuild_index_replaces_corrupt_file(db_conn, tmp_path, store):
    create_task(db_conn, title="a")
    export_records(db_conn, store)
    db_path = tmp_path / "corrupt.db"
    db_path.write_bytes(b"this is not a database" * 64)

    result = rebuild_index(db_path, store)

    assert result.created == 1
    conn = get_connection(db_path)
    try:
        assert [t["title"] for t in list_tasks(conn)] == ["a"]
    finally:
        conn.close()


def test_normalize_snapshot_sorts_and_dedupes():
    snapshot = normalize_snapshot(
        {
            "id": "fg-aaaa",
            "title": "t",
            "status": "open",
            "created_at": "2024-01-01T00:00:00Z",
            "updated_at": "2024-01-02T00:00:00Z",
            "labels": ["b", "a", "b"],
            "dependencies": [
                {"depends_on_id": "fg-cccc", "type": "blocks"},
                {"depends_on_id": "fg-bbbb", "type": "blocks", "created_at": "x"},
                {"depends_on_id": "fg-cccc", "type": "blocks"},
            ],
        }
    )
    assert snapshot["labels"] == ["a", "b"]
    assert snapshot["dependencies"] == [
        {"depends_on_id": "fg-bbbb", "type": "blocks", "created_at": "x"},
        {"depends_on_id": "fg-cccc", "type": "blocks", "created_at": "2024-01-02T00:00:00Z"},
    ]
    assert snapshot["priority"] == 2
