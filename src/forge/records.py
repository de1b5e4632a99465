"""JSONL record store: the portable, append-optimized log of task snapshots.

Each line is a self-contained JSON object holding a task's full state at
write time. Later lines supersede earlier ones for the same id only when
their ``updated_at`` is later; file order carries no meaning. The store
does no indexing; all querying goes through the SQLite index.
"""

from __future__ import annotations

import contextlib
import hashlib
import json
import logging
import os
import tempfile
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from jsonschema import Draft202012Validator

from forge.db import (
    MAX_PRIORITY,
    MIN_PRIORITY,
    VALID_DEPENDENCY_TYPES,
    VALID_TASK_STATUSES,
    VALID_TASK_TYPES,
    parse_timestamp,
)

log = logging.getLogger(__name__)

_NULLABLE_STRING = {"type": ["string", "null"]}

SNAPSHOT_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "forge task snapshot",
    "type": "object",
    "required": ["id", "title", "status", "priority", "type", "created_at", "updated_at"],
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "title": {"type": "string", "minLength": 1},
        "description": {"type": "string"},
        "status": {"enum": sorted(VALID_TASK_STATUSES)},
        "close_reason": _NULLABLE_STRING,
        "priority": {"type": "integer", "minimum": MIN_PRIORITY, "maximum": MAX_PRIORITY},
        "type": {"enum": sorted(VALID_TASK_TYPES)},
        "assignee": _NULLABLE_STRING,
        "parent_id": _NULLABLE_STRING,
        "labels": {"type": "array", "items": {"type": "string"}, "uniqueItems": True},
        "external_ref": _NULLABLE_STRING,
        "metadata": {"type": "object"},
        "created_at": {"type": "string", "minLength": 1},
        "updated_at": {"type": "string", "minLength": 1},
        "closed_at": _NULLABLE_STRING,
        "dependencies": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["depends_on_id", "type"],
                "properties": {
                    "depends_on_id": {"type": "string", "minLength": 1},
                    "type": {"enum": sorted(VALID_DEPENDENCY_TYPES)},
                    "created_at": {"type": "string"},
                },
            },
        },
    },
    "if": {"properties": {"status": {"const": "closed"}}},
    "then": {
        "required": ["closed_at", "close_reason"],
        "properties": {
            "closed_at": {"type": "string", "minLength": 1},
            "close_reason": {"type": "string", "minLength": 1},
        },
    },
    "else": {
        "properties": {"closed_at": {"type": "null"}, "close_reason": {"type": "null"}},
    },
}

_VALIDATOR = Draft202012Validator(SNAPSHOT_SCHEMA)


class MalformedRecordError(ValueError):
    def __init__(self, line_no: int, reason: str):
        self.line_no = line_no
        self.reason = reason
        super().__init__(f"line {line_no}: {reason}")


@dataclass
class ScanStats:
    lines: int = 0
    valid: int = 0
    malformed: list[MalformedRecordError] = field(default_factory=list)
    latest_ids: set[str] = field(default_factory=set)

    @property
    def superseded(self) -> int:
        """Valid lines that are not the only line for their id."""
        return self.valid - len(self.latest_ids)


def encode_snapshot(snapshot: Mapping[str, Any]) -> str:
    """Compact, key-sorted, single-line JSON."""
    return json.dumps(snapshot, sort_keys=True, ensure_ascii=False, separators=(",", ":"))


def _decode_line(raw: bytes, line_no: int) -> str:
    try:
        return raw.decode("utf-8").strip()
    except UnicodeDecodeError as exc:
        raise MalformedRecordError(
            line_no, f"invalid UTF-8 at byte {exc.start} ({exc.reason})"
        ) from None


def decode_snapshot(line: str, line_no: int = 0) -> dict[str, Any]:
    """Parse and validate one record line. Raises MalformedRecordError."""
    try:
        data = json.loads(line)
    except json.JSONDecodeError as exc:
        raise MalformedRecordError(line_no, f"invalid JSON ({exc.msg})") from None
    if not isinstance(data, dict):
        raise MalformedRecordError(line_no, f"expected JSON object, got {type(data).__name__}")
    error = next(iter(_VALIDATOR.iter_errors(data)), None)
    if error is not None:
        where = "/".join(str(part) for part in error.absolute_path) or "<record>"
        raise MalformedRecordError(line_no, f"{where}: {error.message}")
    try:
        parse_timestamp(data["updated_at"])
        parse_timestamp(data["created_at"])
    except ValueError as exc:
        raise MalformedRecordError(line_no, f"bad timestamp ({exc})") from None
    return data


def prefer_snapshot(a: Mapping[str, Any], b: Mapping[str, Any]) -> Mapping[str, Any]:
    """Pick the winner between two snapshots of the same task.

    The later ``updated_at`` wins the whole record. Equal timestamps fall
    back to comparing the encoded text so the choice never depends on
    which snapshot was seen first.
    """
    ts_a = parse_timestamp(a["updated_at"])
    ts_b = parse_timestamp(b["updated_at"])
    if ts_a != ts_b:
        return a if ts_a > ts_b else b
    return a if encode_snapshot(a) >= encode_snapshot(b) else b


class RecordStore:
    """Sequential-access view of one tasks.jsonl file."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def ensure(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.touch(exist_ok=True)

    def iter_snapshots(self, stats: ScanStats | None = None) -> Iterator[dict[str, Any]]:
        """Yield valid snapshots in file order, skipping malformed lines.

        Malformed lines are logged and recorded on *stats*; they never stop
        the scan.
        """
        if not self.path.exists():
            return
        with self.path.open("rb") as handle:
            for line_no, raw in enumerate(handle, start=1):
                if not raw.strip():
                    continue
                if stats is not None:
                    stats.lines += 1
                try:
                    snapshot = decode_snapshot(_decode_line(raw, line_no), line_no)
                except MalformedRecordError as exc:
                    log.warning("Skipping malformed record in %s %s", self.path, exc)
                    if stats is not None:
                        stats.malformed.append(exc)
                    continue
                if stats is not None:
                    stats.valid += 1
                    stats.latest_ids.add(snapshot["id"])
                yield snapshot

    def latest(self, stats: ScanStats | None = None) -> dict[str, dict[str, Any]]:
        """Winning snapshot per id."""
        winners: dict[str, dict[str, Any]] = {}
        for snapshot in self.iter_snapshots(stats):
            current = winners.get(snapshot["id"])
            if current is None or prefer_snapshot(snapshot, current) is snapshot:
                winners[snapshot["id"]] = snapshot
        return winners

    def scan(self) -> ScanStats:
        stats = ScanStats()
        for _ in self.iter_snapshots(stats):
            pass
        return stats

    def append(self, snapshots: Iterable[Mapping[str, Any]]) -> int:
        lines = [encode_snapshot(snapshot) + "\n" for snapshot in snapshots]
        if not lines:
            return 0
        self.path.parent.mkdir(parents=True, exist_ok=True)
        needs_newline = self._ends_without_newline()
        with self.path.open("a", encoding="utf-8") as handle:
            if needs_newline:
                handle.write("\n")
            handle.writelines(lines)
            handle.flush()
            os.fsync(handle.fileno())
        return len(lines)

    def _ends_without_newline(self) -> bool:
        if not self.path.exists() or self.path.stat().st_size == 0:
            return False
        with self.path.open("rb") as handle:
            handle.seek(-1, os.SEEK_END)
            return handle.read(1) != b"\n"

    def write_all(self, snapshots: Iterable[Mapping[str, Any]]) -> int:
        """Atomically replace the file with exactly *snapshots*.

        Writes to a temp file in the same directory, re-reads it to check
        every line parses, then renames it over the store.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(
            dir=self.path.parent, prefix=".tasks_", suffix=".jsonl.tmp"
        )
        temp_path = Path(temp_name)
        count = 0
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                for snapshot in snapshots:
                    handle.write(encode_snapshot(snapshot) + "\n")
                    count += 1
                handle.flush()
                os.fsync(handle.fileno())
            written = RecordStore(temp_path).scan()
            if written.valid != count or written.malformed:
                raise RuntimeError(
                    f"Record store write validation failed: expected {count} records, "
                    f"read back {written.valid} ({len(written.malformed)} malformed)"
                )
            os.replace(temp_path, self.path)
        except BaseException:
            with contextlib.suppress(OSError):
                temp_path.unlink()
            raise
        return count

    def compact(self) -> dict[str, int]:
        """Rewrite keeping only the winning line per id, ordered by id.

        Readers see the same latest() before and after. Malformed lines are
        dropped.
        """
        stats = ScanStats()
        winners = self.latest(stats)
        kept = self.write_all(winners[task_id] for task_id in sorted(winners))
        return {
            "lines_before": stats.lines,
            "lines_after": kept,
            "superseded_removed": stats.superseded,
            "malformed_removed": len(stats.malformed),
        }

    def content_hash(self) -> str:
        """sha256 of the file; "" when it is missing or empty."""
        if not self.path.exists() or self.path.stat().st_size == 0:
            return ""
        digest = hashlib.sha256()
        with self.path.open("rb") as handle:
            for chunk in iter(lambda: handle.read(1 << 16), b""):
                digest.update(chunk)
        return digest.hexdigest()
