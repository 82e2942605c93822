import json
import logging
import re
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import jsonschema
import zstandard as zstd

from . import config
from .errors import CheckpointCorruptionError
from .records import deserialize_collections, empty_collections, serialize_collections
from .utils import (
    _json_default,
    format_timestamp,
    parse_iso8601,
    utc_now,
    write_bytes_atomic,
)

logger = logging.getLogger(__name__)

ARTIFACT_NAME_PATTERN = re.compile(r"^checkpoint-(\d+)-([0-9TZ]+)-(\d+)\.json(\.zst)?$")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def load_schema(path=config.CHECKPOINT_SCHEMA_FILE):
    with open(path, "r", encoding="utf-8") as handle:
        return json.load(handle)


def validate_checkpoint(payload, schema, path=None):
    """Raise CheckpointCorruptionError when ``payload`` does not match the artifact schema."""
    validator = jsonschema.Draft202012Validator(schema)
    errors = sorted(validator.iter_errors(payload), key=lambda e: len(list(e.absolute_path)))
    if errors:
        error = errors[0]
        raise CheckpointCorruptionError(
            path,
            "Checkpoint does not match schema.",
            {"path_in_document": list(error.absolute_path), "message": error.message},
        )
    return payload


@dataclass(frozen=True)
class CheckpointInfo:
    path: Path
    progress: int
    timestamp: str


@dataclass
class RecoveredState:
    progress: int
    cursor: Optional[str]
    timestamp: str
    records: dict = field(default_factory=empty_collections)
    checkpoint_count: int = 0
    latest_path: Optional[Path] = None
    skipped: list = field(default_factory=list)
    stats: Optional[dict] = None


class CheckpointIndex:
    """SQLite index of checkpoint artifacts keyed by file name."""

    def __init__(self, db_path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS checkpoints (
                name TEXT PRIMARY KEY,
                progress INTEGER NOT NULL,
                timestamp TEXT NOT NULL,
                cursor TEXT
            )
            """
        )
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_checkpoints_progress ON checkpoints (progress, timestamp)")
        self._conn.commit()

    def put(self, name, progress, timestamp, cursor):
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO checkpoints (name, progress, timestamp, cursor)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    progress=excluded.progress,
                    timestamp=excluded.timestamp,
                    cursor=excluded.cursor
                """,
                (name, progress, timestamp, cursor),
            )
            self._conn.commit()

    def ordered(self):
        """Rows as (name, progress, timestamp, cursor), ascending by progress then timestamp."""
        with self._lock:
            cursor = self._conn.execute(
                "SELECT name, progress, timestamp, cursor FROM checkpoints ORDER BY progress, timestamp, name"
            )
            return cursor.fetchall()

    def delete(self, name):
        with self._lock:
            self._conn.execute("DELETE FROM checkpoints WHERE name = ?", (name,))
            self._conn.commit()

    def close(self):
        with self._lock:
            self._conn.close()


class CheckpointStore:
    """Sole writer of on-disk progress: one artifact per checkpoint, each carrying a record delta."""

    def __init__(
        self,
        directory=config.CHECKPOINT_DIR,
        compress=config.CHECKPOINT_COMPRESS,
        schema=None,
        use_index=True,
        clock=utc_now,
    ):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.compress = compress
        self.schema = schema or load_schema()
        self._clock = clock
        self.index = CheckpointIndex(self.directory / config.CHECKPOINT_INDEX_NAME) if use_index else None
        self.written = 0
        self.bytes_written = 0

    def close(self):
        if self.index is not None:
            self.index.close()

    def _artifact_path(self, progress, now):
        suffix = ".json.zst" if self.compress else ".json"
        stamp = format_timestamp(now)
        sequence = 0
        while True:
            name = f"{config.CHECKPOINT_PREFIX}{progress:09d}-{stamp}-{sequence:04d}{suffix}"
            path = self.directory / name
            if not path.exists():
                return path
            sequence += 1

    def _encode(self, payload, compressed):
        raw = json.dumps(payload, ensure_ascii=False, default=_json_default).encode("utf-8")
        if compressed:
            return zstd.ZstdCompressor().compress(raw)
        return raw

    def _decode(self, blob, compressed):
        if compressed:
            blob = zstd.ZstdDecompressor().decompress(blob)
        return json.loads(blob.decode("utf-8"))

    def persist(self, progress, cursor, records, record_counts, stats=None):
        """Write a new checkpoint artifact atomically and return its path."""
        now = self._clock()
        timestamp = now.isoformat()
        serialized = serialize_collections(records)
        for kind in ("pages", "votes", "revisions", "attributions"):
            serialized.setdefault(kind, [])
        counts = dict(record_counts)
        for kind in ("pages", "votes", "revisions", "attributions"):
            counts.setdefault(kind, 0)
        payload = {
            "progress": int(progress),
            "cursor": cursor,
            "timestamp": timestamp,
            "recordCounts": counts,
            "records": serialized,
            "stats": stats,
        }
        path = self._artifact_path(progress, now)
        blob = self._encode(payload, self.compress)
        write_bytes_atomic(path, blob)
        if self.index is not None:
            self.index.put(path.name, int(progress), timestamp, cursor)
        self.written += 1
        self.bytes_written += len(blob)
        logger.info(
            "[+] Checkpoint written: progress=%s delta_pages=%s file=%s",
            progress,
            len(serialized.get("pages", [])),
            path.name,
        )
        return path

    def load(self, path):
        """Read and validate one artifact; CheckpointCorruptionError on any failure."""
        path = Path(path)
        try:
            blob = path.read_bytes()
            payload = self._decode(blob, path.suffix == ".zst")
        except (OSError, ValueError, zstd.ZstdError) as exc:
            raise CheckpointCorruptionError(path, f"Unreadable checkpoint: {exc}") from exc
        if not isinstance(payload, dict):
            raise CheckpointCorruptionError(path, "Checkpoint is not an object.")
        return validate_checkpoint(payload, self.schema, path)

    def load_records(self, path):
        """Load one artifact and rebuild its record slices; returns (payload, records)."""
        payload = self.load(path)
        try:
            records = deserialize_collections(payload.get("records"))
        except (TypeError, ValueError) as exc:
            raise CheckpointCorruptionError(path, f"Checkpoint records are invalid: {exc}") from exc
        return payload, records

    def artifacts(self):
        """Known artifacts ascending by progress; index rows first, unindexed files from a directory scan."""
        infos = {}
        if self.index is not None:
            for name, progress, timestamp, _cursor in self.index.ordered():
                path = self.directory / name
                if path.exists():
                    infos[name] = CheckpointInfo(path=path, progress=progress, timestamp=timestamp)
                else:
                    self.index.delete(name)
        for path in self.directory.iterdir():
            if path.name in infos or not path.is_file():
                continue
            match = ARTIFACT_NAME_PATTERN.match(path.name)
            if not match:
                continue
            infos[path.name] = CheckpointInfo(path=path, progress=int(match.group(1)), timestamp=match.group(2))
        return sorted(infos.values(), key=lambda info: (info.progress, info.timestamp, info.path.name))

    def latest_info(self):
        infos = self.artifacts()
        return infos[-1] if infos else None

    def recover(self):
        """Rebuild the furthest resumable state from every readable artifact.

        The cursor and progress come from the artifact with the highest
        progress (ties: latest timestamp). Records are the union of all
        readable artifacts' deltas in ascending order. Unreadable artifacts
        are skipped with a warning; None when nothing is readable.
        """
        loaded = []
        skipped = []
        for info in self.artifacts():
            try:
                payload, slices = self.load_records(info.path)
            except CheckpointCorruptionError as exc:
                logger.warning("[!] Skipping checkpoint %s: %s", info.path.name, exc)
                skipped.append(info.path)
                continue
            stamp = parse_iso8601(payload.get("timestamp")) or _EPOCH
            loaded.append((payload["progress"], stamp, info.path.name, info.path, payload, slices))

        if not loaded:
            if skipped:
                logger.warning("[!] No readable checkpoint among %s artifacts; starting fresh.", len(skipped))
            return None

        loaded.sort(key=lambda item: (item[0], item[1], item[2]))
        records = empty_collections()
        for *_ignored, slices in loaded:
            for kind, items in slices.items():
                records[kind].extend(items)

        progress, _stamp, _name, latest_path, latest, _slices = loaded[-1]
        logger.info(
            "[*] Recovered checkpoint %s: progress=%s from %s artifacts (%s skipped)",
            latest_path.name,
            progress,
            len(loaded),
            len(skipped),
        )
        return RecoveredState(
            progress=progress,
            cursor=latest.get("cursor"),
            timestamp=latest.get("timestamp"),
            records=records,
            checkpoint_count=len(loaded),
            latest_path=latest_path,
            skipped=skipped,
            stats=latest.get("stats"),
        )
