import json
import logging
import sqlite3
import threading
from pathlib import Path

import ijson

from . import config
from .records import RECORD_KINDS, from_dict, record_key, serialize_collections, to_dict
from .utils import canonicalize, chunked, format_timestamp, utc_now, utc_now_iso, write_json_atomic

logger = logging.getLogger(__name__)


def output_path_for(output_dir=config.OUTPUT_DIR, now=None):
    stamp = format_timestamp(now or utc_now())
    return Path(output_dir) / f"complete-data-{stamp}.json"


def write_output(path, records, report):
    """Write the consolidated deduplicated records plus the run report atomically."""
    payload = {
        "generatedAt": utc_now_iso(),
        "report": report,
        "records": serialize_collections(records),
    }
    write_json_atomic(path, payload)
    logger.info("[+] Output written: %s", path)
    return Path(path)


def iter_output_records(path, kind):
    """Stream one record kind out of an output artifact without loading the whole file."""
    if kind not in RECORD_KINDS:
        raise KeyError(f"Unknown record kind: {kind}")
    with open(Path(path), "rb") as fh:
        for item in ijson.items(fh, f"records.{kind}.item", use_float=True):
            yield from_dict(kind, item)


def read_output_report(path):
    with open(Path(path), "rb") as fh:
        for report in ijson.items(fh, "report", use_float=True):
            return report
    return None


class RecordSink:
    """Downstream collaborator; upserts must be idempotent on composite keys."""

    def upsert_batch(self, kind, records):
        raise NotImplementedError


class SQLiteRecordSink(RecordSink):
    """SQLite-backed sink: one table per record kind keyed by canonical composite key."""

    def __init__(self, db_path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        for kind in RECORD_KINDS:
            self._conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {kind} (
                    record_key TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    updated_at TEXT
                )
                """
            )
        self._conn.commit()

    def upsert_batch(self, kind, records):
        if kind not in RECORD_KINDS:
            raise KeyError(f"Unknown record kind: {kind}")
        if not records:
            return 0
        now = utc_now_iso()
        rows = [
            (canonicalize(list(record_key(kind, record))), json.dumps(to_dict(record), ensure_ascii=False), now)
            for record in records
        ]
        with self._lock:
            self._conn.executemany(
                f"""
                INSERT INTO {kind} (record_key, payload, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(record_key) DO UPDATE SET
                    payload=excluded.payload,
                    updated_at=excluded.updated_at
                """,
                rows,
            )
            self._conn.commit()
        return len(rows)

    def count(self, kind):
        with self._lock:
            row = self._conn.execute(f"SELECT COUNT(*) FROM {kind}").fetchone()
        return row[0]

    def fetch_all(self, kind):
        with self._lock:
            rows = self._conn.execute(f"SELECT payload FROM {kind} ORDER BY record_key").fetchall()
        return [from_dict(kind, json.loads(row[0])) for row in rows]

    def close(self):
        with self._lock:
            self._conn.close()


def handoff(sink, records, chunk_size=config.HANDOFF_CHUNK_SIZE):
    """Push every record kind to ``sink`` in chunks; returns upserted counts per kind."""
    counts = {}
    for kind in RECORD_KINDS:
        total = 0
        for batch in chunked(records.get(kind) or [], chunk_size):
            total += sink.upsert_batch(kind, batch)
        counts[kind] = total
    logger.info("[+] Handed off records: %s", counts)
    return counts
