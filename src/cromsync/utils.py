import json
import os
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path


def utc_now():
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def utc_now_iso():
    """Return a UTC timestamp string in ISO 8601 format (millisecond precision)."""
    return utc_now().isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso8601(raw_ts):
    """Parse API timestamps into aware UTC datetimes; None when unparseable."""
    if not raw_ts:
        return None
    if isinstance(raw_ts, datetime):
        dt = raw_ts
    else:
        normalized = raw_ts[:-1] + "+00:00" if raw_ts.endswith("Z") else raw_ts
        try:
            dt = datetime.fromisoformat(normalized)
        except (TypeError, ValueError):
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(dt):
    """Return a filename-safe UTC stamp such as 20240131T120501123Z."""
    return dt.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%S") + f"{dt.microsecond // 1000:03d}Z"


def safe_get(payload, *keys, default=None):
    """Walk nested dicts, returning default as soon as a level is missing or null."""
    current = payload
    for key in keys:
        if not isinstance(current, dict):
            return default
        current = current.get(key)
        if current is None:
            return default
    return current


def _json_default(obj):
    """JSON serializer fallback for Decimal, Path and datetimes."""
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, Path):
        return str(obj)
    if isinstance(obj, datetime):
        return obj.isoformat()
    return str(obj)


def canonicalize(obj):
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=_json_default)


def write_json_atomic(path, payload, indent=None):
    """Persist JSON via a temp file and atomic rename."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_suffix(path.suffix + ".tmp")
    with open(temp_path, "w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=indent, ensure_ascii=False, default=_json_default)
        fh.flush()
        os.fsync(fh.fileno())
    os.replace(temp_path, path)
    return path


def write_bytes_atomic(path, payload):
    """Persist raw bytes via a temp file and atomic rename."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_suffix(path.suffix + ".tmp")
    with open(temp_path, "wb") as fh:
        fh.write(payload)
        fh.flush()
        os.fsync(fh.fileno())
    os.replace(temp_path, path)
    return path


def chunked(iterable, size):
    """Yield list slices of fixed size (used for batched downstream upserts)."""
    batch = []
    for item in iterable:
        batch.append(item)
        if len(batch) == size:
            yield batch
            batch = []
    if batch:
        yield batch


def format_bytes(size):
    """Human readable byte count."""
    if not size:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    value = float(size)
    for unit in units:
        if value < 1024 or unit == units[-1]:
            return f"{value:.2f} {unit}"
        value /= 1024
    return f"{value:.2f} TB"
