from .records import RECORD_KINDS, record_key, sort_key, to_dict
from .utils import canonicalize


def _canonical(record):
    return canonicalize(to_dict(record))


def collapse(kind, records):
    """Return {key: record}, keeping one record per composite key.

    Same-key records on one side are resolved by their canonical JSON so the
    winner does not depend on input order.
    """
    kept = {}
    canonical_cache = {}
    for record in records:
        key = record_key(kind, record)
        existing = kept.get(key)
        if existing is None:
            kept[key] = record
            continue
        if existing == record:
            continue
        existing_canonical = canonical_cache.get(key) or _canonical(existing)
        candidate_canonical = _canonical(record)
        if candidate_canonical > existing_canonical:
            kept[key] = record
            canonical_cache[key] = candidate_canonical
        else:
            canonical_cache[key] = existing_canonical
    return kept


def merge_records(recovered, new):
    """Merge recovered checkpoint records with newly fetched ones.

    Newly fetched records win on a shared key. Output lists are sorted by
    composite key, so the same two multisets always give the same result.
    """
    recovered = recovered or {}
    new = new or {}
    merged = {}
    stats = {"duplicates_collapsed": {}, "recovered_overridden": {}, "recovered_kept": {}}

    for kind in RECORD_KINDS:
        recovered_records = list(recovered.get(kind) or [])
        new_records = list(new.get(kind) or [])
        recovered_map = collapse(kind, recovered_records)
        new_map = collapse(kind, new_records)

        overridden = sum(1 for key in recovered_map if key in new_map)
        combined = dict(recovered_map)
        combined.update(new_map)

        merged[kind] = [combined[key] for key in sorted(combined, key=sort_key)]
        stats["duplicates_collapsed"][kind] = (len(recovered_records) + len(new_records)) - len(combined)
        stats["recovered_overridden"][kind] = overridden
        stats["recovered_kept"][kind] = len(recovered_map) - overridden

    return merged, stats
