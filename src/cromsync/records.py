"""Typed records produced by the normalizer, and their composite natural keys.

Every record kind is a frozen dataclass. ``KEY_FIELDS`` names the fields that
identify one logical fact; two records of the same kind sharing those values
describe the same fact and collapse to one during deduplication.
"""

import dataclasses
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class PageRecord:
    url: str
    title: Optional[str] = None
    wikidot_id: Optional[str] = None
    category: Optional[str] = None
    rating: Optional[float] = None
    vote_count: Optional[int] = None
    realtime_rating: Optional[float] = None
    realtime_vote_count: Optional[int] = None
    comment_count: Optional[int] = None
    created_at: Optional[str] = None
    revision_count: Optional[int] = None
    source_length: int = 0
    text_content_length: int = 0
    tags_count: int = 0
    is_private: Optional[bool] = None
    created_by_user: Optional[str] = None
    parent_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    children_count: int = 0
    vote_records_count: int = 0
    revisions_count: int = 0
    attributions_count: int = 0
    alternate_titles_count: int = 0
    translations_count: int = 0
    has_translation_of: bool = False

    KEY_FIELDS = ("url",)


@dataclass(frozen=True)
class VoteRecord:
    page_url: str
    user_wikidot_id: Optional[str] = None
    timestamp: Optional[str] = None
    direction: Optional[int] = None
    user_name: Optional[str] = None
    page_title: Optional[str] = None

    KEY_FIELDS = ("page_url", "user_wikidot_id", "timestamp")


@dataclass(frozen=True)
class RevisionRecord:
    page_url: str
    revision_index: Optional[int] = None
    wikidot_id: Optional[str] = None
    timestamp: Optional[str] = None
    type: Optional[str] = None
    user_wikidot_id: Optional[str] = None
    user_name: Optional[str] = None
    comment: Optional[str] = None
    page_title: Optional[str] = None

    KEY_FIELDS = ("page_url", "revision_index")


@dataclass(frozen=True)
class AttributionRecord:
    page_url: str
    user_name: Optional[str] = None
    attribution_type: Optional[str] = None
    order_index: Optional[int] = None
    date: Optional[str] = None
    is_current: Optional[bool] = None
    user_wikidot_id: Optional[str] = None

    KEY_FIELDS = ("page_url", "user_name", "attribution_type", "order_index")


@dataclass(frozen=True)
class RelationRecord:
    page_url: str
    related_url: str
    relation_type: str
    related_title: Optional[str] = None

    KEY_FIELDS = ("page_url", "related_url", "relation_type")


@dataclass(frozen=True)
class AlternateTitleRecord:
    page_url: str
    type: Optional[str] = None
    title: Optional[str] = None

    KEY_FIELDS = ("page_url", "type", "title")


@dataclass(frozen=True)
class UserRecord:
    name: str
    display_name: Optional[str] = None
    wikidot_id: Optional[str] = None
    unix_name: Optional[str] = None
    rank: Optional[int] = None
    total_rating: Optional[int] = None
    mean_rating: Optional[float] = None
    page_count: Optional[int] = None
    page_count_scp: Optional[int] = None
    page_count_tale: Optional[int] = None
    page_count_goi_format: Optional[int] = None
    page_count_artwork: Optional[int] = None
    page_count_level: Optional[int] = None
    page_count_entity: Optional[int] = None
    page_count_object: Optional[int] = None

    KEY_FIELDS = ("name",)


RECORD_KINDS = {
    "pages": PageRecord,
    "votes": VoteRecord,
    "revisions": RevisionRecord,
    "attributions": AttributionRecord,
    "relations": RelationRecord,
    "alternate_titles": AlternateTitleRecord,
    "users": UserRecord,
}

CHILD_KINDS = ("votes", "revisions", "attributions", "relations", "alternate_titles")


def empty_collections():
    return {kind: [] for kind in RECORD_KINDS}


def record_key(kind, record):
    """Return the composite natural key of a record (dataclass or plain dict)."""
    fields = RECORD_KINDS[kind].KEY_FIELDS
    if isinstance(record, dict):
        return tuple(record.get(name) for name in fields)
    return tuple(getattr(record, name) for name in fields)


def _sortable(value):
    if value is None:
        return (0, 0, "")
    if isinstance(value, bool):
        return (1, int(value), "")
    if isinstance(value, (int, float)):
        return (1, value, "")
    return (2, 0, str(value))


def sort_key(key):
    """Totally ordered form of a composite key (None < numbers < strings)."""
    return tuple(_sortable(value) for value in key)


def to_dict(record):
    return dataclasses.asdict(record)


def from_dict(kind, payload):
    """Rebuild a record from a stored mapping, ignoring unknown keys."""
    cls = RECORD_KINDS[kind]
    known = {field.name for field in dataclasses.fields(cls)}
    return cls(**{key: value for key, value in payload.items() if key in known})


def serialize_collections(collections):
    return {kind: [to_dict(record) for record in records] for kind, records in collections.items()}


def deserialize_collections(payload):
    """Inverse of serialize_collections; kinds missing from payload come back empty."""
    collections = empty_collections()
    for kind, records in (payload or {}).items():
        if kind not in RECORD_KINDS:
            continue
        collections[kind] = [from_dict(kind, item) for item in records or [] if isinstance(item, dict)]
    return collections


def count_collections(collections):
    return {kind: len(records) for kind, records in collections.items()}
