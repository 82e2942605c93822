from dataclasses import dataclass, field

from .records import (
    CHILD_KINDS,
    AlternateTitleRecord,
    AttributionRecord,
    PageRecord,
    RelationRecord,
    RevisionRecord,
    UserRecord,
    VoteRecord,
    count_collections,
    empty_collections,
)
from .utils import safe_get


def _as_list(value):
    return value if isinstance(value, list) else []


def _as_dict(value):
    return value if isinstance(value, dict) else {}


def _length(value):
    return len(value) if isinstance(value, (str, list)) else 0


@dataclass
class NormalizedPage:
    page: PageRecord
    children: dict = field(default_factory=lambda: {kind: [] for kind in CHILD_KINDS})

    def child_count(self):
        return sum(len(records) for records in self.children.values())


def normalize_page(node):
    """Flatten one page node into a PageRecord plus child records; never raises on null nesting."""
    node = _as_dict(node)
    url = node.get("url")
    info = _as_dict(node.get("wikidotInfo"))
    title = info.get("title")

    votes = _as_list(info.get("coarseVoteRecords"))
    revisions = _as_list(info.get("revisions"))
    children = _as_list(info.get("children"))
    attributions = _as_list(node.get("attributions"))
    alternate_titles = _as_list(node.get("alternateTitles"))
    translations = _as_list(node.get("translations"))
    parent = info.get("parent")
    translation_of = node.get("translationOf")

    page = PageRecord(
        url=url,
        title=title,
        wikidot_id=info.get("wikidotId"),
        category=info.get("category"),
        rating=info.get("rating"),
        vote_count=info.get("voteCount"),
        realtime_rating=info.get("realtimeRating"),
        realtime_vote_count=info.get("realtimeVoteCount"),
        comment_count=info.get("commentCount"),
        created_at=info.get("createdAt"),
        revision_count=info.get("revisionCount"),
        source_length=_length(info.get("source")),
        text_content_length=_length(info.get("textContent")),
        tags_count=_length(info.get("tags")),
        is_private=info.get("isPrivate"),
        created_by_user=safe_get(info, "createdBy", "name"),
        parent_url=safe_get(info, "parent", "url"),
        thumbnail_url=info.get("thumbnailUrl"),
        children_count=len(children),
        vote_records_count=len(votes),
        revisions_count=len(revisions),
        attributions_count=len(attributions),
        alternate_titles_count=len(alternate_titles),
        translations_count=len(translations),
        has_translation_of=bool(translation_of),
    )
    normalized = NormalizedPage(page=page)

    for vote in votes:
        if not isinstance(vote, dict):
            continue
        normalized.children["votes"].append(
            VoteRecord(
                page_url=url,
                user_wikidot_id=vote.get("userWikidotId"),
                timestamp=vote.get("timestamp"),
                direction=vote.get("direction"),
                user_name=safe_get(vote, "user", "name"),
                page_title=title,
            )
        )

    for revision in revisions:
        if not isinstance(revision, dict):
            continue
        normalized.children["revisions"].append(
            RevisionRecord(
                page_url=url,
                revision_index=revision.get("index"),
                wikidot_id=revision.get("wikidotId"),
                timestamp=revision.get("timestamp"),
                type=revision.get("type"),
                user_wikidot_id=revision.get("userWikidotId"),
                user_name=safe_get(revision, "user", "name"),
                comment=revision.get("comment"),
                page_title=title,
            )
        )

    for attribution in attributions:
        if not isinstance(attribution, dict):
            continue
        normalized.children["attributions"].append(
            AttributionRecord(
                page_url=url,
                user_name=safe_get(attribution, "user", "name"),
                attribution_type=attribution.get("type"),
                order_index=attribution.get("order"),
                date=attribution.get("date"),
                is_current=attribution.get("isCurrent"),
                user_wikidot_id=safe_get(attribution, "user", "wikidotInfo", "wikidotId"),
            )
        )

    relations = normalized.children["relations"]
    if isinstance(parent, dict) and parent.get("url"):
        relations.append(_relation(url, parent, "parent"))
    for child in children:
        if isinstance(child, dict) and child.get("url"):
            relations.append(_relation(url, child, "child"))
    for translation in translations:
        if isinstance(translation, dict) and translation.get("url"):
            relations.append(_relation(url, translation, "translation"))
    if isinstance(translation_of, dict) and translation_of.get("url"):
        relations.append(_relation(url, translation_of, "translation_of"))

    for alternate in alternate_titles:
        if not isinstance(alternate, dict):
            continue
        normalized.children["alternate_titles"].append(
            AlternateTitleRecord(page_url=url, type=alternate.get("type"), title=alternate.get("title"))
        )

    return normalized


def _relation(page_url, related, relation_type):
    return RelationRecord(
        page_url=page_url,
        related_url=related["url"],
        relation_type=relation_type,
        related_title=safe_get(related, "wikidotInfo", "title"),
    )


def normalize_user(node):
    """Flatten one searchUsers node; None for nodes without a name."""
    node = _as_dict(node)
    name = node.get("name")
    if not name:
        return None
    info = _as_dict(node.get("wikidotInfo"))
    statistics = _as_dict(node.get("statistics"))
    return UserRecord(
        name=name,
        display_name=info.get("displayName"),
        wikidot_id=info.get("wikidotId"),
        unix_name=info.get("unixName"),
        rank=statistics.get("rank"),
        total_rating=statistics.get("totalRating"),
        mean_rating=statistics.get("meanRating"),
        page_count=statistics.get("pageCount"),
        page_count_scp=statistics.get("pageCountScp"),
        page_count_tale=statistics.get("pageCountTale"),
        page_count_goi_format=statistics.get("pageCountGoiFormat"),
        page_count_artwork=statistics.get("pageCountArtwork"),
        page_count_level=statistics.get("pageCountLevel"),
        page_count_entity=statistics.get("pageCountEntity"),
        page_count_object=statistics.get("pageCountObject"),
    )


class RecordCollector:
    """In-memory collections for one run, plus the delta since the last checkpoint."""

    def __init__(self):
        self.collections = empty_collections()
        self.recovered = empty_collections()
        self._delta = empty_collections()

    def seed(self, recovered):
        """Attach records reconstructed from checkpoints; they are never re-checkpointed."""
        for kind, records in (recovered or {}).items():
            self.recovered.setdefault(kind, []).extend(records)

    def add(self, normalized):
        self._append("pages", [normalized.page])
        for kind, records in normalized.children.items():
            self._append(kind, records)

    def add_users(self, users):
        self._append("users", [user for user in users if user is not None])

    def _append(self, kind, records):
        if not records:
            return
        self.collections[kind].extend(records)
        self._delta[kind].extend(records)

    def has_delta(self):
        return any(self._delta.values())

    def drain_delta(self):
        """Return and reset the records collected since the previous drain."""
        delta = self._delta
        self._delta = empty_collections()
        return delta

    def counts(self):
        """Cumulative per-kind counts (recovered plus newly collected, before dedup)."""
        new_counts = count_collections(self.collections)
        return {kind: new_counts[kind] + len(self.recovered.get(kind, [])) for kind in new_counts}

    def new_counts(self):
        return count_collections(self.collections)
