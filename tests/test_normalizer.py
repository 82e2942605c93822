import unittest

from cromsync.normalizer import RecordCollector, normalize_page, normalize_user

PAGE_URL = "http://scp-wiki-cn.wikidot.com/scp-cn-001"


def _full_node():
    return {
        "url": PAGE_URL,
        "wikidotInfo": {
            "title": "SCP-CN-001",
            "category": "_default",
            "wikidotId": "123",
            "rating": 42,
            "voteCount": 50,
            "createdAt": "2014-01-01T00:00:00Z",
            "source": "abcdef",
            "textContent": "abc",
            "tags": ["scp", "keter"],
            "createdBy": {"name": "alice"},
            "parent": {"url": "http://scp-wiki-cn.wikidot.com/parent", "wikidotInfo": {"title": "Parent"}},
            "children": [{"url": "http://scp-wiki-cn.wikidot.com/child"}],
            "coarseVoteRecords": [
                {"userWikidotId": "1", "timestamp": "2020-01-01T00:00:00Z", "direction": 1, "user": {"name": "bob"}},
                {"userWikidotId": "2", "timestamp": "2020-01-02T00:00:00Z", "direction": -1},
            ],
            "revisions": [
                {"index": 0, "wikidotId": "r0", "type": "NEW", "user": {"name": "alice"}},
                {"index": 1, "wikidotId": "r1", "type": "SOURCE_CHANGED", "comment": "fix"},
            ],
        },
        "attributions": [{"type": "AUTHOR", "order": 0, "user": {"name": "alice", "wikidotInfo": {"wikidotId": "9"}}}],
        "alternateTitles": [{"type": "ALT", "title": "Alt title"}],
        "translations": [{"url": "http://scp-wiki.wikidot.com/scp-cn-001", "wikidotInfo": {"title": "EN"}}],
        "translationOf": None,
    }


class NormalizePageTests(unittest.TestCase):
    def test_full_node(self) -> None:
        normalized = normalize_page(_full_node())
        page = normalized.page
        self.assertEqual(page.url, PAGE_URL)
        self.assertEqual(page.title, "SCP-CN-001")
        self.assertEqual(page.source_length, 6)
        self.assertEqual(page.tags_count, 2)
        self.assertEqual(page.created_by_user, "alice")
        self.assertEqual(page.parent_url, "http://scp-wiki-cn.wikidot.com/parent")
        self.assertEqual(page.vote_records_count, 2)
        self.assertFalse(page.has_translation_of)

        children = normalized.children
        self.assertEqual(len(children["votes"]), 2)
        self.assertEqual(children["votes"][0].user_name, "bob")
        self.assertEqual(children["votes"][0].page_title, "SCP-CN-001")
        self.assertEqual([r.revision_index for r in children["revisions"]], [0, 1])
        self.assertEqual(children["attributions"][0].user_wikidot_id, "9")
        self.assertEqual(
            sorted(r.relation_type for r in children["relations"]),
            ["child", "parent", "translation"],
        )
        self.assertEqual(children["alternate_titles"][0].title, "Alt title")
        self.assertEqual(normalized.child_count(), 9)

    def test_null_nested_fields_are_tolerated(self) -> None:
        normalized = normalize_page(
            {
                "url": PAGE_URL,
                "wikidotInfo": None,
                "attributions": None,
                "alternateTitles": "unexpected",
                "translations": [None, {"wikidotInfo": None}],
                "translationOf": {"url": "http://scp-wiki.wikidot.com/original"},
            }
        )
        self.assertIsNone(normalized.page.title)
        self.assertEqual(normalized.page.source_length, 0)
        self.assertEqual(normalized.page.translations_count, 2)
        self.assertTrue(normalized.page.has_translation_of)
        self.assertEqual([r.relation_type for r in normalized.children["relations"]], ["translation_of"])
        self.assertEqual(normalized.child_count(), 1)

    def test_null_items_inside_lists_are_skipped(self) -> None:
        node = {"url": PAGE_URL, "wikidotInfo": {"coarseVoteRecords": [None, {"userWikidotId": "1"}], "revisions": [None]}}
        normalized = normalize_page(node)
        self.assertEqual(len(normalized.children["votes"]), 1)
        self.assertEqual(normalized.children["revisions"], [])


class NormalizeUserTests(unittest.TestCase):
    def test_user_with_statistics(self) -> None:
        user = normalize_user(
            {
                "name": "alice",
                "wikidotInfo": {"displayName": "Alice", "wikidotId": "9"},
                "statistics": {"rank": 3, "totalRating": 120, "pageCount": 4},
            }
        )
        self.assertEqual(user.name, "alice")
        self.assertEqual(user.display_name, "Alice")
        self.assertEqual(user.rank, 3)
        self.assertEqual(user.page_count, 4)
        self.assertIsNone(user.page_count_scp)

    def test_user_without_name(self) -> None:
        self.assertIsNone(normalize_user({"name": None}))
        self.assertIsNone(normalize_user(None))


class RecordCollectorTests(unittest.TestCase):
    def test_delta_is_drained(self) -> None:
        collector = RecordCollector()
        collector.add(normalize_page(_full_node()))
        self.assertTrue(collector.has_delta())
        delta = collector.drain_delta()
        self.assertEqual(len(delta["pages"]), 1)
        self.assertEqual(len(delta["votes"]), 2)
        self.assertFalse(collector.has_delta())
        self.assertEqual(len(collector.collections["pages"]), 1)

    def test_recovered_records_count_but_are_not_in_delta(self) -> None:
        collector = RecordCollector()
        recovered = RecordCollector()
        recovered.add(normalize_page(_full_node()))
        collector.seed(recovered.collections)
        collector.add(normalize_page({"url": "http://scp-wiki-cn.wikidot.com/other"}))
        self.assertEqual(collector.counts()["pages"], 2)
        self.assertEqual(collector.new_counts()["pages"], 1)
        self.assertEqual(len(collector.drain_delta()["pages"]), 1)

    def test_add_users_drops_missing(self) -> None:
        collector = RecordCollector()
        collector.add_users([normalize_user({"name": "alice"}), None])
        self.assertEqual(collector.counts()["users"], 1)


if __name__ == "__main__":
    unittest.main()
