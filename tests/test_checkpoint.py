import json
import tempfile
import unittest
from pathlib import Path

from cromsync.checkpoint import CheckpointStore, load_schema, validate_checkpoint
from cromsync.errors import CheckpointCorruptionError
from cromsync.records import PageRecord, VoteRecord, count_collections, empty_collections


def _records(start, stop, votes_per_page=0):
    records = empty_collections()
    for i in range(start, stop):
        url = f"http://example.test/page-{i}"
        records["pages"].append(PageRecord(url=url, title=f"Page {i}", rating=float(i)))
        for u in range(votes_per_page):
            records["votes"].append(VoteRecord(page_url=url, user_wikidot_id=str(u), timestamp=f"t{u}", direction=1))
    return records


class CheckpointStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.directory = Path(self._tmp.name) / "checkpoints"
        self.stores = []

    def tearDown(self) -> None:
        for store in self.stores:
            store.close()
        self._tmp.cleanup()

    def _store(self, **kwargs):
        store = CheckpointStore(directory=self.directory, **kwargs)
        self.stores.append(store)
        return store

    def _persist(self, store, progress, cursor, records):
        return store.persist(progress, cursor, records, count_collections(records))

    def test_recover_empty_directory(self) -> None:
        self.assertIsNone(self._store().recover())

    def test_persist_then_recover(self) -> None:
        store = self._store()
        records = _records(0, 10, votes_per_page=2)
        path = self._persist(store, 10, "c10", records)
        self.assertTrue(path.exists())
        self.assertFalse(path.with_suffix(path.suffix + ".tmp").exists())

        recovered = self._store().recover()
        self.assertEqual(recovered.progress, 10)
        self.assertEqual(recovered.cursor, "c10")
        self.assertEqual(recovered.records["pages"], records["pages"])
        self.assertEqual(len(recovered.records["votes"]), 20)
        self.assertEqual(recovered.latest_path, path)

    def test_recover_unions_deltas_and_takes_latest_cursor(self) -> None:
        store = self._store()
        self._persist(store, 10, "c10", _records(0, 10))
        self._persist(store, 20, "c20", _records(10, 20))
        recovered = store.recover()
        self.assertEqual(recovered.progress, 20)
        self.assertEqual(recovered.cursor, "c20")
        self.assertEqual(recovered.checkpoint_count, 2)
        self.assertEqual(len(recovered.records["pages"]), 20)

    def test_same_progress_never_overwrites(self) -> None:
        store = self._store()
        first = self._persist(store, 10, "c10", _records(0, 10))
        second = self._persist(store, 10, "c10", _records(10, 12))
        self.assertNotEqual(first, second)
        self.assertEqual(len(store.artifacts()), 2)
        self.assertEqual(len(store.recover().records["pages"]), 12)

    def test_corrupt_latest_artifact_is_skipped(self) -> None:
        store = self._store()
        self._persist(store, 10, "c10", _records(0, 10))
        bad = self.directory / "checkpoint-000000999-20240101T000000000Z-0000.json"
        bad.write_text("{not json", encoding="utf-8")

        recovered = store.recover()
        self.assertEqual(recovered.progress, 10)
        self.assertEqual(recovered.cursor, "c10")
        self.assertEqual(recovered.skipped, [bad])

    def test_schema_invalid_artifact_is_skipped(self) -> None:
        store = self._store()
        self._persist(store, 10, "c10", _records(0, 10))
        bad = self.directory / "checkpoint-000000050-20240101T000000000Z-0000.json"
        bad.write_text(json.dumps({"progress": 50, "cursor": "c50"}), encoding="utf-8")
        with self.assertRaises(CheckpointCorruptionError):
            store.load(bad)
        self.assertEqual(store.recover().progress, 10)

    def _write_artifact_with_pages(self, progress, pages):
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.directory / f"checkpoint-{progress:09d}-20240101T000000000Z-0000.json"
        payload = {
            "progress": progress,
            "cursor": f"c{progress}",
            "timestamp": "2024-01-01T00:00:00+00:00",
            "recordCounts": {"pages": len(pages), "votes": 0, "revisions": 0, "attributions": 0},
            "records": {"pages": pages, "votes": [], "revisions": [], "attributions": []},
        }
        path.write_text(json.dumps(payload), encoding="utf-8")
        return path

    def test_record_without_key_field_is_skipped(self) -> None:
        store = self._store()
        self._persist(store, 10, "c10", _records(0, 10))
        bad = self._write_artifact_with_pages(5, [{"title": "no url"}])
        with self.assertRaises(CheckpointCorruptionError):
            store.load(bad)

        recovered = store.recover()
        self.assertEqual(recovered.progress, 10)
        self.assertEqual(recovered.skipped, [bad])
        self.assertEqual(len(recovered.records["pages"]), 10)

    def test_unbuildable_records_are_skipped_even_with_lenient_schema(self) -> None:
        store = self._store(schema={"type": "object"})
        self._persist(store, 10, "c10", _records(0, 10))
        bad = self._write_artifact_with_pages(20, [{"title": "no url"}])
        with self.assertRaises(CheckpointCorruptionError):
            store.load_records(bad)

        recovered = store.recover()
        self.assertEqual(recovered.progress, 10)
        self.assertEqual(recovered.cursor, "c10")
        self.assertEqual(recovered.skipped, [bad])

    def test_only_corrupt_artifacts_means_fresh_start(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        (self.directory / "checkpoint-000000010-20240101T000000000Z-0000.json").write_text("", encoding="utf-8")
        self.assertIsNone(self._store().recover())

    def test_compressed_artifacts(self) -> None:
        store = self._store(compress=True)
        path = self._persist(store, 5, "c5", _records(0, 5))
        self.assertTrue(path.name.endswith(".json.zst"))
        with self.assertRaises(ValueError):
            json.loads(path.read_bytes().decode("utf-8", errors="replace"))
        recovered = self._store(compress=False).recover()
        self.assertEqual(recovered.progress, 5)
        self.assertEqual(len(recovered.records["pages"]), 5)

    def test_directory_scan_without_index(self) -> None:
        store = self._store()
        self._persist(store, 10, "c10", _records(0, 10))
        recovered = self._store(use_index=False).recover()
        self.assertEqual(recovered.progress, 10)

    def test_index_drops_missing_files(self) -> None:
        store = self._store()
        first = self._persist(store, 10, "c10", _records(0, 10))
        self._persist(store, 20, "c20", _records(10, 20))
        first.unlink()
        infos = store.artifacts()
        self.assertEqual([info.progress for info in infos], [20])
        self.assertEqual(store.latest_info().progress, 20)

    def test_payload_layout(self) -> None:
        store = self._store()
        path = self._persist(store, 3, None, _records(0, 3))
        payload = json.loads(path.read_text(encoding="utf-8"))
        self.assertEqual(payload["progress"], 3)
        self.assertIsNone(payload["cursor"])
        self.assertEqual(payload["recordCounts"]["pages"], 3)
        self.assertEqual(payload["recordCounts"]["votes"], 0)
        validate_checkpoint(payload, load_schema())


if __name__ == "__main__":
    unittest.main()
