import json
import tempfile
import unittest
from pathlib import Path
from abs_progress_sync.models import ProgressRecord, SyncResult
from abs_progress_sync.engine import ProgressSync, RetryingUploader
from abs_progress_sync.state import JsonProgressStore, StoreWriteError

class AcceptingRemote:
    def __init__(self):
        self.pushed = []

    async def fetch(self, item_id):
        return None

    async def push(self, rec):
        self.pushed.append(rec)
        return True

def record(item_id, pending=True, last_update=1000):
    return ProgressRecord(item_id=item_id, elapsed_seconds=30, last_update=last_update, pending_upload=pending)

class TestJsonProgressStore(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = Path(self.tmp.name) / "progress.json"

    def tearDown(self):
        self.tmp.cleanup()

    async def test_put_get_roundtrip_persists(self):
        store = JsonProgressStore(str(self.path), persist=True)
        await store.put(record("A1"))

        reloaded = JsonProgressStore(str(self.path), persist=True)
        self.assertEqual(await reloaded.get("A1"), record("A1"))
        self.assertIsNone(await reloaded.get("missing"))

    async def test_list_pending_keeps_insertion_order(self):
        store = JsonProgressStore(str(self.path), persist=False)
        for item_id, pending in (("C", True), ("A", False), ("B", True)):
            await store.put(record(item_id, pending))

        self.assertEqual([r.item_id for r in await store.list_pending()], ["C", "B"])

    async def test_mark_synced_is_idempotent(self):
        once = JsonProgressStore(str(self.path), persist=False)
        twice = JsonProgressStore(str(self.path), persist=False)
        for store in (once, twice):
            await store.put(record("A1"))
            await store.put(record("B2"))

        await once.mark_synced("A1")
        await twice.mark_synced("A1")
        await twice.mark_synced("A1")

        self.assertEqual(once.state.model_dump(), twice.state.model_dump())
        self.assertFalse((await twice.get("A1")).pending_upload)
        await twice.mark_synced("unknown")

    async def test_returned_records_are_copies(self):
        store = JsonProgressStore(str(self.path), persist=False)
        await store.put(record("A1"))
        fetched = await store.get("A1")
        fetched.pending_upload = False
        self.assertTrue((await store.get("A1")).pending_upload)

    async def test_remove(self):
        store = JsonProgressStore(str(self.path), persist=False)
        await store.put(record("A1"))
        await store.remove("A1")
        await store.remove("A1")
        self.assertIsNone(await store.get("A1"))

    async def test_mark_synced_skips_changed_record(self):
        store = JsonProgressStore(str(self.path), persist=False)
        await store.put(record("A1", last_update=2000))

        await store.mark_synced("A1", last_update=1000)
        self.assertTrue((await store.get("A1")).pending_upload)

        await store.mark_synced("A1", last_update=2000)
        self.assertFalse((await store.get("A1")).pending_upload)

    async def test_failed_write_raises_and_rolls_back(self):
        missing = Path(self.tmp.name) / "gone" / "progress.json"
        store = JsonProgressStore(str(missing), persist=True)

        with self.assertRaises(StoreWriteError):
            await store.put(record("A1"))
        self.assertIsNone(await store.get("A1"))

        store.state.items["B2"] = record("B2")
        with self.assertRaises(StoreWriteError):
            await store.mark_synced("B2")
        self.assertTrue((await store.get("B2")).pending_upload)
        self.assertFalse(missing.exists())

    async def test_upload_not_reported_without_durable_write(self):
        missing = Path(self.tmp.name) / "gone" / "progress.json"
        store = JsonProgressStore(str(missing), persist=True)
        store.state.items["A1"] = record("A1")
        remote = AcceptingRemote()

        self.assertFalse(await RetryingUploader(remote, store, max_retries=0).upload_with_retry(record("A1")))
        self.assertEqual(len(remote.pushed), 1)
        self.assertTrue((await store.get("A1")).pending_upload)

        result = await ProgressSync(remote, store, max_retries=0, base_delay_ms=0).sync_all_pending()
        self.assertEqual((result.success_count, result.failure_count), (0, 1))
        self.assertEqual(result.errors, ["Failed to sync A1"])
        self.assertFalse(missing.exists())

    def test_corrupt_file_starts_fresh(self):
        self.path.write_text("{not json")
        store = JsonProgressStore(str(self.path), persist=True)
        self.assertEqual(store.state.items, {})

    def test_record_batch_saved(self):
        store = JsonProgressStore(str(self.path), persist=True)
        store.record_batch(SyncResult(success_count=2, failure_count=1, errors=["Failed to sync X"]), 99.0)

        data = json.loads(self.path.read_text())
        self.assertEqual(data["last_batch_result"]["errors"], ["Failed to sync X"])
        self.assertEqual(data["last_batch_at"], 99.0)

    def test_persist_disabled_writes_nothing(self):
        store = JsonProgressStore(str(self.path), persist=False)
        store.record_batch(SyncResult(), 1.0)
        self.assertFalse(self.path.exists())

if __name__ == '__main__':
    unittest.main()
