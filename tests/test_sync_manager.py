import asyncio
import unittest

from shelfsync.cache import LocalCache
from shelfsync.errors import ClassifiedError, ConflictUnresolved, ErrorCategory, NotFound, SyncInProgress
from shelfsync.models import (
    ConflictResolution,
    OperationType,
    QueueOperation,
    SyncStatus,
)
from shelfsync.offline_queue import OfflineQueue
from shelfsync.retry import RetryPolicy
from shelfsync.storage import MemoryStore
from shelfsync.sync_manager import SyncManager, SyncState

from tests.fakes import FakeRemote, make_book, make_collection

T0 = "2024-01-01T00:00:00.000Z"
T1 = "2024-01-02T00:00:00.000Z"
T2 = "2024-01-03T00:00:00.000Z"


class SyncManagerTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.store = MemoryStore()
        self.policy = RetryPolicy(max_retries=0, base_delay=0, max_delay=0)
        self.cache = LocalCache(self.store)
        self.queue = OfflineQueue(self.store, retry_policy=self.policy)
        self.remote = FakeRemote()
        self.states = []

    def make_manager(self, **kwargs):
        kwargs.setdefault("gist_id", "gist123")
        kwargs.setdefault("conflict_resolution", "manual")
        return SyncManager(
            self.remote,
            self.cache,
            self.queue,
            retry_policy=self.policy,
            on_sync_status_change=self.states.append,
            **kwargs,
        )

    async def seed_local(self, *book_ids, last_updated=T1, last_sync=T0):
        await self.cache.save_data(make_collection(*book_ids, last_updated=last_updated), update_timestamp=False)
        if last_sync:
            await self.cache.set_last_sync_time(last_sync)

    async def cached_ids(self):
        snapshot = await self.cache.load_data()
        return sorted(b.id for b in snapshot.audiobooks)


class TestSyncDirection(SyncManagerTestCase):
    async def test_first_sync_pulls_remote(self):
        self.remote.document = make_collection("a", "b", last_updated=T2, device_id="other")
        manager = self.make_manager()
        replaced = []
        manager.add_collection_listener(replaced.append)

        result = await manager.sync()

        self.assertEqual(result.direction, "pull")
        self.assertEqual(await self.cached_ids(), ["a", "b"])
        self.assertIsNotNone(await self.cache.get_last_sync_time())
        self.assertEqual(manager.state, SyncState.IDLE)
        self.assertEqual(self.states, [SyncState.SYNCING, SyncState.IDLE])
        self.assertEqual(len(replaced), 1)

    async def test_no_prior_sync_remote_is_authoritative(self):
        # Local edits without a confirmed sync never raise a conflict
        await self.seed_local("local-only", last_updated=T2, last_sync=None)
        self.remote.document = make_collection("remote-only", last_updated=T1, device_id="other")

        result = await self.make_manager().sync()

        self.assertIsNone(result.conflict)
        self.assertEqual(result.direction, "pull")
        self.assertEqual(await self.cached_ids(), ["remote-only"])

    async def test_local_change_is_pushed(self):
        await self.seed_local("a", "b", last_updated=T1, last_sync=T0)
        self.remote.document = make_collection("a", last_updated=T0, device_id=self.cache.get_device_id())

        result = await self.make_manager().sync()

        self.assertEqual(result.direction, "push")
        self.assertEqual(sorted(b.id for b in self.remote.document.audiobooks), ["a", "b"])
        self.assertEqual(self.remote.document.device_id, self.cache.get_device_id())
        metadata = await self.cache.get_sync_metadata()
        self.assertEqual(metadata.sync_status, SyncStatus.SYNCED)

    async def test_remote_change_is_pulled(self):
        await self.seed_local("a", last_updated=T0, last_sync=T1)
        self.remote.document = make_collection("a", "c", last_updated=T2, device_id="other")

        result = await self.make_manager().sync()

        self.assertEqual(result.direction, "pull")
        self.assertEqual(await self.cached_ids(), ["a", "c"])
        self.assertEqual(self.remote.updates, [])

    async def test_force_pushes_local(self):
        await self.seed_local("a", last_updated=T0, last_sync=T1)
        self.remote.document = make_collection("z", last_updated=T2, device_id="other")

        result = await self.make_manager().sync(force=True)

        self.assertEqual(result.direction, "push")
        self.assertEqual([b.id for b in self.remote.document.audiobooks], ["a"])

    async def test_gist_without_library_file_gets_local(self):
        await self.seed_local("a", last_updated=T1, last_sync=None)
        await self.queue.enqueue(QueueOperation(type=OperationType.DELETE, id="gone"))

        result = await self.make_manager().sync()

        self.assertEqual(result.direction, "push")
        self.assertEqual([b.id for b in self.remote.document.audiobooks], ["a"])
        self.assertEqual(len(self.remote.updates), 1)
        self.assertEqual((await self.cache.get_sync_metadata()).sync_status, SyncStatus.SYNCED)

    async def test_empty_gist_and_empty_cache(self):
        result = await self.make_manager().sync()
        self.assertEqual(result.direction, "none")
        self.assertIsNone(self.remote.document)

    async def test_deleted_gist_is_an_error(self):
        await self.seed_local("a")
        self.remote.read_errors = [NotFound("Gist not found. Please check the gist ID.", http_status=404)]
        manager = self.make_manager()

        with self.assertRaises(NotFound):
            await manager.sync()
        self.assertEqual(manager.state, SyncState.ERROR)
        self.assertEqual(self.remote.updates, [])

    async def test_missing_gist_id_is_an_error(self):
        manager = self.make_manager(gist_id=None)
        with self.assertRaises(ClassifiedError) as ctx:
            await manager.sync()
        self.assertEqual(ctx.exception.category, ErrorCategory.GIST_ERROR)
        self.assertEqual(manager.state, SyncState.ERROR)


class TestQueueDrain(SyncManagerTestCase):
    async def test_queued_mutations_reach_remote(self):
        await self.seed_local("a", "x", last_updated=T1, last_sync=T0)
        self.remote.document = make_collection("a", last_updated=T0, device_id=self.cache.get_device_id())
        await self.queue.enqueue(QueueOperation(
            type=OperationType.ADD, id="x", data={"audiobook": make_book("x").to_wire()},
        ))

        result = await self.make_manager().sync()

        self.assertEqual(result.queue.succeeded, 1)
        self.assertTrue(await self.queue.is_empty())
        self.assertIn("x", [b.id for b in self.remote.document.audiobooks])

    async def test_delete_replay(self):
        await self.seed_local("a", last_updated=T1, last_sync=T0)
        self.remote.document = make_collection("a", "gone", last_updated=T0, device_id=self.cache.get_device_id())
        await self.queue.enqueue(QueueOperation(type=OperationType.DELETE, id="gone"))

        await self.make_manager().sync()

        self.assertEqual([b.id for b in self.remote.document.audiobooks], ["a"])

    async def test_failed_operation_stays_queued(self):
        await self.seed_local("a", "b", "c", last_updated=T1, last_sync=T0)
        self.remote.document = make_collection(last_updated=T0, device_id=self.cache.get_device_id())
        for book_id in ("a", "b", "c"):
            await self.queue.enqueue(QueueOperation(
                type=OperationType.ADD, id=book_id, data={"audiobook": make_book(book_id).to_wire()},
            ))
        # Second replay fails once
        self.remote.update_errors = [None, ClassifiedError("boom", category=ErrorCategory.SERVER_ERROR)]

        result = await self.make_manager().sync()

        self.assertEqual(result.queue.processed, 3)
        self.assertEqual(result.queue.succeeded, 2)
        self.assertEqual(result.queue.failed, 1)
        remaining = await self.queue.get_queue()
        self.assertEqual([op.id for op in remaining], ["b"])
        self.assertEqual(remaining[0].retry_count, 1)

    async def test_sync_marker_needs_no_remote_write(self):
        self.remote.document = make_collection("a", last_updated=T0, device_id="other")
        await self.queue.enqueue(QueueOperation(type=OperationType.SYNC, id="sync"))

        result = await self.make_manager().sync()

        self.assertEqual(result.queue.succeeded, 1)
        self.assertEqual(self.remote.updates, [])

    async def test_dropped_operation_is_reported(self):
        self.queue.retry_ceilings = {"add": 1, "update": 1, "delete": 1, "sync": 1}
        self.remote.document = make_collection(last_updated=T0, device_id="other")
        await self.queue.enqueue(QueueOperation(
            type=OperationType.ADD, id="x", data={"audiobook": make_book("x").to_wire()},
        ))
        self.remote.update_errors = [ClassifiedError("boom", category=ErrorCategory.SERVER_ERROR)]
        manager = self.make_manager()

        result = await manager.sync()

        self.assertEqual(len(result.queue.dropped), 1)
        self.assertTrue(await self.queue.is_empty())
        status = await manager.get_sync_status()
        self.assertEqual(status["droppedOperations"][0]["category"], "queue_exhausted")
        self.assertEqual(status["droppedOperations"][0]["operationId"], "x")


class TestConflicts(SyncManagerTestCase):
    async def setup_conflict(self):
        await self.seed_local("a", "local", last_updated=T1, last_sync=T0)
        self.remote.document = make_collection("a", "remote", last_updated=T2, device_id="other-device")

    async def test_keep_remote(self):
        await self.setup_conflict()
        seen = []

        async def on_conflict(info, local, remote):
            seen.append((info, local, remote))
            return "keep-remote"

        result = await self.make_manager(on_conflict=on_conflict).sync()

        self.assertEqual(result.direction, "resolved")
        self.assertEqual(result.resolution, ConflictResolution.KEEP_REMOTE)
        info = seen[0][0]
        self.assertEqual(info.remote_device_id, "other-device")
        self.assertEqual(info.local_timestamp, T1)
        self.assertEqual(info.remote_timestamp, T2)
        self.assertEqual(await self.cached_ids(), ["a", "remote"])
        # Resolution is pushed so other devices converge
        self.assertEqual(sorted(b.id for b in self.remote.document.audiobooks), ["a", "remote"])
        self.assertNotEqual(self.remote.document.last_updated, T2)
        self.assertIn(SyncState.CONFLICT, self.states)

    async def test_standing_merge_choice(self):
        await self.setup_conflict()

        result = await self.make_manager(conflict_resolution="merge").sync()

        self.assertEqual(result.resolution, ConflictResolution.MERGE)
        self.assertEqual(await self.cached_ids(), ["a", "local", "remote"])

    async def test_no_resolver_leaves_error_and_pending(self):
        await self.setup_conflict()
        await self.queue.enqueue(QueueOperation(type=OperationType.DELETE, id="zzz"))
        manager = self.make_manager()

        with self.assertRaises(ConflictUnresolved):
            await manager.sync()

        self.assertEqual(manager.state, SyncState.ERROR)
        metadata = await self.cache.get_sync_metadata()
        self.assertEqual(metadata.sync_status, SyncStatus.PENDING)
        self.assertEqual(metadata.last_sync_time, T0)
        self.assertEqual(await self.cached_ids(), ["a", "local"])

    async def test_abandoned_resolution(self):
        await self.setup_conflict()

        async def on_conflict(info, local, remote):
            return None

        with self.assertRaises(ConflictUnresolved):
            await self.make_manager(on_conflict=on_conflict).sync()

    async def test_resolution_timeout(self):
        await self.setup_conflict()

        async def on_conflict(info, local, remote):
            await asyncio.sleep(10)

        manager = self.make_manager(on_conflict=on_conflict, conflict_timeout=0.01)
        with self.assertRaises(ConflictUnresolved):
            await manager.sync()
        self.assertEqual(await self.cached_ids(), ["a", "local"])

    async def test_own_remote_write_is_not_a_conflict(self):
        await self.seed_local("a", "b", last_updated=T2, last_sync=T0)
        self.remote.document = make_collection("a", last_updated=T1, device_id=self.cache.get_device_id())

        result = await self.make_manager().sync()

        self.assertIsNone(result.conflict)
        self.assertEqual(result.direction, "push")


class TestFailures(SyncManagerTestCase):
    async def test_remote_failure_keeps_cache_and_queue(self):
        await self.seed_local("a", last_updated=T1, last_sync=T0)
        await self.queue.enqueue(QueueOperation(type=OperationType.DELETE, id="a"))
        self.remote.document = make_collection(last_updated=T0)
        self.remote.read_errors = [ClassifiedError("offline", category=ErrorCategory.NETWORK, retryable=True)]
        manager = self.make_manager()

        with self.assertRaises(ClassifiedError):
            await manager.sync()

        self.assertEqual(manager.state, SyncState.ERROR)
        self.assertEqual(await self.queue.size(), 1)
        self.assertEqual(await self.cached_ids(), ["a"])
        metadata = await self.cache.get_sync_metadata()
        self.assertEqual(metadata.sync_status, SyncStatus.ERROR)
        self.assertEqual(metadata.last_sync_error["category"], "network")
        self.assertEqual(manager.last_error["category"], "network")

    async def test_next_sync_recovers(self):
        self.remote.document = make_collection("a", last_updated=T1, device_id="other")
        self.remote.read_errors = [ClassifiedError("offline", category=ErrorCategory.NETWORK, retryable=True)]
        manager = self.make_manager()

        with self.assertRaises(ClassifiedError):
            await manager.sync()
        await manager.sync()

        self.assertEqual(manager.state, SyncState.IDLE)
        self.assertIsNone(manager.last_error)

    async def test_local_mutation_during_sync_is_kept(self):
        self.remote.document = make_collection("remote", last_updated=T2, device_id="other")

        async def mutate_locally():
            await self.cache.save_data(make_collection("edited-meanwhile", last_updated=T2))

        self.remote.on_read = mutate_locally
        result = await self.make_manager().sync()

        self.assertEqual(await self.cached_ids(), ["edited-meanwhile"])
        self.assertIsNone(await self.cache.get_last_sync_time())
        self.assertIn("next pass", result.message)
        metadata = await self.cache.get_sync_metadata()
        self.assertEqual(metadata.sync_status, SyncStatus.PENDING)


class TestConcurrency(SyncManagerTestCase):
    async def test_concurrent_syncs_share_one_pass(self):
        self.remote.document = make_collection("a", last_updated=T1, device_id="other")
        gate = asyncio.Event()

        async def wait_for_gate():
            await gate.wait()

        self.remote.on_read = wait_for_gate
        manager = self.make_manager()

        first = asyncio.create_task(manager.sync())
        second = asyncio.create_task(manager.sync())
        await asyncio.sleep(0)
        self.assertTrue(manager.is_syncing)
        gate.set()
        results = await asyncio.gather(first, second)

        self.assertIs(results[0], results[1])
        self.assertEqual(self.remote.reads, 1)

    async def test_no_wait_rejects_concurrent_sync(self):
        self.remote.document = make_collection("a", last_updated=T1, device_id="other")
        gate = asyncio.Event()

        async def wait_for_gate():
            await gate.wait()

        self.remote.on_read = wait_for_gate
        manager = self.make_manager()
        running = asyncio.create_task(manager.sync())
        await asyncio.sleep(0)

        with self.assertRaises(SyncInProgress):
            await manager.sync(wait=False)
        gate.set()
        await running


class TestOfflineMode(SyncManagerTestCase):
    async def test_offline_sync_is_queued_and_coalesced(self):
        manager = self.make_manager()
        manager.set_online(False)

        first = await manager.sync()
        await manager.sync()

        self.assertTrue(first.queued)
        queue = await self.queue.get_queue()
        self.assertEqual([(op.type, op.id) for op in queue], [(OperationType.SYNC, "sync")])
        self.assertEqual(self.remote.reads, 0)

    async def test_reconnect_drains_queue(self):
        self.remote.document = make_collection(last_updated=T0, device_id="other")
        manager = self.make_manager()
        manager.set_online(False)
        await self.queue.enqueue(QueueOperation(
            type=OperationType.ADD, id="x", data={"audiobook": make_book("x").to_wire()},
        ))

        task = manager.set_online(True)
        self.assertIsNotNone(task)
        await task

        self.assertTrue(await self.queue.is_empty())
        self.assertEqual([b.id for b in self.remote.document.audiobooks], ["x"])

    async def test_process_offline_queue_skips_when_empty(self):
        self.assertIsNone(await self.make_manager().process_offline_queue())


class TestLifecycle(SyncManagerTestCase):
    async def test_create_remote_remembers_gist(self):
        await self.seed_local("a", last_sync=None)
        manager = self.make_manager(gist_id=None)

        gist_id = await manager.create_remote("My books")

        self.assertEqual(gist_id, "new-gist-id")
        self.assertEqual(self.cache.get_gist_id(), "new-gist-id")
        self.assertEqual(manager.gist_id, "new-gist-id")
        self.assertEqual([b.id for b in self.remote.document.audiobooks], ["a"])
        self.assertEqual(self.remote.created_description, "My books")

    async def test_reset_keeps_device_identity(self):
        await self.seed_local("a")
        await self.queue.enqueue(QueueOperation(type=OperationType.DELETE, id="a"))
        device_id = self.cache.get_device_id()
        manager = self.make_manager()

        await manager.reset()

        self.assertFalse(await self.cache.has_data())
        self.assertTrue(await self.queue.is_empty())
        self.assertEqual(self.cache.get_device_id(), device_id)

    async def test_auto_sync_runs_periodically(self):
        self.remote.document = make_collection("a", last_updated=T1, device_id="other")
        manager = self.make_manager(sync_interval=0.01, queue_interval=10)

        manager.start_auto_sync()
        self.assertTrue(manager.auto_sync_running)
        for _ in range(100):
            if self.remote.reads:
                break
            await asyncio.sleep(0.01)
        manager.stop_auto_sync()

        self.assertGreaterEqual(self.remote.reads, 1)
        self.assertFalse(manager.auto_sync_running)

    async def test_status_snapshot(self):
        manager = self.make_manager()
        status = await manager.get_sync_status()
        self.assertEqual(status["state"], "idle")
        self.assertEqual(status["gistId"], "gist123")
        self.assertEqual(status["queue"]["total_operations"], 0)
        self.assertEqual(status["syncStatus"], "never")

    async def test_close_closes_remote(self):
        manager = self.make_manager()
        await manager.close()
        self.assertTrue(self.remote.closed)


if __name__ == '__main__':
    unittest.main()
