import asyncio
import inspect
import logging
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple, Union

from .cache import LocalCache
from .clients.gist_client import GistClient
from .config import settings
from .engine import NONE, PULL, PUSH, ConflictResolver, normalize
from .errors import (
    ClassifiedError,
    ConflictUnresolved,
    ErrorCategory,
    NotFound,
    QueueExhausted,
    SyncError,
    SyncInProgress,
)
from .models import (
    Audiobook,
    CacheSnapshot,
    Collection,
    ConflictInfo,
    ConflictResolution,
    OperationType,
    QueueOperation,
    QueueResult,
    SyncResult,
    SyncStatus,
    utc_now_iso,
)
from .offline_queue import OfflineQueue
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

RESOLVED = "resolved"
SYNC_OPERATION_ID = "sync"
MAX_DROPPED_HISTORY = 20

ConflictHandler = Callable[
    [ConflictInfo, Collection, Collection],
    Awaitable[Optional[Union[ConflictResolution, str]]],
]
StatusListener = Callable[["SyncState"], Any]
CollectionListener = Callable[[Collection], Any]


class SyncState(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    CONFLICT = "conflict"
    ERROR = "error"


class SyncManager:
    def __init__(
        self,
        remote: GistClient,
        cache: LocalCache,
        queue: OfflineQueue,
        resolver: Optional[ConflictResolver] = None,
        retry_policy: Optional[RetryPolicy] = None,
        gist_id: Optional[str] = None,
        on_conflict: Optional[ConflictHandler] = None,
        on_sync_status_change: Optional[StatusListener] = None,
        conflict_resolution: Optional[str] = None,
        conflict_timeout: Optional[float] = None,
        sync_interval: Optional[float] = None,
        queue_interval: Optional[float] = None,
    ):
        self.remote = remote
        self.cache = cache
        self.queue = queue
        self.resolver = resolver or ConflictResolver()
        self.retry_policy = retry_policy or remote.retry_policy
        self._gist_id = gist_id or settings.GIST_ID
        self.on_conflict = on_conflict
        self.on_sync_status_change = on_sync_status_change
        self.conflict_resolution = conflict_resolution or settings.CONFLICT_RESOLUTION
        self.conflict_timeout = settings.CONFLICT_TIMEOUT_SECONDS if conflict_timeout is None else conflict_timeout
        self.sync_interval = sync_interval or settings.SYNC_INTERVAL_SECONDS
        self.queue_interval = queue_interval or settings.QUEUE_PROCESS_INTERVAL_SECONDS

        self.state = SyncState.IDLE
        self.is_online = True
        self.last_error: Optional[Dict[str, Any]] = None
        self.last_result: Optional[SyncResult] = None
        self.dropped_operations: Deque[Dict[str, Any]] = deque(maxlen=MAX_DROPPED_HISTORY)

        self._inflight: Optional[asyncio.Task] = None
        self._background: set = set()
        self._auto_sync_task: Optional[asyncio.Task] = None
        self._queue_task: Optional[asyncio.Task] = None
        self._collection_listeners: List[CollectionListener] = []

    # --- configuration ---

    @property
    def gist_id(self) -> Optional[str]:
        return self._gist_id or self.cache.get_gist_id()

    def set_gist_id(self, gist_id: str):
        self._gist_id = gist_id.strip()
        self.cache.save_gist_id(self._gist_id)

    @property
    def is_syncing(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def add_collection_listener(self, listener: CollectionListener):
        """Called with the new collection whenever a pass replaces the local copy."""
        self._collection_listeners.append(listener)

    # --- sync ---

    async def sync(self, force: bool = False, wait: bool = True, skip_offline_check: bool = False) -> SyncResult:
        """
        Run one sync pass, or join the pass already running.

        force pushes the local collection without conflict detection. With
        wait=False a concurrent call raises SyncInProgress instead of joining.
        While offline the request is queued and a queued result is returned.
        """
        if not skip_offline_check and not self.is_online:
            await self.queue.enqueue(QueueOperation(
                type=OperationType.SYNC,
                id=SYNC_OPERATION_ID,
                data={"force": force},
            ))
            logger.info("Offline, sync queued for when connection is restored")
            return SyncResult(queued=True, message="Sync queued for when connection is restored")

        if self.is_syncing:
            if not wait:
                raise SyncInProgress("Sync already in progress")
            logger.debug("Sync already in progress, joining it")
        else:
            self._inflight = asyncio.create_task(self._run_sync(force))

        # Shielded so a cancelled caller does not cancel the shared pass
        return await asyncio.shield(self._inflight)

    async def _run_sync(self, force: bool) -> SyncResult:
        gist_id = self.gist_id
        self._set_state(SyncState.SYNCING)
        try:
            if not gist_id:
                raise ClassifiedError(
                    "No gist ID configured. Create or connect a gist first.",
                    category=ErrorCategory.GIST_ERROR,
                )

            local_snapshot = await self.cache.load_data()
            local = local_snapshot.to_collection() if local_snapshot else None
            last_sync_time = await self.cache.get_last_sync_time()

            # 1. Replay queued mutations onto the remote
            baseline, queue_result = await self._drain_queue(gist_id)

            # 2. Current remote snapshot
            remote = await self.remote.read(gist_id) if queue_result.succeeded else baseline

            # 3. Divergence check
            conflict = None
            resolution = None
            if local is not None and remote is not None and not force:
                conflict = self.resolver.detect_conflict(local, remote, last_sync_time, baseline)

            # 4. Pick the authoritative side
            if conflict:
                resolution, authoritative = await self._handle_conflict(conflict, local, remote)
                direction = RESOLVED
            else:
                if force and local is not None:
                    direction = PUSH
                else:
                    direction = self.resolver.choose_direction(local, remote, last_sync_time, baseline)
                authoritative = local if direction == PUSH or remote is None else remote

            # 5. Persist
            settled = await self._persist(gist_id, authoritative, direction, local_snapshot)

            # 6. Record the sync
            if settled:
                await self.cache.update_sync_metadata(
                    last_sync_time=utc_now_iso(),
                    sync_status=SyncStatus.SYNCED,
                    last_sync_error=None,
                )
            self.last_error = None
            self._set_state(SyncState.IDLE)

        except Exception as e:
            await self._fail(e)
            raise

        result = SyncResult(
            direction=direction,
            conflict=conflict,
            resolution=resolution,
            queue=queue_result,
            audiobook_count=len(authoritative.audiobooks) if authoritative else 0,
            message=self._describe(direction, settled),
        )
        self.last_result = result
        logger.info(f"Sync complete: {result.message}")
        return result

    async def _drain_queue(self, gist_id: str) -> Tuple[Optional[Collection], QueueResult]:
        """
        Read the remote once, then replay each queued mutation onto a working
        copy, committing one update per operation. A failed operation leaves
        the working copy as it was and stays queued.

        A gist without a data file yields no baseline; nothing is replayed and
        the pass pushes the local collection instead.
        """
        try:
            baseline = await self.remote.read(gist_id)
        except NotFound as e:
            # An HTTP 404 means the gist itself is gone
            if e.http_status is not None:
                raise
            logger.info(f"Gist {gist_id} has no library file yet")
            return None, QueueResult()
        if await self.queue.is_empty():
            return baseline, QueueResult()

        working = baseline.model_copy(deep=True)
        device_id = self.cache.get_device_id()

        async def replay(operation: QueueOperation):
            nonlocal working
            if operation.type is OperationType.SYNC:
                return
            candidate = working.model_copy(deep=True)
            self._apply_operation(candidate, operation)
            candidate.last_updated = utc_now_iso()
            candidate.device_id = device_id
            await self.remote.update(gist_id, candidate)
            working = candidate

        result = await self.queue.process_queue(replay)
        if result.processed:
            logger.info(
                f"Offline queue processed: {result.succeeded} succeeded, {result.failed} failed"
            )
        for dropped in result.dropped:
            self._report_dropped(dropped.operation_id, dropped.type, dropped.error)
        return baseline, result

    @staticmethod
    def _apply_operation(collection: Collection, operation: QueueOperation):
        if operation.type in (OperationType.ADD, OperationType.UPDATE):
            book = Audiobook.model_validate(operation.data.get("audiobook") or {})
            collection.upsert(book)
        elif operation.type is OperationType.DELETE:
            collection.remove(operation.id)

    def _report_dropped(self, operation_id: str, op_type: OperationType, reason: str):
        error = QueueExhausted(f"Dropped {op_type.value} {operation_id} after repeated failures: {reason}")
        logger.warning(str(error))
        details = self.retry_policy.format_error_for_user(error)
        details["operationId"] = operation_id
        details["operationType"] = op_type.value
        self.dropped_operations.append(details)

    async def _handle_conflict(
        self,
        conflict: ConflictInfo,
        local: Collection,
        remote: Collection,
    ) -> Tuple[ConflictResolution, Collection]:
        self._set_state(SyncState.CONFLICT)
        await self.cache.update_sync_metadata(sync_status=SyncStatus.CONFLICT)

        resolution = await self._ask_for_resolution(conflict, local, remote)
        logger.info(f"Conflict resolved with {resolution.value}")
        self._set_state(SyncState.SYNCING)
        return resolution, self.resolver.resolve(resolution, local, remote)

    async def _ask_for_resolution(
        self,
        conflict: ConflictInfo,
        local: Collection,
        remote: Collection,
    ) -> ConflictResolution:
        if self.conflict_resolution != "manual":
            return ConflictResolution(self.conflict_resolution)
        if self.on_conflict is None:
            raise ConflictUnresolved("Sync conflict detected but no resolver is available")

        try:
            choice = await asyncio.wait_for(
                self.on_conflict(conflict, local.model_copy(deep=True), remote.model_copy(deep=True)),
                timeout=self.conflict_timeout,
            )
        except asyncio.TimeoutError as e:
            raise ConflictUnresolved("Conflict resolution timed out") from e

        if choice is None:
            raise ConflictUnresolved("Conflict resolution was abandoned")
        try:
            return ConflictResolution(choice)
        except ValueError as e:
            raise ConflictUnresolved(f"Unknown conflict resolution: {choice}") from e

    async def _persist(
        self,
        gist_id: str,
        authoritative: Optional[Collection],
        direction: str,
        local_snapshot: Optional[CacheSnapshot],
    ) -> bool:
        """
        Push and/or cache the authoritative collection.

        Returns False if the local cache changed while the pass ran; that
        newer local state is kept and goes out on the next pass.
        """
        if authoritative is None:
            return True

        if direction in (PUSH, RESOLVED):
            outgoing = authoritative.model_copy(update={"device_id": self.cache.get_device_id()})
            await self.remote.update(gist_id, outgoing)

        current = await self.cache.load_data()
        if self._changed_since(local_snapshot, current):
            logger.info("Local library changed during sync, keeping it for the next pass")
            await self.cache.update_sync_metadata(sync_status=SyncStatus.PENDING)
            return False

        await self.cache.save_data(authoritative, update_timestamp=False, sync_status=SyncStatus.SYNCED)
        if direction in (PULL, RESOLVED) or local_snapshot is None:
            await self._notify_collection(authoritative)
        return True

    @staticmethod
    def _changed_since(before: Optional[CacheSnapshot], after: Optional[CacheSnapshot]) -> bool:
        if after is None:
            return False
        if before is None:
            return True
        if before.metadata.last_modified != after.metadata.last_modified:
            return True
        return normalize(before.to_collection()) != normalize(after.to_collection())

    async def _fail(self, error: BaseException):
        details = self.retry_policy.format_error_for_user(error)
        # An unresolved conflict leaves local changes pending, not failed
        status = SyncStatus.PENDING if isinstance(error, ConflictUnresolved) else SyncStatus.ERROR
        self.last_error = details
        logger.error(f"Sync failed ({details['category']}): {error}")
        await self.cache.update_sync_metadata(sync_status=status, last_sync_error=details)
        self._set_state(SyncState.ERROR)

    @staticmethod
    def _describe(direction: str, settled: bool) -> str:
        if not settled:
            return "Local changes made during sync will go out on the next pass"
        return {
            PUSH: "Local library pushed to gist",
            PULL: "Library updated from gist",
            RESOLVED: "Conflict resolved and pushed to gist",
            NONE: "Data already in sync",
        }[direction]

    # --- events ---

    def _set_state(self, state: SyncState):
        if state is self.state:
            return
        logger.info(f"Sync state {self.state.value} -> {state.value}")
        self.state = state
        if self.on_sync_status_change is None:
            return
        try:
            outcome = self.on_sync_status_change(state)
            if inspect.isawaitable(outcome):
                self._spawn(outcome)
        except Exception as e:
            logger.error(f"Error in sync status listener: {e}", exc_info=True)

    async def _notify_collection(self, collection: Collection):
        for listener in self._collection_listeners:
            outcome = listener(collection.model_copy(deep=True))
            if inspect.isawaitable(outcome):
                await outcome

    def _spawn(self, awaitable) -> asyncio.Task:
        task = asyncio.ensure_future(awaitable)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # --- scheduling ---

    def schedule_sync(self) -> Optional[asyncio.Task]:
        """Start a background pass if online. Failures are logged, not raised."""
        if not self.is_online or not self.gist_id:
            return None
        return self._spawn(self._sync_quietly("Background sync"))

    async def _sync_quietly(self, label: str):
        try:
            await self.sync()
        except SyncError as e:
            logger.warning(f"{label} failed: {e}")
        except Exception as e:
            logger.error(f"{label} failed unexpectedly: {e}", exc_info=True)

    async def process_offline_queue(self) -> Optional[SyncResult]:
        """Drain the queue with a full pass. Returns None when offline or nothing is queued."""
        if not self.is_online or await self.queue.is_empty():
            return None
        return await self.sync()

    def set_online(self, online: bool) -> Optional[asyncio.Task]:
        """Going back online schedules a pass that drains the offline queue."""
        was_online = self.is_online
        self.is_online = online
        if online and not was_online:
            logger.info("Connection restored, processing offline queue")
            return self.schedule_sync()
        if not online and was_online:
            logger.info("Connection lost, changes will be queued")
        return None

    def start_auto_sync(self, interval: Optional[float] = None):
        self.stop_auto_sync()
        if interval:
            self.sync_interval = interval
        self._auto_sync_task = asyncio.create_task(self._auto_sync_loop())
        self._queue_task = asyncio.create_task(self._queue_loop())
        logger.info(f"Auto-sync started (every {self.sync_interval}s)")

    def stop_auto_sync(self):
        for task in (self._auto_sync_task, self._queue_task):
            if task and not task.done():
                task.cancel()
        if self._auto_sync_task or self._queue_task:
            logger.info("Auto-sync stopped")
        self._auto_sync_task = None
        self._queue_task = None

    @property
    def auto_sync_running(self) -> bool:
        return self._auto_sync_task is not None and not self._auto_sync_task.done()

    async def _auto_sync_loop(self):
        while True:
            await asyncio.sleep(self.sync_interval)
            if self.is_online and not self.is_syncing:
                await self._sync_quietly("Auto-sync")

    async def _queue_loop(self):
        while True:
            await asyncio.sleep(self.queue_interval)
            if self.is_online and not self.is_syncing and not await self.queue.is_empty():
                await self._sync_quietly("Offline queue processing")

    # --- remote setup ---

    async def create_remote(self, description: Optional[str] = None) -> str:
        """Publish the local collection as a new gist and remember its id."""
        snapshot = await self.cache.load_data()
        collection = snapshot.to_collection() if snapshot else Collection()
        collection.device_id = self.cache.get_device_id()
        gist_id = await self.remote.create(collection, description)
        self.set_gist_id(gist_id)
        await self.queue.clear()
        await self.cache.update_sync_metadata(
            last_sync_time=utc_now_iso(),
            sync_status=SyncStatus.SYNCED,
            last_sync_error=None,
        )
        return gist_id

    # --- status ---

    async def get_sync_status(self) -> Dict[str, Any]:
        metadata = await self.cache.get_sync_metadata()
        stats = await self.queue.get_stats()
        return {
            "state": self.state.value,
            "isOnline": self.is_online,
            "isSyncing": self.is_syncing,
            "autoSync": self.auto_sync_running,
            "gistId": self.gist_id,
            "deviceId": self.cache.get_device_id(),
            "lastSyncTime": metadata.last_sync_time,
            "syncStatus": metadata.sync_status.value,
            "conflictResolution": self.conflict_resolution,
            "lastError": self.last_error,
            "queue": stats.model_dump(),
            "retries": self.retry_policy.get_retry_stats(),
            "droppedOperations": list(self.dropped_operations),
        }

    async def reset(self):
        """Forget local data and pending changes. Device identity and gist id survive."""
        self.stop_auto_sync()
        await self.cache.clear_data()
        await self.queue.clear()
        self.retry_policy.clear_retry_tracking()
        self.dropped_operations.clear()
        self.last_error = None
        self.last_result = None
        self._set_state(SyncState.IDLE)

    async def close(self):
        self.stop_auto_sync()
        if self.is_syncing:
            self._inflight.cancel()
        await self.remote.close()
