import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError

from .config import settings
from .models import (
    OperationType,
    QueueError,
    QueueOperation,
    QueueResult,
    QueueStats,
    parse_timestamp,
    utc_now_iso,
)
from .errors import QuotaExceeded
from .retry import RetryPolicy
from .storage import KeyValueStore, StorageQuotaError

logger = logging.getLogger(__name__)

QUEUE_KEY = "audiobook-offline-queue"

Processor = Callable[[QueueOperation], Awaitable[None]]


class OfflineQueue:
    def __init__(
        self,
        store: KeyValueStore,
        retry_policy: Optional[RetryPolicy] = None,
        max_queue_size: Optional[int] = None,
        retry_ceilings: Optional[Dict[str, int]] = None,
        base_delay: Optional[float] = None,
    ):
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_queue_size = settings.QUEUE_MAX_SIZE if max_queue_size is None else max_queue_size
        self.retry_ceilings = retry_ceilings or settings.queue_retry_ceilings()
        self.base_delay = self.retry_policy.base_delay if base_delay is None else base_delay

    async def get_queue(self) -> List[QueueOperation]:
        raw = self.store.get(QUEUE_KEY)
        if not raw:
            return []
        try:
            return [QueueOperation.model_validate(op) for op in json.loads(raw)]
        except (json.JSONDecodeError, TypeError, ValidationError) as e:
            logger.error(f"Failed to load queue from storage: {e}")
            return []

    async def _save_queue(self, queue: List[QueueOperation]):
        try:
            self.store.set(QUEUE_KEY, json.dumps([op.to_wire() for op in queue]))
        except StorageQuotaError as e:
            raise QuotaExceeded("Offline queue could not be saved: storage is full", retryable=True) from e

    async def enqueue(self, operation: QueueOperation):
        queue = await self.get_queue()
        now = utc_now_iso()

        for i, existing in enumerate(queue):
            if existing.identity == operation.identity:
                # Coalesce: newer payload, same position, retry accounting kept
                queue[i] = existing.model_copy(update={"data": operation.data, "queued_at": now})
                logger.debug(f"Coalesced queued {operation.type.value} for {operation.id}")
                break
        else:
            queue.append(operation.model_copy(update={"queued_at": now, "retry_count": 0}))

        if len(queue) > self.max_queue_size:
            evicted = queue[: len(queue) - self.max_queue_size]
            queue = queue[len(queue) - self.max_queue_size:]
            for op in evicted:
                logger.warning(f"Offline queue full, evicted {op.type.value} {op.id}")

        await self._save_queue(queue)

    async def dequeue(self) -> Optional[QueueOperation]:
        queue = await self.get_queue()
        if not queue:
            return None
        operation = queue.pop(0)
        await self._save_queue(queue)
        return operation

    async def peek(self) -> Optional[QueueOperation]:
        queue = await self.get_queue()
        return queue[0] if queue else None

    async def size(self) -> int:
        return len(await self.get_queue())

    async def is_empty(self) -> bool:
        return await self.size() == 0

    async def clear(self):
        self.store.delete(QUEUE_KEY)

    async def remove_operation(self, op_type: OperationType, operation_id: str) -> bool:
        queue = await self.get_queue()
        remaining = [op for op in queue if op.identity != (op_type, operation_id)]
        if len(remaining) == len(queue):
            return False
        await self._save_queue(remaining)
        return True

    def get_max_retries(self, op_type: OperationType) -> int:
        return self.retry_ceilings.get(op_type.value, 3)

    async def mark_operation_failed(self, operation: QueueOperation, error: BaseException) -> bool:
        """
        Record a failed attempt.

        Returns True if the operation stays queued for a later retry, False if
        it hit its retry ceiling and was removed (or is no longer queued).
        """
        queue = await self.get_queue()
        for i, op in enumerate(queue):
            if op.identity == operation.identity:
                break
        else:
            return False

        updated = op.model_copy(update={
            "retry_count": op.retry_count + 1,
            "last_error": str(error),
            "last_retry_at": utc_now_iso(),
        })

        if updated.retry_count >= self.get_max_retries(op.type):
            del queue[i]
            await self._save_queue(queue)
            return False

        queue[i] = updated
        await self._save_queue(queue)
        return True

    async def get_retryable_operations(self) -> List[QueueOperation]:
        """Operations never tried, or whose per-operation backoff has elapsed."""
        now = datetime.now(timezone.utc)
        ready = []
        for op in await self.get_queue():
            if not op.last_retry_at:
                ready.append(op)
                continue
            backoff = self.retry_policy.calculate_delay(op.retry_count, self.base_delay)
            if now >= parse_timestamp(op.last_retry_at) + timedelta(seconds=backoff):
                ready.append(op)
        return ready

    async def process_queue(self, processor: Processor) -> QueueResult:
        """
        Run processor over every retryable operation in FIFO order.

        Successful operations are removed; failures go through
        mark_operation_failed. A failure never aborts the rest of the batch.
        """
        results = QueueResult()

        for operation in await self.get_retryable_operations():
            results.processed += 1
            try:
                await processor(operation)
            except Exception as e:
                results.failed += 1
                should_retry = await self.mark_operation_failed(operation, e)
                results.errors.append(QueueError(
                    operation_id=operation.id,
                    type=operation.type,
                    error=str(e),
                    dropped=not should_retry,
                ))
                if not should_retry:
                    logger.warning(
                        f"Operation {operation.type.value} {operation.id} failed permanently: {e}"
                    )
                continue

            await self._remove_if_unchanged(operation)
            results.succeeded += 1

        return results

    async def _remove_if_unchanged(self, operation: QueueOperation):
        # A payload coalesced in while the processor ran must stay queued.
        queue = await self.get_queue()
        remaining = [
            op for op in queue
            if not (
                op.identity == operation.identity
                and op.queued_at == operation.queued_at
                and op.data == operation.data
            )
        ]
        if len(remaining) != len(queue):
            await self._save_queue(remaining)

    async def get_stats(self) -> QueueStats:
        queue = await self.get_queue()
        stats = QueueStats(total_operations=len(queue))
        if not queue:
            return stats

        for op in queue:
            stats.operation_types[op.type.value] = stats.operation_types.get(op.type.value, 0) + 1
            if op.retry_count > 0:
                stats.failed_operations += 1

        by_time = sorted(queue, key=lambda op: parse_timestamp(op.queued_at))
        stats.oldest_operation = by_time[0].queued_at
        stats.newest_operation = by_time[-1].queued_at
        return stats
