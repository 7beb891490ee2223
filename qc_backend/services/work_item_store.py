"""
Durable records of work items and batches.

Two interchangeable implementations:
- MemoryWorkItemStore: process-local state guarded by one asyncio.Lock. Used
  when DATABASE_URL is unset and throughout the concurrency tests.
- PostgresWorkItemStore: asyncpg with the statements in
  qc_backend.sql.work_item_queries.

Invariants both implementations keep:
- At most one worker holds an item in 'processing'. claim() is the only way
  into 'processing' and it is atomic (lock / SKIP LOCKED + status CAS).
- complete(), fail() and release() are compare-and-swaps on
  (status='processing', assigned_worker_id=worker_id). If the item was
  reclaimed in the meantime they change nothing and return None.
- 'completed' and 'failed' are terminal; only retry_failed() moves a failed
  item back to 'pending'.
- attempts never exceeds policy.max_attempts.
- The batch terminal check runs in the same critical section as the item
  mutation that may have finished the batch, so a batch becomes terminal
  exactly once, at the instant its last outstanding item does.

Usage:
    store = MemoryWorkItemStore(QueuePolicy.from_settings(get_settings()))
    await store.create_batch(batch, items, now)
    item = await store.claim('qc-video-1', now)
    transition = await store.complete(item.id, 'qc-video-1', result, now)
    if transition and transition.finished_batch:
        ...
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

import asyncpg

from qc_backend.core.database import affected_rows, get_db_pool
from qc_backend.core.errors import ConflictError, NotFoundError, ValidationError
from qc_backend.models import (
    AnalysisResult,
    Batch,
    BatchStatus,
    Priority,
    WorkItem,
    WorkItemStatus,
)
from qc_backend.sql import work_item_queries as q


logger = logging.getLogger(__name__)


# =============================================================================
# Policy and Result Types
# =============================================================================

@dataclass
class QueuePolicy:
    """
    Retry and terminal rules applied by the store.

    Attributes:
        max_attempts: An item is permanently failed once attempts reaches this.
        backoff_base_seconds: First retry delay.
        backoff_max_seconds: Upper bound for the retry delay.
        fail_batch_when_all_items_failed: A batch whose every item failed
            permanently ends 'failed' instead of 'completed'.
    """
    max_attempts: int = 3
    backoff_base_seconds: float = 2.0
    backoff_max_seconds: float = 60.0
    fail_batch_when_all_items_failed: bool = True

    @classmethod
    def from_settings(cls, settings: Any) -> "QueuePolicy":
        return cls(
            max_attempts=settings.max_attempts,
            backoff_base_seconds=settings.retry_backoff_base_seconds,
            backoff_max_seconds=settings.retry_backoff_max_seconds,
            fail_batch_when_all_items_failed=settings.fail_batch_when_all_items_failed,
        )

    def backoff(self, attempts: int) -> timedelta:
        """
        Delay before an item that has failed `attempts` times is claimable again.

        Example:
            >>> QueuePolicy(backoff_base_seconds=2, backoff_max_seconds=60).backoff(3)
            datetime.timedelta(seconds=8)
        """
        delay = self.backoff_base_seconds * (2 ** max(attempts - 1, 0))
        return timedelta(seconds=min(delay, self.backoff_max_seconds))

    def after_failure(self, attempts: int, retryable: bool) -> Tuple[int, bool]:
        """Return (new attempt count, whether the item goes back to pending)."""
        attempts += 1
        return attempts, retryable and attempts < self.max_attempts

    def terminal_batch_status(self, completed_items: int) -> BatchStatus:
        if self.fail_batch_when_all_items_failed and completed_items == 0:
            return BatchStatus.FAILED
        return BatchStatus.COMPLETED


@dataclass
class ItemTransition:
    """
    Outcome of a successful item mutation.

    Attributes:
        item: The item after the transition.
        requeued: True when a failure sent the item back to pending.
        finished_batch: The batch, when this transition made it terminal.
    """
    item: WorkItem
    requeued: bool = False
    finished_batch: Optional[Batch] = None


@dataclass
class BatchSnapshot:
    """One consistent read of a batch, its item counts and recent finish times."""
    batch: Batch
    pending: int
    processing: int
    finish_times: List[datetime] = field(default_factory=list)


# =============================================================================
# Store Interface
# =============================================================================

class WorkItemStore(ABC):
    """Abstract store for batches and work items."""

    policy: QueuePolicy

    @abstractmethod
    async def create_batch(self, batch: Batch, items: List[WorkItem], now: datetime) -> Batch:
        """Persist the batch and its pending items, then flip it to processing."""

    @abstractmethod
    async def get_batch(self, batch_id: str) -> Optional[Batch]:
        """Return the batch with counters filled in, or None."""

    @abstractmethod
    async def list_batches(self, statuses: Sequence[BatchStatus]) -> List[Batch]:
        ...

    @abstractmethod
    async def snapshot(self, batch_id: str, since: datetime) -> Optional[BatchSnapshot]:
        """Read counters and finish times at or after `since` in one snapshot."""

    @abstractmethod
    async def get_item(self, item_id: str) -> Optional[WorkItem]:
        ...

    @abstractmethod
    async def list_items(
        self,
        batch_id: str,
        status: Optional[WorkItemStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[WorkItem]:
        ...

    @abstractmethod
    async def claim(self, worker_id: str, now: datetime) -> Optional[WorkItem]:
        """Atomically take the best available pending item, or return None."""

    @abstractmethod
    async def complete(
        self,
        item_id: str,
        worker_id: str,
        result: AnalysisResult,
        now: datetime,
    ) -> Optional[ItemTransition]:
        ...

    @abstractmethod
    async def fail(
        self,
        item_id: str,
        worker_id: str,
        error: str,
        retryable: bool,
        now: datetime,
    ) -> Optional[ItemTransition]:
        ...

    @abstractmethod
    async def release(self, item_id: str, worker_id: str) -> Optional[WorkItem]:
        """Return a held item to pending without spending an attempt."""

    @abstractmethod
    async def sweep_stale(self, cutoff: datetime, now: datetime) -> List[ItemTransition]:
        """Reclaim items whose claim is older than `cutoff`."""

    @abstractmethod
    async def retry_failed(self, batch_id: str, now: datetime) -> int:
        ...

    @abstractmethod
    async def abort_batch(self, batch_id: str, reason: str, now: datetime) -> Batch:
        ...

    @abstractmethod
    async def delete_batch(self, batch_id: str) -> None:
        ...

    @abstractmethod
    async def count_processing(self) -> int:
        ...

    @abstractmethod
    async def flagged_results(
        self,
        since: datetime,
        error_types: Sequence[str] = (),
        priorities: Sequence[Priority] = (),
    ) -> List[WorkItem]:
        """Completed, flagged items finished at or after `since` matching the filters."""


# =============================================================================
# In-Memory Store
# =============================================================================

class MemoryWorkItemStore(WorkItemStore):
    """
    Process-local store. A single asyncio.Lock serializes every mutation and
    every multi-record read, which gives the same guarantees as the Postgres
    transactions for a single service instance.
    """

    def __init__(self, policy: Optional[QueuePolicy] = None):
        self.policy = policy or QueuePolicy()
        self._lock = asyncio.Lock()
        self._batches: Dict[str, Batch] = {}
        self._items: Dict[str, WorkItem] = {}
        self._batch_items: Dict[str, List[str]] = {}

    # ------------------------------------------------------------------
    # helpers (caller holds the lock)
    # ------------------------------------------------------------------

    def _items_of(self, batch_id: str) -> List[WorkItem]:
        return [self._items[item_id] for item_id in self._batch_items.get(batch_id, [])]

    def _counted(self, batch: Batch) -> Batch:
        items = self._items_of(batch.id)
        return batch.model_copy(update={
            'processed_count': sum(1 for i in items if i.status.is_terminal),
            'flagged_count': sum(1 for i in items if i.is_flagged),
            'failed_count': sum(1 for i in items if i.status == WorkItemStatus.FAILED),
        })

    def _finalize(self, batch_id: str, now: datetime) -> Optional[Batch]:
        batch = self._batches.get(batch_id)
        if batch is None or batch.status != BatchStatus.PROCESSING:
            return None

        items = self._items_of(batch_id)
        if any(not i.status.is_terminal for i in items):
            return None

        completed = sum(1 for i in items if i.status == WorkItemStatus.COMPLETED)
        batch.status = self.policy.terminal_batch_status(completed)
        batch.finished_at = now
        batch.updated_at = now
        logger.info(f"Batch {batch_id} finished as {batch.status.value}")
        return self._counted(batch)

    def _held(self, item_id: str, worker_id: str) -> Optional[WorkItem]:
        item = self._items.get(item_id)
        if item is None:
            return None
        if item.status != WorkItemStatus.PROCESSING or item.assigned_worker_id != worker_id:
            return None
        return item

    def _apply_failure(
        self,
        item: WorkItem,
        error: str,
        retryable: bool,
        now: datetime,
    ) -> ItemTransition:
        attempts, requeue = self.policy.after_failure(item.attempts, retryable)
        item.attempts = attempts
        item.last_error = error
        if requeue:
            item.status = WorkItemStatus.PENDING
            item.assigned_worker_id = None
            item.claimed_at = None
            item.available_at = now + self.policy.backoff(attempts)
            return ItemTransition(item=item.model_copy(deep=True), requeued=True)

        item.status = WorkItemStatus.FAILED
        item.completed_at = now
        finished = self._finalize(item.batch_id, now)
        return ItemTransition(item=item.model_copy(deep=True), finished_batch=finished)

    # ------------------------------------------------------------------
    # batches
    # ------------------------------------------------------------------

    async def create_batch(self, batch: Batch, items: List[WorkItem], now: datetime) -> Batch:
        async with self._lock:
            if batch.id in self._batches:
                raise ConflictError(f"Batch {batch.id} already exists")

            stored = batch.model_copy(update={'status': BatchStatus.UPLOADING})
            self._batches[batch.id] = stored
            self._batch_items[batch.id] = []
            for item in items:
                self._items[item.id] = item.model_copy(deep=True)
                self._batch_items[batch.id].append(item.id)

            stored.status = BatchStatus.PROCESSING
            stored.updated_at = now
            return self._counted(stored)

    async def get_batch(self, batch_id: str) -> Optional[Batch]:
        async with self._lock:
            batch = self._batches.get(batch_id)
            return self._counted(batch) if batch else None

    async def list_batches(self, statuses: Sequence[BatchStatus]) -> List[Batch]:
        async with self._lock:
            batches = [b for b in self._batches.values() if b.status in statuses]
            batches.sort(key=lambda b: b.created_at)
            return [self._counted(b) for b in batches]

    async def snapshot(self, batch_id: str, since: datetime) -> Optional[BatchSnapshot]:
        async with self._lock:
            batch = self._batches.get(batch_id)
            if batch is None:
                return None

            items = self._items_of(batch_id)
            finish_times = sorted(
                i.completed_at for i in items
                if i.status.is_terminal and i.completed_at is not None and i.completed_at >= since
            )
            return BatchSnapshot(
                batch=self._counted(batch),
                pending=sum(1 for i in items if i.status == WorkItemStatus.PENDING),
                processing=sum(1 for i in items if i.status == WorkItemStatus.PROCESSING),
                finish_times=finish_times,
            )

    async def retry_failed(self, batch_id: str, now: datetime) -> int:
        async with self._lock:
            batch = self._batches.get(batch_id)
            if batch is None:
                raise NotFoundError(f"Batch {batch_id} not found")

            reset = 0
            for item in self._items_of(batch_id):
                if item.status != WorkItemStatus.FAILED:
                    continue
                item.status = WorkItemStatus.PENDING
                item.attempts = 0
                item.last_error = None
                item.result = None
                item.assigned_worker_id = None
                item.claimed_at = None
                item.completed_at = None
                item.available_at = now
                reset += 1

            if reset:
                batch.status = BatchStatus.PROCESSING
                batch.finished_at = None
                batch.abort_reason = None
                batch.updated_at = now
            return reset

    async def abort_batch(self, batch_id: str, reason: str, now: datetime) -> Batch:
        async with self._lock:
            batch = self._batches.get(batch_id)
            if batch is None:
                raise NotFoundError(f"Batch {batch_id} not found")
            if batch.status in (BatchStatus.COMPLETED, BatchStatus.FAILED):
                raise ConflictError(f"Batch {batch_id} is already {batch.status.value}")

            for item in self._items_of(batch_id):
                if item.status == WorkItemStatus.PENDING:
                    item.status = WorkItemStatus.FAILED
                    item.last_error = reason
                    item.completed_at = now

            batch.status = BatchStatus.FAILED
            batch.abort_reason = reason
            batch.finished_at = now
            batch.updated_at = now
            return self._counted(batch)

    async def delete_batch(self, batch_id: str) -> None:
        async with self._lock:
            if batch_id not in self._batches:
                raise NotFoundError(f"Batch {batch_id} not found")

            items = self._items_of(batch_id)
            in_flight = sum(1 for i in items if i.status == WorkItemStatus.PROCESSING)
            if in_flight:
                raise ConflictError(
                    f"Batch {batch_id} has {in_flight} item(s) in processing",
                )

            for item in items:
                del self._items[item.id]
            del self._batch_items[batch_id]
            del self._batches[batch_id]

    # ------------------------------------------------------------------
    # items
    # ------------------------------------------------------------------

    async def get_item(self, item_id: str) -> Optional[WorkItem]:
        async with self._lock:
            item = self._items.get(item_id)
            return item.model_copy(deep=True) if item else None

    async def list_items(
        self,
        batch_id: str,
        status: Optional[WorkItemStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[WorkItem]:
        async with self._lock:
            items = [
                i for i in self._items_of(batch_id)
                if status is None or i.status == status
            ]
            items.sort(key=lambda i: (i.created_at, i.id))
            return [i.model_copy(deep=True) for i in items[offset:offset + limit]]

    async def claim(self, worker_id: str, now: datetime) -> Optional[WorkItem]:
        async with self._lock:
            candidates = [
                i for i in self._items.values()
                if i.status == WorkItemStatus.PENDING and i.available_at <= now
            ]
            if not candidates:
                return None

            item = min(candidates, key=lambda i: (i.priority.rank, i.created_at, i.id))
            item.status = WorkItemStatus.PROCESSING
            item.assigned_worker_id = worker_id
            item.claimed_at = now
            return item.model_copy(deep=True)

    async def complete(
        self,
        item_id: str,
        worker_id: str,
        result: AnalysisResult,
        now: datetime,
    ) -> Optional[ItemTransition]:
        async with self._lock:
            item = self._held(item_id, worker_id)
            if item is None:
                return None

            item.status = WorkItemStatus.COMPLETED
            item.result = result.model_copy(deep=True)
            item.completed_at = now
            item.last_error = None
            finished = self._finalize(item.batch_id, now)
            return ItemTransition(item=item.model_copy(deep=True), finished_batch=finished)

    async def fail(
        self,
        item_id: str,
        worker_id: str,
        error: str,
        retryable: bool,
        now: datetime,
    ) -> Optional[ItemTransition]:
        async with self._lock:
            item = self._held(item_id, worker_id)
            if item is None:
                return None
            return self._apply_failure(item, error, retryable, now)

    async def release(self, item_id: str, worker_id: str) -> Optional[WorkItem]:
        async with self._lock:
            item = self._held(item_id, worker_id)
            if item is None:
                return None

            item.status = WorkItemStatus.PENDING
            item.assigned_worker_id = None
            item.claimed_at = None
            return item.model_copy(deep=True)

    async def sweep_stale(self, cutoff: datetime, now: datetime) -> List[ItemTransition]:
        async with self._lock:
            transitions = []
            for item in list(self._items.values()):
                if item.status != WorkItemStatus.PROCESSING:
                    continue
                if item.claimed_at is None or item.claimed_at >= cutoff:
                    continue

                logger.warning(
                    f"Reclaiming stale item {item.id} from worker {item.assigned_worker_id}"
                )
                transitions.append(self._apply_failure(
                    item,
                    f"processing timed out on worker {item.assigned_worker_id}",
                    True,
                    now,
                ))
            return transitions

    async def count_processing(self) -> int:
        async with self._lock:
            return sum(1 for i in self._items.values() if i.status == WorkItemStatus.PROCESSING)

    async def flagged_results(
        self,
        since: datetime,
        error_types: Sequence[str] = (),
        priorities: Sequence[Priority] = (),
    ) -> List[WorkItem]:
        async with self._lock:
            matches = [
                i for i in self._items.values()
                if i.is_flagged
                and i.completed_at is not None
                and i.completed_at >= since
                and (not error_types or i.error_type in error_types)
                and (not priorities or i.priority in priorities)
            ]
            matches.sort(key=lambda i: i.completed_at)
            return [i.model_copy(deep=True) for i in matches]


# =============================================================================
# PostgreSQL Store
# =============================================================================

def _row_to_item(row: Any) -> WorkItem:
    data = dict(row)
    result = data.get('result')
    if isinstance(result, str):
        data['result'] = json.loads(result)
    return WorkItem(**data)


def _row_to_batch(row: Any) -> Batch:
    data = dict(row)
    for extra in ('pending_count', 'processing_count'):
        data.pop(extra, None)
    return Batch(**data)


class PostgresWorkItemStore(WorkItemStore):
    """
    asyncpg-backed store.

    Mutations lock the owning batch row first (LOCK_BATCH), then touch the
    item, then run FINALIZE_BATCH, all in one transaction. Concurrent
    completions of a batch's last items therefore serialize on the batch row
    and exactly one of them observes zero outstanding items.
    """

    def __init__(self, policy: Optional[QueuePolicy] = None):
        self.policy = policy or QueuePolicy()

    async def _finalize(self, conn: Any, batch_id: str, now: datetime) -> Optional[Batch]:
        finished_id = await conn.fetchval(
            q.FINALIZE_BATCH,
            batch_id,
            now,
            self.policy.fail_batch_when_all_items_failed,
        )
        if finished_id is None:
            return None

        row = await conn.fetchrow(q.SELECT_BATCH_WITH_COUNTS, batch_id)
        batch = _row_to_batch(row)
        logger.info(f"Batch {batch_id} finished as {batch.status.value}")
        return batch

    async def _apply_failure(
        self,
        conn: Any,
        row: Any,
        error: str,
        retryable: bool,
        now: datetime,
    ) -> ItemTransition:
        attempts, requeue = self.policy.after_failure(row['attempts'], retryable)
        if requeue:
            updated = await conn.fetchrow(
                q.REQUEUE_ITEM,
                row['id'],
                attempts,
                error,
                now + self.policy.backoff(attempts),
            )
            return ItemTransition(item=_row_to_item(updated), requeued=True)

        updated = await conn.fetchrow(q.FAIL_ITEM, row['id'], attempts, error, now)
        finished = await self._finalize(conn, row['batch_id'], now)
        return ItemTransition(item=_row_to_item(updated), finished_batch=finished)

    # ------------------------------------------------------------------
    # batches
    # ------------------------------------------------------------------

    async def create_batch(self, batch: Batch, items: List[WorkItem], now: datetime) -> Batch:
        pool = await get_db_pool()

        async with pool.acquire() as conn:
            try:
                async with conn.transaction():
                    await conn.execute(
                        q.INSERT_BATCH,
                        batch.id,
                        batch.source,
                        batch.total_items,
                        batch.notify_channel,
                        batch.created_at,
                    )
                    await conn.executemany(
                        q.INSERT_WORK_ITEM,
                        [
                            (
                                item.id,
                                item.batch_id,
                                item.kind.value,
                                item.priority.value,
                                item.external_ref,
                                item.error_type,
                                item.agent_id,
                                item.video_url,
                                item.created_at,
                            )
                            for item in items
                        ],
                    )
                    await conn.execute(q.MARK_BATCH_PROCESSING, batch.id, now)
            except asyncpg.UniqueViolationError as e:
                raise ValidationError(f"Duplicate item reference in batch: {e}") from e

        return batch.model_copy(update={'status': BatchStatus.PROCESSING, 'updated_at': now})

    async def get_batch(self, batch_id: str) -> Optional[Batch]:
        pool = await get_db_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(q.SELECT_BATCH_WITH_COUNTS, batch_id)
            return _row_to_batch(row) if row else None

    async def list_batches(self, statuses: Sequence[BatchStatus]) -> List[Batch]:
        pool = await get_db_pool()

        async with pool.acquire() as conn:
            rows = await conn.fetch(q.SELECT_BATCHES_BY_STATUS, [s.value for s in statuses])
            return [_row_to_batch(row) for row in rows]

    async def snapshot(self, batch_id: str, since: datetime) -> Optional[BatchSnapshot]:
        pool = await get_db_pool()

        async with pool.acquire() as conn:
            async with conn.transaction(isolation='repeatable_read', readonly=True):
                row = await conn.fetchrow(q.SELECT_BATCH_WITH_COUNTS, batch_id)
                if row is None:
                    return None
                times = await conn.fetch(q.SELECT_FINISH_TIMES, batch_id, since)

        return BatchSnapshot(
            batch=_row_to_batch(row),
            pending=row['pending_count'],
            processing=row['processing_count'],
            finish_times=[t['completed_at'] for t in times],
        )

    async def retry_failed(self, batch_id: str, now: datetime) -> int:
        pool = await get_db_pool()

        async with pool.acquire() as conn:
            async with conn.transaction():
                locked = await conn.fetchrow(q.LOCK_BATCH, batch_id)
                if locked is None:
                    raise NotFoundError(f"Batch {batch_id} not found")

                reset = affected_rows(await conn.execute(q.RETRY_FAILED_ITEMS, batch_id, now))
                if reset:
                    await conn.execute(q.REOPEN_BATCH, batch_id, now)
                return reset

    async def abort_batch(self, batch_id: str, reason: str, now: datetime) -> Batch:
        pool = await get_db_pool()

        async with pool.acquire() as conn:
            async with conn.transaction():
                locked = await conn.fetchrow(q.LOCK_BATCH, batch_id)
                if locked is None:
                    raise NotFoundError(f"Batch {batch_id} not found")
                if locked['status'] in (BatchStatus.COMPLETED.value, BatchStatus.FAILED.value):
                    raise ConflictError(f"Batch {batch_id} is already {locked['status']}")

                await conn.execute(q.ABORT_PENDING_ITEMS, batch_id, reason, now)
                await conn.execute(q.ABORT_BATCH, batch_id, reason, now)
                row = await conn.fetchrow(q.SELECT_BATCH_WITH_COUNTS, batch_id)
                return _row_to_batch(row)

    async def delete_batch(self, batch_id: str) -> None:
        pool = await get_db_pool()

        async with pool.acquire() as conn:
            async with conn.transaction():
                locked = await conn.fetchrow(q.LOCK_BATCH, batch_id)
                if locked is None:
                    raise NotFoundError(f"Batch {batch_id} not found")

                in_flight = await conn.fetchval(q.COUNT_BATCH_PROCESSING, batch_id)
                if in_flight:
                    raise ConflictError(
                        f"Batch {batch_id} has {in_flight} item(s) in processing",
                    )
                await conn.execute(q.DELETE_BATCH, batch_id)

    # ------------------------------------------------------------------
    # items
    # ------------------------------------------------------------------

    async def get_item(self, item_id: str) -> Optional[WorkItem]:
        pool = await get_db_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(q.SELECT_ITEM, item_id)
            return _row_to_item(row) if row else None

    async def list_items(
        self,
        batch_id: str,
        status: Optional[WorkItemStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[WorkItem]:
        pool = await get_db_pool()
        args: List[Any] = [batch_id, limit, offset]
        if status is not None:
            args.append(status.value)

        async with pool.acquire() as conn:
            rows = await conn.fetch(q.get_list_items_query(status.value if status else None), *args)
            return [_row_to_item(row) for row in rows]

    async def claim(self, worker_id: str, now: datetime) -> Optional[WorkItem]:
        pool = await get_db_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(q.CLAIM_NEXT_ITEM, worker_id, now)
            return _row_to_item(row) if row else None

    async def complete(
        self,
        item_id: str,
        worker_id: str,
        result: AnalysisResult,
        now: datetime,
    ) -> Optional[ItemTransition]:
        pool = await get_db_pool()

        async with pool.acquire() as conn:
            async with conn.transaction():
                batch_id = await conn.fetchval(q.SELECT_ITEM_BATCH_ID, item_id)
                if batch_id is None:
                    return None
                await conn.fetchrow(q.LOCK_BATCH, batch_id)

                row = await conn.fetchrow(
                    q.COMPLETE_ITEM,
                    item_id,
                    worker_id,
                    result.model_dump_json(),
                    now,
                )
                if row is None:
                    return None

                finished = await self._finalize(conn, batch_id, now)
                return ItemTransition(item=_row_to_item(row), finished_batch=finished)

    async def fail(
        self,
        item_id: str,
        worker_id: str,
        error: str,
        retryable: bool,
        now: datetime,
    ) -> Optional[ItemTransition]:
        pool = await get_db_pool()

        async with pool.acquire() as conn:
            async with conn.transaction():
                batch_id = await conn.fetchval(q.SELECT_ITEM_BATCH_ID, item_id)
                if batch_id is None:
                    return None
                await conn.fetchrow(q.LOCK_BATCH, batch_id)

                row = await conn.fetchrow(q.SELECT_HELD_ITEM_FOR_UPDATE, item_id, worker_id)
                if row is None:
                    return None
                return await self._apply_failure(conn, row, error, retryable, now)

    async def release(self, item_id: str, worker_id: str) -> Optional[WorkItem]:
        pool = await get_db_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(q.RELEASE_ITEM, item_id, worker_id)
            return _row_to_item(row) if row else None

    async def sweep_stale(self, cutoff: datetime, now: datetime) -> List[ItemTransition]:
        pool = await get_db_pool()
        transitions = []

        async with pool.acquire() as conn:
            stale = await conn.fetch(q.SELECT_STALE_ITEMS, cutoff)

            # One transaction per item keeps batch locks short
            for candidate in stale:
                async with conn.transaction():
                    await conn.fetchrow(q.LOCK_BATCH, candidate['batch_id'])
                    row = await conn.fetchrow(q.SELECT_STALE_ITEM_FOR_UPDATE, candidate['id'], cutoff)
                    if row is None:
                        continue

                    logger.warning(
                        f"Reclaiming stale item {row['id']} from worker {row['assigned_worker_id']}"
                    )
                    transitions.append(await self._apply_failure(
                        conn,
                        row,
                        f"processing timed out on worker {row['assigned_worker_id']}",
                        True,
                        now,
                    ))

        return transitions

    async def count_processing(self) -> int:
        pool = await get_db_pool()

        async with pool.acquire() as conn:
            return await conn.fetchval(q.COUNT_PROCESSING) or 0

    async def flagged_results(
        self,
        since: datetime,
        error_types: Sequence[str] = (),
        priorities: Sequence[Priority] = (),
    ) -> List[WorkItem]:
        pool = await get_db_pool()

        async with pool.acquire() as conn:
            rows = await conn.fetch(
                q.SELECT_FLAGGED_RESULTS,
                since,
                list(error_types),
                [p.value for p in priorities],
            )
            return [_row_to_item(row) for row in rows]
