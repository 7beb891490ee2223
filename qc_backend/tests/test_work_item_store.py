"""
Pytest test module for the in-memory WorkItemStore.

Tests cover:
1. Claim ordering (priority, then age) and exclusivity under concurrency
2. Retry bookkeeping: attempts, backoff, permanent failure
3. Compare-and-swap transitions on a claim that is no longer held
4. Batch terminal rule, counters, retry/abort/delete
5. Stale claim sweep and flagged result queries

Test Classes:
- TestQueuePolicy: backoff and terminal rules
- TestClaim: ordering and exclusivity
- TestTransitions: complete/fail/release semantics
- TestBatchLifecycle: terminal rule and batch commands
- TestSweepAndQueries: sweep_stale, flagged_results
"""

import asyncio
from datetime import timedelta
from typing import List

import pytest

from qc_backend.core.errors import ConflictError, NotFoundError
from qc_backend.models import (
    Batch,
    BatchStatus,
    FlagStatus,
    Priority,
    WorkItem,
    WorkItemKind,
    WorkItemStatus,
)
from qc_backend.services.work_item_store import MemoryWorkItemStore, QueuePolicy
from qc_backend.tests.fakes import T0, make_result


pytestmark = pytest.mark.asyncio


# ============================================================
# HELPERS
# ============================================================

async def create_batch(
    store: MemoryWorkItemStore,
    rows: List[dict],
    batch_id: str = 'b1',
    created_at=T0,
) -> Batch:
    batch = Batch(
        id=batch_id,
        source='qc_upload.csv',
        total_items=len(rows),
        created_at=created_at,
        updated_at=created_at,
    )
    items = [
        WorkItem(
            id=f"{batch_id}-{n:05d}",
            batch_id=batch_id,
            kind=WorkItemKind.CSV_ROW,
            priority=Priority(row.get('priority', 'medium')),
            external_ref=row['uuid'],
            error_type=row.get('error_type'),
            agent_id=row.get('agent_id'),
            created_at=created_at,
            available_at=created_at,
        )
        for n, row in enumerate(rows)
    ]
    return await store.create_batch(batch, items, created_at)


def rows(n: int, priority: str = 'medium') -> List[dict]:
    return [{'uuid': f'u-{i}', 'priority': priority} for i in range(n)]


# ============================================================
# TEST CLASS: QueuePolicy
# ============================================================

class TestQueuePolicy:

    async def test_backoff_doubles_and_caps(self) -> None:
        policy = QueuePolicy(backoff_base_seconds=2, backoff_max_seconds=10)

        assert policy.backoff(1) == timedelta(seconds=2)
        assert policy.backoff(2) == timedelta(seconds=4)
        assert policy.backoff(3) == timedelta(seconds=8)
        assert policy.backoff(4) == timedelta(seconds=10)

    async def test_after_failure_requeues_until_max_attempts(self) -> None:
        policy = QueuePolicy(max_attempts=3)

        assert policy.after_failure(0, True) == (1, True)
        assert policy.after_failure(1, True) == (2, True)
        assert policy.after_failure(2, True) == (3, False)

    async def test_non_retryable_failure_is_permanent(self) -> None:
        assert QueuePolicy(max_attempts=3).after_failure(0, False) == (1, False)

    async def test_all_failed_batch_status(self) -> None:
        assert QueuePolicy().terminal_batch_status(0) == BatchStatus.FAILED
        assert QueuePolicy().terminal_batch_status(1) == BatchStatus.COMPLETED
        lenient = QueuePolicy(fail_batch_when_all_items_failed=False)
        assert lenient.terminal_batch_status(0) == BatchStatus.COMPLETED


# ============================================================
# TEST CLASS: Claim
# ============================================================

class TestClaim:

    async def test_create_batch_starts_processing(self, memory_store, sample_items) -> None:
        batch = await create_batch(memory_store, sample_items)

        assert batch.status == BatchStatus.PROCESSING
        assert batch.total_items == 10
        assert batch.processed_count == 0

    async def test_duplicate_batch_id_conflicts(self, memory_store) -> None:
        await create_batch(memory_store, rows(1))

        with pytest.raises(ConflictError):
            await create_batch(memory_store, rows(1))

    async def test_claims_high_before_medium_before_low(self, memory_store, sample_items) -> None:
        # Arrange: lows first in submission order so age alone would pick them
        await create_batch(memory_store, list(reversed(sample_items)))

        # Act
        claimed = []
        while True:
            item = await memory_store.claim('w1', T0)
            if item is None:
                break
            claimed.append(item.priority)

        # Assert
        assert claimed == [Priority.HIGH] * 2 + [Priority.MEDIUM] * 5 + [Priority.LOW] * 3

    async def test_oldest_first_within_priority(self, memory_store) -> None:
        await create_batch(memory_store, rows(2), batch_id='old', created_at=T0)
        await create_batch(memory_store, rows(2), batch_id='new', created_at=T0 + timedelta(seconds=5))

        first = await memory_store.claim('w1', T0 + timedelta(seconds=10))

        assert first.batch_id == 'old'
        assert first.external_ref == 'u-0'

    async def test_claim_marks_processing(self, memory_store) -> None:
        await create_batch(memory_store, rows(1))

        item = await memory_store.claim('w1', T0)
        stored = await memory_store.get_item(item.id)

        assert stored.status == WorkItemStatus.PROCESSING
        assert stored.assigned_worker_id == 'w1'
        assert stored.claimed_at == T0

    async def test_empty_queue_returns_none(self, memory_store) -> None:
        assert await memory_store.claim('w1', T0) is None

    @pytest.mark.concurrency
    async def test_concurrent_claims_never_share_an_item(self, memory_store) -> None:
        # Arrange
        await create_batch(memory_store, rows(20))

        # Act: 8 claimers race for 20 items
        async def drain(worker_id: str) -> List[str]:
            taken = []
            while True:
                item = await memory_store.claim(worker_id, T0)
                if item is None:
                    return taken
                taken.append(item.id)
                await asyncio.sleep(0)

        results = await asyncio.gather(*(drain(f'w{n}') for n in range(8)))

        # Assert
        all_ids = [item_id for taken in results for item_id in taken]
        assert len(all_ids) == 20
        assert len(set(all_ids)) == 20


# ============================================================
# TEST CLASS: Transitions
# ============================================================

class TestTransitions:

    async def test_complete_stores_result(self, memory_store) -> None:
        await create_batch(memory_store, rows(2))
        item = await memory_store.claim('w1', T0)

        transition = await memory_store.complete(item.id, 'w1', make_result(FlagStatus.FLAGGED), T0)

        assert transition.item.status == WorkItemStatus.COMPLETED
        assert transition.item.result.flag_status == FlagStatus.FLAGGED
        assert transition.item.completed_at == T0
        assert transition.finished_batch is None

    async def test_complete_by_other_worker_is_ignored(self, memory_store) -> None:
        await create_batch(memory_store, rows(1))
        item = await memory_store.claim('w1', T0)

        transition = await memory_store.complete(item.id, 'w2', make_result(), T0)

        assert transition is None
        assert (await memory_store.get_item(item.id)).status == WorkItemStatus.PROCESSING

    async def test_transient_failure_requeues_with_backoff(self) -> None:
        # Arrange
        store = MemoryWorkItemStore(QueuePolicy(max_attempts=3, backoff_base_seconds=2, backoff_max_seconds=60))
        await create_batch(store, rows(1))
        item = await store.claim('w1', T0)

        # Act
        transition = await store.fail(item.id, 'w1', 'timeout', True, T0)

        # Assert
        assert transition.requeued is True
        assert transition.item.status == WorkItemStatus.PENDING
        assert transition.item.attempts == 1
        assert transition.item.last_error == 'timeout'
        assert transition.item.available_at == T0 + timedelta(seconds=2)
        assert await store.claim('w1', T0 + timedelta(seconds=1)) is None
        assert (await store.claim('w1', T0 + timedelta(seconds=2))).id == item.id

    async def test_attempts_never_exceed_max(self, memory_store) -> None:
        await create_batch(memory_store, rows(1))

        for _ in range(3):
            item = await memory_store.claim('w1', T0)
            transition = await memory_store.fail(item.id, 'w1', 'boom', True, T0)

        assert transition.requeued is False
        assert transition.item.status == WorkItemStatus.FAILED
        assert transition.item.attempts == 3
        assert await memory_store.claim('w1', T0) is None

    async def test_terminal_failure_is_immediate(self, memory_store) -> None:
        await create_batch(memory_store, rows(2))
        item = await memory_store.claim('w1', T0)

        transition = await memory_store.fail(item.id, 'w1', 'corrupt video', False, T0)

        assert transition.item.status == WorkItemStatus.FAILED
        assert transition.item.attempts == 1

    async def test_release_does_not_spend_an_attempt(self, memory_store) -> None:
        await create_batch(memory_store, rows(1))
        item = await memory_store.claim('w1', T0)

        released = await memory_store.release(item.id, 'w1')

        assert released.status == WorkItemStatus.PENDING
        assert released.attempts == 0
        assert released.assigned_worker_id is None

    async def test_returned_items_are_copies(self, memory_store) -> None:
        await create_batch(memory_store, rows(1))
        item = await memory_store.claim('w1', T0)

        await memory_store.complete(item.id, 'w1', make_result(), T0)

        assert item.status == WorkItemStatus.PROCESSING


# ============================================================
# TEST CLASS: Batch Lifecycle
# ============================================================

class TestBatchLifecycle:

    async def test_last_item_finishes_batch_once(self, memory_store) -> None:
        # Arrange
        await create_batch(memory_store, rows(2))
        first = await memory_store.claim('w1', T0)
        second = await memory_store.claim('w2', T0)

        # Act
        t1 = await memory_store.complete(first.id, 'w1', make_result(), T0)
        t2 = await memory_store.complete(second.id, 'w2', make_result(FlagStatus.FLAGGED), T0 + timedelta(seconds=1))

        # Assert
        assert t1.finished_batch is None
        assert t2.finished_batch is not None
        assert t2.finished_batch.status == BatchStatus.COMPLETED
        assert t2.finished_batch.processed_count == 2
        assert t2.finished_batch.flagged_count == 1
        assert t2.finished_batch.finished_at == T0 + timedelta(seconds=1)

    async def test_failed_items_count_as_processed_not_flagged(self, memory_store) -> None:
        await create_batch(memory_store, rows(2))
        first = await memory_store.claim('w1', T0)
        second = await memory_store.claim('w1', T0)

        await memory_store.complete(first.id, 'w1', make_result(FlagStatus.FLAGGED), T0)
        transition = await memory_store.fail(second.id, 'w1', 'bad', False, T0)

        batch = transition.finished_batch
        assert batch.status == BatchStatus.COMPLETED
        assert batch.processed_count == 2
        assert batch.failed_count == 1
        assert batch.flagged_count == 1

    async def test_all_items_failed_fails_batch(self, memory_store) -> None:
        await create_batch(memory_store, rows(1))
        item = await memory_store.claim('w1', T0)

        transition = await memory_store.fail(item.id, 'w1', 'bad', False, T0)

        assert transition.finished_batch.status == BatchStatus.FAILED

    async def test_retry_failed_resets_items_and_reopens(self, memory_store) -> None:
        # Arrange: batch finished with one failure
        await create_batch(memory_store, rows(2))
        first = await memory_store.claim('w1', T0)
        second = await memory_store.claim('w1', T0)
        await memory_store.complete(first.id, 'w1', make_result(), T0)
        await memory_store.fail(second.id, 'w1', 'bad', False, T0)

        # Act
        reset = await memory_store.retry_failed('b1', T0 + timedelta(minutes=1))

        # Assert
        assert reset == 1
        batch = await memory_store.get_batch('b1')
        assert batch.status == BatchStatus.PROCESSING
        assert batch.finished_at is None
        item = await memory_store.get_item(second.id)
        assert item.status == WorkItemStatus.PENDING
        assert item.attempts == 0
        assert item.last_error is None

    async def test_retry_without_failures_changes_nothing(self, memory_store) -> None:
        await create_batch(memory_store, rows(1))

        assert await memory_store.retry_failed('b1', T0) == 0

    async def test_retry_unknown_batch(self, memory_store) -> None:
        with pytest.raises(NotFoundError):
            await memory_store.retry_failed('missing', T0)

    async def test_abort_fails_pending_and_keeps_processing(self, memory_store) -> None:
        # Arrange
        await create_batch(memory_store, rows(3))
        held = await memory_store.claim('w1', T0)

        # Act
        batch = await memory_store.abort_batch('b1', 'wrong file', T0)

        # Assert
        assert batch.status == BatchStatus.FAILED
        assert batch.abort_reason == 'wrong file'
        assert batch.failed_count == 2
        assert (await memory_store.get_item(held.id)).status == WorkItemStatus.PROCESSING

        # The in-flight item still completes but the batch does not finish again
        transition = await memory_store.complete(held.id, 'w1', make_result(), T0)
        assert transition.finished_batch is None

    async def test_abort_finished_batch_conflicts(self, memory_store) -> None:
        await create_batch(memory_store, rows(1))
        item = await memory_store.claim('w1', T0)
        await memory_store.complete(item.id, 'w1', make_result(), T0)

        with pytest.raises(ConflictError):
            await memory_store.abort_batch('b1', 'late', T0)

    async def test_delete_with_item_in_processing_conflicts(self, memory_store) -> None:
        await create_batch(memory_store, rows(2))
        await memory_store.claim('w1', T0)

        with pytest.raises(ConflictError):
            await memory_store.delete_batch('b1')

    async def test_delete_removes_batch_and_items(self, memory_store) -> None:
        await create_batch(memory_store, rows(2))

        await memory_store.delete_batch('b1')

        assert await memory_store.get_batch('b1') is None
        assert await memory_store.list_items('b1') == []
        with pytest.raises(NotFoundError):
            await memory_store.delete_batch('b1')

    async def test_list_batches_filters_by_status(self, memory_store) -> None:
        await create_batch(memory_store, rows(1), batch_id='a')
        await create_batch(memory_store, rows(1), batch_id='b')
        item = await memory_store.claim('w1', T0)
        await memory_store.complete(item.id, 'w1', make_result(), T0)

        active = await memory_store.list_batches([BatchStatus.PROCESSING])

        assert [b.id for b in active] == ['b']

    async def test_list_items_filters_and_pages(self, memory_store) -> None:
        await create_batch(memory_store, rows(5))
        await memory_store.claim('w1', T0)

        pending = await memory_store.list_items('b1', status=WorkItemStatus.PENDING)
        page = await memory_store.list_items('b1', limit=2, offset=2)

        assert len(pending) == 4
        assert [i.external_ref for i in page] == ['u-2', 'u-3']

    async def test_snapshot_reports_counts_and_finish_times(self, memory_store) -> None:
        await create_batch(memory_store, rows(3))
        done = await memory_store.claim('w1', T0)
        await memory_store.claim('w2', T0)
        await memory_store.complete(done.id, 'w1', make_result(), T0 + timedelta(seconds=30))

        snap = await memory_store.snapshot('b1', T0)

        assert snap.pending == 1
        assert snap.processing == 1
        assert snap.batch.processed_count == 1
        assert snap.finish_times == [T0 + timedelta(seconds=30)]


# ============================================================
# TEST CLASS: Sweep and Queries
# ============================================================

class TestSweepAndQueries:

    async def test_sweep_requeues_stale_claims(self, memory_store) -> None:
        # Arrange
        await create_batch(memory_store, rows(2))
        stale = await memory_store.claim('w1', T0)
        fresh = await memory_store.claim('w2', T0 + timedelta(minutes=9))

        # Act: 5 minute timeout evaluated at T0 + 10m
        now = T0 + timedelta(minutes=10)
        transitions = await memory_store.sweep_stale(now - timedelta(minutes=5), now)

        # Assert
        assert [t.item.id for t in transitions] == [stale.id]
        assert transitions[0].requeued is True
        assert transitions[0].item.attempts == 1
        assert (await memory_store.get_item(fresh.id)).status == WorkItemStatus.PROCESSING

    async def test_late_completion_after_sweep_is_discarded(self, memory_store) -> None:
        await create_batch(memory_store, rows(1))
        item = await memory_store.claim('w1', T0)
        now = T0 + timedelta(minutes=10)
        await memory_store.sweep_stale(now - timedelta(minutes=5), now)
        await memory_store.claim('w2', now)

        assert await memory_store.complete(item.id, 'w1', make_result(), now) is None
        assert (await memory_store.complete(item.id, 'w2', make_result(), now)) is not None

    async def test_flagged_results_filters(self, memory_store, sample_items) -> None:
        # Arrange: flag everything
        await create_batch(memory_store, sample_items)
        while True:
            item = await memory_store.claim('w1', T0)
            if item is None:
                break
            await memory_store.complete(item.id, 'w1', make_result(FlagStatus.FLAGGED), T0)

        # Act
        everything = await memory_store.flagged_results(T0)
        high = await memory_store.flagged_results(T0, priorities=[Priority.HIGH])
        sop = await memory_store.flagged_results(T0, error_types=['sop'])
        later = await memory_store.flagged_results(T0 + timedelta(seconds=1))

        # Assert
        assert len(everything) == 10
        assert len(high) == 2
        assert all(i.error_type == 'sop' for i in sop) and len(sop) == 5
        assert later == []

    async def test_count_processing(self, memory_store) -> None:
        await create_batch(memory_store, rows(3))
        await memory_store.claim('w1', T0)
        await memory_store.claim('w2', T0)

        assert await memory_store.count_processing() == 2
