"""
Batch Coordinator.

Owns the batch lifecycle on top of the WorkItemStore:

    uploading -> processing -> completed | failed

- create_batch(): validate synchronously, persist the batch and its pending
  items, flip the batch to processing and wake idle workers.
- get_status(): progress snapshot for long-polling clients. Concurrent polls
  of one batch share a single in-flight read, keyed by batch id.
- retry_failed(), abort(), delete_batch(), list_active(), list_items().
- announce_finished_batch(): registered as a WorkerPool batch listener; sends
  a completion notice for batches created with a notify_channel.

Progress rate:
    Finish times inside the trailing RATE_WINDOW_MINUTES are bucketed per
    minute (numpy), aligned so the newest bucket ends at `now`. The oldest
    bucket may cover less than a minute (window clipped to the batch's
    creation time) and is scaled up to a full minute. The rate is the
    exponentially weighted mean of the buckets (pandas ewm, adjust=False,
    alpha=RATE_EWMA_ALPHA), in items per minute.

    eta = now + remaining / rate, or 'unknown' while the rate is 0.
"""

import asyncio
import logging
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union
from uuid import uuid4

import numpy as np
import pandas as pd
import pydantic

from qc_backend.core.clock import Clock, utc_now
from qc_backend.core.errors import NotFoundError, ValidationError
from qc_backend.models import (
    Batch,
    BatchStatus,
    BatchStatusView,
    ValidationIssue,
    WorkItem,
    WorkItemInput,
    WorkItemKind,
    WorkItemStatus,
)
from qc_backend.services.work_item_store import WorkItemStore


logger = logging.getLogger(__name__)


ACTIVE_BATCH_STATUSES = (BatchStatus.UPLOADING, BatchStatus.PROCESSING)


def completion_rate(
    finish_times: Sequence[datetime],
    window_start: datetime,
    now: datetime,
    alpha: float,
) -> float:
    """
    Smoothed completions per minute over [window_start, now].

    Args:
        finish_times: When items reached a terminal state.
        window_start: Start of the trailing window (already clipped to the
            batch's creation time).
        now: End of the window.
        alpha: EWMA smoothing factor, 0 < alpha <= 1.

    Returns:
        float: Items per minute; 0.0 when nothing finished in the window.

    Example:
        >>> now = datetime(2024, 1, 15, 9, 10, tzinfo=timezone.utc)
        >>> times = [now - timedelta(seconds=s) for s in (5, 20, 70)]
        >>> completion_rate(times, now - timedelta(minutes=2), now, alpha=1.0)
        2.0
    """
    span = (now - window_start).total_seconds()
    if span <= 0:
        return 0.0

    n_buckets = max(1, math.ceil(span / 60.0))
    ages = np.array(
        [(now - t).total_seconds() for t in finish_times if window_start <= t <= now],
        dtype=float,
    )
    if ages.size == 0:
        return 0.0

    # bucket 0 is the oldest minute, n_buckets - 1 ends at `now`
    newest_first = np.minimum((ages // 60).astype(int), n_buckets - 1)
    counts = np.bincount(n_buckets - 1 - newest_first, minlength=n_buckets).astype(float)

    oldest_span = span - 60.0 * (n_buckets - 1)
    if 0 < oldest_span < 60.0:
        counts[0] *= 60.0 / oldest_span

    smoothed = pd.Series(counts).ewm(alpha=alpha, adjust=False).mean()
    return round(float(smoothed.iloc[-1]), 2)


class BatchCoordinator:
    """
    Batch lifecycle commands and progress queries.

    Args:
        store: WorkItemStore shared with the worker pool.
        settings: Settings (max_batch_items, rate_ewma_alpha, rate_window_minutes).
        pool: WorkerPool to wake when new work is queued. Optional in tests.
        dispatcher: Notification dispatcher for completion notices. Optional.
        clock: Time source.
    """

    def __init__(
        self,
        store: WorkItemStore,
        settings: Any,
        pool: Optional[Any] = None,
        dispatcher: Optional[Any] = None,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.settings = settings
        self.pool = pool
        self.dispatcher = dispatcher
        self._clock = clock
        self._inflight: Dict[str, asyncio.Future] = {}

    # =========================================================================
    # Commands
    # =========================================================================

    def _validate(
        self,
        source: str,
        items: Sequence[Union[WorkItemInput, Mapping[str, Any]]],
    ) -> List[WorkItemInput]:
        issues: List[ValidationIssue] = []
        parsed: List[WorkItemInput] = []

        if not source or not source.strip():
            issues.append(ValidationIssue(field="source", message="source must not be empty"))

        if not items:
            issues.append(ValidationIssue(field="items", message="a batch needs at least one item"))
        elif len(items) > self.settings.max_batch_items:
            issues.append(ValidationIssue(
                field="items",
                message=f"a batch holds at most {self.settings.max_batch_items} items, got {len(items)}",
            ))

        seen: Dict[str, int] = {}
        for row_number, raw in enumerate(items or [], start=1):
            try:
                item = raw if isinstance(raw, WorkItemInput) else WorkItemInput.model_validate(raw)
            except pydantic.ValidationError as e:
                for err in e.errors():
                    issues.append(ValidationIssue(
                        field=".".join(str(p) for p in err["loc"]) or "item",
                        message=err["msg"],
                        row_number=row_number,
                    ))
                continue

            if item.uuid in seen:
                issues.append(ValidationIssue(
                    field="uuid",
                    message=f"duplicate uuid '{item.uuid}' (first seen in row {seen[item.uuid]})",
                    row_number=row_number,
                ))
                continue
            seen[item.uuid] = row_number

            if item.kind == WorkItemKind.VIDEO and not item.video_url:
                issues.append(ValidationIssue(
                    field="video_url",
                    message="video items need a video_url",
                    row_number=row_number,
                ))
                continue

            parsed.append(item)

        if issues:
            raise ValidationError(
                f"Batch rejected with {len(issues)} validation error(s)",
                details=[issue.model_dump() for issue in issues],
            )
        return parsed

    async def create_batch(
        self,
        source: str,
        items: Sequence[Union[WorkItemInput, Mapping[str, Any]]],
        notify_channel: Optional[str] = None,
    ) -> Batch:
        """
        Validate and enqueue a batch.

        Raises:
            ValidationError: Empty source, no items, too many items, duplicate
                uuid, unknown kind/priority. Nothing is persisted.
        """
        parsed = self._validate(source, items)

        now = self._clock()
        batch_id = uuid4().hex
        batch = Batch(
            id=batch_id,
            source=source.strip(),
            total_items=len(parsed),
            notify_channel=notify_channel,
            created_at=now,
            updated_at=now,
        )
        # Zero-padded ids keep submission order as the tie-break within a priority
        work_items = [
            WorkItem(
                id=f"{batch_id}-{n:05d}",
                batch_id=batch_id,
                kind=item.kind,
                priority=item.priority,
                external_ref=item.uuid,
                error_type=item.error_type,
                agent_id=item.agent_id,
                video_url=item.video_url,
                created_at=now,
                available_at=now,
            )
            for n, item in enumerate(parsed)
        ]

        created = await self.store.create_batch(batch, work_items, now)
        logger.info(f"Created batch {batch_id} from '{created.source}' with {len(work_items)} items")

        if self.pool is not None:
            self.pool.notify_work_available()
        return created

    async def retry_failed(self, batch_id: str) -> int:
        """Reset every failed item of the batch to pending with a fresh attempt budget."""
        reset = await self.store.retry_failed(batch_id, self._clock())
        logger.info(f"Retry of batch {batch_id} reset {reset} failed item(s)")

        if reset and self.pool is not None:
            self.pool.notify_work_available()
        return reset

    async def abort(self, batch_id: str, reason: str) -> Batch:
        """
        Stop a batch: pending items fail with `reason`, the batch becomes
        failed. Items already in processing finish normally.
        """
        batch = await self.store.abort_batch(batch_id, reason, self._clock())
        logger.info(f"Aborted batch {batch_id}: {reason}")
        await self.announce_finished_batch(batch)
        return batch

    async def delete_batch(self, batch_id: str) -> None:
        """
        Raises:
            NotFoundError: Unknown batch.
            ConflictError: Some item is still in processing.
        """
        await self.store.delete_batch(batch_id)
        logger.info(f"Deleted batch {batch_id}")

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_batch(self, batch_id: str) -> Batch:
        batch = await self.store.get_batch(batch_id)
        if batch is None:
            raise NotFoundError(f"Batch {batch_id} not found")
        return batch

    async def list_active(self) -> List[Batch]:
        return await self.store.list_batches(ACTIVE_BATCH_STATUSES)

    async def list_items(
        self,
        batch_id: str,
        status: Optional[WorkItemStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[WorkItem]:
        await self.get_batch(batch_id)
        return await self.store.list_items(batch_id, status=status, limit=limit, offset=offset)

    async def get_status(self, batch_id: str) -> BatchStatusView:
        """
        Progress snapshot. Pollers arriving while a read for the same batch is
        in flight await that read instead of issuing their own.

        Raises:
            NotFoundError: Unknown batch.
        """
        pending = self._inflight.get(batch_id)
        if pending is None:
            pending = asyncio.ensure_future(self._read_status(batch_id))
            self._inflight[batch_id] = pending
            pending.add_done_callback(lambda done: self._forget(batch_id, done))
        return await asyncio.shield(pending)

    def _forget(self, batch_id: str, done: asyncio.Future) -> None:
        if self._inflight.get(batch_id) is done:
            del self._inflight[batch_id]

    async def _read_status(self, batch_id: str) -> BatchStatusView:
        now = self._clock()
        window_start = now - timedelta(minutes=self.settings.rate_window_minutes)

        snap = await self.store.snapshot(batch_id, window_start)
        if snap is None:
            raise NotFoundError(f"Batch {batch_id} not found")

        batch = snap.batch
        rate = completion_rate(
            snap.finish_times,
            max(window_start, batch.created_at),
            now,
            self.settings.rate_ewma_alpha,
        )

        remaining = batch.total_items - batch.processed_count
        if remaining <= 0:
            eta = (batch.finished_at or now).isoformat()
            eta_seconds: Optional[float] = 0.0
        elif rate > 0:
            eta_seconds = round(remaining / rate * 60.0, 1)
            eta = (now + timedelta(seconds=eta_seconds)).isoformat()
        else:
            eta = "unknown"
            eta_seconds = None

        return BatchStatusView(
            batch_id=batch.id,
            source=batch.source,
            status=batch.status,
            total=batch.total_items,
            processed=batch.processed_count,
            flagged=batch.flagged_count,
            failed=batch.failed_count,
            pending=snap.pending,
            processing=snap.processing,
            rate=rate,
            eta=eta,
            eta_seconds=eta_seconds,
        )

    # =========================================================================
    # Completion Notice
    # =========================================================================

    async def announce_finished_batch(self, batch: Batch) -> None:
        """Send the batch summary to its notify_channel, once per finish."""
        if not batch.notify_channel or self.dispatcher is None:
            return

        finished_at = (batch.finished_at or self._clock()).isoformat()
        message = (
            f"QC batch '{batch.source}' {batch.status.value}: "
            f"{batch.processed_count}/{batch.total_items} processed, "
            f"{batch.flagged_count} flagged, {batch.failed_count} failed."
        )
        if batch.abort_reason:
            message += f" Aborted: {batch.abort_reason}"

        result = await self.dispatcher.send(
            batch.notify_channel,
            message,
            [],
            f"batch:{batch.id}:{finished_at}",
        )
        if not result.delivered and not result.duplicate:
            logger.warning(f"Completion notice for batch {batch.id} not delivered: {result.error}")
