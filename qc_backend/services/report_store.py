"""
Durable state for the scheduler and the dispatcher.

- ReportStore: scheduled report definitions, the per-report lock and the
  append-only run history.
- DeliveryLedger: notification delivery rows keyed by deduplication token.

Each has an in-memory implementation (single asyncio.Lock, used when
DATABASE_URL is unset and in tests) and a PostgreSQL one built on
qc_backend.sql.report_queries.

Per-report lock:
    acquire_lock() is a compare-and-swap on (lock_owner, locked_until). With
    `slot` given it additionally requires is_active and next_run_at == slot,
    which is what makes a scheduled slot run at most once even when several
    scheduler engines share a store. renew_lock() restarts the TTL when a
    queued run actually starts. finish_scheduled_run() advances the schedule
    and releases the lock in the same step, unless an edit made during the
    run already moved the report off the slot.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from qc_backend.core.database import affected_rows, get_db_pool
from qc_backend.models import (
    DeliveryStatus,
    NotificationDelivery,
    ReportRun,
    ScheduledReport,
)
from qc_backend.sql import report_queries as q


logger = logging.getLogger(__name__)


# =============================================================================
# Interfaces
# =============================================================================

class ReportStore(ABC):
    """Abstract store for scheduled reports and their runs."""

    @abstractmethod
    async def create(self, report: ScheduledReport) -> ScheduledReport:
        ...

    @abstractmethod
    async def get(self, report_id: str) -> Optional[ScheduledReport]:
        ...

    @abstractmethod
    async def list(self) -> List[ScheduledReport]:
        ...

    @abstractmethod
    async def update(self, report: ScheduledReport) -> Optional[ScheduledReport]:
        """Write the definition fields. Lock and run bookkeeping are untouched."""

    @abstractmethod
    async def delete(self, report_id: str) -> bool:
        """Remove the report and its run history. False when it did not exist."""

    @abstractmethod
    async def due(self, now: datetime) -> List[ScheduledReport]:
        """Active reports whose next_run_at <= now, soonest first."""

    @abstractmethod
    async def acquire_lock(
        self,
        report_id: str,
        owner: str,
        locked_until: datetime,
        now: datetime,
        slot: Optional[datetime] = None,
    ) -> Optional[ScheduledReport]:
        """
        Take the per-report lock.

        Args:
            slot: For scheduled runs, the next_run_at the caller selected. The
                lock is only granted while the report is active and still
                scheduled for that slot.

        Returns:
            The locked report, or None when another owner holds a live lock
            or the slot has moved on.
        """

    @abstractmethod
    async def release_lock(self, report_id: str, owner: str) -> None:
        ...

    @abstractmethod
    async def renew_lock(self, report_id: str, owner: str, locked_until: datetime) -> bool:
        """Push locked_until forward. False when `owner` no longer holds the lock."""

    @abstractmethod
    async def finish_scheduled_run(
        self,
        report_id: str,
        owner: str,
        ran_at: datetime,
        slot: datetime,
        expression: str,
        next_run_at: Optional[datetime],
        misconfigured: bool = False,
    ) -> Optional[ScheduledReport]:
        """
        Record last_run_at, advance the schedule and release the lock.

        next_run_at and misconfigured are only written while the report is
        still scheduled for `slot` under `expression`; an edit or toggle made
        during the run has already rescheduled it. A misconfigured schedule
        also switches the report off.
        """

    @abstractmethod
    async def add_run(self, run: ReportRun) -> ReportRun:
        ...

    @abstractmethod
    async def list_runs(self, report_id: str, limit: int = 50, offset: int = 0) -> List[ReportRun]:
        """Runs of one report, newest first."""

    @abstractmethod
    async def recent_runs(self, limit: int = 50) -> List[ReportRun]:
        ...

    @abstractmethod
    async def count_active(self) -> int:
        ...


class DeliveryLedger(ABC):
    """Abstract idempotency ledger for outgoing notifications."""

    @abstractmethod
    async def reserve(self, token: str, channel: str, now: datetime) -> Optional[NotificationDelivery]:
        """
        Mark a token pending before sending.

        Returns:
            The reserved row when the token is new or its last attempt
            definitely failed; None when it is pending, delivered or unknown.
        """

    @abstractmethod
    async def get(self, token: str) -> Optional[NotificationDelivery]:
        ...

    @abstractmethod
    async def record(
        self,
        token: str,
        status: DeliveryStatus,
        attempts: int,
        error: Optional[str],
        now: datetime,
    ) -> Optional[NotificationDelivery]:
        """Store the outcome of a send; `attempts` is added to the running count."""


# =============================================================================
# In-Memory Implementations
# =============================================================================

class MemoryReportStore(ReportStore):

    def __init__(self):
        self._lock = asyncio.Lock()
        self._reports: Dict[str, ScheduledReport] = {}
        self._runs: List[ReportRun] = []

    @staticmethod
    def _lock_free(report: ScheduledReport, now: datetime) -> bool:
        return report.lock_owner is None or report.locked_until is None or report.locked_until < now

    async def create(self, report: ScheduledReport) -> ScheduledReport:
        async with self._lock:
            self._reports[report.id] = report.model_copy(deep=True)
            return report.model_copy(deep=True)

    async def get(self, report_id: str) -> Optional[ScheduledReport]:
        async with self._lock:
            report = self._reports.get(report_id)
            return report.model_copy(deep=True) if report else None

    async def list(self) -> List[ScheduledReport]:
        async with self._lock:
            reports = sorted(self._reports.values(), key=lambda r: (r.created_at, r.id))
            return [r.model_copy(deep=True) for r in reports]

    async def update(self, report: ScheduledReport) -> Optional[ScheduledReport]:
        async with self._lock:
            current = self._reports.get(report.id)
            if current is None:
                return None
            updated = report.model_copy(
                deep=True,
                update={
                    'last_run_at': current.last_run_at,
                    'lock_owner': current.lock_owner,
                    'locked_until': current.locked_until,
                },
            )
            self._reports[report.id] = updated
            return updated.model_copy(deep=True)

    async def delete(self, report_id: str) -> bool:
        async with self._lock:
            if self._reports.pop(report_id, None) is None:
                return False
            self._runs = [r for r in self._runs if r.report_id != report_id]
            return True

    async def due(self, now: datetime) -> List[ScheduledReport]:
        async with self._lock:
            reports = [
                r for r in self._reports.values()
                if r.is_active and r.next_run_at is not None and r.next_run_at <= now
            ]
            reports.sort(key=lambda r: (r.next_run_at, r.id))
            return [r.model_copy(deep=True) for r in reports]

    async def acquire_lock(
        self,
        report_id: str,
        owner: str,
        locked_until: datetime,
        now: datetime,
        slot: Optional[datetime] = None,
    ) -> Optional[ScheduledReport]:
        async with self._lock:
            report = self._reports.get(report_id)
            if report is None or not self._lock_free(report, now):
                return None
            if slot is not None and (not report.is_active or report.next_run_at != slot):
                return None

            report.lock_owner = owner
            report.locked_until = locked_until
            return report.model_copy(deep=True)

    async def release_lock(self, report_id: str, owner: str) -> None:
        async with self._lock:
            report = self._reports.get(report_id)
            if report is not None and report.lock_owner == owner:
                report.lock_owner = None
                report.locked_until = None

    async def renew_lock(self, report_id: str, owner: str, locked_until: datetime) -> bool:
        async with self._lock:
            report = self._reports.get(report_id)
            if report is None or report.lock_owner != owner:
                return False
            report.locked_until = locked_until
            return True

    async def finish_scheduled_run(
        self,
        report_id: str,
        owner: str,
        ran_at: datetime,
        slot: datetime,
        expression: str,
        next_run_at: Optional[datetime],
        misconfigured: bool = False,
    ) -> Optional[ScheduledReport]:
        async with self._lock:
            report = self._reports.get(report_id)
            if report is None or report.lock_owner != owner:
                return None

            report.last_run_at = ran_at
            if report.next_run_at == slot and report.schedule_expression == expression:
                report.next_run_at = next_run_at
                report.misconfigured = misconfigured
                report.is_active = report.is_active and not misconfigured
            report.lock_owner = None
            report.locked_until = None
            report.updated_at = ran_at
            return report.model_copy(deep=True)

    async def add_run(self, run: ReportRun) -> ReportRun:
        async with self._lock:
            self._runs.append(run.model_copy(deep=True))
            return run

    async def list_runs(self, report_id: str, limit: int = 50, offset: int = 0) -> List[ReportRun]:
        async with self._lock:
            runs = [r for r in self._runs if r.report_id == report_id]
            runs.sort(key=lambda r: r.run_at, reverse=True)
            return [r.model_copy(deep=True) for r in runs[offset:offset + limit]]

    async def recent_runs(self, limit: int = 50) -> List[ReportRun]:
        async with self._lock:
            runs = sorted(self._runs, key=lambda r: r.run_at, reverse=True)
            return [r.model_copy(deep=True) for r in runs[:limit]]

    async def count_active(self) -> int:
        async with self._lock:
            return sum(1 for r in self._reports.values() if r.is_active)


class MemoryDeliveryLedger(DeliveryLedger):

    def __init__(self):
        self._lock = asyncio.Lock()
        self._rows: Dict[str, NotificationDelivery] = {}

    async def reserve(self, token: str, channel: str, now: datetime) -> Optional[NotificationDelivery]:
        async with self._lock:
            row = self._rows.get(token)
            if row is None:
                row = NotificationDelivery(
                    dedup_token=token,
                    channel=channel,
                    status=DeliveryStatus.PENDING,
                    created_at=now,
                    updated_at=now,
                )
                self._rows[token] = row
                return row.model_copy()

            if row.status != DeliveryStatus.FAILED:
                return None

            row.status = DeliveryStatus.PENDING
            row.channel = channel
            row.updated_at = now
            return row.model_copy()

    async def get(self, token: str) -> Optional[NotificationDelivery]:
        async with self._lock:
            row = self._rows.get(token)
            return row.model_copy() if row else None

    async def record(
        self,
        token: str,
        status: DeliveryStatus,
        attempts: int,
        error: Optional[str],
        now: datetime,
    ) -> Optional[NotificationDelivery]:
        async with self._lock:
            row = self._rows.get(token)
            if row is None:
                return None
            row.status = status
            row.attempts += attempts
            row.last_error = error
            row.updated_at = now
            return row.model_copy()


# =============================================================================
# PostgreSQL Implementations
# =============================================================================

def _loads(value: Any) -> Any:
    return json.loads(value) if isinstance(value, str) else value


def _row_to_report(row: Any) -> ScheduledReport:
    data = dict(row)
    data['filters'] = _loads(data.get('filters')) or {}
    return ScheduledReport(**data)


def _row_to_run(row: Any) -> ReportRun:
    data = dict(row)
    data['recipients_notified'] = _loads(data.get('recipients_notified')) or []
    return ReportRun(**data)


class PostgresReportStore(ReportStore):
    """asyncpg-backed report store. Every lock transition is a single UPDATE."""

    async def create(self, report: ScheduledReport) -> ScheduledReport:
        pool = await get_db_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                q.INSERT_REPORT,
                report.id,
                report.name,
                report.report_type.value,
                report.schedule_expression,
                report.filters.model_dump_json(),
                report.channel,
                report.tag_recipients,
                report.custom_message,
                report.is_active,
                report.misconfigured,
                report.last_run_at,
                report.next_run_at,
                report.created_at,
                report.updated_at,
            )
            return _row_to_report(row)

    async def get(self, report_id: str) -> Optional[ScheduledReport]:
        pool = await get_db_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(q.SELECT_REPORT, report_id)
            return _row_to_report(row) if row else None

    async def list(self) -> List[ScheduledReport]:
        pool = await get_db_pool()

        async with pool.acquire() as conn:
            rows = await conn.fetch(q.SELECT_REPORTS)
            return [_row_to_report(row) for row in rows]

    async def update(self, report: ScheduledReport) -> Optional[ScheduledReport]:
        pool = await get_db_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                q.UPDATE_REPORT,
                report.id,
                report.name,
                report.report_type.value,
                report.schedule_expression,
                report.filters.model_dump_json(),
                report.channel,
                report.tag_recipients,
                report.custom_message,
                report.is_active,
                report.misconfigured,
                report.next_run_at,
                report.updated_at,
            )
            return _row_to_report(row) if row else None

    async def delete(self, report_id: str) -> bool:
        pool = await get_db_pool()

        async with pool.acquire() as conn:
            status = await conn.execute(q.DELETE_REPORT, report_id)
            return affected_rows(status) > 0

    async def due(self, now: datetime) -> List[ScheduledReport]:
        pool = await get_db_pool()

        async with pool.acquire() as conn:
            rows = await conn.fetch(q.SELECT_DUE_REPORTS, now)
            return [_row_to_report(row) for row in rows]

    async def acquire_lock(
        self,
        report_id: str,
        owner: str,
        locked_until: datetime,
        now: datetime,
        slot: Optional[datetime] = None,
    ) -> Optional[ScheduledReport]:
        pool = await get_db_pool()

        async with pool.acquire() as conn:
            if slot is None:
                row = await conn.fetchrow(q.ACQUIRE_LOCK_MANUAL, report_id, owner, locked_until, now)
            else:
                row = await conn.fetchrow(q.ACQUIRE_LOCK_FOR_SLOT, report_id, owner, locked_until, now, slot)
            return _row_to_report(row) if row else None

    async def release_lock(self, report_id: str, owner: str) -> None:
        pool = await get_db_pool()

        async with pool.acquire() as conn:
            await conn.execute(q.RELEASE_LOCK, report_id, owner)

    async def renew_lock(self, report_id: str, owner: str, locked_until: datetime) -> bool:
        pool = await get_db_pool()

        async with pool.acquire() as conn:
            status = await conn.execute(q.RENEW_LOCK, report_id, owner, locked_until)
            return affected_rows(status) > 0

    async def finish_scheduled_run(
        self,
        report_id: str,
        owner: str,
        ran_at: datetime,
        slot: datetime,
        expression: str,
        next_run_at: Optional[datetime],
        misconfigured: bool = False,
    ) -> Optional[ScheduledReport]:
        pool = await get_db_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                q.FINISH_SCHEDULED_RUN,
                report_id,
                owner,
                ran_at,
                slot,
                expression,
                next_run_at,
                misconfigured,
            )
            return _row_to_report(row) if row else None

    async def add_run(self, run: ReportRun) -> ReportRun:
        pool = await get_db_pool()

        async with pool.acquire() as conn:
            await conn.execute(
                q.INSERT_REPORT_RUN,
                run.id,
                run.report_id,
                run.run_at,
                run.trigger.value,
                run.status.value,
                run.flagged_items,
                run.dispatched,
                json.dumps(run.recipients_notified),
                run.delivery_token,
                run.error_message,
            )
        return run

    async def list_runs(self, report_id: str, limit: int = 50, offset: int = 0) -> List[ReportRun]:
        pool = await get_db_pool()

        async with pool.acquire() as conn:
            rows = await conn.fetch(q.SELECT_REPORT_RUNS, report_id, limit, offset)
            return [_row_to_run(row) for row in rows]

    async def recent_runs(self, limit: int = 50) -> List[ReportRun]:
        pool = await get_db_pool()

        async with pool.acquire() as conn:
            rows = await conn.fetch(q.SELECT_RECENT_RUNS, limit)
            return [_row_to_run(row) for row in rows]

    async def count_active(self) -> int:
        pool = await get_db_pool()

        async with pool.acquire() as conn:
            return await conn.fetchval(q.COUNT_ACTIVE_REPORTS) or 0


class PostgresDeliveryLedger(DeliveryLedger):
    """
    asyncpg-backed ledger. reserve() is one upsert, so two dispatchers racing
    on the same token cannot both get a row back.
    """

    async def reserve(self, token: str, channel: str, now: datetime) -> Optional[NotificationDelivery]:
        pool = await get_db_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(q.RESERVE_DELIVERY, token, channel, now)
            return NotificationDelivery(**dict(row)) if row else None

    async def get(self, token: str) -> Optional[NotificationDelivery]:
        pool = await get_db_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(q.SELECT_DELIVERY, token)
            return NotificationDelivery(**dict(row)) if row else None

    async def record(
        self,
        token: str,
        status: DeliveryStatus,
        attempts: int,
        error: Optional[str],
        now: datetime,
    ) -> Optional[NotificationDelivery]:
        pool = await get_db_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(q.UPDATE_DELIVERY, token, status.value, attempts, error, now)
            return NotificationDelivery(**dict(row)) if row else None
