"""
Scheduler Engine.

Owns ScheduledReport definitions and their append-only ReportRun history,
and runs due reports.

Tick (every SCHEDULER_TICK_SECONDS, from a report_generation sub-agent):
    1. Select active reports with next_run_at <= now.
    2. For each, try the per-report lock conditioned on the slot it was
       selected for. A report whose lock is taken, or whose slot another
       engine already ran, is skipped silently.
    3. Hand each locked report to a background task bounded by
       SCHEDULER_MAX_CONCURRENT_RUNS and return without awaiting it.

Report run:
    generate (ReportBuilder) -> dispatch (TeamsDispatcher, awaited inside the
    task) -> ReportRun{completed|failed}. A report with fewer than
    filters.min_flagged_items flagged items completes without sending.
    Afterwards last_run_at = tick time, next_run_at = next cron slot and the
    lock is released in one store call, whatever the outcome.

Manual runs (run_now) take the same path with trigger='manual', hold the lock
for their duration and never move last_run_at / next_run_at.

Schedule maintenance:
    next_run_at is recomputed strictly after max(last_run_at or created_at, now)
    on create, on every edit and on re-activation. An expression that never
    fires within SCHEDULE_SEARCH_HORIZON_DAYS switches the report off with
    misconfigured=true and next_run_at=null.

Usage:
    engine = SchedulerEngine(report_store, ReportBuilder(item_store), dispatcher, settings)
    pool.add_worker(WorkerType.REPORT_GENERATION, runner=engine.run_loop)
    ...
    report = await engine.create_report(ScheduledReportCreate(...))
    run = await engine.run_now(report.id)
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Any, List, Optional, Set, Tuple
from uuid import uuid4

from qc_backend.core.clock import Clock, utc_now
from qc_backend.core.errors import ConflictError, NotFoundError, SchedulerMisconfiguration
from qc_backend.models import (
    ReportRun,
    ReportRunStatus,
    ReportType,
    RunTrigger,
    ScheduledReport,
    ScheduledReportCreate,
    ScheduledReportUpdate,
    SchedulerState,
    WorkerStatus,
)
from qc_backend.services.cron import CronExpression, expression_for
from qc_backend.services.report_builder import ReportBuilder
from qc_backend.services.report_store import ReportStore


logger = logging.getLogger(__name__)


def _time_of(expression: str) -> Optional[str]:
    """'30 9 * * 1' -> '09:30'; hourly '15 * * * *' -> '00:15'. None when minute is not a literal."""
    parts = expression.split()
    if len(parts) != 5 or not parts[0].isdigit():
        return None
    hour = int(parts[1]) if parts[1].isdigit() else 0
    return f"{hour:02d}:{int(parts[0]):02d}"


def _days_of(expression: str) -> List[int]:
    parts = expression.split()
    if len(parts) == 5 and parts[4] != "*":
        return [int(d) for d in parts[4].split(",") if d.isdigit()]
    return []


class SchedulerEngine:
    """
    Report scheduling and execution.

    Args:
        store: ReportStore with definitions, locks and run history.
        builder: Report generation collaborator.
        dispatcher: Notification dispatcher; send() never raises.
        settings: Settings (tick interval, concurrency bound, lock TTL, horizon).
        clock: Time source.
        owner: Lock owner id. Two engines sharing a store must differ.
    """

    def __init__(
        self,
        store: ReportStore,
        builder: ReportBuilder,
        dispatcher: Any,
        settings: Any,
        clock: Clock = utc_now,
        owner: Optional[str] = None,
    ):
        self.store = store
        self.builder = builder
        self.dispatcher = dispatcher
        self.settings = settings
        self.owner = owner or f"{settings.instance_name}-scheduler-{uuid4().hex[:8]}"
        self._clock = clock
        self._semaphore = asyncio.Semaphore(settings.scheduler_max_concurrent_runs)
        self._tasks: Set[asyncio.Task] = set()
        self._ticking = False
        self._running = False
        self._ticks = 0
        self._last_tick_at: Optional[datetime] = None
        self._handle = None

    @property
    def lock_ttl(self) -> timedelta:
        return timedelta(seconds=self.settings.report_lock_ttl_seconds)

    # =========================================================================
    # Schedule Helpers
    # =========================================================================

    def _next_slot(self, expression: str, after: datetime) -> Tuple[Optional[datetime], bool]:
        """Return (next_run_at, misconfigured) for an already-parsed expression."""
        try:
            slot = CronExpression.parse(expression).next_after(
                after, self.settings.schedule_search_horizon_days
            )
        except SchedulerMisconfiguration as e:
            logger.warning(f"Schedule '{expression}' disabled: {e.message}")
            return None, True
        return slot, False

    def _reschedule(self, report: ScheduledReport, now: datetime) -> ScheduledReport:
        """Recompute next_run_at; an active report that can never fire is switched off."""
        if not report.is_active:
            report.next_run_at = None
            return report

        anchor = max(report.last_run_at or report.created_at, now)
        slot, misconfigured = self._next_slot(report.schedule_expression, anchor)
        report.next_run_at = slot
        report.misconfigured = misconfigured
        if misconfigured:
            report.is_active = False
        return report

    # =========================================================================
    # Report Definitions
    # =========================================================================

    async def create_report(self, data: ScheduledReportCreate) -> ScheduledReport:
        """
        Raises:
            SchedulerMisconfiguration: custom report without an expression, or
                an expression / time that does not parse.
        """
        expression = expression_for(
            data.report_type,
            data.schedule_time,
            data.schedule_days,
            data.schedule_expression,
        )
        now = self._clock()
        report = ScheduledReport(
            id=uuid4().hex,
            name=data.name,
            report_type=data.report_type,
            schedule_expression=expression,
            filters=data.filters,
            channel=data.channel,
            tag_recipients=data.tag_recipients,
            custom_message=data.custom_message,
            is_active=data.is_active,
            created_at=now,
            updated_at=now,
        )
        self._reschedule(report, now)

        created = await self.store.create(report)
        logger.info(
            f"Created scheduled report {created.id} '{created.name}' ({expression}), "
            f"next run {created.next_run_at}"
        )
        return created

    async def get_report(self, report_id: str) -> ScheduledReport:
        report = await self.store.get(report_id)
        if report is None:
            raise NotFoundError(f"Scheduled report {report_id} not found")
        return report

    async def list_reports(self) -> List[ScheduledReport]:
        return await self.store.list()

    async def update_report(self, report_id: str, changes: ScheduledReportUpdate) -> ScheduledReport:
        """
        Apply a partial edit and recompute next_run_at.

        Schedule fields left out are taken from the current expression, so
        changing only schedule_time of a weekly report keeps its days.
        """
        current = await self.get_report(report_id)
        fields = changes.model_dump(exclude_unset=True)

        report_type = changes.report_type or current.report_type
        schedule_touched = any(
            k in fields for k in ("report_type", "schedule_expression", "schedule_time", "schedule_days")
        )

        expression = current.schedule_expression
        if schedule_touched:
            if changes.schedule_expression:
                expression = expression_for(report_type, schedule_expression=changes.schedule_expression)
            elif report_type == ReportType.CUSTOM and changes.schedule_time is None and changes.schedule_days is None:
                expression = current.schedule_expression
            else:
                expression = expression_for(
                    report_type,
                    changes.schedule_time or _time_of(current.schedule_expression),
                    changes.schedule_days if changes.schedule_days is not None else _days_of(current.schedule_expression),
                )

        now = self._clock()
        updated = current.model_copy(update={
            'name': changes.name or current.name,
            'report_type': report_type,
            'schedule_expression': expression,
            'filters': changes.filters or current.filters,
            'channel': changes.channel or current.channel,
            'tag_recipients': current.tag_recipients if changes.tag_recipients is None else changes.tag_recipients,
            'custom_message': changes.custom_message if 'custom_message' in fields else current.custom_message,
            'misconfigured': False,
            'is_active': current.is_active or current.misconfigured,
            'updated_at': now,
        })
        self._reschedule(updated, now)

        saved = await self.store.update(updated)
        if saved is None:
            raise NotFoundError(f"Scheduled report {report_id} not found")
        logger.info(f"Updated scheduled report {report_id}, next run {saved.next_run_at}")
        return saved

    async def toggle(self, report_id: str) -> ScheduledReport:
        """Flip is_active. Re-activation recomputes next_run_at from now."""
        current = await self.get_report(report_id)
        now = self._clock()

        updated = current.model_copy(update={
            'is_active': not current.is_active,
            'misconfigured': False,
            'updated_at': now,
        })
        self._reschedule(updated, now)

        saved = await self.store.update(updated)
        if saved is None:
            raise NotFoundError(f"Scheduled report {report_id} not found")
        logger.info(f"Scheduled report {report_id} is now {'active' if saved.is_active else 'inactive'}")
        return saved

    async def delete_report(self, report_id: str) -> None:
        if not await self.store.delete(report_id):
            raise NotFoundError(f"Scheduled report {report_id} not found")
        logger.info(f"Deleted scheduled report {report_id}")

    async def list_runs(self, report_id: str, limit: int = 50, offset: int = 0) -> List[ReportRun]:
        await self.get_report(report_id)
        return await self.store.list_runs(report_id, limit=limit, offset=offset)

    async def recent_runs(self, limit: int = 50) -> List[ReportRun]:
        return await self.store.recent_runs(limit)

    # =========================================================================
    # Tick
    # =========================================================================

    async def tick(self) -> List[str]:
        """
        Start every due report this engine can lock.

        Returns:
            List[str]: Ids of the reports handed to background runs. Empty when
                another tick of this engine is still selecting.
        """
        if self._ticking:
            logger.debug("Scheduler tick skipped: previous tick still running")
            return []

        self._ticking = True
        try:
            now = self._clock()
            self._ticks += 1
            self._last_tick_at = now

            started: List[str] = []
            for report in await self.store.due(now):
                locked = await self.store.acquire_lock(
                    report.id,
                    self.owner,
                    now + self.lock_ttl,
                    now,
                    slot=report.next_run_at,
                )
                if locked is None:
                    continue

                task = asyncio.create_task(self._run_scheduled(locked, now), name=f"report-{report.id}")
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
                started.append(report.id)

            if started:
                logger.info(f"Scheduler tick started {len(started)} report run(s)")
            return started
        finally:
            self._ticking = False

    async def _renew_lock(self, report_id: str) -> bool:
        """Restart the lock TTL once a run leaves the semaphore queue."""
        return await self.store.renew_lock(report_id, self.owner, self._clock() + self.lock_ttl)

    async def _run_scheduled(self, report: ScheduledReport, now: datetime) -> Optional[ReportRun]:
        slot = report.next_run_at or now
        async with self._semaphore:
            if not await self._renew_lock(report.id):
                logger.warning(
                    f"Lock on report {report.id} expired while queued; slot {slot.isoformat()} left to its new owner"
                )
                return None

            run = None
            try:
                run = await self._run_report(report, now, RunTrigger.SCHEDULED, f"report:{report.id}:{slot.isoformat()}")
            finally:
                next_run_at, misconfigured = self._next_slot(report.schedule_expression, max(now, self._clock()))
                try:
                    await self.store.finish_scheduled_run(
                        report.id,
                        self.owner,
                        now,
                        slot,
                        report.schedule_expression,
                        next_run_at,
                        misconfigured,
                    )
                except Exception:
                    logger.exception(f"Could not record finished run of report {report.id}; lock expires by TTL")
        return run

    async def _run_report(
        self,
        report: ScheduledReport,
        now: datetime,
        trigger: RunTrigger,
        token: str,
    ) -> ReportRun:
        """Generate and dispatch one report and append its ReportRun. Never raises."""
        run = ReportRun(
            id=uuid4().hex,
            report_id=report.id,
            run_at=now,
            trigger=trigger,
            status=ReportRunStatus.COMPLETED,
        )
        started = time.monotonic()
        if self._handle is not None:
            self._handle.worker.items_assigned += 1
            self._handle.set_status(WorkerStatus.ACTIVE, task=f"Running report {report.name}")

        try:
            generated = await self.builder.build(report, now)
            run.flagged_items = generated.flagged_items

            if generated.flagged_items < report.filters.min_flagged_items:
                logger.info(
                    f"Report {report.id}: {generated.flagged_items} flagged item(s), below "
                    f"minimum {report.filters.min_flagged_items}; nothing sent"
                )
            else:
                result = await self.dispatcher.send(
                    report.channel,
                    generated.message,
                    generated.recipients,
                    token,
                    title=generated.title,
                )
                run.delivery_token = token
                if result.delivered:
                    run.dispatched = True
                    run.recipients_notified = result.recipients
                elif result.duplicate:
                    run.error_message = f"Notification {token} was already sent ({result.status.value})"
                else:
                    run.status = ReportRunStatus.FAILED
                    run.error_message = result.error or "Dispatch failed"
        except Exception as e:
            logger.exception(f"Report {report.id} run failed")
            run.status = ReportRunStatus.FAILED
            run.error_message = str(e) or e.__class__.__name__

        try:
            await self.store.add_run(run)
        except Exception:
            logger.exception(f"Could not store run {run.id} of report {report.id}")

        if self._handle is not None:
            self._handle.record_outcome(run.status == ReportRunStatus.COMPLETED, time.monotonic() - started)
            self._handle.idle()

        logger.info(f"Report {report.id} {trigger.value} run {run.status.value} (dispatched={run.dispatched})")
        return run

    # =========================================================================
    # Manual Runs
    # =========================================================================

    async def run_now(self, report_id: str) -> ReportRun:
        """
        Run a report immediately, regardless of is_active.

        Raises:
            NotFoundError: Unknown report.
            ConflictError: The report is already running.
        """
        await self.get_report(report_id)
        now = self._clock()

        locked = await self.store.acquire_lock(report_id, self.owner, now + self.lock_ttl, now)
        if locked is None:
            raise ConflictError(f"Scheduled report {report_id} is already running")

        run_id = uuid4().hex
        try:
            async with self._semaphore:
                if not await self._renew_lock(report_id):
                    raise ConflictError(f"Scheduled report {report_id} lock expired before the run started")
                return await self._run_report(locked, now, RunTrigger.MANUAL, f"report:{report_id}:manual:{run_id}")
        finally:
            await self.store.release_lock(report_id, self.owner)

    # =========================================================================
    # Loop and Status
    # =========================================================================

    async def run_loop(self, handle: Any) -> None:
        """WorkerRunner for the report_generation sub-agent."""
        self._handle = handle
        self._running = True
        try:
            while True:
                await handle.wait_until_resumed()

                try:
                    await self.tick()
                except Exception as e:
                    logger.exception("Scheduler tick failed")
                    handle.fault(e)
                else:
                    if not self._tasks:
                        handle.idle()

                await asyncio.sleep(self.settings.scheduler_tick_seconds)
        finally:
            self._running = False

    async def drain(self) -> None:
        """Wait for every background run started by past ticks."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel background runs; their locks lapse after REPORT_LOCK_TTL_SECONDS."""
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()

    async def status(self) -> SchedulerState:
        return SchedulerState(
            running=self._running,
            ticks=self._ticks,
            in_flight=len(self._tasks),
            last_tick_at=self._last_tick_at,
            active_reports=await self.store.count_active(),
        )
