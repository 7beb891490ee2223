"""
Pytest test module for scheduled reports: the SchedulerEngine and the
ReportBuilder it drives.

Tests cover:
1. Tick selection, slot locking and at-most-once runs across engines
2. ReportRun outcomes (sent, below minimum, duplicate, dispatch failure)
3. Manual runs and the per-report lock
4. Schedule maintenance: create, update, toggle, misconfiguration
5. Report content: window, filters, recipients, pandas summary

Test Classes:
- TestTick
- TestRunOutcomes
- TestRunNow
- TestReportDefinitions
- TestReportBuilder
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, Mock

import pytest

from qc_backend.core.errors import ConflictError, NotFoundError, SchedulerMisconfiguration
from qc_backend.jobs.teams_dispatch import TeamsDispatcher
from qc_backend.models import (
    DeliveryStatus,
    FlagStatus,
    Priority,
    ReportFilters,
    ReportRunStatus,
    ReportType,
    RunTrigger,
    ScheduledReportCreate,
    ScheduledReportUpdate,
)
from qc_backend.services.batch_coordinator import BatchCoordinator
from qc_backend.services.report_builder import ReportBuilder, summarize_flagged
from qc_backend.services.scheduler import SchedulerEngine
from qc_backend.tests.fakes import T0, RecordingDispatcher, make_result


pytestmark = pytest.mark.asyncio


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def engine(report_store, memory_store, dispatcher, test_settings, clock) -> SchedulerEngine:
    return SchedulerEngine(
        report_store,
        ReportBuilder(memory_store),
        dispatcher,
        test_settings,
        clock=clock,
        owner='engine-a',
    )


@pytest.fixture
def seed_flagged(memory_store, test_settings, clock):
    """Create a batch and finish every item, flagged, at the current clock time."""

    async def seed(rows):
        coordinator = BatchCoordinator(memory_store, test_settings, clock=clock)
        batch = await coordinator.create_batch('qc.csv', rows)
        while True:
            item = await memory_store.claim('w1', clock())
            if item is None:
                return batch
            await memory_store.complete(item.id, 'w1', make_result(FlagStatus.FLAGGED), clock())

    return seed


def daily_report(**overrides) -> ScheduledReportCreate:
    data = {
        'name': 'Daily flagged calls',
        'report_type': ReportType.DAILY,
        'schedule_time': '09:05',
        'channel': 'qc-alerts',
    }
    data.update(overrides)
    return ScheduledReportCreate(**data)


def gated_builder(memory_store):
    """ReportBuilder whose build() signals `entered` and then waits on `gate`."""
    builder = ReportBuilder(memory_store)
    build = builder.build
    entered = asyncio.Event()
    gate = asyncio.Event()

    async def gated_build(report, now):
        entered.set()
        await gate.wait()
        return await build(report, now)

    builder.build = gated_build
    return builder, entered, gate


# ============================================================
# TEST CLASS: Tick
# ============================================================

class TestTick:

    async def test_due_report_runs_and_advances(self, engine, report_store, dispatcher, clock, seed_flagged, sample_items) -> None:
        # Arrange
        await seed_flagged(sample_items)
        report = await engine.create_report(daily_report())
        assert report.next_run_at == T0 + timedelta(minutes=5)

        # Act
        clock.advance(minutes=5)
        started = await engine.tick()
        await engine.drain()

        # Assert
        assert started == [report.id]
        runs = await engine.list_runs(report.id)
        assert len(runs) == 1
        assert runs[0].status == ReportRunStatus.COMPLETED
        assert runs[0].trigger == RunTrigger.SCHEDULED
        assert runs[0].flagged_items == 10
        assert runs[0].dispatched is True
        assert runs[0].delivery_token == f"report:{report.id}:{(T0 + timedelta(minutes=5)).isoformat()}"

        assert len(dispatcher.sent) == 1
        assert dispatcher.sent[0]['channel'] == 'qc-alerts'

        saved = await engine.get_report(report.id)
        assert saved.last_run_at == T0 + timedelta(minutes=5)
        assert saved.next_run_at == T0 + timedelta(days=1, minutes=5)

    async def test_not_due_yet(self, engine, clock) -> None:
        await engine.create_report(daily_report())
        clock.advance(minutes=4)

        assert await engine.tick() == []

    async def test_slot_runs_once_across_ticks(self, engine, clock) -> None:
        report = await engine.create_report(daily_report())
        clock.advance(minutes=5)

        await engine.tick()
        await engine.drain()
        clock.advance(seconds=30)
        await engine.tick()
        await engine.drain()

        assert len(await engine.list_runs(report.id)) == 1

    @pytest.mark.concurrency
    async def test_two_engines_sharing_a_store_run_slot_once(
        self, report_store, memory_store, dispatcher, test_settings, clock
    ) -> None:
        # Arrange: two engines, one store
        engines = [
            SchedulerEngine(report_store, ReportBuilder(memory_store), dispatcher, test_settings,
                            clock=clock, owner=f'engine-{n}')
            for n in range(2)
        ]
        report = await engines[0].create_report(daily_report(filters=ReportFilters(min_flagged_items=0)))
        clock.advance(minutes=5)

        # Act
        started = await asyncio.gather(*(e.tick() for e in engines))
        for e in engines:
            await e.drain()
        started_late = [await e.tick() for e in engines]

        # Assert
        assert sorted(len(s) for s in started) == [0, 1]
        assert started_late == [[], []]
        assert len(await report_store.list_runs(report.id)) == 1
        assert len(dispatcher.sent) == 1

    async def test_inactive_report_never_runs(self, engine, clock) -> None:
        # Arrange
        report = await engine.create_report(daily_report())
        toggled = await engine.toggle(report.id)
        assert toggled.is_active is False
        assert toggled.next_run_at is None

        # Act
        clock.advance(days=3)
        started = await engine.tick()

        # Assert
        assert started == []
        assert await engine.list_runs(report.id) == []

    async def test_reactivation_schedules_from_now(self, engine, clock) -> None:
        report = await engine.create_report(daily_report())
        await engine.toggle(report.id)
        clock.advance(days=3)

        reactivated = await engine.toggle(report.id)

        assert reactivated.is_active is True
        assert reactivated.next_run_at == T0 + timedelta(days=3, minutes=5)

    async def test_deactivated_while_due_is_skipped(self, engine, report_store, clock) -> None:
        # Arrange: the report is selected but switched off before the lock
        report = await engine.create_report(daily_report())
        clock.advance(minutes=5)
        selected = await report_store.due(clock())
        await engine.toggle(report.id)

        # Act
        locked = await report_store.acquire_lock(
            report.id, 'engine-a', clock() + timedelta(minutes=10), clock(), slot=selected[0].next_run_at
        )

        # Assert
        assert locked is None

    async def test_edit_during_run_keeps_new_schedule(
        self, report_store, memory_store, dispatcher, test_settings, clock
    ) -> None:
        # Arrange: the 09:05 run is in flight, held inside report generation
        builder, entered, gate = gated_builder(memory_store)
        engine = SchedulerEngine(report_store, builder, dispatcher, test_settings, clock=clock)
        report = await engine.create_report(daily_report())
        clock.advance(minutes=5)
        await engine.tick()
        await entered.wait()

        # Act: switch to hourly at :30, then let the run finish
        edited = await engine.update_report(
            report.id, ScheduledReportUpdate(report_type=ReportType.HOURLY, schedule_time='00:30')
        )
        gate.set()
        await engine.drain()

        # Assert: the finished run did not restore the old daily slot
        saved = await engine.get_report(report.id)
        assert edited.next_run_at == T0 + timedelta(minutes=30)
        assert saved.schedule_expression == '30 * * * *'
        assert saved.next_run_at == T0 + timedelta(minutes=30)
        assert saved.last_run_at == T0 + timedelta(minutes=5)
        assert saved.lock_owner is None
        assert len(await engine.list_runs(report.id)) == 1

    async def test_toggle_off_during_run_stays_unscheduled(
        self, report_store, memory_store, dispatcher, test_settings, clock
    ) -> None:
        builder, entered, gate = gated_builder(memory_store)
        engine = SchedulerEngine(report_store, builder, dispatcher, test_settings, clock=clock)
        report = await engine.create_report(daily_report())
        clock.advance(minutes=5)
        await engine.tick()
        await entered.wait()

        await engine.toggle(report.id)
        gate.set()
        await engine.drain()

        saved = await engine.get_report(report.id)
        assert saved.is_active is False
        assert saved.next_run_at is None
        assert saved.last_run_at == T0 + timedelta(minutes=5)

    @pytest.mark.concurrency
    async def test_lock_lost_while_queued_skips_run(
        self, engine, report_store, memory_store, dispatcher, test_settings, clock
    ) -> None:
        # Arrange: engine-a locks the slot but its run waits for a free slot
        report = await engine.create_report(daily_report(filters=ReportFilters(min_flagged_items=0)))
        other = SchedulerEngine(
            report_store, ReportBuilder(memory_store), dispatcher, test_settings, clock=clock, owner='engine-b'
        )
        await engine._semaphore.acquire()
        clock.advance(minutes=5)
        assert await engine.tick() == [report.id]

        # Act: the lock expires while queued and engine-b runs the slot
        clock.advance(seconds=test_settings.report_lock_ttl_seconds + 1)
        assert await other.tick() == [report.id]
        await other.drain()
        engine._semaphore.release()
        await engine.drain()

        # Assert
        runs = await engine.list_runs(report.id)
        assert len(runs) == 1
        assert len(dispatcher.sent) == 1
        saved = await engine.get_report(report.id)
        assert saved.next_run_at == T0 + timedelta(days=1, minutes=5)
        assert saved.lock_owner is None

    async def test_queued_run_restarts_lock_ttl(
        self, report_store, memory_store, dispatcher, test_settings, clock
    ) -> None:
        # Arrange: the run waits in the queue almost until the lock expires
        builder, entered, gate = gated_builder(memory_store)
        engine = SchedulerEngine(report_store, builder, dispatcher, test_settings, clock=clock, owner='engine-a')
        report = await engine.create_report(daily_report())
        await engine._semaphore.acquire()
        clock.advance(minutes=5)
        await engine.tick()
        clock.advance(seconds=test_settings.report_lock_ttl_seconds - 1)

        # Act: the run leaves the queue, then the original TTL runs out
        engine._semaphore.release()
        await entered.wait()
        clock.advance(seconds=2)
        taken = await report_store.acquire_lock(report.id, 'engine-b', clock() + timedelta(minutes=10), clock())
        gate.set()
        await engine.drain()

        # Assert
        assert taken is None
        assert len(await engine.list_runs(report.id)) == 1

    async def test_status(self, engine, clock) -> None:
        await engine.create_report(daily_report())
        await engine.create_report(daily_report(name='Off', is_active=False))
        await engine.tick()

        state = await engine.status()

        assert state.ticks == 1
        assert state.last_tick_at == T0
        assert state.active_reports == 1
        assert state.running is False
        assert state.in_flight == 0


# ============================================================
# TEST CLASS: Run Outcomes
# ============================================================

class TestRunOutcomes:

    async def test_below_minimum_completes_without_sending(self, engine, dispatcher, clock, seed_flagged) -> None:
        # Arrange: 2 flagged, minimum 5
        await seed_flagged([{'uuid': 'a'}, {'uuid': 'b'}])
        report = await engine.create_report(daily_report(filters=ReportFilters(min_flagged_items=5)))

        # Act
        clock.advance(minutes=5)
        await engine.tick()
        await engine.drain()

        # Assert
        runs = await engine.list_runs(report.id)
        assert runs[0].status == ReportRunStatus.COMPLETED
        assert runs[0].flagged_items == 2
        assert runs[0].dispatched is False
        assert runs[0].delivery_token is None
        assert dispatcher.sent == []
        assert (await engine.get_report(report.id)).next_run_at == T0 + timedelta(days=1, minutes=5)

    async def test_dispatch_failure_fails_run_but_advances(
        self, report_store, memory_store, test_settings, clock, seed_flagged
    ) -> None:
        # Arrange
        failing = RecordingDispatcher(status=DeliveryStatus.FAILED, error='Teams webhook returned 500: busy')
        engine = SchedulerEngine(report_store, ReportBuilder(memory_store), failing, test_settings, clock=clock)
        await seed_flagged([{'uuid': 'a'}])
        report = await engine.create_report(daily_report())

        # Act
        clock.advance(minutes=5)
        await engine.tick()
        await engine.drain()

        # Assert
        runs = await engine.list_runs(report.id)
        assert runs[0].status == ReportRunStatus.FAILED
        assert runs[0].error_message == 'Teams webhook returned 500: busy'
        assert runs[0].dispatched is False
        saved = await engine.get_report(report.id)
        assert saved.next_run_at == T0 + timedelta(days=1, minutes=5)
        assert saved.is_active is True

    async def test_already_delivered_token_is_not_resent(
        self, report_store, memory_store, ledger, webhook, test_settings, clock, seed_flagged
    ) -> None:
        # Arrange: the slot's token was delivered by an earlier attempt
        dispatcher = TeamsDispatcher(ledger, test_settings, clock=clock, client_factory=webhook.factory)
        engine = SchedulerEngine(report_store, ReportBuilder(memory_store), dispatcher, test_settings, clock=clock)
        await seed_flagged([{'uuid': 'a'}])
        report = await engine.create_report(daily_report())
        token = f"report:{report.id}:{report.next_run_at.isoformat()}"
        await ledger.reserve(token, 'qc-alerts', T0)
        await ledger.record(token, DeliveryStatus.DELIVERED, 1, None, T0)

        # Act
        clock.advance(minutes=5)
        await engine.tick()
        await engine.drain()

        # Assert
        runs = await engine.list_runs(report.id)
        assert runs[0].status == ReportRunStatus.COMPLETED
        assert runs[0].dispatched is False
        assert 'already sent' in runs[0].error_message
        assert webhook.payloads == []

    async def test_builder_error_fails_run(self, report_store, dispatcher, test_settings, clock) -> None:
        builder = Mock()
        builder.build = AsyncMock(side_effect=RuntimeError('database unavailable'))
        engine = SchedulerEngine(report_store, builder, dispatcher, test_settings, clock=clock)
        report = await engine.create_report(daily_report())

        clock.advance(minutes=5)
        await engine.tick()
        await engine.drain()

        runs = await engine.list_runs(report.id)
        assert runs[0].status == ReportRunStatus.FAILED
        assert runs[0].error_message == 'database unavailable'
        assert (await engine.get_report(report.id)).last_run_at == T0 + timedelta(minutes=5)

    async def test_tagged_recipients_are_sent(self, engine, dispatcher, clock, seed_flagged, sample_items) -> None:
        await seed_flagged(sample_items)
        report = await engine.create_report(daily_report(tag_recipients=True))

        run = await engine.run_now(report.id)

        assert dispatcher.sent[0]['recipients'] == ['AG000', 'AG001', 'AG002']
        assert run.recipients_notified == ['AG000', 'AG001', 'AG002']


# ============================================================
# TEST CLASS: Run Now
# ============================================================

class TestRunNow:

    async def test_manual_run_leaves_schedule_alone(self, engine, dispatcher) -> None:
        report = await engine.create_report(daily_report(filters=ReportFilters(min_flagged_items=0)))

        run = await engine.run_now(report.id)

        assert run.trigger == RunTrigger.MANUAL
        assert run.status == ReportRunStatus.COMPLETED
        assert dispatcher.sent[0]['token'].startswith(f"report:{report.id}:manual:")
        saved = await engine.get_report(report.id)
        assert saved.last_run_at is None
        assert saved.next_run_at == report.next_run_at

    async def test_manual_runs_use_fresh_tokens(self, engine, dispatcher) -> None:
        report = await engine.create_report(daily_report(filters=ReportFilters(min_flagged_items=0)))

        await engine.run_now(report.id)
        await engine.run_now(report.id)

        assert len({s['token'] for s in dispatcher.sent}) == 2

    async def test_inactive_report_can_run_manually(self, engine) -> None:
        report = await engine.create_report(daily_report(is_active=False))

        run = await engine.run_now(report.id)

        assert run.status == ReportRunStatus.COMPLETED

    async def test_conflict_when_locked(self, engine, report_store, clock) -> None:
        # Arrange: another engine holds the lock
        report = await engine.create_report(daily_report())
        await report_store.acquire_lock(report.id, 'engine-b', clock() + timedelta(minutes=10), clock())

        # Act / Assert
        with pytest.raises(ConflictError):
            await engine.run_now(report.id)

    async def test_expired_lock_is_taken_over(self, engine, report_store, clock) -> None:
        report = await engine.create_report(daily_report())
        await report_store.acquire_lock(report.id, 'engine-b', clock() + timedelta(minutes=10), clock())
        clock.advance(minutes=11)

        run = await engine.run_now(report.id)

        assert run.status == ReportRunStatus.COMPLETED

    async def test_unknown_report(self, engine) -> None:
        with pytest.raises(NotFoundError):
            await engine.run_now('missing')


# ============================================================
# TEST CLASS: Report Definitions
# ============================================================

class TestReportDefinitions:

    async def test_weekly_report_next_run(self, engine) -> None:
        # Monday 09:00 -> Wednesday 17:00
        report = await engine.create_report(daily_report(
            report_type=ReportType.WEEKLY, schedule_time='17:00', schedule_days=[3]
        ))

        assert report.schedule_expression == '0 17 * * 3'
        assert report.next_run_at == T0 + timedelta(days=2, hours=8)

    async def test_impossible_expression_deactivates(self, engine) -> None:
        report = await engine.create_report(daily_report(
            report_type=ReportType.CUSTOM, schedule_expression='0 0 31 2 *'
        ))

        assert report.misconfigured is True
        assert report.is_active is False
        assert report.next_run_at is None

    async def test_unparseable_expression_rejected(self, engine, report_store) -> None:
        with pytest.raises(SchedulerMisconfiguration):
            await engine.create_report(daily_report(
                report_type=ReportType.CUSTOM, schedule_expression='*/5 * * * *'
            ))

        assert await report_store.list() == []

    async def test_update_time_recomputes_next_run(self, engine) -> None:
        report = await engine.create_report(daily_report())

        updated = await engine.update_report(report.id, ScheduledReportUpdate(schedule_time='10:30'))

        assert updated.schedule_expression == '30 10 * * *'
        assert updated.next_run_at == T0 + timedelta(hours=1, minutes=30)

    async def test_update_time_keeps_weekly_days(self, engine) -> None:
        report = await engine.create_report(daily_report(
            report_type=ReportType.WEEKLY, schedule_time='09:00', schedule_days=[1, 5]
        ))

        updated = await engine.update_report(report.id, ScheduledReportUpdate(schedule_time='17:00'))

        assert updated.schedule_expression == '0 17 * * 1,5'

    async def test_update_hourly_keeps_minute(self, engine) -> None:
        report = await engine.create_report(daily_report(report_type=ReportType.HOURLY, schedule_time='00:15'))

        updated = await engine.update_report(report.id, ScheduledReportUpdate(report_type=ReportType.HOURLY))

        assert updated.schedule_expression == '15 * * * *'

    async def test_update_non_schedule_fields(self, engine) -> None:
        report = await engine.create_report(daily_report(custom_message='Morning summary'))

        updated = await engine.update_report(report.id, ScheduledReportUpdate(
            name='Renamed', channel='qc-leads', custom_message=None
        ))

        assert updated.name == 'Renamed'
        assert updated.channel == 'qc-leads'
        assert updated.custom_message is None
        assert updated.schedule_expression == report.schedule_expression
        assert updated.next_run_at == report.next_run_at

    async def test_fixing_misconfigured_report_reactivates(self, engine) -> None:
        report = await engine.create_report(daily_report(
            report_type=ReportType.CUSTOM, schedule_expression='0 0 31 2 *'
        ))

        fixed = await engine.update_report(report.id, ScheduledReportUpdate(schedule_expression='0 12 * * *'))

        assert fixed.is_active is True
        assert fixed.misconfigured is False
        assert fixed.next_run_at == T0 + timedelta(hours=3)

    async def test_delete_removes_runs(self, engine, report_store) -> None:
        report = await engine.create_report(daily_report())
        await engine.run_now(report.id)

        await engine.delete_report(report.id)

        assert await report_store.recent_runs() == []
        with pytest.raises(NotFoundError):
            await engine.delete_report(report.id)
        with pytest.raises(NotFoundError):
            await engine.list_runs(report.id)

    async def test_recent_runs_newest_first(self, engine, clock) -> None:
        first = await engine.create_report(daily_report(name='First'))
        second = await engine.create_report(daily_report(name='Second'))
        await engine.run_now(first.id)
        clock.advance(minutes=1)
        await engine.run_now(second.id)

        runs = await engine.recent_runs(limit=10)

        assert [r.report_id for r in runs] == [second.id, first.id]


# ============================================================
# TEST CLASS: Report Builder
# ============================================================

class TestReportBuilder:

    async def test_summary_groups_by_error_type_and_agent(self, memory_store, seed_flagged, sample_items) -> None:
        await seed_flagged(sample_items)
        items = await memory_store.flagged_results(T0 - timedelta(hours=1))

        summary = summarize_flagged(items)

        assert summary['total'] == 10
        assert summary['by_error_type'] == {'language': 5, 'sop': 5}
        assert summary['by_agent'] == {'AG000': 4, 'AG001': 3, 'AG002': 3}
        assert summary['avg_confidence'] == 0.9

    async def test_empty_summary(self) -> None:
        assert summarize_flagged([]) == {'total': 0, 'by_error_type': {}, 'by_agent': {}, 'avg_confidence': 0.0}

    async def test_filters_apply(self, engine, memory_store, seed_flagged, sample_items, clock) -> None:
        await seed_flagged(sample_items)
        report = await engine.create_report(daily_report(
            filters=ReportFilters(error_types=['sop'], priority=[Priority.HIGH])
        ))

        generated = await ReportBuilder(memory_store).build(report, clock())

        # uuid-000 is the only high priority 'sop' row
        assert generated.flagged_items == 1
        assert 'uuid-000' in generated.message
        assert generated.title == 'Daily flagged calls - QC report'

    async def test_window_starts_at_last_run(self, engine, report_store, memory_store, seed_flagged, clock) -> None:
        # Arrange: one item before the last run, one after
        await seed_flagged([{'uuid': 'before'}])
        report = await engine.create_report(daily_report(filters=ReportFilters(min_flagged_items=0)))
        clock.advance(minutes=5)
        await engine.tick()
        await engine.drain()
        clock.advance(hours=1)
        await seed_flagged([{'uuid': 'after'}])

        # Act
        report = await engine.get_report(report.id)
        generated = await ReportBuilder(memory_store).build(report, clock())

        # Assert
        assert ReportBuilder.window_start(report, clock()) == T0 + timedelta(minutes=5)
        assert generated.flagged_items == 1
        assert 'after' in generated.message

    async def test_first_run_looks_back_one_period(self, engine) -> None:
        report = await engine.create_report(daily_report(report_type=ReportType.WEEKLY))

        assert ReportBuilder.window_start(report, T0) == T0 - timedelta(days=7)
