"""
Worker Pool ("Sub-Agent Manager").

Runs the service's sub-agents as asyncio tasks and keeps their monitor
records in process memory:

- video_analysis workers (WORKER_COUNT of them) claim pending work items,
  hand them to the Analyzer and record the outcome in the WorkItemStore.
- one progress_tracking worker sweeps items whose claim is older than
  PROCESSING_TIMEOUT_SECONDS back into the queue.
- report_generation workers run a loop supplied by the scheduler engine
  (see SchedulerEngine.run_loop); the pool only supervises them.

Administrative commands are one-way; callers read status back through
list_workers() / get_worker():

- pause: stop claiming. An item already in hand is finished normally.
- start: resume a paused worker, or start a stopped loop.
- restart: cancel the worker's in-flight processing, release its claim back
  to pending (no attempt is spent, this is an operator action), reset the
  record to idle and start a fresh loop.

Idle analysis workers wait on a shared asyncio.Event that is pulsed whenever
new work appears (batch created, failed items retried, stale claims swept),
and re-check the queue every WORKER_POLL_INTERVAL_SECONDS regardless, so a
retry whose backoff has expired is picked up without a pulse.

Usage:
    pool = WorkerPool(store, analyzer, settings)
    pool.add_batch_listener(coordinator.announce_finished_batch)
    await pool.start()
    ...
    await pool.pause_worker('qc-video_analysis-2')
    await pool.shutdown()
"""

import asyncio
import logging
import time
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from qc_backend.core.clock import Clock, utc_now
from qc_backend.core.errors import NotFoundError, TerminalWorkerError, TransientWorkerError
from qc_backend.models import (
    Batch,
    SystemStats,
    Worker,
    WorkerStatus,
    WorkerType,
    WorkItem,
    WorkItemStatus,
)
from qc_backend.services.analysis import Analyzer
from qc_backend.services.work_item_store import ItemTransition, WorkItemStore


logger = logging.getLogger(__name__)


WorkerRunner = Callable[["WorkerHandle"], Awaitable[None]]
BatchListener = Callable[[Batch], Awaitable[None]]


WORKER_NAMES = {
    WorkerType.VIDEO_ANALYSIS: "Video Analyzer",
    WorkerType.PROGRESS_TRACKING: "Progress Tracker",
    WorkerType.REPORT_GENERATION: "Report Generator",
}


# =============================================================================
# Worker Handle
# =============================================================================

class WorkerHandle:
    """
    Runtime state of one sub-agent: its monitor record, its loop task and
    its pause gate. Loops receive their handle and report status through it.
    """

    def __init__(self, worker: Worker, runner: WorkerRunner, clock: Clock):
        self.worker = worker
        self.runner = runner
        self.task: Optional[asyncio.Task] = None
        self._clock = clock
        self._resume = asyncio.Event()
        self._resume.set()
        self._processing_seconds = 0.0

    @property
    def id(self) -> str:
        return self.worker.id

    @property
    def paused(self) -> bool:
        return not self._resume.is_set()

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()

    def set_status(
        self,
        status: WorkerStatus,
        task: Optional[str] = None,
        item_id: Optional[str] = None,
    ) -> None:
        self.worker.status = status
        self.worker.current_task = task
        self.worker.current_item_id = item_id
        self.worker.last_activity = self._clock()

    def idle(self) -> None:
        """Back to waiting; a paused worker shows as paused."""
        self.set_status(WorkerStatus.PAUSED if self.paused else WorkerStatus.IDLE)

    def fault(self, error: BaseException) -> None:
        self.worker.last_error = str(error) or error.__class__.__name__
        self.set_status(WorkerStatus.ERROR)

    def pause(self) -> None:
        self._resume.clear()
        if self.worker.status not in (WorkerStatus.BUSY, WorkerStatus.ACTIVE):
            self.set_status(WorkerStatus.PAUSED)

    def resume(self) -> None:
        self._resume.set()
        if self.worker.status == WorkerStatus.PAUSED:
            self.set_status(WorkerStatus.IDLE)

    async def wait_until_resumed(self) -> None:
        if self.paused:
            self.set_status(WorkerStatus.PAUSED)
            await self._resume.wait()
            self.set_status(WorkerStatus.IDLE)

    def record_outcome(self, succeeded: bool, seconds: float) -> None:
        """Update success_rate and avg_processing_time after a finished task."""
        if succeeded:
            self.worker.items_completed += 1
        else:
            self.worker.items_failed += 1

        finished = self.worker.items_completed + self.worker.items_failed
        self._processing_seconds += seconds
        self.worker.avg_processing_time = round(self._processing_seconds / finished, 3)
        self.worker.success_rate = round(100.0 * self.worker.items_completed / finished, 1)

    def reset(self) -> None:
        self._resume.set()
        self.worker.last_error = None
        self.set_status(WorkerStatus.IDLE)


# =============================================================================
# Worker Pool
# =============================================================================

class WorkerPool:
    """
    Supervises the sub-agent tasks.

    Args:
        store: WorkItemStore holding the queue.
        analyzer: Analyzer used by video_analysis workers.
        settings: Settings (worker_count, poll/sweep intervals, instance_name).
        clock: Time source for store transitions and monitor timestamps.
    """

    def __init__(
        self,
        store: WorkItemStore,
        analyzer: Analyzer,
        settings: Any,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.analyzer = analyzer
        self.settings = settings
        self._clock = clock
        self._handles: Dict[str, WorkerHandle] = {}
        self._type_counts: Dict[WorkerType, int] = {}
        self._listeners: List[BatchListener] = []
        self._work_available = asyncio.Event()
        self._started_at: Optional[float] = None

    # ------------------------------------------------------------------
    # registration and lifecycle
    # ------------------------------------------------------------------

    def add_worker(self, worker_type: WorkerType, runner: Optional[WorkerRunner] = None) -> Worker:
        """
        Register a sub-agent. video_analysis and progress_tracking workers get
        the pool's own loops; report_generation workers must supply a runner.

        The worker is started immediately if the pool is already running.
        """
        if runner is None:
            if worker_type == WorkerType.VIDEO_ANALYSIS:
                runner = self._analysis_loop
            elif worker_type == WorkerType.PROGRESS_TRACKING:
                runner = self._sweep_loop
            else:
                raise ValueError(f"A runner is required for {worker_type.value} workers")

        n = self._type_counts.get(worker_type, 0) + 1
        self._type_counts[worker_type] = n
        worker = Worker(
            id=f"{self.settings.instance_name}-{worker_type.value}-{n}",
            name=f"{WORKER_NAMES[worker_type]} {n}",
            type=worker_type,
            last_activity=self._clock(),
        )
        handle = WorkerHandle(worker, runner, self._clock)
        self._handles[worker.id] = handle

        if self._started_at is not None:
            self._spawn(handle)
        return worker.model_copy()

    def add_batch_listener(self, listener: BatchListener) -> None:
        """Register a coroutine called with each batch a worker transition finishes."""
        self._listeners.append(listener)

    async def start(self) -> None:
        """Create the default workers (if not yet registered) and start every loop."""
        if not self._type_counts.get(WorkerType.VIDEO_ANALYSIS):
            for _ in range(self.settings.worker_count):
                self.add_worker(WorkerType.VIDEO_ANALYSIS)
        if not self._type_counts.get(WorkerType.PROGRESS_TRACKING):
            self.add_worker(WorkerType.PROGRESS_TRACKING)

        self._started_at = time.monotonic()
        for handle in self._handles.values():
            if not handle.running:
                self._spawn(handle)

        logger.info(f"Worker pool started with {len(self._handles)} sub-agents")

    async def shutdown(self) -> None:
        """Cancel every loop and hand held items back to the queue."""
        for handle in self._handles.values():
            item_id = handle.worker.current_item_id
            await self._cancel(handle)
            if item_id:
                await self.store.release(item_id, handle.id)
            handle.set_status(WorkerStatus.IDLE)

        self._started_at = None
        logger.info("Worker pool stopped")

    def _spawn(self, handle: WorkerHandle) -> None:
        handle.task = asyncio.create_task(self._supervise(handle), name=handle.id)

    async def _supervise(self, handle: WorkerHandle) -> None:
        try:
            await handle.runner(handle)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Worker {handle.id} loop crashed")
            handle.fault(e)

    @staticmethod
    async def _cancel(handle: WorkerHandle) -> None:
        if handle.task is None:
            return
        handle.task.cancel()
        try:
            await handle.task
        except asyncio.CancelledError:
            pass
        handle.task = None

    # ------------------------------------------------------------------
    # administrative commands
    # ------------------------------------------------------------------

    def _get_handle(self, worker_id: str) -> WorkerHandle:
        handle = self._handles.get(worker_id)
        if handle is None:
            raise NotFoundError(f"Worker {worker_id} not found")
        return handle

    async def start_worker(self, worker_id: str) -> Worker:
        handle = self._get_handle(worker_id)
        handle.resume()
        if not handle.running:
            handle.reset()
            self._spawn(handle)
        logger.info(f"Worker {worker_id} started")
        return handle.worker.model_copy()

    async def pause_worker(self, worker_id: str) -> Worker:
        handle = self._get_handle(worker_id)
        handle.pause()
        logger.info(f"Worker {worker_id} paused")
        return handle.worker.model_copy()

    async def restart_worker(self, worker_id: str) -> Worker:
        handle = self._get_handle(worker_id)
        item_id = handle.worker.current_item_id

        await self._cancel(handle)

        if item_id:
            released = await self.store.release(item_id, worker_id)
            if released is not None:
                logger.info(f"Worker {worker_id} restart released item {item_id}")
                self.notify_work_available()

        handle.reset()
        self._spawn(handle)
        logger.info(f"Worker {worker_id} restarted")
        return handle.worker.model_copy()

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    def list_workers(self) -> List[Worker]:
        return [h.worker.model_copy() for h in self._handles.values()]

    def get_worker(self, worker_id: str) -> Worker:
        return self._get_handle(worker_id).worker.model_copy()

    async def system_stats(self) -> SystemStats:
        workers = [h.worker for h in self._handles.values()]
        finished = sum(
            w.items_completed + w.items_failed
            for w in workers if w.type == WorkerType.VIDEO_ANALYSIS
        )
        minutes = 0.0
        if self._started_at is not None:
            minutes = (time.monotonic() - self._started_at) / 60.0

        return SystemStats(
            total_agents=len(workers),
            active_agents=sum(1 for w in workers if w.status in (WorkerStatus.ACTIVE, WorkerStatus.BUSY)),
            items_processing=await self.store.count_processing(),
            avg_throughput=round(finished / minutes, 2) if minutes > 0 else 0.0,
        )

    # ------------------------------------------------------------------
    # wake-up signal
    # ------------------------------------------------------------------

    def notify_work_available(self) -> None:
        """Wake every idle analysis worker."""
        self._work_available.set()
        self._work_available.clear()

    async def _wait_for_work(self) -> None:
        try:
            await asyncio.wait_for(
                self._work_available.wait(),
                timeout=self.settings.worker_poll_interval_seconds,
            )
        except asyncio.TimeoutError:
            pass

    # ------------------------------------------------------------------
    # video_analysis loop
    # ------------------------------------------------------------------

    async def _analysis_loop(self, handle: WorkerHandle) -> None:
        while True:
            await handle.wait_until_resumed()

            try:
                item = await self.store.claim(handle.id, self._clock())
                if item is None:
                    handle.idle()
                    await self._wait_for_work()
                    continue

                await self.process_item(handle, item)
            except Exception as e:
                logger.exception(f"Worker {handle.id} hit an unexpected fault")
                handle.fault(e)
                await asyncio.sleep(self.settings.worker_poll_interval_seconds)

    async def process_item(self, handle: WorkerHandle, item: WorkItem) -> Optional[ItemTransition]:
        """
        Analyze one claimed item and record the outcome.

        Analyzer errors become item transitions and never escape; store
        errors propagate to the loop, which leaves the claim for the sweep.
        """
        handle.worker.items_assigned += 1
        handle.set_status(WorkerStatus.BUSY, task=f"Analyzing {item.external_ref}", item_id=item.id)
        started = time.monotonic()

        try:
            result = await self.analyzer.analyze(item)
        except TerminalWorkerError as e:
            logger.warning(f"Item {item.id} failed permanently: {e.message}")
            transition = await self.store.fail(item.id, handle.id, e.message, False, self._clock())
        except TransientWorkerError as e:
            logger.warning(f"Item {item.id} failed on attempt {item.attempts + 1}: {e.message}")
            transition = await self.store.fail(item.id, handle.id, e.message, True, self._clock())
        except Exception as e:
            logger.exception(f"Analyzer raised unexpectedly for item {item.id}")
            transition = await self.store.fail(
                item.id, handle.id, f"Unexpected analyzer error: {e}", True, self._clock()
            )
        else:
            transition = await self.store.complete(item.id, handle.id, result, self._clock())

        elapsed = time.monotonic() - started
        if transition is None:
            logger.warning(
                f"Discarding outcome for item {item.id}: claim by {handle.id} is no longer held"
            )
        else:
            handle.record_outcome(transition.item.status == WorkItemStatus.COMPLETED, elapsed)
            await self._after_transition(transition)

        handle.idle()
        return transition

    async def _after_transition(self, transition: ItemTransition) -> None:
        if transition.requeued:
            self.notify_work_available()

        if transition.finished_batch is not None:
            for listener in self._listeners:
                try:
                    await listener(transition.finished_batch)
                except Exception:
                    logger.exception(
                        f"Batch listener failed for batch {transition.finished_batch.id}"
                    )

    # ------------------------------------------------------------------
    # progress_tracking loop
    # ------------------------------------------------------------------

    async def _sweep_loop(self, handle: WorkerHandle) -> None:
        while True:
            await handle.wait_until_resumed()

            try:
                await self.sweep_once(handle)
            except Exception as e:
                logger.exception(f"Stale sweep on {handle.id} failed")
                handle.fault(e)

            await asyncio.sleep(self.settings.sweep_interval_seconds)

    async def sweep_once(self, handle: Optional[WorkerHandle] = None) -> int:
        """
        Reclaim items stuck in processing past the timeout.

        Returns:
            int: Number of items reclaimed (requeued or permanently failed).
        """
        if handle is not None:
            handle.set_status(WorkerStatus.ACTIVE, task="Sweeping stale claims")

        now = self._clock()
        cutoff = now - timedelta(seconds=self.settings.processing_timeout_seconds)
        started = time.monotonic()
        transitions = await self.store.sweep_stale(cutoff, now)

        for transition in transitions:
            await self._after_transition(transition)

        if handle is not None:
            if transitions:
                per_item = (time.monotonic() - started) / len(transitions)
                handle.worker.items_assigned += len(transitions)
                # a reclaimed claim timed out; it is not a completed task
                for _ in transitions:
                    handle.record_outcome(False, per_item)
            handle.idle()

        if transitions:
            logger.info(f"Stale sweep reclaimed {len(transitions)} item(s)")
        return len(transitions)
