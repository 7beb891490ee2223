"""
Orchestrator Services Module

This module contains the business logic of the QC batch orchestrator.

Services:
- work_item_store: Durable batches and work items (memory / PostgreSQL),
  atomic claim, retry policy and batch terminal check
- analysis: Analysis collaborator clients (job-style HTTP, offline stub)
- worker_pool: Sub-agent supervision, claim loop, stale sweep
- batch_coordinator: Batch validation, lifecycle commands, progress and ETA
- intake: CSV parsing and video upload storage
- cron: Five-field cron parsing and next-slot search
- report_store: Scheduled reports, run history, delivery ledger
- report_builder: Flagged-items report generation
- scheduler: Scheduler engine (tick, per-report lock, manual runs)

All services are consumed by the API layer (qc_backend/api/) through the
instances built in qc_backend.main.
"""

# =============================================================================
# Work Items and Batches
# =============================================================================

from qc_backend.services.work_item_store import (
    BatchSnapshot,
    ItemTransition,
    MemoryWorkItemStore,
    PostgresWorkItemStore,
    QueuePolicy,
    WorkItemStore,
)
from qc_backend.services.batch_coordinator import BatchCoordinator, completion_rate
from qc_backend.services.intake import parse_qc_csv, store_video, video_item

# =============================================================================
# Sub-Agents
# =============================================================================

from qc_backend.services.analysis import Analyzer, HttpAnalysisClient, StubAnalyzer, build_analyzer
from qc_backend.services.worker_pool import WorkerHandle, WorkerPool

# =============================================================================
# Scheduled Reporting
# =============================================================================

from qc_backend.services.cron import CronExpression, expression_for, next_run_at
from qc_backend.services.report_store import (
    DeliveryLedger,
    MemoryDeliveryLedger,
    MemoryReportStore,
    PostgresDeliveryLedger,
    PostgresReportStore,
    ReportStore,
)
from qc_backend.services.report_builder import ReportBuilder, summarize_flagged
from qc_backend.services.scheduler import SchedulerEngine


__all__ = [
    # work_item_store
    'BatchSnapshot',
    'ItemTransition',
    'MemoryWorkItemStore',
    'PostgresWorkItemStore',
    'QueuePolicy',
    'WorkItemStore',
    # batch_coordinator / intake
    'BatchCoordinator',
    'completion_rate',
    'parse_qc_csv',
    'store_video',
    'video_item',
    # analysis / worker_pool
    'Analyzer',
    'HttpAnalysisClient',
    'StubAnalyzer',
    'build_analyzer',
    'WorkerHandle',
    'WorkerPool',
    # scheduling
    'CronExpression',
    'expression_for',
    'next_run_at',
    'DeliveryLedger',
    'MemoryDeliveryLedger',
    'MemoryReportStore',
    'PostgresDeliveryLedger',
    'PostgresReportStore',
    'ReportStore',
    'ReportBuilder',
    'summarize_flagged',
    'SchedulerEngine',
]
