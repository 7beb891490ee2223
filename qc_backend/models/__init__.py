"""
Package initialization file for orchestrator models.

This module exports all Pydantic schemas and enumerations from schemas.py and
enums.py, making them importable from qc_backend.models directly.

Usage:
    from qc_backend.models import (
        WorkItem,
        WorkItemStatus,
        ScheduledReport,
        # ... etc
    )
"""

# =============================================================================
# Enums
# =============================================================================

from qc_backend.models.enums import (
    # Work items and batches
    WorkItemKind,
    Priority,
    PRIORITY_RANK,
    WorkItemStatus,
    BatchStatus,
    # Analysis
    FlagStatus,
    IssueSeverity,
    # Sub-agents
    WorkerType,
    WorkerStatus,
    WorkerCommand,
    # Scheduled reporting
    ReportType,
    ReportRunStatus,
    RunTrigger,
    DeliveryStatus,
    # Errors
    ErrorKind,
)


# =============================================================================
# Schemas
# =============================================================================

from qc_backend.models.schemas import (
    # Analysis results
    Issue,
    TechnicalScores,
    AnalysisResult,
    # Work items and batches
    WorkItemInput,
    WorkItem,
    Batch,
    BatchStatusView,
    CreateBatchRequest,
    CreateBatchResponse,
    AbortBatchRequest,
    # Sub-agents
    Worker,
    SystemStats,
    # Scheduled reporting
    ReportFilters,
    ScheduledReport,
    ScheduledReportCreate,
    ScheduledReportUpdate,
    ReportRun,
    GeneratedReport,
    SchedulerState,
    # Notifications
    NotificationDelivery,
    DeliveryResult,
    NotificationTestRequest,
    # Envelope
    ValidationIssue,
    ApiResponse,
)


__all__ = [
    "WorkItemKind",
    "Priority",
    "PRIORITY_RANK",
    "WorkItemStatus",
    "BatchStatus",
    "FlagStatus",
    "IssueSeverity",
    "WorkerType",
    "WorkerStatus",
    "WorkerCommand",
    "ReportType",
    "ReportRunStatus",
    "RunTrigger",
    "DeliveryStatus",
    "ErrorKind",
    "Issue",
    "TechnicalScores",
    "AnalysisResult",
    "WorkItemInput",
    "WorkItem",
    "Batch",
    "BatchStatusView",
    "CreateBatchRequest",
    "CreateBatchResponse",
    "AbortBatchRequest",
    "Worker",
    "SystemStats",
    "ReportFilters",
    "ScheduledReport",
    "ScheduledReportCreate",
    "ScheduledReportUpdate",
    "ReportRun",
    "GeneratedReport",
    "SchedulerState",
    "NotificationDelivery",
    "DeliveryResult",
    "NotificationTestRequest",
    "ValidationIssue",
    "ApiResponse",
]
