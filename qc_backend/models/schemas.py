"""
Pydantic request/response models for the QC batch orchestrator.

This module provides type-safe data validation and serialization for all API
contracts and for the records kept by the stores:

- Analysis results: Issue, TechnicalScores, AnalysisResult
- Work items and batches: WorkItemInput, WorkItem, Batch, BatchStatusView
- Sub-agents: Worker, SystemStats
- Scheduled reporting: ReportFilters, ScheduledReport, ReportRun
- Notifications: NotificationDelivery, DeliveryResult
- API envelope: ApiResponse, ValidationIssue

Records are plain mutable models. Stores hand out copies (model_copy) so a
caller holding a WorkItem never observes a later transition made by a worker.

All models use Pydantic v2 syntax with proper field validation and examples.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from qc_backend.models.enums import (
    BatchStatus,
    DeliveryStatus,
    ErrorKind,
    FlagStatus,
    IssueSeverity,
    Priority,
    ReportRunStatus,
    ReportType,
    RunTrigger,
    WorkerStatus,
    WorkerType,
    WorkItemKind,
    WorkItemStatus,
)


# =============================================================================
# Analysis Results
# =============================================================================


class Issue(BaseModel):
    """A single problem spotted by the analysis (e.g. a greeting was skipped)."""
    type: str = Field(..., description="Issue category, e.g. 'sop_violation'")
    description: str = Field(..., description="Human readable explanation")
    severity: IssueSeverity = Field(default=IssueSeverity.MEDIUM)
    timestamp: Optional[str] = Field(
        default=None,
        description="Position in the recording where the issue occurs (mm:ss)"
    )


class TechnicalScores(BaseModel):
    """Per-dimension scores, each 0-100."""
    language_score: float = Field(default=0.0, ge=0, le=100)
    body_language_score: float = Field(default=0.0, ge=0, le=100)
    sop_compliance_score: float = Field(default=0.0, ge=0, le=100)
    technical_quality_score: float = Field(default=0.0, ge=0, le=100)


class AnalysisResult(BaseModel):
    """
    Outcome of analysing one work item.

    Produced by the analysis collaborator (or the stub analyzer) and stored
    on the WorkItem when a worker completes it.
    """
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "confidence": 0.87,
                "flag_status": "flagged",
                "issues": [
                    {
                        "type": "sop_violation",
                        "description": "Verification step skipped",
                        "severity": "high",
                        "timestamp": "02:15"
                    }
                ],
                "technical_scores": {
                    "language_score": 82,
                    "body_language_score": 75,
                    "sop_compliance_score": 48,
                    "technical_quality_score": 90
                },
                "recommendations": ["Review verification SOP with the agent"],
                "analysis_timestamp": "2024-01-15T09:00:00Z"
            }
        }
    )

    confidence: float = Field(..., ge=0, le=1, description="Model confidence 0..1")
    flag_status: FlagStatus = Field(..., description="approved, flagged or needs_review")
    issues: List[Issue] = Field(default_factory=list)
    technical_scores: TechnicalScores = Field(default_factory=TechnicalScores)
    recommendations: List[str] = Field(default_factory=list)
    analysis_timestamp: Optional[datetime] = Field(default=None)


# =============================================================================
# Work Items and Batches
# =============================================================================


class WorkItemInput(BaseModel):
    """
    One unit of work as submitted by a client.

    Mirrors a row of the QC CSV (uuid, error_type, agent_id, priority) or an
    uploaded video (type='video' with a video_url pointing at the stored file).
    """
    model_config = ConfigDict(
        str_strip_whitespace=True,
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "uuid": "call-0001",
                "type": "csv_row",
                "priority": "high",
                "error_type": "greeting",
                "agent_id": "agent-42"
            }
        }
    )

    uuid: str = Field(..., min_length=1, description="Client reference, unique per batch")
    kind: WorkItemKind = Field(default=WorkItemKind.CSV_ROW, alias="type")
    priority: Priority = Field(default=Priority.MEDIUM)
    error_type: Optional[str] = Field(default=None)
    agent_id: Optional[str] = Field(default=None)
    video_url: Optional[str] = Field(default=None)


class WorkItem(BaseModel):
    """Durable record of one work item."""
    id: str
    batch_id: str
    kind: WorkItemKind
    priority: Priority
    status: WorkItemStatus = WorkItemStatus.PENDING
    external_ref: str = Field(..., description="CSV uuid or uploaded video id")
    error_type: Optional[str] = None
    agent_id: Optional[str] = None
    video_url: Optional[str] = None
    assigned_worker_id: Optional[str] = None
    result: Optional[AnalysisResult] = None
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: datetime
    available_at: datetime = Field(
        ...,
        description="A pending item is not claimable before this instant (retry backoff)"
    )
    claimed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = Field(
        default=None,
        description="When the item reached a terminal state"
    )

    @property
    def is_flagged(self) -> bool:
        return (
            self.status == WorkItemStatus.COMPLETED
            and self.result is not None
            and self.result.flag_status == FlagStatus.FLAGGED
        )


class Batch(BaseModel):
    """
    Durable record of a batch.

    Counters are not stored; processed_count, flagged_count and failed_count
    are filled from the batch's WorkItem rows whenever a batch is read.
    """
    id: str
    source: str
    total_items: int
    status: BatchStatus = BatchStatus.UPLOADING
    notify_channel: Optional[str] = None
    processed_count: int = 0
    flagged_count: int = 0
    failed_count: int = 0
    abort_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    finished_at: Optional[datetime] = None


class BatchStatusView(BaseModel):
    """Progress snapshot returned to long-polling clients."""
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "batch_id": "b-1",
                "source": "qc_upload_2024_01_15.csv",
                "status": "processing",
                "total": 10,
                "processed": 4,
                "flagged": 1,
                "failed": 0,
                "pending": 5,
                "processing": 1,
                "rate": 2.4,
                "eta": "2024-01-15T09:03:00+00:00",
                "eta_seconds": 150.0
            }
        }
    )

    batch_id: str
    source: str
    status: BatchStatus
    total: int
    processed: int
    flagged: int
    failed: int
    pending: int
    processing: int
    rate: float = Field(..., description="Smoothed completions per minute")
    eta: str = Field(..., description="ISO timestamp or 'unknown' when rate is 0")
    eta_seconds: Optional[float] = None


class CreateBatchRequest(BaseModel):
    source: str = Field(..., min_length=1, description="File name or other origin label")
    items: List[WorkItemInput] = Field(..., description="Units of work to analyse")
    notify_channel: Optional[str] = Field(
        default=None,
        description="Teams channel that receives a summary when the batch finishes"
    )


class CreateBatchResponse(BaseModel):
    batch_id: str
    total_items: int


class AbortBatchRequest(BaseModel):
    reason: str = Field(default="aborted by operator", min_length=1)


# =============================================================================
# Sub-Agents
# =============================================================================


class Worker(BaseModel):
    """Monitor view of one sub-agent. Lives only in the pool's process memory."""
    id: str
    name: str
    type: WorkerType
    status: WorkerStatus = WorkerStatus.IDLE
    current_item_id: Optional[str] = None
    current_task: Optional[str] = None
    items_assigned: int = 0
    items_completed: int = 0
    items_failed: int = 0
    success_rate: float = Field(default=100.0, description="Percent of finished items that completed")
    avg_processing_time: float = Field(default=0.0, description="Seconds per item")
    last_activity: Optional[datetime] = None
    last_error: Optional[str] = None


class SystemStats(BaseModel):
    total_agents: int
    active_agents: int
    items_processing: int
    avg_throughput: float = Field(..., description="Items finished per minute since startup")


# =============================================================================
# Scheduled Reporting
# =============================================================================


class ReportFilters(BaseModel):
    """Which analysed items a scheduled report covers."""
    error_types: List[str] = Field(default_factory=list, description="Empty means all")
    priority: List[Priority] = Field(default_factory=list, description="Empty means all")
    min_flagged_items: int = Field(default=1, ge=0)


class ScheduledReport(BaseModel):
    """Durable record of a recurring report definition."""
    id: str
    name: str
    report_type: ReportType
    schedule_expression: str
    filters: ReportFilters = Field(default_factory=ReportFilters)
    channel: str
    tag_recipients: bool = False
    custom_message: Optional[str] = None
    is_active: bool = True
    misconfigured: bool = False
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    lock_owner: Optional[str] = Field(default=None, exclude=True)
    locked_until: Optional[datetime] = Field(default=None, exclude=True)


class ScheduledReportCreate(BaseModel):
    """
    Report definition as submitted by the schedule form.

    Either schedule_expression is given verbatim, or it is derived from
    report_type with schedule_time (HH:MM, UTC) and schedule_days
    (0=Sunday .. 6=Saturday, weekly reports only).
    """
    model_config = ConfigDict(
        str_strip_whitespace=True,
        json_schema_extra={
            "example": {
                "name": "Daily flagged calls",
                "report_type": "daily",
                "schedule_time": "09:00",
                "filters": {"error_types": ["greeting"], "priority": ["high"], "min_flagged_items": 1},
                "channel": "qc-alerts",
                "tag_recipients": True
            }
        }
    )

    name: str = Field(..., min_length=1)
    report_type: ReportType
    schedule_expression: Optional[str] = None
    schedule_time: Optional[str] = Field(default=None, description="HH:MM (UTC)")
    schedule_days: List[int] = Field(default_factory=list)
    filters: ReportFilters = Field(default_factory=ReportFilters)
    channel: str = Field(..., min_length=1)
    tag_recipients: bool = False
    custom_message: Optional[str] = None
    is_active: bool = True

    @field_validator("schedule_days")
    @classmethod
    def _check_days(cls, value: List[int]) -> List[int]:
        for day in value:
            if day < 0 or day > 7:
                raise ValueError(f"schedule_days entries must be 0-7, got {day}")
        return sorted(set(value))


class ScheduledReportUpdate(BaseModel):
    """Partial edit; fields left out keep their current values."""
    name: Optional[str] = None
    report_type: Optional[ReportType] = None
    schedule_expression: Optional[str] = None
    schedule_time: Optional[str] = None
    schedule_days: Optional[List[int]] = None
    filters: Optional[ReportFilters] = None
    channel: Optional[str] = None
    tag_recipients: Optional[bool] = None
    custom_message: Optional[str] = None


class ReportRun(BaseModel):
    """Append-only record of one execution of a scheduled report."""
    id: str
    report_id: str
    run_at: datetime
    trigger: RunTrigger = RunTrigger.SCHEDULED
    status: ReportRunStatus
    flagged_items: int = 0
    dispatched: bool = False
    recipients_notified: List[str] = Field(default_factory=list)
    delivery_token: Optional[str] = None
    error_message: Optional[str] = None


class GeneratedReport(BaseModel):
    """Output of the report builder, ready to hand to the dispatcher."""
    report_id: str
    title: str
    message: str
    flagged_items: int
    recipients: List[str] = Field(default_factory=list)
    summary: Dict[str, Any] = Field(default_factory=dict)


class SchedulerState(BaseModel):
    running: bool
    ticks: int
    in_flight: int
    last_tick_at: Optional[datetime] = None
    active_reports: int = 0


# =============================================================================
# Notifications
# =============================================================================


class NotificationDelivery(BaseModel):
    """Dispatcher ledger row, keyed by deduplication token."""
    dedup_token: str
    channel: str
    status: DeliveryStatus
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class DeliveryResult(BaseModel):
    """What happened to one send() call. Never an exception."""
    delivered: bool
    duplicate: bool = False
    status: DeliveryStatus
    channel: str
    dedup_token: str
    attempts: int = 0
    recipients: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None


class NotificationTestRequest(BaseModel):
    channel: str = Field(..., min_length=1)
    message: str = Field(default="QC orchestrator test message")
    recipients: List[str] = Field(default_factory=list)


# =============================================================================
# API Envelope
# =============================================================================


class ValidationIssue(BaseModel):
    """
    Model for a single validation problem found in a submitted batch.

    Attributes:
        field: The field name that failed validation
        message: Human-readable error message
        row_number: Optional row number (1-based, CSV uploads only)
    """
    field: str = Field(..., description="Field name that failed validation")
    message: str = Field(..., description="Human-readable error message")
    row_number: Optional[int] = Field(default=None, description="CSV row number, 1-based")


class ApiResponse(BaseModel):
    """
    Envelope wrapped around every response body.

    Success: {success: true, data, message?}
    Failure: {success: false, error, error_kind, data?}
    """
    success: bool
    data: Optional[Any] = None
    message: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
