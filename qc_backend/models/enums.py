"""
Enumeration definitions for the QC batch orchestrator.

All enums inherit from both `str` and `Enum` to ensure JSON serialization
compatibility with Pydantic models, enabling automatic serialization and
deserialization in API responses and direct storage as TEXT columns.

Groups:
- Work items and batches: WorkItemKind, Priority, WorkItemStatus, BatchStatus
- Analysis results: FlagStatus, IssueSeverity
- Sub-agents: WorkerType, WorkerStatus, WorkerCommand
- Scheduled reporting: ReportType, ReportRunStatus, RunTrigger, DeliveryStatus
- Error reporting: ErrorKind
"""

from enum import Enum


class WorkItemKind(str, Enum):
    """
    Unit of analysis.

    - csv_row: one row of an uploaded QC CSV (uuid, error_type, agent_id, priority)
    - video: one uploaded call recording
    """
    CSV_ROW = "csv_row"
    VIDEO = "video"


class Priority(str, Enum):
    """
    Claim priority for work items. High priority items are always claimed
    before medium, medium before low; ties go to the oldest item.
    """
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Sort key: lower ranks are claimed first."""
        return PRIORITY_RANK[self]


PRIORITY_RANK = {
    Priority.HIGH: 0,
    Priority.MEDIUM: 1,
    Priority.LOW: 2,
}


class WorkItemStatus(str, Enum):
    """
    Work item lifecycle.

    pending -> processing -> completed | failed

    completed and failed are terminal; only an explicit retry moves an
    item back to pending.
    """
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkItemStatus.COMPLETED, WorkItemStatus.FAILED)


class BatchStatus(str, Enum):
    """
    Batch lifecycle.

    uploading -> processing -> completed | failed
    """
    UPLOADING = "uploading"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class FlagStatus(str, Enum):
    """Verdict of the AI analysis for one work item."""
    APPROVED = "approved"
    FLAGGED = "flagged"
    NEEDS_REVIEW = "needs_review"


class IssueSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class WorkerType(str, Enum):
    """
    Sub-agent roles.

    - video_analysis: claims and analyzes work items
    - progress_tracking: sweeps stale claims back into the queue
    - report_generation: executes scheduled report runs
    """
    VIDEO_ANALYSIS = "video_analysis"
    PROGRESS_TRACKING = "progress_tracking"
    REPORT_GENERATION = "report_generation"


class WorkerStatus(str, Enum):
    """
    Sub-agent status as shown on the monitor.

    - idle: running and waiting for work
    - active: running a non-item task (sweep, report run)
    - busy: holding a work item claim
    - paused: will not claim new work
    - error: the worker loop hit an unexpected fault
    """
    IDLE = "idle"
    ACTIVE = "active"
    BUSY = "busy"
    PAUSED = "paused"
    ERROR = "error"


class WorkerCommand(str, Enum):
    """Administrative commands accepted by POST /workers/{id}/{command}."""
    START = "start"
    PAUSE = "pause"
    RESTART = "restart"


class ReportType(str, Enum):
    """
    Report cadence. Determines how schedule_time/schedule_days are turned
    into a cron expression and how far back a report looks for results.
    """
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


class ReportRunStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class RunTrigger(str, Enum):
    """What started a report run."""
    SCHEDULED = "scheduled"
    MANUAL = "manual"


class DeliveryStatus(str, Enum):
    """
    Notification ledger state for one deduplication token.

    - pending: a send is in flight
    - delivered: the channel acknowledged the message
    - unknown: the request went out but the acknowledgement was lost
    - failed: the channel definitely did not receive the message
    """
    PENDING = "pending"
    DELIVERED = "delivered"
    UNKNOWN = "unknown"
    FAILED = "failed"


class ErrorKind(str, Enum):
    """Machine-readable error categories returned in failed API responses."""
    VALIDATION = "validation_error"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    TRANSIENT_WORKER = "transient_worker_error"
    TERMINAL_WORKER = "terminal_worker_error"
    SCHEDULER_MISCONFIGURATION = "scheduler_misconfiguration"
    DISPATCH = "dispatch_error"
    INTERNAL = "internal_error"
