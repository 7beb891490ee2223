"""
Exception taxonomy for the orchestrator core.

Every error raised by a service carries an ErrorKind so the API layer can
render a structured failure ({success: false, error, error_kind}) without
inspecting exception types one by one.

Propagation rules:
- ValidationError, NotFoundError, ConflictError and SchedulerMisconfiguration
  are raised synchronously to the caller of a command.
- TransientWorkerError and TerminalWorkerError are raised by analysis clients
  and caught by the worker loop, which records them as item state transitions.
- DispatchError is caught by the dispatcher and returned inside a
  DeliveryResult; it is never thrown into the scheduler tick.
"""

from typing import Any, Dict, List, Optional

from qc_backend.models.enums import ErrorKind


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""

    kind: ErrorKind = ErrorKind.INTERNAL
    status_code: int = 500

    def __init__(self, message: str, details: Optional[List[Dict[str, Any]]] = None):
        self.message = message
        self.details = details or []
        super().__init__(message)


class ValidationError(OrchestratorError):
    """Malformed batch or report definition; never enters the work queue."""

    kind = ErrorKind.VALIDATION
    status_code = 422


class NotFoundError(OrchestratorError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404


class ConflictError(OrchestratorError):
    """Operation not allowed in the entity's current state."""

    kind = ErrorKind.CONFLICT
    status_code = 409


class TransientWorkerError(OrchestratorError):
    """Analysis call failed in a way that may succeed on another attempt."""

    kind = ErrorKind.TRANSIENT_WORKER
    status_code = 503


class TerminalWorkerError(OrchestratorError):
    """Analysis can never succeed for this item (bad input, rejected upstream)."""

    kind = ErrorKind.TERMINAL_WORKER
    status_code = 422


class SchedulerMisconfiguration(OrchestratorError):
    """Cron expression is malformed or can never be satisfied."""

    kind = ErrorKind.SCHEDULER_MISCONFIGURATION
    status_code = 422


class DispatchError(OrchestratorError):
    """Notification channel unreachable or not configured."""

    kind = ErrorKind.DISPATCH
    status_code = 502
