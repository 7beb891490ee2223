"""
API package initialization.

This package contains FastAPI router modules for the QC batch orchestrator:
- batches: Batch intake (JSON, CSV, video), progress, retry, abort, delete
- workers: Sub-agent monitor and start/pause/restart commands
- scheduled_reports: Scheduled Teams reports, run history, scheduler status
- notifications: Teams test message
"""

from fastapi import APIRouter

# Import router modules
from qc_backend.api.batches import router as batches_router
from qc_backend.api.notifications import router as notifications_router
from qc_backend.api.scheduled_reports import monitor_router as scheduler_monitor_router
from qc_backend.api.scheduled_reports import router as scheduled_reports_router
from qc_backend.api.workers import router as workers_router

# Create main API router
api_router = APIRouter()

# Include all sub-routers
api_router.include_router(batches_router, prefix="/batches", tags=["batches"])
api_router.include_router(workers_router, prefix="/workers", tags=["workers"])
api_router.include_router(scheduled_reports_router, prefix="/scheduled-reports", tags=["scheduled-reports"])
api_router.include_router(scheduler_monitor_router, tags=["scheduled-reports"])  # /report-runs, /scheduler/status
api_router.include_router(notifications_router, prefix="/notifications", tags=["notifications"])

# Export all routers for selective imports
__all__ = [
    "api_router",
    "batches_router",
    "workers_router",
    "scheduled_reports_router",
    "scheduler_monitor_router",
    "notifications_router",
]
