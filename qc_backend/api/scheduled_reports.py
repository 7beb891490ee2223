"""
FastAPI routers for scheduled Teams reports.

Endpoints (router, mounted at /scheduled-reports):
- GET    /scheduled-reports                 all report definitions
- POST   /scheduled-reports                 create (form fields or raw cron)
- GET    /scheduled-reports/{id}            one definition
- PUT    /scheduled-reports/{id}            partial edit; recomputes next_run_at
- DELETE /scheduled-reports/{id}            remove with its run history
- POST   /scheduled-reports/{id}/toggle     activate / deactivate
- POST   /scheduled-reports/{id}/run        run now (trigger='manual')
- GET    /scheduled-reports/{id}/runs       run history, newest first

Endpoints (monitor_router, mounted at the root):
- GET    /report-runs                       recent runs across all reports
- GET    /scheduler/status                  tick loop state
"""

import logging

from fastapi import APIRouter, Body, Query

from qc_backend.core.dependencies import SchedulerDep
from qc_backend.models import ApiResponse, ReportRunStatus, ScheduledReportCreate, ScheduledReportUpdate


logger = logging.getLogger(__name__)

router = APIRouter()
monitor_router = APIRouter()


# =============================================================================
# Report Definitions
# =============================================================================

@router.get("", response_model=ApiResponse)
async def list_reports(scheduler: SchedulerDep) -> ApiResponse:
    reports = await scheduler.list_reports()
    return ApiResponse(success=True, data=[r.model_dump(mode="json") for r in reports])


@router.post("", response_model=ApiResponse, status_code=201)
async def create_report(
    scheduler: SchedulerDep,
    request: ScheduledReportCreate = Body(...),
) -> ApiResponse:
    """
    Create a scheduled report.

    The cron expression comes from schedule_expression when given, otherwise
    from report_type + schedule_time (+ schedule_days for weekly reports).

    Raises:
        SchedulerMisconfiguration (422): Expression or time does not parse,
            or a custom report has no expression.
    """
    report = await scheduler.create_report(request)
    message = "Scheduled report created"
    if report.misconfigured:
        message = "Scheduled report created but deactivated: its schedule never fires"
    return ApiResponse(success=True, data=report.model_dump(mode="json"), message=message)


@router.get("/{report_id}", response_model=ApiResponse)
async def get_report(report_id: str, scheduler: SchedulerDep) -> ApiResponse:
    report = await scheduler.get_report(report_id)
    return ApiResponse(success=True, data=report.model_dump(mode="json"))


@router.put("/{report_id}", response_model=ApiResponse)
async def update_report(
    report_id: str,
    scheduler: SchedulerDep,
    request: ScheduledReportUpdate = Body(...),
) -> ApiResponse:
    report = await scheduler.update_report(report_id, request)
    return ApiResponse(success=True, data=report.model_dump(mode="json"), message="Scheduled report updated")


@router.delete("/{report_id}", response_model=ApiResponse)
async def delete_report(report_id: str, scheduler: SchedulerDep) -> ApiResponse:
    await scheduler.delete_report(report_id)
    return ApiResponse(success=True, message=f"Scheduled report {report_id} deleted")


@router.post("/{report_id}/toggle", response_model=ApiResponse)
async def toggle_report(report_id: str, scheduler: SchedulerDep) -> ApiResponse:
    report = await scheduler.toggle(report_id)
    state = "activated" if report.is_active else "deactivated"
    return ApiResponse(success=True, data=report.model_dump(mode="json"), message=f"Scheduled report {state}")


@router.post("/{report_id}/run", response_model=ApiResponse)
async def run_report_now(report_id: str, scheduler: SchedulerDep) -> ApiResponse:
    """
    Generate and dispatch the report immediately. The schedule is unchanged.

    Raises:
        ConflictError (409): The report is already running.
    """
    run = await scheduler.run_now(report_id)
    return ApiResponse(
        success=run.status == ReportRunStatus.COMPLETED,
        data=run.model_dump(mode="json"),
        message=f"Report run {run.status.value}",
        error=run.error_message if run.status == ReportRunStatus.FAILED else None,
    )


@router.get("/{report_id}/runs", response_model=ApiResponse)
async def list_report_runs(
    report_id: str,
    scheduler: SchedulerDep,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> ApiResponse:
    runs = await scheduler.list_runs(report_id, limit=limit, offset=offset)
    return ApiResponse(success=True, data=[r.model_dump(mode="json") for r in runs])


# =============================================================================
# Monitor
# =============================================================================

@monitor_router.get("/report-runs", response_model=ApiResponse)
async def list_recent_runs(
    scheduler: SchedulerDep,
    limit: int = Query(default=50, ge=1, le=500),
) -> ApiResponse:
    runs = await scheduler.recent_runs(limit)
    return ApiResponse(success=True, data=[r.model_dump(mode="json") for r in runs])


@monitor_router.get("/scheduler/status", response_model=ApiResponse)
async def scheduler_status(scheduler: SchedulerDep) -> ApiResponse:
    state = await scheduler.status()
    return ApiResponse(success=True, data=state.model_dump(mode="json"))
