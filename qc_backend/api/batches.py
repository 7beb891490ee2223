"""
FastAPI router for batch intake and progress.

Endpoints:
- POST   /batches                 JSON batch {source, items[], notify_channel?}
- POST   /batches/upload-csv      multipart QC CSV (uuid, error_type, agent_id, priority)
- POST   /batches/video           multipart video plus agent_id / error_type
- GET    /batches/active          batches still uploading or processing
- GET    /batches/{id}/status     progress snapshot for polling clients
- GET    /batches/{id}/items      paginated items, optional status filter
- POST   /batches/{id}/retry      reset failed items to pending
- POST   /batches/{id}/abort      fail pending items and the batch
- DELETE /batches/{id}            remove a batch with nothing in processing

Every response is the ApiResponse envelope. Service errors (ValidationError,
NotFoundError, ConflictError) are rendered by the exception handler in
qc_backend.main.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Body, File, Form, Query, UploadFile

from qc_backend.core.dependencies import CoordinatorDep, SettingsDep
from qc_backend.core.errors import ValidationError
from qc_backend.models import (
    AbortBatchRequest,
    ApiResponse,
    Batch,
    CreateBatchRequest,
    CreateBatchResponse,
    WorkItemStatus,
)
from qc_backend.services.intake import parse_qc_csv, remove_stored_video, store_video, video_item


logger = logging.getLogger(__name__)

router = APIRouter()


def _created(batch: Batch) -> ApiResponse:
    return ApiResponse(
        success=True,
        data=CreateBatchResponse(batch_id=batch.id, total_items=batch.total_items).model_dump(),
        message=f"Batch queued with {batch.total_items} item(s)",
    )


# =============================================================================
# Intake
# =============================================================================

@router.post("", response_model=ApiResponse, status_code=201)
async def create_batch(
    coordinator: CoordinatorDep,
    request: CreateBatchRequest = Body(...),
) -> ApiResponse:
    """
    Submit a batch of work items.

    Raises:
        ValidationError (422): Empty source, no items, duplicate uuid, too many
            items. Nothing is queued.
    """
    batch = await coordinator.create_batch(request.source, request.items, request.notify_channel)
    return _created(batch)


@router.post("/upload-csv", response_model=ApiResponse, status_code=201)
async def upload_csv(
    coordinator: CoordinatorDep,
    file: UploadFile = File(..., description="QC CSV with a uuid column"),
    source: Optional[str] = Form(default=None),
    notify_channel: Optional[str] = Form(default=None),
) -> ApiResponse:
    """
    Create a batch from an uploaded CSV, one work item per row.

    Row-level problems are reported with 1-based row numbers.
    """
    content = await file.read()
    items = parse_qc_csv(content)
    batch = await coordinator.create_batch(source or file.filename or "csv-upload", items, notify_channel)
    return _created(batch)


@router.post("/video", response_model=ApiResponse, status_code=201)
async def upload_video(
    coordinator: CoordinatorDep,
    settings: SettingsDep,
    file: UploadFile = File(..., description="Video file (MP4, AVI, MOV, ...)"),
    agent_id: str = Form(...),
    error_type: str = Form(...),
    notify_channel: Optional[str] = Form(default=None),
) -> ApiResponse:
    """Store an uploaded video and queue it as a single-item batch."""
    stored = await store_video(
        file.file,
        file.filename,
        file.content_type,
        settings.upload_dir,
        settings.max_video_mb,
    )

    try:
        batch = await coordinator.create_batch(
            file.filename or stored.video_id,
            [video_item(stored, agent_id, error_type)],
            notify_channel,
        )
    except ValidationError:
        remove_stored_video(stored)
        raise

    return _created(batch)


# =============================================================================
# Queries
# =============================================================================

@router.get("/active", response_model=ApiResponse)
async def list_active_batches(coordinator: CoordinatorDep) -> ApiResponse:
    batches = await coordinator.list_active()
    return ApiResponse(success=True, data=[b.model_dump(mode="json") for b in batches])


@router.get("/{batch_id}/status", response_model=ApiResponse)
async def get_batch_status(batch_id: str, coordinator: CoordinatorDep) -> ApiResponse:
    """
    Progress snapshot: totals, per-status counts, smoothed rate (items/min)
    and ETA ('unknown' while nothing has finished recently).
    """
    view = await coordinator.get_status(batch_id)
    return ApiResponse(success=True, data=view.model_dump(mode="json"))


@router.get("/{batch_id}/items", response_model=ApiResponse)
async def list_batch_items(
    batch_id: str,
    coordinator: CoordinatorDep,
    status: Optional[WorkItemStatus] = Query(default=None, description="Filter by item status"),
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
) -> ApiResponse:
    items = await coordinator.list_items(batch_id, status=status, limit=limit, offset=offset)
    return ApiResponse(success=True, data=[i.model_dump(mode="json") for i in items])


# =============================================================================
# Commands
# =============================================================================

@router.post("/{batch_id}/retry", response_model=ApiResponse)
async def retry_failed_items(batch_id: str, coordinator: CoordinatorDep) -> ApiResponse:
    reset = await coordinator.retry_failed(batch_id)
    return ApiResponse(
        success=True,
        data={"batch_id": batch_id, "reset": reset},
        message=f"{reset} failed item(s) queued for retry",
    )


@router.post("/{batch_id}/abort", response_model=ApiResponse)
async def abort_batch(
    batch_id: str,
    coordinator: CoordinatorDep,
    request: Optional[AbortBatchRequest] = Body(default=None),
) -> ApiResponse:
    reason = request.reason if request else AbortBatchRequest().reason
    batch = await coordinator.abort(batch_id, reason)
    return ApiResponse(success=True, data=batch.model_dump(mode="json"), message="Batch aborted")


@router.delete("/{batch_id}", response_model=ApiResponse)
async def delete_batch(batch_id: str, coordinator: CoordinatorDep) -> ApiResponse:
    await coordinator.delete_batch(batch_id)
    return ApiResponse(success=True, message=f"Batch {batch_id} deleted")
