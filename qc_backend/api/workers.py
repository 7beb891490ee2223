"""
FastAPI router for the sub-agent monitor.

Endpoints:
- GET  /workers                      every sub-agent plus system stats
- GET  /workers/{id}                 one sub-agent
- POST /workers/{id}/{command}       start | pause | restart

Commands are one-way: the response echoes the record right after the
command was applied, and clients poll GET /workers for what happens next.
"""

import logging

from fastapi import APIRouter

from qc_backend.core.dependencies import WorkerPoolDep
from qc_backend.models import ApiResponse, WorkerCommand


logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("", response_model=ApiResponse)
async def list_workers(pool: WorkerPoolDep) -> ApiResponse:
    stats = await pool.system_stats()
    return ApiResponse(
        success=True,
        data={
            "workers": [w.model_dump(mode="json") for w in pool.list_workers()],
            "stats": stats.model_dump(),
        },
    )


@router.get("/{worker_id}", response_model=ApiResponse)
async def get_worker(worker_id: str, pool: WorkerPoolDep) -> ApiResponse:
    return ApiResponse(success=True, data=pool.get_worker(worker_id).model_dump(mode="json"))


@router.post("/{worker_id}/{command}", response_model=ApiResponse)
async def control_worker(worker_id: str, command: WorkerCommand, pool: WorkerPoolDep) -> ApiResponse:
    """
    Apply an administrative command.

    - start: resume a paused worker or start a stopped loop
    - pause: stop claiming; the current item finishes normally
    - restart: release the current claim back to pending and start over
    """
    if command == WorkerCommand.START:
        worker = await pool.start_worker(worker_id)
    elif command == WorkerCommand.PAUSE:
        worker = await pool.pause_worker(worker_id)
    else:
        worker = await pool.restart_worker(worker_id)

    logger.info(f"Worker command {command.value} applied to {worker_id}")
    return ApiResponse(
        success=True,
        data=worker.model_dump(mode="json"),
        message=f"{command.value} sent to {worker_id}",
    )
