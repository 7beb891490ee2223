"""
FastAPI dependency injection for the orchestrator services.

The application lifespan (qc_backend.main) builds one instance of each
service and stores it on app.state. The dependencies below hand those
instances to endpoint handlers, so handlers never construct services and
tests can swap them through app.state or app.dependency_overrides.

Dependencies Provided:
- CoordinatorDep: BatchCoordinator
- WorkerPoolDep: WorkerPool
- SchedulerDep: SchedulerEngine
- DispatcherDep: TeamsDispatcher
- SettingsDep: Settings singleton

Usage Examples:
    @router.get("/{batch_id}/status")
    async def get_status(batch_id: str, coordinator: CoordinatorDep) -> ApiResponse:
        view = await coordinator.get_status(batch_id)
        return ApiResponse(success=True, data=view)

    # In tests
    app.dependency_overrides[get_coordinator] = lambda: fake_coordinator
"""

from typing import Annotated

from fastapi import Depends, Request

from qc_backend.core.config import Settings, get_settings
from qc_backend.jobs.teams_dispatch import TeamsDispatcher
from qc_backend.services.batch_coordinator import BatchCoordinator
from qc_backend.services.scheduler import SchedulerEngine
from qc_backend.services.worker_pool import WorkerPool


# =============================================================================
# Service Dependencies
# =============================================================================

def get_coordinator(request: Request) -> BatchCoordinator:
    """Return the BatchCoordinator created at startup."""
    return request.app.state.coordinator


def get_worker_pool(request: Request) -> WorkerPool:
    return request.app.state.worker_pool


def get_scheduler(request: Request) -> SchedulerEngine:
    return request.app.state.scheduler


def get_dispatcher(request: Request) -> TeamsDispatcher:
    return request.app.state.dispatcher


# =============================================================================
# Settings Dependency
# =============================================================================

def get_settings_dependency(request: Request) -> Settings:
    """
    Return the Settings the app was built with, else the singleton.

    Note:
        Tests can also override it directly:

        app.dependency_overrides[get_settings_dependency] = lambda: test_settings
    """
    settings = getattr(request.app.state, 'settings', None)
    return settings if settings is not None else get_settings()


# =============================================================================
# Type Aliases for Dependency Injection
# =============================================================================

CoordinatorDep = Annotated[BatchCoordinator, Depends(get_coordinator)]
WorkerPoolDep = Annotated[WorkerPool, Depends(get_worker_pool)]
SchedulerDep = Annotated[SchedulerEngine, Depends(get_scheduler)]
DispatcherDep = Annotated[TeamsDispatcher, Depends(get_dispatcher)]
SettingsDep = Annotated[Settings, Depends(get_settings_dependency)]
