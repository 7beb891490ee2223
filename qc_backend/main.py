"""
FastAPI application entry point for the QC batch orchestrator.

This module wires the service layer together and exposes it over HTTP:

- Storage: PostgreSQL (asyncpg) when DATABASE_URL is set, otherwise
  process-local in-memory stores.
- WorkerPool with WORKER_COUNT video_analysis sub-agents, a progress_tracking
  sweep and (when SCHEDULER_ENABLED) a report_generation sub-agent running
  the SchedulerEngine tick loop.
- BatchCoordinator, registered as the pool's batch listener so finished
  batches send their completion notice.
- TeamsDispatcher shared by the scheduler, the coordinator and
  POST /notifications/test.

Service errors are rendered as the {success: false, error, error_kind}
envelope by the exception handlers registered in create_app().

Usage:
    uvicorn qc_backend.main:app --port 8000

    # tests
    with TestClient(create_app(Settings(worker_count=1))) as client:
        client.post('/batches', json={...})
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from qc_backend.api import api_router
from qc_backend.core.config import Settings, get_settings
from qc_backend.core.database import apply_schema, close_db, init_db
from qc_backend.core.errors import OrchestratorError
from qc_backend.jobs.teams_dispatch import TeamsDispatcher
from qc_backend.models import ApiResponse, ErrorKind, WorkerType
from qc_backend.services.analysis import build_analyzer
from qc_backend.services.batch_coordinator import BatchCoordinator
from qc_backend.services.report_builder import ReportBuilder
from qc_backend.services.report_store import (
    MemoryDeliveryLedger,
    MemoryReportStore,
    PostgresDeliveryLedger,
    PostgresReportStore,
)
from qc_backend.services.scheduler import SchedulerEngine
from qc_backend.services.work_item_store import (
    MemoryWorkItemStore,
    PostgresWorkItemStore,
    QueuePolicy,
)
from qc_backend.services.worker_pool import WorkerPool

# Configure logging
logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def build_services(app: FastAPI, settings: Settings) -> None:
    """
    Construct every service and attach it to app.state.

    The worker pool is started here; the scheduler runs inside it.
    """
    policy = QueuePolicy.from_settings(settings)

    if settings.database_url:
        await init_db(settings.database_url)
        logger.info("Database connection pool initialized")
        if settings.auto_create_schema:
            await apply_schema()
        item_store = PostgresWorkItemStore(policy)
        report_store = PostgresReportStore()
        ledger = PostgresDeliveryLedger()
    else:
        logger.warning("DATABASE_URL not configured; keeping state in memory")
        item_store = MemoryWorkItemStore(policy)
        report_store = MemoryReportStore()
        ledger = MemoryDeliveryLedger()

    dispatcher = TeamsDispatcher(ledger, settings)
    pool = WorkerPool(item_store, build_analyzer(settings), settings)
    coordinator = BatchCoordinator(item_store, settings, pool=pool, dispatcher=dispatcher)
    pool.add_batch_listener(coordinator.announce_finished_batch)

    scheduler = SchedulerEngine(report_store, ReportBuilder(item_store), dispatcher, settings)
    if settings.scheduler_enabled:
        pool.add_worker(WorkerType.REPORT_GENERATION, runner=scheduler.run_loop)

    await pool.start()

    app.state.settings = settings
    app.state.item_store = item_store
    app.state.report_store = report_store
    app.state.dispatcher = dispatcher
    app.state.worker_pool = pool
    app.state.coordinator = coordinator
    app.state.scheduler = scheduler


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Lifespan context manager for FastAPI application startup and shutdown events.

    On startup:
        - Initialize storage (database pool and schema, or memory stores)
        - Build services and start the worker pool

    On shutdown:
        - Cancel report runs and worker loops, releasing held items
        - Close the database connection pool
    """
    settings = app.state.settings
    logger.info(f"{settings.app_name} starting")
    await build_services(app, settings)

    yield

    logger.info(f"{settings.app_name} shutting down")
    await app.state.scheduler.shutdown()
    await app.state.worker_pool.shutdown()
    if settings.database_url:
        try:
            await close_db()
            logger.info("Database connection pool closed")
        except Exception as e:
            logger.error(f"Error closing database pool: {e}")


# =============================================================================
# Error Envelope
# =============================================================================

async def orchestrator_error_handler(request: Request, exc: OrchestratorError) -> JSONResponse:
    body = ApiResponse(
        success=False,
        error=exc.message,
        error_kind=exc.kind,
        data={"details": exc.details} if exc.details else None,
    )
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(mode="json"))


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {
            "field": ".".join(str(p) for p in err.get("loc", ()) if p != "body") or "body",
            "message": err.get("msg", "invalid value"),
            "row_number": None,
        }
        for err in exc.errors()
    ]
    body = ApiResponse(
        success=False,
        error=f"Request rejected with {len(details)} validation error(s)",
        error_kind=ErrorKind.VALIDATION,
        data={"details": details},
    )
    return JSONResponse(status_code=422, content=body.model_dump(mode="json"))


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    body = ApiResponse(success=False, error="Internal server error", error_kind=ErrorKind.INTERNAL)
    return JSONResponse(status_code=500, content=body.model_dump(mode="json"))


# =============================================================================
# Application Factory
# =============================================================================

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the FastAPI application. Services start with the lifespan."""
    settings = settings or get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description=(
            "Batch QC analysis orchestrator: batch intake and progress, "
            "sub-agent monitor, scheduled Teams reports."
        ),
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(OrchestratorError, orchestrator_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(api_router)

    @app.get("/health")
    async def health_check():
        """
        Health check endpoint for monitoring and load balancers.

        Returns:
            Dict with status 'healthy' and the storage back end in use
        """
        return {
            "status": "healthy",
            "storage": "postgres" if settings.database_url else "memory",
        }

    @app.get("/")
    async def root():
        """
        Root endpoint providing API information.

        Returns:
            Dict with API name and version
        """
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "docs": "/docs",
            "openapi": "/openapi.json",
        }

    return app


app = create_app()


# Run with uvicorn when executed directly
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "qc_backend.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
