"""
Core infrastructure package for the orchestrator service.

Provides:
- Configuration management via pydantic-settings
- Async PostgreSQL database connectivity via asyncpg
- The exception taxonomy shared by services and the API layer

This module re-exports key components from submodules for convenient importing:

    from qc_backend.core import get_settings, get_db_pool, ConflictError

FastAPI dependencies live in qc_backend.core.dependencies and are not
re-exported here, since they import the service layer.
"""

from qc_backend.core.config import Settings, get_settings

from qc_backend.core.database import init_db, close_db, get_db_pool, apply_schema

from qc_backend.core.errors import (
    OrchestratorError,
    ValidationError,
    NotFoundError,
    ConflictError,
    TransientWorkerError,
    TerminalWorkerError,
    SchedulerMisconfiguration,
    DispatchError,
)


__all__ = [
    # Configuration management (from config.py)
    'Settings',
    'get_settings',
    # Database pool lifecycle (from database.py)
    'init_db',
    'close_db',
    'get_db_pool',
    'apply_schema',
    # Errors (from errors.py)
    'OrchestratorError',
    'ValidationError',
    'NotFoundError',
    'ConflictError',
    'TransientWorkerError',
    'TerminalWorkerError',
    'SchedulerMisconfiguration',
    'DispatchError',
]
