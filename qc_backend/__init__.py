"""
QC Batch Orchestrator Package.

FastAPI service that runs batches of quality-check analyses on a pool of
sub-agents, reports progress, and sends scheduled Teams reports about
flagged items.

Subpackages:
    - api: FastAPI route handlers
    - core: Configuration, database, errors and dependencies
    - models: Pydantic schemas and enums
    - services: Work queue, worker pool, batches, scheduler
    - jobs: Teams notification dispatcher
    - sql: Schema DDL and parameterized SQL queries
"""

__version__ = "1.0.0"
