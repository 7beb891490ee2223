"""
Settings and environment management module for the QC batch orchestrator.

This module provides centralized configuration management using pydantic-settings,
which automatically loads settings from environment variables and .env files.

Key Features:
- Environment variable validation and type coercion
- Sensible defaults for development (in-memory storage, stub analyzer)
- Singleton pattern via @lru_cache for efficient access
- Optional external service endpoints (PostgreSQL, analysis service, Teams)

Environment Variables:
- DATABASE_URL: PostgreSQL connection string. When unset the service keeps
  batches, work items and schedules in process memory.
- ANALYSIS_SERVICE_URL: Base URL of the job-style analysis service
  (POST /analyze, GET /result/{job_id}). When unset a deterministic stub
  analyzer is used.
- TEAMS_WEBHOOK_URL: Default Teams incoming webhook for report dispatch.
- TEAMS_CHANNEL_WEBHOOKS: JSON object mapping channel names to webhook URLs.

Usage:
    from qc_backend.core.config import get_settings

    settings = get_settings()
    max_attempts = settings.max_attempts
"""

from functools import lru_cache
from typing import Dict, List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Groups:
        storage: database_url, auto_create_schema
        worker pool: worker_count, max_attempts, retry backoff, stale sweep
        batches: rate EWMA parameters, batch terminal policy, intake limits
        scheduler: tick interval, concurrency bound, report lock TTL
        collaborators: analysis service and Teams webhooks
    """

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        extra='ignore',
        case_sensitive=False,
    )

    # =========================================================================
    # Application
    # =========================================================================

    app_name: str = 'QC Batch Orchestrator'
    app_version: str = '1.0.0'
    log_level: str = 'INFO'
    cors_origins: List[str] = ['http://localhost:3000', 'http://127.0.0.1:3000']

    # Prefix for worker ids so several service instances can share one database
    instance_name: str = 'qc'

    # =========================================================================
    # Storage
    # =========================================================================

    # PostgreSQL connection string; None keeps all state in memory
    database_url: Optional[str] = None

    # Apply the CREATE TABLE IF NOT EXISTS schema at startup
    auto_create_schema: bool = True

    # =========================================================================
    # Worker Pool
    # =========================================================================

    # Number of video_analysis sub-agents started with the service
    worker_count: int = 3

    # A work item is permanently failed once attempts reaches this value
    max_attempts: int = 3

    # Retry delay = base * 2^(attempts-1), capped at max
    retry_backoff_base_seconds: float = 2.0
    retry_backoff_max_seconds: float = 60.0

    # Idle workers re-check the queue at least this often
    worker_poll_interval_seconds: float = 1.0

    # Items stuck in processing longer than this are reclaimed by the sweep
    processing_timeout_seconds: int = 300
    sweep_interval_seconds: int = 30

    # =========================================================================
    # Batches
    # =========================================================================

    # Smoothing factor for the completions/minute moving average
    rate_ewma_alpha: float = 0.3
    rate_window_minutes: int = 10

    # A batch whose every item failed permanently ends as 'failed', not 'completed'
    fail_batch_when_all_items_failed: bool = True

    max_batch_items: int = 10000
    max_video_mb: int = 100
    upload_dir: str = './uploads'

    # =========================================================================
    # Scheduler
    # =========================================================================

    scheduler_enabled: bool = True
    scheduler_tick_seconds: int = 30
    scheduler_max_concurrent_runs: int = 4

    # Per-report lock lease; a crashed run frees its report after this long
    report_lock_ttl_seconds: int = 600

    # Forward search horizon for cron expressions
    schedule_search_horizon_days: int = 366

    # =========================================================================
    # Analysis Service (job-style collaborator)
    # =========================================================================

    analysis_service_url: Optional[str] = None
    analysis_request_timeout_seconds: float = 30.0
    analysis_poll_interval_seconds: float = 2.0
    analysis_timeout_seconds: float = 240.0

    # =========================================================================
    # Teams Integration
    # =========================================================================

    teams_webhook_url: Optional[str] = None
    teams_channel_webhooks: Dict[str, str] = {}
    # agent id -> AAD object id or UPN for @-mentions
    teams_mention_ids: Dict[str, str] = {}
    dispatch_max_retries: int = 3
    dispatch_timeout_seconds: int = 10
    dispatch_backoff_seconds: float = 1.0


@lru_cache()
def get_settings() -> Settings:
    """
    Get the application settings singleton.

    Returns:
        Settings: The cached settings instance.

    Note:
        To refresh settings in tests, clear the cache:
        >>> get_settings.cache_clear()
    """
    return Settings()
