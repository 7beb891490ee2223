"""
Pytest Configuration and Shared Fixtures for the QC Orchestrator Tests.

This module provides fixtures and configuration for all tests, supporting:
- Async test execution with pytest-asyncio
- Mock database pool fixtures for testing the PostgreSQL stores without a
  real database connection
- Settings tuned for fast tests (no backoff, short poll interval, scheduler
  loop disabled)
- In-memory stores, a manually advanced clock and scripted collaborators

Test doubles live in qc_backend/tests/fakes.py.

Dependencies:
- pytest
- pytest-asyncio
- httpx (FastAPI TestClient)
"""

from typing import Generator, List
from unittest.mock import AsyncMock, Mock

import pytest

from qc_backend.core.config import Settings
from qc_backend.services.report_store import MemoryDeliveryLedger, MemoryReportStore
from qc_backend.services.work_item_store import MemoryWorkItemStore, QueuePolicy
from qc_backend.tests.fakes import FakeClock, FakeWebhookClient


# ============================================================
# PYTEST HOOKS
# ============================================================

def pytest_configure(config) -> None:
    """
    Configure custom pytest markers for test organization.

    Custom markers defined:
    - slow: Marks tests as slow (deselect with -m "not slow")
    - concurrency: Marks tests that run several worker tasks against one store
    """
    config.addinivalue_line(
        'markers',
        'slow: marks tests as slow (deselect with -m "not slow")'
    )
    config.addinivalue_line(
        'markers',
        'concurrency: marks tests exercising concurrent workers or engines'
    )


# ============================================================
# SETTINGS FIXTURE
# ============================================================

@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """
    Settings for tests: memory storage, immediate retries, fast polling.

    The scheduler tick loop is disabled; scheduler tests call tick() directly.
    """
    return Settings(
        _env_file=None,
        database_url=None,
        worker_count=3,
        max_attempts=3,
        retry_backoff_base_seconds=0.0,
        retry_backoff_max_seconds=0.0,
        worker_poll_interval_seconds=0.01,
        processing_timeout_seconds=300,
        sweep_interval_seconds=3600,
        rate_ewma_alpha=0.3,
        rate_window_minutes=10,
        max_batch_items=100,
        max_video_mb=1,
        upload_dir=str(tmp_path / 'uploads'),
        scheduler_enabled=False,
        scheduler_tick_seconds=30,
        scheduler_max_concurrent_runs=4,
        report_lock_ttl_seconds=600,
        analysis_service_url=None,
        teams_webhook_url='https://example.webhook.office.com/webhookb2/default',
        teams_channel_webhooks={'qc-alerts': 'https://example.webhook.office.com/webhookb2/qc-alerts'},
        dispatch_max_retries=3,
        dispatch_timeout_seconds=10,
        dispatch_backoff_seconds=0.0,
    )


# ============================================================
# CLOCK AND STORE FIXTURES
# ============================================================

@pytest.fixture
def clock() -> FakeClock:
    """Clock starting at 2024-01-15 09:00 UTC."""
    return FakeClock()


@pytest.fixture
def policy(test_settings: Settings) -> QueuePolicy:
    return QueuePolicy.from_settings(test_settings)


@pytest.fixture
def memory_store(policy: QueuePolicy) -> MemoryWorkItemStore:
    return MemoryWorkItemStore(policy)


@pytest.fixture
def report_store() -> MemoryReportStore:
    return MemoryReportStore()


@pytest.fixture
def ledger() -> MemoryDeliveryLedger:
    return MemoryDeliveryLedger()


@pytest.fixture
def webhook() -> FakeWebhookClient:
    return FakeWebhookClient()


# ============================================================
# DATABASE MOCK FIXTURES
# ============================================================

@pytest.fixture
def mock_db_pool() -> AsyncMock:
    """
    Create a mock asyncpg connection pool for testing database operations.

    This fixture provides a fully mocked database pool that mimics asyncpg.Pool
    behavior, including connection acquisition and transactions via async
    context managers and the standard query methods.

    Returns:
        AsyncMock: Mocked asyncpg pool with preconfigured methods

    Usage:
        async def test_claim(mock_db_pool):
            conn = mock_db_pool.acquire.return_value.__aenter__.return_value
            conn.fetchrow.return_value = {...}
            with patch('qc_backend.services.work_item_store.get_db_pool',
                       new=AsyncMock(return_value=mock_db_pool)):
                ...

    Methods Mocked:
        - pool.acquire(): Returns async context manager yielding the connection
        - conn.transaction(...): Returns async context manager
        - conn.execute / executemany / fetch / fetchrow / fetchval
    """
    pool = AsyncMock()

    # Create mock connection with standard asyncpg methods
    conn = AsyncMock()
    conn.execute = AsyncMock(return_value='UPDATE 0')
    conn.executemany = AsyncMock(return_value=None)
    conn.fetch = AsyncMock(return_value=[])
    conn.fetchrow = AsyncMock(return_value=None)
    conn.fetchval = AsyncMock(return_value=None)

    # conn.transaction() is synchronous and returns an async context manager
    transaction_context = AsyncMock()
    transaction_context.__aenter__ = AsyncMock(return_value=None)
    transaction_context.__aexit__ = AsyncMock(return_value=None)
    conn.transaction = Mock(return_value=transaction_context)

    # Configure acquire() to return an async context manager
    # that yields the mock connection
    acquire_context = AsyncMock()
    acquire_context.__aenter__ = AsyncMock(return_value=conn)
    acquire_context.__aexit__ = AsyncMock(return_value=None)
    pool.acquire = Mock(return_value=acquire_context)

    # Mock pool lifecycle methods
    pool.close = AsyncMock(return_value=None)

    return pool


@pytest.fixture
def mock_conn(mock_db_pool: AsyncMock) -> AsyncMock:
    """The connection yielded by mock_db_pool.acquire()."""
    return mock_db_pool.acquire.return_value.__aenter__.return_value


# ============================================================
# SAMPLE DATA FIXTURES
# ============================================================

@pytest.fixture
def sample_items() -> List[dict]:
    """Ten CSV-style items: two high, five medium, three low priority."""
    priorities = ['high', 'high'] + ['medium'] * 5 + ['low'] * 3
    return [
        {
            'uuid': f'uuid-{n:03d}',
            'type': 'csv_row',
            'priority': priority,
            'error_type': 'language' if n % 2 else 'sop',
            'agent_id': f'AG{n % 3:03d}',
        }
        for n, priority in enumerate(priorities)
    ]


@pytest.fixture
def sample_csv() -> Generator[bytes, None, None]:
    yield (
        b"uuid,error_type,agent_id,priority\n"
        b"uuid-123-456-789,language,AG001,high\n"
        b"uuid-123-456-790,body_language,AG002,\n"
        b"uuid-123-456-791,sop,AG001,LOW\n"
    )
