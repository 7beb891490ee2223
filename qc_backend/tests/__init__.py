'''
QC Batch Orchestrator Test Suite

Test Modules:
-------------
- test_work_item_store.py: queue state machine (in-memory store)
  - Priority then age claim order, no double claims
  - Retry backoff and attempt limits
  - Batch counters and terminal status

- test_postgres_store.py: PostgreSQL stores against a mocked asyncpg pool
  - Statement order inside transactions
  - Slot-conditioned report locks, delivery ledger

- test_worker_pool.py: sub-agent loops, commands, stale sweep
- test_batch_coordinator.py: intake validation, progress rate and ETA,
  shared status reads, completion notices
- test_cron.py: cron parsing and next-fire computation
- test_scheduler.py: tick loop, at-most-once runs, report definitions
- test_dispatch.py: Teams delivery, retry classification, deduplication
- test_intake.py: CSV parsing and video storage
- test_api.py: HTTP contract and error envelope

Running Tests:
--------------
    pip install -e ".[test]"
    pytest -v

    # skip the multi-task concurrency tests
    pytest -m "not concurrency"

Configuration:
--------------
See conftest.py for shared fixtures and fakes.py for test doubles.
'''

__all__ = []
