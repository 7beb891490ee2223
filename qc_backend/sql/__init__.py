"""
SQL Query Module for the QC batch orchestrator.

Provides parameterized PostgreSQL statements for:
- Table DDL applied at startup (schema)
- Work item claims, transitions and batch reads (work_item_queries)
- Scheduled reports, report runs and the delivery ledger (report_queries)

Follows the Repository Pattern: the Postgres stores in qc_backend.services
hold the transaction logic, this package holds only SQL text.

Example usage:
    from qc_backend.sql import work_item_queries as q

    async with pool.acquire() as conn:
        row = await conn.fetchrow(q.CLAIM_NEXT_ITEM, worker_id, now)
"""

from qc_backend.sql import report_queries, work_item_queries
from qc_backend.sql.schema import SCHEMA_STATEMENTS


__all__ = [
    'report_queries',
    'work_item_queries',
    'SCHEMA_STATEMENTS',
]
