"""
Parameterized SQL for the work item and batch tables.

Used by PostgresWorkItemStore. All statements use asyncpg $n placeholders.

Locking order: every transaction that mutates a work item first locks its
batch row (LOCK_BATCH), then the item. The claim is the one exception: it
locks only the item row, with SKIP LOCKED, and never touches the batch. This
keeps the batch terminal check race-free without deadlocks.

Derived counters (computed at read time, never stored):
    processed_count = items in completed or failed
    flagged_count   = completed items whose result flag_status is 'flagged'
    failed_count    = items in failed
"""

from typing import Optional


# =============================================================================
# Batch Creation
# =============================================================================

INSERT_BATCH = """
INSERT INTO batches (id, source, total_items, status, notify_channel, created_at, updated_at)
VALUES ($1, $2, $3, 'uploading', $4, $5, $5)
"""

INSERT_WORK_ITEM = """
INSERT INTO work_items (
    id, batch_id, kind, priority, status, external_ref,
    error_type, agent_id, video_url, attempts, created_at, available_at
)
VALUES ($1, $2, $3, $4, 'pending', $5, $6, $7, $8, 0, $9, $9)
"""

MARK_BATCH_PROCESSING = """
UPDATE batches
SET status = 'processing', updated_at = $2
WHERE id = $1
"""


# =============================================================================
# Batch Reads
# =============================================================================

_BATCH_COUNTS_SELECT = """
SELECT
    b.*,
    COUNT(w.id) FILTER (WHERE w.status IN ('completed', 'failed')) AS processed_count,
    COUNT(w.id) FILTER (
        WHERE w.status = 'completed' AND w.result->>'flag_status' = 'flagged'
    ) AS flagged_count,
    COUNT(w.id) FILTER (WHERE w.status = 'failed') AS failed_count,
    COUNT(w.id) FILTER (WHERE w.status = 'pending') AS pending_count,
    COUNT(w.id) FILTER (WHERE w.status = 'processing') AS processing_count
FROM batches b
LEFT JOIN work_items w ON w.batch_id = b.id
"""

SELECT_BATCH_WITH_COUNTS = _BATCH_COUNTS_SELECT + """
WHERE b.id = $1
GROUP BY b.id
"""

SELECT_BATCHES_BY_STATUS = _BATCH_COUNTS_SELECT + """
WHERE b.status = ANY($1::text[])
GROUP BY b.id
ORDER BY b.created_at
"""

# Finish times inside the rate window, for the completions/minute EWMA
SELECT_FINISH_TIMES = """
SELECT completed_at
FROM work_items
WHERE batch_id = $1
  AND status IN ('completed', 'failed')
  AND completed_at >= $2
ORDER BY completed_at
"""

LOCK_BATCH = """
SELECT id, status FROM batches WHERE id = $1 FOR UPDATE
"""


# =============================================================================
# Claim and Item Transitions
# =============================================================================

# Highest priority first, then oldest; SKIP LOCKED lets concurrent claimers
# pass over a row another transaction is taking. The outer status check makes
# the swap a compare-and-swap even without the row lock.
CLAIM_NEXT_ITEM = """
UPDATE work_items
SET status = 'processing',
    assigned_worker_id = $1,
    claimed_at = $2
WHERE id = (
    SELECT id
    FROM work_items
    WHERE status = 'pending'
      AND available_at <= $2
    ORDER BY
        CASE priority WHEN 'high' THEN 0 WHEN 'medium' THEN 1 ELSE 2 END,
        created_at,
        id
    LIMIT 1
    FOR UPDATE SKIP LOCKED
)
  AND status = 'pending'
RETURNING *
"""

SELECT_ITEM_BATCH_ID = """
SELECT batch_id FROM work_items WHERE id = $1
"""

SELECT_ITEM = """
SELECT * FROM work_items WHERE id = $1
"""

COMPLETE_ITEM = """
UPDATE work_items
SET status = 'completed',
    result = $3::jsonb,
    completed_at = $4,
    last_error = NULL
WHERE id = $1
  AND status = 'processing'
  AND assigned_worker_id = $2
RETURNING *
"""

SELECT_HELD_ITEM_FOR_UPDATE = """
SELECT *
FROM work_items
WHERE id = $1
  AND status = 'processing'
  AND assigned_worker_id = $2
FOR UPDATE
"""

REQUEUE_ITEM = """
UPDATE work_items
SET status = 'pending',
    attempts = $2,
    last_error = $3,
    assigned_worker_id = NULL,
    claimed_at = NULL,
    available_at = $4
WHERE id = $1
RETURNING *
"""

FAIL_ITEM = """
UPDATE work_items
SET status = 'failed',
    attempts = $2,
    last_error = $3,
    completed_at = $4
WHERE id = $1
RETURNING *
"""

# Operator restart: back to pending without spending an attempt
RELEASE_ITEM = """
UPDATE work_items
SET status = 'pending',
    assigned_worker_id = NULL,
    claimed_at = NULL
WHERE id = $1
  AND status = 'processing'
  AND assigned_worker_id = $2
RETURNING *
"""

SELECT_STALE_ITEMS = """
SELECT id, batch_id
FROM work_items
WHERE status = 'processing'
  AND claimed_at < $1
ORDER BY claimed_at
"""

SELECT_STALE_ITEM_FOR_UPDATE = """
SELECT *
FROM work_items
WHERE id = $1
  AND status = 'processing'
  AND claimed_at < $2
FOR UPDATE
"""


# =============================================================================
# Batch Transitions
# =============================================================================

# Runs after every item transition, inside the same transaction and under the
# batch lock. Only a batch still in 'processing' can finish.
FINALIZE_BATCH = """
UPDATE batches b
SET status = CASE
        WHEN $3::boolean AND c.completed = 0 THEN 'failed'
        ELSE 'completed'
    END,
    finished_at = $2,
    updated_at = $2
FROM (
    SELECT
        COUNT(*) FILTER (WHERE status IN ('pending', 'processing')) AS outstanding,
        COUNT(*) FILTER (WHERE status = 'completed') AS completed
    FROM work_items
    WHERE batch_id = $1
) c
WHERE b.id = $1
  AND b.status = 'processing'
  AND c.outstanding = 0
RETURNING b.id
"""

RETRY_FAILED_ITEMS = """
UPDATE work_items
SET status = 'pending',
    attempts = 0,
    last_error = NULL,
    result = NULL,
    assigned_worker_id = NULL,
    claimed_at = NULL,
    completed_at = NULL,
    available_at = $2
WHERE batch_id = $1
  AND status = 'failed'
"""

REOPEN_BATCH = """
UPDATE batches
SET status = 'processing',
    finished_at = NULL,
    abort_reason = NULL,
    updated_at = $2
WHERE id = $1
"""

ABORT_PENDING_ITEMS = """
UPDATE work_items
SET status = 'failed',
    last_error = $2,
    completed_at = $3
WHERE batch_id = $1
  AND status = 'pending'
"""

ABORT_BATCH = """
UPDATE batches
SET status = 'failed',
    abort_reason = $2,
    finished_at = $3,
    updated_at = $3
WHERE id = $1
"""

COUNT_BATCH_PROCESSING = """
SELECT COUNT(*) FROM work_items WHERE batch_id = $1 AND status = 'processing'
"""

DELETE_BATCH = """
DELETE FROM batches WHERE id = $1
"""


# =============================================================================
# Pool and Report Reads
# =============================================================================

COUNT_PROCESSING = """
SELECT COUNT(*) FROM work_items WHERE status = 'processing'
"""

# Empty filter arrays mean "no restriction"
SELECT_FLAGGED_RESULTS = """
SELECT *
FROM work_items
WHERE status = 'completed'
  AND result->>'flag_status' = 'flagged'
  AND completed_at >= $1
  AND (cardinality($2::text[]) = 0 OR error_type = ANY($2::text[]))
  AND (cardinality($3::text[]) = 0 OR priority = ANY($3::text[]))
ORDER BY completed_at
"""


def get_list_items_query(status: Optional[str] = None) -> str:
    """
    Build the paginated item listing for one batch.

    Args:
        status: Optional status filter. When given, it is bound as $4.

    Returns:
        str: Query taking ($1 batch_id, $2 limit, $3 offset[, $4 status]).

    Example:
        >>> sql = get_list_items_query('failed')
        >>> rows = await conn.fetch(sql, batch_id, 50, 0, 'failed')
    """
    where_conditions = ["batch_id = $1"]

    if status is not None:
        where_conditions.append("status = $4")

    where_clause = " AND ".join(where_conditions)

    return f"""
    SELECT *
    FROM work_items
    WHERE {where_clause}
    ORDER BY created_at, id
    LIMIT $2 OFFSET $3
    """
