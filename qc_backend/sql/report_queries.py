"""
Parameterized SQL for scheduled reports, report runs and the delivery ledger.

Used by PostgresReportStore and PostgresDeliveryLedger.

Per-report lock:
    A run holds scheduled_reports.lock_owner until locked_until. Acquiring is
    a single conditional UPDATE, so two scheduler engines sharing the database
    cannot both take the same report. A scheduled acquisition also requires
    next_run_at to still equal the slot the engine saw when it selected the
    report; once one engine has run that slot and advanced next_run_at, a
    late engine's acquisition matches no row.
"""


# =============================================================================
# Scheduled Report CRUD
# =============================================================================

INSERT_REPORT = """
INSERT INTO scheduled_reports (
    id, name, report_type, schedule_expression, filters, channel,
    tag_recipients, custom_message, is_active, misconfigured,
    last_run_at, next_run_at, created_at, updated_at
)
VALUES ($1, $2, $3, $4, $5::jsonb, $6, $7, $8, $9, $10, $11, $12, $13, $14)
RETURNING *
"""

# Definition edits and toggles; lock columns are never written here
UPDATE_REPORT = """
UPDATE scheduled_reports
SET name = $2,
    report_type = $3,
    schedule_expression = $4,
    filters = $5::jsonb,
    channel = $6,
    tag_recipients = $7,
    custom_message = $8,
    is_active = $9,
    misconfigured = $10,
    next_run_at = $11,
    updated_at = $12
WHERE id = $1
RETURNING *
"""

SELECT_REPORT = """
SELECT * FROM scheduled_reports WHERE id = $1
"""

SELECT_REPORTS = """
SELECT * FROM scheduled_reports ORDER BY created_at, id
"""

DELETE_REPORT = """
DELETE FROM scheduled_reports WHERE id = $1
"""

SELECT_DUE_REPORTS = """
SELECT *
FROM scheduled_reports
WHERE is_active
  AND next_run_at IS NOT NULL
  AND next_run_at <= $1
ORDER BY next_run_at, id
"""

COUNT_ACTIVE_REPORTS = """
SELECT COUNT(*) FROM scheduled_reports WHERE is_active
"""


# =============================================================================
# Per-Report Lock
# =============================================================================

# $1 id, $2 owner, $3 locked_until, $4 now, $5 the next_run_at slot being run
ACQUIRE_LOCK_FOR_SLOT = """
UPDATE scheduled_reports
SET lock_owner = $2,
    locked_until = $3
WHERE id = $1
  AND (lock_owner IS NULL OR locked_until < $4)
  AND is_active
  AND next_run_at = $5
RETURNING *
"""

ACQUIRE_LOCK_MANUAL = """
UPDATE scheduled_reports
SET lock_owner = $2,
    locked_until = $3
WHERE id = $1
  AND (lock_owner IS NULL OR locked_until < $4)
RETURNING *
"""

RELEASE_LOCK = """
UPDATE scheduled_reports
SET lock_owner = NULL,
    locked_until = NULL
WHERE id = $1
  AND lock_owner = $2
"""

RENEW_LOCK = """
UPDATE scheduled_reports
SET locked_until = $3
WHERE id = $1
  AND lock_owner = $2
"""

# The schedule only advances while the row is still on the slot that ran
# with the expression it ran under. An edit or toggle during the run has
# already rescheduled the report and its values are kept.
FINISH_SCHEDULED_RUN = """
UPDATE scheduled_reports
SET last_run_at = $3,
    next_run_at = CASE
        WHEN next_run_at = $4::timestamptz AND schedule_expression = $5::text THEN $6::timestamptz
        ELSE next_run_at
    END,
    misconfigured = CASE
        WHEN next_run_at = $4::timestamptz AND schedule_expression = $5::text THEN $7::boolean
        ELSE misconfigured
    END,
    is_active = CASE
        WHEN next_run_at = $4::timestamptz AND schedule_expression = $5::text THEN is_active AND NOT $7::boolean
        ELSE is_active
    END,
    lock_owner = NULL,
    locked_until = NULL,
    updated_at = $3
WHERE id = $1
  AND lock_owner = $2
RETURNING *
"""


# =============================================================================
# Report Runs
# =============================================================================

INSERT_REPORT_RUN = """
INSERT INTO report_runs (
    id, report_id, run_at, trigger, status, flagged_items, dispatched,
    recipients_notified, delivery_token, error_message
)
VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9, $10)
"""

SELECT_REPORT_RUNS = """
SELECT *
FROM report_runs
WHERE report_id = $1
ORDER BY run_at DESC, id
LIMIT $2 OFFSET $3
"""

SELECT_RECENT_RUNS = """
SELECT *
FROM report_runs
ORDER BY run_at DESC, id
LIMIT $1
"""


# =============================================================================
# Notification Delivery Ledger
# =============================================================================

# Reserves a token for sending. Returns a row when the token is new or its
# previous attempt definitely failed; returns nothing when the token is
# delivered, unknown (ack lost) or pending (in flight).
RESERVE_DELIVERY = """
INSERT INTO notification_deliveries (dedup_token, channel, status, attempts, created_at, updated_at)
VALUES ($1, $2, 'pending', 0, $3, $3)
ON CONFLICT (dedup_token) DO UPDATE
SET status = 'pending',
    channel = EXCLUDED.channel,
    updated_at = EXCLUDED.updated_at
WHERE notification_deliveries.status = 'failed'
RETURNING *
"""

SELECT_DELIVERY = """
SELECT * FROM notification_deliveries WHERE dedup_token = $1
"""

UPDATE_DELIVERY = """
UPDATE notification_deliveries
SET status = $2,
    attempts = attempts + $3,
    last_error = $4,
    updated_at = $5
WHERE dedup_token = $1
RETURNING *
"""
