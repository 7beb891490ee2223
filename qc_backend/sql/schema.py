"""
PostgreSQL DDL for the orchestrator tables.

Applied at startup by qc_backend.core.database.apply_schema() when
AUTO_CREATE_SCHEMA is set. Every statement is idempotent.

Tables:
    batches                  One row per submitted batch; counters are derived
    work_items               Units of analysis; the claim query runs here
    scheduled_reports        Recurring report definitions plus lock columns
    report_runs              Append-only run history
    notification_deliveries  Dispatcher idempotency ledger keyed by dedup token
"""

from typing import List


CREATE_BATCHES = """
CREATE TABLE IF NOT EXISTS batches (
    id              TEXT PRIMARY KEY,
    source          TEXT NOT NULL,
    total_items     INTEGER NOT NULL,
    status          TEXT NOT NULL,
    notify_channel  TEXT,
    abort_reason    TEXT,
    created_at      TIMESTAMPTZ NOT NULL,
    updated_at      TIMESTAMPTZ NOT NULL,
    finished_at     TIMESTAMPTZ
)
"""

CREATE_WORK_ITEMS = """
CREATE TABLE IF NOT EXISTS work_items (
    id                  TEXT PRIMARY KEY,
    batch_id            TEXT NOT NULL REFERENCES batches(id) ON DELETE CASCADE,
    kind                TEXT NOT NULL,
    priority            TEXT NOT NULL,
    status              TEXT NOT NULL,
    external_ref        TEXT NOT NULL,
    error_type          TEXT,
    agent_id            TEXT,
    video_url           TEXT,
    assigned_worker_id  TEXT,
    result              JSONB,
    attempts            INTEGER NOT NULL DEFAULT 0,
    last_error          TEXT,
    created_at          TIMESTAMPTZ NOT NULL,
    available_at        TIMESTAMPTZ NOT NULL,
    claimed_at          TIMESTAMPTZ,
    completed_at        TIMESTAMPTZ,
    UNIQUE (batch_id, external_ref)
)
"""

# Claim scans pending rows in priority/age order
CREATE_WORK_ITEMS_CLAIM_INDEX = """
CREATE INDEX IF NOT EXISTS idx_work_items_claim
    ON work_items (status, available_at, created_at)
"""

CREATE_WORK_ITEMS_BATCH_INDEX = """
CREATE INDEX IF NOT EXISTS idx_work_items_batch_status
    ON work_items (batch_id, status)
"""

CREATE_SCHEDULED_REPORTS = """
CREATE TABLE IF NOT EXISTS scheduled_reports (
    id                   TEXT PRIMARY KEY,
    name                 TEXT NOT NULL,
    report_type          TEXT NOT NULL,
    schedule_expression  TEXT NOT NULL,
    filters              JSONB NOT NULL DEFAULT '{}'::jsonb,
    channel              TEXT NOT NULL,
    tag_recipients       BOOLEAN NOT NULL DEFAULT FALSE,
    custom_message       TEXT,
    is_active            BOOLEAN NOT NULL DEFAULT TRUE,
    misconfigured        BOOLEAN NOT NULL DEFAULT FALSE,
    last_run_at          TIMESTAMPTZ,
    next_run_at          TIMESTAMPTZ,
    created_at           TIMESTAMPTZ NOT NULL,
    updated_at           TIMESTAMPTZ NOT NULL,
    lock_owner           TEXT,
    locked_until         TIMESTAMPTZ
)
"""

CREATE_SCHEDULED_REPORTS_DUE_INDEX = """
CREATE INDEX IF NOT EXISTS idx_scheduled_reports_due
    ON scheduled_reports (is_active, next_run_at)
"""

CREATE_REPORT_RUNS = """
CREATE TABLE IF NOT EXISTS report_runs (
    id                   TEXT PRIMARY KEY,
    report_id            TEXT NOT NULL REFERENCES scheduled_reports(id) ON DELETE CASCADE,
    run_at               TIMESTAMPTZ NOT NULL,
    trigger              TEXT NOT NULL,
    status               TEXT NOT NULL,
    flagged_items        INTEGER NOT NULL DEFAULT 0,
    dispatched           BOOLEAN NOT NULL DEFAULT FALSE,
    recipients_notified  JSONB NOT NULL DEFAULT '[]'::jsonb,
    delivery_token       TEXT,
    error_message        TEXT
)
"""

CREATE_REPORT_RUNS_INDEX = """
CREATE INDEX IF NOT EXISTS idx_report_runs_report
    ON report_runs (report_id, run_at DESC)
"""

CREATE_NOTIFICATION_DELIVERIES = """
CREATE TABLE IF NOT EXISTS notification_deliveries (
    dedup_token  TEXT PRIMARY KEY,
    channel      TEXT NOT NULL,
    status       TEXT NOT NULL,
    attempts     INTEGER NOT NULL DEFAULT 0,
    last_error   TEXT,
    created_at   TIMESTAMPTZ NOT NULL,
    updated_at   TIMESTAMPTZ NOT NULL
)
"""


SCHEMA_STATEMENTS: List[str] = [
    CREATE_BATCHES,
    CREATE_WORK_ITEMS,
    CREATE_WORK_ITEMS_CLAIM_INDEX,
    CREATE_WORK_ITEMS_BATCH_INDEX,
    CREATE_SCHEDULED_REPORTS,
    CREATE_SCHEDULED_REPORTS_DUE_INDEX,
    CREATE_REPORT_RUNS,
    CREATE_REPORT_RUNS_INDEX,
    CREATE_NOTIFICATION_DELIVERIES,
]
