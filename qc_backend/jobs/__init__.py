"""
Outbound notification jobs for the QC batch orchestrator.

- teams_dispatch: Microsoft Teams webhook dispatcher used by scheduled
  reports, batch completion notices and the test-message endpoint.

Idempotency Guarantees:
-----------------------
Every message carries a deduplication token recorded in the
notification_deliveries ledger (or its in-memory equivalent):

- Scheduled reports: report:{report_id}:{slot}, so a slot is announced at
  most once even if two scheduler engines race.
- Manual runs: report:{report_id}:manual:{run_id}.
- Batch completion: batch:{batch_id}:{finished_at}.

Environment Requirements:
-------------------------
- TEAMS_WEBHOOK_URL: default Teams incoming webhook
- TEAMS_CHANNEL_WEBHOOKS: JSON object {channel: webhook_url}

Dependencies:
-------------
- slack-sdk (WebhookClient, used as a generic JSON webhook client)
"""

from qc_backend.jobs.teams_dispatch import TeamsDispatcher, build_adaptive_card


__all__ = [
    'TeamsDispatcher',
    'build_adaptive_card',
]
