"""
Scheduled report generation.

Builds the flagged-items summary a ScheduledReport sends to Teams. The
report window starts at the report's last_run_at (so consecutive runs do not
overlap) or, on the first run, one report period back from now:

    hourly   1 hour
    daily    1 day
    weekly   7 days
    monthly  31 days
    custom   1 day

Flagged items in the window are filtered by the report's error types and
priorities, then grouped with pandas by error type and by agent. When the
report tags recipients, every agent with a flagged item is mentioned.

Usage:
    builder = ReportBuilder(work_item_store)
    generated = await builder.build(report, now)
    if generated.flagged_items >= report.filters.min_flagged_items:
        await dispatcher.send(report.channel, generated.message, generated.recipients, token)
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List

import pandas as pd

from qc_backend.models import GeneratedReport, ReportType, ScheduledReport, WorkItem
from qc_backend.services.work_item_store import WorkItemStore


logger = logging.getLogger(__name__)


REPORT_LOOKBACK: Dict[ReportType, timedelta] = {
    ReportType.HOURLY: timedelta(hours=1),
    ReportType.DAILY: timedelta(days=1),
    ReportType.WEEKLY: timedelta(days=7),
    ReportType.MONTHLY: timedelta(days=31),
    ReportType.CUSTOM: timedelta(days=1),
}

# Rows listed individually in the message before it switches to "... and N more"
MAX_LISTED_ITEMS = 10


def summarize_flagged(items: List[WorkItem]) -> Dict[str, Any]:
    """
    Aggregate flagged items.

    Returns:
        Dict with:
        - total: number of flagged items
        - by_error_type: {error_type: count}, largest first
        - by_agent: {agent_id: count}, largest first
        - avg_confidence: mean analysis confidence, 0.0 when empty
    """
    if not items:
        return {'total': 0, 'by_error_type': {}, 'by_agent': {}, 'avg_confidence': 0.0}

    df = pd.DataFrame([
        {
            'error_type': item.error_type or 'unspecified',
            'agent_id': item.agent_id or 'unassigned',
            'confidence': item.result.confidence if item.result else 0.0,
        }
        for item in items
    ])

    by_error_type = df.groupby('error_type').size().sort_values(ascending=False)
    by_agent = df.groupby('agent_id').size().sort_values(ascending=False)

    return {
        'total': int(len(df)),
        'by_error_type': {str(k): int(v) for k, v in by_error_type.items()},
        'by_agent': {str(k): int(v) for k, v in by_agent.items()},
        'avg_confidence': round(float(df['confidence'].mean()), 2),
    }


def format_report_message(
    report: ScheduledReport,
    items: List[WorkItem],
    summary: Dict[str, Any],
    since: datetime,
    now: datetime,
) -> str:
    """Render the Teams message body (Teams TextBlocks accept this markdown subset)."""
    lines = [
        f"**{report.name}** ({report.report_type.value} QC report)",
        f"Window: {since.strftime('%Y-%m-%d %H:%M')} to {now.strftime('%Y-%m-%d %H:%M')} UTC",
        "",
        f"Flagged items: **{summary['total']}**",
    ]

    if report.custom_message:
        lines.insert(1, report.custom_message)

    if summary['by_error_type']:
        lines.append("")
        lines.append("By error type:")
        for error_type, count in summary['by_error_type'].items():
            lines.append(f"- {error_type}: {count}")

    if summary['by_agent']:
        lines.append("")
        lines.append("By agent:")
        for agent_id, count in summary['by_agent'].items():
            lines.append(f"- {agent_id}: {count}")

    if items:
        lines.append("")
        lines.append("Items:")
        for item in items[:MAX_LISTED_ITEMS]:
            issue = item.result.issues[0].description if item.result and item.result.issues else 'flagged'
            lines.append(f"- {item.external_ref} ({item.priority.value}): {issue}")
        if len(items) > MAX_LISTED_ITEMS:
            lines.append(f"- ... and {len(items) - MAX_LISTED_ITEMS} more")

    return "\n".join(lines)


class ReportBuilder:
    """
    Default report generation collaborator.

    Args:
        store: WorkItemStore holding analysed items.
    """

    def __init__(self, store: WorkItemStore):
        self.store = store

    @staticmethod
    def window_start(report: ScheduledReport, now: datetime) -> datetime:
        if report.last_run_at is not None:
            return report.last_run_at
        return now - REPORT_LOOKBACK.get(report.report_type, timedelta(days=1))

    async def build(self, report: ScheduledReport, now: datetime) -> GeneratedReport:
        since = self.window_start(report, now)
        items = await self.store.flagged_results(
            since,
            error_types=report.filters.error_types,
            priorities=report.filters.priority,
        )
        summary = summarize_flagged(items)

        recipients: List[str] = []
        if report.tag_recipients:
            recipients = sorted({item.agent_id for item in items if item.agent_id})

        logger.info(
            f"Built report {report.id} '{report.name}': {summary['total']} flagged item(s) "
            f"since {since.isoformat()}"
        )

        return GeneratedReport(
            report_id=report.id,
            title=f"{report.name} - QC report",
            message=format_report_message(report, items, summary, since, now),
            flagged_items=summary['total'],
            recipients=recipients,
            summary=summary,
        )
