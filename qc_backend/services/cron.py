"""
Five-field cron expressions for scheduled reports.

    minute hour day-of-month month day-of-week

Each field is `*`, a literal, or a comma list of literals. Day-of-week runs
0-6 from Sunday, with 7 accepted as another Sunday. When both day fields are
restricted a date matches if either one does, as in standard cron. All times
are UTC.

Usage:
    expr = CronExpression.parse("0 9 * * 1,3")
    expr.next_after(datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc))
    # -> 2024-01-17 09:00 UTC

    expression_for(ReportType.DAILY, "09:30")  # "30 9 * * *"
"""

import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import FrozenSet, Iterable, Optional, Tuple

from qc_backend.core.errors import SchedulerMisconfiguration
from qc_backend.models import ReportType


DEFAULT_HORIZON_DAYS = 366

# (name, low, high)
_FIELDS: Tuple[Tuple[str, int, int], ...] = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day-of-month", 1, 31),
    ("month", 1, 12),
    ("day-of-week", 0, 7),
)


def _parse_field(text: str, name: str, low: int, high: int) -> Optional[FrozenSet[int]]:
    """Return the allowed values, or None for `*`."""
    if text == "*":
        return None

    values = set()
    for part in text.split(","):
        if not part.isdigit():
            raise SchedulerMisconfiguration(
                f"Invalid {name} field '{text}': only '*', numbers and comma lists are supported"
            )
        value = int(part)
        if value < low or value > high:
            raise SchedulerMisconfiguration(f"{name} value {value} out of range {low}-{high}")
        values.add(value)
    return frozenset(values)


@dataclass(frozen=True)
class CronExpression:
    """A parsed expression. None in a field means any value."""
    source: str
    minutes: Optional[FrozenSet[int]]
    hours: Optional[FrozenSet[int]]
    days: Optional[FrozenSet[int]]
    months: Optional[FrozenSet[int]]
    weekdays: Optional[FrozenSet[int]]

    @classmethod
    def parse(cls, expression: str) -> "CronExpression":
        """
        Raises:
            SchedulerMisconfiguration: Wrong field count, unsupported syntax
                or a value out of range.
        """
        parts = (expression or "").split()
        if len(parts) != 5:
            raise SchedulerMisconfiguration(
                f"Cron expression '{expression}' must have 5 fields, got {len(parts)}"
            )

        parsed = [_parse_field(text, *bounds) for text, bounds in zip(parts, _FIELDS)]
        weekdays = parsed[4]
        if weekdays is not None and 7 in weekdays:
            weekdays = frozenset((weekdays - {7}) | {0})

        return cls(
            source=" ".join(parts),
            minutes=parsed[0],
            hours=parsed[1],
            days=parsed[2],
            months=parsed[3],
            weekdays=weekdays,
        )

    def _day_matches(self, dt: datetime) -> bool:
        # Python weekday(): Monday=0; cron: Sunday=0
        cron_weekday = (dt.weekday() + 1) % 7
        day_ok = self.days is None or dt.day in self.days
        weekday_ok = self.weekdays is None or cron_weekday in self.weekdays

        if self.days is not None and self.weekdays is not None:
            return day_ok or weekday_ok
        return day_ok and weekday_ok

    def matches(self, dt: datetime) -> bool:
        return (
            (self.months is None or dt.month in self.months)
            and self._day_matches(dt)
            and (self.hours is None or dt.hour in self.hours)
            and (self.minutes is None or dt.minute in self.minutes)
        )

    def next_after(self, after: datetime, horizon_days: int = DEFAULT_HORIZON_DAYS) -> datetime:
        """
        Soonest matching minute strictly after `after`.

        Raises:
            SchedulerMisconfiguration: Nothing matches within horizon_days
                (e.g. '0 0 31 2 *').
        """
        candidate = after.replace(second=0, microsecond=0) + timedelta(minutes=1)
        limit = after + timedelta(days=horizon_days)

        while candidate <= limit:
            if self.months is not None and candidate.month not in self.months:
                days_left = calendar.monthrange(candidate.year, candidate.month)[1] - candidate.day + 1
                candidate = (candidate + timedelta(days=days_left)).replace(hour=0, minute=0)
                continue
            if not self._day_matches(candidate):
                candidate = (candidate + timedelta(days=1)).replace(hour=0, minute=0)
                continue
            if self.hours is not None and candidate.hour not in self.hours:
                candidate = (candidate + timedelta(hours=1)).replace(minute=0)
                continue
            if self.minutes is not None and candidate.minute not in self.minutes:
                candidate += timedelta(minutes=1)
                continue
            return candidate

        raise SchedulerMisconfiguration(
            f"Cron expression '{self.source}' has no run time within {horizon_days} days"
        )


def next_run_at(expression: str, after: datetime, horizon_days: int = DEFAULT_HORIZON_DAYS) -> datetime:
    return CronExpression.parse(expression).next_after(after, horizon_days)


def _split_time(schedule_time: Optional[str]) -> Tuple[int, int]:
    text = schedule_time or "09:00"
    try:
        hour_text, minute_text = text.split(":")
        hour, minute = int(hour_text), int(minute_text)
    except ValueError:
        raise SchedulerMisconfiguration(f"schedule_time must be HH:MM, got '{text}'")
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise SchedulerMisconfiguration(f"schedule_time out of range: '{text}'")
    return hour, minute


def expression_for(
    report_type: ReportType,
    schedule_time: Optional[str] = None,
    schedule_days: Iterable[int] = (),
    schedule_expression: Optional[str] = None,
) -> str:
    """
    Build the cron expression for a report form.

    A raw schedule_expression wins; otherwise:
        hourly  -> 'M * * * *'
        daily   -> 'M H * * *'
        weekly  -> 'M H * * D[,D...]'  (Monday when no day is picked)
        monthly -> 'M H 1 * *'
    custom reports must supply schedule_expression.

    Raises:
        SchedulerMisconfiguration: custom without an expression, bad time,
            or an expression that does not parse.
    """
    if schedule_expression:
        return CronExpression.parse(schedule_expression).source

    if report_type == ReportType.CUSTOM:
        raise SchedulerMisconfiguration("custom reports need a schedule_expression")

    hour, minute = _split_time(schedule_time)

    if report_type == ReportType.HOURLY:
        return f"{minute} * * * *"
    if report_type == ReportType.WEEKLY:
        days = sorted(set(schedule_days)) or [1]
        return f"{minute} {hour} * * {','.join(str(d) for d in days)}"
    if report_type == ReportType.MONTHLY:
        return f"{minute} {hour} 1 * *"
    return f"{minute} {hour} * * *"
