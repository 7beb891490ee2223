"""
Time source shared by the stores, the worker pool and the scheduler.

Components accept a `clock` callable instead of reading the system time
directly, so tests can drive them with a fixed or manually advanced clock.
All timestamps are timezone-aware UTC.
"""

from datetime import datetime, timezone
from typing import Callable


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)
