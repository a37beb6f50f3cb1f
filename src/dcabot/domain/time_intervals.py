from __future__ import annotations

import calendar
from datetime import UTC, datetime, timedelta
from enum import StrEnum


class TimeInterval(StrEnum):
    EVERY_SECOND = "every_second"
    EVERY_MINUTE = "every_minute"
    HALF_HOURLY = "half_hourly"
    HOURLY = "hourly"
    HALF_DAILY = "half_daily"
    DAILY = "daily"
    WEEKLY = "weekly"
    FORTNIGHTLY = "fortnightly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


_FIXED_INTERVALS: dict[TimeInterval, timedelta] = {
    TimeInterval.EVERY_SECOND: timedelta(seconds=1),
    TimeInterval.EVERY_MINUTE: timedelta(minutes=1),
    TimeInterval.HALF_HOURLY: timedelta(minutes=30),
    TimeInterval.HOURLY: timedelta(hours=1),
    TimeInterval.HALF_DAILY: timedelta(hours=12),
    TimeInterval.DAILY: timedelta(days=1),
    TimeInterval.WEEKLY: timedelta(weeks=1),
    TimeInterval.FORTNIGHTLY: timedelta(weeks=2),
}


def ensure_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC)


def _add_months(ts: datetime, months: int, anchor_day: int | None) -> datetime:
    if months == 0:
        return ts
    month_index = ts.month - 1 + months
    year = ts.year + month_index // 12
    month = month_index % 12 + 1
    day = min(anchor_day or ts.day, calendar.monthrange(year, month)[1])
    return ts.replace(year=year, month=month, day=day)


def add_interval(
    ts: datetime,
    interval: TimeInterval,
    *,
    interval_seconds: int | None = None,
    count: int = 1,
    anchor_day: int | None = None,
) -> datetime:
    """Return ``ts`` moved forward by ``count`` intervals.

    Monthly intervals follow the calendar and land on ``anchor_day`` (or the
    day of ``ts``), clamped to the last day of shorter months. Custom
    intervals require ``interval_seconds``.
    """

    if count < 0:
        raise ValueError("interval count must be >= 0")
    if interval == TimeInterval.MONTHLY:
        return _add_months(ts, count, anchor_day)
    if interval == TimeInterval.CUSTOM:
        if interval_seconds is None or interval_seconds <= 0:
            raise ValueError("custom interval requires positive interval_seconds")
        return ts + timedelta(seconds=interval_seconds * count)
    return ts + _FIXED_INTERVALS[interval] * count


def next_target_time(
    previous: datetime,
    interval: TimeInterval,
    as_of: datetime,
    *,
    interval_seconds: int | None = None,
    anchor_day: int | None = None,
) -> datetime:
    """Advance a time trigger past ``previous``.

    A delayed trigger catches up to ``as_of`` at most once; the result is
    always strictly later than ``previous``.
    """

    candidate = add_interval(
        previous, interval, interval_seconds=interval_seconds, anchor_day=anchor_day
    )
    return max(candidate, ensure_utc(as_of))
