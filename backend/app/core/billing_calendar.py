"""
Month-end arithmetic for the billing cycle.

Billing happens on the last calendar day of each month at a fixed cutoff
time, read on the wall clock of the billing timezone. Inputs and results are
naive UTC datetimes, as stored by the control plane; the timezone only
decides which calendar month an instant belongs to and where its cutoff lies.
"""
import calendar
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from app.core.config import settings


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _zone(tz: str | None) -> ZoneInfo:
    return ZoneInfo(tz or settings.billing_timezone)


def to_local(dt: datetime, tz: str | None = None) -> datetime:
    return dt.replace(tzinfo=timezone.utc).astimezone(_zone(tz))


def _cutoff(year: int, month: int, hour: int | None, minute: int | None, tz: str | None) -> datetime:
    hour = settings.billing_cutoff_hour if hour is None else hour
    minute = settings.billing_cutoff_minute if minute is None else minute
    last_day = calendar.monthrange(year, month)[1]
    local = datetime(year, month, last_day, hour, minute, tzinfo=_zone(tz))
    return local.astimezone(timezone.utc).replace(tzinfo=None)


def month_end(dt: datetime, hour: int | None = None, minute: int | None = None, tz: str | None = None) -> datetime:
    """Cutoff on the last day of the local month dt falls in."""
    local = to_local(dt, tz)
    return _cutoff(local.year, local.month, hour, minute, tz)


def following_month_end(dt: datetime, hour: int | None = None, minute: int | None = None, tz: str | None = None) -> datetime:
    """Month-end cutoff of the local month after dt's."""
    local = to_local(dt, tz)
    if local.month == 12:
        return _cutoff(local.year + 1, 1, hour, minute, tz)
    return _cutoff(local.year, local.month + 1, hour, minute, tz)


def next_monthly_run(now: datetime, hour: int | None = None, minute: int | None = None, tz: str | None = None) -> datetime:
    """This month's cutoff if it is still ahead, otherwise next month's."""
    candidate = month_end(now, hour, minute, tz)
    if now >= candidate:
        return following_month_end(now, hour, minute, tz)
    return candidate


def month_start(dt: datetime, tz: str | None = None) -> datetime:
    """Midnight on the first of dt's local month."""
    local = to_local(dt, tz).replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return local.astimezone(timezone.utc).replace(tzinfo=None)
