from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import config


def local_tz() -> ZoneInfo:
    return ZoneInfo(config.system.timezone)


def now_local() -> datetime:
    return datetime.now(local_tz())


def hour_start(ts: datetime) -> datetime:
    return ts.replace(minute=0, second=0, microsecond=0)


def day_start(ts: datetime) -> datetime:
    return ts.replace(hour=0, minute=0, second=0, microsecond=0)


def hours_between(start: datetime, end: datetime) -> list[datetime]:
    """Hour starts in [start, end), stepping in absolute time across DST."""
    out = []
    ts = hour_start(start).astimezone(timezone.utc)
    end_utc = end.astimezone(timezone.utc)
    while ts < end_utc:
        out.append(ts.astimezone(start.tzinfo))
        ts += timedelta(hours=1)
    return out


def to_iso(ts: datetime | None) -> str | None:
    """UTC ISO string, sortable as text in sqlite."""
    if ts is None:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat()


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts
