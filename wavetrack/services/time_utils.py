from __future__ import annotations

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from wavetrack.config import settings


def now_utc() -> datetime:
    return datetime.now(tz=timezone.utc)


def local_today(now: datetime | None = None) -> date:
    current = now or now_utc()
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    return current.astimezone(ZoneInfo(settings.timezone)).date()


def truncate_to_bucket(value: datetime, bucket_seconds: int) -> datetime:
    if bucket_seconds <= 1:
        return value.replace(microsecond=0)
    epoch = value.timestamp() if value.tzinfo else value.replace(tzinfo=timezone.utc).timestamp()
    floored = int(epoch) - (int(epoch) % bucket_seconds)
    return datetime.fromtimestamp(floored, tz=timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
