from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from advance_orders.config import Settings


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SchedulingPolicy:
    preparation_time: timedelta = timedelta(minutes=90)
    max_retry_attempts: int = 3
    retry_interval: timedelta = timedelta(minutes=2)
    unprinted_grace: timedelta = timedelta(minutes=10)

    @classmethod
    def from_settings(cls, settings: Settings) -> "SchedulingPolicy":
        return cls(
            preparation_time=timedelta(minutes=settings.preparation_time_minutes),
            max_retry_attempts=settings.max_retry_attempts,
            retry_interval=timedelta(minutes=settings.retry_interval_minutes),
            unprinted_grace=timedelta(minutes=settings.unprinted_order_grace_minutes),
        )


def tenant_zone(name: str | None, default: str = "UTC") -> ZoneInfo:
    try:
        return ZoneInfo(name or default)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo(default)


def day_bounds(target_date: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """UTC half-open interval covering ``target_date`` on the tenant's wall clock."""
    starts_at = datetime.combine(target_date, time.min, tzinfo=tz)
    ends_at = datetime.combine(target_date + timedelta(days=1), time.min, tzinfo=tz)
    return starts_at.astimezone(timezone.utc), ends_at.astimezone(timezone.utc)


def local_date(value: datetime, tz: ZoneInfo) -> date:
    return value.astimezone(tz).date()


def floor_to_bucket(value: datetime, minutes: int) -> datetime:
    return value.replace(minute=value.minute - value.minute % minutes, second=0, microsecond=0)
