from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime

from advance_orders.store import FireScheduleStore
from advance_orders.timing import day_bounds, floor_to_bucket, tenant_zone

ALERT_INFO = "info"
ALERT_WARNING = "warning"
ALERT_CRITICAL = "critical"


@dataclass
class ConflictAlert:
    fire_time: datetime
    order_count: int
    order_ids: list[str] = field(default_factory=list)
    alert_level: str = ALERT_INFO

    def to_dict(self) -> dict:
        return {
            "fire_time": self.fire_time.isoformat(),
            "order_count": self.order_count,
            "order_ids": list(self.order_ids),
            "alert_level": self.alert_level,
        }


class ConflictDetector:
    """Flags kitchen overload by counting fire times per time bucket."""

    def __init__(
        self,
        store: FireScheduleStore,
        bucket_minutes: int = 15,
        warning_threshold: int = 5,
        critical_threshold: int = 10,
        default_timezone: str = "UTC",
    ) -> None:
        self._store = store
        self._bucket_minutes = bucket_minutes
        self._warning_threshold = warning_threshold
        self._critical_threshold = critical_threshold
        self._default_timezone = default_timezone

    def alert_level(self, order_count: int) -> str:
        if order_count >= self._critical_threshold:
            return ALERT_CRITICAL
        if order_count >= self._warning_threshold:
            return ALERT_WARNING
        return ALERT_INFO

    def get_order_conflicts(self, tenant_id: int, target_date: date) -> list[ConflictAlert]:
        tenant = self._store.get_tenant(tenant_id)
        tz = tenant_zone(tenant.timezone if tenant else None, self._default_timezone)
        starts_at, ends_at = day_bounds(target_date, tz)

        buckets: dict[datetime, list[str]] = defaultdict(list)
        for schedule in self._store.list_fire_window(tenant_id, starts_at, ends_at):
            # Buckets follow the tenant's wall clock.
            local_bucket = floor_to_bucket(schedule.fire_time.astimezone(tz), self._bucket_minutes)
            buckets[local_bucket].append(schedule.order_id)

        return [
            ConflictAlert(
                fire_time=bucket,
                order_count=len(order_ids),
                order_ids=order_ids,
                alert_level=self.alert_level(len(order_ids)),
            )
            for bucket, order_ids in sorted(buckets.items())
        ]
