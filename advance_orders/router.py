from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo

from advance_orders.alerts import DailyPrepAlertNotifier
from advance_orders.errors import (
    ClassificationError,
    InvalidOrderError,
    InvalidTransitionError,
    OrderNotFoundError,
)
from advance_orders.models import Order
from advance_orders.pos_client import PRINT_STATUSES, POSClient, PrintResult
from advance_orders.retry import dispatch_order
from advance_orders.scheduler import AdvanceOrderScheduler
from advance_orders.store import FireSchedule, FireScheduleStore, ScheduleStatus
from advance_orders.timing import _now, tenant_zone

logger = logging.getLogger(__name__)

UTC = ZoneInfo("UTC")


class OrderRoute(str, Enum):
    IMMEDIATE = "IMMEDIATE"
    ADVANCE = "ADVANCE"


def parse_scheduled_time(value: Any, tz: ZoneInfo = UTC) -> Optional[datetime]:
    """Normalise a scheduled time to aware UTC; naive values are tenant-local."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as exc:
            raise ClassificationError(f"unparsable scheduled time {value!r}") from exc
    else:
        raise ClassificationError(f"unsupported scheduled time {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed.astimezone(timezone.utc)


def classify_order(
    order: Any,
    now: datetime,
    tz: ZoneInfo = UTC,
    preparation_time: timedelta = timedelta(minutes=90),
) -> OrderRoute:
    if order.is_advance_order is False:
        return OrderRoute.IMMEDIATE
    try:
        scheduled = parse_scheduled_time(order.scheduled_time, tz)
    except ClassificationError as exc:
        logger.warning("%s, treating order as immediate", exc, extra={"order_id": getattr(order, "id", None)})
        return OrderRoute.IMMEDIATE
    if scheduled is None:
        return OrderRoute.IMMEDIATE
    if scheduled - now > preparation_time:
        return OrderRoute.ADVANCE
    return OrderRoute.IMMEDIATE


@dataclass
class RoutingResult:
    order_id: str
    route: OrderRoute
    schedule: Optional[FireSchedule] = None
    print_result: Optional[PrintResult] = None

    def to_dict(self, now: Optional[datetime] = None) -> dict:
        return {
            "order_id": self.order_id,
            "route": self.route.value,
            "schedule": self.schedule.to_dict(now) if self.schedule else None,
            "print_result": self.print_result.to_dict() if self.print_result else None,
        }


class OrderRouter:
    def __init__(
        self,
        store: FireScheduleStore,
        scheduler: AdvanceOrderScheduler,
        pos_client: POSClient,
        notifier: Optional[DailyPrepAlertNotifier] = None,
        clock: Callable[[], datetime] = _now,
        default_timezone: str = "UTC",
    ) -> None:
        self._store = store
        self._scheduler = scheduler
        self._pos_client = pos_client
        self._notifier = notifier
        self._clock = clock
        self._default_timezone = default_timezone

    def process_new_order(self, tenant_id: int, order_id: str) -> RoutingResult:
        order = self._store.load_order(order_id)
        if order is None or order.tenant_id != tenant_id:
            raise OrderNotFoundError(f"order {order_id} not found")

        tenant = self._store.get_tenant(tenant_id)
        tz = tenant_zone(tenant.timezone if tenant else None, self._default_timezone)
        route = classify_order(order, self._clock(), tz, self._scheduler.policy.preparation_time)
        logger.info(
            "Routing order %s as %s", order.order_number, route.value,
            extra={"tenant_id": tenant_id, "order_id": order_id},
        )

        if route is OrderRoute.ADVANCE:
            schedule = self._schedule_advance(order)
            if schedule is not None:
                if self._notifier is not None:
                    self._notifier.send_advance_order_confirmation(order, schedule)
                return RoutingResult(order_id=order_id, route=route, schedule=schedule)
            route = OrderRoute.IMMEDIATE

        result = dispatch_order(self._store, self._pos_client, tenant_id, order_id, self._clock())
        if result.success:
            self._store.mark_order_printed(order_id)
        else:
            logger.warning(
                "Immediate order failed to print: %s", result.message,
                extra={"tenant_id": tenant_id, "order_id": order_id},
            )
        self._store.append_log(
            tenant_id,
            order_id,
            "printed" if result.success else "failed",
            self._clock(),
            message=result.message,
            attempt="immediate",
            print_job_id=result.print_job_id,
        )
        return RoutingResult(order_id=order_id, route=route, print_result=result)

    def _schedule_advance(self, order: Order) -> Optional[FireSchedule]:
        """Hold the order for its fire time, or None to send it now instead."""
        if order.is_advance_order is None:
            # Inferred from scheduled_time alone.
            self._store.mark_order_advance(order.id)
            order.is_advance_order = True
        try:
            return self._scheduler.schedule(order)
        except InvalidOrderError as exc:
            if self._store.get(order.id) is not None:
                raise
            logger.warning(
                "%s, sending order to the kitchen now", exc,
                extra={"tenant_id": order.tenant_id, "order_id": order.id},
            )
            return None

    def update_order_from_pos(self, order_id: str, status: str, print_job_id: Optional[str] = None) -> None:
        if status not in PRINT_STATUSES:
            raise ValueError(f"unknown print status {status!r}")
        order = self._store.load_order(order_id)
        if order is None:
            raise OrderNotFoundError(f"order {order_id} not found")

        now = self._clock()
        if status == "completed":
            schedule = self._store.get(order_id)
            if schedule is not None and schedule.status is ScheduleStatus.HOLD:
                # Never sent; the next sweep still owns this order.
                logger.warning(
                    "POS reported completion for an order still on hold",
                    extra={"tenant_id": order.tenant_id, "order_id": order_id, "print_job_id": print_job_id},
                )
                raise InvalidTransitionError(order_id, schedule.status.value, "complete")
            if schedule is not None and schedule.status is not ScheduleStatus.PRINTED:
                self._store.mark_printed(order_id, print_job_id or schedule.print_job_id, now)
            self._store.mark_order_printed(order_id)
        elif status == "failed":
            # PRINTED is terminal and a HOLD order was never sent.
            self._store.mark_failed(
                order_id,
                "POS reported print failure",
                True,
                now,
                from_statuses=(ScheduleStatus.FIRED,),
            )

        self._store.append_log(
            order.tenant_id,
            order_id,
            status,
            now,
            message=f"Status updated from POS: {status}",
            attempt="callback",
            print_job_id=print_job_id,
        )
