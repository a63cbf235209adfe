"""Fire-time scheduling for advance orders.

An advance order is held until ``fire_time`` (the customer's desired time
minus the kitchen preparation time) and then released to the POS by the
periodic sweep. The lifecycle is HOLD -> FIRED -> PRINTED, with FIRED ->
FAILED on a POS error and FAILED -> PRINTED/FAILED through the retry engine.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Optional

from advance_orders.errors import InvalidOrderError, OrderNotFoundError
from advance_orders.models import Order
from advance_orders.pos_client import POSClient, PrintResult
from advance_orders.retry import RetryEngine, dispatch_order
from advance_orders.store import FireSchedule, FireScheduleStore, ScheduleStatus
from advance_orders.timing import SchedulingPolicy, _now, day_bounds, tenant_zone

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    tenant_id: int
    ready: int = 0
    fired: int = 0
    printed: int = 0
    failed: int = 0
    skipped: int = 0
    retried: int = 0
    retry_printed: int = 0
    errors: int = 0

    def to_dict(self) -> dict:
        return dict(self.__dict__)


class AdvanceOrderScheduler:
    def __init__(
        self,
        store: FireScheduleStore,
        pos_client: POSClient,
        policy: Optional[SchedulingPolicy] = None,
        clock: Callable[[], datetime] = _now,
        retry_engine: Optional[RetryEngine] = None,
        default_timezone: str = "UTC",
    ) -> None:
        self._store = store
        self._pos_client = pos_client
        self._policy = policy or SchedulingPolicy()
        self._clock = clock
        self._retry_engine = retry_engine or RetryEngine(store, pos_client, self._policy, clock)
        self._default_timezone = default_timezone

    @property
    def store(self) -> FireScheduleStore:
        return self._store

    @property
    def retry_engine(self) -> RetryEngine:
        return self._retry_engine

    @property
    def policy(self) -> SchedulingPolicy:
        return self._policy

    def now(self) -> datetime:
        return self._clock()

    def compute_fire_time(self, customer_desired_time: datetime) -> datetime:
        return customer_desired_time - self._policy.preparation_time

    def schedule(self, order: Order) -> FireSchedule:
        if order.is_advance_order is not True:
            raise InvalidOrderError(f"order {order.id} is not an advance order")
        if order.scheduled_time is None:
            raise InvalidOrderError(f"order {order.id} has no scheduled time")

        now = self._clock()
        schedule = FireSchedule(
            order_id=order.id,
            tenant_id=order.tenant_id,
            customer_desired_time=order.scheduled_time,
            fire_time=self.compute_fire_time(order.scheduled_time),
            status=ScheduleStatus.HOLD,
            retry_count=0,
            created_at=now,
            updated_at=now,
        )
        self._store.create(schedule)
        logger.info(
            "Advance order scheduled, fire at %s", schedule.fire_time.isoformat(),
            extra={"tenant_id": order.tenant_id, "order_id": order.id},
        )
        return schedule

    def process_ready_orders(self, tenant_id: int) -> SweepReport:
        report = SweepReport(tenant_id=tenant_id)
        try:
            ready = self._store.list_ready(tenant_id, self._clock())
        except Exception:
            report.errors += 1
            logger.exception("Error loading ready orders", extra={"tenant_id": tenant_id})
            ready = []

        report.ready = len(ready)
        if ready:
            logger.info("Found %d orders ready to fire", len(ready), extra={"tenant_id": tenant_id})

        for schedule in ready:
            try:
                result = self.fire_order(tenant_id, schedule)
            except Exception:
                report.errors += 1
                logger.exception(
                    "Unexpected error firing order",
                    extra={"tenant_id": tenant_id, "order_id": schedule.order_id},
                )
                continue
            if result is None:
                report.skipped += 1
                continue
            report.fired += 1
            if result.success:
                report.printed += 1
            else:
                report.failed += 1

        try:
            retries = self._retry_engine.process_retry_attempts(tenant_id)
        except Exception:
            report.errors += 1
            logger.exception("Error processing retries", extra={"tenant_id": tenant_id})
        else:
            report.retried = retries.attempted
            report.retry_printed = retries.printed
            report.errors += retries.errors
        return report

    def fire_order(self, tenant_id: int, schedule: FireSchedule) -> Optional[PrintResult]:
        """Release one schedule to the POS.

        Returns None without side effects when the schedule is not HOLD or
        another sweep claimed it first.
        """
        if schedule.status is not ScheduleStatus.HOLD:
            logger.info(
                "Skipping fire, schedule is %s", schedule.status.value,
                extra={"tenant_id": tenant_id, "order_id": schedule.order_id},
            )
            return None

        now = self._clock()
        try:
            claimed = self._store.claim_for_fire(schedule, now)
        except Exception:
            logger.exception(
                "Error claiming schedule", extra={"tenant_id": tenant_id, "order_id": schedule.order_id}
            )
            return None
        if not claimed:
            logger.info(
                "Schedule already claimed by another sweep",
                extra={"tenant_id": tenant_id, "order_id": schedule.order_id},
            )
            return None

        logger.info("Firing advance order", extra={"tenant_id": tenant_id, "order_id": schedule.order_id})
        result = dispatch_order(self._store, self._pos_client, tenant_id, schedule.order_id, now)
        self._record_fire_outcome(tenant_id, schedule.order_id, result)
        return result

    def _record_fire_outcome(self, tenant_id: int, order_id: str, result: PrintResult) -> None:
        done_at = self._clock()
        try:
            if result.success:
                self._store.mark_printed(order_id, result.print_job_id, done_at)
                self._store.mark_order_printed(order_id)
            else:
                self._store.mark_failed(order_id, result.message, result.retryable, done_at)
        except Exception:
            logger.exception(
                "Error recording fire outcome", extra={"tenant_id": tenant_id, "order_id": order_id}
            )
        self._store.append_log(
            tenant_id,
            order_id,
            "printed" if result.success else "failed",
            done_at,
            message=result.message,
            attempt="fire",
            print_job_id=result.print_job_id,
        )
        if result.success:
            logger.info("Advance order printed", extra={"tenant_id": tenant_id, "order_id": order_id})
        else:
            logger.warning(
                "Advance order failed to print: %s", result.message,
                extra={"tenant_id": tenant_id, "order_id": order_id},
            )

    def cancel_advance_order(self, order_id: str) -> Optional[FireSchedule]:
        removed = self._store.delete(order_id)
        if removed is None:
            logger.info("No schedule to cancel", extra={"order_id": order_id})
        elif removed.status in (ScheduleStatus.FIRED, ScheduleStatus.PRINTED):
            logger.warning(
                "Order cancelled after it was sent to the kitchen",
                extra={"tenant_id": removed.tenant_id, "order_id": order_id, "status": removed.status.value},
            )
        if not self._store.mark_order_cancelled(order_id) and removed is None:
            raise OrderNotFoundError(f"order {order_id} not found")
        logger.info("Advance order cancelled", extra={"order_id": order_id})
        return removed

    def get_schedule(self, order_id: str) -> Optional[FireSchedule]:
        return self._store.get(order_id)

    def list_schedules(self, tenant_id: int) -> list[dict]:
        now = self._clock()
        return [schedule.to_dict(now) for schedule in self._store.list_for_tenant(tenant_id)]

    def get_advance_orders_with_schedules(
        self,
        tenant_id: int,
        target_date: Optional[date] = None,
    ) -> list[dict]:
        starts_at = ends_at = None
        if target_date is not None:
            tenant = self._store.get_tenant(tenant_id)
            tz = tenant_zone(tenant.timezone if tenant else None, self._default_timezone)
            starts_at, ends_at = day_bounds(target_date, tz)

        now = self._clock()
        rows = []
        for order, schedule in self._store.list_advance_orders(tenant_id, starts_at, ends_at):
            rows.append(
                {
                    "order_id": order.id,
                    "order_number": order.order_number,
                    "customer_name": order.customer_name,
                    "order_type": order.order_type,
                    "scheduled_time": order.scheduled_time.isoformat() if order.scheduled_time else None,
                    "total": float(order.total),
                    "printed": order.printed,
                    "schedule": schedule.to_dict(now) if schedule else None,
                }
            )
        return rows

    def get_failed_orders(self, tenant_id: int) -> list[dict]:
        now = self._clock()
        cutoff = now - self._policy.unprinted_grace
        failed = []
        schedules = self._store.list_needing_attention(tenant_id, self._policy.max_retry_attempts)
        schedules += self._store.list_stuck_fired(tenant_id, cutoff)
        for schedule in schedules:
            order = self._store.load_order(schedule.order_id)
            failed.append(
                {
                    "order_id": schedule.order_id,
                    "order_number": order.order_number if order else None,
                    "customer_name": order.customer_name if order else None,
                    "scheduled_time": schedule.customer_desired_time.isoformat(),
                    "is_advance_order": True,
                    "status": schedule.status.value,
                    "retry_count": schedule.retry_count,
                    "last_error": schedule.last_error,
                    "last_attempt_at": (schedule.last_attempt_at() or schedule.fire_time).isoformat(),
                }
            )

        for order in self._store.list_unprinted_failed_orders(tenant_id, cutoff):
            failed.append(
                {
                    "order_id": order.id,
                    "order_number": order.order_number,
                    "customer_name": order.customer_name,
                    "scheduled_time": order.scheduled_time.isoformat() if order.scheduled_time else None,
                    "is_advance_order": bool(order.is_advance_order),
                    "status": "FAILED",
                    "retry_count": 0,
                    "last_error": None,
                    "last_attempt_at": order.created_at.isoformat(),
                }
            )
        return failed
