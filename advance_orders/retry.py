"""Bounded, fixed-interval retries for fire schedules the POS rejected.

A FAILED schedule is eligible again once ``retry_interval`` has passed since
its last attempt (the failed fire counts as the first one) and while
``retry_count`` is below ``max_retry_attempts``. Beyond that only an operator
can push the order through ``manual_retry``, which shares the same counter
but never moves it past the cap.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from advance_orders.errors import (
    InvalidTransitionError,
    OrderNotFoundError,
    RetryExhaustedError,
    ScheduleNotFoundError,
)
from advance_orders.pos_client import POSClient, PrintResult
from advance_orders.store import FireSchedule, FireScheduleStore, ScheduleStatus
from advance_orders.timing import SchedulingPolicy, _now

logger = logging.getLogger(__name__)


def dispatch_order(
    store: FireScheduleStore,
    pos_client: POSClient,
    tenant_id: int,
    order_id: str,
    now: datetime,
    retry: bool = False,
) -> PrintResult:
    """Load the order and hand it to the POS; any error comes back as a failed result."""
    try:
        order = store.load_order(order_id)
        if order is None:
            raise OrderNotFoundError(f"order {order_id} not found")
        if retry:
            return pos_client.retry_print_job(tenant_id, order)
        return pos_client.send_order_to_pos(tenant_id, order)
    except OrderNotFoundError as exc:
        logger.error("%s", exc, extra={"tenant_id": tenant_id, "order_id": order_id})
        return PrintResult(success=False, message=str(exc), order_id=order_id, retryable=False, timestamp=now)
    except Exception as exc:
        logger.exception("Error dispatching order", extra={"tenant_id": tenant_id, "order_id": order_id})
        return PrintResult(
            success=False,
            message=str(exc) or exc.__class__.__name__,
            order_id=order_id,
            timestamp=now,
        )


@dataclass
class RetryReport:
    attempted: int = 0
    printed: int = 0
    waiting: int = 0
    errors: int = 0


class RetryEngine:
    def __init__(
        self,
        store: FireScheduleStore,
        pos_client: POSClient,
        policy: Optional[SchedulingPolicy] = None,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self._store = store
        self._pos_client = pos_client
        self._policy = policy or SchedulingPolicy()
        self._clock = clock

    @property
    def policy(self) -> SchedulingPolicy:
        return self._policy

    def is_due(self, schedule: FireSchedule, now: datetime) -> bool:
        last_attempt = schedule.last_attempt_at()
        if last_attempt is None:
            return True
        # Strict: a retry exactly one interval after the failure waits for the next sweep.
        return now - last_attempt > self._policy.retry_interval

    def is_stuck(self, schedule: FireSchedule, now: datetime) -> bool:
        """FIRED for longer than any POS call can take; the outcome was lost."""
        return (
            schedule.status is ScheduleStatus.FIRED
            and schedule.updated_at is not None
            and now - schedule.updated_at > self._policy.unprinted_grace
        )

    def is_exhausted(self, schedule: FireSchedule) -> bool:
        return schedule.retry_count >= self._policy.max_retry_attempts

    def process_retry_attempts(self, tenant_id: int) -> RetryReport:
        report = RetryReport()
        now = self._clock()
        candidates = self._store.list_retryable(tenant_id, self._policy.max_retry_attempts)
        for schedule in candidates:
            if not self.is_due(schedule, now):
                report.waiting += 1
                continue
            try:
                result = self.retry_failed_order(tenant_id, schedule)
            except Exception:
                report.errors += 1
                logger.exception(
                    "Error retrying failed order",
                    extra={"tenant_id": tenant_id, "order_id": schedule.order_id},
                )
                continue
            if result is None:
                continue
            report.attempted += 1
            if result.success:
                report.printed += 1
        return report

    def retry_failed_order(
        self,
        tenant_id: int,
        schedule: FireSchedule,
        manual: bool = False,
    ) -> Optional[PrintResult]:
        """One more POS attempt for a FAILED schedule.

        Returns None when another worker claimed the row first.
        """
        if schedule.status is not ScheduleStatus.FAILED:
            raise InvalidTransitionError(schedule.order_id, schedule.status.value, "retry")
        if not manual and self.is_exhausted(schedule):
            raise RetryExhaustedError(schedule.order_id, schedule.retry_count)

        now = self._clock()
        if not self._store.claim_for_retry(schedule, now):
            logger.info(
                "Retry skipped, schedule changed concurrently",
                extra={"tenant_id": tenant_id, "order_id": schedule.order_id},
            )
            return None

        attempt = "manual" if manual else "retry"
        logger.info(
            "Retry attempt %d for order", schedule.retry_count + 1,
            extra={"tenant_id": tenant_id, "order_id": schedule.order_id, "attempt": attempt},
        )
        result = dispatch_order(self._store, self._pos_client, tenant_id, schedule.order_id, now, retry=True)
        done_at = self._clock()

        if result.success:
            self._store.mark_printed(schedule.order_id, result.print_job_id, done_at)
            self._store.mark_order_printed(schedule.order_id)
            self._store.append_log(
                tenant_id, schedule.order_id, "printed", done_at,
                message=result.message, attempt=attempt, print_job_id=result.print_job_id,
            )
            logger.info("Retry successful", extra={"tenant_id": tenant_id, "order_id": schedule.order_id})
            return result

        retry_count = min(schedule.retry_count + 1, self._policy.max_retry_attempts)
        self._store.mark_failed(schedule.order_id, result.message, result.retryable, done_at, retry_count=retry_count)
        self._store.append_log(
            tenant_id, schedule.order_id, "failed", done_at, message=result.message, attempt=attempt,
        )
        if retry_count >= self._policy.max_retry_attempts and not manual:
            logger.warning(
                "Max retry attempts reached, order needs manual print",
                extra={"tenant_id": tenant_id, "order_id": schedule.order_id, "retry_count": retry_count},
            )
            self._store.append_log(
                tenant_id, schedule.order_id, "exhausted", done_at,
                message=f"gave up after {retry_count} retries", attempt=attempt,
            )
        else:
            logger.info(
                "Retry %d failed", retry_count,
                extra={"tenant_id": tenant_id, "order_id": schedule.order_id},
            )
        return result

    def manual_retry(self, tenant_id: int, order_id: str) -> PrintResult:
        logger.info("Manual retry requested", extra={"tenant_id": tenant_id, "order_id": order_id})
        schedule = self._store.get(order_id)
        if schedule is None:
            return self._manual_retry_immediate(tenant_id, order_id)
        if schedule.tenant_id != tenant_id:
            raise ScheduleNotFoundError(f"no schedule for order {order_id}")
        if self.is_stuck(schedule, self._clock()):
            schedule = self._release_stuck(tenant_id, schedule)
        result = self.retry_failed_order(tenant_id, schedule, manual=True)
        if result is None:
            raise InvalidTransitionError(order_id, schedule.status.value, "retry")
        return result

    def _release_stuck(self, tenant_id: int, schedule: FireSchedule) -> FireSchedule:
        now = self._clock()
        logger.warning(
            "Releasing schedule stuck in FIRED",
            extra={"tenant_id": tenant_id, "order_id": schedule.order_id},
        )
        self._store.mark_failed(
            schedule.order_id,
            "Fire outcome was never recorded",
            True,
            now,
            from_statuses=(ScheduleStatus.FIRED,),
        )
        self._store.append_log(
            tenant_id, schedule.order_id, "failed", now,
            message="Fire outcome was never recorded", attempt="manual",
        )
        return self._store.get(schedule.order_id) or schedule

    def _manual_retry_immediate(self, tenant_id: int, order_id: str) -> PrintResult:
        order = self._store.load_order(order_id)
        if order is None or order.tenant_id != tenant_id:
            raise OrderNotFoundError(f"order {order_id} not found")
        if order.printed:
            raise InvalidTransitionError(order_id, "PRINTED", "retry")
        now = self._clock()
        result = dispatch_order(self._store, self._pos_client, tenant_id, order_id, now, retry=True)
        if result.success:
            self._store.mark_order_printed(order_id)
        self._store.append_log(
            tenant_id, order_id, "printed" if result.success else "failed", self._clock(),
            message=result.message, attempt="manual", print_job_id=result.print_job_id,
        )
        return result
