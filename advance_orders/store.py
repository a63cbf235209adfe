"""Persistence for fire schedules, the print job audit trail and order flags.

Every method opens its own short transaction from the injected session
factory, so a failure while handling one order never poisons the session used
for its siblings. Rows leave this module as ``FireSchedule`` snapshots; state
changes go back in as conditional UPDATEs keyed on ``status`` and ``version``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from advance_orders.errors import InvalidOrderError
from advance_orders.models import AdvanceOrderSchedule, Order, PrintJobLog, Tenant

logger = logging.getLogger(__name__)


class ScheduleStatus(str, Enum):
    HOLD = "HOLD"
    FIRED = "FIRED"
    PRINTED = "PRINTED"
    FAILED = "FAILED"


READY_TO_FIRE = "READY_TO_FIRE"


@dataclass(frozen=True)
class FireSchedule:
    order_id: str
    tenant_id: int
    customer_desired_time: datetime
    fire_time: datetime
    status: ScheduleStatus
    retry_count: int = 0
    last_retry_at: Optional[datetime] = None
    print_job_id: Optional[str] = None
    last_error: Optional[str] = None
    last_error_retryable: bool = True
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: AdvanceOrderSchedule) -> "FireSchedule":
        return cls(
            order_id=row.order_id,
            tenant_id=row.tenant_id,
            customer_desired_time=row.customer_desired_time,
            fire_time=row.fire_time,
            status=ScheduleStatus(row.status),
            retry_count=row.retry_count,
            last_retry_at=row.last_retry_at,
            print_job_id=row.print_job_id,
            last_error=row.last_error,
            last_error_retryable=row.last_error_retryable,
            version=row.version,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def display_status(self, now: datetime) -> str:
        if self.status is ScheduleStatus.HOLD and self.fire_time <= now:
            return READY_TO_FIRE
        return self.status.value

    def last_attempt_at(self) -> Optional[datetime]:
        # Before the first retry the failed fire itself is the last attempt.
        return self.last_retry_at or self.updated_at

    def to_dict(self, now: Optional[datetime] = None) -> dict:
        return {
            "order_id": self.order_id,
            "tenant_id": self.tenant_id,
            "customer_desired_time": self.customer_desired_time.isoformat(),
            "fire_time": self.fire_time.isoformat(),
            "status": self.status.value,
            "display_status": self.display_status(now) if now else self.status.value,
            "retry_count": self.retry_count,
            "last_retry_at": self.last_retry_at.isoformat() if self.last_retry_at else None,
            "print_job_id": self.print_job_id,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class FireScheduleStore:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def session(self) -> Session:
        return self._session_factory()

    def create(self, schedule: FireSchedule) -> FireSchedule:
        row = AdvanceOrderSchedule(
            order_id=schedule.order_id,
            tenant_id=schedule.tenant_id,
            customer_desired_time=schedule.customer_desired_time,
            fire_time=schedule.fire_time,
            status=schedule.status.value,
            retry_count=schedule.retry_count,
            last_error_retryable=True,
            version=0,
            created_at=schedule.created_at,
            updated_at=schedule.updated_at,
        )
        try:
            with self._session_factory.begin() as session:
                session.add(row)
        except IntegrityError as exc:
            raise InvalidOrderError(f"order {schedule.order_id} is already scheduled") from exc
        return schedule

    def get(self, order_id: str) -> Optional[FireSchedule]:
        with self._session_factory() as session:
            row = session.get(AdvanceOrderSchedule, order_id)
            return FireSchedule.from_row(row) if row else None

    def list_ready(self, tenant_id: int, now: datetime) -> list[FireSchedule]:
        stmt = (
            select(AdvanceOrderSchedule)
            .where(
                AdvanceOrderSchedule.tenant_id == tenant_id,
                AdvanceOrderSchedule.status == ScheduleStatus.HOLD.value,
                AdvanceOrderSchedule.fire_time <= now,
            )
            .order_by(AdvanceOrderSchedule.fire_time)
        )
        return self._fetch(stmt)

    def list_retryable(self, tenant_id: int, max_attempts: int) -> list[FireSchedule]:
        stmt = (
            select(AdvanceOrderSchedule)
            .where(
                AdvanceOrderSchedule.tenant_id == tenant_id,
                AdvanceOrderSchedule.status == ScheduleStatus.FAILED.value,
                AdvanceOrderSchedule.retry_count < max_attempts,
                AdvanceOrderSchedule.last_error_retryable.is_(True),
            )
            .order_by(AdvanceOrderSchedule.fire_time)
        )
        return self._fetch(stmt)

    def list_needing_attention(self, tenant_id: int, max_attempts: int) -> list[FireSchedule]:
        stmt = (
            select(AdvanceOrderSchedule)
            .where(
                AdvanceOrderSchedule.tenant_id == tenant_id,
                AdvanceOrderSchedule.status == ScheduleStatus.FAILED.value,
                or_(
                    AdvanceOrderSchedule.retry_count >= max_attempts,
                    AdvanceOrderSchedule.last_error_retryable.is_(False),
                ),
            )
            .order_by(AdvanceOrderSchedule.fire_time)
        )
        return self._fetch(stmt)

    def list_stuck_fired(self, tenant_id: int, fired_before: datetime) -> list[FireSchedule]:
        """FIRED rows whose outcome was never recorded."""
        stmt = (
            select(AdvanceOrderSchedule)
            .where(
                AdvanceOrderSchedule.tenant_id == tenant_id,
                AdvanceOrderSchedule.status == ScheduleStatus.FIRED.value,
                AdvanceOrderSchedule.updated_at < fired_before,
            )
            .order_by(AdvanceOrderSchedule.fire_time)
        )
        return self._fetch(stmt)

    def list_for_tenant(
        self,
        tenant_id: int,
        statuses: Optional[Iterable[ScheduleStatus]] = None,
    ) -> list[FireSchedule]:
        stmt = select(AdvanceOrderSchedule).where(AdvanceOrderSchedule.tenant_id == tenant_id)
        if statuses is not None:
            stmt = stmt.where(AdvanceOrderSchedule.status.in_([s.value for s in statuses]))
        return self._fetch(stmt.order_by(AdvanceOrderSchedule.fire_time))

    def list_fire_window(self, tenant_id: int, starts_at: datetime, ends_at: datetime) -> list[FireSchedule]:
        stmt = (
            select(AdvanceOrderSchedule)
            .where(
                AdvanceOrderSchedule.tenant_id == tenant_id,
                AdvanceOrderSchedule.fire_time >= starts_at,
                AdvanceOrderSchedule.fire_time < ends_at,
            )
            .order_by(AdvanceOrderSchedule.fire_time)
        )
        return self._fetch(stmt)

    def claim_for_fire(self, schedule: FireSchedule, now: datetime) -> bool:
        """HOLD -> FIRED, only if nobody else moved the row since it was read."""
        return self._conditional_update(
            schedule.order_id,
            and_(
                AdvanceOrderSchedule.status == ScheduleStatus.HOLD.value,
                AdvanceOrderSchedule.version == schedule.version,
            ),
            status=ScheduleStatus.FIRED.value,
            updated_at=now,
        )

    def claim_for_retry(self, schedule: FireSchedule, now: datetime) -> bool:
        return self._conditional_update(
            schedule.order_id,
            and_(
                AdvanceOrderSchedule.status == ScheduleStatus.FAILED.value,
                AdvanceOrderSchedule.version == schedule.version,
            ),
            last_retry_at=now,
            updated_at=now,
        )

    def mark_printed(
        self,
        order_id: str,
        print_job_id: Optional[str],
        now: datetime,
        retry_count: Optional[int] = None,
    ) -> bool:
        values = {
            "status": ScheduleStatus.PRINTED.value,
            "print_job_id": print_job_id,
            "last_error": None,
            "updated_at": now,
        }
        if retry_count is not None:
            values["retry_count"] = retry_count
        return self._conditional_update(
            order_id,
            AdvanceOrderSchedule.status.in_(
                [ScheduleStatus.FIRED.value, ScheduleStatus.FAILED.value]
            ),
            **values,
        )

    def mark_failed(
        self,
        order_id: str,
        message: str,
        retryable: bool,
        now: datetime,
        retry_count: Optional[int] = None,
        from_statuses: Iterable[ScheduleStatus] = (ScheduleStatus.FIRED, ScheduleStatus.FAILED),
    ) -> bool:
        values = {
            "status": ScheduleStatus.FAILED.value,
            "last_error": message,
            "last_error_retryable": retryable,
            "updated_at": now,
        }
        if retry_count is not None:
            values["retry_count"] = retry_count
        return self._conditional_update(
            order_id,
            AdvanceOrderSchedule.status.in_([s.value for s in from_statuses]),
            **values,
        )

    def delete(self, order_id: str) -> Optional[FireSchedule]:
        with self._session_factory.begin() as session:
            row = session.get(AdvanceOrderSchedule, order_id)
            if row is None:
                return None
            snapshot = FireSchedule.from_row(row)
            session.delete(row)
        return snapshot

    def load_order(self, order_id: str) -> Optional[Order]:
        with self._session_factory() as session:
            return session.get(Order, order_id)

    def save_order(self, order: Order) -> Order:
        with self._session_factory.begin() as session:
            session.add(order)
        return order

    def get_tenant(self, tenant_id: int) -> Optional[Tenant]:
        with self._session_factory() as session:
            return session.get(Tenant, tenant_id)

    def list_active_tenants(self) -> list[Tenant]:
        stmt = select(Tenant).where(Tenant.status == "ACTIVE").order_by(Tenant.id)
        with self._session_factory() as session:
            return list(session.scalars(stmt))

    def list_advance_orders(
        self,
        tenant_id: int,
        starts_at: Optional[datetime] = None,
        ends_at: Optional[datetime] = None,
    ) -> list[tuple[Order, Optional[FireSchedule]]]:
        """Non-cancelled advance orders by scheduled time, each with its schedule if any."""
        stmt = (
            select(Order, AdvanceOrderSchedule)
            .outerjoin(AdvanceOrderSchedule, AdvanceOrderSchedule.order_id == Order.id)
            .where(
                Order.tenant_id == tenant_id,
                Order.is_advance_order.is_(True),
                Order.status != "cancelled",
            )
        )
        if starts_at is not None:
            stmt = stmt.where(Order.scheduled_time >= starts_at)
        if ends_at is not None:
            stmt = stmt.where(Order.scheduled_time < ends_at)
        with self._session_factory() as session:
            rows = session.execute(stmt.order_by(Order.scheduled_time)).all()
            return [
                (order, FireSchedule.from_row(schedule) if schedule else None)
                for order, schedule in rows
            ]

    def list_unprinted_failed_orders(self, tenant_id: int, created_before: datetime) -> list[Order]:
        """Orders without a schedule that never printed and have a failed dispatch on record."""
        failed_log = (
            select(PrintJobLog.id)
            .where(PrintJobLog.order_id == Order.id, PrintJobLog.status == "failed")
            .exists()
        )
        has_schedule = (
            select(AdvanceOrderSchedule.order_id)
            .where(AdvanceOrderSchedule.order_id == Order.id)
            .exists()
        )
        stmt = (
            select(Order)
            .where(
                Order.tenant_id == tenant_id,
                Order.printed.is_(False),
                Order.status != "cancelled",
                Order.created_at < created_before,
                failed_log,
                ~has_schedule,
            )
            .order_by(Order.created_at.desc())
        )
        with self._session_factory() as session:
            return list(session.scalars(stmt))

    def mark_order_advance(self, order_id: str) -> None:
        with self._session_factory.begin() as session:
            session.execute(
                update(Order)
                .where(Order.id == order_id)
                .values(is_advance_order=True)
                .execution_options(synchronize_session=False)
            )

    def mark_order_printed(self, order_id: str) -> None:
        with self._session_factory.begin() as session:
            session.execute(
                update(Order)
                .where(Order.id == order_id)
                .values(printed=True)
                .execution_options(synchronize_session=False)
            )

    def mark_order_cancelled(self, order_id: str) -> bool:
        with self._session_factory.begin() as session:
            result = session.execute(
                update(Order)
                .where(Order.id == order_id)
                .values(status="cancelled")
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def append_log(
        self,
        tenant_id: int,
        order_id: str,
        status: str,
        now: datetime,
        message: Optional[str] = None,
        attempt: Optional[str] = None,
        print_job_id: Optional[str] = None,
    ) -> None:
        try:
            with self._session_factory.begin() as session:
                session.add(
                    PrintJobLog(
                        tenant_id=tenant_id,
                        order_id=order_id,
                        print_job_id=print_job_id,
                        status=status,
                        attempt=attempt,
                        message=message,
                        created_at=now,
                    )
                )
        except Exception:
            # The audit trail must not turn a delivered order into a failed one.
            logger.exception(
                "Failed to write print job log",
                extra={"tenant_id": tenant_id, "order_id": order_id, "status": status},
            )

    def list_logs(self, tenant_id: int, order_id: Optional[str] = None) -> list[PrintJobLog]:
        stmt = select(PrintJobLog).where(PrintJobLog.tenant_id == tenant_id)
        if order_id is not None:
            stmt = stmt.where(PrintJobLog.order_id == order_id)
        with self._session_factory() as session:
            return list(session.scalars(stmt.order_by(PrintJobLog.id)))

    def purge_logs_before(self, cutoff: datetime) -> int:
        with self._session_factory.begin() as session:
            result = session.execute(
                delete(PrintJobLog)
                .where(PrintJobLog.created_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

    def purge_printed_before(self, cutoff: datetime) -> int:
        with self._session_factory.begin() as session:
            result = session.execute(
                delete(AdvanceOrderSchedule)
                .where(
                    AdvanceOrderSchedule.status == ScheduleStatus.PRINTED.value,
                    AdvanceOrderSchedule.updated_at < cutoff,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

    def _fetch(self, stmt) -> list[FireSchedule]:
        with self._session_factory() as session:
            return [FireSchedule.from_row(row) for row in session.scalars(stmt)]

    def _conditional_update(self, order_id: str, condition, **values) -> bool:
        stmt = (
            update(AdvanceOrderSchedule)
            .where(AdvanceOrderSchedule.order_id == order_id, condition)
            .values(version=AdvanceOrderSchedule.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        with self._session_factory.begin() as session:
            result = session.execute(stmt)
            return result.rowcount == 1
