"""Morning prep alerts and advance order confirmations.

The daily alert is sent at most once per tenant and calendar day. Dedup is a
claim: the ``daily_prep_alerts`` row is inserted before the email goes out and
the unique index on (tenant_id, alert_date) turns a second attempt into an
``IntegrityError``. If the email sink fails the claim is removed again.
"""

from __future__ import annotations

import logging
import smtplib
from collections import OrderedDict
from dataclasses import dataclass
from datetime import date, datetime
from email.message import EmailMessage
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Protocol

from jinja2 import Environment, FileSystemLoader
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from advance_orders.config import Settings
from advance_orders.models import DailyPrepAlert, Order
from advance_orders.store import FireSchedule, FireScheduleStore
from advance_orders.timing import _now, day_bounds, local_date, tenant_zone

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent / "templates"


class EmailSink(Protocol):
    def send(self, to: str, subject: str, html: str) -> None:
        ...


class LoggingEmailSink:
    """Records outgoing mail in the log instead of delivering it."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    def send(self, to: str, subject: str, html: str) -> None:
        self.sent.append((to, subject))
        logger.info("Email not delivered, no SMTP host configured: %s", subject, extra={"to": to})


class SmtpEmailSink:
    def __init__(
        self,
        host: str,
        port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        from_email: str = "noreply@orderwebsystem.com",
        use_tls: bool = True,
        timeout: float = 30.0,
    ) -> None:
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._from_email = from_email
        self._use_tls = use_tls
        self._timeout = timeout

    def send(self, to: str, subject: str, html: str) -> None:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self._from_email
        message["To"] = to
        message.set_content("This message requires an HTML capable mail client.")
        message.add_alternative(html, subtype="html")

        with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as smtp:
            if self._use_tls:
                smtp.starttls()
            if self._username:
                smtp.login(self._username, self._password or "")
            smtp.send_message(message)


def email_sink_from_settings(settings: Settings) -> EmailSink:
    if not settings.smtp_host:
        return LoggingEmailSink()
    return SmtpEmailSink(
        host=settings.smtp_host,
        port=settings.smtp_port,
        username=settings.smtp_username,
        password=settings.smtp_password,
        from_email=settings.smtp_from_email,
        use_tls=settings.smtp_use_tls,
    )


class AlertOutcome(str, Enum):
    SENT = "sent"
    SKIPPED_NO_ORDERS = "skipped_no_orders"
    SKIPPED_ALREADY_SENT = "skipped_already_sent"
    SKIPPED_NO_EMAIL = "skipped_no_email"
    SKIPPED_UNKNOWN_TENANT = "skipped_unknown_tenant"
    FAILED = "failed"


@dataclass
class AlertOrder:
    order_number: str
    customer_name: Optional[str]
    customer_phone: Optional[str]
    order_type: str
    payment_method: Optional[str]
    special_instructions: Optional[str]
    pickup_time: str
    total: float
    items: list[dict]


def _alert_order(order: Order, tz) -> AlertOrder:
    return AlertOrder(
        order_number=order.order_number,
        customer_name=order.customer_name,
        customer_phone=order.customer_phone,
        order_type=(order.order_type or "").upper(),
        payment_method=(order.payment_method or "").upper() or None,
        special_instructions=order.special_instructions,
        pickup_time=order.scheduled_time.astimezone(tz).strftime("%Y-%m-%d %H:%M") if order.scheduled_time else "TBD",
        total=float(order.total),
        items=[
            {
                "quantity": item.quantity,
                "name": item.name,
                "price": float(item.final_price if item.final_price is not None else item.price),
            }
            for item in order.items
        ],
    )


class DailyPrepAlertNotifier:
    def __init__(
        self,
        store: FireScheduleStore,
        session_factory: sessionmaker,
        email_sink: EmailSink,
        clock: Callable[[], datetime] = _now,
        preparation_minutes: int = 90,
        default_timezone: str = "UTC",
    ) -> None:
        self._store = store
        self._session_factory = session_factory
        self._email_sink = email_sink
        self._clock = clock
        self._preparation_minutes = preparation_minutes
        self._default_timezone = default_timezone
        self.env = Environment(loader=FileSystemLoader(str(TEMPLATE_DIR)), autoescape=True)
        self.env.filters["money"] = lambda value: f"£{float(value or 0):.2f}"

    def send_daily_alerts(self, target_date: Optional[date] = None) -> dict[int, AlertOutcome]:
        logger.info("Starting daily prep alerts")
        outcomes: dict[int, AlertOutcome] = {}
        for tenant in self._store.list_active_tenants():
            tz = tenant_zone(tenant.timezone, self._default_timezone)
            day = target_date or local_date(self._clock(), tz)
            try:
                outcomes[tenant.id] = self.send_tenant_daily_alert(tenant.id, day)
            except Exception:
                logger.exception("Error sending tenant daily alert", extra={"tenant_id": tenant.id})
                outcomes[tenant.id] = AlertOutcome.FAILED
        logger.info("Daily prep alerts completed", extra={"tenants": len(outcomes)})
        return outcomes

    def send_tenant_daily_alert(self, tenant_id: int, target_date: date) -> AlertOutcome:
        tenant = self._store.get_tenant(tenant_id)
        if tenant is None:
            return AlertOutcome.SKIPPED_UNKNOWN_TENANT
        tz = tenant_zone(tenant.timezone, self._default_timezone)
        starts_at, ends_at = day_bounds(target_date, tz)

        orders = self._store.list_advance_orders(tenant_id, starts_at, ends_at)
        if not orders:
            logger.info("No advance orders for the day, skipping alert", extra={"tenant_id": tenant_id})
            return AlertOutcome.SKIPPED_NO_ORDERS
        if not tenant.email:
            logger.warning("No email configured for tenant", extra={"tenant_id": tenant_id})
            return AlertOutcome.SKIPPED_NO_EMAIL

        claim_id = self._claim(tenant_id, target_date, len(orders))
        if claim_id is None:
            logger.info("Daily alert already sent", extra={"tenant_id": tenant_id})
            return AlertOutcome.SKIPPED_ALREADY_SENT

        count = len(orders)
        subject = (
            f"Daily Prep Alert: {count} advance order{'s' if count > 1 else ''} "
            f"for {target_date.strftime('%a %b %d %Y')}"
        )
        try:
            html = self.render_daily_alert(tenant.name, orders, target_date, tz)
            self._email_sink.send(tenant.email, subject, html)
        except Exception:
            logger.exception("Error sending prep alert email", extra={"tenant_id": tenant_id})
            self._release(claim_id)
            return AlertOutcome.FAILED

        logger.info("Daily alert sent", extra={"tenant_id": tenant_id, "order_count": count})
        return AlertOutcome.SENT

    def render_daily_alert(
        self,
        tenant_name: str,
        orders: list[tuple[Order, Optional[FireSchedule]]],
        target_date: date,
        tz,
    ) -> str:
        groups: "OrderedDict[str, list[AlertOrder]]" = OrderedDict()
        ordered = sorted(orders, key=lambda row: (row[1] is None, row[1].fire_time if row[1] else None))
        for order, schedule in ordered:
            key = schedule.fire_time.astimezone(tz).strftime("%H:%M") if schedule else "TBD"
            groups.setdefault(key, []).append(_alert_order(order, tz))

        template = self.env.get_template("daily_prep_alert.html")
        return template.render(
            tenant_name=tenant_name or "Restaurant",
            target_date=target_date.strftime("%A %d %B %Y"),
            total_orders=len(orders),
            groups=groups,
            preparation_minutes=self._preparation_minutes,
            generated_at=self._clock().astimezone(tz).strftime("%Y-%m-%d %H:%M"),
        )

    def send_advance_order_confirmation(self, order: Order, schedule: FireSchedule) -> bool:
        """Fire-and-forget customer confirmation for a newly scheduled order."""
        if not order.customer_email:
            return False
        try:
            tenant = self._store.get_tenant(order.tenant_id)
            tz = tenant_zone(tenant.timezone if tenant else None, self._default_timezone)
            html = self.env.get_template("advance_order_confirmation.html").render(
                tenant_name=tenant.name if tenant else "Restaurant",
                order=_alert_order(order, tz),
            )
            self._email_sink.send(
                order.customer_email,
                f"Order #{order.order_number} scheduled",
                html,
            )
        except Exception:
            logger.exception(
                "Error sending advance order confirmation",
                extra={"tenant_id": order.tenant_id, "order_id": order.id},
            )
            return False
        logger.info(
            "Advance order confirmation sent",
            extra={"tenant_id": order.tenant_id, "order_id": order.id, "fire_time": schedule.fire_time.isoformat()},
        )
        return True

    def purge_before(self, cutoff: date) -> int:
        with self._session_factory.begin() as session:
            result = session.execute(
                delete(DailyPrepAlert)
                .where(DailyPrepAlert.alert_date < cutoff)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

    def _claim(self, tenant_id: int, target_date: date, order_count: int) -> Optional[int]:
        try:
            with self._session_factory.begin() as session:
                row = DailyPrepAlert(
                    tenant_id=tenant_id,
                    alert_date=target_date,
                    order_count=order_count,
                    sent_at=self._clock(),
                )
                session.add(row)
                session.flush()
                claim_id = row.id
        except IntegrityError:
            return None
        return claim_id

    def _release(self, claim_id: int) -> None:
        try:
            with self._session_factory.begin() as session:
                session.execute(delete(DailyPrepAlert).where(DailyPrepAlert.id == claim_id))
        except Exception:
            logger.exception("Failed to release daily alert claim", extra={"claim_id": claim_id})
