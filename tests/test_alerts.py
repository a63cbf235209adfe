from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import select

from advance_orders.alerts import AlertOutcome, LoggingEmailSink
from advance_orders.models import DailyPrepAlert

from conftest import T0, add_order, add_tenant

TOMORROW = date(2026, 10, 19)


class BrokenSink:
    def send(self, to, subject, html):
        raise ConnectionError("smtp down")


def _advance_order(services, session_factory, tenant_id, scheduled_time) -> str:
    order_id = add_order(session_factory, tenant_id, scheduled_time=scheduled_time)
    services.scheduler.schedule(services.store.load_order(order_id))
    return order_id


def test_sends_once_per_day(services, session_factory, tenant_id, email_sink) -> None:
    _advance_order(services, session_factory, tenant_id, datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc))
    _advance_order(services, session_factory, tenant_id, datetime(2026, 10, 19, 18, 30, tzinfo=timezone.utc))
    email_sink.sent.clear()

    first = services.notifier.send_tenant_daily_alert(tenant_id, TOMORROW)
    second = services.notifier.send_tenant_daily_alert(tenant_id, TOMORROW)

    assert first is AlertOutcome.SENT
    assert second is AlertOutcome.SKIPPED_ALREADY_SENT
    assert email_sink.sent == [("kitchen@bella.test", "Daily Prep Alert: 2 advance orders for Mon Oct 19 2026")]
    with session_factory() as session:
        rows = session.scalars(select(DailyPrepAlert)).all()
    assert [(r.alert_date, r.order_count) for r in rows] == [(TOMORROW, 2)]


def test_no_orders_no_email(services, session_factory, tenant_id, email_sink) -> None:
    _advance_order(services, session_factory, tenant_id, datetime(2026, 10, 21, 12, 0, tzinfo=timezone.utc))
    email_sink.sent.clear()

    assert services.notifier.send_tenant_daily_alert(tenant_id, TOMORROW) is AlertOutcome.SKIPPED_NO_ORDERS
    assert email_sink.sent == []


def test_tenant_without_email(services, session_factory, email_sink) -> None:
    tenant_id = add_tenant(session_factory, email=None)
    _advance_order(services, session_factory, tenant_id, datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc))

    assert services.notifier.send_tenant_daily_alert(tenant_id, TOMORROW) is AlertOutcome.SKIPPED_NO_EMAIL


def test_failed_send_releases_claim(services, session_factory, tenant_id, email_sink) -> None:
    _advance_order(services, session_factory, tenant_id, datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc))
    notifier = services.notifier
    notifier._email_sink = BrokenSink()

    assert notifier.send_tenant_daily_alert(tenant_id, TOMORROW) is AlertOutcome.FAILED
    with session_factory() as session:
        assert session.scalars(select(DailyPrepAlert)).all() == []

    notifier._email_sink = email_sink
    assert notifier.send_tenant_daily_alert(tenant_id, TOMORROW) is AlertOutcome.SENT


def test_send_daily_alerts_uses_tenant_today(services, session_factory, tenant_id, clock, email_sink) -> None:
    quiet_tenant = add_tenant(session_factory, name="Quiet Cafe", email="owner@quiet.test")
    add_tenant(session_factory, name="Closed Diner", status="INACTIVE")
    _advance_order(services, session_factory, tenant_id, T0 + timedelta(hours=5))
    email_sink.sent.clear()

    outcomes = services.notifier.send_daily_alerts()

    assert outcomes == {tenant_id: AlertOutcome.SENT, quiet_tenant: AlertOutcome.SKIPPED_NO_ORDERS}
    assert len(email_sink.sent) == 1


def test_rendered_alert_groups_by_fire_time(services, session_factory, tenant_id) -> None:
    _advance_order(services, session_factory, tenant_id, datetime(2026, 10, 19, 19, 0, tzinfo=timezone.utc))
    _advance_order(services, session_factory, tenant_id, datetime(2026, 10, 19, 12, 30, tzinfo=timezone.utc))
    orders = services.store.list_advance_orders(tenant_id)

    html = services.notifier.render_daily_alert("Bella <Pizza>", orders, TOMORROW, ZoneInfo("UTC"))

    assert "Bella &lt;Pizza&gt;" in html
    assert html.index("Kitchen fire time: 11:00") < html.index("Kitchen fire time: 17:30")
    assert "90 minutes" in html


def test_logging_sink_records(caplog) -> None:
    sink = LoggingEmailSink()
    with caplog.at_level("INFO"):
        sink.send("a@b.test", "hello", "<p>hi</p>")
    assert sink.sent == [("a@b.test", "hello")]
    assert "hello" in caplog.text
