from dataclasses import replace
from datetime import date, timedelta

import pytest

from advance_orders.errors import InvalidOrderError, OrderNotFoundError
from advance_orders.store import READY_TO_FIRE, ScheduleStatus

from conftest import T0, add_order


def test_schedule_computes_fire_time(services, session_factory, tenant_id) -> None:
    for minutes in (91, 120, 600, 60 * 24 * 3):
        desired = T0 + timedelta(minutes=minutes)
        order_id = add_order(session_factory, tenant_id, scheduled_time=desired)
        schedule = services.scheduler.schedule(services.store.load_order(order_id))

        assert schedule.fire_time == desired - timedelta(minutes=90)
        assert schedule.fire_time < schedule.customer_desired_time
        stored = services.store.get(order_id)
        assert stored.status is ScheduleStatus.HOLD
        assert stored.retry_count == 0
        assert stored.fire_time == schedule.fire_time


def test_schedule_rejects_non_advance_orders(services, session_factory, tenant_id) -> None:
    immediate = add_order(session_factory, tenant_id, scheduled_time=T0 + timedelta(hours=3), is_advance_order=False)
    untimed = add_order(session_factory, tenant_id, scheduled_time=None)

    with pytest.raises(InvalidOrderError):
        services.scheduler.schedule(services.store.load_order(immediate))
    with pytest.raises(InvalidOrderError):
        services.scheduler.schedule(services.store.load_order(untimed))


def test_schedule_twice_is_rejected(services, session_factory, tenant_id) -> None:
    order_id = add_order(session_factory, tenant_id, scheduled_time=T0 + timedelta(hours=3))
    order = services.store.load_order(order_id)
    services.scheduler.schedule(order)
    with pytest.raises(InvalidOrderError):
        services.scheduler.schedule(order)


def test_display_status_is_derived(services, session_factory, tenant_id, clock) -> None:
    order_id = add_order(session_factory, tenant_id, scheduled_time=T0 + timedelta(hours=2))
    services.scheduler.schedule(services.store.load_order(order_id))

    assert services.scheduler.list_schedules(tenant_id)[0]["display_status"] == "HOLD"
    clock.advance(minutes=30)
    row = services.scheduler.list_schedules(tenant_id)[0]
    assert row["display_status"] == READY_TO_FIRE
    assert row["status"] == "HOLD"


def test_end_to_end_fire_fail_then_retry(services, session_factory, tenant_id, fake_pos, clock) -> None:
    order_id = add_order(session_factory, tenant_id, scheduled_time=T0 + timedelta(minutes=120))
    routed = services.router.process_new_order(tenant_id, order_id)
    assert routed.schedule.status is ScheduleStatus.HOLD
    assert routed.schedule.fire_time == T0 + timedelta(minutes=30)

    clock.set(T0 + timedelta(minutes=29))
    report = services.scheduler.process_ready_orders(tenant_id)
    assert report.fired == 0
    assert fake_pos.posts == []

    clock.set(T0 + timedelta(minutes=31))
    fake_pos.queue((503, {"error": "unavailable"}))
    report = services.scheduler.process_ready_orders(tenant_id)
    assert (report.fired, report.failed, report.retried) == (1, 1, 0)
    schedule = services.store.get(order_id)
    assert schedule.status is ScheduleStatus.FAILED
    assert schedule.retry_count == 0
    assert "503" in schedule.last_error

    clock.set(T0 + timedelta(minutes=33))
    report = services.scheduler.process_ready_orders(tenant_id)
    assert report.retried == 0
    assert len(fake_pos.posts) == 1

    clock.set(T0 + timedelta(minutes=34))
    report = services.scheduler.process_ready_orders(tenant_id)
    assert (report.retried, report.retry_printed) == (1, 1)
    schedule = services.store.get(order_id)
    assert schedule.status is ScheduleStatus.PRINTED
    assert schedule.print_job_id == "job-1"
    assert services.store.load_order(order_id).printed is True

    statuses = [(log.status, log.attempt) for log in services.store.list_logs(tenant_id, order_id)]
    assert statuses == [("failed", "fire"), ("printed", "retry")]


def test_fire_sends_wire_payload(services, session_factory, tenant_id, fake_pos, clock) -> None:
    order_id = add_order(session_factory, tenant_id, scheduled_time=T0 + timedelta(hours=2))
    services.scheduler.schedule(services.store.load_order(order_id))
    clock.advance(minutes=30)

    report = services.scheduler.process_ready_orders(tenant_id)

    assert report.printed == 1
    sent = fake_pos.posts[0]
    assert sent["url"] == "http://pos.test/api/print-order"
    assert sent["headers"]["Authorization"] == "Bearer secret-key"
    assert sent["json"]["orderId"] == order_id
    assert sent["json"]["isAdvanceOrder"] is True


def test_printed_is_absorbing(services, session_factory, tenant_id, fake_pos, clock) -> None:
    order_id = add_order(session_factory, tenant_id, scheduled_time=T0 + timedelta(hours=2))
    services.scheduler.schedule(services.store.load_order(order_id))
    clock.advance(minutes=31)
    services.scheduler.process_ready_orders(tenant_id)
    printed = services.store.get(order_id)
    assert printed.status is ScheduleStatus.PRINTED

    assert services.scheduler.fire_order(tenant_id, printed) is None
    # A stale HOLD snapshot loses the version check.
    stale = replace(printed, status=ScheduleStatus.HOLD, version=0)
    assert services.scheduler.fire_order(tenant_id, stale) is None
    assert len(fake_pos.posts) == 1
    assert services.store.get(order_id).status is ScheduleStatus.PRINTED


def test_concurrent_claim_fires_once(services, session_factory, tenant_id, fake_pos, clock) -> None:
    order_id = add_order(session_factory, tenant_id, scheduled_time=T0 + timedelta(hours=2))
    services.scheduler.schedule(services.store.load_order(order_id))
    clock.advance(minutes=31)
    snapshot = services.store.get(order_id)

    first = services.scheduler.fire_order(tenant_id, snapshot)
    second = services.scheduler.fire_order(tenant_id, snapshot)

    assert first is not None and first.success
    assert second is None
    assert len(fake_pos.posts) == 1


def test_missing_order_fails_without_retry(services, session_factory, tenant_id, fake_pos, clock) -> None:
    order_id = add_order(session_factory, tenant_id, scheduled_time=T0 + timedelta(hours=2))
    services.scheduler.schedule(services.store.load_order(order_id))
    clock.advance(minutes=31)
    snapshot = services.store.get(order_id)
    services.store.load_order = lambda _order_id: None

    result = services.scheduler.fire_order(tenant_id, snapshot)

    assert result is not None and not result.success
    failed = services.store.get(order_id)
    assert failed.status is ScheduleStatus.FAILED
    assert failed.last_error_retryable is False
    assert fake_pos.posts == []


def test_one_bad_order_does_not_stop_siblings(services, session_factory, tenant_id, fake_pos, clock) -> None:
    first = add_order(session_factory, tenant_id, scheduled_time=T0 + timedelta(hours=2))
    second = add_order(session_factory, tenant_id, scheduled_time=T0 + timedelta(hours=2, minutes=1))
    for order_id in (first, second):
        services.scheduler.schedule(services.store.load_order(order_id))
    clock.advance(minutes=32)
    fake_pos.queue(RuntimeError("socket closed unexpectedly"))

    report = services.scheduler.process_ready_orders(tenant_id)

    assert report.fired == 2
    assert report.failed == 1
    assert report.printed == 1
    assert services.store.get(first).status is ScheduleStatus.FAILED
    assert services.store.get(second).status is ScheduleStatus.PRINTED


def test_cancel_hold_order(services, session_factory, tenant_id, fake_pos, clock) -> None:
    order_id = add_order(session_factory, tenant_id, scheduled_time=T0 + timedelta(hours=2))
    services.scheduler.schedule(services.store.load_order(order_id))

    removed = services.scheduler.cancel_advance_order(order_id)

    assert removed.status is ScheduleStatus.HOLD
    assert services.store.get(order_id) is None
    assert services.store.load_order(order_id).status == "cancelled"
    clock.advance(hours=1)
    assert services.scheduler.process_ready_orders(tenant_id).fired == 0
    assert fake_pos.posts == []


def test_cancel_after_fire_logs_warning(services, session_factory, tenant_id, fake_pos, clock, caplog) -> None:
    order_id = add_order(session_factory, tenant_id, scheduled_time=T0 + timedelta(hours=2))
    services.scheduler.schedule(services.store.load_order(order_id))
    clock.advance(minutes=31)
    services.scheduler.process_ready_orders(tenant_id)

    with caplog.at_level("WARNING"):
        removed = services.scheduler.cancel_advance_order(order_id)

    assert removed.status is ScheduleStatus.PRINTED
    assert "sent to the kitchen" in caplog.text


def test_cancel_unknown_order(services) -> None:
    with pytest.raises(OrderNotFoundError):
        services.scheduler.cancel_advance_order("does-not-exist")


def test_advance_orders_for_date(services, session_factory, tenant_id) -> None:
    tomorrow = add_order(session_factory, tenant_id, scheduled_time=T0 + timedelta(days=1))
    later = add_order(session_factory, tenant_id, scheduled_time=T0 + timedelta(days=2))
    for order_id in (tomorrow, later):
        services.scheduler.schedule(services.store.load_order(order_id))

    rows = services.scheduler.get_advance_orders_with_schedules(tenant_id, date(2026, 10, 19))

    assert [row["order_id"] for row in rows] == [tomorrow]
    assert rows[0]["schedule"]["status"] == "HOLD"
    assert len(services.scheduler.get_advance_orders_with_schedules(tenant_id)) == 2
