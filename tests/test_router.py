from datetime import timedelta
from types import SimpleNamespace
from zoneinfo import ZoneInfo

import pytest

from advance_orders.errors import (
    ClassificationError,
    InvalidOrderError,
    InvalidTransitionError,
    OrderNotFoundError,
)
from advance_orders.router import OrderRoute, classify_order, parse_scheduled_time
from advance_orders.store import ScheduleStatus

from conftest import T0, add_order


def _order(scheduled_time, is_advance_order=True):
    return SimpleNamespace(id="o-1", is_advance_order=is_advance_order, scheduled_time=scheduled_time)


def test_classify_boundaries() -> None:
    assert classify_order(_order(T0 + timedelta(minutes=91)), T0) is OrderRoute.ADVANCE
    assert classify_order(_order(T0 + timedelta(minutes=90)), T0) is OrderRoute.IMMEDIATE
    assert classify_order(_order(T0 + timedelta(minutes=30)), T0) is OrderRoute.IMMEDIATE
    assert classify_order(_order(T0 - timedelta(minutes=5)), T0) is OrderRoute.IMMEDIATE


def test_classify_explicit_flag_and_missing_time() -> None:
    assert classify_order(_order(T0 + timedelta(days=2), is_advance_order=False), T0) is OrderRoute.IMMEDIATE
    assert classify_order(_order(None), T0) is OrderRoute.IMMEDIATE
    assert classify_order(_order(T0 + timedelta(hours=3), is_advance_order=None), T0) is OrderRoute.ADVANCE


def test_classify_unparsable_time_is_immediate(caplog) -> None:
    with caplog.at_level("WARNING"):
        route = classify_order(_order("tomorrow-ish"), T0)
    assert route is OrderRoute.IMMEDIATE
    assert "treating order as immediate" in caplog.text


def test_classify_string_times() -> None:
    assert classify_order(_order("2026-10-18T15:00:00Z"), T0) is OrderRoute.ADVANCE
    assert classify_order(_order("2026-10-18T13:00:00+00:00"), T0) is OrderRoute.IMMEDIATE


def test_naive_times_are_tenant_local() -> None:
    london = ZoneInfo("Europe/London")
    # 14:00 in London during BST is 13:00 UTC, one hour out.
    assert classify_order(_order("2026-10-18T14:00:00"), T0, london) is OrderRoute.IMMEDIATE
    assert classify_order(_order("2026-10-18T14:00:00"), T0) is OrderRoute.ADVANCE


def test_parse_scheduled_time() -> None:
    assert parse_scheduled_time(None) is None
    assert parse_scheduled_time("") is None
    parsed = parse_scheduled_time("2026-10-18T14:00:00", ZoneInfo("Europe/London"))
    assert parsed.isoformat() == "2026-10-18T13:00:00+00:00"
    with pytest.raises(ClassificationError):
        parse_scheduled_time("18/10/2026 2pm")
    with pytest.raises(ClassificationError):
        parse_scheduled_time(12345)


def test_advance_order_is_scheduled(services, session_factory, tenant_id, fake_pos, email_sink) -> None:
    order_id = add_order(session_factory, tenant_id, scheduled_time=T0 + timedelta(hours=2))

    result = services.router.process_new_order(tenant_id, order_id)

    assert result.route is OrderRoute.ADVANCE
    assert result.schedule.fire_time == T0 + timedelta(minutes=30)
    assert services.store.get(order_id).status is ScheduleStatus.HOLD
    assert fake_pos.posts == []
    assert email_sink.sent and email_sink.sent[0][0] == "sam@example.com"


def test_immediate_order_prints(services, session_factory, tenant_id, fake_pos) -> None:
    order_id = add_order(session_factory, tenant_id, scheduled_time=T0 + timedelta(minutes=45))

    result = services.router.process_new_order(tenant_id, order_id)

    assert result.route is OrderRoute.IMMEDIATE
    assert result.print_result.success
    assert services.store.get(order_id) is None
    assert services.store.load_order(order_id).printed is True
    logs = services.store.list_logs(tenant_id, order_id)
    assert [(log.status, log.attempt) for log in logs] == [("printed", "immediate")]


def test_immediate_failure_surfaces_in_failed_orders(services, session_factory, tenant_id, fake_pos, clock) -> None:
    order_id = add_order(session_factory, tenant_id, scheduled_time=None, is_advance_order=False)
    fake_pos.queue((500, {"error": "printer jammed"}))

    result = services.router.process_new_order(tenant_id, order_id)

    assert result.route is OrderRoute.IMMEDIATE
    assert not result.print_result.success
    assert services.scheduler.get_failed_orders(tenant_id) == []

    clock.advance(minutes=11)
    failed = services.scheduler.get_failed_orders(tenant_id)
    assert [row["order_id"] for row in failed] == [order_id]
    assert failed[0]["is_advance_order"] is False


def test_process_new_order_rejects_other_tenant(services, session_factory, tenant_id) -> None:
    order_id = add_order(session_factory, tenant_id, scheduled_time=None)
    with pytest.raises(OrderNotFoundError):
        services.router.process_new_order(tenant_id + 1, order_id)


def test_pos_callback_completed_and_failed(services, session_factory, tenant_id, fake_pos, clock) -> None:
    order_id = add_order(session_factory, tenant_id, scheduled_time=T0 + timedelta(hours=2))
    services.router.process_new_order(tenant_id, order_id)
    schedule = services.store.get(order_id)
    clock.advance(minutes=31)
    assert services.store.claim_for_fire(schedule, clock())

    services.router.update_order_from_pos(order_id, "failed", "job-7")
    assert services.store.get(order_id).status is ScheduleStatus.FAILED

    services.router.update_order_from_pos(order_id, "completed", "job-7")
    schedule = services.store.get(order_id)
    assert schedule.status is ScheduleStatus.PRINTED
    assert schedule.print_job_id == "job-7"
    assert services.store.load_order(order_id).printed is True

    services.router.update_order_from_pos(order_id, "failed", "job-7")
    assert services.store.get(order_id).status is ScheduleStatus.PRINTED

    attempts = [log.attempt for log in services.store.list_logs(tenant_id, order_id)]
    assert attempts.count("callback") == 3


def test_pos_callback_unknown_status(services, session_factory, tenant_id) -> None:
    order_id = add_order(session_factory, tenant_id)
    with pytest.raises(ValueError):
        services.router.update_order_from_pos(order_id, "exploded")


def test_unflagged_order_with_far_time_is_held(services, session_factory, tenant_id, fake_pos) -> None:
    order_id = add_order(session_factory, tenant_id, scheduled_time=T0 + timedelta(hours=3), is_advance_order=None)

    result = services.router.process_new_order(tenant_id, order_id)

    assert result.route is OrderRoute.ADVANCE
    assert services.store.get(order_id).status is ScheduleStatus.HOLD
    assert services.store.load_order(order_id).is_advance_order is True
    assert fake_pos.posts == []


def test_unschedulable_advance_order_prints_now(services, session_factory, tenant_id, fake_pos, monkeypatch) -> None:
    order_id = add_order(session_factory, tenant_id, scheduled_time=T0 + timedelta(hours=3))

    def reject(order):
        raise InvalidOrderError(f"order {order.id} has no scheduled time")

    monkeypatch.setattr(services.scheduler, "schedule", reject)
    result = services.router.process_new_order(tenant_id, order_id)

    assert result.route is OrderRoute.IMMEDIATE
    assert result.print_result.success
    assert len(fake_pos.posts) == 1
    assert services.store.load_order(order_id).printed is True


def test_completed_callback_for_held_order_is_rejected(services, session_factory, tenant_id, fake_pos, clock) -> None:
    order_id = add_order(session_factory, tenant_id, scheduled_time=T0 + timedelta(hours=2))
    services.router.process_new_order(tenant_id, order_id)

    with pytest.raises(InvalidTransitionError):
        services.router.update_order_from_pos(order_id, "completed", "job-x")

    assert services.store.get(order_id).status is ScheduleStatus.HOLD
    assert services.store.load_order(order_id).printed is False

    clock.advance(minutes=31)
    services.scheduler.process_ready_orders(tenant_id)
    assert len(fake_pos.posts) == 1
    assert services.store.get(order_id).status is ScheduleStatus.PRINTED
