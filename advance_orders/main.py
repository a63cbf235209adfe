from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import AsyncIterator, Literal, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from advance_orders.background import BackgroundScheduler, get_background_scheduler, reset_background_scheduler
from advance_orders.config import settings
from advance_orders.db import SessionLocal
from advance_orders.errors import (
    AdvanceOrderError,
    ClassificationError,
    InvalidOrderError,
    InvalidTransitionError,
    OrderNotFoundError,
    RetryExhaustedError,
    ScheduleNotFoundError,
)
from advance_orders.logging_setup import setup_json_logging
from advance_orders.models import Order, OrderItem, PosIntegration, PrintJobLog, Tenant
from advance_orders.pos_client import PosConfig
from advance_orders.router import parse_scheduled_time
from advance_orders.services import Services, build_services
from advance_orders.timing import tenant_zone

setup_json_logging(settings.log_level, settings.log_json)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app_instance: FastAPI) -> AsyncIterator[None]:
    if settings.scheduler_enabled:
        get_background_scheduler().start()

    yield

    reset_background_scheduler()


app = FastAPI(title="Advance Order Scheduler", lifespan=lifespan)


def _meta(request_id: Optional[str] = None, warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": request_id or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services(SessionLocal, settings)
    return _services


def get_runner() -> BackgroundScheduler:
    return get_background_scheduler()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _http_error(exc: AdvanceOrderError) -> HTTPException:
    if isinstance(exc, (OrderNotFoundError, ScheduleNotFoundError)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (InvalidTransitionError, RetryExhaustedError)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, InvalidOrderError):
        return HTTPException(status_code=422, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def _require_tenant(db: Session, tenant_id: int) -> Tenant:
    tenant = db.get(Tenant, tenant_id)
    if not tenant:
        raise HTTPException(status_code=404, detail="tenant not found")
    return tenant


def _mask(api_key: Optional[str]) -> Optional[str]:
    if not api_key:
        return None
    return "****" + api_key[-4:] if len(api_key) > 4 else "****"


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "healthy"}


class TenantCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'name': 'Bella Pizza', 'email': 'kitchen@bellapizza.co.uk', 'timezone': 'Europe/London', 'is_active': True}}}
    name: str
    email: Optional[str] = None
    timezone: str = "UTC"
    is_active: bool = True


@app.post("/api/v1/tenants", tags=["Tenants"])
def create_tenant(payload: TenantCreate, db: Session = Depends(get_db)) -> dict:
    tenant = Tenant(
        name=payload.name,
        email=payload.email,
        timezone=tenant_zone(payload.timezone).key,
        status="ACTIVE" if payload.is_active else "INACTIVE",
        created_at=_now(),
    )
    db.add(tenant)
    db.commit()
    db.refresh(tenant)
    return {
        "data": {
            "tenant_id": tenant.id,
            "name": tenant.name,
            "email": tenant.email,
            "timezone": tenant.timezone,
            "is_active": payload.is_active,
        },
        "meta": _meta(),
    }


@app.get("/api/v1/tenants/{tenant_id}", tags=["Tenants"])
def get_tenant(tenant_id: int, db: Session = Depends(get_db)) -> dict:
    tenant = _require_tenant(db, tenant_id)
    return {
        "data": {
            "tenant_id": tenant.id,
            "name": tenant.name,
            "email": tenant.email,
            "timezone": tenant.timezone,
            "status": tenant.status,
            "created_at": tenant.created_at.isoformat(),
        },
        "meta": _meta(),
    }


class PosConfigUpsert(BaseModel):
    model_config = {"json_schema_extra": {"example": {'endpoint_url': 'https://pos.bellapizza.co.uk', 'api_key': 'sk_live_123456', 'timeout_seconds': 30, 'enabled': True}}}
    endpoint_url: str
    api_key: Optional[str] = None
    timeout_seconds: float = Field(default=30, gt=0, le=120)
    enabled: bool = True


def _pos_config_data(tenant_id: int, row: PosIntegration) -> dict:
    return {
        "tenant_id": tenant_id,
        "endpoint_url": row.endpoint_url,
        "api_key": _mask(row.api_key),
        "timeout_seconds": row.timeout_seconds,
        "enabled": row.enabled,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


@app.put("/api/v1/tenants/{tenant_id}/pos-config", tags=["POS Integration"])
def upsert_pos_config(tenant_id: int, payload: PosConfigUpsert, db: Session = Depends(get_db)) -> dict:
    _require_tenant(db, tenant_id)
    row = db.get(PosIntegration, tenant_id)
    if row is None:
        row = PosIntegration(tenant_id=tenant_id)
        db.add(row)
    row.endpoint_url = payload.endpoint_url
    row.api_key = payload.api_key
    row.timeout_seconds = payload.timeout_seconds
    row.enabled = payload.enabled
    row.updated_at = _now()
    db.commit()
    db.refresh(row)
    return {"data": _pos_config_data(tenant_id, row), "meta": _meta()}


@app.get("/api/v1/tenants/{tenant_id}/pos-config", tags=["POS Integration"])
def get_pos_config(tenant_id: int, db: Session = Depends(get_db)) -> dict:
    _require_tenant(db, tenant_id)
    row = db.get(PosIntegration, tenant_id)
    if row is None:
        raise HTTPException(status_code=404, detail="pos config not found")
    return {"data": _pos_config_data(tenant_id, row), "meta": _meta()}


@app.post("/api/v1/tenants/{tenant_id}/pos-config:test", tags=["POS Integration"])
def check_pos_connection(
    tenant_id: int,
    payload: Optional[PosConfigUpsert] = None,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict:
    _require_tenant(db, tenant_id)
    if payload is not None:
        config = PosConfig(
            endpoint_url=payload.endpoint_url,
            api_key=payload.api_key,
            timeout=payload.timeout_seconds,
            enabled=payload.enabled,
        )
    else:
        row = db.get(PosIntegration, tenant_id)
        if row is None:
            raise HTTPException(status_code=404, detail="pos config not found")
        config = PosConfig(
            endpoint_url=row.endpoint_url,
            api_key=row.api_key,
            timeout=row.timeout_seconds,
            enabled=row.enabled,
        )
    ok, message = services.pos_client.test_connection(config)
    return {"data": {"success": ok, "message": message}, "meta": _meta()}


class AddonOptionInput(BaseModel):
    option_id: str
    quantity: int = Field(default=1, ge=1)
    price: Decimal = Decimal("0")
    custom_note: Optional[str] = None


class AddonGroupInput(BaseModel):
    group_name: str
    options: list[AddonOptionInput] = Field(default_factory=list)


class OrderItemInput(BaseModel):
    menu_item_id: Optional[str] = None
    name: str
    quantity: int = Field(default=1, ge=1)
    price: Decimal
    base_price: Optional[Decimal] = None
    addon_price: Optional[Decimal] = None
    final_price: Optional[Decimal] = None
    special_instructions: Optional[str] = None
    addons: list[AddonGroupInput] = Field(default_factory=list)


class OrderCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'order_number': 'BP-1042', 'customer_name': 'Sam Patel', 'customer_phone': '+447700900123', 'customer_email': 'sam@example.com', 'order_type': 'collection', 'payment_method': 'card', 'items': [{'menu_item_id': 'margherita-12', 'name': 'Margherita 12"', 'quantity': 2, 'price': 9.5, 'final_price': 19.0, 'addons': [{'group_name': 'Extras', 'options': [{'option_id': 'olives', 'quantity': 1, 'price': 0.8}]}]}], 'subtotal': 19.0, 'delivery_fee': 0, 'discount': 0, 'total': 19.0, 'is_advance_order': True, 'scheduled_time': '2026-10-18T19:30:00+01:00'}}}
    id: Optional[str] = None
    order_number: str
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None
    address: Optional[str] = None
    order_type: Literal["collection", "delivery"] = "collection"
    payment_method: Optional[str] = None
    special_instructions: Optional[str] = None
    items: list[OrderItemInput] = Field(default_factory=list)
    subtotal: Decimal = Decimal("0")
    delivery_fee: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")
    total: Decimal = Decimal("0")
    voucher_code: Optional[str] = None
    is_advance_order: Optional[bool] = None
    scheduled_time: Optional[str] = None
    status: str = "confirmed"


def _order_item(item: OrderItemInput) -> OrderItem:
    return OrderItem(
        menu_item_id=item.menu_item_id,
        name=item.name,
        quantity=item.quantity,
        price=item.price,
        base_price=item.base_price,
        addon_price=item.addon_price,
        final_price=item.final_price,
        special_instructions=item.special_instructions,
        addons=[group.model_dump(mode="json") for group in item.addons] or None,
    )


@app.post("/api/v1/tenants/{tenant_id}/orders", tags=["Orders"])
def create_order(
    tenant_id: int,
    payload: OrderCreate,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict:
    tenant = _require_tenant(db, tenant_id)
    warnings: list[str] = []
    try:
        scheduled_time = parse_scheduled_time(
            payload.scheduled_time, tenant_zone(tenant.timezone, settings.default_timezone)
        )
    except ClassificationError as exc:
        logger.warning("%s, order will print immediately", exc, extra={"tenant_id": tenant_id})
        warnings.append("scheduled_time could not be parsed; order treated as immediate")
        scheduled_time = None

    order = Order(
        id=payload.id or str(uuid4()),
        tenant_id=tenant_id,
        order_number=payload.order_number,
        customer_name=payload.customer_name,
        customer_phone=payload.customer_phone,
        customer_email=payload.customer_email,
        address=payload.address,
        order_type=payload.order_type,
        payment_method=payload.payment_method,
        special_instructions=payload.special_instructions,
        subtotal=payload.subtotal,
        delivery_fee=payload.delivery_fee,
        discount=payload.discount,
        total=payload.total,
        voucher_code=payload.voucher_code,
        is_advance_order=payload.is_advance_order,
        scheduled_time=scheduled_time,
        status=payload.status,
        printed=False,
        created_at=services.clock(),
        items=[_order_item(item) for item in payload.items],
    )
    db.add(order)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise HTTPException(status_code=409, detail="order already exists") from exc

    try:
        routing = services.router.process_new_order(tenant_id, order.id)
    except AdvanceOrderError as exc:
        raise _http_error(exc) from exc
    return {"data": routing.to_dict(services.clock()), "meta": _meta(warnings=warnings)}


@app.get("/api/v1/tenants/{tenant_id}/advance-orders", tags=["Advance Orders"])
def list_advance_orders(
    tenant_id: int,
    target_date: Optional[date] = Query(default=None, alias="date"),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict:
    _require_tenant(db, tenant_id)
    rows = services.scheduler.get_advance_orders_with_schedules(tenant_id, target_date)
    return {"data": rows, "meta": _meta()}


@app.get("/api/v1/tenants/{tenant_id}/schedules", tags=["Advance Orders"])
def list_schedules(
    tenant_id: int,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict:
    _require_tenant(db, tenant_id)
    return {"data": services.scheduler.list_schedules(tenant_id), "meta": _meta()}


@app.delete("/api/v1/tenants/{tenant_id}/advance-orders/{order_id}", tags=["Advance Orders"])
def cancel_advance_order(
    tenant_id: int,
    order_id: str,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict:
    _require_tenant(db, tenant_id)
    order = db.get(Order, order_id)
    if not order or order.tenant_id != tenant_id:
        raise HTTPException(status_code=404, detail="order not found")
    try:
        removed = services.scheduler.cancel_advance_order(order_id)
    except AdvanceOrderError as exc:
        raise _http_error(exc) from exc

    warnings = []
    if removed is not None and removed.status.value in ("FIRED", "PRINTED"):
        warnings.append("order was already sent to the kitchen")
    return {
        "data": {
            "order_id": order_id,
            "cancelled": True,
            "schedule_status": removed.status.value if removed else None,
        },
        "meta": _meta(warnings=warnings),
    }


@app.get("/api/v1/tenants/{tenant_id}/failed-orders", tags=["Failed Orders"])
def list_failed_orders(
    tenant_id: int,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict:
    _require_tenant(db, tenant_id)
    return {"data": services.scheduler.get_failed_orders(tenant_id), "meta": _meta()}


class ManualRetryRequest(BaseModel):
    model_config = {"json_schema_extra": {"example": {'order_id': '6f1c8a52-6a0e-4a39-9a53-1b2f0d7c9e10'}}}
    order_id: str


@app.post("/api/v1/tenants/{tenant_id}/manual-retry", tags=["Failed Orders"])
def manual_retry(
    tenant_id: int,
    payload: ManualRetryRequest,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict:
    _require_tenant(db, tenant_id)
    try:
        result = services.retry_engine.manual_retry(tenant_id, payload.order_id)
    except AdvanceOrderError as exc:
        raise _http_error(exc) from exc
    return {"data": result.to_dict(), "meta": _meta()}


@app.get("/api/v1/tenants/{tenant_id}/conflicts", tags=["Conflicts"])
def list_conflicts(
    tenant_id: int,
    target_date: date = Query(alias="date"),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict:
    _require_tenant(db, tenant_id)
    alerts = services.conflicts.get_order_conflicts(tenant_id, target_date)
    warnings = [
        f"{alert.order_count} orders fire at {alert.fire_time.strftime('%H:%M')}"
        for alert in alerts
        if alert.alert_level != "info"
    ]
    return {"data": [alert.to_dict() for alert in alerts], "meta": _meta(warnings=warnings)}


@app.get("/api/v1/tenants/{tenant_id}/orders/{order_id}/print-status", tags=["Orders"])
def get_print_status(
    tenant_id: int,
    order_id: str,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict:
    _require_tenant(db, tenant_id)
    order = db.get(Order, order_id)
    if not order or order.tenant_id != tenant_id:
        raise HTTPException(status_code=404, detail="order not found")

    schedule = services.store.get(order_id)
    print_job_id = schedule.print_job_id if schedule else None
    if print_job_id is None:
        print_job_id = db.scalars(
            select(PrintJobLog.print_job_id)
            .where(PrintJobLog.order_id == order_id, PrintJobLog.print_job_id.is_not(None))
            .order_by(PrintJobLog.id.desc())
            .limit(1)
        ).first()
    if print_job_id is None:
        raise HTTPException(status_code=404, detail="no print job for order")

    status = services.pos_client.check_print_status(tenant_id, order_id, print_job_id)
    if status is None:
        return {
            "data": {"order_id": order_id, "print_job_id": print_job_id, "status": None},
            "meta": _meta(warnings=["print status unavailable from POS"]),
        }
    return {
        "data": {
            "order_id": order_id,
            "print_job_id": print_job_id,
            "status": status.status,
            "message": status.message,
            "checked_at": status.timestamp.isoformat(),
        },
        "meta": _meta(),
    }


class PosStatusUpdate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'status': 'completed', 'print_job_id': 'job_8812'}}}
    status: Literal["pending", "printing", "completed", "failed"]
    print_job_id: Optional[str] = None


@app.post("/api/v1/tenants/{tenant_id}/orders/{order_id}/pos-status", tags=["Orders"])
def pos_status_callback(
    tenant_id: int,
    order_id: str,
    payload: PosStatusUpdate,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict:
    _require_tenant(db, tenant_id)
    order = db.get(Order, order_id)
    if not order or order.tenant_id != tenant_id:
        raise HTTPException(status_code=404, detail="order not found")
    try:
        services.router.update_order_from_pos(order_id, payload.status, payload.print_job_id)
    except AdvanceOrderError as exc:
        raise _http_error(exc) from exc
    schedule = services.store.get(order_id)
    return {
        "data": {
            "order_id": order_id,
            "status": payload.status,
            "schedule_status": schedule.status.value if schedule else None,
        },
        "meta": _meta(),
    }


@app.post("/api/v1/tenants/{tenant_id}/sweep", tags=["Scheduler"])
def sweep_tenant(
    tenant_id: int,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict:
    _require_tenant(db, tenant_id)
    report = services.scheduler.process_ready_orders(tenant_id)
    return {"data": report.to_dict(), "meta": _meta()}


@app.post("/api/v1/daily-alerts:send", tags=["Daily Alerts"])
def send_daily_alerts(
    target_date: Optional[date] = Query(default=None, alias="date"),
    tenant_id: Optional[int] = Query(default=None),
    services: Services = Depends(get_services),
) -> dict:
    if tenant_id is not None:
        if target_date is None:
            tenant = services.store.get_tenant(tenant_id)
            if tenant is None:
                raise HTTPException(status_code=404, detail="tenant not found")
            target_date = services.clock().astimezone(
                tenant_zone(tenant.timezone, settings.default_timezone)
            ).date()
        outcomes = {tenant_id: services.notifier.send_tenant_daily_alert(tenant_id, target_date)}
    else:
        outcomes = services.notifier.send_daily_alerts(target_date)
    return {
        "data": [{"tenant_id": key, "outcome": value.value} for key, value in outcomes.items()],
        "meta": _meta(),
    }


@app.get("/api/v1/scheduler/status", tags=["Scheduler"])
def scheduler_status(runner: BackgroundScheduler = Depends(get_runner)) -> dict:
    return {"data": runner.status(), "meta": _meta()}


@app.post("/api/v1/scheduler:force-process", tags=["Scheduler"])
def scheduler_force_process(runner: BackgroundScheduler = Depends(get_runner)) -> dict:
    reports = runner.force_process()
    return {"data": [report.to_dict() for report in reports], "meta": _meta()}
