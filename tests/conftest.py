import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("LOG_JSON", "false")

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional
from uuid import uuid4

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from advance_orders.alerts import LoggingEmailSink
from advance_orders.config import Settings
from advance_orders.db import Base, init_db
from advance_orders.models import Order, OrderItem, Tenant
from advance_orders.pos_client import PosConfig, StaticPosConfigProvider
from advance_orders.services import build_services

T0 = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value


class FakeResponse:
    def __init__(self, status_code: int, body: Optional[object] = None) -> None:
        self.status_code = status_code
        self._body = body
        self.reason_phrase = "Service Unavailable" if status_code == 503 else ""

    def json(self):
        if self._body is None:
            raise ValueError("no json body")
        return self._body


class FakePos:
    """Stands in for the POS HTTP endpoints via ``httpx.post`` / ``httpx.get``."""

    def __init__(self) -> None:
        self.posts: list[dict] = []
        self.gets: list[str] = []
        self.responses: list = []
        self.default = (200, {"printJobId": "job-1"})
        self.get_response = (200, {"status": "completed"})

    def queue(self, *outcomes) -> None:
        self.responses.extend(outcomes)

    def post(self, url, json=None, headers=None, timeout=None):
        self.posts.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        outcome = self.responses.pop(0) if self.responses else self.default
        if isinstance(outcome, Exception):
            raise outcome
        status_code, body = outcome
        return FakeResponse(status_code, body)

    def get(self, url, headers=None, timeout=None):
        self.gets.append(url)
        outcome = self.get_response
        if isinstance(outcome, Exception):
            raise outcome
        status_code, body = outcome
        return FakeResponse(status_code, body)


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    yield factory
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_pos(monkeypatch) -> FakePos:
    pos = FakePos()
    monkeypatch.setattr(httpx, "post", pos.post)
    monkeypatch.setattr(httpx, "get", pos.get)
    return pos


@pytest.fixture
def pos_provider() -> StaticPosConfigProvider:
    return StaticPosConfigProvider(
        default=PosConfig(endpoint_url="http://pos.test/", api_key="secret-key", timeout=5.0, enabled=True)
    )


@pytest.fixture
def app_settings() -> Settings:
    return Settings(database_url="sqlite://", scheduler_enabled=False, default_timezone="UTC")


@pytest.fixture
def email_sink() -> LoggingEmailSink:
    return LoggingEmailSink()


@pytest.fixture
def services(session_factory, app_settings, clock, pos_provider, email_sink, fake_pos):
    return build_services(
        session_factory,
        app_settings,
        clock=clock,
        pos_config_provider=pos_provider,
        email_sink=email_sink,
    )


def add_tenant(session_factory, name: str = "Bella Pizza", email: Optional[str] = "kitchen@bella.test",
               tz: str = "UTC", status: str = "ACTIVE") -> int:
    with session_factory.begin() as session:
        tenant = Tenant(name=name, email=email, timezone=tz, status=status, created_at=T0)
        session.add(tenant)
        session.flush()
        return tenant.id


def add_order(
    session_factory,
    tenant_id: int,
    scheduled_time: Optional[datetime] = None,
    is_advance_order: Optional[bool] = True,
    created_at: datetime = T0,
    order_number: Optional[str] = None,
) -> str:
    order_id = str(uuid4())
    with session_factory.begin() as session:
        session.add(
            Order(
                id=order_id,
                tenant_id=tenant_id,
                order_number=order_number or f"BP-{order_id[:6]}",
                customer_name="Sam Patel",
                customer_phone="+447700900123",
                customer_email="sam@example.com",
                order_type="collection",
                payment_method="card",
                subtotal=Decimal("19.00"),
                delivery_fee=Decimal("0"),
                discount=Decimal("0"),
                total=Decimal("19.00"),
                is_advance_order=is_advance_order,
                scheduled_time=scheduled_time,
                status="confirmed",
                printed=False,
                created_at=created_at,
                items=[
                    OrderItem(
                        menu_item_id="margherita-12",
                        name="Margherita 12in",
                        quantity=2,
                        price=Decimal("9.50"),
                        final_price=Decimal("19.00"),
                        addons=[
                            {
                                "group_name": "Extras",
                                "options": [{"option_id": "olives", "quantity": 1, "price": 0.8}],
                            }
                        ],
                    )
                ],
            )
        )
    return order_id


@pytest.fixture
def tenant_id(session_factory) -> int:
    return add_tenant(session_factory)
