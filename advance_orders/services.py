from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import sessionmaker

from advance_orders.alerts import DailyPrepAlertNotifier, EmailSink, email_sink_from_settings
from advance_orders.config import Settings
from advance_orders.conflicts import ConflictDetector
from advance_orders.pos_client import (
    DatabasePosConfigProvider,
    PosConfigProvider,
    POSClient,
    settings_pos_config,
)
from advance_orders.retry import RetryEngine
from advance_orders.router import OrderRouter
from advance_orders.scheduler import AdvanceOrderScheduler
from advance_orders.store import FireScheduleStore
from advance_orders.timing import SchedulingPolicy, _now


@dataclass
class Services:
    settings: Settings
    session_factory: sessionmaker
    store: FireScheduleStore
    pos_client: POSClient
    retry_engine: RetryEngine
    scheduler: AdvanceOrderScheduler
    conflicts: ConflictDetector
    notifier: DailyPrepAlertNotifier
    router: OrderRouter
    clock: Callable[[], datetime]


def build_services(
    session_factory: sessionmaker,
    settings: Settings,
    clock: Callable[[], datetime] = _now,
    pos_config_provider: Optional[PosConfigProvider] = None,
    email_sink: Optional[EmailSink] = None,
) -> Services:
    policy = SchedulingPolicy.from_settings(settings)
    store = FireScheduleStore(session_factory)
    provider = pos_config_provider or DatabasePosConfigProvider(
        session_factory, fallback=settings_pos_config(settings)
    )
    pos_client = POSClient(provider, clock=clock)
    retry_engine = RetryEngine(store, pos_client, policy, clock)
    scheduler = AdvanceOrderScheduler(
        store,
        pos_client,
        policy=policy,
        clock=clock,
        retry_engine=retry_engine,
        default_timezone=settings.default_timezone,
    )
    conflicts = ConflictDetector(
        store,
        bucket_minutes=settings.conflict_bucket_minutes,
        warning_threshold=settings.conflict_warning_threshold,
        critical_threshold=settings.conflict_critical_threshold,
        default_timezone=settings.default_timezone,
    )
    notifier = DailyPrepAlertNotifier(
        store,
        session_factory,
        email_sink or email_sink_from_settings(settings),
        clock=clock,
        preparation_minutes=settings.preparation_time_minutes,
        default_timezone=settings.default_timezone,
    )
    router = OrderRouter(
        store,
        scheduler,
        pos_client,
        notifier=notifier,
        clock=clock,
        default_timezone=settings.default_timezone,
    )
    return Services(
        settings=settings,
        session_factory=session_factory,
        store=store,
        pos_client=pos_client,
        retry_engine=retry_engine,
        scheduler=scheduler,
        conflicts=conflicts,
        notifier=notifier,
        router=router,
        clock=clock,
    )
