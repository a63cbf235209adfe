"""Interval loop that keeps advance orders moving without a request.

Each tick sweeps every active tenant on a thread pool, sends the morning prep
alert once the configured hour is reached and prunes old audit rows once a
day. A tenant whose previous sweep is still running is skipped for the tick.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import date, datetime, timedelta
from typing import Any, Optional

from advance_orders.config import settings
from advance_orders.db import SessionLocal
from advance_orders.scheduler import SweepReport
from advance_orders.services import Services, build_services
from advance_orders.timing import local_date, tenant_zone

logger = logging.getLogger(__name__)


class BackgroundScheduler:
    def __init__(
        self,
        services: Services,
        interval_seconds: Optional[float] = None,
        max_workers: Optional[int] = None,
    ) -> None:
        config = services.settings
        self._services = services
        self._interval = interval_seconds or config.sweep_interval_seconds
        self._max_workers = max_workers or config.sweep_max_workers
        self._alert_hour = config.daily_alert_hour
        self._zone = tenant_zone(config.default_timezone)

        self._running = False
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._lock = threading.RLock()
        self._tenant_locks: dict[int, threading.Lock] = {}
        self._executor: ThreadPoolExecutor | None = None

        self._last_alert_date: Optional[date] = None
        self._last_cleanup_date: Optional[date] = None
        self._last_tick_at: Optional[datetime] = None
        self._ticks = 0

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        with self._lock:
            if self._running:
                logger.warning("Background scheduler already running")
                return

            self._running = True
            self._stop_event.clear()
            self._executor = ThreadPoolExecutor(
                max_workers=self._max_workers, thread_name_prefix="advance-order-sweep"
            )
            self._thread = threading.Thread(
                target=self._run_loop,
                name="AdvanceOrderScheduler",
                daemon=True,
            )
            self._thread.start()
            logger.info("Background scheduler started", extra={"interval_seconds": self._interval})

    def stop(self, timeout: float = 10.0) -> None:
        with self._lock:
            if not self._running:
                return

            self._running = False
            self._stop_event.set()

            if self._thread and self._thread.is_alive():
                self._thread.join(timeout=timeout)
                if self._thread.is_alive():
                    logger.warning("Background scheduler thread did not stop cleanly")

            self._thread = None
            if self._executor is not None:
                self._executor.shutdown(wait=False)
                self._executor = None
            logger.info("Background scheduler stopped")

    def status(self) -> dict[str, Any]:
        return {
            "is_running": self._running,
            "interval_seconds": self._interval,
            "max_workers": self._max_workers,
            "daily_alert_hour": self._alert_hour,
            "ticks": self._ticks,
            "last_tick_at": self._last_tick_at.isoformat() if self._last_tick_at else None,
            "last_alert_date": self._last_alert_date.isoformat() if self._last_alert_date else None,
            "last_cleanup_date": self._last_cleanup_date.isoformat() if self._last_cleanup_date else None,
        }

    def force_process(self) -> list[SweepReport]:
        """Sweep every active tenant now and wait for the reports."""
        logger.info("Forcing processing of all tenants")
        return self._sweep_all()

    def _run_loop(self) -> None:
        logger.info("Background scheduler loop started")

        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Error in background scheduler loop")

            self._stop_event.wait(timeout=self._interval)

        logger.info("Background scheduler loop stopped")

    def tick(self) -> list[SweepReport]:
        now = self._services.clock()
        self._ticks += 1
        self._last_tick_at = now

        self._maybe_send_daily_alerts(now)
        reports = self._sweep_all()
        self._maybe_cleanup(now)
        return reports

    def _sweep_all(self) -> list[SweepReport]:
        tenants = self._services.store.list_active_tenants()
        executor = self._executor
        if executor is None:
            with ThreadPoolExecutor(max_workers=self._max_workers) as pool:
                futures = [pool.submit(self.sweep_tenant, tenant.id) for tenant in tenants]
        else:
            futures = [executor.submit(self.sweep_tenant, tenant.id) for tenant in tenants]
            wait(futures)

        reports = []
        for future in futures:
            report = future.result()
            if report is not None:
                reports.append(report)
        return reports

    def sweep_tenant(self, tenant_id: int) -> Optional[SweepReport]:
        lock = self._tenant_lock(tenant_id)
        if not lock.acquire(blocking=False):
            logger.info("Sweep already in progress, skipping tenant", extra={"tenant_id": tenant_id})
            return None
        try:
            report = self._services.scheduler.process_ready_orders(tenant_id)
        except Exception:
            logger.exception("Error sweeping tenant", extra={"tenant_id": tenant_id})
            return None
        finally:
            lock.release()
        if report.fired or report.retried or report.errors:
            logger.info("Sweep finished", extra=report.to_dict())
        return report

    def _tenant_lock(self, tenant_id: int) -> threading.Lock:
        with self._lock:
            lock = self._tenant_locks.get(tenant_id)
            if lock is None:
                lock = self._tenant_locks[tenant_id] = threading.Lock()
            return lock

    def _maybe_send_daily_alerts(self, now: datetime) -> None:
        local_now = now.astimezone(self._zone)
        today = local_date(now, self._zone)
        if local_now.hour != self._alert_hour or self._last_alert_date == today:
            return
        self._last_alert_date = today
        try:
            self._services.notifier.send_daily_alerts()
        except Exception:
            logger.exception("Error sending daily alerts")

    def _maybe_cleanup(self, now: datetime) -> None:
        today = local_date(now, self._zone)
        if self._last_cleanup_date == today:
            return
        self._last_cleanup_date = today

        config = self._services.settings
        log_cutoff = now - timedelta(days=config.print_log_retention_days)
        printed_cutoff = now - timedelta(days=config.printed_schedule_retention_days)
        try:
            logs = self._services.store.purge_logs_before(log_cutoff)
            alerts = self._services.notifier.purge_before(log_cutoff.date())
            schedules = self._services.store.purge_printed_before(printed_cutoff)
        except Exception:
            logger.exception("Error cleaning up old records")
            return
        logger.info(
            "Cleaned up old records",
            extra={"print_job_logs": logs, "daily_prep_alerts": alerts, "printed_schedules": schedules},
        )


_background: BackgroundScheduler | None = None
_background_lock = threading.Lock()


def get_background_scheduler() -> BackgroundScheduler:
    global _background
    if _background is None:
        with _background_lock:
            if _background is None:
                _background = BackgroundScheduler(build_services(SessionLocal, settings))
    return _background


def reset_background_scheduler() -> None:
    """Stop and drop the shared runner (for tests)."""
    global _background
    with _background_lock:
        if _background and _background.is_running:
            _background.stop()
        _background = None
