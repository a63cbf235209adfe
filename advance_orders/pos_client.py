"""HTTP client for the kitchen POS / print bridge.

The POS exposes three endpoints under the tenant's configured base URL:
``POST /api/print-order``, ``GET /api/print-status/{jobId}`` and
``GET /api/health``. Every call is bounded by the tenant's timeout and every
failure is reported as a value; nothing in here raises to the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional, Protocol

import httpx
from sqlalchemy.orm import sessionmaker

from advance_orders.config import Settings
from advance_orders.errors import POSError, POSTransportError, POSUnavailableError
from advance_orders.models import Order, PosIntegration

logger = logging.getLogger(__name__)

PRINT_STATUSES = ("pending", "printing", "completed", "failed")


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PosConfig:
    endpoint_url: Optional[str]
    api_key: Optional[str] = None
    timeout: float = 30.0
    enabled: bool = False

    @property
    def base_url(self) -> str:
        return (self.endpoint_url or "").rstrip("/")

    def headers(self) -> dict:
        if self.api_key:
            return {"Authorization": f"Bearer {self.api_key}"}
        return {}


class PosConfigProvider(Protocol):
    def get_pos_config(self, tenant_id: int) -> Optional[PosConfig]:
        ...


def settings_pos_config(settings: Settings) -> Optional[PosConfig]:
    if not settings.pos_api_endpoint:
        return None
    return PosConfig(
        endpoint_url=settings.pos_api_endpoint,
        api_key=settings.pos_api_key,
        timeout=settings.pos_timeout_seconds,
        enabled=settings.pos_integration_enabled,
    )


class StaticPosConfigProvider:
    def __init__(self, configs: Optional[dict[int, PosConfig]] = None, default: Optional[PosConfig] = None) -> None:
        self._configs = dict(configs or {})
        self._default = default

    def set(self, tenant_id: int, config: PosConfig) -> None:
        self._configs[tenant_id] = config

    def get_pos_config(self, tenant_id: int) -> Optional[PosConfig]:
        return self._configs.get(tenant_id, self._default)


class DatabasePosConfigProvider:
    """Reads ``pos_integrations`` per call; falls back to the global settings."""

    def __init__(self, session_factory: sessionmaker, fallback: Optional[PosConfig] = None) -> None:
        self._session_factory = session_factory
        self._fallback = fallback

    def get_pos_config(self, tenant_id: int) -> Optional[PosConfig]:
        with self._session_factory() as session:
            row = session.get(PosIntegration, tenant_id)
        if row is None:
            return self._fallback
        return PosConfig(
            endpoint_url=row.endpoint_url,
            api_key=row.api_key,
            timeout=row.timeout_seconds,
            enabled=row.enabled,
        )


@dataclass
class PrintResult:
    success: bool
    message: str
    order_id: str
    print_job_id: Optional[str] = None
    retryable: bool = True
    timestamp: datetime = field(default_factory=_now)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "message": self.message,
            "order_id": self.order_id,
            "print_job_id": self.print_job_id,
            "retryable": self.retryable,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class PrintStatus:
    order_id: str
    print_job_id: str
    status: str
    message: Optional[str] = None
    timestamp: datetime = field(default_factory=_now)


def _money(value: Decimal | float | None) -> Optional[float]:
    return float(value) if value is not None else None


def _flatten_addons(groups: Optional[list]) -> list[dict]:
    addons = []
    for group in groups or []:
        for option in group.get("options") or []:
            addons.append(
                {
                    "groupName": group.get("group_name"),
                    "optionId": option.get("option_id"),
                    "quantity": option.get("quantity", 1),
                    "price": _money(option.get("price")),
                    "customNote": option.get("custom_note"),
                }
            )
    return addons


def format_order_for_pos(order: Order, timestamp: Optional[datetime] = None) -> dict:
    scheduled = order.scheduled_time.isoformat() if order.scheduled_time else None
    return {
        "orderId": order.id,
        "orderNumber": order.order_number,
        "customerName": order.customer_name,
        "customerPhone": order.customer_phone,
        "customerEmail": order.customer_email,
        "address": order.address,
        "orderType": order.order_type,
        "isAdvanceOrder": bool(order.is_advance_order),
        "scheduledTime": scheduled,
        "status": order.status,
        "paymentMethod": order.payment_method,
        "specialInstructions": order.special_instructions,
        "items": [
            {
                "id": item.menu_item_id or str(item.id),
                "name": item.name,
                "quantity": item.quantity,
                "price": _money(item.price),
                "basePrice": _money(item.base_price),
                "addonPrice": _money(item.addon_price),
                "finalPrice": _money(item.final_price),
                "specialInstructions": item.special_instructions,
                "addons": _flatten_addons(item.addons),
            }
            for item in order.items
        ],
        "totals": {
            "subtotal": _money(order.subtotal),
            "deliveryFee": _money(order.delivery_fee),
            "discount": _money(order.discount),
            "total": _money(order.total),
        },
        "voucherCode": order.voucher_code,
        "timestamp": (timestamp or _now()).isoformat(),
    }


class POSClient:
    def __init__(self, config_provider: PosConfigProvider, clock: Callable[[], datetime] = _now) -> None:
        self._config_provider = config_provider
        self._clock = clock

    def send_order_to_pos(self, tenant_id: int, order: Order) -> PrintResult:
        logger.info(
            "Sending order %s to POS", order.order_number,
            extra={"tenant_id": tenant_id, "order_id": order.id},
        )
        try:
            config = self._config_for(tenant_id)
            body = self._post_order(config, format_order_for_pos(order, self._clock()))
        except POSError as exc:
            level = logging.WARNING if exc.retryable else logging.INFO
            logger.log(
                level, "POS delivery failed: %s", exc,
                extra={"tenant_id": tenant_id, "order_id": order.id},
            )
            return PrintResult(
                success=False,
                message=str(exc),
                order_id=order.id,
                retryable=exc.retryable,
                timestamp=self._clock(),
            )

        job_id = body.get("printJobId") or body.get("jobId")
        logger.info(
            "Order sent to POS successfully",
            extra={"tenant_id": tenant_id, "order_id": order.id, "print_job_id": job_id},
        )
        return PrintResult(
            success=True,
            message="Order sent to POS successfully",
            order_id=order.id,
            print_job_id=str(job_id) if job_id is not None else None,
            timestamp=self._clock(),
        )

    def retry_print_job(self, tenant_id: int, order: Order) -> PrintResult:
        logger.info(
            "Retrying print job for order %s", order.order_number,
            extra={"tenant_id": tenant_id, "order_id": order.id},
        )
        return self.send_order_to_pos(tenant_id, order)

    def check_print_status(self, tenant_id: int, order_id: str, print_job_id: str) -> Optional[PrintStatus]:
        try:
            config = self._config_for(tenant_id)
        except POSUnavailableError:
            return None
        try:
            resp = httpx.get(
                f"{config.base_url}/api/print-status/{print_job_id}",
                headers=config.headers(),
                timeout=config.timeout,
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "Error checking print status: %s", exc,
                extra={"tenant_id": tenant_id, "order_id": order_id},
            )
            return None
        if not 200 <= resp.status_code < 300:
            logger.warning(
                "POS status API error: %s", resp.status_code,
                extra={"tenant_id": tenant_id, "order_id": order_id},
            )
            return None
        try:
            body = resp.json()
        except ValueError:
            return None
        status = body.get("status")
        if status not in PRINT_STATUSES:
            logger.warning(
                "Unknown print status %r", status,
                extra={"tenant_id": tenant_id, "order_id": order_id},
            )
            return None
        return PrintStatus(
            order_id=order_id,
            print_job_id=print_job_id,
            status=status,
            message=body.get("message"),
            timestamp=self._clock(),
        )

    def test_connection(self, config: PosConfig) -> tuple[bool, str]:
        if not config.endpoint_url:
            return False, "POS endpoint URL is not set"
        try:
            resp = httpx.get(
                f"{config.base_url}/api/health",
                headers=config.headers(),
                timeout=config.timeout,
            )
        except httpx.HTTPError as exc:
            return False, str(exc) or exc.__class__.__name__
        if not 200 <= resp.status_code < 300:
            return False, f"POS system responded with status {resp.status_code}"
        return True, "Successfully connected to POS system"

    def _config_for(self, tenant_id: int) -> PosConfig:
        config = self._config_provider.get_pos_config(tenant_id)
        if config is None or not config.enabled or not config.endpoint_url:
            raise POSUnavailableError("POS integration not configured")
        return config

    def _post_order(self, config: PosConfig, payload: dict) -> dict:
        try:
            resp = httpx.post(
                f"{config.base_url}/api/print-order",
                json=payload,
                headers={"Content-Type": "application/json", **config.headers()},
                timeout=config.timeout,
            )
        except httpx.TimeoutException as exc:
            raise POSTransportError(f"POS request timed out after {config.timeout}s") from exc
        except httpx.HTTPError as exc:
            raise POSTransportError(f"POS request failed: {exc}") from exc
        if not 200 <= resp.status_code < 300:
            raise POSTransportError(
                f"POS API Error: {resp.status_code} {getattr(resp, 'reason_phrase', '')}".strip(),
                status_code=resp.status_code,
            )
        try:
            body = resp.json()
        except ValueError as exc:
            raise POSTransportError("POS returned an invalid JSON body") from exc
        return body if isinstance(body, dict) else {}
