"""
Webhook Service for customer message tracking.
Sends one batched status_update notification for the shipments whose status
changed during a sync pass.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

import httpx
from sqlalchemy import func, tuple_
from sqlalchemy.orm import Session

from shiptrack.config import settings
from shiptrack.models import Shipment, CustomerInfo, OrderLine, CustomerMessage
from shiptrack.services.http_client import backoff_delay, post_once
from shiptrack.services.tracking_persistence import ShipmentKey
from shiptrack.services.utility_settings import get_utility_int, get_utility_value

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusChange:
    key: ShipmentKey
    new_status: Optional[str]
    old_status: Optional[str]


def _pairs(changes: list[StatusChange]) -> list[tuple[str, str]]:
    return list(dict.fromkeys((c.key.order_id, c.key.account_code) for c in changes))


def _fetch_labels(db: Session, pairs: list[tuple[str, str]]) -> dict[tuple[str, str], Shipment]:
    rows = db.query(Shipment).filter(tuple_(Shipment.order_id, Shipment.account_code).in_(pairs)).all()
    return {(r.order_id, r.account_code): r for r in rows}


def _fetch_customers(db: Session, pairs: list[tuple[str, str]]) -> dict[tuple[str, str], CustomerInfo]:
    rows = db.query(CustomerInfo).filter(tuple_(CustomerInfo.order_id, CustomerInfo.account_code).in_(pairs)).all()
    return {(r.order_id, r.account_code): r for r in rows}


def _fetch_order_stats(db: Session, pairs: list[tuple[str, str]]) -> dict[tuple[str, str], tuple[int, int]]:
    rows = (
        db.query(
            OrderLine.order_id,
            OrderLine.account_code,
            func.count(func.distinct(OrderLine.product_code)),
            func.coalesce(func.sum(OrderLine.quantity), 0),
        )
        .filter(tuple_(OrderLine.order_id, OrderLine.account_code).in_(pairs))
        .group_by(OrderLine.order_id, OrderLine.account_code)
        .all()
    )
    return {(order_id, account_code): (int(products), int(quantity)) for order_id, account_code, products, quantity in rows}


def _fetch_latest_message_status(db: Session, pairs: list[tuple[str, str]]) -> dict[tuple[str, str], Optional[str]]:
    rows = (
        db.query(CustomerMessage)
        .filter(tuple_(CustomerMessage.order_id, CustomerMessage.account_code).in_(pairs))
        .order_by(CustomerMessage.created_at.asc())
        .all()
    )
    latest: dict[tuple[str, str], Optional[str]] = {}
    for row in rows:
        latest[(row.order_id, row.account_code)] = row.message_status
    return latest


def build_status_payload(db: Session, changes: list[StatusChange]) -> dict:
    """Four bulk lookups joined by (order_id, account_code); orders sorted for a stable body."""
    ordered = sorted(changes, key=lambda c: (c.key.account_code, c.key.order_id))
    pairs = _pairs(ordered)
    labels = _fetch_labels(db, pairs)
    customers = _fetch_customers(db, pairs)
    stats = _fetch_order_stats(db, pairs)
    messages = _fetch_latest_message_status(db, pairs)

    orders = []
    for change in ordered:
        pair = (change.key.order_id, change.key.account_code)
        label = labels.get(pair)
        customer = customers.get(pair)
        products, quantity = stats.get(pair, (0, 0))
        orders.append(
            {
                "order_id": change.key.order_id,
                "account_code": change.key.account_code,
                "carrier_id": label.carrier_id if label else None,
                "awb": label.awb if label else None,
                "current_shipment_status": change.new_status,
                "previous_status": change.old_status or None,
                "shipping_phone": customer.shipping_phone if customer else None,
                "shipping_firstname": customer.shipping_firstname if customer else None,
                "shipping_lastname": customer.shipping_lastname if customer else None,
                "number_of_product": products,
                "number_of_quantity": quantity,
                "latest_message_status": messages.get(pair),
            }
        )
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event": "status_update",
        "orders": orders,
    }


class WebhookDispatcher:
    """
    PREPARING → SENDING(k) → DELIVERED | RETRYING → SENDING(k+1) | EXHAUSTED.
    Never raises: every outcome is reported in the returned dict.
    """

    def __init__(
        self,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        timeout: Optional[float] = None,
    ):
        self.transport = transport
        self._sleep = sleep
        self.timeout = timeout or settings.WEBHOOK_TIMEOUT

    def _headers(self) -> dict:
        return {"Content-Type": "application/json", "User-Agent": settings.WEBHOOK_USER_AGENT}

    async def send_status_update(self, db: Session, changes: list[StatusChange]) -> dict:
        if not changes:
            logger.info("[WEBHOOK] No updated orders to send")
            return {"success": True, "message": "No orders to send", "sent": 0, "attempts": 0}

        try:
            webhook_url = get_utility_value(db, settings.WEBHOOK_URL_KEY)
            if not webhook_url:
                logger.warning("[WEBHOOK] %s not configured, skipping webhook", settings.WEBHOOK_URL_KEY)
                return {"success": False, "message": "Webhook URL not configured", "sent": 0, "attempts": 0}
            max_attempts = max(1, get_utility_int(db, settings.WEBHOOK_RETRY_KEY, settings.WEBHOOK_DEFAULT_RETRIES))
            payload = build_status_payload(db, changes)
        except Exception as e:
            logger.exception("[WEBHOOK] Failed to prepare webhook data: %s", e)
            return {"success": False, "message": f"Webhook preparation failed: {e}", "sent": 0, "attempts": 0, "error": str(e)}

        return await self._deliver(webhook_url, payload, max_attempts)

    async def _deliver(self, url: str, payload: dict, max_attempts: int) -> dict:
        sent = len(payload["orders"])
        logger.info("[WEBHOOK] Sending %s orders to %s", sent, url)
        last_error: Optional[str] = None
        for attempt in range(1, max_attempts + 1):
            try:
                resp = await post_once(
                    url, json=payload, headers=self._headers(), timeout=self.timeout, transport=self.transport
                )
                if resp.is_success:
                    logger.info("[WEBHOOK] Delivered on attempt %s/%s (status %s)", attempt, max_attempts, resp.status_code)
                    return {
                        "success": True,
                        "message": f"Webhook sent successfully on attempt {attempt}",
                        "sent": sent,
                        "response_status": resp.status_code,
                        "attempts": attempt,
                    }
                last_error = f"HTTP {resp.status_code}"
            except httpx.HTTPError as e:
                last_error = str(e) or e.__class__.__name__
            logger.warning("[WEBHOOK] Attempt %s/%s failed: %s", attempt, max_attempts, last_error)
            if attempt < max_attempts:
                delay = backoff_delay(attempt)
                logger.info("[WEBHOOK] Waiting %ss before retry", delay)
                await self._sleep(delay)

        logger.error("[WEBHOOK] All %s attempts failed. Giving up.", max_attempts)
        return {
            "success": False,
            "message": f"Webhook failed after {max_attempts} attempts: {last_error}",
            "sent": 0,
            "error": last_error,
            "attempts": max_attempts,
        }
