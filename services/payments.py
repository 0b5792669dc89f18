# services/payments.py
from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from core.errors import ValidationError
from core.settings import settings
from services import orders

logger = logging.getLogger("storefront.payments")

EVENT_SUCCEEDED = "payment.succeeded"
EVENT_FAILED = "payment.failed"


@dataclass
class PaymentEvent:
    type: str
    store_id: str
    order_id: str
    reason: Optional[str] = None


# ============================================================
# Webhook verification
# ============================================================
def sign_payload(raw_body: bytes, secret: str) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_payment_signature(raw_body: bytes, signature_header: str, secret: Optional[str] = None) -> bool:
    secret = settings.PAYMENT_WEBHOOK_SECRET if secret is None else secret
    if not secret:
        if settings.IS_PROD:
            logger.error("PAYMENT_WEBHOOK_SECRET missing in production; rejecting payment webhook")
            return False
        logger.warning("PAYMENT_WEBHOOK_SECRET missing; signature verification skipped (NOT recommended for prod)")
        return True

    if not signature_header or not signature_header.startswith("sha256="):
        return False

    return hmac.compare_digest(sign_payload(raw_body, secret), signature_header)


# ============================================================
# Parse payload
# ============================================================
def parse_payment_event(payload: Dict[str, Any]) -> Optional[PaymentEvent]:
    """
    Accepts {"type", "data": {"store_id", "order_id", "reason"}} and the
    provider style where ids sit in data.object.metadata.
    """
    etype = (payload.get("type") or "").strip().lower()
    data = payload.get("data") or {}
    meta = (data.get("object") or {}).get("metadata") or {}

    store_id = data.get("store_id") or meta.get("store_id")
    order_id = data.get("order_id") or meta.get("order_id")
    if not etype or not store_id or not order_id:
        return None

    reason = data.get("reason") or (data.get("object") or {}).get("failure_message")
    return PaymentEvent(type=etype, store_id=str(store_id), order_id=str(order_id), reason=reason)


def handle_payment_event(event: PaymentEvent) -> Dict[str, Any]:
    """
    Routes a verified event into the order lifecycle. Redeliveries are
    harmless: both callbacks are idempotent.
    """
    if event.type == EVENT_SUCCEEDED:
        try:
            order = orders.on_payment_succeeded(event.store_id, event.order_id, reason="payment webhook")
        except ValidationError as e:
            # payment for a cancelled/refunded order; needs a manual refund
            logger.warning(f"Payment for closed order={event.order_id} ignored: {e.message}")
            return {"ok": True, "ignored": True, "reason": e.reason}
        return {"ok": True, "order_id": order["id"], "status": order["status"]}

    if event.type == EVENT_FAILED:
        order = orders.on_payment_failed(event.store_id, event.order_id, reason=event.reason)
        return {"ok": True, "order_id": order["id"], "status": order["status"], "payment_status": order["payment_status"]}

    return {"ok": True, "ignored": True, "event": event.type}


__all__ = [
    "EVENT_FAILED",
    "EVENT_SUCCEEDED",
    "PaymentEvent",
    "handle_payment_event",
    "parse_payment_event",
    "sign_payload",
    "verify_payment_signature",
]
