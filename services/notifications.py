# services/notifications.py
from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Optional

import requests

from core.errors import ExternalServiceError
from core.schemas import utcnow_iso
from core.settings import settings

logger = logging.getLogger("storefront.notifications")

EVENT_ORDER_CREATED = "order.created"
EVENT_ORDER_STATUS = "order.status_changed"
EVENT_BACK_IN_STOCK = "product.back_in_stock"
EVENT_LOW_STOCK = "product.low_stock"

# rq retry backoff (seconds)
RETRY_INTERVALS = [10, 60, 300]


def build_message(event: str, store_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(uuid.uuid4()),
        "event": event,
        "store_id": store_id,
        "data": data or {},
        "created_at": utcnow_iso(),
    }


def deliver(message: Dict[str, Any]) -> bool:
    """
    Posts one message to the notification sink (email service / webhook relay).
    Raises ExternalServiceError so the queue can retry; returns False when no
    sink is configured.
    """
    url = settings.NOTIFY_WEBHOOK_URL
    if not url:
        logger.info(f"No NOTIFY_WEBHOOK_URL; dropping {message.get('event')} id={message.get('id')}")
        return False

    try:
        resp = requests.post(
            url,
            json=message,
            timeout=settings.NOTIFY_TIMEOUT_S,
            headers={"X-Storefront-Event": str(message.get("event") or "")},
        )
        resp.raise_for_status()
    except requests.RequestException as e:
        raise ExternalServiceError(f"Notification delivery failed: {type(e).__name__}: {e}", event=message.get("event"))
    return True


def _enqueue(message: Dict[str, Any]) -> None:
    from rq import Retry

    from services.queue import get_queue

    get_queue().enqueue(
        "workers.jobs.send_notification",
        message,
        retry=Retry(max=settings.NOTIFY_MAX_RETRIES, interval=RETRY_INTERVALS),
    )


def dispatch(event: str, store_id: str, data: Dict[str, Any]) -> Optional[str]:
    """
    Fire-and-forget. Queued through rq when REDIS_URL is set (the queue owns
    retries and backoff), otherwise delivered inline with a bounded timeout.
    Never raises: failures are logged and the caller carries on.
    """
    message = build_message(event, store_id, data)
    try:
        if settings.HAS_QUEUE:
            _enqueue(message)
        else:
            deliver(message)
    except Exception:
        logger.warning(f"Notification {event} for store={store_id} failed (not retried inline)", exc_info=True)
        return None
    return message["id"]
