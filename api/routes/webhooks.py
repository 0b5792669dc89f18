# api/routes/webhooks.py
from __future__ import annotations

import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Header, HTTPException, Request

from services.payments import handle_payment_event, parse_payment_event, verify_payment_signature

logger = logging.getLogger("storefront.webhooks")

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/payments")
async def payment_webhook(
    request: Request,
    x_payment_signature: str = Header(default=""),
):
    raw = await request.body()

    # 1) Signature check
    if not verify_payment_signature(raw, x_payment_signature):
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload: Dict[str, Any] = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        raise HTTPException(status_code=400, detail="Invalid JSON")

    # 2) Only payment events that name an order
    event = parse_payment_event(payload)
    if not event:
        raise HTTPException(status_code=400, detail="Unsupported payload")

    logger.info(f"Payment webhook {event.type} store={event.store_id} order={event.order_id}")

    # 3) Lifecycle (idempotent on redelivery)
    return handle_payment_event(event)
