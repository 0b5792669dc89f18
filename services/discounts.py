# services/discounts.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.discount_engine import (
    CartContext,
    DiscountValidation,
    calculate_amount,
    generate_code,
    normalize_code,
    validate_discount,
)
from core.errors import UniqueViolation, ValidationError
from core.schemas import Discount, dump
from services.document_store import DocumentStore
from services.store import get_store

logger = logging.getLogger("storefront.discounts")

COLLECTION = "discounts"

# fields that only move through increment_usage
_COUNTER_FIELDS = {"used_count", "redeemed_order_ids"}
_GENERATE_ATTEMPTS = 5

__all__ = [
    "calculate_amount",
    "create_discount",
    "delete_discount",
    "get_discount",
    "get_discount_by_code",
    "increment_usage",
    "list_discounts",
    "update_discount",
    "validate_code",
]


def _load(doc: Optional[Dict[str, Any]]) -> Optional[Discount]:
    return Discount.model_validate(doc) if doc else None


def create_discount(store_id: str, data: Dict[str, Any], store: Optional[DocumentStore] = None) -> Dict[str, Any]:
    """
    Creates a discount. Code uniqueness per store is an insert-if-absent on
    the store's unique index, so two concurrent creations of the same code
    cannot both succeed. Without a code, an 8-char one is generated.
    """
    store = store or get_store()
    payload = {k: v for k, v in (data or {}).items() if k not in _COUNTER_FIELDS}
    auto = not normalize_code(payload.get("code"))

    attempts = _GENERATE_ATTEMPTS if auto else 1
    for attempt in range(attempts):
        if auto:
            payload["code"] = generate_code()
        try:
            discount = Discount(store_id=store_id, **payload)
        except ValueError as e:
            raise ValidationError("invalid discount", str(e))
        try:
            doc = store.insert_unique(COLLECTION, store_id, dump(discount), "code")
        except UniqueViolation:
            if not auto:
                raise ValidationError("code already exists", f"Discount code {discount.code} already exists", code=discount.code)
            logger.info(f"Generated code collision, retrying ({attempt + 1}/{attempts})")
            continue
        logger.info(f"Discount created store={store_id} code={doc['code']} type={doc['type']}")
        return doc

    raise ValidationError("code generation failed", "Could not generate a unique discount code")


def get_discount(store_id: str, discount_id: str, store: Optional[DocumentStore] = None) -> Dict[str, Any]:
    store = store or get_store()
    return store.get_or_raise(COLLECTION, store_id, discount_id)


def get_discount_by_code(store_id: str, code: str, store: Optional[DocumentStore] = None) -> Optional[Dict[str, Any]]:
    """Case-insensitive exact match."""
    code = normalize_code(code)
    if not code:
        return None
    store = store or get_store()
    return store.find_one(COLLECTION, store_id, {"code": code})


def list_discounts(store_id: str, active: Optional[bool] = None, store: Optional[DocumentStore] = None) -> List[Dict[str, Any]]:
    store = store or get_store()
    filters = {"is_active": active} if active is not None else None
    return store.find(COLLECTION, store_id, filters=filters, order_by="created_at", desc=True)


def update_discount(
    store_id: str,
    discount_id: str,
    patch: Dict[str, Any],
    store: Optional[DocumentStore] = None,
) -> Dict[str, Any]:
    store = store or get_store()
    patch = dict(patch or {})

    blocked = _COUNTER_FIELDS.intersection(patch)
    if blocked:
        raise ValidationError("read-only field", f"{', '.join(sorted(blocked))} cannot be edited directly")
    if "code" in patch:
        raise ValidationError("read-only field", "Discount codes cannot be renamed; create a new discount")

    def _apply(doc: Dict[str, Any]) -> Dict[str, Any]:
        merged = dict(doc)
        merged.update(patch)
        try:
            discount = Discount.model_validate(merged)
        except ValueError as e:
            raise ValidationError("invalid discount", str(e))
        return dump(discount)

    return store.mutate(COLLECTION, store_id, discount_id, _apply)


def delete_discount(store_id: str, discount_id: str, store: Optional[DocumentStore] = None) -> bool:
    store = store or get_store()
    store.get_or_raise(COLLECTION, store_id, discount_id)
    return store.delete(COLLECTION, store_id, discount_id)


def validate_code(
    store_id: str,
    code: str,
    cart_subtotal: float,
    now: Optional[datetime] = None,
    cart: Optional[CartContext] = None,
    store: Optional[DocumentStore] = None,
) -> DiscountValidation:
    discount = _load(get_discount_by_code(store_id, code, store=store))
    return validate_discount(discount, cart_subtotal, now=now, cart=cart)


def increment_usage(
    store_id: str,
    discount_id: str,
    order_id: str,
    store: Optional[DocumentStore] = None,
) -> bool:
    """
    Counts one redemption for order_id, atomically with the version check.
    Idempotent per order. Refuses (returns False) once max_uses is reached,
    so used_count never exceeds max_uses.
    """
    store = store or get_store()
    outcome = {"counted": False}

    def _apply(doc: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        redeemed = list(doc.get("redeemed_order_ids") or [])
        if order_id in redeemed:
            outcome["counted"] = True
            return None
        used = int(doc.get("used_count") or 0)
        max_uses = doc.get("max_uses")
        if max_uses is not None and used >= int(max_uses):
            outcome["counted"] = False
            return None
        outcome["counted"] = True
        return {"used_count": used + 1, "redeemed_order_ids": redeemed + [order_id]}

    doc = store.mutate(COLLECTION, store_id, discount_id, _apply)
    if not outcome["counted"]:
        logger.warning(
            f"Discount usage refused (limit reached) store={store_id} code={doc.get('code')} order={order_id}"
        )
    return outcome["counted"]
