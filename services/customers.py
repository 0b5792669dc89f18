# services/customers.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from core.errors import UniqueViolation, ValidationError
from core.schemas import Customer, dump, round_money, utcnow_iso
from services.document_store import DocumentStore
from services.store import get_store

logger = logging.getLogger("storefront.customers")

COLLECTION = "customers"
TAG_NEW = "new"


def _norm_email(email: str) -> str:
    return (email or "").strip().lower()


def get_customer(store_id: str, customer_id: str, store: Optional[DocumentStore] = None) -> Dict[str, Any]:
    store = store or get_store()
    return store.get_or_raise(COLLECTION, store_id, customer_id)


def get_customer_by_email(store_id: str, email: str, store: Optional[DocumentStore] = None) -> Optional[Dict[str, Any]]:
    email = _norm_email(email)
    if not email:
        return None
    store = store or get_store()
    return store.find_one(COLLECTION, store_id, {"email": email})


def find_or_create_customer(
    store_id: str,
    email: str,
    first_name: str = "",
    last_name: str = "",
    address: Optional[Dict[str, Any]] = None,
    store: Optional[DocumentStore] = None,
) -> Dict[str, Any]:
    """
    Looks the customer up by email (one record per email per store) and
    creates it on first checkout. A new shipping address is appended.
    """
    store = store or get_store()
    try:
        candidate = Customer(store_id=store_id, email=email, first_name=first_name or "", last_name=last_name or "")
    except ValueError as e:
        raise ValidationError("invalid customer", str(e))

    existing = store.find_one(COLLECTION, store_id, {"email": candidate.email})
    if existing is None:
        candidate.tags = [TAG_NEW]
        if address:
            candidate.addresses = [address]
        try:
            doc = store.insert_unique(COLLECTION, store_id, dump(candidate), "email")
            logger.info(f"Customer created store={store_id} id={doc['id']}")
            return doc
        except UniqueViolation:
            # lost the race with a concurrent checkout
            existing = store.find_one(COLLECTION, store_id, {"email": candidate.email})
            if existing is None:
                raise

    def _apply(doc: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        patch: Dict[str, Any] = {}
        if address and address not in (doc.get("addresses") or []):
            patch["addresses"] = list(doc.get("addresses") or []) + [address]
        if first_name and not doc.get("first_name"):
            patch["first_name"] = first_name
        if last_name and not doc.get("last_name"):
            patch["last_name"] = last_name
        return patch or None

    return store.mutate(COLLECTION, store_id, existing["id"], _apply)


def list_customers(
    store_id: str,
    search: Optional[str] = None,
    tag: Optional[str] = None,
    store: Optional[DocumentStore] = None,
) -> List[Dict[str, Any]]:
    store = store or get_store()
    rows = store.find(COLLECTION, store_id, order_by="created_at", desc=True)
    q = (search or "").strip().lower()
    out = []
    for c in rows:
        if tag and tag not in (c.get("tags") or []):
            continue
        if q:
            hay = " ".join([c.get("email") or "", c.get("first_name") or "", c.get("last_name") or ""]).lower()
            if q not in hay:
                continue
        out.append(c)
    return out


def is_first_purchase(customer: Optional[Dict[str, Any]]) -> bool:
    return customer is None or int(customer.get("total_orders") or 0) == 0


def credit_order(
    store_id: str,
    customer_id: str,
    order_id: str,
    amount: float,
    store: Optional[DocumentStore] = None,
) -> Dict[str, Any]:
    """
    +1 order and +amount spent for a paid order. Idempotent per order_id.
    """
    store = store or get_store()

    def _apply(doc: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        order_ids = list(doc.get("order_ids") or [])
        if order_id in order_ids:
            return None
        return {
            "total_orders": int(doc.get("total_orders") or 0) + 1,
            "total_spent": round_money(float(doc.get("total_spent") or 0) + float(amount or 0)),
            "last_order_at": utcnow_iso(),
            "order_ids": order_ids + [order_id],
        }

    return store.mutate(COLLECTION, store_id, customer_id, _apply)


def reverse_spent(
    store_id: str,
    customer_id: str,
    order_id: str,
    amount: float,
    store: Optional[DocumentStore] = None,
) -> Dict[str, Any]:
    """
    Takes a refunded/cancelled order's total back out of total_spent.
    total_orders is left alone. No-op for orders that were never credited
    or were already reversed.
    """
    store = store or get_store()

    def _apply(doc: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        refunded = list(doc.get("refunded_order_ids") or [])
        if order_id in refunded or order_id not in (doc.get("order_ids") or []):
            return None
        return {
            "total_spent": round_money(float(doc.get("total_spent") or 0) - float(amount or 0)),
            "refunded_order_ids": refunded + [order_id],
        }

    return store.mutate(COLLECTION, store_id, customer_id, _apply)


def update_tags(store_id: str, customer_id: str, tags: List[str], store: Optional[DocumentStore] = None) -> Dict[str, Any]:
    store = store or get_store()
    clean: List[str] = []
    for t in tags or []:
        t = (t or "").strip()
        if t and t not in clean:
            clean.append(t)
    return store.mutate(COLLECTION, store_id, customer_id, lambda _doc: {"tags": clean})
