# services/inventory.py
from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Any, Dict, Iterable, List, Optional

from core.errors import InsufficientStock, NotFoundError, UniqueViolation, ValidationError
from core.schemas import InventoryChange, InventoryLog, Product, StockSubscription, dump, utcnow_iso
from core.settings import settings
from services import notifications
from services.document_store import CounterOutOfRange, DocumentStore, Increment
from services.store import get_store

logger = logging.getLogger("storefront.inventory")

PRODUCTS = "products"
LOGS = "inventory_logs"
SUBSCRIPTIONS = "stock_subscriptions"
RESTOCK_CLAIMS = "restock_claims"


# ============================================================
# Products
# ============================================================
def create_product(store_id: str, data: Dict[str, Any], store: Optional[DocumentStore] = None) -> Dict[str, Any]:
    store = store or get_store()
    try:
        product = Product(store_id=store_id, **(data or {}))
    except ValueError as e:
        raise ValidationError("invalid product", str(e))
    doc = store.insert(PRODUCTS, store_id, dump(product))
    logger.info(f"Product created store={store_id} id={doc['id']} qty={doc['quantity']}")
    return doc


def get_product(store_id: str, product_id: str, store: Optional[DocumentStore] = None) -> Dict[str, Any]:
    store = store or get_store()
    return store.get_or_raise(PRODUCTS, store_id, product_id)


def list_products(store_id: str, status: Optional[str] = None, store: Optional[DocumentStore] = None) -> List[Dict[str, Any]]:
    store = store or get_store()
    filters = {"status": status} if status else None
    return store.find(PRODUCTS, store_id, filters=filters, order_by="created_at", desc=True)


def update_product(
    store_id: str,
    product_id: str,
    patch: Dict[str, Any],
    store: Optional[DocumentStore] = None,
) -> Dict[str, Any]:
    """Catalog fields only. Stock moves through adjust_stock so it is logged."""
    store = store or get_store()
    patch = dict(patch or {})
    if "quantity" in patch:
        raise ValidationError("read-only field", "Use the stock adjustment endpoint to change quantity")

    def _apply(doc: Dict[str, Any]) -> Dict[str, Any]:
        merged = dict(doc)
        merged.update(patch)
        try:
            product = Product.model_validate(merged)
        except ValueError as e:
            raise ValidationError("invalid product", str(e))
        return {k: v for k, v in dump(product).items() if k in patch}

    return store.mutate(PRODUCTS, store_id, product_id, _apply)


def delete_product(store_id: str, product_id: str, store: Optional[DocumentStore] = None) -> bool:
    store = store or get_store()
    store.get_or_raise(PRODUCTS, store_id, product_id)
    return store.delete(PRODUCTS, store_id, product_id)


# ============================================================
# Low-stock scans (pure, O(n))
# ============================================================
def threshold(product: Dict[str, Any]) -> int:
    value = product.get("low_stock_threshold")
    return int(value) if value is not None else settings.DEFAULT_LOW_STOCK_THRESHOLD


def is_low_stock(product: Dict[str, Any], include_out_of_stock: bool = True) -> bool:
    if not product.get("track_inventory", True):
        return False
    qty = int(product.get("quantity") or 0)
    if qty > threshold(product):
        return False
    return include_out_of_stock or qty > 0


def low_stock(products: Iterable[Dict[str, Any]], include_out_of_stock: bool = True) -> List[Dict[str, Any]]:
    return [p for p in products if is_low_stock(p, include_out_of_stock)]


def out_of_stock(products: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [p for p in products if p.get("track_inventory", True) and int(p.get("quantity") or 0) == 0]


# ============================================================
# Stock changes
# ============================================================
def _aggregate(items: Iterable[Dict[str, Any]]) -> "OrderedDict[str, int]":
    # the same product may appear on several lines
    lines: "OrderedDict[str, int]" = OrderedDict()
    for item in items or []:
        pid = item.get("product_id")
        lines[pid] = lines.get(pid, 0) + int(item.get("quantity") or 0)
    return lines


def _after_change(
    store: DocumentStore,
    store_id: str,
    product: Dict[str, Any],
    previous: int,
    change_type: InventoryChange,
    order_id: Optional[str] = None,
    reason: Optional[str] = None,
    notify: bool = True,
) -> None:
    new = int(product.get("quantity") or 0)
    log = InventoryLog(
        store_id=store_id,
        product_id=product["id"],
        type=change_type,
        quantity=new - previous,
        previous_quantity=previous,
        new_quantity=new,
        order_id=order_id,
        reason=reason,
    )
    try:
        store.insert(LOGS, store_id, dump(log))
    except Exception:
        logger.warning(f"Inventory log write failed product={product['id']}", exc_info=True)

    if not notify:
        return

    limit = threshold(product)
    if product.get("track_inventory", True) and previous > limit >= new:
        notifications.dispatch(
            notifications.EVENT_LOW_STOCK,
            store_id,
            {"product_id": product["id"], "product_name": product.get("name"), "quantity": new, "threshold": limit},
        )

    if previous <= 0 < new:
        notify_restock(store_id, product, store=store)


def _by_id(docs: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    return {d["id"]: d for d in docs}


def decrement_for_order(store_id: str, order: Dict[str, Any], store: Optional[DocumentStore] = None) -> List[Dict[str, Any]]:
    """
    Takes every tracked line out of stock in one all-or-nothing batch.
    Raises InsufficientStock (with the short product ids) and changes
    nothing if any product would go below zero.
    """
    store = store or get_store()
    lines = _aggregate(order.get("items") or [])

    products: Dict[str, Dict[str, Any]] = {}
    missing: List[str] = []
    for pid in lines:
        doc = store.get(PRODUCTS, store_id, pid)
        if doc is None:
            missing.append(pid)
        else:
            products[pid] = doc
    if missing:
        raise InsufficientStock(missing, "Product no longer exists")

    tracked = OrderedDict((pid, qty) for pid, qty in lines.items() if products[pid].get("track_inventory", True))
    if not tracked:
        return []

    ops = [Increment(PRODUCTS, store_id, pid, "quantity", -qty, minimum=0) for pid, qty in tracked.items()]
    try:
        updated = _by_id(store.apply_increments(ops))
    except CounterOutOfRange as e:
        short = []
        for pid, qty in tracked.items():
            current = store.get(PRODUCTS, store_id, pid) or {}
            if int(current.get("quantity") or 0) < qty:
                short.append(pid)
        logger.info(f"Insufficient stock order={order.get('id')} products={short or [e.doc_id]}")
        raise InsufficientStock(short or [e.doc_id])

    out = []
    for pid, qty in tracked.items():
        doc = updated[pid]
        _after_change(store, store_id, doc, int(doc["quantity"]) + qty, InventoryChange.SALE, order_id=order.get("id"))
        out.append(doc)
    return out


def restock_for_order(
    store_id: str,
    order: Dict[str, Any],
    notify: bool = True,
    reason: str = "order cancelled",
    store: Optional[DocumentStore] = None,
) -> List[Dict[str, Any]]:
    """
    Puts an order's tracked lines back into stock. Runs once per order:
    the order is claimed on the unique index before stock moves, so
    concurrent or repeated restocks of the same order cannot both apply.
    The claim is dropped again if the stock change itself fails.
    """
    store = store or get_store()
    order_id = order.get("id")
    if not order_id:
        return _release(store, store_id, order, InventoryChange.RESTOCK, reason, notify)

    try:
        claim = store.insert_unique(RESTOCK_CLAIMS, store_id, {"order_id": order_id, "reason": reason}, "order_id")
    except UniqueViolation:
        logger.info(f"Restock for order={order_id} already applied")
        return []

    try:
        return _release(store, store_id, order, InventoryChange.RESTOCK, reason, notify)
    except Exception:
        store.delete(RESTOCK_CLAIMS, store_id, claim["id"])
        raise


def release_for_order(store_id: str, order: Dict[str, Any], store: Optional[DocumentStore] = None) -> List[Dict[str, Any]]:
    """
    Undoes a decrement whose order write lost a race. Logged as an
    adjustment so it never counts as the order's restock.
    """
    store = store or get_store()
    return _release(store, store_id, order, InventoryChange.ADJUSTMENT, "payment capture retried", notify=False)


def _release(
    store: DocumentStore,
    store_id: str,
    order: Dict[str, Any],
    change_type: InventoryChange,
    reason: str,
    notify: bool,
) -> List[Dict[str, Any]]:
    lines = _aggregate(order.get("items") or [])
    tracked: "OrderedDict[str, int]" = OrderedDict()
    for pid, qty in lines.items():
        doc = store.get(PRODUCTS, store_id, pid)
        if doc is None:
            logger.warning(f"Restock skipped, product={pid} no longer exists (order={order.get('id')})")
            continue
        if doc.get("track_inventory", True):
            tracked[pid] = qty
    if not tracked:
        return []

    ops = [Increment(PRODUCTS, store_id, pid, "quantity", qty) for pid, qty in tracked.items()]
    updated = _by_id(store.apply_increments(ops))

    out = []
    for pid, qty in tracked.items():
        doc = updated[pid]
        _after_change(
            store, store_id, doc, int(doc["quantity"]) - qty, change_type,
            order_id=order.get("id"), reason=reason, notify=notify,
        )
        out.append(doc)
    return out


def adjust_stock(
    store_id: str,
    product_id: str,
    delta: Optional[int] = None,
    set_to: Optional[int] = None,
    reason: Optional[str] = None,
    store: Optional[DocumentStore] = None,
) -> Dict[str, Any]:
    """Admin adjustment by a signed delta or to an absolute level. Never below zero."""
    store = store or get_store()
    if (delta is None) == (set_to is None):
        raise ValidationError("invalid adjustment", "Provide exactly one of delta or set_to")

    if set_to is not None:
        if int(set_to) < 0:
            raise ValidationError("invalid adjustment", "Stock cannot be set below zero")
        seen = {"previous": 0}

        def _apply(doc: Dict[str, Any]) -> Optional[Dict[str, Any]]:
            seen["previous"] = int(doc.get("quantity") or 0)
            if seen["previous"] == int(set_to):
                return None
            return {"quantity": int(set_to)}

        doc = store.mutate(PRODUCTS, store_id, product_id, _apply)
        previous = seen["previous"]
    else:
        if int(delta) == 0:
            return get_product(store_id, product_id, store=store)
        try:
            doc = store.increment(PRODUCTS, store_id, product_id, "quantity", int(delta), minimum=0)
        except CounterOutOfRange:
            raise InsufficientStock([product_id], "Adjustment would take stock below zero")
        previous = int(doc["quantity"]) - int(delta)

    if previous != int(doc["quantity"]):
        _after_change(store, store_id, doc, previous, InventoryChange.ADJUSTMENT, reason=reason)
        logger.info(f"Stock adjusted store={store_id} product={product_id} {previous}->{doc['quantity']}")
    return doc


def list_inventory_logs(
    store_id: str,
    product_id: Optional[str] = None,
    order_id: Optional[str] = None,
    limit: Optional[int] = None,
    store: Optional[DocumentStore] = None,
) -> List[Dict[str, Any]]:
    store = store or get_store()
    filters: Dict[str, Any] = {}
    if product_id:
        filters["product_id"] = product_id
    if order_id:
        filters["order_id"] = order_id
    return store.find(LOGS, store_id, filters=filters or None, order_by="created_at", desc=True, limit=limit)


# ============================================================
# Back-in-stock subscriptions
# ============================================================
def subscribe(store_id: str, product_id: str, email: str, store: Optional[DocumentStore] = None) -> Dict[str, Any]:
    store = store or get_store()
    product = get_product(store_id, product_id, store=store)
    try:
        sub = StockSubscription(
            store_id=store_id,
            product_id=product_id,
            product_name=product.get("name") or "",
            email=(email or "").strip().lower(),
        )
    except ValueError as e:
        raise ValidationError("invalid subscription", str(e))
    if "@" not in sub.email:
        raise ValidationError("invalid email", f"Invalid email: {email!r}")

    existing = store.find_one(SUBSCRIPTIONS, store_id, {"product_id": product_id, "email": sub.email, "notified": False})
    if existing:
        return existing
    return store.insert(SUBSCRIPTIONS, store_id, dump(sub))


def unsubscribe(store_id: str, subscription_id: str, store: Optional[DocumentStore] = None) -> bool:
    store = store or get_store()
    if not store.delete(SUBSCRIPTIONS, store_id, subscription_id):
        raise NotFoundError("subscription not found", id=subscription_id)
    return True


def list_subscriptions(
    store_id: str,
    product_id: Optional[str] = None,
    pending_only: bool = False,
    store: Optional[DocumentStore] = None,
) -> List[Dict[str, Any]]:
    store = store or get_store()
    filters: Dict[str, Any] = {}
    if product_id:
        filters["product_id"] = product_id
    if pending_only:
        filters["notified"] = False
    return store.find(SUBSCRIPTIONS, store_id, filters=filters or None, order_by="created_at")


def notify_restock(store_id: str, product: Dict[str, Any], store: Optional[DocumentStore] = None) -> int:
    """
    Notifies every waiting subscriber of a product that is back in stock.
    Each subscription is claimed with a version-checked write first, so a
    subscriber is notified once even if two restocks race.
    """
    store = store or get_store()
    sent = 0
    for sub in list_subscriptions(store_id, product_id=product["id"], pending_only=True, store=store):
        claimed = {"ok": False}

        def _claim(doc: Dict[str, Any]) -> Optional[Dict[str, Any]]:
            if doc.get("notified"):
                claimed["ok"] = False
                return None
            claimed["ok"] = True
            return {"notified": True, "notified_at": utcnow_iso()}

        try:
            store.mutate(SUBSCRIPTIONS, store_id, sub["id"], _claim)
        except NotFoundError:
            continue
        if not claimed["ok"]:
            continue
        notifications.dispatch(
            notifications.EVENT_BACK_IN_STOCK,
            store_id,
            {
                "email": sub["email"],
                "product_id": product["id"],
                "product_name": product.get("name") or sub.get("product_name"),
                "quantity": product.get("quantity"),
            },
        )
        sent += 1
    if sent:
        logger.info(f"Back-in-stock notifications store={store_id} product={product['id']} sent={sent}")
    return sent
