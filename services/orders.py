# services/orders.py
"""
Order lifecycle: checkout, status transitions, payment callbacks and the
reconciliation of side effects.

Every status change is one version-checked write of the order document.
Side effects owed by the change are recorded in `pending_effects` by that
same write and removed one by one as they complete; whatever fails stays
there for reconcile_order(). Each effect is idempotent per order, so
re-running one is safe.

Stock is the exception: it is taken before the `paid` write, so that an
InsufficientStock aborts capture with the order still pending.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from core import order_state
from core.discount_engine import CartContext, CartLine
from core.errors import (
    CommerceError,
    ConcurrencyConflict,
    InsufficientStock,
    NotFoundError,
    ValidationError,
)
from core.order_state import (
    EFFECT_CUSTOMER_CREDIT,
    EFFECT_CUSTOMER_SPENT_REVERSAL,
    EFFECT_DISCOUNT_USAGE,
    EFFECT_INVENTORY_DECREMENT,
    EFFECT_INVENTORY_RESTOCK,
    EFFECT_NOTIFY,
)
from core.schemas import Order, OrderItem, OrderStatus, PaymentStatus, ProductStatus, dump, round_money, utcnow_iso
from services import customers, discounts, inventory, notifications
from services.document_store import DocumentStore
from services.store import get_store

logger = logging.getLogger("storefront.orders")

COLLECTION = "orders"
ORDER_SEQUENCE = "order_number"

S = OrderStatus

_TIMESTAMP_FIELD = {
    S.PAID: "paid_at",
    S.SHIPPED: "shipped_at",
    S.DELIVERED: "delivered_at",
    S.CANCELLED: "cancelled_at",
    S.REFUNDED: "refunded_at",
}


# ============================================================
# Helpers
# ============================================================
def format_order_number(n: int) -> str:
    return f"ORD-{int(n):06d}"


def tracking_code_for(order_number: str, email: str) -> str:
    local = (email or "").strip().split("@")[0]
    return f"{order_number}-{local}".lower()


def _history_entry(src: Optional[OrderStatus], dst: OrderStatus, reason: Optional[str]) -> Dict[str, Any]:
    return {
        "from": src.value if src else None,
        "to": dst.value,
        "at": utcnow_iso(),
        "reason": reason,
    }


def _merge_pending(existing: List[str], new: List[str]) -> List[str]:
    out = list(existing or [])
    for e in new:
        if e not in out:
            out.append(e)
    return out


# ============================================================
# Checkout
# ============================================================
def create_order(
    store_id: str,
    items: List[Dict[str, Any]],
    customer_email: str,
    first_name: str = "",
    last_name: str = "",
    shipping_address: Optional[Dict[str, Any]] = None,
    shipping_cost: float = 0.0,
    discount_code: Optional[str] = None,
    store: Optional[DocumentStore] = None,
) -> Dict[str, Any]:
    """
    Prices the cart from the product documents, applies the discount code
    and stores a pending order. Stock is checked here only as a courtesy;
    it is taken at payment capture.
    """
    store = store or get_store()
    if not items:
        raise ValidationError("empty cart", "An order needs at least one item")
    if float(shipping_cost or 0) < 0:
        raise ValidationError("invalid shipping cost", "Shipping cost cannot be negative")

    lines: List[OrderItem] = []
    wanted: Dict[str, int] = {}
    products: Dict[str, Dict[str, Any]] = {}
    for raw in items:
        pid = raw.get("product_id")
        qty = int(raw.get("quantity") or 0)
        if qty < 1:
            raise ValidationError("invalid quantity", f"Quantity for {pid} must be at least 1")
        product = products.get(pid) or inventory.get_product(store_id, pid, store=store)
        if product.get("status") != ProductStatus.ACTIVE.value:
            raise ValidationError("product unavailable", f"{product.get('name')} is not for sale", product_id=pid)
        products[pid] = product
        wanted[pid] = wanted.get(pid, 0) + qty
        lines.append(OrderItem(product_id=pid, name=product.get("name") or "", quantity=qty, unit_price=product["price"]))

    short = [
        pid for pid, qty in wanted.items()
        if products[pid].get("track_inventory", True) and int(products[pid].get("quantity") or 0) < qty
    ]
    if short:
        raise InsufficientStock(short)

    subtotal = round_money(sum(li.total_price for li in lines))
    shipping_cost = round_money(shipping_cost)

    customer = customers.find_or_create_customer(
        store_id, customer_email, first_name, last_name, address=shipping_address, store=store
    )

    discount_amount = 0.0
    discount_id = None
    code = None
    if discount_code:
        cart = CartContext(
            subtotal=subtotal,
            item_count=sum(wanted.values()),
            customer_id=customer["id"],
            customer_tags=list(customer.get("tags") or []),
            is_first_purchase=customers.is_first_purchase(customer),
            lines=[CartLine(li.product_id, li.quantity, li.unit_price) for li in lines],
        )
        result = discounts.validate_code(store_id, discount_code, subtotal, cart=cart, store=store)
        if not result.valid:
            raise ValidationError(result.error, result.message, discount_code=discount_code)
        discount_amount = discounts.calculate_amount(result.discount, subtotal, shipping_cost, cart=cart)
        discount_id = result.discount.id
        code = result.discount.code

    total = round_money(subtotal - discount_amount + shipping_cost)

    order_number = format_order_number(store.next_sequence(store_id, ORDER_SEQUENCE))
    order = Order(
        store_id=store_id,
        order_number=order_number,
        items=lines,
        subtotal=subtotal,
        discount_amount=discount_amount,
        discount_code=code,
        discount_id=discount_id,
        shipping_cost=shipping_cost,
        total=total,
        customer_id=customer["id"],
        customer_email=customer["email"],
        tracking_code=tracking_code_for(order_number, customer["email"]),
        status_history=[_history_entry(None, S.PENDING, "checkout")],
    )
    doc = store.insert(COLLECTION, store_id, dump(order))
    logger.info(f"Order created store={store_id} number={order_number} total={total} discount={code}")

    notifications.dispatch(
        notifications.EVENT_ORDER_CREATED,
        store_id,
        {"order_id": doc["id"], "order_number": order_number, "total": total, "customer_email": doc["customer_email"]},
    )
    return doc


# ============================================================
# Reads
# ============================================================
def get_order(store_id: str, order_id: str, store: Optional[DocumentStore] = None) -> Dict[str, Any]:
    store = store or get_store()
    return store.get_or_raise(COLLECTION, store_id, order_id)


def list_orders(
    store_id: str,
    status: Optional[str] = None,
    customer_id: Optional[str] = None,
    limit: Optional[int] = None,
    store: Optional[DocumentStore] = None,
) -> List[Dict[str, Any]]:
    store = store or get_store()
    filters: Dict[str, Any] = {}
    if status:
        filters["status"] = order_state.parse_status(status).value
    if customer_id:
        filters["customer_id"] = customer_id
    return store.find(COLLECTION, store_id, filters=filters or None, order_by="created_at", desc=True, limit=limit)


def track_order(store_id: str, order_number: str, email: str, store: Optional[DocumentStore] = None) -> Dict[str, Any]:
    """Public lookup by order number + email. Returns a customer-safe subset."""
    store = store or get_store()
    number = (order_number or "").strip().upper()
    order = store.find_one(COLLECTION, store_id, {"order_number": number})
    if order is None or order.get("tracking_code") != tracking_code_for(number, email):
        raise NotFoundError("order not found")
    return {
        "order_number": order["order_number"],
        "status": order["status"],
        "payment_status": order["payment_status"],
        "items": [{"name": i.get("name"), "quantity": i.get("quantity")} for i in order.get("items") or []],
        "total": order["total"],
        "tracking_number": order.get("tracking_number"),
        "carrier": order.get("carrier"),
        "tracking_url": order.get("tracking_url"),
        "created_at": order.get("created_at"),
        "shipped_at": order.get("shipped_at"),
        "delivered_at": order.get("delivered_at"),
        "history": [{"status": h.get("to"), "at": h.get("at")} for h in order.get("status_history") or []],
    }


# ============================================================
# Payment callbacks
# ============================================================
def _record_payment_error(store: DocumentStore, store_id: str, order_id: str, message: str) -> None:
    def _apply(doc: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if doc.get("status") != S.PENDING.value:
            return None
        return {"last_payment_error": message}

    try:
        store.mutate(COLLECTION, store_id, order_id, _apply)
    except CommerceError:
        logger.warning(f"Could not record payment error order={order_id}", exc_info=True)


def on_payment_succeeded(
    store_id: str,
    order_id: str,
    reason: Optional[str] = None,
    store: Optional[DocumentStore] = None,
) -> Dict[str, Any]:
    """
    pending -> paid. Idempotent: an order already paid (or further along)
    is returned unchanged. Raises InsufficientStock with the order left
    pending and no stock taken.
    """
    store = store or get_store()
    attempts = store.max_retries + 1
    for attempt in range(attempts):
        order = store.get_or_raise(COLLECTION, store_id, order_id)
        current = order_state.parse_status(order["status"])
        if current != S.PENDING:
            if current in order_state.TERMINAL:
                order_state.assert_transition(current, S.PAID)
            logger.info(f"Payment for order={order_id} already applied (status={current.value})")
            return order

        try:
            inventory.decrement_for_order(store_id, order, store=store)
        except InsufficientStock as e:
            # a concurrent delivery of the same payment may have taken the stock
            latest = store.get_or_raise(COLLECTION, store_id, order_id)
            now = order_state.parse_status(latest["status"])
            if now != S.PENDING:
                if now in order_state.TERMINAL:
                    order_state.assert_transition(now, S.PAID)
                logger.info(f"Payment for order={order_id} applied concurrently (status={now.value})")
                return latest
            _record_payment_error(store, store_id, order_id, e.message)
            raise

        owed = order_state.effects_for(current, S.PAID)
        effects = dict(order.get("effects") or {})
        effects[EFFECT_INVENTORY_DECREMENT] = True
        patch = {
            "status": S.PAID.value,
            "payment_status": PaymentStatus.PAID.value,
            "paid_at": utcnow_iso(),
            "last_payment_error": None,
            "effects": effects,
            "pending_effects": _merge_pending(order.get("pending_effects"), [e for e in owed if e != EFFECT_INVENTORY_DECREMENT]),
            "status_history": list(order.get("status_history") or []) + [_history_entry(current, S.PAID, reason or "payment captured")],
        }
        try:
            updated = store.update(COLLECTION, store_id, order_id, patch, expected_version=order.get("version"))
        except ConcurrencyConflict:
            # the order changed under us; give the stock back and re-read
            inventory.release_for_order(store_id, order, store=store)
            logger.info(f"Payment write conflict order={order_id} attempt={attempt + 1}/{attempts}")
            continue

        logger.info(f"Order paid store={store_id} number={updated['order_number']} total={updated['total']}")
        return _run_pending(store, store_id, updated)

    raise ConcurrencyConflict(f"order {order_id} kept changing during payment capture; giving up after {attempts} attempts")


def on_payment_failed(
    store_id: str,
    order_id: str,
    reason: Optional[str] = None,
    store: Optional[DocumentStore] = None,
) -> Dict[str, Any]:
    """Order stays pending with payment_status=failed so the customer can retry."""
    store = store or get_store()

    def _apply(doc: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if doc.get("status") != S.PENDING.value:
            return None
        return {"payment_status": PaymentStatus.FAILED.value, "last_payment_error": reason or "payment failed"}

    doc = store.mutate(COLLECTION, store_id, order_id, _apply)
    if doc.get("status") != S.PENDING.value:
        logger.info(f"Ignoring payment failure for order={order_id} in status={doc.get('status')}")
    else:
        logger.info(f"Payment failed order={order_id}: {reason}")
    return doc


# ============================================================
# Transitions
# ============================================================
def _transition_patch(
    order: Dict[str, Any],
    src: OrderStatus,
    dst: OrderStatus,
    tracking: Optional[Dict[str, Any]],
    reason: Optional[str],
) -> Dict[str, Any]:
    patch: Dict[str, Any] = {
        "status": dst.value,
        "pending_effects": _merge_pending(order.get("pending_effects"), order_state.effects_for(src, dst)),
        "status_history": list(order.get("status_history") or []) + [_history_entry(src, dst, reason)],
    }
    ts = _TIMESTAMP_FIELD.get(dst)
    if ts:
        patch[ts] = utcnow_iso()

    if dst == S.SHIPPED:
        tracking = tracking or {}
        number = (tracking.get("tracking_number") or "").strip()
        if not number:
            raise ValidationError("tracking number required", "A tracking number is required to ship an order")
        patch["tracking_number"] = number
        patch["carrier"] = tracking.get("carrier") or order.get("carrier")
        patch["tracking_url"] = tracking.get("tracking_url") or order.get("tracking_url")

    if dst == S.REFUNDED or (dst == S.CANCELLED and src in order_state.STOCK_COMMITTED):
        patch["payment_status"] = PaymentStatus.REFUNDED.value

    return patch


def transition(
    store_id: str,
    order_id: str,
    target: str,
    tracking: Optional[Dict[str, Any]] = None,
    reason: Optional[str] = None,
    store: Optional[DocumentStore] = None,
) -> Dict[str, Any]:
    """
    Moves an order along the adjacency table. Anything else raises
    ValidationError and leaves the order untouched.
    """
    store = store or get_store()
    dst = order_state.parse_status(target)

    if dst == S.PAID:
        order = store.get_or_raise(COLLECTION, store_id, order_id)
        order_state.assert_transition(order["status"], dst)
        return on_payment_succeeded(store_id, order_id, reason=reason, store=store)

    attempts = store.max_retries + 1
    for attempt in range(attempts):
        order = store.get_or_raise(COLLECTION, store_id, order_id)
        src = order_state.parse_status(order["status"])
        order_state.assert_transition(src, dst)
        patch = _transition_patch(order, src, dst, tracking, reason)
        try:
            updated = store.update(COLLECTION, store_id, order_id, patch, expected_version=order.get("version"))
        except ConcurrencyConflict:
            logger.info(f"Transition conflict order={order_id} {src.value}->{dst.value} attempt={attempt + 1}/{attempts}")
            continue
        logger.info(f"Order {updated['order_number']} {src.value} -> {dst.value}")
        return _run_pending(store, store_id, updated)

    raise ConcurrencyConflict(
        f"order {order_id} kept changing; transition to {dst.value} not applied after {attempts} attempts"
    )


def mark_processing(store_id: str, order_id: str, store: Optional[DocumentStore] = None) -> Dict[str, Any]:
    return transition(store_id, order_id, S.PROCESSING.value, store=store)


def ship_order(
    store_id: str,
    order_id: str,
    tracking_number: str,
    carrier: Optional[str] = None,
    tracking_url: Optional[str] = None,
    store: Optional[DocumentStore] = None,
) -> Dict[str, Any]:
    tracking = {"tracking_number": tracking_number, "carrier": carrier, "tracking_url": tracking_url}
    return transition(store_id, order_id, S.SHIPPED.value, tracking=tracking, store=store)


def mark_delivered(store_id: str, order_id: str, store: Optional[DocumentStore] = None) -> Dict[str, Any]:
    return transition(store_id, order_id, S.DELIVERED.value, store=store)


def cancel_order(store_id: str, order_id: str, reason: Optional[str] = None, store: Optional[DocumentStore] = None) -> Dict[str, Any]:
    return transition(store_id, order_id, S.CANCELLED.value, reason=reason, store=store)


def refund_order(store_id: str, order_id: str, reason: Optional[str] = None, store: Optional[DocumentStore] = None) -> Dict[str, Any]:
    return transition(store_id, order_id, S.REFUNDED.value, reason=reason, store=store)


# ============================================================
# Side effects + reconciliation
# ============================================================
def _apply_effect(store: DocumentStore, store_id: str, order: Dict[str, Any], effect: str) -> Dict[str, bool]:
    """Runs one effect. Returns extra flags to record on the order."""
    order_id = order["id"]

    if effect == EFFECT_DISCOUNT_USAGE:
        if not order.get("discount_id"):
            return {}
        try:
            counted = discounts.increment_usage(store_id, order["discount_id"], order_id, store=store)
        except NotFoundError:
            logger.warning(f"Discount {order['discount_id']} is gone; usage for order={order_id} not counted")
            return {"discount_usage_skipped": True}
        if not counted:
            logger.warning(f"Discount {order.get('discount_code')} hit its usage limit; order={order_id} kept its price")
            return {"discount_usage_rejected": True}
        return {}

    if effect == EFFECT_CUSTOMER_CREDIT:
        if order.get("customer_id"):
            customers.credit_order(store_id, order["customer_id"], order_id, order.get("total") or 0, store=store)
        return {}

    if effect == EFFECT_CUSTOMER_SPENT_REVERSAL:
        if order.get("customer_id"):
            customers.reverse_spent(store_id, order["customer_id"], order_id, order.get("total") or 0, store=store)
        return {}

    if effect == EFFECT_INVENTORY_RESTOCK:
        inventory.restock_for_order(store_id, order, store=store)
        return {}

    if effect == EFFECT_NOTIFY:
        notifications.dispatch(
            notifications.EVENT_ORDER_STATUS,
            store_id,
            {
                "order_id": order_id,
                "order_number": order.get("order_number"),
                "status": order.get("status"),
                "customer_email": order.get("customer_email"),
                "tracking_number": order.get("tracking_number"),
                "tracking_url": order.get("tracking_url"),
            },
        )
        return {}

    raise ValueError(f"Unknown side effect: {effect!r}")


def _mark_done(store: DocumentStore, store_id: str, order_id: str, effect: str, flags: Dict[str, bool]) -> Dict[str, Any]:
    def _apply(doc: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        pending = [e for e in doc.get("pending_effects") or [] if e != effect]
        effects = dict(doc.get("effects") or {})
        effects[effect] = True
        effects.update(flags)
        return {"pending_effects": pending, "effects": effects}

    return store.mutate(COLLECTION, store_id, order_id, _apply)


def _run_pending(store: DocumentStore, store_id: str, order: Dict[str, Any]) -> Dict[str, Any]:
    for effect in list(order.get("pending_effects") or []):
        try:
            flags = _apply_effect(store, store_id, order, effect)
            order = _mark_done(store, store_id, order["id"], effect, flags)
        except Exception:
            # later effects may depend on this one (credit before reversal)
            logger.warning(
                f"Side effect {effect} failed for order={order['id']}; left for reconciliation",
                exc_info=True,
            )
            break
    return order


def reconcile_order(store_id: str, order_id: str, store: Optional[DocumentStore] = None) -> Dict[str, Any]:
    """Re-runs whatever side effects an order still owes."""
    store = store or get_store()
    order = store.get_or_raise(COLLECTION, store_id, order_id)
    if not order.get("pending_effects"):
        return order
    logger.info(f"Reconciling order={order_id} pending={order['pending_effects']}")
    return _run_pending(store, store_id, order)


def find_unreconciled(store_id: str, store: Optional[DocumentStore] = None) -> List[Dict[str, Any]]:
    """Orders with side effects still owed. Full scan of the store's orders."""
    store = store or get_store()
    return [o for o in store.find(COLLECTION, store_id, order_by="created_at") if o.get("pending_effects")]


def reconcile_store(store_id: str, store: Optional[DocumentStore] = None) -> Dict[str, Any]:
    store = store or get_store()
    candidates = find_unreconciled(store_id, store=store)
    still_pending: List[str] = []
    for order in candidates:
        done = reconcile_order(store_id, order["id"], store=store)
        if done.get("pending_effects"):
            still_pending.append(done["id"])
    if candidates:
        logger.info(f"Reconciliation store={store_id} checked={len(candidates)} still_pending={len(still_pending)}")
    return {
        "ok": True,
        "store_id": store_id,
        "checked": len(candidates),
        "reconciled": len(candidates) - len(still_pending),
        "still_pending": still_pending,
    }
