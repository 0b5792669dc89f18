# tests/test_order_lifecycle.py
"""
Checkout -> payment -> fulfilment, with the side effects each step owes.
Run with: python -m pytest tests/test_order_lifecycle.py -v
"""
import os
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from core.errors import ConcurrencyConflict, InsufficientStock, ValidationError
from services import customers, discounts, inventory, notifications, orders

STORE = "s1"


@pytest.fixture
def mug(store):
    return inventory.create_product(STORE, {"name": "Mug", "price": 25, "quantity": 10}, store=store)


def _checkout(store, product, qty=1, email="ana@example.com", **kw):
    return orders.create_order(
        STORE,
        items=[{"product_id": product["id"], "quantity": qty}],
        customer_email=email,
        store=store,
        **kw,
    )


def _assert_total(order):
    expected = round(order["subtotal"] - order["discount_amount"] + order["shipping_cost"], 2)
    assert order["total"] == expected


def _stock(store, product):
    return inventory.get_product(STORE, product["id"], store=store)["quantity"]


# ============================================================
# Checkout
# ============================================================
def test_checkout_prices_from_products_and_applies_discount(store, sent, mug):
    discounts.create_discount(STORE, {"code": "save10", "type": "percentage", "value": 10}, store=store)
    order = _checkout(store, mug, qty=4, shipping_cost=5, discount_code="Save10")

    assert order["order_number"] == "ORD-000001"
    assert order["status"] == "pending" and order["payment_status"] == "pending"
    assert order["subtotal"] == 100
    assert order["discount_amount"] == 10
    assert order["discount_code"] == "SAVE10"
    assert order["total"] == 95
    _assert_total(order)
    assert order["tracking_code"] == "ord-000001-ana"
    # stock is only taken at payment
    assert _stock(store, mug) == 10
    assert sent[0]["event"] == notifications.EVENT_ORDER_CREATED


def test_checkout_rejects_invalid_discount_and_empty_cart(store, sent, mug):
    with pytest.raises(ValidationError) as ei:
        _checkout(store, mug, discount_code="NOPE")
    assert ei.value.reason == "not found"
    with pytest.raises(ValidationError):
        orders.create_order(STORE, items=[], customer_email="ana@example.com", store=store)


def test_checkout_finds_existing_customer(store, sent, mug):
    a = _checkout(store, mug, email="Ana@Example.com")
    b = _checkout(store, mug, email="ana@example.com")
    assert a["customer_id"] == b["customer_id"]
    assert len(customers.list_customers(STORE, store=store)) == 1
    assert orders.format_order_number(2) == b["order_number"]


def test_free_shipping_keeps_total_invariant(store, sent, mug):
    discounts.create_discount(STORE, {"code": "SHIPFREE", "type": "free_shipping"}, store=store)
    order = _checkout(store, mug, qty=2, shipping_cost=7.5, discount_code="shipfree")
    assert order["discount_amount"] == 7.5
    assert order["total"] == 50
    _assert_total(order)


# ============================================================
# Payment
# ============================================================
def test_payment_takes_stock_counts_usage_and_credits_customer(store, sent, mug):
    d = discounts.create_discount(STORE, {"code": "SAVE10", "type": "percentage", "value": 10}, store=store)
    order = _checkout(store, mug, qty=2, discount_code="SAVE10")

    paid = orders.on_payment_succeeded(STORE, order["id"], store=store)
    assert paid["status"] == "paid" and paid["payment_status"] == "paid"
    assert paid["paid_at"]
    assert paid["pending_effects"] == []
    _assert_total(paid)

    assert _stock(store, mug) == 8
    assert discounts.get_discount(STORE, d["id"], store=store)["used_count"] == 1
    c = customers.get_customer(STORE, order["customer_id"], store=store)
    assert c["total_orders"] == 1 and c["total_spent"] == 45
    assert any(e["event"] == notifications.EVENT_ORDER_STATUS for e in sent)


def test_payment_succeeded_is_idempotent(store, sent, mug):
    order = _checkout(store, mug, qty=3)
    once = orders.on_payment_succeeded(STORE, order["id"], store=store)
    twice = orders.on_payment_succeeded(STORE, order["id"], store=store)

    assert twice["version"] == once["version"]
    assert _stock(store, mug) == 7
    c = customers.get_customer(STORE, order["customer_id"], store=store)
    assert c["total_orders"] == 1 and c["total_spent"] == 75


def test_insufficient_stock_leaves_order_pending(store, sent, mug):
    order = _checkout(store, mug, qty=5)
    inventory.adjust_stock(STORE, mug["id"], set_to=2, store=store)

    with pytest.raises(InsufficientStock) as ei:
        orders.on_payment_succeeded(STORE, order["id"], store=store)
    assert ei.value.product_ids == [mug["id"]]

    after = orders.get_order(STORE, order["id"], store=store)
    assert after["status"] == "pending"
    assert after["last_payment_error"]
    assert _stock(store, mug) == 2


def test_payment_failed_keeps_order_retryable(store, sent, mug):
    order = _checkout(store, mug)
    failed = orders.on_payment_failed(STORE, order["id"], reason="card declined", store=store)
    assert failed["status"] == "pending"
    assert failed["payment_status"] == "failed"
    assert failed["last_payment_error"] == "card declined"

    paid = orders.on_payment_succeeded(STORE, order["id"], store=store)
    assert paid["payment_status"] == "paid"
    assert paid["last_payment_error"] is None


def test_two_orders_race_for_three_units(store, sent):
    product = inventory.create_product(STORE, {"name": "Lamp", "price": 40, "quantity": 3}, store=store)
    o1 = _checkout(store, product, qty=2, email="a@example.com")
    o2 = _checkout(store, product, qty=2, email="b@example.com")

    barrier = threading.Barrier(2)

    def _pay(order_id):
        barrier.wait()
        try:
            orders.on_payment_succeeded(STORE, order_id, store=store)
            return "paid"
        except InsufficientStock:
            return "short"

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = sorted(pool.map(_pay, [o1["id"], o2["id"]]))

    assert results == ["paid", "short"]
    assert _stock(store, product) == 1


def test_concurrent_payments_never_oversell(store, sent):
    product = inventory.create_product(STORE, {"name": "Poster", "price": 5, "quantity": 7}, store=store)
    pending = [_checkout(store, product, qty=1, email=f"c{i}@example.com") for i in range(12)]

    def _pay(order):
        try:
            orders.on_payment_succeeded(STORE, order["id"], store=store)
            return True
        except InsufficientStock:
            return False

    with ThreadPoolExecutor(max_workers=6) as pool:
        results = list(pool.map(_pay, pending))

    assert sum(results) == 7
    assert _stock(store, product) == 0


def test_usage_cap_holds_under_concurrent_redemption(store, sent, mug):
    d = discounts.create_discount(
        STORE, {"code": "ONCE", "type": "fixed_amount", "value": 5, "max_uses": 2}, store=store
    )
    pending = [_checkout(store, mug, email=f"u{i}@example.com", discount_code="ONCE") for i in range(6)]

    with ThreadPoolExecutor(max_workers=6) as pool:
        list(pool.map(lambda o: orders.on_payment_succeeded(STORE, o["id"], store=store), pending))

    doc = discounts.get_discount(STORE, d["id"], store=store)
    assert doc["used_count"] == 2
    assert len(doc["redeemed_order_ids"]) == 2
    rejected = [
        o for o in orders.list_orders(STORE, store=store)
        if (o.get("effects") or {}).get("discount_usage_rejected")
    ]
    assert len(rejected) == 4


def test_increment_usage_is_idempotent_per_order(store):
    d = discounts.create_discount(STORE, {"code": "TWICE", "type": "percentage", "value": 5, "max_uses": 5}, store=store)
    assert discounts.increment_usage(STORE, d["id"], "o1", store=store) is True
    assert discounts.increment_usage(STORE, d["id"], "o1", store=store) is True
    assert discounts.get_discount(STORE, d["id"], store=store)["used_count"] == 1


def test_max_uses_cannot_drop_below_redemptions(store):
    d = discounts.create_discount(STORE, {"code": "FIVE", "type": "percentage", "value": 5, "max_uses": 5}, store=store)
    for oid in ("o1", "o2", "o3"):
        discounts.increment_usage(STORE, d["id"], oid, store=store)

    with pytest.raises(ValidationError) as ei:
        discounts.update_discount(STORE, d["id"], {"max_uses": 1}, store=store)
    assert ei.value.reason == "invalid discount"

    doc = discounts.get_discount(STORE, d["id"], store=store)
    assert (doc["used_count"], doc["max_uses"]) == (3, 5)
    assert discounts.update_discount(STORE, d["id"], {"max_uses": 3}, store=store)["max_uses"] == 3


def test_checkout_discount_only_counts_eligible_products(store, sent, mug):
    tee = inventory.create_product(STORE, {"name": "Tee", "price": 50, "quantity": 10}, store=store)
    discounts.create_discount(
        STORE,
        {"code": "MUGS", "type": "percentage", "value": 20, "applies_to": "specific_products", "product_ids": [mug["id"]]},
        store=store,
    )
    order = orders.create_order(
        STORE,
        items=[{"product_id": mug["id"], "quantity": 2}, {"product_id": tee["id"], "quantity": 1}],
        customer_email="ana@example.com",
        discount_code="mugs",
        store=store,
    )
    assert order["subtotal"] == 100
    assert order["discount_amount"] == 10
    _assert_total(order)

    with pytest.raises(ValidationError) as ei:
        _checkout(store, tee, discount_code="MUGS")
    assert ei.value.reason == "no eligible items"


def test_duplicate_payment_deliveries_both_succeed(store, sent, monkeypatch):
    product = inventory.create_product(STORE, {"name": "Vase", "price": 30, "quantity": 2}, store=store)
    order = _checkout(store, product, qty=2)

    real_decrement = inventory.decrement_for_order
    barrier = threading.Barrier(2)

    def _decrement(*a, **kw):
        # both deliveries have read the order as pending
        barrier.wait()
        try:
            return real_decrement(*a, **kw)
        except InsufficientStock:
            time.sleep(0.1)
            raise

    monkeypatch.setattr(inventory, "decrement_for_order", _decrement)

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(lambda _: orders.on_payment_succeeded(STORE, order["id"], store=store), range(2)))

    assert [r["status"] for r in results] == ["paid", "paid"]
    assert _stock(store, product) == 0
    final = orders.get_order(STORE, order["id"], store=store)
    assert final["last_payment_error"] is None
    assert [h["to"] for h in final["status_history"]] == ["pending", "paid"]


# ============================================================
# Transitions
# ============================================================
def _paid(store, product, qty=2):
    order = _checkout(store, product, qty=qty)
    return orders.on_payment_succeeded(STORE, order["id"], store=store)


def test_forward_path_to_delivered(store, sent, mug):
    order = _paid(store, mug)
    orders.mark_processing(STORE, order["id"], store=store)

    with pytest.raises(ValidationError) as ei:
        orders.transition(STORE, order["id"], "shipped", store=store)
    assert ei.value.reason == "tracking number required"

    shipped = orders.ship_order(STORE, order["id"], "TRK123", carrier="UPS", store=store)
    assert shipped["tracking_number"] == "TRK123" and shipped["shipped_at"]
    done = orders.mark_delivered(STORE, order["id"], store=store)
    assert done["status"] == "delivered" and done["delivered_at"]
    _assert_total(done)
    assert [h["to"] for h in done["status_history"]] == ["pending", "paid", "processing", "shipped", "delivered"]


def test_invalid_transition_leaves_order_unchanged(store, sent, mug):
    order = _checkout(store, mug)
    with pytest.raises(ValidationError) as ei:
        orders.transition(STORE, order["id"], "shipped", tracking={"tracking_number": "X"}, store=store)
    assert ei.value.reason == "invalid transition"
    with pytest.raises(ValidationError):
        orders.transition(STORE, order["id"], "teleported", store=store)
    assert orders.get_order(STORE, order["id"], store=store)["version"] == order["version"]


def test_cancel_before_payment_has_no_stock_effect(store, sent, mug):
    order = _checkout(store, mug, qty=2)
    cancelled = orders.cancel_order(STORE, order["id"], reason="changed mind", store=store)
    assert cancelled["status"] == "cancelled" and cancelled["cancelled_at"]
    assert cancelled["payment_status"] == "pending"
    assert _stock(store, mug) == 10

    with pytest.raises(ValidationError):
        orders.on_payment_succeeded(STORE, order["id"], store=store)


def test_cancel_after_payment_restocks_and_reverses_spend(store, sent, mug):
    order = _paid(store, mug, qty=2)
    assert _stock(store, mug) == 8

    cancelled = orders.cancel_order(STORE, order["id"], store=store)
    assert cancelled["payment_status"] == "refunded"
    assert cancelled["pending_effects"] == []
    assert _stock(store, mug) == 10

    c = customers.get_customer(STORE, order["customer_id"], store=store)
    assert c["total_spent"] == 0
    assert c["total_orders"] == 1


def test_refund_reverses_spend_without_restock(store, sent, mug):
    order = _paid(store, mug, qty=2)
    orders.mark_processing(STORE, order["id"], store=store)
    orders.ship_order(STORE, order["id"], "TRK1", store=store)
    orders.mark_delivered(STORE, order["id"], store=store)

    refunded = orders.refund_order(STORE, order["id"], reason="damaged", store=store)
    assert refunded["status"] == "refunded" and refunded["payment_status"] == "refunded"
    assert _stock(store, mug) == 8
    c = customers.get_customer(STORE, order["customer_id"], store=store)
    assert c["total_spent"] == 0 and c["total_orders"] == 1

    with pytest.raises(ValidationError):
        orders.refund_order(STORE, order["id"], store=store)


def test_ship_and_cancel_race_has_one_winner(store, sent, mug, monkeypatch):
    order = _paid(store, mug, qty=2)
    orders.mark_processing(STORE, order["id"], store=store)

    real_update = store.update
    barrier = threading.Barrier(2)

    def _slow_update(collection, *a, **kw):
        if collection == orders.COLLECTION:
            time.sleep(0.05)
        return real_update(collection, *a, **kw)

    monkeypatch.setattr(store, "update", _slow_update)

    def _run(action):
        barrier.wait()
        try:
            action()
            return "ok"
        except ValidationError as e:
            return e.reason

    actions = [
        lambda: orders.ship_order(STORE, order["id"], "TRK9", store=store),
        lambda: orders.cancel_order(STORE, order["id"], store=store),
    ]
    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(_run, actions))

    assert sorted(results) == ["invalid transition", "ok"]
    final = orders.get_order(STORE, order["id"], store=store)
    history = [h["to"] for h in final["status_history"]]
    assert history[:3] == ["pending", "paid", "processing"]
    assert len(history) == 4
    assert final["pending_effects"] == []
    if final["status"] == "shipped":
        assert results[0] == "ok"
        assert _stock(store, mug) == 8
    else:
        assert final["status"] == "cancelled" and results[1] == "ok"
        assert _stock(store, mug) == 10


def test_exhausted_retries_report_attempts(store, sent, mug, monkeypatch):
    order = _checkout(store, mug)

    def _always_conflict(*a, **kw):
        raise ConcurrencyConflict("version moved")

    monkeypatch.setattr(store, "update", _always_conflict)
    attempts = store.max_retries + 1

    with pytest.raises(ConcurrencyConflict) as ei:
        orders.cancel_order(STORE, order["id"], store=store)
    assert f"after {attempts} attempts" in ei.value.message

    with pytest.raises(ConcurrencyConflict) as ei:
        orders.on_payment_succeeded(STORE, order["id"], store=store)
    assert f"after {attempts} attempts" in ei.value.message
    assert _stock(store, mug) == 10


# ============================================================
# Reconciliation
# ============================================================
def test_failed_side_effect_is_left_pending_then_reconciled(store, sent, mug, monkeypatch):
    order = _checkout(store, mug, qty=1)
    real_credit = customers.credit_order

    def _down(*a, **kw):
        raise ConcurrencyConflict("customer store unavailable")

    monkeypatch.setattr(customers, "credit_order", _down)
    paid = orders.on_payment_succeeded(STORE, order["id"], store=store)
    assert paid["status"] == "paid"
    assert "customer_credit" in paid["pending_effects"]
    assert [o["id"] for o in orders.find_unreconciled(STORE, store=store)] == [order["id"]]

    monkeypatch.setattr(customers, "credit_order", real_credit)
    out = orders.reconcile_store(STORE, store=store)
    assert out["checked"] == 1 and out["reconciled"] == 1

    fixed = orders.get_order(STORE, order["id"], store=store)
    assert fixed["pending_effects"] == []
    assert customers.get_customer(STORE, order["customer_id"], store=store)["total_orders"] == 1


def test_track_order_requires_matching_email(store, sent, mug):
    order = _checkout(store, mug, email="ana.lee@example.com")
    public = orders.track_order(STORE, order["order_number"].lower(), "ANA.LEE@example.com", store=store)
    assert public["status"] == "pending"
    assert "customer_email" not in public

    from core.errors import NotFoundError
    with pytest.raises(NotFoundError):
        orders.track_order(STORE, order["order_number"], "someone@example.com", store=store)
