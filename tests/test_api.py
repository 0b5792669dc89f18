# tests/test_api.py
import dataclasses
import json
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from fastapi.testclient import TestClient

from app import app
from core.settings import settings
from services import payments

SECRET = "whsec_test"


@pytest.fixture
def client(store, sent, monkeypatch):
    monkeypatch.setattr(payments, "settings", dataclasses.replace(settings, PAYMENT_WEBHOOK_SECRET=SECRET))
    return TestClient(app)


def _post_signed(client, payload):
    raw = json.dumps(payload).encode("utf-8")
    return client.post(
        "/webhooks/payments",
        content=raw,
        headers={"Content-Type": "application/json", "X-Payment-Signature": payments.sign_payload(raw, SECRET)},
    )


def _product(client, **kw):
    body = {"name": "Mug", "price": 20, "quantity": 3}
    body.update(kw)
    r = client.post("/stores/s1/products", json=body)
    assert r.status_code == 200, r.text
    return r.json()


def _checkout(client, product_id, qty=1, **kw):
    body = {"items": [{"product_id": product_id, "quantity": qty}], "customer_email": "ana@example.com"}
    body.update(kw)
    r = client.post("/stores/s1/orders", json=body)
    assert r.status_code == 200, r.text
    return r.json()


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"ok": True, "store": "memory"}


def test_checkout_then_signed_payment_webhook(client):
    product = _product(client)
    order = _checkout(client, product["id"], qty=2)

    payload = {"type": "payment.succeeded", "data": {"store_id": "s1", "order_id": order["id"]}}
    r = _post_signed(client, payload)
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "paid"

    # redelivery is harmless
    assert _post_signed(client, payload).json()["status"] == "paid"
    assert client.get(f"/stores/s1/products/{product['id']}").json()["quantity"] == 1


def test_payment_webhook_rejects_bad_signature(client):
    r = client.post(
        "/webhooks/payments",
        content=b'{"type": "payment.succeeded"}',
        headers={"X-Payment-Signature": "sha256=deadbeef"},
    )
    assert r.status_code == 401


def test_payment_failed_webhook(client):
    product = _product(client)
    order = _checkout(client, product["id"])
    r = _post_signed(client, {
        "type": "payment.failed",
        "data": {"object": {"metadata": {"store_id": "s1", "order_id": order["id"]}, "failure_message": "declined"}},
    })
    assert r.json() == {"ok": True, "order_id": order["id"], "status": "pending", "payment_status": "failed"}


def test_insufficient_stock_maps_to_409(client):
    product = _product(client, quantity=1)
    order = _checkout(client, product["id"])
    client.post(f"/stores/s1/products/{product['id']}/stock", json={"set_to": 0})

    r = client.post(f"/stores/s1/orders/{order['id']}/transition", json={"status": "paid"})
    assert r.status_code == 409
    body = r.json()
    assert body["code"] == "insufficient_stock"
    assert body["product_ids"] == [product["id"]]


def test_invalid_transition_is_400_with_reason(client):
    product = _product(client)
    order = _checkout(client, product["id"])
    r = client.post(f"/stores/s1/orders/{order['id']}/transition", json={"status": "delivered"})
    assert r.status_code == 400
    assert r.json()["reason"] == "invalid transition"


def test_unknown_order_is_404(client):
    r = client.get("/stores/s1/orders/missing")
    assert r.status_code == 404
    assert r.json()["code"] == "not_found"


def test_discount_flow(client):
    r = client.post("/stores/s1/discounts", json={
        "code": "save10", "type": "percentage", "value": 10, "minimum_purchase": 50, "max_uses": 1,
    })
    assert r.status_code == 200, r.text
    assert r.json()["code"] == "SAVE10"

    dup = client.post("/stores/s1/discounts", json={"code": "SAVE10", "type": "fixed_amount", "value": 5})
    assert dup.status_code == 400
    assert dup.json()["reason"] == "code already exists"

    ok = client.post("/stores/s1/discounts/validate", json={"code": "save10", "subtotal": 100}).json()
    assert ok["valid"] is True
    low = client.post("/stores/s1/discounts/validate", json={"code": "save10", "subtotal": 20}).json()
    assert low == {**low, "valid": False, "error": "minimum purchase not met"}

    generated = client.post("/stores/s1/discounts", json={"type": "free_shipping"}).json()
    assert len(generated["code"]) == 8


def test_low_stock_and_subscriptions(client):
    low = _product(client, name="Low", quantity=2)
    _product(client, name="Plenty", quantity=50)
    empty = _product(client, name="Empty", quantity=0)

    ids = [p["id"] for p in client.get("/stores/s1/products/low-stock").json()]
    assert set(ids) == {low["id"], empty["id"]}
    assert [p["id"] for p in client.get("/stores/s1/products/out-of-stock").json()] == [empty["id"]]

    r = client.post(f"/stores/s1/products/{empty['id']}/subscriptions", json={"email": "bo@example.com"})
    assert r.status_code == 200
    client.post(f"/stores/s1/products/{empty['id']}/stock", json={"delta": 4})
    subs = client.get(f"/stores/s1/products/{empty['id']}/subscriptions").json()
    assert subs[0]["notified"] is True


def test_order_track_and_analytics(client):
    product = _product(client, quantity=10)
    order = _checkout(client, product["id"], qty=3)
    client.post(f"/stores/s1/orders/{order['id']}/transition", json={"status": "paid"})

    tracked = client.get("/stores/s1/orders/track", params={"order_number": order["order_number"], "email": "ana@example.com"})
    assert tracked.status_code == 200
    assert tracked.json()["status"] == "paid"

    summary = client.get("/stores/s1/analytics/summary").json()
    assert summary["total_revenue"] == 60
    assert summary["paid_orders"] == 1
    assert summary["top_products"][0]["total_sold"] == 3

    bad = client.get("/stores/s1/analytics/compare", params={"start": "2026-03-08T00:00:00Z", "end": "2026-03-01T00:00:00Z"})
    assert bad.status_code == 400


def test_validate_scoped_discount_with_cart_lines(client):
    mug = _product(client)
    tee = _product(client, name="Tee", price=60)
    r = client.post("/stores/s1/discounts", json={
        "code": "MUGS", "type": "percentage", "value": 10,
        "applies_to": "specific_products", "product_ids": [mug["id"]],
    })
    assert r.status_code == 200, r.text

    items = [
        {"product_id": mug["id"], "quantity": 2, "unit_price": 20},
        {"product_id": tee["id"], "quantity": 1, "unit_price": 60},
    ]
    ok = client.post("/stores/s1/discounts/validate", json={"code": "mugs", "subtotal": 100, "items": items}).json()
    assert ok["valid"] is True
    assert ok["discount_amount"] == 4

    none = client.post("/stores/s1/discounts/validate", json={"code": "mugs", "subtotal": 60, "items": items[1:]}).json()
    assert none["valid"] is False and none["error"] == "no eligible items"


def test_lowering_max_uses_below_usage_is_rejected(client):
    created = client.post("/stores/s1/discounts", json={"code": "CAP", "type": "fixed_amount", "value": 5, "max_uses": 5}).json()
    product = _product(client, quantity=5)
    for email in ("a@example.com", "b@example.com"):
        order = _checkout(client, product["id"], discount_code="CAP", customer_email=email)
        client.post(f"/stores/s1/orders/{order['id']}/transition", json={"status": "paid"})

    r = client.patch(f"/stores/s1/discounts/{created['id']}", json={"max_uses": 1})
    assert r.status_code == 400
    assert r.json()["reason"] == "invalid discount"
    assert client.get(f"/stores/s1/discounts/{created['id']}").json()["used_count"] == 2
