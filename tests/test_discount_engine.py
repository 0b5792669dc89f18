# tests/test_discount_engine.py
"""
Discount validation order and amount rules.
Run with: python -m pytest tests/test_discount_engine.py -v
"""
import os
import sys
from datetime import datetime, timedelta, timezone

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from core import discount_engine as de
from core.schemas import Discount

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _discount(**kw):
    base = {"store_id": "s1", "code": "save10", "type": "percentage", "value": 10}
    base.update(kw)
    return Discount(**base)


def test_save10_scenario_validates_then_hits_usage_limit():
    d = _discount(minimum_purchase=50, max_uses=1)
    assert d.code == "SAVE10"

    res = de.validate_discount(d, 100, now=NOW)
    assert res.valid is True
    assert de.calculate_amount(d, 100) == 10

    used = d.model_copy(update={"used_count": 1})
    res = de.validate_discount(used, 100, now=NOW)
    assert res.valid is False
    assert res.error == de.USAGE_LIMIT_REACHED


def test_missing_discount_is_not_found():
    res = de.validate_discount(None, 100, now=NOW)
    assert res.valid is False
    assert res.error == de.NOT_FOUND


def test_checks_run_in_order_first_failure_wins():
    # inactive AND expired AND over limit: inactive is reported
    d = _discount(is_active=False, ends_at=NOW - timedelta(days=1), max_uses=1, used_count=1)
    assert de.validate_discount(d, 100, now=NOW).error == de.INACTIVE

    # expired AND below minimum: expired is reported
    d = _discount(ends_at=NOW - timedelta(days=1), minimum_purchase=500)
    assert de.validate_discount(d, 100, now=NOW).error == de.EXPIRED


def test_not_started_and_boundaries():
    d = _discount(starts_at=NOW + timedelta(hours=1))
    assert de.validate_discount(d, 100, now=NOW).error == de.NOT_STARTED

    # the window is inclusive at both ends
    d = _discount(starts_at=NOW, ends_at=NOW)
    assert de.validate_discount(d, 100, now=NOW).valid is True


def test_minimum_purchase_not_met():
    d = _discount(minimum_purchase=50)
    res = de.validate_discount(d, 49.99, now=NOW)
    assert res.valid is False
    assert res.error == de.MINIMUM_PURCHASE_NOT_MET
    assert de.validate_discount(d, 50, now=NOW).valid is True


def test_cart_context_rules():
    d = _discount(minimum_quantity=3)
    cart = de.CartContext(subtotal=100, item_count=2)
    assert de.validate_discount(d, 100, now=NOW, cart=cart).error == de.MINIMUM_QUANTITY_NOT_MET

    d = _discount(customer_eligibility="first_purchase")
    assert de.validate_discount(d, 100, now=NOW, cart=de.CartContext(100, is_first_purchase=False)).error == de.CUSTOMER_NOT_ELIGIBLE
    assert de.validate_discount(d, 100, now=NOW, cart=de.CartContext(100, is_first_purchase=True)).valid is True

    d = _discount(customer_eligibility="customer_groups", customer_tags=["vip"])
    assert de.validate_discount(d, 100, now=NOW, cart=de.CartContext(100, customer_tags=["vip"])).valid is True


@pytest.mark.parametrize(
    "kind,value,subtotal,shipping,expected",
    [
        ("percentage", 15, 80, 0, 12.0),
        ("percentage", 100, 80, 5, 80.0),
        ("fixed_amount", 30, 20, 0, 20.0),
        ("fixed_amount", 5, 20, 0, 5.0),
        ("free_shipping", 0, 20, 7.5, 7.5),
        ("percentage", 33, 0, 0, 0.0),
    ],
)
def test_calculate_amount(kind, value, subtotal, shipping, expected):
    d = _discount(type=kind, value=value)
    amount = de.calculate_amount(d, subtotal, shipping)
    assert amount == expected
    assert amount >= 0
    if kind == "fixed_amount":
        assert amount <= subtotal


def test_amount_rounded_to_cents():
    d = _discount(value=12.5)
    assert de.calculate_amount(d, 19.99) == 2.5


def _cart(*lines):
    lines = [de.CartLine(pid, qty, price) for pid, qty, price in lines]
    return de.CartContext(subtotal=sum(li.quantity * li.unit_price for li in lines), lines=lines)


def test_product_scoped_discount_uses_eligible_subtotal():
    cart = _cart(("mug", 2, 20.0), ("tee", 1, 60.0))

    d = _discount(applies_to="specific_products", product_ids=["mug"])
    assert de.validate_discount(d, cart.subtotal, now=NOW, cart=cart).valid is True
    assert de.calculate_amount(d, cart.subtotal, cart=cart) == 4.0

    fixed = _discount(type="fixed_amount", value=50, applies_to="specific_products", product_ids=["mug"])
    assert de.calculate_amount(fixed, cart.subtotal, cart=cart) == 40.0

    # no lines means the whole subtotal counts
    assert de.calculate_amount(d, 100) == 10


def test_excluded_products_never_count():
    cart = _cart(("mug", 2, 20.0), ("tee", 1, 60.0))
    d = _discount(exclude_product_ids=["tee"])
    assert de.calculate_amount(d, cart.subtotal, cart=cart) == 4.0

    both = _discount(applies_to="specific_products", product_ids=["mug", "tee"], exclude_product_ids=["mug"])
    assert [li.product_id for li in de.eligible_lines(both, cart.lines)] == ["tee"]


def test_cart_without_eligible_items_is_rejected():
    cart = _cart(("tee", 1, 60.0))
    d = _discount(applies_to="specific_products", product_ids=["mug"])
    res = de.validate_discount(d, cart.subtotal, now=NOW, cart=cart)
    assert res.valid is False
    assert res.error == de.NO_ELIGIBLE_ITEMS


def test_specific_products_requires_product_ids():
    with pytest.raises(ValueError):
        _discount(applies_to="specific_products")


def test_max_uses_below_used_count_rejected():
    with pytest.raises(ValueError):
        _discount(max_uses=1, used_count=3)
    assert _discount(max_uses=3, used_count=3).used_count == 3


def test_unknown_type_rejected():
    with pytest.raises(ValueError):
        _discount(type="bogo")


def test_percentage_over_100_rejected():
    with pytest.raises(ValueError):
        _discount(value=150)


def test_generate_code_shape():
    code = de.generate_code()
    assert len(code) == 8
    assert code.isalnum() and code == code.upper()
