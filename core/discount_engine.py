# core/discount_engine.py
from __future__ import annotations

import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.schemas import (
    CustomerEligibility,
    Discount,
    DiscountAppliesTo,
    DiscountType,
    as_utc,
    round_money,
    utcnow,
)

# Error reasons (stable strings; the UI maps them to copy)
NOT_FOUND = "not found"
INACTIVE = "inactive"
NOT_STARTED = "not started"
EXPIRED = "expired"
USAGE_LIMIT_REACHED = "usage limit reached"
MINIMUM_PURCHASE_NOT_MET = "minimum purchase not met"
MINIMUM_QUANTITY_NOT_MET = "minimum quantity not met"
CUSTOMER_NOT_ELIGIBLE = "customer not eligible"
NO_ELIGIBLE_ITEMS = "no eligible items"

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 8


@dataclass
class CartLine:
    product_id: str
    quantity: int
    unit_price: float


@dataclass
class CartContext:
    """
    Optional extra context for validation. Only the subtotal is required;
    the rest is consulted when the discount restricts by it.
    """
    subtotal: float
    item_count: Optional[int] = None
    customer_id: Optional[str] = None
    customer_tags: List[str] = field(default_factory=list)
    is_first_purchase: Optional[bool] = None
    lines: List[CartLine] = field(default_factory=list)


@dataclass
class DiscountValidation:
    valid: bool
    discount: Optional[Discount] = None
    error: Optional[str] = None
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"valid": self.valid, "message": self.message}
        if self.discount is not None:
            out["discount"] = self.discount.model_dump(mode="json", exclude={"redeemed_order_ids"})
        if self.error:
            out["error"] = self.error
        return out


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def generate_code(length: int = CODE_LENGTH) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def _fail(reason: str, discount: Optional[Discount] = None, message: Optional[str] = None) -> DiscountValidation:
    return DiscountValidation(valid=False, discount=discount, error=reason, message=message or reason)


def _eligible(discount: Discount, cart: CartContext) -> bool:
    rule = discount.customer_eligibility
    if rule == CustomerEligibility.EVERYONE:
        return True
    if rule == CustomerEligibility.FIRST_PURCHASE:
        return cart.is_first_purchase is True
    if rule == CustomerEligibility.SPECIFIC_CUSTOMERS:
        return bool(cart.customer_id) and cart.customer_id in discount.customer_ids
    if rule == CustomerEligibility.CUSTOMER_GROUPS:
        return any(t in discount.customer_tags for t in cart.customer_tags)
    raise ValueError(f"Unknown customer eligibility: {rule!r}")


def eligible_lines(discount: Discount, lines: List[CartLine]) -> List[CartLine]:
    """Cart lines the discount applies to. Exclusions win over inclusions."""
    out = []
    for line in lines:
        if line.product_id in discount.exclude_product_ids:
            continue
        if discount.applies_to == DiscountAppliesTo.SPECIFIC_PRODUCTS and line.product_id not in discount.product_ids:
            continue
        out.append(line)
    return out


def eligible_subtotal(discount: Discount, subtotal: float, cart: Optional[CartContext] = None) -> float:
    # without cart lines the whole subtotal is eligible
    if cart is None or not cart.lines:
        return float(subtotal or 0)
    return round_money(sum(float(line.unit_price) * int(line.quantity) for line in eligible_lines(discount, cart.lines)))


def validate_discount(
    discount: Optional[Discount],
    cart_subtotal: float,
    now: Optional[datetime] = None,
    cart: Optional[CartContext] = None,
) -> DiscountValidation:
    """
    Checks in order, first failure wins:
      exists -> is_active -> started -> not ended -> usage cap -> minimum purchase
    then the optional cart-context rules (minimum quantity, customer
    eligibility, at least one line the discount applies to).
    """
    if discount is None:
        return _fail(NOT_FOUND)

    now = as_utc(now or utcnow())

    if not discount.is_active:
        return _fail(INACTIVE, discount)

    if discount.starts_at is not None and now < as_utc(discount.starts_at):
        return _fail(NOT_STARTED, discount)

    if discount.ends_at is not None and now > as_utc(discount.ends_at):
        return _fail(EXPIRED, discount)

    if discount.max_uses is not None and discount.used_count >= discount.max_uses:
        return _fail(USAGE_LIMIT_REACHED, discount)

    if discount.minimum_purchase and float(cart_subtotal) < discount.minimum_purchase:
        return _fail(
            MINIMUM_PURCHASE_NOT_MET,
            discount,
            f"Minimum purchase is {discount.minimum_purchase:.2f}",
        )

    if cart is not None:
        if discount.minimum_quantity and (cart.item_count or 0) < discount.minimum_quantity:
            return _fail(
                MINIMUM_QUANTITY_NOT_MET,
                discount,
                f"At least {discount.minimum_quantity} items required",
            )
        if not _eligible(discount, cart):
            return _fail(CUSTOMER_NOT_ELIGIBLE, discount)
        if cart.lines and not eligible_lines(discount, cart.lines):
            return _fail(NO_ELIGIBLE_ITEMS, discount, "No item in the cart is eligible for this discount")

    return DiscountValidation(valid=True, discount=discount, message=describe(discount))


def calculate_amount(
    discount: Discount,
    subtotal: float,
    shipping_cost: float = 0.0,
    cart: Optional[CartContext] = None,
) -> float:
    """
    Amount taken off the order. Never negative, and a fixed amount never
    exceeds the subtotal it applies to. With cart lines, percentage and
    fixed discounts only count the eligible lines. Free shipping returns
    the shipping cost verbatim.
    """
    subtotal = max(0.0, eligible_subtotal(discount, subtotal, cart))
    shipping_cost = max(0.0, float(shipping_cost or 0))

    if discount.type == DiscountType.PERCENTAGE:
        amount = subtotal * float(discount.value) / 100.0
    elif discount.type == DiscountType.FIXED_AMOUNT:
        amount = min(float(discount.value), subtotal)
    elif discount.type == DiscountType.FREE_SHIPPING:
        amount = shipping_cost
    else:
        amount = 0.0

    return round_money(max(0.0, amount))


def describe(discount: Discount) -> str:
    if discount.type == DiscountType.PERCENTAGE:
        return f"{discount.value:g}% discount applied"
    if discount.type == DiscountType.FIXED_AMOUNT:
        return f"{discount.value:.2f} discount applied"
    if discount.type == DiscountType.FREE_SHIPPING:
        return "Free shipping applied"
    return "Discount applied"
