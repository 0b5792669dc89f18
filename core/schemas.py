# core/schemas.py
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


# ============================================================
# Helpers
# ============================================================
def utcnow() -> datetime:
    # datetime UTC with tzinfo
    return datetime.now(timezone.utc)


def utcnow_iso() -> str:
    return utcnow().isoformat()


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def round_money(amount: float) -> float:
    return round(float(amount or 0) + 0.0, 2)


# ============================================================
# Enums (unknown values are rejected by pydantic, never defaulted)
# ============================================================
class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"
    FREE_SHIPPING = "free_shipping"


class DiscountAppliesTo(str, Enum):
    ALL = "all"
    SPECIFIC_PRODUCTS = "specific_products"


class CustomerEligibility(str, Enum):
    EVERYONE = "everyone"
    FIRST_PURCHASE = "first_purchase"
    SPECIFIC_CUSTOMERS = "specific_customers"
    CUSTOMER_GROUPS = "customer_groups"


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class ProductStatus(str, Enum):
    ACTIVE = "active"
    DRAFT = "draft"
    ARCHIVED = "archived"


class InventoryChange(str, Enum):
    SALE = "sale"
    RESTOCK = "restock"
    ADJUSTMENT = "adjustment"


# ============================================================
# Documents
# ============================================================
class StoreDocument(BaseModel):
    """
    Fields every stored document carries. `version` is the optimistic-lock
    token; it is bumped by the store on every write.
    """
    id: Optional[str] = None
    store_id: str
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Product(StoreDocument):
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(0, ge=0)
    track_inventory: bool = True
    low_stock_threshold: Optional[int] = Field(None, ge=0)
    sku: Optional[str] = None
    status: ProductStatus = ProductStatus.ACTIVE


class Discount(StoreDocument):
    code: str
    type: DiscountType
    value: float = Field(0, ge=0)
    description: Optional[str] = None

    minimum_purchase: Optional[float] = Field(None, ge=0)
    minimum_quantity: Optional[int] = Field(None, ge=0)
    max_uses: Optional[int] = Field(None, ge=0)
    used_count: int = Field(0, ge=0)

    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    is_active: bool = True

    customer_eligibility: CustomerEligibility = CustomerEligibility.EVERYONE
    customer_ids: List[str] = Field(default_factory=list)
    customer_tags: List[str] = Field(default_factory=list)

    applies_to: DiscountAppliesTo = DiscountAppliesTo.ALL
    product_ids: List[str] = Field(default_factory=list)
    exclude_product_ids: List[str] = Field(default_factory=list)

    # orders whose usage was already counted
    redeemed_order_ids: List[str] = Field(default_factory=list)

    @field_validator("code")
    @classmethod
    def _normalize_code(cls, v: str) -> str:
        code = (v or "").strip().upper()
        if not code:
            raise ValueError("code must not be empty")
        return code

    @model_validator(mode="after")
    def _check_value(self) -> "Discount":
        if self.type == DiscountType.PERCENTAGE and self.value > 100:
            raise ValueError("percentage discounts cannot exceed 100")
        if self.starts_at and self.ends_at and as_utc(self.ends_at) < as_utc(self.starts_at):
            raise ValueError("ends_at must be after starts_at")
        if self.max_uses is not None and self.used_count > self.max_uses:
            raise ValueError(f"max_uses cannot be below used_count ({self.used_count})")
        if self.applies_to == DiscountAppliesTo.SPECIFIC_PRODUCTS and not self.product_ids:
            raise ValueError("product_ids required when applies_to is specific_products")
        return self


class OrderItem(BaseModel):
    product_id: str
    name: str = ""
    quantity: int = Field(..., ge=1)
    unit_price: float = Field(..., ge=0)
    total_price: float = Field(0, ge=0)

    @model_validator(mode="after")
    def _fill_total(self) -> "OrderItem":
        if not self.total_price:
            self.total_price = round_money(self.unit_price * self.quantity)
        return self


class Order(StoreDocument):
    order_number: str
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING

    items: List[OrderItem] = Field(default_factory=list)
    subtotal: float = Field(0, ge=0)
    discount_amount: float = Field(0, ge=0)
    discount_code: Optional[str] = None
    discount_id: Optional[str] = None
    shipping_cost: float = Field(0, ge=0)
    total: float = Field(0, ge=0)

    customer_id: Optional[str] = None
    customer_email: Optional[str] = None

    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    tracking_url: Optional[str] = None
    tracking_code: Optional[str] = None

    # side-effect bookkeeping: applied effects + effects still owed
    effects: Dict[str, bool] = Field(default_factory=dict)
    pending_effects: List[str] = Field(default_factory=list)
    status_history: List[Dict[str, Any]] = Field(default_factory=list)
    last_payment_error: Optional[str] = None

    paid_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None


class Customer(StoreDocument):
    email: str
    first_name: str = ""
    last_name: str = ""
    total_orders: int = Field(0, ge=0)
    total_spent: float = 0.0
    last_order_at: Optional[datetime] = None
    addresses: List[Dict[str, Any]] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)

    order_ids: List[str] = Field(default_factory=list)
    refunded_order_ids: List[str] = Field(default_factory=list)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, v: str) -> str:
        email = (v or "").strip().lower()
        if "@" not in email:
            raise ValueError("invalid email")
        return email


class StockSubscription(StoreDocument):
    product_id: str
    product_name: str = ""
    email: str
    notified: bool = False
    notified_at: Optional[datetime] = None


class InventoryLog(StoreDocument):
    product_id: str
    type: InventoryChange
    quantity: int
    previous_quantity: int
    new_quantity: int
    order_id: Optional[str] = None
    reason: Optional[str] = None


def dump(model: BaseModel) -> Dict[str, Any]:
    """Document dict as stored (JSON-safe: enums -> str, datetimes -> ISO)."""
    return model.model_dump(mode="json")
