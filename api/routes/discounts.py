# api/routes/discounts.py
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from core.discount_engine import CartContext, CartLine, generate_code
from services import customers, discounts

router = APIRouter(prefix="/stores/{store_id}")


class DiscountCreateRequest(BaseModel):
    code: Optional[str] = None  # generated when missing
    type: str
    value: float = Field(0, ge=0)
    description: Optional[str] = None
    minimum_purchase: Optional[float] = Field(None, ge=0)
    minimum_quantity: Optional[int] = Field(None, ge=0)
    max_uses: Optional[int] = Field(None, ge=0)
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    is_active: bool = True
    customer_eligibility: Optional[str] = None
    customer_ids: Optional[List[str]] = None
    customer_tags: Optional[List[str]] = None
    applies_to: Optional[str] = None
    product_ids: Optional[List[str]] = None
    exclude_product_ids: Optional[List[str]] = None


class DiscountUpdateRequest(BaseModel):
    type: Optional[str] = None
    value: Optional[float] = Field(None, ge=0)
    description: Optional[str] = None
    minimum_purchase: Optional[float] = Field(None, ge=0)
    minimum_quantity: Optional[int] = Field(None, ge=0)
    max_uses: Optional[int] = Field(None, ge=0)
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    is_active: Optional[bool] = None
    customer_eligibility: Optional[str] = None
    customer_ids: Optional[List[str]] = None
    customer_tags: Optional[List[str]] = None
    applies_to: Optional[str] = None
    product_ids: Optional[List[str]] = None
    exclude_product_ids: Optional[List[str]] = None


class CartLineRequest(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    unit_price: float = Field(..., ge=0)


class ValidateCodeRequest(BaseModel):
    code: str
    subtotal: float = Field(..., ge=0)
    item_count: Optional[int] = None
    customer_email: Optional[str] = None
    items: Optional[List[CartLineRequest]] = None


@router.get("/discounts")
def api_list_discounts(store_id: str, active: Optional[bool] = None) -> List[Dict[str, Any]]:
    return discounts.list_discounts(store_id, active=active)


@router.post("/discounts")
def api_create_discount(store_id: str, req: DiscountCreateRequest) -> Dict[str, Any]:
    return discounts.create_discount(store_id, req.model_dump(mode="json", exclude_none=True))


@router.get("/discounts/generate-code")
def api_generate_code(store_id: str) -> Dict[str, Any]:
    return {"code": generate_code()}


@router.post("/discounts/validate")
def api_validate_code(store_id: str, req: ValidateCodeRequest) -> Dict[str, Any]:
    cart = None
    if req.item_count is not None or req.customer_email or req.items:
        customer = customers.get_customer_by_email(store_id, req.customer_email) if req.customer_email else None
        cart = CartContext(
            subtotal=req.subtotal,
            item_count=req.item_count if req.item_count is not None else sum(i.quantity for i in req.items or []),
            customer_id=customer["id"] if customer else None,
            customer_tags=list((customer or {}).get("tags") or []),
            is_first_purchase=customers.is_first_purchase(customer),
            lines=[CartLine(i.product_id, i.quantity, i.unit_price) for i in req.items or []],
        )
    result = discounts.validate_code(store_id, req.code, req.subtotal, cart=cart)
    out = result.to_dict()
    if result.valid:
        out["discount_amount"] = discounts.calculate_amount(result.discount, req.subtotal, cart=cart)
    return out


@router.get("/discounts/{discount_id}")
def api_get_discount(store_id: str, discount_id: str) -> Dict[str, Any]:
    return discounts.get_discount(store_id, discount_id)


@router.patch("/discounts/{discount_id}")
def api_update_discount(store_id: str, discount_id: str, req: DiscountUpdateRequest) -> Dict[str, Any]:
    return discounts.update_discount(store_id, discount_id, req.model_dump(mode="json", exclude_unset=True))


@router.delete("/discounts/{discount_id}")
def api_delete_discount(store_id: str, discount_id: str) -> Dict[str, Any]:
    return {"ok": discounts.delete_discount(store_id, discount_id), "id": discount_id}
