# api/routes/products.py
from typing import Any, Dict, List, Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from services import inventory

router = APIRouter(prefix="/stores/{store_id}")


class ProductCreateRequest(BaseModel):
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(0, ge=0)
    track_inventory: bool = True
    low_stock_threshold: Optional[int] = Field(None, ge=0)
    sku: Optional[str] = None
    status: str = "active"


class ProductUpdateRequest(BaseModel):
    name: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    track_inventory: Optional[bool] = None
    low_stock_threshold: Optional[int] = Field(None, ge=0)
    sku: Optional[str] = None
    status: Optional[str] = None


class StockAdjustRequest(BaseModel):
    delta: Optional[int] = None
    set_to: Optional[int] = None
    reason: Optional[str] = None


class SubscribeRequest(BaseModel):
    email: str


@router.get("/products")
def api_list_products(store_id: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
    return inventory.list_products(store_id, status=status)


@router.post("/products")
def api_create_product(store_id: str, req: ProductCreateRequest) -> Dict[str, Any]:
    return inventory.create_product(store_id, req.model_dump())


# static paths first so they are not taken for a product id
@router.get("/products/low-stock")
def api_low_stock(store_id: str, include_out_of_stock: bool = True) -> List[Dict[str, Any]]:
    return inventory.low_stock(inventory.list_products(store_id), include_out_of_stock=include_out_of_stock)


@router.get("/products/out-of-stock")
def api_out_of_stock(store_id: str) -> List[Dict[str, Any]]:
    return inventory.out_of_stock(inventory.list_products(store_id))


@router.get("/products/{product_id}")
def api_get_product(store_id: str, product_id: str) -> Dict[str, Any]:
    return inventory.get_product(store_id, product_id)


@router.patch("/products/{product_id}")
def api_update_product(store_id: str, product_id: str, req: ProductUpdateRequest) -> Dict[str, Any]:
    return inventory.update_product(store_id, product_id, req.model_dump(exclude_unset=True))


@router.delete("/products/{product_id}")
def api_delete_product(store_id: str, product_id: str) -> Dict[str, Any]:
    return {"ok": inventory.delete_product(store_id, product_id), "id": product_id}


@router.post("/products/{product_id}/stock")
def api_adjust_stock(store_id: str, product_id: str, req: StockAdjustRequest) -> Dict[str, Any]:
    return inventory.adjust_stock(store_id, product_id, delta=req.delta, set_to=req.set_to, reason=req.reason)


@router.get("/products/{product_id}/subscriptions")
def api_list_subscriptions(store_id: str, product_id: str, pending_only: bool = False) -> List[Dict[str, Any]]:
    return inventory.list_subscriptions(store_id, product_id=product_id, pending_only=pending_only)


@router.post("/products/{product_id}/subscriptions")
def api_subscribe(store_id: str, product_id: str, req: SubscribeRequest) -> Dict[str, Any]:
    return inventory.subscribe(store_id, product_id, req.email)


@router.get("/subscriptions")
def api_all_subscriptions(store_id: str, pending_only: bool = False) -> List[Dict[str, Any]]:
    return inventory.list_subscriptions(store_id, pending_only=pending_only)


@router.delete("/subscriptions/{subscription_id}")
def api_unsubscribe(store_id: str, subscription_id: str) -> Dict[str, Any]:
    return {"ok": inventory.unsubscribe(store_id, subscription_id), "id": subscription_id}


@router.get("/inventory/logs")
def api_inventory_logs(
    store_id: str,
    product_id: Optional[str] = None,
    order_id: Optional[str] = None,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    return inventory.list_inventory_logs(store_id, product_id=product_id, order_id=order_id, limit=limit)
