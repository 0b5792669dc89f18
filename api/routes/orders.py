# api/routes/orders.py
from typing import Any, Dict, List, Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from core.settings import settings
from services import orders
from services.queue import get_queue

router = APIRouter(prefix="/stores/{store_id}")


class CheckoutItem(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)


class CheckoutRequest(BaseModel):
    items: List[CheckoutItem]
    customer_email: str
    first_name: str = ""
    last_name: str = ""
    shipping_address: Optional[Dict[str, Any]] = None
    shipping_cost: float = Field(0, ge=0)
    discount_code: Optional[str] = None


class TransitionRequest(BaseModel):
    status: str
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    tracking_url: Optional[str] = None
    reason: Optional[str] = None


class ReasonRequest(BaseModel):
    reason: Optional[str] = None


class ShipRequest(BaseModel):
    tracking_number: str
    carrier: Optional[str] = None
    tracking_url: Optional[str] = None


@router.post("/orders")
def api_checkout(store_id: str, req: CheckoutRequest) -> Dict[str, Any]:
    return orders.create_order(
        store_id,
        items=[i.model_dump() for i in req.items],
        customer_email=req.customer_email,
        first_name=req.first_name,
        last_name=req.last_name,
        shipping_address=req.shipping_address,
        shipping_cost=req.shipping_cost,
        discount_code=req.discount_code,
    )


@router.get("/orders")
def api_list_orders(
    store_id: str,
    status: Optional[str] = None,
    customer_id: Optional[str] = None,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    return orders.list_orders(store_id, status=status, customer_id=customer_id, limit=limit)


@router.get("/orders/track")
def api_track_order(store_id: str, order_number: str, email: str) -> Dict[str, Any]:
    return orders.track_order(store_id, order_number, email)


@router.get("/orders/unreconciled")
def api_unreconciled(store_id: str) -> List[Dict[str, Any]]:
    return orders.find_unreconciled(store_id)


@router.post("/orders/reconcile")
def api_reconcile_store(store_id: str, background: bool = False) -> Dict[str, Any]:
    # background sweep through the worker when a queue is configured
    if background and settings.HAS_QUEUE:
        job = get_queue().enqueue("workers.jobs.reconcile_store", store_id)
        return {"ok": True, "queued": True, "job_id": job.id, "store_id": store_id}
    return orders.reconcile_store(store_id)


@router.get("/orders/{order_id}")
def api_get_order(store_id: str, order_id: str) -> Dict[str, Any]:
    return orders.get_order(store_id, order_id)


@router.post("/orders/{order_id}/transition")
def api_transition(store_id: str, order_id: str, req: TransitionRequest) -> Dict[str, Any]:
    tracking = None
    if req.tracking_number:
        tracking = {"tracking_number": req.tracking_number, "carrier": req.carrier, "tracking_url": req.tracking_url}
    return orders.transition(store_id, order_id, req.status, tracking=tracking, reason=req.reason)


@router.post("/orders/{order_id}/cancel")
def api_cancel(store_id: str, order_id: str, req: ReasonRequest = ReasonRequest()) -> Dict[str, Any]:
    return orders.cancel_order(store_id, order_id, reason=req.reason)


@router.post("/orders/{order_id}/refund")
def api_refund(store_id: str, order_id: str, req: ReasonRequest = ReasonRequest()) -> Dict[str, Any]:
    return orders.refund_order(store_id, order_id, reason=req.reason)


@router.post("/orders/{order_id}/ship")
def api_ship(store_id: str, order_id: str, req: ShipRequest) -> Dict[str, Any]:
    return orders.ship_order(
        store_id, order_id, req.tracking_number, carrier=req.carrier, tracking_url=req.tracking_url
    )


@router.post("/orders/{order_id}/reconcile")
def api_reconcile_order(store_id: str, order_id: str) -> Dict[str, Any]:
    return orders.reconcile_order(store_id, order_id)
