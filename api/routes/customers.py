# api/routes/customers.py
from typing import Any, Dict, List, Optional

from fastapi import APIRouter
from pydantic import BaseModel

from services import customers, orders

router = APIRouter(prefix="/stores/{store_id}")


class TagsRequest(BaseModel):
    tags: List[str]


@router.get("/customers")
def api_list_customers(store_id: str, search: Optional[str] = None, tag: Optional[str] = None) -> List[Dict[str, Any]]:
    return customers.list_customers(store_id, search=search, tag=tag)


@router.get("/customers/{customer_id}")
def api_get_customer(store_id: str, customer_id: str) -> Dict[str, Any]:
    return customers.get_customer(store_id, customer_id)


@router.get("/customers/{customer_id}/orders")
def api_customer_orders(store_id: str, customer_id: str) -> List[Dict[str, Any]]:
    customers.get_customer(store_id, customer_id)
    return orders.list_orders(store_id, customer_id=customer_id)


@router.put("/customers/{customer_id}/tags")
def api_update_tags(store_id: str, customer_id: str, req: TagsRequest) -> Dict[str, Any]:
    return customers.update_tags(store_id, customer_id, req.tags)
