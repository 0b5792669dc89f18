# services/analytics_service.py
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from core import analytics
from core.errors import ValidationError
from core.schemas import Customer, Order, Product
from services.document_store import DocumentStore
from services.store import get_store

logger = logging.getLogger("storefront.analytics")


def load_snapshot(store_id: str, store: Optional[DocumentStore] = None) -> Tuple[List[Order], List[Product], List[Customer]]:
    """Reads every order/product/customer of a store. Derived numbers are rebuilt from this each time."""
    store = store or get_store()
    orders = [Order.model_validate(d) for d in store.find("orders", store_id)]
    products = [Product.model_validate(d) for d in store.find("products", store_id)]
    customers = [Customer.model_validate(d) for d in store.find("customers", store_id)]
    return orders, products, customers


def summary(
    store_id: str,
    now: Optional[datetime] = None,
    period_days: int = 30,
    store: Optional[DocumentStore] = None,
) -> Dict[str, Any]:
    if period_days < 1:
        raise ValidationError("invalid period", "period_days must be at least 1")
    orders, products, customers = load_snapshot(store_id, store=store)
    out = analytics.build_summary(orders, products, customers, now=now, period_days=period_days)
    logger.debug(f"Analytics summary store={store_id} orders={len(orders)}")
    return out


def compare(store_id: str, start: datetime, end: datetime, store: Optional[DocumentStore] = None) -> Dict[str, Any]:
    orders, _, _ = load_snapshot(store_id, store=store)
    try:
        return analytics.compare_with_previous_period(orders, start, end)
    except ValueError as e:
        raise ValidationError("invalid period", str(e))
