# core/analytics.py
"""
Derived ecommerce metrics.

Every function here is pure: it takes an in-memory snapshot of orders /
customers and scans it (O(n), no indexes). Results are recomputable at any
time and are never written back as source of truth.
"""
from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from core.schemas import (
    Customer,
    Order,
    OrderStatus,
    PaymentStatus,
    Product,
    as_utc,
    round_money,
    utcnow,
)

TOP_PRODUCTS_LIMIT = 10


def paid_orders(orders: Iterable[Order]) -> List[Order]:
    return [o for o in orders if o.payment_status == PaymentStatus.PAID]


def total_revenue(orders: Iterable[Order]) -> float:
    return round_money(sum(o.total for o in paid_orders(orders)))


def average_order_value(orders: Iterable[Order]) -> float:
    paid = paid_orders(orders)
    if not paid:
        return 0.0
    return round_money(sum(o.total for o in paid) / len(paid))


def _bucketed(orders: Iterable[Order], fmt: str, key_name: str) -> List[Dict[str, Any]]:
    buckets: Dict[str, Dict[str, float]] = defaultdict(lambda: {"revenue": 0.0, "orders": 0})
    for o in paid_orders(orders):
        if o.created_at is None:
            continue
        key = as_utc(o.created_at).strftime(fmt)
        buckets[key]["revenue"] += o.total
        buckets[key]["orders"] += 1

    return [
        {key_name: k, "revenue": round_money(v["revenue"]), "orders": int(v["orders"])}
        for k, v in sorted(buckets.items())
    ]


def revenue_by_day(orders: Iterable[Order]) -> List[Dict[str, Any]]:
    return _bucketed(orders, "%Y-%m-%d", "date")


def revenue_by_month(orders: Iterable[Order]) -> List[Dict[str, Any]]:
    return _bucketed(orders, "%Y-%m", "month")


def top_products(orders: Iterable[Order], limit: int = TOP_PRODUCTS_LIMIT) -> List[Dict[str, Any]]:
    stats: Dict[str, Dict[str, Any]] = {}
    for o in paid_orders(orders):
        for item in o.items:
            row = stats.setdefault(
                item.product_id,
                {"product_id": item.product_id, "product_name": item.name, "total_sold": 0, "revenue": 0.0},
            )
            row["total_sold"] += item.quantity
            row["revenue"] += item.total_price
            if not row["product_name"] and item.name:
                row["product_name"] = item.name

    ranked = sorted(stats.values(), key=lambda r: r["total_sold"], reverse=True)[:limit]
    for r in ranked:
        r["revenue"] = round_money(r["revenue"])
    return ranked


def orders_by_status(orders: Iterable[Order]) -> Dict[str, int]:
    counts = {s.value: 0 for s in OrderStatus}
    for o in orders:
        counts[o.status.value] += 1
    return counts


def _rate(part: int, whole: int) -> float:
    if whole == 0:
        return 0.0
    return round(part / whole * 100.0, 2)


def conversion_rate(orders: Iterable[Order]) -> float:
    orders = list(orders)
    return _rate(len(paid_orders(orders)), len(orders))


def cancellation_rate(orders: Iterable[Order]) -> float:
    orders = list(orders)
    cancelled = sum(1 for o in orders if o.status == OrderStatus.CANCELLED)
    return _rate(cancelled, len(orders))


def top_customers(customers: Iterable[Customer], limit: int = 5) -> List[Dict[str, Any]]:
    ranked = sorted(customers, key=lambda c: c.total_spent, reverse=True)[:limit]
    return [
        {
            "customer_id": c.id,
            "email": c.email,
            "name": f"{c.first_name} {c.last_name}".strip(),
            "total_orders": c.total_orders,
            "total_spent": round_money(c.total_spent),
        }
        for c in ranked
    ]


def percent_change(current: float, previous: float) -> float:
    if previous == 0:
        return 100.0 if current > 0 else 0.0
    return round((current - previous) / previous * 100.0, 2)


def _in_window(o: Order, start: datetime, end: datetime) -> bool:
    if o.created_at is None:
        return False
    ts = as_utc(o.created_at)
    return start <= ts < end


def compare_with_previous_period(orders: Iterable[Order], start: datetime, end: datetime) -> Dict[str, Any]:
    """
    Compares [start, end) with the equally long period right before start.
    Revenue counts paid orders; the order count includes every order created
    in the window.
    """
    start, end = as_utc(start), as_utc(end)
    if end <= start:
        raise ValueError("end must be after start")

    orders = list(orders)
    prev_start = start - (end - start)

    current = [o for o in orders if _in_window(o, start, end)]
    previous = [o for o in orders if _in_window(o, prev_start, start)]

    cur_rev, prev_rev = total_revenue(current), total_revenue(previous)
    return {
        "current_revenue": cur_rev,
        "previous_revenue": prev_rev,
        "revenue_change": percent_change(cur_rev, prev_rev),
        "current_orders": len(current),
        "previous_orders": len(previous),
        "orders_change": percent_change(len(current), len(previous)),
        "previous_start": prev_start.isoformat(),
        "start": start.isoformat(),
        "end": end.isoformat(),
    }


def build_summary(
    orders: List[Order],
    products: List[Product],
    customers: List[Customer],
    now: Optional[datetime] = None,
    period_days: int = 30,
) -> Dict[str, Any]:
    end = as_utc(now or utcnow())
    start = end - timedelta(days=period_days)
    return {
        "total_revenue": total_revenue(orders),
        "total_orders": len(orders),
        "paid_orders": len(paid_orders(orders)),
        "total_customers": len(customers),
        "total_products": len(products),
        "average_order_value": average_order_value(orders),
        "conversion_rate": conversion_rate(orders),
        "cancellation_rate": cancellation_rate(orders),
        "orders_by_status": orders_by_status(orders),
        "revenue_by_day": revenue_by_day(orders),
        "revenue_by_month": revenue_by_month(orders),
        "top_products": top_products(orders),
        "top_customers": top_customers(customers),
        "comparison": compare_with_previous_period(orders, start, end),
    }
