# core/order_state.py
from __future__ import annotations

from typing import Dict, FrozenSet, List, Union

from core.errors import ValidationError
from core.schemas import OrderStatus

S = OrderStatus

# ============================================================
# Adjacency: forward path + cancelled/refunded exits
# ============================================================
TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    S.PENDING: frozenset({S.PAID, S.CANCELLED}),
    S.PAID: frozenset({S.PROCESSING, S.CANCELLED, S.REFUNDED}),
    S.PROCESSING: frozenset({S.SHIPPED, S.CANCELLED, S.REFUNDED}),
    S.SHIPPED: frozenset({S.DELIVERED, S.REFUNDED}),
    S.DELIVERED: frozenset({S.REFUNDED}),
    S.CANCELLED: frozenset(),
    S.REFUNDED: frozenset(),
}

# states in which stock for the order has been taken out of inventory
STOCK_COMMITTED: FrozenSet[OrderStatus] = frozenset({S.PAID, S.PROCESSING, S.SHIPPED, S.DELIVERED})

TERMINAL: FrozenSet[OrderStatus] = frozenset(s for s, nxt in TRANSITIONS.items() if not nxt)

# side effects owed by entering a state
EFFECT_INVENTORY_DECREMENT = "inventory_decrement"
EFFECT_DISCOUNT_USAGE = "discount_usage"
EFFECT_CUSTOMER_CREDIT = "customer_credit"
EFFECT_INVENTORY_RESTOCK = "inventory_restock"
EFFECT_CUSTOMER_SPENT_REVERSAL = "customer_spent_reversal"
EFFECT_NOTIFY = "notify"


def parse_status(value: Union[str, OrderStatus]) -> OrderStatus:
    if isinstance(value, OrderStatus):
        return value
    try:
        return OrderStatus((value or "").strip().lower())
    except ValueError:
        raise ValidationError("unknown status", f"Unknown order status: {value!r}")


def allowed_targets(current: Union[str, OrderStatus]) -> FrozenSet[OrderStatus]:
    return TRANSITIONS[parse_status(current)]


def can_transition(current: Union[str, OrderStatus], target: Union[str, OrderStatus]) -> bool:
    return parse_status(target) in allowed_targets(current)


def assert_transition(current: Union[str, OrderStatus], target: Union[str, OrderStatus]) -> OrderStatus:
    src = parse_status(current)
    dst = parse_status(target)
    if dst not in TRANSITIONS[src]:
        raise ValidationError(
            "invalid transition",
            f"Cannot move order from {src.value} to {dst.value}",
            current=src.value,
            target=dst.value,
        )
    return dst


def effects_for(current: OrderStatus, target: OrderStatus) -> List[str]:
    """
    Side effects a transition owes, in the order they must be applied.
    """
    effects: List[str] = []
    if target == S.PAID:
        effects += [EFFECT_INVENTORY_DECREMENT, EFFECT_DISCOUNT_USAGE, EFFECT_CUSTOMER_CREDIT]
    elif target == S.CANCELLED and current in STOCK_COMMITTED:
        effects += [EFFECT_INVENTORY_RESTOCK, EFFECT_CUSTOMER_SPENT_REVERSAL]
    elif target == S.REFUNDED:
        effects += [EFFECT_CUSTOMER_SPENT_REVERSAL]
    effects.append(EFFECT_NOTIFY)
    return effects
