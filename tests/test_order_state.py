# tests/test_order_state.py
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from core import order_state
from core.errors import ValidationError
from core.schemas import OrderStatus

S = OrderStatus

ALLOWED = {
    (S.PENDING, S.PAID), (S.PENDING, S.CANCELLED),
    (S.PAID, S.PROCESSING), (S.PAID, S.CANCELLED), (S.PAID, S.REFUNDED),
    (S.PROCESSING, S.SHIPPED), (S.PROCESSING, S.CANCELLED), (S.PROCESSING, S.REFUNDED),
    (S.SHIPPED, S.DELIVERED), (S.SHIPPED, S.REFUNDED),
    (S.DELIVERED, S.REFUNDED),
}


def test_only_adjacency_transitions_are_allowed():
    for src in S:
        for dst in S:
            assert order_state.can_transition(src, dst) == ((src, dst) in ALLOWED), (src, dst)


def test_assert_transition_rejects_with_context():
    with pytest.raises(ValidationError) as ei:
        order_state.assert_transition("delivered", "pending")
    assert ei.value.reason == "invalid transition"
    assert ei.value.extra["current"] == "delivered"
    assert ei.value.extra["target"] == "pending"


def test_terminal_states():
    assert order_state.TERMINAL == frozenset({S.CANCELLED, S.REFUNDED})


def test_unknown_status_is_rejected_not_defaulted():
    with pytest.raises(ValidationError) as ei:
        order_state.parse_status("lost_in_transit")
    assert ei.value.reason == "unknown status"
    assert order_state.parse_status(" Paid ") == S.PAID


def test_effects_per_transition():
    assert order_state.effects_for(S.PENDING, S.PAID) == [
        order_state.EFFECT_INVENTORY_DECREMENT,
        order_state.EFFECT_DISCOUNT_USAGE,
        order_state.EFFECT_CUSTOMER_CREDIT,
        order_state.EFFECT_NOTIFY,
    ]
    # nothing was taken from stock yet
    assert order_state.effects_for(S.PENDING, S.CANCELLED) == [order_state.EFFECT_NOTIFY]
    assert order_state.effects_for(S.PROCESSING, S.CANCELLED) == [
        order_state.EFFECT_INVENTORY_RESTOCK,
        order_state.EFFECT_CUSTOMER_SPENT_REVERSAL,
        order_state.EFFECT_NOTIFY,
    ]
    # refunds do not restock
    assert order_state.EFFECT_INVENTORY_RESTOCK not in order_state.effects_for(S.DELIVERED, S.REFUNDED)
    assert order_state.effects_for(S.SHIPPED, S.DELIVERED) == [order_state.EFFECT_NOTIFY]
