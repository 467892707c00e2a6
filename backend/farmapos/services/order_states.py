# Overview: Order status enum, transition table and compare-and-swap transitions.

"""
Order State Machine

    pending ──────────┬──> paid
                      ├──> rejected
                      ├──> stock_error
                      └──> gateway_error
    processing_cash ──┬──> paid
    processing_card ──┴──> stock_error

paid, rejected and stock_error are terminal. gateway_error has no outgoing
edge either; it waits for an operator.

Every transition is a conditional UPDATE on the status we observed, so two
paths racing on the same order (a late webhook, a duplicate delivery) can
never both win.
"""

from __future__ import annotations

import enum

from ..extensions import db
from ..models import Order


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING_CASH = "processing_cash"
    PROCESSING_CARD = "processing_card"
    PAID = "paid"
    REJECTED = "rejected"
    STOCK_ERROR = "stock_error"
    GATEWAY_ERROR = "gateway_error"


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    CARD = "card"
    QR = "qr"


class InvalidTransitionError(Exception):
    """Raised when a transition is not an edge of the transition table."""


TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({
        OrderStatus.PAID,
        OrderStatus.REJECTED,
        OrderStatus.STOCK_ERROR,
        OrderStatus.GATEWAY_ERROR,
    }),
    OrderStatus.PROCESSING_CASH: frozenset({OrderStatus.PAID, OrderStatus.STOCK_ERROR}),
    OrderStatus.PROCESSING_CARD: frozenset({OrderStatus.PAID, OrderStatus.STOCK_ERROR}),
    OrderStatus.PAID: frozenset(),
    OrderStatus.REJECTED: frozenset(),
    OrderStatus.STOCK_ERROR: frozenset(),
    OrderStatus.GATEWAY_ERROR: frozenset(),
}

TERMINAL_STATUSES = frozenset({OrderStatus.PAID, OrderStatus.REJECTED, OrderStatus.STOCK_ERROR})

# Statuses in which a gateway notification may still settle the order
GATEWAY_AWAITING_STATUSES = frozenset({OrderStatus.PENDING})


def initial_status(method: PaymentMethod) -> OrderStatus:
    if method == PaymentMethod.QR:
        return OrderStatus.PENDING
    if method == PaymentMethod.CASH:
        return OrderStatus.PROCESSING_CASH
    return OrderStatus.PROCESSING_CARD


def processing_status(method: PaymentMethod) -> OrderStatus:
    if method == PaymentMethod.CASH:
        return OrderStatus.PROCESSING_CASH
    if method == PaymentMethod.CARD:
        return OrderStatus.PROCESSING_CARD
    raise ValueError(f"{method.value} orders are not settled in store")


def can_transition(current: str | OrderStatus, target: str | OrderStatus) -> bool:
    try:
        current = OrderStatus(current)
        target = OrderStatus(target)
    except ValueError:
        return False
    return target in TRANSITIONS[current]


def is_terminal(status: str | OrderStatus) -> bool:
    try:
        return OrderStatus(status) in TERMINAL_STATUSES
    except ValueError:
        return False


def transition_order(order: Order, target: OrderStatus, **values) -> bool:
    """
    Move an order to `target` if it still has the status we observed.

    Returns True when the row was updated, False when another path changed
    the status first (compare-and-swap miss). Does not commit.

    Raises:
        InvalidTransitionError: If observed -> target is not an allowed edge
    """
    observed = order.status
    if not can_transition(observed, target):
        raise InvalidTransitionError(f"Order {order.id}: {observed} -> {OrderStatus(target).value} not allowed")

    values["status"] = OrderStatus(target).value
    updated = (
        db.session.query(Order)
        .filter(Order.id == order.id, Order.status == observed)
        .update(values, synchronize_session="fetch")
    )
    return updated == 1
