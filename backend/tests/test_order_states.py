import pytest

from farmapos.extensions import db
from farmapos.models import Order
from farmapos.services.order_states import (
    InvalidTransitionError,
    OrderStatus,
    PaymentMethod,
    can_transition,
    initial_status,
    is_terminal,
    processing_status,
    transition_order,
)


def _order(pharmacy, status):
    order = Order(
        pharmacy_id=pharmacy.id,
        description="test",
        total_cents=1000,
        requested_method="qr",
        status=status.value,
    )
    db.session.add(order)
    db.session.commit()
    return order


def test_initial_status_per_method():
    assert initial_status(PaymentMethod.QR) == OrderStatus.PENDING
    assert initial_status(PaymentMethod.CASH) == OrderStatus.PROCESSING_CASH
    assert initial_status(PaymentMethod.CARD) == OrderStatus.PROCESSING_CARD


def test_qr_orders_have_no_processing_status():
    assert processing_status(PaymentMethod.CASH) == OrderStatus.PROCESSING_CASH
    with pytest.raises(ValueError):
        processing_status(PaymentMethod.QR)


@pytest.mark.parametrize("target", [
    OrderStatus.PAID, OrderStatus.REJECTED, OrderStatus.STOCK_ERROR, OrderStatus.GATEWAY_ERROR,
])
def test_pending_can_reach_every_outcome(target):
    assert can_transition(OrderStatus.PENDING, target)


def test_processing_cannot_be_rejected():
    assert can_transition("processing_cash", "paid")
    assert can_transition("processing_card", "stock_error")
    assert not can_transition("processing_cash", "rejected")
    assert not can_transition("processing_card", "gateway_error")


@pytest.mark.parametrize("status", ["paid", "rejected", "stock_error", "gateway_error"])
def test_final_statuses_have_no_outgoing_edges(status):
    for target in OrderStatus:
        assert not can_transition(status, target)


def test_terminal_statuses():
    assert is_terminal("paid")
    assert is_terminal(OrderStatus.STOCK_ERROR)
    assert not is_terminal("pending")
    assert not is_terminal("gateway_error")
    assert not is_terminal("bogus")


def test_unknown_status_cannot_transition():
    assert not can_transition("bogus", "paid")


def test_transition_updates_row(db_session, pharmacy):
    order = _order(pharmacy, OrderStatus.PENDING)

    assert transition_order(order, OrderStatus.PAID, gateway_payment_id="123") is True
    db_session.commit()

    db_session.expire_all()
    reloaded = db_session.query(Order).get(order.id)
    assert reloaded.status == "paid"
    assert reloaded.gateway_payment_id == "123"


def test_transition_misses_when_status_changed_underneath(db_session, pharmacy):
    order = _order(pharmacy, OrderStatus.PENDING)
    assert order.status == "pending"

    # Another path finalises the order after we observed it
    db_session.query(Order).filter_by(id=order.id).update(
        {"status": "rejected"}, synchronize_session=False
    )

    assert transition_order(order, OrderStatus.PAID) is False
    db_session.commit()

    db_session.expire_all()
    assert db_session.query(Order).get(order.id).status == "rejected"


def test_transition_rejects_edges_outside_table(db_session, pharmacy):
    order = _order(pharmacy, OrderStatus.PAID)

    with pytest.raises(InvalidTransitionError):
        transition_order(order, OrderStatus.REJECTED)
