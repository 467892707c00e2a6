# Overview: Order reconciliation; submission, in-store settlement, QR checkout and gateway notifications.

"""
Order Reconciliation Service

WHY: A sale reaches a final state through one of two paths:
- cash/card: settled immediately in store (stock deduction, then paid)
- qr: a gateway preference is created now, the payment outcome arrives
  later through a webhook
Both paths share the same idempotent stock deduction and the same
compare-and-swap transitions, so a duplicate or late notification can never
settle an order twice or revive a terminal one.

DESIGN PRINCIPLES:
- The gateway client is passed in by the caller (route, CLI, test)
- No lock is held across a gateway call: payments are fetched first, then
  applied inside a short unit of work
- Failures after the order exists are appended to its notes, never dropped
- Orders never stay in processing_* after the request that created them
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import Order, OrderLine, Pharmacy, Prescription
from ..time_utils import utcnow, to_utc_z
from ..validation import OrderRequest
from .concurrency import begin_write_transaction, lock_for_update, run_with_retry
from .mercado_pago import (
    GatewayError,
    PaymentDetails,
    MP_STATUS_APPROVED,
    MP_REJECTION_STATUSES,
)
from .notes_service import (
    append_note,
    record_note,
    NOTE_AMOUNT_MISMATCH,
    NOTE_GATEWAY_ERROR,
    NOTE_GATEWAY_PAYMENT,
    NOTE_PAID_STOCK_FAILED,
    NOTE_PRESCRIPTION_FAILED,
    NOTE_PRESCRIPTION_UPDATED,
    NOTE_SETTLEMENT_FAILED,
    NOTE_STOCK_DEDUCTED,
    NOTE_STOCK_FAILED,
)
from .order_states import (
    GATEWAY_AWAITING_STATUSES,
    OrderStatus,
    PaymentMethod,
    initial_status,
    processing_status,
    transition_order,
)
from .prescription_service import PrescriptionError, record_dispensing
from .stock_service import StockFailure, deduct_stock_for_order


class OrderError(Exception):
    """Raised for order operation errors."""
    def __init__(self, message: str, details: dict | None = None, status_code: int = 400):
        super().__init__(message)
        self.details = details or {}
        self.status_code = status_code


class OrderNotFoundError(OrderError):
    def __init__(self, message: str):
        super().__init__(message, status_code=404)


class SettlementError(OrderError):
    """The in-store settlement unit of work could not be committed."""
    def __init__(self, message: str, order_id: int):
        super().__init__(message, details={"order_id": order_id}, status_code=500)
        self.order_id = order_id


@dataclass
class OrderOutcome:
    order: Order
    redirect_url: str | None = None
    preference_id: str | None = None
    stock_failures: list[StockFailure] = field(default_factory=list)
    gateway_error: GatewayError | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        return self.order.status


# Notification outcomes
NOTIFICATION_IGNORED = "ignored"    # not a payment notification
NOTIFICATION_SKIPPED = "skipped"    # could not be resolved, nothing changed
NOTIFICATION_NOOP = "noop"          # resolved, but no transition applies
NOTIFICATION_APPLIED = "applied"    # order transitioned


@dataclass
class NotificationOutcome:
    action: str
    reason: str | None = None
    order_id: int | None = None
    status: str | None = None
    warnings: list[str] = field(default_factory=list)


# =============================================================================
# ORDER SUBMISSION
# =============================================================================

def submit_order(request: OrderRequest, gateway) -> OrderOutcome:
    """
    Create an order and drive it as far as it can go in this request.

    Args:
        request: Validated order payload
        gateway: Payment gateway client (MercadoPagoClient or compatible)

    Returns:
        OrderOutcome; outcome.status is paid, stock_error, pending (qr,
        redirect_url set) or gateway_error

    Raises:
        OrderError: Unknown pharmacy/prescription (nothing persisted)
        SettlementError: Settlement could not be committed
        SQLAlchemyError: The order itself could not be created
    """
    pharmacy = db.session.query(Pharmacy).get(request.pharmacy_id)
    if pharmacy is None or not pharmacy.is_active:
        raise OrderNotFoundError(f"Pharmacy {request.pharmacy_id} not found")

    if request.prescription_update is not None:
        prescription = db.session.query(Prescription).get(request.prescription_update.prescription_id)
        if prescription is None:
            raise OrderError(f"Prescription {request.prescription_update.prescription_id} not found")

    order = _create_order(request)
    current_app.logger.info(
        "Order %s created (%s, pharmacy %s, %s items, %s cents)",
        order.id, order.status, order.pharmacy_id, len(request.cart_items), order.total_cents,
    )

    if request.payment_method == PaymentMethod.QR:
        return _open_gateway_checkout(order, gateway)

    return _settle_in_store(order.id, request.payment_method)


def _create_order(request: OrderRequest) -> Order:
    description = request.description or f"POS sale {to_utc_z(utcnow())}"
    update = request.prescription_update

    order = Order(
        pharmacy_id=request.pharmacy_id,
        patient_id=request.patient_id,
        buy_without_account=request.buy_without_account,
        cashier_id=request.cashier_id,
        cash_session_id=request.cash_session_id,
        description=description,
        total_cents=request.amount_cents,
        requested_method=request.payment_method.value,
        status=initial_status(request.payment_method).value,
        card_reference=request.card_reference if request.payment_method == PaymentMethod.CARD else None,
        prescription_id=update.prescription_id if update else None,
        prescription_update=update.to_dict() if update else None,
    )
    db.session.add(order)
    db.session.flush()  # Get order ID

    for line_number, item in enumerate(request.cart_items, start=1):
        db.session.add(OrderLine(
            order_id=order.id,
            line_number=line_number,
            sku=item.sku,
            quantity=item.quantity,
            unit_price_cents=item.unit_price_cents,
        ))

    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise
    return order


# =============================================================================
# CASH / CARD SETTLEMENT
# =============================================================================

def _settle_in_store(order_id: int, method: PaymentMethod) -> OrderOutcome:
    expected = processing_status(method)

    def _op():
        begin_write_transaction()
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found")

        if order.status != expected.value:
            current_app.logger.warning(
                "Order %s is %s, expected %s; settlement skipped", order_id, order.status, expected.value
            )
            db.session.rollback()
            return order, []

        sold_at = utcnow()
        result = deduct_stock_for_order(order, sold_at)

        if result.success:
            moved = transition_order(order, OrderStatus.PAID, confirmed_method=method.value, paid_at=sold_at)
            note = (NOTE_STOCK_DEDUCTED, result.summary())
        else:
            moved = transition_order(order, OrderStatus.STOCK_ERROR, confirmed_method=None, paid_at=None)
            note = (NOTE_STOCK_FAILED, result.summary())

        if not moved:
            # Someone else settled it between our lock and update; undo the deduction
            db.session.rollback()
            return order, []

        append_note(order.id, *note)
        db.session.commit()
        return order, result.failures

    try:
        order, failures = run_with_retry(_op)
    except SQLAlchemyError:
        current_app.logger.exception("Failed to settle order %s", order_id)
        _abandon_settlement(order_id, expected)
        raise SettlementError(f"Order {order_id} could not be settled", order_id)

    outcome = OrderOutcome(order=order, stock_failures=failures)
    if order.status == OrderStatus.PAID.value:
        current_app.logger.info("Order %s paid (%s)", order.id, method.value)
        outcome.warnings = _run_post_sale_steps(order)
    elif order.status == OrderStatus.STOCK_ERROR.value:
        current_app.logger.warning(
            "Order %s stock error: %s", order.id, "; ".join(f"{f.sku}: {f.message}" for f in failures)
        )
    return outcome


def _abandon_settlement(order_id: int, expected: OrderStatus) -> None:
    """Move an order whose settlement failed out of processing_*, recording why."""
    def _op():
        begin_write_transaction()
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if order is None:
            return
        if order.status == expected.value:
            transition_order(order, OrderStatus.STOCK_ERROR, confirmed_method=None, paid_at=None)
        append_note(order_id, NOTE_SETTLEMENT_FAILED, "Settlement could not be committed; no stock was deducted")
        db.session.commit()

    try:
        run_with_retry(_op)
    except SQLAlchemyError:
        current_app.logger.exception(
            "CRITICAL: order %s left in %s after failed settlement", order_id, expected.value
        )


# =============================================================================
# QR / GATEWAY CHECKOUT
# =============================================================================

def _open_gateway_checkout(order: Order, gateway) -> OrderOutcome:
    try:
        preference = gateway.create_preference(
            order_id=order.id,
            amount_cents=order.total_cents,
            description=order.description,
        )
    except GatewayError as exc:
        current_app.logger.error(
            "Gateway preference for order %s failed (HTTP %s): %s", order.id, exc.status_code, exc
        )
        order = _mark_gateway_error(order.id, exc)
        return OrderOutcome(order=order, gateway_error=exc)

    outcome = OrderOutcome(
        order=order,
        redirect_url=preference.redirect_url,
        preference_id=preference.preference_id,
    )

    try:
        order.gateway_preference_id = preference.preference_id
        db.session.commit()
    except SQLAlchemyError:
        # The customer can still pay; the webhook correlates by order id
        db.session.rollback()
        current_app.logger.exception("Failed to store preference %s on order %s", preference.preference_id, order.id)
        record_note(order.id, NOTE_GATEWAY_ERROR, f"Preference {preference.preference_id} could not be stored")
        outcome.warnings.append("Payment link created but could not be stored on the order")

    current_app.logger.info("Order %s awaiting gateway payment (preference %s)", order.id, preference.preference_id)
    return outcome


def _mark_gateway_error(order_id: int, exc: GatewayError) -> Order:
    def _op():
        begin_write_transaction()
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if order.status == OrderStatus.PENDING.value:
            transition_order(order, OrderStatus.GATEWAY_ERROR)
        append_note(order_id, NOTE_GATEWAY_ERROR, f"Preference creation failed (HTTP {exc.status_code}): {exc}")
        db.session.commit()
        return order

    return run_with_retry(_op)


# =============================================================================
# GATEWAY NOTIFICATIONS
# =============================================================================

def handle_payment_notification(notification: dict, gateway) -> NotificationOutcome:
    """
    Process a webhook notification.

    The notification only tells us *which* payment changed. Its status is
    re-fetched from the gateway; nothing in the body is trusted.

    Gateway lookup failures are logged and skipped (the caller still
    acknowledges the delivery). Unexpected exceptions propagate.
    """
    topic = notification.get("type") or notification.get("topic")
    data = notification.get("data")
    payment_id = data.get("id") if isinstance(data, dict) else None

    if topic != "payment" or not payment_id:
        current_app.logger.info("Ignoring gateway notification type=%s data.id=%s", topic, payment_id)
        return NotificationOutcome(action=NOTIFICATION_IGNORED, reason="not a payment notification")

    try:
        details = gateway.get_payment(str(payment_id))
    except GatewayError as exc:
        current_app.logger.error(
            "Gateway lookup for payment %s failed (HTTP %s): %s", payment_id, exc.status_code, exc
        )
        return NotificationOutcome(action=NOTIFICATION_SKIPPED, reason="payment lookup failed")

    return apply_gateway_payment(details)


def parse_external_reference(value) -> int | None:
    if value is None:
        return None
    text_value = str(value).strip()
    if not text_value.isdigit():
        return None
    return int(text_value)


def _to_cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def apply_gateway_payment(details: PaymentDetails) -> NotificationOutcome:
    """
    Apply an authoritative gateway payment to its order.

    Only orders still awaiting the gateway are touched. approved runs the
    shared stock deduction and moves the order to paid (or stock_error if
    stock is gone); rejected/cancelled/refunded/charged_back move it to
    rejected; any other gateway status changes nothing.
    """
    order_id = parse_external_reference(details.external_reference)
    if order_id is None:
        current_app.logger.error(
            "Payment %s has no usable external_reference (%r)", details.payment_id, details.external_reference
        )
        return NotificationOutcome(action=NOTIFICATION_SKIPPED, reason="missing external reference")

    if details.status == MP_STATUS_APPROVED:
        target = OrderStatus.PAID
    elif details.status in MP_REJECTION_STATUSES:
        target = OrderStatus.REJECTED
    else:
        current_app.logger.info(
            "Payment %s for order %s is %s; no transition", details.payment_id, order_id, details.status
        )
        return NotificationOutcome(action=NOTIFICATION_NOOP, reason=f"gateway status {details.status}", order_id=order_id)

    awaiting = {status.value for status in GATEWAY_AWAITING_STATUSES}

    def _op():
        begin_write_transaction()
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if order is None:
            db.session.rollback()
            return NotificationOutcome(action=NOTIFICATION_SKIPPED, reason="order not found", order_id=order_id)

        if order.status not in awaiting:
            db.session.rollback()
            return NotificationOutcome(
                action=NOTIFICATION_NOOP,
                reason=f"order already {order.status}",
                order_id=order_id,
                status=order.status,
            )

        now = utcnow()
        payment_note = f"Payment {details.payment_id} {details.status}"
        if details.status_detail:
            payment_note += f" ({details.status_detail})"

        if target == OrderStatus.REJECTED:
            moved = transition_order(order, OrderStatus.REJECTED, gateway_payment_id=details.payment_id)
            notes = [(NOTE_GATEWAY_PAYMENT, payment_note)]
        else:
            notes = [(NOTE_GATEWAY_PAYMENT, payment_note)]
            if details.transaction_amount is not None and _to_cents(details.transaction_amount) != order.total_cents:
                notes.append((
                    NOTE_AMOUNT_MISMATCH,
                    f"Gateway charged {details.transaction_amount}, order total is {order.total_cents} cents",
                ))

            result = deduct_stock_for_order(order, now)
            if result.success:
                moved = transition_order(
                    order,
                    OrderStatus.PAID,
                    gateway_payment_id=details.payment_id,
                    confirmed_method=details.payment_method_id or "mercado_pago",
                    paid_at=now,
                )
                notes.append((NOTE_STOCK_DEDUCTED, result.summary()))
            else:
                moved = transition_order(
                    order,
                    OrderStatus.STOCK_ERROR,
                    gateway_payment_id=details.payment_id,
                    confirmed_method=None,
                    paid_at=None,
                )
                notes.append((
                    NOTE_PAID_STOCK_FAILED,
                    f"Payment {details.payment_id} approved but stock deduction failed: {result.summary()}",
                ))

        if not moved:
            db.session.rollback()
            return NotificationOutcome(action=NOTIFICATION_NOOP, reason="order changed concurrently", order_id=order_id)

        for code, message in notes:
            append_note(order_id, code, message)
        db.session.commit()
        return NotificationOutcome(action=NOTIFICATION_APPLIED, order_id=order_id, status=order.status)

    outcome = run_with_retry(_op)

    if outcome.action == NOTIFICATION_APPLIED:
        current_app.logger.info("Order %s -> %s (payment %s)", order_id, outcome.status, details.payment_id)
        if outcome.status == OrderStatus.PAID.value:
            order = db.session.query(Order).get(order_id)
            outcome.warnings = _run_post_sale_steps(order)
        elif outcome.status == OrderStatus.STOCK_ERROR.value:
            current_app.logger.error(
                "Order %s was paid (payment %s) but stock could not be deducted; needs attention",
                order_id, details.payment_id,
            )
    else:
        current_app.logger.info(
            "Payment %s for order %s not applied: %s", details.payment_id, order_id, outcome.reason
        )
    return outcome


# =============================================================================
# POST-SALE FOLLOW-UPS
# =============================================================================

def _run_post_sale_steps(order: Order) -> list[str]:
    """
    Non-fatal steps after a sale is paid. The sale stands whatever happens
    here; failures are logged, appended to the notes and returned as warnings.
    """
    warnings: list[str] = []

    if order.prescription_id and order.prescription_update:
        try:
            prescription = run_with_retry(lambda: record_dispensing(order))
        except (PrescriptionError, SQLAlchemyError) as exc:
            db.session.rollback()
            current_app.logger.error("Order %s: prescription update failed: %s", order.id, exc)
            record_note(order.id, NOTE_PRESCRIPTION_FAILED, f"Prescription {order.prescription_id}: {exc}")
            warnings.append(f"Sale completed, but prescription {order.prescription_id} could not be updated")
        else:
            if prescription is not None:
                record_note(
                    order.id,
                    NOTE_PRESCRIPTION_UPDATED,
                    f"Prescription {prescription.id} marked {prescription.dispensing_status}",
                )

    return warnings


# =============================================================================
# QUERIES
# =============================================================================

def get_order(order_id: int) -> Order:
    order = db.session.query(Order).get(order_id)
    if order is None:
        raise OrderNotFoundError(f"Order {order_id} not found")
    return order
