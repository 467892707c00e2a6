# Overview: Append-only order notes (structured audit trail).

from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import OrderNote
from ..time_utils import utcnow


# Note codes
NOTE_STOCK_DEDUCTED = "stock_deducted"
NOTE_STOCK_FAILED = "stock_failed"
NOTE_PAID_STOCK_FAILED = "paid_stock_failed"
NOTE_SETTLEMENT_FAILED = "settlement_failed"
NOTE_GATEWAY_ERROR = "gateway_error"
NOTE_GATEWAY_PAYMENT = "gateway_payment"
NOTE_AMOUNT_MISMATCH = "amount_mismatch"
NOTE_PRESCRIPTION_FAILED = "prescription_failed"
NOTE_PRESCRIPTION_UPDATED = "prescription_updated"


def append_note(order_id: int, code: str, message: str) -> OrderNote:
    """
    Append a note to an order inside the current transaction.

    - No updates/deletes of existing notes.
    - Does not commit; the note lands with the caller's unit of work.
    """
    note = OrderNote(
        order_id=order_id,
        code=code,
        message=message,
        created_at=utcnow(),
    )
    db.session.add(note)
    return note


def record_note(order_id: int, code: str, message: str) -> bool:
    """
    Append a note in its own transaction, for follow-ups outside a unit of work.

    Best effort: a failure here is logged and reported through the return
    value, never raised, so it cannot undo a sale that already stands.
    """
    try:
        append_note(order_id, code, message)
        db.session.commit()
        return True
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception(
            "Failed to append note %s to order %s: %s", code, order_id, message
        )
        return False


def get_notes(order_id: int) -> list[OrderNote]:
    return db.session.query(OrderNote).filter_by(order_id=order_id).order_by(OrderNote.id).all()
