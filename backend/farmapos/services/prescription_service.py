# Overview: Records prescription dispensing once the sale that dispensed it is paid.

from __future__ import annotations

from ..extensions import db
from ..models import Order, Prescription
from ..time_utils import utcnow
from .concurrency import begin_write_transaction, lock_for_update


class PrescriptionError(Exception):
    """Raised for prescription dispensing errors."""
    pass


def record_dispensing(order: Order) -> Prescription | None:
    """
    Apply the order's pending prescription update.

    WHY: The cart may fill (part of) a prescription. It is only dispensed
    once the sale is paid, so this runs after settlement, never before.

    CONCURRENCY: The prescription row is locked for the check-then-write, so
    two paid sales for the same prescription cannot both dispense it.

    Returns:
        The updated prescription, or None if the order carries no update

    Raises:
        PrescriptionError: If the prescription does not exist or is already
        fully dispensed (the caller rolls back)
    """
    prescription_id = order.prescription_id
    update = order.prescription_update
    if not prescription_id or not update:
        return None
    dispensed_at = order.paid_at or utcnow()

    begin_write_transaction()
    prescription = lock_for_update(
        db.session.query(Prescription).filter_by(id=prescription_id)
    ).first()
    if prescription is None:
        raise PrescriptionError(f"Prescription {prescription_id} not found")

    if prescription.dispensing_status == "dispensed":
        raise PrescriptionError(f"Prescription {prescription.id} is already fully dispensed")

    prescription.dispensing_status = update.get("dispensing_status") or "dispensed"
    prescription.dispensed_detail = update.get("dispensed_items")
    prescription.dispensed_at = dispensed_at

    db.session.commit()
    return prescription
