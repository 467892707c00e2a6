# Overview: Atomic, idempotent per-order stock deduction against pharmacy inventory.

"""
Stock Deduction

WHY: Two terminals in the same pharmacy may sell the same medication at the
same time. Deduction is the one place where over-selling must be impossible.

GUARANTEES:
- All-or-nothing per order: every SKU is checked before any row changes.
- Each (pharmacy, upc) row is locked for the check-then-decrement. Locks are
  taken in sorted UPC order so two orders never wait on each other in a cycle.
- Idempotent per order: order.stock_deducted_at marks a completed deduction;
  calling again is a no-op. Both the in-store settlement and the webhook
  path call this same routine.
- last_movement_at is set once per distinct SKU, to the sale time.

Runs inside the caller's unit of work and never commits.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime

from ..extensions import db
from ..models import Medication, Order
from .concurrency import lock_for_update


REASON_NOT_FOUND = "not_found"
REASON_INSUFFICIENT_STOCK = "insufficient_stock"


@dataclass(frozen=True)
class StockFailure:
    sku: str
    reason: str
    needed: int
    available: int | None = None

    @property
    def message(self) -> str:
        if self.reason == REASON_NOT_FOUND:
            return f"medication {self.sku} not found in this pharmacy"
        return f"insufficient stock: needed {self.needed}, available {self.available}"

    def to_dict(self) -> dict:
        return {
            "sku": self.sku,
            "reason": self.reason,
            "needed": self.needed,
            "available": self.available,
            "message": self.message,
        }


@dataclass
class StockDeductionResult:
    success: bool
    failures: list[StockFailure] = field(default_factory=list)
    deducted: dict[str, int] = field(default_factory=dict)
    already_applied: bool = False

    def summary(self) -> str:
        if self.already_applied:
            return "stock already deducted for this order"
        if self.success and not self.deducted:
            return "no stock lines to deduct"
        if self.success:
            return "deducted " + ", ".join(f"{sku} x{qty}" for sku, qty in self.deducted.items())
        return "; ".join(f"{f.sku}: {f.message}" for f in self.failures)


def aggregate_quantities(lines) -> "OrderedDict[str, int]":
    """Sum quantities per SKU, keeping first-seen order."""
    totals: OrderedDict[str, int] = OrderedDict()
    for line in lines:
        totals[line.sku] = totals.get(line.sku, 0) + int(line.quantity)
    return totals


def deduct_stock_for_order(order: Order, sold_at: datetime) -> StockDeductionResult:
    """
    Decrement pharmacy stock for every line of an order.

    Args:
        order: Order, already locked by the caller's unit of work
        sold_at: Sale timestamp; becomes last_movement_at of every touched SKU

    Returns:
        StockDeductionResult with the per-SKU failures when unsuccessful
    """
    if order.stock_deducted_at is not None:
        return StockDeductionResult(success=True, already_applied=True)

    totals = aggregate_quantities(order.lines)

    # Lock and check every row before touching any of them
    locked: dict[str, Medication] = {}
    failures: list[StockFailure] = []
    for sku in sorted(totals):
        needed = totals[sku]
        medication = lock_for_update(
            db.session.query(Medication).filter_by(pharmacy_id=order.pharmacy_id, upc=sku)
        ).first()

        if medication is None:
            failures.append(StockFailure(sku=sku, reason=REASON_NOT_FOUND, needed=needed))
            continue

        if medication.units < needed:
            failures.append(StockFailure(
                sku=sku,
                reason=REASON_INSUFFICIENT_STOCK,
                needed=needed,
                available=medication.units,
            ))
            continue

        locked[sku] = medication

    if failures:
        # Report in cart order
        position = {sku: i for i, sku in enumerate(totals)}
        failures.sort(key=lambda f: position[f.sku])
        return StockDeductionResult(success=False, failures=failures)

    for sku, needed in totals.items():
        medication = locked[sku]
        medication.units = medication.units - needed
        medication.last_movement_at = sold_at

    order.stock_deducted_at = sold_at
    db.session.flush()

    return StockDeductionResult(success=True, deducted=dict(totals))


def get_units_on_hand(pharmacy_id: int, upc: str) -> int | None:
    medication = db.session.query(Medication).filter_by(pharmacy_id=pharmacy_id, upc=upc).first()
    return medication.units if medication else None


def set_stock(
    pharmacy_id: int,
    upc: str,
    units: int,
    *,
    name: str | None = None,
    price_cents: int | None = None,
) -> Medication:
    """Create or overwrite a medication's on-hand units (catalog maintenance)."""
    if units < 0:
        raise ValueError("units must be non-negative")

    medication = db.session.query(Medication).filter_by(pharmacy_id=pharmacy_id, upc=upc).first()
    if medication is None:
        medication = Medication(pharmacy_id=pharmacy_id, upc=upc, name=name or upc, units=units)
        db.session.add(medication)
    else:
        medication.units = units
        if name:
            medication.name = name

    if price_cents is not None:
        medication.price_cents = price_cents

    db.session.commit()
    return medication
