from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Order(db.Model):
    """
    Point-of-sale order.

    WHY: One row per sale attempt. The id doubles as the receipt number and
    as the payment gateway's external reference.

    LIFECYCLE (see services/order_states.py):
    - pending            QR sale waiting for the gateway
    - processing_cash    cash sale, stock deduction in progress
    - processing_card    card sale, stock deduction in progress
    - paid               terminal
    - rejected           terminal
    - stock_error        terminal
    - gateway_error      preference could not be created

    INVARIANTS:
    - paid_at is set iff status == paid
    - stock_deducted_at is set at most once (deduction idempotency marker)
    - status only changes through a conditional UPDATE on the observed status
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_pharmacy_status_created", "pharmacy_id", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    pharmacy_id = db.Column(db.Integer, db.ForeignKey("pharmacies.id"), nullable=False, index=True)

    # Optional patient; anonymous "general sale" when empty
    patient_id = db.Column(db.Integer, nullable=True, index=True)
    buy_without_account = db.Column(db.Boolean, nullable=False, default=False)

    cashier_id = db.Column(db.Integer, nullable=True, index=True)
    cash_session_id = db.Column(db.Integer, nullable=True, index=True)

    description = db.Column(db.String(255), nullable=False)
    total_cents = db.Column(db.Integer, nullable=False)

    requested_method = db.Column(db.String(16), nullable=False)  # cash, card, qr
    confirmed_method = db.Column(db.String(64), nullable=True)
    status = db.Column(db.String(32), nullable=False, index=True)

    card_reference = db.Column(db.String(128), nullable=True)
    gateway_preference_id = db.Column(db.String(128), nullable=True)
    gateway_payment_id = db.Column(db.String(64), nullable=True, index=True)

    # Dispensing to record once the sale is paid
    prescription_id = db.Column(db.Integer, db.ForeignKey("prescriptions.id"), nullable=True, index=True)
    prescription_update = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    stock_deducted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    pharmacy = db.relationship("Pharmacy", backref=db.backref("orders", lazy=True))
    lines = db.relationship(
        "OrderLine",
        backref="order",
        lazy=True,
        order_by="OrderLine.line_number",
    )
    notes = db.relationship(
        "OrderNote",
        backref="order",
        lazy=True,
        order_by="OrderNote.id",
    )

    def to_dict(self, include_lines: bool = False, include_notes: bool = False) -> dict:
        data = {
            "id": self.id,
            "receipt_number": self.id,
            "pharmacy_id": self.pharmacy_id,
            "patient_id": self.patient_id,
            "buy_without_account": self.buy_without_account,
            "cashier_id": self.cashier_id,
            "cash_session_id": self.cash_session_id,
            "description": self.description,
            "total_cents": self.total_cents,
            "requested_method": self.requested_method,
            "confirmed_method": self.confirmed_method,
            "status": self.status,
            "card_reference": self.card_reference,
            "gateway_preference_id": self.gateway_preference_id,
            "gateway_payment_id": self.gateway_payment_id,
            "prescription_id": self.prescription_id,
            "created_at": to_utc_z(self.created_at),
            "paid_at": to_utc_z(self.paid_at),
            "stock_deducted_at": to_utc_z(self.stock_deducted_at),
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        if include_notes:
            data["notes"] = [note.to_dict() for note in self.notes]
        return data


class OrderLine(db.Model):
    """Cart line captured at submission time."""
    __tablename__ = "order_lines"
    __table_args__ = (
        db.UniqueConstraint("order_id", "line_number", name="uq_order_lines_order_line"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    line_number = db.Column(db.Integer, nullable=False)

    sku = db.Column(db.String(64), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)

    def to_dict(self) -> dict:
        return {
            "line_number": self.line_number,
            "sku": self.sku,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
        }


class OrderNote(db.Model):
    """
    Append-only audit trail entry for an order.

    IMMUTABLE: Records are never updated or deleted. Notes are the one thing
    that may still be added to an order in a terminal state.
    """
    __tablename__ = "order_notes"
    __table_args__ = (
        db.Index("ix_order_notes_order_created", "order_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    code = db.Column(db.String(64), nullable=False, index=True)
    message = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False)

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "created_at": to_utc_z(self.created_at),
        }
