from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Pharmacy(db.Model):
    """A pharmacy location. Inventory and sales are scoped to it."""
    __tablename__ = "pharmacies"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class Medication(db.Model):
    """
    Stocked medication at a pharmacy.

    WHY: Stock is tracked per pharmacy, so the same UPC appears once per
    pharmacy that carries it. Only the stock deduction operation mutates
    units and last_movement_at.

    CONCURRENCY:
    - Rows are locked (SELECT ... FOR UPDATE) during deduction.
    - version_id is an optimistic guard on top of the lock.
    - units >= 0 is enforced by the database as well.
    """
    __tablename__ = "medications"
    __table_args__ = (
        db.UniqueConstraint("pharmacy_id", "upc", name="uq_medications_pharmacy_upc"),
        db.CheckConstraint("units >= 0", name="ck_medications_units_non_negative"),
        db.Index("ix_medications_pharmacy_name", "pharmacy_id", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    pharmacy_id = db.Column(db.Integer, db.ForeignKey("pharmacies.id"), nullable=False, index=True)

    # Scanned UPC, unique within a pharmacy; the cart refers to it as "sku"
    upc = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    price_cents = db.Column(db.Integer, nullable=True)
    lot = db.Column(db.String(64), nullable=True)
    expires_on = db.Column(db.Date, nullable=True)

    units = db.Column(db.Integer, nullable=False, default=0)
    last_movement_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    pharmacy = db.relationship("Pharmacy", backref=db.backref("medications", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "pharmacy_id": self.pharmacy_id,
            "upc": self.upc,
            "name": self.name,
            "price_cents": self.price_cents,
            "lot": self.lot,
            "expires_on": self.expires_on.isoformat() if self.expires_on else None,
            "units": self.units,
            "last_movement_at": to_utc_z(self.last_movement_at),
            "version_id": self.version_id,
        }
