from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Prescription(db.Model):
    """
    Prescription whose dispensing is recorded by a sale.

    DISPENSING STATUS:
    - not_dispensed: nothing handed out yet
    - incomplete: part of the prescription was dispensed
    - dispensed: fully dispensed
    """
    __tablename__ = "prescriptions"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    patient_id = db.Column(db.Integer, nullable=True, index=True)
    pharmacy_id = db.Column(db.Integer, db.ForeignKey("pharmacies.id"), nullable=True, index=True)

    dispensing_status = db.Column(db.String(16), nullable=False, default="not_dispensed", index=True)
    dispensed_detail = db.Column(db.JSON, nullable=True)
    dispensed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "patient_id": self.patient_id,
            "pharmacy_id": self.pharmacy_id,
            "dispensing_status": self.dispensing_status,
            "dispensed_detail": self.dispensed_detail,
            "dispensed_at": to_utc_z(self.dispensed_at),
            "created_at": to_utc_z(self.created_at),
        }
