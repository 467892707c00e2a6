"""POST /create_order: cash/card settlement, QR checkout and input errors."""

import pytest
from sqlalchemy import event
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from farmapos.extensions import db
from farmapos.models import Medication, Order, OrderNote, Prescription
from farmapos.services import order_service
from farmapos.services.mercado_pago import GatewayError

from conftest import order_payload, units_of


def _order(order_id):
    db.session.expire_all()
    return db.session.query(Order).get(order_id)


def _note_codes(order_id):
    return [n.code for n in db.session.query(OrderNote).filter_by(order_id=order_id).order_by(OrderNote.id)]


# =============================================================================
# CASH / CARD
# =============================================================================

def test_cash_sale_with_stock_is_paid(client, pharmacy, stock, gateway):
    stock("A", 5)
    stock("B", 5)

    resp = client.post("/create_order", json=order_payload(
        pharmacy.id, [("A", 2, "10.00"), ("B", 3, "5.00")], method="cash", amount="35.00",
    ))

    assert resp.status_code == 200
    body = resp.get_json()
    assert body["status"] == "paid"
    assert body["receipt_number"] == body["order_id"]

    order = _order(body["order_id"])
    assert order.confirmed_method == "cash"
    assert order.total_cents == 3500
    assert order.paid_at is not None
    assert units_of(pharmacy.id, "A") == 3
    assert units_of(pharmacy.id, "B") == 2
    movements = {m.last_movement_at for m in db.session.query(Medication).all()}
    assert movements == {order.paid_at}
    assert "stock_deducted" in _note_codes(order.id)
    assert gateway.preferences == []


def test_cash_sale_with_missing_stock_is_stock_error(client, pharmacy, stock, gateway):
    stock("A", 5)
    stock("B", 0)

    resp = client.post("/create_order", json=order_payload(
        pharmacy.id, [("A", 2, "10.00"), ("B", 3, "5.00")], method="cash",
    ))

    assert resp.status_code == 409
    body = resp.get_json()
    assert body["status"] == "stock_error"
    assert body["order_id"]
    assert body["stock_errors"] == [{
        "sku": "B",
        "reason": "insufficient_stock",
        "needed": 3,
        "available": 0,
        "message": "insufficient stock: needed 3, available 0",
    }]

    order = _order(body["order_id"])
    assert order.status == "stock_error"
    assert order.paid_at is None
    assert order.confirmed_method is None
    assert units_of(pharmacy.id, "A") == 5
    assert "stock_failed" in _note_codes(order.id)


def test_card_sale_keeps_reference(client, pharmacy, stock, gateway):
    stock("A", 1)

    resp = client.post("/create_order", json=order_payload(
        pharmacy.id, [("A", 1, "99.90")], method="card", card_reference="AUTH-4411",
    ))

    assert resp.status_code == 200
    order = _order(resp.get_json()["order_id"])
    assert order.status == "paid"
    assert order.confirmed_method == "card"
    assert order.card_reference == "AUTH-4411"
    assert units_of(pharmacy.id, "A") == 0


def test_unknown_sku_is_reported(client, pharmacy, stock, gateway):
    resp = client.post("/create_order", json=order_payload(pharmacy.id, [("GHOST", 1, "1.00")]))

    assert resp.status_code == 409
    assert resp.get_json()["stock_errors"][0]["reason"] == "not_found"


def test_order_keeps_pos_context(client, pharmacy, stock, gateway):
    stock("A", 3)

    resp = client.post("/create_order", json=order_payload(
        pharmacy.id, [("A", 1, "20.00")],
        patient_id=7, cashier_id=12, cash_session_id=3, description="Mostrador",
    ))

    order = _order(resp.get_json()["order_id"])
    assert (order.patient_id, order.cashier_id, order.cash_session_id) == (7, 12, 3)
    assert order.description == "Mostrador"
    assert [(l.sku, l.quantity, l.unit_price_cents) for l in order.lines] == [("A", 1, 2000)]


# =============================================================================
# QR
# =============================================================================

def test_qr_sale_returns_payment_link_and_waits(client, pharmacy, stock, gateway):
    stock("A", 5)

    resp = client.post("/create_order", json=order_payload(
        pharmacy.id, [("A", 2, "12.50")], method="qr", description="Receta 55",
    ))

    assert resp.status_code == 200
    body = resp.get_json()
    assert body["status"] == "pending"
    assert body["preference_id"] == f"pref-{body['order_id']}"
    assert body["redirect_url"].startswith("https://sandbox.mercadopago.test/")

    assert gateway.preferences == [{
        "order_id": body["order_id"], "amount_cents": 2500, "description": "Receta 55",
    }]
    order = _order(body["order_id"])
    assert order.gateway_preference_id == body["preference_id"]
    assert units_of(pharmacy.id, "A") == 5


def test_qr_sale_may_have_empty_cart(client, pharmacy, gateway):
    resp = client.post("/create_order", json={
        "amount": 50, "payment_method": "qr", "pharmacy_id": pharmacy.id,
    })

    assert resp.status_code == 200
    assert resp.get_json()["status"] == "pending"


def test_gateway_failure_marks_order_and_returns_gateway_status(client, pharmacy, stock, gateway):
    stock("A", 5)
    gateway.preference_error = GatewayError("invalid access token", status_code=401)

    resp = client.post("/create_order", json=order_payload(pharmacy.id, [("A", 1, "10")], method="qr"))

    assert resp.status_code == 401
    body = resp.get_json()
    assert body["error"] == "invalid access token"
    order = _order(body["order_id"])
    assert order.status == "gateway_error"
    assert _note_codes(order.id) == ["gateway_error"]
    assert "invalid access token" in order.notes[0].message


def test_gateway_timeout_maps_to_504(client, pharmacy, gateway):
    gateway.preference_error = GatewayError("timed out", status_code=504)

    resp = client.post("/create_order", json={"amount": 5, "payment_method": "qr", "pharmacy_id": pharmacy.id})

    assert resp.status_code == 504
    assert _order(resp.get_json()["order_id"]).status == "gateway_error"


# =============================================================================
# INPUT ERRORS
# =============================================================================

def test_validation_error_creates_nothing(client, pharmacy, gateway):
    resp = client.post("/create_order", json={"amount": -1, "payment_method": "cash", "pharmacy_id": pharmacy.id})

    assert resp.status_code == 400
    assert "amount" in resp.get_json()["error"]
    assert db.session.query(Order).count() == 0


def test_non_json_body_is_rejected(client, gateway):
    resp = client.post("/create_order", data="amount=5", content_type="text/plain")
    assert resp.status_code == 400


def test_unknown_pharmacy_is_404(client, db_session, gateway):
    resp = client.post("/create_order", json=order_payload(999, [("A", 1, "1")]))

    assert resp.status_code == 404
    assert db_session.query(Order).count() == 0


def test_unknown_prescription_is_400(client, pharmacy, stock, gateway):
    stock("A", 1)

    resp = client.post("/create_order", json=order_payload(
        pharmacy.id, [("A", 1, "1")], prescription_update={"prescription_id": 404},
    ))

    assert resp.status_code == 400
    assert units_of(pharmacy.id, "A") == 1


# =============================================================================
# PRESCRIPTIONS
# =============================================================================

def test_paid_sale_records_prescription_dispensing(client, pharmacy, stock, prescription, gateway):
    stock("A", 2)

    resp = client.post("/create_order", json=order_payload(
        pharmacy.id, [("A", 1, "10")],
        prescription_update={
            "prescription_id": prescription.id,
            "dispensing_status": "incomplete",
            "dispensed_items": [{"sku": "A", "quantity": 1}],
        },
    ))

    assert resp.status_code == 200
    assert "warnings" not in resp.get_json()
    db.session.expire_all()
    updated = db.session.query(Prescription).get(prescription.id)
    assert updated.dispensing_status == "incomplete"
    assert updated.dispensed_detail == [{"sku": "A", "quantity": 1}]
    assert "prescription_updated" in _note_codes(resp.get_json()["order_id"])


def test_prescription_failure_does_not_undo_sale(client, db_session, pharmacy, stock, prescription, gateway):
    stock("A", 2)
    prescription.dispensing_status = "dispensed"
    db_session.commit()

    resp = client.post("/create_order", json=order_payload(
        pharmacy.id, [("A", 1, "10")], prescription_update={"prescription_id": prescription.id},
    ))

    assert resp.status_code == 200
    body = resp.get_json()
    assert body["status"] == "paid"
    assert body["warnings"]
    assert units_of(pharmacy.id, "A") == 1
    assert "prescription_failed" in _note_codes(body["order_id"])


def test_stock_error_leaves_prescription_untouched(client, pharmacy, stock, prescription, gateway):
    stock("A", 0)

    resp = client.post("/create_order", json=order_payload(
        pharmacy.id, [("A", 1, "10")], prescription_update={"prescription_id": prescription.id},
    ))

    assert resp.status_code == 409
    db.session.expire_all()
    assert db.session.query(Prescription).get(prescription.id).dispensing_status == "not_dispensed"


# =============================================================================
# LOOKUP
# =============================================================================

def test_get_order_includes_lines_and_notes(client, pharmacy, stock, gateway):
    stock("A", 1)
    order_id = client.post("/create_order", json=order_payload(pharmacy.id, [("A", 1, "3.30")])).get_json()["order_id"]

    resp = client.get(f"/orders/{order_id}")

    assert resp.status_code == 200
    order = resp.get_json()["order"]
    assert order["status"] == "paid"
    assert order["lines"][0]["sku"] == "A"
    assert order["notes"][0]["code"] == "stock_deducted"


def test_get_unknown_order_is_404(client, db_session):
    assert client.get("/orders/12345").status_code == 404


def test_oversized_quantity_is_400_and_creates_nothing(client, pharmacy, stock, gateway):
    stock("A", 5)

    resp = client.post("/create_order", json=order_payload(pharmacy.id, [("A", 10**30, "1.00")], amount="1.00"))

    assert resp.status_code == 400
    assert "quantity" in resp.get_json()["error"]
    assert db.session.query(Order).count() == 0
    assert units_of(pharmacy.id, "A") == 5


# =============================================================================
# PERSISTENCE FAILURES AFTER THE ORDER EXISTS
# =============================================================================

def test_failed_settlement_never_leaves_order_processing(client, pharmacy, stock, gateway, monkeypatch):
    stock("A", 5)

    def _locked(order, sold_at):
        raise OperationalError("UPDATE medications", {}, Exception("database is locked"))

    monkeypatch.setattr(order_service, "deduct_stock_for_order", _locked)
    monkeypatch.setattr("farmapos.services.concurrency.time.sleep", lambda seconds: None)

    resp = client.post("/create_order", json=order_payload(pharmacy.id, [("A", 1, "10")]))

    assert resp.status_code == 500
    body = resp.get_json()
    order = _order(body["order_id"])
    assert order.status == "stock_error"
    assert order.paid_at is None
    assert _note_codes(order.id) == ["settlement_failed"]
    assert units_of(pharmacy.id, "A") == 5


@pytest.fixture
def failing_preference_store():
    """Make any flush that stores a gateway preference id fail."""
    def _fail(mapper, connection, target):
        if target.gateway_preference_id:
            raise SQLAlchemyError("disk I/O error")

    event.listen(Order, "before_update", _fail)
    yield
    event.remove(Order, "before_update", _fail)


def test_unstored_preference_still_returns_link_with_warning(client, pharmacy, gateway, failing_preference_store):
    resp = client.post("/create_order", json={"amount": 15, "payment_method": "qr", "pharmacy_id": pharmacy.id})

    assert resp.status_code == 200
    body = resp.get_json()
    assert body["status"] == "pending"
    assert body["redirect_url"]
    assert body["warnings"] == ["Payment link created but could not be stored on the order"]

    order = _order(body["order_id"])
    assert order.gateway_preference_id is None
    assert _note_codes(order.id) == ["gateway_error"]
    assert body["preference_id"] in order.notes[0].message
