"""
Pytest fixtures for the pharmacy POS backend tests.

Provides the app (in-memory SQLite), test client, per-test table wipe,
pharmacy/stock helpers and a fake Mercado Pago gateway.
"""

from decimal import Decimal

import pytest

from farmapos import create_app
from farmapos.extensions import db
from farmapos.models import Pharmacy, Medication, Prescription
from farmapos.services.mercado_pago import GatewayError, PaymentDetails, Preference


TEST_CONFIG = {
    'TESTING': True,
    'SECRET_KEY': 'test',
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'MP_ACCESS_TOKEN': 'TEST-0000000000000000-000000-test',
    'MP_WEBHOOK_SECRET': None,
    'MP_WEBHOOK_URL': 'https://pos.example.test/mercado_pago_webhook',
}


class FakeGateway:
    """In-memory stand-in for MercadoPagoClient."""

    sandbox = True
    is_configured = True
    currency_id = 'MXN'
    notification_url = TEST_CONFIG['MP_WEBHOOK_URL']

    def __init__(self):
        self.preferences = []
        self.payments = {}
        self.lookups = []
        self.preference_error = None
        self.lookup_error = None
        self.signature_valid = True
        self.verifies_signatures = False

    def create_preference(self, *, order_id, amount_cents, description):
        if self.preference_error is not None:
            raise self.preference_error
        self.preferences.append({
            'order_id': order_id,
            'amount_cents': amount_cents,
            'description': description,
        })
        preference_id = f"pref-{order_id}"
        return Preference(
            preference_id=preference_id,
            redirect_url=f"https://sandbox.mercadopago.test/checkout?pref_id={preference_id}",
        )

    def add_payment(self, payment_id, order_id, status='approved', amount=None,
                    method='visa', status_detail=None):
        details = PaymentDetails(
            payment_id=str(payment_id),
            status=status,
            status_detail=status_detail,
            external_reference=str(order_id) if order_id is not None else None,
            payment_method_id=method,
            transaction_amount=Decimal(str(amount)) if amount is not None else None,
            live_mode=False,
        )
        self.payments[str(payment_id)] = details
        return details

    def get_payment(self, payment_id):
        self.lookups.append(str(payment_id))
        if self.lookup_error is not None:
            raise self.lookup_error
        if str(payment_id) not in self.payments:
            raise GatewayError("Payment not found", status_code=404)
        return self.payments[str(payment_id)]

    def verify_webhook_signature(self, signature_header, request_id, data_id):
        return self.signature_valid


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TEST_CONFIG)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def gateway(app, monkeypatch):
    """Fake gateway installed as the app's Mercado Pago extension."""
    fake = FakeGateway()
    monkeypatch.setitem(app.extensions, 'mercado_pago', fake)
    return fake


@pytest.fixture(scope='function')
def pharmacy(db_session):
    pharmacy = Pharmacy(name="Farmacia Centro", is_active=True)
    db_session.add(pharmacy)
    db_session.commit()
    return pharmacy


@pytest.fixture(scope='function')
def other_pharmacy(db_session):
    pharmacy = Pharmacy(name="Farmacia Norte", is_active=True)
    db_session.add(pharmacy)
    db_session.commit()
    return pharmacy


@pytest.fixture(scope='function')
def stock(db_session, pharmacy):
    """Factory: stock(upc, units, pharmacy_id=None) -> Medication."""
    def _stock(upc, units, pharmacy_id=None, price_cents=1000):
        medication = Medication(
            pharmacy_id=pharmacy_id or pharmacy.id,
            upc=upc,
            name=f"Medication {upc}",
            price_cents=price_cents,
            units=units,
        )
        db_session.add(medication)
        db_session.commit()
        return medication
    return _stock


@pytest.fixture(scope='function')
def prescription(db_session, pharmacy):
    prescription = Prescription(patient_id=7, pharmacy_id=pharmacy.id, dispensing_status="not_dispensed")
    db_session.add(prescription)
    db_session.commit()
    return prescription


def units_of(pharmacy_id, upc):
    """Fresh read of on-hand units, bypassing the session identity map."""
    db.session.expire_all()
    medication = db.session.query(Medication).filter_by(pharmacy_id=pharmacy_id, upc=upc).first()
    return medication.units if medication else None


def order_payload(pharmacy_id, items, method='cash', amount=None, **extra):
    """Build a /create_order body from (sku, quantity, unit_price) tuples."""
    cart = [{'sku': sku, 'quantity': qty, 'unit_price': price} for sku, qty, price in items]
    if amount is None:
        amount = sum(Decimal(str(price)) * qty for _, qty, price in items) or Decimal("10")
    payload = {
        'amount': str(amount),
        'payment_method': method,
        'pharmacy_id': pharmacy_id,
        'cart_items': cart,
    }
    payload.update(extra)
    return payload
