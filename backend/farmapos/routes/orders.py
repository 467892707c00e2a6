# Overview: Flask API routes for order submission and lookup; parses input and returns JSON responses.

# backend/farmapos/routes/orders.py
"""
Order API Routes

POST /create_order
    Submit a sale. cash/card orders are settled (stock deducted) in this
    request; qr orders get a Mercado Pago payment link and are settled later
    by the webhook.

    Request body:
    {
        "amount": 25.00,
        "description": "Counter sale",            (optional)
        "payment_method": "cash" | "card" | "qr",
        "pharmacy_id": 1,
        "cart_items": [{"sku": "750100", "quantity": 2, "unit_price": 10.00}],
        "patient_id": 7,                           (optional)
        "buy_without_account": false,
        "cash_session_id": 3,                      (optional)
        "cashier_id": 12,                          (optional)
        "card_reference": "AUTH-1234",             (card only, optional)
        "prescription_update": {                   (optional)
            "prescription_id": 5,
            "dispensing_status": "dispensed" | "incomplete",
            "dispensed_items": [...]
        }
    }

    Returns:
        200: Order paid, or qr order awaiting payment (redirect_url)
        400: Invalid input (nothing created)
        404: Unknown pharmacy
        409: Stock deduction failed (stock_errors lists each SKU)
        4xx/5xx: Gateway error creating the payment link (qr)
        500: Server error

GET /orders/<id>
    Order with lines and notes; the POS polls it while a QR sale is pending.
"""

from flask import Blueprint, request, jsonify, current_app

from ..services import order_service
from ..services.mercado_pago import get_gateway
from ..services.order_service import OrderError, SettlementError
from ..services.order_states import OrderStatus
from ..validation import ValidationError, parse_order_request


orders_bp = Blueprint("orders", __name__)


@orders_bp.post("/create_order")
def create_order_route():
    try:
        order_request = parse_order_request(request.get_json(silent=True))
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    try:
        outcome = order_service.submit_order(order_request, get_gateway())
    except SettlementError as e:
        return jsonify({"error": str(e), "order_id": e.order_id}), 500
    except OrderError as e:
        return jsonify({"error": str(e), "details": e.details}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500

    order = outcome.order
    body = {
        "order_id": order.id,
        "receipt_number": order.id,
        "status": order.status,
    }

    if order.status == OrderStatus.STOCK_ERROR.value:
        body["error"] = f"Sale by {order.requested_method} could not be completed: stock errors"
        body["stock_errors"] = [failure.to_dict() for failure in outcome.stock_failures]
        return jsonify(body), 409

    if order.status == OrderStatus.GATEWAY_ERROR.value:
        error = outcome.gateway_error
        body["error"] = str(error) if error else "Payment link could not be created"
        status_code = error.status_code if error else 502
        if status_code < 400:
            status_code = 502
        return jsonify(body), status_code

    if outcome.redirect_url:
        body["redirect_url"] = outcome.redirect_url
        body["preference_id"] = outcome.preference_id

    if outcome.warnings:
        body["warnings"] = outcome.warnings

    return jsonify(body), 200


@orders_bp.get("/orders/<int:order_id>")
def get_order_route(order_id: int):
    try:
        order = order_service.get_order(order_id)
    except OrderError as e:
        return jsonify({"error": str(e)}), e.status_code

    return jsonify({"order": order.to_dict(include_lines=True, include_notes=True)}), 200
