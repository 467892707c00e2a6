# Overview: Mercado Pago webhook endpoint; verifies, parses and hands notifications to reconciliation.

# backend/farmapos/routes/webhooks.py
"""
POST /mercado_pago_webhook

Response policy toward the gateway:
- 200 for every notification we processed, ignored or could not resolve
  (unknown order, failed payment lookup). Retrying those will not help.
- 400 when the body is not JSON, 401 when the signature does not verify.
- 500 only when the handler itself fails, which asks the gateway to retry.
"""

import json

from flask import Blueprint, request, current_app

from ..services import order_service
from ..services.mercado_pago import get_gateway


webhooks_bp = Blueprint("webhooks", __name__)


def _notification_from_request() -> dict | None:
    raw = request.get_data(cache=True)
    if raw:
        try:
            notification = json.loads(raw)
        except ValueError:
            return None
        if not isinstance(notification, dict):
            return None
    else:
        notification = {}

    # The gateway also sends ?type=payment&data.id=... on the URL
    if not notification.get("type") and request.args.get("type"):
        notification["type"] = request.args["type"]
    if not notification.get("topic") and request.args.get("topic"):
        notification["topic"] = request.args["topic"]
    data = notification.get("data")
    if not isinstance(data, dict) or not data.get("id"):
        query_id = request.args.get("data.id") or request.args.get("id")
        if query_id:
            notification["data"] = {"id": query_id}
    return notification


@webhooks_bp.post("/mercado_pago_webhook")
def mercado_pago_webhook_route():
    notification = _notification_from_request()
    if notification is None:
        current_app.logger.warning("Webhook body is not a JSON object")
        return "", 400

    data = notification.get("data") or {}
    data_id = str(data.get("id")) if isinstance(data, dict) and data.get("id") else None

    gateway = get_gateway()
    if not gateway.verify_webhook_signature(
        request.headers.get("x-signature"),
        request.headers.get("x-request-id"),
        data_id,
    ):
        current_app.logger.warning("Rejected webhook with invalid signature (data.id=%s)", data_id)
        return "", 401
    if not gateway.verifies_signatures:
        current_app.logger.warning("MP_WEBHOOK_SECRET not set; webhook signature not verified")

    current_app.logger.info(
        "Webhook received: type=%s data.id=%s live_mode=%s",
        notification.get("type") or notification.get("topic"), data_id, notification.get("live_mode"),
    )

    try:
        outcome = order_service.handle_payment_notification(notification, gateway)
    except Exception:
        current_app.logger.exception("Webhook processing failed (data.id=%s)", data_id)
        return "", 500

    current_app.logger.info("Webhook done: %s (%s)", outcome.action, outcome.reason or outcome.status)
    return "", 200
