# backend/farmapos/routes/system.py
"""
System status endpoints.

GET /        human-readable status page for whoever deploys the backend
GET /health  JSON liveness with a database check
"""

import time

from flask import Blueprint, current_app, jsonify, render_template_string
from sqlalchemy import text

from ..extensions import db
from ..services.mercado_pago import get_gateway
from ..time_utils import utcnow, to_utc_z

system_bp = Blueprint("system", __name__)


STATUS_PAGE = """
<h1>Pharmacy POS backend running</h1>
<p>Database: {{ database }}</p>
<p>Mercado Pago mode: {{ "Sandbox" if sandbox else "Production" }}{{ "" if configured else " (not configured)" }}</p>
<p>Currency: {{ currency }}</p>
<p>Webhook expected at: {{ webhook_url or "(MP_WEBHOOK_URL not set; use /mercado_pago_webhook)" }}</p>
<p>Frontend must POST sales to /create_order.</p>
"""


def check_database_health() -> dict:
    """Check database connectivity. Returns dict with status and details."""
    start_time = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        elapsed_ms = (time.time() - start_time) * 1000
        return {"status": "healthy", "latency_ms": round(elapsed_ms, 2)}
    except Exception:
        db.session.rollback()
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


@system_bp.get("/")
def status_page():
    gateway = get_gateway()
    database = check_database_health()
    return render_template_string(
        STATUS_PAGE,
        database="OK" if database["status"] == "healthy" else "FAILED",
        sandbox=gateway.sandbox,
        configured=gateway.is_configured,
        currency=gateway.currency_id,
        webhook_url=gateway.notification_url,
    )


@system_bp.get("/health")
def health():
    database = check_database_health()
    healthy = database["status"] == "healthy"
    return jsonify({
        "status": "healthy" if healthy else "unhealthy",
        "timestamp": to_utc_z(utcnow()),
        "checks": {"database": database},
    }), 200 if healthy else 503
