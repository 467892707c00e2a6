# Overview: Mercado Pago REST gateway; preference creation, payment lookup and webhook signatures.

"""
Mercado Pago Gateway Client

WHY: QR sales are paid out of band. We create a checkout preference keyed by
our order id and later learn the outcome through a webhook, which we never
trust: the payment is always re-fetched from the gateway by id.

DESIGN:
- Registered as a Flask extension (init_app) so routes and the CLI share one
  configured instance, and tests can swap it for a fake.
- Every call has a bounded timeout. Timeouts are gateway failures, never
  retried here (the gateway's own webhook retries are the recovery path).
- Webhook signature follows the x-signature scheme:
      x-signature: ts=<unix ts>,v1=<hex hmac>
      manifest:    id:<data.id>;request-id:<x-request-id>;ts:<ts>;
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import httpx
from flask import current_app


class GatewayError(Exception):
    """Raised when the payment gateway cannot fulfil a request."""
    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message)
        self.status_code = status_code


# Gateway payment statuses we act on
MP_STATUS_APPROVED = "approved"
MP_REJECTION_STATUSES = frozenset({"rejected", "cancelled", "refunded", "charged_back"})

PREFERENCE_TITLE_MAX = 250


@dataclass(frozen=True)
class Preference:
    preference_id: str
    redirect_url: str


@dataclass(frozen=True)
class PaymentDetails:
    """Authoritative payment data as returned by the gateway query API."""
    payment_id: str
    status: str | None
    status_detail: str | None
    external_reference: str | None
    payment_method_id: str | None
    transaction_amount: Decimal | None
    live_mode: bool | None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "PaymentDetails":
        amount = data.get("transaction_amount")
        return cls(
            payment_id=str(data.get("id")),
            status=data.get("status"),
            status_detail=data.get("status_detail"),
            external_reference=data.get("external_reference"),
            payment_method_id=data.get("payment_method_id"),
            transaction_amount=Decimal(str(amount)) if amount is not None else None,
            live_mode=data.get("live_mode"),
        )


class MercadoPagoClient:
    """Thin synchronous client over the Mercado Pago REST API."""

    def __init__(self, app=None, *, transport: httpx.BaseTransport | None = None):
        self._access_token = ""
        self._base_url = "https://api.mercadopago.com"
        self._currency_id = "MXN"
        self._notification_url: str | None = None
        self._webhook_secret: str | None = None
        self._sandbox: bool | None = None
        self._timeout = 5.0
        self._transport = transport
        if app is not None:
            self.init_app(app)

    def init_app(self, app) -> None:
        self.configure(
            access_token=app.config.get("MP_ACCESS_TOKEN") or "",
            base_url=app.config.get("MP_API_BASE_URL") or self._base_url,
            currency_id=app.config.get("MP_CURRENCY_ID") or self._currency_id,
            notification_url=app.config.get("MP_WEBHOOK_URL"),
            webhook_secret=app.config.get("MP_WEBHOOK_SECRET"),
            sandbox=app.config.get("MP_SANDBOX"),
            timeout=app.config.get("MP_TIMEOUT_SECONDS", self._timeout),
        )
        app.extensions["mercado_pago"] = self

        if not self.is_configured:
            app.logger.warning(
                "Mercado Pago access token not configured. Set MP_ACCESS_TOKEN "
                "environment variable to enable QR payments."
            )

    def configure(
        self,
        *,
        access_token: str,
        base_url: str = "https://api.mercadopago.com",
        currency_id: str = "MXN",
        notification_url: str | None = None,
        webhook_secret: str | None = None,
        sandbox: bool | None = None,
        timeout: float = 5.0,
    ) -> None:
        self._access_token = access_token
        self._base_url = base_url.rstrip("/")
        self._currency_id = currency_id
        self._notification_url = notification_url
        self._webhook_secret = webhook_secret
        self._sandbox = sandbox
        self._timeout = float(timeout)

    @property
    def is_configured(self) -> bool:
        return bool(self._access_token)

    @property
    def sandbox(self) -> bool:
        if self._sandbox is not None:
            return self._sandbox
        return self._access_token.startswith("TEST-")

    @property
    def currency_id(self) -> str:
        return self._currency_id

    @property
    def notification_url(self) -> str | None:
        return self._notification_url

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
            headers={
                "Authorization": f"Bearer {self._access_token}",
                "Content-Type": "application/json",
            },
        )

    def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        if not self.is_configured:
            raise GatewayError("Mercado Pago is not configured", status_code=503)

        try:
            with self._client() as client:
                resp = client.request(method, path, **kwargs)
                resp.raise_for_status()
                return resp.json()
        except httpx.TimeoutException as exc:
            raise GatewayError(f"Mercado Pago request timed out: {exc}", status_code=504) from exc
        except httpx.HTTPStatusError as exc:
            raise GatewayError(_error_message(exc.response), status_code=exc.response.status_code) from exc
        except httpx.RequestError as exc:
            raise GatewayError(f"Mercado Pago unreachable: {exc}", status_code=502) from exc
        except ValueError as exc:
            raise GatewayError("Mercado Pago returned an invalid response", status_code=502) from exc

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------

    def create_preference(self, *, order_id: int, amount_cents: int, description: str) -> Preference:
        """Request a payable link for an order; the order id is the external reference."""
        body: dict[str, Any] = {
            "items": [
                {
                    "id": f"order_{order_id}",
                    "title": description[:PREFERENCE_TITLE_MAX],
                    "quantity": 1,
                    "currency_id": self._currency_id,
                    "unit_price": float(Decimal(amount_cents) / 100),
                }
            ],
            "external_reference": str(order_id),
            "purpose": "wallet_purchase",
        }
        if self._notification_url:
            body["notification_url"] = self._notification_url

        data = self._request("POST", "/checkout/preferences", json=body)

        redirect_url = data.get("sandbox_init_point") if self.sandbox else data.get("init_point")
        preference_id = data.get("id")
        if not redirect_url or not preference_id:
            raise GatewayError("Mercado Pago did not return a payment URL or preference id")

        return Preference(preference_id=str(preference_id), redirect_url=redirect_url)

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def get_payment(self, payment_id: str) -> PaymentDetails:
        data = self._request("GET", f"/v1/payments/{payment_id}")
        return PaymentDetails.from_api(data)

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_webhook_signature(
        self,
        signature_header: str | None,
        request_id: str | None,
        data_id: str | None,
    ) -> bool:
        """Verify the x-signature header of a webhook delivery."""
        if not self._webhook_secret:
            return True

        if not signature_header:
            return False

        parts = {}
        for chunk in signature_header.split(","):
            key, _, value = chunk.strip().partition("=")
            if key and value:
                parts[key.strip()] = value.strip()

        ts = parts.get("ts")
        received = parts.get("v1")
        if not ts or not received:
            return False

        manifest = ""
        if data_id:
            # Alphanumeric ids are signed in lowercase
            manifest += f"id:{data_id.lower() if data_id.isalnum() else data_id};"
        if request_id:
            manifest += f"request-id:{request_id};"
        manifest += f"ts:{ts};"

        expected = hmac.new(
            self._webhook_secret.encode("utf-8"),
            manifest.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(expected, received)

    @property
    def verifies_signatures(self) -> bool:
        return bool(self._webhook_secret)


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return f"Mercado Pago error (HTTP {response.status_code})"
    if isinstance(payload, dict):
        return payload.get("message") or payload.get("error") or f"Mercado Pago error (HTTP {response.status_code})"
    return f"Mercado Pago error (HTTP {response.status_code})"


def get_gateway() -> MercadoPagoClient:
    """The gateway registered on the current app (replaced by a fake in tests)."""
    return current_app.extensions["mercado_pago"]
