from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from .services.order_states import PaymentMethod


# Maximum order total: 9,999,999.99 (999,999,999 cents)
MAX_AMOUNT_CENTS = 999_999_999
MAX_DESCRIPTION_LENGTH = 255

# Largest value an INTEGER id column holds on every supported backend
MAX_ID = 2**31 - 1
MAX_QUANTITY = 100_000

DISPENSING_STATUSES = ("dispensed", "incomplete")


class ValidationError(ValueError):
    """400-level input problem."""


@dataclass(frozen=True)
class CartItem:
    sku: str
    quantity: int
    unit_price_cents: int


@dataclass(frozen=True)
class PrescriptionUpdate:
    prescription_id: int
    dispensing_status: str
    dispensed_items: Any = None

    def to_dict(self) -> dict:
        return {
            "prescription_id": self.prescription_id,
            "dispensing_status": self.dispensing_status,
            "dispensed_items": self.dispensed_items,
        }


@dataclass(frozen=True)
class OrderRequest:
    amount_cents: int
    payment_method: PaymentMethod
    pharmacy_id: int
    cart_items: list[CartItem] = field(default_factory=list)
    description: str | None = None
    patient_id: int | None = None
    buy_without_account: bool = False
    cash_session_id: int | None = None
    cashier_id: int | None = None
    card_reference: str | None = None
    prescription_update: PrescriptionUpdate | None = None


def _coerce_int(
    key: str,
    value: Any,
    *,
    required: bool = False,
    minimum: int | None = None,
    maximum: int | None = MAX_ID,
) -> int | None:
    """Strict integer coercion: rejects bools, floats and scientific notation."""
    if value is None or value == "":
        if required:
            raise ValidationError(f"{key} is required")
        return None

    if isinstance(value, bool):
        raise ValidationError(f"{key} must be an integer")

    if isinstance(value, int):
        result = value
    elif isinstance(value, str):
        stripped = value.strip()
        if "e" in stripped.lower() or "." in stripped:
            raise ValidationError(f"{key} must be a plain integer")
        try:
            result = int(stripped)
        except ValueError:
            raise ValidationError(f"{key} must be an integer")
    elif isinstance(value, float):
        if not value.is_integer():
            raise ValidationError(f"{key} must be an integer, not a decimal")
        result = int(value)
    else:
        raise ValidationError(f"{key} must be an integer")

    if minimum is not None and result < minimum:
        raise ValidationError(f"{key} must be >= {minimum}")
    if maximum is not None and result > maximum:
        raise ValidationError(f"{key} must be <= {maximum}")
    return result


def _coerce_bool(key: str, value: Any) -> bool:
    """Accept real booleans, 0/1 and "true"/"false" strings; missing means False."""
    if value is None or value == "":
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str) and value.strip().lower() in ("true", "false", "1", "0"):
        return value.strip().lower() in ("true", "1")
    raise ValidationError(f"{key} must be a boolean")


def parse_amount_cents(key: str, value: Any, *, allow_zero: bool = False) -> int:
    """Convert a decimal currency amount to integer cents (half-up)."""
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{key} must be a number")
    if not isinstance(value, (int, float, str, Decimal)):
        raise ValidationError(f"{key} must be a number")

    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValidationError(f"{key} must be a number")

    if not amount.is_finite():
        raise ValidationError(f"{key} must be a number")

    cents = int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if cents < 0 or (cents == 0 and not allow_zero):
        raise ValidationError(f"{key} must be positive")
    if cents > MAX_AMOUNT_CENTS:
        raise ValidationError(f"{key} exceeds maximum allowed")
    return cents


def _parse_cart_item(index: int, raw: Any, pharmacy_id: int) -> CartItem:
    if not isinstance(raw, dict):
        raise ValidationError(f"cart_items[{index}] must be an object")

    sku = raw.get("sku")
    if sku is None or not str(sku).strip():
        raise ValidationError(f"cart_items[{index}].sku is required")

    quantity = _coerce_int(
        f"cart_items[{index}].quantity", raw.get("quantity"), required=True, minimum=1, maximum=MAX_QUANTITY
    )
    unit_price_cents = parse_amount_cents(
        f"cart_items[{index}].unit_price", raw.get("unit_price", 0), allow_zero=True
    )

    # Items may repeat the pharmacy; it must agree with the order's
    item_pharmacy = raw.get("pharmacy_id")
    if item_pharmacy is not None:
        if _coerce_int(f"cart_items[{index}].pharmacy_id", item_pharmacy) != pharmacy_id:
            raise ValidationError(f"cart_items[{index}].pharmacy_id does not match pharmacy_id")

    return CartItem(sku=str(sku).strip(), quantity=quantity, unit_price_cents=unit_price_cents)


def _parse_prescription_update(raw: Any) -> PrescriptionUpdate | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ValidationError("prescription_update must be an object")

    prescription_id = _coerce_int("prescription_update.prescription_id", raw.get("prescription_id"))
    if prescription_id is None:
        return None

    status = raw.get("dispensing_status") or "dispensed"
    if status not in DISPENSING_STATUSES:
        raise ValidationError(f"prescription_update.dispensing_status must be one of {list(DISPENSING_STATUSES)}")

    return PrescriptionUpdate(
        prescription_id=prescription_id,
        dispensing_status=status,
        dispensed_items=raw.get("dispensed_items"),
    )


def parse_order_request(data: Any) -> OrderRequest:
    """
    Validate a POST /create_order body.

    Raises:
        ValidationError: On any malformed or missing field; nothing is persisted
    """
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")

    amount_cents = parse_amount_cents("amount", data.get("amount"))

    raw_method = data.get("payment_method")
    try:
        method = PaymentMethod(raw_method)
    except ValueError:
        raise ValidationError(
            f"payment_method must be one of {[m.value for m in PaymentMethod]}"
        )

    pharmacy_id = _coerce_int("pharmacy_id", data.get("pharmacy_id"), required=True, minimum=1)

    raw_items = data.get("cart_items") or []
    if not isinstance(raw_items, list):
        raise ValidationError("cart_items must be a list")
    if method != PaymentMethod.QR and not raw_items:
        raise ValidationError("cart_items must not be empty")
    items = [_parse_cart_item(i, raw, pharmacy_id) for i, raw in enumerate(raw_items)]

    description = data.get("description")
    if description is not None:
        description = str(description).strip()[:MAX_DESCRIPTION_LENGTH] or None

    card_reference = data.get("card_reference")
    if card_reference is not None:
        card_reference = str(card_reference).strip() or None

    return OrderRequest(
        amount_cents=amount_cents,
        payment_method=method,
        pharmacy_id=pharmacy_id,
        cart_items=items,
        description=description,
        patient_id=_coerce_int("patient_id", data.get("patient_id")),
        buy_without_account=_coerce_bool("buy_without_account", data.get("buy_without_account")),
        cash_session_id=_coerce_int("cash_session_id", data.get("cash_session_id")),
        cashier_id=_coerce_int("cashier_id", data.get("cashier_id")),
        card_reference=card_reference,
        prescription_update=_parse_prescription_update(data.get("prescription_update")),
    )
