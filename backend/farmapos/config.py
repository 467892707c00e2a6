# backend/farmapos/config.py
from __future__ import annotations
import os


def _bool_env(name: str):
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return None
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",  # e.g. postgresql+psycopg2://... in production
        "sqlite:///farmapos.sqlite3",  # default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Mercado Pago
    MP_ACCESS_TOKEN = os.environ.get("MP_ACCESS_TOKEN", "")
    MP_API_BASE_URL = os.environ.get("MP_API_BASE_URL", "https://api.mercadopago.com")
    MP_CURRENCY_ID = os.environ.get("MP_CURRENCY_ID", "MXN")
    MP_WEBHOOK_URL = os.environ.get("MP_WEBHOOK_URL")
    MP_WEBHOOK_SECRET = os.environ.get("MP_WEBHOOK_SECRET")
    # None means "derive from the access token prefix" (TEST-... tokens are sandbox)
    MP_SANDBOX = _bool_env("MP_SANDBOX")
    MP_TIMEOUT_SECONDS = float(os.environ.get("MP_TIMEOUT_SECONDS", "5"))

    CORS_ALLOWED_ORIGINS = [
        origin.strip()
        for origin in os.environ.get(
            "CORS_ALLOWED_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173",
        ).split(",")
        if origin.strip()
    ]
