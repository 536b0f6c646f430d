# backend/keyledger/config.py
from __future__ import annotations
import json
import os


# Tier table used when KEY_PRICING_JSON is not set. Prices are minor units.
DEFAULT_KEY_PRICING = [
    {"tier_id": "1hour", "label": "1 Hour", "price": 5, "duration_hours": 1},
    {"tier_id": "6hours", "label": "6 Hours", "price": 10, "duration_hours": 6},
    {"tier_id": "12hours", "label": "12 Hours", "price": 20, "duration_hours": 12},
    {"tier_id": "1day", "label": "1 Day", "price": 50, "duration_hours": 24},
    {"tier_id": "3days", "label": "3 Days", "price": 100, "duration_hours": 72},
    {"tier_id": "7days", "label": "7 Days", "price": 200, "duration_hours": 168},
    {"tier_id": "15days", "label": "15 Days", "price": 400, "duration_hours": 360},
    {"tier_id": "30days", "label": "30 Days", "price": 700, "duration_hours": 720},
    {"tier_id": "60days", "label": "60 Days", "price": 1000, "duration_hours": 1440},
]


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_pricing():
    raw = os.environ.get("KEY_PRICING_JSON")
    if not raw:
        return DEFAULT_KEY_PRICING
    return json.loads(raw)


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///keyledger.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Pricing tiers, loaded once into an immutable catalog at app creation
    KEY_PRICING = _env_pricing()

    # Key code generation: fixed length, bounded attempts, widened final attempt
    KEY_CODE_LENGTH = int(os.environ.get("KEY_CODE_LENGTH", "16"))
    KEY_CODE_WIDENED_LENGTH = int(os.environ.get("KEY_CODE_WIDENED_LENGTH", "24"))
    KEY_CODE_ATTEMPTS = int(os.environ.get("KEY_CODE_ATTEMPTS", "5"))

    REFERRAL_CODE_LENGTH = int(os.environ.get("REFERRAL_CODE_LENGTH", "10"))
    REFERRAL_CODE_WIDENED_LENGTH = int(os.environ.get("REFERRAL_CODE_WIDENED_LENGTH", "12"))
    REFERRAL_CODE_ATTEMPTS = int(os.environ.get("REFERRAL_CODE_ATTEMPTS", "5"))

    DEFAULT_DEVICE_LIMIT = 1
    MAX_DEVICE_LIMIT = 10

    # Stricter policy: one redemption of a given code per account
    REDEEM_ONCE_PER_ACCOUNT = _env_bool("REDEEM_ONCE_PER_ACCOUNT", True)

    LEDGER_RETRY_ATTEMPTS = int(os.environ.get("LEDGER_RETRY_ATTEMPTS", "3"))
    LEDGER_RETRY_BACKOFF = float(os.environ.get("LEDGER_RETRY_BACKOFF", "0.1"))

    # Seconds; None disables the per-request deadline
    DEFAULT_REQUEST_TIMEOUT = (
        float(os.environ["DEFAULT_REQUEST_TIMEOUT"]) if os.environ.get("DEFAULT_REQUEST_TIMEOUT") else None
    )

    ADMIN_API_KEY = os.environ.get("ADMIN_API_KEY", "dev-admin-key-change-me")
