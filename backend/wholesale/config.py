# backend/wholesale/config.py
from __future__ import annotations
import json
import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_optional_int(name: str) -> int | None:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    return int(raw)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/wholesale.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///wholesale.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Delivery settings (read-only inputs to the settlement calculator)
    FREE_DELIVERY_THRESHOLD_CENTS = int(os.environ.get("FREE_DELIVERY_THRESHOLD_CENTS", "10000"))
    BASE_DELIVERY_FEE_CENTS = int(os.environ.get("BASE_DELIVERY_FEE_CENTS", "500"))

    # Loyalty: 2% of non-tobacco item dollars, 1 point = 1 cent on redemption
    LOYALTY_EARN_RATE = os.environ.get("LOYALTY_EARN_RATE", "0.02")
    LOYALTY_POINT_VALUE_CENTS = int(os.environ.get("LOYALTY_POINT_VALUE_CENTS", "1"))
    LOYALTY_MAX_REDEEM_PERCENT = _env_optional_int("LOYALTY_MAX_REDEEM_PERCENT")

    # Payments larger than the owed amount turn into prepaid credit when True
    ALLOW_CREDIT_OVERPAYMENT = _env_bool("ALLOW_CREDIT_OVERPAYMENT", True)

    # Per-customer write serialization
    LEDGER_LOCK_TIMEOUT_SECONDS = float(os.environ.get("LEDGER_LOCK_TIMEOUT_SECONDS", "5.0"))
    LEDGER_RETRY_ATTEMPTS = int(os.environ.get("LEDGER_RETRY_ATTEMPTS", "3"))
    LEDGER_RETRY_BACKOFF_SECONDS = float(os.environ.get("LEDGER_RETRY_BACKOFF_SECONDS", "0.1"))

    # token -> {"actor_id": "...", "role": "admin|staff|customer"}
    AUTH_TOKENS = json.loads(os.environ.get("WHOLESALE_AUTH_TOKENS", "{}"))

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
