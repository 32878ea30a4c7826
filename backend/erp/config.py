# backend/erp/config.py
from __future__ import annotations
import os
from decimal import Decimal


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/erp.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///erp.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Bounded wait for row/database locks inside a write unit
    LOCK_TIMEOUT_SECONDS = float(os.environ.get("LOCK_TIMEOUT_SECONDS", "5"))

    # Read-only aggregation may be retried; writes never are
    READ_RETRY_ATTEMPTS = int(os.environ.get("READ_RETRY_ATTEMPTS", "3"))

    PAYMENT_TERMS_REQUIRE_FULL_ALLOCATION = _env_bool("PAYMENT_TERMS_REQUIRE_FULL_ALLOCATION", True)

    CURRENCY_QUANTUM = Decimal("0.01")

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
