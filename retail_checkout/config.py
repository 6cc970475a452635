"""
Service configuration

Every service reads its settings from environment variables, with defaults
that run the whole system locally on SQLite and a local Redis.
"""

import os

REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")

INVENTORY_SERVICE_URL = os.environ.get("INVENTORY_SERVICE_URL", "http://localhost:8001")
ORDER_SERVICE_URL = os.environ.get("ORDER_SERVICE_URL", "http://localhost:8002")
CART_SERVICE_URL = os.environ.get("CART_SERVICE_URL", "http://localhost:8003")

# Unset means the in-process mock gateway is used.
PAYMENT_GATEWAY_URL = os.environ.get("PAYMENT_GATEWAY_URL")

CURRENCY = os.environ.get("CHECKOUT_CURRENCY", "GBP")

RESERVATION_TTL_SECONDS = int(os.environ.get("RESERVATION_TTL_SECONDS", "600"))
SWEEP_INTERVAL_SECONDS = float(os.environ.get("SWEEP_INTERVAL_SECONDS", "30"))
LEDGER_CAS_ATTEMPTS = int(os.environ.get("LEDGER_CAS_ATTEMPTS", "25"))

STEP_TIMEOUT_SECONDS = float(os.environ.get("STEP_TIMEOUT_SECONDS", "5"))
RETRY_ATTEMPTS = int(os.environ.get("RETRY_ATTEMPTS", "3"))
RETRY_BACKOFF_SECONDS = float(os.environ.get("RETRY_BACKOFF_SECONDS", "0.2"))
HTTP_TIMEOUT_SECONDS = float(os.environ.get("HTTP_TIMEOUT_SECONDS", "10"))

AUTO_CREATE_SCHEMA = os.environ.get("AUTO_CREATE_SCHEMA", "1") == "1"
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")


def database_url(service: str) -> str:
    """DATABASE_URL for this process, or a SQLite file named after the service."""
    return os.environ.get("DATABASE_URL", f"sqlite+aiosqlite:///./{service}.db")
