"""Runtime configuration loaded from environment variables."""

from __future__ import annotations

import os


def env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value >= minimum else default


def env_str(name: str, default: str = "") -> str:
    raw = os.getenv(name)
    if raw is None:
        return default
    raw = raw.strip()
    return raw if raw else default


HOST = env_str("INVOICE_HOST", "0.0.0.0")
PORT = env_int("INVOICE_PORT", 8080, minimum=1)

DB_PATH = env_str("INVOICE_DB_PATH", "invoices.db")
PUBLIC_DIR = env_str("INVOICE_PUBLIC_DIR", "public")

RESEND_API_KEY = env_str("RESEND_API_KEY")
FROM_EMAIL = env_str("FROM_EMAIL", "invoices@yourdomain.com")
REGISTER_SECRET = env_str("REGISTER_SECRET")
WORKER_URL = env_str("WORKER_URL")

SWEEP_INTERVAL_SECONDS = env_int("INVOICE_SWEEP_INTERVAL_SECONDS", 300, minimum=1)
EXPIRY_DAYS = env_int("INVOICE_EXPIRY_DAYS", 7, minimum=1)
EMAIL_TIMEOUT_SECONDS = env_int("INVOICE_EMAIL_TIMEOUT_SECONDS", 20, minimum=1)

MAX_BODY_BYTES = env_int("INVOICE_MAX_BODY_BYTES", 1024 * 1024, minimum=1024)
LISTEN_BACKLOG = env_int("INVOICE_LISTEN_BACKLOG", 128, minimum=1)

LOG_LEVEL = env_str("INVOICE_LOG_LEVEL", "INFO").upper()
