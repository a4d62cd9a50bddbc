"""Public package API for self-expiring invoices."""

from __future__ import annotations

from typing import Any, Dict, Mapping


def build_invoice(payload: Mapping[str, Any], public_dir: str, expiry_days: int = 7) -> Dict[str, Any]:
    from .pages import build_invoice as _build_invoice

    return _build_invoice(payload, public_dir, expiry_days=expiry_days)


def run_sweep(db_path: str) -> Any:
    from .config import EMAIL_TIMEOUT_SECONDS, FROM_EMAIL, RESEND_API_KEY
    from .emailer import ResendEmailer
    from .store import InvoiceStore
    from .sweep import process_expired_invoices

    store = InvoiceStore(db_path)
    try:
        emailer = ResendEmailer(RESEND_API_KEY, FROM_EMAIL, timeout=EMAIL_TIMEOUT_SECONDS)
        return process_expired_invoices(store, emailer)
    finally:
        store.close()


def run(host: str = "0.0.0.0", port: int = 8080) -> None:
    from .config import DB_PATH, REGISTER_SECRET
    from .server import run as _run
    from .store import InvoiceStore

    _run(host, port, InvoiceStore(DB_PATH), REGISTER_SECRET)


__all__ = ["build_invoice", "run", "run_sweep"]
