"""SQLite-backed invoice store."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS invoices (
    id TEXT PRIMARY KEY,
    client_name TEXT NOT NULL,
    client_email TEXT NOT NULL,
    amount REAL NOT NULL,
    currency TEXT NOT NULL DEFAULT 'USD',
    expiry_timestamp INTEGER NOT NULL,
    email_sent INTEGER NOT NULL DEFAULT 0,
    email_sent_at TEXT,
    page_url TEXT NOT NULL,
    calendly_link TEXT,
    payload TEXT,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_invoices_expiry_unsent
    ON invoices (email_sent, expiry_timestamp);
"""

_COLUMNS = (
    "id, client_name, client_email, amount, currency, expiry_timestamp, "
    "email_sent, email_sent_at, page_url, calendly_link, payload, created_at"
)


class DuplicateInvoiceError(ValueError):
    """Raised when an invoice id is registered twice."""


@dataclass(frozen=True)
class Invoice:
    id: str
    client_name: str
    client_email: str
    amount: float
    currency: str
    expiry_timestamp: int
    page_url: str
    calendly_link: str = ""
    email_sent: bool = False
    email_sent_at: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Invoice":
        return cls(
            id=row["id"],
            client_name=row["client_name"],
            client_email=row["client_email"],
            amount=float(row["amount"]),
            currency=row["currency"],
            expiry_timestamp=int(row["expiry_timestamp"]),
            page_url=row["page_url"],
            calendly_link=row["calendly_link"] or "",
            email_sent=bool(row["email_sent"]),
            email_sent_at=row["email_sent_at"],
            payload=json.loads(row["payload"]) if row["payload"] else {},
            created_at=row["created_at"],
        )


class InvoiceStore:
    """One shared connection guarded by a lock; every write is a single statement."""

    def __init__(self, path: str) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._lock:
            self._conn.executescript(SCHEMA)
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def insert(self, invoice: Invoice) -> None:
        try:
            with self._lock:
                self._conn.execute(
                    "INSERT INTO invoices (id, client_name, client_email, amount, currency, "
                    "expiry_timestamp, page_url, calendly_link, payload) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        invoice.id,
                        invoice.client_name,
                        invoice.client_email,
                        invoice.amount,
                        invoice.currency,
                        invoice.expiry_timestamp,
                        invoice.page_url,
                        invoice.calendly_link,
                        json.dumps(invoice.payload) if invoice.payload else None,
                    ),
                )
                self._conn.commit()
        except sqlite3.IntegrityError as exc:
            raise DuplicateInvoiceError(f"Invoice {invoice.id} already exists") from exc

    def get(self, invoice_id: str) -> Optional[Invoice]:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_COLUMNS} FROM invoices WHERE id = ?", (invoice_id,)
            ).fetchone()
        return Invoice.from_row(row) if row is not None else None

    def select_expired_unnotified(self, now_ms: int) -> List[Invoice]:
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_COLUMNS} FROM invoices "
                "WHERE expiry_timestamp < ? AND email_sent = 0 ORDER BY expiry_timestamp",
                (now_ms,),
            ).fetchall()
        return [Invoice.from_row(row) for row in rows]

    def mark_notified(self, invoice_id: str, sent_at: str) -> bool:
        """Flip ``email_sent`` once; False when the row is gone or already flipped."""
        with self._lock:
            cursor = self._conn.execute(
                "UPDATE invoices SET email_sent = 1, email_sent_at = ? "
                "WHERE id = ? AND email_sent = 0",
                (sent_at, invoice_id),
            )
            self._conn.commit()
        return cursor.rowcount == 1
