"""HTTP server for invoice registration and invoice pages."""

from __future__ import annotations

import errno
import hmac
import json
import logging
import re
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, Mapping, Optional, Tuple

import requests

from .config import LISTEN_BACKLOG, MAX_BODY_BYTES as MAX_BODY_BYTES_CONFIG
from .pages import SECURITY_HEADERS, render_invoice_page, resolve_brand_css
from .store import DuplicateInvoiceError, Invoice, InvoiceStore

logger = logging.getLogger(__name__)

ValidationError = Tuple[int, Dict[str, Any]]

REQUIRED_FIELDS = ("id", "clientName", "clientEmail", "amount", "expiryTimestamp", "pageUrl")
EXTRA_FIELDS = ("items", "notes", "brandColor", "brandCss", "clientWebsite")
INVOICE_PATH_RE = re.compile(r"^/invoice/(?P<id>[A-Za-z0-9_-]+)/?$")

DISCONNECT_ERRNOS = {
    errno.EPIPE,
    errno.ECONNRESET,
    errno.ETIMEDOUT,
}


class DependencyError(RuntimeError):
    """Raised when a required runtime dependency is missing."""


class RegistrationError(RuntimeError):
    """Raised when the registration endpoint rejects an invoice."""


def is_client_disconnect(exc: BaseException) -> bool:
    if isinstance(exc, (BrokenPipeError, ConnectionResetError, TimeoutError)):
        return True
    return isinstance(exc, OSError) and exc.errno in DISCONNECT_ERRNOS


def check_dependencies() -> None:
    for module in ("numpy", "PIL", "dateutil", "jinja2"):
        try:
            __import__(module)
        except ModuleNotFoundError as exc:
            raise DependencyError(
                f"Missing dependency '{exc.name}'. Install the project with 'pip install .'."
            ) from exc


def is_authorized(header: Optional[str], secret: str) -> bool:
    if not secret or not header:
        return False
    return hmac.compare_digest(header, f"Bearer {secret}")


def validate_registration_payload(
    body: bytes,
) -> Tuple[Optional[Invoice], Optional[ValidationError]]:
    try:
        payload = json.loads(body.decode("utf-8"))
    except UnicodeDecodeError:
        return None, (
            400,
            {"error": "invalid_encoding", "detail": "Body must be UTF-8 encoded JSON."},
        )
    except json.JSONDecodeError as exc:
        return None, (
            400,
            {
                "error": "invalid_json",
                "detail": f"{exc.msg} (line {exc.lineno}, column {exc.colno})",
            },
        )

    if not isinstance(payload, dict):
        return None, (
            400,
            {"error": "invalid_payload", "detail": "JSON root must be an object."},
        )

    missing = [name for name in REQUIRED_FIELDS if not payload.get(name)]
    if missing:
        return None, (
            400,
            {"error": "missing_fields", "detail": f"Missing required fields: {', '.join(missing)}"},
        )

    amount = payload["amount"]
    if isinstance(amount, bool) or not isinstance(amount, (int, float)) or amount <= 0:
        return None, (
            400,
            {"error": "invalid_amount", "detail": "amount must be a positive number"},
        )

    expiry = payload["expiryTimestamp"]
    if isinstance(expiry, bool) or not isinstance(expiry, (int, float)):
        return None, (
            400,
            {
                "error": "invalid_expiry",
                "detail": "expiryTimestamp must be a number (UTC milliseconds)",
            },
        )

    if not INVOICE_PATH_RE.match(f"/invoice/{payload['id']}/"):
        return None, (
            400,
            {"error": "invalid_id", "detail": "id may only contain letters, digits, '-' and '_'."},
        )

    extras = {key: payload[key] for key in EXTRA_FIELDS if payload.get(key)}
    invoice = Invoice(
        id=str(payload["id"]),
        client_name=str(payload["clientName"]),
        client_email=str(payload["clientEmail"]),
        amount=float(amount),
        currency=str(payload.get("currency") or "USD").upper(),
        expiry_timestamp=int(expiry),
        page_url=str(payload["pageUrl"]),
        calendly_link=str(payload.get("calendlyLink") or ""),
        payload=extras,
    )
    return invoice, None


def page_context(invoice: Invoice) -> Dict[str, Any]:
    context: Dict[str, Any] = dict(invoice.payload)
    context.update(
        {
            "id": invoice.id,
            "clientName": invoice.client_name,
            "clientEmail": invoice.client_email,
            "amount": invoice.amount,
            "currency": invoice.currency,
            "expiryTimestamp": invoice.expiry_timestamp,
            "calendlyLink": invoice.calendly_link,
        }
    )
    return context


def register_invoice(
    meta: Mapping[str, Any],
    worker_url: str,
    secret: str,
    session: Optional[requests.Session] = None,
    timeout: float = 20.0,
) -> Dict[str, Any]:
    """POST build metadata to a running server's registration endpoint."""
    if not worker_url:
        raise RegistrationError("WORKER_URL environment variable is required")
    if not secret:
        raise RegistrationError("REGISTER_SECRET environment variable is required")

    url = f"{worker_url.rstrip('/')}/api/register"
    logger.info("Registering invoice %s at %s...", meta.get("id"), url)
    response = (session or requests).post(
        url,
        json=dict(meta),
        headers={"Authorization": f"Bearer {secret}"},
        timeout=timeout,
    )
    if response.status_code >= 300:
        raise RegistrationError(f"Registration failed ({response.status_code}): {response.text}")
    return response.json()


class InvoiceHandler(BaseHTTPRequestHandler):
    MAX_BODY_BYTES = MAX_BODY_BYTES_CONFIG
    server: "InvoiceHTTPServer"

    def _write_response(
        self,
        status: int,
        content_type: str,
        body: bytes,
        headers: Optional[Mapping[str, str]] = None,
    ) -> bool:
        try:
            self.send_response(status)
            self.send_header("Content-Type", content_type)
            self.send_header("Content-Length", str(len(body)))
            for name, value in (headers or {}).items():
                self.send_header(name, value)
            self.end_headers()
            self.wfile.write(body)
            return True
        except Exception as exc:
            if is_client_disconnect(exc):
                return False
            raise

    def _send_json(self, status: int, payload: Dict[str, Any]) -> bool:
        body = json.dumps(payload).encode("utf-8")
        return self._write_response(status, "application/json", body)

    def _read_body(self) -> Optional[bytes]:
        header = self.headers.get("Content-Length")
        if header is None:
            self._send_json(
                411,
                {
                    "error": "missing_content_length",
                    "detail": "Content-Length header is required.",
                },
            )
            return None

        try:
            content_length = int(header)
        except ValueError:
            self._send_json(
                400,
                {
                    "error": "invalid_content_length",
                    "detail": "Content-Length must be an integer.",
                },
            )
            return None

        if content_length <= 0:
            self._send_json(400, {"error": "empty_body", "detail": "Request body cannot be empty."})
            return None

        if content_length > self.MAX_BODY_BYTES:
            self._send_json(
                413,
                {
                    "error": "payload_too_large",
                    "detail": f"Body exceeds {self.MAX_BODY_BYTES} bytes.",
                },
            )
            return None

        try:
            return self.rfile.read(content_length)
        except Exception as exc:
            if is_client_disconnect(exc):
                return None
            raise

    def do_POST(self) -> None:
        if self.path != "/api/register":
            self._send_json(404, {"error": "not_found", "detail": "Unsupported endpoint."})
            return

        if not is_authorized(self.headers.get("Authorization"), self.server.register_secret):
            self._send_json(401, {"error": "Unauthorized"})
            return

        body = self._read_body()
        if body is None:
            return

        invoice, validation_error = validate_registration_payload(body)
        if invoice is None:
            status, payload_body = validation_error or (
                400,
                {"error": "invalid_payload", "detail": "Invoice could not be read."},
            )
            self._send_json(status, payload_body)
            return

        try:
            self.server.store.insert(invoice)
        except DuplicateInvoiceError as exc:
            self._send_json(409, {"error": "duplicate_invoice", "detail": str(exc)})
            return
        except Exception as exc:
            logger.exception("Registering invoice %s failed", invoice.id)
            self._send_json(500, {"error": "register_failed", "detail": str(exc)})
            return

        logger.info("Registered invoice %s expiring at %d", invoice.id, invoice.expiry_timestamp)
        self._send_json(201, {"success": True})

    def do_GET(self) -> None:
        if self.path in ("/health", "/healthz", "/ready"):
            self._send_json(200, {"status": "ok"})
            return

        match = INVOICE_PATH_RE.match(self.path)
        if match is None:
            self._send_json(404, {"error": "not_found", "detail": "Unsupported endpoint."})
            return

        invoice = self.server.store.get(match.group("id"))
        if invoice is None:
            self._send_json(404, {"error": "not_found", "detail": "Unknown invoice."})
            return

        context = page_context(invoice)
        page = render_invoice_page(context, resolve_brand_css(context))
        self._write_response(200, "text/html; charset=utf-8", page.encode("utf-8"), SECURITY_HEADERS)

    def handle_one_request(self) -> None:
        try:
            super().handle_one_request()
        except Exception as exc:
            if is_client_disconnect(exc):
                return
            raise

    def log_message(self, format: str, *args: Any) -> None:
        logger.debug("%s - %s", self.address_string(), format % args)


class InvoiceHTTPServer(ThreadingHTTPServer):
    daemon_threads = True
    allow_reuse_address = True
    request_queue_size = LISTEN_BACKLOG

    def __init__(self, address: Tuple[str, int], store: InvoiceStore, register_secret: str) -> None:
        super().__init__(address, InvoiceHandler)
        self.store = store
        self.register_secret = register_secret


def run(host: str, port: int, store: InvoiceStore, register_secret: str) -> None:
    check_dependencies()
    if not register_secret:
        logger.warning("REGISTER_SECRET is empty; every registration will be rejected")
    server = InvoiceHTTPServer((host, port), store, register_secret)
    logger.info("Invoice server listening on http://%s:%d", host, port)
    server.serve_forever()
