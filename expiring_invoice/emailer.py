"""Expiry notification emails, delivered through the Resend HTTP API."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import requests

from .store import Invoice
from .templating import render_template

logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"
EXPIRY_SUBJECT = "Your invoice has expired — book a call for updated pricing"


@dataclass(frozen=True)
class DeliveryResult:
    ok: bool
    error: Optional[str] = None
    message_id: Optional[str] = None


def render_expiry_email(invoice: Invoice) -> Tuple[str, str]:
    body = render_template(
        "expiry_email.html",
        client_name=invoice.client_name,
        currency=invoice.currency,
        amount=invoice.amount,
        booking=invoice.calendly_link,
    )
    return EXPIRY_SUBJECT, body


class ResendEmailer:
    """Single best-effort POST per message; HTTP errors come back as results."""

    def __init__(
        self,
        api_key: str,
        from_email: str,
        timeout: float = 20.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.api_key = api_key
        self.from_email = from_email
        self.timeout = timeout
        self.session = session or requests.Session()

    def send(self, to: str, subject: str, html_body: str) -> DeliveryResult:
        if not self.api_key:
            return DeliveryResult(False, "RESEND_API_KEY is not configured")
        if not to:
            return DeliveryResult(False, "Missing recipient email")

        response = self.session.post(
            RESEND_URL,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            json={
                "from": self.from_email,
                "to": [to],
                "subject": subject,
                "html": html_body,
            },
            timeout=self.timeout,
        )
        if response.status_code >= 400:
            return DeliveryResult(False, f"Resend error: {response.status_code} {response.text}")

        message_id = None
        try:
            body = response.json()
        except ValueError:
            logger.debug("Resend returned a non-JSON success body")
        else:
            if isinstance(body, dict):
                message_id = body.get("id")
            else:
                logger.debug("Resend returned a non-object success body: %r", body)
        return DeliveryResult(True, message_id=message_id)
