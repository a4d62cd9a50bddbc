"""Invoice page rendering, brand CSS and the static build."""

from __future__ import annotations

import json
import logging
import os
import re
import uuid
from typing import Any, Callable, Dict, List, Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .countdown import UrgencyState, describe
from .formatting import (
    DAY_MS,
    now_ms,
    parse_timestamp_ms,
    safe_float,
    split_lines,
)
from .templating import render_template

logger = logging.getLogger(__name__)

DEFAULT_BRAND_COLOR = "#2563eb"
SCOPE = ".invoice-container"

CONTENT_SECURITY_POLICY = (
    "default-src 'self'; script-src 'self' https://assets.calendly.com; "
    "frame-src https://calendly.com; style-src 'self' 'unsafe-inline' https://fonts.googleapis.com; "
    "font-src https://fonts.gstatic.com; img-src 'self' data: blob:"
)

SECURITY_HEADERS = {
    "X-Robots-Tag": "noindex, nofollow, noarchive",
    "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Content-Security-Policy": CONTENT_SECURITY_POLICY,
}

ROBOTS_TXT = "User-agent: *\nDisallow: /invoice/\n"

PAGE_CSS = """body {
  margin: 0;
  background: #f3f4f6;
}

.expired-state {
  display: none;
  flex-direction: column;
  align-items: center;
  max-width: 800px;
  margin: 2rem auto;
  padding: 2rem;
  background: #ffffff;
  font-family: system-ui, -apple-system, sans-serif;
  color: #1f2937;
}

.expired-state .calendly-inline-widget {
  width: 100%;
  min-width: 320px;
  height: 700px;
}

body.expired .invoice-container {
  display: none;
}

body.expired .expired-state {
  display: flex;
}"""


def generate_fallback_css(primary_color: str = DEFAULT_BRAND_COLOR) -> str:
    return f""".invoice-container {{
  --brand-primary: {primary_color};
  --brand-primary-light: {primary_color}1a;
  --brand-text: #1f2937;
  --brand-text-light: #6b7280;
  --brand-bg: #ffffff;
  --brand-border: #e5e7eb;
  font-family: 'Inter', system-ui, -apple-system, sans-serif;
  max-width: 800px;
  margin: 0 auto;
  padding: 2rem;
  background: var(--brand-bg);
  color: var(--brand-text);
  line-height: 1.6;
}}

.invoice-container .invoice-header {{
  display: flex;
  justify-content: space-between;
  align-items: flex-start;
  padding-bottom: 1.5rem;
  border-bottom: 2px solid var(--brand-primary);
  margin-bottom: 2rem;
}}

.invoice-container .invoice-meta {{
  display: grid;
  grid-template-columns: 1fr 1fr;
  gap: 1rem;
  margin-bottom: 2rem;
  color: var(--brand-text-light);
}}

.invoice-container .invoice-table {{
  width: 100%;
  border-collapse: collapse;
  margin-bottom: 2rem;
}}

.invoice-container .invoice-table th {{
  background: var(--brand-primary);
  color: white;
  padding: 0.75rem 1rem;
  text-align: left;
  font-weight: 600;
}}

.invoice-container .invoice-table td {{
  padding: 0.75rem 1rem;
  border-bottom: 1px solid var(--brand-border);
}}

.invoice-container .invoice-table tr:hover td {{
  background: var(--brand-primary-light);
}}

.invoice-container .invoice-totals {{
  text-align: right;
  margin-bottom: 2rem;
  font-size: 1.25rem;
  font-weight: 700;
  color: var(--brand-primary);
}}

.invoice-container .invoice-footer {{
  padding-top: 1.5rem;
  border-top: 1px solid var(--brand-border);
  color: var(--brand-text-light);
  font-size: 0.875rem;
}}

.invoice-container .countdown-display {{
  text-align: center;
  padding: 1.5rem;
  margin: 2rem 0;
  border-radius: 0.5rem;
  background: #fef3c7;
  color: #92400e;
  font-size: 1.125rem;
  font-weight: 600;
}}

.invoice-container .countdown-display.urgent {{
  background: #fee2e2;
  color: #991b1b;
}}

.invoice-container .countdown-display.critical {{
  background: #991b1b;
  color: white;
  animation: pulse 1s ease-in-out infinite;
}}

.invoice-container .cta-button {{
  display: inline-block;
  padding: 1rem 2rem;
  background: var(--brand-primary);
  color: white;
  text-decoration: none;
  border-radius: 0.5rem;
  font-weight: 600;
  font-size: 1.125rem;
  transition: opacity 0.2s;
}}

.invoice-container .cta-button:hover {{
  opacity: 0.9;
}}

@keyframes pulse {{
  0%, 100% {{ opacity: 1; }}
  50% {{ opacity: 0.8; }}
}}

@media print {{
  .invoice-container .countdown-display,
  .invoice-container .cta-button {{
    display: none;
  }}
  .invoice-container {{
    padding: 0;
    max-width: 100%;
  }}
}}

@media (max-width: 640px) {{
  .invoice-container {{
    padding: 1rem;
  }}
  .invoice-container .invoice-header {{
    flex-direction: column;
    gap: 1rem;
  }}
  .invoice-container .invoice-meta {{
    grid-template-columns: 1fr;
  }}
}}"""


_BLOCK_RE = re.compile(r"([^{}]*)([{}])")


def _scope_selector(selector: str) -> str:
    parts = [part.strip() for part in selector.split(",")]
    return ", ".join(part if SCOPE in part else f"{SCOPE} {part}" for part in parts if part)


def scope_css(css: str) -> str:
    """Prefix every rule selector not already under ``.invoice-container``.

    At-rule preludes and ``@keyframes`` steps are left alone.
    """
    out: List[str] = []
    open_blocks: List[str] = []
    end = 0
    for match in _BLOCK_RE.finditer(css):
        prelude, brace = match.group(1), match.group(2)
        end = match.end()
        if brace == "}":
            out.append(prelude + "}")
            if open_blocks:
                open_blocks.pop()
            continue

        selector = prelude.strip()
        in_keyframes = any(block.startswith(("@keyframes", "@-webkit-keyframes")) for block in open_blocks)
        if not selector or selector.startswith("@") or in_keyframes:
            out.append(prelude + "{")
        else:
            leading = prelude[: len(prelude) - len(prelude.lstrip())]
            out.append(f"{leading}{_scope_selector(selector)} {{")
        open_blocks.append(selector)
    out.append(css[end:])
    return "".join(out)


def calendly_url(link: str) -> str:
    if not link:
        return ""
    parts = urlsplit(link)
    query = dict(parse_qsl(parts.query))
    query["utm_source"] = "expired_invoice"
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def line_total(item: Mapping[str, Any]) -> float:
    return safe_float(item.get("hours", 0)) * safe_float(item.get("rate", 0))


def invoice_total(items: List[Mapping[str, Any]]) -> float:
    return sum(line_total(item) for item in items)


def _item_rows(items: List[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {
            "description": str(item.get("description", "")),
            "hours": item.get("hours", 0),
            "rate": safe_float(item.get("rate", 0)),
            "total": line_total(item),
        }
        for item in items
    ]


def render_invoice_page(
    invoice: Mapping[str, Any],
    brand_css: str,
    now: Optional[int] = None,
) -> str:
    """Render the page as it should look at ``now``.

    The countdown text and urgency class are filled in server-side; once the
    invoice has expired the panel is hidden and the expired state shown.
    """
    items = list(invoice.get("items") or [])
    expiry_ms = int(invoice["expiryTimestamp"])
    now = now_ms() if now is None else now
    countdown = describe(expiry_ms - now)

    return render_template(
        "invoice.html",
        csp=CONTENT_SECURITY_POLICY,
        page_css=PAGE_CSS,
        brand_css=brand_css,
        invoice_id=str(invoice.get("id", "")),
        client_name=str(invoice.get("clientName", "")),
        client_email=str(invoice.get("clientEmail", "")),
        items=_item_rows(items),
        currency=str(invoice.get("currency") or "USD").upper(),
        amount=safe_float(invoice.get("amount"), invoice_total(items)),
        expiry_ms=expiry_ms,
        countdown=countdown,
        expired=countdown.state is UrgencyState.DETONATED,
        notes=split_lines(str(invoice.get("notes") or "")),
        booking=calendly_url(str(invoice.get("calendlyLink") or "")),
    )


def headers_file() -> str:
    lines = ["/invoice/*"]
    lines.extend(f"  {name}: {value}" for name, value in SECURITY_HEADERS.items())
    return "\n".join(lines) + "\n"


def resolve_brand_css(invoice: Mapping[str, Any]) -> str:
    if invoice.get("brandCss"):
        return scope_css(str(invoice["brandCss"]))
    if invoice.get("clientWebsite"):
        logger.warning(
            "Brand extraction for %s is not available here, using fallback CSS",
            invoice["clientWebsite"],
        )
    else:
        logger.info("No clientWebsite provided, using fallback CSS.")
    return generate_fallback_css(str(invoice.get("brandColor") or DEFAULT_BRAND_COLOR))


def prepare_invoice(
    payload: Mapping[str, Any],
    expiry_days: int = 7,
    now: Optional[int] = None,
    id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
) -> Dict[str, Any]:
    """Fill in id, expiry and amount the same way the build always has."""
    invoice = dict(payload)
    invoice["id"] = invoice.get("id") or id_factory()
    now = now_ms() if now is None else now
    invoice["expiryTimestamp"] = (
        parse_timestamp_ms(invoice.get("expiryTimestamp")) or now + expiry_days * DAY_MS
    )
    if not invoice.get("amount"):
        invoice["amount"] = invoice_total(list(invoice.get("items") or []))
    invoice["currency"] = str(invoice.get("currency") or "USD").upper()
    return invoice


def build_invoice(
    payload: Mapping[str, Any],
    public_dir: str,
    expiry_days: int = 7,
    now: Optional[int] = None,
) -> Dict[str, Any]:
    """Write the static invoice page plus robots/_headers and return its registration metadata."""
    invoice = prepare_invoice(payload, expiry_days=expiry_days, now=now)
    page = render_invoice_page(invoice, resolve_brand_css(invoice), now=now)

    out_dir = os.path.join(public_dir, "invoice", invoice["id"])
    os.makedirs(out_dir, exist_ok=True)
    with open(os.path.join(out_dir, "index.html"), "w", encoding="utf-8") as handle:
        handle.write(page)
    with open(os.path.join(public_dir, "robots.txt"), "w", encoding="utf-8") as handle:
        handle.write(ROBOTS_TXT)
    with open(os.path.join(public_dir, "_headers"), "w", encoding="utf-8") as handle:
        handle.write(headers_file())

    meta = {
        "id": invoice["id"],
        "pageUrl": f"/invoice/{invoice['id']}/",
        "expiryTimestamp": invoice["expiryTimestamp"],
        "clientName": invoice.get("clientName"),
        "clientEmail": invoice.get("clientEmail"),
        "amount": invoice["amount"],
        "currency": invoice["currency"],
        "calendlyLink": invoice.get("calendlyLink"),
        "items": invoice.get("items") or [],
        "notes": invoice.get("notes"),
        "brandColor": invoice.get("brandColor"),
        "brandCss": invoice.get("brandCss"),
    }
    logger.info("Invoice %s built -> /invoice/%s/", invoice["id"], invoice["id"])
    logger.debug("Invoice metadata: %s", json.dumps(meta))
    return meta
