"""Jinja2 environment for the invoice page and the expiry email."""

from __future__ import annotations

from typing import Any

from jinja2 import Environment, PackageLoader, StrictUndefined, select_autoescape
from markupsafe import Markup

from .formatting import fmt_date, fmt_money, fmt_qty


def style_text(css: Any) -> Markup:
    """Mark CSS safe for a <style> element, neutralising any closing tag inside it."""
    text = str(css or "")
    return Markup(text.replace("</", "<\\/").replace("<!--", "<\\!--"))


def _build_environment() -> Environment:
    env = Environment(
        loader=PackageLoader("expiring_invoice", "templates"),
        undefined=StrictUndefined,
        autoescape=select_autoescape(["html", "xml"]),
        trim_blocks=True,
        lstrip_blocks=True,
    )
    env.filters["money"] = fmt_money
    env.filters["qty"] = fmt_qty
    env.filters["date"] = fmt_date
    env.filters["style_text"] = style_text
    return env


jinja_env = _build_environment()


def render_template(name: str, **context: Any) -> str:
    return jinja_env.get_template(name).render(**context)
