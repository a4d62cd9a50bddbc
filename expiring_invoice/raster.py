"""Font discovery and Pillow rasterization of the invoice panel."""

from __future__ import annotations

import os
import threading
from typing import Any, Dict, List, Mapping, Optional, Tuple

from PIL import Image, ImageDraw, ImageFont

from .formatting import fmt_money, fmt_qty, safe_float

_PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

PANEL_WIDTH = 480
PADDING = 24
ROW_H = 22

COLOR_BG = (255, 255, 255, 255)
COLOR_TEXT = (31, 41, 55, 255)
COLOR_TEXT_LIGHT = (107, 114, 128, 255)
COLOR_BORDER = (229, 231, 235, 255)
COLOR_COUNTDOWN_BG = (153, 27, 27, 255)
DEFAULT_BRAND = "#2563eb"


def find_font_path(env_var: str, candidates: List[str]) -> Optional[str]:
    override = os.getenv(env_var)
    if override and os.path.exists(override):
        return override

    for path in candidates:
        if os.path.exists(path):
            return path
    return None


def parse_hex_color(value: str, default: str = DEFAULT_BRAND) -> Tuple[int, int, int, int]:
    raw = (value or default).strip().lstrip("#")
    if len(raw) == 3:
        raw = "".join(ch * 2 for ch in raw)
    try:
        r, g, b = int(raw[0:2], 16), int(raw[2:4], 16), int(raw[4:6], 16)
    except ValueError:
        if value == default:
            raise
        return parse_hex_color(default, default)
    return r, g, b, 255


class FontManager:
    REGULAR_CANDIDATES = [
        os.path.join(_PROJECT_ROOT, "fonts", "DejaVuSans.ttf"),
        "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
        "/usr/share/fonts/dejavu/DejaVuSans.ttf",
        "/Library/Fonts/DejaVuSans.ttf",
    ]
    BOLD_CANDIDATES = [
        os.path.join(_PROJECT_ROOT, "fonts", "DejaVuSans-Bold.ttf"),
        "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
        "/usr/share/fonts/dejavu/DejaVuSans-Bold.ttf",
        "/Library/Fonts/DejaVuSans-Bold.ttf",
    ]

    def __init__(self) -> None:
        self.regular_path = find_font_path("INVOICE_FONT_REGULAR", self.REGULAR_CANDIDATES)
        self.bold_path = find_font_path("INVOICE_FONT_BOLD", self.BOLD_CANDIDATES) or self.regular_path
        self._cache: Dict[Tuple[int, bool], Any] = {}
        self._lock = threading.Lock()

    def font(self, size: int, bold: bool = False) -> Any:
        key = (size, bold)
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None:
                return cached
            path = self.bold_path if bold else self.regular_path
            if path:
                loaded = ImageFont.truetype(path, size)
            else:
                loaded = ImageFont.load_default(size=size)
            self._cache[key] = loaded
            return loaded


_FONTS: Optional[FontManager] = None
_FONTS_LOCK = threading.Lock()


def get_fonts() -> FontManager:
    global _FONTS
    with _FONTS_LOCK:
        if _FONTS is None:
            _FONTS = FontManager()
        return _FONTS


def rasterize_invoice(
    invoice: Mapping[str, Any],
    countdown_text: str = "",
    width: int = PANEL_WIDTH,
) -> Image.Image:
    """Draw the invoice panel the way the page lays it out, as an RGBA image."""
    fonts = get_fonts()
    brand = parse_hex_color(str(invoice.get("brandColor") or DEFAULT_BRAND))
    currency = str(invoice.get("currency") or "USD").upper()
    items = invoice.get("items") or []

    height = PADDING * 2 + 96 + ROW_H * (len(items) + 1) + 48 + (56 if countdown_text else 0)
    image = Image.new("RGBA", (width, height), COLOR_BG)
    draw = ImageDraw.Draw(image)

    y = PADDING
    draw.text((PADDING, y), "INVOICE", font=fonts.font(22, bold=True), fill=brand)
    invoice_id = str(invoice.get("id") or "")[:8]
    if invoice_id:
        id_font = fonts.font(11)
        id_width = draw.textlength(f"#{invoice_id}", font=id_font)
        draw.text((width - PADDING - id_width, y + 8), f"#{invoice_id}", font=id_font, fill=COLOR_TEXT_LIGHT)
    y += 34
    draw.line((PADDING, y, width - PADDING, y), fill=brand, width=2)
    y += 12

    draw.text((PADDING, y), "Billed to", font=fonts.font(10), fill=COLOR_TEXT_LIGHT)
    draw.text((PADDING, y + 14), str(invoice.get("clientName") or ""), font=fonts.font(13, bold=True), fill=COLOR_TEXT)
    y += 50

    header_font = fonts.font(11, bold=True)
    row_font = fonts.font(11)
    draw.rectangle((PADDING, y, width - PADDING, y + ROW_H), fill=brand)
    draw.text((PADDING + 8, y + 4), "Description", font=header_font, fill=COLOR_BG)
    draw.text((width - PADDING - 150, y + 4), "Hours", font=header_font, fill=COLOR_BG)
    draw.text((width - PADDING - 80, y + 4), "Amount", font=header_font, fill=COLOR_BG)
    y += ROW_H

    for item in items:
        hours = safe_float(item.get("hours", 0))
        amount = hours * safe_float(item.get("rate", 0))
        draw.text((PADDING + 8, y + 4), str(item.get("description", ""))[:40], font=row_font, fill=COLOR_TEXT)
        draw.text((width - PADDING - 150, y + 4), fmt_qty(hours), font=row_font, fill=COLOR_TEXT)
        draw.text((width - PADDING - 80, y + 4), fmt_money(amount), font=row_font, fill=COLOR_TEXT)
        y += ROW_H
        draw.line((PADDING, y, width - PADDING, y), fill=COLOR_BORDER, width=1)

    y += 14
    total_text = f"Total: {currency} {fmt_money(safe_float(invoice.get('amount', 0)))}"
    total_font = fonts.font(15, bold=True)
    total_width = draw.textlength(total_text, font=total_font)
    draw.text((width - PADDING - total_width, y), total_text, font=total_font, fill=brand)
    y += 34

    if countdown_text:
        draw.rounded_rectangle((PADDING, y, width - PADDING, y + 40), radius=8, fill=COLOR_COUNTDOWN_BG)
        cd_font = fonts.font(13, bold=True)
        cd_width = draw.textlength(countdown_text, font=cd_font)
        draw.text(((width - cd_width) / 2.0, y + 12), countdown_text, font=cd_font, fill=COLOR_BG)

    return image
