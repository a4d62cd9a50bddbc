"""Offline preview of the countdown and disintegration, rendered to an animated GIF.

``mount_page`` wires a countdown controller to a disintegration effect the way
an invoice page does. ``render_preview`` runs that wiring on a virtual clock
against ``FrameStage``, which composites every frame with Pillow.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Tuple

import numpy as np
from PIL import Image, ImageDraw, ImageFilter

from .countdown import CountdownController
from .disintegration import (
    LAYER_COUNT,
    Capture,
    DisintegrationEffect,
    LayerMotion,
    Rect,
    total_duration_ms,
)
from .raster import get_fonts, rasterize_invoice
from .scheduling import Scheduler, VirtualScheduler

logger = logging.getLogger(__name__)

BACKGROUND = (243, 244, 246)
MARGIN = 48


def mount_page(
    expiry_attribute: Optional[str],
    display: Any,
    stage: Any,
    scheduler: Scheduler,
    capture: Optional[Capture] = None,
    rng: Optional[np.random.Generator] = None,
    layers: int = LAYER_COUNT,
) -> Optional[Tuple[CountdownController, DisintegrationEffect]]:
    effect = DisintegrationEffect(stage, scheduler, capture=capture, layers=layers, rng=rng)
    controller = CountdownController.from_attribute(
        expiry_attribute, display, scheduler, on_detonate=effect.trigger
    )
    if controller is None:
        return None
    controller.start()
    return controller, effect


class RecordingDisplay:
    def __init__(self) -> None:
        self.history: List[Tuple[str, str]] = []

    @property
    def text(self) -> str:
        return self.history[-1][0] if self.history else ""

    def render(self, text: str, css_class: str) -> None:
        self.history.append((text, css_class))


def ease_out(progress: float) -> float:
    progress = min(1.0, max(0.0, progress))
    return 1.0 - (1.0 - progress) ** 3


@dataclass
class _Layer:
    image: Image.Image
    rect: Rect
    motion: LayerMotion
    started_ms: Optional[int] = None
    blurred: Optional[Image.Image] = None


class FrameStage:
    """In-memory page surface; ``render_frame`` draws its state at the scheduler's time."""

    def __init__(self, panel: Optional[Image.Image], scheduler: Scheduler, margin: int = MARGIN) -> None:
        self.panel = panel
        self.scheduler = scheduler
        self.margin = margin
        self.panel_visible = panel is not None
        self.layers: dict = {}
        self.expired_at: Optional[int] = None
        self.fade_ms = 0
        width, height = panel.size if panel is not None else (480, 240)
        self.size = (width + margin * 3, height + margin * 3)

    def has_panel(self) -> bool:
        return self.panel is not None

    def panel_rect(self) -> Rect:
        if self.panel is None:
            raise RuntimeError("stage has no invoice panel")
        return Rect(self.margin, self.margin * 2, self.panel.width, self.panel.height)

    def hide_panel(self) -> None:
        self.panel_visible = False

    def add_layer(self, index: int, image: Image.Image, rect: Rect, motion: LayerMotion) -> None:
        self.layers[index] = _Layer(image, rect, motion)

    def start_layer(self, index: int, motion: LayerMotion) -> None:
        layer = self.layers.get(index)
        if layer is None:
            return
        layer.started_ms = self.scheduler.now_ms()
        layer.blurred = layer.image.filter(ImageFilter.GaussianBlur(motion.blur_px))

    def remove_layer(self, index: int) -> None:
        self.layers.pop(index, None)

    def reveal_expired(self, fade_ms: int) -> None:
        self.expired_at = self.scheduler.now_ms()
        self.fade_ms = fade_ms

    def _draw_layer(self, canvas: Image.Image, layer: _Layer, now: int) -> None:
        rect = layer.rect
        if layer.started_ms is None or layer.blurred is None:
            canvas.paste(layer.image, (int(rect.left), int(rect.top)), layer.image)
            return

        elapsed = now - layer.started_ms
        motion = layer.motion
        move = ease_out(elapsed / motion.transform_ms)
        fade = ease_out(elapsed / motion.opacity_ms)
        if fade >= 1.0:
            return

        angle = motion.rotation_deg * move
        image = layer.blurred.rotate(-angle, resample=Image.Resampling.BICUBIC, expand=True)
        alpha = image.getchannel("A").point(lambda value: int(value * (1.0 - fade)))
        image.putalpha(alpha)

        rad = math.radians(angle)
        tx, ty = motion.translate_x * move, motion.translate_y * move
        dx = tx * math.cos(rad) - ty * math.sin(rad)
        dy = tx * math.sin(rad) + ty * math.cos(rad)
        cx = rect.left + rect.width / 2.0 + dx
        cy = rect.top + rect.height / 2.0 + dy
        canvas.paste(image, (int(cx - image.width / 2.0), int(cy - image.height / 2.0)), image)

    def _draw_expired(self, canvas: Image.Image, now: int, expired_at: int) -> None:
        opacity = 1.0 if self.fade_ms <= 0 else min(1.0, (now - expired_at) / self.fade_ms)
        overlay = Image.new("RGBA", canvas.size, (0, 0, 0, 0))
        draw = ImageDraw.Draw(overlay)
        left, top = self.margin, self.margin * 2
        draw.rounded_rectangle(
            (left, top, canvas.width - self.margin * 2, top + 120), radius=10, fill=(255, 255, 255, 255)
        )
        fonts = get_fonts()
        draw.text((left + 24, top + 28), "This invoice has expired", font=fonts.font(18, bold=True), fill=(153, 27, 27, 255))
        draw.text((left + 24, top + 64), "Book a call for updated pricing.", font=fonts.font(13), fill=(31, 41, 55, 255))
        alpha = overlay.getchannel("A").point(lambda value: int(value * opacity))
        overlay.putalpha(alpha)
        canvas.paste(overlay, (0, 0), overlay)

    def render_frame(self) -> Image.Image:
        now = self.scheduler.now_ms()
        canvas = Image.new("RGB", self.size, BACKGROUND)
        if self.panel_visible and self.panel is not None:
            canvas.paste(self.panel, (self.margin, self.margin * 2), self.panel)
        for index in sorted(self.layers):
            self._draw_layer(canvas, self.layers[index], now)
        if self.expired_at is not None:
            self._draw_expired(canvas, now, self.expired_at)
        return canvas


def render_preview(
    invoice: Mapping[str, Any],
    out_path: str,
    countdown_ms: int = 1000,
    fps: int = 30,
    layers: int = LAYER_COUNT,
    seed: Optional[int] = None,
) -> int:
    """Write the self-destruct sequence for ``invoice`` as a GIF; returns the frame count."""
    scheduler = VirtualScheduler(start_ms=0)
    display = RecordingDisplay()
    stage = FrameStage(rasterize_invoice(invoice, countdown_text=" "), scheduler)

    def capture(_stage: Any) -> Image.Image:
        return rasterize_invoice(invoice, countdown_text=display.text)

    mounted = mount_page(
        str(countdown_ms),
        display,
        stage,
        scheduler,
        capture=capture,
        rng=np.random.default_rng(seed),
        layers=layers,
    )
    if mounted is None:
        raise ValueError("countdown_ms must be non-zero")
    _, effect = mounted

    step = max(1, 1000 // fps)
    limit = countdown_ms + total_duration_ms(layers) + 1000
    frames: List[Image.Image] = []
    while scheduler.now_ms() < limit:
        scheduler.advance(step)
        frames.append(stage.render_frame())
        if effect.revealed and stage.expired_at is not None:
            if scheduler.now_ms() - stage.expired_at >= stage.fade_ms:
                break

    frames[0].save(out_path, save_all=True, append_images=frames[1:], duration=step, loop=0)
    logger.info("Wrote %d preview frames to %s", len(frames), out_path)
    return len(frames)
