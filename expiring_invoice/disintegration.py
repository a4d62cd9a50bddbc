"""Pixel disintegration effect for an expired invoice panel.

The captured panel is split into ``LAYER_COUNT`` RGBA buffers with a
left-to-right sweep: each pixel goes to the layer of its column band plus a
small random jitter, so neighbouring bands overlap at their edges. Each layer is
then drifted away with a staggered start and removed on a timer, and the
expired panel is revealed once the whole sequence has had time to play out.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import numpy as np
from PIL import Image

from .scheduling import Scheduler

logger = logging.getLogger(__name__)

LAYER_COUNT = 32
STAGGER_MS = 70
LAYER_LIFETIME_MS = 1500
REVEAL_PADDING_MS = 500
REVEAL_FADE_MS = 500
TRANSFORM_BASE_MS = 800
OPACITY_BASE_MS = 600
DURATION_STEP_MS = 50
BLUR_PX = 2


@dataclass(frozen=True)
class Rect:
    left: float
    top: float
    width: int
    height: int


@dataclass(frozen=True)
class LayerMotion:
    index: int
    rotation_deg: float
    translate_x: float
    translate_y: float
    transform_ms: int
    opacity_ms: int
    delay_ms: int
    blur_px: int = BLUR_PX

    @property
    def css_transform(self) -> str:
        return (
            f"rotate({self.rotation_deg:.2f}deg) "
            f"translate({self.translate_x:.2f}px, {self.translate_y:.2f}px)"
        )

    @property
    def css_transition(self) -> str:
        return f"transform {self.transform_ms}ms ease-out, opacity {self.opacity_ms}ms ease-out"


class Stage(Protocol):
    """The page surface the effect draws on."""

    def has_panel(self) -> bool:
        ...

    def panel_rect(self) -> Rect:
        ...

    def hide_panel(self) -> None:
        ...

    def add_layer(self, index: int, image: Image.Image, rect: Rect, motion: LayerMotion) -> None:
        ...

    def start_layer(self, index: int, motion: LayerMotion) -> None:
        ...

    def remove_layer(self, index: int) -> None:
        ...

    def reveal_expired(self, fade_ms: int) -> None:
        ...


Capture = Callable[[Stage], Image.Image]


def base_layer(x: int, width: int, layers: int = LAYER_COUNT) -> int:
    """floor(x / width * layers), exact for ints and integer arrays."""
    return (x * layers) // width


def assign_layers(
    width: int,
    height: int,
    layers: int = LAYER_COUNT,
    rng: Optional[np.random.Generator] = None,
) -> np.ndarray:
    """Return an (height, width) array of layer indices, each within [0, layers - 1]."""
    rng = rng if rng is not None else np.random.default_rng()
    base = base_layer(np.arange(width, dtype=np.int64), width, layers)
    jitter = np.floor((rng.random((height, width)) - 0.5) * 8).astype(np.int64)
    return np.clip(base[np.newaxis, :] + jitter, 0, layers - 1)


def partition_pixels(
    pixels: np.ndarray,
    layers: int = LAYER_COUNT,
    rng: Optional[np.random.Generator] = None,
) -> np.ndarray:
    """Split an (H, W, 4) RGBA array into (layers, H, W, 4) buffers.

    Every pixel lands in exactly one buffer; the others stay transparent there.
    """
    height, width = pixels.shape[:2]
    targets = assign_layers(width, height, layers, rng)
    buffers = np.zeros((layers, height, width, 4), dtype=np.uint8)
    rows, cols = np.indices((height, width))
    buffers[targets, rows, cols] = pixels
    return buffers


def plan_motion(index: int, rng: np.random.Generator) -> LayerMotion:
    return LayerMotion(
        index=index,
        rotation_deg=(rng.random() - 0.5) * 30,
        translate_x=(rng.random() - 0.3) * 120,
        translate_y=(rng.random() - 0.7) * 80,
        transform_ms=TRANSFORM_BASE_MS + index * DURATION_STEP_MS,
        opacity_ms=OPACITY_BASE_MS + index * DURATION_STEP_MS,
        delay_ms=index * STAGGER_MS,
    )


def total_duration_ms(layers: int = LAYER_COUNT) -> int:
    return layers * STAGGER_MS + LAYER_LIFETIME_MS + REVEAL_PADDING_MS


class DisintegrationEffect:
    def __init__(
        self,
        stage: Stage,
        scheduler: Scheduler,
        capture: Optional[Capture] = None,
        layers: int = LAYER_COUNT,
        rng: Optional[np.random.Generator] = None,
    ) -> None:
        self.stage = stage
        self.scheduler = scheduler
        self.capture = capture
        self.layers = layers
        self.rng = rng if rng is not None else np.random.default_rng()
        self.triggered = False
        self.revealed = False

    def trigger(self) -> None:
        """Run the effect once; later calls are ignored."""
        if self.triggered:
            return
        self.triggered = True
        if not self.stage.has_panel():
            self.reveal()
            return
        self.disintegrate()

    def disintegrate(self) -> None:
        if self.capture is None:
            logger.error("No rasterizer available; skipping disintegration")
            self.reveal()
            return

        try:
            source = self.capture(self.stage)
        except Exception:
            logger.exception("Panel capture failed; skipping disintegration")
            self.reveal()
            return

        pixels = np.asarray(source.convert("RGBA"), dtype=np.uint8)
        if pixels.shape[0] == 0 or pixels.shape[1] == 0:
            logger.warning("Captured panel is empty; skipping disintegration")
            self.reveal()
            return

        buffers = partition_pixels(pixels, self.layers, self.rng)
        self.stage.hide_panel()
        rect = self.stage.panel_rect()

        for index in range(self.layers):
            motion = plan_motion(index, self.rng)
            self.stage.add_layer(index, Image.fromarray(buffers[index]), rect, motion)
            self.scheduler.call_later(motion.delay_ms, self._starter(motion))

        self.scheduler.call_later(total_duration_ms(self.layers), self.reveal)

    def _starter(self, motion: LayerMotion) -> Callable[[], None]:
        def start() -> None:
            self.stage.start_layer(motion.index, motion)
            self.scheduler.call_later(
                LAYER_LIFETIME_MS, lambda: self.stage.remove_layer(motion.index)
            )

        return start

    def reveal(self) -> None:
        if self.revealed:
            return
        self.revealed = True
        self.stage.reveal_expired(REVEAL_FADE_MS)
