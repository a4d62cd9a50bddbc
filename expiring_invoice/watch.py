"""Live terminal countdown for a registered invoice."""

from __future__ import annotations

import logging
import sys
import threading
from typing import Optional, TextIO

from PIL import Image

from .disintegration import LayerMotion, Rect
from .preview import mount_page
from .scheduling import Scheduler, ThreadingScheduler

logger = logging.getLogger(__name__)

WATCH_FRAME_MS = 200


class TerminalDisplay:
    """Prints the countdown line whenever its text changes."""

    def __init__(self, stream: TextIO) -> None:
        self.stream = stream
        self.last: Optional[str] = None
        self._lock = threading.Lock()

    def render(self, text: str, css_class: str) -> None:
        with self._lock:
            if text == self.last:
                return
            self.last = text
            self.stream.write(f"{text}\n")
            self.stream.flush()


class TerminalStage:
    # Nothing to rasterize in a terminal, so the effect reveals the expired state directly.

    def __init__(self, stream: TextIO) -> None:
        self.stream = stream
        self.expired = threading.Event()

    def has_panel(self) -> bool:
        return False

    def panel_rect(self) -> Rect:
        raise RuntimeError("terminal stage has no invoice panel")

    def hide_panel(self) -> None:
        pass

    def add_layer(self, index: int, image: Image.Image, rect: Rect, motion: LayerMotion) -> None:
        pass

    def start_layer(self, index: int, motion: LayerMotion) -> None:
        pass

    def remove_layer(self, index: int) -> None:
        pass

    def reveal_expired(self, fade_ms: int) -> None:
        self.stream.write("This invoice has expired. Book a call for updated pricing.\n")
        self.stream.flush()
        self.expired.set()


def watch_expiry(
    expiry_ms: int,
    stream: TextIO = sys.stdout,
    scheduler: Optional[Scheduler] = None,
    timeout: Optional[float] = None,
) -> bool:
    """Count down to ``expiry_ms`` on the wall clock.

    Returns True once the expired state was shown, False if the expiry is
    invalid or ``timeout`` seconds passed first.
    """
    scheduler = scheduler or ThreadingScheduler(frame_ms=WATCH_FRAME_MS)
    stage = TerminalStage(stream)
    mounted = mount_page(str(expiry_ms), TerminalDisplay(stream), stage, scheduler)
    if mounted is None:
        return False

    controller, _ = mounted
    try:
        return stage.expired.wait(timeout)
    finally:
        controller.stop()
