"""Countdown controller driving the invoice urgency display.

The controller re-evaluates the remaining time on every display frame, maps it
to an urgency state and writes the message into a display. When the deadline
passes it renders the terminal message, fires its detonation callback once and
stops scheduling frames.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from .formatting import DAY_MS, HOUR_MS, fmt_remaining
from .scheduling import ScheduledHandle, Scheduler

logger = logging.getLogger(__name__)

THREE_DAYS_MS = 3 * DAY_MS
ONE_DAY_MS = DAY_MS
ONE_HOUR_MS = HOUR_MS

BASE_CLASS = "countdown-display"
URGENT_CLASS = f"{BASE_CLASS} urgent"
CRITICAL_CLASS = f"{BASE_CLASS} critical"
DETONATED_TEXT = "Self-destructing..."


class UrgencyState(str, enum.Enum):
    CALM = "calm"
    WARNING = "warning"
    CRITICAL = "critical"
    DETONATED = "detonated"


class InvalidExpiryError(ValueError):
    """Raised when the page's expiry attribute is missing or not a number."""


class CountdownDisplay(Protocol):
    def render(self, text: str, css_class: str) -> None:
        ...


@dataclass(frozen=True)
class CountdownView:
    state: UrgencyState
    text: str
    css_class: str


def classify(remaining_ms: int) -> UrgencyState:
    if remaining_ms <= 0:
        return UrgencyState.DETONATED
    if remaining_ms <= ONE_HOUR_MS:
        return UrgencyState.CRITICAL
    if remaining_ms <= THREE_DAYS_MS:
        return UrgencyState.WARNING
    return UrgencyState.CALM


def describe(remaining_ms: int) -> CountdownView:
    state = classify(remaining_ms)
    if state is UrgencyState.DETONATED:
        return CountdownView(state, DETONATED_TEXT, CRITICAL_CLASS)

    time_str = fmt_remaining(remaining_ms)
    if state is UrgencyState.CRITICAL:
        return CountdownView(state, f"Final countdown! {time_str}", CRITICAL_CLASS)
    if state is UrgencyState.WARNING:
        if remaining_ms <= ONE_DAY_MS:
            text = f"Self-destruct sequence initiated — {time_str}"
        else:
            text = f"This invoice will self-destruct in {time_str}"
        return CountdownView(state, text, URGENT_CLASS)
    return CountdownView(state, f"This invoice will self-destruct in {time_str}", BASE_CLASS)


def parse_expiry_attribute(raw: Optional[str]) -> int:
    if raw is None:
        raise InvalidExpiryError("missing data-expiry attribute")
    text = str(raw).strip()
    try:
        value = int(text) if text.lstrip("+-").isdigit() else int(float(text))
    except (ValueError, OverflowError) as exc:
        raise InvalidExpiryError(f"data-expiry is not a number: {raw!r}") from exc
    if value == 0:
        raise InvalidExpiryError("data-expiry must be non-zero")
    return value


class CountdownController:
    def __init__(
        self,
        expiry_ms: int,
        display: CountdownDisplay,
        scheduler: Scheduler,
        on_detonate: Optional[Callable[[], None]] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.expiry_ms = int(expiry_ms)
        self.display = display
        self.scheduler = scheduler
        self.on_detonate = on_detonate
        self.clock = clock or scheduler.now_ms
        self.state: Optional[UrgencyState] = None
        self._frame: Optional[ScheduledHandle] = None

    @classmethod
    def from_attribute(
        cls,
        raw: Optional[str],
        display: CountdownDisplay,
        scheduler: Scheduler,
        on_detonate: Optional[Callable[[], None]] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> Optional["CountdownController"]:
        try:
            expiry_ms = parse_expiry_attribute(raw)
        except InvalidExpiryError as exc:
            logger.error("Countdown disabled: %s", exc)
            return None
        return cls(expiry_ms, display, scheduler, on_detonate=on_detonate, clock=clock)

    @property
    def running(self) -> bool:
        return self._frame is not None and self._frame.active

    def start(self) -> None:
        if self.state is UrgencyState.DETONATED or self.running:
            return
        self._frame = self.scheduler.request_frame(self.tick)

    def stop(self) -> None:
        if self._frame is not None:
            self._frame.cancel()
            self._frame = None

    def tick(self) -> None:
        if self.state is UrgencyState.DETONATED:
            return

        view = describe(self.expiry_ms - self.clock())
        self.state = view.state
        self.display.render(view.text, view.css_class)

        if view.state is UrgencyState.DETONATED:
            self.stop()
            if self.on_detonate is not None:
                self.on_detonate()
            return

        self._frame = self.scheduler.request_frame(self.tick)
