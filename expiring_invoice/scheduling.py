"""Frame and timer scheduling with cancellable handles."""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
from typing import Callable, List, Optional, Protocol, Tuple

from .formatting import now_ms

logger = logging.getLogger(__name__)

FRAME_MS = 16

Callback = Callable[[], None]


class ScheduledHandle:
    """A pending callback. Cancelling is idempotent and safe after it ran."""

    def __init__(self, callback: Callback, due_ms: int) -> None:
        self.callback = callback
        self.due_ms = due_ms
        self.cancelled = False
        self.fired = False
        self._timer: Optional[threading.Timer] = None

    @property
    def active(self) -> bool:
        return not self.cancelled and not self.fired

    def cancel(self) -> None:
        self.cancelled = True
        if self._timer is not None:
            self._timer.cancel()

    def _fire(self) -> None:
        if not self.active:
            return
        self.fired = True
        self.callback()


class Scheduler(Protocol):
    def now_ms(self) -> int:
        ...

    def request_frame(self, callback: Callback) -> ScheduledHandle:
        ...

    def call_later(self, delay_ms: int, callback: Callback) -> ScheduledHandle:
        ...


class ThreadingScheduler:
    """Wall-clock scheduler backed by daemon ``threading.Timer`` threads."""

    def __init__(self, frame_ms: int = FRAME_MS) -> None:
        self.frame_ms = frame_ms

    def now_ms(self) -> int:
        return now_ms()

    def request_frame(self, callback: Callback) -> ScheduledHandle:
        return self.call_later(self.frame_ms, callback)

    def call_later(self, delay_ms: int, callback: Callback) -> ScheduledHandle:
        delay_ms = max(0, int(delay_ms))
        handle = ScheduledHandle(callback, self.now_ms() + delay_ms)
        timer = threading.Timer(delay_ms / 1000.0, self._run, args=(handle,))
        timer.daemon = True
        handle._timer = timer
        timer.start()
        return handle

    @staticmethod
    def _run(handle: ScheduledHandle) -> None:
        try:
            handle._fire()
        except Exception:
            logger.exception("Scheduled callback failed")


class VirtualScheduler:
    """Deterministic scheduler driven by ``advance``; time only moves when told to."""

    def __init__(self, start_ms: int = 0, frame_ms: int = FRAME_MS) -> None:
        self._now = int(start_ms)
        self.frame_ms = frame_ms
        self._queue: List[Tuple[int, int, ScheduledHandle]] = []
        self._seq = itertools.count()

    def now_ms(self) -> int:
        return self._now

    def request_frame(self, callback: Callback) -> ScheduledHandle:
        return self.call_later(self.frame_ms, callback)

    def call_later(self, delay_ms: int, callback: Callback) -> ScheduledHandle:
        handle = ScheduledHandle(callback, self._now + max(0, int(delay_ms)))
        heapq.heappush(self._queue, (handle.due_ms, next(self._seq), handle))
        return handle

    def pending(self) -> int:
        return sum(1 for _, _, handle in self._queue if handle.active)

    def next_due_ms(self) -> Optional[int]:
        for due, _, handle in sorted(self._queue):
            if handle.active:
                return due
        return None

    def advance(self, ms: int) -> None:
        target = self._now + int(ms)
        while self._queue and self._queue[0][0] <= target:
            due, _, handle = heapq.heappop(self._queue)
            self._now = max(self._now, due)
            handle._fire()
        self._now = target

    def run_until_idle(self, limit_ms: int = 60 * 60 * 1000) -> None:
        deadline = self._now + limit_ms
        while True:
            due = self.next_due_ms()
            if due is None or due > deadline:
                return
            self.advance(due - self._now)
