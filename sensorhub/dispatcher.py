from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from typing import Any, Callable, List, Optional, Tuple

logger = logging.getLogger("sensorhub.dispatcher")


class TimerHandle:
    __slots__ = ("when", "fn", "args", "cancelled")

    def __init__(self, when: float, fn: Callable[..., Any], args: Tuple[Any, ...]) -> None:
        self.when = when
        self.fn = fn
        self.args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class Dispatcher:
    """Single-consumer event loop.

    Every handler runs to completion on the thread that calls run_forever() or
    run_pending(). post() and call_later() are safe to call from any thread,
    which is how sink completions and session notifications get back onto the
    loop.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.clock = clock
        self._cond = threading.Condition()
        self._heap: List[Tuple[float, int, TimerHandle]] = []
        self._seq = itertools.count()
        self._stopping = False

    def call_later(self, delay_s: float, fn: Callable[..., Any], *args: Any) -> TimerHandle:
        handle = TimerHandle(self.clock() + max(0.0, float(delay_s)), fn, args)
        with self._cond:
            heapq.heappush(self._heap, (handle.when, next(self._seq), handle))
            self._cond.notify()
        return handle

    def post(self, fn: Callable[..., Any], *args: Any) -> TimerHandle:
        return self.call_later(0.0, fn, *args)

    def call_every(self, interval_s: float, fn: Callable[[], Any]) -> TimerHandle:
        """Run fn every interval_s; the returned handle stops the repetition."""

        interval = max(0.0, float(interval_s))
        control = TimerHandle(self.clock() + interval, fn, ())

        def _tick() -> None:
            if control.cancelled:
                return
            try:
                fn()
            finally:
                if not control.cancelled:
                    self.call_later(interval, _tick)

        self.call_later(interval, _tick)
        return control

    def stop(self) -> None:
        with self._cond:
            self._stopping = True
            self._cond.notify_all()

    def pending(self) -> int:
        with self._cond:
            return sum(1 for _, _, h in self._heap if not h.cancelled)

    def _pop_due(self, now: float) -> Optional[TimerHandle]:
        while self._heap and self._heap[0][0] <= now:
            _, _, handle = heapq.heappop(self._heap)
            if not handle.cancelled:
                return handle
        return None

    def _run(self, handle: TimerHandle) -> None:
        try:
            handle.fn(*handle.args)
        except Exception:
            logger.exception("handler %r failed", getattr(handle.fn, "__qualname__", handle.fn))

    def run_pending(self) -> int:
        """Run every handler due at the current clock reading. Returns how many ran."""

        ran = 0
        while True:
            with self._cond:
                handle = self._pop_due(self.clock())
            if handle is None:
                return ran
            self._run(handle)
            ran += 1

    def run_forever(self) -> None:
        with self._cond:
            self._stopping = False
        while True:
            with self._cond:
                while True:
                    if self._stopping:
                        return
                    now = self.clock()
                    handle = self._pop_due(now)
                    if handle is not None:
                        break
                    timeout = (self._heap[0][0] - now) if self._heap else None
                    self._cond.wait(timeout)
            self._run(handle)
