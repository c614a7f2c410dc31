# =============================================================================
# educafric_core/offline/backoff.py
# Exponential backoff and owned timers
# =============================================================================

from __future__ import annotations
import threading
from typing import Callable, List, Optional, Protocol


class Cancellable(Protocol):
    def start(self) -> None: ...
    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[[], None]], Cancellable]


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """
    Delay before retry number ``attempt`` (0-based): base * 2**attempt, capped.

    Non-decreasing in ``attempt``.
    """
    if attempt < 0:
        attempt = 0
    # Avoid float overflow on absurd attempt counts
    if attempt > 62:
        return max_delay
    return min(base_delay * (2 ** attempt), max_delay)


def thread_timer(delay: float, callback: Callable[[], None]) -> threading.Timer:
    """Default TimerFactory: a daemon threading.Timer."""
    timer = threading.Timer(delay, callback)
    timer.daemon = True
    return timer


class TimerSet:
    """
    Timers owned by one component, all cancelled on ``cancel_all()``.

    ``on_done`` runs on the timer thread after each callback, e.g. to close
    per-thread resources before the thread exits.
    """

    def __init__(
        self,
        factory: Optional[TimerFactory] = None,
        on_done: Optional[Callable[[], None]] = None,
    ):
        self._factory = factory or thread_timer
        self._on_done = on_done
        self._timers: List[Cancellable] = []
        self._lock = threading.Lock()

    def schedule(self, delay: float, callback: Callable[[], None]) -> Cancellable:
        holder: List[Cancellable] = []

        def run():
            with self._lock:
                if holder and holder[0] in self._timers:
                    self._timers.remove(holder[0])
            try:
                callback()
            finally:
                if self._on_done is not None:
                    self._on_done()

        timer = self._factory(delay, run)
        holder.append(timer)
        with self._lock:
            self._timers.append(timer)
        timer.start()
        return timer

    def cancel(self, timer: Optional[Cancellable]) -> None:
        if timer is None:
            return
        timer.cancel()
        with self._lock:
            if timer in self._timers:
                self._timers.remove(timer)

    def cancel_all(self) -> None:
        with self._lock:
            timers, self._timers = self._timers, []
        for timer in timers:
            timer.cancel()

    def __len__(self) -> int:
        with self._lock:
            return len(self._timers)
