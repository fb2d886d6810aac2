"""Timers and a queue of pending timers ordered by expiration."""

from __future__ import annotations

import bisect
import itertools
import math
import threading
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Set, Tuple

_sequence = itertools.count(1)
_sequence_lock = threading.Lock()


def _next_sequence() -> int:
    with _sequence_lock:
        return next(_sequence)


class Timer:
    """A callback due at ``expiration`` seconds, repeating when ``interval`` > 0."""

    __slots__ = ("callback", "expiration", "interval", "repeat", "sequence")

    def __init__(
        self, callback: Callable[[], Any], expiration: float, interval: float
    ) -> None:
        self.callback = callback
        self.expiration: Optional[float] = expiration
        self.interval = interval
        self.repeat = interval > 0.0
        self.sequence = _next_sequence()

    def run(self) -> None:
        self.callback()

    def restart(self, now: float) -> None:
        """Schedule the next run; a one-shot timer becomes invalid (None)."""
        self.expiration = now + self.interval if self.repeat else None

    def __repr__(self) -> str:
        return (
            f"Timer(sequence={self.sequence}, expiration={self.expiration}, "
            f"interval={self.interval})"
        )


@dataclass(frozen=True)
class TimerId:
    """Opaque handle used to cancel a timer."""

    timer: Optional[Timer] = None
    sequence: int = 0


_Entry = Tuple[float, int, Timer]


class TimerQueue:
    """Best-effort timer queue driven by its event loop.

    The loop asks ``next_expiration`` for the poll timeout and calls
    ``handle_expired`` once that time has come. ``add_timer`` and ``cancel``
    may be called from any thread; the work is done in the loop thread.
    """

    def __init__(self, loop: Any) -> None:
        self._loop = loop
        self._timers: List[_Entry] = []
        self._active: Set[TimerId] = set()
        self._canceling: Set[TimerId] = set()
        self._calling_expired = False

    def add_timer(
        self, callback: Callable[[], Any], when: float, interval: float
    ) -> TimerId:
        """Schedule ``callback`` at ``when``, repeating if ``interval`` > 0."""
        timer = Timer(callback, when, interval)
        self._loop.run_in_loop(lambda: self._add_timer_in_loop(timer))
        return TimerId(timer, timer.sequence)

    def cancel(self, timer_id: TimerId) -> None:
        self._loop.run_in_loop(lambda: self._cancel_in_loop(timer_id))

    def next_expiration(self) -> Optional[float]:
        """Expiration of the earliest pending timer, or None if there is none."""
        return self._timers[0][0] if self._timers else None

    def handle_expired(self, now: float) -> int:
        """Run every timer due at or before ``now``; return how many ran."""
        self._loop.assert_in_loop_thread()
        expired = self._take_expired(now)
        self._calling_expired = True
        self._canceling.clear()
        try:
            for _, _, timer in expired:
                timer.run()
        finally:
            self._calling_expired = False
            self._reschedule(expired, now)
        return len(expired)

    def _add_timer_in_loop(self, timer: Timer) -> None:
        self._loop.assert_in_loop_thread()
        self._insert(timer)

    def _cancel_in_loop(self, timer_id: TimerId) -> None:
        self._loop.assert_in_loop_thread()
        if timer_id in self._active:
            timer = timer_id.timer
            index = bisect.bisect_left(
                self._timers, (timer.expiration, timer.sequence)
            )
            del self._timers[index]
            self._active.discard(timer_id)
        elif self._calling_expired:
            # The timer cancels itself from inside its own callback.
            self._canceling.add(timer_id)

    def _take_expired(self, now: float) -> List[_Entry]:
        end = bisect.bisect_right(self._timers, (now, math.inf))
        expired = self._timers[:end]
        del self._timers[:end]
        for _, sequence, timer in expired:
            self._active.discard(TimerId(timer, sequence))
        return expired

    def _reschedule(self, expired: List[_Entry], now: float) -> None:
        for _, sequence, timer in expired:
            if timer.repeat and TimerId(timer, sequence) not in self._canceling:
                timer.restart(now)
                self._insert(timer)

    def _insert(self, timer: Timer) -> bool:
        when = timer.expiration
        earliest_changed = not self._timers or when < self._timers[0][0]
        bisect.insort(self._timers, (when, timer.sequence, timer))
        self._active.add(TimerId(timer, timer.sequence))
        return earliest_changed