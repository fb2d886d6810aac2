"""Event loops running in their own threads, and a round-robin pool of them."""

from __future__ import annotations

import logging
import threading
from typing import List, Optional

from tcpreactor.event_loop import EventLoop

logger = logging.getLogger(__name__)


class EventLoopThread:
    """A thread that owns and runs one ``EventLoop``."""

    def __init__(self) -> None:
        self._loop: Optional[EventLoop] = None
        self._failure: Optional[BaseException] = None
        self._exiting = False
        self._cond = threading.Condition()
        self._thread = threading.Thread(target=self._thread_func, daemon=True)

    @property
    def loop(self) -> Optional[EventLoop]:
        return self._loop

    def start_loop(self) -> EventLoop:
        """Start the thread and return its loop once the loop is running."""
        if self._thread.ident is not None:
            raise RuntimeError("EventLoopThread already started")
        self._thread.start()
        with self._cond:
            self._cond.wait_for(
                lambda: self._loop is not None or self._failure is not None
            )
            if self._loop is None:
                raise RuntimeError("event loop thread failed to start") from self._failure
            return self._loop

    def stop(self) -> None:
        """Ask the loop to quit and wait for the thread to finish."""
        if self._thread.ident is None:
            return
        self._exiting = True
        if self._loop is not None and self._thread.is_alive():
            self._loop.quit()
        self._thread.join()

    def _publish(self, loop: EventLoop) -> None:
        with self._cond:
            self._loop = loop
            self._cond.notify_all()

    def _thread_func(self) -> None:
        try:
            loop = EventLoop()
        except BaseException as exc:
            with self._cond:
                self._failure = exc
                self._cond.notify_all()
            raise
        try:
            # Publish from inside the loop so that a quit() issued right
            # after start_loop() returns cannot be lost.
            loop.queue_in_loop(lambda: self._publish(loop))
            loop.wakeup()
            loop.loop()
        finally:
            loop.close()


class EventLoopThreadPool:
    """A fixed set of loop threads handed out in round-robin order.

    With no threads every request gets the base loop.
    """

    def __init__(self, base_loop: EventLoop, num_threads: int = 0) -> None:
        self._base_loop = base_loop
        self.num_threads = num_threads
        self._started = False
        self._next = 0
        self._threads: List[EventLoopThread] = []
        self._loops: List[EventLoop] = []

    @property
    def started(self) -> bool:
        return self._started

    @property
    def loops(self) -> List[EventLoop]:
        return list(self._loops)

    def start(self) -> None:
        """Create and start the loop threads; must run in the base loop thread."""
        if self._started:
            raise RuntimeError("EventLoopThreadPool already started")
        if self.num_threads < 0:
            raise ValueError(f"negative thread count: {self.num_threads}")
        self._base_loop.assert_in_loop_thread()
        self._started = True
        for _ in range(self.num_threads):
            thread = EventLoopThread()
            self._threads.append(thread)
            self._loops.append(thread.start_loop())

    def get_next_loop(self) -> EventLoop:
        """The loop for the next connection: round robin, or the base loop."""
        self._base_loop.assert_in_loop_thread()
        if not self._loops:
            return self._base_loop
        loop = self._loops[self._next]
        self._next = (self._next + 1) % len(self._loops)
        return loop

    def stop(self) -> None:
        """Stop every loop thread and wait for them."""
        for thread in self._threads:
            thread.stop()
        self._threads.clear()
        self._loops.clear()
        self._next = 0