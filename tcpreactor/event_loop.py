"""The reactor: one event loop per thread dispatching I/O, timers and tasks."""

from __future__ import annotations

import logging
import math
import socket
import threading
import time
from typing import Any, Callable, List, Optional

from tcpreactor.channel import Channel
from tcpreactor.poller import Poller
from tcpreactor.timer import TimerId, TimerQueue

logger = logging.getLogger(__name__)

POLL_TIME_MS = 1000000

_local = threading.local()


class NotInLoopThreadError(RuntimeError):
    """Raised when a loop is used from a thread other than its own."""


def current_loop() -> Optional["EventLoop"]:
    """The event loop created in the calling thread, if any."""
    return getattr(_local, "loop", None)


class EventLoop:
    """Runs I/O callbacks, timers and queued tasks in the creating thread.

    At most one loop may exist per thread. Tasks can be handed to the loop
    from other threads through ``run_in_loop`` and ``queue_in_loop``.
    """

    def __init__(self) -> None:
        if current_loop() is not None:
            raise RuntimeError(
                f"another EventLoop {current_loop()!r} exists in this thread"
            )
        self._thread_id = threading.get_ident()
        self._looping = False
        self._quit = False
        self._calling_pending = False
        self._lock = threading.Lock()
        self._pending: List[Callable[[], Any]] = []
        self.poll_return_time = 0.0
        self._poller = Poller(self)
        self._timer_queue = TimerQueue(self)
        self._wakeup_reader, self._wakeup_writer = socket.socketpair()
        self._wakeup_reader.setblocking(False)
        self._wakeup_writer.setblocking(False)
        _local.loop = self
        self._wakeup_channel = Channel(self, self._wakeup_reader)
        self._wakeup_channel.read_callback = self._handle_read
        self._wakeup_channel.enable_reading()
        self._closed = False
        logger.debug("EventLoop created %r in thread %d", self, self._thread_id)

    def loop(self) -> None:
        """Dispatch events until ``quit`` is called."""
        if self._looping:
            raise RuntimeError("EventLoop is already looping")
        self.assert_in_loop_thread()
        self._looping = True
        self._quit = False
        logger.debug("EventLoop %r start looping", self)
        try:
            while not self._quit:
                now, active = self._poller.poll(self._poll_timeout_ms())
                self.poll_return_time = now
                for channel in active:
                    channel.handle_event(now)
                self._run_expired_timers()
                self._do_pending_functors()
        finally:
            self._looping = False
        logger.debug("EventLoop %r stop looping", self)

    def quit(self) -> None:
        self._quit = True
        if not self.is_in_loop_thread():
            self.wakeup()

    def is_in_loop_thread(self) -> bool:
        return self._thread_id == threading.get_ident()

    def assert_in_loop_thread(self) -> None:
        if not self.is_in_loop_thread():
            raise NotInLoopThreadError(
                f"EventLoop {self!r} was created in thread {self._thread_id}, "
                f"current thread is {threading.get_ident()}"
            )

    def run_at(self, when: float, callback: Callable[[], Any]) -> TimerId:
        """Run ``callback`` at ``when`` (seconds since the epoch)."""
        return self._timer_queue.add_timer(callback, when, 0.0)

    def run_after(self, delay: float, callback: Callable[[], Any]) -> TimerId:
        """Run ``callback`` after ``delay`` seconds."""
        return self.run_at(time.time() + delay, callback)

    def run_every(self, interval: float, callback: Callable[[], Any]) -> TimerId:
        """Run ``callback`` every ``interval`` seconds."""
        return self._timer_queue.add_timer(callback, time.time() + interval, interval)

    def cancel(self, timer_id: TimerId) -> None:
        self._timer_queue.cancel(timer_id)

    def run_in_loop(self, callback: Callable[[], Any]) -> None:
        """Run now if in the loop thread, else queue it for the loop."""
        if self.is_in_loop_thread():
            callback()
        else:
            self.queue_in_loop(callback)

    def queue_in_loop(self, callback: Callable[[], Any]) -> None:
        """Queue ``callback`` to run after the current round of events."""
        with self._lock:
            self._pending.append(callback)
        if not self.is_in_loop_thread() or self._calling_pending:
            self.wakeup()

    def wakeup(self) -> None:
        try:
            self._wakeup_writer.send(b"\x01")
        except BlockingIOError:
            logger.debug("EventLoop.wakeup(): wakeup channel already full")
        except OSError as exc:
            logger.error("EventLoop.wakeup(): %s", exc)

    def update_channel(self, channel: Channel) -> None:
        if channel.owner_loop is not self:
            raise ValueError("channel belongs to another loop")
        self.assert_in_loop_thread()
        self._poller.update_channel(channel)

    def remove_channel(self, channel: Channel) -> None:
        if channel.owner_loop is not self:
            raise ValueError("channel belongs to another loop")
        self.assert_in_loop_thread()
        self._poller.remove_channel(channel)

    def close(self) -> None:
        """Release the loop's resources; it must not be looping."""
        if self._closed:
            return
        if self._looping:
            raise RuntimeError("cannot close a looping EventLoop")
        if self.is_in_loop_thread():
            self._wakeup_channel.disable_all()
            self._poller.remove_channel(self._wakeup_channel)
            if current_loop() is self:
                _local.loop = None
        self._poller.close()
        self._wakeup_reader.close()
        self._wakeup_writer.close()
        self._closed = True

    def __enter__(self) -> "EventLoop":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _poll_timeout_ms(self) -> int:
        expiration = self._timer_queue.next_expiration()
        if expiration is None:
            return POLL_TIME_MS
        remaining = math.ceil((expiration - time.time()) * 1000)
        return max(0, min(POLL_TIME_MS, remaining))

    def _run_expired_timers(self) -> None:
        expiration = self._timer_queue.next_expiration()
        if expiration is None:
            return
        now = time.time()
        if expiration <= now:
            self._timer_queue.handle_expired(now)

    def _do_pending_functors(self) -> None:
        self._calling_pending = True
        try:
            with self._lock:
                functors, self._pending = self._pending, []
            for functor in functors:
                functor()
        finally:
            self._calling_pending = False

    def _handle_read(self, _receive_time: float) -> None:
        try:
            while self._wakeup_reader.recv(4096):
                pass
        except BlockingIOError:
            pass
        except OSError as exc:
            logger.error("EventLoop._handle_read(): %s", exc)