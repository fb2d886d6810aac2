"""A selectable I/O channel: one descriptor, its interest set and callbacks."""

from __future__ import annotations

import enum
import logging
import select
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class Event(enum.IntFlag):
    """poll(2) event bits."""

    NONE = 0
    IN = getattr(select, "POLLIN", 0x001)
    PRI = getattr(select, "POLLPRI", 0x002)
    OUT = getattr(select, "POLLOUT", 0x004)
    ERR = getattr(select, "POLLERR", 0x008)
    HUP = getattr(select, "POLLHUP", 0x010)
    NVAL = getattr(select, "POLLNVAL", 0x020)
    RDHUP = getattr(select, "POLLRDHUP", 0x2000)


READ_EVENTS = Event.IN | Event.PRI
WRITE_EVENTS = Event.OUT


class Channel:
    """Dispatches ready events of one file descriptor to its callbacks.

    The channel does not own the descriptor. Interest changes are reported
    to the owning loop through ``loop.update_channel``.
    """

    def __init__(self, loop: Any, fd: Any) -> None:
        self.owner_loop = loop
        self.fd: int = fd if isinstance(fd, int) else fd.fileno()
        self.events: Event = Event.NONE
        self.revents: int = 0
        self.index: int = -1
        self.event_handling = False
        self.read_callback: Optional[Callable[[Any], None]] = None
        self.write_callback: Optional[Callable[[], None]] = None
        self.error_callback: Optional[Callable[[], None]] = None
        self.close_callback: Optional[Callable[[], None]] = None

    def handle_event(self, receive_time: Any) -> None:
        """Run the callbacks matching the ready events in ``revents``."""
        self.event_handling = True
        try:
            revents = self.revents
            if revents & Event.NVAL:
                logger.warning("Channel.handle_event() POLLNVAL fd=%d", self.fd)
            if revents & Event.HUP and not revents & Event.IN:
                logger.warning("Channel.handle_event() POLLHUP fd=%d", self.fd)
                if self.close_callback:
                    self.close_callback()
            if revents & (Event.ERR | Event.NVAL):
                if self.error_callback:
                    self.error_callback()
            if revents & (Event.IN | Event.PRI | Event.RDHUP):
                if self.read_callback:
                    self.read_callback(receive_time)
            if revents & Event.OUT:
                if self.write_callback:
                    self.write_callback()
        finally:
            self.event_handling = False

    def enable_reading(self) -> None:
        self.events |= READ_EVENTS
        self._update()

    def enable_writing(self) -> None:
        self.events |= WRITE_EVENTS
        self._update()

    def disable_writing(self) -> None:
        self.events &= ~WRITE_EVENTS
        self._update()

    def disable_all(self) -> None:
        self.events = Event.NONE
        self._update()

    def is_writing(self) -> bool:
        return bool(self.events & WRITE_EVENTS)

    def is_none_event(self) -> bool:
        return self.events == Event.NONE

    def _update(self) -> None:
        self.owner_loop.update_channel(self)

    def __repr__(self) -> str:
        return f"Channel(fd={self.fd}, events={self.events!r})"