"""I/O multiplexing over poll(2) for channels of one event loop."""

from __future__ import annotations

import logging
import select
import time
from typing import Any, Dict, List, Tuple

from tcpreactor.channel import Channel

logger = logging.getLogger(__name__)

_NEW = -1
_ADDED = 1
_DELETED = 2


class Poller:
    """Watches the descriptors of registered channels for readiness.

    A channel's ``index`` records whether it is new, registered with the
    kernel, or known but currently not watched. The poller does not own the
    channels. Every method must be called in the owning loop's thread.
    """

    def __init__(self, loop: Any) -> None:
        self._owner_loop = loop
        self._poll = select.poll()
        self._channels: Dict[int, Channel] = {}

    def assert_in_loop_thread(self) -> None:
        self._owner_loop.assert_in_loop_thread()

    def poll(self, timeout_ms: int) -> Tuple[float, List[Channel]]:
        """Wait up to ``timeout_ms`` and return ``(time, active_channels)``.

        The time is taken right after the wait returns, in seconds since the
        epoch. Each active channel has its ``revents`` set.
        """
        try:
            ready = self._poll.poll(timeout_ms)
        except OSError as exc:
            logger.error("Poller.poll(): %s", exc)
            ready = []
        now = time.time()
        active: List[Channel] = []
        if ready:
            logger.debug("%d events happened", len(ready))
        for fd, revents in ready:
            channel = self._channels.get(fd)
            if channel is None:
                logger.warning("Poller.poll(): event for unknown fd=%d", fd)
                continue
            channel.revents = revents
            active.append(channel)
        return now, active

    def update_channel(self, channel: Channel) -> None:
        """Register, modify or stop watching the channel's descriptor."""
        self.assert_in_loop_thread()
        fd = channel.fd
        logger.debug("fd = %d events = %r", fd, channel.events)
        index = channel.index
        if index in (_NEW, _DELETED):
            if index == _NEW:
                if fd in self._channels:
                    raise ValueError(f"fd {fd} is already registered")
                self._channels[fd] = channel
            elif self._channels.get(fd) is not channel:
                raise ValueError(f"channel for fd {fd} is not registered here")
            channel.index = _ADDED
            self._poll.register(fd, int(channel.events))
        else:
            if self._channels.get(fd) is not channel or index != _ADDED:
                raise ValueError(f"channel for fd {fd} is not registered here")
            if channel.is_none_event():
                self._unregister(fd)
                channel.index = _DELETED
            else:
                self._poll.modify(fd, int(channel.events))

    def remove_channel(self, channel: Channel) -> None:
        """Forget a channel; it must have no events of interest left."""
        self.assert_in_loop_thread()
        fd = channel.fd
        logger.debug("fd = %d", fd)
        if self._channels.get(fd) is not channel:
            raise ValueError(f"channel for fd {fd} is not registered here")
        if not channel.is_none_event():
            raise ValueError(f"channel for fd {fd} still has events enabled")
        index = channel.index
        if index not in (_ADDED, _DELETED):
            raise ValueError(f"channel for fd {fd} has invalid index {index}")
        del self._channels[fd]
        if index == _ADDED:
            self._unregister(fd)
        channel.index = _NEW

    def has_channel(self, channel: Channel) -> bool:
        return self._channels.get(channel.fd) is channel

    def close(self) -> None:
        """Stop watching every descriptor."""
        for fd, channel in list(self._channels.items()):
            if channel.index == _ADDED:
                self._unregister(fd)
            channel.index = _NEW
        self._channels.clear()

    def _unregister(self, fd: int) -> None:
        try:
            self._poll.unregister(fd)
        except (KeyError, OSError) as exc:
            logger.error("Poller: unregister fd=%d failed: %s", fd, exc)