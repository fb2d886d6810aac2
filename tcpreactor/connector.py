"""Actively connects to a server, retrying with exponential back-off."""

from __future__ import annotations

import enum
import errno
import logging
import os
import socket
from typing import Any, Callable, Optional

from tcpreactor import sockets
from tcpreactor.channel import Channel
from tcpreactor.inet_address import InetAddress
from tcpreactor.timer import TimerId

logger = logging.getLogger(__name__)

_IN_PROGRESS = frozenset({0, errno.EINPROGRESS, errno.EINTR, errno.EISCONN})
_RETRYABLE = frozenset(
    {
        errno.EAGAIN,
        errno.EADDRINUSE,
        errno.EADDRNOTAVAIL,
        errno.ECONNREFUSED,
        errno.ENETUNREACH,
    }
)


class ConnectorState(enum.Enum):
    DISCONNECTED = enum.auto()
    CONNECTING = enum.auto()
    CONNECTED = enum.auto()


class Connector:
    """Connects a non-blocking socket to ``server_addr`` in its loop.

    On success the connected socket is passed to ``new_connection_callback``.
    Refused or failed attempts are retried after a delay that doubles each
    time up to ``MAX_RETRY_DELAY_MS``.
    """

    MAX_RETRY_DELAY_MS = 30 * 1000
    INIT_RETRY_DELAY_MS = 500

    def __init__(self, loop: Any, server_addr: InetAddress) -> None:
        self._loop = loop
        self._server_addr = server_addr
        self._connect = False
        self._state = ConnectorState.DISCONNECTED
        self._channel: Optional[Channel] = None
        self._socket: Optional[socket.socket] = None
        self._retry_delay_ms = self.INIT_RETRY_DELAY_MS
        self._timer_id: Optional[TimerId] = None
        self.new_connection_callback: Optional[Callable[[socket.socket], Any]] = None

    @property
    def server_address(self) -> InetAddress:
        return self._server_addr

    @property
    def state(self) -> ConnectorState:
        return self._state

    @property
    def retry_delay_ms(self) -> int:
        return self._retry_delay_ms

    def start(self) -> None:
        """Begin connecting; may be called from any thread."""
        self._connect = True
        self._loop.run_in_loop(self._start_in_loop)

    def restart(self) -> None:
        """Connect again from scratch; must be called in the loop thread."""
        self._loop.assert_in_loop_thread()
        self._state = ConnectorState.DISCONNECTED
        self._retry_delay_ms = self.INIT_RETRY_DELAY_MS
        self._connect = True
        self._start_in_loop()

    def stop(self) -> None:
        """Stop connecting and cancel any pending retry."""
        self._connect = False
        if self._timer_id is not None:
            self._loop.cancel(self._timer_id)

    def _start_in_loop(self) -> None:
        self._loop.assert_in_loop_thread()
        if self._state is not ConnectorState.DISCONNECTED:
            raise RuntimeError(f"cannot start connecting in state {self._state.name}")
        if self._connect:
            self._do_connect()
        else:
            logger.debug("do not connect")

    def _do_connect(self) -> None:
        sock = sockets.create_nonblocking_or_die()
        saved_errno = sockets.connect(sock, self._server_addr.sockaddr)
        if saved_errno in _IN_PROGRESS:
            self._connecting(sock)
        elif saved_errno in _RETRYABLE:
            self._retry(sock)
        else:
            logger.error(
                "connect error in Connector._start_in_loop %d %s",
                saved_errno,
                os.strerror(saved_errno),
            )
            sockets.close(sock)

    def _connecting(self, sock: socket.socket) -> None:
        self._state = ConnectorState.CONNECTING
        self._socket = sock
        channel = Channel(self._loop, sock)
        channel.write_callback = self._handle_write
        channel.error_callback = self._handle_error
        self._channel = channel
        channel.enable_writing()

    def _handle_write(self) -> None:
        logger.debug("Connector._handle_write %s", self._state.name)
        if self._state is not ConnectorState.CONNECTING:
            return
        sock = self._remove_and_reset_channel()
        err = sockets.get_socket_error(sock)
        if err:
            logger.warning(
                "Connector._handle_write - SO_ERROR = %d %s", err, os.strerror(err)
            )
            self._retry(sock)
        elif sockets.is_self_connect(sock):
            logger.warning("Connector._handle_write - Self connect")
            self._retry(sock)
        else:
            self._state = ConnectorState.CONNECTED
            if self._connect and self.new_connection_callback is not None:
                self.new_connection_callback(sock)
            else:
                sockets.close(sock)

    def _handle_error(self) -> None:
        logger.error("Connector._handle_error")
        if self._state is not ConnectorState.CONNECTING:
            raise RuntimeError(f"connect error reported in state {self._state.name}")
        sock = self._remove_and_reset_channel()
        err = sockets.get_socket_error(sock)
        logger.debug("SO_ERROR = %d %s", err, os.strerror(err))
        self._retry(sock)

    def _retry(self, sock: socket.socket) -> None:
        sockets.close(sock)
        self._state = ConnectorState.DISCONNECTED
        if self._connect:
            logger.info(
                "Connector.retry - Retry connecting to %s in %d milliseconds.",
                self._server_addr.to_host_port(),
                self._retry_delay_ms,
            )
            self._timer_id = self._loop.run_after(
                self._retry_delay_ms / 1000.0, self._start_in_loop
            )
            self._retry_delay_ms = min(self._retry_delay_ms * 2, self.MAX_RETRY_DELAY_MS)
        else:
            logger.debug("do not connect")

    def _remove_and_reset_channel(self) -> socket.socket:
        channel = self._channel
        sock = self._socket
        channel.disable_all()
        self._loop.remove_channel(channel)
        self._socket = None
        # The channel is still dispatching its events; drop it afterwards.
        self._loop.queue_in_loop(lambda: self._reset_channel(channel))
        return sock

    def _reset_channel(self, channel: Channel) -> None:
        if self._channel is channel:
            self._channel = None