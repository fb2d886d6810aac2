"""Accepts incoming TCP connections on a listening socket."""

from __future__ import annotations

import errno
import logging
import os
import socket
from typing import Any, Callable, Optional

from tcpreactor import sockets
from tcpreactor.channel import Channel
from tcpreactor.inet_address import InetAddress

logger = logging.getLogger(__name__)

NewConnectionCallback = Callable[[socket.socket, InetAddress], Any]


class Acceptor:
    """Listens on an address and hands each accepted socket to a callback.

    Without a callback accepted connections are closed at once.
    """

    def __init__(
        self, loop: Any, listen_addr: InetAddress, reuse_port: bool = False
    ) -> None:
        self._loop = loop
        self._socket = sockets.Socket(sockets.create_nonblocking_or_die())
        self._socket.set_reuse_addr(True)
        self._socket.set_reuse_port(reuse_port)
        self._socket.bind_address(listen_addr.sockaddr)
        self._channel = Channel(loop, self._socket.sock)
        self._channel.read_callback = self._handle_read
        self.new_connection_callback: Optional[NewConnectionCallback] = None
        self._listening = False
        self._idle_fd: Optional[int] = self._open_idle()
        self._closed = False

    @property
    def listening(self) -> bool:
        return self._listening

    @property
    def local_address(self) -> InetAddress:
        """The address the listening socket is bound to."""
        return InetAddress.from_sockaddr(self._socket.sock.getsockname())

    def listen(self) -> None:
        """Start listening and watching for connections; loop thread only."""
        self._loop.assert_in_loop_thread()
        self._listening = True
        self._socket.listen()
        self._channel.enable_reading()

    def close(self) -> None:
        """Stop watching, close the listening socket and the spare descriptor."""
        if self._closed:
            return
        if self._listening:
            self._loop.assert_in_loop_thread()
            self._channel.disable_all()
            self._loop.remove_channel(self._channel)
            self._listening = False
        self._socket.close()
        if self._idle_fd is not None:
            os.close(self._idle_fd)
            self._idle_fd = None
        self._closed = True

    def _handle_read(self, _receive_time: Any) -> None:
        self._loop.assert_in_loop_thread()
        try:
            conn, addr = self._socket.accept()
        except OSError as exc:
            logger.error("in Acceptor._handle_read: %s", exc)
            if exc.errno == errno.EMFILE:
                self._drop_pending_connection()
            return
        if self.new_connection_callback is not None:
            self.new_connection_callback(conn, InetAddress.from_sockaddr(addr))
        else:
            sockets.close(conn)

    def _drop_pending_connection(self) -> None:
        # Out of descriptors: free the spare one, accept and close the
        # pending connection so the peer is told, then take the spare back.
        if self._idle_fd is not None:
            os.close(self._idle_fd)
            self._idle_fd = None
        try:
            conn, _ = self._socket.sock.accept()
        except OSError as exc:
            logger.error("Acceptor: dropping connection failed: %s", exc)
        else:
            conn.close()
        self._idle_fd = self._open_idle()

    @staticmethod
    def _open_idle() -> Optional[int]:
        try:
            return os.open(os.devnull, os.O_RDONLY)
        except OSError as exc:
            logger.error("Acceptor: cannot open spare descriptor: %s", exc)
            return None