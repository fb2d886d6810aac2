"""A TCP client holding at most one connection, with optional reconnect."""

from __future__ import annotations

import logging
import socket
import threading
from typing import Optional

from tcpreactor import sockets
from tcpreactor.connector import Connector
from tcpreactor.event_loop import EventLoop
from tcpreactor.inet_address import InetAddress
from tcpreactor.tcp_connection import (
    ConnectionCallback,
    MessageCallback,
    TcpConnection,
    WriteCompleteCallback,
    default_connection_callback,
    default_message_callback,
)

logger = logging.getLogger(__name__)


def _destroy_later(conn: TcpConnection) -> None:
    conn.loop.queue_in_loop(conn.connect_destroyed)


class TcpClient:
    """Connects to ``server_addr`` and manages the resulting connection.

    With retry enabled, a connection closed while the client still wants
    to be connected is re-established at once.
    """

    def __init__(self, loop: EventLoop, server_addr: InetAddress) -> None:
        if loop is None:
            raise ValueError("loop must not be None")
        self._loop = loop
        self._connector = Connector(loop, server_addr)
        self._connector.new_connection_callback = self._new_connection
        self.connection_callback: ConnectionCallback = default_connection_callback
        self.message_callback: MessageCallback = default_message_callback
        self.write_complete_callback: Optional[WriteCompleteCallback] = None
        self._retry_enabled = False
        self._connect = False
        self._next_conn_id = 1
        self._lock = threading.Lock()
        self._connection: Optional[TcpConnection] = None
        logger.info("TcpClient[%r] - connector %r", self, self._connector)

    @property
    def loop(self) -> EventLoop:
        return self._loop

    @property
    def server_address(self) -> InetAddress:
        return self._connector.server_address

    def connect(self) -> None:
        logger.info(
            "TcpClient.connect[%r] - connecting to %s",
            self,
            self._connector.server_address.to_host_port(),
        )
        self._connect = True
        self._connector.start()

    def disconnect(self) -> None:
        """Shut down the current connection's writing half."""
        self._connect = False
        with self._lock:
            if self._connection is not None:
                self._connection.shutdown()

    def stop(self) -> None:
        """Stop connecting, cancelling a pending retry."""
        self._connect = False
        self._connector.stop()

    def connection(self) -> Optional[TcpConnection]:
        with self._lock:
            return self._connection

    def retry(self) -> bool:
        return self._retry_enabled

    def enable_retry(self) -> None:
        self._retry_enabled = True

    def close(self) -> None:
        """Detach from the connection, or stop connecting if there is none."""
        logger.info("TcpClient.close[%r] - connector %r", self, self._connector)
        with self._lock:
            conn = self._connection
        if conn is not None:
            self._loop.run_in_loop(lambda: setattr(conn, "close_callback", _destroy_later))
        else:
            self._connector.stop()

    def __enter__(self) -> "TcpClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _new_connection(self, sock: socket.socket) -> None:
        self._loop.assert_in_loop_thread()
        peer_addr = InetAddress.from_sockaddr(sockets.get_peer_addr(sock))
        conn_name = f":{peer_addr.to_host_port()}#{self._next_conn_id}"
        self._next_conn_id += 1
        local_addr = InetAddress.from_sockaddr(sockets.get_local_addr(sock))
        conn = TcpConnection(self._loop, conn_name, sock, local_addr, peer_addr)
        conn.connection_callback = self.connection_callback
        conn.message_callback = self.message_callback
        conn.write_complete_callback = self.write_complete_callback
        conn.close_callback = self._remove_connection
        with self._lock:
            self._connection = conn
        conn.connect_established()

    def _remove_connection(self, conn: TcpConnection) -> None:
        self._loop.assert_in_loop_thread()
        if conn.loop is not self._loop:
            raise RuntimeError("connection belongs to another loop")
        with self._lock:
            if self._connection is not conn:
                raise RuntimeError(f"unknown connection {conn.name}")
            self._connection = None
        self._loop.queue_in_loop(conn.connect_destroyed)
        if self._retry_enabled and self._connect:
            logger.info(
                "TcpClient.connect[%r] - Reconnecting to %s",
                self,
                self._connector.server_address.to_host_port(),
            )
            self._connector.restart()