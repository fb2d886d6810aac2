"""A TCP server that accepts connections and hands them to I/O loops."""

from __future__ import annotations

import logging
import socket
from typing import Dict, Optional

from tcpreactor import sockets
from tcpreactor.acceptor import Acceptor
from tcpreactor.event_loop import EventLoop
from tcpreactor.event_loop_thread import EventLoopThreadPool
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


class TcpServer:
    """Listens on an address and manages the connections it accepts.

    New connections are accepted in ``loop`` and served either in that loop
    or, after ``set_thread_num``, by a pool of loop threads in round robin.
    The callbacks set on the server are copied onto every new connection.
    """

    def __init__(
        self,
        loop: EventLoop,
        listen_addr: InetAddress,
        name: Optional[str] = None,
        reuse_port: bool = False,
    ) -> None:
        if loop is None:
            raise ValueError("loop must not be None")
        self._loop = loop
        self._ip_port = listen_addr.to_ip_port()
        self._name = listen_addr.to_host_port() if name is None else name
        self._acceptor = Acceptor(loop, listen_addr, reuse_port)
        self._acceptor.new_connection_callback = self._new_connection
        self._thread_pool = EventLoopThreadPool(loop)
        self.connection_callback: ConnectionCallback = default_connection_callback
        self.message_callback: MessageCallback = default_message_callback
        self.write_complete_callback: Optional[WriteCompleteCallback] = None
        self._started = False
        self._next_conn_id = 1
        self._connections: Dict[str, TcpConnection] = {}
        self._closed = False

    @property
    def ip_port(self) -> str:
        return self._ip_port

    @property
    def name(self) -> str:
        return self._name

    @property
    def loop(self) -> EventLoop:
        return self._loop

    @property
    def local_address(self) -> InetAddress:
        """The address the listening socket is actually bound to."""
        return self._acceptor.local_address

    @property
    def connections(self) -> Dict[str, TcpConnection]:
        """A snapshot of the live connections by name."""
        return dict(self._connections)

    def set_thread_num(self, num_threads: int) -> None:
        """Set the number of I/O threads; call before ``start``.

        0 serves every connection in the accepting loop, N spreads them over
        N loop threads in round robin.
        """
        if num_threads < 0:
            raise ValueError(f"negative thread count: {num_threads}")
        self._thread_pool.num_threads = num_threads

    def start(self) -> None:
        """Start the I/O threads and listen; harmless to call more than once."""
        if not self._started:
            self._started = True
            self._thread_pool.start()
        if not self._acceptor.listening:
            self._loop.run_in_loop(self._acceptor.listen)

    def close(self) -> None:
        """Destroy every connection, stop listening and stop the I/O threads."""
        if self._closed:
            return
        self._loop.assert_in_loop_thread()
        logger.debug("TcpServer.close [%s] destructing", self._name)
        connections, self._connections = self._connections, {}
        for conn in connections.values():
            conn.loop.run_in_loop(conn.connect_destroyed)
        self._acceptor.close()
        self._thread_pool.stop()
        self._closed = True

    def __enter__(self) -> "TcpServer":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _new_connection(self, sock: socket.socket, peer_addr: InetAddress) -> None:
        self._loop.assert_in_loop_thread()
        conn_name = f"{self._name}-{self._ip_port}#{self._next_conn_id}"
        self._next_conn_id += 1
        logger.info(
            "TcpServer.new_connection [%s] - new connection [%s] from %s",
            self._name,
            conn_name,
            peer_addr.to_host_port(),
        )
        local_addr = InetAddress.from_sockaddr(sockets.get_local_addr(sock))
        io_loop = self._thread_pool.get_next_loop()
        conn = TcpConnection(io_loop, conn_name, sock, local_addr, peer_addr)
        self._connections[conn_name] = conn
        conn.connection_callback = self.connection_callback
        conn.message_callback = self.message_callback
        conn.write_complete_callback = self.write_complete_callback
        conn.close_callback = self._remove_connection
        io_loop.run_in_loop(conn.connect_established)

    def _remove_connection(self, conn: TcpConnection) -> None:
        self._loop.run_in_loop(lambda: self._remove_connection_in_loop(conn))

    def _remove_connection_in_loop(self, conn: TcpConnection) -> None:
        self._loop.assert_in_loop_thread()
        logger.info(
            "TcpServer.remove_connection [%s] - connection %s", self._name, conn.name
        )
        if self._connections.pop(conn.name, None) is None:
            logger.warning("TcpServer: unknown connection %s", conn.name)
            return
        conn.loop.queue_in_loop(conn.connect_destroyed)

    def __repr__(self) -> str:
        return f"TcpServer(name={self._name!r}, ip_port={self._ip_port!r})"