"""One established TCP connection, shared by servers and clients."""

from __future__ import annotations

import enum
import errno
import logging
import os
import socket
from typing import Any, Callable, Optional, Union

from tcpreactor import sockets
from tcpreactor.buffer import Buffer
from tcpreactor.channel import Channel
from tcpreactor.inet_address import InetAddress

logger = logging.getLogger(__name__)

ConnectionCallback = Callable[["TcpConnection"], Any]
MessageCallback = Callable[["TcpConnection", Buffer, float], Any]
WriteCompleteCallback = Callable[["TcpConnection"], Any]
HighWaterMarkCallback = Callable[["TcpConnection", int], Any]
CloseCallback = Callable[["TcpConnection"], Any]

DEFAULT_HIGH_WATER_MARK = 64 * 1024 * 1024

_FAULT_ERRORS = frozenset({errno.EPIPE, errno.ECONNRESET})


class ConnectionState(enum.Enum):
    CONNECTING = enum.auto()
    CONNECTED = enum.auto()
    DISCONNECTING = enum.auto()
    DISCONNECTED = enum.auto()


def default_connection_callback(conn: "TcpConnection") -> None:
    logger.debug(
        "%s -> %s is %s",
        conn.local_address,
        conn.peer_address,
        "UP" if conn.connected() else "DOWN",
    )


def default_message_callback(conn: "TcpConnection", buf: Buffer, receive_time: float) -> None:
    buf.retrieve_all()


class TcpConnection:
    """A connected socket with input and output buffers, driven by its loop.

    Instances are created by a server or client once a socket is connected;
    ``connect_established`` starts reading and ``connect_destroyed`` ends
    the connection's life in the loop.
    """

    def __init__(
        self,
        loop: Any,
        name: str,
        sock: socket.socket,
        local_addr: InetAddress,
        peer_addr: InetAddress,
    ) -> None:
        if loop is None:
            raise ValueError("loop must not be None")
        self.loop = loop
        self.name = name
        self._state = ConnectionState.CONNECTING
        self._socket = sockets.Socket(sock)
        self._channel = Channel(loop, sock)
        self.local_address = local_addr
        self.peer_address = peer_addr
        self.connection_callback: ConnectionCallback = default_connection_callback
        self.message_callback: MessageCallback = default_message_callback
        self.write_complete_callback: Optional[WriteCompleteCallback] = None
        self.high_water_mark_callback: Optional[HighWaterMarkCallback] = None
        self.close_callback: Optional[CloseCallback] = None
        self.high_water_mark = DEFAULT_HIGH_WATER_MARK
        self.input_buffer = Buffer()
        self.output_buffer = Buffer()
        self.context: Any = None

        self._channel.read_callback = self._handle_read
        self._channel.write_callback = self._handle_write
        self._channel.close_callback = self._handle_close
        self._channel.error_callback = self._handle_error
        logger.debug("TcpConnection[%s] fd=%d", name, self._channel.fd)
        try:
            self._socket.set_keep_alive(True)
        except OSError as exc:
            logger.error("TcpConnection[%s] SO_KEEPALIVE failed: %s", name, exc)

    @property
    def state(self) -> ConnectionState:
        return self._state

    def connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def send(self, data: Union[bytes, bytearray, memoryview, str, Buffer]) -> None:
        """Send data; thread safe. A Buffer argument is drained."""
        if self._state is not ConnectionState.CONNECTED:
            return
        if isinstance(data, Buffer):
            payload = data.retrieve_all_as_bytes()
        elif isinstance(data, str):
            payload = data.encode("utf-8")
        else:
            payload = bytes(data)
        if self.loop.is_in_loop_thread():
            self._send_in_loop(payload)
        else:
            self.loop.run_in_loop(lambda: self._send_in_loop(payload))

    def shutdown(self) -> None:
        """Close the writing half once pending output is sent; thread safe."""
        if self._state is ConnectionState.CONNECTED:
            self._state = ConnectionState.DISCONNECTING
            self.loop.run_in_loop(self._shutdown_in_loop)

    def set_tcp_no_delay(self, on: bool) -> None:
        self._socket.set_tcp_no_delay(on)

    def set_high_water_mark_callback(
        self, callback: HighWaterMarkCallback, high_water_mark: int
    ) -> None:
        self.high_water_mark_callback = callback
        self.high_water_mark = high_water_mark

    def connect_established(self) -> None:
        """Start reading and report the connection as up; call once."""
        self.loop.assert_in_loop_thread()
        if self._state is not ConnectionState.CONNECTING:
            raise RuntimeError(f"cannot establish connection in state {self._state.name}")
        self._state = ConnectionState.CONNECTED
        self._channel.enable_reading()
        self.connection_callback(self)

    def connect_destroyed(self) -> None:
        """Report the connection as down and release it; call once."""
        self.loop.assert_in_loop_thread()
        if self._state not in (ConnectionState.CONNECTED, ConnectionState.DISCONNECTING):
            raise RuntimeError(f"cannot destroy connection in state {self._state.name}")
        self._state = ConnectionState.DISCONNECTED
        self._channel.disable_all()
        self.connection_callback(self)
        self.loop.remove_channel(self._channel)
        self._socket.close()

    def _handle_read(self, receive_time: float) -> None:
        try:
            count = self.input_buffer.read_fd(self._channel.fd)
        except BlockingIOError:
            return
        except OSError as exc:
            logger.error("TcpConnection._handle_read [%s]: %s", self.name, exc)
            self._handle_error()
            return
        if count > 0:
            self.message_callback(self, self.input_buffer, receive_time)
        else:
            self._handle_close()

    def _handle_write(self) -> None:
        self.loop.assert_in_loop_thread()
        if not self._channel.is_writing():
            logger.debug("Connection is down, no more writing")
            return
        try:
            count = sockets.write(self._socket.sock, self.output_buffer.peek())
        except OSError as exc:
            logger.error("TcpConnection._handle_write [%s]: %s", self.name, exc)
            return
        if count <= 0:
            return
        self.output_buffer.retrieve(count)
        if self.output_buffer.readable_bytes() == 0:
            self._channel.disable_writing()
            self._queue_write_complete()
            if self._state is ConnectionState.DISCONNECTING:
                self._shutdown_in_loop()
        else:
            logger.debug("I am going to write more data")

    def _handle_close(self) -> None:
        self.loop.assert_in_loop_thread()
        logger.debug("TcpConnection._handle_close state = %s", self._state.name)
        if self._state not in (ConnectionState.CONNECTED, ConnectionState.DISCONNECTING):
            raise RuntimeError(f"close reported in state {self._state.name}")
        self._channel.disable_all()
        if self.close_callback is not None:
            self.close_callback(self)

    def _handle_error(self) -> None:
        err = sockets.get_socket_error(self._socket.sock)
        logger.error(
            "TcpConnection._handle_error [%s] - SO_ERROR = %d %s",
            self.name,
            err,
            os.strerror(err),
        )

    def _shutdown_in_loop(self) -> None:
        self.loop.assert_in_loop_thread()
        if not self._channel.is_writing():
            self._socket.shutdown_write()

    def _queue_write_complete(self) -> None:
        callback = self.write_complete_callback
        if callback is not None:
            self.loop.queue_in_loop(lambda: callback(self))

    def _send_in_loop(self, data: bytes) -> None:
        self.loop.assert_in_loop_thread()
        if self._state is ConnectionState.DISCONNECTED:
            logger.warning("disconnected, give up writing")
            return
        length = len(data)
        written = 0
        remaining = length
        fault = False
        if not self._channel.is_writing() and self.output_buffer.readable_bytes() == 0:
            try:
                written = sockets.write(self._socket.sock, data)
            except BlockingIOError:
                written = 0
            except OSError as exc:
                written = 0
                logger.error("TcpConnection._send_in_loop [%s]: %s", self.name, exc)
                if exc.errno in _FAULT_ERRORS:
                    fault = True
            else:
                remaining = length - written
                if remaining == 0:
                    self._queue_write_complete()

        if fault or remaining <= 0:
            return
        old_len = self.output_buffer.readable_bytes()
        callback = self.high_water_mark_callback
        if (
            old_len + remaining >= self.high_water_mark
            and old_len < self.high_water_mark
            and callback is not None
        ):
            size = old_len + remaining
            self.loop.queue_in_loop(lambda: callback(self, size))
        self.output_buffer.append(memoryview(data)[written:])
        if not self._channel.is_writing():
            self._channel.enable_writing()

    def __repr__(self) -> str:
        return f"TcpConnection(name={self.name!r}, state={self._state.name})"