"""Socket helpers and an owning socket wrapper."""

from __future__ import annotations

import errno
import logging
import socket
import sys
from typing import Tuple

logger = logging.getLogger(__name__)

SockAddr = Tuple

_EXPECTED_ACCEPT_ERRORS = frozenset(
    {
        errno.EAGAIN,
        errno.EWOULDBLOCK,
        errno.ECONNABORTED,
        errno.EINTR,
        errno.EPROTO,
        errno.EPERM,
        errno.EMFILE,
    }
)


def host_to_network16(value: int) -> int:
    return socket.htons(value)


def host_to_network32(value: int) -> int:
    return socket.htonl(value)


def host_to_network64(value: int) -> int:
    return int.from_bytes(value.to_bytes(8, sys.byteorder), "big")


def network_to_host16(value: int) -> int:
    return socket.ntohs(value)


def network_to_host32(value: int) -> int:
    return socket.ntohl(value)


def network_to_host64(value: int) -> int:
    return int.from_bytes(value.to_bytes(8, "big"), sys.byteorder)


def create_nonblocking_or_die() -> socket.socket:
    """Create a non-blocking IPv4 TCP socket; raises OSError on failure."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM, socket.IPPROTO_TCP)
    sock.setblocking(False)
    return sock


def connect(sock: socket.socket, sockaddr: SockAddr) -> int:
    """Start connecting and return the resulting errno (0 on success)."""
    return sock.connect_ex(sockaddr)


def bind_or_die(sock: socket.socket, sockaddr: SockAddr) -> None:
    sock.bind(sockaddr)


def listen_or_die(sock: socket.socket) -> None:
    sock.listen(socket.SOMAXCONN)


def accept(sock: socket.socket):
    """Accept a connection and return ``(connection, peer_address)``.

    The new connection is non-blocking. Transient errors are re-raised as
    the original ``OSError``; any other failure raises ``RuntimeError``.
    """
    try:
        conn, addr = sock.accept()
    except OSError as exc:
        logger.error("Socket::accept: %s", exc)
        if exc.errno in _EXPECTED_ACCEPT_ERRORS:
            raise
        raise RuntimeError(f"unexpected error of accept: {exc.errno}") from exc
    conn.setblocking(False)
    return conn, addr


def close(sock: socket.socket) -> None:
    try:
        sock.close()
    except OSError as exc:
        logger.error("sockets.close: %s", exc)


def shutdown_write(sock: socket.socket) -> None:
    try:
        sock.shutdown(socket.SHUT_WR)
    except OSError as exc:
        logger.error("sockets.shutdown_write: %s", exc)


def _zero_address(sock: socket.socket) -> SockAddr:
    if sock.family == socket.AF_INET6:
        return ("::", 0, 0, 0)
    return ("0.0.0.0", 0)


def get_local_addr(sock: socket.socket) -> SockAddr:
    try:
        return sock.getsockname()
    except OSError as exc:
        logger.error("sockets.get_local_addr: %s", exc)
        return _zero_address(sock)


def get_peer_addr(sock: socket.socket) -> SockAddr:
    try:
        return sock.getpeername()
    except OSError as exc:
        logger.error("sockets.get_peer_addr: %s", exc)
        return _zero_address(sock)


def get_socket_error(sock: socket.socket) -> int:
    """Return the pending SO_ERROR of the socket, or the errno of reading it."""
    try:
        return sock.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
    except OSError as exc:
        return exc.errno or 0


def is_self_connect(sock: socket.socket) -> bool:
    """True when the socket is connected to its own address and port."""
    if sock.family not in (socket.AF_INET, socket.AF_INET6):
        return False
    local = get_local_addr(sock)
    peer = get_peer_addr(sock)
    return local[:2] == peer[:2]


def _family_of(host: str) -> int:
    return socket.AF_INET6 if ":" in host else socket.AF_INET


def to_ip(sockaddr: SockAddr) -> str:
    """Normalised textual form of the address part of ``sockaddr``."""
    host = sockaddr[0]
    family = _family_of(host)
    try:
        packed = socket.inet_pton(family, host)
    except OSError as exc:
        raise ValueError(f"invalid IP address: {host!r}") from exc
    return socket.inet_ntop(family, packed)


def to_ip_port(sockaddr: SockAddr) -> str:
    return f"{to_ip(sockaddr)}:{sockaddr[1]}"


def to_host_port(sockaddr: SockAddr) -> str:
    """Format an IPv4 address as ``host:port``."""
    host, port = sockaddr[0], sockaddr[1]
    try:
        packed = socket.inet_pton(socket.AF_INET, host)
    except OSError as exc:
        raise ValueError(f"invalid IPv4 address: {host!r}") from exc
    return f"{socket.inet_ntop(socket.AF_INET, packed)}:{port}"


def from_host_port(ip: str, port: int) -> SockAddr:
    """Build an IPv4 socket address from dotted-quad text and a port."""
    if not 0 <= port <= 0xFFFF:
        raise ValueError(f"port out of range: {port}")
    try:
        packed = socket.inet_pton(socket.AF_INET, ip)
    except OSError as exc:
        raise ValueError(f"invalid IPv4 address: {ip!r}") from exc
    return (socket.inet_ntop(socket.AF_INET, packed), port)


def write(sock: socket.socket, data) -> int:
    """Send as much of ``data`` as possible and return the number of bytes sent."""
    return sock.send(data)


class Socket:
    """Owns a socket object and closes it when done."""

    def __init__(self, sock: socket.socket) -> None:
        self.sock = sock

    def fileno(self) -> int:
        return self.sock.fileno()

    def bind_address(self, sockaddr: SockAddr) -> None:
        bind_or_die(self.sock, sockaddr)

    def listen(self) -> None:
        listen_or_die(self.sock)

    def accept(self):
        """Accept a connection; returns ``(connection, peer_address)``."""
        return accept(self.sock)

    def set_reuse_addr(self, on: bool) -> None:
        self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1 if on else 0)

    def set_reuse_port(self, on: bool) -> None:
        option = getattr(socket, "SO_REUSEPORT", None)
        if option is None:
            if on:
                logger.error("SO_REUSEPORT is not supported.")
            return
        try:
            self.sock.setsockopt(socket.SOL_SOCKET, option, 1 if on else 0)
        except OSError as exc:
            if on:
                logger.error("SO_REUSEPORT failed: %s", exc)

    def set_tcp_no_delay(self, on: bool) -> None:
        self.sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1 if on else 0)

    def set_keep_alive(self, on: bool) -> None:
        self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1 if on else 0)

    def shutdown_write(self) -> None:
        shutdown_write(self.sock)

    def close(self) -> None:
        close(self.sock)

    def __enter__(self) -> "Socket":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()