"""An immutable IPv4/IPv6 endpoint: address text plus port."""

from __future__ import annotations

import socket
from typing import Optional, Tuple

from tcpreactor import sockets

_ANY_ADDRESS = "0.0.0.0"


class InetAddress:
    """A socket endpoint, built from a port and optional IPv4 address.

    Without an address the endpoint is the IPv4 wildcard address, which is
    what a listening server usually wants.
    """

    __slots__ = ("_sockaddr",)

    def __init__(self, port: int = 0, ip: Optional[str] = None) -> None:
        self._sockaddr: Tuple = sockets.from_host_port(
            _ANY_ADDRESS if ip is None else ip, port
        )

    @classmethod
    def from_sockaddr(cls, sockaddr) -> "InetAddress":
        """Build an endpoint from a socket-module address tuple (IPv4 or IPv6)."""
        port = sockaddr[1]
        if not 0 <= port <= 0xFFFF:
            raise ValueError(f"port out of range: {port}")
        host = sockets.to_ip(sockaddr)
        address = cls.__new__(cls)
        address._sockaddr = (host, port) + tuple(sockaddr[2:])
        return address

    @property
    def sockaddr(self) -> Tuple:
        """The address tuple accepted by the socket module."""
        return self._sockaddr

    @property
    def ip(self) -> str:
        return self._sockaddr[0]

    @property
    def port(self) -> int:
        return self._sockaddr[1]

    @property
    def family(self) -> int:
        return socket.AF_INET6 if ":" in self.ip else socket.AF_INET

    def to_ip_port(self) -> str:
        """Format as ``ip:port``."""
        return sockets.to_ip_port(self._sockaddr)

    def to_host_port(self) -> str:
        """Format as ``host:port``; IPv6 endpoints use the ``ip:port`` form."""
        if self.family == socket.AF_INET6:
            return self.to_ip_port()
        return sockets.to_host_port(self._sockaddr)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, InetAddress):
            return NotImplemented
        return self._sockaddr == other._sockaddr

    def __hash__(self) -> int:
        return hash(self._sockaddr)

    def __repr__(self) -> str:
        return f"InetAddress({self.to_ip_port()!r})"

    def __str__(self) -> str:
        return self.to_ip_port()