"""A growable byte buffer with cheap prepend space, used for socket I/O."""

from __future__ import annotations

import os
from typing import Optional


class Buffer:
    """Byte buffer split into prependable, readable and writable regions.

    The layout is::

        | prependable | readable (content) | writable |
        0        reader index         writer index   size
    """

    CHEAP_PREPEND = 8
    INITIAL_SIZE = 1024
    CRLF = b"\r\n"
    _EXTRA_SIZE = 65536

    def __init__(self) -> None:
        self._buf = bytearray(self.CHEAP_PREPEND + self.INITIAL_SIZE)
        self._reader = self.CHEAP_PREPEND
        self._writer = self.CHEAP_PREPEND

    def __len__(self) -> int:
        return self.readable_bytes()

    def swap(self, other: "Buffer") -> None:
        """Exchange contents with another buffer."""
        self._buf, other._buf = other._buf, self._buf
        self._reader, other._reader = other._reader, self._reader
        self._writer, other._writer = other._writer, self._writer

    def readable_bytes(self) -> int:
        return self._writer - self._reader

    def writable_bytes(self) -> int:
        return len(self._buf) - self._writer

    def prependable_bytes(self) -> int:
        return self._reader

    def peek(self) -> bytes:
        """Return the readable content without consuming it."""
        return bytes(self._buf[self._reader:self._writer])

    def retrieve(self, length: int) -> None:
        """Consume ``length`` readable bytes."""
        if not 0 <= length <= self.readable_bytes():
            raise ValueError(
                f"cannot retrieve {length} bytes, {self.readable_bytes()} readable"
            )
        self._reader += length

    def retrieve_all(self) -> None:
        self._reader = self.CHEAP_PREPEND
        self._writer = self.CHEAP_PREPEND

    def retrieve_as_bytes(self, length: int) -> bytes:
        """Consume and return ``length`` readable bytes."""
        if not 0 <= length <= self.readable_bytes():
            raise ValueError(
                f"cannot retrieve {length} bytes, {self.readable_bytes()} readable"
            )
        result = bytes(self._buf[self._reader:self._reader + length])
        self.retrieve(length)
        return result

    def retrieve_all_as_bytes(self) -> bytes:
        return self.retrieve_as_bytes(self.readable_bytes())

    def retrieve_until(self, end: int) -> None:
        """Consume everything before offset ``end`` of the readable content."""
        self._absolute(end)
        self.retrieve(end)

    def append(self, data) -> None:
        """Append a bytes-like object."""
        chunk = bytes(memoryview(data))
        length = len(chunk)
        self.ensure_writable_bytes(length)
        self._buf[self._writer:self._writer + length] = chunk
        self._writer += length

    def ensure_writable_bytes(self, length: int) -> None:
        if self.writable_bytes() < length:
            self._make_space(length)

    def prepend(self, data) -> None:
        """Put bytes in front of the readable content."""
        chunk = bytes(memoryview(data))
        length = len(chunk)
        if length > self.prependable_bytes():
            raise ValueError(
                f"cannot prepend {length} bytes, {self.prependable_bytes()} prependable"
            )
        self._reader -= length
        self._buf[self._reader:self._reader + length] = chunk

    def shrink(self, reserve: int) -> None:
        """Release unused space, keeping ``reserve`` writable bytes."""
        content = self._buf[self._reader:self._writer]
        readable = len(content)
        fresh = bytearray(self.CHEAP_PREPEND + readable + reserve)
        fresh[self.CHEAP_PREPEND:self.CHEAP_PREPEND + readable] = content
        self._buf = fresh
        self._reader = self.CHEAP_PREPEND
        self._writer = self.CHEAP_PREPEND + readable

    def read_fd(self, fd: int) -> int:
        """Read from ``fd`` straight into the buffer and return the byte count.

        Raises ``OSError`` when the read fails.
        """
        extra = bytearray(self._EXTRA_SIZE)
        writable = self.writable_bytes()
        with memoryview(self._buf) as view, view[self._writer:] as target:
            buffers = [target, extra] if writable < len(extra) else [target]
            count = os.readv(fd, buffers)
        if count < writable:
            self._writer += count
        else:
            self._writer = len(self._buf)
            self.append(extra[:count - writable])
        return count

    def find_crlf(self, start: Optional[int] = None) -> Optional[int]:
        """Offset of the first CRLF in the readable content, or None."""
        return self._find(self.CRLF, start)

    def find_eol(self, start: Optional[int] = None) -> Optional[int]:
        """Offset of the first newline in the readable content, or None."""
        return self._find(b"\n", start)

    def _find(self, needle: bytes, start: Optional[int]) -> Optional[int]:
        begin = self._reader if start is None else self._absolute(start)
        index = self._buf.find(needle, begin, self._writer)
        return None if index < 0 else index - self._reader

    def _absolute(self, offset: int) -> int:
        if not 0 <= offset <= self.readable_bytes():
            raise ValueError(
                f"offset {offset} outside readable range 0..{self.readable_bytes()}"
            )
        return self._reader + offset

    def _make_space(self, length: int) -> None:
        if self.writable_bytes() + self.prependable_bytes() < length + self.CHEAP_PREPEND:
            self._buf.extend(bytes(self._writer + length - len(self._buf)))
        else:
            readable = self.readable_bytes()
            start = self.CHEAP_PREPEND
            self._buf[start:start + readable] = self._buf[self._reader:self._writer]
            self._reader = start
            self._writer = start + readable