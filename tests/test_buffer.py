import os

import pytest

from tcpreactor.buffer import Buffer

CHEAP_PREPEND = 8
INITIAL_SIZE = 1024


def test_buffer_append_retrieve():
    buf = Buffer()
    assert buf.readable_bytes() == 0
    assert buf.writable_bytes() == INITIAL_SIZE
    assert buf.prependable_bytes() == CHEAP_PREPEND

    data = b"x" * 200
    buf.append(data)
    assert buf.readable_bytes() == len(data)
    assert buf.writable_bytes() == INITIAL_SIZE - len(data)
    assert buf.prependable_bytes() == CHEAP_PREPEND


def test_retrieve_advances_reader():
    buf = Buffer()
    buf.append(b"x" * 200)
    buf.retrieve(50)
    assert buf.readable_bytes() == 150
    assert buf.writable_bytes() == INITIAL_SIZE - 200
    assert buf.prependable_bytes() == CHEAP_PREPEND + 50
    assert len(buf) == 150


def test_retrieve_as_bytes():
    buf = Buffer()
    buf.append(b"hello world")
    assert buf.retrieve_as_bytes(5) == b"hello"
    assert buf.readable_bytes() == 6
    assert buf.retrieve_all_as_bytes() == b" world"
    assert buf.readable_bytes() == 0


def test_grow():
    buf = Buffer()
    buf.append(b"y" * 400)
    assert buf.readable_bytes() == 400
    assert buf.writable_bytes() == INITIAL_SIZE - 400

    buf.retrieve(50)
    assert buf.readable_bytes() == 350
    assert buf.prependable_bytes() == CHEAP_PREPEND + 50

    buf.append(b"z" * 1000)
    assert buf.readable_bytes() == 1350
    assert buf.writable_bytes() == 0
    assert buf.prependable_bytes() == CHEAP_PREPEND + 50

    buf.retrieve_all()
    assert buf.readable_bytes() == 0
    assert buf.writable_bytes() == 1400
    assert buf.prependable_bytes() == CHEAP_PREPEND


def test_inside_grow_moves_data_to_front():
    buf = Buffer()
    buf.append(b"y" * 800)
    buf.retrieve(500)
    assert buf.readable_bytes() == 300
    assert buf.writable_bytes() == INITIAL_SIZE - 800
    assert buf.prependable_bytes() == CHEAP_PREPEND + 500

    buf.append(b"z" * 300)
    assert buf.readable_bytes() == 600
    assert buf.writable_bytes() == INITIAL_SIZE - 600
    assert buf.prependable_bytes() == CHEAP_PREPEND
    assert buf.peek() == b"y" * 300 + b"z" * 300


def test_shrink():
    buf = Buffer()
    buf.append(b"y" * 2000)
    assert buf.readable_bytes() == 2000
    assert buf.writable_bytes() == 0

    buf.retrieve(1500)
    assert buf.readable_bytes() == 500
    assert buf.prependable_bytes() == CHEAP_PREPEND + 1500

    buf.shrink(0)
    assert buf.readable_bytes() == 500
    assert buf.writable_bytes() == 0
    assert buf.prependable_bytes() == CHEAP_PREPEND
    assert buf.retrieve_all_as_bytes() == b"y" * 500


def test_prepend():
    buf = Buffer()
    buf.append(b"y" * 200)
    buf.prepend((200).to_bytes(4, "big"))
    assert buf.readable_bytes() == 204
    assert buf.writable_bytes() == INITIAL_SIZE - 200
    assert buf.prependable_bytes() == CHEAP_PREPEND - 4
    assert buf.retrieve_as_bytes(4) == (200).to_bytes(4, "big")


def test_prepend_too_much_raises():
    buf = Buffer()
    with pytest.raises(ValueError):
        buf.prepend(b"z" * (CHEAP_PREPEND + 1))


def test_retrieve_too_much_raises():
    buf = Buffer()
    buf.append(b"abc")
    with pytest.raises(ValueError):
        buf.retrieve(4)
    with pytest.raises(ValueError):
        buf.retrieve_as_bytes(4)


def test_append_rejects_text():
    buf = Buffer()
    with pytest.raises(TypeError):
        buf.append("text")


def test_ensure_writable_bytes():
    buf = Buffer()
    buf.ensure_writable_bytes(5000)
    assert buf.writable_bytes() >= 5000
    assert buf.readable_bytes() == 0


def test_find_crlf_and_retrieve_until():
    buf = Buffer()
    buf.append(b"GET / HTTP/1.0\r\nHost: x\r\n\r\n")
    first = buf.find_crlf()
    assert first == 14
    assert buf.find_crlf(first + 2) == 23
    buf.retrieve_until(first + 2)
    assert buf.peek().startswith(b"Host")


def test_find_crlf_absent():
    buf = Buffer()
    buf.append(b"no line end here")
    assert buf.find_crlf() is None
    assert buf.find_eol() is None


def test_find_eol():
    buf = Buffer()
    buf.append(b"a\nb\n")
    assert buf.find_eol() == 1
    assert buf.find_eol(2) == 3


def test_find_with_bad_start_raises():
    buf = Buffer()
    buf.append(b"abc")
    with pytest.raises(ValueError):
        buf.find_eol(4)
    with pytest.raises(ValueError):
        buf.retrieve_until(10)


def test_swap():
    first = Buffer()
    second = Buffer()
    first.append(b"first")
    second.append(b"second!")
    first.swap(second)
    assert first.peek() == b"second!"
    assert second.peek() == b"first"


def test_read_fd_small():
    read_end, write_end = os.pipe()
    try:
        os.write(write_end, b"hello")
        buf = Buffer()
        assert buf.read_fd(read_end) == 5
        assert buf.peek() == b"hello"
    finally:
        os.close(read_end)
        os.close(write_end)


def test_read_fd_uses_extra_space():
    read_end, write_end = os.pipe()
    payload = bytes(range(256)) * 8
    try:
        os.write(write_end, payload)
        buf = Buffer()
        assert buf.read_fd(read_end) == len(payload)
        assert buf.readable_bytes() == len(payload)
        assert buf.retrieve_all_as_bytes() == payload
    finally:
        os.close(read_end)
        os.close(write_end)


def test_read_fd_end_of_file():
    read_end, write_end = os.pipe()
    os.close(write_end)
    try:
        buf = Buffer()
        assert buf.read_fd(read_end) == 0
        assert buf.readable_bytes() == 0
    finally:
        os.close(read_end)


def test_read_fd_bad_descriptor_raises():
    read_end, write_end = os.pipe()
    os.close(read_end)
    os.close(write_end)
    buf = Buffer()
    with pytest.raises(OSError):
        buf.read_fd(read_end)