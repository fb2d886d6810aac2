import socket
import threading
import time

import pytest

from tcpreactor.buffer import Buffer
from tcpreactor.event_loop import EventLoop
from tcpreactor.inet_address import InetAddress
from tcpreactor.tcp_connection import (
    DEFAULT_HIGH_WATER_MARK,
    ConnectionState,
    TcpConnection,
)


@pytest.fixture
def loop():
    lp = EventLoop()
    yield lp
    lp.close()


@pytest.fixture
def pair():
    listener = socket.create_server(("127.0.0.1", 0))
    client = socket.create_connection(listener.getsockname())
    server, _ = listener.accept()
    server.setblocking(False)
    client.settimeout(5.0)
    listener.close()
    yield server, client
    server.close()
    client.close()


def make_conn(loop, server):
    return TcpConnection(
        loop,
        "conn#1",
        server,
        InetAddress.from_sockaddr(server.getsockname()),
        InetAddress.from_sockaddr(server.getpeername()),
    )


def run_until(loop, predicate, timeout=5.0):
    deadline = time.monotonic() + timeout

    def check():
        if predicate() or time.monotonic() > deadline:
            loop.quit()

    timer_id = loop.run_every(0.01, check)
    loop.loop()
    loop.cancel(timer_id)
    return predicate()


def recv_exactly(sock, size):
    chunks = []
    got = 0
    while got < size:
        chunk = sock.recv(size - got)
        if not chunk:
            break
        chunks.append(chunk)
        got += len(chunk)
    return b"".join(chunks)


def test_connect_established_reports_up(loop, pair):
    server, _ = pair
    conn = make_conn(loop, server)
    seen = []
    conn.connection_callback = lambda c: seen.append((c, c.connected()))
    assert conn.state is ConnectionState.CONNECTING
    conn.connect_established()
    assert seen == [(conn, True)]
    assert conn.state is ConnectionState.CONNECTED


def test_addresses_match_socket(loop, pair):
    server, client = pair
    conn = make_conn(loop, server)
    assert conn.peer_address.port == client.getsockname()[1]
    assert conn.local_address.port == client.getpeername()[1]
    assert conn.name == "conn#1"


def test_default_high_water_mark(loop, pair):
    server, _ = pair
    conn = make_conn(loop, server)
    assert conn.high_water_mark == DEFAULT_HIGH_WATER_MARK == 64 * 1024 * 1024


def test_message_callback_receives_data(loop, pair):
    server, client = pair
    conn = make_conn(loop, server)
    received = []

    def on_message(c, buf, receive_time):
        received.append((c, buf.retrieve_all_as_bytes(), receive_time))

    conn.message_callback = on_message
    conn.connect_established()
    client.sendall(b"hello")
    assert run_until(loop, lambda: received)
    c, data, receive_time = received[0]
    assert c is conn
    assert data == b"hello"
    assert isinstance(receive_time, float)


def test_send_bytes_in_loop_thread(loop, pair):
    server, client = pair
    conn = make_conn(loop, server)
    conn.connect_established()
    conn.send(b"abc")
    assert conn.connected() is True
    assert conn.output_buffer.readable_bytes() == 0
    assert recv_exactly(client, 3) == b"abc"


def test_send_str_is_utf8(loop, pair):
    server, client = pair
    conn = make_conn(loop, server)
    conn.connect_established()
    conn.send("héllo")
    expected = "héllo".encode("utf-8")
    assert conn.output_buffer.readable_bytes() == 0
    assert recv_exactly(client, len(expected)) == expected


def test_send_buffer_drains_it(loop, pair):
    server, client = pair
    conn = make_conn(loop, server)
    conn.connect_established()
    buf = Buffer()
    buf.append(b"payload")
    conn.send(buf)
    assert buf.readable_bytes() == 0
    assert recv_exactly(client, 7) == b"payload"


def test_send_before_established_is_dropped(loop, pair):
    server, client = pair
    conn = make_conn(loop, server)
    conn.send(b"ignored")
    assert conn.connected() is False
    assert conn.state is ConnectionState.CONNECTING
    assert conn.output_buffer.readable_bytes() == 0
    client.setblocking(False)
    with pytest.raises(BlockingIOError):
        client.recv(16)


def test_write_complete_callback(loop, pair):
    server, client = pair
    conn = make_conn(loop, server)
    done = []
    conn.write_complete_callback = lambda c: done.append(c)
    conn.connect_established()
    conn.send(b"data")
    assert run_until(loop, lambda: done)
    assert done == [conn]
    assert recv_exactly(client, 4) == b"data"


def test_send_from_other_thread(loop, pair):
    server, client = pair
    conn = make_conn(loop, server)
    conn.connect_established()
    worker = threading.Thread(target=conn.send, args=(b"xyz",))
    worker.start()
    worker.join()
    run_until(loop, lambda: conn.output_buffer.readable_bytes() == 0, timeout=0.3)
    assert conn.output_buffer.readable_bytes() == 0
    assert conn.connected() is True
    assert recv_exactly(client, 3) == b"xyz"


def test_shutdown_sends_pending_then_eof(loop, pair):
    server, client = pair
    conn = make_conn(loop, server)
    conn.connect_established()
    conn.send(b"bye")
    conn.shutdown()
    assert conn.state is ConnectionState.DISCONNECTING
    assert not conn.connected()
    assert recv_exactly(client, 3) == b"bye"
    assert client.recv(16) == b""


def test_peer_close_then_destroy(loop, pair):
    server, client = pair
    conn = make_conn(loop, server)
    closed = []
    states = []
    conn.close_callback = lambda c: closed.append(c)
    conn.connection_callback = lambda c: states.append(c.connected())
    conn.connect_established()
    client.close()
    assert run_until(loop, lambda: closed)
    assert closed == [conn]
    conn.connect_destroyed()
    assert conn.state is ConnectionState.DISCONNECTED
    assert states == [True, False]


def test_high_water_mark_callback(loop, pair):
    server, _ = pair
    conn = make_conn(loop, server)
    reports = []
    conn.set_high_water_mark_callback(lambda c, size: reports.append((c, size)), 1)
    conn.connect_established()
    data = b"x" * (32 * 1024 * 1024)
    conn.send(data)
    pending = conn.output_buffer.readable_bytes()
    assert 0 < pending <= len(data)
    assert conn.is_writing() if hasattr(conn, "is_writing") else True
    run_until(loop, lambda: reports, timeout=2.0)
    assert reports == [(conn, pending)]


def test_destroy_before_established_raises(loop, pair):
    server, _ = pair
    conn = make_conn(loop, server)
    with pytest.raises(RuntimeError):
        conn.connect_destroyed()


def test_establish_twice_raises(loop, pair):
    server, _ = pair
    conn = make_conn(loop, server)
    conn.connect_established()
    with pytest.raises(RuntimeError):
        conn.connect_established()


def test_set_tcp_no_delay(loop, pair):
    server, _ = pair
    conn = make_conn(loop, server)
    conn.set_tcp_no_delay(True)
    assert server.getsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY) != 0
    conn.set_tcp_no_delay(False)
    assert server.getsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY) == 0