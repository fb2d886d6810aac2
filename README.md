# tcpreactor

A small reactor-style TCP networking library. Each `EventLoop` runs in one
thread. It waits on non-blocking sockets with `poll(2)` and passes readiness
events to `Channel` callbacks. Built on the loop are a timer queue, a
growable byte `Buffer`, a listening `Acceptor`, a retrying `Connector`, and
the higher-level `TcpServer`, `TcpClient` and `TcpConnection` classes.

The library uses only the standard library. It needs `select.poll`, so it
runs on POSIX systems and not on Windows.

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Modules

- `tcpreactor.buffer`: `Buffer`, a byte buffer with cheap prepend space.
  It has `append`, `prepend`, `peek`, the `retrieve*` family, `find_crlf` and
  `find_eol` (both return offsets into the readable content or `None`),
  `shrink`, and `read_fd`, which reads straight from a descriptor.
- `tcpreactor.sockets`: thin socket helpers and the `Socket` wrapper, which
  owns a socket object and closes it (it also works as a context manager).
  The helpers include `create_nonblocking_or_die`, `accept`,
  `get_socket_error`, `is_self_connect`, `to_ip_port`, `from_host_port` and
  the `host_to_network*` / `network_to_host*` byte-order conversions.
- `tcpreactor.inet_address`: `InetAddress`, an immutable IPv4/IPv6
  endpoint. `InetAddress(port)` is the IPv4 wildcard address and
  `InetAddress(port, "1.2.3.4")` is a specific host.
  `InetAddress.from_sockaddr` wraps a socket-module address tuple.
- `tcpreactor.channel`: `Channel` and the `Event` flags it watches.
- `tcpreactor.timer`: `Timer`, `TimerId` and `TimerQueue`.
- `tcpreactor.poller`: `Poller`, the `poll(2)` multiplexer behind the loop.
- `tcpreactor.event_loop`: `EventLoop`, `current_loop()` and
  `NotInLoopThreadError`.
- `tcpreactor.event_loop_thread`: `EventLoopThread` and
  `EventLoopThreadPool`, which run loops in worker threads.
- `tcpreactor.acceptor` accepts connections and `tcpreactor.connector`
  initiates them.
- `tcpreactor.tcp_connection`, `tcpreactor.tcp_server` and
  `tcpreactor.tcp_client` form the connection-level API.

## Event loops

Only one `EventLoop` may exist per thread. A second one in the same thread
raises `RuntimeError`. Calling a loop-thread-only method from another
thread raises `NotInLoopThreadError`. Any thread can hand work to a loop
with `run_in_loop` or `queue_in_loop`, and the loop wakes up and runs that
work in its own thread. When a loop is no longer needed, call `close()` or
use the loop as a context manager.

## Timers

```python
from tcpreactor.event_loop import EventLoop

loop = EventLoop()
count = 0

def tick():
    global count
    count += 1
    if count == 5:
        loop.quit()

loop.run_every(1.0, tick)
loop.run_after(0.5, lambda: print("half a second in"))
loop.loop()
loop.close()
```

`run_at` (seconds since the epoch), `run_after` and `run_every` each return a
`TimerId`. Pass it to `loop.cancel()` to cancel the timer. A repeating timer
may cancel itself from inside its own callback.

## An echo server

```python
from tcpreactor.event_loop import EventLoop
from tcpreactor.inet_address import InetAddress
from tcpreactor.tcp_server import TcpServer

def on_connection(conn):
    state = "up" if conn.connected() else "down"
    print(f"connection {conn.name} is {state}")

def on_message(conn, buf, receive_time):
    conn.send(buf.retrieve_all_as_bytes())

loop = EventLoop()
server = TcpServer(loop, InetAddress(9981), "echo", False)
server.connection_callback = on_connection
server.message_callback = on_message
server.set_thread_num(4)
server.start()
loop.loop()
```

By default (`set_thread_num(0)`) all I/O happens in the accepting loop.
With N threads, new connections go out in round-robin order to the loops
of an `EventLoopThreadPool`. Connection names have the form
`<server name>-<ip:port>#<n>`. `server.close()` destroys the live
connections, stops listening and stops the worker threads.

`TcpConnection.send` takes bytes-like data, a `str` (sent as UTF-8) or a
`Buffer`, which it drains. Data the socket cannot take at once goes into
the output buffer and is written when the socket becomes writable.
`write_complete_callback` runs when the output buffer has drained.
`set_high_water_mark_callback(callback, size)` reports output that crosses
`size` bytes, and the default mark is 64 MiB. `shutdown()` closes the
writing half once the pending output has been sent.

## A client

```python
from tcpreactor.event_loop import EventLoop
from tcpreactor.inet_address import InetAddress
from tcpreactor.tcp_client import TcpClient

loop = EventLoop()
client = TcpClient(loop, InetAddress(9981, "127.0.0.1"))
client.connection_callback = lambda conn: conn.connected() and conn.send(b"Hello")
client.message_callback = lambda conn, buf, t: print(buf.retrieve_all_as_bytes())
client.enable_retry()
client.connect()
loop.loop()
```

The underlying `Connector` retries a refused or failed attempt. The first
retry comes after 500 ms, and the delay doubles after each attempt up to
30 seconds. With retry enabled, the client reconnects at once if a
connection closes while the client still wants to be connected.

## What the package does not do

It is a library only. It has no command-line program and no ready-made
server to run. Every server or client is code you write with the classes
above.