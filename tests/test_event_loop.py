import socket
import threading
import time

import pytest

from tcpreactor.channel import Channel
from tcpreactor.event_loop import EventLoop, NotInLoopThreadError, current_loop


@pytest.fixture
def loop():
    event_loop = EventLoop()
    yield event_loop
    event_loop.close()


def test_current_loop_is_the_created_loop(loop):
    assert current_loop() is loop
    assert loop.is_in_loop_thread()


def test_close_clears_current_loop():
    event_loop = EventLoop()
    event_loop.close()
    assert current_loop() is None


def test_second_loop_in_same_thread_raises(loop):
    with pytest.raises(RuntimeError):
        EventLoop()


def test_loop_from_other_thread_raises(loop):
    errors = []
    in_loop = []

    def thread_func():
        in_loop.append(loop.is_in_loop_thread())
        try:
            loop.loop()
        except NotInLoopThreadError as exc:
            errors.append(exc)

    thread = threading.Thread(target=thread_func)
    thread.start()
    thread.join()
    assert len(errors) == 1
    assert in_loop == [False]
    assert loop.is_in_loop_thread() is True
    assert current_loop() is loop


def test_run_in_loop_queue_in_loop_ordering(loop):
    flag = [0]
    seen = []

    def run4():
        seen.append(("run4", flag[0]))
        loop.quit()

    def run3():
        seen.append(("run3", flag[0]))
        loop.run_after(0.03, run4)
        flag[0] = 3

    def run2():
        seen.append(("run2", flag[0]))
        loop.queue_in_loop(run3)

    def run1():
        flag[0] = 1
        seen.append(("run1", flag[0]))
        loop.run_in_loop(run2)
        flag[0] = 2

    loop.run_after(0.02, run1)
    loop.loop()
    assert seen == [("run1", 1), ("run2", 1), ("run3", 2), ("run4", 3)]
    assert flag[0] == 3
    assert current_loop() is loop


def test_chained_run_after_counts_to_five(loop):
    count = [0]
    printed = []

    def tick():
        if count[0] < 5:
            printed.append(count[0])
            count[0] += 1
            loop.run_after(0.01, tick)
        else:
            loop.quit()

    loop.run_after(0.01, tick)
    loop.loop()
    assert printed == [0, 1, 2, 3, 4]
    assert count[0] == 5
    assert loop.is_in_loop_thread() is True


def test_cancel_repeating_timer(loop):
    runs = []
    holder = {}

    def every():
        runs.append(time.time())
        if len(runs) == 3:
            loop.cancel(holder["id"])

    holder["id"] = loop.run_every(0.01, every)
    loop.run_after(0.2, loop.quit)
    loop.loop()
    assert len(runs) == 3
    assert current_loop() is loop


def test_run_in_loop_from_other_thread_runs_in_loop_thread(loop):
    idents = []
    main_ident = threading.get_ident()

    def task():
        idents.append(threading.get_ident())
        loop.quit()

    thread = threading.Thread(target=lambda: loop.run_in_loop(task))
    thread.start()
    loop.run_after(5, loop.quit)
    loop.loop()
    thread.join()
    assert idents == [main_ident]
    assert loop.is_in_loop_thread() is True


def test_quit_from_other_thread(loop):
    def stopper():
        time.sleep(0.05)
        loop.quit()

    thread = threading.Thread(target=stopper)
    start = time.monotonic()
    thread.start()
    loop.loop()
    thread.join()
    assert time.monotonic() - start < 5
    assert loop.is_in_loop_thread() is True


def test_channel_read_callback(loop):
    left, right = socket.socketpair()
    try:
        received = []
        channel = Channel(loop, left)

        def on_read(receive_time):
            received.append(left.recv(100))
            loop.quit()

        channel.read_callback = on_read
        channel.enable_reading()
        assert channel.is_none_event() is False
        assert channel.is_writing() is False
        right.send(b"hello")
        loop.loop()
        assert received == [b"hello"]
        channel.disable_all()
        assert channel.is_none_event() is True
        loop.remove_channel(channel)
    finally:
        left.close()
        right.close()


def test_update_channel_of_other_loop_raises(loop):
    class _Other:
        pass

    left, right = socket.socketpair()
    try:
        channel = Channel(_Other(), left)
        with pytest.raises(ValueError):
            loop.update_channel(channel)
    finally:
        left.close()
        right.close()


def test_close_while_looping_raises(loop):
    errors = []

    def try_close():
        try:
            loop.close()
        except RuntimeError as exc:
            errors.append(exc)
        loop.quit()

    loop.run_after(0.01, try_close)
    loop.loop()
    assert len(errors) == 1
    assert current_loop() is loop