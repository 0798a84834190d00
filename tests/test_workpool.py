import threading
import time

import pytest
from loguru import logger

import audiotree.workpool as workpool
from audiotree.errors import Cancelled, PreconditionViolated
from audiotree.workpool import WorkPool


@pytest.fixture(autouse=True)
def quiet_logger():
    logger.remove()
    yield
    logger.remove()


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


def test_basic_attributes():
    pool = WorkPool(None, 1024, 10)
    assert pool.limit() == 1024
    assert pool.remaining() == 10
    assert pool.percent_full() == pytest.approx(0.0)
    assert pool.size() == 0


def test_defaults(monkeypatch):
    monkeypatch.setattr(workpool, "_cpu_count", lambda: 6)
    pool = WorkPool()
    assert pool.limit() == 6
    assert pool.remaining() == 100

    big = WorkPool(None, 250, 0)
    assert big.remaining() == 250


def test_start_spawns_min_of_cpu_and_limit(monkeypatch):
    monkeypatch.setattr(workpool, "_cpu_count", lambda: 4)
    for limit, expected in ((2, 2), (4, 4), (16, 4)):
        pool = WorkPool(None, limit, 0)
        pool.start()
        try:
            assert 0 < pool.size() == expected
            assert pool.size() <= pool.limit() == limit
        finally:
            pool.stop()


def test_misuse_raises():
    pool = WorkPool(None, 2, 2)
    with pytest.raises(PreconditionViolated):
        pool.add(lambda: None)
    with pytest.raises(PreconditionViolated):
        pool.stop()
    pool.start()
    with pytest.raises(PreconditionViolated):
        pool.start()
    pool.stop()
    with pytest.raises(PreconditionViolated):
        pool.stop()


def test_wait_runs_every_task_once_and_pool_stays_usable():
    pool = WorkPool(None, 4, 0)
    pool.start()
    counts = [0] * 50
    lock = threading.Lock()

    def make(i):
        def task():
            with lock:
                counts[i] += 1
        return task

    for i in range(50):
        pool.add(make(i))
    pool.wait()
    assert counts == [1] * 50

    # Wait restarts the pool; no start() needed.
    assert pool.size() > 0
    ran = threading.Event()
    pool.add(ran.set)
    assert ran.wait(5)
    pool.wait()
    pool.stop()
    assert pool.size() == 0


def test_stop_discards_queued_and_finishes_in_flight(monkeypatch):
    monkeypatch.setattr(workpool, "_cpu_count", lambda: 2)
    pool = WorkPool(None, 2, 10)
    pool.start()
    release = threading.Event()
    started = []
    finished = []
    queued_ran = []
    lock = threading.Lock()

    def blocker(i):
        def task():
            with lock:
                started.append(i)
            release.wait(5)
            with lock:
                finished.append(i)
        return task

    pool.add(blocker(0))
    pool.add(blocker(1))
    assert wait_until(lambda: len(started) == 2)
    for i in range(5):
        pool.add(lambda i=i: queued_ran.append(i))

    stopper = threading.Thread(target=pool.stop)
    stopper.start()
    time.sleep(0.1)
    release.set()
    stopper.join(5)

    assert not stopper.is_alive()
    assert sorted(finished) == [0, 1]
    assert queued_ran == []
    assert pool.size() == 0
    assert pool.remaining() == 10
    with pytest.raises(PreconditionViolated):
        pool.add(lambda: None)

    # Restarting works.
    pool.start()
    ran = threading.Event()
    pool.add(ran.set)
    assert ran.wait(5)
    pool.stop()


def test_add_blocks_when_queue_full(monkeypatch):
    monkeypatch.setattr(workpool, "_cpu_count", lambda: 2)
    pool = WorkPool(None, 2, 2)
    pool.start()
    release = threading.Event()
    started = []
    lock = threading.Lock()

    def task(i):
        def run():
            with lock:
                started.append(i)
            release.wait(10)
        return run

    # Two run immediately, two fill the queue.
    for i in range(2):
        pool.add(task(i))
    assert wait_until(lambda: len(started) == 2)
    for i in range(2, 4):
        pool.add(task(i))
    assert pool.remaining() == 0
    assert pool.percent_full() == pytest.approx(100.0)

    fifth_added = threading.Event()

    def add_fifth():
        pool.add(task(4))
        fifth_added.set()

    adder = threading.Thread(target=add_fifth)
    adder.start()
    assert not fifth_added.wait(0.3)

    release.set()
    assert fifth_added.wait(5)
    adder.join(5)
    pool.wait()
    assert sorted(started) == [0, 1, 2, 3, 4]
    pool.stop()


def test_grows_when_queue_full(monkeypatch):
    monkeypatch.setattr(workpool, "_cpu_count", lambda: 1)
    pool = WorkPool(None, 8, 1)
    pool.start()
    assert pool.size() == 1
    release = threading.Event()
    started = []

    def task():
        started.append(1)
        release.wait(10)

    pool.add(task)
    assert wait_until(lambda: len(started) == 1)
    pool.add(task)  # fills the single slot
    assert pool.remaining() == 0

    adder = threading.Thread(target=pool.add, args=(task,))
    adder.start()
    # The full queue triggers a batch of at most four new workers.
    assert wait_until(lambda: pool.size() == 5)
    assert pool.size() <= pool.limit()
    release.set()
    adder.join(5)
    pool.wait()
    assert len(started) == 3
    pool.stop()


def test_growth_never_exceeds_limit(monkeypatch):
    monkeypatch.setattr(workpool, "_cpu_count", lambda: 1)
    pool = WorkPool(None, 3, 1)
    pool.start()
    release = threading.Event()
    started = []

    def task():
        started.append(1)
        release.wait(10)

    adders = []
    for _ in range(6):
        t = threading.Thread(target=pool.add, args=(task,))
        t.start()
        adders.append(t)
        time.sleep(0.05)
    assert wait_until(lambda: len(started) == 3)
    assert pool.size() == 3
    release.set()
    for t in adders:
        t.join(5)
    pool.wait()
    assert len(started) == 6
    pool.stop()


def test_parent_cancel_stops_picking_up_tasks(monkeypatch):
    monkeypatch.setattr(workpool, "_cpu_count", lambda: 1)
    parent = threading.Event()
    pool = WorkPool(parent, 1, 1)
    pool.start()
    release = threading.Event()
    started = threading.Event()
    later = []

    def blocker():
        started.set()
        release.wait(5)

    pool.add(blocker)
    assert started.wait(5)
    pool.add(lambda: later.append(1))
    parent.set()
    release.set()

    # Queue is full and nobody will drain it.
    with pytest.raises(Cancelled):
        pool.add(lambda: later.append(2))
    pool.stop()
    assert later == []


def test_task_exception_does_not_kill_worker(monkeypatch):
    monkeypatch.setattr(workpool, "_cpu_count", lambda: 1)
    messages = []
    logger.add(lambda m: messages.append(m), level="ERROR")
    pool = WorkPool(None, 1, 0)
    pool.start()

    def boom():
        raise RuntimeError("boom")

    ran = threading.Event()
    pool.add(boom)
    pool.add(ran.set)
    assert ran.wait(5)
    pool.stop()
    assert any("task raised" in str(m) for m in messages)
