"""Bounded, self-expanding worker pool.

Work is a zero-argument callable executed on the next available worker
thread. The queue has a fixed capacity: `add()` blocks while it is full, and a
full queue is also the signal to grow the pool by a small batch of workers,
up to the limit.

Compared with an unbounded executor this puts a ceiling on how many
conversions exist at once. CPU and memory are shared with whatever else the
user is doing, and slow devices such as memory cards choke under heavy
concurrent I/O. Compared with a fixed set of threads it still scales up when
the queue stays saturated.
"""
from __future__ import annotations

import os
import queue
import threading
from typing import Callable, List, Optional

from loguru import logger

from .errors import Cancelled, PreconditionViolated

Task = Callable[[], None]

# Workers added per expansion, at most.
GROWTH_STEP = 4
DEFAULT_MIN_BUFFER = 100

# How long an idle worker blocks on the queue before re-checking for
# cancellation and drain.
_POLL_INTERVAL = 0.05


def _cpu_count() -> int:
    return os.cpu_count() or 1


class _Generation:
    """Queue and signals shared by the workers started by one init."""

    def __init__(self, buffer: int) -> None:
        self.queue: "queue.Queue[Task]" = queue.Queue(maxsize=buffer)
        self.cancel = threading.Event()
        self.closed = threading.Event()
        self.threads: List[threading.Thread] = []


class WorkPool:
    """Execute callbacks on a bounded number of threads.

    Call `start()` to spawn the initial workers and `add()` to queue work.
    `wait()` drains the queue and then restarts the pool, so more work may be
    added afterwards. `stop()` abandons queued work and halts the pool until
    `start()` is called again.

    `limit` defaults to the CPU count and `buffer` to max(limit, 100).
    `parent` is an optional event; setting it stops workers from picking up
    further tasks, the same as `stop()` does.
    """

    def __init__(
        self,
        parent: Optional[threading.Event] = None,
        limit: int = 0,
        buffer: int = 0,
        *,
        log=None,
        name: str = "export-worker",
    ) -> None:
        if limit < 0 or buffer < 0:
            raise ValueError("limit and buffer must be >= 0")
        if limit == 0:
            limit = _cpu_count()
        if buffer == 0:
            buffer = max(limit, DEFAULT_MIN_BUFFER)
        self._parent = parent
        self._limit = limit
        self._buffer = buffer
        self._size = 0
        self._mutex = threading.Lock()
        self._gen = _Generation(buffer)
        self._log = log or logger
        self._name = name
        self._spawned = 0

    def __repr__(self) -> str:
        return f"<WorkPool size={self._size} limit={self._limit} buffer={self._buffer}>"

    def start(self) -> None:
        """Spawn min(CPU count, limit) workers."""
        with self._mutex:
            self._init()

    def _init(self) -> None:
        # Caller holds self._mutex.
        if self._size > 0:
            raise PreconditionViolated("start called on a running WorkPool")
        self._gen = _Generation(self._buffer)
        for _ in range(min(_cpu_count(), self._limit)):
            self._spawn()
        self._log.debug(f"WorkPool started with {self._size} workers (limit {self._limit}, buffer {self._buffer})")

    def _spawn(self) -> None:
        # Caller holds self._mutex.
        gen = self._gen
        self._spawned += 1
        t = threading.Thread(
            target=self._worker,
            args=(gen,),
            name=f"{self._name}-{self._spawned}",
            daemon=True,
        )
        gen.threads.append(t)
        self._size += 1
        t.start()

    def stop(self) -> None:
        """Halt every worker after its current task and discard queued tasks.

        Blocks until in-flight tasks finish. `start()` must be called before
        anything else can be added.
        """
        # Holding the mutex keeps add() from seeing a pool that is both
        # running and being torn down.
        with self._mutex:
            if self._size == 0:
                raise PreconditionViolated("WorkPool.stop called when already stopped")
            gen = self._gen
            gen.cancel.set()
            for t in gen.threads:
                t.join()
            self._size = 0
            discarded = 0
            while True:
                try:
                    gen.queue.get_nowait()
                except queue.Empty:
                    break
                discarded += 1
            if discarded:
                self._log.debug(f"WorkPool stopped, discarded {discarded} queued tasks")

    def wait(self) -> None:
        """Run every queued task, then restart with a fresh queue and workers.

        Tasks must not be added concurrently with a call to wait().
        """
        with self._mutex:
            gen = self._gen
            gen.closed.set()
            for t in gen.threads:
                t.join()
            self._size = 0
            # Re-initialise without releasing the mutex: a concurrent add()
            # must never observe the size == 0 window between drain and restart.
            self._init()

    def add(self, fn: Task) -> None:
        """Queue fn, growing the pool if the queue is full.

        Blocks while the queue is full. Raises Cancelled if the parent event
        is set while blocked.
        """
        gen = self._expand()
        while True:
            try:
                gen.queue.put(fn, timeout=_POLL_INTERVAL)
                return
            except queue.Full:
                # Nobody will drain the queue once the parent is cancelled.
                if self._parent is not None and self._parent.is_set():
                    raise Cancelled("WorkPool cancelled while adding a task")

    def _expand(self) -> _Generation:
        """Add up to GROWTH_STEP workers if the queue is full and the limit allows."""
        with self._mutex:
            if self._size == 0:
                raise PreconditionViolated("WorkPool is not running")
            gen = self._gen
            if self._size == self._limit:
                return gen
            if self.remaining() > 0:
                return gen
            growth = min(GROWTH_STEP, self._limit - self._size)
            for _ in range(growth):
                self._spawn()
            self._log.debug(f"WorkPool grew by {growth} to {self._size} workers")
            return gen

    def remaining(self) -> int:
        """Approximate number of free queue slots."""
        return self._buffer - self._gen.queue.qsize()

    def percent_full(self) -> float:
        """Queue usage in percent: 6.0 means 6 of 100 slots are taken."""
        return self._gen.queue.qsize() / self._buffer * 100.0

    def size(self) -> int:
        with self._mutex:
            return self._size

    def limit(self) -> int:
        return self._limit

    def _cancelled(self, gen: _Generation) -> bool:
        return gen.cancel.is_set() or (self._parent is not None and self._parent.is_set())

    def _worker(self, gen: _Generation) -> None:
        while True:
            if self._cancelled(gen):
                return
            try:
                fn = gen.queue.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                if gen.closed.is_set():
                    # Drained.
                    return
                continue
            if self._cancelled(gen):
                # Never started; stop() discards the rest of the queue.
                return
            try:
                fn()
            except Exception:
                self._log.opt(exception=True).error("WorkPool task raised")
