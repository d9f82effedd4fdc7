"""
Concurrency gate — bounds how many browser sessions run at once.

Capacity 1 serialises every crawl system-wide (the original single-mutex
behaviour); capacity N > 1 gives a bounded pool.  The gate must be entered
before a BrowserSession is created and left only after it is closed.

Usage:
    gate = ConcurrencyGate(config["concurrency"])
    with gate.slot():
        ... create session, crawl, close session ...
"""

import logging
import threading
import time
from contextlib import contextmanager

logger = logging.getLogger("mapcrawl")


class ConcurrencyGate:
    """Counting gate over a threading.Condition.

    Waiters are woken in whatever order the Condition picks; no fairness
    beyond that is promised.
    """

    def __init__(self, capacity: int):
        if isinstance(capacity, bool) or not isinstance(capacity, int) or capacity < 1:
            raise ValueError(f"Gate capacity must be int >= 1, got: {capacity!r}")
        self.capacity = capacity
        self._cond = threading.Condition()
        self._active = 0
        self._peak = 0

    @property
    def active(self) -> int:
        """Number of slots currently held."""
        with self._cond:
            return self._active

    @property
    def peak(self) -> int:
        """Highest number of simultaneous holders seen so far."""
        with self._cond:
            return self._peak

    def acquire(self, timeout: float | None = None) -> bool:
        """
        Block until a slot is free, then take it.

        Returns True when a slot was granted, False if *timeout* seconds
        passed first.  timeout=None waits forever.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._active >= self.capacity:
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
            self._active += 1
            self._peak = max(self._peak, self._active)
            logger.debug(f"Gate slot acquired ({self._active}/{self.capacity})")
            return True

    def release(self) -> None:
        """Give a slot back and wake one waiter."""
        with self._cond:
            if self._active <= 0:
                raise RuntimeError("Gate released more times than it was acquired")
            self._active -= 1
            logger.debug(f"Gate slot released ({self._active}/{self.capacity})")
            self._cond.notify()

    @contextmanager
    def slot(self, timeout: float | None = None):
        """Hold one slot for the duration of the block; released on every exit path."""
        if not self.acquire(timeout=timeout):
            raise TimeoutError(f"No gate slot free within {timeout}s")
        try:
            yield self
        finally:
            self.release()

    def __repr__(self):
        return f"ConcurrencyGate({self.active}/{self.capacity})"
