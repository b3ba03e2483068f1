"""
Single-flight guard and interval loop for the background jobs.

The router and archiver each run on a fixed interval in their own daemon
thread. A ``CycleGuard`` keeps a job from overlapping itself: a cycle that
finds the guard held waits a bounded time and then skips. A claim held
longer than ``stale_after`` seconds is treated as abandoned (a hung store
call, a wedged thread) and is taken over, so one stuck cycle cannot block
every later one.
"""

import itertools
import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

logger = logging.getLogger(__name__)

STALE_CYCLE_SECONDS = 600  # 10 minutes


class CycleGuard:
    """
    A size-one semaphore with bounded wait and stale-claim takeover.

    Each successful acquire returns a token; ``release`` only clears the
    guard when called with the current token, so a cycle whose claim was
    taken over cannot release its successor's claim.
    """

    def __init__(
        self,
        name: str,
        stale_after: float = STALE_CYCLE_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.stale_after = stale_after
        self._clock = clock
        self._cond = threading.Condition()
        self._tokens = itertools.count(1)
        self._token: Optional[int] = None
        self._claimed_at = 0.0

    @property
    def busy(self) -> bool:
        with self._cond:
            return self._token is not None and not self._is_stale()

    def _is_stale(self) -> bool:
        return self._clock() - self._claimed_at > self.stale_after

    def _claim(self) -> int:
        self._token = next(self._tokens)
        self._claimed_at = self._clock()
        return self._token

    def acquire(self, wait: float = 0.0) -> Optional[int]:
        """
        Claim the guard, waiting up to ``wait`` seconds.

        Returns:
            A token to pass to ``release``, or None if the guard stayed busy.
        """
        deadline = time.monotonic() + wait
        with self._cond:
            while True:
                if self._token is None:
                    return self._claim()
                if self._is_stale():
                    logger.warning(
                        "%s: taking over cycle claimed %.0fs ago",
                        self.name, self._clock() - self._claimed_at,
                    )
                    return self._claim()
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._cond.wait(remaining)

    def release(self, token: int) -> None:
        with self._cond:
            if self._token != token:
                logger.debug("%s: ignoring release of superseded claim %d", self.name, token)
                return
            self._token = None
            self._cond.notify()

    @contextmanager
    def cycle(self, wait: float = 0.0) -> Iterator[bool]:
        """Run a block under the guard; yields False when the guard was busy."""
        token = self.acquire(wait)
        try:
            yield token is not None
        finally:
            if token is not None:
                self.release(token)


class PollingLoop:
    """Calls ``fn`` every ``interval`` seconds in a daemon thread."""

    def __init__(
        self,
        name: str,
        fn: Callable[[], object],
        interval: float,
        *,
        run_immediately: bool = True,
    ):
        self.name = name
        self._fn = fn
        self.interval = interval
        self.run_immediately = run_immediately
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        logger.info("%s started (every %ss)", self.name, self.interval)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("%s stopped", self.name)

    def _run(self) -> None:
        if self.run_immediately:
            self._tick()
        while not self._stop.wait(self.interval):
            self._tick()

    def _tick(self) -> None:
        try:
            self._fn()
        except Exception as e:
            logger.error("%s cycle failed: %s", self.name, e, exc_info=True)
