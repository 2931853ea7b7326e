"""De-duplicating, rate limited work queue for reconciliation keys.

Every key moves through a small state machine::

    idle -> queued -> in-flight -> idle
                          |
                          +-> queued   (re-added while in flight)

Keys re-added while queued coalesce into the pending entry, and keys re-added
while in flight are delivered exactly once more after :meth:`done`. Delayed
re-adds (retries) sit in a min-heap ordered by the time they become eligible
and are promoted into the queue lazily by :meth:`RateLimitingQueue.get`.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import time
from collections import deque
from threading import Condition, Lock
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple

from .events import Key

LOG = logging.getLogger(__name__)

# Above this exponent the delay is past any sane cap; avoids float overflow.
_MAX_EXPONENT = 62


class ExponentialBackoff:
    """Per-key exponential backoff.

    Parameters
    ----------
    base_delay:
        Delay in seconds returned for the first failure of a key.
    max_delay:
        Upper bound for any returned delay.
    """

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0) -> None:
        if base_delay <= 0:
            raise ValueError("base_delay must be positive")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._failures: Dict[Key, int] = {}
        self._lock = Lock()

    def when(self, key: Key) -> float:
        """Record a failure for ``key`` and return how long to wait."""

        with self._lock:
            exponent = self._failures.get(key, 0)
            self._failures[key] = exponent + 1

        if exponent > _MAX_EXPONENT:
            return self._max_delay
        return min(self._base_delay * (2 ** exponent), self._max_delay)

    def num_requeues(self, key: Key) -> int:
        with self._lock:
            return self._failures.get(key, 0)

    def forget(self, key: Key) -> None:
        with self._lock:
            self._failures.pop(key, None)


class RateLimitingQueue:
    """Work queue guaranteeing at most one in-flight entry per key."""

    def __init__(
        self,
        rate_limiter: Optional[ExponentialBackoff] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._rate_limiter = rate_limiter or ExponentialBackoff()
        self._clock = clock
        self._cond = Condition()
        self._queue: Deque[Key] = deque()
        self._dirty: Set[Key] = set()
        self._processing: Set[Key] = set()
        self._waiting: List[Tuple[float, int, Key]] = []
        self._waiting_until: Dict[Key, float] = {}
        self._sequence = itertools.count()
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    # ------------------------------------------------------------------
    # Immediate work
    # ------------------------------------------------------------------
    def add(self, key: Key) -> None:
        """Queue ``key`` unless it is already waiting to be processed."""

        with self._cond:
            self._add_locked(key)

    def _add_locked(self, key: Key) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            # Re-delivered by done() once the current attempt finishes.
            return
        self._queue.append(key)
        self._cond.notify()

    def get(self) -> Tuple[Optional[Key], bool]:
        """Block until a key is available and claim it.

        Returns ``(key, False)`` for new work and ``(None, True)`` once the
        queue has been shut down.
        """

        with self._cond:
            while True:
                if self._shutting_down:
                    return None, True
                timeout = self._promote_due_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._processing.add(key)
                    self._dirty.discard(key)
                    return key, False
                self._cond.wait(timeout)

    def done(self, key: Key) -> None:
        """Release the in-flight marker for ``key``."""

        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            if self._shutting_down:
                return
            LOG.debug(
                "shutting down queue (%d queued, %d in flight)",
                len(self._queue),
                len(self._processing),
            )
            self._shutting_down = True
            self._cond.notify_all()

    # ------------------------------------------------------------------
    # Delayed work
    # ------------------------------------------------------------------
    def add_after(self, key: Key, delay: float) -> None:
        """Queue ``key`` once ``delay`` seconds have elapsed."""

        with self._cond:
            if self._shutting_down:
                return
            if delay <= 0:
                self._add_locked(key)
                return

            ready_at = self._clock() + delay
            current = self._waiting_until.get(key)
            if current is not None and current <= ready_at:
                return
            self._waiting_until[key] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._sequence), key))
            # Wake a getter so it recomputes its wait timeout.
            self._cond.notify()

    def add_rate_limited(self, key: Key) -> None:
        self.add_after(key, self._rate_limiter.when(key))

    def forget(self, key: Key) -> None:
        self._rate_limiter.forget(key)

    def num_requeues(self, key: Key) -> int:
        return self._rate_limiter.num_requeues(key)

    def _promote_due_locked(self) -> Optional[float]:
        """Move due delayed keys into the queue.

        Returns the number of seconds until the next delayed key becomes
        due, or ``None`` when nothing is waiting.
        """

        now = self._clock()
        while self._waiting:
            ready_at, _, key = self._waiting[0]
            if self._waiting_until.get(key) != ready_at:
                # Superseded by an earlier re-add of the same key.
                heapq.heappop(self._waiting)
                continue
            if ready_at > now:
                return ready_at - now
            heapq.heappop(self._waiting)
            del self._waiting_until[key]
            self._add_locked(key)
        return None
