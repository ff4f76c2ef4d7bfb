from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable
from typing import Protocol

from config_getter.src.metrics import METRICS


class RateLimiter(Protocol):
    def when(self, item: Hashable) -> float: ...

    def forget(self, item: Hashable) -> None: ...

    def num_requeues(self, item: Hashable) -> int: ...


class ItemExponentialFailureRateLimiter:
    """Per-item exponential backoff: ``base_delay * 2**failures``, capped at ``max_delay``.

    Every call to :meth:`when` counts as one failure for the item; :meth:`forget`
    resets it.
    """

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0) -> None:
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            exponent = self._failures.get(item, 0)
            self._failures[item] = exponent + 1

        # 2**62 seconds is far beyond any sane cap; avoid float overflow.
        backoff = self.base_delay * float(2 ** min(exponent, 62))
        return min(backoff, self.max_delay)

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)


class BucketRateLimiter:
    """Overall token bucket shared by all items (``qps`` refill, ``burst`` capacity).

    Each :meth:`when` reserves one token and returns how long the caller must
    wait for it.  The bucket does not track individual items.
    """

    def __init__(
        self,
        qps: float = 10.0,
        burst: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if qps <= 0:
            raise ValueError(f"qps must be > 0, got: {qps}")
        self.qps = qps
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            now = self._clock()
            elapsed = max(0.0, now - self._last)
            self._last = now
            self._tokens = min(float(self.burst), self._tokens + elapsed * self.qps)
            self._tokens -= 1.0
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps

    def forget(self, item: Hashable) -> None:
        return None

    def num_requeues(self, item: Hashable) -> int:
        return 0


class MaxOfRateLimiter:
    """Combine limiters; the longest delay wins and requeue counts take the maximum."""

    def __init__(self, *limiters: RateLimiter) -> None:
        if not limiters:
            raise ValueError("MaxOfRateLimiter needs at least one limiter")
        self.limiters = limiters

    def when(self, item: Hashable) -> float:
        return max(limiter.when(item) for limiter in self.limiters)

    def forget(self, item: Hashable) -> None:
        for limiter in self.limiters:
            limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return max(limiter.num_requeues(item) for limiter in self.limiters)


def default_controller_rate_limiter() -> MaxOfRateLimiter:
    """Per-item exponential backoff (5 ms to 1000 s) bounded by a 10 qps / 100 burst bucket."""
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(base_delay=0.005, max_delay=1000.0),
        BucketRateLimiter(qps=10.0, burst=100),
    )


class RateLimitingQueue:
    """Deduplicating work queue with delayed and rate-limited re-adds.

    Bookkeeping follows three collections guarded by one condition:

    ``_queue``
        FIFO of items ready to be handed out by :meth:`get`.
    ``_dirty``
        Items that need processing.  An item is never queued twice: a second
        :meth:`add` while the item is dirty is a no-op.
    ``_processing``
        Items handed out by :meth:`get` and not yet :meth:`done`.  Adding an
        in-flight item only marks it dirty; :meth:`done` re-queues it, so at most
        one worker ever holds a given item.

    Delayed adds live in a min-heap drained by a daemon thread.  An item already
    waiting keeps the earlier of its ready times.
    """

    def __init__(self, rate_limiter: RateLimiter | None = None, name: str = "") -> None:
        self.name = name
        self.rate_limiter = rate_limiter or default_controller_rate_limiter()

        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._shutting_down = False

        self._waiting_cond = threading.Condition()
        self._waiting: list[tuple[float, int, Hashable]] = []
        self._waiting_ready_at: dict[Hashable, float] = {}
        self._waiting_sequence = itertools.count()
        self._waiting_stopped = False
        self._waiting_thread = threading.Thread(
            target=self._waiting_loop,
            name=f"{name or 'workqueue'}-waiting-loop",
            daemon=True,
        )
        self._waiting_thread.start()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def add(self, item: Hashable) -> None:
        with self._cond:
            if self._shutting_down or item in self._dirty:
                return
            self._dirty.add(item)
            METRICS.queue_adds_total.inc()
            if item in self._processing:
                return
            self._queue.append(item)
            METRICS.queue_depth.set(len(self._queue))
            self._cond.notify()

    def get(self) -> tuple[Hashable | None, bool]:
        """Block until an item is available; return ``(None, True)`` once shut down and drained."""
        with self._cond:
            while not self._queue and not self._shutting_down:
                self._cond.wait()
            if not self._queue:
                return None, True

            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            METRICS.queue_depth.set(len(self._queue))
            return item, False

    def done(self, item: Hashable) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                METRICS.queue_depth.set(len(self._queue))
                self._cond.notify()

    def shut_down(self) -> None:
        """Stop accepting work, wake blocked getters and stop the waiting loop.

        Delayed items that have not become ready yet are discarded.
        """
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
        with self._waiting_cond:
            self._waiting_stopped = True
            self._waiting.clear()
            self._waiting_ready_at.clear()
            self._waiting_cond.notify_all()
        if threading.current_thread() is not self._waiting_thread:
            self._waiting_thread.join(timeout=1.0)

    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def add_after(self, item: Hashable, delay_seconds: float) -> None:
        if delay_seconds <= 0:
            self.add(item)
            return

        ready_at = time.monotonic() + delay_seconds
        with self._waiting_cond:
            if self._waiting_stopped:
                return
            existing = self._waiting_ready_at.get(item)
            if existing is not None and existing <= ready_at:
                return
            self._waiting_ready_at[item] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._waiting_sequence), item))
            self._waiting_cond.notify()

    def add_rate_limited(self, item: Hashable) -> None:
        METRICS.queue_retries_total.inc()
        self.add_after(item, self.rate_limiter.when(item))

    def forget(self, item: Hashable) -> None:
        self.rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self.rate_limiter.num_requeues(item)

    def _pop_ready(self, now_monotonic: float) -> list[Hashable]:
        ready: list[Hashable] = []
        while self._waiting and self._waiting[0][0] <= now_monotonic:
            ready_at, _, item = heapq.heappop(self._waiting)
            # Superseded by an earlier ready time for the same item.
            if self._waiting_ready_at.get(item) != ready_at:
                continue
            del self._waiting_ready_at[item]
            ready.append(item)
        return ready

    def _waiting_loop(self) -> None:
        while True:
            with self._waiting_cond:
                if self._waiting_stopped:
                    return
                now_monotonic = time.monotonic()
                ready = self._pop_ready(now_monotonic)
                if not ready:
                    timeout = (
                        self._waiting[0][0] - now_monotonic if self._waiting else None
                    )
                    self._waiting_cond.wait(timeout=timeout)
                    continue

            for item in ready:
                self.add(item)
