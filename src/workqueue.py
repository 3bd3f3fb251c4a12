"""
Rate-limited work queue for asyncio workers.

Keys are deduplicated while waiting. A key that is being processed is never
handed to a second worker; if it is added again meanwhile it is queued once
the first worker calls ``done``. After ``shut_down`` no further keys are
handed out, so workers exit as soon as their current key is done.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Deque, Dict, Hashable, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)


class ItemExponentialFailureRateLimiter:
    """Per-key delay of ``base_delay * 2^failures``, capped at ``max_delay``."""

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: Dict[Hashable, int] = {}

    def when(self, item: Hashable) -> float:
        exp = self._failures.get(item, 0)
        self._failures[item] = exp + 1
        # Avoid float overflow for very large exponents
        if exp > 62:
            return self.max_delay
        return min(self.base_delay * (2**exp), self.max_delay)

    def num_requeues(self, item: Hashable) -> int:
        return self._failures.get(item, 0)

    def forget(self, item: Hashable) -> None:
        self._failures.pop(item, None)


class BucketRateLimiter:
    """Overall token bucket: ``qps`` tokens per second, ``burst`` capacity."""

    def __init__(self, qps: float = 10.0, burst: int = 100):
        self.qps = qps
        self.burst = burst
        self._tokens = float(burst)
        self._last = time.monotonic()

    def when(self, item: Hashable) -> float:
        now = time.monotonic()
        self._tokens = min(self.burst, self._tokens + (now - self._last) * self.qps)
        self._last = now
        # Reserve a token even if it has to be borrowed from the future
        self._tokens -= 1
        if self._tokens >= 0:
            return 0.0
        return -self._tokens / self.qps

    def num_requeues(self, item: Hashable) -> int:
        return 0

    def forget(self, item: Hashable) -> None:
        pass


class MaxOfRateLimiter:
    """Delay is the longest of the wrapped limiters."""

    def __init__(self, *limiters):
        self.limiters = limiters

    def when(self, item: Hashable) -> float:
        return max(limiter.when(item) for limiter in self.limiters)

    def num_requeues(self, item: Hashable) -> int:
        return max(limiter.num_requeues(item) for limiter in self.limiters)

    def forget(self, item: Hashable) -> None:
        for limiter in self.limiters:
            limiter.forget(item)


def default_controller_rate_limiter(
    base_delay: float = 0.005,
    max_delay: float = 1000.0,
    qps: float = 10.0,
    burst: int = 100,
) -> MaxOfRateLimiter:
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(base_delay, max_delay),
        BucketRateLimiter(qps, burst),
    )


class RateLimitingQueue:
    """FIFO of unique keys with delayed and rate-limited adds."""

    def __init__(self, name: str, rate_limiter=None):
        self.name = name
        self.rate_limiter = rate_limiter or default_controller_rate_limiter()
        self._queue: List[Hashable] = []
        self._dirty: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._timers: Set[asyncio.TimerHandle] = set()
        self._waiters: Deque[asyncio.Future] = deque()
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queue)

    def _notify(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return

    def add(self, item: Hashable) -> None:
        if self._shutting_down or item in self._dirty:
            return
        self._dirty.add(item)
        if item in self._processing:
            return
        self._queue.append(item)
        self._notify()

    def add_after(self, item: Hashable, delay: float) -> None:
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(item)
            return

        loop = asyncio.get_running_loop()
        handle: Optional[asyncio.TimerHandle] = None

        def fire():
            self._timers.discard(handle)
            self.add(item)

        handle = loop.call_later(delay, fire)
        self._timers.add(handle)

    def add_rate_limited(self, item: Hashable) -> None:
        self.add_after(item, self.rate_limiter.when(item))

    def forget(self, item: Hashable) -> None:
        self.rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self.rate_limiter.num_requeues(item)

    async def get(self) -> Tuple[Optional[Hashable], bool]:
        """
        Wait for the next key.

        Returns:
            ``(key, False)``, or ``(None, True)`` once the queue is shut
            down. Keys still waiting at shutdown are not handed out.
        """
        while not self._queue and not self._shutting_down:
            waiter = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            try:
                await waiter
            except asyncio.CancelledError:
                if waiter.cancelled():
                    if waiter in self._waiters:
                        self._waiters.remove(waiter)
                else:
                    # Woken but never ran; pass the wake-up on
                    self._notify()
                raise
        if self._shutting_down:
            return None, True
        item = self._queue.pop(0)
        self._processing.add(item)
        self._dirty.discard(item)
        return item, False

    def done(self, item: Hashable) -> None:
        self._processing.discard(item)
        if item in self._dirty:
            self._queue.append(item)
            self._notify()

    async def shut_down(self) -> None:
        """Stop accepting keys and wake every waiting worker."""
        self._shutting_down = True
        for handle in list(self._timers):
            handle.cancel()
        self._timers.clear()
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
