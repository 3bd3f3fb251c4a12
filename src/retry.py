"""
Optimistic-concurrency retry.

Wraps a read-mutate-write coroutine and re-runs it while it loses the
version race, with a short randomized wait between attempts.
"""

import logging
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
    wait_random,
)

from store import ConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_on_conflict(
    fn: Callable[[], Awaitable[T]],
    steps: int = 5,
    delay: float = 0.1,
    jitter: float = 1.0,
) -> T:
    """
    Run ``fn`` until it succeeds or ``steps`` attempts have conflicted.

    Each wait is ``delay`` plus a random amount up to ``delay * jitter``.
    The last ConflictError is re-raised; other exceptions propagate at once.
    """

    @retry(
        stop=stop_after_attempt(steps),
        wait=wait_fixed(delay) + wait_random(0, delay * jitter),
        retry=retry_if_exception_type(ConflictError),
        before_sleep=before_sleep_log(logger, logging.DEBUG),
        reraise=True,
    )
    async def _attempt() -> T:
        return await fn()

    return await _attempt()
