"""Token-bucket rate limiter for extraction provider calls.

The bucket holds up to ``max_tokens`` tokens. Every ``1 / refill_rate``
seconds a background task hands one token to the longest-waiting caller or,
when nobody waits, puts it back into the bucket.
"""

import asyncio
import logging
from collections import deque

logger = logging.getLogger(__name__)


class TokenBucketThrottle:
    """Asyncio token bucket with a FIFO wait queue.

    The refill task starts on the first acquire(), inside the running event
    loop. Call destroy() on shutdown.
    """

    def __init__(self, max_tokens: int, refill_rate_per_sec: float) -> None:
        if max_tokens < 1:
            raise ValueError("max_tokens must be at least 1")
        if refill_rate_per_sec <= 0:
            raise ValueError("refill_rate_per_sec must be positive")
        self._max_tokens = max_tokens
        self._tokens = max_tokens
        self._refill_interval = 1.0 / refill_rate_per_sec
        self._waiters: deque[asyncio.Future[None]] = deque()
        self._refill_task: asyncio.Task[None] | None = None

    @property
    def pending_count(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    @property
    def available_tokens(self) -> int:
        return self._tokens

    async def acquire(self) -> None:
        """Wait for a token.

        Returns immediately when the bucket is not empty, otherwise queues the
        caller behind earlier waiters.
        """
        self._ensure_refill()
        if self._tokens > 0:
            self._tokens -= 1
            return
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        logger.debug(f"Throttle empty, {len(self._waiters)} caller(s) waiting")
        await waiter

    def destroy(self) -> None:
        """Stop refilling and release every queued caller."""
        if self._refill_task is not None:
            self._refill_task.cancel()
            self._refill_task = None
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)

    def _ensure_refill(self) -> None:
        if self._refill_task is None or self._refill_task.done():
            self._refill_task = asyncio.get_running_loop().create_task(self._refill())

    async def _refill(self) -> None:
        while True:
            await asyncio.sleep(self._refill_interval)
            self._release_one()

    def _release_one(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            # Cancelled callers do not consume the token
            if not waiter.done():
                waiter.set_result(None)
                return
        if self._tokens < self._max_tokens:
            self._tokens += 1
