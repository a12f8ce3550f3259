"""Unit tests for the token-bucket throttle."""

import asyncio

import pytest

from einvoice.extraction.throttle import TokenBucketThrottle


class TestTokenBucketThrottle:
    """Test TokenBucketThrottle."""

    def test_rejects_invalid_arguments(self) -> None:
        """Bucket size and refill rate must be positive."""
        with pytest.raises(ValueError):
            TokenBucketThrottle(0, 1.0)
        with pytest.raises(ValueError):
            TokenBucketThrottle(1, 0)

    @pytest.mark.asyncio
    async def test_acquire_immediately_while_tokens_left(self) -> None:
        """Callers do not wait while the bucket has tokens."""
        throttle = TokenBucketThrottle(3, 0.001)
        try:
            await asyncio.wait_for(throttle.acquire(), timeout=0.5)
            await asyncio.wait_for(throttle.acquire(), timeout=0.5)

            assert throttle.available_tokens == 1
            assert throttle.pending_count == 0
        finally:
            throttle.destroy()

    @pytest.mark.asyncio
    async def test_waiters_served_in_fifo_order(self) -> None:
        """Refilled tokens go to the longest-waiting caller."""
        throttle = TokenBucketThrottle(1, 50.0)
        order: list[int] = []

        async def worker(index: int) -> None:
            await throttle.acquire()
            order.append(index)

        try:
            await throttle.acquire()
            tasks = []
            for index in range(3):
                tasks.append(asyncio.create_task(worker(index)))
                await asyncio.sleep(0)
            assert throttle.pending_count == 3

            await asyncio.wait_for(asyncio.gather(*tasks), timeout=2.0)

            assert order == [0, 1, 2]
        finally:
            throttle.destroy()

    @pytest.mark.asyncio
    async def test_refill_capped_at_max(self) -> None:
        """Without waiters the bucket refills up to its size only."""
        throttle = TokenBucketThrottle(2, 100.0)
        try:
            await throttle.acquire()
            await asyncio.sleep(0.1)

            assert throttle.available_tokens == 2
        finally:
            throttle.destroy()

    @pytest.mark.asyncio
    async def test_destroy_releases_waiters(self) -> None:
        """Queued callers return when the throttle is destroyed."""
        throttle = TokenBucketThrottle(1, 0.001)
        await throttle.acquire()
        waiting = asyncio.create_task(throttle.acquire())
        await asyncio.sleep(0)
        assert throttle.pending_count == 1

        throttle.destroy()

        await asyncio.wait_for(waiting, timeout=0.5)
        assert throttle.pending_count == 0

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_consume_token(self) -> None:
        """A cancelled caller is skipped and the next one is served."""
        throttle = TokenBucketThrottle(1, 20.0)
        try:
            await throttle.acquire()
            cancelled = asyncio.create_task(throttle.acquire())
            served = asyncio.create_task(throttle.acquire())
            await asyncio.sleep(0)

            cancelled.cancel()
            await asyncio.wait_for(served, timeout=1.0)

            assert served.done() and not served.cancelled()
        finally:
            throttle.destroy()
