"""
Unit tests for the concurrency limiter
"""
import asyncio

import pytest

from bulk_loader.limiter import ConcurrencyLimiter


@pytest.mark.unit
@pytest.mark.asyncio
async def test_acquire_waits_for_a_free_slot():
    limiter = ConcurrencyLimiter(1)
    await limiter.acquire()

    waiter = asyncio.create_task(limiter.acquire())
    await asyncio.sleep(0.01)
    assert not waiter.done()
    assert limiter.active == 1

    await limiter.release()
    await asyncio.wait_for(waiter, 1)
    assert limiter.active == 1


@pytest.mark.unit
def test_negative_limit_is_rejected():
    with pytest.raises(ValueError):
        ConcurrencyLimiter(-1)
