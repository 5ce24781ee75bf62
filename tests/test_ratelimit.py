import asyncio
import math
import time

import pytest

from collector.models import SourceType
from collector.ratelimit import RateLimitRegistry, TokenBucket


def test_from_delay_ms_rate():
    bucket = TokenBucket.from_delay_ms(500)
    assert bucket.rate == pytest.approx(2.0)
    assert bucket.burst == 10


def test_non_positive_delay_means_unlimited():
    assert math.isinf(TokenBucket.from_delay_ms(0).rate)
    assert math.isinf(TokenBucket.from_delay_ms(-5).rate)


def test_invalid_bucket_parameters():
    with pytest.raises(ValueError):
        TokenBucket(rate=0)
    with pytest.raises(ValueError):
        TokenBucket(rate=1, burst=0)


@pytest.mark.asyncio
async def test_burst_is_immediate():
    bucket = TokenBucket(rate=1.0, burst=5)
    start = time.monotonic()
    for _ in range(5):
        await bucket.wait()
    assert time.monotonic() - start < 0.5
    assert bucket.acquired == 5


@pytest.mark.asyncio
async def test_waits_once_burst_is_spent():
    bucket = TokenBucket(rate=20.0, burst=1)
    await bucket.wait()

    start = time.monotonic()
    await bucket.wait()
    assert time.monotonic() - start >= 0.03


@pytest.mark.asyncio
async def test_wait_is_cancellable():
    bucket = TokenBucket(rate=0.01, burst=1)
    await bucket.wait()

    task = asyncio.create_task(bucket.wait())
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert bucket.acquired == 1


def test_registry_has_one_bucket_per_type(test_settings):
    registry = RateLimitRegistry.from_settings(test_settings)
    for source_type in SourceType:
        assert source_type.value in registry
    assert "unknown" not in registry
    with pytest.raises(KeyError):
        registry.get("unknown")


def test_registry_hands_out_the_same_bucket(test_settings):
    registry = RateLimitRegistry.from_settings(test_settings)
    assert registry.get("reddit") is registry.get("reddit")
    assert registry.get("reddit") is not registry.get("hackernews")


def test_registry_uses_configured_delays(test_settings):
    settings = test_settings.model_copy(update={"reddit_delay_ms": 2000, "hackernews_delay_ms": 500})
    registry = RateLimitRegistry.from_settings(settings)
    assert registry.get("reddit").rate == pytest.approx(0.5)
    assert registry.get("hackernews").rate == pytest.approx(2.0)
    assert math.isinf(registry.get("semantic_scholar").rate)
