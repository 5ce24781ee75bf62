"""
Process-wide token buckets, one per source type.

Every fetch of a given type shares the same bucket, so fanning out over many
sources of that type never exceeds the upstream quota.
"""

import asyncio
import math
import time
from dataclasses import dataclass, field

from collector.config import Settings
from collector.models import SourceType
from collector.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class TokenBucket:
    """
    Token bucket refilled continuously at `rate` tokens per second.

    A rate of `math.inf` never blocks. `wait()` is cancellable: cancelling the
    caller interrupts the sleep and no token is consumed.
    """

    rate: float  # tokens per second
    burst: int = 10
    acquired: int = field(default=0, init=False)
    _tokens: float = field(init=False, repr=False)
    _last_update: float = field(init=False, repr=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def __post_init__(self) -> None:
        if self.rate <= 0:
            raise ValueError(f"rate must be positive, got {self.rate}")
        if self.burst < 1:
            raise ValueError(f"burst must be >= 1, got {self.burst}")
        self._tokens = float(self.burst)
        self._last_update = time.monotonic()

    @classmethod
    def from_delay_ms(cls, delay_ms: int, burst: int = 10) -> "TokenBucket":
        """rate = 1000 / delay_ms requests per second; delay <= 0 means unlimited."""
        rate = math.inf if delay_ms <= 0 else 1000.0 / delay_ms
        return cls(rate=rate, burst=burst)

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self._last_update
        self._last_update = now
        if math.isinf(self.rate):
            self._tokens = float(self.burst)
        else:
            self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate)

    async def wait(self) -> None:
        """Suspend until a token is available, then consume it."""
        # The lock serialises waiters so tokens are handed out in FIFO order.
        async with self._lock:
            self._refill()
            if self._tokens < 1:
                wait_time = (1 - self._tokens) / self.rate
                logger.debug("rate_limited", wait_seconds=round(wait_time, 3))
                await asyncio.sleep(wait_time)
                self._refill()
            self._tokens -= 1
            self.acquired += 1


class RateLimitRegistry:
    """Builds every bucket once at startup and hands out shared references."""

    def __init__(self, buckets: dict[str, TokenBucket]):
        self._buckets = dict(buckets)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RateLimitRegistry":
        buckets = {}
        for source_type in SourceType:
            delay_ms = settings.delay_ms_for(source_type.value)
            buckets[source_type.value] = TokenBucket.from_delay_ms(
                delay_ms, burst=settings.rate_limit_burst
            )
            logger.info(
                "rate_limiter_created",
                source_type=source_type.value,
                delay_ms=delay_ms,
                burst=settings.rate_limit_burst,
            )
        return cls(buckets)

    def get(self, source_type: str) -> TokenBucket:
        try:
            return self._buckets[source_type]
        except KeyError:
            raise KeyError(f"no rate limiter for source type {source_type!r}") from None

    def __contains__(self, source_type: str) -> bool:
        return source_type in self._buckets
