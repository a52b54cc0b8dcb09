"""
CRM Migration Hub - Rate Limiter

Token bucket rate limiting for calls against the CRM API. The platform
enforces its ceiling per account (location), so every client talking to the
same location must draw from the same bucket.
"""

import os
import time
import asyncio
import logging
from typing import Dict, Optional

logger = logging.getLogger(__name__)

# =============================================================================
# CONFIGURATION
# =============================================================================

CRM_RATE_LIMIT_PER_SECOND = float(os.environ.get("CRM_RATE_LIMIT_PER_SECOND", "8"))
CRM_RATE_LIMIT_BURST = float(os.environ.get("CRM_RATE_LIMIT_BURST", "10"))


class TokenBucket:
    """
    Token bucket limiter.

    Tokens refill continuously at `rate` per second up to `capacity`.
    Withdrawal happens under an asyncio lock, so concurrent callers never
    spend the same token twice.
    """

    def __init__(self, rate: float, capacity: Optional[float] = None):
        self._rate = rate
        self._capacity = capacity if capacity is not None else max(rate, 1.0)
        self._tokens = self._capacity
        self._last_update = time.monotonic()
        self._lock = asyncio.Lock()

    @property
    def rate(self) -> float:
        return self._rate

    @property
    def available(self) -> float:
        return self._tokens

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self._last_update
        self._last_update = now
        self._tokens = min(self._capacity, self._tokens + elapsed * self._rate)

    async def acquire(self, tokens: float = 1.0) -> float:
        """
        Withdraw `tokens`, sleeping until enough have accumulated.

        Returns the number of seconds spent waiting.
        """
        if self._rate <= 0:
            return 0.0

        waited = 0.0
        async with self._lock:
            self._refill()
            if self._tokens < tokens:
                wait_time = (tokens - self._tokens) / self._rate
                await asyncio.sleep(wait_time)
                waited = wait_time
                self._refill()
            self._tokens -= tokens
        return waited


class RateLimiterRegistry:
    """One token bucket per CRM account, created on first use."""

    def __init__(
        self,
        rate: float = CRM_RATE_LIMIT_PER_SECOND,
        capacity: Optional[float] = CRM_RATE_LIMIT_BURST
    ):
        self.rate = rate
        self.capacity = capacity
        self._buckets: Dict[str, TokenBucket] = {}

    def get(self, account_key: str) -> TokenBucket:
        bucket = self._buckets.get(account_key)
        if bucket is None:
            bucket = TokenBucket(self.rate, self.capacity)
            self._buckets[account_key] = bucket
            logger.debug("Created rate limiter for account %s (%.1f req/s)", account_key, self.rate)
        return bucket

    def __len__(self) -> int:
        return len(self._buckets)
