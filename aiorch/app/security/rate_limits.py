############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# rate_limits.py: Token bucket rate limiting implementation
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Rate limiting implementation.

One token bucket per principal. Buckets refill lazily on access:
``tokens = min(capacity, tokens + elapsed * refill_rate)``. A request is
admitted iff the bucket holds at least its cost. Rejections carry the
time until enough tokens will have accumulated; the limiter never queues
a request for automatic retry.
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, NamedTuple, Optional

from aiorch.app.core.clock import SYSTEM_CLOCK, Clock
from aiorch.app.core.errors import RateLimitExceeded
from aiorch.app.logging_config import get_logger

logger = get_logger(__name__)


# Capacity and refill scale with the principal's tier
TIER_MULTIPLIERS: Dict[str, float] = {
    "guest": 0.5,
    "member": 1.0,
    "premium": 2.0,
    "enterprise": 5.0,
    "admin": 10.0,
    "internal": 100.0,
}


@dataclass
class TokenBucket:
    """Token bucket state for a single principal."""

    capacity: float
    refill_rate: float
    tokens: float
    last_refill: float
    last_used: float

    def refill(self, now: float) -> None:
        elapsed = max(0.0, now - self.last_refill)
        if elapsed:
            self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now


class RateLimitDecision(NamedTuple):
    admitted: bool
    remaining: float
    retry_after: Optional[float]


class RateLimiter:
    """
    In-memory per-principal token bucket limiter.

    State is per process; horizontally scaled instances each enforce
    their own buckets.
    """

    def __init__(
        self,
        capacity: float = 60.0,
        refill_rate: float = 1.0,
        clock: Clock = SYSTEM_CLOCK,
        idle_ttl: float = 300.0,
    ):
        if capacity <= 0 or refill_rate <= 0:
            raise ValueError("capacity and refill_rate must be positive")
        self._capacity = capacity
        self._refill_rate = refill_rate
        self._clock = clock
        self._idle_ttl = idle_ttl
        self._buckets: Dict[str, TokenBucket] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @classmethod
    def from_settings(cls, settings, clock: Clock = SYSTEM_CLOCK) -> "RateLimiter":
        return cls(
            capacity=settings.rate_limit_capacity,
            refill_rate=settings.rate_limit_refill_per_second,
            clock=clock,
            idle_ttl=settings.rate_limit_idle_seconds,
        )

    def _get_bucket(self, principal: str, tier: str, now: float) -> TokenBucket:
        bucket = self._buckets.get(principal)
        if bucket is None:
            multiplier = TIER_MULTIPLIERS.get(tier, 1.0)
            capacity = self._capacity * multiplier
            bucket = TokenBucket(
                capacity=capacity,
                refill_rate=self._refill_rate * multiplier,
                tokens=capacity,
                last_refill=now,
                last_used=now,
            )
            self._buckets[principal] = bucket
        return bucket

    async def try_acquire(
        self,
        principal: str,
        cost: float = 1.0,
        tier: str = "member",
    ) -> RateLimitDecision:
        """
        Take ``cost`` tokens from the principal's bucket if available.

        Args:
            principal: Rate limit key (user, tenant or feature)
            cost: Tokens this request consumes
            tier: Principal tier, applied when the bucket is first created

        Returns:
            RateLimitDecision; ``retry_after`` is None when the cost can
            never be satisfied (cost larger than capacity)
        """
        async with self._locks[principal]:
            now = self._clock.monotonic()
            bucket = self._get_bucket(principal, tier, now)
            bucket.refill(now)
            bucket.last_used = now

            if cost > bucket.capacity:
                return RateLimitDecision(False, bucket.tokens, None)

            if bucket.tokens >= cost:
                bucket.tokens -= cost
                return RateLimitDecision(True, bucket.tokens, 0.0)

            retry_after = (cost - bucket.tokens) / bucket.refill_rate
            return RateLimitDecision(False, bucket.tokens, retry_after)

    async def acquire(
        self,
        principal: str,
        cost: float = 1.0,
        tier: str = "member",
    ) -> RateLimitDecision:
        """Like try_acquire but raises RateLimitExceeded when not admitted."""
        decision = await self.try_acquire(principal, cost=cost, tier=tier)
        if not decision.admitted:
            logger.info(
                "rate_limit_rejected",
                principal=principal,
                cost=cost,
                remaining=round(decision.remaining, 3),
                retry_after=decision.retry_after,
            )
            if decision.retry_after is None:
                raise RateLimitExceeded(
                    f"Request cost {cost} exceeds rate limit capacity",
                    retry_after=None,
                    principal=principal,
                )
            raise RateLimitExceeded(
                f"Rate limit exceeded, retry after {decision.retry_after:.2f}s",
                retry_after=decision.retry_after,
                principal=principal,
            )
        return decision

    async def get_state(self, principal: str) -> Dict:
        """Get rate limit state for a principal."""
        async with self._locks[principal]:
            bucket = self._buckets.get(principal)
            if bucket is None:
                return {"tokens": self._capacity, "capacity": self._capacity, "tracked": False}
            bucket.refill(self._clock.monotonic())
            return {
                "tokens": bucket.tokens,
                "capacity": bucket.capacity,
                "refill_rate": bucket.refill_rate,
                "tracked": True,
            }

    async def cleanup(self) -> int:
        """Drop buckets that are idle and full again; returns how many were removed."""
        now = self._clock.monotonic()
        removed = 0
        for principal in list(self._buckets.keys()):
            async with self._locks[principal]:
                bucket = self._buckets.get(principal)
                if bucket is None:
                    continue
                bucket.refill(now)
                if now - bucket.last_used >= self._idle_ttl and bucket.tokens >= bucket.capacity:
                    del self._buckets[principal]
                    self._locks.pop(principal, None)
                    removed += 1
        if removed:
            logger.debug("rate_limit_buckets_cleaned", removed=removed)
        return removed

    def stats(self) -> Dict:
        return {
            "tracked_principals": len(self._buckets),
            "capacity": self._capacity,
            "refill_per_second": self._refill_rate,
        }
