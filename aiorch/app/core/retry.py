############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# retry.py: Bounded retry policy with exponential backoff
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Bounded retry policy with exponential backoff and jitter.

One policy object is shared by the router (sleep between fallback hops),
the embedding service (sub-batch retry) and durable writes.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from aiorch.app.core.errors import (
    AllProvidersUnavailable,
    PersistenceError,
    TransientProviderError,
)
from aiorch.app.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_RETRY_ON: Tuple[Type[BaseException], ...] = (
    TransientProviderError,
    AllProvidersUnavailable,
    PersistenceError,
)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget: attempts, backoff curve and jitter fraction."""

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 10.0
    multiplier: float = 2.0
    jitter: float = 0.1

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_backoff_base,
            max_delay=settings.retry_backoff_max,
            jitter=settings.retry_backoff_jitter,
        )

    def compute_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        delay = min(self.max_delay, self.base_delay * (self.multiplier ** max(0, attempt - 1)))
        if self.jitter:
            delay *= 1.0 + random.uniform(-self.jitter, self.jitter)
        return max(0.0, delay)

    async def run(
        self,
        fn: Callable[[], Awaitable[T]],
        retry_on: Tuple[Type[BaseException], ...] = DEFAULT_RETRY_ON,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        operation: str = "operation",
    ) -> T:
        """Call ``fn`` until it succeeds or the attempt budget is spent.

        Only exceptions listed in ``retry_on`` are retried; anything else
        propagates on the first occurrence. The last retryable error is
        re-raised once attempts are exhausted.
        """
        sleep = sleep or asyncio.sleep
        attempt = 0
        while True:
            attempt += 1
            try:
                return await fn()
            except retry_on as e:
                if attempt >= self.max_attempts:
                    logger.warning(
                        "retry_exhausted",
                        operation=operation,
                        attempts=attempt,
                        error=str(e),
                    )
                    raise
                delay = self.compute_delay(attempt)
                logger.info(
                    "retry_scheduled",
                    operation=operation,
                    attempt=attempt,
                    delay=round(delay, 3),
                    error=str(e),
                )
                await sleep(delay)
