############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# clock.py: Injectable time source
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Injectable time source.

Token buckets, breaker windows, cache TTLs and queue aging all read time
through a Clock so tests can drive them deterministically.
"""

import asyncio
import time
from datetime import datetime, timezone


class Clock:
    """Wall and monotonic time backed by the real system clock."""

    def monotonic(self) -> float:
        return time.monotonic()

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


SYSTEM_CLOCK = Clock()
