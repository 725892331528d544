############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# latency_tracker.py: Per-provider latency EMA tracking
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Per-provider latency tracking using Exponential Moving Average (EMA).

EMA formula: ema_new = alpha * observation + (1 - alpha) * ema_old
"""

import asyncio
from typing import Dict, Iterable, Optional


class LatencyTracker:
    """Tracks per-provider call latency."""

    def __init__(self, alpha: float = 0.3):
        self._alpha = alpha
        self._lock = asyncio.Lock()
        self._latency_ema: Dict[str, float] = {}
        self._observation_count: Dict[str, int] = {}

    async def record_latency(self, provider_id: str, latency_ms: float) -> float:
        """Record one observation, return the updated EMA."""
        async with self._lock:
            old = self._latency_ema.get(provider_id)
            if old is None:
                self._latency_ema[provider_id] = latency_ms
            else:
                self._latency_ema[provider_id] = self._alpha * latency_ms + (1 - self._alpha) * old
            self._observation_count[provider_id] = self._observation_count.get(provider_id, 0) + 1
            return self._latency_ema[provider_id]

    async def get_latency_ema(self, provider_id: str) -> Optional[float]:
        async with self._lock:
            return self._latency_ema.get(provider_id)

    async def get_all_latencies(self) -> Dict[str, float]:
        """Get all latency EMAs as {provider_id: ema_ms}."""
        async with self._lock:
            return dict(self._latency_ema)

    async def load(self, records: Iterable) -> None:
        """Seed EMAs from persisted provider_health rows."""
        async with self._lock:
            for record in records:
                ema = getattr(record, "latency_ema_ms", None)
                if ema is not None:
                    self._latency_ema[record.provider_id] = ema

    def observation_count(self, provider_id: str) -> int:
        return self._observation_count.get(provider_id, 0)
