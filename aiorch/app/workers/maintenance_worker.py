############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# maintenance_worker.py: Periodic reclaim, eviction and index upkeep
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Maintenance worker.

Runs standalone (``python -m aiorch.app.workers.maintenance_worker``) or
inside the API process when ``maintenance_in_process`` is set. Each step
is independent: one failing step is logged and the others still run.
"""

import asyncio
from typing import Any, Dict, Optional

from aiorch.app.logging_config import get_logger, setup_logging
from aiorch.app.workers.base import StoppableWorker, default_worker_id

logger = get_logger(__name__)


class MaintenanceWorker(StoppableWorker):
    """Reclaims stale jobs, evicts expired cache entries and maintains the vector index."""

    def __init__(self, runtime, interval: Optional[float] = None, worker_id: Optional[str] = None):
        super().__init__(worker_id or default_worker_id("maintenance"), clock=runtime.clock)
        self._runtime = runtime
        self._interval = interval if interval is not None else runtime.settings.maintenance_interval_seconds
        self.cycles = 0

    async def _reclaim_jobs(self) -> Dict[str, int]:
        reset, failed = await self._runtime.job_store.reclaim_stale()
        return {"reset": reset, "failed": failed}

    async def _evict_cache(self) -> Dict[str, int]:
        return {
            "response": self._runtime.response_cache.evict_expired(),
            "embedding": self._runtime.embedding_cache.evict_expired(),
            "embedding_durable": await self._runtime.embedding_cache.evict_expired_durable(),
        }

    async def _cleanup_rate_limits(self) -> int:
        return await self._runtime.rate_limiter.cleanup()

    async def _maintain_index(self) -> Dict[str, Any]:
        vector_store = self._runtime.vector_store
        await vector_store.sync()
        return vector_store.maintain()

    async def _refresh_providers(self) -> int:
        return await self._runtime.registry.refresh_from_store()

    async def run_once(self) -> Dict[str, Any]:
        """Run every maintenance step once; failed steps report None."""
        steps = [
            ("reclaimed_jobs", self._reclaim_jobs),
            ("cache_evictions", self._evict_cache),
            ("rate_limit_buckets_removed", self._cleanup_rate_limits),
            ("vector_index", self._maintain_index),
            ("providers_refreshed", self._refresh_providers),
        ]
        results: Dict[str, Any] = {}
        for name, step in steps:
            try:
                results[name] = await step()
            except Exception as e:
                logger.error("maintenance_step_failed", step=name, error=str(e))
                results[name] = None
        self.cycles += 1
        logger.info(
            "maintenance_cycle_completed",
            reclaimed_jobs=results["reclaimed_jobs"],
            cache_evictions=results["cache_evictions"],
            providers_refreshed=results["providers_refreshed"],
        )
        return results

    async def run(self) -> None:
        logger.info("maintenance_worker_started", worker_id=self.worker_id, interval=self._interval)
        while not self.stopping:
            await self.run_once()
            await self._sleep(self._interval)
        logger.info("maintenance_worker_stopped", worker_id=self.worker_id, cycles=self.cycles)


async def _run() -> None:
    from aiorch.app.db.session import dispose_engine
    from aiorch.app.runtime import build_runtime

    runtime = build_runtime()
    await runtime.start(serve_requests=False)
    worker = MaintenanceWorker(runtime)
    worker.install_signal_handlers()
    try:
        await worker.run()
    finally:
        await runtime.stop()
        await dispose_engine()


def main():
    setup_logging(process_name="maintenance-worker")
    asyncio.run(_run())


if __name__ == "__main__":
    main()
