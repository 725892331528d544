############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# embedding_worker.py: Claim/embed loop run as its own process
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Embedding worker.

Run with ``python -m aiorch.app.workers.embedding_worker``. Any number of
these can share one database; claims are exclusive per job and per source.
"""

import asyncio
from typing import Optional

from aiorch.app.core.clock import SYSTEM_CLOCK, Clock
from aiorch.app.core.errors import OrchestrationError
from aiorch.app.logging_config import get_logger, setup_logging
from aiorch.app.services.pipeline import BatchReport, EmbeddingPipeline
from aiorch.app.workers.base import StoppableWorker, default_worker_id

logger = get_logger(__name__)


class EmbeddingWorker(StoppableWorker):
    """Runs pipeline cycles until stopped, backing off while no job can be settled."""

    def __init__(
        self,
        pipeline: EmbeddingPipeline,
        worker_id: Optional[str] = None,
        idle_sleep: float = 1.0,
        max_idle_sleep: float = 30.0,
        clock: Clock = SYSTEM_CLOCK,
    ):
        super().__init__(worker_id or default_worker_id("embedding"), clock=clock)
        self._pipeline = pipeline
        self._idle_sleep = idle_sleep
        self._max_idle_sleep = max(idle_sleep, max_idle_sleep)
        self._backoff = idle_sleep
        self.batches = 0

    def _next_backoff(self) -> float:
        delay = self._backoff
        self._backoff = min(self._max_idle_sleep, self._backoff * 2)
        return delay

    async def run_once(self) -> BatchReport:
        report = await self._pipeline.run_once(self.worker_id)
        self.batches += 1
        return report

    async def run(self, max_batches: Optional[int] = None) -> None:
        """
        Process batches until stopped.

        Args:
            max_batches: Stop after this many cycles (including empty ones)
        """
        logger.info("embedding_worker_started", worker_id=self.worker_id)
        cycles = 0
        while not self.stopping:
            if max_batches is not None and cycles >= max_batches:
                break
            cycles += 1
            try:
                report = await self.run_once()
            except OrchestrationError as e:
                logger.error("embedding_worker_cycle_failed", worker_id=self.worker_id, error=str(e))
                await self._sleep(self._next_backoff())
                continue

            if not report.made_progress:
                # Empty queue, or every claimed job was deferred (open circuit, budget, rate limit)
                await self._sleep(self._next_backoff())
            else:
                self._backoff = self._idle_sleep
        logger.info("embedding_worker_stopped", worker_id=self.worker_id, batches=self.batches)


async def _run() -> None:
    from aiorch.app.db.session import dispose_engine
    from aiorch.app.runtime import build_runtime

    runtime = build_runtime()
    await runtime.start(serve_requests=False)
    worker = EmbeddingWorker(
        runtime.pipeline,
        idle_sleep=runtime.settings.worker_idle_sleep,
        max_idle_sleep=runtime.settings.worker_max_idle_sleep,
        clock=runtime.clock,
    )
    worker.install_signal_handlers()
    try:
        await worker.run()
    finally:
        await runtime.stop()
        await dispose_engine()


def main():
    setup_logging(process_name="embedding-worker")
    asyncio.run(_run())


if __name__ == "__main__":
    main()
