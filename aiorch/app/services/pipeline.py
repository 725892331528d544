############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# pipeline.py: Claim, embed and settle embedding jobs
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Embedding pipeline: one claim-embed-settle cycle per ``run_once``."""

import asyncio
import time
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Deque, Dict, List, Optional

from aiorch.app.core.clock import SYSTEM_CLOCK, Clock
from aiorch.app.core.events import EmbeddingJobCompleted, EmbeddingJobFailed, EventBus
from aiorch.app.core.errors import PersistenceError
from aiorch.app.logging_config import get_logger
from aiorch.app.services.embedding import EmbeddingItem, EmbeddingOutcome, EmbeddingService
from aiorch.app.services.job_store import ClaimedJob, EmbeddingJobStore

logger = get_logger(__name__)


@dataclass
class BatchReport:
    """What one pipeline cycle did."""

    worker_id: str
    claimed: int = 0
    completed: int = 0
    deduplicated: int = 0
    requeued: int = 0
    failed: int = 0
    deferred: int = 0
    duration_ms: float = 0.0

    @property
    def made_progress(self) -> bool:
        """False when every claimed job was deferred or requeued (or nothing was claimed)."""
        return self.completed > 0 or self.failed > 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class EmbeddingPipeline:
    """Moves claimed jobs through the EmbeddingService and settles them."""

    def __init__(
        self,
        job_store: EmbeddingJobStore,
        service: EmbeddingService,
        events: Optional[EventBus] = None,
        clock: Clock = SYSTEM_CLOCK,
        batch_size: int = 500,
    ):
        self._job_store = job_store
        self._service = service
        self._events = events
        self._clock = clock
        self._batch_size = batch_size

        self._processed_total = 0
        self._completed_total = 0
        self._failed_total = 0
        self._batches_total = 0
        self._completions: Deque[float] = deque()

    async def run_once(self, worker_id: str) -> BatchReport:
        """
        Claim up to ``batch_size`` jobs, embed them and record the outcome.

        Completed and deduplicated jobs are marked completed; retryable
        failures go back to pending until attempts run out; deferred jobs
        (rate limit, open circuit, budget) are released without consuming
        an attempt; permanent failures are marked failed immediately.
        """
        report = BatchReport(worker_id=worker_id)
        start = time.monotonic()

        jobs = await self._job_store.claim(worker_id, self._batch_size)
        report.claimed = len(jobs)
        if not jobs:
            return report

        items = [
            EmbeddingItem(
                source_id=job.source_id,
                content=job.content,
                source_type=job.source_type,
                content_hash=job.content_hash,
                metadata=dict(job.metadata),
            )
            for job in jobs
        ]
        try:
            results = await self._service.embed_batch(items)
        except asyncio.CancelledError:
            await asyncio.shield(self._job_store.release(jobs, reason="Worker shut down mid-batch"))
            raise
        except PersistenceError as e:
            logger.error("embedding_batch_error", worker_id=worker_id, jobs=len(jobs), error=str(e))
            requeued, failed = await self._job_store.fail(jobs, str(e))
            report.requeued, report.failed = requeued, failed
            await self._publish_failures(jobs, str(e), permanent=False)
            self._account(report, start)
            return report

        completed: List[ClaimedJob] = []
        deduplicated_ids = set()
        deferred: List[ClaimedJob] = []
        permanent: Dict[str, List[ClaimedJob]] = {}
        retryable: Dict[str, List[ClaimedJob]] = {}
        for job, result in zip(jobs, results):
            if result.ok:
                completed.append(job)
                if result.outcome == EmbeddingOutcome.DEDUPLICATED:
                    deduplicated_ids.add(job.id)
                    report.deduplicated += 1
            elif result.outcome == EmbeddingOutcome.DEFERRED:
                deferred.append(job)
            elif result.retryable:
                retryable.setdefault(result.error or "embedding failed", []).append(job)
            else:
                permanent.setdefault(result.error or "embedding failed", []).append(job)

        report.completed = await self._job_store.complete(completed)
        if deferred:
            reason = _first_error(results, EmbeddingOutcome.DEFERRED)
            report.deferred = await self._job_store.release(deferred, reason=reason)
        for error, group in retryable.items():
            requeued, failed = await self._job_store.fail(group, error)
            report.requeued += requeued
            report.failed += failed
            await self._publish_failures(group, error, permanent=False)
        for error, group in permanent.items():
            _, failed = await self._job_store.fail(group, error, permanent=True)
            report.failed += failed
            await self._publish_failures(group, error, permanent=True)

        if self._events is not None:
            for job in completed:
                await self._events.publish(
                    EmbeddingJobCompleted(
                        job_id=job.id,
                        source_id=job.source_id,
                        content_hash=job.content_hash,
                        model_id=self._service.model_id,
                        deduplicated=job.id in deduplicated_ids,
                    )
                )

        self._account(report, start)
        logger.info("embedding_batch_processed", **report.to_dict())
        return report

    async def _publish_failures(self, jobs: List[ClaimedJob], error: str, permanent: bool) -> None:
        """Publish EmbeddingJobFailed for jobs that will not be retried."""
        if self._events is None:
            return
        for job in jobs:
            exhausted = permanent or job.attempts >= self._job_store.max_attempts
            if not exhausted:
                continue
            await self._events.publish(
                EmbeddingJobFailed(
                    job_id=job.id,
                    source_id=job.source_id,
                    attempts=job.attempts,
                    error=error,
                    permanent=True,
                )
            )

    def _account(self, report: BatchReport, start: float) -> None:
        report.duration_ms = round((time.monotonic() - start) * 1000, 2)
        self._batches_total += 1
        self._processed_total += report.claimed - report.deferred
        self._completed_total += report.completed
        self._failed_total += report.failed
        now = self._clock.monotonic()
        self._completions.extend([now] * report.completed)
        cutoff = now - 60.0
        while self._completions and self._completions[0] < cutoff:
            self._completions.popleft()

    async def stats(self) -> Dict[str, Any]:
        """Pipeline counters plus job counts from the shared store."""
        counts = await self._job_store.counts()
        return {
            "pending_depth": counts.get("pending", 0),
            "jobs_by_status": counts,
            "completed_per_minute": await self._job_store.completed_since(60),
            "completed_per_minute_local": len(self._completions),
            "processed_total": self._processed_total,
            "completed_total": self._completed_total,
            "failed_total": self._failed_total,
            "batches_total": self._batches_total,
            "service": self._service.stats(),
        }


def _first_error(results, outcome: EmbeddingOutcome) -> Optional[str]:
    """First error message among results with ``outcome``."""
    for result in results:
        if result.outcome == outcome and result.error:
            return result.error
    return None
