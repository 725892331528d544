############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# job_store.py: Durable embedding work queue
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Durable queue of "needs embedding" items.

Backed by the ``embedding_jobs`` table so that any number of worker
processes can share it. Claims are exclusive per row and per source_id;
every state change after a claim is conditional on the claim token, so a
worker whose claim was reclaimed as stale cannot overwrite the new owner.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from aiorch.app.core.clock import SYSTEM_CLOCK, Clock
from aiorch.app.core.errors import ValidationError
from aiorch.app.core.hashing import content_hash
from aiorch.app.db import crud
from aiorch.app.db.session import run_db_operation
from aiorch.app.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class EnqueueResult:
    """Outcome of enqueueing one item."""

    job_id: int
    source_id: str
    content_hash: str
    status: str
    outcome: str  # created, superseded, requeued or existing


@dataclass
class ClaimedJob:
    """A job claimed by one worker, detached from any session."""

    id: int
    source_id: str
    source_type: str
    content: str
    content_hash: str
    attempts: int
    claim_token: Optional[str]
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row) -> "ClaimedJob":
        return cls(
            id=row.id,
            source_id=row.source_id,
            source_type=row.source_type,
            content=row.content,
            content_hash=row.content_hash,
            attempts=row.attempts,
            claim_token=row.claim_token,
            claimed_by=row.claimed_by,
            claimed_at=crud._ensure_aware(row.claimed_at),
            metadata=dict(row.attributes or {}),
        )


# (source_id, source_type, content[, metadata]) or a dict with those keys
EnqueueItem = Union[Tuple, Dict[str, Any]]


class EmbeddingJobStore:
    """SQL-backed embedding job queue."""

    def __init__(
        self,
        session_factory=None,
        clock: Clock = SYSTEM_CLOCK,
        max_attempts: int = 5,
        stale_seconds: int = 600,
        max_text_length: int = 8000,
        retry_policy=None,
    ):
        self._session_factory = session_factory
        self._clock = clock
        self.max_attempts = max_attempts
        self._stale_seconds = stale_seconds
        self._max_text_length = max_text_length
        self._retry_policy = retry_policy

    @classmethod
    def from_settings(cls, settings, session_factory=None, clock: Clock = SYSTEM_CLOCK, retry_policy=None):
        return cls(
            session_factory=session_factory,
            clock=clock,
            max_attempts=settings.embedding_max_attempts,
            stale_seconds=settings.embedding_stale_seconds,
            max_text_length=settings.embedding_max_text_length,
            retry_policy=retry_policy,
        )

    async def _run(self, fn, operation: str, retry: bool = True):
        return await run_db_operation(
            self._session_factory, fn, operation, self._retry_policy if retry else None
        )

    def _validate(
        self, source_id: Any, source_type: Any, content: Any, metadata: Any = None
    ) -> Tuple[str, str, str, str, Optional[Dict[str, Any]]]:
        if not isinstance(source_id, str) or not source_id.strip():
            raise ValidationError("source_id must be a non-empty string")
        if len(source_id) > 191:
            raise ValidationError("source_id is too long", source_id=source_id[:50])
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("content must be a non-empty string", source_id=source_id)
        if len(content) > self._max_text_length:
            raise ValidationError(
                f"content exceeds {self._max_text_length} characters",
                source_id=source_id,
                length=len(content),
            )
        if metadata is not None and not isinstance(metadata, dict):
            raise ValidationError("metadata must be an object", source_id=source_id)
        return source_id, str(source_type or "message"), content, content_hash(content), metadata or None

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        source_id: str,
        source_type: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> EnqueueResult:
        """
        Enqueue one item; idempotent by content hash.

        Re-enqueueing unchanged content for a source is a no-op, unless its
        job has failed, in which case the job is requeued with fresh attempts.
        New content for a source with a pending job replaces that job's
        content. ``metadata`` (e.g. ``channel_id``) is stored on the vector
        and can be used as a search filter.
        """
        results = await self.enqueue_many([(source_id, source_type, content, metadata)])
        return results[0]

    async def enqueue_many(self, items: Iterable[EnqueueItem]) -> List[EnqueueResult]:
        """Enqueue many items in one transaction."""
        validated = []
        for item in items:
            if isinstance(item, dict):
                validated.append(self._validate(
                    item.get("source_id"), item.get("source_type"), item.get("content"), item.get("metadata")
                ))
            else:
                validated.append(self._validate(*item))
        if not validated:
            return []

        async def op(db):
            outcomes = await crud.enqueue_jobs(db, validated)
            return [
                EnqueueResult(
                    job_id=job.id,
                    source_id=job.source_id,
                    content_hash=job.content_hash,
                    status=job.status.value,
                    outcome=outcome,
                )
                for job, outcome in outcomes
            ]

        results = await self._run(op, "embedding_jobs_enqueue")
        created = sum(1 for r in results if r.outcome != "existing")
        logger.info("embedding_jobs_enqueued", count=len(results), new_or_updated=created)
        return results

    # ------------------------------------------------------------------
    # Consumers
    # ------------------------------------------------------------------

    async def claim(self, worker_id: str, limit: int) -> List[ClaimedJob]:
        """Claim up to ``limit`` pending jobs. Claims are never retried blindly."""
        now = self._clock.now()

        async def op(db):
            rows = await crud.claim_jobs(db, worker_id=worker_id, limit=limit, now=now)
            return [ClaimedJob.from_row(r) for r in rows]

        jobs = await self._run(op, "embedding_jobs_claim", retry=False)
        if jobs:
            logger.info("job_claimed", worker_id=worker_id, count=len(jobs))
        return jobs

    @staticmethod
    def _by_token(jobs: Sequence[ClaimedJob]) -> Dict[Optional[str], List[int]]:
        groups: Dict[Optional[str], List[int]] = {}
        for job in jobs:
            groups.setdefault(job.claim_token, []).append(job.id)
        return groups

    async def complete(self, jobs: Sequence[ClaimedJob]) -> int:
        if not jobs:
            return 0
        now = self._clock.now()

        async def op(db):
            total = 0
            for token, ids in self._by_token(jobs).items():
                total += await crud.complete_jobs(db, ids, claim_token=token, now=now)
            return total

        return await self._run(op, "embedding_jobs_complete")

    async def fail(self, jobs: Sequence[ClaimedJob], error: str, permanent: bool = False) -> Tuple[int, int]:
        """Record a failed attempt. Returns (requeued, failed)."""
        if not jobs:
            return 0, 0

        async def op(db):
            requeued = failed = 0
            for token, ids in self._by_token(jobs).items():
                r, f = await crud.fail_jobs(
                    db, ids, error, self.max_attempts, claim_token=token, permanent=permanent
                )
                requeued += r
                failed += f
            return requeued, failed

        return await self._run(op, "embedding_jobs_fail")

    async def release(self, jobs: Sequence[ClaimedJob], reason: Optional[str] = None) -> int:
        """Return jobs to pending without consuming an attempt (deferred work)."""
        if not jobs:
            return 0

        async def op(db):
            total = 0
            for token, ids in self._by_token(jobs).items():
                total += await crud.release_jobs(db, ids, claim_token=token, refund_attempt=True, reason=reason)
            return total

        return await self._run(op, "embedding_jobs_release")

    # ------------------------------------------------------------------
    # Maintenance and stats
    # ------------------------------------------------------------------

    async def reclaim_stale(self, stale_seconds: Optional[int] = None) -> Tuple[int, int]:
        """Reset jobs stuck in processing. Returns (reset, failed)."""
        older_than = self._clock.now() - timedelta(seconds=stale_seconds or self._stale_seconds)

        async def op(db):
            return await crud.reclaim_stale_jobs(db, older_than=older_than, max_attempts=self.max_attempts)

        reset, failed = await self._run(op, "embedding_jobs_reclaim")
        if reset or failed:
            logger.warning("stale_jobs_reclaimed", reset=reset, failed=failed, older_than=older_than.isoformat())
        return reset, failed

    async def get_status(self, job_id: int) -> Optional[Dict[str, Any]]:
        async def op(db):
            row = await crud.get_job(db, job_id)
            if row is None:
                return None
            return {
                "id": row.id,
                "source_id": row.source_id,
                "source_type": row.source_type,
                "content_hash": row.content_hash,
                "status": row.status.value,
                "attempts": row.attempts,
                "last_error": row.last_error,
                "claimed_by": row.claimed_by,
                "completed_at": crud._ensure_aware(row.completed_at),
            }

        return await self._run(op, "embedding_jobs_status")

    async def counts(self) -> Dict[str, int]:
        return await self._run(crud.count_jobs_by_status, "embedding_jobs_count")

    async def completed_since(self, seconds: float) -> int:
        since = self._clock.now() - timedelta(seconds=seconds)

        async def op(db):
            return await crud.count_jobs_completed_since(db, since)

        return await self._run(op, "embedding_jobs_completed_since")
