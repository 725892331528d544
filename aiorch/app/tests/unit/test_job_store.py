############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# test_job_store.py: Unit tests for the embedding job store
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Unit tests for EmbeddingJobStore against an in-memory database."""

import pytest

from aiorch.app.core.errors import ValidationError
from aiorch.app.services import EmbeddingJobStore


@pytest.fixture
def job_store(session_factory, clock):
    return EmbeddingJobStore(session_factory=session_factory, clock=clock, max_attempts=3, stale_seconds=600)


class TestEnqueue:

    @pytest.mark.asyncio
    async def test_enqueue_is_idempotent(self, job_store):
        first = await job_store.enqueue("msg-1", "message", "hello world")
        again = await job_store.enqueue("msg-1", "message", "hello world")

        assert first.outcome == "created"
        assert again.outcome == "existing"
        assert again.job_id == first.job_id
        assert (await job_store.counts())["pending"] == 1

    @pytest.mark.asyncio
    async def test_whitespace_only_edit_is_same_content(self, job_store):
        first = await job_store.enqueue("msg-1", "message", "hello world")
        again = await job_store.enqueue("msg-1", "message", "  hello   world ")
        assert again.outcome == "existing"
        assert again.content_hash == first.content_hash

    @pytest.mark.asyncio
    async def test_edit_supersedes_pending_job(self, job_store):
        first = await job_store.enqueue("msg-1", "message", "first draft")
        edited = await job_store.enqueue("msg-1", "message", "second draft")

        assert edited.outcome == "superseded"
        assert edited.job_id == first.job_id
        assert edited.content_hash != first.content_hash
        assert (await job_store.counts())["pending"] == 1

    @pytest.mark.asyncio
    async def test_edit_after_completion_creates_new_job(self, job_store):
        await job_store.enqueue("msg-1", "message", "first draft")
        jobs = await job_store.claim("worker-1", 10)
        await job_store.complete(jobs)

        edited = await job_store.enqueue("msg-1", "message", "second draft")
        assert edited.outcome == "created"
        assert edited.job_id != jobs[0].id

    @pytest.mark.asyncio
    async def test_rejects_invalid_items(self, job_store):
        with pytest.raises(ValidationError):
            await job_store.enqueue("", "message", "text")
        with pytest.raises(ValidationError):
            await job_store.enqueue("msg-1", "message", "   ")
        with pytest.raises(ValidationError):
            await job_store.enqueue("msg-1", "message", "x" * 9000)

    @pytest.mark.asyncio
    async def test_enqueue_many_accepts_dicts(self, job_store):
        results = await job_store.enqueue_many([
            {"source_id": "a", "source_type": "document", "content": "alpha"},
            ("b", "message", "beta"),
        ])
        assert [r.outcome for r in results] == ["created", "created"]
        status = await job_store.get_status(results[0].job_id)
        assert status["source_type"] == "document"
        assert status["status"] == "pending"

    @pytest.mark.asyncio
    async def test_metadata_travels_with_the_claim(self, job_store):
        await job_store.enqueue_many([
            {"source_id": "a", "content": "alpha", "metadata": {"channel_id": "c1"}},
            ("b", "message", "beta"),
        ])
        jobs = {job.source_id: job for job in await job_store.claim("worker-1", 10)}
        assert jobs["a"].metadata == {"channel_id": "c1"}
        assert jobs["b"].metadata == {}

    @pytest.mark.asyncio
    async def test_metadata_must_be_an_object(self, job_store):
        with pytest.raises(ValidationError):
            await job_store.enqueue("msg-1", "message", "text", metadata=["c1"])

    @pytest.mark.asyncio
    async def test_failed_content_can_be_requeued(self, job_store):
        first = await job_store.enqueue("msg-1", "message", "text")
        jobs = await job_store.claim("worker-1", 10)
        await job_store.fail(jobs, "invalid input", permanent=True)

        again = await job_store.enqueue("msg-1", "message", "text")
        assert again.outcome == "requeued"
        assert again.job_id == first.job_id
        status = await job_store.get_status(again.job_id)
        assert (status["status"], status["attempts"], status["last_error"]) == ("pending", 0, None)

        jobs = await job_store.claim("worker-1", 10)
        assert [job.id for job in jobs] == [first.job_id]


class TestClaim:

    @pytest.mark.asyncio
    async def test_claim_respects_limit(self, job_store):
        await job_store.enqueue_many([(f"msg-{i}", "message", f"text {i}") for i in range(12)])

        jobs = await job_store.claim("worker-1", 5)
        assert len(jobs) == 5
        assert all(job.attempts == 1 for job in jobs)
        assert all(job.claimed_by == "worker-1" for job in jobs)
        assert len({job.claim_token for job in jobs}) == 1

        counts = await job_store.counts()
        assert counts["processing"] == 5
        assert counts["pending"] == 7

    @pytest.mark.asyncio
    async def test_claims_never_overlap(self, job_store):
        await job_store.enqueue_many([(f"msg-{i}", "message", f"text {i}") for i in range(10)])

        first = await job_store.claim("worker-1", 6)
        second = await job_store.claim("worker-2", 6)
        assert len(first) == 6
        assert len(second) == 4
        assert not {j.id for j in first} & {j.id for j in second}
        assert await job_store.claim("worker-3", 6) == []

    @pytest.mark.asyncio
    async def test_source_in_processing_is_not_claimed_again(self, job_store):
        await job_store.enqueue("msg-1", "message", "v1")
        first = await job_store.claim("worker-1", 10)
        # New content arrives while the first version is being embedded
        await job_store.enqueue("msg-1", "message", "v2")

        assert await job_store.claim("worker-2", 10) == []

        await job_store.complete(first)
        second = await job_store.claim("worker-2", 10)
        assert [j.content for j in second] == ["v2"]


class TestSettle:

    @pytest.mark.asyncio
    async def test_complete(self, job_store):
        await job_store.enqueue("msg-1", "message", "text")
        jobs = await job_store.claim("worker-1", 10)
        assert await job_store.complete(jobs) == 1

        status = await job_store.get_status(jobs[0].id)
        assert status["status"] == "completed"
        assert status["completed_at"] is not None
        assert await job_store.completed_since(60) == 1

    @pytest.mark.asyncio
    async def test_retryable_failure_until_max_attempts(self, job_store):
        await job_store.enqueue("msg-1", "message", "text")

        for attempt in range(1, 3):
            jobs = await job_store.claim("worker-1", 10)
            assert jobs[0].attempts == attempt
            assert await job_store.fail(jobs, "provider down") == (1, 0)

        jobs = await job_store.claim("worker-1", 10)
        assert await job_store.fail(jobs, "provider down") == (0, 1)

        status = await job_store.get_status(jobs[0].id)
        assert status["status"] == "failed"
        assert status["attempts"] == 3
        assert status["last_error"] == "provider down"
        assert await job_store.claim("worker-1", 10) == []

    @pytest.mark.asyncio
    async def test_permanent_failure(self, job_store):
        await job_store.enqueue("msg-1", "message", "text")
        jobs = await job_store.claim("worker-1", 10)
        assert await job_store.fail(jobs, "invalid input", permanent=True) == (0, 1)
        assert (await job_store.counts())["failed"] == 1

    @pytest.mark.asyncio
    async def test_release_refunds_attempt(self, job_store):
        await job_store.enqueue("msg-1", "message", "text")
        jobs = await job_store.claim("worker-1", 10)
        assert await job_store.release(jobs, reason="rate limited") == 1

        status = await job_store.get_status(jobs[0].id)
        assert status["status"] == "pending"
        assert status["attempts"] == 0

    @pytest.mark.asyncio
    async def test_stale_claim_token_is_ignored(self, job_store, clock):
        await job_store.enqueue("msg-1", "message", "text")
        stale = await job_store.claim("worker-1", 10)

        clock.advance(601)
        await job_store.reclaim_stale()
        fresh = await job_store.claim("worker-2", 10)

        # The original worker finishing late must not settle the new claim
        assert await job_store.complete(stale) == 0
        assert await job_store.complete(fresh) == 1


class TestReclaim:

    @pytest.mark.asyncio
    async def test_reclaims_stuck_jobs(self, job_store, clock):
        await job_store.enqueue_many([("a", "message", "alpha"), ("b", "message", "beta")])
        await job_store.claim("worker-1", 1)

        clock.advance(300)
        assert await job_store.reclaim_stale() == (0, 0)

        clock.advance(301)
        assert await job_store.reclaim_stale() == (1, 0)
        assert (await job_store.counts())["pending"] == 2

    @pytest.mark.asyncio
    async def test_exhausted_stuck_jobs_fail(self, job_store, clock):
        await job_store.enqueue("a", "message", "alpha")
        for _ in range(3):
            await job_store.claim("worker-1", 1)
            clock.advance(601)
            reset, failed = await job_store.reclaim_stale()

        assert (reset, failed) == (0, 1)
        assert (await job_store.counts())["failed"] == 1
