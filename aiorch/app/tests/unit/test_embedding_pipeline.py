############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# test_embedding_pipeline.py: Unit tests for embedding and the job pipeline
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Unit tests for EmbeddingService and EmbeddingPipeline."""

import pytest

from aiorch.app.core.cache import ResponseCache
from aiorch.app.core.errors import ProviderRequestError, TransientProviderError, ValidationError
from aiorch.app.core.events import EmbeddingJobCompleted, EmbeddingJobFailed, EventBus
from aiorch.app.core.providers import Capability, ProviderRouter
from aiorch.app.core.providers.circuit_breaker import CircuitBreaker
from aiorch.app.core.retry import RetryPolicy
from aiorch.app.security.rate_limits import RateLimiter
from aiorch.app.services import (
    EmbeddingItem,
    EmbeddingJobStore,
    EmbeddingOutcome,
    EmbeddingPipeline,
    EmbeddingService,
    VectorStore,
)

MODEL = "static-embedding-8"
DIMENSION = 8


class Harness:
    """Wires one adapter through router, service, job store and pipeline."""

    def __init__(self, session_factory, clock, adapter, failure_threshold=5, rate_limiter=None,
                 batch_size=500, provider_batch_size=100):
        self.adapter = adapter
        self.breaker = CircuitBreaker(
            adapter.provider_id, failure_threshold=failure_threshold, cooldown_seconds=30, clock=clock
        )
        self.router = ProviderRouter(
            chains={Capability.EMBEDDING: [adapter]},
            breakers={adapter.provider_id: self.breaker},
            max_fallback_hops=0,
            clock=clock,
        )
        self.vector_store = VectorStore(session_factory=session_factory, clock=clock, default_model_id=MODEL)
        self.service = EmbeddingService(
            self.router,
            self.vector_store,
            cache=ResponseCache(clock=clock),
            rate_limiter=rate_limiter,
            retry_policy=RetryPolicy(max_attempts=1, base_delay=0.0, jitter=0.0),
            clock=clock,
            model_id=MODEL,
            dimension=DIMENSION,
            provider_batch_size=provider_batch_size,
            max_texts_per_request=5,
            principal_tier="member",
            rate_limit_max_wait=0.0,
        )
        self.job_store = EmbeddingJobStore(session_factory=session_factory, clock=clock, max_attempts=3)
        self.events = EventBus()
        self.pipeline = EmbeddingPipeline(
            self.job_store, self.service, events=self.events, clock=clock, batch_size=batch_size
        )


@pytest.fixture
def harness(session_factory, clock, scripted_adapter):
    def build(outcomes=None, **kwargs):
        adapter = scripted_adapter("embedder", outcomes=outcomes, model_id=MODEL, dimension=DIMENSION)
        return Harness(session_factory, clock, adapter, **kwargs)
    return build


class TestEmbedTexts:

    @pytest.mark.asyncio
    async def test_duplicates_sent_once_and_cached(self, harness):
        h = harness()
        vectors = await h.service.embed_texts(["alpha", "alpha", "beta"])

        assert len(vectors) == 3
        assert vectors[0] == vectors[1]
        assert all(len(v) == DIMENSION for v in vectors)
        assert h.adapter.calls == 1
        assert h.adapter.requests[0].payload["input"] == ["alpha", "beta"]

        await h.service.embed_texts(["beta"])
        assert h.adapter.calls == 1

    @pytest.mark.asyncio
    async def test_embed_query(self, harness):
        h = harness()
        vector = await h.service.embed_query("where is the meeting")
        assert len(vector) == DIMENSION

    @pytest.mark.asyncio
    async def test_validation(self, harness):
        h = harness()
        with pytest.raises(ValidationError):
            await h.service.embed_texts([])
        with pytest.raises(ValidationError):
            await h.service.embed_texts(["ok", "   "])
        with pytest.raises(ValidationError):
            await h.service.embed_texts(["x"] * 6)
        with pytest.raises(ValidationError):
            await h.service.embed_texts(["x" * 9000])
        assert h.adapter.calls == 0

    @pytest.mark.asyncio
    async def test_wrong_dimension_is_transient(self, session_factory, clock, scripted_adapter):
        adapter = scripted_adapter("embedder", model_id=MODEL, dimension=4)
        h = Harness(session_factory, clock, adapter)
        with pytest.raises(TransientProviderError):
            await h.service.embed_texts(["alpha"])


class TestEmbedBatch:

    @pytest.mark.asyncio
    async def test_same_content_embedded_once(self, harness):
        h = harness()
        results = await h.service.embed_batch([
            EmbeddingItem("a", "shared text"),
            EmbeddingItem("b", "shared text"),
            EmbeddingItem("c", "other text"),
            EmbeddingItem("d", "  "),
        ])

        assert [r.outcome for r in results] == [
            EmbeddingOutcome.EMBEDDED,
            EmbeddingOutcome.DEDUPLICATED,
            EmbeddingOutcome.EMBEDDED,
            EmbeddingOutcome.FAILED,
        ]
        assert not results[3].retryable
        assert h.adapter.calls == 1
        assert h.vector_store.stats()["models"][MODEL]["live"] == 3

    @pytest.mark.asyncio
    async def test_known_hash_skips_provider(self, harness):
        h = harness()
        await h.service.embed_batch([EmbeddingItem("a", "hello")])
        results = await h.service.embed_batch([EmbeddingItem("b", "hello", metadata={"channel_id": "c1"})])

        assert results[0].outcome == EmbeddingOutcome.DEDUPLICATED
        assert h.adapter.calls == 1
        matches = h.vector_store.search(await h.service.embed_query("hello"), filters={"channel_id": "c1"})
        assert [m.source_id for m in matches] == ["b"]

    @pytest.mark.asyncio
    async def test_failed_sub_batch_isolated(self, harness):
        h = harness(outcomes=[TransientProviderError("down", provider_id="embedder")], provider_batch_size=1)
        results = await h.service.embed_batch([EmbeddingItem("a", "first"), EmbeddingItem("b", "second")])

        assert results[0].outcome == EmbeddingOutcome.FAILED
        assert results[0].retryable
        assert results[1].outcome == EmbeddingOutcome.EMBEDDED


class TestPipeline:

    @pytest.mark.asyncio
    async def test_duplicate_heavy_backlog(self, harness):
        h = harness()
        await h.job_store.enqueue_many([(f"msg-{i}", "message", f"text {i % 10}") for i in range(5000)])

        depths = [(await h.pipeline.stats())["pending_depth"]]
        completed = 0
        while depths[-1] > 0:
            report = await h.pipeline.run_once("worker-1")
            completed += report.completed
            depths.append((await h.pipeline.stats())["pending_depth"])

        assert completed == 5000
        assert h.adapter.calls <= 10
        assert all(later < earlier for earlier, later in zip(depths, depths[1:]))
        assert h.vector_store.stats()["models"][MODEL]["live"] == 5000

    @pytest.mark.asyncio
    async def test_completion_events(self, harness):
        h = harness()
        completed = []
        h.events.subscribe(EmbeddingJobCompleted, completed.append)
        await h.job_store.enqueue_many([("a", "message", "same"), ("b", "message", "same")])

        report = await h.pipeline.run_once("worker-1")
        assert (report.claimed, report.completed, report.deduplicated) == (2, 2, 1)
        assert sorted(e.source_id for e in completed) == ["a", "b"]
        assert all(e.model_id == MODEL for e in completed)

    @pytest.mark.asyncio
    async def test_transient_failure_requeues(self, harness):
        h = harness(outcomes=[TransientProviderError("down", provider_id="embedder")])
        job = await h.job_store.enqueue("a", "message", "hello")

        report = await h.pipeline.run_once("worker-1")
        assert (report.requeued, report.failed) == (1, 0)
        status = await h.job_store.get_status(job.job_id)
        assert status["status"] == "pending"
        assert status["attempts"] == 1

        report = await h.pipeline.run_once("worker-1")
        assert report.completed == 1

    @pytest.mark.asyncio
    async def test_permanent_failure_recorded(self, harness):
        h = harness(outcomes=[ProviderRequestError("bad input", provider_id="embedder", status_code=400)])
        failed = []
        h.events.subscribe(EmbeddingJobFailed, failed.append)
        job = await h.job_store.enqueue("a", "message", "hello")

        report = await h.pipeline.run_once("worker-1")
        assert report.failed == 1
        status = await h.job_store.get_status(job.job_id)
        assert status["status"] == "failed"
        assert "bad input" in status["last_error"]
        assert [e.source_id for e in failed] == ["a"]
        assert failed[0].permanent

    @pytest.mark.asyncio
    async def test_rate_limit_defers_without_attempt(self, harness, clock):
        h = harness(rate_limiter=RateLimiter(capacity=1, refill_rate=0.01, clock=clock))
        await h.job_store.enqueue("a", "message", "first")
        assert (await h.pipeline.run_once("worker-1")).completed == 1

        job = await h.job_store.enqueue("b", "message", "second")
        report = await h.pipeline.run_once("worker-1")
        assert report.deferred == 1
        status = await h.job_store.get_status(job.job_id)
        assert status["status"] == "pending"
        assert status["attempts"] == 0
        assert h.adapter.calls == 1

    @pytest.mark.asyncio
    async def test_open_circuit_defers(self, harness):
        h = harness(outcomes=[TransientProviderError("down", provider_id="embedder")], failure_threshold=1)
        job = await h.job_store.enqueue("a", "message", "hello")

        assert (await h.pipeline.run_once("worker-1")).requeued == 1
        assert h.breaker.snapshot().state.value == "open"

        report = await h.pipeline.run_once("worker-1")
        assert report.deferred == 1
        status = await h.job_store.get_status(job.job_id)
        assert status["attempts"] == 1
        assert h.adapter.calls == 1
