############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# test_orchestrator.py: Unit tests for the request orchestrator
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Unit tests for Orchestrator admission, execution and deadlines."""

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio

from aiorch.app.core.budget import CostEstimator, CostTracker, MemoryBudgetStore
from aiorch.app.core.cache import ResponseCache
from aiorch.app.core.errors import (
    BudgetExceeded,
    DeadlineExceeded,
    ProviderRequestError,
    QueueFull,
    RateLimitExceeded,
    RequestCancelled,
    TransientProviderError,
    ValidationError,
)
from aiorch.app.core.providers import Capability, ProviderRouter
from aiorch.app.core.providers.circuit_breaker import CircuitBreaker
from aiorch.app.core.scheduler import RequestQueue
from aiorch.app.security.rate_limits import RateLimiter
from aiorch.app.services import Orchestrator, SubmitRequest


def _summarize(text="hello world", **kwargs):
    return SubmitRequest(kind="summarization", payload={"text": text}, **kwargs)


@pytest_asyncio.fixture
async def make_orchestrator(clock):
    """Builds orchestrators over the given adapters and stops them afterwards."""
    created = []

    def build(adapters, capacity=100, pool_size=2, **kwargs):
        breakers = {a.provider_id: CircuitBreaker(a.provider_id, clock=clock) for a in adapters}
        router = ProviderRouter(
            chains={capability: adapters for capability in Capability},
            breakers=breakers,
            clock=clock,
        )
        orchestrator = Orchestrator(
            router,
            RequestQueue(default_capacity=capacity, clock=clock),
            cache=ResponseCache(clock=clock),
            clock=clock,
            pool_size=pool_size,
            **kwargs,
        )
        created.append(orchestrator)
        return orchestrator

    yield build
    for orchestrator in created:
        await orchestrator.stop()


class TestExecution:

    @pytest.mark.asyncio
    async def test_execute_returns_provider_output(self, make_orchestrator, scripted_adapter):
        adapter = scripted_adapter("primary")
        orchestrator = make_orchestrator([adapter])
        orchestrator.start()

        result = await orchestrator.execute(_summarize())
        assert result.output["content"] == "primary answer"
        assert result.provider_id == "primary"
        assert not result.cached
        assert (result.prompt_tokens, result.completion_tokens) == (10, 5)
        assert orchestrator.stats()["completed"] == 1

    @pytest.mark.asyncio
    async def test_repeat_request_served_from_cache(self, make_orchestrator, scripted_adapter):
        adapter = scripted_adapter("primary")
        orchestrator = make_orchestrator([adapter])
        orchestrator.start()

        await orchestrator.execute(_summarize())
        again = await orchestrator.execute(_summarize())
        assert again.cached
        assert again.cost == 0.0
        assert adapter.calls == 1
        assert orchestrator.stats()["cache_hits"] == 1

        await orchestrator.execute(_summarize(use_cache=False))
        assert adapter.calls == 2

    @pytest.mark.asyncio
    async def test_identical_concurrent_requests_share_a_call(self, make_orchestrator, scripted_adapter):
        adapter = scripted_adapter("primary", outcomes=[0.05])
        orchestrator = make_orchestrator([adapter], pool_size=3)
        orchestrator.start()

        futures = [await orchestrator.submit(_summarize()) for _ in range(3)]
        results = await asyncio.gather(*futures)
        assert adapter.calls == 1
        assert sum(1 for r in results if not r.cached) == 1

    @pytest.mark.asyncio
    async def test_falls_back_to_next_provider(self, make_orchestrator, scripted_adapter):
        primary = scripted_adapter("primary", outcomes=[TransientProviderError("down", provider_id="primary")])
        backup = scripted_adapter("backup")
        orchestrator = make_orchestrator([primary, backup])
        orchestrator.start()

        result = await orchestrator.execute(_summarize())
        assert result.provider_id == "backup"

    @pytest.mark.asyncio
    async def test_actual_cost_recorded(self, make_orchestrator, scripted_adapter, clock):
        tracker = CostTracker(MemoryBudgetStore(), clock=clock)
        await tracker.configure("team-a", 10.0)
        orchestrator = make_orchestrator(
            [scripted_adapter("primary")],
            cost_tracker=tracker,
            estimator=CostEstimator(default_price_per_1k=1.0, tokenizer_name=None),
        )
        orchestrator.start()

        result = await orchestrator.execute(_summarize(scope_key="team-a"))
        assert result.cost == pytest.approx(0.015)
        budget = await tracker.get_budget("team-a")
        assert budget.spent == pytest.approx(0.015)


class TestAdmission:

    @pytest.mark.asyncio
    async def test_validation(self, make_orchestrator, scripted_adapter):
        orchestrator = make_orchestrator([scripted_adapter("primary")])
        with pytest.raises(ValidationError):
            await orchestrator.submit(SubmitRequest(kind="translate", payload={"text": "hi"}))
        with pytest.raises(ValidationError):
            await orchestrator.submit(SubmitRequest(kind="summarization", payload={"text": "  "}))
        with pytest.raises(ValidationError):
            await orchestrator.submit(SubmitRequest(kind="embedding", payload={"input": []}))
        with pytest.raises(ValidationError):
            await orchestrator.submit(_summarize(priority="urgent"))

    @pytest.mark.asyncio
    async def test_rate_limit_refused_before_provider(self, make_orchestrator, scripted_adapter, clock):
        adapter = scripted_adapter("primary")
        orchestrator = make_orchestrator(
            [adapter], rate_limiter=RateLimiter(capacity=1, refill_rate=0.01, clock=clock)
        )
        orchestrator.start()

        await orchestrator.execute(_summarize(principal="user-1"))
        with pytest.raises(RateLimitExceeded) as exc_info:
            await orchestrator.submit(_summarize("another", principal="user-1"))
        assert exc_info.value.retry_after == pytest.approx(100.0)
        assert adapter.calls == 1

    @pytest.mark.asyncio
    async def test_budget_refused_before_provider(self, make_orchestrator, scripted_adapter, clock):
        adapter = scripted_adapter("primary")
        tracker = CostTracker(MemoryBudgetStore(), clock=clock)
        await tracker.configure("team-a", 0.01)
        orchestrator = make_orchestrator(
            [adapter],
            cost_tracker=tracker,
            estimator=CostEstimator(default_price_per_1k=1.0, tokenizer_name=None),
        )
        orchestrator.start()

        with pytest.raises(BudgetExceeded):
            await orchestrator.submit(_summarize(scope_key="team-a"))
        assert len(orchestrator.queue) == 0
        assert adapter.calls == 0
        assert (await tracker.get_budget("team-a")).spent == 0.0

    @pytest.mark.asyncio
    async def test_concurrent_requests_cannot_overspend(self, make_orchestrator, scripted_adapter, clock):
        adapter = scripted_adapter("primary", outcomes=[0.05, 0.05])
        estimator = CostEstimator(default_price_per_1k=1.0, tokenizer_name=None)
        estimate = estimator.estimate_request_cost("summarization", {"text": "first report"}, None)
        tracker = CostTracker(MemoryBudgetStore(), clock=clock)
        await tracker.configure("team-a", estimate * 1.5)
        orchestrator = make_orchestrator([adapter], pool_size=2, cost_tracker=tracker, estimator=estimator)

        first = await orchestrator.submit(_summarize("first report", scope_key="team-a"))
        second = await orchestrator.submit(_summarize("other report", scope_key="team-a"))
        orchestrator.start()
        results = await asyncio.gather(first, second, return_exceptions=True)

        assert adapter.calls == 1
        assert sum(isinstance(r, BudgetExceeded) for r in results) == 1
        budget = await tracker.get_budget("team-a")
        assert budget.reserved == pytest.approx(0.0)
        assert budget.spent == pytest.approx(0.015)

    @pytest.mark.asyncio
    async def test_failed_call_releases_reservation(self, make_orchestrator, scripted_adapter, clock):
        adapter = scripted_adapter(
            "primary", outcomes=[ProviderRequestError("bad request", provider_id="primary", status_code=400)]
        )
        tracker = CostTracker(MemoryBudgetStore(), clock=clock)
        await tracker.configure("team-a", 10.0)
        orchestrator = make_orchestrator(
            [adapter],
            cost_tracker=tracker,
            estimator=CostEstimator(default_price_per_1k=1.0, tokenizer_name=None),
        )
        orchestrator.start()

        with pytest.raises(ProviderRequestError):
            await orchestrator.execute(_summarize(scope_key="team-a"))
        budget = await tracker.get_budget("team-a")
        assert (budget.spent, budget.reserved) == (0.0, 0.0)

    @pytest.mark.asyncio
    async def test_queue_full(self, make_orchestrator, scripted_adapter):
        orchestrator = make_orchestrator([scripted_adapter("primary")], capacity=1)
        await orchestrator.submit(_summarize("first"))
        with pytest.raises(QueueFull):
            await orchestrator.submit(_summarize("second"))

    @pytest.mark.asyncio
    async def test_past_deadline_rejected(self, make_orchestrator, scripted_adapter, clock):
        orchestrator = make_orchestrator([scripted_adapter("primary")])
        with pytest.raises(DeadlineExceeded):
            await orchestrator.submit(_summarize(deadline=clock.now() - timedelta(seconds=1)))


class TestScheduling:

    @pytest.mark.asyncio
    async def test_higher_priority_runs_first(self, make_orchestrator, scripted_adapter):
        adapter = scripted_adapter("primary")
        orchestrator = make_orchestrator([adapter], pool_size=1)

        low = await orchestrator.submit(_summarize("background job", priority="background"))
        critical = await orchestrator.submit(_summarize("user waiting", priority="critical"))
        orchestrator.start()
        await asyncio.gather(low, critical)

        assert [r.payload["text"] for r in adapter.requests] == ["user waiting", "background job"]

    @pytest.mark.asyncio
    async def test_deadline_cancels_running_request(self, make_orchestrator, scripted_adapter):
        adapter = scripted_adapter("primary", outcomes=[5.0])
        orchestrator = make_orchestrator([adapter])
        orchestrator.start()

        with pytest.raises(DeadlineExceeded):
            await orchestrator.execute(_summarize(timeout=0.05))
        assert orchestrator.stats()["expired"] == 1

    @pytest.mark.asyncio
    async def test_deadline_releases_queue_slot(self, make_orchestrator, scripted_adapter):
        orchestrator = make_orchestrator([scripted_adapter("primary")], capacity=1)
        future = await orchestrator.submit(_summarize(timeout=0.01))

        with pytest.raises(DeadlineExceeded):
            await future
        assert len(orchestrator.queue) == 0
        await orchestrator.submit(_summarize("next"))

    @pytest.mark.asyncio
    async def test_stop_fails_queued_requests(self, make_orchestrator, scripted_adapter):
        orchestrator = make_orchestrator([scripted_adapter("primary")])
        future = await orchestrator.submit(_summarize())

        await orchestrator.stop()
        with pytest.raises(RequestCancelled):
            await future
