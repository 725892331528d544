############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# test_api.py: HTTP API tests against an in-process application
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""HTTP API tests: endpoints, error mapping, probes and metrics."""

import httpx
import pytest
import pytest_asyncio

from aiorch.app.main import create_app
from aiorch.app.runtime import build_runtime
from aiorch.app.settings import BudgetConfig, ProviderConfig

MODEL = "static-embedding-8"


@pytest_asyncio.fixture
async def api(settings_factory, session_factory, clock):
    """Factory returning (runtime, client) pairs; the runtime is started unless start=False."""
    opened = []

    async def build(start=True, **overrides):
        runtime = build_runtime(settings_factory(**overrides), session_factory=session_factory, clock=clock)
        if start:
            await runtime.start()
        transport = httpx.ASGITransport(app=create_app(runtime))
        client = httpx.AsyncClient(transport=transport, base_url="http://testserver")
        opened.append((runtime, client))
        return runtime, client

    yield build
    for runtime, client in opened:
        await client.aclose()
        await runtime.stop()


@pytest_asyncio.fixture
async def client(api):
    _, client = await api()
    return client


class TestProbes:

    @pytest.mark.asyncio
    async def test_healthz(self, client):
        response = await client.get("/healthz")
        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    @pytest.mark.asyncio
    async def test_readyz(self, client):
        response = await client.get("/readyz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ready"
        assert body["checks"] == {"database": True, "providers": True}

    @pytest.mark.asyncio
    async def test_not_ready_before_start(self, api):
        _, client = await api(start=False)
        response = await client.get("/readyz")
        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"

    @pytest.mark.asyncio
    async def test_request_id_echoed(self, client):
        response = await client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["x-request-id"] == "req-123"


class TestAIRequests:

    @pytest.mark.asyncio
    async def test_submit_and_cache(self, client):
        body = {"kind": "summarization", "payload": {"text": "Quarterly numbers are up"}}

        response = await client.post("/v1/ai/requests", json=body)
        assert response.status_code == 200
        data = response.json()
        assert data["provider_id"] == "local-static"
        assert data["output"]["content"] == "Quarterly numbers are up"
        assert data["cached"] is False

        again = await client.post("/v1/ai/requests", json=body)
        assert again.json()["cached"] is True

    @pytest.mark.asyncio
    async def test_rate_limited(self, api):
        _, client = await api(rate_limit_capacity=1, rate_limit_refill_per_second=0.5)
        headers = {"X-Principal": "user-1"}

        first = await client.post(
            "/v1/ai/requests", json={"kind": "moderation", "payload": {"text": "one"}}, headers=headers
        )
        assert first.status_code == 200

        second = await client.post(
            "/v1/ai/requests", json={"kind": "moderation", "payload": {"text": "two"}}, headers=headers
        )
        assert second.status_code == 429
        assert second.headers["retry-after"] == "2"
        assert second.json()["error"]["type"] == "rate_limit_exceeded"

        # Another principal has its own bucket
        other = await client.post(
            "/v1/ai/requests",
            json={"kind": "moderation", "payload": {"text": "two"}},
            headers={"X-Principal": "user-2"},
        )
        assert other.status_code == 200

    @pytest.mark.asyncio
    async def test_budget_exceeded(self, api):
        provider = ProviderConfig(
            id="local-static",
            kind="static",
            model_id=MODEL,
            capabilities=["embedding", "summarization", "moderation", "chat"],
            dimension=8,
            price_per_1k_tokens=1.0,
        )
        _, client = await api(
            providers=[provider],
            budgets=[BudgetConfig(scope_key="team-a", limit=0.001)],
        )

        response = await client.post(
            "/v1/ai/requests",
            json={"kind": "summarization", "payload": {"text": "long report"}, "scope_key": "team-a"},
        )
        assert response.status_code == 402
        assert response.json()["error"]["type"] == "budget_exceeded"

    @pytest.mark.asyncio
    async def test_invalid_requests(self, client):
        response = await client.post("/v1/ai/requests", json={"kind": "translate", "payload": {"text": "x"}})
        assert response.status_code == 422

        response = await client.post("/v1/ai/requests", json={"kind": "summarization", "payload": {"text": " "}})
        assert response.status_code == 400
        assert response.json()["error"]["type"] == "invalid_request_error"


class TestEmbeddings:

    @pytest.mark.asyncio
    async def test_direct_embeddings(self, client):
        response = await client.post("/v1/embeddings", json={"input": ["alpha", "beta"]})
        assert response.status_code == 200
        data = response.json()
        assert data["model"] == MODEL
        assert [d["index"] for d in data["data"]] == [0, 1]
        assert all(len(d["embedding"]) == 8 for d in data["data"])

        response = await client.post("/v1/embeddings", json={"input": []})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_direct_embeddings_rate_limited_per_caller(self, api):
        _, client = await api(rate_limit_capacity=1, rate_limit_refill_per_second=0.5)
        headers = {"X-Principal": "user-1"}

        first = await client.post("/v1/embeddings", json={"input": ["alpha"]}, headers=headers)
        assert first.status_code == 200

        second = await client.post("/v1/embeddings", json={"input": ["beta"]}, headers=headers)
        assert second.status_code == 429
        assert second.headers["retry-after"] == "2"
        assert second.json()["error"]["type"] == "rate_limit_exceeded"

        other = await client.post("/v1/embeddings", json={"input": ["beta"]}, headers={"X-Principal": "user-2"})
        assert other.status_code == 200

    @pytest.mark.asyncio
    async def test_jobs_are_idempotent(self, client):
        body = {"items": [
            {"source_id": "msg-1", "content": "standup moved to 10am"},
            {"source_id": "doc-1", "source_type": "document", "content": "onboarding guide"},
        ]}
        response = await client.post("/v1/embeddings/jobs", json=body)
        assert response.status_code == 202
        assert response.json()["created"] == 2

        again = await client.post("/v1/embeddings/jobs", json=body)
        assert again.json()["created"] == 0
        assert [j["outcome"] for j in again.json()["jobs"]] == ["existing", "existing"]

    @pytest.mark.asyncio
    async def test_search_after_pipeline_run(self, api):
        runtime, client = await api()
        await client.post("/v1/embeddings/jobs", json={"items": [
            {"source_id": "msg-1", "content": "standup moved to 10am"},
            {"source_id": "doc-1", "source_type": "document", "content": "onboarding guide"},
        ]})
        report = await runtime.pipeline.run_once("test-worker")
        assert report.completed == 2

        response = await client.post("/v1/search", json={"query": "standup moved to 10am", "top_k": 1})
        assert response.status_code == 200
        results = response.json()["results"]
        assert results[0]["source_id"] == "msg-1"
        assert results[0]["score"] == pytest.approx(1.0, abs=1e-4)

        response = await client.post(
            "/v1/search",
            json={"query": "standup moved to 10am", "filters": {"source_type": "document"}, "threshold": -1.0},
        )
        assert [r["source_id"] for r in response.json()["results"]] == ["doc-1"]

    @pytest.mark.asyncio
    async def test_job_metadata_is_searchable(self, api):
        runtime, client = await api()
        await client.post("/v1/embeddings/jobs", json={"items": [
            {"source_id": "a", "content": "release notes", "metadata": {"channel_id": "c1"}},
            {"source_id": "b", "content": "release notes", "metadata": {"channel_id": "c2"}},
        ]})
        await runtime.pipeline.run_once("test-worker")

        response = await client.post(
            "/v1/search", json={"query": "release notes", "filters": {"channel_id": "c1"}}
        )
        results = response.json()["results"]
        assert [r["source_id"] for r in results] == ["a"]
        assert results[0]["metadata"] == {"channel_id": "c1"}

    @pytest.mark.asyncio
    async def test_search_validation(self, client):
        response = await client.post("/v1/search", json={"query": "a"})
        assert response.status_code == 400

        response = await client.post("/v1/search", json={"top_k": 5})
        assert response.status_code == 422

        response = await client.post("/v1/search", json={"query": "hello", "top_k": 0})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_vector_search_on_empty_index(self, client):
        response = await client.post("/v1/search", json={"vector": [1.0] + [0.0] * 7})
        assert response.status_code == 200
        assert response.json()["results"] == []


class TestStatsAndMetrics:

    @pytest.mark.asyncio
    async def test_stats(self, client):
        await client.post("/v1/ai/requests", json={"kind": "chat", "payload": {"messages": [
            {"role": "user", "content": "hi there"},
        ]}})
        response = await client.get("/api/stats")
        assert response.status_code == 200
        stats = response.json()
        for key in ("queue", "orchestrator", "providers", "cache", "embedding", "vector_index", "budgets"):
            assert key in stats
        assert stats["orchestrator"]["completed"] == 1
        assert set(stats["queue"]["depths"]) == {"critical", "high", "normal", "low", "background"}

    @pytest.mark.asyncio
    async def test_metrics(self, client):
        await client.get("/healthz")
        response = await client.get("/metrics")
        assert response.status_code == 200
        assert "aiorch_queue_depth" in response.text
        assert "aiorch_provider_circuit_state" in response.text

    @pytest.mark.asyncio
    async def test_metrics_disabled(self, api):
        _, client = await api(metrics_enabled=False)
        response = await client.get("/metrics")
        assert response.status_code == 404
