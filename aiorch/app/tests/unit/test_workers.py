############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# test_workers.py: Unit tests for the embedding and maintenance workers
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Unit tests for EmbeddingWorker and MaintenanceWorker."""

import pytest
import pytest_asyncio

from aiorch.app.core.errors import PersistenceError
from aiorch.app.core.providers import CircuitState
from aiorch.app.runtime import build_runtime
from aiorch.app.services.pipeline import BatchReport
from aiorch.app.workers.embedding_worker import EmbeddingWorker
from aiorch.app.workers.maintenance_worker import MaintenanceWorker


@pytest_asyncio.fixture
async def runtime(settings, session_factory, clock):
    runtime = build_runtime(settings, session_factory=session_factory, clock=clock)
    yield runtime
    await runtime.stop()


class BrokenPipeline:
    """Pipeline whose every cycle fails."""

    async def run_once(self, worker_id):
        raise PersistenceError("database unavailable")


class DeferringPipeline:
    """Pipeline whose claimed jobs are always deferred, as behind an open circuit."""

    def __init__(self):
        self.cycles = 0

    async def run_once(self, worker_id):
        self.cycles += 1
        return BatchReport(worker_id=worker_id, claimed=1, deferred=1)


class TestEmbeddingWorker:

    @pytest.mark.asyncio
    async def test_processes_jobs_then_backs_off(self, runtime, clock):
        await runtime.job_store.enqueue_many([("a", "message", "deploy finished"), ("b", "message", "lunch?")])
        worker = EmbeddingWorker(runtime.pipeline, worker_id="w1", idle_sleep=1.0, max_idle_sleep=4.0, clock=clock)

        await worker.run(max_batches=4)

        assert worker.batches == 4
        assert (await runtime.job_store.counts())["completed"] == 2
        # Empty cycles back off exponentially up to the cap
        assert clock.sleeps == [1.0, 2.0, 4.0]

        query = await runtime.embedding_service.embed_query("deploy finished")
        matches = runtime.vector_store.search(query, top_k=1)
        assert [m.source_id for m in matches] == ["a"]

    @pytest.mark.asyncio
    async def test_backoff_resets_after_work(self, runtime, clock):
        worker = EmbeddingWorker(runtime.pipeline, worker_id="w1", idle_sleep=1.0, clock=clock)
        await worker.run(max_batches=2)
        assert clock.sleeps == [1.0, 2.0]

        await runtime.job_store.enqueue("a", "message", "hello")
        clock.sleeps.clear()
        await worker.run(max_batches=3)
        assert clock.sleeps == [1.0, 2.0]
        assert worker.batches == 5

    @pytest.mark.asyncio
    async def test_deferred_cycles_back_off(self, clock):
        pipeline = DeferringPipeline()
        worker = EmbeddingWorker(pipeline, worker_id="w1", idle_sleep=1.0, max_idle_sleep=8.0, clock=clock)
        await worker.run(max_batches=5)

        assert pipeline.cycles == 5
        assert clock.sleeps == [1.0, 2.0, 4.0, 8.0, 8.0]

    @pytest.mark.asyncio
    async def test_open_circuit_does_not_spin(self, runtime, clock):
        await runtime.job_store.enqueue("a", "message", "hello")
        breaker = runtime.registry.breakers["local-static"]
        while breaker.state != CircuitState.OPEN:
            await breaker.record_result(False)

        worker = EmbeddingWorker(runtime.pipeline, worker_id="w1", idle_sleep=1.0, max_idle_sleep=4.0, clock=clock)
        await worker.run(max_batches=3)

        assert clock.sleeps == [1.0, 2.0, 4.0]
        assert (await runtime.job_store.counts())["pending"] == 1

    @pytest.mark.asyncio
    async def test_run_once_returns_report(self, runtime, clock):
        await runtime.job_store.enqueue("a", "message", "hello")
        worker = EmbeddingWorker(runtime.pipeline, worker_id="w1", clock=clock)
        report = await worker.run_once()
        assert isinstance(report, BatchReport)
        assert (report.worker_id, report.completed) == ("w1", 1)

    @pytest.mark.asyncio
    async def test_failed_cycle_is_logged_and_retried(self, clock):
        worker = EmbeddingWorker(BrokenPipeline(), worker_id="w1", idle_sleep=0.5, clock=clock)
        await worker.run(max_batches=2)
        assert clock.sleeps == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_stop_before_run(self, runtime, clock):
        worker = EmbeddingWorker(runtime.pipeline, worker_id="w1", clock=clock)
        worker.request_stop()
        await worker.run()
        assert worker.batches == 0
        assert worker.stopping


class TestMaintenanceWorker:

    @pytest.mark.asyncio
    async def test_run_once_runs_every_step(self, runtime, clock):
        await runtime.job_store.enqueue("a", "message", "stuck")
        await runtime.job_store.claim("crashed-worker", 10)
        clock.advance(runtime.settings.embedding_stale_seconds + 1)

        worker = MaintenanceWorker(runtime, interval=60, worker_id="m1")
        results = await worker.run_once()

        assert results["reclaimed_jobs"] == {"reset": 1, "failed": 0}
        assert set(results["cache_evictions"]) == {"response", "embedding", "embedding_durable"}
        assert isinstance(results["rate_limit_buckets_removed"], int)
        assert isinstance(results["vector_index"], dict)
        assert results["providers_refreshed"] == 0
        assert worker.cycles == 1
        assert (await runtime.job_store.counts())["pending"] == 1

    @pytest.mark.asyncio
    async def test_failing_step_does_not_stop_others(self, runtime, monkeypatch):
        async def broken():
            raise PersistenceError("database unavailable")

        monkeypatch.setattr(runtime.job_store, "reclaim_stale", broken)
        worker = MaintenanceWorker(runtime, interval=60, worker_id="m1")
        results = await worker.run_once()

        assert results["reclaimed_jobs"] is None
        assert results["cache_evictions"] is not None
        assert results["providers_refreshed"] == 0
