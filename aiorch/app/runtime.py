############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# runtime.py: Builds and owns the service graph for one process
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Service graph construction.

Every component is an explicit object created here with the same clock,
settings and session factory. The API process, the embedding worker and
the maintenance worker all call ``build_runtime`` and then start only the
parts they need.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from aiorch.app.core.budget import CostEstimator, CostTracker, MemoryBudgetStore, SqlBudgetStore
from aiorch.app.core.cache import ResponseCache, SqlCacheStore
from aiorch.app.core.clock import SYSTEM_CLOCK, Clock
from aiorch.app.core.events import EventBus
from aiorch.app.core.providers import ProviderRegistry, ProviderRouter
from aiorch.app.core.retry import RetryPolicy
from aiorch.app.core.scheduler import RequestQueue
from aiorch.app.db.session import get_session_factory
from aiorch.app.logging_config import get_logger
from aiorch.app.security.rate_limits import RateLimiter
from aiorch.app.services import (
    EmbeddingJobStore,
    EmbeddingPipeline,
    EmbeddingService,
    Orchestrator,
    VectorStore,
)
from aiorch.app.settings import Settings, get_settings

logger = get_logger(__name__)


@dataclass
class Runtime:
    """All long-lived services of one process."""

    settings: Settings
    clock: Clock
    events: EventBus
    session_factory: Any
    retry_policy: RetryPolicy
    rate_limiter: RateLimiter
    registry: ProviderRegistry
    router: ProviderRouter
    estimator: CostEstimator
    cost_tracker: CostTracker
    response_cache: ResponseCache
    embedding_cache: ResponseCache
    queue: RequestQueue
    orchestrator: Orchestrator
    job_store: EmbeddingJobStore
    vector_store: VectorStore
    embedding_service: EmbeddingService
    pipeline: EmbeddingPipeline
    started: bool = False
    _tasks: List[asyncio.Task] = field(default_factory=list)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, serve_requests: bool = True) -> None:
        """
        Restore shared state and start background tasks.

        Args:
            serve_requests: Start the orchestrator pool and the vector sync
                loop. Worker processes that only embed pass False.
        """
        if self.started:
            return
        await self.registry.start()
        await self.apply_budget_presets()
        await self.vector_store.load()

        if serve_requests:
            self.orchestrator.start()
            self._tasks.append(asyncio.create_task(self._vector_sync_loop(), name="vector-sync"))
            if self.settings.maintenance_in_process:
                from aiorch.app.workers.maintenance_worker import MaintenanceWorker

                worker = MaintenanceWorker(self)
                self._tasks.append(asyncio.create_task(worker.run(), name="maintenance"))

        self.started = True
        logger.info("runtime_started", serve_requests=serve_requests)

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

        await self.orchestrator.stop()
        await self.registry.stop()
        self.started = False
        logger.info("runtime_stopped")

    async def apply_budget_presets(self) -> None:
        """Configure every budget listed in settings."""
        for preset in self.settings.budgets:
            await self.cost_tracker.configure(
                preset.scope_key,
                preset.limit,
                mode=preset.mode,
                window_seconds=preset.window_seconds,
            )

    async def _vector_sync_loop(self) -> None:
        """Pick up vectors written by embedding workers in other processes."""
        while True:
            try:
                await asyncio.sleep(self.settings.vector_sync_interval)
                added = await self.vector_store.sync()
                if added:
                    logger.debug("vector_index_synced", added=added)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("vector_sync_error", error=str(e))

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def stats(self) -> Dict[str, Any]:
        """Queue depth per priority, provider health, cache hit rates, jobs and budgets."""
        return {
            "queue": self.queue.stats(),
            "orchestrator": self.orchestrator.stats(),
            "providers": await self.registry.stats(),
            "cache": {
                "response": self.response_cache.stats(),
                "embedding": self.embedding_cache.stats(),
            },
            "rate_limiter": self.rate_limiter.stats(),
            "embedding": await self.pipeline.stats(),
            "vector_index": self.vector_store.stats(),
            "budgets": await self.cost_tracker.get_stats(),
        }


def build_runtime(
    settings: Optional[Settings] = None,
    session_factory=None,
    clock: Clock = SYSTEM_CLOCK,
    adapters=None,
    events: Optional[EventBus] = None,
) -> Runtime:
    """
    Build the full service graph.

    Args:
        settings: Defaults to the process-wide settings
        session_factory: Defaults to the process-wide session factory
        clock: Time source shared by every component
        adapters: Provider adapters to use instead of ``settings.providers``
        events: Event bus; a new one is created when omitted
    """
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory()
    events = events or EventBus()

    retry_policy = RetryPolicy.from_settings(settings)
    rate_limiter = RateLimiter.from_settings(settings, clock=clock)
    registry = ProviderRegistry(
        settings,
        clock=clock,
        events=events,
        session_factory=session_factory,
        adapters=adapters,
    )
    router = registry.build_router(retry_policy=retry_policy)
    estimator = CostEstimator.from_settings(settings)

    if settings.budget_store == "database":
        budget_store = SqlBudgetStore(session_factory=session_factory, retry_policy=retry_policy)
    else:
        budget_store = MemoryBudgetStore()
    cost_tracker = CostTracker(
        budget_store,
        clock=clock,
        events=events,
        default_limit=settings.budget_default_limit,
        default_mode=settings.budget_default_mode,
        default_window_seconds=settings.budget_window_seconds,
    )

    response_cache = ResponseCache(
        ttl_seconds=settings.cache_ttl_seconds,
        max_entries=settings.cache_max_entries,
        clock=clock,
        name="response",
    )
    cache_store = None
    if settings.cache_persist_embeddings:
        cache_store = SqlCacheStore(session_factory=session_factory, clock=clock, retry_policy=retry_policy)
    embedding_cache = ResponseCache(
        ttl_seconds=settings.cache_ttl_seconds,
        max_entries=settings.cache_max_entries,
        clock=clock,
        store=cache_store,
        name="embedding",
    )

    queue = RequestQueue.from_settings(settings, clock=clock)
    orchestrator = Orchestrator(
        router,
        queue,
        cache=response_cache,
        rate_limiter=rate_limiter,
        cost_tracker=cost_tracker,
        estimator=estimator,
        clock=clock,
        pool_size=settings.orchestrator_pool_size,
        default_timeout=settings.request_default_timeout,
        provider_timeout=settings.provider_request_timeout,
    )

    job_store = EmbeddingJobStore.from_settings(
        settings, session_factory=session_factory, clock=clock, retry_policy=retry_policy
    )
    vector_store = VectorStore.from_settings(
        settings, session_factory=session_factory, clock=clock, retry_policy=retry_policy
    )
    embedding_service = EmbeddingService(
        router,
        vector_store,
        cache=embedding_cache,
        rate_limiter=rate_limiter,
        cost_tracker=cost_tracker,
        estimator=estimator,
        retry_policy=retry_policy,
        clock=clock,
        model_id=settings.embedding_model_id,
        dimension=settings.embedding_dimension,
        provider_batch_size=settings.embedding_provider_batch_size,
        max_text_length=settings.embedding_max_text_length,
        max_texts_per_request=settings.embedding_max_texts_per_request,
        scope_key=settings.embedding_scope_key,
        principal=settings.embedding_principal,
        rate_limit_max_wait=settings.embedding_rate_limit_max_wait,
    )
    pipeline = EmbeddingPipeline(
        job_store,
        embedding_service,
        events=events,
        clock=clock,
        batch_size=settings.embedding_batch_size,
    )

    return Runtime(
        settings=settings,
        clock=clock,
        events=events,
        session_factory=session_factory,
        retry_policy=retry_policy,
        rate_limiter=rate_limiter,
        registry=registry,
        router=router,
        estimator=estimator,
        cost_tracker=cost_tracker,
        response_cache=response_cache,
        embedding_cache=embedding_cache,
        queue=queue,
        orchestrator=orchestrator,
        job_store=job_store,
        vector_store=vector_store,
        embedding_service=embedding_service,
        pipeline=pipeline,
    )
