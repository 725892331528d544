############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# registry.py: Provider registry, breaker persistence and health
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Provider registry.

Owns the configured adapters and their circuit breakers, persists breaker
transitions and latency EMAs to ``provider_health``, and reloads them on
startup so a restarted instance does not hammer a provider that was
already failing.
"""

import asyncio
from typing import Any, Dict, List, Optional

from aiorch.app.core.clock import SYSTEM_CLOCK, Clock
from aiorch.app.core.errors import PersistenceError
from aiorch.app.core.events import CircuitStateChanged, EventBus
from aiorch.app.core.providers.adapters import create_adapter
from aiorch.app.core.providers.adapters.base import ProviderAdapter
from aiorch.app.core.providers.circuit_breaker import CircuitBreaker, CircuitState, ProviderHealth
from aiorch.app.core.providers.latency_tracker import LatencyTracker
from aiorch.app.core.providers.models import Capability
from aiorch.app.core.providers.router import ProviderRouter
from aiorch.app.db import crud
from aiorch.app.db.session import run_db_operation
from aiorch.app.logging_config import get_logger
from aiorch.app.settings import Settings

logger = get_logger(__name__)


def _health_from_record(record) -> ProviderHealth:
    return ProviderHealth(
        provider_id=record.provider_id,
        state=CircuitState(record.state),
        failure_count=record.failure_count or 0,
        window_start=crud._ensure_aware(record.window_start),
        opened_at=crud._ensure_aware(record.opened_at),
        latency_ema_ms=record.latency_ema_ms,
    )


class ProviderRegistry:
    """
    Central registry for provider adapters.

    Responsibilities:
    - Build adapters and circuit breakers from configuration
    - Persist breaker transitions and latency EMAs
    - Restore and refresh breaker state from the shared store
    - Build the ProviderRouter fallback chains
    """

    def __init__(
        self,
        settings: Settings,
        clock: Clock = SYSTEM_CLOCK,
        events: Optional[EventBus] = None,
        session_factory=None,
        adapters: Optional[List[ProviderAdapter]] = None,
    ):
        self._settings = settings
        self._clock = clock
        self._events = events
        self._session_factory = session_factory
        self._persist_task: Optional[asyncio.Task] = None
        self._latency_tracker = LatencyTracker(alpha=settings.latency_ema_alpha)

        if adapters is None:
            adapters = [create_adapter(config) for config in settings.providers]
        self._adapters: Dict[str, ProviderAdapter] = {}
        self._breakers: Dict[str, CircuitBreaker] = {}
        for adapter in adapters:
            if adapter.provider_id in self._adapters:
                raise ValueError(f"Duplicate provider id '{adapter.provider_id}'")
            self._adapters[adapter.provider_id] = adapter
            self._breakers[adapter.provider_id] = CircuitBreaker.from_settings(
                adapter.provider_id,
                settings,
                clock=clock,
                on_transition=self._on_transition,
            )

    @property
    def latency_tracker(self) -> LatencyTracker:
        """Access the latency tracker."""
        return self._latency_tracker

    @property
    def breakers(self) -> Dict[str, CircuitBreaker]:
        return self._breakers

    def get_adapter(self, provider_id: str) -> Optional[ProviderAdapter]:
        return self._adapters.get(provider_id)

    def chain(self, capability: Capability) -> List[ProviderAdapter]:
        """Adapters supporting ``capability`` in configured order."""
        return [a for a in self._adapters.values() if a.supports(capability)]

    def build_router(self, retry_policy=None) -> ProviderRouter:
        return ProviderRouter(
            chains={cap: self.chain(cap) for cap in Capability},
            breakers=self._breakers,
            max_fallback_hops=self._settings.router_max_fallback_hops,
            latency_tracker=self._latency_tracker,
            retry_policy=retry_policy,
            clock=self._clock,
        )

    async def start(self) -> None:
        """Restore persisted breaker state and start the latency persist loop."""
        if self._session_factory is not None:
            records = await self._load_health_records()
            for record in records:
                breaker = self._breakers.get(record.provider_id)
                if breaker is not None:
                    await breaker.restore(_health_from_record(record))
            await self._latency_tracker.load(
                r for r in records if r.provider_id in self._adapters
            )
            self._persist_task = asyncio.create_task(self._persist_latency_loop())
        logger.info(
            "provider_registry_started",
            providers=list(self._adapters),
            open_circuits=[p for p, b in self._breakers.items() if b.state != CircuitState.CLOSED],
        )

    async def stop(self) -> None:
        """Stop background persistence and close adapters."""
        if self._persist_task:
            self._persist_task.cancel()
            try:
                await self._persist_task
            except asyncio.CancelledError:
                pass
            self._persist_task = None

            # Final persist of latency data before shutdown
            try:
                await self._persist_latency_data()
            except PersistenceError as e:
                logger.warning("shutdown_persist_error", error=str(e))

        for adapter in self._adapters.values():
            await adapter.close()
        logger.info("provider_registry_stopped")

    # ------------------------------------------------------------------
    # Breaker persistence
    # ------------------------------------------------------------------

    async def _on_transition(
        self,
        provider_id: str,
        old: CircuitState,
        new: CircuitState,
        snapshot: ProviderHealth,
    ) -> None:
        if self._session_factory is not None:
            try:
                await self._save_health(snapshot)
            except PersistenceError as e:
                logger.warning("provider_health_persist_error", provider_id=provider_id, error=str(e))
        if self._events is not None:
            await self._events.publish(
                CircuitStateChanged(
                    provider_id=provider_id,
                    previous_state=old.value,
                    new_state=new.value,
                    failure_count=snapshot.failure_count,
                )
            )

    async def _save_health(self, health: ProviderHealth) -> None:
        async def op(db):
            await crud.upsert_provider_health(
                db,
                provider_id=health.provider_id,
                state=health.state.value,
                failure_count=health.failure_count,
                window_start=health.window_start,
                opened_at=health.opened_at,
            )

        await run_db_operation(self._session_factory, op, "provider_health_upsert")

    async def _load_health_records(self) -> List[Any]:
        return await run_db_operation(
            self._session_factory, crud.get_all_provider_health, "provider_health_load"
        )

    async def refresh_from_store(self) -> int:
        """Adopt open circuits recorded by other instances; returns how many were adopted."""
        if self._session_factory is None:
            return 0
        adopted = 0
        for record in await self._load_health_records():
            breaker = self._breakers.get(record.provider_id)
            if breaker is not None and await breaker.merge_remote(_health_from_record(record)):
                adopted += 1
        return adopted

    # ------------------------------------------------------------------
    # Latency persistence
    # ------------------------------------------------------------------

    async def _persist_latency_loop(self) -> None:
        """Periodically persist latency EMA values to DB."""
        while True:
            try:
                await asyncio.sleep(self._settings.provider_health_persist_interval)
                await self._persist_latency_data()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("persist_latency_error", error=str(e))

    async def _persist_latency_data(self) -> None:
        """Write current latency EMAs to DB."""
        all_latencies = await self._latency_tracker.get_all_latencies()
        if not all_latencies:
            return

        async def op(db):
            for provider_id, latency_ema in all_latencies.items():
                await crud.update_provider_latency(db, provider_id, latency_ema)

        await run_db_operation(self._session_factory, op, "provider_latency_persist")

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def get_health(self) -> List[ProviderHealth]:
        latencies = await self._latency_tracker.get_all_latencies()
        health = []
        for provider_id, breaker in self._breakers.items():
            snapshot = breaker.snapshot()
            snapshot.latency_ema_ms = latencies.get(provider_id)
            health.append(snapshot)
        return health

    async def stats(self) -> Dict[str, Any]:
        providers = {}
        for health in await self.get_health():
            adapter = self._adapters[health.provider_id]
            providers[health.provider_id] = {
                "kind": adapter.kind,
                "model_id": adapter.model_id,
                "capabilities": sorted(c.value for c in adapter.capabilities),
                "state": health.state.value,
                "failure_count": health.failure_count,
                "opened_at": health.opened_at.isoformat() if health.opened_at else None,
                "latency_ema_ms": round(health.latency_ema_ms, 2) if health.latency_ema_ms is not None else None,
                "observations": self._latency_tracker.observation_count(health.provider_id),
            }
        return providers
