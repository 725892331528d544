############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# health.py: Health check, stats and metrics endpoints
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Health check, stats and metrics endpoints."""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from sqlalchemy import text

from aiorch.app.api.deps import get_runtime
from aiorch.app.core.providers import CircuitState
from aiorch.app.db.session import get_async_db_context
from aiorch.app.logging_config import get_logger
from aiorch.app.runtime import Runtime

logger = get_logger(__name__)

router = APIRouter(tags=["health"])

# Prometheus metrics
REQUEST_COUNT = Counter(
    "aiorch_requests_total",
    "Total number of API requests",
    ["endpoint", "status"],
)
REQUEST_LATENCY = Histogram(
    "aiorch_request_latency_seconds",
    "Request latency in seconds",
    ["endpoint"],
)
QUEUE_DEPTH = Gauge(
    "aiorch_queue_depth",
    "Queued orchestrated requests by effective priority",
    ["priority"],
)
PROVIDER_CIRCUIT_STATE = Gauge(
    "aiorch_provider_circuit_state",
    "Circuit breaker state per provider (0=closed, 1=half_open, 2=open)",
    ["provider"],
)
CACHE_HIT_RATE = Gauge(
    "aiorch_cache_hit_rate",
    "Cache hit rate including coalesced lookups",
    ["cache"],
)
EMBEDDING_JOBS = Gauge(
    "aiorch_embedding_jobs",
    "Embedding jobs by status",
    ["status"],
)
TOKENS_PROCESSED = Counter(
    "aiorch_tokens_total",
    "Total provider tokens",
    ["type"],  # prompt, completion
)

_STATE_VALUES = {
    CircuitState.CLOSED.value: 0,
    CircuitState.HALF_OPEN.value: 1,
    CircuitState.OPEN.value: 2,
}


@router.get("/healthz")
async def liveness_probe() -> Dict[str, str]:
    """
    Liveness probe - checks if the application is running.

    Returns 200 if the application is alive.
    """
    return {"status": "alive", "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get("/readyz")
async def readiness_probe(
    response: Response,
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    """
    Readiness probe - checks if the application is ready to serve traffic.

    Checks:
    - Database connectivity
    - At least one provider with a circuit that is not open
    """
    checks = {
        "database": False,
        "providers": False,
    }

    try:
        async with get_async_db_context(runtime.session_factory) as db:
            await db.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.warning("readiness_database_failed", error=str(e))

    health = await runtime.registry.get_health()
    checks["providers"] = any(h.state != CircuitState.OPEN for h in health)

    all_ready = all(checks.values()) and runtime.started
    if not all_ready:
        response.status_code = 503

    return {
        "status": "ready" if all_ready else "not_ready",
        "checks": checks,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/api/stats")
async def runtime_stats(runtime: Runtime = Depends(get_runtime)) -> Dict[str, Any]:
    """Queue depth, provider health, cache hit rates, job counts and budgets."""
    stats = await runtime.stats()
    stats["service"] = runtime.settings.app_name
    stats["version"] = runtime.settings.app_version
    stats["timestamp"] = datetime.now(timezone.utc).isoformat()
    return stats


@router.get("/metrics")
async def prometheus_metrics(runtime: Runtime = Depends(get_runtime)) -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    if not runtime.settings.metrics_enabled:
        return Response(status_code=404)

    for level, depth in runtime.queue.depths().items():
        QUEUE_DEPTH.labels(priority=level).set(depth)

    for health in await runtime.registry.get_health():
        PROVIDER_CIRCUIT_STATE.labels(provider=health.provider_id).set(_STATE_VALUES[health.state.value])

    CACHE_HIT_RATE.labels(cache="response").set(runtime.response_cache.stats()["hit_rate"])
    CACHE_HIT_RATE.labels(cache="embedding").set(runtime.embedding_cache.stats()["hit_rate"])

    try:
        for status, count in (await runtime.job_store.counts()).items():
            EMBEDDING_JOBS.labels(status=status).set(count)
    except Exception as e:
        logger.warning("metrics_job_counts_failed", error=str(e))

    metrics = generate_latest()
    return Response(content=metrics, media_type=CONTENT_TYPE_LATEST)
