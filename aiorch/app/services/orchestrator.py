############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# orchestrator.py: Request admission, scheduling and execution
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Orchestrator - the entry point for AI feature calls.

``submit()`` runs the admission checks synchronously (validation, rate
limit, budget estimate) so policy refusals reach the caller immediately,
then enqueues the request by priority and returns a future. A fixed pool
of worker tasks drains the queue: each request goes through the response
cache (single-flight) and, on a miss, the provider router, with actual
spend recorded afterwards.

Every request has a deadline. When it passes, the caller's future fails
with DeadlineExceeded, a queued request gives up its slot and a running
request is cancelled.
"""

import asyncio
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from aiorch.app.core.budget import CostEstimator, CostTracker
from aiorch.app.core.cache import CacheKey, ResponseCache
from aiorch.app.core.clock import SYSTEM_CLOCK, Clock
from aiorch.app.core.errors import DeadlineExceeded, RequestCancelled, ValidationError
from aiorch.app.core.hashing import content_hash
from aiorch.app.core.providers import Capability, ProviderRequest, ProviderRouter
from aiorch.app.core.scheduler import Priority, QueueEntry, RequestQueue
from aiorch.app.logging_config import get_logger
from aiorch.app.security.rate_limits import RateLimiter

logger = get_logger(__name__)


@dataclass(frozen=True)
class AIRequest:
    """An admitted request. Resubmission creates a new AIRequest."""

    id: str
    kind: str
    priority: Priority
    payload: Dict[str, Any]
    content_hash: str
    scope_key: str
    principal: str
    model_id: str
    estimated_cost: float
    deadline: datetime
    created_at: datetime


@dataclass
class SubmitRequest:
    """Caller-facing request description."""

    kind: str
    payload: Dict[str, Any]
    priority: Union[str, int, Priority] = Priority.NORMAL
    scope_key: str = "default"
    principal: str = "anonymous"
    model_id: Optional[str] = None
    deadline: Optional[datetime] = None
    timeout: Optional[float] = None
    tier: str = "member"
    use_cache: bool = True
    wait_for_slot: bool = False


@dataclass
class OrchestrationResult:
    """Result delivered through the submit() future."""

    request_id: str
    kind: str
    output: Any
    provider_id: Optional[str]
    model_id: str
    cached: bool = False
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost: float = 0.0
    latency_ms: float = 0.0
    queued_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(eq=False)
class _PendingRequest:
    request: AIRequest
    future: asyncio.Future
    use_cache: bool
    expires_at: float  # loop.time()
    entry: Optional[QueueEntry] = None
    task: Optional[asyncio.Task] = None
    timer: Optional[asyncio.TimerHandle] = None
    stage: str = field(default="queued")


class Orchestrator:
    """Admission control plus a bounded worker pool over the RequestQueue."""

    def __init__(
        self,
        router: ProviderRouter,
        queue: RequestQueue,
        cache: Optional[ResponseCache] = None,
        rate_limiter: Optional[RateLimiter] = None,
        cost_tracker: Optional[CostTracker] = None,
        estimator: Optional[CostEstimator] = None,
        clock: Clock = SYSTEM_CLOCK,
        pool_size: int = 8,
        default_timeout: float = 60.0,
        provider_timeout: float = 30.0,
    ):
        self._router = router
        self._queue = queue
        self._cache = cache
        self._rate_limiter = rate_limiter
        self._cost_tracker = cost_tracker
        self._estimator = estimator or CostEstimator(tokenizer_name=None)
        self._clock = clock
        self._pool_size = max(1, pool_size)
        self._default_timeout = default_timeout
        self._provider_timeout = provider_timeout

        self._workers: List[asyncio.Task] = []
        self._busy = 0
        self._submitted = 0
        self._completed = 0
        self._failed = 0
        self._expired = 0
        self._cache_hits = 0

    @property
    def queue(self) -> RequestQueue:
        return self._queue

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the worker pool."""
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker_loop(n), name=f"orchestrator-worker-{n}")
            for n in range(self._pool_size)
        ]
        logger.info("orchestrator_started", pool_size=self._pool_size)

    async def stop(self) -> None:
        """Stop workers and fail everything still queued."""
        for task in self._workers:
            task.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        drained = 0
        while True:
            entry = self._queue.get_nowait()
            if entry is None:
                break
            pending: _PendingRequest = entry.item
            if pending.timer:
                pending.timer.cancel()
            if not pending.future.done():
                pending.future.set_exception(RequestCancelled("Orchestrator is shutting down"))
                drained += 1
        logger.info("orchestrator_stopped", drained=drained)

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    @staticmethod
    def _validate(req: SubmitRequest) -> Capability:
        try:
            capability = Capability(req.kind)
        except ValueError:
            raise ValidationError(
                f"Unknown request kind '{req.kind}'",
                allowed=[c.value for c in Capability],
            ) from None
        if not isinstance(req.payload, dict) or not req.payload:
            raise ValidationError("payload must be a non-empty object")

        if capability == Capability.EMBEDDING:
            texts = req.payload.get("input", req.payload.get("texts"))
            if isinstance(texts, str):
                texts = [texts]
            if not texts or not all(isinstance(t, str) and t.strip() for t in texts):
                raise ValidationError("Embedding payload needs 'input' with non-empty strings")
        else:
            messages = req.payload.get("messages")
            text = req.payload.get("text")
            if messages:
                if not isinstance(messages, list) or not all(isinstance(m, dict) for m in messages):
                    raise ValidationError("'messages' must be a list of objects")
            elif not isinstance(text, str) or not text.strip():
                raise ValidationError("Payload needs 'text' or 'messages'")
        return capability

    def _default_model(self, capability: Capability) -> str:
        chain = self._router.chain(capability)
        return chain[0].model_id if chain else "default"

    def _timeout_for(self, req: SubmitRequest, now: datetime) -> float:
        candidates = []
        if req.deadline is not None:
            candidates.append((req.deadline - now).total_seconds())
        if req.timeout is not None:
            candidates.append(req.timeout)
        timeout = min(candidates) if candidates else self._default_timeout
        if timeout <= 0:
            raise DeadlineExceeded("Request deadline has already passed")
        return timeout

    async def submit(self, req: SubmitRequest) -> asyncio.Future:
        """
        Admit and enqueue a request.

        Returns:
            Future resolving to an OrchestrationResult

        Raises:
            ValidationError: malformed request
            RateLimitExceeded: principal has no tokens left
            BudgetExceeded: hard budget would be exceeded by the estimate
            QueueFull: the request's priority level is at capacity
            DeadlineExceeded: the deadline has already passed
        """
        capability = self._validate(req)
        priority = Priority.from_str(req.priority)

        if self._rate_limiter is not None:
            await self._rate_limiter.acquire(req.principal, cost=1.0, tier=req.tier)

        model_id = req.model_id or self._default_model(capability)
        estimate = self._estimator.estimate_request_cost(capability.value, req.payload, model_id)
        if self._cost_tracker is not None:
            await self._cost_tracker.check_budget(req.scope_key, estimate, warn=False)

        now = self._clock.now()
        timeout = self._timeout_for(req, now)
        request = AIRequest(
            id=uuid.uuid4().hex,
            kind=capability.value,
            priority=priority,
            payload=dict(req.payload),
            content_hash=content_hash({"kind": capability.value, "payload": req.payload}),
            scope_key=req.scope_key,
            principal=req.principal,
            model_id=model_id,
            estimated_cost=estimate,
            deadline=now + timedelta(seconds=timeout),
            created_at=now,
        )

        loop = asyncio.get_running_loop()
        pending = _PendingRequest(
            request=request,
            future=loop.create_future(),
            use_cache=req.use_cache,
            expires_at=loop.time() + timeout,
        )
        if req.wait_for_slot:
            pending.entry = await self._queue.put(pending, priority, timeout=timeout)
        else:
            pending.entry = self._queue.put_nowait(pending, priority)
        pending.timer = loop.call_at(pending.expires_at, self._expire, pending)
        self._submitted += 1

        logger.debug(
            "request_submitted",
            request_id=request.id,
            kind=request.kind,
            priority=priority.name.lower(),
            scope_key=request.scope_key,
            estimated_cost=round(estimate, 6),
        )
        return pending.future

    async def execute(self, req: SubmitRequest) -> OrchestrationResult:
        """Submit and wait for the result."""
        future = await self.submit(req)
        return await future

    def _expire(self, pending: _PendingRequest) -> None:
        if pending.future.done():
            return
        self._expired += 1
        pending.future.set_exception(
            DeadlineExceeded(
                f"Request {pending.request.id} exceeded its deadline",
                request_id=pending.request.id,
                stage=pending.stage,
            )
        )
        if pending.entry is not None:
            self._queue.cancel(pending.entry)
        if pending.task is not None and not pending.task.done():
            pending.task.cancel()
        logger.warning(
            "request_deadline_exceeded",
            request_id=pending.request.id,
            kind=pending.request.kind,
            stage=pending.stage,
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _worker_loop(self, worker_num: int) -> None:
        """Take one request at a time; a worker only dequeues when it is free."""
        while True:
            entry = await self._queue.get()
            pending: _PendingRequest = entry.item
            if pending.future.done():
                continue

            pending.stage = "running"
            queued_ms = entry.wait_seconds(self._clock.monotonic()) * 1000
            pending.task = asyncio.create_task(self._process(pending, queued_ms))
            self._busy += 1
            try:
                await asyncio.wait({pending.task})
            except asyncio.CancelledError:
                pending.task.cancel()
                if not pending.future.done():
                    pending.future.set_exception(RequestCancelled("Orchestrator is shutting down"))
                raise
            finally:
                self._busy -= 1
            self._settle(pending)

    def _settle(self, pending: _PendingRequest) -> None:
        if pending.timer:
            pending.timer.cancel()
        task = pending.task
        if pending.future.done():
            # Deadline already reported; retrieve the outcome so it is not logged as unhandled
            if not task.cancelled():
                task.exception()
            return
        if task.cancelled():
            pending.future.set_exception(RequestCancelled(f"Request {pending.request.id} was cancelled"))
            self._failed += 1
            return
        error = task.exception()
        if error is not None:
            self._failed += 1
            logger.info(
                "request_failed",
                request_id=pending.request.id,
                kind=pending.request.kind,
                error=str(error),
                error_type=type(error).__name__,
            )
            pending.future.set_exception(error)
            return
        self._completed += 1
        pending.future.set_result(task.result())

    async def _process(self, pending: _PendingRequest, queued_ms: float) -> OrchestrationResult:
        request = pending.request
        capability = Capability(request.kind)
        loop = asyncio.get_running_loop()
        computed = False

        async def compute() -> Dict[str, Any]:
            nonlocal computed
            computed = True
            reservation = None
            if self._cost_tracker is not None:
                reservation = await self._cost_tracker.reserve(request.scope_key, request.estimated_cost)

            remaining = pending.expires_at - loop.time()
            try:
                result = await self._router.execute(
                    ProviderRequest(
                        capability=capability,
                        payload=dict(request.payload),
                        model_id=request.model_id,
                        request_id=request.id,
                    ),
                    timeout=max(0.001, min(self._provider_timeout, remaining)),
                )
            except BaseException:
                if reservation is not None:
                    await self._cost_tracker.release(reservation)
                raise
            cost = self._estimator.cost_for_usage(result.model_id, result.prompt_tokens, result.completion_tokens)
            if self._cost_tracker is not None:
                await self._cost_tracker.record_usage(
                    request.scope_key,
                    cost,
                    kind=capability.value,
                    provider_id=result.provider_id,
                    model_id=result.model_id,
                    prompt_tokens=result.prompt_tokens,
                    completion_tokens=result.completion_tokens,
                    reservation=reservation,
                )
            return {
                "output": result.output,
                "provider_id": result.provider_id,
                "model_id": result.model_id,
                "prompt_tokens": result.prompt_tokens,
                "completion_tokens": result.completion_tokens,
                "cost": cost,
                "latency_ms": result.latency_ms,
            }

        if pending.use_cache and self._cache is not None:
            value = await self._cache.get_or_compute(CacheKey(request.content_hash, request.model_id), compute)
        else:
            value = await compute()

        if not computed:
            self._cache_hits += 1
        return OrchestrationResult(
            request_id=request.id,
            kind=request.kind,
            output=value["output"],
            provider_id=value["provider_id"],
            model_id=value["model_id"],
            cached=not computed,
            prompt_tokens=value["prompt_tokens"] if computed else 0,
            completion_tokens=value["completion_tokens"] if computed else 0,
            cost=value["cost"] if computed else 0.0,
            latency_ms=value["latency_ms"] if computed else 0.0,
            queued_ms=round(queued_ms, 2),
        )

    def stats(self) -> Dict[str, Any]:
        return {
            "pool_size": self._pool_size,
            "busy_workers": self._busy,
            "submitted": self._submitted,
            "completed": self._completed,
            "failed": self._failed,
            "expired": self._expired,
            "cache_hits": self._cache_hits,
            "queue": self._queue.stats(),
        }
