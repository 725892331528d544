############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# embedding.py: Batch text embedding with dedup and caching
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Embedding service.

Turns text into vectors through the same rate-limit, budget, cache and
provider-routing stack as every other AI request. Texts whose content
hash already has a current vector for the model are never sent to a
provider; duplicates inside a batch are sent once. Provider calls are
made in sub-batches and a failed sub-batch is retried on its own.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from aiorch.app.core.budget import CostEstimator, CostTracker
from aiorch.app.core.cache import CacheKey, ResponseCache
from aiorch.app.core.cache.response_cache import BatchLookup
from aiorch.app.core.clock import SYSTEM_CLOCK, Clock
from aiorch.app.core.errors import (
    BudgetExceeded,
    CircuitOpenError,
    OrchestrationError,
    RateLimitExceeded,
    TransientProviderError,
    ValidationError,
)
from aiorch.app.core.hashing import content_hash
from aiorch.app.core.providers import ProviderRequest, ProviderRouter
from aiorch.app.core.retry import RetryPolicy
from aiorch.app.logging_config import get_logger
from aiorch.app.security.rate_limits import RateLimiter
from aiorch.app.services.vector_store import VectorStore

logger = get_logger(__name__)

# Policy refusals: the work is fine, it just cannot run right now
_DEFERRABLE = (RateLimitExceeded, CircuitOpenError, BudgetExceeded)


class EmbeddingOutcome(str, Enum):
    """Per-item result of an embedding batch."""
    EMBEDDED = "embedded"
    DEDUPLICATED = "deduplicated"
    DEFERRED = "deferred"
    FAILED = "failed"


@dataclass
class EmbeddingItem:
    """One text to embed for a source."""

    source_id: str
    content: str
    source_type: str = "message"
    metadata: Dict[str, Any] = field(default_factory=dict)
    content_hash: Optional[str] = None


@dataclass
class EmbeddingResult:
    """Outcome for one EmbeddingItem, in input order."""

    source_id: str
    content_hash: str
    outcome: EmbeddingOutcome
    vector_id: Optional[int] = None
    error: Optional[str] = None
    retryable: bool = False

    @property
    def ok(self) -> bool:
        return self.outcome in (EmbeddingOutcome.EMBEDDED, EmbeddingOutcome.DEDUPLICATED)


def _chunks(items: Sequence, size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


class EmbeddingService:
    """Computes and persists embeddings for batches of text."""

    def __init__(
        self,
        router: ProviderRouter,
        vector_store: VectorStore,
        cache: Optional[ResponseCache] = None,
        rate_limiter: Optional[RateLimiter] = None,
        cost_tracker: Optional[CostTracker] = None,
        estimator: Optional[CostEstimator] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Clock = SYSTEM_CLOCK,
        model_id: str = "static-embedding-384",
        dimension: Optional[int] = None,
        provider_batch_size: int = 100,
        max_text_length: int = 8000,
        max_texts_per_request: int = 100,
        scope_key: str = "system:embeddings",
        principal: str = "system:embedding-pipeline",
        principal_tier: str = "internal",
        rate_limit_max_wait: float = 5.0,
    ):
        self._router = router
        self._vector_store = vector_store
        self._cache = cache
        self._rate_limiter = rate_limiter
        self._cost_tracker = cost_tracker
        self._estimator = estimator or CostEstimator(tokenizer_name=None)
        self._retry_policy = retry_policy or RetryPolicy()
        self._clock = clock
        self.model_id = model_id
        self._dimension = dimension
        self._provider_batch_size = max(1, provider_batch_size)
        self._max_text_length = max_text_length
        self._max_texts = max_texts_per_request
        self._scope_key = scope_key
        self._principal = principal
        self._principal_tier = principal_tier
        self._rate_limit_max_wait = rate_limit_max_wait

        self._provider_calls = 0
        self._embedded_total = 0
        self._deduplicated_total = 0
        self._deferred_total = 0
        self._failed_total = 0

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _text_error(self, text: Any) -> Optional[str]:
        if not isinstance(text, str) or not text.strip():
            return "Text must be a non-empty string"
        if len(text) > self._max_text_length:
            return f"Text exceeds {self._max_text_length} characters"
        return None

    def validate_texts(self, texts: Any) -> List[str]:
        """
        Validate a direct embedding request.

        Raises:
            ValidationError: on an empty list, too many texts, or any bad text
        """
        if isinstance(texts, str):
            texts = [texts]
        if not isinstance(texts, (list, tuple)) or not texts:
            raise ValidationError("At least one text is required")
        if len(texts) > self._max_texts:
            raise ValidationError(
                f"At most {self._max_texts} texts per request",
                count=len(texts),
            )
        for i, text in enumerate(texts):
            error = self._text_error(text)
            if error:
                raise ValidationError(f"texts[{i}]: {error}", index=i)
        return list(texts)

    # ------------------------------------------------------------------
    # Provider calls
    # ------------------------------------------------------------------

    async def _admit(self, principal: Optional[str] = None, tier: str = "member") -> None:
        """
        Take a rate-limit token.

        A caller principal is charged once per request and refused at once.
        Without one the pipeline principal is charged per provider call and
        waits up to rate_limit_max_wait seconds.
        """
        if self._rate_limiter is None:
            return
        if principal is not None:
            await self._rate_limiter.acquire(principal, cost=1.0, tier=tier)
            return
        waited = 0.0
        while True:
            decision = await self._rate_limiter.try_acquire(
                self._principal, cost=1.0, tier=self._principal_tier
            )
            if decision.admitted:
                return
            if decision.retry_after is None or waited + decision.retry_after > self._rate_limit_max_wait:
                raise RateLimitExceeded(
                    "Embedding provider rate limit exhausted",
                    retry_after=decision.retry_after,
                    principal=self._principal,
                )
            await self._clock.sleep(decision.retry_after)
            waited += decision.retry_after

    def _expected_dimension(self, model_id: str) -> Optional[int]:
        if model_id == self.model_id and self._dimension:
            return self._dimension
        return self._vector_store.dimension_for(model_id)

    def _compute_fn(self, texts_by_hash: Dict[str, str], model_id: str, scope_key: str, metered: bool = True):
        async def compute(keys: List[CacheKey]) -> Dict[CacheKey, List[float]]:
            texts = [texts_by_hash[k.content_hash] for k in keys]
            if metered:
                await self._admit()
            estimate = self._estimator.estimate_embedding_cost(texts, model_id)
            reservation = None
            if self._cost_tracker is not None:
                reservation = await self._cost_tracker.reserve(scope_key, estimate)

            try:
                result = await self._router.execute(ProviderRequest.embedding(texts, model_id))
            except BaseException:
                if reservation is not None:
                    await self._cost_tracker.release(reservation)
                raise
            self._provider_calls += 1

            # The call is billed even if its output is rejected below
            if self._cost_tracker is not None:
                tokens = result.prompt_tokens or sum(self._estimator.estimate_tokens(t) for t in texts)
                await self._cost_tracker.record_usage(
                    scope_key,
                    self._estimator.cost_for_usage(result.model_id, tokens),
                    kind="embedding",
                    provider_id=result.provider_id,
                    model_id=model_id,
                    prompt_tokens=tokens,
                    reservation=reservation,
                )

            vectors = result.output
            if len(vectors) != len(texts):
                raise TransientProviderError(
                    f"Provider {result.provider_id} returned {len(vectors)} vectors for {len(texts)} texts",
                    provider_id=result.provider_id,
                )
            expected = self._expected_dimension(model_id)
            for vector in vectors:
                if expected and len(vector) != expected:
                    raise TransientProviderError(
                        f"Provider {result.provider_id} returned dimension {len(vector)}, expected {expected}",
                        provider_id=result.provider_id,
                    )
            return {key: [float(x) for x in vector] for key, vector in zip(keys, vectors)}

        return compute

    async def _lookup(self, keys: List[CacheKey], compute) -> BatchLookup:
        async def attempt() -> BatchLookup:
            if self._cache is None:
                return BatchLookup(await compute(keys), {})
            return await self._cache.get_or_compute_many(keys, compute)

        return await self._retry_policy.run(attempt, sleep=self._clock.sleep, operation="embedding_sub_batch")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def embed_texts(
        self,
        texts: Any,
        model_id: Optional[str] = None,
        scope_key: Optional[str] = None,
        principal: Optional[str] = None,
        tier: str = "member",
    ) -> List[List[float]]:
        """
        Embed texts without persisting them (direct API and search queries).

        With a principal the request is rate limited as that caller at the
        given tier; otherwise as the pipeline.

        Raises:
            ValidationError: on invalid input
            RateLimitExceeded: when the caller has no tokens left
            OrchestrationError: when any sub-batch fails
        """
        texts = self.validate_texts(texts)
        if principal is not None:
            await self._admit(principal, tier)
        model_id = model_id or self.model_id
        hashes = [content_hash(t) for t in texts]
        texts_by_hash = dict(zip(hashes, texts))
        compute = self._compute_fn(
            texts_by_hash, model_id, scope_key or self._scope_key, metered=principal is None
        )

        values: Dict[str, List[float]] = {}
        for chunk in _chunks(list(texts_by_hash), self._provider_batch_size):
            lookup = await self._lookup([CacheKey(h, model_id) for h in chunk], compute)
            if lookup.errors:
                raise next(iter(lookup.errors.values()))
            values.update({k.content_hash: v for k, v in lookup.values.items()})
        return [values[h] for h in hashes]

    async def embed_query(
        self,
        text: str,
        model_id: Optional[str] = None,
        principal: Optional[str] = None,
        tier: str = "member",
    ) -> List[float]:
        """Embed a single search query."""
        vectors = await self.embed_texts([text], model_id=model_id, principal=principal, tier=tier)
        return vectors[0]

    async def embed_batch(
        self,
        items: Sequence[EmbeddingItem],
        model_id: Optional[str] = None,
    ) -> List[EmbeddingResult]:
        """
        Embed and persist a batch of items.

        Returns one EmbeddingResult per item in input order. Failures are
        reported per item, never raised, except for persistence errors on the
        dedup lookup which fail the whole batch.
        """
        model_id = model_id or self.model_id
        results: List[Optional[EmbeddingResult]] = [None] * len(items)
        groups: Dict[str, List[int]] = {}
        texts_by_hash: Dict[str, str] = {}

        for i, item in enumerate(items):
            item_hash = item.content_hash or content_hash(item.content or "")
            error = self._text_error(item.content)
            if error:
                results[i] = EmbeddingResult(item.source_id, item_hash, EmbeddingOutcome.FAILED, error=error)
                continue
            groups.setdefault(item_hash, []).append(i)
            texts_by_hash.setdefault(item_hash, item.content)

        existing = await self._vector_store.find_by_hashes(groups.keys(), model_id)
        if existing:
            vectors = {h: record.vector for h, record in existing.items()}
            await self._persist(items, results, {h: groups[h] for h in existing}, vectors, model_id, dedup=True)

        pending = [h for h in groups if h not in existing]
        compute = self._compute_fn(texts_by_hash, model_id, self._scope_key)
        for chunk in _chunks(pending, self._provider_batch_size):
            try:
                lookup = await self._lookup([CacheKey(h, model_id) for h in chunk], compute)
            except _DEFERRABLE as e:
                self._mark(items, results, [i for h in chunk for i in groups[h]], EmbeddingOutcome.DEFERRED, e)
                continue
            except OrchestrationError as e:
                logger.warning(
                    "embedding_sub_batch_failed",
                    model_id=model_id,
                    texts=len(chunk),
                    error=str(e),
                    retryable=e.retryable,
                )
                self._mark(items, results, [i for h in chunk for i in groups[h]], EmbeddingOutcome.FAILED, e)
                continue

            for key, error in lookup.errors.items():
                outcome = EmbeddingOutcome.DEFERRED if isinstance(error, _DEFERRABLE) else EmbeddingOutcome.FAILED
                self._mark(items, results, groups[key.content_hash], outcome, error)
            vectors = {k.content_hash: v for k, v in lookup.values.items()}
            await self._persist(items, results, {h: groups[h] for h in vectors}, vectors, model_id, dedup=False)

        final = [r for r in results if r is not None]
        for result in final:
            if result.outcome == EmbeddingOutcome.EMBEDDED:
                self._embedded_total += 1
            elif result.outcome == EmbeddingOutcome.DEDUPLICATED:
                self._deduplicated_total += 1
            elif result.outcome == EmbeddingOutcome.DEFERRED:
                self._deferred_total += 1
            else:
                self._failed_total += 1
        return final

    def _mark(
        self,
        items: Sequence[EmbeddingItem],
        results: List[Optional[EmbeddingResult]],
        indexes: Sequence[int],
        outcome: EmbeddingOutcome,
        error: BaseException,
    ) -> None:
        retryable = getattr(error, "retryable", True) or outcome == EmbeddingOutcome.DEFERRED
        for i in indexes:
            item = items[i]
            results[i] = EmbeddingResult(
                source_id=item.source_id,
                content_hash=item.content_hash or content_hash(item.content),
                outcome=outcome,
                error=str(error),
                retryable=retryable,
            )

    async def _persist(
        self,
        items: Sequence[EmbeddingItem],
        results: List[Optional[EmbeddingResult]],
        groups: Dict[str, List[int]],
        vectors: Dict[str, List[float]],
        model_id: str,
        dedup: bool,
    ) -> None:
        order: List[int] = []
        records = []
        for item_hash, indexes in groups.items():
            for i in indexes:
                item = items[i]
                order.append(i)
                records.append({
                    "source_id": item.source_id,
                    "source_type": item.source_type,
                    "vector": vectors[item_hash],
                    "content_hash": item_hash,
                    "model_id": model_id,
                    "metadata": item.metadata,
                })
        if not records:
            return

        try:
            stored = await self._vector_store.upsert_many(records)
        except OrchestrationError as e:
            logger.error("embedding_persist_failed", model_id=model_id, records=len(records), error=str(e))
            for i, record in zip(order, records):
                results[i] = EmbeddingResult(
                    source_id=record["source_id"],
                    content_hash=record["content_hash"],
                    outcome=EmbeddingOutcome.FAILED,
                    error=str(e),
                    retryable=True,
                )
            return

        first_seen = set()
        for i, record, row in zip(order, records, stored):
            item_hash = record["content_hash"]
            if dedup or item_hash in first_seen:
                outcome = EmbeddingOutcome.DEDUPLICATED
            else:
                outcome = EmbeddingOutcome.EMBEDDED
            first_seen.add(item_hash)
            results[i] = EmbeddingResult(
                source_id=items[i].source_id,
                content_hash=item_hash,
                outcome=outcome,
                vector_id=row.id,
            )

    def stats(self) -> Dict[str, Any]:
        return {
            "model_id": self.model_id,
            "provider_calls": self._provider_calls,
            "embedded_total": self._embedded_total,
            "deduplicated_total": self._deduplicated_total,
            "deferred_total": self._deferred_total,
            "failed_total": self._failed_total,
        }
