############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# response_cache.py: Content-hash cache with single-flight
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Response cache keyed by (content_hash, model_id).

A miss makes the caller the single-flight leader for that key: concurrent
callers await the leader's future instead of computing again. Success is
cached with a TTL; failure or cancellation is delivered to every waiter
and nothing is cached. Entries are bounded and evicted LRU-first; expired
entries are never returned.
"""

import asyncio
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, NamedTuple, Optional

from aiorch.app.core.cache.keys import CacheKey, DurableHit
from aiorch.app.core.clock import SYSTEM_CLOCK, Clock
from aiorch.app.core.errors import PersistenceError, RequestCancelled
from aiorch.app.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class CacheEntry:
    """One cached response. ``created_at``/``expires_at`` are clock.monotonic() values."""

    content_hash: str
    model_id: str
    response: Any
    created_at: float
    expires_at: float
    hit_count: int = 0


class BatchLookup(NamedTuple):
    values: Dict[CacheKey, Any]
    errors: Dict[CacheKey, BaseException]


class ResponseCache:
    """In-memory LRU cache with TTL, single-flight and an optional durable backing store."""

    def __init__(
        self,
        ttl_seconds: float = 3600.0,
        max_entries: int = 10000,
        clock: Clock = SYSTEM_CLOCK,
        store=None,
        name: str = "response",
    ):
        self._ttl = ttl_seconds
        self._max_entries = max(1, max_entries)
        self._clock = clock
        self._store = store
        self._name = name
        self._entries: "OrderedDict[CacheKey, CacheEntry]" = OrderedDict()
        self._inflight: Dict[CacheKey, asyncio.Future] = {}

        self._hits = 0
        self._misses = 0
        self._coalesced = 0
        self._durable_hits = 0
        self._evictions = 0
        self._expirations = 0

    # ------------------------------------------------------------------
    # Entry bookkeeping
    # ------------------------------------------------------------------

    def _lookup(self, key: CacheKey) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock.monotonic() >= entry.expires_at:
            del self._entries[key]
            self._expirations += 1
            return None
        self._entries.move_to_end(key)
        entry.hit_count += 1
        return entry

    def _insert(self, key: CacheKey, response: Any, ttl: Optional[float]) -> None:
        ttl = self._ttl if ttl is None else ttl
        if ttl <= 0:
            return
        now = self._clock.monotonic()
        self._entries[key] = CacheEntry(
            content_hash=key.content_hash,
            model_id=key.model_id,
            response=response,
            created_at=now,
            expires_at=now + ttl,
        )
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)
            self._evictions += 1

    def _begin(self, key: CacheKey) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        return future

    def _finish(self, key: CacheKey, future: asyncio.Future) -> None:
        if self._inflight.get(key) is future:
            del self._inflight[key]
        if future.done() and not future.cancelled():
            # Mark retrieved so an unobserved failure is not reported as leaked
            future.exception()

    @staticmethod
    def _fail(futures: Iterable[asyncio.Future], error: BaseException) -> None:
        for future in futures:
            if not future.done():
                future.set_exception(error)

    # ------------------------------------------------------------------
    # Durable store
    # ------------------------------------------------------------------

    async def _durable_get(self, keys: List[CacheKey]) -> Dict[CacheKey, DurableHit]:
        if self._store is None or not keys:
            return {}
        try:
            found = await self._store.get_many(keys)
        except PersistenceError as e:
            logger.warning("cache_store_read_error", cache=self._name, error=str(e))
            return {}
        found = {k: hit for k, hit in found.items() if hit.remaining_seconds > 0}
        self._durable_hits += len(found)
        return found

    def _adopt(self, key: CacheKey, hit: DurableHit, ttl: Optional[float]) -> Any:
        """Promote a durable hit into memory without outliving the stored row."""
        ttl = self._ttl if ttl is None else ttl
        self._insert(key, hit.response, min(ttl, hit.remaining_seconds))
        return hit.response

    async def _durable_put(self, items: Dict[CacheKey, Any], ttl: Optional[float]) -> None:
        if self._store is None or not items:
            return
        ttl = self._ttl if ttl is None else ttl
        if ttl <= 0:
            return
        try:
            await self._store.put_many(items, ttl)
        except PersistenceError as e:
            logger.warning("cache_store_write_error", cache=self._name, error=str(e))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get(self, key: CacheKey) -> Optional[Any]:
        """Live cached response or None. Does not join in-flight computations."""
        entry = self._lookup(key)
        if entry is not None:
            self._hits += 1
            return entry.response
        found = await self._durable_get([key])
        if key in found:
            self._hits += 1
            return self._adopt(key, found[key], None)
        self._misses += 1
        return None

    async def get_or_compute(
        self,
        key: CacheKey,
        compute_fn: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
    ) -> Any:
        """
        Return the cached response for ``key`` or compute it exactly once.

        Concurrent callers for the same key share one computation. If the
        leader fails, every waiter receives the same exception; if it is
        cancelled, every waiter receives the same RequestCancelled.
        """
        entry = self._lookup(key)
        if entry is not None:
            self._hits += 1
            return entry.response

        future = self._inflight.get(key)
        if future is not None:
            self._coalesced += 1
            return await asyncio.shield(future)

        self._misses += 1
        future = self._begin(key)
        try:
            found = await self._durable_get([key])
            if key in found:
                value = self._adopt(key, found[key], ttl)
            else:
                value = await compute_fn()
                await self._durable_put({key: value}, ttl)
                self._insert(key, value, ttl)
            future.set_result(value)
            return value
        except asyncio.CancelledError:
            self._fail([future], RequestCancelled(
                "Shared computation was cancelled",
                content_hash=key.content_hash,
                model_id=key.model_id,
            ))
            raise
        except BaseException as e:
            self._fail([future], e)
            raise
        finally:
            self._finish(key, future)

    async def get_or_compute_many(
        self,
        keys: Iterable[CacheKey],
        compute_many: Callable[[List[CacheKey]], Awaitable[Dict[CacheKey, Any]]],
        ttl: Optional[float] = None,
    ) -> BatchLookup:
        """
        Batch form of get_or_compute.

        Keys already being computed elsewhere are awaited; the remaining
        misses are computed together with one ``compute_many`` call. If that
        call fails, the error propagates (and reaches any waiters on those
        keys). Failures of computations led by other callers are reported
        per key in ``errors``.
        """
        values: Dict[CacheKey, Any] = {}
        errors: Dict[CacheKey, BaseException] = {}
        waiting: Dict[CacheKey, asyncio.Future] = {}
        leading: Dict[CacheKey, asyncio.Future] = {}

        for key in dict.fromkeys(keys):
            entry = self._lookup(key)
            if entry is not None:
                self._hits += 1
                values[key] = entry.response
            elif key in self._inflight:
                self._coalesced += 1
                waiting[key] = self._inflight[key]
            else:
                self._misses += 1
                leading[key] = self._begin(key)

        if leading:
            try:
                found = await self._durable_get(list(leading))
                missing = [k for k in leading if k not in found]
                computed: Dict[CacheKey, Any] = {}
                if missing:
                    computed = await compute_many(missing)
                    await self._durable_put({k: computed[k] for k in missing if k in computed}, ttl)
                for key, future in leading.items():
                    if key in found or key in computed:
                        if key in found:
                            value = self._adopt(key, found[key], ttl)
                        else:
                            value = computed[key]
                            self._insert(key, value, ttl)
                        values[key] = value
                        future.set_result(value)
                    else:
                        error = KeyError(f"No result computed for {key.content_hash}")
                        errors[key] = error
                        future.set_exception(error)
            except asyncio.CancelledError:
                self._fail(leading.values(), RequestCancelled("Shared batch computation was cancelled"))
                raise
            except BaseException as e:
                self._fail(leading.values(), e)
                raise
            finally:
                for key, future in leading.items():
                    self._finish(key, future)

        for key, future in waiting.items():
            try:
                values[key] = await asyncio.shield(future)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                errors[key] = e

        return BatchLookup(values, errors)

    async def invalidate(self, key: CacheKey) -> bool:
        removed = self._entries.pop(key, None) is not None
        if self._store is not None:
            try:
                await self._store.delete([key])
            except PersistenceError as e:
                logger.warning("cache_store_delete_error", cache=self._name, error=str(e))
        return removed

    def evict_expired(self) -> int:
        """Drop expired in-memory entries; returns how many were removed."""
        now = self._clock.monotonic()
        expired = [k for k, e in self._entries.items() if now >= e.expires_at]
        for key in expired:
            del self._entries[key]
        self._expirations += len(expired)
        return len(expired)

    async def evict_expired_durable(self) -> int:
        if self._store is None:
            return 0
        return await self._store.evict_expired()

    def __len__(self) -> int:
        return len(self._entries)

    def in_flight(self) -> int:
        return len(self._inflight)

    def stats(self) -> Dict[str, Any]:
        lookups = self._hits + self._misses + self._coalesced
        return {
            "name": self._name,
            "entries": len(self._entries),
            "max_entries": self._max_entries,
            "hits": self._hits,
            "misses": self._misses,
            "coalesced": self._coalesced,
            "durable_hits": self._durable_hits,
            "evictions": self._evictions,
            "expirations": self._expirations,
            "in_flight": len(self._inflight),
            "hit_rate": round((self._hits + self._coalesced) / lookups, 4) if lookups else 0.0,
        }
