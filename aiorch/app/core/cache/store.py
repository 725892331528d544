############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# store.py: Durable cache store over the embedding_cache table
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Durable cache store over the ``embedding_cache`` table.

Expiry uses wall-clock time since rows are shared between processes.
"""

from datetime import timedelta, timezone
from typing import Any, Dict, List

from aiorch.app.core.cache.keys import CacheKey, DurableHit
from aiorch.app.core.clock import SYSTEM_CLOCK, Clock
from aiorch.app.db import crud
from aiorch.app.db.session import run_db_operation


class SqlCacheStore:
    """Backing store consulted by ResponseCache after a memory miss."""

    def __init__(self, session_factory=None, clock: Clock = SYSTEM_CLOCK, retry_policy=None):
        self._session_factory = session_factory
        self._clock = clock
        self._retry_policy = retry_policy

    async def get_many(self, keys: List[CacheKey]) -> Dict[CacheKey, DurableHit]:
        """Live rows for ``keys`` with the lifetime each row has left."""
        now = self._clock.now()

        async def op(db):
            entries = await crud.get_cache_entries(db, [tuple(k) for k in keys], now)
            found = {}
            for (content_hash, model_id), entry in entries.items():
                expires_at = entry.expires_at
                if expires_at.tzinfo is None:
                    expires_at = expires_at.replace(tzinfo=timezone.utc)
                remaining = (expires_at - now).total_seconds()
                found[CacheKey(content_hash, model_id)] = DurableHit(entry.response, remaining)
            return found

        return await run_db_operation(self._session_factory, op, "cache_get")

    async def put_many(self, items: Dict[CacheKey, Any], ttl_seconds: float) -> None:
        expires_at = self._clock.now() + timedelta(seconds=ttl_seconds)
        rows = [(key[0], key[1], value, expires_at) for key, value in items.items()]

        async def op(db):
            await crud.put_cache_entries(db, rows)

        await run_db_operation(self._session_factory, op, "cache_put", self._retry_policy)

    async def delete(self, keys: List[CacheKey]) -> int:
        async def op(db):
            return await crud.delete_cache_entries(db, [tuple(k) for k in keys])

        return await run_db_operation(self._session_factory, op, "cache_delete")

    async def evict_expired(self) -> int:
        now = self._clock.now()

        async def op(db):
            return await crud.delete_expired_cache_entries(db, now)

        return await run_db_operation(self._session_factory, op, "cache_evict_expired")
