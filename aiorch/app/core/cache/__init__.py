############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# __init__.py: Response cache package exports
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Content-hash response caching."""

from aiorch.app.core.cache.keys import CacheKey, DurableHit
from aiorch.app.core.cache.response_cache import BatchLookup, CacheEntry, ResponseCache
from aiorch.app.core.cache.store import SqlCacheStore

__all__ = [
    "BatchLookup",
    "CacheEntry",
    "CacheKey",
    "DurableHit",
    "ResponseCache",
    "SqlCacheStore",
]
