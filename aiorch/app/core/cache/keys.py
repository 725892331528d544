############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# keys.py: Cache key and durable hit types
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Types shared by the in-memory cache and its durable store."""

from typing import Any, NamedTuple


class CacheKey(NamedTuple):
    content_hash: str
    model_id: str


class DurableHit(NamedTuple):
    """A durable row's response and the seconds left before it expires."""

    response: Any
    remaining_seconds: float
