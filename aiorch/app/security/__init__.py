############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# __init__.py: Admission control package exports
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Admission control for aiorch."""

from aiorch.app.security.rate_limits import RateLimitDecision, RateLimiter, TIER_MULTIPLIERS

__all__ = [
    "RateLimitDecision",
    "RateLimiter",
    "TIER_MULTIPLIERS",
]
