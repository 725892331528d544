############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# __init__.py: Provider routing package exports
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Provider adapters, circuit breakers and fallback routing."""

from aiorch.app.core.providers.circuit_breaker import CircuitBreaker, CircuitState, ProviderHealth
from aiorch.app.core.providers.models import Capability, ProviderRequest, ProviderResult
from aiorch.app.core.providers.registry import ProviderRegistry
from aiorch.app.core.providers.router import ProviderRouter

__all__ = [
    "Capability",
    "CircuitBreaker",
    "CircuitState",
    "ProviderHealth",
    "ProviderRegistry",
    "ProviderRequest",
    "ProviderResult",
    "ProviderRouter",
]
