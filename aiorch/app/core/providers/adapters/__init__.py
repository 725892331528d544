############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# __init__.py: Provider adapter package exports
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Outbound provider adapters."""

from aiorch.app.core.providers.adapters.base import ProviderAdapter
from aiorch.app.core.providers.adapters.ollama import OllamaAdapter
from aiorch.app.core.providers.adapters.openai import OpenAIAdapter
from aiorch.app.core.providers.adapters.static import StaticAdapter

ADAPTER_KINDS = {
    "openai": OpenAIAdapter,
    "ollama": OllamaAdapter,
    "static": StaticAdapter,
}


def create_adapter(config) -> ProviderAdapter:
    """Build the adapter for one ProviderConfig entry."""
    try:
        adapter_cls = ADAPTER_KINDS[config.kind]
    except KeyError:
        raise ValueError(f"Unknown provider kind: {config.kind}")
    return adapter_cls.from_config(config)


__all__ = [
    "ADAPTER_KINDS",
    "OllamaAdapter",
    "OpenAIAdapter",
    "ProviderAdapter",
    "StaticAdapter",
    "create_adapter",
]
