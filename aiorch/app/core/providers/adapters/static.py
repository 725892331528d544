############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# static.py: Deterministic local provider for development
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Deterministic local provider.

Embeddings are unit vectors drawn from a generator seeded by the text's
sha256, so equal text always maps to the same vector. Text capabilities
echo a truncated version of the input. No network access.
"""

import hashlib
from typing import List

import numpy as np

from aiorch.app.core.hashing import normalize_text
from aiorch.app.core.providers.adapters.base import ProviderAdapter
from aiorch.app.core.providers.models import Capability, ProviderRequest, ProviderResult

DEFAULT_DIMENSION = 384
ECHO_MAX_CHARS = 280


def hash_embedding(text: str, dimension: int = DEFAULT_DIMENSION) -> List[float]:
    """Unit-length pseudo-embedding seeded by the normalized text."""
    digest = hashlib.sha256(normalize_text(text).encode("utf-8")).digest()
    rng = np.random.default_rng(int.from_bytes(digest[:8], "big"))
    vector = rng.standard_normal(dimension).astype(np.float32)
    norm = float(np.linalg.norm(vector)) or 1.0
    return (vector / norm).tolist()


class StaticAdapter(ProviderAdapter):
    """Local hashing embeddings and echo completions."""

    kind = "static"

    async def _call(self, request: ProviderRequest) -> ProviderResult:
        dimension = self.dimension or DEFAULT_DIMENSION
        if request.capability == Capability.EMBEDDING:
            texts = request.payload["input"]
            return ProviderResult(
                provider_id=self.provider_id,
                model_id=self.model_id,
                output=[hash_embedding(text, dimension) for text in texts],
                prompt_tokens=sum(max(1, len(text) // 4) for text in texts),
            )

        prompt = " ".join(m["content"] for m in request.messages() if m.get("role") != "system")
        content = normalize_text(prompt)[:ECHO_MAX_CHARS]
        return ProviderResult(
            provider_id=self.provider_id,
            model_id=self.model_id,
            output={"content": content, "finish_reason": "stop"},
            prompt_tokens=max(1, len(prompt) // 4),
            completion_tokens=max(1, len(content) // 4),
        )
