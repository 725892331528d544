############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# pricing.py: Token counting and cost estimation
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Token counting and cost estimation.

Costs are priced per 1k tokens per model. Estimates run before the
provider call (prompt tokens plus the requested or default completion
budget); actual cost is computed from the usage the provider reports.
"""

from typing import Any, Dict, Iterable, Optional

import tiktoken

from aiorch.app.logging_config import get_logger

logger = get_logger(__name__)


class CostEstimator:
    """Estimates request cost from token counts and per-model prices."""

    def __init__(
        self,
        default_price_per_1k: float = 0.0005,
        model_prices: Optional[Dict[str, float]] = None,
        tokenizer_name: Optional[str] = "cl100k_base",
        default_completion_tokens: int = 256,
    ):
        self._default_price = default_price_per_1k
        self._model_prices: Dict[str, float] = dict(model_prices or {})
        self._tokenizer_name = tokenizer_name
        self._default_completion_tokens = default_completion_tokens
        self._tokenizer = None

    @classmethod
    def from_settings(cls, settings) -> "CostEstimator":
        prices: Dict[str, float] = {}
        for provider in settings.providers:
            if provider.price_per_1k_tokens is not None:
                prices.setdefault(provider.model_id, provider.price_per_1k_tokens)
        return cls(
            default_price_per_1k=settings.default_price_per_1k_tokens,
            model_prices=prices,
            tokenizer_name=settings.default_tokenizer or None,
            default_completion_tokens=settings.default_completion_tokens,
        )

    def _get_tokenizer(self):
        """Get or create tokenizer."""
        if self._tokenizer is None:
            try:
                self._tokenizer = tiktoken.get_encoding(self._tokenizer_name)
            except Exception:
                # Fallback to cl100k_base if configured tokenizer not found
                self._tokenizer = tiktoken.get_encoding("cl100k_base")
        return self._tokenizer

    def estimate_tokens(self, text: str) -> int:
        """Estimate token count for text."""
        if not text:
            return 0
        if not self._tokenizer_name:
            return max(1, len(text) // 4)
        try:
            tokenizer = self._get_tokenizer()
            return len(tokenizer.encode(text))
        except Exception:
            # Rough estimate: ~4 chars per token
            return max(1, len(text) // 4)

    def set_price(self, model_id: str, price_per_1k: float) -> None:
        self._model_prices[model_id] = price_per_1k

    def price_for(self, model_id: Optional[str]) -> float:
        if model_id is None:
            return self._default_price
        return self._model_prices.get(model_id, self._default_price)

    def cost_for_tokens(self, model_id: Optional[str], tokens: int) -> float:
        return tokens / 1000.0 * self.price_for(model_id)

    def estimate_embedding_cost(self, texts: Iterable[str], model_id: Optional[str]) -> float:
        return self.cost_for_tokens(model_id, sum(self.estimate_tokens(t) for t in texts))

    def estimate_request_cost(self, kind: str, payload: Dict[str, Any], model_id: Optional[str]) -> float:
        """Estimated cost of one orchestrated request before it is sent."""
        if kind == "embedding":
            texts = payload.get("input") or payload.get("texts") or []
            if isinstance(texts, str):
                texts = [texts]
            return self.estimate_embedding_cost(texts, model_id)

        prompt_tokens = 0
        for message in payload.get("messages") or []:
            prompt_tokens += self.estimate_tokens(str(message.get("content", "")))
        prompt_tokens += self.estimate_tokens(str(payload.get("text", "")))
        prompt_tokens += self.estimate_tokens(str(payload.get("system", "")))
        completion_tokens = int(payload.get("max_tokens") or self._default_completion_tokens)
        return self.cost_for_tokens(model_id, prompt_tokens + completion_tokens)

    def cost_for_usage(self, model_id: Optional[str], prompt_tokens: int, completion_tokens: int = 0) -> float:
        """Actual cost from provider-reported usage."""
        return self.cost_for_tokens(model_id, prompt_tokens + completion_tokens)
