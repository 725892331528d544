############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# openai.py: OpenAI-compatible provider adapter
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Adapter for OpenAI-compatible APIs (OpenAI, vLLM, LiteLLM gateways).

Endpoints used:
- POST /v1/embeddings
- POST /v1/chat/completions
"""

from typing import Dict

from aiorch.app.core.providers.adapters.base import ProviderAdapter
from aiorch.app.core.providers.models import Capability, ProviderRequest, ProviderResult


class OpenAIAdapter(ProviderAdapter):
    """OpenAI wire format."""

    kind = "openai"

    def _headers(self) -> Dict[str, str]:
        if self.api_key:
            return {"Authorization": f"Bearer {self.api_key}"}
        return {}

    async def _call(self, request: ProviderRequest) -> ProviderResult:
        if request.capability == Capability.EMBEDDING:
            return await self._embed(request)
        return await self._chat(request)

    async def _embed(self, request: ProviderRequest) -> ProviderResult:
        data = await self._post(
            "/v1/embeddings",
            {"model": self.model_id, "input": request.payload["input"]},
        )
        rows = sorted(data["data"], key=lambda row: row["index"])
        usage = data.get("usage") or {}
        return ProviderResult(
            provider_id=self.provider_id,
            model_id=data.get("model", self.model_id),
            output=[row["embedding"] for row in rows],
            prompt_tokens=int(usage.get("prompt_tokens", 0)),
        )

    async def _chat(self, request: ProviderRequest) -> ProviderResult:
        body = {"model": self.model_id, "messages": request.messages(), "stream": False}
        for key in ("temperature", "max_tokens", "response_format"):
            if key in request.payload:
                body[key] = request.payload[key]
        data = await self._post("/v1/chat/completions", body)
        choice = data["choices"][0]
        usage = data.get("usage") or {}
        return ProviderResult(
            provider_id=self.provider_id,
            model_id=data.get("model", self.model_id),
            output={
                "content": choice["message"].get("content") or "",
                "finish_reason": choice.get("finish_reason"),
            },
            prompt_tokens=int(usage.get("prompt_tokens", 0)),
            completion_tokens=int(usage.get("completion_tokens", 0)),
        )
