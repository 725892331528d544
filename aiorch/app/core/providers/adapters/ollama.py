############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# ollama.py: Ollama provider adapter
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Adapter for Ollama servers.

Ollama API endpoints used:
- POST /api/embed - Batch embeddings
- POST /api/chat - Non-streaming chat
"""

from aiorch.app.core.providers.adapters.base import ProviderAdapter
from aiorch.app.core.providers.models import Capability, ProviderRequest, ProviderResult


class OllamaAdapter(ProviderAdapter):
    """Ollama wire format."""

    kind = "ollama"

    async def _call(self, request: ProviderRequest) -> ProviderResult:
        if request.capability == Capability.EMBEDDING:
            data = await self._post(
                "/api/embed",
                {"model": self.model_id, "input": request.payload["input"]},
            )
            return ProviderResult(
                provider_id=self.provider_id,
                model_id=data.get("model", self.model_id),
                output=list(data["embeddings"]),
                prompt_tokens=int(data.get("prompt_eval_count") or 0),
            )

        body = {"model": self.model_id, "messages": request.messages(), "stream": False}
        options = {}
        if "temperature" in request.payload:
            options["temperature"] = request.payload["temperature"]
        if "max_tokens" in request.payload:
            options["num_predict"] = request.payload["max_tokens"]
        if options:
            body["options"] = options

        data = await self._post("/api/chat", body)
        return ProviderResult(
            provider_id=self.provider_id,
            model_id=data.get("model", self.model_id),
            output={
                "content": data["message"].get("content") or "",
                "finish_reason": data.get("done_reason", "stop"),
            },
            prompt_tokens=int(data.get("prompt_eval_count") or 0),
            completion_tokens=int(data.get("eval_count") or 0),
        )
