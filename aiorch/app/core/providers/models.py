############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# models.py: Provider request and result data models
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Provider request and result data models."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class Capability(str, Enum):
    """What a provider call is for; each has its own fallback chain."""
    EMBEDDING = "embedding"
    SUMMARIZATION = "summarization"
    MODERATION = "moderation"
    CHAT = "chat"


@dataclass
class ProviderRequest:
    """A single outbound call, independent of any provider's wire format.

    Embedding payloads carry ``input`` (list of strings). Text payloads
    carry either ``messages`` (chat format) or ``text`` plus an optional
    ``system`` instruction.
    """

    capability: Capability
    payload: Dict[str, Any]
    model_id: Optional[str] = None
    request_id: Optional[str] = None

    @classmethod
    def embedding(cls, texts: List[str], model_id: Optional[str] = None) -> "ProviderRequest":
        return cls(capability=Capability.EMBEDDING, payload={"input": list(texts)}, model_id=model_id)

    def messages(self) -> List[Dict[str, str]]:
        """Chat-format messages for text capabilities."""
        if "messages" in self.payload:
            return list(self.payload["messages"])
        messages = []
        if self.payload.get("system"):
            messages.append({"role": "system", "content": str(self.payload["system"])})
        messages.append({"role": "user", "content": str(self.payload.get("text", ""))})
        return messages


@dataclass
class ProviderResult:
    """Normalized provider response."""

    provider_id: str
    model_id: str
    output: Any
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: float = 0.0
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens
