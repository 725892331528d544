############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# schemas.py: Request and response models for the HTTP API
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Pydantic models for the HTTP API."""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

PriorityName = Literal["critical", "high", "normal", "low", "background"]


# Orchestrated requests
class AIRequestBody(BaseModel):
    """Body of POST /v1/ai/requests."""
    kind: Literal["embedding", "summarization", "moderation", "chat"]
    payload: Dict[str, Any]
    priority: PriorityName = "normal"
    scope_key: str = "default"
    principal: Optional[str] = None  # falls back to the X-Principal header
    model_id: Optional[str] = None
    deadline: Optional[datetime] = None
    timeout: Optional[float] = Field(default=None, gt=0)
    use_cache: bool = True
    wait_for_slot: bool = False


class AIRequestResponse(BaseModel):
    request_id: str
    kind: str
    output: Any
    provider_id: Optional[str] = None
    model_id: str
    cached: bool = False
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost: float = 0.0
    latency_ms: float = 0.0
    queued_ms: float = 0.0


# Embedding jobs
class EmbeddingJobItem(BaseModel):
    source_id: str = Field(min_length=1, max_length=191)
    source_type: str = "message"
    content: str
    metadata: Optional[Dict[str, Any]] = None


class EmbeddingJobsBody(BaseModel):
    """Body of POST /v1/embeddings/jobs."""
    items: List[EmbeddingJobItem] = Field(min_length=1)


class EnqueuedJob(BaseModel):
    job_id: int
    source_id: str
    content_hash: str
    status: str
    outcome: str


class EmbeddingJobsResponse(BaseModel):
    jobs: List[EnqueuedJob]
    created: int


# Direct embeddings
class EmbeddingsBody(BaseModel):
    """Body of POST /v1/embeddings."""
    input: Union[str, List[str]]
    model: Optional[str] = None
    scope_key: Optional[str] = None


class EmbeddingData(BaseModel):
    object: Literal["embedding"] = "embedding"
    index: int
    embedding: List[float]


class EmbeddingsResponse(BaseModel):
    object: Literal["list"] = "list"
    model: str
    data: List[EmbeddingData]


# Search
class CreatedRange(BaseModel):
    from_: Optional[datetime] = Field(default=None, alias="from")
    to: Optional[datetime] = None


class SearchFiltersBody(BaseModel):
    """Equality filters are any extra keys (e.g. channel_id)."""
    model_config = {"extra": "allow"}

    source_type: Optional[str] = None
    created_at: Optional[CreatedRange] = None

    def to_filter_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = dict(self.model_extra or {})
        if self.source_type is not None:
            data["source_type"] = self.source_type
        if self.created_at is not None:
            data["created_at"] = {"from": self.created_at.from_, "to": self.created_at.to}
        return data


class SearchBody(BaseModel):
    """Body of POST /v1/search. Exactly one of query or vector is required."""
    query: Optional[str] = None
    vector: Optional[List[float]] = None
    filters: Optional[SearchFiltersBody] = None
    top_k: int = Field(default=10, ge=1, le=200)
    threshold: float = Field(default=0.0, ge=-1.0, le=1.0)
    model_id: Optional[str] = None

    @model_validator(mode="after")
    def check_query(self) -> "SearchBody":
        if (self.query is None) == (self.vector is None):
            raise ValueError("Provide exactly one of 'query' or 'vector'")
        return self


class SearchHit(BaseModel):
    source_id: str
    source_type: str
    content_hash: str
    score: float
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class SearchResponse(BaseModel):
    model_id: str
    results: List[SearchHit]
