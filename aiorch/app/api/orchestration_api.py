############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# orchestration_api.py: AI request, embedding and search endpoints
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Orchestrated AI requests, embedding jobs, direct embeddings and search.

Errors are raised as OrchestrationError subclasses and rendered by the
application's exception handler.
"""

import time
from contextlib import contextmanager

from fastapi import APIRouter, Depends

from aiorch.app.api.deps import get_principal, get_runtime
from aiorch.app.api.health import REQUEST_COUNT, REQUEST_LATENCY, TOKENS_PROCESSED
from aiorch.app.api.schemas import (
    AIRequestBody,
    AIRequestResponse,
    EmbeddingData,
    EmbeddingJobsBody,
    EmbeddingJobsResponse,
    EmbeddingsBody,
    EmbeddingsResponse,
    EnqueuedJob,
    SearchBody,
    SearchHit,
    SearchResponse,
)
from aiorch.app.core.errors import OrchestrationError, ValidationError
from aiorch.app.logging_config import get_logger
from aiorch.app.runtime import Runtime
from aiorch.app.services.orchestrator import SubmitRequest

logger = get_logger(__name__)

router = APIRouter(tags=["orchestration"])


@contextmanager
def _track(endpoint: str):
    """Count and time one API call."""
    start = time.perf_counter()
    status = "success"
    try:
        yield
    except OrchestrationError as e:
        status = e.error_type
        raise
    except Exception:
        status = "error"
        raise
    finally:
        REQUEST_COUNT.labels(endpoint=endpoint, status=status).inc()
        REQUEST_LATENCY.labels(endpoint=endpoint).observe(time.perf_counter() - start)


@router.post("/v1/ai/requests")
async def submit_ai_request(
    body: AIRequestBody,
    runtime: Runtime = Depends(get_runtime),
    principal: str = Depends(get_principal),
) -> AIRequestResponse:
    """
    Submit an AI feature call and wait for its result.

    The request is admitted (rate limit, budget estimate), queued by
    priority and executed through the cache and provider chain.
    """
    with _track("ai_requests"):
        result = await runtime.orchestrator.execute(
            SubmitRequest(
                kind=body.kind,
                payload=body.payload,
                priority=body.priority,
                scope_key=body.scope_key,
                principal=body.principal or principal,
                model_id=body.model_id,
                deadline=body.deadline,
                timeout=body.timeout,
                use_cache=body.use_cache,
                wait_for_slot=body.wait_for_slot,
            )
        )
    TOKENS_PROCESSED.labels(type="prompt").inc(result.prompt_tokens)
    TOKENS_PROCESSED.labels(type="completion").inc(result.completion_tokens)
    return AIRequestResponse(**result.to_dict())


@router.post("/v1/embeddings/jobs", status_code=202)
async def enqueue_embedding_jobs(
    body: EmbeddingJobsBody,
    runtime: Runtime = Depends(get_runtime),
) -> EmbeddingJobsResponse:
    """Queue content for the embedding workers. Unchanged content is a no-op."""
    with _track("embedding_jobs"):
        results = await runtime.job_store.enqueue_many([item.model_dump() for item in body.items])
    return EmbeddingJobsResponse(
        jobs=[
            EnqueuedJob(
                job_id=r.job_id,
                source_id=r.source_id,
                content_hash=r.content_hash,
                status=r.status,
                outcome=r.outcome,
            )
            for r in results
        ],
        created=sum(1 for r in results if r.outcome != "existing"),
    )


@router.post("/v1/embeddings")
async def create_embeddings(
    body: EmbeddingsBody,
    runtime: Runtime = Depends(get_runtime),
    principal: str = Depends(get_principal),
) -> EmbeddingsResponse:
    """Embed texts directly, without queueing or persisting them."""
    service = runtime.embedding_service
    model_id = body.model or service.model_id
    with _track("embeddings"):
        vectors = await service.embed_texts(
            body.input, model_id=model_id, scope_key=body.scope_key, principal=principal
        )
    return EmbeddingsResponse(
        model=model_id,
        data=[EmbeddingData(index=i, embedding=v) for i, v in enumerate(vectors)],
    )


@router.post("/v1/search")
async def semantic_search(
    body: SearchBody,
    runtime: Runtime = Depends(get_runtime),
    principal: str = Depends(get_principal),
) -> SearchResponse:
    """Nearest-neighbour search by text query or raw vector, with post-filters."""
    model_id = body.model_id or runtime.embedding_service.model_id
    with _track("search"):
        if body.query is not None:
            query = body.query.strip()
            if len(query) < runtime.settings.search_min_query_length:
                raise ValidationError(
                    f"Query must be at least {runtime.settings.search_min_query_length} characters"
                )
            vector = await runtime.embedding_service.embed_query(query, model_id=model_id, principal=principal)
        else:
            vector = body.vector

        matches = runtime.vector_store.search(
            vector,
            filters=body.filters.to_filter_dict() if body.filters else None,
            top_k=body.top_k,
            threshold=body.threshold,
            model_id=model_id,
        )

    logger.debug("search_completed", model_id=model_id, results=len(matches), top_k=body.top_k)
    return SearchResponse(
        model_id=model_id,
        results=[
            SearchHit(
                source_id=m.source_id,
                source_type=m.source_type,
                content_hash=m.content_hash,
                score=round(m.score, 6),
                metadata=m.metadata,
                created_at=m.created_at,
            )
            for m in matches
        ],
    )
