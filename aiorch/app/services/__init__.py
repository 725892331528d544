############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# __init__.py: Services package exports
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Services for aiorch."""

from aiorch.app.services.embedding import EmbeddingItem, EmbeddingOutcome, EmbeddingResult, EmbeddingService
from aiorch.app.services.job_store import ClaimedJob, EmbeddingJobStore, EnqueueResult
from aiorch.app.services.orchestrator import (
    AIRequest,
    OrchestrationResult,
    Orchestrator,
    SubmitRequest,
)
from aiorch.app.services.pipeline import BatchReport, EmbeddingPipeline
from aiorch.app.services.vector_store import SearchFilters, VectorMatch, VectorRecord, VectorStore

__all__ = [
    "AIRequest",
    "BatchReport",
    "ClaimedJob",
    "EmbeddingItem",
    "EmbeddingJobStore",
    "EmbeddingOutcome",
    "EmbeddingPipeline",
    "EmbeddingResult",
    "EmbeddingService",
    "EnqueueResult",
    "OrchestrationResult",
    "Orchestrator",
    "SearchFilters",
    "SubmitRequest",
    "VectorMatch",
    "VectorRecord",
    "VectorStore",
]
