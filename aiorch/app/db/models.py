############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# models.py: SQLAlchemy ORM models for all database entities
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""SQLAlchemy database models for aiorch."""

from datetime import datetime
from enum import Enum as PyEnum
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    Float,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.mysql import MEDIUMTEXT
from sqlalchemy.orm import Mapped, mapped_column

from aiorch.app.db.base import Base, TimestampMixin

# Use enum values (lowercase) for database storage, not enum names (uppercase)
_enum_values = lambda obj: [e.value for e in obj]

# SQLite only autoincrements INTEGER PRIMARY KEY
_BigId = BigInteger().with_variant(Integer, "sqlite")


# Enums
class EmbeddingJobStatus(str, PyEnum):
    """Embedding job lifecycle."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class BudgetMode(str, PyEnum):
    """Budget enforcement mode."""
    SOFT = "soft"
    HARD = "hard"


# Embedding Pipeline Models
class EmbeddingJob(Base, TimestampMixin):
    """Durable "needs embedding" work item."""

    __tablename__ = "embedding_jobs"

    id: Mapped[int] = mapped_column(_BigId, primary_key=True, autoincrement=True)
    source_id: Mapped[str] = mapped_column(String(191), nullable=False)
    source_type: Mapped[str] = mapped_column(String(50), nullable=False, default="message")
    content: Mapped[str] = mapped_column(Text().with_variant(MEDIUMTEXT, "mysql"), nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    attributes: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    status: Mapped[EmbeddingJobStatus] = mapped_column(
        Enum(EmbeddingJobStatus, values_callable=_enum_values),
        nullable=False,
        default=EmbeddingJobStatus.PENDING,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Claim bookkeeping
    claimed_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    claim_token: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_embedding_jobs_status_id", "status", "id"),
        Index("ix_embedding_jobs_source_status", "source_id", "status"),
        Index("ix_embedding_jobs_claim_token", "claim_token"),
        Index("ix_embedding_jobs_content_hash", "content_hash"),
    )


class EmbeddingCacheEntry(Base):
    """Durable backing store for the response cache (embedding vectors)."""

    __tablename__ = "embedding_cache"

    content_hash: Mapped[str] = mapped_column(String(64), primary_key=True)
    model_id: Mapped[str] = mapped_column(String(200), primary_key=True)
    response: Mapped[Any] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    hit_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("ix_embedding_cache_expires_at", "expires_at"),
    )


class EmbeddingVector(Base):
    """Persisted embedding record. One current row per (source_id, model_id)."""

    __tablename__ = "embedding_vectors"

    id: Mapped[int] = mapped_column(_BigId, primary_key=True, autoincrement=True)
    source_id: Mapped[str] = mapped_column(String(191), nullable=False)
    source_type: Mapped[str] = mapped_column(String(50), nullable=False, default="message")
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    model_id: Mapped[str] = mapped_column(String(200), nullable=False)
    dimension: Mapped[int] = mapped_column(Integer, nullable=False)
    vector: Mapped[List[float]] = mapped_column(JSON, nullable=False)
    attributes: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    is_current: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    superseded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_embedding_vectors_source_model_current", "source_id", "model_id", "is_current"),
        Index("ix_embedding_vectors_hash_model_current", "content_hash", "model_id", "is_current"),
        Index("ix_embedding_vectors_model_id", "model_id", "id"),
    )


# Provider Health
class ProviderHealthRecord(Base):
    """Persisted circuit breaker state and latency EMA per provider."""

    __tablename__ = "provider_health"

    provider_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    state: Mapped[str] = mapped_column(String(20), nullable=False, default="closed")
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    window_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    opened_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    latency_ema_ms: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


# Budgets
class BudgetRecord(Base, TimestampMixin):
    """Spend limit per scope key (tenant, user or feature)."""

    __tablename__ = "budgets"

    scope_key: Mapped[str] = mapped_column(String(191), primary_key=True)
    limit: Mapped[float] = mapped_column("limit_amount", Float, nullable=False)
    spent: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    reserved: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    mode: Mapped[BudgetMode] = mapped_column(
        Enum(BudgetMode, values_callable=_enum_values), nullable=False, default=BudgetMode.HARD
    )
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    window_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=86400)


class UsageLedger(Base):
    """Append-only cost accounting entries."""

    __tablename__ = "usage_ledger"

    id: Mapped[int] = mapped_column(_BigId, primary_key=True, autoincrement=True)
    scope_key: Mapped[str] = mapped_column(String(191), nullable=False)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    provider_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    model_id: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    prompt_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completion_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cost: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_usage_ledger_scope_created", "scope_key", "created_at"),
    )
