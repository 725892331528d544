############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# 001_initial_schema.py: Initial database schema migration
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Initial database schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import mysql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_BigId = sa.BigInteger().with_variant(sa.Integer(), 'sqlite')


def upgrade() -> None:
    # Embedding jobs
    op.create_table(
        'embedding_jobs',
        sa.Column('id', _BigId, autoincrement=True, nullable=False),
        sa.Column('source_id', sa.String(191), nullable=False),
        sa.Column('source_type', sa.String(50), nullable=False),
        sa.Column('content', sa.Text().with_variant(mysql.MEDIUMTEXT(), 'mysql'), nullable=False),
        sa.Column('content_hash', sa.String(64), nullable=False),
        sa.Column('status', sa.Enum('pending', 'processing', 'completed', 'failed', name='embeddingjobstatus'), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('claimed_by', sa.String(100), nullable=True),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('claim_token', sa.String(36), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_embedding_jobs_status_id', 'embedding_jobs', ['status', 'id'])
    op.create_index('ix_embedding_jobs_source_status', 'embedding_jobs', ['source_id', 'status'])
    op.create_index('ix_embedding_jobs_claim_token', 'embedding_jobs', ['claim_token'])
    op.create_index('ix_embedding_jobs_content_hash', 'embedding_jobs', ['content_hash'])

    # Durable embedding cache
    op.create_table(
        'embedding_cache',
        sa.Column('content_hash', sa.String(64), nullable=False),
        sa.Column('model_id', sa.String(200), nullable=False),
        sa.Column('response', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('hit_count', sa.Integer(), nullable=False, server_default='0'),
        sa.PrimaryKeyConstraint('content_hash', 'model_id'),
    )
    op.create_index('ix_embedding_cache_expires_at', 'embedding_cache', ['expires_at'])

    # Embedding vectors
    op.create_table(
        'embedding_vectors',
        sa.Column('id', _BigId, autoincrement=True, nullable=False),
        sa.Column('source_id', sa.String(191), nullable=False),
        sa.Column('source_type', sa.String(50), nullable=False),
        sa.Column('content_hash', sa.String(64), nullable=False),
        sa.Column('model_id', sa.String(200), nullable=False),
        sa.Column('dimension', sa.Integer(), nullable=False),
        sa.Column('vector', sa.JSON(), nullable=False),
        sa.Column('attributes', sa.JSON(), nullable=True),
        sa.Column('is_current', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('superseded_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'ix_embedding_vectors_source_model_current', 'embedding_vectors', ['source_id', 'model_id', 'is_current']
    )
    op.create_index(
        'ix_embedding_vectors_hash_model_current', 'embedding_vectors', ['content_hash', 'model_id', 'is_current']
    )
    op.create_index('ix_embedding_vectors_model_id', 'embedding_vectors', ['model_id', 'id'])

    # Provider health
    op.create_table(
        'provider_health',
        sa.Column('provider_id', sa.String(100), nullable=False),
        sa.Column('state', sa.String(20), nullable=False, server_default='closed'),
        sa.Column('failure_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('window_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('opened_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('latency_ema_ms', sa.Float(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('provider_id'),
    )

    # Budgets
    op.create_table(
        'budgets',
        sa.Column('scope_key', sa.String(191), nullable=False),
        sa.Column('limit_amount', sa.Float(), nullable=False),
        sa.Column('spent', sa.Float(), nullable=False, server_default='0'),
        sa.Column('mode', sa.Enum('soft', 'hard', name='budgetmode'), nullable=False),
        sa.Column('window_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('window_seconds', sa.Integer(), nullable=False, server_default='86400'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('scope_key'),
    )

    # Usage ledger
    op.create_table(
        'usage_ledger',
        sa.Column('id', _BigId, autoincrement=True, nullable=False),
        sa.Column('scope_key', sa.String(191), nullable=False),
        sa.Column('kind', sa.String(50), nullable=False),
        sa.Column('provider_id', sa.String(100), nullable=True),
        sa.Column('model_id', sa.String(200), nullable=True),
        sa.Column('prompt_tokens', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('completion_tokens', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('cost', sa.Float(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_usage_ledger_scope_created', 'usage_ledger', ['scope_key', 'created_at'])


def downgrade() -> None:
    op.drop_table('usage_ledger')
    op.drop_table('budgets')
    op.drop_table('provider_health')
    op.drop_table('embedding_vectors')
    op.drop_table('embedding_cache')
    op.drop_table('embedding_jobs')
