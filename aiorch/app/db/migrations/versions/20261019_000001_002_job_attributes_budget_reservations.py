############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# 002_job_attributes_budget_reservations.py: Job attributes and budget reservations
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Add attributes to embedding jobs and reserved spend to budgets

Revision ID: 002
Revises: 001
Create Date: 2026-10-19 00:00:01.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '002'
down_revision: Union[str, None] = '001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column('embedding_jobs', sa.Column('attributes', sa.JSON(), nullable=True))
    op.add_column('budgets', sa.Column('reserved', sa.Float(), nullable=False, server_default='0'))


def downgrade() -> None:
    op.drop_column('budgets', 'reserved')
    op.drop_column('embedding_jobs', 'attributes')
