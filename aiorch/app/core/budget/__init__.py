############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# __init__.py: Budget tracking package exports
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Cost estimation and budget enforcement."""

from aiorch.app.core.budget.pricing import CostEstimator
from aiorch.app.core.budget.store import Budget, BudgetStore, MemoryBudgetStore, SqlBudgetStore
from aiorch.app.core.budget.tracker import BudgetCheck, BudgetReservation, CostTracker

__all__ = [
    "Budget",
    "BudgetCheck",
    "BudgetReservation",
    "BudgetStore",
    "CostEstimator",
    "CostTracker",
    "MemoryBudgetStore",
    "SqlBudgetStore",
]
