############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# __init__.py: Worker process package exports
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Background worker processes."""

from aiorch.app.workers.embedding_worker import EmbeddingWorker
from aiorch.app.workers.maintenance_worker import MaintenanceWorker

__all__ = ["EmbeddingWorker", "MaintenanceWorker"]
