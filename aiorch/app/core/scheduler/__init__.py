############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# __init__.py: Request scheduling package exports
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Priority scheduling for orchestrated requests.

Five strict priority levels with aging so that low-priority work is
eventually served under sustained high-priority load.
"""

from aiorch.app.core.scheduler.queue import Priority, QueueEntry, RequestQueue

__all__ = [
    "Priority",
    "QueueEntry",
    "RequestQueue",
]
