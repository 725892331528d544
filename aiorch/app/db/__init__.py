############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# __init__.py: Database package initialization and exports
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Database package for aiorch."""

from aiorch.app.db.base import Base
from aiorch.app.db.session import (
    create_engine,
    create_session_factory,
    get_async_db_context,
    get_session_factory,
    init_models,
)

__all__ = [
    "Base",
    "create_engine",
    "create_session_factory",
    "get_async_db_context",
    "get_session_factory",
    "init_models",
]
