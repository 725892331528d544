############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# __init__.py: API router aggregation
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""API endpoints for aiorch."""

from fastapi import APIRouter

from aiorch.app.api.health import router as health_router
from aiorch.app.api.orchestration_api import router as orchestration_router

# Create main API router
api_router = APIRouter()

# Include all sub-routers
api_router.include_router(health_router)
api_router.include_router(orchestration_router)

__all__ = ["api_router"]
