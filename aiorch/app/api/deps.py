############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# deps.py: FastAPI dependencies
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""FastAPI dependencies."""

from fastapi import Request

from aiorch.app.runtime import Runtime


def get_runtime(request: Request) -> Runtime:
    """The Runtime built by the application lifespan."""
    return request.app.state.runtime


def get_principal(request: Request) -> str:
    """Rate-limit key: the X-Principal header, else the client address."""
    principal = request.headers.get("x-principal")
    if principal:
        return principal
    if request.client is not None:
        return f"ip:{request.client.host}"
    return "anonymous"
