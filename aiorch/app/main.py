############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# main.py: FastAPI application entry point and configuration
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""FastAPI application entry point."""

import math
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from aiorch.app.api import api_router
from aiorch.app.core.errors import OrchestrationError, RateLimitExceeded
from aiorch.app.db.session import dispose_engine
from aiorch.app.logging_config import (
    bind_request_context,
    clear_request_context,
    get_logger,
    setup_logging,
)
from aiorch.app.runtime import Runtime, build_runtime
from aiorch.app.settings import get_settings

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Application lifespan manager."""
    logger.info("Starting aiorch...")

    owns_runtime = getattr(app.state, "runtime", None) is None
    if owns_runtime:
        app.state.runtime = build_runtime()
    runtime: Runtime = app.state.runtime
    await runtime.start()

    logger.info("aiorch started successfully")

    yield

    # Shutdown
    logger.info("Shutting down aiorch...")
    await runtime.stop()
    if owns_runtime:
        await dispose_engine()
    logger.info("aiorch shutdown complete")


class RequestIDMiddleware:
    """Raw ASGI middleware for request ID injection.

    Unlike @app.middleware("http") which wraps in BaseHTTPMiddleware,
    this does NOT run the handler in a separate task, so client disconnects
    won't cancel in-flight DB operations and leak connections.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = dict(scope.get("headers", []))
        request_id = (
            headers.get(b"x-request-id", b"").decode()
            or str(uuid.uuid4())
        )

        bind_request_context(request_id=request_id)

        async def send_wrapper(message):
            if message["type"] == "http.response.start":
                response_headers = list(message.get("headers", []))
                response_headers.append(
                    (b"x-request-id", request_id.encode())
                )
                message = {**message, "headers": response_headers}
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            clear_request_context()


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        runtime: Prebuilt runtime; when omitted the lifespan builds one
            from settings and disposes the engine on shutdown
    """
    settings = get_settings()
    setup_logging(settings)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="AI request orchestration and embedding pipeline",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.runtime = runtime

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request ID middleware, raw ASGI so client disconnects do not cancel DB work
    app.add_middleware(RequestIDMiddleware)

    # Exception handlers
    @app.exception_handler(OrchestrationError)
    async def orchestration_exception_handler(request: Request, exc: OrchestrationError):
        """Map orchestration errors to their HTTP status."""
        headers = {}
        if isinstance(exc, RateLimitExceeded) and exc.retry_after is not None:
            headers["Retry-After"] = str(max(1, math.ceil(exc.retry_after)))
        if exc.http_status >= 500:
            logger.warning("request_error", error=exc.message, error_type=exc.error_type, path=request.url.path)
        return JSONResponse(
            status_code=exc.http_status,
            content={"error": exc.to_dict()},
            headers=headers,
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler."""
        logger.exception("unhandled_exception", error=str(exc))
        return JSONResponse(
            status_code=500,
            content={"error": {"message": "Internal server error", "type": "server_error"}},
        )

    # Include routers
    app.include_router(api_router)

    return app


def main():
    """Run the application using uvicorn."""
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "aiorch.app.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
        reload=settings.reload,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
