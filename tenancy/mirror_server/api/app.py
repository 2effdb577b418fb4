"""
FastAPI application factory for the mirror server.

This module creates the FastAPI app with:
- CORS configuration
- Component lifecycle (store, engine, outbox worker)
- Caller API and repair routes under /api/v1
- Error mapping from MirrorError subclasses to HTTP status codes
"""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..config import ServerConfig
from ..errors import (
    BatchPartialFailure,
    InvalidStateError,
    MirrorError,
    NotFoundError,
    PrimaryWriteError,
    PropagationFailure,
)
from ..services import MirrorServices, build_services
from .routes import router

logger = logging.getLogger(__name__)

ERROR_STATUS: dict[type[MirrorError], int] = {
    NotFoundError: 404,
    InvalidStateError: 409,
    PropagationFailure: 502,
    BatchPartialFailure: 502,
    PrimaryWriteError: 503,
}


def status_for(error: MirrorError) -> int:
    """HTTP status code for a mirror error."""
    for error_type, status in ERROR_STATUS.items():
        if isinstance(error, error_type):
            return status
    return 500


async def mirror_error_handler(request: Request, exc: MirrorError) -> JSONResponse:
    status = status_for(exc)
    if status >= 500:
        logger.error(
            f"Request failed: {exc.message}",
            extra={"path": request.url.path, "code": exc.code, "details": exc.details},
        )
    return JSONResponse(status_code=status, content={"error": exc.to_dict()})


def create_app(config: ServerConfig | None = None, services: MirrorServices | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Server configuration (loaded from env if not provided)
        services: Pre-built components; built from config when omitted
    """
    config = config or (services.config if services else ServerConfig.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        svc = services or build_services(config)
        app.state.services = svc

        worker = None
        if svc.outbox is not None:
            worker = asyncio.create_task(svc.outbox.run())

        yield

        if worker is not None:
            await svc.outbox.stop()
            await worker

    app = FastAPI(
        title="Mirror Server",
        description="Cross-tenant mirroring and reconciliation for aggregation contexts.",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.http.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(MirrorError, mirror_error_handler)
    app.include_router(router, prefix="/api/v1")

    @app.get("/health")
    async def health():
        return {"status": "healthy", "service": "mirror-server"}

    return app
