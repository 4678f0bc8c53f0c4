"""FastAPI application factory: JSON API plus per-subject WebSocket streams."""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tracker.exceptions import RetryTimeoutError, UpstreamError, ValidationError
from tracker.web.routes import api, ws

log = structlog.get_logger(__name__)


async def _validation_error(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=422, content={"error": str(exc)})


async def _upstream_error(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, UpstreamError)
    log.warning("api_upstream_error", path=request.url.path, kind=exc.kind, error=str(exc))
    return JSONResponse(
        status_code=502,
        content={"error": str(exc), "kind": exc.kind, "service": exc.service},
    )


async def _retry_timeout(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, RetryTimeoutError)
    return JSONResponse(status_code=504, content={"error": str(exc), "pending": exc.pending})


def create_app(lifespan: Any = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        lifespan: Optional async context manager for application lifespan events.
                  Used by main.py to start and stop the AppContext.

    Returns:
        Configured FastAPI application. Route handlers expect an AppContext
        on app.state.context.
    """
    app = FastAPI(title="Pitch Tracker", lifespan=lifespan)

    app.add_exception_handler(ValidationError, _validation_error)
    app.add_exception_handler(UpstreamError, _upstream_error)
    app.add_exception_handler(RetryTimeoutError, _retry_timeout)

    app.include_router(api.router, prefix="/api")
    app.include_router(ws.router)

    return app
