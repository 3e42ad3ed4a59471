"""JSON error responses for the bridge's plain HTTP routes.

Only ``/health`` is served over HTTP; everything else a browser might hit
is either the WebSocket upgrade at ``/`` or a 404.
"""

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = structlog.get_logger()


def setup_error_handlers(app: FastAPI) -> None:
    """Answer unknown paths, wrong methods and route failures with a JSON body."""

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        logger.debug("bridge_http_error", path=request.url.path, status=exc.status_code)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    @app.exception_handler(Exception)
    async def route_failed(request: Request, exc: Exception) -> JSONResponse:
        logger.error("bridge_route_failed", path=request.url.path, method=request.method, exc_info=exc)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})
