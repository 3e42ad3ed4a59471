"""Bridge endpoints: the WebSocket relay at ``/`` and ``/health``."""

import asyncio

import structlog
from fastapi import APIRouter, Request, WebSocket

from dltminer.bridge.manager import ConnectionRegistry
from dltminer.bridge.relay import PoolRelay, error_frame
from dltminer.config import Settings

logger = structlog.get_logger()

router = APIRouter()

POLICY_VIOLATION = 1008
INTERNAL_ERROR = 1011


def origin_allowed(origin: str | None, allowed: list[str], allow_missing: bool) -> bool:
    """Check the upgrade's Origin header against the allow-list."""
    if not origin:
        return allow_missing
    return origin.rstrip("/") in {o.rstrip("/") for o in allowed}


@router.get("/health")
async def health(request: Request) -> dict[str, object]:
    """Liveness check with connection counts."""
    registry: ConnectionRegistry = request.app.state.registry
    return {"status": "healthy", **registry.get_stats()}


@router.websocket("/")
async def relay_endpoint(websocket: WebSocket) -> None:
    """Pair this WebSocket with a fresh TCP connection to the pool."""
    state = websocket.app.state
    settings: Settings = state.settings
    registry: ConnectionRegistry = state.registry

    conn_id = registry.next_id()
    origin = websocket.headers.get("origin")
    if not origin_allowed(origin, settings.bridge_allowed_origins, settings.bridge_allow_missing_origin):
        logger.warning("bridge_origin_rejected", conn_id=conn_id, origin=origin)
        await websocket.close(code=POLICY_VIOLATION)
        return

    await websocket.accept()

    try:
        reader, writer = await asyncio.wait_for(state.pool_connector(), timeout=settings.request_timeout)
    except (OSError, asyncio.TimeoutError) as exc:
        reason = str(exc) or type(exc).__name__
        logger.warning(
            "bridge_pool_connect_failed",
            conn_id=conn_id,
            pool=f"{settings.bridge_pool_host}:{settings.bridge_pool_port}",
            error=reason,
        )
        await websocket.send_text(error_frame(f"Pool connection error: {reason}"))
        await websocket.close(code=INTERNAL_ERROR)
        return

    relay = PoolRelay(conn_id, websocket, reader, writer)
    registry.add(relay)
    try:
        await relay.run()
    finally:
        registry.remove(conn_id)
