"""Stratum V1 pool client over WebSocket.

State machine::

    DISCONNECTED -> CONNECTING -> HANDSHAKING -> ACTIVE
         ^              ^                          |
         |              +------ RECONNECTING <-----+  (transport closed)
         +---- disconnect() from any state

``mining.subscribe`` and ``mining.authorize`` are sent as soon as the socket
opens; the client does not wait for their responses. Jobs and difficulty
changes arrive as notifications at any time after that.
"""

from __future__ import annotations

import asyncio
import itertools
import json
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

import structlog
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from dltminer.core.errors import StratumProtocolError
from dltminer.core.models import StratumJob

logger = structlog.get_logger()

DEFAULT_CLIENT_ID = "dlt-webminer/1.0"
DEFAULT_RECONNECT_DELAY = 5.0  # seconds
DEFAULT_SHARE_BITS = 20

JobCallback = Callable[[StratumJob], None]
DifficultyCallback = Callable[[int], None]
StatsCallback = Callable[[Any, Any, Any], None]
StatusCallback = Callable[[str], None]
Connector = Callable[[str], Awaitable[Any]]


class ClientState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    ACTIVE = "active"
    RECONNECTING = "reconnecting"


class StratumClient:
    """Pool client. ``connect()`` starts a background session task that
    reconnects after a fixed delay until ``disconnect()`` is called."""

    def __init__(
        self,
        url: str,
        address: str,
        *,
        on_job: JobCallback | None = None,
        on_difficulty: DifficultyCallback | None = None,
        on_stats: StatsCallback | None = None,
        on_status: StatusCallback | None = None,
        client_id: str = DEFAULT_CLIENT_ID,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        connector: Connector = websockets.connect,
    ) -> None:
        self.url = url
        self.address = address
        self.client_id = client_id
        self.reconnect_delay = reconnect_delay
        self.share_bits = DEFAULT_SHARE_BITS
        self.state = ClientState.DISCONNECTED

        self._on_job = on_job or (lambda _job: None)
        self._on_difficulty = on_difficulty or (lambda _bits: None)
        self._on_stats = on_stats or (lambda _workers, _blocks, _shares: None)
        self._on_status = on_status or (lambda message: logger.info("status", message=message))
        self._connector = connector

        self._ids = itertools.count(1)
        self._ws: Any = None
        self._session: asyncio.Task[None] | None = None
        self._closing = False
        self._pending_submits: set[int] = set()
        self.connections = 0

    @property
    def connected(self) -> bool:
        return self.state == ClientState.ACTIVE

    def bind(
        self,
        *,
        on_job: JobCallback | None = None,
        on_difficulty: DifficultyCallback | None = None,
        on_stats: StatsCallback | None = None,
        on_status: StatusCallback | None = None,
    ) -> None:
        """Replace the callbacks given; the others are left as they are."""
        if on_job is not None:
            self._on_job = on_job
        if on_difficulty is not None:
            self._on_difficulty = on_difficulty
        if on_stats is not None:
            self._on_stats = on_stats
        if on_status is not None:
            self._on_status = on_status

    def connect(self) -> None:
        """Start the session loop in the background."""
        if self._session is not None and not self._session.done():
            return
        self._closing = False
        self._session = asyncio.create_task(self._run(), name="stratum-session")

    async def disconnect(self) -> None:
        """Close the connection and suppress any further reconnects."""
        self._closing = True
        ws = self._ws
        if ws is not None:
            try:
                await ws.close()
            except (OSError, WebSocketException) as exc:
                logger.debug("pool_close_failed", error=str(exc))
        if self._session is not None:
            self._session.cancel()
            try:
                await self._session
            except asyncio.CancelledError:
                pass
            self._session = None
        self._ws = None
        self._set_state(ClientState.DISCONNECTED)

    async def _run(self) -> None:
        try:
            while not self._closing:
                await self._session_once()
                if self._closing:
                    break
                self._set_state(ClientState.RECONNECTING)
                self._on_status(f"Disconnected from pool, reconnecting in {self.reconnect_delay:g}s...")
                await asyncio.sleep(self.reconnect_delay)
        finally:
            self._ws = None
            self.state = ClientState.DISCONNECTED

    async def _session_once(self) -> None:
        """Connect, handshake, then read messages until the transport closes."""
        self._set_state(ClientState.CONNECTING)
        self._on_status("Connecting to pool...")
        try:
            ws = await self._connector(self.url)
        except (OSError, WebSocketException, asyncio.TimeoutError) as exc:
            logger.warning("pool_connect_failed", url=self.url, error=str(exc))
            self._on_status("Pool connection error")
            return

        self._ws = ws
        self.connections += 1
        self._pending_submits.clear()
        try:
            self._set_state(ClientState.HANDSHAKING)
            await self._send("mining.subscribe", [self.client_id])
            await self._send("mining.authorize", [self.address, "x"])
            self._set_state(ClientState.ACTIVE)
            self._on_status("Connected to pool")

            async for message in ws:
                self.handle_message(message)
        except ConnectionClosed as exc:
            logger.info("pool_connection_closed", code=exc.rcvd.code if exc.rcvd else None)
        except (OSError, WebSocketException) as exc:
            logger.warning("pool_connection_error", error=str(exc))
            self._on_status("Pool connection error")
        finally:
            self._ws = None

    async def submit_work(self, job_id: str, nonce: int, hash_hex: str) -> int | None:
        """Send ``mining.submit``. Returns the request id, or None if not connected."""
        if self.state != ClientState.ACTIVE or self._ws is None:
            self._on_status("Cannot submit share: not connected to pool")
            return None
        try:
            msg_id = await self._send("mining.submit", [self.address, job_id, nonce, hash_hex])
        except (OSError, WebSocketException) as exc:
            logger.warning("share_submit_failed", job_id=job_id, error=str(exc))
            self._on_status(f"Share submit failed: {exc}")
            return None
        self._pending_submits.add(msg_id)
        logger.info("share_submitted", job_id=job_id, nonce=nonce, id=msg_id)
        return msg_id

    async def _send(self, method: str, params: list[Any]) -> int:
        msg_id = next(self._ids)
        await self._ws.send(json.dumps({"id": msg_id, "method": method, "params": params}))
        return msg_id

    def handle_message(self, raw: str | bytes) -> None:
        """Dispatch one inbound message. Never raises."""
        try:
            msg = json.loads(raw)
            if not isinstance(msg, dict):
                raise StratumProtocolError(f"expected a JSON object, got {type(msg).__name__}")
        except (ValueError, StratumProtocolError) as exc:
            self._on_status(f"Invalid pool message: {exc}")
            return

        try:
            self._dispatch(msg)
        except Exception:
            logger.exception("pool_message_handler_failed", method=msg.get("method"))

    def _dispatch(self, msg: dict[str, Any]) -> None:
        method = msg.get("method")
        params = msg.get("params")

        if method == "mining.set_difficulty":
            bits = params[0] if isinstance(params, list) and params else None
            if isinstance(bits, (int, float)) and not isinstance(bits, bool):
                self.share_bits = int(bits)
                self._on_difficulty(self.share_bits)
                self._on_status(f"Share difficulty: {self.share_bits} bits")
            return

        if method == "mining.notify":
            try:
                job = StratumJob.from_params(params)
            except (StratumProtocolError, TypeError, ValueError) as exc:
                logger.warning("malformed_notify_discarded", error=str(exc))
                return
            self._on_job(job)
            return

        if method == "pool.stats":
            if isinstance(params, list) and len(params) >= 3:
                self._on_stats(params[0], params[1], params[2])
            return

        if method is not None:
            return

        msg_id = msg.get("id")
        if msg.get("error"):
            self._pending_submits.discard(msg_id)
            self._on_status(f"Share rejected: {json.dumps(msg['error'])}")
        elif msg_id in self._pending_submits:
            self._pending_submits.discard(msg_id)
            if msg.get("result") is True:
                self._on_status("Share accepted")

    def _set_state(self, state: ClientState) -> None:
        if state != self.state:
            logger.debug("pool_state_changed", old=self.state.value, new=state.value)
            self.state = state
