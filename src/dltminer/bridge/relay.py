"""One WebSocket <-> TCP pool pairing.

The pool speaks newline-delimited JSON over TCP; the browser side speaks one
JSON document per WebSocket text message. Lines that do not parse as JSON
are dropped in both directions. When either side goes away the other is
closed too.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Awaitable, Callable

import structlog
from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

logger = structlog.get_logger()

READ_CHUNK_SIZE = 4096
MAX_LINE_BYTES = 1024 * 1024
POOL_CLOSE_CODE = 1001
POOL_CLOSE_REASON = "Pool disconnected"

PoolConnector = Callable[[], Awaitable[tuple[asyncio.StreamReader, asyncio.StreamWriter]]]


def is_json(text: str) -> bool:
    try:
        json.loads(text)
    except ValueError:
        return False
    return True


def error_frame(message: str) -> str:
    """Stratum-shaped error response sent to the browser before closing."""
    return json.dumps({"id": None, "error": message, "result": None}, separators=(",", ":"))


class LineBuffer:
    """Reassembles a TCP byte stream into complete lines.

    ``feed`` returns every line completed by the new chunk; the trailing
    fragment is kept for the next call. Blank lines are skipped.
    """

    def __init__(self, max_line_bytes: int = MAX_LINE_BYTES) -> None:
        self._buffer = bytearray()
        self._max = max_line_bytes

    def __len__(self) -> int:
        return len(self._buffer)

    def feed(self, chunk: bytes) -> list[str]:
        self._buffer.extend(chunk)
        *complete, rest = self._buffer.split(b"\n")
        self._buffer = bytearray(rest)

        if len(self._buffer) > self._max:
            logger.warning("pool_line_too_long", size=len(self._buffer))
            self._buffer.clear()

        lines = []
        for raw in complete:
            line = raw.rstrip(b"\r").decode("utf-8", errors="replace")
            if line.strip():
                lines.append(line)
        return lines


class PoolRelay:
    """Pumps one accepted WebSocket against one TCP connection until either ends."""

    def __init__(
        self,
        conn_id: int,
        websocket: WebSocket,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        self.conn_id = conn_id
        self.websocket = websocket
        self.opened_at = time.time()
        self.messages_up = 0
        self.messages_down = 0
        self._reader = reader
        self._writer = writer
        self._buffer = LineBuffer()

    async def run(self) -> None:
        """Relay in both directions; return once both sides are closed."""
        upstream = asyncio.create_task(self._browser_to_pool(), name=f"relay-{self.conn_id}-up")
        downstream = asyncio.create_task(self._pool_to_browser(), name=f"relay-{self.conn_id}-down")
        try:
            _done, pending = await asyncio.wait({upstream, downstream}, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        finally:
            upstream.cancel()
            downstream.cancel()
            await self.close_pool()
            await self.close_browser(POOL_CLOSE_CODE, POOL_CLOSE_REASON)

    async def _browser_to_pool(self) -> None:
        while True:
            try:
                message = await self.websocket.receive()
            except (WebSocketDisconnect, RuntimeError):
                return
            if message["type"] == "websocket.disconnect":
                logger.info("bridge_browser_closed", conn_id=self.conn_id, code=message.get("code"))
                return

            text = message.get("text")
            if text is None:
                text = (message.get("bytes") or b"").decode("utf-8", errors="replace")
            text = text.rstrip("\r\n")

            if not is_json(text):
                logger.warning("bridge_invalid_json_from_browser", conn_id=self.conn_id, size=len(text))
                continue

            try:
                self._writer.write(text.encode("utf-8") + b"\n")
                await self._writer.drain()
            except OSError as exc:
                logger.warning("bridge_pool_write_failed", conn_id=self.conn_id, error=str(exc))
                await self.send_error(f"Pool connection error: {exc}")
                return
            self.messages_up += 1

    async def _pool_to_browser(self) -> None:
        while True:
            try:
                chunk = await self._reader.read(READ_CHUNK_SIZE)
            except OSError as exc:
                logger.warning("bridge_pool_error", conn_id=self.conn_id, error=str(exc))
                await self.send_error(f"Pool connection error: {exc}")
                return
            if not chunk:
                logger.info("bridge_pool_closed", conn_id=self.conn_id)
                return

            for line in self._buffer.feed(chunk):
                if not is_json(line):
                    logger.warning("bridge_invalid_json_from_pool", conn_id=self.conn_id, line=line[:200])
                    continue
                if not await self._send_text(line):
                    return
                self.messages_down += 1

    async def send_error(self, message: str) -> None:
        await self._send_text(error_frame(message))

    async def _send_text(self, text: str) -> bool:
        if not self._browser_open():
            return False
        try:
            await self.websocket.send_text(text)
        except (WebSocketDisconnect, RuntimeError, OSError):
            return False
        return True

    def _browser_open(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def close_browser(self, code: int, reason: str) -> None:
        if not self._browser_open():
            return
        try:
            await self.websocket.close(code=code, reason=reason)
        except (RuntimeError, OSError):
            pass

    async def close_pool(self) -> None:
        if self._writer.is_closing():
            return
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except OSError:
            pass
