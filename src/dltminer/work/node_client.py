"""Async client for the node REST API (status, mempool, block submission)."""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from dltminer.core.errors import NodeError
from dltminer.core.models import Block, Transaction
from dltminer.core.serialization import block_to_json
from dltminer.work.schemas import MempoolResponse, StatusData, StatusResponse, SubmitResponse

logger = structlog.get_logger()


class NodeClient:
    """Thin wrapper over ``httpx.AsyncClient`` with a bounded timeout on every call.

    Transport failures, timeouts, non-JSON bodies and schema mismatches all
    surface as ``NodeError``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def get_status(self) -> StatusData:
        """GET /status -> chain tip. Raises NodeError on failure or success=false."""
        raw = await self._request("GET", "/status")
        try:
            resp = StatusResponse.model_validate(raw)
        except ValidationError as exc:
            raise NodeError(f"Invalid /status response: {exc.error_count()} errors") from exc
        if not resp.success or resp.data is None:
            raise NodeError(f"Node error: {resp.message or 'no status data'}")
        return resp.data

    async def get_mempool(self) -> list[Transaction]:
        """GET /mempool -> pending transactions."""
        raw = await self._request("GET", "/mempool")
        try:
            resp = MempoolResponse.model_validate(raw)
        except ValidationError as exc:
            raise NodeError(f"Invalid /mempool response: {exc.error_count()} errors") from exc
        if not resp.success:
            raise NodeError(f"Node error: {resp.message}")
        if resp.data is None or not resp.data.transactions:
            return []
        try:
            return [Transaction.from_dict(tx) for tx in resp.data.transactions]
        except (TypeError, ValueError) as exc:
            raise NodeError(f"Invalid mempool transaction: {exc}") from exc

    async def submit_block(self, block: Block) -> SubmitResponse:
        """POST /block/submit with the canonical block body.

        A rejection is returned as ``success=False``; only transport-level
        problems raise.
        """
        raw = await self._request(
            "POST",
            "/block/submit",
            content=block_to_json(block).encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )
        try:
            return SubmitResponse.model_validate(raw)
        except ValidationError as exc:
            raise NodeError(f"Invalid /block/submit response: {exc.error_count()} errors") from exc

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise NodeError(f"{method} {path} timed out") from exc
        except httpx.HTTPError as exc:
            raise NodeError(f"{method} {path} failed: {exc}") from exc

        try:
            return response.json()
        except ValueError as exc:
            raise NodeError(f"{method} {path} returned non-JSON (HTTP {response.status_code})") from exc
