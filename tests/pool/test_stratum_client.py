"""Tests for the Stratum pool client."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from unittest.mock import MagicMock

import pytest

from dltminer.core.models import StratumJob
from dltminer.pool.client import ClientState, StratumClient

NOTIFY_PARAMS = ["job-1", 6001, "ab" * 32, 6, 24, 5_000_000_000, "[]", "dlt1pool", 1700000000, True]


class FakeWebSocket:
    """Stands in for a websockets client connection."""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.closed = False
        self._inbox: asyncio.Queue[str | None] = asyncio.Queue()

    async def send(self, data: str) -> None:
        if self.closed:
            raise OSError("socket closed")
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(None)

    def feed(self, message: dict | str) -> None:
        self._inbox.put_nowait(message if isinstance(message, str) else json.dumps(message))

    def __aiter__(self) -> FakeWebSocket:
        return self

    async def __anext__(self) -> str:
        item = await self._inbox.get()
        if item is None:
            raise StopAsyncIteration
        return item


class FakeConnector:
    """Hands out prepared sockets in order; raises OSError once they run out."""

    def __init__(self, *sockets: FakeWebSocket | Exception) -> None:
        self.sockets = list(sockets)
        self.urls: list[str] = []

    async def __call__(self, url: str) -> FakeWebSocket:
        self.urls.append(url)
        if not self.sockets:
            raise OSError("connection refused")
        item = self.sockets.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


async def _until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


def _client(connector=None, **kwargs) -> tuple[StratumClient, dict[str, MagicMock]]:
    callbacks = {name: MagicMock() for name in ("on_job", "on_difficulty", "on_stats", "on_status")}
    client = StratumClient(
        "ws://pool.test:8080",
        "dlt1miner",
        reconnect_delay=0.0,
        connector=connector or FakeConnector(),
        **callbacks,
        **kwargs,
    )
    return client, callbacks


def _statuses(callbacks: dict[str, MagicMock]) -> list[str]:
    return [c.args[0] for c in callbacks["on_status"].call_args_list]


class TestHandleMessage:
    def test_notify_delivers_job(self) -> None:
        client, cb = _client()
        client.handle_message(json.dumps({"id": None, "method": "mining.notify", "params": NOTIFY_PARAMS}))

        job = cb["on_job"].call_args.args[0]
        assert isinstance(job, StratumJob)
        assert job.job_id == "job-1"
        assert job.block_index == 6001
        assert job.pool_address == "dlt1pool"
        assert job.clean_jobs is True

    def test_short_notify_discarded(self) -> None:
        client, cb = _client()
        client.handle_message(json.dumps({"method": "mining.notify", "params": NOTIFY_PARAMS[:8]}))
        cb["on_job"].assert_not_called()

    def test_invalid_json_reported(self) -> None:
        client, cb = _client()
        client.handle_message("{not json")
        client.handle_message("[1, 2]")
        statuses = _statuses(cb)
        assert len(statuses) == 2
        assert all(s.startswith("Invalid pool message:") for s in statuses)

    def test_set_difficulty(self) -> None:
        client, cb = _client()
        client.handle_message(json.dumps({"method": "mining.set_difficulty", "params": [16]}))

        assert client.share_bits == 16
        cb["on_difficulty"].assert_called_once_with(16)
        assert _statuses(cb) == ["Share difficulty: 16 bits"]

    def test_set_difficulty_ignores_non_numbers(self) -> None:
        client, cb = _client()
        client.handle_message(json.dumps({"method": "mining.set_difficulty", "params": ["high"]}))
        client.handle_message(json.dumps({"method": "mining.set_difficulty", "params": [True]}))
        client.handle_message(json.dumps({"method": "mining.set_difficulty", "params": []}))

        assert client.share_bits == 20
        cb["on_difficulty"].assert_not_called()

    def test_pool_stats(self) -> None:
        client, cb = _client()
        client.handle_message(json.dumps({"method": "pool.stats", "params": [5, 2, 100]}))
        client.handle_message(json.dumps({"method": "pool.stats", "params": [5, 2]}))
        cb["on_stats"].assert_called_once_with(5, 2, 100)

    def test_error_response_rejects_share(self) -> None:
        client, cb = _client()
        client.handle_message(json.dumps({"id": 3, "result": None, "error": [23, "Low difficulty share"]}))
        assert _statuses(cb) == ['Share rejected: [23, "Low difficulty share"]']

    def test_accepted_only_for_pending_submit(self) -> None:
        client, cb = _client()
        client._pending_submits.add(7)
        client.handle_message(json.dumps({"id": 8, "result": True, "error": None}))
        client.handle_message(json.dumps({"id": 7, "result": True, "error": None}))
        assert _statuses(cb) == ["Share accepted"]
        assert 7 not in client._pending_submits

    def test_unknown_method_ignored(self) -> None:
        client, cb = _client()
        client.handle_message(json.dumps({"method": "client.reconnect", "params": []}))
        for callback in cb.values():
            callback.assert_not_called()

    def test_callback_failure_does_not_escape(self) -> None:
        client, cb = _client()
        cb["on_job"].side_effect = RuntimeError("boom")
        client.handle_message(json.dumps({"method": "mining.notify", "params": NOTIFY_PARAMS}))
        cb["on_job"].assert_called_once()


class TestSession:
    @pytest.mark.asyncio
    async def test_handshake_then_notify(self) -> None:
        ws = FakeWebSocket()
        client, cb = _client(FakeConnector(ws))

        client.connect()
        await _until(lambda: client.state == ClientState.ACTIVE)

        assert [m["method"] for m in ws.sent] == ["mining.subscribe", "mining.authorize"]
        assert ws.sent[0] == {"id": 1, "method": "mining.subscribe", "params": ["dlt-webminer/1.0"]}
        assert ws.sent[1]["params"] == ["dlt1miner", "x"]
        assert "Connected to pool" in _statuses(cb)

        ws.feed({"id": None, "method": "mining.notify", "params": NOTIFY_PARAMS})
        await _until(lambda: cb["on_job"].called)

        await client.disconnect()
        assert client.state == ClientState.DISCONNECTED
        assert ws.closed

    @pytest.mark.asyncio
    async def test_submit_work_ids_increase(self) -> None:
        ws = FakeWebSocket()
        client, _ = _client(FakeConnector(ws))
        client.connect()
        await _until(lambda: client.connected)

        first = await client.submit_work("job-1", 42, "00ff")
        second = await client.submit_work("job-1", 43, "00fe")

        assert (first, second) == (3, 4)
        assert ws.sent[2] == {"id": 3, "method": "mining.submit", "params": ["dlt1miner", "job-1", 42, "00ff"]}

        ws.feed({"id": 3, "result": True, "error": None})
        await _until(lambda: 3 not in client._pending_submits)
        assert 4 in client._pending_submits
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_submit_when_disconnected(self) -> None:
        client, cb = _client()
        assert await client.submit_work("job-1", 1, "00") is None
        assert _statuses(cb) == ["Cannot submit share: not connected to pool"]

    @pytest.mark.asyncio
    async def test_reconnects_after_close(self) -> None:
        first, second = FakeWebSocket(), FakeWebSocket()
        connector = FakeConnector(first, second)
        client, cb = _client(connector)

        client.connect()
        await _until(lambda: client.connected)
        await first.close()
        await _until(lambda: client.connections == 2 and client.connected)

        assert "Disconnected from pool, reconnecting in 0s..." in _statuses(cb)
        assert connector.urls == ["ws://pool.test:8080"] * 2
        assert [m["method"] for m in second.sent] == ["mining.subscribe", "mining.authorize"]
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_connect_error_retries(self) -> None:
        ws = FakeWebSocket()
        client, cb = _client(FakeConnector(OSError("refused"), ws))

        client.connect()
        await _until(lambda: client.connected)

        assert "Pool connection error" in _statuses(cb)
        assert client.connections == 1
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect_suppresses_reconnect(self) -> None:
        ws = FakeWebSocket()
        connector = FakeConnector(ws, FakeWebSocket())
        client, _ = _client(connector)

        client.connect()
        await _until(lambda: client.connected)
        await client.disconnect()
        await asyncio.sleep(0.05)

        assert len(connector.urls) == 1
        assert client.state == ClientState.DISCONNECTED
