"""Tests for the WebSocket <-> TCP relay."""

from __future__ import annotations

import asyncio
import json

import pytest
from starlette.websockets import WebSocketState

from dltminer.bridge.relay import LineBuffer, PoolRelay, error_frame, is_json


class FakeBrowser:
    """The parts of a Starlette WebSocket that the relay uses."""

    def __init__(self) -> None:
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED
        self.sent: list[str] = []
        self.close_calls: list[tuple[int, str | None]] = []
        self._inbox: asyncio.Queue[dict] = asyncio.Queue()

    def type_text(self, text: str) -> None:
        self._inbox.put_nowait({"type": "websocket.receive", "text": text})

    def type_bytes(self, data: bytes) -> None:
        self._inbox.put_nowait({"type": "websocket.receive", "bytes": data})

    def hang_up(self, code: int = 1000) -> None:
        self._inbox.put_nowait({"type": "websocket.disconnect", "code": code})

    async def receive(self) -> dict:
        message = await self._inbox.get()
        if message["type"] == "websocket.disconnect":
            self.client_state = WebSocketState.DISCONNECTED
        return message

    async def send_text(self, text: str) -> None:
        self.sent.append(text)

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.close_calls.append((code, reason))
        self.application_state = WebSocketState.DISCONNECTED


class FakeWriter:
    def __init__(self, fail: bool = False) -> None:
        self.data = bytearray()
        self.closed = False
        self.fail = fail

    def write(self, data: bytes) -> None:
        if self.fail:
            raise ConnectionResetError("broken pipe")
        self.data.extend(data)

    async def drain(self) -> None:
        pass

    def is_closing(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        pass


class TestLineBuffer:
    def test_reassembles_split_lines(self) -> None:
        buf = LineBuffer()
        assert buf.feed(b'{"id":1,"res') == []
        assert buf.feed(b'ult":true}\n{"id":2}') == ['{"id":1,"result":true}']
        assert len(buf) == len(b'{"id":2}')
        assert buf.feed(b"\n") == ['{"id":2}']

    def test_strips_cr_and_skips_blank_lines(self) -> None:
        buf = LineBuffer()
        assert buf.feed(b'{"a":1}\r\n\r\n\n{"b":2}\n') == ['{"a":1}', '{"b":2}']

    def test_overlong_fragment_dropped(self) -> None:
        buf = LineBuffer(max_line_bytes=8)
        assert buf.feed(b"0123456789abc") == []
        assert len(buf) == 0
        assert buf.feed(b'{"x":1}\n') == ['{"x":1}']


def test_error_frame_shape() -> None:
    frame = error_frame("Pool connection error: refused")
    assert frame == '{"id":null,"error":"Pool connection error: refused","result":null}'
    assert is_json(frame)
    assert not is_json("nope")


class TestPoolRelay:
    @pytest.mark.asyncio
    async def test_pool_lines_become_messages(self) -> None:
        browser, writer = FakeBrowser(), FakeWriter()
        reader = asyncio.StreamReader()
        reader.feed_data(b'{"id":1,"result":true,"error":null}\n{"method":"mining.notify","params":[]}\r\n{"id"')
        reader.feed_data(b':2}\ngarbage\n\n')
        reader.feed_eof()

        relay = PoolRelay(1, browser, reader, writer)
        await asyncio.wait_for(relay.run(), timeout=2)

        assert browser.sent == [
            '{"id":1,"result":true,"error":null}',
            '{"method":"mining.notify","params":[]}',
            '{"id":2}',
        ]
        assert relay.messages_down == 3
        assert browser.close_calls == [(1001, "Pool disconnected")]
        assert writer.closed

    @pytest.mark.asyncio
    async def test_browser_messages_become_lines(self) -> None:
        browser, writer = FakeBrowser(), FakeWriter()
        reader = asyncio.StreamReader()
        browser.type_text('{"id":1,"method":"mining.subscribe","params":["x"]}\n')
        browser.type_text("not json")
        browser.type_bytes(b'{"id":2,"method":"mining.authorize","params":["a","x"]}')
        browser.hang_up()

        relay = PoolRelay(2, browser, reader, writer)
        await asyncio.wait_for(relay.run(), timeout=2)

        lines = bytes(writer.data).split(b"\n")
        assert lines[-1] == b""
        assert [json.loads(line)["id"] for line in lines[:-1]] == [1, 2]
        assert relay.messages_up == 2
        assert writer.closed
        # the browser already went away; no close frame is sent back
        assert browser.close_calls == []

    @pytest.mark.asyncio
    async def test_pool_read_error_reported(self) -> None:
        browser, writer = FakeBrowser(), FakeWriter()
        reader = asyncio.StreamReader()
        reader.set_exception(ConnectionResetError("reset by peer"))

        await asyncio.wait_for(PoolRelay(3, browser, reader, writer).run(), timeout=2)

        assert json.loads(browser.sent[0]) == {
            "id": None,
            "error": "Pool connection error: reset by peer",
            "result": None,
        }
        assert browser.close_calls == [(1001, "Pool disconnected")]

    @pytest.mark.asyncio
    async def test_pool_write_error_reported(self) -> None:
        browser, writer = FakeBrowser(), FakeWriter(fail=True)
        reader = asyncio.StreamReader()
        browser.type_text('{"id":1,"method":"mining.subscribe","params":[]}')

        await asyncio.wait_for(PoolRelay(4, browser, reader, writer).run(), timeout=2)

        assert json.loads(browser.sent[0])["error"] == "Pool connection error: broken pipe"
        assert browser.close_calls == [(1001, "Pool disconnected")]
