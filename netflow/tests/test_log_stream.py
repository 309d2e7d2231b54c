"""Tests for the live Transfer log feed (eth_subscribe over WebSocket)."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from types import SimpleNamespace
from typing import Any

import aiohttp
import pytest

from netflow.connectors.log_stream import LogStreamError, TransferLogStream, extract_log
from netflow.core.transfers import TRANSFER_TOPIC

WS_URL = "wss://polygon-rpc.test/ws"
TOKEN = "0x0000000000000000000000000000000000001010"
SUB_ID = "0xcd0c3e8af590364c09d0fa6a1210faf5"


# ================================================================
# Fakes
# ================================================================


class FakeWebSocket:
    """Replays a scripted subscribe reply and a list of frames."""

    def __init__(
        self,
        replies: list[Any] | None = None,
        frames: list[SimpleNamespace] | None = None,
        hang: bool = False,
    ) -> None:
        self.sent: list[dict[str, Any]] = []
        self._replies = list(replies or [])
        self._frames = list(frames or [])
        self._hang = hang
        self.closed = False

    async def send_json(self, data: dict[str, Any]) -> None:
        self.sent.append(data)

    async def receive_json(self) -> Any:
        if self._hang or not self._replies:
            await asyncio.sleep(3600)
        reply = self._replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    def __aiter__(self) -> AsyncIterator[SimpleNamespace]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[SimpleNamespace]:
        for frame in self._frames:
            yield frame

    def exception(self) -> Exception:
        return ConnectionResetError("peer reset")

    async def close(self) -> None:
        self.closed = True


class FakeSession:
    def __init__(self, ws: FakeWebSocket | None = None, error: Exception | None = None) -> None:
        self._ws = ws
        self._error = error
        self.closed = False
        self.connect_kwargs: dict[str, Any] = {}

    async def ws_connect(self, url: str, **kwargs: Any) -> FakeWebSocket:
        self.connect_kwargs = {"url": url, **kwargs}
        if self._error is not None:
            raise self._error
        assert self._ws is not None
        return self._ws

    async def close(self) -> None:
        self.closed = True


def _text(message: Any) -> SimpleNamespace:
    return SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data=json.dumps(message))


def _notification(log: dict[str, Any], subscription: str = SUB_ID) -> SimpleNamespace:
    return _text(
        {
            "jsonrpc": "2.0",
            "method": "eth_subscription",
            "params": {"subscription": subscription, "result": log},
        }
    )


def _stream(session: FakeSession, **kwargs: Any) -> TransferLogStream:
    return TransferLogStream(WS_URL, TOKEN, session=session, **kwargs)  # type: ignore[arg-type]


async def _collect(stream: TransferLogStream) -> list[dict[str, Any]]:
    return [log async for log in stream.logs()]


# ================================================================
# extract_log
# ================================================================


class TestExtractLog:
    def test_notification(self) -> None:
        message = {
            "method": "eth_subscription",
            "params": {"subscription": SUB_ID, "result": {"logIndex": "0x1"}},
        }
        assert extract_log(message, SUB_ID) == {"logIndex": "0x1"}

    def test_other_subscription_ignored(self) -> None:
        message = {"method": "eth_subscription", "params": {"subscription": "0x99", "result": {}}}
        assert extract_log(message, SUB_ID) is None

    def test_non_notification_ignored(self) -> None:
        assert extract_log({"id": 5, "result": "0x1"}, SUB_ID) is None

    def test_non_dict_result_ignored(self) -> None:
        message = {"method": "eth_subscription", "params": {"subscription": SUB_ID, "result": "x"}}
        assert extract_log(message, SUB_ID) is None


# ================================================================
# connect
# ================================================================


class TestConnect:
    async def test_subscribes_to_token_transfers(self) -> None:
        ws = FakeWebSocket(replies=[{"jsonrpc": "2.0", "id": 1, "result": SUB_ID}])
        session = FakeSession(ws)
        stream = _stream(session, heartbeat_s=12.0)

        await stream.connect()

        assert stream.stats["subscription"] == SUB_ID
        assert session.connect_kwargs == {"url": WS_URL, "heartbeat": 12.0}
        (request,) = ws.sent
        assert request["method"] == "eth_subscribe"
        assert request["params"] == ["logs", {"address": TOKEN, "topics": [TRANSFER_TOPIC]}]

    async def test_skips_unrelated_messages_before_reply(self) -> None:
        ws = FakeWebSocket(
            replies=[
                ["not", "a", "dict"],
                {"jsonrpc": "2.0", "id": 42, "result": "0xother"},
                {"jsonrpc": "2.0", "id": 1, "result": SUB_ID},
            ]
        )
        stream = _stream(FakeSession(ws))

        await stream.connect()

        assert stream.stats["subscription"] == SUB_ID

    async def test_rejected_subscription(self) -> None:
        ws = FakeWebSocket(
            replies=[{"jsonrpc": "2.0", "id": 1, "error": {"code": -32601, "message": "nope"}}]
        )
        session = FakeSession(ws)
        stream = _stream(session)

        with pytest.raises(LogStreamError, match="rejected"):
            await stream.connect()
        assert ws.closed

    async def test_non_string_subscription_id(self) -> None:
        ws = FakeWebSocket(replies=[{"jsonrpc": "2.0", "id": 1, "result": None}])
        with pytest.raises(LogStreamError):
            await _stream(FakeSession(ws)).connect()

    async def test_timeout(self) -> None:
        ws = FakeWebSocket(hang=True)
        stream = _stream(FakeSession(ws), subscribe_timeout_s=0.05)

        with pytest.raises(LogStreamError, match="TimeoutError"):
            await stream.connect()
        assert ws.closed

    async def test_unreachable(self) -> None:
        session = FakeSession(error=aiohttp.ClientConnectionError("refused"))
        with pytest.raises(LogStreamError, match="subscribe failed"):
            await _stream(session).connect()

    async def test_close_frame_during_subscribe(self) -> None:
        ws = FakeWebSocket(replies=[TypeError("Received message 8:1000 is not str")])
        with pytest.raises(LogStreamError):
            await _stream(FakeSession(ws)).connect()

    async def test_shared_session_left_open(self) -> None:
        ws = FakeWebSocket(replies=[{"jsonrpc": "2.0", "id": 1, "result": SUB_ID}])
        session = FakeSession(ws)
        stream = _stream(session)
        await stream.connect()

        await stream.close()

        assert ws.closed
        assert not session.closed


# ================================================================
# logs
# ================================================================


class TestLogs:
    async def _connected(self, frames: list[SimpleNamespace]) -> TransferLogStream:
        ws = FakeWebSocket(replies=[{"jsonrpc": "2.0", "id": 1, "result": SUB_ID}], frames=frames)
        stream = _stream(FakeSession(ws))
        await stream.connect()
        return stream

    async def test_yields_notifications_until_close(self) -> None:
        stream = await self._connected(
            [
                _notification({"logIndex": "0x0"}),
                _notification({"logIndex": "0x9"}, subscription="0xother"),
                SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data="{not json"),
                _text([1, 2]),
                _notification({"logIndex": "0x1"}),
                SimpleNamespace(type=aiohttp.WSMsgType.CLOSE, data=1000),
                _notification({"logIndex": "0x2"}),
            ]
        )

        logs = await _collect(stream)

        assert logs == [{"logIndex": "0x0"}, {"logIndex": "0x1"}]
        assert stream.stats["notifications"] == 2

    async def test_ends_when_socket_exhausted(self) -> None:
        stream = await self._connected([_notification({"logIndex": "0x0"})])
        assert await _collect(stream) == [{"logIndex": "0x0"}]

    async def test_error_frame_raises(self) -> None:
        stream = await self._connected(
            [
                _notification({"logIndex": "0x0"}),
                SimpleNamespace(type=aiohttp.WSMsgType.ERROR, data=None),
            ]
        )
        received: list[dict[str, Any]] = []

        with pytest.raises(LogStreamError, match="peer reset"):
            async for log in stream.logs():
                received.append(log)
        assert received == [{"logIndex": "0x0"}]

    async def test_requires_connect(self) -> None:
        stream = _stream(FakeSession(FakeWebSocket()))
        with pytest.raises(LogStreamError, match="connect"):
            await _collect(stream)
