"""Tests for the Polygon JSON-RPC client (block data lookup)."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator

import aiohttp
import pytest
from aioresponses import aioresponses

from netflow.connectors.polygon_rpc import DECIMALS_SELECTOR, PolygonRpcClient, RpcError

RPC_URL = "https://polygon-rpc.test/v2/key"
TOKEN = "0x0000000000000000000000000000000000001010"


def _ok(result: object) -> dict:
    return {"jsonrpc": "2.0", "id": 1, "result": result}


@pytest.fixture
async def client() -> AsyncIterator[PolygonRpcClient]:
    rpc = PolygonRpcClient(RPC_URL, base_delay_s=0.0, max_retries=3, block_cache_size=2)
    yield rpc
    await rpc.close()


def test_decimals_selector() -> None:
    assert DECIMALS_SELECTOR == "0x313ce567"


class TestBlockNumber:
    async def test_parses_hex(self, client: PolygonRpcClient) -> None:
        with aioresponses() as m:
            m.post(RPC_URL, payload=_ok("0x3e8"))
            assert await client.get_block_number() == 1000

    @pytest.mark.parametrize("result", [None, "", "latest", 12])
    async def test_unusable_result_raises(self, client: PolygonRpcClient, result: object) -> None:
        with aioresponses() as m:
            m.post(RPC_URL, payload=_ok(result))
            with pytest.raises(RpcError, match="eth_blockNumber returned"):
                await client.get_block_number()

    async def test_sends_json_rpc_envelope(self, client: PolygonRpcClient) -> None:
        with aioresponses() as m:
            m.post(RPC_URL, payload=_ok("0x1"))
            await client.get_block_number()

            (call,) = next(iter(m.requests.values()))
            body = call.kwargs["json"]
        assert body["jsonrpc"] == "2.0"
        assert body["method"] == "eth_blockNumber"
        assert body["params"] == []


class TestBlockTimestamp:
    async def test_fetches_and_caches(self, client: PolygonRpcClient) -> None:
        with aioresponses() as m:
            m.post(RPC_URL, payload=_ok({"number": "0x64", "timestamp": "0x6553f100"}))
            first = await client.get_block_timestamp(100)
            second = await client.get_block_timestamp(100)

        assert first == second == 0x6553F100
        assert client.stats["calls"] == 1
        assert client.stats["cache_hits"] == 1

    async def test_cache_is_bounded_lru(self, client: PolygonRpcClient) -> None:
        with aioresponses() as m:
            for ts in ("0x1", "0x2", "0x3", "0x4"):
                m.post(RPC_URL, payload=_ok({"timestamp": ts}))
            await client.get_block_timestamp(1)
            await client.get_block_timestamp(2)
            await client.get_block_timestamp(1)  # hit, 1 becomes most recent
            await client.get_block_timestamp(3)  # evicts 2
            assert await client.get_block_timestamp(1) == 1
            assert await client.get_block_timestamp(2) == 4  # refetched

        assert client.stats["cached_blocks"] == 2
        assert client.stats["calls"] == 4

    async def test_null_block_raises(self, client: PolygonRpcClient) -> None:
        with aioresponses() as m:
            m.post(RPC_URL, payload=_ok(None))
            with pytest.raises(RpcError, match="not found"):
                await client.get_block_timestamp(999_999_999)

    async def test_bad_timestamp_raises(self, client: PolygonRpcClient) -> None:
        with aioresponses() as m:
            m.post(RPC_URL, payload=_ok({"number": "0x1"}))
            with pytest.raises(RpcError, match="bad timestamp"):
                await client.get_block_timestamp(1)


class TestTokenDecimals:
    async def test_decodes_uint8(self, client: PolygonRpcClient) -> None:
        with aioresponses() as m:
            m.post(RPC_URL, payload=_ok("0x" + f"{18:064x}"))
            assert await client.get_token_decimals(TOKEN) == 18

            (call,) = next(iter(m.requests.values()))
        params = call.kwargs["json"]["params"]
        assert params == [{"to": TOKEN, "data": DECIMALS_SELECTOR}, "latest"]

    async def test_empty_result_raises(self, client: PolygonRpcClient) -> None:
        with aioresponses() as m:
            m.post(RPC_URL, payload=_ok("0x"))
            with pytest.raises(RpcError):
                await client.get_token_decimals(TOKEN)

    async def test_out_of_range_raises(self, client: PolygonRpcClient) -> None:
        with aioresponses() as m:
            m.post(RPC_URL, payload=_ok("0x" + f"{256:064x}"))
            with pytest.raises(RpcError, match="out of range"):
                await client.get_token_decimals(TOKEN)


class TestRetries:
    async def test_retries_5xx_then_succeeds(self, client: PolygonRpcClient) -> None:
        with aioresponses() as m:
            m.post(RPC_URL, status=502, body="bad gateway")
            m.post(RPC_URL, status=429, body="slow down")
            m.post(RPC_URL, payload=_ok("0xa"))
            assert await client.get_block_number() == 10
        assert client.stats["calls"] == 3

    async def test_retries_network_error(self, client: PolygonRpcClient) -> None:
        with aioresponses() as m:
            m.post(RPC_URL, exception=aiohttp.ClientConnectionError("reset"))
            m.post(RPC_URL, payload=_ok("0xa"))
            assert await client.get_block_number() == 10

    async def test_gives_up_after_max_retries(self, client: PolygonRpcClient) -> None:
        with aioresponses() as m:
            for _ in range(3):
                m.post(RPC_URL, status=503, body="unavailable")
            with pytest.raises(RpcError, match="HTTP 503"):
                await client.get_block_number()
        assert client.stats["calls"] == 3

    async def test_client_error_not_retried(self, client: PolygonRpcClient) -> None:
        with aioresponses() as m:
            m.post(RPC_URL, status=401, body="unauthorized")
            with pytest.raises(RpcError, match="HTTP 401"):
                await client.get_block_number()
        assert client.stats["calls"] == 1

    async def test_json_rpc_error_not_retried(self, client: PolygonRpcClient) -> None:
        with aioresponses() as m:
            m.post(
                RPC_URL,
                payload={"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "boom"}},
            )
            with pytest.raises(RpcError, match="boom"):
                await client.get_block_number()
        assert client.stats["calls"] == 1

    async def test_non_object_body_raises(self, client: PolygonRpcClient) -> None:
        with aioresponses() as m:
            m.post(RPC_URL, body=json.dumps([1, 2, 3]))
            with pytest.raises(RpcError, match="malformed"):
                await client.get_block_number()


class TestSession:
    async def test_shared_session_not_closed(self) -> None:
        async with aiohttp.ClientSession() as session:
            rpc = PolygonRpcClient(RPC_URL, session=session)
            await rpc.close()
            assert not session.closed
