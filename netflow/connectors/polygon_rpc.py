"""Polygon JSON-RPC client over HTTP (block data lookup).

Interface contract:
  - get_block_number() → int
  - get_block_timestamp(block_number) → int (unix seconds, LRU-cached)
  - get_token_decimals(token) → int (ERC-20 decimals() via eth_call)

Network errors and 5xx responses are retried with exponential backoff.
JSON-RPC level errors are not retried.
"""

from __future__ import annotations

import asyncio
import itertools
from collections import OrderedDict
from typing import Any

import aiohttp
from web3 import Web3

from netflow.utils.logger import get_logger

logger = get_logger("polygon_rpc")

MAX_RETRIES = 3
BASE_DELAY_S = 1.0
DEFAULT_TIMEOUT_S = 10.0
DEFAULT_BLOCK_CACHE_SIZE = 1024

DECIMALS_SELECTOR = Web3.to_hex(Web3.keccak(text="decimals()")[:4])


class RpcError(Exception):
    """JSON-RPC call failed or returned an unusable result."""


class PolygonRpcClient:
    """Async JSON-RPC client for block data.

    Args:
        http_url: HTTP(S) RPC endpoint.
        session: Optional shared aiohttp session.
        timeout_s: Per-request total timeout.
        max_retries: Attempts per call for retryable failures.
        base_delay_s: First backoff delay; doubles per attempt.
        block_cache_size: Max block timestamps kept in memory.
    """

    def __init__(
        self,
        http_url: str,
        session: aiohttp.ClientSession | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        max_retries: int = MAX_RETRIES,
        base_delay_s: float = BASE_DELAY_S,
        block_cache_size: int = DEFAULT_BLOCK_CACHE_SIZE,
    ) -> None:
        self._http_url = http_url
        self._session = session
        self._owns_session = session is None
        self._timeout_s = timeout_s
        self._max_retries = max(1, max_retries)
        self._base_delay_s = base_delay_s
        self._block_cache: OrderedDict[int, int] = OrderedDict()
        self._block_cache_size = block_cache_size
        self._ids = itertools.count(1)
        self._calls = 0
        self._cache_hits = 0

    # ------------------------------------------------------------------
    # Session management
    # ------------------------------------------------------------------

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout_s),
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if we own it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._block_cache.clear()
        logger.info("rpc_client_closed", calls=self._calls, cache_hits=self._cache_hits)

    # ------------------------------------------------------------------
    # JSON-RPC
    # ------------------------------------------------------------------

    async def _call(self, method: str, params: list[Any]) -> Any:
        """POST one JSON-RPC request with retries.

        Raises:
            RpcError: On a JSON-RPC error object, or after retries run out.
        """
        session = await self._get_session()
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}

        last_error: Exception | None = None
        for attempt in range(self._max_retries):
            try:
                self._calls += 1
                async with session.post(self._http_url, json=payload) as resp:
                    if resp.status >= 500 or resp.status == 429:
                        delay = self._base_delay_s * (2**attempt)
                        logger.warning(
                            "rpc_retryable_status",
                            method=method,
                            status=resp.status,
                            attempt=attempt + 1,
                        )
                        last_error = RpcError(f"{method}: HTTP {resp.status}")
                        await asyncio.sleep(delay)
                        continue
                    if resp.status != 200:
                        body = await resp.text()
                        raise RpcError(f"{method}: HTTP {resp.status}: {body[:200]}")
                    data = await resp.json(content_type=None)

            except (aiohttp.ClientError, TimeoutError) as e:
                delay = self._base_delay_s * (2**attempt)
                logger.warning(
                    "rpc_network_error", method=method, error=str(e), attempt=attempt + 1
                )
                last_error = RpcError(f"{method}: network error: {e}")
                await asyncio.sleep(delay)
                continue

            if not isinstance(data, dict):
                raise RpcError(f"{method}: malformed response")
            if data.get("error"):
                err = data["error"]
                message = err.get("message", err) if isinstance(err, dict) else err
                raise RpcError(f"{method}: {message}")
            return data.get("result")

        raise last_error or RpcError(f"{method}: request failed after retries")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get_block_number(self) -> int:
        """eth_blockNumber."""
        result = await self._call("eth_blockNumber", [])
        try:
            return int(result, 16)
        except (TypeError, ValueError) as e:
            raise RpcError(f"eth_blockNumber returned {result!r}") from e

    async def get_block_timestamp(self, block_number: int) -> int:
        """Timestamp (unix seconds) of a block, served from cache when possible."""
        cached = self._block_cache.get(block_number)
        if cached is not None:
            self._block_cache.move_to_end(block_number)
            self._cache_hits += 1
            return cached

        block = await self._call("eth_getBlockByNumber", [hex(block_number), False])
        if not block:
            raise RpcError(f"block {block_number} not found")
        try:
            timestamp = int(block["timestamp"], 16)
        except (KeyError, TypeError, ValueError) as e:
            raise RpcError(f"block {block_number}: bad timestamp: {e}") from e

        self._block_cache[block_number] = timestamp
        if len(self._block_cache) > self._block_cache_size:
            self._block_cache.popitem(last=False)
        return timestamp

    async def get_token_decimals(self, token: str) -> int:
        """ERC-20 decimals() of a token contract."""
        result = await self._call(
            "eth_call", [{"to": token, "data": DECIMALS_SELECTOR}, "latest"]
        )
        if not isinstance(result, str) or len(result) < 3:
            raise RpcError(f"decimals() on {token} returned {result!r}")
        decimals = int(result[-64:], 16)
        if decimals > 255:
            raise RpcError(f"decimals() on {token} out of range: {decimals}")
        logger.info("token_decimals_resolved", token=token, decimals=decimals)
        return decimals

    @property
    def stats(self) -> dict[str, int]:
        return {
            "calls": self._calls,
            "cache_hits": self._cache_hits,
            "cached_blocks": len(self._block_cache),
        }
