"""Live Transfer log feed over a JSON-RPC WebSocket (eth_subscribe "logs").

Live only: the subscription starts at the chain head, and a dropped
socket ends the stream. No backfill and no reconnect.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

import aiohttp

from netflow.core.transfers import TRANSFER_TOPIC
from netflow.utils.logger import get_logger

logger = get_logger("log_stream")

_SUBSCRIBE_ID = 1


class LogStreamError(Exception):
    """Subscription could not be established or the socket failed."""


def extract_log(message: dict[str, Any], subscription_id: str) -> dict[str, Any] | None:
    """Return the log carried by an eth_subscription notification, if any."""
    if message.get("method") != "eth_subscription":
        return None
    params = message.get("params")
    if not isinstance(params, dict) or params.get("subscription") != subscription_id:
        return None
    result = params.get("result")
    return result if isinstance(result, dict) else None


class TransferLogStream:
    """WebSocket subscription to one token's Transfer logs.

    Args:
        ws_url: WebSocket RPC endpoint.
        token_address: Token contract to filter on.
        topic: Event signature hash (topic0).
        session: Optional shared aiohttp session.
        subscribe_timeout_s: Max wait for the subscription id.
        heartbeat_s: WebSocket ping interval.
    """

    def __init__(
        self,
        ws_url: str,
        token_address: str,
        topic: str = TRANSFER_TOPIC,
        session: aiohttp.ClientSession | None = None,
        subscribe_timeout_s: float = 15.0,
        heartbeat_s: float = 30.0,
    ) -> None:
        self._ws_url = ws_url
        self._token_address = token_address
        self._topic = topic
        self._session = session
        self._owns_session = session is None
        self._subscribe_timeout_s = subscribe_timeout_s
        self._heartbeat_s = heartbeat_s
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._subscription_id: str | None = None
        self._notifications = 0

    @property
    def stats(self) -> dict[str, Any]:
        return {"subscription": self._subscription_id, "notifications": self._notifications}

    async def connect(self) -> None:
        """Open the socket and subscribe.

        Raises:
            LogStreamError: If the node is unreachable, rejects the
                subscription, or does not answer in time.
        """
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        try:
            self._ws = await self._session.ws_connect(self._ws_url, heartbeat=self._heartbeat_s)
            await self._ws.send_json(
                {
                    "jsonrpc": "2.0",
                    "id": _SUBSCRIBE_ID,
                    "method": "eth_subscribe",
                    "params": ["logs", {"address": self._token_address, "topics": [self._topic]}],
                }
            )
            self._subscription_id = await asyncio.wait_for(
                self._await_subscription_id(), timeout=self._subscribe_timeout_s
            )
        except (aiohttp.ClientError, TimeoutError, TypeError, ValueError) as e:
            # receive_json raises TypeError on a close frame, ValueError on bad JSON
            await self.close()
            raise LogStreamError(f"subscribe failed: {type(e).__name__}: {e}") from e
        except LogStreamError:
            await self.close()
            raise

        logger.info(
            "log_stream_subscribed",
            ws_url=self._ws_url,
            token=self._token_address,
            subscription=self._subscription_id,
        )

    async def _await_subscription_id(self) -> str:
        if self._ws is None:
            raise RuntimeError("WebSocket not initialized")
        while True:
            message = await self._ws.receive_json()
            if not isinstance(message, dict) or message.get("id") != _SUBSCRIBE_ID:
                continue
            if message.get("error"):
                raise LogStreamError(f"eth_subscribe rejected: {message['error']}")
            result = message.get("result")
            if not isinstance(result, str):
                raise LogStreamError(f"eth_subscribe returned {result!r}")
            return result

    async def logs(self) -> AsyncIterator[dict[str, Any]]:
        """Yield raw log dicts until the socket closes.

        Raises:
            LogStreamError: On a WebSocket error frame.
        """
        if self._ws is None or self._subscription_id is None:
            raise LogStreamError("not subscribed; call connect() first")

        async for msg in self._ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    message = json.loads(msg.data)
                except json.JSONDecodeError:
                    logger.warning("log_stream_bad_frame", size=len(msg.data))
                    continue
                if not isinstance(message, dict):
                    continue
                log = extract_log(message, self._subscription_id)
                if log is not None:
                    self._notifications += 1
                    yield log
            elif msg.type == aiohttp.WSMsgType.ERROR:
                raise LogStreamError(f"websocket error: {self._ws.exception()}")
            elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED):
                break

        logger.warning("log_stream_ended", notifications=self._notifications)

    async def close(self) -> None:
        """Close the socket and the session if we own it."""
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        self._ws = None
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None
