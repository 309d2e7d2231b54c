"""Ingestion loop: live Transfer logs → exchange netflow aggregate.

Per record: validate shape → decode → classify → normalize → fetch block
timestamp → apply to the store. A failure in one record is logged and
counted; the loop moves on. Only the feed itself ending (or raising) stops
``run``.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterable
from enum import Enum
from typing import Any

from netflow.connectors.polygon_rpc import PolygonRpcClient
from netflow.core.amounts import normalize
from netflow.core.classifier import Direction, WatchedAddressSet, classify
from netflow.core.store import AggregateStore, ApplyResult
from netflow.core.transfers import (
    TransferEvent,
    decode_transfer_log,
    is_transfer_shape,
)
from netflow.utils.logger import get_logger

logger = get_logger("indexer")


class LogOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IRRELEVANT = "irrelevant"
    MALFORMED = "malformed"
    FAILED = "failed"


class TransferIndexer:
    """Applies one token's Transfer logs to one exchange's netflow.

    Lifecycle: ``initialize()`` once, then ``run(logs)`` with a live feed.

    Args:
        store: Aggregate store (sole owner of persisted state).
        rpc: Block data lookup; also resolves token decimals.
        watched: The exchange's wallets.
        exchange_id: Aggregate key, exchange part.
        token: Aggregate key, token part (contract address).
        symbol: Token symbol stored on the aggregate row.
        decimals: Token decimals; None means ask the contract.
    """

    def __init__(
        self,
        store: AggregateStore,
        rpc: PolygonRpcClient,
        watched: WatchedAddressSet,
        exchange_id: int,
        token: str,
        symbol: str,
        decimals: int | None = None,
    ) -> None:
        self._store = store
        self._rpc = rpc
        self._watched = watched
        self._exchange_id = exchange_id
        self._token = token.lower()
        self._symbol = symbol
        self._decimals = decimals
        self._counts: dict[LogOutcome, int] = {outcome: 0 for outcome in LogOutcome}
        self._received = 0
        self._last_block = 0

    @property
    def decimals(self) -> int | None:
        return self._decimals

    async def initialize(self) -> None:
        """Check the RPC node, resolve decimals and create the aggregate row.

        Errors propagate.
        """
        head = await self._rpc.get_block_number()
        if self._decimals is None:
            self._decimals = await self._rpc.get_token_decimals(self._token)
        await self._store.ensure_row(self._exchange_id, self._token, self._symbol, self._decimals)
        await self._store.record_exchange_addresses(self._exchange_id, self._watched)
        logger.info(
            "indexer_initialized",
            exchange_id=self._exchange_id,
            token=self._token,
            symbol=self._symbol,
            decimals=self._decimals,
            watched=len(self._watched),
            head_block=head,
        )

    async def run(self, logs: AsyncIterable[dict[str, Any]]) -> None:
        """Consume the feed until it ends. Feed errors propagate."""
        if self._decimals is None:
            raise RuntimeError("TransferIndexer.initialize() must run before run()")
        logger.info("indexer_streaming", token=self._token)
        async for log in logs:
            await self.process_log(log)
        logger.warning("indexer_feed_ended", **self.stats)

    async def process_log(self, log: dict[str, Any]) -> LogOutcome:
        """Handle one raw log record. Never raises for per-record failures."""
        self._received += 1
        outcome = await self._process(log)
        self._counts[outcome] += 1
        return outcome

    async def _process(self, log: dict[str, Any]) -> LogOutcome:
        if log.get("removed") or not is_transfer_shape(log):
            logger.warning(
                "transfer_log_skipped",
                topics=len(log.get("topics") or []),
                removed=bool(log.get("removed")),
                tx_hash=log.get("transactionHash"),
            )
            return LogOutcome.MALFORMED

        try:
            decoded = decode_transfer_log(log)

            direction = classify(decoded.sender, decoded.recipient, self._watched)
            if not direction.is_relevant:
                return LogOutcome.IRRELEVANT

            amount = normalize(decoded.amount_raw, self._decimals or 0)
            # No store lock is held across this call
            timestamp = await self._rpc.get_block_timestamp(decoded.block_number)

            event = TransferEvent.from_decoded(decoded, amount=amount, timestamp=timestamp)
            result = await self._store.apply(
                self._exchange_id, self._token, event, direction.recorded_as
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                "transfer_processing_failed",
                tx_hash=log.get("transactionHash"),
                log_index=log.get("logIndex"),
                block=log.get("blockNumber"),
                error_type=type(e).__name__,
                error=str(e),
            )
            return LogOutcome.FAILED

        self._last_block = max(self._last_block, event.block_number)
        if result is ApplyResult.DUPLICATE:
            return LogOutcome.DUPLICATE

        logger.info(
            "transfer_applied",
            direction=direction.recorded_as.value,
            internal=direction is Direction.BOTH,
            amount=amount,
            block=event.block_number,
            tx_hash=event.tx_hash,
        )
        return LogOutcome.APPLIED

    @property
    def stats(self) -> dict[str, int]:
        """Per-outcome counters since start."""
        return {
            "received": self._received,
            "last_block": self._last_block,
            **{outcome.value: count for outcome, count in self._counts.items()},
        }
