"""Aggregate store: durable per-(exchange, token) netflow totals.

``apply`` is the only write path for transfers. It runs one database
transaction that:

1. inserts the raw transfer keyed by ``(tx_hash, log_index)``
2. adds the amount to inflow or outflow, recomputing net from both
3. advances the checkpoint to ``max(current, block_number)``

If step 1 violates a constraint, the transaction rolls back and the key is
looked up. A recorded ``(tx_hash, log_index)`` makes the call report
``ApplyResult.DUPLICATE``, which is a success. Any other constraint failure
raises ``StorageError``. Writes for one key are serialized with an asyncio lock
held only around the transaction.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from netflow.core.classifier import Direction
from netflow.core.transfers import TransferEvent
from netflow.utils.db import Block, Checkpoint, Erc20Transfer, ExchangeAddress, NetFlow
from netflow.utils.logger import get_logger

logger = get_logger("aggregate_store")

CHECKPOINT_NAME = "transfers"


class StorageError(Exception):
    """A transfer could not be applied. Nothing was committed."""


class _InsertConflict(Exception):
    """The transfer insert hit an integrity constraint."""


class ApplyResult(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class NetflowAggregate:
    """Rolling totals for one (exchange, token) pair."""

    exchange_id: int
    token: str
    token_symbol: str
    token_decimals: int
    cumulative_in: float
    cumulative_out: float
    cumulative_net: float
    last_updated_block: int

    @classmethod
    def from_model(cls, row: NetFlow) -> NetflowAggregate:
        return cls(
            exchange_id=row.exchange_id,
            token=row.token_address,
            token_symbol=row.token_symbol,
            token_decimals=row.token_decimals,
            cumulative_in=row.cumulative_in,
            cumulative_out=row.cumulative_out,
            cumulative_net=row.cumulative_net,
            last_updated_block=row.last_updated_block,
        )


def _greatest(column: sa.ColumnElement[int], value: int) -> sa.ColumnElement[int]:
    """Portable ``GREATEST(column, value)`` (SQLite has no GREATEST)."""
    return sa.case((column < value, value), else_=column)


class AggregateStore:
    """Owns every persisted netflow entity.

    Args:
        session_factory: Async session factory bound to the netflow schema.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self._locks: dict[tuple[int, str], asyncio.Lock] = {}

    def _lock_for(self, exchange_id: int, token: str) -> asyncio.Lock:
        key = (exchange_id, token)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def ensure_row(self, exchange_id: int, token: str, symbol: str, decimals: int) -> None:
        """Create the zeroed aggregate row and the checkpoint row if absent."""
        token = token.lower()
        async with self._session_factory() as session, session.begin():
            existing = await session.execute(
                sa.select(NetFlow.id).where(
                    NetFlow.exchange_id == exchange_id, NetFlow.token_address == token
                )
            )
            if existing.scalar_one_or_none() is None:
                session.add(
                    NetFlow(
                        exchange_id=exchange_id,
                        token_address=token,
                        token_symbol=symbol,
                        token_decimals=decimals,
                        cumulative_in=0.0,
                        cumulative_out=0.0,
                        cumulative_net=0.0,
                        last_updated_block=0,
                    )
                )
                logger.info(
                    "netflow_row_created", exchange_id=exchange_id, token=token, symbol=symbol
                )
            if await session.get(Checkpoint, CHECKPOINT_NAME) is None:
                session.add(Checkpoint(name=CHECKPOINT_NAME, last_block_seen=0))

    async def record_exchange_addresses(self, exchange_id: int, addresses: Iterable[str]) -> int:
        """Persist the watched wallets for audit. Returns how many were new."""
        wanted = {a.lower() for a in addresses}
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                sa.select(ExchangeAddress.address).where(ExchangeAddress.exchange_id == exchange_id)
            )
            known = set(result.scalars().all())
            new = sorted(wanted - known)
            session.add_all(ExchangeAddress(exchange_id=exchange_id, address=a) for a in new)
        logger.info(
            "exchange_addresses_recorded", exchange_id=exchange_id, total=len(wanted), new=len(new)
        )
        return len(new)

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    async def apply(
        self,
        exchange_id: int,
        token: str,
        event: TransferEvent,
        direction: Direction,
    ) -> ApplyResult:
        """Apply one transfer to the aggregate exactly once.

        Args:
            exchange_id: Exchange the aggregate belongs to.
            token: Token contract address.
            event: The transfer to record.
            direction: INBOUND or OUTBOUND (resolve BOTH before calling).

        Returns:
            APPLIED, or DUPLICATE if the event key was already recorded.

        Raises:
            ValueError: If ``direction`` is not INBOUND or OUTBOUND.
            StorageError: If the transaction failed; nothing was committed.
        """
        if direction not in (Direction.INBOUND, Direction.OUTBOUND):
            raise ValueError(f"cannot apply direction {direction!r}")
        token = token.lower()

        async with self._lock_for(exchange_id, token):
            try:
                async with self._session_factory() as session, session.begin():
                    await self._insert_transfer(session, event, direction)
                    await self._record_block(session, event)
                    await self._bump_aggregate(session, exchange_id, token, event, direction)
                    await self._advance_checkpoint(session, event.block_number)
            except _InsertConflict as e:
                if not await self._transfer_exists(event):
                    raise StorageError(
                        f"insert rejected for {event.tx_hash}:{event.log_index}: {e.__cause__}"
                    ) from e.__cause__
                logger.debug(
                    "transfer_duplicate_ignored",
                    tx_hash=event.tx_hash,
                    log_index=event.log_index,
                )
                return ApplyResult.DUPLICATE
            except SQLAlchemyError as e:
                raise StorageError(
                    f"apply failed for {event.tx_hash}:{event.log_index}: {e}"
                ) from e

        logger.debug(
            "transfer_applied",
            tx_hash=event.tx_hash,
            log_index=event.log_index,
            direction=direction.value,
            amount=event.amount,
            block=event.block_number,
        )
        return ApplyResult.APPLIED

    async def _insert_transfer(
        self, session: AsyncSession, event: TransferEvent, direction: Direction
    ) -> None:
        session.add(
            Erc20Transfer(
                block_number=event.block_number,
                tx_hash=event.tx_hash,
                log_index=event.log_index,
                token_address=event.token,
                from_address=event.sender,
                to_address=event.recipient,
                amount_raw=str(event.amount_raw),
                amount=event.amount,
                direction=direction.value,
                occurred_at=event.timestamp,
            )
        )
        try:
            await session.flush()
        except IntegrityError as e:
            raise _InsertConflict from e

    async def _transfer_exists(self, event: TransferEvent) -> bool:
        """True if ``(tx_hash, log_index)`` is already recorded."""
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    sa.select(Erc20Transfer.id).where(
                        Erc20Transfer.tx_hash == event.tx_hash,
                        Erc20Transfer.log_index == event.log_index,
                    )
                )
                return result.first() is not None
        except SQLAlchemyError as e:
            raise StorageError(f"duplicate check failed for {event.tx_hash}: {e}") from e

    async def _record_block(self, session: AsyncSession, event: TransferEvent) -> None:
        if await session.get(Block, event.block_number) is None:
            session.add(Block(number=event.block_number, timestamp=event.timestamp))
            await session.flush()

    async def _bump_aggregate(
        self,
        session: AsyncSession,
        exchange_id: int,
        token: str,
        event: TransferEvent,
        direction: Direction,
    ) -> None:
        # SET expressions read the pre-update row on both SQLite and Postgres
        amount = event.amount
        if direction is Direction.INBOUND:
            values = {
                "cumulative_in": NetFlow.cumulative_in + amount,
                "cumulative_net": NetFlow.cumulative_in + amount - NetFlow.cumulative_out,
            }
        else:
            values = {
                "cumulative_out": NetFlow.cumulative_out + amount,
                "cumulative_net": NetFlow.cumulative_in - (NetFlow.cumulative_out + amount),
            }
        values["last_updated_block"] = _greatest(NetFlow.last_updated_block, event.block_number)

        result = await session.execute(
            sa.update(NetFlow)
            .where(NetFlow.exchange_id == exchange_id, NetFlow.token_address == token)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise StorageError(f"no netflow row for exchange {exchange_id} token {token}")

    async def _advance_checkpoint(self, session: AsyncSession, block_number: int) -> None:
        result = await session.execute(
            sa.update(Checkpoint)
            .where(Checkpoint.name == CHECKPOINT_NAME)
            .values(last_block_seen=_greatest(Checkpoint.last_block_seen, block_number))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            session.add(Checkpoint(name=CHECKPOINT_NAME, last_block_seen=block_number))

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    async def fetch(self, exchange_id: int, token: str) -> NetflowAggregate | None:
        """Current totals, or None if the row was never created."""
        async with self._session_factory() as session:
            result = await session.execute(
                sa.select(NetFlow).where(
                    NetFlow.exchange_id == exchange_id,
                    NetFlow.token_address == token.lower(),
                )
            )
            row = result.scalar_one_or_none()
            return NetflowAggregate.from_model(row) if row is not None else None

    async def get_checkpoint(self) -> int:
        """Highest applied block, 0 before the first transfer."""
        async with self._session_factory() as session:
            result = await session.execute(
                sa.select(Checkpoint.last_block_seen).where(Checkpoint.name == CHECKPOINT_NAME)
            )
            value = result.scalar_one_or_none()
            return int(value) if value is not None else 0
