"""Database engine, session management, and SQLAlchemy 2.0 async models.

Netflow schema. Addresses and hashes are lower-case 0x-prefixed hex strings.
Raw token amounts are stored as decimal strings so uint256 values stay exact
on every backend (SQLite NUMERIC would round them).
"""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 — SQLAlchemy Mapped needs at runtime

from sqlalchemy import (
    BigInteger,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from netflow.config.settings import get_config


class Base(DeclarativeBase):
    pass


# ================================================================
# EXCHANGE_ADDRESSES: Persisted copy of the watched wallet set
# ================================================================
class ExchangeAddress(Base):
    __tablename__ = "exchange_addresses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    exchange_id: Mapped[int] = mapped_column(Integer, nullable=False)
    address: Mapped[str] = mapped_column(String(42), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("exchange_id", "address", name="uq_exchange_address"),
    )


# ================================================================
# BLOCKS: Block timestamps seen by applied transfers
# ================================================================
class Block(Base):
    __tablename__ = "blocks"

    number: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)  # unix seconds


# ================================================================
# ERC20_TRANSFERS: Every applied transfer, keyed by (tx_hash, log_index)
# ================================================================
class Erc20Transfer(Base):
    __tablename__ = "erc20_transfers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    token_address: Mapped[str] = mapped_column(String(42), nullable=False)
    from_address: Mapped[str] = mapped_column(String(42), nullable=False)
    to_address: Mapped[str] = mapped_column(String(42), nullable=False)
    amount_raw: Mapped[str] = mapped_column(String(78), nullable=False)  # uint256 as decimal
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    direction: Mapped[str] = mapped_column(String(8), nullable=False)  # in, out
    occurred_at: Mapped[int] = mapped_column(BigInteger, nullable=False)  # block timestamp

    __table_args__ = (
        UniqueConstraint("tx_hash", "log_index", name="uq_erc20_transfer_event"),
        Index("idx_erc20_transfers_block", "block_number"),
        Index("idx_erc20_transfers_token", "token_address", "block_number"),
    )


# ================================================================
# NET_FLOWS: Rolling totals per (exchange, token)
# ================================================================
class NetFlow(Base):
    __tablename__ = "net_flows"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    exchange_id: Mapped[int] = mapped_column(Integer, nullable=False)
    token_address: Mapped[str] = mapped_column(String(42), nullable=False)
    token_symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    token_decimals: Mapped[int] = mapped_column(Integer, nullable=False)
    cumulative_in: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    cumulative_out: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    cumulative_net: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    last_updated_block: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("exchange_id", "token_address", name="uq_net_flow_key"),
    )


# ================================================================
# CHECKPOINTS: Highest fully applied block
# ================================================================
class Checkpoint(Base):
    __tablename__ = "checkpoints"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    last_block_seen: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


# ================================================================
# Engine & Session Factory
# ================================================================

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async SQLAlchemy engine (singleton)."""
    global _engine
    if _engine is None:
        config = get_config()
        kwargs: dict[str, object] = {"echo": False, "pool_pre_ping": True}
        if not config.database_url.startswith("sqlite"):
            kwargs.update(pool_size=5, max_overflow=10)
        _engine = create_async_engine(config.database_url, **kwargs)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the async session factory (singleton)."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _session_factory


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create missing tables. Alembic owns migrations on managed databases."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    """Close pooled connections and drop the singletons."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
