"""Shared test fixtures for the netflow test suite."""

from __future__ import annotations

import os
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

import pytest

# Set test environment before any imports
os.environ.setdefault("MODE", "dev")
os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from netflow.core.classifier import WatchedAddressSet
from netflow.core.store import AggregateStore
from netflow.core.transfers import TRANSFER_TOPIC
from netflow.utils.db import init_db

TOKEN = "0x0000000000000000000000000000000000001010"
WALLET_A = "0x" + "aa" * 20  # exchange hot wallet
WALLET_D = "0x" + "dd" * 20  # exchange cold wallet


def _pad_topic(address: str) -> str:
    return "0x" + "00" * 12 + address[2:].lower()


@pytest.fixture
def watched() -> WatchedAddressSet:
    return WatchedAddressSet([WALLET_A, WALLET_D])


@pytest.fixture
def make_log() -> Callable[..., dict[str, Any]]:
    """Factory for raw eth_subscribe Transfer logs."""

    def _make(
        sender: str,
        recipient: str,
        amount: int,
        block: int = 0x100,
        tx: int = 1,
        log_index: int = 0,
        token: str = TOKEN,
    ) -> dict[str, Any]:
        return {
            "address": token,
            "topics": [TRANSFER_TOPIC, _pad_topic(sender), _pad_topic(recipient)],
            "data": "0x" + f"{amount:064x}",
            "blockNumber": hex(block),
            "transactionHash": "0x" + f"{tx:064x}",
            "logIndex": hex(log_index),
            "removed": False,
        }

    return _make


@pytest.fixture
async def session_factory(tmp_path: Path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Fresh file-backed SQLite schema per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'netflow.db'}")
    await init_db(engine)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def store(session_factory: async_sessionmaker[AsyncSession]) -> AggregateStore:
    return AggregateStore(session_factory)
