"""Tests for structured logging secret masking."""

from __future__ import annotations

import logging

import structlog

from netflow.utils.logger import _mask_secrets, _mask_url, get_logger, setup_logging


class TestMaskSecrets:
    def test_secret_keys_masked(self) -> None:
        event = _mask_secrets(None, "info", {"api_key": "abc", "password": "x", "block": 5})
        assert event["api_key"] == "***REDACTED***"
        assert event["password"] == "***REDACTED***"
        assert event["block"] == 5

    def test_provider_key_in_url_path_masked(self) -> None:
        event = _mask_secrets(
            None, "info", {"ws_url": "wss://polygon-mainnet.g.alchemy.com/v2/s3cr3t"}
        )
        assert event["ws_url"] == "wss://polygon-mainnet.g.alchemy.com/***REDACTED***"

    def test_database_credentials_masked(self) -> None:
        masked = _mask_url("postgresql+asyncpg://netflow:hunter2@db:5432/netflow")
        assert "hunter2" not in masked
        assert masked.startswith("postgresql+asyncpg://***REDACTED***@db:5432/")

    def test_plain_url_untouched(self) -> None:
        assert _mask_url("https://polygon-rpc.com") == "https://polygon-rpc.com"

    def test_non_url_value_untouched(self) -> None:
        assert _mask_url("sqlite-file") == "sqlite-file"


def test_setup_logging_and_get_logger() -> None:
    setup_logging(log_level="DEBUG", json_output=True)
    logger = get_logger("test")
    logger.info("logger_ready", database_url="sqlite+aiosqlite:///netflow.db")


def test_local_sqlite_path_kept() -> None:
    url = "sqlite+aiosqlite:///netflow.db"
    assert _mask_secrets(None, "info", {"database_url": url})["database_url"] == url


def test_dev_mode_uses_console_and_quiets_clients(monkeypatch) -> None:
    monkeypatch.setenv("MODE", "dev")
    setup_logging(log_level="warning")
    root = logging.getLogger()
    formatter = root.handlers[0].formatter
    assert isinstance(formatter.processors[-1], structlog.dev.ConsoleRenderer)
    assert root.level == logging.WARNING
    for name in ("web3", "uvicorn.access", "sqlalchemy.engine"):
        assert logging.getLogger(name).level == logging.WARNING
