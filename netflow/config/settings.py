"""Configuration management using Pydantic Settings with YAML overlay.

Loading priority: .env → config/settings.yaml → config/settings.{MODE}.yaml
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings
from web3 import Web3

_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
_CONFIG_DIR = _PROJECT_ROOT / "config"


class ConfigError(Exception):
    """Configuration is missing or invalid for the requested run mode."""


def _normalize_address(value: str) -> str:
    value = value.strip()
    body = value[2:] if value.startswith("0x") else ""
    # Mixed case means EIP-55; all-lower and all-upper carry no checksum
    if body != body.lower() and body != body.upper() and not Web3.is_checksum_address(value):
        raise ValueError(f"bad EIP-55 checksum: {value}")
    if not body or not Web3.is_address(value):
        raise ValueError(f"invalid address: {value}")
    return value.lower()


# --- Nested config models ---


class ApiConfig(BaseModel):
    """Read-only HTTP query API."""

    host: str = "0.0.0.0"
    port: int = 8080


class IndexerConfig(BaseModel):
    """Ingestion loop and RPC client tuning."""

    rpc_timeout_s: float = 10.0
    rpc_max_retries: int = 3
    rpc_base_delay_s: float = 1.0
    block_cache_size: int = 1024  # block number → timestamp LRU entries
    subscribe_timeout_s: float = 15.0
    ws_heartbeat_s: float = 30.0


# --- Main config class ---


class NetflowConfig(BaseSettings):
    """Main configuration for the exchange netflow indexer."""

    # Runtime
    mode: str = Field(default="prod", alias="MODE")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Chain endpoints
    polygon_rpc_ws: str = Field(default="", alias="POLYGON_RPC_WS")
    polygon_rpc_http: str = Field(default="", alias="POLYGON_RPC_HTTP")

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///netflow.db",
        alias="DATABASE_URL",
    )

    # Watched token
    token_address: str = Field(default="", alias="TOKEN_ADDRESS")
    token_symbol: str = Field(default="POL", alias="TOKEN_SYMBOL")
    token_decimals: int | None = Field(default=None, alias="TOKEN_DECIMALS", ge=0, le=255)

    # Watched exchange
    exchange_name: str = Field(default="binance", alias="EXCHANGE_NAME")
    exchange_id: int = Field(default=1, alias="EXCHANGE_ID")
    exchange_addresses: str = Field(default="", alias="EXCHANGE_ADDRESSES")  # comma-separated

    # Nested config (loaded from YAML)
    api: ApiConfig = ApiConfig()
    indexer: IndexerConfig = IndexerConfig()

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "populate_by_name": True,
    }

    @field_validator("token_address")
    @classmethod
    def _check_token_address(cls, v: str) -> str:
        return _normalize_address(v) if v.strip() else ""

    @field_validator("exchange_addresses")
    @classmethod
    def _check_exchange_addresses(cls, v: str) -> str:
        parts = [p for p in (s.strip() for s in v.split(",")) if p]
        return ",".join(_normalize_address(p) for p in parts)

    @property
    def exchange_address_list(self) -> list[str]:
        """Watched exchange wallets, lower-cased, in configured order."""
        return [a for a in self.exchange_addresses.split(",") if a]

    def check_ingestion_ready(self) -> None:
        """Raise ConfigError unless everything the indexer needs is set."""
        missing = [
            name
            for name, value in (
                ("POLYGON_RPC_WS", self.polygon_rpc_ws),
                ("POLYGON_RPC_HTTP", self.polygon_rpc_http),
                ("TOKEN_ADDRESS", self.token_address),
                ("EXCHANGE_ADDRESSES", self.exchange_addresses),
            )
            if not value
        ]
        if missing:
            raise ConfigError(f"missing required settings: {', '.join(missing)}")


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Deep merge overlay into base dict. Overlay values win."""
    merged = base.copy()
    for key, value in overlay.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path) as f:
        data = yaml.safe_load(f)
    return data if isinstance(data, dict) else {}


@lru_cache(maxsize=1)
def get_config() -> NetflowConfig:
    """Load and return the singleton NetflowConfig.

    Loading priority: .env → settings.yaml → settings.{MODE}.yaml
    """
    mode = os.getenv("MODE", "prod")

    base_yaml = _load_yaml(_CONFIG_DIR / "settings.yaml")
    mode_yaml = _load_yaml(_CONFIG_DIR / f"settings.{mode}.yaml")

    merged = _deep_merge(base_yaml, mode_yaml)

    # YAML supplies nested sections; flat fields come from env / .env
    return NetflowConfig(**merged)
