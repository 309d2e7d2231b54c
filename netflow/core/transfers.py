"""ERC-20 Transfer log decoding and the TransferEvent value type.

Transfer(address indexed from, address indexed to, uint256 value):
topics = [signature, from, to], data = value (32 bytes).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from web3 import Web3

TRANSFER_SIGNATURE = "Transfer(address,address,uint256)"
TRANSFER_TOPIC = Web3.to_hex(Web3.keccak(text=TRANSFER_SIGNATURE))
TRANSFER_TOPIC_COUNT = 3


class TransferDecodeError(Exception):
    """A Transfer-shaped log whose fields cannot be decoded."""


@dataclass(frozen=True)
class DecodedTransfer:
    """Fields pulled straight from a raw log, before enrichment."""

    block_number: int
    tx_hash: str
    log_index: int
    token: str
    sender: str
    recipient: str
    amount_raw: int


@dataclass(frozen=True)
class TransferEvent:
    """One on-chain token movement touching the watched exchange.

    ``(tx_hash, log_index)`` identifies the event; the store rejects a
    second copy.
    """

    block_number: int
    tx_hash: str
    log_index: int
    token: str
    sender: str
    recipient: str
    amount_raw: int
    amount: float
    timestamp: int

    @classmethod
    def from_decoded(
        cls, decoded: DecodedTransfer, amount: float, timestamp: int
    ) -> TransferEvent:
        return cls(
            block_number=decoded.block_number,
            tx_hash=decoded.tx_hash,
            log_index=decoded.log_index,
            token=decoded.token,
            sender=decoded.sender,
            recipient=decoded.recipient,
            amount_raw=decoded.amount_raw,
            amount=amount,
            timestamp=timestamp,
        )


def _strip_0x(value: str) -> str:
    return value[2:] if value.startswith(("0x", "0X")) else value


def _hex_to_int(value: Any) -> int:
    """Quantities arrive hex-encoded over JSON-RPC; tolerate plain ints."""
    if isinstance(value, int):
        return value
    return int(value, 16)


def _topic_to_address(topic: str) -> str:
    body = _strip_0x(topic)
    if len(body) != 64:
        raise TransferDecodeError(f"indexed address topic has {len(body)} hex chars")
    return "0x" + body[-40:].lower()


def is_transfer_shape(log: dict[str, Any]) -> bool:
    """True if the log has exactly the Transfer signature and indexed topics."""
    topics = log.get("topics")
    if not isinstance(topics, list) or len(topics) != TRANSFER_TOPIC_COUNT:
        return False
    topic0 = topics[0]
    return isinstance(topic0, str) and topic0.lower() == TRANSFER_TOPIC


def decode_transfer_log(log: dict[str, Any]) -> DecodedTransfer:
    """Decode a Transfer-shaped raw log from ``eth_subscribe``.

    Args:
        log: Raw log dict with ``topics``, ``data``, ``address``,
            ``blockNumber``, ``transactionHash`` and ``logIndex``.

    Returns:
        The decoded transfer.

    Raises:
        TransferDecodeError: If any field is missing or malformed.
    """
    try:
        topics = log["topics"]
        sender = _topic_to_address(topics[1])
        recipient = _topic_to_address(topics[2])

        data_hex = _strip_0x(log.get("data") or "")
        if len(data_hex) < 64:
            raise TransferDecodeError(f"value field too short ({len(data_hex)} hex chars)")
        amount_raw = int(data_hex[:64], 16)

        block_number = _hex_to_int(log["blockNumber"])
        log_index = _hex_to_int(log["logIndex"])
        tx_hash = str(log["transactionHash"]).lower()
        token = str(log["address"]).lower()
    except (KeyError, IndexError, TypeError, ValueError) as e:
        raise TransferDecodeError(f"{type(e).__name__}: {e}") from e

    if len(_strip_0x(tx_hash)) != 64:
        raise TransferDecodeError(f"bad transaction hash: {tx_hash}")

    return DecodedTransfer(
        block_number=block_number,
        tx_hash=tx_hash,
        log_index=log_index,
        token=token,
        sender=sender,
        recipient=recipient,
        amount_raw=amount_raw,
    )
