"""Classify transfers against an exchange's watched wallets."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from enum import Enum


class Direction(str, Enum):
    """Which side of the exchange a transfer touches."""

    INBOUND = "in"
    OUTBOUND = "out"
    BOTH = "both"  # internal move between two watched wallets
    IRRELEVANT = "none"

    @property
    def recorded_as(self) -> Direction:
        """Side the aggregate is charged for.

        Internal transfers are booked as inflow only.
        """
        if self is Direction.BOTH:
            return Direction.INBOUND
        return self

    @property
    def is_relevant(self) -> bool:
        return self is not Direction.IRRELEVANT


class WatchedAddressSet:
    """Immutable, case-insensitive set of one exchange's wallet addresses."""

    __slots__ = ("_addresses",)

    def __init__(self, addresses: Iterable[str]) -> None:
        normalized = frozenset(a.strip().lower() for a in addresses if a.strip())
        if not normalized:
            raise ValueError("watched address set must not be empty")
        self._addresses = normalized

    def __contains__(self, address: object) -> bool:
        return isinstance(address, str) and address.lower() in self._addresses

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._addresses))

    def __len__(self) -> int:
        return len(self._addresses)

    def __repr__(self) -> str:
        return f"WatchedAddressSet({len(self._addresses)} addresses)"


def classify(sender: str, recipient: str, watched: WatchedAddressSet) -> Direction:
    """Decide whether a transfer is inbound, outbound, internal or irrelevant.

    Args:
        sender: ``from`` address of the transfer.
        recipient: ``to`` address of the transfer.
        watched: The exchange's wallets.

    Returns:
        INBOUND if only ``recipient`` is watched, OUTBOUND if only ``sender``
        is, BOTH if both are, IRRELEVANT otherwise.
    """
    is_in = recipient in watched
    is_out = sender in watched
    if is_in and is_out:
        return Direction.BOTH
    if is_in:
        return Direction.INBOUND
    if is_out:
        return Direction.OUTBOUND
    return Direction.IRRELEVANT
