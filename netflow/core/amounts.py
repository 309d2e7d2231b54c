"""Token amount normalization.

On-chain amounts are unsigned 256-bit integers scaled by ``10**decimals``.
Aggregates are kept as floats for display. The raw integer is stored next
to every transfer, so reconciliation stays exact.
"""

from __future__ import annotations


def normalize(raw: int, decimals: int) -> float:
    """Scale a raw token amount to display units.

    ``int / int`` true division is correctly rounded and never casts the
    256-bit numerator to float first, so no precision is lost before the
    final rounding.

    Args:
        raw: Raw on-chain amount (0..2**256-1).
        decimals: Token decimal places (0..255).

    Returns:
        ``raw / 10**decimals`` as a float.
    """
    if raw == 0:
        return 0.0
    return raw / 10**decimals
