"""Conversions from the ledger's smallest integer unit to display strings.

Ether amounts are computed with integer arithmetic only, so any wei value
round-trips exactly. Gwei is a display convenience and goes through float.
"""

from __future__ import annotations

ETHER_DECIMALS = 18
GWEI_DECIMALS = 9


def format_units(value: int | None, decimals: int) -> str:
    """Render an integer amount of smallest units as a plain decimal string.

    Trailing fractional zeros are trimmed and the output never uses
    scientific notation. ``None`` and ``0`` both render as ``"0"``.

    Raises:
        ValueError: If ``value`` or ``decimals`` is negative.
    """
    if decimals < 0:
        raise ValueError("decimals must be >= 0")
    if not value:
        return "0"
    value = int(value)
    if value < 0:
        raise ValueError("amount must be non-negative")

    whole, fraction = divmod(value, 10**decimals)
    if decimals == 0 or fraction == 0:
        return str(whole)
    fraction_digits = str(fraction).zfill(decimals).rstrip("0")
    return f"{whole}.{fraction_digits}"


def wei_to_ether(wei: int | None) -> str:
    """Convert wei to an exact ether decimal string."""
    return format_units(wei, ETHER_DECIMALS)


def wei_to_gwei(wei: int | None) -> str:
    """Convert wei to a gwei display string (float precision)."""
    if not wei:
        return "0"
    gwei = int(wei) / 10**GWEI_DECIMALS
    text = f"{gwei:.{GWEI_DECIMALS}f}".rstrip("0").rstrip(".")
    return text or "0"
