"""Decimal-aware conversions between atomic reserves and token units.

Every ratio taken from a pool must first bring both reserves into whole-token
units using each token's own ``decimals``. Mixing an atomic amount with a
decimal amount silently scales a price by ``10 ** (dec_a - dec_b)``.
"""

from __future__ import annotations

import math


def atomic_to_decimal(amount: int, decimals: int) -> float:
    """Convert an atomic integer amount into whole-token units."""

    if decimals < 0:
        raise ValueError(f"decimals must be non-negative, got {decimals}")
    # int / int true division keeps precision for reserves beyond 2**53.
    return amount / (10**decimals)


def exchange_rate(
    reserve_in: int,
    decimals_in: int,
    reserve_out: int,
    decimals_out: int,
) -> float:
    """Units of the ``out`` token per whole unit of the ``in`` token (spot)."""

    amount_in = atomic_to_decimal(reserve_in, decimals_in)
    amount_out = atomic_to_decimal(reserve_out, decimals_out)
    if amount_in <= 0 or amount_out <= 0:
        return 0.0
    return amount_out / amount_in


def implied_price(
    known_price: float,
    known_reserve: int,
    known_decimals: int,
    unknown_reserve: int,
    unknown_decimals: int,
) -> float:
    """USD price of the unknown side implied by a pool's reserve ratio.

    Returns 0.0 when the inputs cannot produce a finite positive price so
    callers can drop the estimate.
    """

    rate = exchange_rate(known_reserve, known_decimals, unknown_reserve, unknown_decimals)
    if rate <= 0 or known_price <= 0:
        return 0.0
    price = known_price / rate
    if not math.isfinite(price) or price <= 0:
        return 0.0
    return price


def usd_value(amount: int, decimals: int, usd_price: float) -> float:
    """USD value of an atomic amount at the given unit price."""

    return atomic_to_decimal(amount, decimals) * usd_price


def geometric_liquidity(usd_a: float, usd_b: float) -> float:
    """Geometric mean of the two sides' USD values, 0 when either is non-positive."""

    if usd_a <= 0 or usd_b <= 0:
        return 0.0
    value = math.sqrt(usd_a) * math.sqrt(usd_b)
    return value if math.isfinite(value) else 0.0


__all__ = [
    "atomic_to_decimal",
    "exchange_rate",
    "geometric_liquidity",
    "implied_price",
    "usd_value",
]
