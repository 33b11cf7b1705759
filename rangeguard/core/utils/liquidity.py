"""Liquidity math on Q64.96 sqrt ratios.

Boundary (one-sided) helpers are used when the pool tick sits beyond the
aligned global bound; the two-sided helpers follow the periphery
LiquidityAmounts / SqrtPriceMath libraries.
"""

from __future__ import annotations

from rangeguard.core.constants import Q96
from rangeguard.core.errors import InputValidationError, InvalidTickOrder, KeeperError
from rangeguard.core.utils.tick_math import BoundaryMode, sqrt_ratio_at_tick


def ceil_div(num: int, den: int) -> int:
    if den == 0:
        raise KeeperError("Division by zero", numerator=num)
    return -(-num // den)


def get_boundary_ratios(tick_lower: int, tick_upper: int) -> tuple[int, int, int]:
    """Return ``(sqrt_lower, sqrt_upper, sqrt_upper - sqrt_lower)``."""
    sqrt_lower = sqrt_ratio_at_tick(tick_lower)
    sqrt_upper = sqrt_ratio_at_tick(tick_upper)
    if sqrt_upper <= sqrt_lower:
        raise InvalidTickOrder(
            "Invalid sqrt ratio ordering for ticks",
            tick_lower=tick_lower,
            tick_upper=tick_upper,
        )
    return sqrt_lower, sqrt_upper, sqrt_upper - sqrt_lower


def boundary_liquidity(
    tick_lower: int,
    tick_upper: int,
    amount0: int,
    amount1: int,
    mode: BoundaryMode,
) -> int:
    match mode:
        case BoundaryMode.ABOVE_MAX:
            _, _, diff = get_boundary_ratios(tick_lower, tick_upper)
            if amount1 <= 0:
                raise InputValidationError(
                    "Boundary ABOVE_MAX requires amount1 > 0", amount1=amount1
                )
            return (amount1 * Q96) // diff
        case BoundaryMode.BELOW_MIN:
            sqrt_lower, sqrt_upper, diff = get_boundary_ratios(tick_lower, tick_upper)
            if amount0 <= 0:
                raise InputValidationError(
                    "Boundary BELOW_MIN requires amount0 > 0", amount0=amount0
                )
            return (amount0 * sqrt_lower * sqrt_upper) // (Q96 * diff)
        case BoundaryMode.IN_RANGE:
            raise InputValidationError(
                "Boundary liquidity computation requires ABOVE_MAX or BELOW_MIN",
                mode=mode.value,
            )
    raise InputValidationError("Unknown boundary mode", mode=mode)


def boundary_min_amount_for_liquidity_one(
    tick_lower: int, tick_upper: int, mode: BoundaryMode
) -> int:
    """Smallest single-sided deposit whose boundary liquidity is at least 1."""
    match mode:
        case BoundaryMode.ABOVE_MAX:
            _, _, diff = get_boundary_ratios(tick_lower, tick_upper)
            return ceil_div(diff, Q96)
        case BoundaryMode.BELOW_MIN:
            sqrt_lower, sqrt_upper, diff = get_boundary_ratios(tick_lower, tick_upper)
            return ceil_div(Q96 * diff, sqrt_lower * sqrt_upper)
        case BoundaryMode.IN_RANGE:
            raise InputValidationError(
                "Boundary min amount requires ABOVE_MAX or BELOW_MIN",
                mode=mode.value,
            )
    raise InputValidationError("Unknown boundary mode", mode=mode)


def _sorted(sqrt_a: int, sqrt_b: int) -> tuple[int, int]:
    return (sqrt_a, sqrt_b) if sqrt_a <= sqrt_b else (sqrt_b, sqrt_a)


def liquidity_for_amount0(sqrt_a: int, sqrt_b: int, amount0: int) -> int:
    """L = amount0 * sqrtA * sqrtB / (Q96 * (sqrtB - sqrtA))"""
    a, b = _sorted(sqrt_a, sqrt_b)
    if b == a:
        return 0
    intermediate = (a * b) // Q96
    return (amount0 * intermediate) // (b - a)


def liquidity_for_amount1(sqrt_a: int, sqrt_b: int, amount1: int) -> int:
    """L = amount1 * Q96 / (sqrtB - sqrtA)"""
    a, b = _sorted(sqrt_a, sqrt_b)
    if b == a:
        return 0
    return (amount1 * Q96) // (b - a)


def liquidity_for_amounts(
    sqrt_price_x96: int,
    sqrt_a: int,
    sqrt_b: int,
    amount0: int,
    amount1: int,
) -> int:
    a, b = _sorted(sqrt_a, sqrt_b)
    if sqrt_price_x96 <= a:
        return liquidity_for_amount0(a, b, amount0)
    if sqrt_price_x96 < b:
        liq0 = liquidity_for_amount0(sqrt_price_x96, b, amount0)
        liq1 = liquidity_for_amount1(a, sqrt_price_x96, amount1)
        return min(liq0, liq1)
    return liquidity_for_amount1(a, b, amount1)


def amount0_for_liquidity(
    sqrt_a: int, sqrt_b: int, liquidity: int, *, round_up: bool = False
) -> int:
    a, b = _sorted(sqrt_a, sqrt_b)
    if a == 0:
        raise InputValidationError("sqrt ratio must be positive", sqrt_a=a)
    numerator1 = liquidity << 96
    numerator2 = b - a
    if round_up:
        return ceil_div(ceil_div(numerator1 * numerator2, b), a)
    return (numerator1 * numerator2 // b) // a


def amount1_for_liquidity(
    sqrt_a: int, sqrt_b: int, liquidity: int, *, round_up: bool = False
) -> int:
    a, b = _sorted(sqrt_a, sqrt_b)
    if round_up:
        return ceil_div(liquidity * (b - a), Q96)
    return (liquidity * (b - a)) // Q96


def amounts_for_liquidity(
    sqrt_price_x96: int,
    sqrt_a: int,
    sqrt_b: int,
    liquidity: int,
    *,
    round_up: bool = False,
) -> tuple[int, int]:
    a, b = _sorted(sqrt_a, sqrt_b)
    if sqrt_price_x96 <= a:
        return amount0_for_liquidity(a, b, liquidity, round_up=round_up), 0
    if sqrt_price_x96 < b:
        return (
            amount0_for_liquidity(sqrt_price_x96, b, liquidity, round_up=round_up),
            amount1_for_liquidity(a, sqrt_price_x96, liquidity, round_up=round_up),
        )
    return 0, amount1_for_liquidity(a, b, liquidity, round_up=round_up)


def amounts_for_tick_range(
    sqrt_price_x96: int,
    tick_lower: int,
    tick_upper: int,
    liquidity: int,
    *,
    round_up: bool = False,
) -> tuple[int, int]:
    sqrt_lower, sqrt_upper, _ = get_boundary_ratios(tick_lower, tick_upper)
    return amounts_for_liquidity(
        sqrt_price_x96, sqrt_lower, sqrt_upper, liquidity, round_up=round_up
    )
