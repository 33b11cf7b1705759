"""Tick alignment, global-bound clamping and range construction.

Pure integer math, no I/O.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from rangeguard.core.constants import MAX_TICK, MIN_TICK
from rangeguard.core.errors import (
    InputValidationError,
    InvalidSpacing,
    TickOutsideSupportedRange,
    WidthExceedsRange,
    WidthTooLarge,
)

_Q32 = 1 << 32


class BoundaryMode(Enum):
    IN_RANGE = "IN_RANGE"
    ABOVE_MAX = "ABOVE_MAX"
    BELOW_MIN = "BELOW_MIN"

    @property
    def is_boundary(self) -> bool:
        return self is not BoundaryMode.IN_RANGE


@dataclass(frozen=True)
class TickRange:
    lower: int
    upper: int
    spacing: int
    mode: BoundaryMode
    min_aligned: int
    max_aligned: int

    @property
    def width(self) -> int:
        return self.upper - self.lower

    def contains(self, tick: int) -> bool:
        return self.lower <= tick < self.upper


def _require_spacing(spacing: int) -> None:
    if spacing <= 0:
        raise InvalidSpacing("Invalid tick spacing", spacing=spacing)


def align_down(tick: int, spacing: int) -> int:
    """Round toward negative infinity to a multiple of ``spacing``."""
    _require_spacing(spacing)
    return (tick // spacing) * spacing


def align_up(tick: int, spacing: int) -> int:
    """Round toward positive infinity to a multiple of ``spacing``."""
    _require_spacing(spacing)
    return -(-tick // spacing) * spacing


def is_aligned(tick: int, spacing: int) -> bool:
    _require_spacing(spacing)
    return tick % spacing == 0


def min_aligned_tick(spacing: int) -> int:
    return align_up(MIN_TICK, spacing)


def max_aligned_tick(spacing: int) -> int:
    return align_down(MAX_TICK, spacing)


def _validate_width(width: int, spacing: int) -> None:
    _require_spacing(spacing)
    if width <= 0:
        raise InputValidationError("widthTicks must be positive", width=width)
    if width % spacing != 0:
        raise InputValidationError(
            "widthTicks must be a multiple of tick spacing",
            width=width,
            spacing=spacing,
        )


def compute_bootstrap_ticks(tick: int, spacing: int, width: int) -> TickRange:
    """Range for a fresh position, pinned to the aligned global bounds.

    The half-width window around ``tick`` is aligned outward. When the window
    crosses an aligned global bound it is pinned there with exactly ``width``
    ticks; the mode becomes a one-sided boundary mode only when the raw tick
    itself lies beyond that bound.
    """
    _validate_width(width, spacing)
    min_aligned = min_aligned_tick(spacing)
    max_aligned = max_aligned_tick(spacing)
    if width > max_aligned - min_aligned:
        raise WidthTooLarge(
            "widthTicks exceeds the aligned tick range",
            width=width,
            min_aligned=min_aligned,
            max_aligned=max_aligned,
        )

    # tick -/+ width/2 without losing the half tick of odd widths
    lower = ((2 * tick - width) // (2 * spacing)) * spacing
    upper = -(-(2 * tick + width) // (2 * spacing)) * spacing
    mode = BoundaryMode.IN_RANGE

    if upper > max_aligned:
        upper = max_aligned
        lower = upper - width
        if tick > max_aligned:
            mode = BoundaryMode.ABOVE_MAX
    if lower < min_aligned:
        lower = min_aligned
        upper = lower + width
        if tick < min_aligned:
            mode = BoundaryMode.BELOW_MIN

    if upper <= lower:
        raise InputValidationError(
            "Invalid tick range after alignment", lower=lower, upper=upper
        )
    return TickRange(
        lower=lower,
        upper=upper,
        spacing=spacing,
        mode=mode,
        min_aligned=min_aligned,
        max_aligned=max_aligned,
    )


def compute_range_ticks(tick: int, spacing: int, width: int) -> TickRange:
    """Re-centre an existing position on ``tick`` with exactly ``width`` ticks."""
    _validate_width(width, spacing)
    min_aligned = min_aligned_tick(spacing)
    max_aligned = max_aligned_tick(spacing)
    if tick < min_aligned or tick > max_aligned:
        raise TickOutsideSupportedRange(
            "Current tick is outside the aligned tick range",
            tick=tick,
            min_aligned=min_aligned,
            max_aligned=max_aligned,
        )
    if width > max_aligned - min_aligned:
        raise WidthExceedsRange(
            "widthTicks exceeds the aligned tick range",
            width=width,
            min_aligned=min_aligned,
            max_aligned=max_aligned,
        )

    lower = align_down(tick - width // 2, spacing)
    upper = lower + width
    if upper > max_aligned:
        upper = max_aligned
        lower = upper - width
    if lower < min_aligned:
        lower = min_aligned
        upper = lower + width

    return TickRange(
        lower=lower,
        upper=upper,
        spacing=spacing,
        mode=BoundaryMode.IN_RANGE,
        min_aligned=min_aligned,
        max_aligned=max_aligned,
    )


def sqrt_ratio_at_tick(tick: int) -> int:
    """sqrt(1.0001^tick) * 2^96, bit-exact with the on-chain TickMath library."""
    if tick < MIN_TICK or tick > MAX_TICK:
        raise TickOutsideSupportedRange(
            "tick out of range", tick=tick, min_tick=MIN_TICK, max_tick=MAX_TICK
        )

    abs_tick = tick if tick >= 0 else -tick
    ratio = (
        0xFFFCB933BD6FAD37AA2D162D1A594001
        if abs_tick & 0x1
        else 0x100000000000000000000000000000000
    )

    if abs_tick & 0x2:
        ratio = (ratio * 0xFFF97272373D413259A46990580E213A) >> 128
    if abs_tick & 0x4:
        ratio = (ratio * 0xFFF2E50F5F656932EF12357CF3C7FDCC) >> 128
    if abs_tick & 0x8:
        ratio = (ratio * 0xFFE5CACA7E10E4E61C3624EAA0941CD0) >> 128
    if abs_tick & 0x10:
        ratio = (ratio * 0xFFCB9843D60F6159C9DB58835C926644) >> 128
    if abs_tick & 0x20:
        ratio = (ratio * 0xFF973B41FA98C081472E6896DFB254C0) >> 128
    if abs_tick & 0x40:
        ratio = (ratio * 0xFF2EA16466C96A3843EC78B326B52861) >> 128
    if abs_tick & 0x80:
        ratio = (ratio * 0xFE5DEE046A99A2A811C461F1969C3053) >> 128
    if abs_tick & 0x100:
        ratio = (ratio * 0xFCBE86C7900A88AEDCFFC83B479AA3A4) >> 128
    if abs_tick & 0x200:
        ratio = (ratio * 0xF987A7253AC413176F2B074CF7815E54) >> 128
    if abs_tick & 0x400:
        ratio = (ratio * 0xF3392B0822B70005940C7A398E4B70F3) >> 128
    if abs_tick & 0x800:
        ratio = (ratio * 0xE7159475A2C29B7443B29C7FA6E889D9) >> 128
    if abs_tick & 0x1000:
        ratio = (ratio * 0xD097F3BDFD2022B8845AD8F792AA5825) >> 128
    if abs_tick & 0x2000:
        ratio = (ratio * 0xA9F746462D870FDF8A65DC1F90E061E5) >> 128
    if abs_tick & 0x4000:
        ratio = (ratio * 0x70D869A156D2A1B890BB3DF62BAF32F7) >> 128
    if abs_tick & 0x8000:
        ratio = (ratio * 0x31BE135F97D08FD981231505542FCFA6) >> 128
    if abs_tick & 0x10000:
        ratio = (ratio * 0x9AA508B5B7A84E1C677DE54F3E99BC9) >> 128
    if abs_tick & 0x20000:
        ratio = (ratio * 0x5D6AF8DEDB81196699C329225EE604) >> 128
    if abs_tick & 0x40000:
        ratio = (ratio * 0x2216E584F5FA1EA926041BEDFE98) >> 128
    if abs_tick & 0x80000:
        ratio = (ratio * 0x48A170391F7DC42444E8FA2) >> 128

    if tick > 0:
        ratio = ((1 << 256) - 1) // ratio

    # Q128.128 -> Q64.96, rounding up
    sqrt_price_x96 = ratio >> 32
    if ratio % _Q32:
        sqrt_price_x96 += 1
    return sqrt_price_x96


def tick_at_sqrt_ratio(sqrt_price_x96: int) -> int:
    """Greatest tick whose sqrt ratio is <= ``sqrt_price_x96`` (TickMath.getTickAtSqrtPrice)."""
    min_sqrt = sqrt_ratio_at_tick(MIN_TICK)
    max_sqrt = sqrt_ratio_at_tick(MAX_TICK)
    if sqrt_price_x96 < min_sqrt or sqrt_price_x96 >= max_sqrt:
        raise InputValidationError(
            "sqrtPriceX96 out of range",
            sqrt_price_x96=sqrt_price_x96,
            min_sqrt=min_sqrt,
            max_sqrt=max_sqrt,
        )
    lo, hi = MIN_TICK, MAX_TICK - 1
    while lo < hi:
        mid = (lo + hi + 1) // 2
        if sqrt_ratio_at_tick(mid) <= sqrt_price_x96:
            lo = mid
        else:
            hi = mid - 1
    return lo
