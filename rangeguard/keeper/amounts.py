"""Deposit sizing: which token amounts to spend, and how much liquidity they buy.

``select_amounts`` turns balances plus optional human inputs into raw amounts,
deriving a missing side from a quote and rescaling the given side until the
derived one fits its balance. ``size_liquidity`` then converts the amounts
into position liquidity for the planned range, using one-sided boundary math
when the pool tick is pinned beyond the global bound.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Literal

from loguru import logger

from rangeguard.core.constants import BPS_DENOMINATOR
from rangeguard.core.errors import (
    AmountSelectionFailed,
    InputValidationError,
    KeeperError,
    NoFallbackBalance,
    QuoteFailure,
    format_error,
)
from rangeguard.core.utils.liquidity import (
    boundary_liquidity,
    boundary_min_amount_for_liquidity_one,
    get_boundary_ratios,
    liquidity_for_amounts,
)
from rangeguard.core.utils.tick_math import BoundaryMode, TickRange
from rangeguard.core.utils.units import to_raw_amount
from rangeguard.keeper.quoter import Quoter, apply_bps_buffer, format_quote_price

DEFAULT_BUFFER_BPS = 200
DEFAULT_MAX_SPEND_BPS = BPS_DENOMINATOR
MAX_SCALE_ATTEMPTS = 5
# scale to 99.5% of the proportional fit
_SCALE_NUMERATOR = 995
_SCALE_DENOMINATOR = 1000

QuoteDirection = Literal["token0->token1", "token1->token0"]


@dataclass(frozen=True)
class QuoteInfo:
    direction: QuoteDirection
    amount_in: int
    amount_out: int
    buffer_bps: int
    price: str


@dataclass(frozen=True)
class AmountRequest:
    token0: str
    token1: str
    token0_decimals: int
    token1_decimals: int
    balance0: int
    balance1: int
    amount0_input: str | None = None
    amount1_input: str | None = None
    use_full_balances: bool = True
    buffer_bps: int = DEFAULT_BUFFER_BPS
    max_spend_bps: int = DEFAULT_MAX_SPEND_BPS
    hook_data: bytes = b""


@dataclass(frozen=True)
class AmountPlan:
    amount0: int
    amount1: int
    liquidity: int = 0
    derived: bool = False
    scaled: bool = False
    warnings: list[str] = field(default_factory=list)
    quote: QuoteInfo | None = None


def spend_limit(balance: int, max_spend_bps: int) -> int:
    if max_spend_bps >= BPS_DENOMINATOR:
        return balance
    if max_spend_bps <= 0:
        return 0
    return (balance * max_spend_bps) // BPS_DENOMINATOR


def _clamp(amount: int, limit: int, label: str, warnings: list[str]) -> int:
    if amount > limit:
        warnings.append(f"{label} amount clamped to vault balance")
        return limit
    return amount


def _scale_input_to_fit(input_amount: int, derived: int, limit: int) -> int:
    if derived == 0:
        raise KeeperError("Derived amount is zero; cannot scale input")
    return (input_amount * limit * _SCALE_NUMERATOR) // (derived * _SCALE_DENOMINATOR)


async def select_amounts(request: AmountRequest, quoter: Quoter) -> AmountPlan:
    if request.balance0 < 0 or request.balance1 < 0:
        raise InputValidationError(
            "Balances must be non-negative",
            balance0=request.balance0,
            balance1=request.balance1,
        )
    if request.buffer_bps < 0 or request.buffer_bps > BPS_DENOMINATOR:
        raise InputValidationError(
            "bufferBps must be within [0, 10000]", buffer_bps=request.buffer_bps
        )

    warnings: list[str] = []
    limits = (
        spend_limit(request.balance0, request.max_spend_bps),
        spend_limit(request.balance1, request.max_spend_bps),
    )
    decimals = (request.token0_decimals, request.token1_decimals)
    tokens = (request.token0, request.token1)
    inputs = (request.amount0_input or None, request.amount1_input or None)

    def parsed(side: int) -> int:
        raw = to_raw_amount(inputs[side], decimals[side])
        return _clamp(raw, limits[side], f"token{side}", warnings)

    if request.use_full_balances:
        amounts = list(limits)
        for side in (0, 1):
            if inputs[side] is not None:
                amounts[side] = parsed(side)
        return AmountPlan(amount0=amounts[0], amount1=amounts[1], warnings=warnings)

    if inputs[0] is None and inputs[1] is None:
        raise InputValidationError(
            "Provide amount0 and/or amount1 when useFullBalances=false"
        )

    if inputs[0] is not None and inputs[1] is not None:
        return AmountPlan(amount0=parsed(0), amount1=parsed(1), warnings=warnings)

    src = 0 if inputs[0] is not None else 1
    dst = 1 - src
    input_amount = parsed(src)
    dst_limit = limits[dst]

    async def quote_buffered(amount: int) -> tuple[int, int]:
        quoted = await quoter.quote(tokens[src], tokens[dst], amount, request.hook_data)
        quoted = int(quoted)
        if quoted < 0:
            raise QuoteFailure("Quote returned a negative amount", amount_out=quoted)
        return quoted, apply_bps_buffer(quoted, request.buffer_bps)

    try:
        quoted, derived_amount = await quote_buffered(input_amount)
    except Exception as exc:
        if dst_limit <= 0:
            raise NoFallbackBalance(
                f"Quote failed and token{dst} balance is zero; provide amount{dst} "
                "or enable useFullBalances",
                error=format_error(exc),
            ) from exc
        message = f"Quote failed; using full token{dst} balance ({format_error(exc)})"
        logger.warning(message)
        warnings.append(message)
        amounts = [0, 0]
        amounts[src] = input_amount
        amounts[dst] = dst_limit
        return AmountPlan(amount0=amounts[0], amount1=amounts[1], warnings=warnings)

    scaled = False
    for attempt in range(1, MAX_SCALE_ATTEMPTS + 1):
        if derived_amount <= dst_limit:
            break
        input_amount = _scale_input_to_fit(input_amount, derived_amount, dst_limit)
        if input_amount <= 0:
            raise AmountSelectionFailed(
                f"Scaled amount{src} fell to zero while fitting token{dst} balance",
                attempt=attempt,
                derived_amount=derived_amount,
                limit=dst_limit,
            )
        try:
            quoted, derived_amount = await quote_buffered(input_amount)
        except Exception as exc:
            raise QuoteFailure(
                "Quote failed while rescaling",
                attempt=attempt,
                input_amount=input_amount,
                error=format_error(exc),
            ) from exc
        scaled = True
        message = f"Scaled amount{src} to fit token{dst} balance (attempt {attempt})"
        logger.warning(message)
        warnings.append(message)
        logger.debug(
            f"rescale attempt={attempt} amount{src}={input_amount} "
            f"derived amount{dst}={derived_amount} limit={dst_limit}"
        )

    if derived_amount > dst_limit:
        raise AmountSelectionFailed(
            f"Derived token{dst} amount exceeds vault balance after scaling",
            input_amount=input_amount,
            derived_amount=derived_amount,
            limit=dst_limit,
        )

    quote = QuoteInfo(
        direction="token0->token1" if src == 0 else "token1->token0",
        amount_in=input_amount,
        amount_out=quoted,
        buffer_bps=request.buffer_bps,
        price=format_quote_price(input_amount, quoted, decimals[src], decimals[dst]),
    )
    amounts = [0, 0]
    amounts[src] = input_amount
    amounts[dst] = derived_amount
    return AmountPlan(
        amount0=amounts[0],
        amount1=amounts[1],
        derived=True,
        scaled=scaled,
        warnings=warnings,
        quote=quote,
    )


def size_liquidity(
    plan: AmountPlan,
    tick_range: TickRange,
    sqrt_price_x96: int,
    *,
    limit0: int,
    limit1: int,
) -> AmountPlan:
    """Attach the liquidity the plan's amounts mint over ``tick_range``.

    For one-sided boundary mints an under-sized deposit is raised to the
    smallest amount that mints ``L >= 1`` when the spend limit allows it.
    """
    warnings = list(plan.warnings)
    amount0, amount1 = plan.amount0, plan.amount1
    lower, upper = tick_range.lower, tick_range.upper

    match tick_range.mode:
        case BoundaryMode.ABOVE_MAX | BoundaryMode.BELOW_MIN:
            used = 1 if tick_range.mode is BoundaryMode.ABOVE_MAX else 0
            unused = 1 - used
            amounts = [amount0, amount1]
            limits = (limit0, limit1)
            minimum = boundary_min_amount_for_liquidity_one(lower, upper, tick_range.mode)
            if amounts[used] < minimum:
                if limits[used] < minimum:
                    raise InputValidationError(
                        f"token{used} balance below minimum mintable amount",
                        mode=tick_range.mode.value,
                        amount=amounts[used],
                        minimum=minimum,
                        limit=limits[used],
                    )
                warnings.append(
                    f"Raised amount{used} from {amounts[used]} to minimum mintable "
                    f"amount {minimum}"
                )
                amounts[used] = minimum
            if amounts[unused] > 0:
                warnings.append(
                    f"token{unused} unused for {tick_range.mode.value} boundary mint"
                )
                amounts[unused] = 0
            liquidity = boundary_liquidity(
                lower, upper, amounts[0], amounts[1], tick_range.mode
            )
            amount0, amount1 = amounts
        case BoundaryMode.IN_RANGE:
            sqrt_lower, sqrt_upper, _ = get_boundary_ratios(lower, upper)
            straddles = sqrt_lower < sqrt_price_x96 < sqrt_upper
            if straddles and (amount0 <= 0 or amount1 <= 0):
                raise InputValidationError(
                    "Both amounts must be positive for a range around the current price",
                    amount0=amount0,
                    amount1=amount1,
                )
            if amount0 <= 0 and amount1 <= 0:
                raise InputValidationError("Both amount0 and amount1 are zero")
            liquidity = liquidity_for_amounts(
                sqrt_price_x96, sqrt_lower, sqrt_upper, amount0, amount1
            )
        case _:
            raise InputValidationError("Unknown boundary mode", mode=tick_range.mode)

    if liquidity <= 0:
        raise InputValidationError(
            "Computed liquidity is zero",
            amount0=amount0,
            amount1=amount1,
            tick_lower=lower,
            tick_upper=upper,
        )
    return replace(
        plan, amount0=amount0, amount1=amount1, liquidity=liquidity, warnings=warnings
    )
