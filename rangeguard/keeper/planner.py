"""Operation planners.

Each planner takes a pool snapshot, the vault's balances and the policy, and
returns an ``OperationPlan`` whose ``unlock_data`` is ready to be forwarded
by the vault to ``PositionManager.modifyLiquidities``. Nothing here signs or
sends transactions.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from eth_utils import keccak, to_checksum_address
from loguru import logger

from rangeguard.core.constants import BPS_DENOMINATOR
from rangeguard.core.config import PolicyConfig
from rangeguard.core.errors import CooldownActive, KeeperError, invariant
from rangeguard.core.utils.liquidity import amounts_for_tick_range
from rangeguard.core.utils.tick_math import (
    BoundaryMode,
    TickRange,
    compute_bootstrap_ticks,
    compute_range_ticks,
)
from rangeguard.core.utils.uniswap_v4_actions import (
    InstructionList,
    PoolKeyTuple,
    build_bootstrap_unlock_data,
    build_burn_unlock_data,
    build_collect_unlock_data,
    build_rebalance_unlock_data,
    hook_data_bytes,
    pool_id,
    require_uint128,
)
from rangeguard.keeper.amounts import (
    DEFAULT_BUFFER_BPS,
    DEFAULT_MAX_SPEND_BPS,
    AmountPlan,
    AmountRequest,
    QuoteInfo,
    select_amounts,
    size_liquidity,
    spend_limit,
)
from rangeguard.keeper.cooldown import CooldownGate
from rangeguard.keeper.pool_state import PositionSnapshot, Slot0, is_tick_near_bounds
from rangeguard.keeper.position import RangeHealth, range_health, should_rebalance
from rangeguard.keeper.quoter import Quoter

OperationName = Literal["bootstrap", "collect", "rebalance", "close"]


@dataclass(frozen=True)
class Decision:
    action: Literal["execute", "skip"]
    reason: str


@dataclass(frozen=True)
class PlanContext:
    pool_key: PoolKeyTuple
    slot0: Slot0
    owner: str
    policy: PolicyConfig
    token0_decimals: int = 18
    token1_decimals: int = 18
    deadline_seconds: int = 180
    clock: Callable[[], float] = time.time

    @property
    def currency0(self) -> str:
        return self.pool_key[0]

    @property
    def currency1(self) -> str:
        return self.pool_key[1]

    @property
    def tick_spacing(self) -> int:
        return int(self.pool_key[3])

    @property
    def hook_data(self) -> bytes:
        return hook_data_bytes(self.policy.hook_data_hex)


@dataclass(frozen=True)
class DepositRequest:
    balance0: int
    balance1: int
    amount0_input: str | None = None
    amount1_input: str | None = None
    buffer_bps: int = DEFAULT_BUFFER_BPS
    max_spend_bps: int = DEFAULT_MAX_SPEND_BPS


@dataclass(frozen=True)
class MintSizing:
    amounts: AmountPlan
    amount0_max: int
    amount1_max: int

    @property
    def liquidity(self) -> int:
        return self.amounts.liquidity


@dataclass(frozen=True)
class OperationPlan:
    operation: OperationName
    decision: Decision
    pool_id: str
    current_tick: int
    tick_spacing: int
    tick_lower: int | None = None
    tick_upper: int | None = None
    mode: BoundaryMode | None = None
    token_id: int | None = None
    amount0: int = 0
    amount1: int = 0
    liquidity: int = 0
    amount0_max: int = 0
    amount1_max: int = 0
    amount0_min: int = 0
    amount1_min: int = 0
    buffer_bps: int | None = None
    max_spend_bps: int | None = None
    quote: QuoteInfo | None = None
    health: RangeHealth | None = None
    instructions: InstructionList | None = None
    deadline: int | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def executable(self) -> bool:
        return self.decision.action == "execute"

    @property
    def unlock_data(self) -> bytes:
        return self.instructions.encode() if self.instructions is not None else b""

    @property
    def unlock_data_hash(self) -> str | None:
        if self.instructions is None:
            return None
        return "0x" + keccak(self.unlock_data).hex()

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready view; integers wider than 53 bits are rendered as strings."""
        out: dict[str, Any] = {
            "operation": self.operation,
            "decision": {"action": self.decision.action, "reason": self.decision.reason},
            "poolId": self.pool_id,
            "currentTick": self.current_tick,
            "tickSpacing": self.tick_spacing,
            "warnings": list(self.warnings),
        }
        if self.tick_lower is not None:
            out["tickLower"] = self.tick_lower
            out["tickUpper"] = self.tick_upper
        if self.mode is not None:
            out["mode"] = self.mode.value
        if self.token_id is not None:
            out["tokenId"] = str(self.token_id)
        if self.health is not None:
            out["health"] = {
                "inRange": self.health.in_range,
                "outOfRange": self.health.out_of_range,
                "nearEdge": self.health.near_edge,
                "healthBps": self.health.health_bps,
            }
        if not self.executable:
            return out
        out.update(
            {
                "amount0": str(self.amount0),
                "amount1": str(self.amount1),
                "liquidity": str(self.liquidity),
                "amount0Max": str(self.amount0_max),
                "amount1Max": str(self.amount1_max),
                "amount0Min": str(self.amount0_min),
                "amount1Min": str(self.amount1_min),
                "deadline": self.deadline,
                "actions": [i.opcode.name for i in self.instructions.instructions()]
                if self.instructions is not None
                else [],
                "unlockData": "0x" + self.unlock_data.hex(),
                "unlockDataHash": self.unlock_data_hash,
            }
        )
        if self.buffer_bps is not None:
            out["bufferBps"] = self.buffer_bps
            out["maxSpendBps"] = self.max_spend_bps
        out["quote"] = (
            {
                "direction": self.quote.direction,
                "amountIn": str(self.quote.amount_in),
                "amountOut": str(self.quote.amount_out),
                "bufferBps": self.quote.buffer_bps,
                "price": self.quote.price,
            }
            if self.quote is not None
            else None
        )
        return out


def slippage_max(amount: int, slippage_bps: int) -> int:
    bps = max(0, min(BPS_DENOMINATOR, int(slippage_bps)))
    return (int(amount) * (BPS_DENOMINATOR + bps)) // BPS_DENOMINATOR


def slippage_min(amount: int, slippage_bps: int) -> int:
    bps = max(0, min(BPS_DENOMINATOR, int(slippage_bps)))
    return max(0, (int(amount) * (BPS_DENOMINATOR - bps)) // BPS_DENOMINATOR)


def deadline_from_now(seconds: int, clock: Callable[[], float] = time.time) -> int:
    return int(clock()) + int(seconds)


def size_mint(
    amounts: AmountPlan,
    tick_range: TickRange,
    sqrt_price_x96: int,
    *,
    limit0: int,
    limit1: int,
    slippage_bps: int,
) -> MintSizing:
    sized = size_liquidity(
        amounts, tick_range, sqrt_price_x96, limit0=limit0, limit1=limit1
    )
    require_uint128("liquidity", sized.liquidity)
    owed0, owed1 = amounts_for_tick_range(
        sqrt_price_x96,
        tick_range.lower,
        tick_range.upper,
        sized.liquidity,
        round_up=True,
    )
    return MintSizing(
        amounts=sized,
        amount0_max=slippage_max(owed0, slippage_bps),
        amount1_max=slippage_max(owed1, slippage_bps),
    )


def _base_plan_kwargs(ctx: PlanContext, operation: OperationName) -> dict[str, Any]:
    return {
        "operation": operation,
        "pool_id": pool_id(ctx.pool_key),
        "current_tick": ctx.slot0.tick,
        "tick_spacing": ctx.tick_spacing,
    }


def _cooldown_skip(
    ctx: PlanContext,
    operation: OperationName,
    gate: CooldownGate | None,
    *,
    force: bool,
    **extra: Any,
) -> OperationPlan | None:
    if gate is None:
        return None
    try:
        gate.check(ctx.owner, operation, force=force)
    except CooldownActive as exc:
        logger.info(str(exc))
        return OperationPlan(
            decision=Decision("skip", "Skipped due to cooldown"),
            warnings=[exc.message],
            **_base_plan_kwargs(ctx, operation),
            **extra,
        )
    return None


async def _select_deposit(
    ctx: PlanContext, deposit: DepositRequest, quoter: Quoter
) -> AmountPlan:
    request = AmountRequest(
        token0=ctx.currency0,
        token1=ctx.currency1,
        token0_decimals=ctx.token0_decimals,
        token1_decimals=ctx.token1_decimals,
        balance0=deposit.balance0,
        balance1=deposit.balance1,
        amount0_input=deposit.amount0_input,
        amount1_input=deposit.amount1_input,
        use_full_balances=ctx.policy.use_full_balances,
        buffer_bps=deposit.buffer_bps,
        max_spend_bps=deposit.max_spend_bps,
        hook_data=ctx.hook_data,
    )
    return await select_amounts(request, quoter)


async def _mint_for_range(
    ctx: PlanContext,
    tick_range: TickRange,
    deposit: DepositRequest,
    quoter: Quoter,
) -> MintSizing:
    selected = await _select_deposit(ctx, deposit, quoter)
    return size_mint(
        selected,
        tick_range,
        ctx.slot0.sqrt_price_x96,
        limit0=spend_limit(deposit.balance0, deposit.max_spend_bps),
        limit1=spend_limit(deposit.balance1, deposit.max_spend_bps),
        slippage_bps=ctx.policy.max_slippage_bps,
    )


async def plan_bootstrap(
    ctx: PlanContext,
    deposit: DepositRequest,
    quoter: Quoter,
    *,
    gate: CooldownGate | None = None,
    force: bool = False,
) -> OperationPlan:
    """Mint the vault's first position around the current tick."""
    if ctx.slot0.sqrt_price_x96 == 0:
        raise KeeperError("Pool not initialized", pool_id=pool_id(ctx.pool_key))

    skipped = _cooldown_skip(ctx, "bootstrap", gate, force=force)
    if skipped is not None:
        return skipped

    tick_range = compute_bootstrap_ticks(
        ctx.slot0.tick, ctx.tick_spacing, ctx.policy.width_ticks
    )
    warnings: list[str] = []
    if tick_range.mode.is_boundary:
        message = (
            f"Pool tick {ctx.slot0.tick} beyond aligned bounds; "
            f"using one-sided {tick_range.mode.value} mint"
        )
        logger.warning(message)
        warnings.append(message)
    elif is_tick_near_bounds(ctx.slot0.tick):
        warnings.append(f"Pool tick {ctx.slot0.tick} is near the global tick bounds")

    sizing = await _mint_for_range(ctx, tick_range, deposit, quoter)
    instructions = build_bootstrap_unlock_data(
        key=ctx.pool_key,
        tick_lower=tick_range.lower,
        tick_upper=tick_range.upper,
        liquidity=sizing.liquidity,
        amount0_max=sizing.amount0_max,
        amount1_max=sizing.amount1_max,
        owner=ctx.owner,
        hook_data=ctx.hook_data,
    )
    logger.info(
        f"bootstrap plan [{tick_range.lower}, {tick_range.upper}] "
        f"mode={tick_range.mode.value} liquidity={sizing.liquidity}"
    )
    return OperationPlan(
        decision=Decision("execute", "bootstrap"),
        tick_lower=tick_range.lower,
        tick_upper=tick_range.upper,
        mode=tick_range.mode,
        amount0=sizing.amounts.amount0,
        amount1=sizing.amounts.amount1,
        liquidity=sizing.liquidity,
        amount0_max=sizing.amount0_max,
        amount1_max=sizing.amount1_max,
        buffer_bps=deposit.buffer_bps,
        max_spend_bps=deposit.max_spend_bps,
        quote=sizing.amounts.quote,
        instructions=instructions,
        deadline=deadline_from_now(ctx.deadline_seconds, ctx.clock),
        warnings=warnings + sizing.amounts.warnings,
        **_base_plan_kwargs(ctx, "bootstrap"),
    )


def plan_collect(
    ctx: PlanContext,
    position: PositionSnapshot,
    *,
    recipient: str | None = None,
    gate: CooldownGate | None = None,
    force: bool = False,
) -> OperationPlan:
    """Accrue fees with a zero-liquidity decrease and take both currencies."""
    _require_same_pool(ctx, position)
    skipped = _cooldown_skip(ctx, "collect", gate, force=force, token_id=position.token_id)
    if skipped is not None:
        return skipped

    instructions = build_collect_unlock_data(
        token_id=position.token_id,
        currency0=ctx.currency0,
        currency1=ctx.currency1,
        recipient=to_checksum_address(recipient or ctx.owner),
        hook_data=ctx.hook_data,
    )
    return OperationPlan(
        decision=Decision("execute", "collect"),
        tick_lower=position.tick_lower,
        tick_upper=position.tick_upper,
        token_id=position.token_id,
        instructions=instructions,
        deadline=deadline_from_now(ctx.deadline_seconds, ctx.clock),
        **_base_plan_kwargs(ctx, "collect"),
    )


def _require_same_pool(ctx: PlanContext, position: PositionSnapshot) -> None:
    expected = pool_id(ctx.pool_key)
    actual = pool_id(position.pool_key)
    invariant(
        actual == expected,
        "Position belongs to a different pool",
        token_id=position.token_id,
        expected=expected,
        actual=actual,
    )


def _position_mins(ctx: PlanContext, position: PositionSnapshot) -> tuple[int, int]:
    owed0, owed1 = amounts_for_tick_range(
        ctx.slot0.sqrt_price_x96,
        position.tick_lower,
        position.tick_upper,
        position.liquidity,
    )
    bps = ctx.policy.max_slippage_bps
    return slippage_min(owed0, bps), slippage_min(owed1, bps)


async def plan_rebalance(
    ctx: PlanContext,
    position: PositionSnapshot,
    deposit: DepositRequest,
    quoter: Quoter,
    *,
    gate: CooldownGate | None = None,
    force: bool = False,
) -> OperationPlan:
    """Withdraw the current position and mint a re-centred one in one unlock.

    Skips (without raising) when the policy triggers are not met or the
    vault is cooling down; ``force`` overrides both.
    """
    _require_same_pool(ctx, position)
    health = range_health(
        ctx.slot0.tick,
        position.tick_lower,
        position.tick_upper,
        width_ticks=ctx.policy.width_ticks,
        edge_bps=ctx.policy.edge_bps,
    )
    extra = {
        "token_id": position.token_id,
        "health": health,
        "tick_lower": position.tick_lower,
        "tick_upper": position.tick_upper,
    }

    if not force and not should_rebalance(health, ctx.policy):
        return OperationPlan(
            decision=Decision("skip", "Trigger conditions not met"),
            **_base_plan_kwargs(ctx, "rebalance"),
            **extra,
        )

    skipped = _cooldown_skip(ctx, "rebalance", gate, force=force, **extra)
    if skipped is not None:
        return skipped

    tick_range = compute_range_ticks(
        ctx.slot0.tick, ctx.tick_spacing, ctx.policy.width_ticks
    )
    sizing = await _mint_for_range(ctx, tick_range, deposit, quoter)
    amount0_min, amount1_min = _position_mins(ctx, position)

    instructions = build_rebalance_unlock_data(
        key=ctx.pool_key,
        old_token_id=position.token_id,
        old_liquidity=position.liquidity,
        amount0_min=amount0_min,
        amount1_min=amount1_min,
        new_tick_lower=tick_range.lower,
        new_tick_upper=tick_range.upper,
        new_liquidity=sizing.liquidity,
        amount0_max=sizing.amount0_max,
        amount1_max=sizing.amount1_max,
        owner=ctx.owner,
        hook_data=ctx.hook_data,
    )
    reason = "forced" if force and not should_rebalance(health, ctx.policy) else (
        "out of range" if health.out_of_range else "near edge"
    )
    logger.info(
        f"rebalance plan [{position.tick_lower}, {position.tick_upper}] -> "
        f"[{tick_range.lower}, {tick_range.upper}] ({reason})"
    )
    return OperationPlan(
        decision=Decision("execute", reason),
        pool_id=pool_id(ctx.pool_key),
        operation="rebalance",
        current_tick=ctx.slot0.tick,
        tick_spacing=ctx.tick_spacing,
        tick_lower=tick_range.lower,
        tick_upper=tick_range.upper,
        mode=tick_range.mode,
        token_id=position.token_id,
        amount0=sizing.amounts.amount0,
        amount1=sizing.amounts.amount1,
        liquidity=sizing.liquidity,
        amount0_max=sizing.amount0_max,
        amount1_max=sizing.amount1_max,
        amount0_min=amount0_min,
        amount1_min=amount1_min,
        buffer_bps=deposit.buffer_bps,
        max_spend_bps=deposit.max_spend_bps,
        quote=sizing.amounts.quote,
        health=health,
        instructions=instructions,
        deadline=deadline_from_now(ctx.deadline_seconds, ctx.clock),
        warnings=list(sizing.amounts.warnings),
    )


def plan_close(
    ctx: PlanContext,
    position: PositionSnapshot,
    *,
    recipient: str | None = None,
    gate: CooldownGate | None = None,
    force: bool = False,
) -> OperationPlan:
    """Burn the position and take both currencies back to the vault."""
    _require_same_pool(ctx, position)
    skipped = _cooldown_skip(ctx, "close", gate, force=force, token_id=position.token_id)
    if skipped is not None:
        return skipped

    amount0_min, amount1_min = _position_mins(ctx, position)
    instructions = build_burn_unlock_data(
        token_id=position.token_id,
        amount0_min=amount0_min,
        amount1_min=amount1_min,
        currency0=ctx.currency0,
        currency1=ctx.currency1,
        recipient=to_checksum_address(recipient or ctx.owner),
        hook_data=ctx.hook_data,
    )
    return OperationPlan(
        decision=Decision("execute", "close"),
        tick_lower=position.tick_lower,
        tick_upper=position.tick_upper,
        token_id=position.token_id,
        liquidity=position.liquidity,
        amount0_min=amount0_min,
        amount1_min=amount1_min,
        instructions=instructions,
        deadline=deadline_from_now(ctx.deadline_seconds, ctx.clock),
        **_base_plan_kwargs(ctx, "close"),
    )
