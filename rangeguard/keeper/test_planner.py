from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from eth_utils import keccak

from rangeguard.core.constants import MAX_UINT128, ZERO_ADDRESS
from rangeguard.core.errors import (
    InputValidationError,
    KeeperError,
    ValueExceedsUint128,
)
from rangeguard.core.utils.liquidity import amounts_for_tick_range
from rangeguard.core.utils.tick_math import (
    BoundaryMode,
    compute_range_ticks,
    sqrt_ratio_at_tick,
)
from rangeguard.core.utils.uniswap_v4_actions import (
    Action,
    build_pool_key,
    decode_unlock_data,
)
from rangeguard.keeper.amounts import AmountPlan
from rangeguard.keeper.cooldown import CooldownGate, InMemoryStateStore
from rangeguard.keeper.planner import (
    Decision,
    DepositRequest,
    PlanContext,
    deadline_from_now,
    plan_bootstrap,
    plan_close,
    plan_collect,
    plan_rebalance,
    size_mint,
    slippage_max,
    slippage_min,
)
from rangeguard.keeper.pool_state import PositionSnapshot, Slot0

TOKEN0 = "0x1111111111111111111111111111111111111111"
TOKEN1 = "0x3333333333333333333333333333333333333333"
VAULT = "0xaAaAaAaaAaAaAaaAaAAAAAAAAaaaAaAaAaaAaaAa"
NOW = 1_700_000_000


@pytest.fixture
def key():
    return build_pool_key(
        currency_a=TOKEN0, currency_b=TOKEN1, fee=3000, tick_spacing=60, hooks=ZERO_ADDRESS
    )


@pytest.fixture
def quoter() -> AsyncMock:
    q = AsyncMock()
    q.quote = AsyncMock(side_effect=lambda a, b, amount, hook=b"": amount)
    return q


@pytest.fixture
def deposit() -> DepositRequest:
    return DepositRequest(balance0=10**18, balance1=10**18)


def _ctx(key, policy, tick: int) -> PlanContext:
    return PlanContext(
        pool_key=key,
        slot0=Slot0(sqrt_price_x96=sqrt_ratio_at_tick(tick), tick=tick),
        owner=VAULT,
        policy=policy,
        clock=lambda: NOW,
    )


def _position(key, lower=-600, upper=600, liquidity=10**15) -> PositionSnapshot:
    return PositionSnapshot(
        token_id=7, pool_key=key, tick_lower=lower, tick_upper=upper, liquidity=liquidity
    )


def _gate(recorded: bool = False) -> CooldownGate:
    gate = CooldownGate(InMemoryStateStore(), 300, clock=lambda: NOW)
    if recorded:
        gate.record_action(VAULT)
    return gate


def test_slippage_helpers():
    assert slippage_max(10_000, 50) == 10_050
    assert slippage_min(10_000, 50) == 9_950
    assert slippage_min(10_000, 20_000) == 0
    assert slippage_max(10_000, -1) == 10_000
    assert deadline_from_now(180, lambda: 1000.7) == 1180


def test_size_mint_rejects_liquidity_beyond_uint128():
    tick_range = compute_range_ticks(0, 60, 1200)
    huge = 2**200
    with pytest.raises(ValueExceedsUint128):
        size_mint(
            AmountPlan(amount0=huge, amount1=huge),
            tick_range,
            sqrt_ratio_at_tick(0),
            limit0=huge,
            limit1=huge,
            slippage_bps=0,
        )


def test_size_mint_max_amounts_cover_owed():
    tick_range = compute_range_ticks(0, 60, 1200)
    sizing = size_mint(
        AmountPlan(amount0=10**18, amount1=10**18),
        tick_range,
        sqrt_ratio_at_tick(0),
        limit0=10**18,
        limit1=10**18,
        slippage_bps=100,
    )
    owed0, owed1 = amounts_for_tick_range(
        sqrt_ratio_at_tick(0), tick_range.lower, tick_range.upper, sizing.liquidity, round_up=True
    )
    assert sizing.amount0_max == owed0 * 10_100 // 10_000
    assert sizing.amount1_max == owed1 * 10_100 // 10_000
    assert 0 < sizing.liquidity <= MAX_UINT128


@pytest.mark.asyncio
async def test_bootstrap_mints_and_settles(key, policy, deposit, quoter):
    plan = await plan_bootstrap(_ctx(key, policy, 0), deposit, quoter)

    assert plan.executable
    assert plan.decision.reason == "bootstrap"
    assert (plan.tick_lower, plan.tick_upper) == (-600, 600)
    assert plan.mode is BoundaryMode.IN_RANGE
    assert plan.deadline == NOW + 180
    assert plan.liquidity > 0

    decoded = decode_unlock_data(plan.unlock_data)
    assert decoded.opcodes == [Action.MINT_POSITION, Action.SETTLE_PAIR]
    mint = decoded.instructions()[0].decode()
    assert mint[1:4] == (-600, 600, plan.liquidity)
    assert mint[6].lower() == VAULT.lower()
    assert plan.unlock_data_hash == "0x" + keccak(plan.unlock_data).hex()


@pytest.mark.asyncio
async def test_bootstrap_boundary_above_max(key, policy, quoter):
    deposit = DepositRequest(balance0=10**18, balance1=2 * 10**18)
    plan = await plan_bootstrap(_ctx(key, policy, 887271), deposit, quoter)

    assert plan.mode is BoundaryMode.ABOVE_MAX
    assert plan.amount0 == 0
    assert plan.amount1 > 0
    assert plan.tick_upper == 887220
    assert any("one-sided ABOVE_MAX" in w for w in plan.warnings)
    assert any("token0 unused" in w for w in plan.warnings)
    assert decode_unlock_data(plan.unlock_data).opcodes == [
        Action.MINT_POSITION,
        Action.SETTLE_PAIR,
    ]


@pytest.mark.asyncio
async def test_bootstrap_boundary_balance_below_minimum(key, policy, deposit, quoter):
    # one token1 cannot mint a single unit of liquidity at [886020, 887220]
    with pytest.raises(InputValidationError, match="below minimum mintable amount"):
        await plan_bootstrap(_ctx(key, policy, 887271), deposit, quoter)


@pytest.mark.asyncio
async def test_bootstrap_zero_quote_cannot_size_mint(key, policy):
    quoter = AsyncMock()
    quoter.quote = AsyncMock(return_value=0)
    partial = policy.model_copy(update={"use_full_balances": False})
    deposit = DepositRequest(balance0=10**18, balance1=10**18, amount0_input="0.5")
    with pytest.raises(InputValidationError, match="Both amounts must be positive"):
        await plan_bootstrap(_ctx(key, partial, 0), deposit, quoter)
    quoter.quote.assert_awaited_once()


@pytest.mark.asyncio
async def test_bootstrap_uninitialized_pool(key, policy, deposit, quoter):
    ctx = PlanContext(
        pool_key=key, slot0=Slot0(sqrt_price_x96=0, tick=0), owner=VAULT, policy=policy
    )
    with pytest.raises(KeeperError, match="Pool not initialized"):
        await plan_bootstrap(ctx, deposit, quoter)


@pytest.mark.asyncio
async def test_bootstrap_cooldown_skip(key, policy, deposit, quoter):
    plan = await plan_bootstrap(
        _ctx(key, policy, 0), deposit, quoter, gate=_gate(recorded=True)
    )
    assert not plan.executable
    assert plan.decision.reason == "Skipped due to cooldown"
    assert plan.unlock_data == b""
    assert plan.unlock_data_hash is None
    assert "Retry in 300s" in plan.warnings[0]
    quoter.quote.assert_not_awaited()


@pytest.mark.asyncio
async def test_rebalance_skips_when_healthy(key, policy, deposit, quoter):
    plan = await plan_rebalance(_ctx(key, policy, 0), _position(key), deposit, quoter)
    assert plan.decision.action == "skip"
    assert plan.decision.reason == "Trigger conditions not met"
    assert plan.health.in_range
    assert "unlockData" not in plan.to_dict()


@pytest.mark.asyncio
async def test_rebalance_out_of_range(key, policy, deposit, quoter):
    ctx = _ctx(key, policy, 700)
    position = _position(key)
    plan = await plan_rebalance(ctx, position, deposit, quoter, gate=_gate())

    assert plan.decision == Decision("execute", "out of range")
    assert (plan.tick_lower, plan.tick_upper) == (60, 1260)
    assert plan.token_id == 7

    decoded = decode_unlock_data(plan.unlock_data)
    assert decoded.opcodes == [
        Action.DECREASE_LIQUIDITY,
        Action.MINT_POSITION,
        Action.CLOSE_CURRENCY,
        Action.CLOSE_CURRENCY,
    ]
    decrease = decoded.instructions()[0].decode()
    assert decrease[:4] == (7, 10**15, plan.amount0_min, plan.amount1_min)

    # price is above the old range so only token1 comes back
    owed0, owed1 = amounts_for_tick_range(ctx.slot0.sqrt_price_x96, -600, 600, 10**15)
    assert owed0 == 0
    assert plan.amount1_min == owed1 * 9_950 // 10_000


@pytest.mark.asyncio
async def test_rebalance_cooldown_and_force(key, policy, deposit, quoter):
    ctx = _ctx(key, policy, 700)
    gate = _gate(recorded=True)

    skipped = await plan_rebalance(ctx, _position(key), deposit, quoter, gate=gate)
    assert skipped.decision.reason == "Skipped due to cooldown"
    assert skipped.to_dict()["decision"] == {
        "action": "skip",
        "reason": "Skipped due to cooldown",
    }

    forced = await plan_rebalance(
        ctx, _position(key), deposit, quoter, gate=gate, force=True
    )
    assert forced.executable
    assert forced.decision.reason == "out of range"


@pytest.mark.asyncio
async def test_rebalance_forced_when_healthy(key, policy, deposit, quoter):
    plan = await plan_rebalance(
        _ctx(key, policy, 0), _position(key), deposit, quoter, force=True
    )
    assert plan.executable
    assert plan.decision.reason == "forced"


def test_collect_plan(key, policy):
    plan = plan_collect(_ctx(key, policy, 0), _position(key))
    decoded = decode_unlock_data(plan.unlock_data)
    assert decoded.opcodes == [Action.DECREASE_LIQUIDITY, Action.TAKE_PAIR]
    assert decoded.instructions()[0].decode()[:4] == (7, 0, 0, 0)
    take = decoded.instructions()[1].decode()
    assert take[2].lower() == VAULT.lower()


def test_collect_rejects_foreign_position(key, policy):
    other = build_pool_key(
        currency_a=TOKEN0, currency_b=TOKEN1, fee=500, tick_spacing=10, hooks=ZERO_ADDRESS
    )
    with pytest.raises(KeeperError, match="different pool"):
        plan_collect(_ctx(key, policy, 0), _position(other))


@pytest.mark.asyncio
async def test_rebalance_rejects_foreign_position_before_quoting(
    key, policy, deposit, quoter
):
    other = build_pool_key(
        currency_a=TOKEN0, currency_b=TOKEN1, fee=500, tick_spacing=10, hooks=ZERO_ADDRESS
    )
    with pytest.raises(KeeperError, match="different pool"):
        await plan_rebalance(
            _ctx(key, policy, 700), _position(other), deposit, quoter, force=True
        )
    quoter.quote.assert_not_awaited()


def test_close_plan_mins(key, policy):
    ctx = _ctx(key, policy, 0)
    plan = plan_close(ctx, _position(key))

    decoded = decode_unlock_data(plan.unlock_data)
    assert decoded.opcodes == [Action.BURN_POSITION, Action.TAKE_PAIR]
    owed0, owed1 = amounts_for_tick_range(ctx.slot0.sqrt_price_x96, -600, 600, 10**15)
    assert plan.amount0_min == owed0 * 9_950 // 10_000
    assert plan.amount1_min == owed1 * 9_950 // 10_000
    assert decoded.instructions()[0].decode()[:3] == (7, plan.amount0_min, plan.amount1_min)

    body = plan.to_dict()
    assert body["actions"] == ["BURN_POSITION", "TAKE_PAIR"]
    assert body["tokenId"] == "7"
    assert body["unlockData"] == "0x" + plan.unlock_data.hex()
