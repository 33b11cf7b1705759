"""Pool identity and on-chain snapshots (StateView / PositionManager reads)."""

from __future__ import annotations

import math
from dataclasses import dataclass

from eth_utils import to_checksum_address
from loguru import logger

from rangeguard.core.constants import MAX_UINT160
from rangeguard.core.constants.uniswap_v4_abi import (
    POSITION_MANAGER_ABI,
    STATE_VIEW_ABI,
)
from rangeguard.core.errors import InputValidationError
from rangeguard.core.utils.uniswap_v4_actions import (
    PoolKeyTuple,
    build_pool_key,
    pool_id,
    sort_currencies,
)
from rangeguard.core.utils.web3 import web3_from_rpc_url

__all__ = [
    "PositionSnapshot",
    "Slot0",
    "build_pool_key",
    "decode_position_info",
    "encode_sqrt_ratio_x96",
    "is_pool_initialized",
    "is_tick_near_bounds",
    "is_uint160",
    "pool_id",
    "read_liquidity",
    "read_position",
    "read_slot0",
    "sort_currencies",
]

# slot0 ticks this close to the global bound mean "never initialized" in practice
UNINITIALIZED_TICK_THRESHOLD = 887270
NEAR_BOUNDS_TICK_THRESHOLD = 885000


@dataclass(frozen=True)
class Slot0:
    sqrt_price_x96: int
    tick: int
    protocol_fee: int = 0
    lp_fee: int = 0


@dataclass(frozen=True)
class PositionSnapshot:
    token_id: int
    pool_key: PoolKeyTuple
    tick_lower: int
    tick_upper: int
    liquidity: int


def is_pool_initialized(slot0: Slot0) -> bool:
    if slot0.sqrt_price_x96 == 0:
        return False
    return abs(slot0.tick) < UNINITIALIZED_TICK_THRESHOLD


def is_tick_near_bounds(tick: int) -> bool:
    return abs(int(tick)) >= NEAR_BOUNDS_TICK_THRESHOLD


def is_uint160(value: int) -> bool:
    return 0 <= int(value) <= MAX_UINT160


def encode_sqrt_ratio_x96(amount1: int, amount0: int) -> int:
    """``floor(sqrt(amount1 / amount0) * 2**96)`` computed on integers."""
    amount1 = int(amount1)
    amount0 = int(amount0)
    if amount0 <= 0 or amount1 < 0:
        raise InputValidationError(
            "encode_sqrt_ratio_x96 needs amount0 > 0 and amount1 >= 0",
            amount0=amount0,
            amount1=amount1,
        )
    return math.isqrt((amount1 << 192) // amount0)


def _int24(raw: int) -> int:
    raw &= 0xFFFFFF
    return raw - (1 << 24) if raw & 0x800000 else raw


def decode_position_info(info: int) -> tuple[int, int]:
    """Unpack ``(tick_lower, tick_upper)`` from a packed v4 PositionInfo word."""
    info = int(info)
    return _int24(info >> 8), _int24(info >> 32)


async def read_slot0(
    *, state_view_address: str, pool_id_: str, rpc_url: str | None = None
) -> Slot0:
    async with web3_from_rpc_url(rpc_url) as w3:
        view = w3.eth.contract(
            address=to_checksum_address(state_view_address), abi=STATE_VIEW_ABI
        )
        sqrt_price_x96, tick, protocol_fee, lp_fee = await view.functions.getSlot0(
            pool_id_
        ).call(block_identifier="latest")
    slot0 = Slot0(
        sqrt_price_x96=int(sqrt_price_x96),
        tick=int(tick),
        protocol_fee=int(protocol_fee),
        lp_fee=int(lp_fee),
    )
    if not is_pool_initialized(slot0):
        logger.warning(f"Pool {pool_id_} looks uninitialized (tick={slot0.tick})")
    return slot0


async def read_liquidity(
    *, state_view_address: str, pool_id_: str, rpc_url: str | None = None
) -> int:
    async with web3_from_rpc_url(rpc_url) as w3:
        view = w3.eth.contract(
            address=to_checksum_address(state_view_address), abi=STATE_VIEW_ABI
        )
        liquidity = await view.functions.getLiquidity(pool_id_).call(
            block_identifier="latest"
        )
    return int(liquidity)


async def read_position(
    *, position_manager_address: str, token_id: int, rpc_url: str | None = None
) -> PositionSnapshot:
    async with web3_from_rpc_url(rpc_url) as w3:
        pm = w3.eth.contract(
            address=to_checksum_address(position_manager_address),
            abi=POSITION_MANAGER_ABI,
        )
        pool_key, info = await pm.functions.getPoolAndPositionInfo(int(token_id)).call(
            block_identifier="latest"
        )
        liquidity = await pm.functions.getPositionLiquidity(int(token_id)).call(
            block_identifier="latest"
        )
    c0, c1, fee, tick_spacing, hooks = pool_key
    tick_lower, tick_upper = decode_position_info(info)
    return PositionSnapshot(
        token_id=int(token_id),
        pool_key=(
            to_checksum_address(c0),
            to_checksum_address(c1),
            int(fee),
            int(tick_spacing),
            to_checksum_address(hooks),
        ),
        tick_lower=tick_lower,
        tick_upper=tick_upper,
        liquidity=int(liquidity),
    )
