"""Uniswap v4 PositionManager ``unlockData`` assembly.

``modifyLiquidities(unlockData, deadline)`` takes ``abi.encode(bytes actions,
bytes[] params)`` where ``actions`` holds one opcode byte per step and
``params[i]`` is the ABI-encoded argument tuple of ``actions[i]``. Steps run in
order inside a single unlock callback, so later steps rely on the deltas
produced by earlier ones.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from enum import IntEnum
from typing import Any

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak, to_bytes, to_checksum_address

from rangeguard.core.constants import MAX_TICK, MAX_UINT128, MIN_TICK
from rangeguard.core.errors import (
    InputValidationError,
    NumericBoundError,
    ValueExceedsUint128,
)

PoolKeyTuple = tuple[str, str, int, int, str]

_POOL_KEY_TYPE = "(address,address,uint24,int24,address)"
_MAX_UINT256 = (1 << 256) - 1


# v4-periphery/src/libraries/Actions.sol
class Action(IntEnum):
    DECREASE_LIQUIDITY = 0x01
    MINT_POSITION = 0x02
    BURN_POSITION = 0x03
    SETTLE = 0x0B
    SETTLE_PAIR = 0x0D
    TAKE = 0x0E
    TAKE_PAIR = 0x11
    CLOSE_CURRENCY = 0x12


ACTION_PARAM_TYPES: dict[Action, list[str]] = {
    Action.DECREASE_LIQUIDITY: ["uint256", "uint256", "uint128", "uint128", "bytes"],
    Action.MINT_POSITION: [
        _POOL_KEY_TYPE,
        "int24",
        "int24",
        "uint256",
        "uint128",
        "uint128",
        "address",
        "bytes",
    ],
    Action.BURN_POSITION: ["uint256", "uint128", "uint128", "bytes"],
    Action.SETTLE: ["address", "uint256", "bool"],
    Action.SETTLE_PAIR: ["address", "address"],
    Action.TAKE: ["address", "address", "uint256"],
    Action.TAKE_PAIR: ["address", "address", "address"],
    Action.CLOSE_CURRENCY: ["address"],
}


def sort_currencies(currency_a: str, currency_b: str) -> tuple[str, str]:
    a = to_checksum_address(currency_a)
    b = to_checksum_address(currency_b)
    return (a, b) if int(a, 16) < int(b, 16) else (b, a)


def build_pool_key(
    *,
    currency_a: str,
    currency_b: str,
    fee: int,
    tick_spacing: int,
    hooks: str,
) -> PoolKeyTuple:
    c0, c1 = sort_currencies(currency_a, currency_b)
    return (c0, c1, int(fee), int(tick_spacing), to_checksum_address(hooks))


def pool_id(key: PoolKeyTuple) -> str:
    encoded = abi_encode(
        ["address", "address", "uint24", "int24", "address"],
        list(_normalize_pool_key(key)),
    )
    return "0x" + keccak(encoded).hex()


def _normalize_pool_key(key: PoolKeyTuple) -> PoolKeyTuple:
    c0, c1, fee, tick_spacing, hooks = key
    return (
        to_checksum_address(c0),
        to_checksum_address(c1),
        int(fee),
        int(tick_spacing),
        to_checksum_address(hooks),
    )


def hook_data_bytes(hook_data: bytes | str | None) -> bytes:
    if hook_data is None:
        return b""
    if isinstance(hook_data, bytes):
        return hook_data
    text = str(hook_data).strip()
    if not text.startswith(("0x", "0X")):
        raise InputValidationError("hookData must be 0x-prefixed hex", hook_data=text)
    try:
        return to_bytes(hexstr=text)
    except ValueError as exc:
        raise InputValidationError("hookData must be hex", hook_data=text) from exc


def require_uint128(name: str, value: int) -> int:
    value = int(value)
    if value < 0:
        raise NumericBoundError(f"{name} must be non-negative", field=name, value=value)
    if value > MAX_UINT128:
        raise ValueExceedsUint128(
            f"{name} exceeds uint128", field=name, value=value, max=MAX_UINT128
        )
    return value


def require_uint256(name: str, value: int) -> int:
    value = int(value)
    if value < 0 or value > _MAX_UINT256:
        raise NumericBoundError(f"{name} does not fit uint256", field=name, value=value)
    return value


def _require_tick(name: str, tick: int) -> int:
    tick = int(tick)
    if tick < MIN_TICK or tick > MAX_TICK:
        raise InputValidationError(f"{name} out of range", field=name, tick=tick)
    return tick


def encode_actions_router_params(*, actions: bytes, params: Sequence[bytes]) -> bytes:
    """Equivalent to Solidity ``abi.encode(actions, params)``."""
    return abi_encode(["bytes", "bytes[]"], [bytes(actions), list(params)])


def encode_decrease_liquidity_params(
    *,
    token_id: int,
    liquidity: int,
    amount0_min: int,
    amount1_min: int,
    hook_data: bytes | str | None = b"",
) -> bytes:
    return abi_encode(
        ACTION_PARAM_TYPES[Action.DECREASE_LIQUIDITY],
        [
            require_uint256("tokenId", token_id),
            require_uint128("liquidity", liquidity),
            require_uint128("amount0Min", amount0_min),
            require_uint128("amount1Min", amount1_min),
            hook_data_bytes(hook_data),
        ],
    )


def encode_mint_position_params(
    *,
    key: PoolKeyTuple,
    tick_lower: int,
    tick_upper: int,
    liquidity: int,
    amount0_max: int,
    amount1_max: int,
    owner: str,
    hook_data: bytes | str | None = b"",
) -> bytes:
    tick_lower = _require_tick("tickLower", tick_lower)
    tick_upper = _require_tick("tickUpper", tick_upper)
    if tick_lower >= tick_upper:
        raise InputValidationError(
            "tickLower must be below tickUpper",
            tick_lower=tick_lower,
            tick_upper=tick_upper,
        )
    return abi_encode(
        ACTION_PARAM_TYPES[Action.MINT_POSITION],
        [
            _normalize_pool_key(key),
            tick_lower,
            tick_upper,
            # declared uint256 but cast to uint128 by the position manager
            require_uint128("liquidity", liquidity),
            require_uint128("amount0Max", amount0_max),
            require_uint128("amount1Max", amount1_max),
            to_checksum_address(owner),
            hook_data_bytes(hook_data),
        ],
    )


def encode_burn_position_params(
    *,
    token_id: int,
    amount0_min: int,
    amount1_min: int,
    hook_data: bytes | str | None = b"",
) -> bytes:
    return abi_encode(
        ACTION_PARAM_TYPES[Action.BURN_POSITION],
        [
            require_uint256("tokenId", token_id),
            require_uint128("amount0Min", amount0_min),
            require_uint128("amount1Min", amount1_min),
            hook_data_bytes(hook_data),
        ],
    )


def encode_settle_params(*, currency: str, amount: int, payer_is_user: bool) -> bytes:
    return abi_encode(
        ACTION_PARAM_TYPES[Action.SETTLE],
        [to_checksum_address(currency), require_uint256("amount", amount), bool(payer_is_user)],
    )


def encode_settle_pair_params(*, currency0: str, currency1: str) -> bytes:
    return abi_encode(
        ACTION_PARAM_TYPES[Action.SETTLE_PAIR],
        [to_checksum_address(currency0), to_checksum_address(currency1)],
    )


def encode_take_params(*, currency: str, recipient: str, amount: int) -> bytes:
    return abi_encode(
        ACTION_PARAM_TYPES[Action.TAKE],
        [
            to_checksum_address(currency),
            to_checksum_address(recipient),
            require_uint256("amount", amount),
        ],
    )


def encode_take_pair_params(*, currency0: str, currency1: str, recipient: str) -> bytes:
    return abi_encode(
        ACTION_PARAM_TYPES[Action.TAKE_PAIR],
        [
            to_checksum_address(currency0),
            to_checksum_address(currency1),
            to_checksum_address(recipient),
        ],
    )


def encode_close_currency_params(*, currency: str) -> bytes:
    return abi_encode(
        ACTION_PARAM_TYPES[Action.CLOSE_CURRENCY], [to_checksum_address(currency)]
    )


def to_action(opcode: int) -> Action:
    try:
        return Action(opcode)
    except ValueError as exc:
        raise InputValidationError("Unknown action opcode", opcode=opcode) from exc


def decode_params(opcode: int, params: bytes) -> tuple[Any, ...]:
    action = to_action(opcode)
    try:
        return tuple(abi_decode(ACTION_PARAM_TYPES[action], bytes(params)))
    except DecodingError as exc:
        raise InputValidationError(
            "Malformed action params", action=action.name, error=str(exc)
        ) from exc


@dataclass(frozen=True)
class Instruction:
    opcode: Action
    params: bytes

    def decode(self) -> tuple[Any, ...]:
        return decode_params(self.opcode, self.params)


@dataclass(frozen=True)
class InstructionList:
    actions: bytes
    params: tuple[bytes, ...]

    def __post_init__(self) -> None:
        if len(self.actions) != len(self.params):
            raise InputValidationError(
                "actions and params length mismatch",
                actions=len(self.actions),
                params=len(self.params),
            )

    @property
    def opcodes(self) -> list[int]:
        return list(self.actions)

    def instructions(self) -> list[Instruction]:
        return [
            Instruction(opcode=to_action(op), params=p)
            for op, p in zip(self.actions, self.params, strict=True)
        ]

    def encode(self) -> bytes:
        return encode_actions_router_params(actions=self.actions, params=self.params)

    @classmethod
    def decode(cls, unlock_data: bytes) -> InstructionList:
        """Parse ``unlockData``; every params block must match its opcode's ABI shape."""
        try:
            actions, params = abi_decode(["bytes", "bytes[]"], bytes(unlock_data))
        except DecodingError as exc:
            raise InputValidationError("Malformed unlockData", error=str(exc)) from exc
        decoded = cls(actions=bytes(actions), params=tuple(bytes(p) for p in params))
        for instruction in decoded.instructions():
            instruction.decode()
        return decoded


def decode_unlock_data(unlock_data: bytes) -> InstructionList:
    return InstructionList.decode(unlock_data)


class ActionsPlanner:
    """Accumulates actions in execution order.

    Each ``add_*`` validates numeric widths before encoding so an oversized
    value never reaches the position manager.
    """

    def __init__(self) -> None:
        self._instructions: list[Instruction] = []

    def __len__(self) -> int:
        return len(self._instructions)

    def add(self, action: Action, params: bytes) -> ActionsPlanner:
        self._instructions.append(Instruction(opcode=Action(action), params=bytes(params)))
        return self

    def add_decrease(
        self,
        token_id: int,
        liquidity: int,
        amount0_min: int,
        amount1_min: int,
        hook_data: bytes | str | None = b"",
    ) -> ActionsPlanner:
        return self.add(
            Action.DECREASE_LIQUIDITY,
            encode_decrease_liquidity_params(
                token_id=token_id,
                liquidity=liquidity,
                amount0_min=amount0_min,
                amount1_min=amount1_min,
                hook_data=hook_data,
            ),
        )

    def add_mint(
        self,
        key: PoolKeyTuple,
        tick_lower: int,
        tick_upper: int,
        liquidity: int,
        amount0_max: int,
        amount1_max: int,
        owner: str,
        hook_data: bytes | str | None = b"",
    ) -> ActionsPlanner:
        return self.add(
            Action.MINT_POSITION,
            encode_mint_position_params(
                key=key,
                tick_lower=tick_lower,
                tick_upper=tick_upper,
                liquidity=liquidity,
                amount0_max=amount0_max,
                amount1_max=amount1_max,
                owner=owner,
                hook_data=hook_data,
            ),
        )

    def add_burn(
        self,
        token_id: int,
        amount0_min: int,
        amount1_min: int,
        hook_data: bytes | str | None = b"",
    ) -> ActionsPlanner:
        return self.add(
            Action.BURN_POSITION,
            encode_burn_position_params(
                token_id=token_id,
                amount0_min=amount0_min,
                amount1_min=amount1_min,
                hook_data=hook_data,
            ),
        )

    def add_settle(self, currency: str, amount: int, payer_is_user: bool) -> ActionsPlanner:
        return self.add(
            Action.SETTLE,
            encode_settle_params(currency=currency, amount=amount, payer_is_user=payer_is_user),
        )

    def add_settle_pair(self, currency0: str, currency1: str) -> ActionsPlanner:
        return self.add(
            Action.SETTLE_PAIR,
            encode_settle_pair_params(currency0=currency0, currency1=currency1),
        )

    def add_take(self, currency: str, recipient: str, amount: int) -> ActionsPlanner:
        return self.add(
            Action.TAKE,
            encode_take_params(currency=currency, recipient=recipient, amount=amount),
        )

    def add_take_pair(self, currency0: str, currency1: str, recipient: str) -> ActionsPlanner:
        return self.add(
            Action.TAKE_PAIR,
            encode_take_pair_params(
                currency0=currency0, currency1=currency1, recipient=recipient
            ),
        )

    def add_close_currency(self, currency: str) -> ActionsPlanner:
        return self.add(Action.CLOSE_CURRENCY, encode_close_currency_params(currency=currency))

    def build(self) -> InstructionList:
        return InstructionList(
            actions=bytes(int(i.opcode) for i in self._instructions),
            params=tuple(i.params for i in self._instructions),
        )

    def finalize(self) -> bytes:
        return self.build().encode()


def build_bootstrap_unlock_data(
    *,
    key: PoolKeyTuple,
    tick_lower: int,
    tick_upper: int,
    liquidity: int,
    amount0_max: int,
    amount1_max: int,
    owner: str,
    hook_data: bytes | str | None = b"",
) -> InstructionList:
    return (
        ActionsPlanner()
        .add_mint(key, tick_lower, tick_upper, liquidity, amount0_max, amount1_max, owner, hook_data)
        .add_settle_pair(key[0], key[1])
        .build()
    )


def build_collect_unlock_data(
    *,
    token_id: int,
    currency0: str,
    currency1: str,
    recipient: str,
    hook_data: bytes | str | None = b"",
) -> InstructionList:
    # zero-liquidity decrease only accrues fees into the delta
    return (
        ActionsPlanner()
        .add_decrease(token_id, 0, 0, 0, hook_data)
        .add_take_pair(currency0, currency1, recipient)
        .build()
    )


def build_rebalance_unlock_data(
    *,
    key: PoolKeyTuple,
    old_token_id: int,
    old_liquidity: int,
    amount0_min: int,
    amount1_min: int,
    new_tick_lower: int,
    new_tick_upper: int,
    new_liquidity: int,
    amount0_max: int,
    amount1_max: int,
    owner: str,
    hook_data: bytes | str | None = b"",
) -> InstructionList:
    return (
        ActionsPlanner()
        .add_decrease(old_token_id, old_liquidity, amount0_min, amount1_min, hook_data)
        .add_mint(
            key,
            new_tick_lower,
            new_tick_upper,
            new_liquidity,
            amount0_max,
            amount1_max,
            owner,
            hook_data,
        )
        .add_close_currency(key[0])
        .add_close_currency(key[1])
        .build()
    )


def build_burn_unlock_data(
    *,
    token_id: int,
    amount0_min: int,
    amount1_min: int,
    currency0: str,
    currency1: str,
    recipient: str,
    hook_data: bytes | str | None = b"",
) -> InstructionList:
    return (
        ActionsPlanner()
        .add_burn(token_id, amount0_min, amount1_min, hook_data)
        .add_take_pair(currency0, currency1, recipient)
        .build()
    )
