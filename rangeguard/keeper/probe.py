"""Scan the fee / tick-spacing grid for initialized pools of a currency pair."""

from __future__ import annotations

import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal

from loguru import logger
from web3.exceptions import BadFunctionCallOutput

from rangeguard.core.constants import ZERO_ADDRESS
from rangeguard.core.errors import format_error
from rangeguard.keeper.pool_state import (
    Slot0,
    build_pool_key,
    is_pool_initialized,
    is_tick_near_bounds,
    pool_id,
    read_slot0,
)

PROBE_FEES = (500, 3000, 10000)
PROBE_TICK_SPACINGS = (10, 60, 200)

ProbeStatus = Literal["initialized", "uninitialized", "no-data", "error"]
Slot0Reader = Callable[..., Awaitable[Slot0]]

_NO_DATA_RE = re.compile(r"no data|return data b''|\"0x\"\)", re.IGNORECASE)


@dataclass(frozen=True)
class ProbeResult:
    fee: int
    tick_spacing: int
    hooks: str
    pool_id: str
    status: ProbeStatus
    tick: int | None = None
    near_bounds: bool = False
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "fee": self.fee,
            "tickSpacing": self.tick_spacing,
            "hooks": self.hooks,
            "poolId": self.pool_id,
            "status": self.status,
            "tick": self.tick,
            "nearBounds": self.near_bounds,
            "reason": self.reason,
        }


def is_no_data_error(exc: BaseException) -> bool:
    if isinstance(exc, BadFunctionCallOutput):
        return True
    return bool(_NO_DATA_RE.search(str(exc)))


def short_hex(value: str, head: int = 6, tail: int = 4) -> str:
    if len(value) <= head + tail:
        return value
    return f"{value[:head]}...{value[-tail:]}"


def format_probe_table(results: list[ProbeResult]) -> str:
    headers = ["fee", "spacing", "hooks", "poolId", "status", "tick", "sanity"]
    rows = [
        [
            str(r.fee),
            str(r.tick_spacing),
            short_hex(r.hooks),
            short_hex(r.pool_id),
            r.status,
            str(r.tick) if r.tick is not None else "-",
            "near-bounds" if r.near_bounds else "ok",
        ]
        for r in results
    ]
    widths = [
        max([len(h), *(len(row[i]) for row in rows)]) for i, h in enumerate(headers)
    ]

    def fmt(row: list[str]) -> str:
        return " | ".join(cell.ljust(widths[i]) for i, cell in enumerate(row)).rstrip()

    divider = "-|-".join("-" * w for w in widths)
    return "\n".join([fmt(headers), divider, *(fmt(row) for row in rows)])


async def _probe_one(
    key, *, state_view_address: str, rpc_url: str | None, reader: Slot0Reader
) -> ProbeResult:
    pid = pool_id(key)
    base = {"fee": key[2], "tick_spacing": key[3], "hooks": key[4], "pool_id": pid}
    try:
        slot0 = await reader(
            state_view_address=state_view_address, pool_id_=pid, rpc_url=rpc_url
        )
    except Exception as exc:
        if is_no_data_error(exc):
            return ProbeResult(status="no-data", reason="returned no data", **base)
        logger.debug(f"getSlot0 failed for {pid}: {format_error(exc)}")
        return ProbeResult(status="error", reason=format_error(exc), **base)

    if not is_pool_initialized(slot0):
        reason = "sqrtPriceX96=0" if slot0.sqrt_price_x96 == 0 else "tick at global bound"
        return ProbeResult(status="uninitialized", tick=slot0.tick, reason=reason, **base)
    return ProbeResult(
        status="initialized",
        tick=slot0.tick,
        near_bounds=is_tick_near_bounds(slot0.tick),
        **base,
    )


async def probe_pools(
    currency_a: str,
    currency_b: str,
    *,
    state_view_address: str,
    rpc_url: str | None = None,
    hooks: str = ZERO_ADDRESS,
    limit: int | None = None,
    prefer_fee: int | None = None,
    reader: Slot0Reader | None = None,
) -> list[ProbeResult]:
    """Read slot0 for every fee/spacing pair.

    Stops once ``limit`` healthy pools (initialized, not near the bounds) are
    found. ``prefer_fee`` orders results by distance from that fee.
    """
    reader = reader or read_slot0
    results: list[ProbeResult] = []
    healthy = 0
    for fee in PROBE_FEES:
        for spacing in PROBE_TICK_SPACINGS:
            key = build_pool_key(
                currency_a=currency_a,
                currency_b=currency_b,
                fee=fee,
                tick_spacing=spacing,
                hooks=hooks,
            )
            result = await _probe_one(
                key, state_view_address=state_view_address, rpc_url=rpc_url, reader=reader
            )
            results.append(result)
            if result.status == "initialized" and not result.near_bounds:
                healthy += 1
                if limit and healthy >= limit:
                    break
        if limit and healthy >= limit:
            break

    if prefer_fee is not None:
        results.sort(key=lambda r: abs(r.fee - prefer_fee))
    return results
