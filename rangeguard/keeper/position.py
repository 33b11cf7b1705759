from __future__ import annotations

from dataclasses import dataclass

from rangeguard.core.constants import BPS_DENOMINATOR
from rangeguard.core.config import PolicyConfig
from rangeguard.core.errors import InputValidationError


@dataclass(frozen=True)
class RangeHealth:
    tick: int
    lower: int
    upper: int
    edge_threshold_ticks: int
    in_range: bool
    out_of_range: bool
    near_edge: bool
    health_bps: int


def edge_threshold_ticks(width_ticks: int, edge_bps: int) -> int:
    return max(1, (int(width_ticks) * int(edge_bps)) // BPS_DENOMINATOR)


def range_health(
    tick: int, lower: int, upper: int, *, width_ticks: int, edge_bps: int
) -> RangeHealth:
    """Where ``tick`` sits inside ``[lower, upper]``.

    ``in_range`` is strict on both sides. ``health_bps`` is the distance to
    the nearest edge relative to the position width (5000 at the centre, 0
    at or beyond an edge).
    """
    if upper <= lower:
        raise InputValidationError(
            "Position upper tick must exceed lower tick", lower=lower, upper=upper
        )
    threshold = edge_threshold_ticks(width_ticks, edge_bps)
    in_range = lower < tick < upper
    near_edge = tick <= lower + threshold or tick >= upper - threshold
    if in_range:
        width = upper - lower
        distance = min(tick - lower, upper - tick)
        health_bps = max(0, min(BPS_DENOMINATOR, (distance * BPS_DENOMINATOR) // width))
    else:
        health_bps = 0
    return RangeHealth(
        tick=tick,
        lower=lower,
        upper=upper,
        edge_threshold_ticks=threshold,
        in_range=in_range,
        out_of_range=not in_range,
        near_edge=near_edge,
        health_bps=health_bps,
    )


def should_rebalance(health: RangeHealth, policy: PolicyConfig) -> bool:
    return (policy.rebalance_if_out_of_range and health.out_of_range) or (
        policy.rebalance_if_near_edge and health.near_edge
    )
