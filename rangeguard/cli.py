from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Callable
from decimal import Decimal, InvalidOperation
from functools import wraps
from typing import Any

import click
from loguru import logger

from rangeguard.core.config import (
    KeeperConfig,
    load_config,
    load_keeper_config,
)
from rangeguard.core.errors import InputValidationError, KeeperError, format_error
from rangeguard.core.utils.tick_math import sqrt_ratio_at_tick, tick_at_sqrt_ratio
from rangeguard.core.utils.uniswap_v4_actions import (
    build_pool_key,
    hook_data_bytes,
    pool_id,
)
from rangeguard.core.utils.units import to_raw_amount
from rangeguard.keeper.amounts import DEFAULT_BUFFER_BPS, DEFAULT_MAX_SPEND_BPS
from rangeguard.keeper.cooldown import CooldownGate, JsonFileStateStore
from rangeguard.keeper.planner import (
    DepositRequest,
    OperationPlan,
    PlanContext,
    plan_bootstrap,
    plan_close,
    plan_collect,
    plan_rebalance,
)
from rangeguard.keeper.pool_state import (
    PositionSnapshot,
    Slot0,
    encode_sqrt_ratio_x96,
    is_uint160,
    read_liquidity,
    read_position,
    read_slot0,
)
from rangeguard.keeper.position import range_health
from rangeguard.keeper.probe import format_probe_table, probe_pools
from rangeguard.keeper.quoter import (
    FixedPriceQuoter,
    NullQuoter,
    Quoter,
    V4Quoter,
    apply_bps_buffer,
    format_quote_price,
)
from rangeguard.keeper.report import (
    ReportDecision,
    RunReport,
    TokenInfo,
    create_run_id,
    render_summary,
    write_report,
)

_LOG_LEVELS = click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False)


def _handle_errors(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except KeeperError as exc:
            logger.error(format_error(exc))
            raise click.ClickException(str(exc)) from exc

    return wrapper


def _keeper_config() -> KeeperConfig:
    return load_keeper_config()


def _gate(cfg: KeeperConfig, state_path: str | None) -> CooldownGate:
    store = JsonFileStateStore(state_path or cfg.state_path)
    return CooldownGate(store, cfg.policy.cooldown_seconds)


def _emit(report: RunReport, *, as_json: bool, out: str | None) -> None:
    path = write_report(report, out)
    if as_json:
        click.echo(report.to_json())
        return
    click.echo(render_summary(report))
    click.echo(f"Report saved to {path}")


def pool_options(fn: Callable[..., Any]) -> Callable[..., Any]:
    options = [
        click.option("--currency0", required=True, help="Pool currency (either order)."),
        click.option("--currency1", required=True, help="Pool currency (either order)."),
        click.option("--fee", type=int, default=None, help="Pool fee (defaults to config)."),
        click.option("--tick-spacing", type=int, default=None),
        click.option("--hooks", default=None, help="Hooks address (defaults to config)."),
        click.option("--tick", type=int, default=None, help="Current pool tick."),
        click.option(
            "--sqrt-price-x96",
            type=int,
            default=None,
            help="Current sqrtPriceX96 (defaults to the ratio at --tick).",
        ),
        click.option(
            "--pool-price",
            default=None,
            help="Raw token1-per-token0 price, converted to sqrtPriceX96.",
        ),
        click.option(
            "--from-chain",
            is_flag=True,
            default=False,
            help="Read slot0 (and the position) from StateView/PositionManager.",
        ),
        click.option("--decimals0", type=int, default=18, show_default=True),
        click.option("--decimals1", type=int, default=18, show_default=True),
        click.option("--state-path", default=None, help="Cooldown state file."),
        click.option("--force", is_flag=True, default=False, help="Bypass cooldown/trigger."),
        click.option("--json", "as_json", is_flag=True, default=False),
        click.option("--out", default=None, help="Report path (default runs/...)."),
    ]
    for option in reversed(options):
        fn = option(fn)
    return fn


def deposit_options(fn: Callable[..., Any]) -> Callable[..., Any]:
    options = [
        click.option("--balance0", type=int, required=True, help="Vault token0 balance (raw)."),
        click.option("--balance1", type=int, required=True, help="Vault token1 balance (raw)."),
        click.option("--amount0", default=None, help="token0 amount (decimal units)."),
        click.option("--amount1", default=None, help="token1 amount (decimal units)."),
        click.option("--buffer-bps", type=int, default=DEFAULT_BUFFER_BPS, show_default=True),
        click.option(
            "--max-spend-bps", type=int, default=DEFAULT_MAX_SPEND_BPS, show_default=True
        ),
        click.option(
            "--price",
            default=None,
            help="Fixed token1-per-token0 raw price used for quotes.",
        ),
        click.option(
            "--rpc-quote",
            is_flag=True,
            default=False,
            help="Quote through the on-chain V4Quoter (needs quoter_address).",
        ),
    ]
    for option in reversed(options):
        fn = option(fn)
    return fn


def position_options(fn: Callable[..., Any]) -> Callable[..., Any]:
    options = [
        click.option("--token-id", type=int, required=True),
        click.option("--tick-lower", type=int, default=None),
        click.option("--tick-upper", type=int, default=None),
        click.option("--liquidity", type=int, default=0, show_default=True),
    ]
    for option in reversed(options):
        fn = option(fn)
    return fn


def _pool_key(cfg: KeeperConfig, opts: dict[str, Any]):
    fee = opts["fee"] if opts["fee"] is not None else cfg.pool_fee
    spacing = opts["tick_spacing"] if opts["tick_spacing"] is not None else cfg.pool_tick_spacing
    if fee is None or spacing is None:
        raise click.UsageError("--fee and --tick-spacing are required (or set them in config)")
    key = build_pool_key(
        currency_a=opts["currency0"],
        currency_b=opts["currency1"],
        fee=fee,
        tick_spacing=spacing,
        hooks=opts["hooks"] or cfg.pool_hooks,
    )
    if cfg.pool_id and pool_id(key) != cfg.pool_id:
        logger.warning(f"Derived pool id {pool_id(key)} differs from config {cfg.pool_id}")
    return key


async def _slot0(cfg: KeeperConfig, key, opts: dict[str, Any]) -> Slot0:
    if opts["from_chain"]:
        if not cfg.state_view_address:
            raise click.UsageError("--from-chain needs state_view_address in config")
        return await read_slot0(
            state_view_address=cfg.state_view_address,
            pool_id_=pool_id(key),
            rpc_url=cfg.rpc_url,
        )
    sqrt_price = opts["sqrt_price_x96"]
    if opts["pool_price"] is not None:
        if sqrt_price is not None:
            raise click.UsageError("Use either --sqrt-price-x96 or --pool-price, not both")
        sqrt_price = _sqrt_price_from_price(opts["pool_price"])
    if sqrt_price is not None and not is_uint160(sqrt_price):
        raise InputValidationError("sqrtPriceX96 exceeds uint160", sqrt_price_x96=sqrt_price)

    tick = opts["tick"]
    if tick is None:
        if sqrt_price is None:
            raise click.UsageError(
                "--tick is required unless --from-chain or a pool price is given"
            )
        tick = tick_at_sqrt_ratio(sqrt_price)
    elif sqrt_price is None:
        sqrt_price = sqrt_ratio_at_tick(tick)
    return Slot0(sqrt_price_x96=sqrt_price, tick=tick)


def _sqrt_price_from_price(price: str) -> int:
    try:
        value = Decimal(str(price).strip())
    except InvalidOperation as exc:
        raise InputValidationError("Invalid pool price", price=str(price)) from exc
    if not value.is_finite() or value <= 0:
        raise InputValidationError("Pool price must be positive", price=str(price))
    num, den = value.as_integer_ratio()
    return encode_sqrt_ratio_x96(num, den)


async def _position(cfg: KeeperConfig, key, opts: dict[str, Any]) -> PositionSnapshot:
    if opts["from_chain"]:
        if not cfg.position_manager_address:
            raise click.UsageError("--from-chain needs position_manager_address in config")
        return await read_position(
            position_manager_address=cfg.position_manager_address,
            token_id=opts["token_id"],
            rpc_url=cfg.rpc_url,
        )
    if opts["tick_lower"] is None or opts["tick_upper"] is None:
        raise click.UsageError("--tick-lower and --tick-upper are required")
    return PositionSnapshot(
        token_id=opts["token_id"],
        pool_key=key,
        tick_lower=opts["tick_lower"],
        tick_upper=opts["tick_upper"],
        liquidity=opts["liquidity"],
    )


def _quoter(cfg: KeeperConfig, key, opts: dict[str, Any]) -> Quoter:
    if opts["rpc_quote"]:
        if not cfg.quoter_address:
            raise click.UsageError("--rpc-quote needs quoter_address in config")
        return V4Quoter(quoter_address=cfg.quoter_address, pool_key=key, rpc_url=cfg.rpc_url)
    if opts["price"] is not None:
        return FixedPriceQuoter(key[0], key[1], opts["price"])
    return NullQuoter()


def _context(cfg: KeeperConfig, key, slot0: Slot0, opts: dict[str, Any]) -> PlanContext:
    return PlanContext(
        pool_key=key,
        slot0=slot0,
        owner=cfg.vault_address,
        policy=cfg.policy,
        token0_decimals=opts["decimals0"],
        token1_decimals=opts["decimals1"],
        deadline_seconds=cfg.default_deadline_seconds,
    )


def _deposit(opts: dict[str, Any]) -> DepositRequest:
    return DepositRequest(
        balance0=opts["balance0"],
        balance1=opts["balance1"],
        amount0_input=opts["amount0"],
        amount1_input=opts["amount1"],
        buffer_bps=opts["buffer_bps"],
        max_spend_bps=opts["max_spend_bps"],
    )


def _report(
    cfg: KeeperConfig,
    command: str,
    plan: OperationPlan,
    ctx: PlanContext,
    position: PositionSnapshot | None = None,
) -> RunReport:
    state: dict[str, Any] = {"tick": ctx.slot0.tick, "sqrtPriceX96": str(ctx.slot0.sqrt_price_x96)}
    if position is not None:
        state.update(
            {
                "tokenId": str(position.token_id),
                "tickLower": position.tick_lower,
                "tickUpper": position.tick_upper,
                "liquidity": str(position.liquidity),
            }
        )
    if plan.health is not None:
        state["health"] = plan.to_dict()["health"]
    return RunReport.from_plan(
        plan,
        command=command,
        chain_id=cfg.chain_id,
        policy=cfg.policy,
        addresses={
            "vault": cfg.vault_address,
            "positionManager": cfg.position_manager_address,
            "poolId": plan.pool_id,
            "token0": ctx.currency0,
            "token1": ctx.currency1,
            "quoter": cfg.quoter_address,
        },
        tokens={
            "token0": TokenInfo(address=ctx.currency0, decimals=ctx.token0_decimals),
            "token1": TokenInfo(address=ctx.currency1, decimals=ctx.token1_decimals),
        },
        state_before=state,
    )


@click.group(help="Plan Uniswap v4 liquidity actions for a RangeGuard vault.")
@click.option("--config", "config_path", default=None, help="Path to config.json.")
@click.option("--log-level", type=_LOG_LEVELS, default="INFO", show_default=True)
def cli(config_path: str | None, log_level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=str(log_level).upper())
    if config_path:
        try:
            load_config(config_path, require_exists=True)
        except FileNotFoundError as exc:
            raise click.ClickException(str(exc)) from exc


@cli.command("plan-bootstrap")
@pool_options
@deposit_options
@_handle_errors
def plan_bootstrap_cmd(**opts: Any) -> None:
    """Plan the first mint around the current tick."""
    cfg = _keeper_config()
    key = _pool_key(cfg, opts)

    async def run() -> tuple[OperationPlan, PlanContext]:
        ctx = _context(cfg, key, await _slot0(cfg, key, opts), opts)
        plan = await plan_bootstrap(
            ctx,
            _deposit(opts),
            _quoter(cfg, key, opts),
            gate=_gate(cfg, opts["state_path"]),
            force=opts["force"],
        )
        return plan, ctx

    plan, ctx = asyncio.run(run())
    _emit(_report(cfg, "bootstrap", plan, ctx), as_json=opts["as_json"], out=opts["out"])


@cli.command("plan-rebalance")
@pool_options
@position_options
@deposit_options
@_handle_errors
def plan_rebalance_cmd(**opts: Any) -> None:
    """Plan a re-centre when the position drifts out of range or near an edge."""
    cfg = _keeper_config()
    key = _pool_key(cfg, opts)

    async def run() -> tuple[OperationPlan, PlanContext, PositionSnapshot]:
        ctx = _context(cfg, key, await _slot0(cfg, key, opts), opts)
        position = await _position(cfg, key, opts)
        plan = await plan_rebalance(
            ctx,
            position,
            _deposit(opts),
            _quoter(cfg, key, opts),
            gate=_gate(cfg, opts["state_path"]),
            force=opts["force"],
        )
        return plan, ctx, position

    plan, ctx, position = asyncio.run(run())
    _emit(
        _report(cfg, "rebalance", plan, ctx, position),
        as_json=opts["as_json"],
        out=opts["out"],
    )


@cli.command("plan-collect")
@pool_options
@position_options
@click.option("--recipient", default=None, help="Defaults to the vault.")
@_handle_errors
def plan_collect_cmd(**opts: Any) -> None:
    """Plan a fee collection (zero-liquidity decrease + take pair)."""
    cfg = _keeper_config()
    key = _pool_key(cfg, opts)

    async def run() -> tuple[OperationPlan, PlanContext, PositionSnapshot]:
        ctx = _context(cfg, key, await _slot0(cfg, key, opts), opts)
        position = await _position(cfg, key, opts)
        plan = plan_collect(
            ctx,
            position,
            recipient=opts["recipient"],
            gate=_gate(cfg, opts["state_path"]),
            force=opts["force"],
        )
        return plan, ctx, position

    plan, ctx, position = asyncio.run(run())
    _emit(
        _report(cfg, "collect", plan, ctx, position),
        as_json=opts["as_json"],
        out=opts["out"],
    )


@cli.command("plan-close")
@pool_options
@position_options
@click.option("--recipient", default=None, help="Defaults to the vault.")
@_handle_errors
def plan_close_cmd(**opts: Any) -> None:
    """Plan burning the position and taking both currencies."""
    cfg = _keeper_config()
    key = _pool_key(cfg, opts)

    async def run() -> tuple[OperationPlan, PlanContext, PositionSnapshot]:
        ctx = _context(cfg, key, await _slot0(cfg, key, opts), opts)
        position = await _position(cfg, key, opts)
        plan = plan_close(
            ctx,
            position,
            recipient=opts["recipient"],
            gate=_gate(cfg, opts["state_path"]),
            force=opts["force"],
        )
        return plan, ctx, position

    plan, ctx, position = asyncio.run(run())
    _emit(
        _report(cfg, "close", plan, ctx, position),
        as_json=opts["as_json"],
        out=opts["out"],
    )


@cli.command("status")
@pool_options
@position_options
@_handle_errors
def status_cmd(**opts: Any) -> None:
    """Range health of the position plus the vault's cooldown."""
    cfg = _keeper_config()
    key = _pool_key(cfg, opts)

    async def run() -> tuple[Slot0, PositionSnapshot, int | None]:
        slot0 = await _slot0(cfg, key, opts)
        position = await _position(cfg, key, opts)
        liquidity = None
        if opts["from_chain"]:
            liquidity = await read_liquidity(
                state_view_address=cfg.state_view_address,
                pool_id_=pool_id(key),
                rpc_url=cfg.rpc_url,
            )
        return slot0, position, liquidity

    slot0, position, pool_liquidity = asyncio.run(run())
    health = range_health(
        slot0.tick,
        position.tick_lower,
        position.tick_upper,
        width_ticks=cfg.policy.width_ticks,
        edge_bps=cfg.policy.edge_bps,
    )
    gate = _gate(cfg, opts["state_path"])
    state: dict[str, Any] = {
        "tick": slot0.tick,
        "sqrtPriceX96": str(slot0.sqrt_price_x96),
        "tokenId": str(position.token_id),
        "tickLower": position.tick_lower,
        "tickUpper": position.tick_upper,
        "liquidity": str(position.liquidity),
        "health": {
            "inRange": health.in_range,
            "outOfRange": health.out_of_range,
            "nearEdge": health.near_edge,
            "healthBps": health.health_bps,
        },
        "cooldownRemainingSeconds": gate.remaining(cfg.vault_address),
    }
    if pool_liquidity is not None:
        state["poolLiquidity"] = str(pool_liquidity)
    report = RunReport(
        run_id=create_run_id(),
        command="status",
        chain_id=cfg.chain_id,
        addresses={"vault": cfg.vault_address, "poolId": pool_id(key)},
        policy=cfg.policy.model_dump(by_alias=True),
        state_before=state,
    )
    _emit(report, as_json=opts["as_json"], out=opts["out"])


@cli.command("quote")
@click.option("--currency0", required=True, help="Pool currency (either order).")
@click.option("--currency1", required=True, help="Pool currency (either order).")
@click.option("--fee", type=int, default=None, help="Pool fee (defaults to config).")
@click.option("--tick-spacing", type=int, default=None)
@click.option("--hooks", default=None, help="Hooks address (defaults to config).")
@click.option("--decimals0", type=int, default=18, show_default=True)
@click.option("--decimals1", type=int, default=18, show_default=True)
@click.option("--amount0", default=None, help="Exact token0 input (decimal units).")
@click.option("--amount1", default=None, help="Exact token1 input (decimal units).")
@click.option("--buffer-bps", type=int, default=0, show_default=True)
@click.option("--price", default=None, help="Fixed token1-per-token0 raw price.")
@click.option("--rpc-quote", is_flag=True, default=False, help="Use the on-chain V4Quoter.")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--out", default=None, help="Report path (default runs/...).")
@_handle_errors
def quote_cmd(**opts: Any) -> None:
    """Quote one currency against the other and show the buffered amount."""
    cfg = _keeper_config()
    key = _pool_key(cfg, opts)
    if (opts["amount0"] is None) == (opts["amount1"] is None):
        raise click.UsageError("Provide exactly one of --amount0 or --amount1")

    zero_for_one = opts["amount0"] is not None
    if zero_for_one:
        amount_in = to_raw_amount(opts["amount0"], opts["decimals0"])
        asset_in, asset_out = key[0], key[1]
        decimals_in, decimals_out = opts["decimals0"], opts["decimals1"]
    else:
        amount_in = to_raw_amount(opts["amount1"], opts["decimals1"])
        asset_in, asset_out = key[1], key[0]
        decimals_in, decimals_out = opts["decimals1"], opts["decimals0"]
    if amount_in <= 0:
        raise InputValidationError("Quote amount must be positive", amount=amount_in)

    quoter = _quoter(cfg, key, opts)
    hook_data = hook_data_bytes(cfg.policy.hook_data_hex)
    quoted = asyncio.run(quoter.quote(asset_in, asset_out, amount_in, hook_data))
    buffered = apply_bps_buffer(quoted, opts["buffer_bps"])
    price = format_quote_price(amount_in, quoted, decimals_in, decimals_out)
    logger.info(f"Quoted {amount_in} {asset_in} -> {quoted} {asset_out}")

    if zero_for_one:
        plan = {
            "direction": "token0->token1",
            "amount0": str(amount_in),
            "amount1Quoted": str(quoted),
            "amount1": str(buffered),
            "priceToken1PerToken0": price,
            "bufferBps": opts["buffer_bps"],
        }
    else:
        plan = {
            "direction": "token1->token0",
            "amount1": str(amount_in),
            "amount0Quoted": str(quoted),
            "amount0": str(buffered),
            "priceToken0PerToken1": price,
            "bufferBps": opts["buffer_bps"],
        }
    report = RunReport(
        run_id=create_run_id(),
        command="quote",
        chain_id=cfg.chain_id,
        addresses={
            "vault": cfg.vault_address,
            "poolId": pool_id(key),
            "token0": key[0],
            "token1": key[1],
            "quoter": cfg.quoter_address,
        },
        tokens={
            "token0": TokenInfo(address=key[0], decimals=opts["decimals0"]),
            "token1": TokenInfo(address=key[1], decimals=opts["decimals1"]),
        },
        policy=cfg.policy.model_dump(by_alias=True),
        decision=ReportDecision(action="execute", reason="quote"),
        plan=plan,
    )
    _emit(report, as_json=opts["as_json"], out=opts["out"])


@cli.command("probe-pools")
@click.option("--currency0", required=True, help="Pool currency (either order).")
@click.option("--currency1", required=True, help="Pool currency (either order).")
@click.option("--hooks", default=None, help="Hooks address (defaults to config).")
@click.option("--limit", type=int, default=None, help="Stop after this many healthy pools.")
@click.option("--prefer-fee", type=int, default=None, help="Sort results nearest this fee.")
@click.option("--json", "as_json", is_flag=True, default=False)
@_handle_errors
def probe_pools_cmd(
    currency0: str,
    currency1: str,
    hooks: str | None,
    limit: int | None,
    prefer_fee: int | None,
    as_json: bool,
) -> None:
    """Look for initialized pools of a pair across the common fee tiers."""
    cfg = _keeper_config()
    if not cfg.state_view_address:
        raise click.UsageError("probe-pools needs state_view_address in config")
    results = asyncio.run(
        probe_pools(
            currency0,
            currency1,
            state_view_address=cfg.state_view_address,
            rpc_url=cfg.rpc_url,
            hooks=hooks or cfg.pool_hooks,
            limit=limit,
            prefer_fee=prefer_fee,
        )
    )
    if as_json:
        click.echo(json.dumps({"results": [r.to_dict() for r in results]}, indent=2))
        return
    click.echo(format_probe_table(results))


@cli.group("cooldown", help="Inspect or reset the vault cooldown state.")
def cooldown_group() -> None:
    pass


@cooldown_group.command("show")
@click.option("--state-path", default=None)
@_handle_errors
def cooldown_show(state_path: str | None) -> None:
    cfg = _keeper_config()
    gate = _gate(cfg, state_path)
    last = gate.last_action_at(cfg.vault_address)
    click.echo(
        f"vault={cfg.vault_address} lastActionAt={last if last is not None else 'never'} "
        f"cooldown={gate.cooldown_seconds}s remaining={gate.remaining(cfg.vault_address)}s"
    )


@cooldown_group.command("record")
@click.option("--state-path", default=None)
@_handle_errors
def cooldown_record(state_path: str | None) -> None:
    """Mark an action as executed now (after a successful transaction)."""
    cfg = _keeper_config()
    _gate(cfg, state_path).record_action(cfg.vault_address)
    click.echo(f"Recorded action for {cfg.vault_address}")


@cooldown_group.command("clear")
@click.option("--state-path", default=None)
@click.option("--all", "clear_all", is_flag=True, default=False)
@_handle_errors
def cooldown_clear(state_path: str | None, clear_all: bool) -> None:
    cfg = _keeper_config()
    _gate(cfg, state_path).clear(None if clear_all else cfg.vault_address)
    click.echo("Cooldown cleared")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
