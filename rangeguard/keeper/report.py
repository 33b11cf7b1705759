"""Run reports: one JSON document per CLI invocation under ``runs/``."""

from __future__ import annotations

import json
import secrets
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from rangeguard.core.config import PolicyConfig
from rangeguard.core.utils.units import format_units
from rangeguard.keeper.planner import OperationPlan


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TokenInfo(_CamelModel):
    address: str
    decimals: int


class ReportDecision(_CamelModel):
    action: Literal["execute", "skip"]
    reason: str


class RunReport(_CamelModel):
    run_id: str
    command: str
    created_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    chain_id: int
    addresses: dict[str, str | None] = {}
    tokens: dict[str, TokenInfo] = {}
    policy: dict[str, Any] = {}
    decision: ReportDecision | None = None
    state_before: dict[str, Any] | None = None
    plan: dict[str, Any] | None = None
    warnings: list[str] = []
    report_path: str | None = None

    @classmethod
    def from_plan(
        cls,
        plan: OperationPlan,
        *,
        command: str,
        chain_id: int,
        policy: PolicyConfig,
        addresses: dict[str, str | None] | None = None,
        tokens: dict[str, TokenInfo] | None = None,
        state_before: dict[str, Any] | None = None,
        run_id: str | None = None,
    ) -> RunReport:
        return cls(
            run_id=run_id or create_run_id(),
            command=command,
            chain_id=chain_id,
            addresses=addresses or {},
            tokens=tokens or {},
            policy=policy.model_dump(by_alias=True),
            decision=ReportDecision(
                action=plan.decision.action, reason=plan.decision.reason
            ),
            state_before=state_before,
            plan=plan.to_dict(),
            warnings=list(plan.warnings),
        )

    def to_json(self) -> str:
        return json.dumps(
            self.model_dump(mode="json", by_alias=True, exclude_none=True),
            indent=2,
            default=str,
        )


def create_run_id() -> str:
    return f"{int(time.time() * 1000)}_{secrets.token_hex(3)}"


def report_path(command: str, run_id: str, out: str | Path | None = None) -> Path:
    if out is not None:
        p = Path(out).expanduser()
        return p if p.is_absolute() else Path.cwd() / p
    stamp = datetime.now(UTC).isoformat().replace(":", "-").replace(".", "-")
    return Path.cwd() / "runs" / f"{stamp}_{command}_{run_id}.json"


def write_report(report: RunReport, out: str | Path | None = None) -> Path:
    path = report_path(report.command, report.run_id, out)
    path.parent.mkdir(parents=True, exist_ok=True)
    report.report_path = str(path)
    path.write_text(report.to_json())
    return path


def _fmt(value: Any) -> str:
    return "n/a" if value is None else str(value)


def _fmt_amount(raw: Any, token: TokenInfo | None) -> str:
    if raw is None:
        return "n/a"
    if token is None:
        return str(raw)
    return format_units(int(raw), token.decimals)


def render_summary(report: RunReport) -> str:
    lines = [
        f"Run {report.command} ({report.run_id})",
        f"Network: chainId {report.chain_id}",
    ]
    if report.addresses:
        lines.append(
            f"Vault: {_fmt(report.addresses.get('vault'))} | "
            f"PositionManager: {_fmt(report.addresses.get('positionManager'))}"
        )
        if report.addresses.get("poolId"):
            lines.append(f"PoolId: {report.addresses['poolId']}")

    before = report.state_before
    if before:
        lines.append(f"Pool tick: {_fmt(before.get('tick'))}")
        if before.get("tickLower") is not None:
            lines.append(
                f"Position: {_fmt(before.get('tokenId'))} "
                f"[{before['tickLower']}, {before.get('tickUpper')}]"
            )
        health = before.get("health")
        if health:
            lines.append(
                f"Range: inRange={health['inRange']} outOfRange={health['outOfRange']} "
                f"nearEdge={health['nearEdge']} healthBps={health['healthBps']}"
            )

    if report.policy:
        p = report.policy
        lines.append(
            f"Policy: width={p.get('widthTicks')}, edgeBps={p.get('edgeBps')}, "
            f"cooldown={p.get('cooldownSeconds')}s, maxSlipBps={p.get('maxSlippageBps')}"
        )

    if report.decision:
        lines.append(f"Decision: {report.decision.action} ({report.decision.reason})")

    plan = report.plan
    if plan and plan.get("direction"):
        out_side = "1" if plan["direction"] == "token0->token1" else "0"
        in_side = "0" if out_side == "1" else "1"
        quoted = _fmt_amount(
            plan.get(f"amount{out_side}Quoted"), report.tokens.get(f"token{out_side}")
        )
        price = plan.get(f"priceToken{out_side}PerToken{in_side}")
        lines.append(
            f"Quote: {plan['direction']} amount{out_side}Quoted={quoted} "
            f"price={_fmt(price)} bufferBps={_fmt(plan.get('bufferBps'))}"
        )
    if plan and plan.get("decision", {}).get("action") == "execute":
        quote = plan.get("quote") or {}
        quote_line = (
            f" quotePrice={quote['price']} bufferBps={_fmt(quote.get('bufferBps'))}"
            if quote.get("price")
            else ""
        )
        amount0 = _fmt_amount(plan.get("amount0"), report.tokens.get("token0"))
        amount1 = _fmt_amount(plan.get("amount1"), report.tokens.get("token1"))
        lines.append(
            f"Plan: ticks [{_fmt(plan.get('tickLower'))}, {_fmt(plan.get('tickUpper'))}] "
            f"amount0={amount0} amount1={amount1}{quote_line}"
        )
        if plan.get("actions"):
            lines.append(f"Actions: {', '.join(plan['actions'])}")
        if plan.get("unlockDataHash"):
            lines.append(f"unlockData hash: {plan['unlockDataHash']}")

    if report.warnings:
        lines.append(f"Warnings: {'; '.join(report.warnings)}")

    return "\n".join(lines)
