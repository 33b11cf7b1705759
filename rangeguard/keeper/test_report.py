from __future__ import annotations

import json
from pathlib import Path

import pytest

from rangeguard.core.constants import ZERO_ADDRESS
from rangeguard.core.utils.tick_math import sqrt_ratio_at_tick
from rangeguard.core.utils.uniswap_v4_actions import build_pool_key
from rangeguard.keeper.planner import Decision, OperationPlan, PlanContext, plan_close
from rangeguard.keeper.pool_state import PositionSnapshot, Slot0
from rangeguard.keeper.report import (
    ReportDecision,
    RunReport,
    TokenInfo,
    create_run_id,
    render_summary,
    report_path,
    write_report,
)

TOKEN0 = "0x1111111111111111111111111111111111111111"
TOKEN1 = "0x3333333333333333333333333333333333333333"
VAULT = "0xaAaAaAaaAaAaAaaAaAAAAAAAAaaaAaAaAaaAaaAa"


@pytest.fixture
def close_plan(policy) -> OperationPlan:
    key = build_pool_key(
        currency_a=TOKEN0, currency_b=TOKEN1, fee=3000, tick_spacing=60, hooks=ZERO_ADDRESS
    )
    ctx = PlanContext(
        pool_key=key,
        slot0=Slot0(sqrt_price_x96=sqrt_ratio_at_tick(0), tick=0),
        owner=VAULT,
        policy=policy,
        clock=lambda: 1_700_000_000,
    )
    position = PositionSnapshot(
        token_id=3, pool_key=key, tick_lower=-600, tick_upper=600, liquidity=10**18
    )
    return plan_close(ctx, position)


def test_run_id_shape():
    run_id = create_run_id()
    millis, suffix = run_id.split("_")
    assert millis.isdigit()
    assert len(suffix) == 6
    assert create_run_id() != run_id


def test_report_path_default_and_override(tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    default = report_path("plan-close", "1_abc")
    assert default.parent == tmp_path / "runs"
    assert default.name.endswith("_plan-close_1_abc.json")
    assert report_path("x", "y", "out/r.json") == tmp_path / "out" / "r.json"


def test_from_plan_uses_camel_case(close_plan, policy):
    report = RunReport.from_plan(
        close_plan,
        command="plan-close",
        chain_id=11155111,
        policy=policy,
        addresses={"vault": VAULT},
        run_id="1_abcdef",
    )
    body = json.loads(report.to_json())
    assert body["runId"] == "1_abcdef"
    assert body["chainId"] == 11155111
    assert body["decision"] == {"action": "execute", "reason": "close"}
    assert body["policy"]["widthTicks"] == 1200
    assert body["plan"]["actions"] == ["BURN_POSITION", "TAKE_PAIR"]
    assert "reportPath" not in body
    assert "stateBefore" not in body


def test_write_report(tmp_path: Path, close_plan, policy):
    report = RunReport.from_plan(
        close_plan, command="plan-close", chain_id=1, policy=policy, run_id="r1"
    )
    path = write_report(report, tmp_path / "nested" / "report.json")
    assert path.exists()
    body = json.loads(path.read_text())
    assert body["reportPath"] == str(path)
    assert body["plan"]["unlockDataHash"] == close_plan.unlock_data_hash


def test_render_summary(close_plan, policy):
    report = RunReport.from_plan(
        close_plan,
        command="plan-close",
        chain_id=11155111,
        policy=policy,
        addresses={"vault": VAULT, "positionManager": None},
        tokens={
            "token0": TokenInfo(address=TOKEN0, decimals=18),
            "token1": TokenInfo(address=TOKEN1, decimals=6),
        },
        state_before={"tick": 0, "tokenId": "3", "tickLower": -600, "tickUpper": 600},
        run_id="r1",
    )
    text = render_summary(report)
    assert "Run plan-close (r1)" in text
    assert "Network: chainId 11155111" in text
    assert "PositionManager: n/a" in text
    assert "Position: 3 [-600, 600]" in text
    assert "Decision: execute (close)" in text
    assert "Actions: BURN_POSITION, TAKE_PAIR" in text
    assert f"unlockData hash: {close_plan.unlock_data_hash}" in text


def test_render_summary_skip_has_no_plan_line(policy):
    plan = OperationPlan(
        operation="rebalance",
        decision=Decision("skip", "Trigger conditions not met"),
        pool_id="0x" + "00" * 32,
        current_tick=0,
        tick_spacing=60,
    )
    report = RunReport.from_plan(
        plan, command="plan-rebalance", chain_id=1, policy=policy, run_id="r2"
    )
    text = render_summary(report)
    assert "Decision: skip (Trigger conditions not met)" in text
    assert "Plan:" not in text
    assert "Warnings" not in text


def test_render_summary_quote_line():
    report = RunReport(
        run_id="r3",
        command="quote",
        chain_id=1,
        tokens={
            "token0": TokenInfo(address=TOKEN0, decimals=18),
            "token1": TokenInfo(address=TOKEN1, decimals=6),
        },
        decision=ReportDecision(action="execute", reason="quote"),
        plan={
            "direction": "token1->token0",
            "amount1": "2000000",
            "amount0Quoted": "1000000000000000000",
            "amount0": "1010000000000000000",
            "priceToken0PerToken1": "0.50000000",
            "bufferBps": 100,
        },
    )
    text = render_summary(report)
    assert "Decision: execute (quote)" in text
    assert (
        "Quote: token1->token0 amount0Quoted=1 price=0.50000000 bufferBps=100" in text
    )
    assert "Plan:" not in text
