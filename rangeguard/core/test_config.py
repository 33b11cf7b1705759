from __future__ import annotations

import copy
import json
from pathlib import Path

import pytest

import rangeguard.core.config as config
from rangeguard.core.errors import InputValidationError, KeeperError

VAULT = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
POLICY = {
    "widthTicks": 1200,
    "edgeBps": 1000,
    "cooldownSeconds": 300,
    "maxSlippageBps": 50,
}


@pytest.fixture
def restore_global_config() -> None:
    original = copy.deepcopy(config.CONFIG)
    yield
    config.set_config(original)


def test_resolve_config_path_explicit(tmp_path: Path) -> None:
    assert config.resolve_config_path(tmp_path / "x.json") == tmp_path / "x.json"


def test_resolve_config_path_env_absolute(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    target = tmp_path / "custom.json"
    monkeypatch.setenv("RANGEGUARD_CONFIG_PATH", str(target))
    assert config.resolve_config_path() == target


def test_load_config_json_missing_and_unreadable(tmp_path: Path) -> None:
    assert config.load_config_json(tmp_path / "missing.json") == {}
    with pytest.raises(FileNotFoundError):
        config.load_config_json(tmp_path / "missing.json", require_exists=True)

    bad = tmp_path / "bad.json"
    bad.write_text("{not json")
    assert config.load_config_json(bad) == {}


def test_load_config_replaces_in_place(tmp_path: Path, restore_global_config) -> None:
    cfg_path = tmp_path / "config.json"
    cfg_path.write_text(json.dumps({"rpc_url": "http://localhost:8545"}))
    ref = config.CONFIG
    config.load_config(cfg_path)
    assert ref is config.CONFIG
    assert config.get_rpc_url() == "http://localhost:8545"


def test_get_rpc_url_env_fallback(
    monkeypatch: pytest.MonkeyPatch, restore_global_config
) -> None:
    config.set_config({})
    monkeypatch.setenv("RANGEGUARD_RPC_URL", " http://node ")
    assert config.get_rpc_url() == "http://node"


def test_policy_accepts_camel_and_snake() -> None:
    camel = config.PolicyConfig.model_validate(POLICY)
    snake = config.PolicyConfig(
        width_ticks=1200, edge_bps=1000, cooldown_seconds=300, max_slippage_bps=50
    )
    assert camel == snake
    assert camel.rebalance_if_out_of_range is True
    assert camel.rebalance_if_near_edge is False
    assert camel.use_full_balances is True
    assert camel.model_dump(by_alias=True)["widthTicks"] == 1200


@pytest.mark.parametrize(
    "override",
    [
        {"widthTicks": 0},
        {"edgeBps": 10_001},
        {"cooldownSeconds": -1},
        {"maxSlippageBps": -5},
        {"hookDataHex": "zz"},
    ],
)
def test_policy_rejects_invalid(override) -> None:
    with pytest.raises(InputValidationError):
        config.resolve_policy({"policy": {**POLICY, **override}})


def test_policy_precedence(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    cfg = {"policy": POLICY}
    assert config.resolve_policy(cfg).width_ticks == 1200

    policy_file = tmp_path / "policy.json"
    policy_file.write_text(json.dumps({**POLICY, "widthTicks": 600}))
    monkeypatch.setenv("RANGEGUARD_POLICY_PATH", str(policy_file))
    assert config.resolve_policy(cfg).width_ticks == 600

    monkeypatch.setenv("RANGEGUARD_POLICY_JSON", "'" + json.dumps({**POLICY, "widthTicks": 120}) + "'")
    assert config.resolve_policy(cfg).width_ticks == 120


def test_policy_json_env_invalid(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RANGEGUARD_POLICY_JSON", "{nope")
    with pytest.raises(InputValidationError):
        config.resolve_policy({})


def test_missing_policy() -> None:
    with pytest.raises(KeeperError, match="Missing policy"):
        config.resolve_policy({})


def test_load_keeper_config() -> None:
    cfg = config.load_keeper_config(
        {
            "vault_address": VAULT,
            "pool_id": "0x" + "AB" * 32,
            "pool_fee": 3000,
            "pool_tick_spacing": 60,
            "policy": POLICY,
        }
    )
    assert cfg.vault_address == "0xaAaAaAaaAaAaAaaAaAAAAAAAAaaaAaAaAaaAaaAa"
    assert cfg.pool_id == "0x" + "ab" * 32
    assert cfg.chain_id == 11155111
    assert cfg.default_deadline_seconds == 180
    assert cfg.policy.edge_bps == 1000


@pytest.mark.parametrize(
    "override",
    [{"vault_address": "0x1234"}, {"pool_id": "0x12"}],
)
def test_load_keeper_config_rejects_bad_values(override) -> None:
    with pytest.raises(InputValidationError):
        config.load_keeper_config({"vault_address": VAULT, "policy": POLICY, **override})
