from __future__ import annotations

import json
from pathlib import Path

import pytest

from rangeguard.core.errors import CooldownActive
from rangeguard.keeper.cooldown import CooldownGate, InMemoryStateStore, JsonFileStateStore

VAULT = "0xaAaAaAaaAaAaAaaAaAAAAAAAAaaaAaAaAaaAaaAa"


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def test_ready_after_cooldown_elapses(clock):
    gate = CooldownGate(InMemoryStateStore(), 300, clock=clock)
    gate.assert_ready(VAULT, "rebalance")
    gate.record_action(VAULT)

    with pytest.raises(CooldownActive) as exc_info:
        gate.assert_ready(VAULT, "rebalance")
    assert exc_info.value.remaining_seconds == 300
    assert exc_info.value.next_allowed_at == 1_000_300
    assert exc_info.value.target == VAULT.lower()
    assert "Retry in 300s" in exc_info.value.message

    clock.advance(299)
    assert gate.remaining(VAULT) == 1
    assert not gate.is_ready(VAULT)

    clock.advance(1)
    gate.assert_ready(VAULT, "rebalance")
    assert gate.is_ready(VAULT)


def test_zero_cooldown_is_always_ready(clock):
    store = InMemoryStateStore()
    gate = CooldownGate(store, 0, clock=clock)
    gate.record_action(VAULT)
    gate.assert_ready(VAULT)
    assert store.read_state() == {}


def test_targets_are_case_insensitive(clock):
    gate = CooldownGate(InMemoryStateStore(), 60, clock=clock)
    gate.record_action(VAULT.upper().replace("0X", "0x"))
    with pytest.raises(CooldownActive):
        gate.assert_ready(VAULT.lower())


def test_other_targets_unaffected(clock):
    gate = CooldownGate(InMemoryStateStore(), 60, clock=clock)
    gate.record_action(VAULT)
    gate.assert_ready("0x1111111111111111111111111111111111111111")


def test_force_skips_check_but_record_still_applies(clock):
    gate = CooldownGate(InMemoryStateStore(), 60, clock=clock)
    gate.record_action(VAULT)
    gate.check(VAULT, "rebalance", force=True)
    with pytest.raises(CooldownActive):
        gate.check(VAULT, "rebalance")

    clock.advance(30)
    gate.record_action(VAULT)
    assert gate.last_action_at(VAULT) == 1_000_030


def test_clear(clock):
    gate = CooldownGate(InMemoryStateStore(), 60, clock=clock)
    gate.record_action(VAULT)
    gate.clear(VAULT)
    assert gate.last_action_at(VAULT) is None
    gate.record_action(VAULT)
    gate.clear()
    assert gate.is_ready(VAULT)


def test_in_memory_store_copies_state():
    store = InMemoryStateStore({"lastActionAt": {"a": 1}})
    state = store.read_state()
    state["lastActionAt"]["a"] = 2
    assert store.read_state() == {"lastActionAt": {"a": 1}}


def test_json_file_store_round_trip(tmp_path: Path, clock):
    path = tmp_path / "nested" / "keeper-state.json"
    gate = CooldownGate(JsonFileStateStore(path), 60, clock=clock)
    gate.record_action(VAULT)

    assert json.loads(path.read_text()) == {"lastActionAt": {VAULT.lower(): 1_000_000}}
    reloaded = CooldownGate(JsonFileStateStore(path), 60, clock=clock)
    assert reloaded.remaining(VAULT) == 60


def test_json_file_store_unreadable_is_empty(tmp_path: Path):
    path = tmp_path / "keeper-state.json"
    path.write_text("{broken")
    assert JsonFileStateStore(path).read_state() == {}
    assert JsonFileStateStore(tmp_path / "missing.json").read_state() == {}


def test_malformed_entries_are_ignored(clock):
    store = InMemoryStateStore({"lastActionAt": {VAULT.lower(): "soon"}})
    gate = CooldownGate(store, 60, clock=clock)
    assert gate.is_ready(VAULT)
