import sys
from pathlib import Path

import pytest

from rangeguard.core.config import PolicyConfig

_repo_root = Path(__file__).parent.parent
_repo_root_str = str(_repo_root)


def pytest_configure(config):
    config.addinivalue_line("markers", "integration: mark test as integration")
    if _repo_root_str not in sys.path:
        sys.path.insert(0, _repo_root_str)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in (
        "RANGEGUARD_CONFIG_PATH",
        "RANGEGUARD_CONFIG",
        "RANGEGUARD_POLICY_JSON",
        "RANGEGUARD_POLICY_PATH",
        "RANGEGUARD_RPC_URL",
    ):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def policy() -> PolicyConfig:
    return PolicyConfig(
        width_ticks=1200,
        edge_bps=1000,
        cooldown_seconds=300,
        max_slippage_bps=50,
    )
