import json
import os
import re
from pathlib import Path
from typing import Any

from eth_utils import is_address, to_checksum_address
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from rangeguard.core.constants import ZERO_ADDRESS
from rangeguard.core.errors import InputValidationError, KeeperError

_CONFIG_ENV_KEYS = ("RANGEGUARD_CONFIG_PATH", "RANGEGUARD_CONFIG")
_POLICY_JSON_ENV = "RANGEGUARD_POLICY_JSON"
_POLICY_PATH_ENV = "RANGEGUARD_POLICY_PATH"
_RPC_URL_ENV = "RANGEGUARD_RPC_URL"
_DEFAULT_CONFIG_FILENAME = "config.json"
_HEX_RE = re.compile(r"^0x[0-9a-fA-F]*$")
_BYTES32_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


def _find_project_root(start: Path) -> Path | None:
    cur = start.resolve()
    for parent in [cur, *cur.parents]:
        if (parent / "pyproject.toml").exists():
            return parent
    return None


def _project_root() -> Path | None:
    return _find_project_root(Path.cwd()) or _find_project_root(Path(__file__).parent)


def resolve_config_path(path: str | Path | None = None) -> Path:
    if path is not None:
        return Path(path).expanduser()

    env_path = next(
        (os.getenv(k, "").strip() for k in _CONFIG_ENV_KEYS if os.getenv(k)), ""
    )
    if env_path:
        p = Path(env_path).expanduser()
        if p.is_absolute():
            return p
        root = _project_root()
        return (root / p) if root else p

    root = _project_root()
    return (root / _DEFAULT_CONFIG_FILENAME) if root else Path(_DEFAULT_CONFIG_FILENAME)


def load_config_json(
    path: str | Path | None = None, *, require_exists: bool = False
) -> dict[str, Any]:
    cfg_path = resolve_config_path(path)
    if not cfg_path.exists():
        if require_exists:
            raise FileNotFoundError(f"Config file not found: {cfg_path}")
        return {}
    try:
        data = json.loads(cfg_path.read_text())
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning(f"Ignoring unreadable config file {cfg_path}: {exc}")
        return {}
    return data if isinstance(data, dict) else {}


CONFIG: dict[str, Any] = load_config_json()


def set_config(config: dict[str, Any]) -> None:
    """Replace the global CONFIG dict in-place.

    This allows code that imported CONFIG at module import time to see updates.
    """
    CONFIG.clear()
    CONFIG.update(config)


def load_config(
    path: str | Path | None = None, *, require_exists: bool = False
) -> None:
    """Load config from disk into the global CONFIG dict."""
    set_config(load_config_json(path, require_exists=require_exists))


def get_rpc_url() -> str | None:
    value = CONFIG.get("rpc_url") or os.environ.get(_RPC_URL_ENV)
    return str(value).strip() if value else None


def _checksum(value: str | None) -> str | None:
    if value is None or str(value).strip() == "":
        return None
    if not is_address(value):
        raise ValueError(f"invalid address: {value}")
    return to_checksum_address(value)


class PolicyConfig(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    width_ticks: int = Field(gt=0)
    edge_bps: int = Field(ge=0, le=10_000)
    cooldown_seconds: int = Field(ge=0)
    max_slippage_bps: int = Field(ge=0, le=10_000)
    rebalance_if_out_of_range: bool = True
    rebalance_if_near_edge: bool = False
    use_full_balances: bool = True
    hook_data_hex: str = "0x"

    @field_validator("hook_data_hex")
    @classmethod
    def validate_hook_data(cls, v: str) -> str:
        if not _HEX_RE.match(v):
            raise ValueError("hookDataHex must be hex")
        return v


class KeeperConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    rpc_url: str | None = None
    chain_id: int = 11155111
    vault_address: str
    state_view_address: str | None = None
    position_manager_address: str | None = None
    quoter_address: str | None = None
    default_deadline_seconds: int = Field(default=180, gt=0)
    pool_id: str | None = None
    pool_fee: int | None = None
    pool_tick_spacing: int | None = None
    pool_hooks: str = ZERO_ADDRESS
    state_path: str | None = None
    policy: PolicyConfig

    @field_validator(
        "vault_address",
        "state_view_address",
        "position_manager_address",
        "quoter_address",
        "pool_hooks",
    )
    @classmethod
    def validate_address(cls, v: str | None) -> str | None:
        return _checksum(v)

    @field_validator("pool_id")
    @classmethod
    def validate_pool_id(cls, v: str | None) -> str | None:
        if v in (None, ""):
            return None
        if not _BYTES32_RE.match(v):
            raise ValueError("pool_id must be 0x + 64 hex chars")
        return v.lower()


def _normalize_json_input(value: str) -> str:
    normalized = value.strip().rstrip("\\").strip()
    if len(normalized) >= 2 and normalized[0] == normalized[-1] and normalized[0] in "'\"":
        normalized = normalized[1:-1]
    return normalized.strip()


def _parse_policy(raw: Any, source: str) -> PolicyConfig:
    try:
        return PolicyConfig.model_validate(raw)
    except ValidationError as exc:
        raise InputValidationError(
            f"Invalid policy from {source}", errors=exc.errors(include_url=False)
        ) from exc


def resolve_policy(config: dict[str, Any] | None = None) -> PolicyConfig:
    """Policy precedence: env JSON, env path, then the ``policy`` config key."""
    cfg = CONFIG if config is None else config
    policy_json = os.environ.get(_POLICY_JSON_ENV)
    if policy_json:
        try:
            raw = json.loads(_normalize_json_input(policy_json))
        except json.JSONDecodeError as exc:
            raise InputValidationError(
                f"{_POLICY_JSON_ENV} is not valid JSON", error=str(exc)
            ) from exc
        return _parse_policy(raw, _POLICY_JSON_ENV)

    policy_path = os.environ.get(_POLICY_PATH_ENV)
    if policy_path:
        p = Path(policy_path).expanduser()
        if not p.is_absolute():
            p = Path.cwd() / p
        try:
            raw = json.loads(p.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            raise InputValidationError(
                "Unable to read policy file", path=str(p), error=str(exc)
            ) from exc
        return _parse_policy(raw, str(p))

    if isinstance(cfg.get("policy"), dict):
        return _parse_policy(cfg["policy"], "config")

    raise KeeperError(
        f"Missing policy: set {_POLICY_JSON_ENV}, {_POLICY_PATH_ENV} or 'policy' in config"
    )


def load_keeper_config(config: dict[str, Any] | None = None) -> KeeperConfig:
    cfg = dict(CONFIG if config is None else config)
    policy = resolve_policy(cfg)
    cfg["policy"] = policy
    cfg.setdefault("rpc_url", get_rpc_url())
    try:
        return KeeperConfig.model_validate(cfg)
    except ValidationError as exc:
        raise InputValidationError(
            "Invalid keeper configuration", errors=exc.errors(include_url=False)
        ) from exc
