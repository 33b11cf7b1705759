"""Per-vault action throttling.

The gate reads and writes a small JSON document ``{"lastActionAt": {vault:
unix_seconds}}`` through an injected store. The check in ``assert_ready`` and
the write in ``record_action`` are separate steps, so two keepers racing on
the same store can both pass the check; the gate is best-effort.
"""

from __future__ import annotations

import json
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol

from loguru import logger

from rangeguard.core.errors import CooldownActive

DEFAULT_STATE_PATH = Path("~/.rangeguard/keeper-state.json")
_LAST_ACTION_KEY = "lastActionAt"


class StateStore(Protocol):
    def read_state(self) -> dict[str, Any]: ...

    def write_state(self, state: dict[str, Any]) -> None: ...


class JsonFileStateStore:
    def __init__(self, path: str | Path | None = None):
        self.path = Path(path or DEFAULT_STATE_PATH).expanduser()

    def read_state(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning(f"Ignoring unreadable keeper state {self.path}: {exc}")
            return {}
        return data if isinstance(data, dict) else {}

    def write_state(self, state: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(state, indent=2))


class InMemoryStateStore:
    def __init__(self, state: dict[str, Any] | None = None):
        self.state: dict[str, Any] = json.loads(json.dumps(state or {}))

    def read_state(self) -> dict[str, Any]:
        return json.loads(json.dumps(self.state))

    def write_state(self, state: dict[str, Any]) -> None:
        self.state = json.loads(json.dumps(state))


class CooldownGate:
    def __init__(
        self,
        store: StateStore,
        cooldown_seconds: int,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.cooldown_seconds = int(cooldown_seconds)
        self.clock = clock

    @property
    def enabled(self) -> bool:
        return self.cooldown_seconds > 0

    def _now(self) -> int:
        return int(self.clock())

    def _last_actions(self) -> dict[str, int]:
        raw = self.store.read_state().get(_LAST_ACTION_KEY)
        if not isinstance(raw, dict):
            return {}
        out: dict[str, int] = {}
        for key, value in raw.items():
            try:
                out[str(key).lower()] = int(value)
            except (TypeError, ValueError):
                logger.warning(f"Skipping malformed cooldown entry {key}={value!r}")
        return out

    def last_action_at(self, target: str) -> int | None:
        return self._last_actions().get(target.lower())

    def remaining(self, target: str) -> int:
        """Seconds until ``target`` may act again (0 when ready)."""
        if not self.enabled:
            return 0
        last = self.last_action_at(target)
        if last is None:
            return 0
        return max(0, last + self.cooldown_seconds - self._now())

    def is_ready(self, target: str) -> bool:
        return self.remaining(target) == 0

    def assert_ready(self, target: str, action: str | None = None) -> None:
        if not self.enabled:
            return
        last = self.last_action_at(target)
        if last is None:
            return
        next_allowed_at = last + self.cooldown_seconds
        now = self._now()
        if now < next_allowed_at:
            wait = next_allowed_at - now
            raise CooldownActive(
                f"Cooldown active for {action or 'action'}. Retry in {wait}s.",
                remaining_seconds=wait,
                next_allowed_at=next_allowed_at,
                target=target.lower(),
                action=action,
            )

    def check(self, target: str, action: str | None = None, *, force: bool = False) -> None:
        """``assert_ready`` unless ``force`` is set, in which case log and continue."""
        if force:
            if not self.is_ready(target):
                logger.warning("Cooldown ignored due to --force")
            return
        self.assert_ready(target, action)

    def record_action(self, target: str) -> None:
        if not self.enabled:
            return
        state = self.store.read_state()
        last = state.get(_LAST_ACTION_KEY)
        if not isinstance(last, dict):
            last = {}
        last[target.lower()] = self._now()
        state[_LAST_ACTION_KEY] = last
        self.store.write_state(state)
        logger.debug(f"Recorded action for {target.lower()}")

    def clear(self, target: str | None = None) -> None:
        state = self.store.read_state()
        last = state.get(_LAST_ACTION_KEY)
        if not isinstance(last, dict):
            return
        if target is None:
            state[_LAST_ACTION_KEY] = {}
        else:
            last.pop(target.lower(), None)
            state[_LAST_ACTION_KEY] = last
        self.store.write_state(state)
