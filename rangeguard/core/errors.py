"""Keeper error taxonomy.

Every error carries the offending values in ``details`` so callers can log or
retry without parsing the message.
"""

from __future__ import annotations

import json
from typing import Any


class KeeperError(RuntimeError):
    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details: dict[str, Any] = details
        super().__init__(message)

    def __str__(self) -> str:
        return format_error(self)


class InputValidationError(KeeperError):
    """Bad spacing, width, tick ordering or amount input. Caller must fix inputs."""


class InvalidSpacing(InputValidationError):
    pass


class WidthTooLarge(InputValidationError):
    pass


class WidthExceedsRange(InputValidationError):
    pass


class TickOutsideSupportedRange(InputValidationError):
    pass


class InvalidTickOrder(InputValidationError):
    pass


class NumericBoundError(KeeperError):
    """A value does not fit the receiving protocol's integer width."""


class ValueExceedsUint128(NumericBoundError):
    pass


class QuoteFailure(KeeperError):
    """The quote callback failed and no fallback was possible."""


class NoFallbackBalance(QuoteFailure):
    pass


class ScalingExhausted(KeeperError):
    """The rescale loop could not fit the derived side inside its limit."""


class AmountSelectionFailed(ScalingExhausted):
    pass


class CooldownActive(KeeperError):
    """Expected control-flow signal: the target acted too recently."""

    def __init__(
        self,
        message: str,
        *,
        remaining_seconds: int,
        next_allowed_at: int,
        target: str,
        action: str | None = None,
    ):
        super().__init__(
            message,
            remaining_seconds=remaining_seconds,
            next_allowed_at=next_allowed_at,
            target=target,
            action=action,
        )
        self.remaining_seconds = remaining_seconds
        self.next_allowed_at = next_allowed_at
        self.target = target
        self.action = action


def _json_default(value: Any) -> Any:
    if isinstance(value, bytes):
        return "0x" + value.hex()
    return str(value)


def format_error(exc: BaseException) -> str:
    if isinstance(exc, KeeperError):
        if exc.details:
            details = json.dumps(exc.details, default=_json_default, sort_keys=True)
            return f"{exc.message}: {details}"
        return exc.message
    return str(exc) or exc.__class__.__name__


def invariant(condition: bool, message: str, **details: Any) -> None:
    if not condition:
        raise KeeperError(message, **details)
