__version__ = "0.1.0"

from rangeguard.core.errors import (
    CooldownActive,
    InputValidationError,
    KeeperError,
    NumericBoundError,
    QuoteFailure,
    ScalingExhausted,
)

__all__ = [
    "__version__",
    "CooldownActive",
    "InputValidationError",
    "KeeperError",
    "NumericBoundError",
    "QuoteFailure",
    "ScalingExhausted",
]
