from __future__ import annotations

from decimal import ROUND_DOWN, Decimal, InvalidOperation, localcontext

from rangeguard.core.errors import InputValidationError


def _to_decimal(value: str | int | Decimal) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        return Decimal(value)
    return Decimal(str(value).strip())


def to_raw_amount(amount: str | int | Decimal, decimals: int) -> int:
    """Human decimal amount -> smallest-unit integer, truncating extra precision."""
    try:
        amt = _to_decimal(amount)
    except InvalidOperation as exc:
        raise InputValidationError("Invalid token amount", amount=str(amount)) from exc
    if not amt.is_finite():
        raise InputValidationError("Invalid token amount", amount=str(amount))
    if amt < 0:
        raise InputValidationError(
            "Amount must be non-negative", amount=str(amount)
        )
    decimals = int(decimals)
    with localcontext() as ctx:
        # wide enough that the scaling multiply is exact
        ctx.prec = max(ctx.prec, len(amt.as_tuple().digits) + decimals + 2)
        scaled = amt * (Decimal(10) ** decimals)
    return int(scaled.to_integral_value(rounding=ROUND_DOWN))


def format_units(raw: int, decimals: int) -> str:
    if decimals <= 0:
        return str(int(raw))
    sign = "-" if raw < 0 else ""
    whole, frac = divmod(abs(int(raw)), 10**decimals)
    frac_str = str(frac).rjust(decimals, "0").rstrip("0")
    return f"{sign}{whole}.{frac_str}" if frac_str else f"{sign}{whole}"
