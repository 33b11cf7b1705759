from __future__ import annotations

from decimal import Decimal

import pytest

from rangeguard.core.errors import InputValidationError
from rangeguard.core.utils.units import format_units, to_raw_amount


def test_to_raw_amount():
    assert to_raw_amount("1.5", 6) == 1_500_000
    assert to_raw_amount("0.0000001", 6) == 0
    assert to_raw_amount("1.9999999", 6) == 1_999_999
    assert to_raw_amount(3, 18) == 3 * 10**18
    assert to_raw_amount(Decimal("0.25"), 2) == 25
    assert to_raw_amount(" 2 ", 0) == 2


@pytest.mark.parametrize("bad", ["-1", "abc", "", "NaN", "inf"])
def test_to_raw_amount_rejects(bad):
    with pytest.raises(InputValidationError):
        to_raw_amount(bad, 18)


def test_format_units():
    assert format_units(1_500_000, 6) == "1.5"
    assert format_units(1_000_000, 6) == "1"
    assert format_units(0, 6) == "0"
    assert format_units(1, 18) == "0.000000000000000001"
    assert format_units(5, 0) == "5"
    assert format_units(-2_500_000, 6) == "-2.5"


def test_to_raw_amount_keeps_every_digit():
    assert to_raw_amount("12345678901.123456789012345678", 18) == (
        12345678901_123456789012345678
    )
    assert to_raw_amount("99999999999999999999.9999999999999999999", 18) == (
        99999999999999999999_999999999999999999
    )
