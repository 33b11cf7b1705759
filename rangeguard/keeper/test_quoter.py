from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from rangeguard.core.constants import MAX_UINT128, ZERO_ADDRESS
from rangeguard.core.errors import InputValidationError, NumericBoundError, QuoteFailure
from rangeguard.core.utils.uniswap_v4_actions import build_pool_key
from rangeguard.keeper.quoter import (
    FixedPriceQuoter,
    NullQuoter,
    Quoter,
    V4Quoter,
    apply_bps_buffer,
    format_quote_price,
)

TOKEN0 = "0x1111111111111111111111111111111111111111"
TOKEN1 = "0x3333333333333333333333333333333333333333"
QUOTER = "0x5555555555555555555555555555555555555555"


def test_apply_bps_buffer():
    assert apply_bps_buffer(1000, 200) == 1020
    assert apply_bps_buffer(1000, 0) == 1000
    assert apply_bps_buffer(999, 1) == 999
    with pytest.raises(InputValidationError):
        apply_bps_buffer(1000, -1)
    with pytest.raises(InputValidationError):
        apply_bps_buffer(1000, 10_001)


def test_format_quote_price():
    assert format_quote_price(10**18, 2 * 10**6, 18, 6) == "2.00000000"
    assert format_quote_price(3, 1, 0, 0) == "0.33333333"
    assert format_quote_price(0, 5, 18, 18) == "0"


@pytest.mark.asyncio
async def test_fixed_price_quoter_both_directions():
    q = FixedPriceQuoter(TOKEN0, TOKEN1, "2")
    assert isinstance(q, Quoter)
    assert await q.quote(TOKEN0, TOKEN1, 500) == 1000
    assert await q.quote(TOKEN1, TOKEN0, 1000) == 500
    with pytest.raises(InputValidationError):
        await q.quote(QUOTER, TOKEN0, 1)


def test_fixed_price_quoter_rejects_non_positive_price():
    with pytest.raises(InputValidationError):
        FixedPriceQuoter(TOKEN0, TOKEN1, "0")
    with pytest.raises(InputValidationError):
        FixedPriceQuoter(TOKEN0, TOKEN1, "junk")
    with pytest.raises(InputValidationError):
        FixedPriceQuoter(TOKEN0, TOKEN1, "NaN")


@pytest.mark.asyncio
async def test_fixed_price_quoter_is_exact_for_large_amounts():
    amount = 123456789012345678901234567891
    q = FixedPriceQuoter(TOKEN0, TOKEN1, "1.5")
    assert await q.quote(TOKEN0, TOKEN1, amount) == amount * 3 // 2
    assert await q.quote(TOKEN1, TOKEN0, amount) == amount * 2 // 3


@pytest.mark.asyncio
async def test_null_quoter_always_fails():
    with pytest.raises(QuoteFailure):
        await NullQuoter().quote(TOKEN0, TOKEN1, 1)


def _v4_quoter() -> V4Quoter:
    key = build_pool_key(
        currency_a=TOKEN0, currency_b=TOKEN1, fee=3000, tick_spacing=60, hooks=ZERO_ADDRESS
    )
    return V4Quoter(quoter_address=QUOTER, pool_key=key, rpc_url="http://rpc.invalid")


@pytest.mark.asyncio
async def test_v4_quoter_calls_quote_exact_input_single():
    call = MagicMock()
    call.call = AsyncMock(return_value=(1234, 90_000))
    contract = MagicMock()
    contract.functions.quoteExactInputSingle.return_value = call
    w3 = MagicMock()
    w3.eth.contract.return_value = contract

    mock_cm = MagicMock()
    mock_cm.__aenter__ = AsyncMock(return_value=w3)
    mock_cm.__aexit__ = AsyncMock(return_value=None)

    quoter = _v4_quoter()
    with patch("rangeguard.keeper.quoter.web3_from_rpc_url", return_value=mock_cm):
        out = await quoter.quote(TOKEN1, TOKEN0, 10**6, b"\x01")

    assert out == 1234
    (params,), _ = contract.functions.quoteExactInputSingle.call_args
    pool_key, zero_for_one, amount, hook_data = params
    assert pool_key == quoter.pool_key
    assert zero_for_one is False
    assert amount == 10**6
    assert hook_data == b"\x01"


@pytest.mark.asyncio
async def test_v4_quoter_rejects_out_of_range_amounts():
    quoter = _v4_quoter()
    with pytest.raises(InputValidationError):
        await quoter.quote(TOKEN0, TOKEN1, 0)
    with pytest.raises(NumericBoundError):
        await quoter.quote(TOKEN0, TOKEN1, MAX_UINT128 + 1)
