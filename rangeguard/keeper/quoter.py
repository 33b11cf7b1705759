"""Price quotes used to derive the unspecified side of a deposit.

The quoter is an injected dependency: planners only see the ``Quoter``
protocol, so tests substitute deterministic doubles and production uses the
on-chain v4 quoter.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Protocol, runtime_checkable

from eth_utils import to_checksum_address
from loguru import logger

from rangeguard.core.constants import BPS_DENOMINATOR, MAX_UINT128
from rangeguard.core.constants.uniswap_v4_abi import V4_QUOTER_ABI
from rangeguard.core.errors import InputValidationError, NumericBoundError, QuoteFailure
from rangeguard.core.utils.uniswap_v4_actions import PoolKeyTuple, hook_data_bytes
from rangeguard.core.utils.web3 import web3_from_rpc_url


@runtime_checkable
class Quoter(Protocol):
    async def quote(
        self,
        asset_in: str,
        asset_out: str,
        exact_amount_in: int,
        hook_data: bytes = b"",
    ) -> int:
        """Return the amount of ``asset_out`` received for ``exact_amount_in``."""
        ...


def apply_bps_buffer(value: int, buffer_bps: int) -> int:
    if buffer_bps < 0 or buffer_bps > BPS_DENOMINATOR:
        raise InputValidationError("Invalid quote bps buffer", buffer_bps=buffer_bps)
    return (int(value) * (BPS_DENOMINATOR + int(buffer_bps))) // BPS_DENOMINATOR


def format_quote_price(
    amount_in: int, amount_out: int, decimals_in: int, decimals_out: int
) -> str:
    """Units of output per unit of input, 8 decimal places."""
    if amount_in <= 0:
        return "0"
    in_units = Decimal(amount_in) / (Decimal(10) ** decimals_in)
    out_units = Decimal(amount_out) / (Decimal(10) ** decimals_out)
    return f"{out_units / in_units:.8f}"


class FixedPriceQuoter:
    """Quotes at a constant price of token1 per token0 (raw units).

    Used for offline planning where no RPC is available.
    """

    def __init__(self, currency0: str, currency1: str, price1_per_0: Decimal | str):
        self.currency0 = to_checksum_address(currency0)
        self.currency1 = to_checksum_address(currency1)
        try:
            self.price = Decimal(str(price1_per_0).strip())
        except InvalidOperation as exc:
            raise InputValidationError("Invalid price", price=str(price1_per_0)) from exc
        if not self.price.is_finite() or self.price <= 0:
            raise InputValidationError("price must be positive", price=str(self.price))
        # exact fraction so large raw amounts are not rounded
        self._num, self._den = self.price.as_integer_ratio()

    async def quote(
        self,
        asset_in: str,
        asset_out: str,
        exact_amount_in: int,
        hook_data: bytes = b"",
    ) -> int:
        asset_in = to_checksum_address(asset_in)
        if asset_in == self.currency0:
            return int(exact_amount_in) * self._num // self._den
        if asset_in == self.currency1:
            return int(exact_amount_in) * self._den // self._num
        raise InputValidationError("asset not in pool", asset=asset_in)


class V4Quoter:
    """``quoteExactInputSingle`` against the periphery V4Quoter via ``eth_call``."""

    def __init__(
        self,
        *,
        quoter_address: str,
        pool_key: PoolKeyTuple,
        rpc_url: str | None = None,
    ):
        self.quoter_address = to_checksum_address(quoter_address)
        self.pool_key = pool_key
        self.rpc_url = rpc_url

    async def quote(
        self,
        asset_in: str,
        asset_out: str,
        exact_amount_in: int,
        hook_data: bytes = b"",
    ) -> int:
        if exact_amount_in <= 0:
            raise InputValidationError(
                "Quote amount must be positive", exact_amount=exact_amount_in
            )
        if exact_amount_in > MAX_UINT128:
            raise NumericBoundError(
                "Quote amount exceeds uint128", exact_amount=exact_amount_in
            )

        zero_for_one = to_checksum_address(asset_in) == to_checksum_address(
            self.pool_key[0]
        )
        params = (
            self.pool_key,
            zero_for_one,
            int(exact_amount_in),
            hook_data_bytes(hook_data),
        )
        async with web3_from_rpc_url(self.rpc_url) as w3:
            contract = w3.eth.contract(address=self.quoter_address, abi=V4_QUOTER_ABI)
            amount_out, gas_estimate = await contract.functions.quoteExactInputSingle(
                params
            ).call(block_identifier="latest")

        logger.debug(
            f"V4 quote zeroForOne={zero_for_one} in={exact_amount_in} "
            f"out={amount_out} gas={gas_estimate}"
        )
        return int(amount_out)


class NullQuoter:
    """Quoter for runs with no price source; every quote fails."""

    async def quote(
        self,
        asset_in: str,
        asset_out: str,
        exact_amount_in: int,
        hook_data: bytes = b"",
    ) -> int:
        raise QuoteFailure("No quote source configured (use --price or --rpc-quote)")
