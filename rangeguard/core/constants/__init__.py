ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Uniswap tick range
MIN_TICK = -887272
MAX_TICK = 887272

Q96 = 1 << 96
MAX_UINT128 = (1 << 128) - 1
MAX_UINT160 = (1 << 160) - 1

BPS_DENOMINATOR = 10_000
