from contextlib import asynccontextmanager

from loguru import logger
from web3 import AsyncHTTPProvider, AsyncWeb3

from rangeguard.core.config import get_rpc_url


def get_web3(rpc_url: str | None = None) -> AsyncWeb3:
    url = rpc_url or get_rpc_url()
    if not url:
        raise ValueError("rpc_url is not configured")
    return AsyncWeb3(AsyncHTTPProvider(url))


@asynccontextmanager
async def web3_from_rpc_url(rpc_url: str | None = None):
    w3 = get_web3(rpc_url)
    try:
        yield w3
    finally:
        try:
            await w3.provider.disconnect()
        except Exception as exc:
            logger.debug(f"Failed to disconnect web3 provider: {exc}")
