"""
Execution-layer JSON-RPC caller.

Requests go through web3's ``AsyncHTTPProvider`` but stop at the provider:
results are returned as decoded JSON exactly as the node sends them (hex
quantities stay hex strings), which keeps them serialisable without any web3
result formatters in between.
"""

import asyncio
import logging
from typing import Any

import aiohttp
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import Web3Exception

from .errors import RpcError
from .health import SourceHealth

logger = logging.getLogger(__name__)


class RpcClient:
    """JSON-RPC client over an async web3 HTTP provider."""

    def __init__(
        self,
        url: str,
        health: SourceHealth | None = None,
        timeout: float = 5.0,
        w3: AsyncWeb3 | None = None
    ) -> None:
        """
        Initialize the RPC client.

        Args:
            url: HTTP(S) JSON-RPC endpoint
            health: Health record updated on every call
            timeout: Request timeout in seconds
            w3: Preconfigured AsyncWeb3 instance (one is created when omitted)
        """
        self.url = url
        self.health = health
        self.timeout = timeout
        if w3 is None:
            provider = AsyncHTTPProvider(
                url,
                request_kwargs={"timeout": aiohttp.ClientTimeout(total=timeout)},
                # Callers own the time budget; the provider must not retry behind it
                exception_retry_configuration=None,
            )
            w3 = AsyncWeb3(provider)
        self.w3 = w3

    async def aclose(self) -> None:
        await self.w3.provider.disconnect()

    async def call(self, method: str, params: list[Any] | None = None) -> Any:
        """
        Invoke ``method`` and return its ``result``.

        Raises:
            RpcError: On transport failure, malformed JSON or a JSON-RPC error
        """
        try:
            response = await self.w3.provider.make_request(method, params or [])
        except aiohttp.ClientResponseError as e:
            raise self._fail(RpcError(method, f"HTTP {e.status}")) from e
        except (aiohttp.ClientError, asyncio.TimeoutError, Web3Exception) as e:
            raise self._fail(RpcError(method, f"transport error: {e}")) from e
        except ValueError as e:
            raise self._fail(RpcError(method, f"malformed response: {e}")) from e

        if not isinstance(response, dict):
            raise self._fail(RpcError(method, "unexpected response shape"))

        # Nodes report failures inside a 200 OK body.
        match response.get("error"):
            case None:
                pass
            case {"message": message, **rest}:
                raise self._fail(RpcError(method, str(message), rest.get("code")))
            case other:
                raise self._fail(RpcError(method, str(other)))

        if self.health:
            self.health.record_success()
        return response.get("result")

    def _fail(self, err: RpcError) -> RpcError:
        if self.health:
            self.health.record_error(err)
        logger.debug(f"RPC call failed: {err}")
        return err

    async def block_number(self) -> int:
        result = await self.call("eth_blockNumber")
        return int(result, 16)

    async def get_block(self, tag: str = "latest", full_transactions: bool = True) -> dict[str, Any] | None:
        return await self.call("eth_getBlockByNumber", [tag, full_transactions])

    async def get_transaction(self, tx_hash: str) -> dict[str, Any] | None:
        return await self.call("eth_getTransactionByHash", [tx_hash])

    async def get_receipt(self, tx_hash: str) -> dict[str, Any] | None:
        return await self.call("eth_getTransactionReceipt", [tx_hash])


def normalize_block_tag(tag: str | int | None) -> str:
    """Turn a decimal block number into the hex quantity JSON-RPC expects; tags pass through."""
    if tag is None or tag == "":
        return "latest"
    if isinstance(tag, int):
        return hex(tag)
    if tag.isdigit():
        return hex(int(tag))
    return tag
