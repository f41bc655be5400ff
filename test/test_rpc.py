"""Tests for the JSON-RPC client."""

import asyncio
from unittest.mock import AsyncMock, Mock

import aiohttp
import pytest
from web3 import AsyncHTTPProvider

from ethflow.errors import RpcError
from ethflow.health import SourceHealth
from ethflow.rpc import RpcClient, normalize_block_tag


def make_rpc(response=None, side_effect=None, health=None):
    rpc = RpcClient("https://node.test", health=health)
    rpc.w3.provider.make_request = AsyncMock(return_value=response, side_effect=side_effect)
    return rpc


def test_builds_http_provider():
    rpc = RpcClient("https://node.test", timeout=7)

    assert isinstance(rpc.w3.provider, AsyncHTTPProvider)
    assert rpc.w3.provider.endpoint_uri == "https://node.test"
    assert dict(rpc.w3.provider.get_request_kwargs())["timeout"].total == 7


@pytest.mark.asyncio
async def test_call_returns_raw_result(clock):
    health = SourceHealth("rpc", clock=clock)
    rpc = make_rpc({"jsonrpc": "2.0", "id": 1, "result": "0x10"}, health=health)

    assert await rpc.block_number() == 16
    rpc.w3.provider.make_request.assert_awaited_once_with("eth_blockNumber", [])
    assert health.last_success == clock.now


@pytest.mark.asyncio
async def test_helpers_pass_params_through():
    block = {"number": "0x1", "transactions": []}
    rpc = make_rpc({"jsonrpc": "2.0", "id": 1, "result": block})

    assert await rpc.get_block("0x1") == block
    await rpc.get_receipt("0xabc")

    calls = rpc.w3.provider.make_request.await_args_list
    assert calls[0].args == ("eth_getBlockByNumber", ["0x1", True])
    assert calls[1].args == ("eth_getTransactionReceipt", ["0xabc"])


@pytest.mark.asyncio
async def test_error_object_raises(clock):
    health = SourceHealth("rpc", clock=clock)
    rpc = make_rpc({
        "jsonrpc": "2.0", "id": 1,
        "error": {"code": -32602, "message": "invalid argument"},
    }, health=health)

    with pytest.raises(RpcError) as exc_info:
        await rpc.get_block("0x1")
    assert exc_info.value.code == -32602
    assert "invalid argument" in str(exc_info.value)
    assert not health.is_healthy()


@pytest.mark.asyncio
async def test_http_error_status():
    error = aiohttp.ClientResponseError(Mock(), (), status=502, message="Bad Gateway")
    rpc = make_rpc(side_effect=error)

    with pytest.raises(RpcError, match="HTTP 502"):
        await rpc.call("eth_chainId")


@pytest.mark.asyncio
async def test_malformed_body():
    rpc = make_rpc(side_effect=ValueError("Expecting value: line 1 column 1"))
    with pytest.raises(RpcError, match="malformed response"):
        await rpc.call("eth_chainId")


@pytest.mark.asyncio
async def test_unexpected_shape():
    rpc = make_rpc(["not", "an", "object"])
    with pytest.raises(RpcError, match="unexpected response shape"):
        await rpc.call("eth_chainId")


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [
    asyncio.TimeoutError(),
    aiohttp.ClientConnectionError("connection refused"),
])
async def test_transport_error(clock, error):
    health = SourceHealth("rpc", clock=clock)
    rpc = make_rpc(side_effect=error, health=health)

    with pytest.raises(RpcError, match="transport error"):
        await rpc.call("eth_chainId")
    assert health.last_error is not None


@pytest.mark.asyncio
async def test_aclose_disconnects_provider():
    rpc = RpcClient("https://node.test")
    rpc.w3.provider.disconnect = AsyncMock()

    await rpc.aclose()

    rpc.w3.provider.disconnect.assert_awaited_once()


def test_normalize_block_tag():
    assert normalize_block_tag("latest") == "latest"
    assert normalize_block_tag("") == "latest"
    assert normalize_block_tag(None) == "latest"
    assert normalize_block_tag("19000000") == "0x121eac0"
    assert normalize_block_tag(255) == "0xff"
    assert normalize_block_tag("0x10") == "0x10"
