"""Tests for service wiring."""

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from ethflow.config import AppConfig, MempoolConfig, UpstreamConfig
from ethflow.errors import AllCandidatesFailedError
from ethflow.failover import RelayPaths
from ethflow.mempool import WatcherMode
from ethflow.models import SandwichReport
from ethflow.service import EthFlowService


@pytest.fixture
def config():
    return AppConfig(
        upstream=UpstreamConfig(
            rpc_http_url="https://node.test",
            beacon_api_url="https://beacon.test",
            relay_urls=("https://relay-a.test",),
        ),
        mempool=MempoolConfig(disabled=True),
    )


def test_components_share_owned_state(config):
    service = EthFlowService(config)

    assert service.mempool.mode is WatcherMode.DISABLED
    assert service.relay.cache is service.relay_cache
    assert service.relay.health is service.health.relay
    assert service.beacon.cache is service.beacon_cache
    assert service.compositor.cache is service.snapshot_cache
    assert service.compositor.sources["relays"] == ["https://relay-a.test"]
    assert service.scanner.extractor.max_tx == 120


def test_mode_follows_websocket_setting(config):
    config = AppConfig(
        upstream=UpstreamConfig(rpc_http_url="https://node.test", rpc_ws_url="wss://node.test"),
    )
    assert EthFlowService(config).mempool.mode is WatcherMode.PUSH
    assert EthFlowService(AppConfig()).mempool.mode is WatcherMode.POLL


@pytest.mark.asyncio
async def test_detect_sandwiches_normalises_block(config):
    service = EthFlowService(config)
    report = SandwichReport(block="0x10", block_hash="0xh", swap_count=0)

    with patch.object(service.scanner, "scan", AsyncMock(return_value=report)) as scan:
        result = await service.detect_sandwiches("16")

    scan.assert_awaited_once_with("0x10")
    assert result == {"block": "0x10", "blockHash": "0xh", "swapCount": 0, "sandwiches": []}


@pytest.mark.asyncio
async def test_health_report_with_disabled_mempool(config):
    service = EthFlowService(config)

    with patch.object(service, "_probe_beacon", AsyncMock()), \
            patch.object(service, "_probe_relay", AsyncMock()), \
            patch.object(service, "_probe_rpc", AsyncMock()):
        service.health.relay.record_error(RuntimeError("503"))
        report = await service.health_report()

    by_name = {s["name"]: s for s in report["dataSources"]}
    assert report["status"] == "degraded"
    assert by_name["mempool"]["healthy"] is True
    assert by_name["relay"]["lastError"] == "503"
    assert report["summary"] == {"total": 4, "healthy": 3, "unhealthy": 1}
    assert service.is_ready()


@pytest.mark.asyncio
async def test_run_until_stopped(config):
    service = EthFlowService(config)
    service.aclose = AsyncMock()

    service.stop()
    await service.run()

    service.aclose.assert_awaited_once()
    assert not service.running


def mock_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_relay_fetch_goes_through_failover_cache(config):
    service = EthFlowService(config)
    requests = []

    def handler(request):
        requests.append(str(request.url))
        return httpx.Response(200, content=b'[{"slot": "100"}]')

    service.relay._client = mock_client(handler)
    path = RelayPaths.delivered(5)

    assert await service.relay_fetch(path) == b'[{"slot": "100"}]'
    assert await service.relay_fetch(path) == b'[{"slot": "100"}]'

    assert requests == ["https://relay-a.test" + path]
    assert service.health.relay.is_healthy()
    await service.aclose()


@pytest.mark.asyncio
async def test_relay_fetch_failure_backs_off(config):
    service = EthFlowService(config)
    service.relay._client = mock_client(lambda request: httpx.Response(503))

    with pytest.raises(AllCandidatesFailedError):
        await service.relay_fetch(RelayPaths.received(5))

    assert service.relay_backoff.check(RelayPaths.received(5))
    await service.aclose()


@pytest.mark.asyncio
async def test_beacon_headers_merges_relay_bids(config):
    service = EthFlowService(config)
    beacon_paths = []

    def beacon(request):
        beacon_paths.append(request.url.path + "?" + request.url.query.decode())
        return httpx.Response(200, json={"data": [
            {"header": {"message": {"slot": "100", "proposer_index": "7"}}},
            {"header": {"message": {"slot": "99", "proposer_index": "8"}}},
        ]})

    def relay(request):
        return httpx.Response(200, content=json.dumps([
            {"slot": "100", "value": "42", "block_number": "19000000", "builder_pubkey": "0xb"},
        ]).encode())

    service.beacon._client = mock_client(beacon)
    service.relay._client = mock_client(relay)

    result = await service.beacon_headers(limit=2)

    assert beacon_paths == ["/eth/v1/beacon/headers?limit=2"]
    assert result["count"] == 2
    assert result["headers"][0]["builder_payment_eth"] == "42"
    assert result["headers"][0]["block_number"] == "19000000"
    assert result["headers"][1] == {"slot": "99", "proposer_index": "8"}
    await service.aclose()


@pytest.mark.asyncio
async def test_beacon_headers_unavailable(config):
    service = EthFlowService(config)
    service.beacon._client = mock_client(lambda request: httpx.Response(500))

    with patch.object(service.relay, "fetch_json", AsyncMock()) as fetch_json:
        assert await service.beacon_headers() is None

    fetch_json.assert_not_awaited()
    assert not service.health.beacon.is_healthy()
    await service.aclose()
