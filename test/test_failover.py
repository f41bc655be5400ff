"""Tests for the relay failover client."""

import httpx
import pytest

from ethflow.cache import NegativeCache, TTLCache
from ethflow.errors import AllCandidatesFailedError, BackoffError
from ethflow.failover import DEFAULT_RELAY, FailoverClient, RelayPaths, parse_relay_urls
from ethflow.health import SourceHealth

PATH = RelayPaths.delivered(5)
BASES = ["https://relay-a.test", "https://relay-b.test", "https://relay-c.test"]


def make_client(handler, clock, bases=BASES, budget=2.5, health=None):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return FailoverClient(
        bases,
        cache=TTLCache(20, clock=clock),
        negative_cache=NegativeCache(10, clock=clock),
        health=health,
        budget=budget,
        client=http,
        clock=clock,
    )


class Recorder:
    """Transport handler answering per host and recording requested hosts."""

    def __init__(self, answers):
        self.answers = answers
        self.hosts = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.hosts.append(request.url.host)
        status, body = self.answers.get(request.url.host, (500, b"down"))
        return httpx.Response(status, content=body)


def test_parse_relay_urls():
    assert parse_relay_urls(" https://a.test , ,https://b.test ") == ["https://a.test", "https://b.test"]
    assert parse_relay_urls("") == [DEFAULT_RELAY]
    assert parse_relay_urls(None) == [DEFAULT_RELAY]


def test_relay_paths():
    assert RelayPaths.received(3) == "/relay/v1/data/bidtraces/builder_blocks_received?limit=3"
    assert RelayPaths.delivered(50) == "/relay/v1/data/bidtraces/proposer_payload_delivered?limit=50"


def test_requires_a_base(clock):
    with pytest.raises(ValueError):
        FailoverClient([], TTLCache(20, clock=clock), NegativeCache(10, clock=clock))


@pytest.mark.asyncio
async def test_first_success_stops_iteration(clock):
    recorder = Recorder({"relay-b.test": (200, b"[1]"), "relay-c.test": (200, b"[2]")})
    client = make_client(recorder, clock)

    assert await client.fetch(PATH) == b"[1]"
    assert recorder.hosts == ["relay-a.test", "relay-b.test"]


@pytest.mark.asyncio
async def test_success_is_cached(clock):
    recorder = Recorder({"relay-a.test": (200, b"[1]")})
    client = make_client(recorder, clock)

    await client.fetch(PATH)
    assert await client.fetch(PATH) == b"[1]"
    assert recorder.hosts == ["relay-a.test"]

    clock.advance(20)
    await client.fetch(PATH)
    assert recorder.hosts == ["relay-a.test", "relay-a.test"]


@pytest.mark.asyncio
async def test_blank_body_counts_as_failure(clock):
    recorder = Recorder({"relay-a.test": (200, b"  \n"), "relay-b.test": (200, b"[]")})
    client = make_client(recorder, clock)

    assert await client.fetch(PATH) == b"[]"
    assert recorder.hosts == ["relay-a.test", "relay-b.test"]


@pytest.mark.asyncio
async def test_all_fail_then_backoff(clock):
    """After a full failure the path short-circuits without network calls."""
    recorder = Recorder({})
    health = SourceHealth("relay", clock=clock)
    client = make_client(recorder, clock, health=health)

    with pytest.raises(AllCandidatesFailedError) as exc_info:
        await client.fetch(PATH)
    assert exc_info.value.attempts == 3
    assert exc_info.value.total == 3
    assert len(recorder.hosts) == 3
    assert not health.is_healthy()

    # Backoff is idempotent: repeated calls never reach the network.
    for _ in range(3):
        with pytest.raises(BackoffError):
            await client.fetch(PATH)
    assert len(recorder.hosts) == 3

    clock.advance(10)
    recorder.answers["relay-c.test"] = (200, b"[3]")
    assert await client.fetch(PATH) == b"[3]"
    assert health.is_healthy()


@pytest.mark.asyncio
async def test_backoff_is_per_path(clock):
    recorder = Recorder({})
    client = make_client(recorder, clock)

    with pytest.raises(AllCandidatesFailedError):
        await client.fetch(PATH)

    recorder.answers["relay-a.test"] = (200, b"[9]")
    assert await client.fetch(RelayPaths.received(5)) == b"[9]"


@pytest.mark.asyncio
async def test_budget_checked_before_each_attempt(clock):
    """Attempts stop once the budget has been spent, even with candidates left."""
    def slow_failure(request):
        clock.advance(2)
        return httpx.Response(503)

    client = make_client(slow_failure, clock, budget=2.5)

    with pytest.raises(AllCandidatesFailedError) as exc_info:
        await client.fetch(PATH)
    assert exc_info.value.attempts == 2


@pytest.mark.asyncio
async def test_transport_errors_fall_through(clock):
    def handler(request):
        if request.url.host == "relay-a.test":
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200, content=b"[]")

    client = make_client(handler, clock)
    assert await client.fetch(PATH) == b"[]"


@pytest.mark.asyncio
async def test_fetch_json(clock):
    recorder = Recorder({"relay-a.test": (200, b'[{"slot": "1"}]')})
    client = make_client(recorder, clock)
    assert await client.fetch_json(PATH) == [{"slot": "1"}]

    recorder.answers["relay-a.test"] = (200, b"not json")
    assert await client.fetch_json(RelayPaths.received(1)) is None


@pytest.mark.asyncio
async def test_fetch_json_unavailable_is_none(clock):
    client = make_client(Recorder({}), clock)
    assert await client.fetch_json(PATH) is None
