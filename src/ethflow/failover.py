"""
Failover HTTP client for the MEV relay set.

Relays rate-limit aggressively and go offline without notice, so every request
path is tried against an ordered list of relay bases under a global time
budget, with positive and negative caching in front of the network.
"""

import json
import logging
import time
from collections.abc import Callable, Sequence
from typing import Any

import httpx

from .cache import NegativeCache, TTLCache
from .errors import AllCandidatesFailedError, BackoffError, UpstreamError
from .health import SourceHealth

logger = logging.getLogger(__name__)

DEFAULT_RELAY = "https://boost-relay.flashbots.net"


def parse_relay_urls(raw: str | None) -> list[str]:
    """
    Split a comma separated relay list.

    Blank entries are dropped; an empty result falls back to the Flashbots
    relay so there is always at least one candidate.
    """
    bases = [part.strip() for part in (raw or "").split(",")]
    bases = [base for base in bases if base]
    return bases or [DEFAULT_RELAY]


class RelayPaths:
    """Relay data API paths used by the aggregation views."""

    RECEIVED = "/relay/v1/data/bidtraces/builder_blocks_received"
    DELIVERED = "/relay/v1/data/bidtraces/proposer_payload_delivered"

    @classmethod
    def received(cls, limit: int) -> str:
        return f"{cls.RECEIVED}?limit={limit}"

    @classmethod
    def delivered(cls, limit: int) -> str:
        return f"{cls.DELIVERED}?limit={limit}"


class FailoverClient:
    """
    Tries each candidate base in order until one returns a usable body.

    The elapsed budget is checked before every attempt; an attempt that has
    already started is allowed to finish even if the budget runs out while it
    is in flight.
    """

    def __init__(
        self,
        bases: Sequence[str],
        cache: TTLCache,
        negative_cache: NegativeCache,
        health: SourceHealth | None = None,
        budget: float = 2.5,
        request_timeout: float = 3.0,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic
    ) -> None:
        """
        Initialize the failover client.

        Args:
            bases: Ordered candidate base URLs
            cache: Positive cache keyed by request path
            negative_cache: Backoff cache keyed by request path
            health: Health record updated on success and terminal failure
            budget: Seconds allowed for the whole candidate iteration
            request_timeout: Per-request timeout in seconds
            client: Shared httpx client (one is created when omitted)
            clock: Monotonic clock used for the budget check
        """
        if not bases:
            raise ValueError("At least one candidate base URL is required")

        self.bases = list(bases)
        self.cache = cache
        self.negative_cache = negative_cache
        self.health = health
        self.budget = budget
        self.request_timeout = request_timeout
        self._clock = clock
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.request_timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def fetch(self, path: str) -> bytes:
        """
        Fetch ``path`` from the first candidate that answers with a body.

        Args:
            path: Request path including the query string

        Returns:
            Raw response body

        Raises:
            BackoffError: If the path failed everywhere within the negative TTL
            AllCandidatesFailedError: If no candidate produced a usable body
        """
        if self.negative_cache.check(path):
            err = BackoffError(path)
            self._record_error(err)
            raise err

        body, found = self.cache.get(path)
        if found:
            return body

        started = self._clock()
        attempts = 0
        last_error: Exception | None = None

        for base in self.bases:
            if self._clock() - started > self.budget:
                logger.warning(f"Relay budget exceeded after {attempts} attempts for {path}")
                break

            attempts += 1
            try:
                body = await self._attempt(base, path)
            except UpstreamError as e:
                last_error = e
                logger.debug(f"Candidate failed: {e}")
                continue

            self.cache.set(path, body)
            logger.info(f"Relay success from {base} after {self._clock() - started:.2f}s")
            if self.health:
                self.health.record_success()
            return body

        self.negative_cache.mark(path)
        err = AllCandidatesFailedError(path, attempts, len(self.bases), last_error)
        self._record_error(err)
        raise err

    async def fetch_json(self, path: str) -> Any | None:
        """
        Fetch and decode ``path``.

        Unavailability and malformed JSON both come back as None.
        """
        try:
            body = await self.fetch(path)
        except UpstreamError as e:
            logger.debug(f"No relay data for {path}: {e}")
            return None

        try:
            return json.loads(body)
        except ValueError as e:
            logger.warning(f"Malformed JSON from relays for {path}: {e}")
            return None

    async def _attempt(self, base: str, path: str) -> bytes:
        url = base.rstrip("/") + path
        try:
            response = await self.client.get(
                url,
                headers={"Accept": "application/json"},
                timeout=self.request_timeout
            )
        except httpx.HTTPError as e:
            raise UpstreamError(f"request failed for {base}: {e}") from e

        if not response.is_success:
            raise UpstreamError(f"non-2xx status {response.status_code} from {base}")

        body = response.content
        if not body.strip():
            raise UpstreamError(f"empty response from {base}")
        return body

    def _record_error(self, err: Exception) -> None:
        if self.health:
            self.health.record_error(err)
