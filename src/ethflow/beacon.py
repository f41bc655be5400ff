"""
Consensus-layer REST API client.

Responses are cached together with their HTTP status: successful answers
under the positive TTL, error answers under the shorter error TTL so a
rate-limited endpoint is not hammered.
"""

import json
import logging
from typing import Any

import httpx

from .cache import TTLCache
from .errors import UpstreamError
from .failover import FailoverClient, RelayPaths
from .health import SourceHealth

logger = logging.getLogger(__name__)

FINALITY_PATH = "/eth/v1/beacon/states/finalized/finality_checkpoints"
GENESIS_PATH = "/eth/v1/beacon/genesis"
HEADERS_PATH = "/eth/v1/beacon/headers"


class BeaconClient:
    """Caching client for a single consensus API base URL."""

    def __init__(
        self,
        base_url: str,
        cache: TTLCache,
        health: SourceHealth | None = None,
        ok_ttl: float = 20.0,
        error_ttl: float = 10.0,
        request_timeout: float = 3.0,
        client: httpx.AsyncClient | None = None
    ) -> None:
        self.base_url = base_url
        self.cache = cache
        self.health = health
        self.ok_ttl = ok_ttl
        self.error_ttl = error_ttl
        self.request_timeout = request_timeout
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

    async def get(self, path: str) -> tuple[bytes, int]:
        """
        GET ``path`` from the consensus API.

        Args:
            path: Request path including the query string

        Returns:
            Tuple of (body, status)

        Raises:
            UpstreamError: If the request could not be made at all
        """
        entry = self.cache.get_entry(path)
        if entry is not None:
            return entry.body, entry.status or 0

        url = self.base_url.rstrip("/") + path
        try:
            response = await self.client.get(url, timeout=self.request_timeout)
        except httpx.HTTPError as e:
            err = UpstreamError(f"beacon request failed for {path}: {e}")
            if self.health:
                self.health.record_error(err)
            raise err from e

        body = response.content
        status = response.status_code
        ttl = self.ok_ttl if response.is_success else self.error_ttl
        self.cache.set(path, body, ttl=ttl, status=status)

        if self.health:
            if response.is_success:
                self.health.record_success()
            else:
                self.health.record_error(UpstreamError(f"HTTP {status}"))

        return body, status

    async def get_json(self, path: str) -> Any | None:
        """Fetch ``path`` and decode it; errors and non-2xx answers yield None."""
        try:
            body, status = await self.get(path)
        except UpstreamError as e:
            logger.debug(f"No beacon data for {path}: {e}")
            return None

        if status // 100 != 2:
            logger.debug(f"Beacon returned HTTP {status} for {path}")
            return None

        try:
            return json.loads(body)
        except ValueError as e:
            logger.warning(f"Malformed JSON from beacon for {path}: {e}")
            return None

    async def finality_checkpoints(self) -> Any | None:
        return await self.get_json(FINALITY_PATH)

    async def genesis(self) -> Any | None:
        return await self.get_json(GENESIS_PATH)

    async def headers(self, limit: int = 20) -> Any | None:
        return await self.get_json(f"{HEADERS_PATH}?limit={limit}")

    async def enriched_headers(self, relay: FailoverClient, limit: int = 20) -> dict[str, Any] | None:
        """
        Recent proposed blocks merged with the relay bids that paid for them.

        Bids are matched to beacon headers by slot; headers without a matching
        bid are returned with only their slot and proposer index.

        Returns:
            ``{"headers": [...], "count": n}`` or None when the consensus API
            has nothing to offer
        """
        headers = await self.headers(limit)
        if not isinstance(headers, dict):
            return None

        bids = await relay.fetch_json(RelayPaths.delivered(50))
        bids_by_slot: dict[str, dict[str, Any]] = {}
        if isinstance(bids, list):
            for bid in bids:
                if isinstance(bid, dict) and isinstance(bid.get("slot"), str):
                    bids_by_slot[bid["slot"]] = bid

        enriched = []
        for item in headers.get("data") or []:
            message = ((item or {}).get("header") or {}).get("message") or {}
            slot = message.get("slot")
            row: dict[str, Any] = {
                "slot": slot,
                "proposer_index": message.get("proposer_index"),
            }
            if (bid := bids_by_slot.get(slot)) is not None:
                row.update({
                    "builder_payment_eth": bid.get("value"),
                    "block_number": bid.get("block_number"),
                    "gas_used": bid.get("gas_used"),
                    "gas_limit": bid.get("gas_limit"),
                    "num_tx": bid.get("num_tx"),
                    "builder_pubkey": bid.get("builder_pubkey"),
                    "proposer_fee_recipient": bid.get("proposer_fee_recipient"),
                })
            enriched.append(row)

        return {"headers": enriched, "count": len(enriched)}
