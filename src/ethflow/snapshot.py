"""
Snapshot compositor.

Aggregates mempool, relay and consensus data into one serialised response.
Upstream reads run concurrently under a soft deadline; anything that has not
answered by then is left out rather than failing the snapshot. The serialised
bytes are cached whole, on top of the per-path caches of the clients below.
"""

import asyncio
import json
import logging
import time
from collections.abc import Callable
from typing import Any

from .beacon import BeaconClient
from .cache import TTLCache
from .errors import BlockFetchError, EthFlowError
from .failover import FailoverClient, RelayPaths
from .mempool import MempoolWatcher
from .models import MempoolSnapshot
from .sandwich import SandwichScanner

logger = logging.getLogger(__name__)

MIN_LIMIT = 1
MAX_LIMIT = 200

RECEIVED = "received"
DELIVERED = "delivered"
HEADERS = "headers"
FINALITY = "finality"


def clamp_limit(limit: int) -> int:
    return max(MIN_LIMIT, min(MAX_LIMIT, limit))


def headers_from_delivered(bids: list[Any], limit: int) -> dict[str, Any]:
    """
    Build the proposed-block view from delivered relay payloads.

    Used when no richer consensus source is available: the delivered bid
    traces already carry slot, proposer, gas and payment data.
    """
    rows = []
    for bid in bids:
        if not isinstance(bid, dict):
            continue
        rows.append({
            "slot": bid.get("slot"),
            "proposer_pubkey": bid.get("proposer_pubkey"),
            "proposer_index": "",
            "builder_payment_eth": bid.get("value"),
            "block_number": bid.get("block_number"),
            "gas_used": bid.get("gas_used"),
            "gas_limit": bid.get("gas_limit"),
            "num_tx": bid.get("num_tx"),
            "builder_pubkey": bid.get("builder_pubkey"),
            "block_hash": bid.get("block_hash"),
        })
        if len(rows) >= limit:
            break
    return {"headers": rows, "count": len(rows)}


class SnapshotCompositor:
    """Builds and caches merged snapshots."""

    def __init__(
        self,
        relay: FailoverClient,
        beacon: BeaconClient,
        mempool: MempoolWatcher | None,
        scanner: SandwichScanner | None,
        cache: TTLCache,
        sources: dict[str, Any] | None = None,
        deadline: float = 4.5,
        sandwich_timeout: float = 6.0,
        ttl: float = 30.0,
        clock: Callable[[], float] = time.time
    ) -> None:
        """
        Initialize the compositor.

        Args:
            relay: Failover client over the relay set
            beacon: Consensus API client
            mempool: Pending-transaction watcher (None for an empty view)
            scanner: Sandwich scanner (None disables analysis)
            cache: Whole-response cache
            sources: Sanitised upstream description included in responses
            deadline: Soft overall wait for the concurrent upstream reads
            sandwich_timeout: Separate budget for sandwich analysis
            ttl: Seconds a serialised snapshot is served from cache
            clock: Wall clock used for response timestamps
        """
        self.relay = relay
        self.beacon = beacon
        self.mempool = mempool
        self.scanner = scanner
        self.cache = cache
        self.sources = sources or {}
        self.deadline = deadline
        self.sandwich_timeout = sandwich_timeout
        self.ttl = ttl
        self._clock = clock
        # Abandoned tasks are kept referenced until they finish on their own.
        self._stragglers: set[asyncio.Task] = set()

    @staticmethod
    def cache_key(limit: int, include_sandwich: bool, block_tag: str) -> str:
        return f"limit={limit}|sandwich={str(include_sandwich).lower()}|block={block_tag}"

    async def build_snapshot(
        self,
        limit: int = 10,
        include_sandwich: bool = False,
        block_tag: str = "latest"
    ) -> bytes:
        """
        Build (or serve from cache) the merged snapshot.

        Args:
            limit: Maximum entries per list, clamped to [1, 200]
            include_sandwich: Whether to run sandwich analysis on ``block_tag``
            block_tag: Block number or tag for the sandwich analysis

        Returns:
            Serialised JSON bytes of ``{"data": {...}}``
        """
        started = time.monotonic()
        limit = clamp_limit(limit)
        block_tag = block_tag or "latest"
        key = self.cache_key(limit, include_sandwich, block_tag)

        body, found = self.cache.get(key)
        if found and body:
            return body

        results = await self._gather_upstream(limit)

        mempool = self.mempool.current_snapshot() if self.mempool else MempoolSnapshot()
        mempool = mempool.trimmed(limit)

        beacon_data: dict[str, Any] = {}
        if results.get(HEADERS) is not None:
            beacon_data["headers"] = results[HEADERS]
        if results.get(FINALITY) is not None:
            beacon_data["finality"] = results[FINALITY]

        response: dict[str, Any] = {
            "timestamp": int(self._clock()),
            "limit": limit,
            "mempool": mempool.to_dict(),
            "relays": {
                "received": results.get(RECEIVED) or [],
                "delivered": results.get(DELIVERED) or [],
            },
            "beacon": beacon_data,
            "sources": self.sources,
            "missing": sorted(name for name, value in results.items() if value is None),
        }

        if include_sandwich:
            response["mev"] = await self._analyse_sandwiches(block_tag, limit)

        body = json.dumps({"data": response}).encode()
        self.cache.set(key, body, ttl=self.ttl)
        logger.info(f"Snapshot built in {time.monotonic() - started:.2f}s ({len(body)} bytes)")
        return body

    async def _gather_upstream(self, limit: int) -> dict[str, Any]:
        """Run the four upstream reads concurrently; late ones count as missing."""
        tasks = {
            RECEIVED: asyncio.create_task(self._fetch_received(limit)),
            DELIVERED: asyncio.create_task(self._fetch_delivered(limit)),
            HEADERS: asyncio.create_task(self._fetch_headers(limit)),
            FINALITY: asyncio.create_task(self.beacon.finality_checkpoints()),
        }

        try:
            done, pending = await asyncio.wait(tasks.values(), timeout=self.deadline)
        except asyncio.CancelledError:
            # The caller went away; the reads are left to finish or to aclose()
            for task in tasks.values():
                if not task.done():
                    self._abandon(task)
            raise
        if pending:
            logger.warning(f"Snapshot deadline reached with {len(pending)} upstream reads outstanding")
            for task in pending:
                self._abandon(task)

        results: dict[str, Any] = {}
        for name, task in tasks.items():
            if task not in done:
                results[name] = None
            elif task.exception() is not None:
                logger.error(f"Snapshot {name} fetch failed: {task.exception()}")
                results[name] = None
            else:
                results[name] = task.result()
        return results

    async def _fetch_received(self, limit: int) -> list[Any] | None:
        received = await self.relay.fetch_json(RelayPaths.received(limit))
        if isinstance(received, list) and received:
            return received
        # Delivered payloads stand in for submissions when relays hide them.
        delivered = await self.relay.fetch_json(RelayPaths.delivered(limit))
        return delivered if isinstance(delivered, list) else None

    async def _fetch_delivered(self, limit: int) -> list[Any] | None:
        delivered = await self.relay.fetch_json(RelayPaths.delivered(limit))
        return delivered if isinstance(delivered, list) else None

    async def _fetch_headers(self, limit: int) -> dict[str, Any] | None:
        delivered = await self.relay.fetch_json(RelayPaths.delivered(limit))
        if not isinstance(delivered, list):
            return None
        return headers_from_delivered(delivered, limit)

    async def _analyse_sandwiches(self, block_tag: str, limit: int) -> dict[str, Any]:
        if self.scanner is None:
            return {"error": "mev analysis unavailable"}

        task = asyncio.create_task(self.scanner.scan(block_tag))
        done, _ = await asyncio.wait({task}, timeout=self.sandwich_timeout)
        if task not in done:
            logger.warning(f"Sandwich analysis for {block_tag} exceeded {self.sandwich_timeout}s")
            self._abandon(task)
            return {"error": "mev analysis timeout"}

        match task.exception():
            case None:
                return task.result().to_dict(limit=limit)
            case BlockFetchError() as e:
                logger.warning(f"Sandwich analysis skipped: {e}")
                return {"error": "block fetch failed"}
            case EthFlowError() as e:
                logger.warning(f"Sandwich analysis failed: {e}")
                return {"error": "receipt scan failed"}
            case e:
                logger.error(f"Sandwich analysis crashed: {e}", exc_info=e)
                return {"error": "mev analysis failed"}

    def _abandon(self, task: asyncio.Task) -> None:
        self._stragglers.add(task)
        task.add_done_callback(self._discard_straggler)

    def _discard_straggler(self, task: asyncio.Task) -> None:
        self._stragglers.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Abandoned upstream read finished with error: {task.exception()}")

    async def aclose(self) -> None:
        """Cancel any abandoned reads still in flight (used on shutdown)."""
        for task in list(self._stragglers):
            task.cancel()
        if self._stragglers:
            await asyncio.gather(*self._stragglers, return_exceptions=True)
        self._stragglers.clear()


