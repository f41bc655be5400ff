"""
ethflow service.

This module wires the upstream clients, caches, health records, mempool
watcher and analysis components together and owns their lifecycle.
"""

import asyncio
import logging
from typing import Any

import httpx

from .beacon import BeaconClient, HEADERS_PATH
from .cache import NegativeCache, TTLCache
from .config import AppConfig
from .errors import UpstreamError
from .failover import FailoverClient, RelayPaths
from .health import HealthRegistry, HealthStatus, MEMPOOL
from .mempool import MempoolWatcher, WatcherMode, select_mode
from .rpc import RpcClient, normalize_block_tag
from .sandwich import SandwichScanner, SwapExtractor
from .snapshot import SnapshotCompositor, clamp_limit
from .tracker import TxTracker
from .utils.sanitize import sources_info

logger = logging.getLogger(__name__)


class EthFlowService:
    """
    Owns every component of the aggregator.

    Caches and health records are created here and handed to the components
    that use them; nothing is shared through module state.
    """

    STATUS_LOG_INTERVAL = 30  # seconds

    def __init__(self, config: AppConfig):
        """
        Initialize the service.

        Args:
            config: Application configuration
        """
        self.config = config
        self.running = False
        self.shutdown_event = asyncio.Event()

        self.health = HealthRegistry()

        # Relay and beacon keep separate caches; relay failures back off per path.
        self.relay_cache = TTLCache(config.cache.cache_ttl)
        self.relay_backoff = NegativeCache(config.cache.error_cache_ttl)
        self.beacon_cache = TTLCache(config.cache.cache_ttl)
        self.snapshot_cache = TTLCache(config.cache.snapshot_ttl)

        self._init_clients()
        self._init_components()

    def _init_clients(self) -> None:
        upstream = self.config.upstream
        budgets = self.config.budgets

        self.rpc = RpcClient(
            upstream.rpc_http_url,
            health=self.health.rpc,
            timeout=budgets.rpc_timeout,
        )
        self.relay = FailoverClient(
            upstream.relay_urls,
            cache=self.relay_cache,
            negative_cache=self.relay_backoff,
            health=self.health.relay,
            budget=budgets.relay_budget,
            request_timeout=budgets.upstream_timeout,
        )
        self.beacon = BeaconClient(
            upstream.beacon_api_url,
            cache=self.beacon_cache,
            health=self.health.beacon,
            ok_ttl=self.config.cache.cache_ttl,
            error_ttl=self.config.cache.error_cache_ttl,
            request_timeout=budgets.upstream_timeout,
        )

    def _init_components(self) -> None:
        mempool_config = self.config.mempool
        mode = select_mode(mempool_config.disabled, self.config.upstream.rpc_ws_url)

        self.mempool = MempoolWatcher(
            self.rpc,
            mode,
            buffer_size=mempool_config.buffer_size,
            poll_interval=mempool_config.poll_interval,
            ws_url=self.config.upstream.rpc_ws_url,
            base_delay=mempool_config.reconnect_base_delay,
            max_delay=mempool_config.reconnect_max_delay,
            log_interval=mempool_config.reconnect_log_interval,
            health=self.health.mempool,
        )
        self.scanner = SandwichScanner(
            self.rpc,
            SwapExtractor(self.rpc, max_tx=self.config.budgets.sandwich_max_tx),
        )
        self.compositor = SnapshotCompositor(
            relay=self.relay,
            beacon=self.beacon,
            mempool=self.mempool,
            scanner=self.scanner,
            cache=self.snapshot_cache,
            sources=sources_info(self.config.upstream),
            deadline=self.config.budgets.snapshot_deadline,
            sandwich_timeout=self.config.budgets.sandwich_timeout,
            ttl=self.config.cache.snapshot_ttl,
        )
        self.tracker = TxTracker(self.rpc, self.relay, self.beacon)

        logger.info(f"Initialized components with mempool in {mode.name.lower()} mode")

    @classmethod
    def from_env(cls) -> "EthFlowService":
        """
        Create a service from environment variables.

        Raises:
            ValueError: If the configuration is invalid
        """
        config = AppConfig.from_env()
        config.log_config()
        return cls(config)

    # Operations

    async def build_snapshot(self, limit: int = 10, include_sandwich: bool = False,
                             block_tag: str = "latest") -> bytes:
        return await self.compositor.build_snapshot(
            limit=limit,
            include_sandwich=include_sandwich,
            block_tag=normalize_block_tag(block_tag),
        )

    async def detect_sandwiches(self, block_tag: str = "latest") -> dict[str, Any]:
        """
        Scan one block for sandwiches.

        Raises:
            BlockFetchError: If the block cannot be fetched
        """
        report = await self.scanner.scan(normalize_block_tag(block_tag))
        return report.to_dict()

    async def relay_fetch(self, path: str) -> bytes:
        """Fetch a relay data path through the failover client."""
        return await self.relay.fetch(path)

    async def beacon_headers(self, limit: int = 20) -> dict[str, Any] | None:
        """
        Recent consensus headers enriched with the relay bids that paid for them.

        Returns:
            ``{"headers": [...], "count": n}``, or None when the consensus API
            has no headers to offer
        """
        return await self.beacon.enriched_headers(self.relay, clamp_limit(limit))

    async def track_tx(self, tx_hash: str) -> dict[str, Any] | None:
        return await self.tracker.track(tx_hash)

    async def health_report(self) -> dict[str, Any]:
        """
        Probe every upstream and summarise their health.

        Probes run concurrently; their outcome lands in the health records
        through the clients, so failures here are only logged.
        """
        await asyncio.gather(
            self._probe_beacon(),
            self._probe_relay(),
            self._probe_rpc(),
        )

        snapshot = self.mempool.current_snapshot()
        mempool_ok = snapshot.count > 0 or snapshot.source == WatcherMode.DISABLED.value
        mempool_health = self.health[MEMPOOL]
        if mempool_ok:
            mempool_health.record_success()
        else:
            mempool_health.record_error(None)
        mempool_status = mempool_health.status()
        mempool_status = HealthStatus(
            name=mempool_status.name,
            healthy=mempool_ok,
            last_success=mempool_status.last_success,
            last_error=mempool_status.last_error,
        )

        statuses = [
            self.health.beacon.status(),
            self.health.relay.status(),
            self.health.rpc.status(),
            mempool_status,
        ]
        return self.health.report(statuses)

    def is_ready(self) -> bool:
        return self.health.is_ready()

    async def _probe_beacon(self) -> None:
        # Bypasses the cache-backed helpers so the probe reflects the upstream now.
        try:
            response = await self.beacon.client.get(
                self.beacon.base_url.rstrip("/") + f"{HEADERS_PATH}?limit=1",
                timeout=self.beacon.request_timeout,
            )
        except httpx.HTTPError as e:
            self.health.beacon.record_error(UpstreamError(f"beacon probe failed: {e}"))
            return
        if response.is_success:
            self.health.beacon.record_success()
        else:
            self.health.beacon.record_error(UpstreamError(f"beacon probe HTTP {response.status_code}"))

    async def _probe_relay(self) -> None:
        try:
            await self.relay.fetch(RelayPaths.delivered(1))
        except UpstreamError as e:
            logger.debug(f"Relay probe failed: {e}")

    async def _probe_rpc(self) -> None:
        try:
            await self.rpc.block_number()
        except (UpstreamError, ValueError, TypeError) as e:
            logger.debug(f"RPC probe failed: {e}")

    # Lifecycle

    def start(self) -> None:
        """Start background work (the mempool watcher)."""
        self.running = True
        self.mempool.start()

    def stop(self) -> None:
        """Request shutdown of ``run``."""
        self.running = False
        self.shutdown_event.set()

    async def aclose(self) -> None:
        """Stop background work and release network clients."""
        await self.mempool.stop()
        await self.compositor.aclose()
        await self.relay.aclose()
        await self.beacon.aclose()
        await self.rpc.aclose()

    async def _periodic_status_logger(self) -> None:
        """Log status periodically while running."""
        while self.running:
            await asyncio.sleep(self.STATUS_LOG_INTERVAL)
            snapshot = self.mempool.current_snapshot()
            unhealthy = [name for name, source in self.health.sources.items() if not source.is_healthy()]
            logger.info(
                f"Status: {snapshot.count} pending txs buffered ({snapshot.source}), "
                f"{len(self.relay_cache)} relay paths cached, "
                f"unhealthy sources: {', '.join(unhealthy) or 'none'}"
            )

    async def run(self) -> None:
        """Run the watcher and status logger until ``stop()`` is called."""
        logger.info("ethflow starting...")
        self.start()
        status_task = asyncio.create_task(self._periodic_status_logger())

        try:
            await self.shutdown_event.wait()
        finally:
            self.running = False
            if not status_task.done():
                status_task.cancel()
                try:
                    await status_task
                except asyncio.CancelledError:
                    pass  # Expected when cancelling
            await self.aclose()
            logger.info("ethflow stopped")

