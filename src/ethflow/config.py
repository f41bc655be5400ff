"""Configuration management for ethflow.

This module provides type-safe configuration dataclasses with validation
for the ethflow aggregator. Configuration is loaded from environment
variables; numeric settings outside their accepted range fall back to the
default instead of failing startup.
"""

import logging
import os
from dataclasses import dataclass, field
from urllib.parse import urlparse

from .failover import parse_relay_urls
from .utils.sanitize import sanitize_url

# Get logger for this module
logger = logging.getLogger(__name__)

DEFAULT_RPC_HTTP_URL = "https://eth-mainnet.g.alchemy.com/v2/demo"
DEFAULT_BEACON_API_URL = "https://beacon.prylabs.net"
DEFAULT_RELAY_URLS = ",".join([
    "https://0xa15b5e1a7e51010198401aab7e@aestus.live",
    "https://0xa7ab7e550200401aab7e@agnostic-relay.net",
    "https://0x8b5d2e1a7e51010198401aab7e@bloxroute.max-profit.blxrbdn.com",
    "https://0xb0b07e550200401aab7e@bloxroute.regulated.blxrbdn.com",
    "https://0xac6e7e51010198401aab7e@boost-relay.flashbots.net",
    "https://0x98650e550200401aab7e@mainnet-relay.securerpc.com",
    "https://0xa1559e51010198401aab7e@relay.ultrasound.money",
    "https://0x8c7d3e550200401aab7e@relay.wenmerge.com",
    "https://0x8c4edc51010198401aab7e@titanrelay.xyz",
])

TRUTHY = {"1", "true", "yes", "on"}


def env_int(name: str, default: int, minimum: int, maximum: int) -> int:
    """Read an integer in ``[minimum, maximum]``; anything else gives ``default``."""
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={raw!r}, using {default}")
        return default
    if not minimum <= value <= maximum:
        logger.warning(f"Ignoring out-of-range {name}={value} (allowed {minimum}-{maximum}), using {default}")
        return default
    return value


def env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in TRUTHY


def _check_url(url: str, schemes: tuple[str, ...], setting: str) -> None:
    parsed = urlparse(url)
    if parsed.scheme not in schemes or not parsed.netloc:
        raise ValueError(
            f"Invalid {setting}: {sanitize_url(url)}. "
            f"Expected a {' or '.join(schemes)} URL"
        )


@dataclass(frozen=True, slots=True)
class UpstreamConfig:
    """Upstream endpoints.

    Attributes:
        rpc_http_url: Execution node JSON-RPC over HTTP(S)
        rpc_ws_url: Execution node WebSocket endpoint (enables push mempool mode)
        beacon_api_url: Consensus node REST API base
        relay_urls: Ordered MEV relay bases tried by the failover client
    """

    rpc_http_url: str = DEFAULT_RPC_HTTP_URL
    rpc_ws_url: str | None = None
    beacon_api_url: str = DEFAULT_BEACON_API_URL
    relay_urls: tuple[str, ...] = field(default_factory=lambda: tuple(parse_relay_urls(DEFAULT_RELAY_URLS)))

    def __post_init__(self) -> None:
        """Validate upstream URLs."""
        _check_url(self.rpc_http_url, ("http", "https"), "RPC_HTTP_URL")
        if self.rpc_ws_url:
            _check_url(self.rpc_ws_url, ("ws", "wss"), "RPC_WS_URL")
        _check_url(self.beacon_api_url, ("http", "https"), "BEACON_API_URL")

        if not self.relay_urls:
            raise ValueError("At least one relay URL is required (RELAY_URLS)")
        for relay in self.relay_urls:
            _check_url(relay, ("http", "https"), "relay URL")


@dataclass(frozen=True, slots=True)
class CacheConfig:
    """Cache lifetimes in seconds."""
    cache_ttl: int = 20  # successful upstream responses
    error_cache_ttl: int = 10  # failed paths and error responses
    snapshot_ttl: int = 30  # serialised snapshots

    def __post_init__(self) -> None:
        """Validate cache configuration."""
        for name in ("cache_ttl", "error_cache_ttl", "snapshot_ttl"):
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")


@dataclass(frozen=True, slots=True)
class BudgetConfig:
    """Timeouts and work limits."""
    upstream_timeout: float = 3.0  # per HTTP request
    rpc_timeout: float = 5.0  # per JSON-RPC call
    relay_budget: float = 2.5  # whole relay failover iteration
    snapshot_deadline: float = 4.5  # soft wait for concurrent snapshot reads
    sandwich_timeout: float = 6.0
    sandwich_max_tx: int = 120  # transactions scanned per block

    def __post_init__(self) -> None:
        """Validate budgets."""
        for name in ("upstream_timeout", "rpc_timeout", "relay_budget", "snapshot_deadline", "sandwich_timeout"):
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")
        if self.sandwich_max_tx <= 0:
            raise ValueError(f"Sandwich max tx must be positive, got {self.sandwich_max_tx}")


@dataclass(frozen=True, slots=True)
class MempoolConfig:
    """Mempool watcher settings."""
    disabled: bool = False
    buffer_size: int = 10
    poll_interval: float = 5.0  # seconds between polls without a WebSocket
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 60.0
    reconnect_log_interval: float = 30.0

    def __post_init__(self) -> None:
        """Validate mempool configuration."""
        if self.buffer_size <= 0:
            raise ValueError(f"Buffer size must be positive, got {self.buffer_size}")
        if self.poll_interval <= 0:
            raise ValueError(f"Poll interval must be positive, got {self.poll_interval}")
        if self.reconnect_base_delay <= 0:
            raise ValueError(f"Reconnect delay must be positive, got {self.reconnect_base_delay}")
        if self.reconnect_max_delay < self.reconnect_base_delay:
            raise ValueError(
                f"Reconnect ceiling ({self.reconnect_max_delay}s) is below "
                f"the base delay ({self.reconnect_base_delay}s)"
            )


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Main configuration for ethflow.

    Attributes:
        upstream: Endpoint configuration
        cache: Cache lifetimes
        budgets: Timeouts and work limits
        mempool: Mempool watcher settings
    """

    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    budgets: BudgetConfig = field(default_factory=BudgetConfig)
    mempool: MempoolConfig = field(default_factory=MempoolConfig)

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Load configuration from environment variables.

        Returns:
            AppConfig instance with loaded values

        Raises:
            ValueError: If a configured URL is invalid
        """
        upstream = UpstreamConfig(
            rpc_http_url=os.environ.get("RPC_HTTP_URL") or DEFAULT_RPC_HTTP_URL,
            rpc_ws_url=os.environ.get("RPC_WS_URL") or None,
            beacon_api_url=os.environ.get("BEACON_API_URL") or DEFAULT_BEACON_API_URL,
            relay_urls=tuple(parse_relay_urls(os.environ.get("RELAY_URLS", DEFAULT_RELAY_URLS))),
        )

        cache_ttl = env_int("CACHE_TTL_SECONDS", 20, 1, 300)
        # Snapshots follow an explicit CACHE_TTL_SECONDS, otherwise keep their own default
        snapshot_default = cache_ttl if os.environ.get("CACHE_TTL_SECONDS", "").strip() else 30
        cache = CacheConfig(
            cache_ttl=cache_ttl,
            error_cache_ttl=env_int("ERROR_CACHE_TTL_SECONDS", 10, 1, 120),
            snapshot_ttl=env_int("SNAPSHOT_TTL_SECONDS", snapshot_default, 1, 600),
        )

        # Values at or below 100ms would exhaust the budget before the first attempt
        relay_budget_ms = env_int("RELAY_BUDGET_MS", 2500, 101, 20000)
        max_tx_raw = os.environ.get("SANDWICH_MAX_TX", "").strip()
        try:
            sandwich_max_tx = min(1000, max(10, int(max_tx_raw))) if max_tx_raw else 120
        except ValueError:
            logger.warning(f"Ignoring non-integer SANDWICH_MAX_TX={max_tx_raw!r}, using 120")
            sandwich_max_tx = 120

        budgets = BudgetConfig(
            upstream_timeout=env_int("UPSTREAM_TIMEOUT_SECONDS", 3, 1, 30),
            rpc_timeout=env_int("RPC_TIMEOUT_SECONDS", 5, 1, 60),
            relay_budget=relay_budget_ms / 1000,
            sandwich_max_tx=sandwich_max_tx,
        )

        mempool = MempoolConfig(disabled=env_flag("MEMPOOL_DISABLE"))

        return cls(upstream=upstream, cache=cache, budgets=budgets, mempool=mempool)

    def log_config(self) -> None:
        """Log the configuration with credentials stripped from every URL."""
        logger.info("=" * 60)
        logger.info("ethflow Configuration")
        logger.info("=" * 60)

        logger.info("Upstreams:")
        logger.info(f"  RPC HTTP: {sanitize_url(self.upstream.rpc_http_url)}")
        logger.info(f"  RPC WS: {sanitize_url(self.upstream.rpc_ws_url) or '[NOT SET]'}")
        logger.info(f"  Beacon API: {sanitize_url(self.upstream.beacon_api_url)}")
        logger.info(f"  Relays ({len(self.upstream.relay_urls)}):")
        for relay in self.upstream.relay_urls:
            logger.info(f"    {sanitize_url(relay)}")

        logger.info("Caching:")
        logger.info(f"  Response TTL: {self.cache.cache_ttl} seconds")
        logger.info(f"  Error TTL: {self.cache.error_cache_ttl} seconds")
        logger.info(f"  Snapshot TTL: {self.cache.snapshot_ttl} seconds")

        logger.info("Budgets:")
        logger.info(f"  Upstream Timeout: {self.budgets.upstream_timeout} seconds")
        logger.info(f"  RPC Timeout: {self.budgets.rpc_timeout} seconds")
        logger.info(f"  Relay Budget: {self.budgets.relay_budget} seconds")
        logger.info(f"  Snapshot Deadline: {self.budgets.snapshot_deadline} seconds")
        logger.info(f"  Sandwich Max Tx: {self.budgets.sandwich_max_tx}")

        logger.info("Mempool:")
        logger.info(f"  Mode: {'DISABLED' if self.mempool.disabled else 'ENABLED'}")
        logger.info(f"  Buffer Size: {self.mempool.buffer_size}")

        logger.info("=" * 60)
