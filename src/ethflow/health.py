"""
Per-source health tracking.

Each upstream category (execution RPC, consensus API, relay set, mempool
watcher) owns one SourceHealth record for the lifetime of the process. The
records are plain objects handed to the components that update them.
"""

import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

HEALTH_WINDOW_SECONDS = 300.0

RPC = "rpc"
BEACON = "beacon"
RELAY = "relay"
MEMPOOL = "mempool"


@dataclass(frozen=True, slots=True)
class HealthStatus:
    """Point-in-time view of one source's health."""
    name: str
    healthy: bool
    last_success: float | None
    last_error: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "healthy": self.healthy,
            "lastSuccess": self.last_success,
            "lastError": self.last_error,
        }


class SourceHealth:
    """
    Rolling health record for a single upstream source.

    A success sets ``last_success`` and clears ``last_error``; an error sets
    ``last_error`` and clears ``last_success``. The source stays healthy while
    it has no error, or while its most recent success is younger than the
    recency window.
    """

    def __init__(
        self,
        name: str,
        clock: Callable[[], float] = time.time,
        window: float = HEALTH_WINDOW_SECONDS
    ) -> None:
        self.name = name
        self.window = window
        self._clock = clock
        self._last_success: float | None = None
        self._last_error: Exception | None = None
        # Survives record_error so recency is measured from the last real success.
        self._recent_success: float | None = None
        self._lock = threading.Lock()

    @property
    def last_success(self) -> float | None:
        return self._last_success

    @property
    def last_error(self) -> Exception | None:
        return self._last_error

    def record_success(self) -> None:
        now = self._clock()
        with self._lock:
            self._last_success = now
            self._recent_success = now
            self._last_error = None

    def record_error(self, err: Exception | None) -> None:
        with self._lock:
            self._last_error = err
            self._last_success = None
        if err is not None:
            logger.debug(f"{self.name} source error: {err}")

    def is_healthy(self) -> bool:
        if self._last_error is None:
            return True
        recent = self._recent_success
        return recent is not None and self._clock() - recent < self.window

    def status(self) -> HealthStatus:
        err = self._last_error
        return HealthStatus(
            name=self.name,
            healthy=self.is_healthy(),
            last_success=self._last_success,
            last_error=str(err) if err is not None else None,
        )


class HealthRegistry:
    """Owns one SourceHealth per upstream category and summarises them."""

    CATEGORIES = (BEACON, RELAY, RPC, MEMPOOL)

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self.sources: dict[str, SourceHealth] = {
            name: SourceHealth(name, clock=clock) for name in self.CATEGORIES
        }

    def __getitem__(self, name: str) -> SourceHealth:
        return self.sources[name]

    @property
    def rpc(self) -> SourceHealth:
        return self.sources[RPC]

    @property
    def beacon(self) -> SourceHealth:
        return self.sources[BEACON]

    @property
    def relay(self) -> SourceHealth:
        return self.sources[RELAY]

    @property
    def mempool(self) -> SourceHealth:
        return self.sources[MEMPOOL]

    def is_live(self) -> bool:
        return True

    def is_ready(self) -> bool:
        """Ready when the consensus API and the execution RPC are both healthy."""
        return self.beacon.is_healthy() and self.rpc.is_healthy()

    def report(self, statuses: Iterable[HealthStatus] | None = None) -> dict[str, Any]:
        """
        Build the overall health report.

        Args:
            statuses: Pre-computed statuses (defaults to every tracked source)

        Returns:
            Dictionary with overall status, per-source statuses and a summary
        """
        if statuses is None:
            statuses = [source.status() for source in self.sources.values()]
        statuses = list(statuses)

        total = len(statuses)
        healthy = sum(1 for s in statuses if s.healthy)

        if healthy == total:
            overall = "healthy"
        elif healthy > 0:
            overall = "degraded"
        else:
            overall = "unhealthy"

        return {
            "status": overall,
            "timestamp": int(self._clock()),
            "dataSources": [s.to_dict() for s in statuses],
            "summary": {
                "total": total,
                "healthy": healthy,
                "unhealthy": total - healthy,
            },
        }
