"""
Rolling pending-transaction watcher.

Keeps the N most recently observed pending transactions, sourced from a
WebSocket ``newPendingTransactions`` subscription or, when no WebSocket
endpoint is configured, by polling the node's ``pending`` pseudo-block.
"""

import asyncio
import logging
import threading
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from web3 import AsyncWeb3, Web3
from web3.providers import WebSocketProvider
from web3.utils.subscriptions import (
    PendingTxSubscription,
    PendingTxSubscriptionContext,
)

from .errors import RpcError
from .health import SourceHealth
from .models import MempoolSnapshot, PendingTx
from .rpc import RpcClient


class WatcherMode(Enum):
    """Operating mode, chosen once when the watcher is built."""
    DISABLED = "ws-disabled"
    PUSH = "ws"
    POLL = "http-polling"


def select_mode(disabled: bool, ws_url: str | None) -> WatcherMode:
    """Pick the watcher mode from configuration."""
    if disabled:
        return WatcherMode.DISABLED
    if ws_url:
        return WatcherMode.PUSH
    return WatcherMode.POLL


class MempoolWatcher:
    """
    Background watcher over the execution node's mempool.

    The buffer is published as an immutable MempoolSnapshot that writers
    replace wholesale under a lock, so readers always get a consistent copy.
    """

    def __init__(
        self,
        rpc: RpcClient,
        mode: WatcherMode,
        buffer_size: int = 10,
        poll_interval: float = 5.0,
        ws_url: str | None = None,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        log_interval: float = 30.0,
        health: SourceHealth | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ) -> None:
        """
        Initialize the watcher.

        Args:
            rpc: JSON-RPC client used for lookups and polling
            mode: Operating mode
            buffer_size: Number of pending transactions retained
            poll_interval: Seconds between polls in poll mode
            ws_url: WebSocket endpoint for push mode
            base_delay: First reconnect delay in seconds
            max_delay: Reconnect delay ceiling in seconds
            log_interval: Minimum seconds between reconnect warnings
            health: Health record for the mempool source
            clock: Wall clock, injectable for tests
            sleep: Sleep coroutine, injectable for tests
        """
        if mode is WatcherMode.PUSH and not ws_url:
            raise ValueError("Push mode requires a WebSocket URL")

        self.rpc = rpc
        self.mode = mode
        self.buffer_size = buffer_size
        self.poll_interval = poll_interval
        self.ws_url = ws_url
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.log_interval = log_interval
        self.health = health
        self._clock = clock
        self._sleep = sleep

        self._snapshot = MempoolSnapshot(source=mode.value)
        self._write_lock = threading.Lock()

        self._task: asyncio.Task | None = None
        self._running = False
        self._session_notifications = 0
        self._last_reconnect_log: float | None = None

        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

        if mode is WatcherMode.DISABLED:
            self._synthesize_placeholders()

    @property
    def is_running(self) -> bool:
        return self._running

    def current_snapshot(self) -> MempoolSnapshot:
        """Return a point-in-time copy of the rolling buffer."""
        return self._snapshot

    def start(self) -> None:
        """Spawn the background task (no-op in disabled mode)."""
        if self.mode is WatcherMode.DISABLED:
            self.logger.info("Mempool watcher disabled; serving placeholder transactions")
            return
        if self._running:
            self.logger.warning("Mempool watcher already running")
            return

        self._running = True
        runner = self._run_push if self.mode is WatcherMode.PUSH else self._run_poll
        self._task = asyncio.create_task(runner(), name=f"mempool-{self.mode.name.lower()}")
        self.logger.info(f"Mempool watcher started in {self.mode.name.lower()} mode")

    async def stop(self) -> None:
        """Stop the background task and wait for it to finish."""
        self._running = False
        task, self._task = self._task, None
        if task is None:
            return
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass  # Expected when cancelling
        self.logger.info("Mempool watcher stopped")

    # Disabled mode

    def _synthesize_placeholders(self) -> None:
        now = int(self._clock())
        entries = tuple(
            PendingTx(
                hash=f"0x{i + 1:064x}",
                from_address=f"0x{i * 1000:040x}",
                to=f"0x{i * 2000:040x}",
                value=hex((i + 1) * 10**18),
                observed_at=now - i * 10,
            )
            for i in range(self.buffer_size)
        )
        self._publish(MempoolSnapshot(
            entries=entries,
            count=len(entries),
            last_update=now,
            source=WatcherMode.DISABLED.value,
        ))

    # Push mode

    async def _run_push(self) -> None:
        """Supervise push sessions, reconnecting with exponential backoff."""
        delay = self.base_delay
        while self._running:
            self._session_notifications = 0
            error: Exception | None = None
            try:
                await self._push_session()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = e

            if not self._running:
                break

            if self._session_notifications > 0:
                delay = self.base_delay
            if error is not None and self.health:
                self.health.record_error(error)

            self._log_reconnect(error, delay)
            await self._sleep(delay)
            delay = min(delay * 2, self.max_delay)

    async def _push_session(self) -> None:
        """Run one subscription session until the connection drops."""
        async with AsyncWeb3(WebSocketProvider(self.ws_url, request_timeout=60)) as w3:
            self.logger.info("WebSocket connected, subscribing to pending transactions")
            subscription = PendingTxSubscription(
                label="pending-transactions",
                full_transactions=False,
                handler=self._pending_handler,
            )
            await w3.subscription_manager.subscribe([subscription])
            await w3.subscription_manager.handle_subscriptions()

    async def _pending_handler(self, handler_context: PendingTxSubscriptionContext) -> None:
        await self.handle_pending_hash(handler_context.result)

    async def handle_pending_hash(self, tx_hash: str | bytes) -> PendingTx | None:
        """
        Resolve a pending transaction hash and prepend it to the buffer.

        Args:
            tx_hash: Hash delivered by the subscription

        Returns:
            The buffered transaction, or None if the lookup came back empty
        """
        self._session_notifications += 1
        tx_hash_hex = Web3.to_hex(tx_hash) if isinstance(tx_hash, bytes) else tx_hash

        try:
            tx = await self.rpc.get_transaction(tx_hash_hex)
        except RpcError as e:
            self.logger.debug(f"Lookup failed for pending tx {tx_hash_hex[:10]}...: {e}")
            return None

        # Already mined or dropped from this node's pool.
        if not isinstance(tx, dict):
            return None

        pending = PendingTx.from_rpc(tx, observed_at=int(self._clock()))
        with self._write_lock:
            entries = (pending,) + self._snapshot.entries
            entries = entries[:self.buffer_size]
            self._snapshot = MempoolSnapshot(
                entries=entries,
                count=len(entries),
                last_update=pending.observed_at,
                source=WatcherMode.PUSH.value,
            )

        if self.health:
            self.health.record_success()
        return pending

    def _log_reconnect(self, error: Exception | None, delay: float) -> None:
        now = self._clock()
        reason = error if error is not None else "session ended"
        if self._last_reconnect_log is None or now - self._last_reconnect_log >= self.log_interval:
            self._last_reconnect_log = now
            self.logger.warning(f"Mempool subscription lost ({reason}); reconnecting in {delay}s")
        else:
            self.logger.debug(f"Mempool subscription lost ({reason}); reconnecting in {delay}s")

    # Poll mode

    async def _run_poll(self) -> None:
        while self._running:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error(f"Unexpected error polling pending block: {e}", exc_info=True)
            await self._sleep(self.poll_interval)

    async def poll_once(self) -> int:
        """
        Replace the buffer with the head of the node's pending block.

        Returns:
            Number of transactions now buffered (0 when nothing changed)
        """
        try:
            block = await self.rpc.get_block("pending", True)
        except RpcError as e:
            self.logger.warning(f"Failed to fetch pending block: {e}")
            if self.health:
                self.health.record_error(e)
            return 0

        transactions = block.get("transactions") if isinstance(block, dict) else None
        if not transactions:
            return 0

        now = int(self._clock())
        entries = tuple(
            PendingTx.from_rpc(tx, observed_at=now)
            for tx in transactions[:self.buffer_size]
            if isinstance(tx, dict)
        )
        if not entries:
            return 0

        self._publish(MempoolSnapshot(
            entries=entries,
            count=len(entries),
            last_update=now,
            source=WatcherMode.POLL.value,
        ))
        if self.health:
            self.health.record_success()

        self.logger.debug(f"Fetched {len(entries)} pending transactions")
        return len(entries)

    def _publish(self, snapshot: MempoolSnapshot) -> None:
        with self._write_lock:
            self._snapshot = snapshot
