"""
Swap extraction and sandwich detection.

A sandwich is the same address swapping in a pool immediately before and
immediately after a different address swaps in that pool. Swaps are found by
matching the first log topic against the Uniswap V2 and V3 ``Swap`` event
signatures. This is a heuristic: arbitrage and market making can produce the
same shape.
"""

import logging
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from web3 import Web3

from .errors import BlockFetchError, RpcError
from .models import Sandwich, SandwichReport, SwapEvent
from .rpc import RpcClient

logger = logging.getLogger(__name__)


def event_topic(signature: str) -> str:
    """Keccak-256 topic hash of an event signature, lower-case hex with 0x."""
    return "0x" + Web3.keccak(text=signature).hex().removeprefix("0x").lower()


SWAP_TOPIC_V2 = event_topic("Swap(address,uint256,uint256,uint256,uint256,address)")
SWAP_TOPIC_V3 = event_topic("Swap(address,address,int256,int256,uint160,uint128,int24)")
SWAP_TOPICS = frozenset({SWAP_TOPIC_V2, SWAP_TOPIC_V3})

DEFAULT_MAX_TX = 120


def extract_swaps(
    block: Mapping[str, Any],
    receipts: Mapping[str, Mapping[str, Any] | None],
    max_tx: int = DEFAULT_MAX_TX
) -> list[SwapEvent]:
    """
    Collect swap events from a block's receipts.

    Pure function of its inputs: transactions are scanned in block order up
    to ``max_tx``, logs in receipt order, and the result is sorted by
    ``(tx_index, log_index)``.

    Args:
        block: Block object with full transactions
        receipts: Receipts keyed by transaction hash; missing or None
            receipts are skipped
        max_tx: Maximum number of transactions to scan

    Returns:
        Ordered list of swap events
    """
    swaps: list[SwapEvent] = []
    transactions = block.get("transactions") or []

    for tx_index, tx in enumerate(transactions[:max_tx]):
        if not isinstance(tx, Mapping):
            continue
        tx_hash = tx.get("hash") or ""
        receipt = receipts.get(tx_hash)
        if not receipt:
            continue

        for log_index, log in enumerate(receipt.get("logs") or []):
            topics = log.get("topics") or []
            if not topics:
                continue
            if str(topics[0]).lower() not in SWAP_TOPICS:
                continue

            swaps.append(SwapEvent(
                tx_hash=tx_hash.lower(),
                from_address=(tx.get("from") or "").lower(),
                pool_address=(log.get("address") or "").lower(),
                tx_index=tx_index,
                log_index=log_index,
            ))

    swaps.sort(key=lambda s: s.position)
    return swaps


def detect_sandwiches(swaps: Iterable[SwapEvent], block_label: str) -> list[Sandwich]:
    """
    Find attacker-victim-attacker triples per pool.

    Swaps are grouped by pool; within a pool each window of three consecutive
    swaps ``(pre, victim, post)`` is a sandwich when ``pre`` and ``post`` share
    a sender that differs from the victim's. After a match the scan resumes
    past all three swaps, so a window is never reused. Back-to-back attacks
    sharing swaps are therefore under-reported.

    Args:
        swaps: Swap events ordered by position in the block
        block_label: Block number or tag recorded on each result

    Returns:
        Detected sandwiches, pools in first-seen order
    """
    by_pool: dict[str, list[SwapEvent]] = {}
    for swap in swaps:
        by_pool.setdefault(swap.pool_address, []).append(swap)

    found: list[Sandwich] = []
    for pool, sequence in by_pool.items():
        i = 0
        while i + 2 < len(sequence):
            pre, victim, post = sequence[i], sequence[i + 1], sequence[i + 2]

            if (
                pre.from_address and victim.from_address and post.from_address
                and pre.from_address == post.from_address
                and pre.from_address != victim.from_address
            ):
                found.append(Sandwich(
                    pool=pool,
                    attacker=pre.from_address,
                    victim=victim.from_address,
                    pre_tx=pre.tx_hash,
                    victim_tx=victim.tx_hash,
                    post_tx=post.tx_hash,
                    block=block_label,
                ))
                i += 3
            else:
                i += 1

    return found


class SwapExtractor:
    """Fetches receipts for a block and extracts its swaps."""

    def __init__(self, rpc: RpcClient, max_tx: int = DEFAULT_MAX_TX) -> None:
        self.rpc = rpc
        self.max_tx = max_tx

    async def fetch_receipts(self, transactions: Sequence[Any]) -> dict[str, dict[str, Any]]:
        """
        Fetch receipts one by one, in block order.

        A receipt that cannot be fetched is left out; it never aborts the scan.
        """
        receipts: dict[str, dict[str, Any]] = {}
        for tx in transactions[:self.max_tx]:
            tx_hash = tx.get("hash") if isinstance(tx, Mapping) else None
            if not tx_hash:
                continue
            try:
                receipt = await self.rpc.get_receipt(tx_hash)
            except RpcError as e:
                logger.debug(f"Skipping receipt for {tx_hash[:10]}...: {e}")
                continue
            if isinstance(receipt, dict):
                receipts[tx_hash] = receipt
        return receipts

    async def extract(self, block: Mapping[str, Any]) -> list[SwapEvent]:
        receipts = await self.fetch_receipts(block.get("transactions") or [])
        return extract_swaps(block, receipts, max_tx=self.max_tx)


class SandwichScanner:
    """Block fetch, swap extraction and sandwich detection in one call."""

    def __init__(self, rpc: RpcClient, extractor: SwapExtractor | None = None) -> None:
        self.rpc = rpc
        self.extractor = extractor or SwapExtractor(rpc)

    async def fetch_block(self, block_tag: str) -> dict[str, Any]:
        try:
            block = await self.rpc.get_block(block_tag, True)
        except RpcError as e:
            raise BlockFetchError(f"block {block_tag} fetch failed: {e}") from e
        if not isinstance(block, dict):
            raise BlockFetchError(f"block {block_tag} not found")
        return block

    async def scan(self, block_tag: str = "latest") -> SandwichReport:
        """
        Scan one block for sandwiches.

        Raises:
            BlockFetchError: If the block itself cannot be fetched
        """
        block = await self.fetch_block(block_tag)
        block_number = block.get("number") or block_tag

        swaps = await self.extractor.extract(block)
        sandwiches = detect_sandwiches(swaps, block_number)

        logger.info(
            f"Block {block_number}: {len(swaps)} swaps, {len(sandwiches)} sandwiches"
        )
        return SandwichReport(
            block=block_number,
            block_hash=block.get("hash") or "",
            swap_count=len(swaps),
            sandwiches=tuple(sandwiches),
        )
