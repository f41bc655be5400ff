"""
Single-transaction tracker.

Follows one transaction from the mempool to finality: economics, receipt
status, block inclusion with neighbouring transactions, the relay payload
that delivered the block and the consensus slot with its finality.
Every enrichment step is best effort; a failed lookup leaves its section
empty instead of failing the whole result.
"""

import logging
from typing import Any

from .beacon import BeaconClient
from .errors import RpcError
from .failover import FailoverClient, RelayPaths
from .rpc import RpcClient

logger = logging.getLogger(__name__)

SECONDS_PER_SLOT = 12
SLOTS_PER_EPOCH = 32
NEIGHBOUR_SPAN = 2
RELAY_LOOKBACK = 200


def parse_quantity(value: Any) -> int | None:
    """Parse a hex (``0x``-prefixed) or decimal quantity; None if unparsable."""
    if isinstance(value, int):
        return value
    if not isinstance(value, str) or not value:
        return None
    try:
        return int(value, 16) if value.startswith("0x") else int(value)
    except ValueError:
        return None


def slot_at(block_timestamp: int, genesis_time: int) -> int:
    if block_timestamp < genesis_time:
        return 0
    return (block_timestamp - genesis_time) // SECONDS_PER_SLOT


def is_slot_finalized(slot: int, finalized_epoch: int) -> bool:
    return slot <= finalized_epoch * SLOTS_PER_EPOCH + SLOTS_PER_EPOCH - 1


def neighbouring_transactions(transactions: list[Any], index: int) -> list[dict[str, Any]]:
    """Up to two transactions either side of ``index``, the transaction itself included."""
    start = max(0, index - NEIGHBOUR_SPAN)
    end = min(len(transactions), index + NEIGHBOUR_SPAN + 1)
    neighbours = []
    for i in range(start, end):
        tx = transactions[i] if isinstance(transactions[i], dict) else {}
        neighbours.append({
            "index": i,
            "hash": tx.get("hash"),
            "from": tx.get("from"),
            "to": tx.get("to"),
            "value": tx.get("value"),
        })
    return neighbours


class TxTracker:
    """Looks up a transaction and enriches it from every upstream."""

    def __init__(self, rpc: RpcClient, relay: FailoverClient, beacon: BeaconClient) -> None:
        self.rpc = rpc
        self.relay = relay
        self.beacon = beacon

    async def track(self, tx_hash: str) -> dict[str, Any] | None:
        """
        Track a transaction by hash.

        Args:
            tx_hash: Transaction hash

        Returns:
            Tracking result, or None if the node does not know the transaction

        Raises:
            ValueError: If ``tx_hash`` is empty
        """
        if not tx_hash:
            raise ValueError("Transaction hash is required")

        try:
            tx = await self.rpc.get_transaction(tx_hash)
        except RpcError as e:
            logger.warning(f"Transaction lookup failed for {tx_hash[:10]}...: {e}")
            return None
        if not isinstance(tx, dict):
            return None

        pending = tx.get("blockNumber") is None
        economics: dict[str, Any] = {"value": tx.get("value"), "gas_limit": tx.get("gas")}
        for source_key, key in (
            ("gasPrice", "gas_price"),
            ("maxFeePerGas", "max_fee_per_gas"),
            ("maxPriorityFeePerGas", "max_priority_fee_per_gas"),
        ):
            if tx.get(source_key) is not None:
                economics[key] = tx[source_key]

        result: dict[str, Any] = {
            "hash": tx.get("hash"),
            "from": tx.get("from"),
            "to": tx.get("to"),
            "economics": economics,
            "status": {"pending": pending},
            "pbs_relay": None,
            "beacon": None,
        }
        if pending:
            return result

        receipt = await self._receipt(tx["hash"])
        if receipt is not None:
            economics["gas_used"] = receipt.get("gasUsed")
            economics["effective_gas_price"] = receipt.get("effectiveGasPrice")
            result["status"] = {"pending": False, "success": receipt.get("status") == "0x1"}

        result["inclusion"] = await self._inclusion(tx, result)
        return result

    async def _receipt(self, tx_hash: str) -> dict[str, Any] | None:
        try:
            receipt = await self.rpc.get_receipt(tx_hash)
        except RpcError as e:
            logger.debug(f"Receipt lookup failed for {tx_hash[:10]}...: {e}")
            return None
        return receipt if isinstance(receipt, dict) else None

    async def _inclusion(self, tx: dict[str, Any], result: dict[str, Any]) -> dict[str, Any]:
        block_tag = tx["blockNumber"]
        inclusion: dict[str, Any] = {"block_number": block_tag}
        if tx.get("transactionIndex") is not None:
            inclusion["transaction_index"] = tx["transactionIndex"]

        try:
            block = await self.rpc.get_block(block_tag, True)
        except RpcError as e:
            logger.debug(f"Block lookup failed for {block_tag}: {e}")
            return inclusion
        if not isinstance(block, dict):
            return inclusion

        transactions = block.get("transactions") or []
        inclusion.update({
            "block_hash": block.get("hash"),
            "timestamp": block.get("timestamp"),
            "miner": block.get("miner"),
            "block_gas_used": block.get("gasUsed"),
            "block_gas_limit": block.get("gasLimit"),
            "total_transactions": len(transactions),
        })

        tx_index = parse_quantity(tx.get("transactionIndex"))
        if tx_index is not None:
            inclusion["neighboring_transactions"] = neighbouring_transactions(transactions, tx_index)

        block_number = parse_quantity(block_tag)
        if block_number is None:
            return inclusion

        result["pbs_relay"] = await self._relay_entry(block_number)
        result["beacon"] = await self._beacon_slot(parse_quantity(block.get("timestamp")) or 0)
        return inclusion

    async def _relay_entry(self, block_number: int) -> dict[str, Any] | None:
        entries = await self.relay.fetch_json(RelayPaths.delivered(RELAY_LOOKBACK))
        if not isinstance(entries, list):
            return None
        for entry in entries:
            if isinstance(entry, dict) and entry.get("block_number") == str(block_number):
                return {
                    "builder_pubkey": entry.get("builder_pubkey"),
                    "proposer_pubkey": entry.get("proposer_pubkey"),
                    "value": entry.get("value"),
                    "relay": entry.get("relay"),
                }
        return None

    async def _beacon_slot(self, block_timestamp: int) -> dict[str, Any] | None:
        genesis = await self.beacon.genesis()
        if not isinstance(genesis, dict):
            return None
        genesis_time = parse_quantity((genesis.get("data") or {}).get("genesis_time")) or 0

        finality = await self.beacon.finality_checkpoints()
        if not isinstance(finality, dict):
            return None
        finalized = ((finality.get("data") or {}).get("finalized") or {})
        epoch = parse_quantity(finalized.get("epoch")) or 0

        slot = slot_at(block_timestamp, genesis_time)
        return {
            "slot": slot,
            "is_finalized": is_slot_finalized(slot, epoch),
            "finalized_epoch": epoch,
        }
