"""
Shared data models for ethflow.

This module contains the immutable records passed between the mempool
watcher, the swap/sandwich pipeline and the snapshot compositor.
"""

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True, slots=True)
class PendingTx:
    """A transaction observed before inclusion in a block.

    Quantities are kept as the hex strings the node returned.

    Attributes:
        hash: Transaction hash
        from_address: Sender address
        to: Recipient address (None for contract creation)
        value: Value in wei, hex encoded
        gas_price: Legacy gas price, hex encoded
        gas: Gas limit, hex encoded
        nonce: Sender nonce, hex encoded
        input: Calldata
        observed_at: Unix timestamp at which the watcher saw it
    """
    hash: str
    from_address: str
    to: str | None = None
    value: str = "0x0"
    gas_price: str | None = None
    gas: str | None = None
    nonce: str = "0x0"
    input: str = "0x"
    observed_at: int = 0

    @classmethod
    def from_rpc(cls, tx: dict[str, Any], observed_at: int) -> "PendingTx":
        """Build from an ``eth_getTransactionByHash`` style object."""
        return cls(
            hash=tx.get("hash", ""),
            from_address=tx.get("from", ""),
            to=tx.get("to"),
            value=tx.get("value", "0x0"),
            gas_price=tx.get("gasPrice"),
            gas=tx.get("gas"),
            nonce=tx.get("nonce", "0x0"),
            input=tx.get("input", "0x"),
            observed_at=observed_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "hash": self.hash,
            "from": self.from_address,
            "to": self.to,
            "value": self.value,
            "gasPrice": self.gas_price,
            "gas": self.gas,
            "nonce": self.nonce,
            "input": self.input,
            "timestamp": self.observed_at,
        }


@dataclass(frozen=True, slots=True)
class MempoolSnapshot:
    """Point-in-time copy of the watcher's rolling buffer."""
    entries: tuple[PendingTx, ...] = field(default_factory=tuple)
    count: int = 0
    last_update: int = 0
    source: str = ""

    def trimmed(self, limit: int) -> "MempoolSnapshot":
        """Return a copy holding at most ``limit`` entries."""
        if len(self.entries) <= limit:
            return self
        return MempoolSnapshot(
            entries=self.entries[:limit],
            count=min(self.count, limit),
            last_update=self.last_update,
            source=self.source,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "pendingTxs": [tx.to_dict() for tx in self.entries],
            "count": self.count,
            "lastUpdate": self.last_update,
            "source": self.source,
        }


@dataclass(frozen=True, slots=True)
class SwapEvent:
    """A swap log found in a block, positioned by ``(tx_index, log_index)``."""
    tx_hash: str
    from_address: str
    pool_address: str
    tx_index: int
    log_index: int

    @property
    def position(self) -> tuple[int, int]:
        return (self.tx_index, self.log_index)


@dataclass(frozen=True, slots=True)
class Sandwich:
    """An attacker-victim-attacker triple in one pool."""
    pool: str
    attacker: str
    victim: str
    pre_tx: str
    victim_tx: str
    post_tx: str
    block: str

    def to_dict(self) -> dict[str, str]:
        return {
            "pool": self.pool,
            "attacker": self.attacker,
            "victim": self.victim,
            "preTx": self.pre_tx,
            "victimTx": self.victim_tx,
            "postTx": self.post_tx,
            "block": self.block,
        }


@dataclass(frozen=True, slots=True)
class SandwichReport:
    """Result of scanning one block for sandwiches."""
    block: str
    block_hash: str
    swap_count: int
    sandwiches: tuple[Sandwich, ...] = field(default_factory=tuple)

    def to_dict(self, limit: int | None = None) -> dict[str, Any]:
        sandwiches = self.sandwiches if limit is None else self.sandwiches[:limit]
        return {
            "block": self.block,
            "blockHash": self.block_hash,
            "swapCount": self.swap_count,
            "sandwiches": [s.to_dict() for s in sandwiches],
        }
