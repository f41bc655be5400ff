"""
ethflow package.

Ethereum transaction-flow aggregator: mempool, MEV relays, consensus
finality and sandwich detection behind one cached snapshot.
"""

from .config import AppConfig
from .models import MempoolSnapshot, PendingTx, Sandwich, SandwichReport
from .service import EthFlowService
from .snapshot import SnapshotCompositor

__all__ = [
    "AppConfig",
    "EthFlowService",
    "SnapshotCompositor",
    "MempoolSnapshot",
    "PendingTx",
    "Sandwich",
    "SandwichReport",
]
__version__ = "0.1.0"
