"""
Bridge Relayer package.

Relays lock events between two EVM chains: watches each chain's bridge
contract, signs settlement instructions and submits them to the target
chain with retries.
"""

from .config import RelayerConfig
from .models import BridgeTransaction, ChainEvent, QueuedTransaction, TransactionStatus
from .relayer import RelayerService
from .retry_queue import RetryQueue

__all__ = [
    "BridgeTransaction",
    "ChainEvent",
    "QueuedTransaction",
    "RelayerConfig",
    "RelayerService",
    "RetryQueue",
    "TransactionStatus",
]
__version__ = "0.1.0"
