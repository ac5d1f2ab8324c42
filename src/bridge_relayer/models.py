"""
Shared data models for the Bridge Relayer.

This module contains the event, transaction and queue entry types passed
between the watcher, builder, queue and processor.
"""

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any


class EventKind(str, Enum):
    """Bridge contract events the relayer listens for."""
    TOKENS_LOCKED = "TokensLocked"
    TOKENS_MINTED = "TokensMinted"
    TOKENS_UNLOCKED = "TokensUnlocked"


class TransactionStatus(str, Enum):
    """Lifecycle states of a queued transaction."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ChainEvent:
    """Represents a decoded bridge event from one chain.

    Only TokensLocked drives settlement; TokensMinted and TokensUnlocked
    are confirmation signals.

    Attributes:
        kind: Which bridge event this is
        block_number: Block number where the event was emitted
        log_index: Position of the log within the block
        transaction_hash: Hash of the transaction that emitted the event
        source_chain_id: Chain the event was observed on
        target_chain_id: Destination chain (same as source for confirmations)
        token: Token contract address
        user: User address
        amount: Token amount in chain-native precision
        nonce: Per-transfer uniqueness value emitted by the contract
    """
    kind: EventKind
    block_number: int
    log_index: int
    transaction_hash: str
    source_chain_id: int
    target_chain_id: int
    token: str
    user: str
    amount: int
    nonce: int

    def __str__(self) -> str:
        return (
            f"{self.kind.value}(chain={self.source_chain_id}, "
            f"block={self.block_number}, "
            f"tx={self.transaction_hash[:10]}...)"
        )

    @property
    def unique_key(self) -> tuple[int, str, int]:
        """Identity of the log entry on its chain."""
        return (self.source_chain_id, self.transaction_hash, self.log_index)


@dataclass(frozen=True, slots=True)
class BridgeTransaction:
    """Settlement intent derived once from a TokensLocked event.

    Attributes:
        token: Token contract address
        user: Recipient address
        amount: Amount in chain-native precision
        transaction_id: Hash of the source lock transaction (idempotency key)
        source_chain_id: Chain the tokens were locked on
        target_chain_id: Chain the settlement is submitted to
        nonce: Lock nonce emitted by the source bridge
    """
    token: str
    user: str
    amount: int
    transaction_id: str
    source_chain_id: int
    target_chain_id: int
    nonce: int

    @property
    def queue_id(self) -> str:
        """Deterministic queue identifier for this transfer."""
        return f"{self.source_chain_id}-{self.target_chain_id}-{self.transaction_id}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return asdict(self)


@dataclass(slots=True)
class QueuedTransaction:
    """A BridgeTransaction together with its relay state.

    Instances are owned by the RetryQueue; everything handed out of the
    queue is a copy.

    Attributes:
        id: Deterministic id derived from chain ids and transaction id
        transaction: The immutable settlement intent
        status: Current lifecycle state
        retry_count: Number of failed attempts so far
        max_retries: Attempts allowed before the entry is exhausted
        created_at: Epoch milliseconds when the entry was queued
        updated_at: Epoch milliseconds of the last state transition
        last_error: Reason of the most recent failure
        next_retry_at: Epoch milliseconds after which a FAILED entry may retry
        settlement_hash: Target chain transaction hash once COMPLETED
        recovered: Outcome of an earlier attempt is unknown, so the next
            attempt checks the target chain before resubmitting
    """
    id: str
    transaction: BridgeTransaction
    status: TransactionStatus
    retry_count: int
    max_retries: int
    created_at: int
    updated_at: int
    last_error: str | None = None
    next_retry_at: int | None = None
    settlement_hash: str | None = None
    recovered: bool = False

    @property
    def is_exhausted(self) -> bool:
        return (
            self.status == TransactionStatus.FAILED
            and self.retry_count >= self.max_retries
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass(frozen=True, slots=True)
class SubmitResult:
    """Outcome of a settlement submission.

    Attributes:
        success: Whether the settlement was confirmed on-chain
        tx_hash: Settlement transaction hash, when one was sent
        error: Human-readable failure reason
    """
    success: bool
    tx_hash: str | None = None
    error: str | None = None

    @classmethod
    def ok(cls, tx_hash: str) -> "SubmitResult":
        return cls(success=True, tx_hash=tx_hash)

    @classmethod
    def failed(cls, error: str, tx_hash: str | None = None) -> "SubmitResult":
        return cls(success=False, tx_hash=tx_hash, error=error)
