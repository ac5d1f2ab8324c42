"""
Retry queue for settlement transactions.

The queue owns every QueuedTransaction and is the only place where their
state changes. All transitions run under one lock; callers only ever see
copies. An optional TransactionRepository receives write-behind copies for
crash recovery, and its failures never reach the relay path.
"""

import dataclasses
import logging
import threading
import time
from collections import OrderedDict
from typing import Callable

from .models import BridgeTransaction, QueuedTransaction, TransactionStatus
from .repository import TransactionRepository, empty_stats

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3


def _system_clock() -> int:
    return int(time.time() * 1000)


class RetryQueue:
    """In-memory queue implementing the PENDING/PROCESSING/COMPLETED/FAILED
    state machine with exponential backoff."""

    def __init__(
        self,
        repository: TransactionRepository | None = None,
        clock: Callable[[], int] = _system_clock,
    ) -> None:
        """
        Initialize the queue.

        Args:
            repository: Optional durable copy of the queue
            clock: Returns the current time in epoch milliseconds
        """
        self.repository = repository
        self._clock = clock
        self._entries: OrderedDict[str, QueuedTransaction] = OrderedDict()
        self._claimed: set[str] = set()
        self._lock = threading.RLock()

    def _persist(self, action: str, method: str, *args) -> None:
        if self.repository is None:
            return
        try:
            getattr(self.repository, method)(*args)
        except Exception as e:
            logger.error(f"Failed to persist {action}: {e}", exc_info=True)

    def _lookup_stored(self, entry_id: str) -> QueuedTransaction | None:
        if self.repository is None:
            return None
        try:
            return self.repository.get_by_id(entry_id)
        except Exception as e:
            logger.error(f"Failed to look up stored transaction {entry_id}: {e}", exc_info=True)
            return None

    def add(self, tx: BridgeTransaction, max_retries: int = DEFAULT_MAX_RETRIES) -> QueuedTransaction:
        """Enqueue a transaction unless an entry with the same id exists.

        An id that is no longer in memory but was persisted by an earlier run
        is taken over from the repository instead of being queued again, so a
        replayed event never overwrites a settled or exhausted record.

        Returns:
            Copy of the new or the already existing entry
        """
        entry_id = tx.queue_id
        with self._lock:
            existing = self._entries.get(entry_id)
            if existing is not None:
                logger.debug(f"Transaction {entry_id} already queued ({existing.status.value})")
                return dataclasses.replace(existing)

            stored = self._lookup_stored(entry_id)
            if stored is not None:
                if stored.status == TransactionStatus.PROCESSING:
                    stored.status = TransactionStatus.PENDING
                    stored.recovered = True
                self._entries[entry_id] = stored
                logger.info(f"Transaction {entry_id} already stored ({stored.status.value})")
                return dataclasses.replace(stored)

            now = self._clock()
            entry = QueuedTransaction(
                id=entry_id,
                transaction=tx,
                status=TransactionStatus.PENDING,
                retry_count=0,
                max_retries=max_retries,
                created_at=now,
                updated_at=now,
            )
            self._entries[entry_id] = entry
            snapshot = dataclasses.replace(entry)

        logger.info(f"Queued transaction {entry_id}")
        self._persist(f"new transaction {entry_id}", "save", snapshot)
        return snapshot

    def _is_eligible(self, entry: QueuedTransaction, now: int) -> bool:
        if entry.id in self._claimed:
            return False
        if entry.status == TransactionStatus.PENDING:
            return True
        return (
            entry.status == TransactionStatus.FAILED
            and entry.retry_count < entry.max_retries
            and (entry.next_retry_at is None or entry.next_retry_at <= now)
        )

    def get_next(self) -> QueuedTransaction | None:
        """First eligible entry in insertion order, without claiming it."""
        with self._lock:
            now = self._clock()
            for entry in self._entries.values():
                if self._is_eligible(entry, now):
                    return dataclasses.replace(entry)
        return None

    def mark_processing(self, entry_id: str) -> QueuedTransaction:
        """Claim an entry for processing.

        Raises:
            KeyError: If the id is unknown
            ValueError: If the entry is already claimed, COMPLETED or out of
                retries
        """
        with self._lock:
            entry = self._entries[entry_id]
            if entry_id in self._claimed:
                raise ValueError(f"Transaction {entry_id} is already being processed")
            retryable = (
                entry.status == TransactionStatus.FAILED and entry.retry_count < entry.max_retries
            )
            if entry.status != TransactionStatus.PENDING and not retryable:
                raise ValueError(
                    f"Transaction {entry_id} cannot be processed from {entry.status.value} "
                    f"(attempt {entry.retry_count}/{entry.max_retries})"
                )

            entry.status = TransactionStatus.PROCESSING
            entry.updated_at = self._clock()
            entry.next_retry_at = None
            self._claimed.add(entry_id)
            snapshot = dataclasses.replace(entry)

        self._persist(
            f"processing state of {entry_id}",
            "update_status",
            entry_id, TransactionStatus.PROCESSING,
        )
        return snapshot

    def claim_next(self) -> QueuedTransaction | None:
        """Select and claim the next eligible entry in one step."""
        with self._lock:
            entry = self.get_next()
            if entry is None:
                return None
            return self.mark_processing(entry.id)

    def mark_completed(self, entry_id: str, settlement_hash: str | None) -> QueuedTransaction:
        """Record a confirmed settlement and release the claim."""
        with self._lock:
            entry = self._entries[entry_id]
            entry.status = TransactionStatus.COMPLETED
            entry.updated_at = self._clock()
            if settlement_hash is not None:
                entry.settlement_hash = settlement_hash
            entry.next_retry_at = None
            entry.last_error = None
            entry.recovered = False
            self._claimed.discard(entry_id)
            snapshot = dataclasses.replace(entry)

        logger.info(f"Transaction {entry_id} completed: {settlement_hash}")
        self._persist(
            f"completion of {entry_id}",
            "update_status",
            entry_id, TransactionStatus.COMPLETED, settlement_hash,
        )
        return snapshot

    def mark_failed(
        self,
        entry_id: str,
        error: str,
        base_delay_ms: int,
        outcome_unknown: bool = False,
    ) -> QueuedTransaction:
        """Record a failed attempt and schedule the next one.

        The n-th failure schedules a retry base_delay_ms * 2^(n-1) ms after
        now; once retry_count reaches max_retries the entry stays FAILED
        without a next_retry_at.

        Args:
            outcome_unknown: The attempt may have reached the target chain
                (it was interrupted or its receipt never arrived); the entry
                is flagged recovered until it completes, so later attempts
                reconcile first
        """
        with self._lock:
            entry = self._entries[entry_id]
            now = self._clock()
            entry.status = TransactionStatus.FAILED
            entry.retry_count += 1
            entry.last_error = error
            entry.updated_at = now
            if outcome_unknown:
                entry.recovered = True
            self._claimed.discard(entry_id)

            if entry.retry_count < entry.max_retries:
                entry.next_retry_at = now + base_delay_ms * 2 ** (entry.retry_count - 1)
            else:
                entry.next_retry_at = None
            snapshot = dataclasses.replace(entry)

        if snapshot.next_retry_at is None:
            logger.error(
                f"Transaction {entry_id} exhausted after {snapshot.retry_count} attempts: {error}"
            )
        else:
            logger.warning(
                f"Transaction {entry_id} failed (attempt {snapshot.retry_count}/"
                f"{snapshot.max_retries}), retrying in "
                f"{snapshot.next_retry_at - now} ms: {error}"
            )
        self._persist(f"failure of {entry_id}", "save", snapshot)
        return snapshot

    def cleanup(self, max_age_ms: int = 3_600_000) -> int:
        """Remove COMPLETED entries last updated more than max_age_ms ago.

        Returns:
            Number of removed entries
        """
        with self._lock:
            now = self._clock()
            expired = [
                entry_id for entry_id, entry in self._entries.items()
                if entry.status == TransactionStatus.COMPLETED
                and now - entry.updated_at > max_age_ms
            ]
            for entry_id in expired:
                del self._entries[entry_id]

        if expired:
            logger.info(f"Cleaned up {len(expired)} completed transactions")
        return len(expired)

    def restore(self) -> int:
        """Load unfinished entries from the repository.

        Entries left PROCESSING by a previous run are reset to PENDING and
        flagged as recovered, since their on-chain outcome is unknown.

        Returns:
            Number of restored entries
        """
        if self.repository is None:
            return 0

        stored: list[QueuedTransaction] = []
        for status in (TransactionStatus.PENDING, TransactionStatus.PROCESSING, TransactionStatus.FAILED):
            stored.extend(self.repository.get_by_status(status))
        stored.sort(key=lambda e: e.created_at)

        restored = 0
        recovered: list[QueuedTransaction] = []
        with self._lock:
            for entry in stored:
                if entry.id in self._entries:
                    continue
                if entry.status == TransactionStatus.PROCESSING:
                    entry.status = TransactionStatus.PENDING
                    entry.recovered = True
                    recovered.append(entry)
                self._entries[entry.id] = entry
                restored += 1

        for entry in recovered:
            logger.warning(f"Transaction {entry.id} was in flight at shutdown, will reconcile")
            self._persist(
                f"recovery of {entry.id}",
                "update_status",
                entry.id, TransactionStatus.PENDING,
            )

        logger.info(f"Restored {restored} transactions ({len(recovered)} recovered in-flight)")
        return restored

    def get(self, entry_id: str) -> QueuedTransaction | None:
        with self._lock:
            entry = self._entries.get(entry_id)
            return dataclasses.replace(entry) if entry else None

    def get_by_status(self, status: TransactionStatus) -> list[QueuedTransaction]:
        with self._lock:
            return [dataclasses.replace(e) for e in self._entries.values() if e.status == status]

    def exhausted(self) -> list[QueuedTransaction]:
        """FAILED entries that will not be retried automatically."""
        with self._lock:
            return [dataclasses.replace(e) for e in self._entries.values() if e.is_exhausted]

    def get_stats(self) -> dict[str, int]:
        stats = empty_stats()
        stats["exhausted"] = 0
        with self._lock:
            for entry in self._entries.values():
                stats["total"] += 1
                stats[entry.status.value] += 1
                if entry.is_exhausted:
                    stats["exhausted"] += 1
        return stats

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def __len__(self) -> int:
        return self.size()

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._claimed.clear()
