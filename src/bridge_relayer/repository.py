"""
Persistence for queued transactions and chain watermarks.

The in-memory RetryQueue stays authoritative while the process runs; the
repositories here only receive copies so state can be restored after a
crash.
"""

import dataclasses
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Iterable

from sqlalchemy import BigInteger, Boolean, Engine, Integer, String, Text, create_engine, delete, func, or_, select, update
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column

from .models import BridgeTransaction, QueuedTransaction, TransactionStatus

logger = logging.getLogger(__name__)

DEFAULT_BATCH_LIMIT = 100


def now_ms() -> int:
    return int(time.time() * 1000)


def _is_retry_ready(entry: QueuedTransaction, now: int) -> bool:
    if entry.status == TransactionStatus.PENDING:
        return True
    return (
        entry.status == TransactionStatus.FAILED
        and entry.retry_count < entry.max_retries
        and (entry.next_retry_at is None or entry.next_retry_at <= now)
    )


def empty_stats() -> dict[str, int]:
    stats = {"total": 0}
    stats.update({status.value: 0 for status in TransactionStatus})
    return stats


class TransactionRepository(ABC):
    """Durable copy of the retry queue."""

    @abstractmethod
    def save(self, entry: QueuedTransaction) -> None:
        """Insert or replace the entry with the same id."""

    @abstractmethod
    def update_status(
        self, entry_id: str, status: TransactionStatus, settlement_hash: str | None = None
    ) -> None:
        ...

    @abstractmethod
    def get_by_id(self, entry_id: str) -> QueuedTransaction | None:
        ...

    @abstractmethod
    def get_by_status(self, status: TransactionStatus) -> list[QueuedTransaction]:
        ...

    @abstractmethod
    def get_pending_or_retry_ready(
        self, now: int | None = None, limit: int = DEFAULT_BATCH_LIMIT
    ) -> list[QueuedTransaction]:
        """PENDING entries and FAILED entries due for retry, oldest first."""

    @abstractmethod
    def get_by_user(self, address: str, limit: int = DEFAULT_BATCH_LIMIT) -> list[QueuedTransaction]:
        """Entries for a recipient address (case-insensitive), newest first."""

    @abstractmethod
    def cleanup_older_than(self, age_ms: int, now: int | None = None) -> int:
        """Delete COMPLETED entries last updated more than age_ms ago.

        Returns:
            Number of deleted entries
        """

    @abstractmethod
    def get_stats(self) -> dict[str, int]:
        ...

    def close(self) -> None:
        """Release resources held by the repository."""


class InMemoryTransactionRepository(TransactionRepository):
    """Dictionary-backed repository for development and tests."""

    def __init__(self) -> None:
        self._entries: dict[str, QueuedTransaction] = {}
        self._lock = threading.Lock()

    def save(self, entry: QueuedTransaction) -> None:
        with self._lock:
            self._entries[entry.id] = dataclasses.replace(entry)

    def update_status(
        self, entry_id: str, status: TransactionStatus, settlement_hash: str | None = None
    ) -> None:
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                logger.warning(f"Status update for unknown transaction {entry_id}")
                return
            entry.status = status
            entry.updated_at = now_ms()
            if settlement_hash is not None:
                entry.settlement_hash = settlement_hash

    def get_by_id(self, entry_id: str) -> QueuedTransaction | None:
        with self._lock:
            entry = self._entries.get(entry_id)
            return dataclasses.replace(entry) if entry else None

    def _select(self, entries: Iterable[QueuedTransaction]) -> list[QueuedTransaction]:
        return [dataclasses.replace(e) for e in entries]

    def get_by_status(self, status: TransactionStatus) -> list[QueuedTransaction]:
        with self._lock:
            matching = [e for e in self._entries.values() if e.status == status]
        return self._select(sorted(matching, key=lambda e: e.created_at))

    def get_pending_or_retry_ready(
        self, now: int | None = None, limit: int = DEFAULT_BATCH_LIMIT
    ) -> list[QueuedTransaction]:
        now = now_ms() if now is None else now
        with self._lock:
            ready = [e for e in self._entries.values() if _is_retry_ready(e, now)]
        return self._select(sorted(ready, key=lambda e: e.created_at)[:limit])

    def get_by_user(self, address: str, limit: int = DEFAULT_BATCH_LIMIT) -> list[QueuedTransaction]:
        address = address.lower()
        with self._lock:
            matching = [e for e in self._entries.values() if e.transaction.user.lower() == address]
        return self._select(sorted(matching, key=lambda e: e.created_at, reverse=True)[:limit])

    def cleanup_older_than(self, age_ms: int, now: int | None = None) -> int:
        cutoff = (now_ms() if now is None else now) - age_ms
        with self._lock:
            expired = [
                entry_id for entry_id, e in self._entries.items()
                if e.status == TransactionStatus.COMPLETED and e.updated_at < cutoff
            ]
            for entry_id in expired:
                del self._entries[entry_id]
        return len(expired)

    def get_stats(self) -> dict[str, int]:
        stats = empty_stats()
        with self._lock:
            for entry in self._entries.values():
                stats["total"] += 1
                stats[entry.status.value] += 1
        return stats


class Base(DeclarativeBase):
    pass


class TransactionRecord(Base):
    """Persisted queue entry.

    Amount and nonce are stored as strings to avoid precision loss;
    timestamps are epoch milliseconds.
    """
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(200), primary_key=True)
    token: Mapped[str] = mapped_column(String(42))
    user: Mapped[str] = mapped_column(String(42))
    amount: Mapped[str] = mapped_column(String(78))
    transaction_id: Mapped[str] = mapped_column(String(66))
    source_chain_id: Mapped[int] = mapped_column(BigInteger)
    target_chain_id: Mapped[int] = mapped_column(BigInteger)
    nonce: Mapped[str] = mapped_column(String(78))
    status: Mapped[str] = mapped_column(String(16), index=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[int] = mapped_column(BigInteger, index=True)
    updated_at: Mapped[int] = mapped_column(BigInteger)
    next_retry_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    completed_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    recovered: Mapped[bool] = mapped_column(Boolean, default=False)

    @classmethod
    def from_entry(cls, entry: QueuedTransaction) -> "TransactionRecord":
        tx = entry.transaction
        return cls(
            id=entry.id,
            token=tx.token,
            user=tx.user,
            amount=str(tx.amount),
            transaction_id=tx.transaction_id,
            source_chain_id=tx.source_chain_id,
            target_chain_id=tx.target_chain_id,
            nonce=str(tx.nonce),
            status=entry.status.value,
            retry_count=entry.retry_count,
            max_retries=entry.max_retries,
            last_error=entry.last_error,
            created_at=entry.created_at,
            updated_at=entry.updated_at,
            next_retry_at=entry.next_retry_at,
            completed_tx_hash=entry.settlement_hash,
            recovered=entry.recovered,
        )

    def to_entry(self) -> QueuedTransaction:
        return QueuedTransaction(
            id=self.id,
            transaction=BridgeTransaction(
                token=self.token,
                user=self.user,
                amount=int(self.amount),
                transaction_id=self.transaction_id,
                source_chain_id=self.source_chain_id,
                target_chain_id=self.target_chain_id,
                nonce=int(self.nonce),
            ),
            status=TransactionStatus(self.status),
            retry_count=self.retry_count,
            max_retries=self.max_retries,
            created_at=self.created_at,
            updated_at=self.updated_at,
            last_error=self.last_error,
            next_retry_at=self.next_retry_at,
            settlement_hash=self.completed_tx_hash,
            recovered=bool(self.recovered),
        )


class ChainStateRecord(Base):
    """Last fully processed block per chain."""
    __tablename__ = "relayer_state"

    chain_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    last_processed_block: Mapped[int] = mapped_column(BigInteger)
    updated_at: Mapped[int] = mapped_column(BigInteger)


def create_database_engine(url: str) -> Engine:
    """Create an engine for url and make sure the tables exist."""
    engine = create_engine(url)
    Base.metadata.create_all(engine)
    logger.info(f"Database initialized ({engine.url.get_backend_name()})")
    return engine


class SqlTransactionRepository(TransactionRepository):
    """SQLAlchemy-backed repository, usable with any SQLAlchemy URL."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @classmethod
    def from_url(cls, url: str) -> "SqlTransactionRepository":
        return cls(create_database_engine(url))

    def save(self, entry: QueuedTransaction) -> None:
        with Session(self.engine) as session, session.begin():
            session.merge(TransactionRecord.from_entry(entry))

    def update_status(
        self, entry_id: str, status: TransactionStatus, settlement_hash: str | None = None
    ) -> None:
        values: dict[str, object] = {"status": status.value, "updated_at": now_ms()}
        if settlement_hash is not None:
            values["completed_tx_hash"] = settlement_hash

        with Session(self.engine) as session, session.begin():
            session.execute(
                update(TransactionRecord).where(TransactionRecord.id == entry_id).values(**values)
            )

    def get_by_id(self, entry_id: str) -> QueuedTransaction | None:
        with Session(self.engine) as session:
            record = session.get(TransactionRecord, entry_id)
            return record.to_entry() if record else None

    def _fetch(self, statement) -> list[QueuedTransaction]:
        with Session(self.engine) as session:
            return [record.to_entry() for record in session.scalars(statement)]

    def get_by_status(self, status: TransactionStatus) -> list[QueuedTransaction]:
        return self._fetch(
            select(TransactionRecord)
            .where(TransactionRecord.status == status.value)
            .order_by(TransactionRecord.created_at)
        )

    def get_pending_or_retry_ready(
        self, now: int | None = None, limit: int = DEFAULT_BATCH_LIMIT
    ) -> list[QueuedTransaction]:
        now = now_ms() if now is None else now
        return self._fetch(
            select(TransactionRecord)
            .where(or_(
                TransactionRecord.status == TransactionStatus.PENDING.value,
                (TransactionRecord.status == TransactionStatus.FAILED.value)
                & (TransactionRecord.retry_count < TransactionRecord.max_retries)
                & or_(
                    TransactionRecord.next_retry_at.is_(None),
                    TransactionRecord.next_retry_at <= now,
                ),
            ))
            .order_by(TransactionRecord.created_at)
            .limit(limit)
        )

    def get_by_user(self, address: str, limit: int = DEFAULT_BATCH_LIMIT) -> list[QueuedTransaction]:
        return self._fetch(
            select(TransactionRecord)
            .where(func.lower(TransactionRecord.user) == address.lower())
            .order_by(TransactionRecord.created_at.desc())
            .limit(limit)
        )

    def cleanup_older_than(self, age_ms: int, now: int | None = None) -> int:
        cutoff = (now_ms() if now is None else now) - age_ms
        with Session(self.engine) as session, session.begin():
            result = session.execute(
                delete(TransactionRecord).where(
                    TransactionRecord.status == TransactionStatus.COMPLETED.value,
                    TransactionRecord.updated_at < cutoff,
                )
            )
        deleted = result.rowcount or 0
        if deleted:
            logger.info(f"Deleted {deleted} completed transactions from database")
        return deleted

    def get_stats(self) -> dict[str, int]:
        stats = empty_stats()
        with Session(self.engine) as session:
            rows = session.execute(
                select(TransactionRecord.status, func.count()).group_by(TransactionRecord.status)
            )
            for status, count in rows:
                stats[status] = count
                stats["total"] += count
        return stats

    def close(self) -> None:
        self.engine.dispose()


class WatermarkStore(ABC):
    """Per-chain last processed block."""

    @abstractmethod
    def get_last_processed_block(self, chain_id: int) -> int | None:
        ...

    @abstractmethod
    def update_last_processed_block(self, chain_id: int, block_number: int) -> None:
        ...


class InMemoryWatermarkStore(WatermarkStore):
    def __init__(self) -> None:
        self._blocks: dict[int, int] = {}

    def get_last_processed_block(self, chain_id: int) -> int | None:
        return self._blocks.get(chain_id)

    def update_last_processed_block(self, chain_id: int, block_number: int) -> None:
        self._blocks[chain_id] = block_number


class SqlWatermarkStore(WatermarkStore):
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get_last_processed_block(self, chain_id: int) -> int | None:
        with Session(self.engine) as session:
            record = session.get(ChainStateRecord, chain_id)
            return record.last_processed_block if record else None

    def update_last_processed_block(self, chain_id: int, block_number: int) -> None:
        with Session(self.engine) as session, session.begin():
            session.merge(ChainStateRecord(
                chain_id=chain_id,
                last_processed_block=block_number,
                updated_at=now_ms(),
            ))
