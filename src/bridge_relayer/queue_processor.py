"""Queue processing for the Bridge Relayer.

The processor runs two independent loops: a processing tick that hands
the next eligible queue entry to a worker, and a cleanup tick that sweeps
old COMPLETED entries from the queue and the repository.
"""

import asyncio
import logging
from typing import Any, Mapping

from .config import ProcessorConfig
from .errors import MissingChainComponentError
from .models import QueuedTransaction
from .repository import TransactionRepository
from .retry_queue import RetryQueue
from .signer import TransactionSigner
from .submitter import TransactionSubmitter

logger = logging.getLogger(__name__)


class QueueProcessor:
    """Signs and submits queued transactions, one worker per entry."""

    def __init__(
        self,
        queue: RetryQueue,
        signers: Mapping[int, TransactionSigner],
        submitters: Mapping[int, TransactionSubmitter],
        config: ProcessorConfig | None = None,
        repository: TransactionRepository | None = None,
    ) -> None:
        """
        Initialize the processor.

        Args:
            queue: The shared retry queue
            signers: Validator signers keyed by source chain id
            submitters: Submitters keyed by target chain id
            config: Processor settings
            repository: Repository swept by the cleanup tick (optional)
        """
        self.queue = queue
        self.signers = signers
        self.submitters = submitters
        self.config = config or ProcessorConfig()
        self.repository = repository

        self._running = False
        self._loop_tasks: list[asyncio.Task] = []
        self._in_flight: set[asyncio.Task] = set()

        self.processed_count = 0
        self.success_count = 0
        self.failure_count = 0
        self.reconciled_count = 0

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start the processing and cleanup loops."""
        if self._running:
            logger.debug("Queue processor already running")
            return

        self._running = True
        self._loop_tasks = [
            asyncio.create_task(self._processing_loop(), name="queue-processing"),
            asyncio.create_task(self._cleanup_loop(), name="queue-cleanup"),
        ]
        logger.info(
            f"Queue processor started (interval {self.config.processing_interval_ms} ms, "
            f"{self.config.max_concurrent_submissions} worker(s))"
        )

    async def stop(self) -> None:
        """Stop both loops, then let in-flight submissions finish.

        Workers still running after shutdown_timeout are cancelled and their
        entries are recorded as failed attempts.
        """
        if not self._running and not self._loop_tasks and not self._in_flight:
            return

        self._running = False
        for task in self._loop_tasks:
            task.cancel()
        await asyncio.gather(*self._loop_tasks, return_exceptions=True)
        self._loop_tasks = []

        if self._in_flight:
            logger.info(f"Waiting for {len(self._in_flight)} in-flight submission(s)")
            _, pending = await asyncio.wait(
                set(self._in_flight), timeout=self.config.shutdown_timeout
            )
            if pending:
                logger.warning(
                    f"{len(pending)} submission(s) did not finish within "
                    f"{self.config.shutdown_timeout}s, cancelling"
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        logger.info("Queue processor stopped")

    async def _processing_loop(self) -> None:
        interval = self.config.processing_interval_ms / 1000
        while self._running:
            if len(self._in_flight) < self.config.max_concurrent_submissions:
                task = asyncio.create_task(self.process_next())
                self._in_flight.add(task)
                task.add_done_callback(self._worker_done)
            await asyncio.sleep(interval)

    def _worker_done(self, task: asyncio.Task) -> None:
        self._in_flight.discard(task)
        if not task.cancelled() and (error := task.exception()) is not None:
            logger.error(f"Queue worker crashed: {error}", exc_info=error)

    async def _cleanup_loop(self) -> None:
        interval = self.config.cleanup_interval_ms / 1000
        while self._running:
            await asyncio.sleep(interval)
            self.run_cleanup()

    def run_cleanup(self) -> None:
        """Sweep old COMPLETED entries from the queue and the repository."""
        self.queue.cleanup(self.config.completed_retention_ms)

        if self.repository is not None:
            try:
                self.repository.cleanup_older_than(self.config.db_retention_ms)
            except Exception as e:
                logger.error(f"Database cleanup failed: {e}", exc_info=True)

    async def process_next(self) -> QueuedTransaction | None:
        """
        Run one claim, sign, submit and resolve cycle.

        Returns:
            Snapshot of the entry after resolution, or None if nothing was eligible
        """
        entry = self.queue.claim_next()
        if entry is None:
            return None

        self.processed_count += 1
        logger.info(f"Processing transaction {entry.id} (attempt {entry.retry_count + 1})")

        try:
            return await self._process(entry)
        except asyncio.CancelledError:
            self.failure_count += 1
            self.queue.mark_failed(
                entry.id,
                "Processing cancelled during shutdown",
                self.config.retry_delay_ms,
                outcome_unknown=True,
            )
            raise
        except Exception as e:
            self.failure_count += 1
            logger.error(f"Error processing transaction {entry.id}: {e}")
            return self.queue.mark_failed(entry.id, str(e), self.config.retry_delay_ms)

    async def _process(self, entry: QueuedTransaction) -> QueuedTransaction:
        tx = entry.transaction

        signer = self.signers.get(tx.source_chain_id)
        if signer is None:
            raise MissingChainComponentError("signer", tx.source_chain_id)

        submitter = self.submitters.get(tx.target_chain_id)
        if submitter is None:
            raise MissingChainComponentError("submitter", tx.target_chain_id)

        if entry.recovered and await submitter.is_settled(tx):
            logger.info(f"Transaction {entry.id} already settled on chain {tx.target_chain_id}")
            self.reconciled_count += 1
            self.success_count += 1
            return self.queue.mark_completed(entry.id, entry.settlement_hash)

        signature = await signer.sign_transaction(tx)
        result = await submitter.submit_transaction(tx, [signature])

        if result.success:
            self.success_count += 1
            return self.queue.mark_completed(entry.id, result.tx_hash)

        self.failure_count += 1
        # A hash means the settlement was broadcast; it may still be mined
        return self.queue.mark_failed(
            entry.id,
            result.error or "Unknown submission error",
            self.config.retry_delay_ms,
            outcome_unknown=result.tx_hash is not None,
        )

    def get_stats(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "in_flight": len(self._in_flight),
            "processed": self.processed_count,
            "succeeded": self.success_count,
            "failed": self.failure_count,
            "reconciled": self.reconciled_count,
            "queue": self.queue.get_stats(),
        }
