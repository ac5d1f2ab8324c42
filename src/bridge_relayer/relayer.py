"""
Bridge Relayer service.

This module contains the main relayer service that wires one ChainWatcher
per configured chain to the shared RetryQueue and QueueProcessor, and owns
startup ordering and graceful shutdown.
"""

import asyncio
import logging
from typing import Any, Mapping

from web3 import AsyncWeb3
from web3.providers.persistent import PersistentConnectionProvider

from .chain_watcher import ChainWatcher
from .config import RelayerConfig
from .errors import CatchUpError, InvalidEventError
from .models import ChainEvent, EventKind, QueuedTransaction
from .queue_processor import QueueProcessor
from .repository import (
    SqlTransactionRepository,
    SqlWatermarkStore,
    TransactionRepository,
    WatermarkStore,
    create_database_engine,
)
from .retry_queue import RetryQueue
from .secret_store import SecretStore, create_secret_store
from .signer import TransactionSigner
from .submitter import TransactionSubmitter
from .transaction_builder import TransactionBuilder, load_bridge_abi
from .utils.contract_utility import ContractUtility

logger = logging.getLogger(__name__)


class RelayerService:
    """
    Main relayer service that orchestrates chain watchers and the queue
    processor.

    Startup order: restore persisted queue state, catch up every chain
    (concurrently, each chain independently), open the live watchers, and
    only then start the processor. Shutdown runs in reverse: processor,
    watchers, resources.
    """

    STATUS_LOG_INTERVAL = 30  # seconds
    CATCH_UP_BACKOFF = 1.0  # seconds, doubled per attempt

    def __init__(
        self,
        config: RelayerConfig,
        queue: RetryQueue,
        watchers: Mapping[int, ChainWatcher],
        signers: Mapping[int, TransactionSigner],
        submitters: Mapping[int, TransactionSubmitter],
        repository: TransactionRepository | None = None,
        secret_store: SecretStore | None = None,
        web3_clients: Mapping[int, AsyncWeb3] | None = None,
    ) -> None:
        """
        Initialize the Bridge Relayer.

        Args:
            config: Relayer configuration
            queue: Shared retry queue
            watchers: Chain watchers keyed by chain id
            signers: Validator signers keyed by chain id
            submitters: Settlement submitters keyed by chain id
            repository: Durable copy of the queue (optional)
            secret_store: Secret store backing the signers (optional)
            web3_clients: RPC clients to connect and release (optional)
        """
        self.config = config
        self.queue = queue
        self.watchers = dict(watchers)
        self.signers = dict(signers)
        self.submitters = dict(submitters)
        self.repository = repository
        self.secret_store = secret_store
        self.web3_clients = dict(web3_clients or {})

        self.processor = QueueProcessor(
            queue=queue,
            signers=self.signers,
            submitters=self.submitters,
            config=config.processor,
            repository=repository,
        )

        self.running = False
        self.started = False
        self._shut_down = False
        self._tasks: dict[str, asyncio.Task] = {}

        # Async coordination
        self.shutdown_event = asyncio.Event()

    @classmethod
    def from_config(cls, config: RelayerConfig) -> "RelayerService":
        """
        Build every component described by the configuration.

        Args:
            config: Relayer configuration

        Returns:
            Configured RelayerService instance
        """
        repository: TransactionRepository | None = None
        watermark_store: WatermarkStore | None = None
        if config.database_url:
            engine = create_database_engine(config.database_url)
            repository = SqlTransactionRepository(engine)
            watermark_store = SqlWatermarkStore(engine)

        secret_store = create_secret_store(config.secret_store) if config.use_kms else None
        bridge_abi = load_bridge_abi()

        watchers, signers, submitters, clients = {}, {}, {}, {}
        for chain in config.chains:
            w3 = ContractUtility(chain.rpc_url, config.monitoring.request_timeout).w3

            if chain.private_key:
                signer = TransactionSigner(private_key=chain.private_key)
            else:
                signer = TransactionSigner(secret_store=secret_store, key_id=chain.key_id)

            clients[chain.chain_id] = w3
            signers[chain.chain_id] = signer
            submitters[chain.chain_id] = TransactionSubmitter(
                w3=w3,
                signer=signer,
                bridge_address=chain.bridge_address,
                chain_id=chain.chain_id,
                receipt_timeout=config.monitoring.receipt_timeout,
            )
            watchers[chain.chain_id] = ChainWatcher(
                chain=chain,
                w3=w3,
                abi=bridge_abi,
                watermark_store=watermark_store,
                polling_interval=config.monitoring.polling_interval,
                max_block_range=config.monitoring.max_block_range,
            )
            logger.info(f"Initialized components for {chain.name} (chain {chain.chain_id})")

        return cls(
            config=config,
            queue=RetryQueue(repository=repository),
            watchers=watchers,
            signers=signers,
            submitters=submitters,
            repository=repository,
            secret_store=secret_store,
            web3_clients=clients,
        )

    @classmethod
    def from_env(cls) -> "RelayerService":
        """
        Create a RelayerService instance from environment variables.

        Raises:
            ValueError: If required environment variables are missing
        """
        config = RelayerConfig.from_env()
        config.log_config()
        return cls.from_config(config)

    async def handle_event(self, event: ChainEvent) -> QueuedTransaction | None:
        """
        Route one chain event.

        TokensLocked events are turned into queue entries; confirmations are
        only logged. Invalid events are dropped and never enqueued.

        Returns:
            The queue entry for TokensLocked events, None otherwise
        """
        match event.kind:
            case EventKind.TOKENS_LOCKED:
                try:
                    tx = TransactionBuilder.from_locked_event(event)
                except InvalidEventError as e:
                    logger.warning(f"Data integrity: dropping {event}: {e}")
                    return None

                logger.info(
                    f"TokensLocked: {tx.amount} of {tx.token} for {tx.user}, "
                    f"chain {tx.source_chain_id} -> {tx.target_chain_id}"
                )
                return self.queue.add(tx, max_retries=self.config.processor.max_retries)

            case EventKind.TOKENS_MINTED | EventKind.TOKENS_UNLOCKED:
                logger.info(
                    f"{event.kind.value} confirmed on chain {event.source_chain_id}: "
                    f"{event.amount} of {event.token} for {event.user} "
                    f"(nonce {event.nonce}, tx {event.transaction_hash})"
                )
                return None

    async def _connect_clients(self) -> None:
        for chain_id, w3 in self.web3_clients.items():
            if isinstance(w3.provider, PersistentConnectionProvider):
                await w3.provider.connect()
                logger.info(f"Connected persistent provider for chain {chain_id}")

    async def _disconnect_clients(self) -> None:
        for chain_id, w3 in self.web3_clients.items():
            if isinstance(w3.provider, PersistentConnectionProvider):
                try:
                    await w3.provider.disconnect()
                except Exception as e:
                    logger.warning(f"Error disconnecting provider for chain {chain_id}: {e}")

    async def _log_signers(self) -> None:
        for chain_id, signer in self.signers.items():
            try:
                address = await signer.get_address()
                logger.info(f"Signer for chain {chain_id}: {address}")
            except Exception as e:
                logger.error(f"Could not load signer for chain {chain_id}: {e}")

    async def _catch_up_with_retry(self, watcher: ChainWatcher) -> int:
        attempts = self.config.monitoring.catch_up_retries
        last_error: Exception | None = None

        for attempt in range(1, attempts + 1):
            try:
                return await watcher.catch_up(self.handle_event)
            except Exception as e:
                last_error = e
                if attempt < attempts:
                    delay = self.CATCH_UP_BACKOFF * 2 ** (attempt - 1)
                    logger.warning(
                        f"Catch-up for {watcher.chain.name} failed "
                        f"(attempt {attempt}/{attempts}), retrying in {delay}s: {e}"
                    )
                    await asyncio.sleep(delay)

        raise CatchUpError(watcher.chain.name, attempts, last_error) from last_error

    async def start(self) -> None:
        """
        Bring the relay pipeline up in order.

        Raises:
            CatchUpError: If any chain could not be caught up
        """
        if self.started:
            logger.warning("Relayer already started")
            return

        restored = self.queue.restore()
        if restored:
            logger.info(f"Restored {restored} queued transactions")

        await self._connect_clients()
        await self._log_signers()

        results = await asyncio.gather(
            *(self._catch_up_with_retry(w) for w in self.watchers.values()),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

        for chain_id, watcher in self.watchers.items():
            self._tasks[f"watcher-{watcher.chain.name}"] = asyncio.create_task(
                watcher.start(self.handle_event), name=f"watcher-{chain_id}"
            )
        # Let the watchers enter their polling loops before submissions begin
        await asyncio.sleep(0)

        self.processor.start()
        self.started = True
        logger.info(f"Relayer started on {len(self.watchers)} chain(s)")

    async def _periodic_status_logger(self) -> None:
        """Log queue status periodically while running."""
        while self.running:
            await asyncio.sleep(self.STATUS_LOG_INTERVAL)
            stats = self.queue.get_stats()
            logger.info(
                f"Status: {stats['total']} total, {stats['pending']} pending, "
                f"{stats['processing']} processing, {stats['completed']} completed, "
                f"{stats['failed']} failed"
            )
            if exhausted := self.queue.exhausted():
                logger.warning(
                    f"{len(exhausted)} transaction(s) exhausted their retries and need "
                    f"manual attention: {', '.join(e.id for e in exhausted)}"
                )

    async def _check_task_health(self) -> bool:
        """Check if any watcher task has ended unexpectedly."""
        for name, task in self._tasks.items():
            if task.done() and name != "status":
                try:
                    await task
                except Exception as e:
                    logger.error(f"{name} task failed: {e}", exc_info=True)
                    return False
                if self.running:
                    logger.error(f"{name} task exited unexpectedly")
                    return False
        return True

    async def run(self) -> None:
        """Main loop: start, wait for a shutdown request, shut down."""
        self.running = True
        logger.info("Bridge Relayer starting...")

        try:
            await self.start()
            self._tasks["status"] = asyncio.create_task(self._periodic_status_logger())
            logger.info("Relay pipeline running, waiting for events...")

            # Wait until shutdown or task failure
            while self.running:
                try:
                    await asyncio.wait_for(self.shutdown_event.wait(), timeout=1.0)
                    break
                except asyncio.TimeoutError:
                    pass

                if not await self._check_task_health():
                    logger.error("Critical task failure, shutting down")
                    break

        except Exception as e:
            logger.error(f"Error in main loop: {e}", exc_info=True)
            raise
        finally:
            await self.shutdown()

    def stop(self) -> None:
        """Request shutdown of the relayer service."""
        self.running = False
        self.shutdown_event.set()

    async def shutdown(self) -> None:
        """Stop the processor, then the watchers, then release resources."""
        if self._shut_down:
            return
        self._shut_down = True
        self.running = False

        await self.processor.stop()

        for watcher in self.watchers.values():
            await watcher.stop()

        for task in self._tasks.values():
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()

        await self._disconnect_clients()
        if self.secret_store is not None:
            await self.secret_store.close()
        if self.repository is not None:
            self.repository.close()

        logger.info("Bridge Relayer stopped")

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "watchers": {
                chain_id: watcher.get_status() for chain_id, watcher in self.watchers.items()
            },
            "processor": self.processor.get_stats(),
        }
