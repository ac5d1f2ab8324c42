"""
Per-chain bridge event watcher.

Historical catch-up runs first and moves the watermark to the head it
observed; the live loop then polls from watermark+1, so the block at the
boundary is delivered exactly once, by catch-up.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable

from hexbytes import HexBytes
from web3 import AsyncWeb3
from web3.types import EventData

from .config import ChainConfig
from .models import ChainEvent, EventKind
from .repository import WatermarkStore
from .transaction_builder import load_bridge_abi

EventCallback = Callable[[ChainEvent], Awaitable[Any]]


class ChainWatcher:
    """
    Watches one chain's bridge contract for TokensLocked, TokensMinted and
    TokensUnlocked events by polling eth_getLogs.
    """

    def __init__(
        self,
        chain: ChainConfig,
        w3: AsyncWeb3,
        abi: list[dict[str, Any]] | None = None,
        watermark_store: WatermarkStore | None = None,
        polling_interval: float = 5,
        max_block_range: int = 2000,
    ) -> None:
        """
        Initialize the watcher.

        Args:
            chain: Chain descriptor
            w3: AsyncWeb3 client for the chain
            abi: Bridge ABI (defaults to the packaged one)
            watermark_store: Durable watermark storage (optional)
            polling_interval: Seconds between live polls
            max_block_range: Maximum blocks per log query
        """
        self.chain = chain
        self.w3 = w3
        self.watermark_store = watermark_store
        self.polling_interval = polling_interval
        self.max_block_range = max_block_range

        self.contract = w3.eth.contract(
            address=chain.bridge_address,
            abi=abi or load_bridge_abi(),
        )

        # Setup logging
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}.{chain.name}")

        self.last_processed_block: int = self._initial_watermark()
        self.is_running = False
        self.caught_up = False
        self.events_emitted = 0
        self.consecutive_failures = 0
        self._stop_event = asyncio.Event()

    def _initial_watermark(self) -> int:
        stored = None
        if self.watermark_store is not None:
            try:
                stored = self.watermark_store.get_last_processed_block(self.chain.chain_id)
            except Exception as e:
                self.logger.error(f"Could not read stored watermark: {e}", exc_info=True)

        if stored is not None and stored > self.chain.start_block:
            self.logger.info(f"Resuming from stored watermark {stored}")
            return stored
        return self.chain.start_block

    async def _current_block(self) -> int:
        return await self.w3.eth.block_number

    def _to_chain_event(self, kind: EventKind, log: EventData) -> ChainEvent:
        args = log['args']
        target_chain_id = (
            int(args['targetChainId']) if kind == EventKind.TOKENS_LOCKED
            else self.chain.chain_id
        )
        return ChainEvent(
            kind=kind,
            block_number=log['blockNumber'],
            log_index=log['logIndex'],
            transaction_hash=HexBytes(log['transactionHash']).to_0x_hex(),
            source_chain_id=self.chain.chain_id,
            target_chain_id=target_chain_id,
            token=args['token'],
            user=args['user'],
            amount=int(args['amount']),
            nonce=int(args['nonce']),
        )

    async def fetch_events(self, from_block: int, to_block: int) -> list[ChainEvent]:
        """
        Query all bridge events in [from_block, to_block].

        The range is split into chunks of at most max_block_range blocks.
        Any failing query aborts the whole call.

        Returns:
            Events in ascending (block, log index) order
        """
        events: list[ChainEvent] = []
        chunk_start = from_block
        while chunk_start <= to_block:
            chunk_end = min(chunk_start + self.max_block_range - 1, to_block)
            for kind in EventKind:
                event_obj = getattr(self.contract.events, kind.value)
                logs = await event_obj.get_logs(from_block=chunk_start, to_block=chunk_end)
                events.extend(self._to_chain_event(kind, log) for log in logs)
            chunk_start = chunk_end + 1

        events.sort(key=lambda e: (e.block_number, e.log_index))
        return events

    def _advance(self, block_number: int) -> None:
        self.last_processed_block = block_number
        if self.watermark_store is None:
            return
        try:
            self.watermark_store.update_last_processed_block(self.chain.chain_id, block_number)
        except Exception as e:
            self.logger.error(f"Failed to persist watermark {block_number}: {e}", exc_info=True)

    async def _sync_to_head(self, callback: EventCallback) -> int:
        current_block = await self._current_block()
        if current_block <= self.last_processed_block:
            return 0

        from_block = self.last_processed_block + 1
        events = await self.fetch_events(from_block, current_block)

        if events:
            self.logger.info(
                f"Found {len(events)} events in blocks {from_block}-{current_block}"
            )
        for event in events:
            await callback(event)

        self.events_emitted += len(events)
        self._advance(current_block)
        return len(events)

    async def catch_up(self, callback: EventCallback) -> int:
        """
        Replay events from the watermark to the current head.

        The watermark only moves after every event in the range was emitted.

        Args:
            callback: Async function called once per event, in order

        Returns:
            Number of emitted events

        Raises:
            Exception: Any RPC failure; the watermark is left unchanged
        """
        self.logger.info(
            f"Catching up {self.chain.name} (chain {self.chain.chain_id}) "
            f"from block {self.last_processed_block + 1}"
        )
        try:
            count = await self._sync_to_head(callback)
        except Exception as e:
            self.logger.error(f"Catch-up failed at watermark {self.last_processed_block}: {e}")
            raise

        self.caught_up = True
        self.logger.info(
            f"Catch-up complete: {count} events, watermark {self.last_processed_block}"
        )
        return count

    async def poll(self, callback: EventCallback) -> int:
        """One live step: emit events from watermark+1 to the current head."""
        return await self._sync_to_head(callback)

    async def start(self, callback: EventCallback) -> None:
        """
        Poll for new events until stop() is called.

        Failed polls are logged and retried on the next tick without moving
        the watermark.

        Args:
            callback: Async function called once per event
        """
        if self.is_running:
            self.logger.warning("Polling already running")
            return

        self.is_running = True
        self._stop_event.clear()
        self.logger.info(
            f"Starting polling on {self.chain.bridge_address} "
            f"every {self.polling_interval} seconds"
        )

        while self.is_running:
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.polling_interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.poll(callback)
                if self.consecutive_failures:
                    self.logger.info(
                        f"Polling recovered after {self.consecutive_failures} failure(s)"
                    )
                self.consecutive_failures = 0
            except asyncio.CancelledError:
                self.logger.info("Polling cancelled")
                raise
            except Exception as e:
                self.consecutive_failures += 1
                self.logger.error(
                    f"Error polling for events (failure {self.consecutive_failures}): {e}"
                )

        self.is_running = False
        self.logger.info("Polling stopped")

    async def stop(self) -> None:
        """Stop the polling loop; the watermark is kept."""
        self.logger.info(f"Stopping watcher for {self.chain.name}")
        self.is_running = False
        self._stop_event.set()

    def get_status(self) -> dict[str, Any]:
        """
        Get current status of the watcher.

        Returns:
            Dictionary with status information
        """
        return {
            "chain": self.chain.name,
            "chain_id": self.chain.chain_id,
            "is_running": self.is_running,
            "caught_up": self.caught_up,
            "last_processed_block": self.last_processed_block,
            "events_emitted": self.events_emitted,
            "consecutive_failures": self.consecutive_failures,
            "contract_address": self.chain.bridge_address,
        }
