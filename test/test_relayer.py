#!/usr/bin/env python3
"""Tests for RelayerService routing, startup ordering and shutdown."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from bridge_relayer.config import MonitoringConfig, ProcessorConfig, RelayerConfig
from bridge_relayer.errors import CatchUpError
from bridge_relayer.models import EventKind, SubmitResult, TransactionStatus
from bridge_relayer.relayer import RelayerService
from bridge_relayer.repository import InMemoryTransactionRepository
from bridge_relayer.retry_queue import RetryQueue

from conftest import LOCK_TX_HASH, make_chain, make_lock_event

SIGNATURE = "0x" + "11" * 65
SETTLEMENT_HASH = "0x" + "cd" * 32


class FakeWatcher:
    """ChainWatcher stand-in that records lifecycle calls."""

    def __init__(self, chain, calls: list[str], events=(), catch_up_failures: int = 0):
        self.chain = chain
        self.calls = calls
        self.events = list(events)
        self.catch_up_failures = catch_up_failures
        self.catch_up_attempts = 0
        self._stop_event = asyncio.Event()

    async def catch_up(self, callback) -> int:
        self.catch_up_attempts += 1
        self.calls.append(f"catch_up:{self.chain.name}")
        if self.catch_up_attempts <= self.catch_up_failures:
            raise ConnectionError(f"{self.chain.name} RPC unavailable")
        for event in self.events:
            await callback(event)
        return len(self.events)

    async def start(self, callback) -> None:
        self.calls.append(f"watch:{self.chain.name}")
        await self._stop_event.wait()

    async def stop(self) -> None:
        self.calls.append(f"stop:{self.chain.name}")
        self._stop_event.set()

    def get_status(self):
        return {"chain": self.chain.name}


def make_signer():
    signer = MagicMock()
    signer.sign_transaction = AsyncMock(return_value=SIGNATURE)
    signer.get_address = AsyncMock(return_value="0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266")
    return signer


def make_submitter():
    submitter = MagicMock()
    submitter.submit_transaction = AsyncMock(return_value=SubmitResult.ok(SETTLEMENT_HASH))
    submitter.is_settled = AsyncMock(return_value=False)
    return submitter


@pytest.fixture
def relayer_config():
    return RelayerConfig(
        chains=(make_chain("ethereum", 1337), make_chain("polygon", 1338)),
        monitoring=MonitoringConfig(catch_up_retries=3),
        processor=ProcessorConfig(processing_interval_ms=10, shutdown_timeout=1.0),
    )


def build_service(config, calls=None, events=(), catch_up_failures=0, repository=None):
    calls = [] if calls is None else calls
    ethereum, polygon = config.chains
    watchers = {
        1337: FakeWatcher(ethereum, calls, events=events, catch_up_failures=catch_up_failures),
        1338: FakeWatcher(polygon, calls),
    }
    signers = {1337: make_signer(), 1338: make_signer()}
    submitters = {1337: make_submitter(), 1338: make_submitter()}
    return RelayerService(
        config=config,
        queue=RetryQueue(repository=repository),
        watchers=watchers,
        signers=signers,
        submitters=submitters,
        repository=repository,
    )


async def wait_until(predicate, timeout: float = 2.0) -> None:
    for _ in range(int(timeout / 0.01)):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


class TestHandleEvent:
    """Tests for event routing."""

    @pytest.mark.asyncio
    async def test_locked_event_is_enqueued(self, relayer_config):
        service = build_service(relayer_config)

        entry = await service.handle_event(make_lock_event())

        assert entry.status == TransactionStatus.PENDING
        assert entry.id == f"1337-1338-{LOCK_TX_HASH}"
        assert entry.max_retries == relayer_config.processor.max_retries
        assert service.queue.size() == 1

    @pytest.mark.asyncio
    async def test_duplicate_event_yields_one_entry(self, relayer_config):
        """Catch-up and live delivery of the same event collapse to one entry."""
        service = build_service(relayer_config)

        first = await service.handle_event(make_lock_event())
        second = await service.handle_event(make_lock_event(block_number=11))

        assert first.id == second.id
        assert service.queue.size() == 1

    @pytest.mark.parametrize("kind", [EventKind.TOKENS_MINTED, EventKind.TOKENS_UNLOCKED])
    @pytest.mark.asyncio
    async def test_confirmations_are_only_logged(self, relayer_config, kind):
        service = build_service(relayer_config)

        assert await service.handle_event(make_lock_event(kind=kind, target_chain_id=1337)) is None
        assert service.queue.size() == 0

    @pytest.mark.asyncio
    async def test_invalid_event_is_dropped(self, relayer_config, caplog):
        service = build_service(relayer_config)

        result = await service.handle_event(make_lock_event(transaction_hash="0x1234"))

        assert result is None
        assert service.queue.size() == 0
        assert "Data integrity" in caplog.text


class TestStartup:
    """Tests for startup ordering and catch-up retries."""

    @pytest.mark.asyncio
    async def test_startup_order(self, relayer_config):
        """Restore, catch up every chain, go live, then start processing."""
        calls: list[str] = []
        service = build_service(relayer_config, calls=calls)
        service.queue.restore = MagicMock(side_effect=lambda: calls.append("restore") or 0)
        start_processor = service.processor.start
        service.processor.start = MagicMock(
            side_effect=lambda: (calls.append("processor"), start_processor())
        )

        await service.start()

        assert calls[0] == "restore"
        assert set(calls[1:3]) == {"catch_up:ethereum", "catch_up:polygon"}
        assert set(calls[3:5]) == {"watch:ethereum", "watch:polygon"}
        assert calls[5] == "processor"
        assert service.started

        await service.shutdown()

    @pytest.mark.asyncio
    async def test_catch_up_retries_then_succeeds(self, relayer_config):
        service = build_service(relayer_config, catch_up_failures=2)

        with patch.object(RelayerService, "CATCH_UP_BACKOFF", 0):
            await service.start()

        assert service.watchers[1337].catch_up_attempts == 3
        assert service.processor.is_running
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_catch_up_failure_aborts_startup(self, relayer_config):
        """A chain that cannot be caught up keeps the pipeline down."""
        calls: list[str] = []
        service = build_service(relayer_config, calls=calls, catch_up_failures=5)

        with patch.object(RelayerService, "CATCH_UP_BACKOFF", 0):
            with pytest.raises(CatchUpError) as exc_info:
                await service.start()

        assert exc_info.value.chain_name == "ethereum"
        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.__cause__, ConnectionError)
        assert not any(call.startswith("watch:") for call in calls)
        assert not service.processor.is_running
        assert not service.started

    @pytest.mark.asyncio
    async def test_start_twice_is_ignored(self, relayer_config):
        calls: list[str] = []
        service = build_service(relayer_config, calls=calls)

        await service.start()
        await service.start()

        assert calls.count("catch_up:ethereum") == 1
        await service.shutdown()


class TestShutdown:
    """Tests for run/stop and teardown."""

    @pytest.mark.asyncio
    async def test_shutdown_stops_processor_before_watchers(self, relayer_config):
        calls: list[str] = []
        repository = MagicMock()
        repository.get_by_status.return_value = []
        service = build_service(relayer_config, calls=calls, repository=repository)
        await service.start()

        stop_processor = service.processor.stop

        async def recording_stop():
            calls.append("processor_stopped")
            await stop_processor()

        service.processor.stop = recording_stop
        await service.shutdown()
        await service.shutdown()

        tail = calls[calls.index("processor_stopped"):]
        assert tail[0] == "processor_stopped"
        assert set(tail[1:]) == {"stop:ethereum", "stop:polygon"}
        repository.close.assert_called_once()
        assert service._tasks == {}

    @pytest.mark.asyncio
    async def test_run_until_stopped(self, relayer_config):
        service = build_service(relayer_config)

        run_task = asyncio.create_task(service.run())
        await wait_until(lambda: service.started)
        service.stop()
        await asyncio.wait_for(run_task, timeout=3)

        assert not service.running
        assert not service.processor.is_running

    @pytest.mark.asyncio
    async def test_run_propagates_catch_up_error(self, relayer_config):
        service = build_service(relayer_config, catch_up_failures=5)

        with patch.object(RelayerService, "CATCH_UP_BACKOFF", 0):
            with pytest.raises(CatchUpError):
                await service.run()

        assert service._shut_down


class TestEndToEnd:
    """A lock on one chain settles on the other."""

    @pytest.mark.asyncio
    async def test_locked_transfer_is_settled(self, relayer_config):
        repository = InMemoryTransactionRepository()
        lock = make_lock_event()
        service = build_service(relayer_config, events=[lock], repository=repository)

        await service.start()
        entry_id = f"1337-1338-{LOCK_TX_HASH}"
        await wait_until(
            lambda: service.queue.get(entry_id).status == TransactionStatus.COMPLETED
        )
        await service.shutdown()

        service.signers[1337].sign_transaction.assert_awaited_once()
        service.submitters[1338].submit_transaction.assert_awaited_once()
        service.submitters[1337].submit_transaction.assert_not_awaited()

        stored = repository.get_by_id(entry_id)
        assert stored.status == TransactionStatus.COMPLETED
        assert stored.settlement_hash == SETTLEMENT_HASH
        assert entry_id not in {e.id for e in repository.get_pending_or_retry_ready()}

    def test_status(self, relayer_config):
        service = build_service(relayer_config)

        status = service.get_status()

        assert status["running"] is False
        assert set(status["watchers"]) == {1337, 1338}
        assert status["processor"]["queue"]["total"] == 0
