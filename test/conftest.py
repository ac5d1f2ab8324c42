"""Shared fixtures for the Bridge Relayer tests."""

import pytest

from bridge_relayer.config import ChainConfig
from bridge_relayer.models import BridgeTransaction, ChainEvent, EventKind
from bridge_relayer.retry_queue import RetryQueue

# Well-known local development key (first ganache/hardhat account)
PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
RELAYER_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"

TOKEN = "0x5fbdb2315678afecb367f032d93f642f64180aa3"
USER = "0x70997970c51812dc3a010c7d01b50e0d17dc79c8"
BRIDGE = "0xe7f1725e7734ce288f8367e1bb143e90bb3f0512"
LOCK_TX_HASH = "0x" + "ab" * 32

ONE_TOKEN = 1_000_000_000_000_000_000


class FakeClock:
    """Manually advanced epoch-millisecond clock."""

    def __init__(self, now: int = 1_700_000_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def make_lock_event(**overrides) -> ChainEvent:
    fields = dict(
        kind=EventKind.TOKENS_LOCKED,
        block_number=10,
        log_index=0,
        transaction_hash=LOCK_TX_HASH,
        source_chain_id=1337,
        target_chain_id=1338,
        token=TOKEN,
        user=USER,
        amount=ONE_TOKEN,
        nonce=1,
    )
    fields.update(overrides)
    return ChainEvent(**fields)


def make_transaction(index: int = 0, **overrides) -> BridgeTransaction:
    fields = dict(
        token=TOKEN,
        user=USER,
        amount=ONE_TOKEN,
        transaction_id="0x" + f"{index:064x}",
        source_chain_id=1337,
        target_chain_id=1338,
        nonce=index,
    )
    fields.update(overrides)
    return BridgeTransaction(**fields)


def make_chain(name: str = "ethereum", chain_id: int = 1337, **overrides) -> ChainConfig:
    fields = dict(
        name=name,
        chain_id=chain_id,
        rpc_url="http://localhost:8545",
        bridge_address=BRIDGE,
        private_key=PRIVATE_KEY,
    )
    fields.update(overrides)
    return ChainConfig(**fields)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue(clock):
    return RetryQueue(clock=clock)


@pytest.fixture
def sample_tx():
    return make_transaction(1)
