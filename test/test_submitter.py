#!/usr/bin/env python3
"""Tests for TransactionSubmitter."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from eth_account import Account
from hexbytes import HexBytes
from web3 import Web3

from bridge_relayer.signer import TransactionSigner
from bridge_relayer.submitter import TransactionSubmitter
from bridge_relayer.transaction_builder import TransactionBuilder

from conftest import BRIDGE, PRIVATE_KEY, RELAYER_ADDRESS

SENT_HASH = HexBytes("0x" + "5e" * 32)
SIGNATURE = "0x" + "11" * 65


class FakeEth:
    """Stand-in for AsyncWeb3.eth with scripted responses."""

    def __init__(self):
        self.contract = MagicMock()
        self.get_transaction_count = AsyncMock(return_value=7)
        self.estimate_gas = AsyncMock(return_value=210_000)
        self.send_raw_transaction = AsyncMock(return_value=SENT_HASH)
        self.wait_for_transaction_receipt = AsyncMock(
            return_value={'status': 1, 'blockNumber': 99}
        )
        self.price = 2_000_000_000

    @property
    def gas_price(self):
        async def _price():
            return self.price
        return _price()


@pytest.fixture
def fake_eth():
    return FakeEth()


@pytest.fixture
def submitter(fake_eth):
    w3 = MagicMock()
    w3.eth = fake_eth
    return TransactionSubmitter(
        w3=w3,
        signer=TransactionSigner(private_key=PRIVATE_KEY),
        bridge_address=BRIDGE,
        chain_id=1338,
        receipt_timeout=5,
    )


class TestSubmitTransaction:
    """Tests for sending settlements."""

    @pytest.mark.asyncio
    async def test_successful_submission(self, submitter, fake_eth, sample_tx):
        result = await submitter.submit_transaction(sample_tx, [SIGNATURE])

        assert result.success
        assert result.tx_hash == SENT_HASH.to_0x_hex()
        assert result.error is None

        fake_eth.get_transaction_count.assert_awaited_once_with(RELAYER_ADDRESS, 'pending')
        fake_eth.wait_for_transaction_receipt.assert_awaited_once_with(SENT_HASH.to_0x_hex(), timeout=5)

    @pytest.mark.asyncio
    async def test_sends_signed_settlement_call(self, submitter, fake_eth, sample_tx):
        """The raw transaction carries the settlement payload to the bridge."""
        await submitter.submit_transaction(sample_tx, [SIGNATURE])

        params = fake_eth.estimate_gas.await_args.args[0]
        assert params['from'] == RELAYER_ADDRESS
        assert params['to'] == Web3.to_checksum_address(BRIDGE)
        assert params['chainId'] == 1338
        assert params['nonce'] == 7
        assert params['data'] == TransactionBuilder.build_settlement_payload(sample_tx, [SIGNATURE])

        raw = fake_eth.send_raw_transaction.await_args.args[0]
        decoded = Account.recover_transaction(raw)
        assert decoded == RELAYER_ADDRESS

    @pytest.mark.asyncio
    async def test_reverted_settlement(self, submitter, fake_eth, sample_tx):
        fake_eth.wait_for_transaction_receipt.return_value = {'status': 0, 'blockNumber': 99}

        result = await submitter.submit_transaction(sample_tx, [SIGNATURE])

        assert not result.success
        assert result.error == "Transaction reverted"
        assert result.tx_hash == SENT_HASH.to_0x_hex()

    @pytest.mark.asyncio
    async def test_transport_error_is_reported(self, submitter, fake_eth, sample_tx):
        fake_eth.estimate_gas.side_effect = ConnectionError("connection reset")

        result = await submitter.submit_transaction(sample_tx, [SIGNATURE])

        assert not result.success
        assert result.error == "connection reset"
        assert result.tx_hash is None
        fake_eth.send_raw_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_receipt_timeout_keeps_sent_hash(self, submitter, fake_eth, sample_tx):
        fake_eth.wait_for_transaction_receipt.side_effect = TimeoutError("no receipt")

        result = await submitter.submit_transaction(sample_tx, [SIGNATURE])

        assert not result.success
        assert result.tx_hash == SENT_HASH.to_0x_hex()


class TestQueries:
    """Tests for read-only helpers."""

    @pytest.mark.asyncio
    async def test_estimate_gas(self, submitter, fake_eth, sample_tx):
        assert await submitter.estimate_gas(sample_tx, [SIGNATURE]) == 210_000
        fake_eth.send_raw_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_is_settled(self, submitter, sample_tx):
        bound = submitter.contract.functions.processedTransactions.return_value
        bound.call = AsyncMock(return_value=True)

        assert await submitter.is_settled(sample_tx) is True
        submitter.contract.functions.processedTransactions.assert_called_once_with(
            HexBytes(sample_tx.transaction_id)
        )

    @pytest.mark.asyncio
    async def test_is_settled_unknown_on_error(self, submitter, sample_tx):
        bound = submitter.contract.functions.processedTransactions.return_value
        bound.call = AsyncMock(side_effect=ConnectionError("rpc down"))

        assert await submitter.is_settled(sample_tx) is None
