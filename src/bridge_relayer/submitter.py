"""Settlement submission for the Bridge Relayer.

This module sends signed completeBridgeTransfer calls to the bridge contract
on the target chain and waits for their receipts.
"""

import asyncio
import logging
from typing import Any, Sequence

from hexbytes import HexBytes
from web3 import AsyncWeb3, Web3
from web3.contract import AsyncContract

from .models import BridgeTransaction, SubmitResult
from .signer import TransactionSigner
from .transaction_builder import TransactionBuilder, load_bridge_abi

logger = logging.getLogger(__name__)


class TransactionSubmitter:
    """Submits settlement transactions to one chain's bridge contract."""

    def __init__(
        self,
        w3: AsyncWeb3,
        signer: TransactionSigner,
        bridge_address: str,
        chain_id: int,
        receipt_timeout: float = 120,
    ) -> None:
        """
        Initialize the submitter.

        Args:
            w3: AsyncWeb3 client for the target chain
            signer: Signer whose account pays for and sends the settlement
            bridge_address: Bridge contract address on the target chain
            chain_id: Target chain id
            receipt_timeout: Seconds to wait for the receipt
        """
        self.w3 = w3
        self.signer = signer
        self.bridge_address: str = Web3.to_checksum_address(bridge_address)
        self.chain_id = chain_id
        self.receipt_timeout = receipt_timeout
        self.contract: AsyncContract = w3.eth.contract(
            address=self.bridge_address,
            abi=load_bridge_abi(),
        )
        # Serializes nonce assignment for the relayer account
        self._send_lock = asyncio.Lock()

    def _base_tx(self, sender: str, data: str) -> dict[str, Any]:
        return {
            'from': sender,
            'to': self.bridge_address,
            'data': data,
            'value': 0,
            'chainId': self.chain_id,
        }

    async def submit_transaction(
        self, tx: BridgeTransaction, signatures: Sequence[str]
    ) -> SubmitResult:
        """
        Submit a settlement and wait for its receipt.

        Reverts and transport faults are both reported as failed results.

        Args:
            tx: The bridge transaction to settle
            signatures: Validator signatures, in submission order

        Returns:
            SubmitResult with the settlement hash on success
        """
        tx_hash: str | None = None
        try:
            account = await self.signer.get_account()
            data = TransactionBuilder.build_settlement_payload(tx, signatures)

            async with self._send_lock:
                tx_params = self._base_tx(account.address, data)
                tx_params['nonce'] = await self.w3.eth.get_transaction_count(
                    account.address, 'pending'
                )
                tx_params['gas'] = await self.w3.eth.estimate_gas(tx_params)
                tx_params['gasPrice'] = await self.w3.eth.gas_price

                signed = account.sign_transaction(tx_params)
                sent: HexBytes = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
                tx_hash = HexBytes(sent).to_0x_hex()

            logger.info(
                f"Settlement for {tx.transaction_id} sent to chain {self.chain_id}: {tx_hash}"
            )

            receipt = await self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.receipt_timeout
            )

            if (status := receipt.get('status', 0)) == 1:
                logger.info(f"✓ Settlement {tx_hash} confirmed in block {receipt.get('blockNumber')}")
                return SubmitResult.ok(tx_hash)

            logger.error(f"✗ Settlement {tx_hash} reverted with status={status}")
            return SubmitResult.failed("Transaction reverted", tx_hash=tx_hash)

        except Exception as e:
            logger.error(f"Error submitting settlement for {tx.transaction_id}: {e}")
            return SubmitResult.failed(str(e) or e.__class__.__name__, tx_hash=tx_hash)

    async def estimate_gas(self, tx: BridgeTransaction, signatures: Sequence[str]) -> int:
        """Estimate gas for a settlement without sending it."""
        account = await self.signer.get_account()
        data = TransactionBuilder.build_settlement_payload(tx, signatures)
        return await self.w3.eth.estimate_gas(self._base_tx(account.address, data))

    async def is_settled(self, tx: BridgeTransaction) -> bool | None:
        """Ask the bridge whether the transfer was already completed.

        Returns:
            True or False as reported by the contract, None if the query failed
        """
        try:
            return bool(await self.contract.functions.processedTransactions(
                HexBytes(tx.transaction_id)
            ).call())
        except Exception as e:
            logger.warning(f"Could not query settlement state of {tx.transaction_id}: {e}")
            return None
