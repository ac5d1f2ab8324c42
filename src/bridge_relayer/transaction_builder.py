"""
Mapping from bridge events to settlement transactions.

The message hash layout is shared with the bridge contract's signature
verifier: packed (address token, address user, uint256 amount,
bytes32 transactionId, uint256 targetChainId). Any change to the field
order or the encoding breaks verification on the target chain.
"""

import logging
from functools import lru_cache
from typing import Any, Sequence

from hexbytes import HexBytes
from web3 import Web3
from web3.contract import Contract

from .errors import InvalidEventError
from .models import BridgeTransaction, ChainEvent, EventKind
from .utils.contract_utility import ContractUtility

logger = logging.getLogger(__name__)

MESSAGE_HASH_TYPES: tuple[str, ...] = ('address', 'address', 'uint256', 'bytes32', 'uint256')
SETTLEMENT_FUNCTION: str = "completeBridgeTransfer"


@lru_cache(maxsize=1)
def load_bridge_abi() -> list[dict[str, Any]]:
    """Load the bridge contract ABI shipped with the package."""
    return ContractUtility().get_contract_abi("Bridge")


@lru_cache(maxsize=1)
def _bridge_interface() -> type[Contract]:
    # Offline contract factory, used only for calldata encoding
    return Web3().eth.contract(abi=load_bridge_abi())


class TransactionBuilder:
    """Pure conversions between events, transactions and call data."""

    @staticmethod
    def from_locked_event(event: ChainEvent) -> BridgeTransaction:
        """Derive the settlement intent from a TokensLocked event.

        Args:
            event: Decoded bridge event

        Returns:
            BridgeTransaction with fields copied from the event

        Raises:
            InvalidEventError: If the event is not TokensLocked or is malformed
        """
        if event.kind != EventKind.TOKENS_LOCKED:
            raise InvalidEventError(f"Event must be TokensLocked, got {event.kind.value}")

        if not Web3.is_address(event.token):
            raise InvalidEventError(f"Invalid token address in {event}: {event.token!r}")
        if not Web3.is_address(event.user):
            raise InvalidEventError(f"Invalid user address in {event}: {event.user!r}")
        if event.amount < 0:
            raise InvalidEventError(f"Negative amount in {event}: {event.amount}")
        if event.target_chain_id <= 0:
            raise InvalidEventError(f"Invalid target chain in {event}: {event.target_chain_id}")
        if event.target_chain_id == event.source_chain_id:
            raise InvalidEventError(f"Target chain equals source chain in {event}")

        try:
            tx_hash = HexBytes(event.transaction_hash)
        except (TypeError, ValueError) as e:
            raise InvalidEventError(f"Invalid transaction hash in {event}: {e}") from e
        if len(tx_hash) != 32:
            raise InvalidEventError(
                f"Transaction hash must be 32 bytes, got {len(tx_hash)} in {event}"
            )

        return BridgeTransaction(
            token=Web3.to_checksum_address(event.token),
            user=Web3.to_checksum_address(event.user),
            amount=event.amount,
            transaction_id=tx_hash.to_0x_hex(),
            source_chain_id=event.source_chain_id,
            target_chain_id=event.target_chain_id,
            nonce=event.nonce,
        )

    @staticmethod
    def build_message_hash(tx: BridgeTransaction) -> HexBytes:
        """Hash the fields validators sign over."""
        return HexBytes(Web3.solidity_keccak(
            list(MESSAGE_HASH_TYPES),
            [
                Web3.to_checksum_address(tx.token),
                Web3.to_checksum_address(tx.user),
                tx.amount,
                HexBytes(tx.transaction_id),
                tx.target_chain_id,
            ],
        ))

    @staticmethod
    def build_settlement_payload(tx: BridgeTransaction, signatures: Sequence[str | bytes]) -> str:
        """Encode call data for completeBridgeTransfer.

        Signatures are passed through unmodified and in the given order.
        """
        return _bridge_interface().encode_abi(
            SETTLEMENT_FUNCTION,
            args=[
                Web3.to_checksum_address(tx.token),
                Web3.to_checksum_address(tx.user),
                tx.amount,
                HexBytes(tx.transaction_id),
                [HexBytes(sig) for sig in signatures],
            ],
        )
