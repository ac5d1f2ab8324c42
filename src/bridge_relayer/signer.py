"""Validator signing for the Bridge Relayer.

This module produces EIP-191 signatures over the settlement message hash,
with the key held directly or fetched from a secret store on first use.
"""

import asyncio
import logging
from typing import Sequence

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount

from .models import BridgeTransaction
from .secret_store import SecretStore
from .transaction_builder import TransactionBuilder

logger = logging.getLogger(__name__)


class TransactionSigner:
    """Signs bridge transactions with the relayer's validator key.

    The key is either held directly or resolved through a secret store on
    first use and cached for the lifetime of the signer.
    """

    def __init__(
        self,
        private_key: str | None = None,
        secret_store: SecretStore | None = None,
        key_id: str | None = None,
    ) -> None:
        """
        Initialize the signer.

        Args:
            private_key: Directly held private key
            secret_store: Secret store used to resolve key_id
            key_id: Identifier of the key in the secret store
        """
        if private_key is None and (secret_store is None or not key_id):
            raise ValueError("Either private_key or secret_store and key_id are required")

        self._secret_store = secret_store
        self._key_id = key_id
        self._account: LocalAccount | None = (
            Account.from_key(private_key) if private_key is not None else None
        )
        self._lock = asyncio.Lock()

    @property
    def key_id(self) -> str | None:
        return self._key_id

    async def get_account(self) -> LocalAccount:
        """Return the signing account, fetching the key if needed.

        Raises:
            SecretStoreError: If the key cannot be fetched
        """
        if self._account is not None:
            return self._account

        async with self._lock:
            if self._account is None:
                logger.info(f"Fetching signing key {self._key_id} from secret store")
                key = await self._secret_store.get_key(self._key_id)
                self._account = Account.from_key(key)
                logger.info(f"Loaded signer {self._account.address} for key {self._key_id}")
        return self._account

    async def get_address(self) -> str:
        account = await self.get_account()
        return account.address

    async def sign_transaction(self, tx: BridgeTransaction) -> str:
        """Sign the message hash of a bridge transaction.

        The hash is signed as an EIP-191 personal message, which is what the
        bridge contract recovers signers from.

        Returns:
            0x-prefixed 65-byte signature
        """
        account = await self.get_account()
        message_hash = TransactionBuilder.build_message_hash(tx)
        signed = account.sign_message(encode_defunct(primitive=bytes(message_hash)))
        return signed.signature.to_0x_hex()

    async def sign_transactions(self, txs: Sequence[BridgeTransaction]) -> list[str]:
        """Sign several transactions in order."""
        signatures = []
        for tx in txs:
            signatures.append(await self.sign_transaction(tx))
        return signatures
