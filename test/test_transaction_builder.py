#!/usr/bin/env python3
"""Tests for TransactionBuilder."""

import pytest
from eth_abi import decode
from eth_abi.packed import encode_packed
from hexbytes import HexBytes
from web3 import Web3

from bridge_relayer.errors import InvalidEventError
from bridge_relayer.models import EventKind
from bridge_relayer.transaction_builder import TransactionBuilder

from conftest import LOCK_TX_HASH, ONE_TOKEN, TOKEN, USER, make_lock_event, make_transaction


class TestFromLockedEvent:
    """Tests for deriving transactions from events."""

    def test_copies_event_fields(self):
        """A lock event for 1 token on 1337 targeting 1338 maps field by field."""
        tx = TransactionBuilder.from_locked_event(make_lock_event(nonce=7))

        assert tx.token == Web3.to_checksum_address(TOKEN)
        assert tx.user == Web3.to_checksum_address(USER)
        assert tx.amount == ONE_TOKEN
        assert tx.transaction_id == LOCK_TX_HASH
        assert tx.source_chain_id == 1337
        assert tx.target_chain_id == 1338
        assert tx.nonce == 7
        assert tx.queue_id == f"1337-1338-{LOCK_TX_HASH}"

    def test_is_deterministic(self):
        """Deriving twice from the same event gives identical transactions."""
        event = make_lock_event()
        assert TransactionBuilder.from_locked_event(event) == TransactionBuilder.from_locked_event(event)

    def test_normalizes_transaction_hash_case(self):
        """Upper- and lower-case hashes give the same queue id."""
        upper = make_lock_event(transaction_hash="0x" + "AB" * 32)
        lower = make_lock_event(transaction_hash="0x" + "ab" * 32)

        assert (
            TransactionBuilder.from_locked_event(upper).queue_id
            == TransactionBuilder.from_locked_event(lower).queue_id
        )

    @pytest.mark.parametrize("kind", [EventKind.TOKENS_MINTED, EventKind.TOKENS_UNLOCKED])
    def test_rejects_other_event_kinds(self, kind):
        """Only TokensLocked events can become transactions."""
        with pytest.raises(InvalidEventError, match="Event must be TokensLocked"):
            TransactionBuilder.from_locked_event(make_lock_event(kind=kind))

    @pytest.mark.parametrize("overrides, message", [
        ({"token": "0x1234"}, "Invalid token address"),
        ({"user": "not-an-address"}, "Invalid user address"),
        ({"amount": -1}, "Negative amount"),
        ({"transaction_hash": "0x1234"}, "must be 32 bytes"),
        ({"target_chain_id": 1337}, "Target chain equals source chain"),
    ])
    def test_rejects_malformed_events(self, overrides, message):
        """Malformed lock events are rejected before reaching the queue."""
        with pytest.raises(InvalidEventError, match=message):
            TransactionBuilder.from_locked_event(make_lock_event(**overrides))

    def test_invalid_event_is_value_error(self):
        """InvalidEventError can be handled as a ValueError."""
        with pytest.raises(ValueError):
            TransactionBuilder.from_locked_event(make_lock_event(kind=EventKind.TOKENS_MINTED))


class TestMessageHash:
    """Tests for the signed message layout."""

    def test_matches_packed_encoding(self):
        """Hash is keccak over packed (token, user, amount, transactionId, targetChainId)."""
        tx = TransactionBuilder.from_locked_event(make_lock_event())

        expected = Web3.keccak(encode_packed(
            ['address', 'address', 'uint256', 'bytes32', 'uint256'],
            [tx.token, tx.user, tx.amount, bytes(HexBytes(tx.transaction_id)), tx.target_chain_id],
        ))

        assert TransactionBuilder.build_message_hash(tx) == expected
        assert len(TransactionBuilder.build_message_hash(tx)) == 32

    def test_is_order_sensitive(self):
        """Swapping token and user changes the hash."""
        tx = TransactionBuilder.from_locked_event(make_lock_event())
        swapped = TransactionBuilder.from_locked_event(make_lock_event(token=USER, user=TOKEN))

        assert TransactionBuilder.build_message_hash(tx) != TransactionBuilder.build_message_hash(swapped)

    def test_ignores_nonce_and_source_chain(self):
        """Only the five signed fields contribute to the hash."""
        base = TransactionBuilder.from_locked_event(make_lock_event(nonce=1))
        other = TransactionBuilder.from_locked_event(make_lock_event(nonce=2))

        assert TransactionBuilder.build_message_hash(base) == TransactionBuilder.build_message_hash(other)

    def test_address_case_does_not_matter(self):
        """Lowercase and checksummed addresses sign and settle identically."""
        lower = make_transaction(1)
        checksummed = make_transaction(
            1, token=Web3.to_checksum_address(TOKEN), user=Web3.to_checksum_address(USER)
        )
        signatures = ["0x" + "11" * 65]

        assert lower.token == TOKEN
        assert TransactionBuilder.build_message_hash(lower) == TransactionBuilder.build_message_hash(checksummed)
        assert (
            TransactionBuilder.build_settlement_payload(lower, signatures)
            == TransactionBuilder.build_settlement_payload(checksummed, signatures)
        )

    def test_depends_on_target_chain(self):
        """The same lock targeting another chain yields another hash."""
        a = TransactionBuilder.from_locked_event(make_lock_event(target_chain_id=1338))
        b = TransactionBuilder.from_locked_event(make_lock_event(target_chain_id=1339))

        assert TransactionBuilder.build_message_hash(a) != TransactionBuilder.build_message_hash(b)


class TestSettlementPayload:
    """Tests for completeBridgeTransfer call data."""

    def test_encodes_complete_bridge_transfer(self):
        """Call data carries the selector and all arguments with signatures in order."""
        tx = TransactionBuilder.from_locked_event(make_lock_event())
        signatures = ["0x" + "11" * 65, "0x" + "22" * 65]

        payload = TransactionBuilder.build_settlement_payload(tx, signatures)
        raw = HexBytes(payload)

        selector = Web3.keccak(
            text="completeBridgeTransfer(address,address,uint256,bytes32,bytes[])"
        )[:4]
        assert raw[:4] == selector

        token, user, amount, transaction_id, decoded_sigs = decode(
            ['address', 'address', 'uint256', 'bytes32', 'bytes[]'], raw[4:]
        )
        assert token.lower() == TOKEN
        assert user.lower() == USER
        assert amount == ONE_TOKEN
        assert transaction_id == bytes(HexBytes(LOCK_TX_HASH))
        assert [HexBytes(s) for s in decoded_sigs] == [HexBytes(s) for s in signatures]

    def test_accepts_empty_signature_set(self):
        """Signatures are passed through unmodified, even when empty."""
        tx = TransactionBuilder.from_locked_event(make_lock_event())
        raw = HexBytes(TransactionBuilder.build_settlement_payload(tx, []))

        *_, decoded_sigs = decode(['address', 'address', 'uint256', 'bytes32', 'bytes[]'], raw[4:])
        assert list(decoded_sigs) == []
