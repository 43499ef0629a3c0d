#!/usr/bin/env python3
"""Shared fixtures building raw chain output for the oracle tests."""

import base64

import pytest
from eth_abi import encode
from hexbytes import HexBytes
from solders.pubkey import Pubkey
from web3 import Web3

from bridge_oracle.event_processor import MESSAGE_PASSED_TOPIC, PROGRAM_DATA_PREFIX, TRANSACTION_DEPOSITED_EVENT
from bridge_oracle.messages import Call, Ix, IxAccount, encode_payload, incoming_message_hash
from bridge_oracle.utils import borsh_encoder

MESSAGE_PASSER = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
SENDER = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"


def _abi_ix(ix: Ix) -> tuple:
    accounts = [(bytes(account.pubkey), account.is_signer, account.is_writable) for account in ix.accounts]
    return (bytes(ix.program_id), accounts, ix.data)


@pytest.fixture
def message_passed_log():
    """Factory for raw MessagePassed logs as eth_getLogs returns them.

    The withdrawal hash defaults to the hash the bridge program expects for
    the carried instructions, so logs built here are provable.
    """

    def build(
        nonce: int = 0,
        ixs: tuple[Ix, ...] = (),
        block_number: int = 100,
        log_index: int = 0,
        tx_hash: bytes | None = None,
        sender: str = SENDER,
        withdrawal_hash: bytes | None = None,
    ) -> dict:
        if withdrawal_hash is None:
            data = encode_payload(Call(ixs=tuple(ixs)))
            withdrawal_hash = incoming_message_hash(nonce, bytes.fromhex(sender[2:]), data)
        return {
            "address": MESSAGE_PASSER,
            "topics": [
                HexBytes(MESSAGE_PASSED_TOPIC),
                HexBytes(nonce.to_bytes(32, "big")),
                HexBytes(bytes(12) + bytes.fromhex(sender[2:])),
            ],
            "data": HexBytes(encode(
                ["(bytes32,(bytes32,bool,bool)[],bytes)[]", "bytes32"],
                [[_abi_ix(ix) for ix in ixs], withdrawal_hash],
            )),
            "blockNumber": block_number,
            "blockHash": HexBytes(Web3.keccak(block_number.to_bytes(8, "big"))),
            "transactionHash": HexBytes(tx_hash or Web3.keccak(text=f"tx-{nonce}-{log_index}")),
            "transactionIndex": 0,
            "logIndex": log_index,
            "removed": False,
        }

    return build


@pytest.fixture
def deposit_log_line():
    """Factory for ``Program data:`` lines carrying a TransactionDeposited event."""

    def build(
        opaque_data: bytes,
        to: bytes = bytes.fromhex(SENDER[2:]),
        version: int = 0,
        from_pubkey: Pubkey | None = None,
        discriminator: bytes | None = None,
    ) -> str:
        discriminator = discriminator or borsh_encoder.event_discriminator("TransactionDeposited")
        payload = discriminator + borsh_encoder.build(
            TRANSACTION_DEPOSITED_EVENT,
            {
                "from_pubkey": from_pubkey or Pubkey.new_unique(),
                "to": to,
                "version": version,
                "opaque_data": opaque_data,
            },
        )
        return PROGRAM_DATA_PREFIX + base64.b64encode(payload).decode()

    return build


@pytest.fixture
def sample_ix():
    """Instruction with one writable and one read-only account."""
    return Ix(
        program_id=Pubkey.new_unique(),
        accounts=(
            IxAccount(pubkey_or_pda=Pubkey.new_unique(), is_writable=True, is_signer=False),
            IxAccount(pubkey_or_pda=Pubkey.new_unique(), is_writable=False, is_signer=False),
        ),
        data=b"\xde\xad\xbe\xef",
    )
