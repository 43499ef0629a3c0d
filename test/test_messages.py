#!/usr/bin/env python3
"""Unit tests for message payloads, hashing and the message lifecycle."""

import pytest
from solders.pubkey import Pubkey
from web3 import Web3

from bridge_oracle.errors import AlreadyExecutedError, DecodeError, InvalidTransitionError
from bridge_oracle.fee_model import FeeWindow, FeeWindowState, min_gas_limit
from bridge_oracle.messages import (
    Call,
    Ix,
    IxAccount,
    MessageLifecycle,
    MessageOutbox,
    MessageStatus,
    OutgoingMessage,
    PdaSeeds,
    SolTransfer,
    SplTransfer,
    Transfer,
    WrappedTokenTransfer,
    decode_payload,
    encode_payload,
    incoming_message_hash,
)
from bridge_oracle.models import IncomingMessage

SENDER = bytes.fromhex("5FbDB2315678afecb367f032d93F642f64180aa3")
PROGRAM = Pubkey.from_string("11111111111111111111111111111111")


@pytest.fixture
def program_ix():
    """Instruction touching one plain account and one PDA."""
    target = Pubkey.new_unique()
    return Ix(
        program_id=Pubkey.new_unique(),
        accounts=(
            IxAccount(pubkey_or_pda=target, is_writable=True, is_signer=False),
            IxAccount(
                pubkey_or_pda=PdaSeeds(seeds=(b"counter", b"\x01"), program_id=PROGRAM),
                is_writable=False,
                is_signer=False,
            ),
        ),
        data=b"\x01\x02\x03",
    )


@pytest.fixture
def outbox():
    state = FeeWindowState(target=1_000_000, window_start_time=0)
    return MessageOutbox(FeeWindow(state=state, clock=lambda: 0))


class TestPayloadCodec:
    """Tests for the payload Borsh layout."""

    def test_call_layout(self, program_ix):
        encoded = encode_payload(Call(ixs=(program_ix,)))
        # Variant tag, then a one-element vector
        assert encoded[:5] == b"\x00\x01\x00\x00\x00"
        assert encoded[5:37] == bytes(program_ix.program_id)

    def test_call_decodes(self, program_ix):
        payload = Call(ixs=(program_ix,))
        assert decode_payload(encode_payload(payload)) == payload

    @pytest.mark.parametrize("transfer", [
        SolTransfer(remote_token=b"\x11" * 20, to=Pubkey.new_unique(), amount=5),
        SplTransfer(
            remote_token=b"\x22" * 20, local_token=Pubkey.new_unique(), to=Pubkey.new_unique(), amount=7
        ),
        WrappedTokenTransfer(local_token=Pubkey.new_unique(), to=Pubkey.new_unique(), amount=9),
    ])
    def test_transfer_kinds(self, transfer, program_ix):
        """Each transfer kind survives with and without a trailing call."""
        for payload in (Transfer(transfer=transfer), Transfer(transfer=transfer, call=Call(ixs=(program_ix,)))):
            assert decode_payload(encode_payload(payload)) == payload

    def test_unknown_message_variant(self):
        with pytest.raises(DecodeError, match="unknown variant 7"):
            decode_payload(b"\x07")

    def test_unknown_transfer_variant(self):
        with pytest.raises(DecodeError, match="unknown variant 5"):
            decode_payload(b"\x01\x05")

    def test_trailing_bytes_rejected(self, program_ix):
        with pytest.raises(DecodeError, match="trailing"):
            decode_payload(encode_payload(Call(ixs=(program_ix,))) + b"\x00")

    def test_truncated_rejected(self, program_ix):
        with pytest.raises(DecodeError):
            decode_payload(encode_payload(Call(ixs=(program_ix,)))[:-1])

    def test_pda_account_resolves(self, program_ix):
        expected, _ = Pubkey.find_program_address([b"counter", b"\x01"], PROGRAM)
        meta = program_ix.accounts[1].to_account_meta()
        assert meta.pubkey == expected
        assert not meta.is_writable

    def test_to_instruction(self, program_ix):
        instruction = program_ix.to_instruction()
        assert instruction.program_id == program_ix.program_id
        assert bytes(instruction.data) == b"\x01\x02\x03"
        assert len(instruction.accounts) == 2


class TestHashing:
    """Tests for message hashes."""

    def test_incoming_message_hash(self):
        expected = Web3.keccak((3).to_bytes(8, "big") + SENDER + b"data")
        assert incoming_message_hash(3, SENDER, b"data") == bytes(expected)

    def test_incoming_message_hash_requires_evm_sender(self):
        with pytest.raises(ValueError):
            incoming_message_hash(0, b"\x00" * 32, b"")

    def test_distinct_messages_hash_differently(self, program_ix):
        call = Call(ixs=(program_ix,))
        first = OutgoingMessage(nonce=0, sender=SENDER, gas_limit=200_000, payload=call)
        second = OutgoingMessage(nonce=1, sender=SENDER, gas_limit=200_000, payload=call)
        third = OutgoingMessage(nonce=0, sender=SENDER, gas_limit=200_001, payload=call)
        assert len({first.hash, second.hash, third.hash}) == 3

    def test_outgoing_message_validation(self, program_ix):
        call = Call(ixs=(program_ix,))
        with pytest.raises(ValueError, match="Nonce"):
            OutgoingMessage(nonce=-1, sender=SENDER, gas_limit=0, payload=call)
        with pytest.raises(ValueError, match="Sender"):
            OutgoingMessage(nonce=0, sender=b"\x00" * 10, gas_limit=0, payload=call)


class TestMessageLifecycle:
    """Tests for status transitions and replay protection."""

    def test_forward_transitions(self):
        lifecycle = MessageLifecycle()
        message_hash = b"\x01" * 32
        assert lifecycle.status(message_hash) is None
        lifecycle.register(message_hash)
        lifecycle.mark_proven(message_hash)
        lifecycle.mark_executed(message_hash)
        assert lifecycle.status(message_hash) is MessageStatus.EXECUTED

    def test_skipping_a_state_is_rejected(self):
        lifecycle = MessageLifecycle()
        lifecycle.register(b"\x02" * 32)
        with pytest.raises(InvalidTransitionError):
            lifecycle.mark_executed(b"\x02" * 32)

    def test_executed_message_cannot_replay(self):
        lifecycle = MessageLifecycle()
        message_hash = b"\x03" * 32
        lifecycle.register(message_hash)
        lifecycle.mark_proven(message_hash)
        lifecycle.mark_executed(message_hash)
        for transition in (lifecycle.register, lifecycle.mark_proven, lifecycle.mark_executed):
            with pytest.raises(AlreadyExecutedError):
                transition(message_hash)

    def test_observe_adopts_chain_state(self):
        lifecycle = MessageLifecycle()
        message_hash = b"\x04" * 32
        proven = IncomingMessage(sender=SENDER, data=b"", executed=False)
        executed = IncomingMessage(sender=SENDER, data=b"", executed=True)

        assert lifecycle.observe(message_hash, None) is None
        assert lifecycle.observe(message_hash, proven) is MessageStatus.PROVEN
        assert lifecycle.observe(message_hash, executed) is MessageStatus.EXECUTED
        # Never moves backwards
        assert lifecycle.observe(message_hash, proven) is MessageStatus.EXECUTED


class TestMessageOutbox:
    """Tests for nonce assignment and pricing."""

    def test_nonces_strictly_increase(self, outbox, program_ix):
        payload = Call(ixs=(program_ix,))
        gas = min_gas_limit(len(encode_payload(payload)))
        nonces = [outbox.send(SENDER, gas, payload, now=0)[0].nonce for _ in range(5)]
        assert nonces == [0, 1, 2, 3, 4]
        assert outbox.next_nonce == 5

    def test_gas_below_minimum_rejected(self, outbox, program_ix):
        payload = Call(ixs=(program_ix,))
        gas = min_gas_limit(len(encode_payload(payload)))
        with pytest.raises(ValueError, match="Gas limit too low"):
            outbox.send(SENDER, gas - 1, payload, now=0)
        # A rejected message does not consume a nonce
        assert outbox.next_nonce == 0

    def test_send_charges_fee_window(self, outbox, program_ix):
        payload = Call(ixs=(program_ix,))
        message, quote = outbox.send(SENDER, 200_000, payload, now=0)
        assert quote.gas_limit == 200_000
        assert outbox.fee_window.state.current_window_gas_used == 200_000
        assert message.gas_limit == 200_000
