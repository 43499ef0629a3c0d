#!/usr/bin/env python3
"""Proving and relaying EVM messages on the Solana bridge program.

A message passed on the EVM chain becomes executable on Solana in two steps:
``prove_message`` stores it in an IncomingMessage account after checking an
MMR proof against a checkpointed OutputRoot, and ``relay_message`` executes
it. This module builds both instructions and enforces the protocol rules
locally before anything is sent.
"""

import logging

from borsh_construct import U64, Bytes, CStruct, Vec
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from spl.token.constants import TOKEN_2022_PROGRAM_ID
from web3 import Web3

from .accumulator import MerkleMountainRange, verify_proof
from .errors import (
    AlreadyExecutedError,
    InvalidTransitionError,
    MessageNotCoveredError,
    ProtocolViolation,
)
from .messages import (
    Call,
    Ix,
    MessageLifecycle,
    MessageStatus,
    Payload,
    SolTransfer,
    SplTransfer,
    Transfer,
    WrappedTokenTransfer,
    decode_payload,
    encode_payload,
    incoming_message_hash,
)
from .models import IncomingMessage, MessagePassedEvent, OutputRoot, Proof
from .pda import ProgramAddresses
from .svm_signer import SvmSigner
from .utils.borsh_encoder import EVM_ADDRESS, HASH, build, instruction_discriminator

logger = logging.getLogger(__name__)

PROVE_MESSAGE_ARGS = CStruct(
    "nonce" / U64,
    "sender" / EVM_ADDRESS,
    "data" / Bytes,
    "proof" / Vec(HASH),
    "leaf_index" / U64,
    "total_leaf_count" / U64,
    "message_hash" / HASH,
)


def _readonly(pubkey: Pubkey) -> AccountMeta:
    return AccountMeta(pubkey=pubkey, is_signer=False, is_writable=False)


def _writable(pubkey: Pubkey) -> AccountMeta:
    return AccountMeta(pubkey=pubkey, is_signer=False, is_writable=True)


def _ix_accounts(ixs: tuple[Ix, ...]) -> list[AccountMeta]:
    """Accounts of every instruction followed by each program id, read-only."""
    metas = [account.to_account_meta() for ix in ixs for account in ix.accounts]
    metas.extend(_readonly(ix.program_id) for ix in ixs)
    return metas


def message_data(event: MessagePassedEvent) -> bytes:
    """Payload bytes stored in the IncomingMessage for an EVM message."""
    return encode_payload(Call(ixs=event.ixs))


def message_hash(event: MessagePassedEvent) -> bytes:
    return incoming_message_hash(
        event.nonce, bytes(Web3.to_bytes(hexstr=event.sender)), message_data(event)
    )


class MessageProver:
    """
    Builds and submits prove_message and relay_message for EVM messages.

    Proofs are always generated against the leaf count recorded in the
    OutputRoot being proven against, never against the live accumulator.
    """

    def __init__(
        self,
        signer: SvmSigner,
        program_id: Pubkey,
        accumulator: MerkleMountainRange,
        lifecycle: MessageLifecycle | None = None
    ) -> None:
        """
        Initialize the MessageProver.

        Args:
            signer: Solana signer paying for the transactions
            program_id: Bridge program address
            accumulator: Accumulator holding the withdrawal hashes
            lifecycle: Status tracker, a new one when omitted
        """
        self.signer = signer
        self.addresses = ProgramAddresses(program_id)
        self.accumulator = accumulator
        self.lifecycle = lifecycle or MessageLifecycle()

    async def fetch_output_root(self, block_number: int) -> OutputRoot:
        """
        Read the OutputRoot checkpointed for a block.

        Raises:
            MessageNotCoveredError: If no root was checkpointed for the block
        """
        data = await self.signer.get_account_data(self.addresses.output_root(block_number))
        if data is None:
            raise MessageNotCoveredError(f"No output root checkpointed for block {block_number}")
        return OutputRoot.from_account_data(data, reference_block_number=block_number)

    async def fetch_incoming_message(self, hash_: bytes) -> IncomingMessage | None:
        data = await self.signer.get_account_data(self.addresses.incoming_message(hash_))
        if data is None:
            return None
        return IncomingMessage.from_account_data(data)

    def build_proof(self, event: MessagePassedEvent, output_root: OutputRoot) -> Proof:
        """
        Prove an event's withdrawal hash against a checkpointed root.

        Raises:
            MessageNotCoveredError: If the leaf is unknown or appended after the root
            ProtocolViolation: If the local accumulator disagrees with the root
        """
        leaf_index = self.accumulator.leaf_index(event.withdrawal_hash)
        if leaf_index is None:
            raise MessageNotCoveredError(
                f"Withdrawal hash 0x{event.withdrawal_hash.hex()} is not in the accumulator"
            )
        if leaf_index >= output_root.total_leaf_count:
            raise MessageNotCoveredError(
                f"Leaf {leaf_index} is not covered by the root at block "
                f"{output_root.reference_block_number} ({output_root.total_leaf_count} leaves)"
            )
        if output_root.total_leaf_count > self.accumulator.leaf_count:
            raise ProtocolViolation(
                f"Output root commits {output_root.total_leaf_count} leaves, "
                f"accumulator only has {self.accumulator.leaf_count}"
            )

        proof = self.accumulator.proof(leaf_index, output_root.total_leaf_count)
        if not verify_proof(output_root.root, event.withdrawal_hash, proof):
            raise ProtocolViolation(
                f"Proof for leaf {leaf_index} does not verify against root "
                f"0x{output_root.root.hex()}"
            )
        return proof

    def build_prove_instruction(self, event: MessagePassedEvent, output_root: OutputRoot) -> Instruction:
        """
        Build ``prove_message`` for an EVM message.

        Raises:
            MessageNotCoveredError: If the root does not commit the message
            ProtocolViolation: If the message hash differs from the withdrawal
                hash or the proof does not verify
        """
        data = message_data(event)
        hash_ = message_hash(event)
        if hash_ != event.withdrawal_hash:
            raise ProtocolViolation(
                f"Message hash 0x{hash_.hex()} does not match withdrawal hash "
                f"0x{event.withdrawal_hash.hex()}"
            )

        proof = self.build_proof(event, output_root)
        ix_data = instruction_discriminator("prove_message") + build(PROVE_MESSAGE_ARGS, {
            "nonce": event.nonce,
            "sender": bytes(Web3.to_bytes(hexstr=event.sender)),
            "data": data,
            "proof": list(proof.path),
            "leaf_index": proof.leaf_index,
            "total_leaf_count": proof.total_leaf_count,
            "message_hash": hash_,
        })
        accounts = [
            AccountMeta(pubkey=self.signer.pubkey, is_signer=True, is_writable=True),
            _readonly(self.addresses.output_root(output_root.reference_block_number)),
            _writable(self.addresses.incoming_message(hash_)),
            _readonly(SYSTEM_PROGRAM_ID),
        ]
        return Instruction(program_id=self.addresses.program_id, data=ix_data, accounts=accounts)

    async def prove(self, event: MessagePassedEvent, block_number: int) -> Signature:
        """Prove an EVM message against the root checkpointed at ``block_number``."""
        hash_ = event.withdrawal_hash
        if self.lifecycle.status(hash_) is None:
            self.lifecycle.register(hash_)

        existing = await self.fetch_incoming_message(hash_)
        if existing is not None:
            status = self.lifecycle.observe(hash_, existing)
            raise InvalidTransitionError(f"Message 0x{hash_.hex()} is already {status.value}")

        output_root = await self.fetch_output_root(block_number)
        instruction = self.build_prove_instruction(event, output_root)
        signature = await self.signer.relay([instruction])
        self.lifecycle.mark_proven(hash_)
        logger.info(f"✓ Message 0x{hash_.hex()} proven against block {block_number}: {signature}")
        return signature

    async def build_relay_instruction(self, hash_: bytes) -> Instruction:
        """
        Build ``relay_message`` for a proven message.

        Raises:
            InvalidTransitionError: If the message has not been proven
            AlreadyExecutedError: If the message has already been executed
        """
        incoming = await self.fetch_incoming_message(hash_)
        if incoming is None:
            raise InvalidTransitionError(f"Message 0x{hash_.hex()} has not been proven")

        self.lifecycle.observe(hash_, incoming)
        if incoming.executed:
            raise AlreadyExecutedError(hash_)

        payload = decode_payload(incoming.data)
        bridge_cpi_authority = self.addresses.bridge_cpi_authority(incoming.sender)

        remaining = []
        for meta in await self.remaining_accounts(payload):
            # The program signs for its own authority, it must not be a signer here
            if meta.pubkey == bridge_cpi_authority:
                meta = _readonly(bridge_cpi_authority)
            remaining.append(meta)

        accounts = [
            AccountMeta(pubkey=self.signer.pubkey, is_signer=True, is_writable=True),
            _readonly(bridge_cpi_authority),
            _writable(self.addresses.incoming_message(hash_)),
            *remaining,
        ]
        return Instruction(
            program_id=self.addresses.program_id,
            data=instruction_discriminator("relay_message"),
            accounts=accounts,
        )

    async def remaining_accounts(self, payload: Payload) -> list[AccountMeta]:
        """Accounts the carried instructions and transfer need, in program order."""
        match payload:
            case Call(ixs=ixs):
                if not ixs:
                    raise ProtocolViolation("Call message carries no instructions")
                return _ix_accounts(ixs)
            case Transfer(transfer=transfer, call=call):
                metas = await self._transfer_accounts(transfer)
                if call is not None:
                    metas.extend(_ix_accounts(call.ixs))
                return metas
            case _:
                raise TypeError(f"Unsupported payload type {type(payload).__name__}")

    async def _transfer_accounts(
        self,
        transfer: SolTransfer | SplTransfer | WrappedTokenTransfer
    ) -> list[AccountMeta]:
        match transfer:
            case SolTransfer(remote_token=remote_token, to=to):
                return [
                    _writable(self.addresses.sol_vault(remote_token)),
                    _writable(to),
                    _readonly(SYSTEM_PROGRAM_ID),
                ]
            case SplTransfer(remote_token=remote_token, local_token=local_token, to=to):
                token_program = await self.signer.get_account_owner(local_token)
                if token_program is None:
                    raise ProtocolViolation(f"Mint {local_token} does not exist")
                return [
                    _readonly(local_token),
                    _writable(self.addresses.token_vault(local_token, remote_token)),
                    _writable(to),
                    _readonly(token_program),
                ]
            case WrappedTokenTransfer(local_token=local_token, to=to):
                return [
                    _writable(local_token),
                    _writable(to),
                    _readonly(TOKEN_2022_PROGRAM_ID),
                ]

    async def relay(self, hash_: bytes) -> Signature:
        """Execute a proven message."""
        instruction = await self.build_relay_instruction(hash_)
        signature = await self.signer.relay([instruction])
        if self.lifecycle.status(hash_) is not MessageStatus.EXECUTED:
            self.lifecycle.mark_executed(hash_)
        logger.info(f"✓ Message 0x{hash_.hex()} relayed: {signature}")
        return signature
