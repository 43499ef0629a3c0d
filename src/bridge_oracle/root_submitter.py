#!/usr/bin/env python3
"""Root checkpoint submission for the Bridge Oracle.

This module folds MessagePassed withdrawal hashes into the accumulator and
checkpoints the resulting root on the Solana bridge program with the
``submit_root`` instruction.
"""

import asyncio
import logging
from typing import Sequence

from borsh_construct import U64, CStruct
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from web3.types import LogReceipt

from .accumulator import MerkleMountainRange
from .errors import DecodeError, StaleCheckpointError
from .event_processor import EventProcessor
from .models import MessagePassedEvent, MessengerState
from .pda import ProgramAddresses
from .svm_signer import SvmSigner
from .utils.borsh_encoder import HASH, build, instruction_discriminator

logger = logging.getLogger(__name__)

SUBMIT_ROOT_ARGS = CStruct("root" / HASH, "block_number" / U64)


def build_submit_root_instruction(
    addresses: ProgramAddresses,
    payer: Pubkey,
    root: bytes,
    block_number: int
) -> Instruction:
    """Build ``submit_root(root, block_number)``."""
    data = instruction_discriminator("submit_root") + build(
        SUBMIT_ROOT_ARGS, {"root": root, "block_number": block_number}
    )
    accounts = [
        AccountMeta(pubkey=addresses.output_root(block_number), is_signer=False, is_writable=True),
        AccountMeta(pubkey=addresses.messenger_state(), is_signer=False, is_writable=True),
        AccountMeta(pubkey=payer, is_signer=True, is_writable=True),
        AccountMeta(pubkey=SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(program_id=addresses.program_id, data=data, accounts=accounts)


class RootSubmitter:
    """
    Handles MessagePassed events and checkpoints accumulator roots.

    Checkpoints are strictly monotonic in block number. A batch appends all of
    its new leaves in delivery order and then submits at most one checkpoint,
    for the highest block in the batch. When that block does not move past the
    last checkpoint the submission is deferred; the next checkpoint's root
    covers the leaves anyway.
    """

    def __init__(
        self,
        signer: SvmSigner,
        program_id: Pubkey,
        processor: EventProcessor,
        accumulator: MerkleMountainRange | None = None,
        last_block_number: int | None = None
    ) -> None:
        """
        Initialize the RootSubmitter.

        Args:
            signer: Solana signer paying for submissions
            program_id: Bridge program address
            processor: Decoder for raw MessagePassed logs
            accumulator: Accumulator to fold leaves into, a new one when omitted
            last_block_number: Block of the latest checkpoint already on chain
        """
        self.signer = signer
        self.addresses = ProgramAddresses(program_id)
        self.processor = processor
        self.accumulator = accumulator if accumulator is not None else MerkleMountainRange()
        self.last_block_number = last_block_number

        # Serializes accumulator mutation and checkpoint submission
        self._lock = asyncio.Lock()
        self._folded: dict[tuple[str, int], int] = {}
        self._messages: dict[bytes, MessagePassedEvent] = {}

        # Metrics tracking
        self.leaves_appended = 0
        self.duplicates_skipped = 0
        self.roots_submitted = 0
        self.checkpoints_deferred = 0
        self.decode_errors = 0

    async def sync_last_checkpoint(self) -> int | None:
        """
        Load the latest checkpointed block from the messenger account.

        Returns:
            The block number now used as the monotonic lower bound, if any
        """
        data = await self.signer.get_account_data(self.addresses.messenger_state())
        if data is None:
            logger.info("Messenger state not initialized on chain, no checkpoint yet")
            return self.last_block_number

        state = MessengerState.from_account_data(data)
        async with self._lock:
            if self.last_block_number is None or state.latest_block_number > self.last_block_number:
                self.last_block_number = state.latest_block_number
        logger.info(f"Last on-chain checkpoint at block {self.last_block_number}")
        return self.last_block_number

    async def handle_logs(self, logs: Sequence[LogReceipt]) -> Signature | None:
        """Decode a batch of raw logs and handle the resulting events."""
        events = []
        for log in logs:
            try:
                events.append(self.processor.decode_message_passed(log))
            except DecodeError as e:
                self.decode_errors += 1
                logger.warning(f"Skipping undecodable MessagePassed log: {e}")
        return await self.handle_events(events)

    async def handle_events(self, events: Sequence[MessagePassedEvent]) -> Signature | None:
        """
        Fold a batch of events into the accumulator and checkpoint the root.

        Args:
            events: Events in delivery order

        Returns:
            Signature of the submit_root transaction, None when nothing was
            submitted
        """
        if not events:
            return None

        async with self._lock:
            for event in events:
                if event.unique_key in self._folded:
                    self.duplicates_skipped += 1
                    logger.debug(f"Already folded: {event}")
                    continue
                leaf_index = self.accumulator.append(event.withdrawal_hash)
                self._folded[event.unique_key] = leaf_index
                self._messages[event.withdrawal_hash] = event
                self.leaves_appended += 1
                logger.info(f"Commitment updated: leaf={leaf_index} {event}")

            block_number = max(event.block_number for event in events)
            if self.last_block_number is not None and block_number <= self.last_block_number:
                self.checkpoints_deferred += 1
                logger.info(
                    f"Deferring checkpoint: block {block_number} does not advance "
                    f"past {self.last_block_number}"
                )
                return None

            return await self._submit(self.accumulator.root(), block_number)

    def get_message(self, withdrawal_hash: bytes) -> MessagePassedEvent | None:
        """Folded event committing ``withdrawal_hash``, if any."""
        return self._messages.get(bytes(withdrawal_hash))

    async def submit_checkpoint(self, root: bytes, block_number: int) -> Signature:
        """
        Submit a root checkpoint.

        Raises:
            StaleCheckpointError: If ``block_number`` does not exceed the last checkpoint
        """
        async with self._lock:
            return await self._submit(root, block_number)

    async def _submit(self, root: bytes, block_number: int) -> Signature:
        if self.last_block_number is not None and block_number <= self.last_block_number:
            raise StaleCheckpointError(block_number, self.last_block_number)

        logger.info(
            f"Root computed: 0x{root.hex()} over {self.accumulator.leaf_count} leaves "
            f"at block {block_number}"
        )
        instruction = build_submit_root_instruction(
            self.addresses, self.signer.pubkey, root, block_number
        )
        signature = await self.signer.relay([instruction])

        self.last_block_number = block_number
        self.roots_submitted += 1
        logger.info(f"✓ Root submitted for block {block_number}: {signature}")
        return signature

    def get_metrics(self) -> dict[str, int | None]:
        """Get current submission metrics."""
        return {
            "leaf_count": self.accumulator.leaf_count,
            "leaves_appended": self.leaves_appended,
            "duplicates_skipped": self.duplicates_skipped,
            "roots_submitted": self.roots_submitted,
            "checkpoints_deferred": self.checkpoints_deferred,
            "decode_errors": self.decode_errors,
            "last_block_number": self.last_block_number,
        }
