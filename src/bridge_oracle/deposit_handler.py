#!/usr/bin/env python3
"""Deposit relay handling for the Bridge Oracle.

This module takes the log lines of Solana transactions that mention the
bridge program, extracts TransactionDeposited events and relays each one as
an EVM transaction exactly once.
"""

import logging
from typing import Sequence

from .errors import (
    DecodeError,
    FatalError,
    ProtocolViolation,
    TransientError,
    UnconfirmedTransactionError,
)
from .event_processor import EventProcessor, parse_opaque_data
from .evm_signer import EvmSigner
from .models import TransactionDepositedEvent
from .utils.state_manager import ProcessedSet

logger = logging.getLogger(__name__)


class DepositHandler:
    """
    Relays Solana deposits to the EVM chain.

    Each deposit is identified by its transaction signature and its position
    among the transaction's deposit events. The key is recorded as processed
    before the relay is attempted, so a redelivered notification never
    produces a second EVM transaction while the first is in flight.
    """

    def __init__(
        self,
        signer: EvmSigner,
        processor: EventProcessor,
        dedupe_window: int = 10000
    ) -> None:
        """
        Initialize the DepositHandler.

        Args:
            signer: EVM signer sending the deposit transactions
            processor: Decoder for Solana program logs
            dedupe_window: Number of processed deposits to remember
        """
        self.signer = signer
        self.processor = processor
        self.processed = ProcessedSet(max_size=dedupe_window)

        # Metrics tracking
        self.deposits_relayed = 0
        self.deposits_duplicated = 0
        self.deposits_invalid = 0
        self.relay_failures = 0
        self.deposits_unconfirmed = 0

    async def handle_logs(self, signature: str, slot: int, logs: Sequence[str]) -> list[str]:
        """
        Handle the logs of one Solana transaction.

        A deposit that fails unexpectedly is logged and counted, and the
        remaining deposits of the transaction are still relayed.

        Args:
            signature: Base58 transaction signature
            slot: Slot the transaction landed in
            logs: Log lines of the transaction

        Returns:
            Hashes of the EVM transactions sent
        """
        tx_hashes = []
        for event in self.processor.decode_program_logs(signature, slot, logs):
            try:
                tx_hash = await self.handle_event(event)
            except FatalError:
                raise
            except Exception as e:
                self.relay_failures += 1
                logger.error(f"✗ Relay of {event.signature}#{event.index} failed: {e}", exc_info=True)
                continue
            if tx_hash is not None:
                tx_hashes.append(tx_hash)
        return tx_hashes

    async def handle_event(self, event: TransactionDepositedEvent) -> str | None:
        """
        Relay a single deposit unless it was already handled.

        Decode errors and protocol violations are logged and counted; they do
        not propagate, so one bad deposit does not stop the watcher.

        Returns:
            EVM transaction hash, None if the deposit was skipped or failed
        """
        if not self.processed.add(event.unique_key):
            self.deposits_duplicated += 1
            logger.debug(f"Duplicate deposit skipped: {event}")
            return None

        logger.info(f"Event observed: {event} slot={event.slot}")
        try:
            deposit = parse_opaque_data(event)
        except DecodeError as e:
            self.deposits_invalid += 1
            logger.warning(f"Skipping deposit {event.signature}#{event.index}: {e}")
            return None

        logger.info(f"Relaying {deposit}")
        try:
            tx_hash = await self.signer.relay(deposit)
        except UnconfirmedTransactionError as e:
            # Already broadcast, a retry could execute the deposit twice
            self.deposits_unconfirmed += 1
            logger.warning(f"Relay of {event.signature}#{event.index} unconfirmed: {e}")
            return None
        except TransientError as e:
            # Nothing was broadcast, so a redelivery can retry the deposit
            self.processed.discard(event.unique_key)
            self.relay_failures += 1
            logger.error(f"✗ Relay of {event.signature}#{event.index} failed before broadcast: {e}")
            return None
        except ProtocolViolation as e:
            self.relay_failures += 1
            logger.error(f"✗ Relay of {event.signature}#{event.index} rejected: {e}")
            return None

        self.deposits_relayed += 1
        logger.info(f"✓ Deposit {event.signature}#{event.index} relayed in {tx_hash}")
        return tx_hash

    def get_metrics(self) -> dict[str, int]:
        """Get current relay metrics."""
        return {
            "deposits_relayed": self.deposits_relayed,
            "deposits_duplicated": self.deposits_duplicated,
            "deposits_invalid": self.deposits_invalid,
            "relay_failures": self.relay_failures,
            "deposits_unconfirmed": self.deposits_unconfirmed,
            "cache_size": len(self.processed),
        }
