#!/usr/bin/env python3
"""Event processing module for the Bridge Oracle.

This module decodes raw chain output into structured events: MessagePassed
logs from the EVM message passer, and TransactionDeposited events that the
Solana bridge program emits as base64 ``Program data:`` log lines. It also
reshapes deposits into EVM transactions.
"""

import base64
import binascii
import logging
from collections.abc import Mapping
from typing import Any, Sequence

from borsh_construct import U64, Bytes, CStruct
from solders.pubkey import Pubkey
from solders.signature import Signature
from web3 import Web3
from web3.types import LogReceipt

from .errors import DecodeError
from .messages import Ix, IxAccount
from .models import DepositTx, MessagePassedEvent, TransactionDepositedEvent
from .utils.borsh_encoder import DISCRIMINATOR_SIZE, EVM_ADDRESS, PUBKEY, event_discriminator, parse
from .utils.contract_utility import ContractUtility

# Get logger for this module
logger = logging.getLogger(__name__)

MESSAGE_PASSED_SIGNATURE = (
    "MessagePassed(uint256,address,(bytes32,(bytes32,bool,bool)[],bytes)[],bytes32)"
)
MESSAGE_PASSED_TOPIC = Web3.to_hex(Web3.keccak(text=MESSAGE_PASSED_SIGNATURE))

PROGRAM_DATA_PREFIX = "Program data: "
TRANSACTION_DEPOSITED = "TransactionDeposited"
DEPOSIT_VERSION = 0

# 8-byte big-endian gas limit followed by the creation flag
OPAQUE_DATA_MIN_SIZE = 9

TRANSACTION_DEPOSITED_EVENT = CStruct(
    "from_pubkey" / PUBKEY,
    "to" / EVM_ADDRESS,
    "version" / U64,
    "opaque_data" / Bytes,
)


def _field(value: Any, name: str, index: int) -> Any:
    # Struct arguments decode either as named mappings or as plain tuples
    if isinstance(value, Mapping):
        return value[name]
    return value[index]


def evm_address_from_pubkey(pubkey: Pubkey) -> str:
    """EVM alias of a Solana account: last 20 bytes of keccak256(pubkey)."""
    return Web3.to_checksum_address(Web3.keccak(bytes(pubkey))[-20:])


def deposit_source_hash(signature: str, index: int) -> bytes:
    """
    Unique identifier of a deposit.

    keccak256(domain(32 zero bytes) || keccak256(signature || index as uint256))
    """
    try:
        signature_bytes = bytes(Signature.from_string(signature))
    except Exception as e:
        raise DecodeError(f"Invalid transaction signature {signature}", e) from e
    deposit_id = Web3.keccak(signature_bytes + index.to_bytes(32, "big"))
    return bytes(Web3.keccak(bytes(32) + deposit_id))


def parse_opaque_data(event: TransactionDepositedEvent) -> DepositTx:
    """
    Reshape a deposit event into an EVM transaction.

    Args:
        event: Decoded TransactionDeposited event

    Returns:
        DepositTx with the gas limit and calldata unpacked from the opaque data

    Raises:
        DecodeError: On an unsupported version or malformed opaque data
    """
    if event.version != DEPOSIT_VERSION:
        raise DecodeError(f"Unsupported deposit version {event.version} in {event.signature}")

    data = event.opaque_data
    if len(data) < OPAQUE_DATA_MIN_SIZE:
        raise DecodeError(
            f"Opaque data too short: got {len(data)} bytes, need at least {OPAQUE_DATA_MIN_SIZE}"
        )

    gas = int.from_bytes(data[:8], "big")
    match data[8]:
        case 0:
            to: str | None = Web3.to_checksum_address(event.to)
        case 1:
            to = None
        case other:
            raise DecodeError(f"Invalid contract creation flag {other}")

    return DepositTx(
        source_hash=deposit_source_hash(event.signature, event.index),
        from_address=evm_address_from_pubkey(event.from_pubkey),
        to=to,
        value=0,
        gas=gas,
        data=data[OPAQUE_DATA_MIN_SIZE:],
    )


class EventProcessor:
    """Decodes events from both chains.

    This class is responsible for:
    - Parsing MessagePassed logs into MessagePassedEvent objects
    - Extracting TransactionDeposited events from Solana program logs
    - Maintaining metrics on decoded, skipped and invalid events
    """

    def __init__(self, abi: list[dict[str, Any]] | None = None) -> None:
        """Initialize the EventProcessor.

        Args:
            abi: MessagePasser ABI, loaded from the bundled contracts when omitted
        """
        contract = Web3().eth.contract(abi=abi or ContractUtility.get_contract_abi("MessagePasser"))
        self.message_passed = contract.events.MessagePassed()
        self.deposit_discriminator = event_discriminator(TRANSACTION_DEPOSITED)

        # Metrics tracking
        self.events_decoded = 0
        self.events_skipped = 0
        self.events_invalid = 0

        logger.info(
            f"EventProcessor initialized (MessagePassed topic {MESSAGE_PASSED_TOPIC[:12]}..., "
            f"TransactionDeposited discriminator 0x{self.deposit_discriminator.hex()})"
        )

    def decode_message_passed(self, log: LogReceipt) -> MessagePassedEvent:
        """Decode a raw MessagePassed log.

        Args:
            log: Log as returned by eth_getLogs or a logs subscription

        Returns:
            Decoded event

        Raises:
            DecodeError: If the log does not match the event ABI
        """
        try:
            decoded = self.message_passed.process_log(log)
            args = decoded["args"]
            ixs = tuple(self._decode_ix(ix) for ix in args["ixs"])
            event = MessagePassedEvent(
                nonce=args["nonce"],
                sender=Web3.to_checksum_address(args["sender"]),
                ixs=ixs,
                withdrawal_hash=bytes(args["withdrawalHash"]),
                block_number=decoded["blockNumber"],
                transaction_hash=Web3.to_hex(decoded["transactionHash"]),
                log_index=decoded["logIndex"],
            )
        except DecodeError:
            self.events_invalid += 1
            raise
        except Exception as e:
            self.events_invalid += 1
            raise DecodeError(f"Failed to decode MessagePassed log: {e}", e) from e

        self.events_decoded += 1
        logger.debug(f"Decoded {event}")
        return event

    @staticmethod
    def _decode_ix(ix: Any) -> Ix:
        accounts = tuple(
            IxAccount(
                pubkey_or_pda=Pubkey(bytes(_field(account, "pubKey", 0))),
                is_signer=_field(account, "isSigner", 1),
                is_writable=_field(account, "isWritable", 2),
            )
            for account in _field(ix, "accounts", 1)
        )
        return Ix(
            program_id=Pubkey(bytes(_field(ix, "programId", 0))),
            accounts=accounts,
            data=bytes(_field(ix, "data", 2)),
        )

    def decode_program_logs(
        self,
        signature: str,
        slot: int,
        logs: Sequence[str]
    ) -> list[TransactionDepositedEvent]:
        """Extract TransactionDeposited events from a transaction's logs.

        Lines that are not program data, and program data carrying another
        event's discriminator, are ignored. Malformed payloads are logged and
        skipped so one bad event does not hide the others.

        Args:
            signature: Base58 signature of the transaction
            slot: Slot the transaction landed in
            logs: Log lines of the transaction

        Returns:
            Events in emission order, each tagged with its position
        """
        events: list[TransactionDepositedEvent] = []
        index = 0
        for line in logs:
            if not line.startswith(PROGRAM_DATA_PREFIX):
                continue

            try:
                payload = base64.b64decode(line[len(PROGRAM_DATA_PREFIX):], validate=True)
            except (binascii.Error, ValueError):
                self.events_invalid += 1
                logger.warning(f"Skipping undecodable program data in {signature}")
                continue

            if len(payload) < DISCRIMINATOR_SIZE:
                self.events_invalid += 1
                logger.warning(
                    f"Skipping program data shorter than a discriminator "
                    f"({len(payload)} bytes) in {signature}"
                )
                continue

            if payload[:DISCRIMINATOR_SIZE] != self.deposit_discriminator:
                self.events_skipped += 1
                continue

            try:
                event = self._decode_deposit(payload[DISCRIMINATOR_SIZE:], signature, slot, index)
            except DecodeError as e:
                self.events_invalid += 1
                logger.warning(f"Skipping malformed TransactionDeposited #{index} in {signature}: {e}")
            else:
                self.events_decoded += 1
                events.append(event)
            index += 1

        return events

    @staticmethod
    def _decode_deposit(
        data: bytes,
        signature: str,
        slot: int,
        index: int
    ) -> TransactionDepositedEvent:
        fields = parse(TRANSACTION_DEPOSITED_EVENT, data, allow_trailing=True)
        return TransactionDepositedEvent(
            from_pubkey=fields.from_pubkey,
            to=fields.to,
            version=fields.version,
            opaque_data=fields.opaque_data,
            signature=signature,
            slot=slot,
            index=index,
        )

    def get_metrics(self) -> dict[str, int]:
        """Get current decoding metrics.

        Returns:
            Dictionary of metric names to values
        """
        return {
            "events_decoded": self.events_decoded,
            "events_skipped": self.events_skipped,
            "events_invalid": self.events_invalid,
        }

    def log_metrics(self) -> None:
        """Log current decoding metrics."""
        metrics = self.get_metrics()
        logger.info(
            f"EventProcessor Metrics: "
            f"Decoded={metrics['events_decoded']}, "
            f"Skipped={metrics['events_skipped']}, "
            f"Invalid={metrics['events_invalid']}"
        )
