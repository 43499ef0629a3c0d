#!/usr/bin/env python3
"""Data models for the bridge oracle.

This module provides immutable data classes for decoded chain events, the
on-chain accounts the oracle reads, and the values it produces (proofs and
deposit transactions), plus the mutable cursor each watcher owns.
"""

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from borsh_construct import U64, Bool, Bytes, CStruct
from solders.pubkey import Pubkey

from .utils.borsh_encoder import DISCRIMINATOR, EVM_ADDRESS, HASH, parse

if TYPE_CHECKING:
    from .messages import Ix


OUTPUT_ROOT_ACCOUNT = CStruct("discriminator" / DISCRIMINATOR, "root" / HASH, "total_leaf_count" / U64)

INCOMING_MESSAGE_ACCOUNT = CStruct(
    "discriminator" / DISCRIMINATOR,
    "sender" / EVM_ADDRESS,
    "data" / Bytes,
    "executed" / Bool,
)

MESSENGER_ACCOUNT = CStruct("discriminator" / DISCRIMINATOR, "msg_nonce" / U64, "latest_block_number" / U64)


class CursorMode(Enum):
    """How a watcher receives items from its chain."""
    SUBSCRIPTION = "subscription"
    POLLING = "polling"


@dataclass(slots=True)
class IndexerCursor:
    """Resume point of a watcher.

    Attributes:
        mode: Transport mode the watcher runs in
        last_processed: Highest block or slot whose events were fully handled
    """

    mode: CursorMode
    last_processed: int | None = None

    @property
    def next_height(self) -> int | None:
        """First height that still has to be queried."""
        return None if self.last_processed is None else self.last_processed + 1

    def advance(self, height: int) -> bool:
        """Move the cursor forward to ``height``.

        The cursor never moves backwards; a lower or equal height is ignored.

        Returns:
            True if the cursor moved
        """
        if self.last_processed is not None and height <= self.last_processed:
            return False
        self.last_processed = height
        return True


@dataclass(frozen=True, slots=True)
class Proof:
    """MMR membership proof produced against a historical accumulator state.

    Attributes:
        path: Sibling hashes up to the leaf's peak, then the other peaks right-to-left
        leaf_index: Zero-based index of the proven leaf
        total_leaf_count: Leaf count of the accumulator state the proof targets
    """

    path: tuple[bytes, ...]
    leaf_index: int
    total_leaf_count: int

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        return {
            "leafIndex": self.leaf_index,
            "totalLeafCount": self.total_leaf_count,
            "proof": ["0x" + node.hex() for node in self.path],
        }


@dataclass(frozen=True, slots=True)
class OutputRoot:
    """A root checkpoint stored on the destination chain.

    Attributes:
        root: 32-byte MMR root
        reference_block_number: Source-chain block the root was computed at
        total_leaf_count: Number of leaves committed by the root
    """

    root: bytes
    reference_block_number: int
    total_leaf_count: int

    def __post_init__(self) -> None:
        if len(self.root) != 32:
            raise ValueError(f"Output root must be 32 bytes, got {len(self.root)}")

    @classmethod
    def from_account_data(cls, data: bytes, reference_block_number: int) -> "OutputRoot":
        """Decode ``disc(8) | root(32) | total_leaf_count(u64)``."""
        account = parse(OUTPUT_ROOT_ACCOUNT, data, allow_trailing=True)
        return cls(
            root=account.root,
            reference_block_number=reference_block_number,
            total_leaf_count=account.total_leaf_count,
        )


@dataclass(frozen=True, slots=True)
class IncomingMessage:
    """A proven message waiting on the destination chain.

    Attributes:
        sender: 20-byte source-chain sender
        data: Borsh-encoded message payload
        executed: Whether the message has been relayed; flips once to True
    """

    sender: bytes
    data: bytes
    executed: bool

    @classmethod
    def from_account_data(cls, data: bytes) -> "IncomingMessage":
        """Decode ``disc(8) | sender(20) | data(vec) | executed(bool)``."""
        account = parse(INCOMING_MESSAGE_ACCOUNT, data, allow_trailing=True)
        return cls(sender=account.sender, data=account.data, executed=account.executed)


@dataclass(frozen=True, slots=True)
class MessengerState:
    """On-chain messenger account holding the last checkpointed block."""

    msg_nonce: int
    latest_block_number: int

    @classmethod
    def from_account_data(cls, data: bytes) -> "MessengerState":
        account = parse(MESSENGER_ACCOUNT, data, allow_trailing=True)
        return cls(msg_nonce=account.msg_nonce, latest_block_number=account.latest_block_number)


@dataclass(frozen=True, slots=True)
class MessagePassedEvent:
    """Represents a MessagePassed event emitted by the EVM message passer.

    Attributes:
        nonce: Message nonce assigned by the message passer
        sender: Checksummed EVM sender address
        ixs: Solana instructions carried by the message
        withdrawal_hash: 32-byte leaf committed into the accumulator
        block_number: Block the event was emitted in
        transaction_hash: Hash of the emitting transaction (0x-prefixed)
        log_index: Index of the log within the block
    """

    nonce: int
    sender: str
    ixs: tuple["Ix", ...]
    withdrawal_hash: bytes
    block_number: int
    transaction_hash: str
    log_index: int

    def __str__(self) -> str:
        return (
            f"MessagePassed(nonce={self.nonce}, "
            f"sender={self.sender[:10]}..., "
            f"hash=0x{self.withdrawal_hash.hex()[:12]}..., "
            f"block={self.block_number})"
        )

    @property
    def unique_key(self) -> tuple[str, int]:
        return (self.transaction_hash, self.log_index)


@dataclass(frozen=True, slots=True)
class TransactionDepositedEvent:
    """Represents a TransactionDeposited event emitted by the Solana bridge.

    Attributes:
        from_pubkey: Depositor on Solana
        to: 20-byte EVM destination
        version: Encoding version of ``opaque_data``
        opaque_data: Packed gas, creation flag and calldata
        signature: Base58 signature of the emitting transaction
        slot: Slot the transaction landed in
        index: Position of the event among the transaction's events
    """

    from_pubkey: Pubkey
    to: bytes
    version: int
    opaque_data: bytes
    signature: str
    slot: int
    index: int = 0

    def __str__(self) -> str:
        return (
            f"TransactionDeposited(sig={self.signature[:12]}..., "
            f"from={self.from_pubkey}, to=0x{self.to.hex()}, "
            f"version={self.version}, data_len={len(self.opaque_data)})"
        )

    @property
    def unique_key(self) -> tuple[str, int]:
        return (self.signature, self.index)


@dataclass(frozen=True, slots=True)
class DepositTx:
    """A deposit reshaped into an EVM transaction.

    Attributes:
        source_hash: Identifier of the deposit's source event
        from_address: EVM address derived from the Solana depositor
        to: Destination address, None for contract creation
        mint: Amount minted on the destination, None when nothing is minted
        value: Value transferred with the call
        gas: Gas limit
        is_system_transaction: Whether the deposit is exempt from the gas limit
        data: Calldata or init code
    """

    source_hash: bytes
    from_address: str
    to: str | None
    value: int
    gas: int
    data: bytes
    mint: int | None = None
    is_system_transaction: bool = False

    @property
    def is_creation(self) -> bool:
        return self.to is None

    def __str__(self) -> str:
        target = "CREATE" if self.to is None else self.to
        return (
            f"DepositTx(source=0x{self.source_hash.hex()[:12]}..., "
            f"from={self.from_address}, to={target}, value={self.value}, "
            f"gas={self.gas}, data_len={len(self.data)})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "source_hash": "0x" + self.source_hash.hex(),
            "from": self.from_address,
            "to": self.to,
            "mint": self.mint,
            "value": self.value,
            "gas": self.gas,
            "is_system_transaction": self.is_system_transaction,
            "data": "0x" + self.data.hex(),
        }
