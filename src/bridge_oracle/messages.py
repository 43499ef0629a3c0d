#!/usr/bin/env python3
"""Cross-chain message model, hashing and lifecycle.

Payloads are a tagged union: a ``Call`` carries Solana instructions, a
``Transfer`` carries exactly one token transfer kind (SOL, SPL or wrapped
token) and optionally a trailing call. The Borsh layout produced by
``encode_payload`` is the one the bridge program stores in an
``IncomingMessage`` account, so the same codec serves hashing, proving and
relay-account resolution.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum

from borsh_construct import U64, Bool, Bytes, CStruct, Vec
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from web3 import Web3

from .errors import AlreadyExecutedError, InvalidTransitionError
from .fee_model import FeeQuote, FeeWindow, min_gas_limit
from .models import IncomingMessage
from .utils.borsh_encoder import EVM_ADDRESS, PUBKEY, TaggedUnion, build, parse

logger = logging.getLogger(__name__)

U64_MAX = (1 << 64) - 1


@dataclass(frozen=True, slots=True)
class PdaSeeds:
    """An account address derived from seeds rather than stored."""

    seeds: tuple[bytes, ...]
    program_id: Pubkey

    def resolve(self) -> Pubkey:
        address, _ = Pubkey.find_program_address(list(self.seeds), self.program_id)
        return address


@dataclass(frozen=True, slots=True)
class IxAccount:
    """Account reference of a carried instruction."""

    pubkey_or_pda: Pubkey | PdaSeeds
    is_writable: bool
    is_signer: bool

    @property
    def pubkey(self) -> Pubkey:
        match self.pubkey_or_pda:
            case PdaSeeds() as pda:
                return pda.resolve()
            case pubkey:
                return pubkey

    def to_account_meta(self) -> AccountMeta:
        return AccountMeta(pubkey=self.pubkey, is_signer=self.is_signer, is_writable=self.is_writable)


@dataclass(frozen=True, slots=True)
class Ix:
    """A Solana instruction carried inside a cross-chain message."""

    program_id: Pubkey
    accounts: tuple[IxAccount, ...]
    data: bytes

    def to_instruction(self) -> Instruction:
        return Instruction(
            program_id=self.program_id,
            data=self.data,
            accounts=[account.to_account_meta() for account in self.accounts],
        )


@dataclass(frozen=True, slots=True)
class Call:
    """Payload executing a list of instructions."""

    ixs: tuple[Ix, ...]


@dataclass(frozen=True, slots=True)
class SolTransfer:
    """Native SOL released from the SOL vault."""

    remote_token: bytes
    to: Pubkey
    amount: int


@dataclass(frozen=True, slots=True)
class SplTransfer:
    """SPL tokens released from a token vault."""

    remote_token: bytes
    local_token: Pubkey
    to: Pubkey
    amount: int


@dataclass(frozen=True, slots=True)
class WrappedTokenTransfer:
    """Wrapped tokens minted on Solana."""

    local_token: Pubkey
    to: Pubkey
    amount: int


TokenTransfer = SolTransfer | SplTransfer | WrappedTokenTransfer


@dataclass(frozen=True, slots=True)
class Transfer:
    """Payload moving tokens, optionally followed by a call."""

    transfer: TokenTransfer
    call: Call | None = None


Payload = Call | Transfer


IX_ACCOUNT = CStruct(
    "pubkey_or_pda" / TaggedUnion(
        "Pubkey" / CStruct("pubkey" / PUBKEY),
        "Pda" / CStruct("seeds" / Vec(Bytes), "program_id" / PUBKEY),
    ),
    "is_writable" / Bool,
    "is_signer" / Bool,
)

IX = CStruct("program_id" / PUBKEY, "accounts" / Vec(IX_ACCOUNT), "data" / Bytes)

TOKEN_TRANSFER = TaggedUnion(
    "Sol" / CStruct("remote_token" / EVM_ADDRESS, "to" / PUBKEY, "amount" / U64),
    "Spl" / CStruct(
        "remote_token" / EVM_ADDRESS,
        "local_token" / PUBKEY,
        "to" / PUBKEY,
        "amount" / U64,
    ),
    "WrappedToken" / CStruct("local_token" / PUBKEY, "to" / PUBKEY, "amount" / U64),
)

PAYLOAD = TaggedUnion(
    "Call" / CStruct("ixs" / Vec(IX)),
    "Transfer" / CStruct("transfer" / TOKEN_TRANSFER, "ixs" / Vec(IX)),
)

OUTGOING_MESSAGE = CStruct(
    "nonce" / U64,
    "sender" / Bytes,
    "gas_limit" / U64,
    "payload" / PAYLOAD,
)


def _ix_value(ix: Ix) -> dict:
    accounts = []
    for account in ix.accounts:
        match account.pubkey_or_pda:
            case PdaSeeds(seeds=seeds, program_id=program_id):
                target = {"Pda": {"seeds": list(seeds), "program_id": program_id}}
            case pubkey:
                target = {"Pubkey": {"pubkey": pubkey}}
        accounts.append({
            "pubkey_or_pda": target,
            "is_writable": account.is_writable,
            "is_signer": account.is_signer,
        })
    return {"program_id": ix.program_id, "accounts": accounts, "data": ix.data}


def _ix_from_value(value) -> Ix:
    accounts = []
    for account in value.accounts:
        match account.pubkey_or_pda:
            case {"Pda": fields}:
                target: Pubkey | PdaSeeds = PdaSeeds(
                    seeds=tuple(fields.seeds), program_id=fields.program_id
                )
            case {"Pubkey": fields}:
                target = fields.pubkey
        accounts.append(
            IxAccount(pubkey_or_pda=target, is_writable=account.is_writable, is_signer=account.is_signer)
        )
    return Ix(program_id=value.program_id, accounts=tuple(accounts), data=value.data)


def _token_transfer_value(transfer: TokenTransfer) -> dict:
    match transfer:
        case SolTransfer(remote_token=remote_token, to=to, amount=amount):
            return {"Sol": {"remote_token": remote_token, "to": to, "amount": amount}}
        case SplTransfer(remote_token=remote_token, local_token=local_token, to=to, amount=amount):
            return {"Spl": {
                "remote_token": remote_token,
                "local_token": local_token,
                "to": to,
                "amount": amount,
            }}
        case WrappedTokenTransfer(local_token=local_token, to=to, amount=amount):
            return {"WrappedToken": {"local_token": local_token, "to": to, "amount": amount}}
        case _:
            raise TypeError(f"Unsupported transfer type {type(transfer).__name__}")


def _token_transfer_from_value(value: dict) -> TokenTransfer:
    match value:
        case {"Sol": fields}:
            return SolTransfer(remote_token=fields.remote_token, to=fields.to, amount=fields.amount)
        case {"Spl": fields}:
            return SplTransfer(
                remote_token=fields.remote_token,
                local_token=fields.local_token,
                to=fields.to,
                amount=fields.amount,
            )
        case {"WrappedToken": fields}:
            return WrappedTokenTransfer(local_token=fields.local_token, to=fields.to, amount=fields.amount)


def _payload_value(payload: Payload) -> dict:
    match payload:
        case Call(ixs=ixs):
            return {"Call": {"ixs": [_ix_value(ix) for ix in ixs]}}
        case Transfer(transfer=transfer, call=call):
            return {"Transfer": {
                "transfer": _token_transfer_value(transfer),
                "ixs": [_ix_value(ix) for ix in call.ixs] if call else [],
            }}
        case _:
            raise TypeError(f"Unsupported payload type {type(payload).__name__}")


def encode_payload(payload: Payload) -> bytes:
    """Borsh-encode a payload as stored in an IncomingMessage account."""
    return build(PAYLOAD, _payload_value(payload))


def decode_payload(data: bytes) -> Payload:
    """
    Decode an IncomingMessage payload.

    Raises:
        DecodeError: On an unknown variant, truncated data or trailing bytes
    """
    match parse(PAYLOAD, data):
        case {"Call": fields}:
            return Call(ixs=tuple(_ix_from_value(ix) for ix in fields.ixs))
        case {"Transfer": fields}:
            ixs = tuple(_ix_from_value(ix) for ix in fields.ixs)
            return Transfer(
                transfer=_token_transfer_from_value(fields.transfer),
                call=Call(ixs=ixs) if ixs else None,
            )


def incoming_message_hash(nonce: int, sender: bytes, data: bytes) -> bytes:
    """Hash the destination program checks in ``prove_message``.

    keccak256(nonce as 8 big-endian bytes || 20-byte sender || payload bytes)
    """
    if len(sender) != 20:
        raise ValueError(f"Sender must be 20 bytes, got {len(sender)}")
    return bytes(Web3.keccak(nonce.to_bytes(8, "big") + sender + data))


@dataclass(frozen=True, slots=True)
class OutgoingMessage:
    """A message submitted for bridging.

    Attributes:
        nonce: Strictly increasing, chain-assigned sequence number
        sender: 20-byte EVM or 32-byte Solana sender
        gas_limit: Gas reserved for execution on the destination
        payload: Call or Transfer
    """

    nonce: int
    sender: bytes
    gas_limit: int
    payload: Payload

    def __post_init__(self) -> None:
        if not 0 <= self.nonce <= U64_MAX:
            raise ValueError(f"Nonce out of u64 range: {self.nonce}")
        if not 0 <= self.gas_limit <= U64_MAX:
            raise ValueError(f"Gas limit out of u64 range: {self.gas_limit}")
        if len(self.sender) not in (20, 32):
            raise ValueError(f"Sender must be 20 or 32 bytes, got {len(self.sender)}")

    def encode(self) -> bytes:
        """Canonical serialization: every field in order, variable-length ones prefixed."""
        return build(OUTGOING_MESSAGE, {
            "nonce": self.nonce,
            "sender": self.sender,
            "gas_limit": self.gas_limit,
            "payload": _payload_value(self.payload),
        })

    @property
    def hash(self) -> bytes:
        return bytes(Web3.keccak(self.encode()))


class MessageStatus(Enum):
    """Lifecycle of a cross-chain message."""
    REGISTERED = "registered"
    PROVEN = "proven"
    EXECUTED = "executed"


_NEXT_STATUS: dict[MessageStatus | None, MessageStatus] = {
    None: MessageStatus.REGISTERED,
    MessageStatus.REGISTERED: MessageStatus.PROVEN,
    MessageStatus.PROVEN: MessageStatus.EXECUTED,
}


class MessageLifecycle:
    """
    Tracks the status of messages by hash.

    Transitions only move forward one step at a time. Once a message is
    executed every further transition is rejected with AlreadyExecutedError.
    """

    def __init__(self) -> None:
        self._statuses: dict[bytes, MessageStatus] = {}
        self._lock = threading.Lock()

    def status(self, message_hash: bytes) -> MessageStatus | None:
        with self._lock:
            return self._statuses.get(bytes(message_hash))

    def register(self, message_hash: bytes) -> None:
        self._transition(message_hash, MessageStatus.REGISTERED)

    def mark_proven(self, message_hash: bytes) -> None:
        self._transition(message_hash, MessageStatus.PROVEN)

    def mark_executed(self, message_hash: bytes) -> None:
        self._transition(message_hash, MessageStatus.EXECUTED)

    def observe(self, message_hash: bytes, incoming: IncomingMessage | None) -> MessageStatus | None:
        """Adopt the destination chain's view of a message.

        The chain is authoritative, so this may skip states but never moves
        a message backwards.
        """
        message_hash = bytes(message_hash)
        if incoming is None:
            return self.status(message_hash)
        observed = MessageStatus.EXECUTED if incoming.executed else MessageStatus.PROVEN
        with self._lock:
            current = self._statuses.get(message_hash)
            if current is not MessageStatus.EXECUTED:
                self._statuses[message_hash] = observed
            return self._statuses[message_hash]

    def _transition(self, message_hash: bytes, target: MessageStatus) -> None:
        message_hash = bytes(message_hash)
        with self._lock:
            current = self._statuses.get(message_hash)
            if current is MessageStatus.EXECUTED:
                raise AlreadyExecutedError(message_hash)
            if _NEXT_STATUS[current] is not target:
                raise InvalidTransitionError(
                    f"Message 0x{message_hash.hex()} cannot move from "
                    f"{current.value if current else 'unknown'} to {target.value}"
                )
            self._statuses[message_hash] = target
        logger.info(f"Message 0x{message_hash.hex()} -> {target.value}")


class MessageOutbox:
    """
    Assigns nonces to outgoing messages and prices them.

    Nonces are handed out under a lock, so sequential submissions receive
    consecutive values with no gaps.
    """

    def __init__(self, fee_window: FeeWindow, next_nonce: int = 0) -> None:
        self.fee_window = fee_window
        self._next_nonce = next_nonce
        self._lock = threading.Lock()

    @property
    def next_nonce(self) -> int:
        return self._next_nonce

    def send(
        self,
        sender: bytes,
        gas_limit: int,
        payload: Payload,
        now: int | None = None
    ) -> tuple[OutgoingMessage, FeeQuote]:
        """
        Create the next outgoing message and charge its gas.

        Raises:
            ValueError: If the gas limit is below the minimum for the payload size
        """
        required = min_gas_limit(len(encode_payload(payload)))
        if gas_limit < required:
            raise ValueError(f"Gas limit too low: got {gas_limit}, need at least {required}")

        with self._lock:
            message = OutgoingMessage(
                nonce=self._next_nonce, sender=sender, gas_limit=gas_limit, payload=payload
            )
            quote = self.fee_window.charge(gas_limit, now)
            self._next_nonce += 1

        logger.info(
            f"Outgoing message nonce={message.nonce} hash=0x{message.hash.hex()} "
            f"gas_limit={gas_limit} base_fee={quote.base_fee} cost={quote.gas_cost}"
        )
        return message, quote
