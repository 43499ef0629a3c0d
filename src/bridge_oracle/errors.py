"""Exception hierarchy for the bridge oracle.

Errors fall into four families that decide how a watcher reacts:

- TransientError: retried by looping, never stops a watcher
- DecodeError: the offending event is skipped and logged
- ProtocolViolation: surfaced from the relay call and not retried
- FatalError: propagated to the supervisor, which shuts the process down

UnconfirmedTransactionError sits outside the families: the transaction may
already be on its way, so it is neither retried nor treated as rejected.
"""

from typing import Optional


class BridgeOracleError(Exception):
    """Base exception for bridge oracle operations."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.original_error = original_error


class TransientError(BridgeOracleError):
    """An RPC round trip timed out or the node was briefly unavailable."""


class DecodeError(BridgeOracleError):
    """An event payload could not be decoded."""


class ProtocolViolation(BridgeOracleError):
    """A relay would break a protocol rule or cannot succeed as-is."""


class AlreadyExecutedError(ProtocolViolation):
    """The incoming message has already been executed on the destination."""

    def __init__(self, message_hash: bytes):
        super().__init__(f"Message 0x{message_hash.hex()} has already been executed")
        self.message_hash = message_hash


class InsufficientBalanceError(ProtocolViolation):
    """The signer cannot cover the estimated transaction cost."""

    def __init__(self, balance: int, required: int):
        super().__init__(
            f"Insufficient balance for gas: got {balance}, need at least {required}"
        )
        self.balance = balance
        self.required = required


class StaleCheckpointError(ProtocolViolation):
    """A root checkpoint does not move the destination's view forward."""

    def __init__(self, block_number: int, last_block_number: int):
        super().__init__(
            f"Checkpoint for block {block_number} does not advance "
            f"past block {last_block_number}"
        )
        self.block_number = block_number
        self.last_block_number = last_block_number


class MessageNotCoveredError(ProtocolViolation):
    """The message's leaf is not committed by the trusted output root."""


class InvalidTransitionError(ProtocolViolation):
    """A message lifecycle transition is not allowed from its current state."""


class TransactionFailedError(ProtocolViolation):
    """A transaction was included but its receipt reports failure."""

    def __init__(self, tx_hash: str, status: int):
        super().__init__(f"Transaction {tx_hash} failed with status {status}")
        self.tx_hash = tx_hash
        self.status = status


class UnconfirmedTransactionError(BridgeOracleError):
    """A transaction may have been broadcast but its outcome is unknown.

    Sending it again could execute it twice, so callers must not retry.
    """

    def __init__(self, tx_hash: str, reason: str, original_error: Optional[Exception] = None):
        super().__init__(f"Transaction {tx_hash} is unconfirmed: {reason}", original_error)
        self.tx_hash = tx_hash


class FatalError(BridgeOracleError):
    """An unrecoverable condition that must stop the process."""


class SubscriptionClosedError(FatalError):
    """A live subscription was closed by the remote end."""


class ConfigurationError(FatalError):
    """The configured endpoints, addresses or keys are unusable."""


class SigningKeyError(FatalError):
    """A signing credential could not be loaded."""


class EmptyAccumulatorError(BridgeOracleError):
    """The accumulator has no leaves, so it has no root."""
