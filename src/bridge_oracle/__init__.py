"""
Bridge Oracle package.

Cross-chain oracle and relayer between an EVM chain and Solana.
"""

from .config import OracleConfig
from .event_processor import EventProcessor
from .models import MessagePassedEvent, TransactionDepositedEvent
from .oracle import BridgeOracle, OracleMode

__all__ = [
    "OracleConfig",
    "BridgeOracle",
    "OracleMode",
    "EventProcessor",
    "MessagePassedEvent",
    "TransactionDepositedEvent",
]
__version__ = "0.1.0"
