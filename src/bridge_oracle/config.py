#!/usr/bin/env python3
"""Configuration management for the Bridge Oracle.

This module provides type-safe configuration dataclasses with validation
for both chains the oracle connects. Configuration is loaded from environment
variables with sensible defaults where appropriate.
"""

import logging
import os
from dataclasses import dataclass
from typing import ClassVar
from urllib.parse import urlparse, urlunparse

from solders.pubkey import Pubkey
from web3 import Web3

from .errors import SigningKeyError
from .svm_signer import keypair_from_secret

# Get logger for this module
logger = logging.getLogger(__name__)

NETWORK_ENDPOINTS: dict[str, tuple[str, str]] = {
    'solana-localnet': ('http://127.0.0.1:8899', 'ws://127.0.0.1:8900'),
    'solana-devnet': ('https://api.devnet.solana.com', 'wss://api.devnet.solana.com'),
    'solana-mainnet': ('https://api.mainnet-beta.solana.com', 'wss://api.mainnet-beta.solana.com'),
}


def derive_ws_url(rpc_url: str) -> str:
    """Websocket endpoint served next to a Solana JSON-RPC endpoint.

    The scheme is switched to ws/wss and an explicit port is bumped by one,
    which is where validators serve PubSub.
    """
    parsed = urlparse(rpc_url)
    match parsed.scheme:
        case 'http':
            scheme = 'ws'
        case 'https':
            scheme = 'wss'
        case 'ws' | 'wss':
            return rpc_url
        case other:
            raise ValueError(f"Cannot derive a websocket URL from scheme: {other}")

    netloc = parsed.netloc
    if parsed.port is not None:
        netloc = f"{parsed.hostname}:{parsed.port + 1}"
    return urlunparse(parsed._replace(scheme=scheme, netloc=netloc))


def _validate_private_key(key: str) -> None:
    # 64 hex chars, optionally with 0x prefix
    if key.startswith('0x'):
        key = key[2:]

    if len(key) != 64:
        raise ValueError(
            f"Invalid private key length. Expected 64 hex characters, got {len(key)}"
        )

    try:
        int(key, 16)
    except ValueError:
        raise ValueError(
            "Invalid private key format. Must be hexadecimal"
        ) from None


@dataclass(frozen=True, slots=True)
class EvmChainConfig:
    """Configuration for the EVM chain.

    Attributes:
        rpc_url: HTTP(S) or WS(S) RPC endpoint, the scheme selects the watcher mode
        message_passer_address: Checksummed address of the MessagePasser contract
        private_key: Key signing deposit transactions
        start_block: MessagePasser deployment block, indexing replays from here
    """

    rpc_url: str
    message_passer_address: str
    private_key: str
    start_block: int = 0

    def __post_init__(self) -> None:
        """Validate EVM chain configuration."""
        if not self.rpc_url:
            raise ValueError("EVM RPC URL is required (EVM_RPC_URL)")

        parsed = urlparse(self.rpc_url)
        if parsed.scheme not in ('http', 'https', 'ws', 'wss'):
            raise ValueError(
                f"Invalid RPC URL scheme: {parsed.scheme}. "
                "Expected http, https, ws, or wss"
            )

        if not self.message_passer_address:
            raise ValueError(
                "Message passer address is required (MESSAGE_PASSER_ADDRESS)"
            )

        if not Web3.is_address(self.message_passer_address):
            raise ValueError(
                f"Invalid message passer address: {self.message_passer_address}"
            )

        checksummed = Web3.to_checksum_address(self.message_passer_address)
        if checksummed != self.message_passer_address:
            # Use object.__setattr__ since dataclass is frozen
            object.__setattr__(self, 'message_passer_address', checksummed)

        if not self.private_key:
            raise ValueError("EVM signing key is required (EVM_PRIVATE_KEY)")
        _validate_private_key(self.private_key)

        if self.start_block < 0:
            raise ValueError(f"Start block must be non-negative, got {self.start_block}")


@dataclass(frozen=True, slots=True)
class SvmChainConfig:
    """Configuration for the Solana chain.

    Attributes:
        network: Network name selecting default endpoints
        rpc_url: JSON-RPC endpoint
        ws_url: PubSub endpoint, derived from ``rpc_url`` when empty
        bridge_program_id: Base58 address of the bridge program
        secret_key: Hex or base58 encoded 64-byte keypair paying for submissions
    """

    network: str
    bridge_program_id: str
    secret_key: str
    rpc_url: str = ''
    ws_url: str = ''

    # Supported networks
    SUPPORTED_NETWORKS: ClassVar[set[str]] = set(NETWORK_ENDPOINTS)

    def __post_init__(self) -> None:
        """Validate Solana chain configuration."""
        if self.network not in self.SUPPORTED_NETWORKS:
            raise ValueError(
                f"Unsupported network: {self.network}. "
                f"Supported networks: {', '.join(sorted(self.SUPPORTED_NETWORKS))}"
            )

        default_rpc, default_ws = NETWORK_ENDPOINTS[self.network]
        if not self.rpc_url:
            object.__setattr__(self, 'rpc_url', default_rpc)
        if urlparse(self.rpc_url).scheme not in ('http', 'https'):
            raise ValueError(f"Invalid Solana RPC URL: {self.rpc_url}. Expected http or https")

        if not self.ws_url:
            ws_url = default_ws if self.rpc_url == default_rpc else derive_ws_url(self.rpc_url)
            object.__setattr__(self, 'ws_url', ws_url)
        if urlparse(self.ws_url).scheme not in ('ws', 'wss'):
            raise ValueError(f"Invalid Solana websocket URL: {self.ws_url}. Expected ws or wss")

        if not self.bridge_program_id:
            raise ValueError("Bridge program ID is required (BRIDGE_PROGRAM_ID)")
        try:
            Pubkey.from_string(self.bridge_program_id)
        except Exception:
            raise ValueError(
                f"Invalid bridge program ID: {self.bridge_program_id}"
            ) from None

        if not self.secret_key:
            raise ValueError("Solana signing key is required (SVM_SECRET_KEY)")
        try:
            keypair_from_secret(self.secret_key)
        except SigningKeyError as e:
            raise ValueError(str(e)) from None

    @property
    def program_id(self) -> Pubkey:
        return Pubkey.from_string(self.bridge_program_id)


@dataclass(frozen=True, slots=True)
class MonitoringConfig:
    """Configuration for watchers and RPC round trips."""
    polling_interval: int = 3  # seconds between log polls
    filter_timeout: int = 10  # bound on one eth_getLogs query
    receive_timeout: int = 5  # bound on one subscription receive
    request_timeout: int = 30  # one-shot RPC calls
    receipt_timeout: int = 120  # waiting for a transaction receipt
    dedupe_window: int = 10000  # processed deposits remembered
    status_interval: int = 60  # seconds between status reports

    def __post_init__(self) -> None:
        """Validate monitoring configuration."""
        if self.polling_interval <= 0:
            raise ValueError(f"Polling interval must be positive, got {self.polling_interval}")
        if self.polling_interval > 300:
            raise ValueError(f"Polling interval too long (max 300s), got {self.polling_interval}")

        if self.filter_timeout <= 0:
            raise ValueError(f"Filter timeout must be positive, got {self.filter_timeout}")
        if self.filter_timeout > 120:
            raise ValueError(f"Filter timeout too long (max 120s), got {self.filter_timeout}")

        if self.receive_timeout <= 0:
            raise ValueError(f"Receive timeout must be positive, got {self.receive_timeout}")
        if self.receive_timeout > 60:
            raise ValueError(f"Receive timeout too long (max 60s), got {self.receive_timeout}")

        if self.request_timeout <= 0:
            raise ValueError(f"Request timeout must be positive, got {self.request_timeout}")
        if self.request_timeout > 120:
            raise ValueError(f"Request timeout too long (max 120s), got {self.request_timeout}")

        if self.receipt_timeout <= 0:
            raise ValueError(f"Receipt timeout must be positive, got {self.receipt_timeout}")
        if self.receipt_timeout > 600:
            raise ValueError(f"Receipt timeout too long (max 600s), got {self.receipt_timeout}")

        if self.dedupe_window <= 0:
            raise ValueError(f"Dedupe window must be positive, got {self.dedupe_window}")

        if self.status_interval <= 0:
            raise ValueError(f"Status interval must be positive, got {self.status_interval}")


@dataclass(frozen=True, slots=True)
class ApiConfig:
    """Configuration for the proof HTTP API."""
    enabled: bool = False
    host: str = '127.0.0.1'
    port: int = 8080

    def __post_init__(self) -> None:
        """Validate API configuration."""
        if not 0 < self.port < 65536:
            raise ValueError(f"API port out of range, got {self.port}")


@dataclass(frozen=True, slots=True)
class OracleConfig:
    """Main configuration for the Bridge Oracle.

    Attributes:
        evm: Configuration for the EVM chain
        svm: Configuration for the Solana chain
        monitoring: Configuration for watchers and timeouts
        api: Configuration for the proof HTTP API
    """

    evm: EvmChainConfig
    svm: SvmChainConfig
    monitoring: MonitoringConfig
    api: ApiConfig

    @classmethod
    def from_env(cls, api_enabled: bool | None = None) -> "OracleConfig":
        """Load configuration from environment variables.

        Args:
            api_enabled: Overrides API_ENABLED when given

        Returns:
            OracleConfig instance with loaded values

        Raises:
            ValueError: If required environment variables are missing or invalid
        """
        message_passer = os.environ.get("MESSAGE_PASSER_ADDRESS", "")
        if not message_passer:
            raise ValueError(
                "MESSAGE_PASSER_ADDRESS environment variable is required. "
                "This should be the MessagePasser contract address on the EVM chain."
            )

        evm_config = EvmChainConfig(
            rpc_url=os.environ.get("EVM_RPC_URL", "https://sepolia.base.org"),
            message_passer_address=message_passer,
            private_key=os.environ.get("EVM_PRIVATE_KEY", ""),
            start_block=int(os.environ.get("EVM_START_BLOCK", "0"))
        )

        program_id = os.environ.get("BRIDGE_PROGRAM_ID", "")
        if not program_id:
            raise ValueError(
                "BRIDGE_PROGRAM_ID environment variable is required. "
                "This should be the bridge program address on Solana."
            )

        svm_config = SvmChainConfig(
            network=os.environ.get("NETWORK", "solana-devnet"),
            bridge_program_id=program_id,
            secret_key=os.environ.get("SVM_SECRET_KEY", ""),
            rpc_url=os.environ.get("SVM_RPC_URL", ""),
            ws_url=os.environ.get("SVM_WS_URL", "")
        )

        monitoring_config = MonitoringConfig(
            polling_interval=int(os.environ.get("POLLING_INTERVAL", "3")),
            filter_timeout=int(os.environ.get("FILTER_TIMEOUT", "10")),
            receive_timeout=int(os.environ.get("RECEIVE_TIMEOUT", "5")),
            request_timeout=int(os.environ.get("REQUEST_TIMEOUT", "30")),
            receipt_timeout=int(os.environ.get("RECEIPT_TIMEOUT", "120")),
            dedupe_window=int(os.environ.get("DEDUPE_WINDOW", "10000")),
            status_interval=int(os.environ.get("STATUS_INTERVAL", "60"))
        )

        if api_enabled is None:
            api_enabled = os.environ.get("API_ENABLED", "false").lower() in ("1", "true", "yes")
        api_config = ApiConfig(
            enabled=api_enabled,
            host=os.environ.get("API_HOST", "127.0.0.1"),
            port=int(os.environ.get("API_PORT", "8080"))
        )

        return cls(
            evm=evm_config,
            svm=svm_config,
            monitoring=monitoring_config,
            api=api_config
        )

    def log_config(self) -> None:
        """Log the configuration in a readable format for debugging."""
        logger.info("=" * 60)
        logger.info("Bridge Oracle Configuration")
        logger.info("=" * 60)

        logger.info("EVM Chain:")
        logger.info(f"  RPC URL: {self.evm.rpc_url}")
        logger.info(f"  Message Passer: {self.evm.message_passer_address}")
        logger.info(f"  Start Block: {self.evm.start_block}")
        logger.info("  Signing Key: [CONFIGURED]")

        logger.info("Solana Chain:")
        logger.info(f"  Network: {self.svm.network}")
        logger.info(f"  RPC URL: {self.svm.rpc_url}")
        logger.info(f"  WS URL: {self.svm.ws_url}")
        logger.info(f"  Bridge Program: {self.svm.bridge_program_id}")
        logger.info("  Signing Key: [CONFIGURED]")

        logger.info("Monitoring Settings:")
        logger.info(f"  Polling Interval: {self.monitoring.polling_interval} seconds")
        logger.info(f"  Filter Timeout: {self.monitoring.filter_timeout} seconds")
        logger.info(f"  Receive Timeout: {self.monitoring.receive_timeout} seconds")
        logger.info(f"  Request Timeout: {self.monitoring.request_timeout} seconds")
        logger.info(f"  Receipt Timeout: {self.monitoring.receipt_timeout} seconds")
        logger.info(f"  Dedupe Window: {self.monitoring.dedupe_window}")

        logger.info("API Settings:")
        if self.api.enabled:
            logger.info(f"  Listening: {self.api.host}:{self.api.port}")
        else:
            logger.info("  Disabled")

        logger.info("=" * 60)
