#!/usr/bin/env python3
"""Entry point for the Bridge Oracle service.

Runs the EVM watcher, the Solana watcher, or both, until interrupted or until
an unrecoverable failure occurs.
"""

import argparse
import asyncio
import logging
import os
import signal
import sys

from dotenv import load_dotenv


# Configure logging before any other imports create loggers
def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the application.

    Args:
        level: Logging level as string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    log_level: int = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


# Get logger for this module
logger = logging.getLogger(__name__)

from bridge_oracle.errors import BridgeOracleError, ConfigurationError
from bridge_oracle.oracle import BridgeOracle, OracleMode


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Bridge Oracle - Relay messages and deposits between an EVM chain and Solana",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  EVM_RPC_URL            - EVM endpoint, http(s) polls and ws(s) subscribes
  MESSAGE_PASSER_ADDRESS - MessagePasser contract address
  EVM_PRIVATE_KEY        - Key signing deposit transactions
  EVM_START_BLOCK        - MessagePasser deployment block (default: 0)
  NETWORK                - solana-devnet, solana-mainnet or solana-localnet
  BRIDGE_PROGRAM_ID      - Bridge program address on Solana
  SVM_SECRET_KEY         - Hex or base58 keypair paying for Solana transactions
  SVM_RPC_URL / SVM_WS_URL - Override the network's default endpoints
  LOG_LEVEL              - Logging level (can be overridden with --log-level)
        """
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: INFO)"
    )
    parser.add_argument(
        "--mode",
        default=OracleMode.BOTH.value,
        choices=[mode.value for mode in OracleMode],
        help="Bridge direction(s) to serve (default: both)"
    )
    parser.add_argument(
        "--api",
        action="store_true",
        default=None,
        help="Serve MMR proofs over HTTP (overrides API_ENABLED)"
    )
    return parser.parse_args(argv)


async def main() -> int:
    """Main entry point for the Bridge Oracle service.

    Returns:
        Process exit code: 0 on clean shutdown, 1 on any failure
    """
    load_dotenv()
    args = parse_args()
    setup_logging(args.log_level)

    logger.info(f"=== Bridge Oracle Starting ({args.mode}) ===")
    logger.info("Loading configuration from environment...")

    try:
        oracle = BridgeOracle.from_env(mode=OracleMode(args.mode), api_enabled=args.api)
    except (ValueError, ConfigurationError) as e:
        logger.error(f"Configuration Error: {e}")
        logger.error("Please check your environment variables:")
        logger.error("  - EVM_RPC_URL, MESSAGE_PASSER_ADDRESS, EVM_PRIVATE_KEY")
        logger.error("  - NETWORK, BRIDGE_PROGRAM_ID, SVM_SECRET_KEY")
        return 1

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, oracle.stop)

    try:
        await oracle.run()
    except BridgeOracleError as e:
        logger.error(f"Fatal Error: {e}")
        return 1
    except Exception as e:
        logger.error(f"Unexpected Error: {e}", exc_info=True)
        return 1

    logger.info("Shutdown complete")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
