"""
Polling-based event listener utility for blockchain event monitoring.

"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List

from web3 import AsyncWeb3, Web3
from web3.types import LogReceipt

from ..errors import FatalError
from ..models import CursorMode, IndexerCursor

LogBatchCallback = Callable[[List[LogReceipt]], Awaitable[Any]]


class PollingEventListener:
    """
    Utility for polling contract logs via HTTP RPC.

    Each poll queries ``eth_getLogs`` from the cursor up to the chain head,
    hands the whole batch to the callback and only then advances the cursor.
    A failed query or a failed callback leaves the cursor untouched, so the
    same range is queried again on the next poll.
    """

    def __init__(
        self,
        w3: AsyncWeb3,
        contract_address: str,
        topic: str,
        cursor: IndexerCursor | None = None,
        filter_timeout: float = 10,
        max_block_range: int = 10_000
    ):
        """
        Initialize the polling event listener.

        Args:
            w3: Async web3 instance on an HTTP provider
            contract_address: Address of the contract to monitor
            topic: Event signature topic to filter on
            cursor: Resume point, a fresh polling cursor when omitted
            filter_timeout: Bound on each RPC query in seconds
            max_block_range: Largest block range requested in one query
        """
        self.w3 = w3
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.topic = topic
        self.cursor = cursor or IndexerCursor(mode=CursorMode.POLLING)
        self.filter_timeout = filter_timeout
        self.max_block_range = max_block_range

        # State tracking
        self.is_running = False
        self._stop_event = asyncio.Event()
        self.failed_polls = 0
        # Set while the last successful query stopped short of the head
        self.behind = False

        # Setup logging
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def poll_for_events(self, callback: LogBatchCallback) -> int:
        """
        Poll for new logs since the cursor.

        Args:
            callback: Async function receiving each non-empty batch in log order

        Returns:
            Number of logs handled, 0 when nothing was handled
        """
        self.behind = False
        try:
            current_block = await asyncio.wait_for(self.w3.eth.block_number, self.filter_timeout)

            # First poll without a cursor starts at the head
            from_block = self.cursor.next_height
            if from_block is None:
                from_block = current_block

            # Skip if no new blocks
            if current_block < from_block:
                return 0

            to_block = min(current_block, from_block + self.max_block_range - 1)
            logs = await asyncio.wait_for(
                self.w3.eth.get_logs({
                    "address": self.contract_address,
                    "topics": [self.topic],
                    "fromBlock": from_block,
                    "toBlock": to_block,
                }),
                self.filter_timeout
            )
        except asyncio.TimeoutError:
            self.failed_polls += 1
            self.logger.warning(f"Log query timed out after {self.filter_timeout}s, will retry")
            return 0
        except Exception as e:
            self.failed_polls += 1
            self.logger.error(f"Error polling for events: {e}")
            # Don't advance the cursor on error
            return 0

        batch = sorted(logs, key=lambda log: (log["blockNumber"], log["logIndex"]))
        if batch:
            self.logger.info(f"Found {len(batch)} new logs in blocks {from_block}-{to_block}")
            try:
                await callback(batch)
            except FatalError:
                raise
            except Exception as e:
                self.failed_polls += 1
                self.logger.error(
                    f"Handler failed for blocks {from_block}-{to_block}, will retry: {e}",
                    exc_info=True
                )
                return 0

        # The whole range has been handled
        self.cursor.advance(to_block)
        self.behind = to_block < current_block
        return len(batch)

    async def start_polling(self, callback: LogBatchCallback, interval: float = 3) -> None:
        """
        Start polling for events at the specified interval.

        Args:
            callback: Async function to call with each batch of logs
            interval: Polling interval in seconds
        """
        if self.is_running:
            self.logger.warning("Polling already running")
            return

        self.is_running = True
        self._stop_event.clear()
        self.logger.info(
            f"Starting polling for logs on {self.contract_address} every {interval} seconds "
            f"from block {self.cursor.next_height}"
        )

        while self.is_running:
            await self.poll_for_events(callback)
            # Keep going without waiting while catching up on history
            if self.behind:
                continue
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass  # Next poll

        self.logger.info("Polling stopped")

    async def stop(self) -> None:
        """Stop the polling loop."""
        self.logger.info(f"Stopping polling on {self.contract_address}")
        self.is_running = False
        self._stop_event.set()

    def get_status(self) -> Dict[str, Any]:
        """
        Get current status of the polling listener.

        Returns:
            Dictionary with status information
        """
        return {
            "is_running": self.is_running,
            "mode": self.cursor.mode.value,
            "last_processed_block": self.cursor.last_processed,
            "contract_address": self.contract_address,
            "failed_polls": self.failed_polls
        }
