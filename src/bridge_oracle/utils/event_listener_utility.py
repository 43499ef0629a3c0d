"""
Event Listener Utility for real-time blockchain event monitoring.

Provides websocket subscriptions for both chains: EVM contract logs through
web3's subscription manager and Solana program logs through solana-py's
PubSub client. A subscription closed by the remote end is fatal; stopping the
listener is a clean exit.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from solana.rpc.commitment import Finalized
from solana.rpc.websocket_api import connect
from solders.pubkey import Pubkey
from solders.rpc.config import RpcTransactionLogsFilterMentions
from solders.rpc.responses import LogsNotification
from web3 import AsyncWeb3, Web3
from web3.exceptions import ProviderConnectionError
from web3.providers import WebSocketProvider
from web3.types import LogReceipt
from web3.utils.subscriptions import LogsSubscription, LogsSubscriptionContext
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..errors import FatalError, SubscriptionClosedError
from ..models import CursorMode, IndexerCursor

LogBatchCallback = Callable[[list[LogReceipt]], Awaitable[Any]]
ProgramLogsCallback = Callable[[str, int, list[str]], Awaitable[Any]]


class ConnectionState(Enum):
    """Connection state for event listener."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


class EvmSubscriptionListener:
    """
    Utility for listening to contract logs via WebSocket.

    On connect it subscribes first and then backfills ``eth_getLogs`` from the
    cursor to the head, so no log falls between the two. Logs delivered by
    both paths are handed over twice; handlers deduplicate them.
    """

    def __init__(
        self,
        websocket_url: str,
        contract_address: str,
        topic: str,
        cursor: IndexerCursor | None = None,
        request_timeout: float = 30
    ) -> None:
        """
        Initialize the EvmSubscriptionListener.

        Args:
            websocket_url: WebSocket RPC endpoint URL
            contract_address: Address of the contract to listen to
            topic: Event signature topic to filter on
            cursor: Resume point, a fresh subscription cursor when omitted
            request_timeout: Bound on each RPC request in seconds
        """
        self.websocket_url = websocket_url
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.topic = topic
        self.cursor = cursor or IndexerCursor(mode=CursorMode.SUBSCRIPTION)
        self.request_timeout = request_timeout

        # Connection state
        self.connection_state = ConnectionState.DISCONNECTED
        self.async_w3: AsyncWeb3 | None = None
        self._stopping = False

        # Event processing
        self.event_callback: LogBatchCallback | None = None
        self.handler_failures = 0

        # Setup logging
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def listen(self, callback: LogBatchCallback) -> None:
        """
        Subscribe to logs and handle them until stopped.

        Args:
            callback: Async function called with each log, wrapped in a list

        Raises:
            SubscriptionClosedError: If the connection drops or the
                subscription ends without ``stop()`` being called
        """
        self.event_callback = callback
        self._stopping = False
        self.connection_state = ConnectionState.CONNECTING
        self.logger.info(f"Connecting to WebSocket: {self.websocket_url}")

        try:
            async with AsyncWeb3(
                WebSocketProvider(
                    self.websocket_url,
                    request_timeout=self.request_timeout,
                    subscription_response_queue_size=10000,
                )
            ) as w3:
                self.async_w3 = w3
                self.connection_state = ConnectionState.CONNECTED
                self.logger.info("WebSocket connected successfully")

                logs_subscription = LogsSubscription(
                    label="MessagePassed-subscription",
                    address=self.contract_address,
                    topics=[self.topic],
                    handler=self._log_handler,
                )
                await w3.subscription_manager.subscribe([logs_subscription])
                self.logger.info(f"Subscribed to logs on {self.contract_address} (topic {self.topic})")

                await self._backfill(w3, callback)

                # Returns once every subscription has been unsubscribed
                await w3.subscription_manager.handle_subscriptions()
        except (ProviderConnectionError, ConnectionClosed, OSError) as e:
            if self._stopping:
                return
            self.connection_state = ConnectionState.FAILED
            raise SubscriptionClosedError(f"EVM log subscription closed: {e}", e) from e
        finally:
            if self.connection_state is not ConnectionState.FAILED:
                self.connection_state = ConnectionState.DISCONNECTED
            self.async_w3 = None

        if not self._stopping:
            self.connection_state = ConnectionState.FAILED
            raise SubscriptionClosedError("EVM log subscription ended unexpectedly")

    async def _backfill(self, w3: AsyncWeb3, callback: LogBatchCallback) -> None:
        from_block = self.cursor.next_height
        if from_block is None:
            return
        head = await w3.eth.block_number
        if head < from_block:
            return

        logs = await w3.eth.get_logs({
            "address": self.contract_address,
            "topics": [self.topic],
            "fromBlock": from_block,
            "toBlock": head,
        })
        batch = sorted(logs, key=lambda log: (log["blockNumber"], log["logIndex"]))
        self.logger.info(f"Backfilled {len(batch)} logs in blocks {from_block}-{head}")
        if batch:
            await callback(batch)
        self.cursor.advance(head)

    async def _log_handler(self, handler_context: LogsSubscriptionContext) -> None:
        """
        Handler for LogsSubscription events.

        The cursor moves only after the callback returned successfully.
        """
        log_receipt: LogReceipt = handler_context.result
        try:
            if self.event_callback:
                await self.event_callback([log_receipt])
        except FatalError:
            raise
        except Exception as e:
            self.handler_failures += 1
            self.logger.error(f"Error processing subscription event: {e}", exc_info=True)
            return
        self.cursor.advance(log_receipt["blockNumber"])

    async def stop(self) -> None:
        """Unsubscribe, which ends ``listen()`` cleanly."""
        self.logger.info("Stopping event listener...")
        self._stopping = True

        if self.async_w3 is not None:
            try:
                await self.async_w3.subscription_manager.unsubscribe_all()
            except (ProviderConnectionError, ConnectionClosed, OSError) as e:
                self.logger.warning(f"Error during unsubscribe: {e}")

    def get_status(self) -> dict[str, Any]:
        return {
            "mode": self.cursor.mode.value,
            "connection_state": self.connection_state.value,
            "last_processed_block": self.cursor.last_processed,
            "handler_failures": self.handler_failures,
        }


class SvmLogsListener:
    """
    Utility for listening to Solana program logs via WebSocket.

    Receives block for at most ``receive_timeout`` seconds at a time, so the
    loop re-checks for cancellation even when the program is idle. A receive
    timeout is expected and simply retried.
    """

    def __init__(
        self,
        websocket_url: str,
        program_id: Pubkey,
        cursor: IndexerCursor | None = None,
        receive_timeout: float = 5,
        request_timeout: float = 30,
        connector: Callable[[str], Any] = connect
    ) -> None:
        """
        Initialize the SvmLogsListener.

        Args:
            websocket_url: Solana PubSub endpoint
            program_id: Program whose mentions are subscribed to
            cursor: Resume point, a fresh subscription cursor when omitted
            receive_timeout: Bound on each receive in seconds
            request_timeout: Bound on the subscribe handshake in seconds
            connector: Factory returning an async context manager for the connection
        """
        self.websocket_url = websocket_url
        self.program_id = program_id
        self.cursor = cursor or IndexerCursor(mode=CursorMode.SUBSCRIPTION)
        self.receive_timeout = receive_timeout
        self.request_timeout = request_timeout
        self._connector = connector

        self.connection_state = ConnectionState.DISCONNECTED
        self.is_running = False
        self.subscription_id: int | None = None
        self.notifications = 0
        self.failed_transactions = 0
        self.handler_failures = 0

        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def listen(
        self,
        callback: ProgramLogsCallback,
        cancel_event: asyncio.Event | None = None
    ) -> None:
        """
        Subscribe to finalized logs mentioning the program and handle them.

        Args:
            callback: Async function called with (signature, slot, logs)
            cancel_event: Shared cancellation signal, checked after every receive

        Raises:
            SubscriptionClosedError: If the connection fails or is closed remotely
        """
        cancel_event = cancel_event or asyncio.Event()
        self.is_running = True
        self.connection_state = ConnectionState.CONNECTING
        self.logger.info(f"Connecting to Solana WebSocket: {self.websocket_url}")

        try:
            async with self._connector(self.websocket_url) as websocket:
                self.connection_state = ConnectionState.CONNECTED
                await websocket.logs_subscribe(
                    RpcTransactionLogsFilterMentions(self.program_id),
                    commitment=Finalized,
                )
                first = await asyncio.wait_for(websocket.recv(), timeout=self.request_timeout)
                self.subscription_id = first[0].result
                self.logger.info(
                    f"Subscribed to logs of program {self.program_id} "
                    f"(subscription {self.subscription_id})"
                )

                try:
                    await self._receive_loop(websocket, callback, cancel_event)
                finally:
                    await self._unsubscribe(websocket)
        except (WebSocketException, OSError, asyncio.TimeoutError) as e:
            self.connection_state = ConnectionState.FAILED
            raise SubscriptionClosedError(f"Solana log subscription closed: {e}", e) from e
        finally:
            self.is_running = False
            if self.connection_state is not ConnectionState.FAILED:
                self.connection_state = ConnectionState.DISCONNECTED

        self.logger.info("Solana log listener stopped")

    async def _receive_loop(
        self,
        websocket: Any,
        callback: ProgramLogsCallback,
        cancel_event: asyncio.Event
    ) -> None:
        while self.is_running and not cancel_event.is_set():
            try:
                messages = await asyncio.wait_for(websocket.recv(), timeout=self.receive_timeout)
            except asyncio.TimeoutError:
                continue  # Expected when idle, re-check cancellation

            for message in messages:
                if isinstance(message, LogsNotification):
                    await self._dispatch(message, callback)

    async def _dispatch(self, notification: LogsNotification, callback: ProgramLogsCallback) -> None:
        value = notification.result.value
        slot = notification.result.context.slot
        signature = str(value.signature)
        self.notifications += 1

        if value.err is not None:
            self.failed_transactions += 1
            self.logger.debug(f"Ignoring failed transaction {signature}")
            return

        try:
            await callback(signature, slot, list(value.logs))
        except FatalError:
            raise
        except Exception as e:
            self.handler_failures += 1
            self.logger.error(f"Error handling logs of {signature}: {e}", exc_info=True)
            return
        self.cursor.advance(slot)

    async def _unsubscribe(self, websocket: Any) -> None:
        if self.subscription_id is None:
            return
        try:
            await websocket.logs_unsubscribe(self.subscription_id)
            self.logger.info(f"Unsubscribed from subscription {self.subscription_id}")
        except ConnectionClosed:
            pass  # Already gone
        finally:
            self.subscription_id = None

    async def stop(self) -> None:
        """Stop after the current receive returns."""
        self.logger.info("Stopping Solana log listener...")
        self.is_running = False

    def get_status(self) -> dict[str, Any]:
        return {
            "mode": self.cursor.mode.value,
            "connection_state": self.connection_state.value,
            "last_processed_slot": self.cursor.last_processed,
            "notifications": self.notifications,
            "failed_transactions": self.failed_transactions,
            "handler_failures": self.handler_failures,
        }
