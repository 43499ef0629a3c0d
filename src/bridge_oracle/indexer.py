#!/usr/bin/env python3
"""Chain watchers for the Bridge Oracle.

Each watcher binds one transport strategy to one handler: the EVM watcher
feeds MessagePassed logs to the RootSubmitter, the Solana watcher feeds
program logs to the DepositHandler.
"""

import asyncio
import logging
from typing import Any
from urllib.parse import urlparse

from solders.pubkey import Pubkey
from web3 import AsyncWeb3

from .deposit_handler import DepositHandler
from .errors import ConfigurationError
from .event_processor import MESSAGE_PASSED_TOPIC
from .models import CursorMode, IndexerCursor
from .root_submitter import RootSubmitter
from .utils.event_listener_utility import EvmSubscriptionListener, SvmLogsListener
from .utils.polling_event_listener import PollingEventListener

logger = logging.getLogger(__name__)


def select_cursor_mode(url: str) -> CursorMode:
    """
    Pick the transport for an endpoint from its scheme.

    Raises:
        ConfigurationError: If the scheme is neither http(s) nor ws(s)
    """
    match urlparse(url).scheme:
        case "http" | "https":
            return CursorMode.POLLING
        case "ws" | "wss":
            return CursorMode.SUBSCRIPTION
        case other:
            raise ConfigurationError(f"Unsupported endpoint scheme '{other}' in {url}")


class EvmIndexer:
    """Watches the MessagePasser and checkpoints roots on Solana."""

    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        submitter: RootSubmitter,
        start_block: int = 0,
        w3: AsyncWeb3 | None = None,
        polling_interval: float = 3,
        filter_timeout: float = 10,
        request_timeout: float = 30
    ) -> None:
        """
        Initialize the EvmIndexer.

        Args:
            rpc_url: EVM endpoint, its scheme selects polling or subscription
            contract_address: MessagePasser address
            submitter: Handler folding events into the accumulator
            start_block: First block to index
            w3: Async web3 instance used by the polling strategy
            polling_interval: Seconds between polls
            filter_timeout: Bound on each log query in seconds
            request_timeout: Bound on each subscription request in seconds
        """
        self.submitter = submitter
        self.polling_interval = polling_interval
        self.cursor = IndexerCursor(mode=select_cursor_mode(rpc_url), last_processed=start_block - 1)

        match self.cursor.mode:
            case CursorMode.POLLING:
                if w3 is None:
                    raise ConfigurationError("Polling mode requires an HTTP web3 instance")
                self.listener: PollingEventListener | EvmSubscriptionListener = PollingEventListener(
                    w3=w3,
                    contract_address=contract_address,
                    topic=MESSAGE_PASSED_TOPIC,
                    cursor=self.cursor,
                    filter_timeout=filter_timeout,
                )
            case CursorMode.SUBSCRIPTION:
                self.listener = EvmSubscriptionListener(
                    websocket_url=rpc_url,
                    contract_address=contract_address,
                    topic=MESSAGE_PASSED_TOPIC,
                    cursor=self.cursor,
                    request_timeout=request_timeout,
                )

        logger.info(f"EvmIndexer using {self.cursor.mode.value} mode from block {start_block}")

    async def run(self, cancel_event: asyncio.Event) -> None:
        """Index until stopped or a fatal error occurs."""
        await self.submitter.sync_last_checkpoint()
        if cancel_event.is_set():
            return

        match self.listener:
            case PollingEventListener() as poller:
                await poller.start_polling(self.submitter.handle_logs, interval=self.polling_interval)
            case EvmSubscriptionListener() as subscriber:
                await subscriber.listen(self.submitter.handle_logs)

    async def stop(self) -> None:
        await self.listener.stop()

    def get_status(self) -> dict[str, Any]:
        return {**self.listener.get_status(), **self.submitter.get_metrics()}


class SvmIndexer:
    """Watches the bridge program's logs and relays deposits to the EVM chain."""

    def __init__(
        self,
        ws_url: str,
        program_id: Pubkey,
        handler: DepositHandler,
        receive_timeout: float = 5,
        request_timeout: float = 30,
        listener: SvmLogsListener | None = None
    ) -> None:
        """
        Initialize the SvmIndexer.

        Solana program logs are only available as a live feed, so the
        endpoint must be a websocket.

        Raises:
            ConfigurationError: If ``ws_url`` is not a ws(s) URL
        """
        if select_cursor_mode(ws_url) is not CursorMode.SUBSCRIPTION:
            raise ConfigurationError(f"Solana log watcher needs a websocket endpoint, got {ws_url}")

        self.handler = handler
        self.listener = listener or SvmLogsListener(
            websocket_url=ws_url,
            program_id=program_id,
            receive_timeout=receive_timeout,
            request_timeout=request_timeout,
        )
        self.cursor = self.listener.cursor

    async def run(self, cancel_event: asyncio.Event) -> None:
        """Relay deposits until stopped or a fatal error occurs."""
        await self.listener.listen(self.handler.handle_logs, cancel_event)

    async def stop(self) -> None:
        await self.listener.stop()

    def get_status(self) -> dict[str, Any]:
        return {**self.listener.get_status(), **self.handler.get_metrics()}
