"""
Bridge Oracle service.

This module contains the supervisor that wires both watchers to their
handlers, runs them as tasks under a shared cancellation signal and shuts
them down in two phases.
"""

import asyncio
import logging
from enum import Enum
from typing import Any

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed

from .accumulator import MerkleMountainRange
from .api import ProofApi
from .config import OracleConfig
from .deposit_handler import DepositHandler
from .event_processor import EventProcessor
from .evm_signer import EvmSigner
from .indexer import EvmIndexer, SvmIndexer
from .message_prover import MessageProver
from .root_submitter import RootSubmitter
from .svm_signer import SvmSigner, keypair_from_secret
from .utils.contract_utility import ContractUtility

logger = logging.getLogger(__name__)


class OracleMode(Enum):
    """Which direction(s) of the bridge the oracle serves."""
    EVM = "evm"
    SVM = "svm"
    BOTH = "both"

    @property
    def watches_evm(self) -> bool:
        return self in (OracleMode.EVM, OracleMode.BOTH)

    @property
    def watches_svm(self) -> bool:
        return self in (OracleMode.SVM, OracleMode.BOTH)


class BridgeOracle:
    """
    Main oracle service that orchestrates both watchers.

    The EVM watcher checkpoints MessagePasser roots on Solana; the Solana
    watcher relays deposits to the EVM chain. The first task failure sets the
    shared cancellation event, every watcher stops, and ``run()`` re-raises
    that failure once all tasks are done.
    """

    SHUTDOWN_TIMEOUT = 10  # seconds a stopped watcher gets to return

    def __init__(self, config: OracleConfig, mode: OracleMode = OracleMode.BOTH):
        """
        Initialize the Bridge Oracle.

        Args:
            config: Oracle configuration
            mode: Directions to serve
        """
        self.config = config
        self.mode = mode
        self.running = False

        # Shared cancellation signal
        self.cancel_event = asyncio.Event()
        self._failure: BaseException | None = None

        self.evm_indexer: EvmIndexer | None = None
        self.svm_indexer: SvmIndexer | None = None
        self.prover: MessageProver | None = None
        self.api: ProofApi | None = None
        self.svm_client: AsyncClient | None = None
        self.contract_util: ContractUtility | None = None

        self._init_components()

    @classmethod
    def from_env(cls, mode: OracleMode = OracleMode.BOTH, api_enabled: bool | None = None) -> "BridgeOracle":
        """
        Create a BridgeOracle instance from environment variables.

        Raises:
            ValueError: If required environment variables are missing
        """
        config = OracleConfig.from_env(api_enabled=api_enabled)
        config.log_config()
        return cls(config, mode)

    def _init_components(self) -> None:
        monitoring = self.config.monitoring
        program_id = self.config.svm.program_id

        self.processor = EventProcessor()
        self.accumulator = MerkleMountainRange()
        self.contract_util = ContractUtility(
            self.config.evm.rpc_url, request_timeout=monitoring.request_timeout
        )

        if self.mode.watches_evm:
            self.svm_client = AsyncClient(
                self.config.svm.rpc_url, commitment=Confirmed, timeout=monitoring.request_timeout
            )
            svm_signer = SvmSigner(
                self.svm_client,
                keypair_from_secret(self.config.svm.secret_key),
                request_timeout=monitoring.request_timeout,
            )
            submitter = RootSubmitter(svm_signer, program_id, self.processor, self.accumulator)
            self.evm_indexer = EvmIndexer(
                rpc_url=self.config.evm.rpc_url,
                contract_address=self.config.evm.message_passer_address,
                submitter=submitter,
                start_block=self.config.evm.start_block,
                w3=None if self.contract_util.persistent else self.contract_util.w3,
                polling_interval=monitoring.polling_interval,
                filter_timeout=monitoring.filter_timeout,
                request_timeout=monitoring.request_timeout,
            )
            self.prover = MessageProver(svm_signer, program_id, self.accumulator)

        if self.mode.watches_svm:
            evm_signer = EvmSigner(
                self.contract_util.w3,
                self.config.evm.private_key,
                request_timeout=monitoring.request_timeout,
                receipt_timeout=monitoring.receipt_timeout,
            )
            handler = DepositHandler(evm_signer, self.processor, dedupe_window=monitoring.dedupe_window)
            self.svm_indexer = SvmIndexer(
                ws_url=self.config.svm.ws_url,
                program_id=program_id,
                handler=handler,
                receive_timeout=monitoring.receive_timeout,
                request_timeout=monitoring.request_timeout,
            )

        if self.config.api.enabled:
            self.api = ProofApi(
                self.accumulator,
                host=self.config.api.host,
                port=self.config.api.port,
                status_provider=self.get_status,
                prover=self.prover,
                message_lookup=self.evm_indexer.submitter.get_message if self.evm_indexer else None,
            )

    async def _periodic_status_logger(self) -> None:
        """Log status periodically while running."""
        interval = self.config.monitoring.status_interval
        while not self.cancel_event.is_set():
            try:
                await asyncio.wait_for(self.cancel_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                status = self.get_status()
                if (evm := status.get("evm")) is not None:
                    logger.info(
                        f"EVM status: block={evm['last_processed_block']} "
                        f"leaves={evm['leaf_count']} roots={evm['roots_submitted']}"
                    )
                if (svm := status.get("svm")) is not None:
                    logger.info(
                        f"Solana status: slot={svm['last_processed_slot']} "
                        f"relayed={svm['deposits_relayed']} failures={svm['relay_failures']}"
                    )

    def _on_task_done(self, name: str, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        if (error := task.exception()) is not None:
            if self._failure is None:
                self._failure = error
                logger.error(f"✗ {name} task failed: {error}", exc_info=error)
        elif not self.cancel_event.is_set():
            logger.warning(f"{name} task ended unexpectedly")
        self.cancel_event.set()

    def _start_tasks(self) -> dict[str, asyncio.Task]:
        tasks = {}
        if self.evm_indexer is not None:
            tasks["evm"] = asyncio.create_task(self.evm_indexer.run(self.cancel_event))
        if self.svm_indexer is not None:
            tasks["svm"] = asyncio.create_task(self.svm_indexer.run(self.cancel_event))
        if self.api is not None:
            tasks["api"] = asyncio.create_task(self.api.serve(self.cancel_event))
        tasks["status"] = asyncio.create_task(self._periodic_status_logger())

        for name, task in tasks.items():
            task.add_done_callback(lambda t, name=name: self._on_task_done(name, t))
        return tasks

    async def _cleanup_tasks(self, tasks: dict[str, asyncio.Task]) -> None:
        """Signal, stop each watcher, then await every task."""
        self.cancel_event.set()

        for indexer in (self.evm_indexer, self.svm_indexer):
            if indexer is not None:
                try:
                    await indexer.stop()
                except Exception as e:
                    logger.warning(f"Error stopping watcher: {e}")

        if not tasks:
            return
        _, pending = await asyncio.wait(tasks.values(), timeout=self.SHUTDOWN_TIMEOUT)
        for task in pending:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass  # Expected when cancelling

    async def _close_clients(self) -> None:
        if self.contract_util is not None and self.mode.watches_svm:
            await self.contract_util.disconnect()
        if self.svm_client is not None:
            await self.svm_client.close()

    async def run(self) -> None:
        """
        Main loop of the oracle service.

        Raises:
            BridgeOracleError: The first fatal failure of any task
        """
        self.running = True
        logger.info(f"Bridge Oracle starting in {self.mode.value} mode...")

        tasks: dict[str, asyncio.Task] = {}
        try:
            if self.contract_util is not None and self.mode.watches_svm:
                await self.contract_util.connect()
            tasks = self._start_tasks()
            logger.info(f"Started tasks: {', '.join(tasks)}")

            # Wait until shutdown or task failure
            while self.running:
                try:
                    await asyncio.wait_for(self.cancel_event.wait(), timeout=1.0)
                    break
                except asyncio.TimeoutError:
                    pass  # Continue running
        finally:
            await self._cleanup_tasks(tasks)
            await self._close_clients()
            self.running = False
            logger.info("Bridge Oracle stopped")

        if self._failure is not None:
            raise self._failure

    def stop(self) -> None:
        """Stop the oracle service."""
        self.running = False
        self.cancel_event.set()

    def get_status(self) -> dict[str, Any]:
        status: dict[str, Any] = {
            "mode": self.mode.value,
            "running": self.running,
            "failure": str(self._failure) if self._failure else None,
        }
        if self.evm_indexer is not None:
            status["evm"] = self.evm_indexer.get_status()
        if self.svm_indexer is not None:
            status["svm"] = self.svm_indexer.get_status()
        return status
