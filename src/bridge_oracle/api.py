"""
HTTP API serving MMR proofs for the EVM to Solana direction.

Relayers that do not keep their own accumulator fetch proofs here before
calling ``prove_message``. When the oracle watches the EVM chain it also
drives that step itself: messages it has folded can be proven against a
checkpointed root and then relayed through the message routes.
"""

import asyncio
import logging
from typing import Any, Callable

from aiohttp import web

from .accumulator import MerkleMountainRange
from .errors import EmptyAccumulatorError, ProtocolViolation, TransientError
from .message_prover import MessageProver
from .models import MessagePassedEvent

logger = logging.getLogger(__name__)

StatusProvider = Callable[[], dict[str, Any]]
MessageLookup = Callable[[bytes], MessagePassedEvent | None]


def _parse_count(raw: str, name: str) -> int:
    try:
        value = int(raw, 10)
    except ValueError:
        raise web.HTTPBadRequest(reason=f"{name} must be an integer, got '{raw}'")
    if value < 0:
        raise web.HTTPBadRequest(reason=f"{name} must be non-negative, got {value}")
    return value


def _parse_hash(raw: str) -> bytes:
    try:
        value = bytes.fromhex(raw[2:] if raw.startswith("0x") else raw)
    except ValueError:
        raise web.HTTPBadRequest(reason=f"Message hash must be hex, got '{raw}'")
    if len(value) != 32:
        raise web.HTTPBadRequest(reason=f"Message hash must be 32 bytes, got {len(value)}")
    return value


class ProofApi:
    """Serves proofs over the accumulator built by the EVM watcher."""

    def __init__(
        self,
        accumulator: MerkleMountainRange,
        host: str = "127.0.0.1",
        port: int = 8080,
        status_provider: StatusProvider | None = None,
        prover: MessageProver | None = None,
        message_lookup: MessageLookup | None = None
    ) -> None:
        self.accumulator = accumulator
        self.host = host
        self.port = port
        self.status_provider = status_provider
        self.prover = prover
        self.message_lookup = message_lookup

        self.app = web.Application()
        self.app.router.add_get("/proof/{leaf_index}", self._handle_proof)
        self.app.router.add_get("/health", self._handle_health)
        if prover is not None:
            self.app.router.add_get("/messages/{hash}", self._handle_message_status)
            self.app.router.add_post("/messages/{hash}/prove", self._handle_prove)
            self.app.router.add_post("/messages/{hash}/relay", self._handle_relay)

        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    @property
    def is_running(self) -> bool:
        return self._runner is not None

    async def start(self) -> None:
        """Start listening on the configured host and port."""
        if self.is_running:
            return
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self.host, self.port)
        await self._site.start()
        logger.info(f"Proof API listening on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        """Stop the server and release the socket."""
        if self._runner is None:
            return
        await self._runner.cleanup()
        self._runner = None
        self._site = None
        logger.info("Proof API stopped")

    async def serve(self, cancel_event: asyncio.Event) -> None:
        """Serve until ``cancel_event`` is set."""
        await self.start()
        try:
            await cancel_event.wait()
        finally:
            await self.stop()

    async def _handle_proof(self, request: web.Request) -> web.Response:
        leaf_index = _parse_count(request.match_info["leaf_index"], "leaf index")

        leaf_count = self.accumulator.leaf_count
        if "leafCount" in request.query:
            leaf_count = _parse_count(request.query["leafCount"], "leafCount")
            if leaf_count > self.accumulator.leaf_count:
                raise web.HTTPNotFound(
                    reason=f"Only {self.accumulator.leaf_count} leaves have been appended"
                )

        if leaf_index >= leaf_count:
            raise web.HTTPNotFound(
                reason=f"Leaf {leaf_index} out of range for {leaf_count} leaves"
            )

        try:
            root = self.accumulator.root_at(leaf_count)
        except EmptyAccumulatorError as e:
            raise web.HTTPNotFound(reason=str(e))
        proof = self.accumulator.proof(leaf_index, leaf_count)

        logger.debug(f"Served proof for leaf {leaf_index} against {leaf_count} leaves")
        return web.json_response({**proof.to_dict(), "root": f"0x{root.hex()}"})

    async def _handle_health(self, request: web.Request) -> web.Response:
        status = self.status_provider() if self.status_provider else {}
        return web.json_response({
            "status": "ok",
            "leaf_count": self.accumulator.leaf_count,
            **status,
        })

    async def _handle_message_status(self, request: web.Request) -> web.Response:
        hash_ = _parse_hash(request.match_info["hash"])
        status = self.prover.lifecycle.status(hash_)
        return web.json_response({
            "hash": f"0x{hash_.hex()}",
            "status": status.value if status else None,
        })

    async def _handle_prove(self, request: web.Request) -> web.Response:
        hash_ = _parse_hash(request.match_info["hash"])
        if "blockNumber" not in request.query:
            raise web.HTTPBadRequest(reason="blockNumber query parameter is required")
        block_number = _parse_count(request.query["blockNumber"], "blockNumber")

        event = self.message_lookup(hash_) if self.message_lookup else None
        if event is None:
            raise web.HTTPNotFound(reason=f"No MessagePassed event seen for 0x{hash_.hex()}")

        signature = await self._submit(self.prover.prove(event, block_number))
        return web.json_response({"hash": f"0x{hash_.hex()}", "signature": str(signature)})

    async def _handle_relay(self, request: web.Request) -> web.Response:
        hash_ = _parse_hash(request.match_info["hash"])
        signature = await self._submit(self.prover.relay(hash_))
        return web.json_response({"hash": f"0x{hash_.hex()}", "signature": str(signature)})

    @staticmethod
    async def _submit(call: Any) -> Any:
        try:
            return await call
        except ProtocolViolation as e:
            raise web.HTTPConflict(reason=str(e))
        except TransientError as e:
            raise web.HTTPServiceUnavailable(reason=str(e))
