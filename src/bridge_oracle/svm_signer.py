#!/usr/bin/env python3
"""Transaction submission to the Solana bridge program.

This module signs and sends instructions with the oracle's fee payer and
reads bridge accounts, bounding every RPC round trip with a timeout.
"""

import asyncio
import logging
import string
from typing import Any, Sequence

from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.core import RPCException
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction

from .errors import ProtocolViolation, SigningKeyError, TransientError

logger = logging.getLogger(__name__)


def keypair_from_secret(secret: str) -> Keypair:
    """
    Load a keypair from a hex or base58 encoded 64-byte secret.

    Raises:
        SigningKeyError: If the secret cannot be decoded into a keypair
    """
    key = secret[2:] if secret.startswith("0x") else secret
    try:
        if len(key) == 128 and all(c in string.hexdigits for c in key):
            return Keypair.from_bytes(bytes.fromhex(key))
        return Keypair.from_base58_string(key)
    except Exception as e:
        raise SigningKeyError("Invalid Solana secret key", e) from e


class SvmSigner:
    """Signs, submits and reads on behalf of the oracle's Solana fee payer."""

    def __init__(self, client: AsyncClient, payer: Keypair, request_timeout: float = 30) -> None:
        """
        Initialize the SvmSigner.

        Args:
            client: Solana JSON-RPC client
            payer: Fee payer and default signer
            request_timeout: Bound on each RPC round trip in seconds
        """
        self.client = client
        self.payer = payer
        self.request_timeout = request_timeout
        logger.info(f"SvmSigner initialized with payer {payer.pubkey()}")

    @property
    def pubkey(self) -> Pubkey:
        return self.payer.pubkey()

    async def relay(
        self,
        instructions: Sequence[Instruction],
        signers: Sequence[Keypair] = ()
    ) -> Signature:
        """
        Sign and submit instructions in one transaction.

        The recent blockhash is fetched right before the message is built, so
        it is as fresh as possible when the transaction reaches the cluster.
        Confirmation is not awaited.

        Args:
            instructions: Instructions to execute, in order
            signers: Signers required besides the fee payer

        Returns:
            Signature of the submitted transaction

        Raises:
            ValueError: If no instruction is given
            TransientError: If an RPC round trip timed out or failed
            ProtocolViolation: If the cluster rejected the transaction
        """
        if not instructions:
            raise ValueError("At least one instruction is required")

        blockhash_resp = await self._call(self.client.get_latest_blockhash(), "get_latest_blockhash")
        blockhash = blockhash_resp.value.blockhash

        message = Message.new_with_blockhash(list(instructions), self.payer.pubkey(), blockhash)
        transaction = Transaction([*signers, self.payer], message, blockhash)

        try:
            send_resp = await self._call(self.client.send_transaction(transaction), "send_transaction")
        except RPCException as e:
            raise ProtocolViolation(f"Transaction rejected: {e}", e) from e

        signature: Signature = send_resp.value
        logger.info(f"✓ Solana transaction submitted: {signature}")
        return signature

    async def get_account_data(self, address: Pubkey) -> bytes | None:
        """Raw data of an account, or None if it does not exist."""
        resp = await self._call(self.client.get_account_info(address), "get_account_info")
        if resp.value is None:
            return None
        return bytes(resp.value.data)

    async def get_account_owner(self, address: Pubkey) -> Pubkey | None:
        resp = await self._call(self.client.get_account_info(address), "get_account_info")
        if resp.value is None:
            return None
        return resp.value.owner

    async def _call(self, request: Any, name: str) -> Any:
        try:
            return await asyncio.wait_for(request, timeout=self.request_timeout)
        except asyncio.TimeoutError as e:
            raise TransientError(f"{name} timed out after {self.request_timeout}s", e) from e
        except SolanaRpcException as e:
            raise TransientError(f"{name} failed: {e}", e) from e
