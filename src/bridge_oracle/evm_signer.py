#!/usr/bin/env python3
"""Deposit relay to the EVM chain.

This module turns decoded deposits into signed EVM transactions, checks that
the relayer can pay for them and waits for the receipt.
"""

import asyncio
import logging
from typing import Any

import aiohttp
from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_typing import ChecksumAddress, HexStr
from hexbytes import HexBytes
from web3 import AsyncWeb3, Web3
from web3.exceptions import TimeExhausted, Web3RPCError
from web3.types import TxParams, TxReceipt

from .errors import (
    InsufficientBalanceError,
    ProtocolViolation,
    SigningKeyError,
    TransactionFailedError,
    TransientError,
    UnconfirmedTransactionError,
)
from .models import DepositTx

logger = logging.getLogger(__name__)


class EvmSigner:
    """Signs and sends deposit transactions from the relayer account."""

    # Suggested gas price is bumped by 20% so the transaction is picked up promptly
    GAS_PRICE_NUMERATOR = 120
    GAS_PRICE_DENOMINATOR = 100

    def __init__(
        self,
        w3: AsyncWeb3,
        private_key: str,
        request_timeout: float = 30,
        receipt_timeout: float = 120
    ) -> None:
        """
        Initialize the EvmSigner.

        Args:
            w3: Async web3 instance connected to the EVM chain
            private_key: Hex private key of the relayer account
            request_timeout: Bound on each RPC round trip in seconds
            receipt_timeout: How long to wait for a receipt in seconds

        Raises:
            SigningKeyError: If the private key cannot be loaded
        """
        self.w3 = w3
        try:
            self.account: LocalAccount = Account.from_key(private_key)
        except Exception as e:
            raise SigningKeyError("Invalid EVM private key", e) from e
        self.request_timeout = request_timeout
        self.receipt_timeout = receipt_timeout
        self._chain_id: int | None = None
        logger.info(f"EvmSigner initialized for {self.address}")

    @property
    def address(self) -> ChecksumAddress:
        return self.account.address

    async def relay(self, deposit: DepositTx) -> HexStr:
        """
        Send a deposit as a transaction and wait for it to be mined.

        Args:
            deposit: Decoded deposit to execute

        Returns:
            Transaction hash (0x-prefixed)

        Raises:
            InsufficientBalanceError: If the relayer cannot cover gas and value
            ProtocolViolation: If the node rejects a request or the transaction
            TransactionFailedError: If the receipt reports failure
            TransientError: If the node could not be reached before broadcasting
            UnconfirmedTransactionError: If the transaction may have been
                broadcast but no receipt was obtained
        """
        chain_id = await self.get_chain_id()
        nonce = await self._call(
            self.w3.eth.get_transaction_count(self.address, "pending"), "get_transaction_count"
        )
        suggested = await self._call(self.w3.eth.gas_price, "gas_price")
        gas_price = suggested * self.GAS_PRICE_NUMERATOR // self.GAS_PRICE_DENOMINATOR

        required = deposit.gas * gas_price + deposit.value
        balance = await self._call(self.w3.eth.get_balance(self.address), "get_balance")
        if balance < required:
            logger.error(f"✗ Balance {balance} below required {required} for {deposit}")
            raise InsufficientBalanceError(balance, required)

        tx: TxParams = {
            'nonce': nonce,
            'gas': deposit.gas,
            'gasPrice': gas_price,
            'value': deposit.value,
            'data': Web3.to_hex(deposit.data),
            'chainId': chain_id,
        }
        # Omitting 'to' makes this a contract creation
        if deposit.to is not None:
            tx['to'] = Web3.to_checksum_address(deposit.to)

        signed = self.account.sign_transaction(tx)
        tx_hex = HexStr(Web3.to_hex(signed.hash))
        try:
            tx_hash: HexBytes = await self._call(
                self.w3.eth.send_raw_transaction(signed.raw_transaction), "send_raw_transaction"
            )
        except TransientError as e:
            # The node may have accepted the transaction before the failure
            raise UnconfirmedTransactionError(tx_hex, str(e), e.original_error) from e
        tx_hex = HexStr(Web3.to_hex(tx_hash))
        logger.info(f"✓ Transaction submitted: {tx_hex} (nonce={nonce}, gas_price={gas_price})")

        try:
            receipt: TxReceipt = await self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.receipt_timeout
            )
        except TimeExhausted as e:
            raise UnconfirmedTransactionError(
                tx_hex, f"no receipt after {self.receipt_timeout}s", e
            ) from e
        except (aiohttp.ClientError, OSError) as e:
            raise UnconfirmedTransactionError(tx_hex, f"receipt lookup failed: {e}", e) from e

        if (status := receipt.get('status', 0)) == 1:
            logger.info(f"✓ Transaction confirmed in block {receipt['blockNumber']}")
            return tx_hex

        logger.error(f"✗ Transaction {tx_hex} failed with status={status}")
        raise TransactionFailedError(tx_hex, status)

    async def get_chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = await self._call(self.w3.eth.chain_id, "chain_id")
        return self._chain_id

    async def _call(self, request: Any, name: str) -> Any:
        try:
            return await asyncio.wait_for(request, timeout=self.request_timeout)
        except asyncio.TimeoutError as e:
            raise TransientError(f"{name} timed out after {self.request_timeout}s", e) from e
        except Web3RPCError as e:
            raise ProtocolViolation(f"{name} rejected: {e}", e) from e
        except (aiohttp.ClientError, OSError) as e:
            raise TransientError(f"{name} failed: {e}", e) from e
