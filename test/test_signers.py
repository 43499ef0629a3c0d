#!/usr/bin/env python3
"""Unit tests for the EVM and Solana signers."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest
from eth_account import Account
from hexbytes import HexBytes
from solana.exceptions import SolanaRpcException
from solana.rpc.core import RPCException
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from web3.exceptions import TimeExhausted, Web3RPCError

from bridge_oracle.errors import (
    InsufficientBalanceError,
    ProtocolViolation,
    SigningKeyError,
    TransactionFailedError,
    TransientError,
    UnconfirmedTransactionError,
)
from bridge_oracle.deposit_handler import DepositHandler
from bridge_oracle.event_processor import EventProcessor
from bridge_oracle.evm_signer import EvmSigner
from bridge_oracle.models import DepositTx
from bridge_oracle.svm_signer import SvmSigner, keypair_from_secret

PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
TX_HASH = HexBytes("0x" + "ab" * 32)


class FakeEth:
    """Async eth namespace; ``chain_id`` and ``gas_price`` are awaitable properties."""

    def __init__(self, balance: int = 10**18, status: int = 1):
        self.chain_calls = 0
        self.get_transaction_count = AsyncMock(return_value=4)
        self.get_balance = AsyncMock(return_value=balance)
        self.send_raw_transaction = AsyncMock(return_value=TX_HASH)
        self.wait_for_transaction_receipt = AsyncMock(return_value={"status": status, "blockNumber": 12})

    @property
    def chain_id(self):
        self.chain_calls += 1

        async def value():
            return 8453
        return value()

    @property
    def gas_price(self):
        async def value():
            return 1_000
        return value()


@pytest.fixture
def eth():
    return FakeEth()


@pytest.fixture
def evm_signer(eth):
    return EvmSigner(SimpleNamespace(eth=eth), PRIVATE_KEY, request_timeout=1, receipt_timeout=1)


@pytest.fixture
def deposit():
    return DepositTx(
        source_hash=b"\x01" * 32,
        from_address="0x70997970C51812dc3A010C7d01b50e0d17dc79C8",
        to="0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC",
        value=0,
        gas=50_000,
        data=b"\xca\xfe",
    )


class TestEvmSigner:
    """Test suite for EvmSigner."""

    def test_invalid_key(self):
        with pytest.raises(SigningKeyError):
            EvmSigner(MagicMock(), "not-a-key")

    def test_address(self, evm_signer):
        assert evm_signer.address == Account.from_key(PRIVATE_KEY).address

    @pytest.mark.asyncio
    async def test_relay_success(self, evm_signer, eth, deposit):
        tx_hash = await evm_signer.relay(deposit)

        assert tx_hash == "0x" + "ab" * 32
        eth.get_transaction_count.assert_awaited_once_with(evm_signer.address, "pending")
        raw = eth.send_raw_transaction.await_args.args[0]
        assert isinstance(raw, (bytes, HexBytes)) and len(raw) > 0
        eth.wait_for_transaction_receipt.assert_awaited_once_with(TX_HASH, timeout=1)

    @pytest.mark.asyncio
    async def test_chain_id_cached(self, evm_signer, eth, deposit):
        await evm_signer.relay(deposit)
        await evm_signer.relay(deposit)
        assert eth.chain_calls == 1

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, eth, deposit):
        """Gas at the bumped price exceeds the balance."""
        eth.get_balance.return_value = 50_000 * 1_200 - 1
        signer = EvmSigner(SimpleNamespace(eth=eth), PRIVATE_KEY)

        with pytest.raises(InsufficientBalanceError) as exc_info:
            await signer.relay(deposit)
        assert exc_info.value.required == 50_000 * 1_200
        eth.send_raw_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_contract_creation(self, evm_signer, eth):
        creation = DepositTx(
            source_hash=b"\x02" * 32,
            from_address="0x70997970C51812dc3A010C7d01b50e0d17dc79C8",
            to=None,
            value=0,
            gas=100_000,
            data=b"\x60\x80",
        )
        await evm_signer.relay(creation)
        eth.send_raw_transaction.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_receipt(self, eth, deposit):
        eth.wait_for_transaction_receipt.return_value = {"status": 0, "blockNumber": 12}
        signer = EvmSigner(SimpleNamespace(eth=eth), PRIVATE_KEY)

        with pytest.raises(TransactionFailedError):
            await signer.relay(deposit)

    @pytest.mark.asyncio
    async def test_receipt_timeout_is_unconfirmed(self, eth, deposit):
        """The transaction is already broadcast, so the error carries its hash."""
        eth.wait_for_transaction_receipt.side_effect = TimeExhausted("no receipt")
        signer = EvmSigner(SimpleNamespace(eth=eth), PRIVATE_KEY)

        with pytest.raises(UnconfirmedTransactionError) as exc_info:
            await signer.relay(deposit)
        assert exc_info.value.tx_hash == "0x" + "ab" * 32
        assert not isinstance(exc_info.value, TransientError)

    @pytest.mark.asyncio
    async def test_send_failure_is_unconfirmed(self, evm_signer, eth, deposit):
        """A connection lost while sending may still have delivered the transaction."""
        eth.send_raw_transaction.side_effect = aiohttp.ClientConnectionError("reset by peer")

        with pytest.raises(UnconfirmedTransactionError) as exc_info:
            await evm_signer.relay(deposit)
        assert exc_info.value.tx_hash.startswith("0x") and len(exc_info.value.tx_hash) == 66
        eth.wait_for_transaction_receipt.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_node_rejection_is_protocol_violation(self, evm_signer, eth, deposit):
        eth.send_raw_transaction.side_effect = Web3RPCError("nonce too low")

        with pytest.raises(ProtocolViolation, match="send_raw_transaction rejected"):
            await evm_signer.relay(deposit)

    @pytest.mark.asyncio
    async def test_connection_failure_before_send_is_transient(self, evm_signer, eth, deposit):
        eth.get_balance.side_effect = aiohttp.ClientConnectionError("connection refused")

        with pytest.raises(TransientError, match="get_balance failed"):
            await evm_signer.relay(deposit)
        eth.send_raw_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rpc_timeout_is_transient(self, eth, deposit):
        async def hang(*args):
            await asyncio.sleep(1)

        eth.get_transaction_count = hang
        signer = EvmSigner(SimpleNamespace(eth=eth), PRIVATE_KEY, request_timeout=0.01)

        with pytest.raises(TransientError, match="timed out"):
            await signer.relay(deposit)


class TestDepositRelayErrors:
    """Signer errors seen through the deposit handler."""

    @pytest.mark.asyncio
    async def test_rejected_deposit_does_not_block_the_next(self, evm_signer, eth, deposit_log_line):
        """A node rejecting the first deposit of a transaction still lets the second through."""
        eth.send_raw_transaction.side_effect = [Web3RPCError("nonce too low"), TX_HASH]
        handler = DepositHandler(evm_signer, EventProcessor())
        call_data = (30_000).to_bytes(8, "big") + b"\x00" + b"\x01"
        logs = [deposit_log_line(call_data), deposit_log_line(call_data)]

        tx_hashes = await handler.handle_logs(str(Signature.new_unique()), 10, logs)

        assert tx_hashes == ["0x" + "ab" * 32]
        assert eth.send_raw_transaction.await_count == 2
        metrics = handler.get_metrics()
        assert metrics["relay_failures"] == 1
        assert metrics["deposits_relayed"] == 1


@pytest.fixture
def client():
    client = MagicMock()
    client.get_latest_blockhash = AsyncMock(
        return_value=SimpleNamespace(value=SimpleNamespace(blockhash=Hash.new_unique()))
    )
    client.send_transaction = AsyncMock(return_value=SimpleNamespace(value=Signature.new_unique()))
    client.get_account_info = AsyncMock(return_value=SimpleNamespace(value=None))
    return client


@pytest.fixture
def svm_signer(client):
    return SvmSigner(client, Keypair(), request_timeout=1)


def noop_instruction() -> Instruction:
    return Instruction(Pubkey.new_unique(), b"\x01", [])


def rpc_failure() -> SolanaRpcException:
    """Connection failure the way solana-py raises it from a provider request."""

    async def make_request(provider, body):
        raise OSError("connection refused")

    return SolanaRpcException(OSError("connection refused"), make_request, None, SimpleNamespace())


class TestSvmSigner:
    """Test suite for SvmSigner."""

    @pytest.mark.asyncio
    async def test_relay_signs_with_payer(self, svm_signer, client):
        signature = await svm_signer.relay([noop_instruction()])

        assert signature == client.send_transaction.return_value.value
        transaction = client.send_transaction.await_args.args[0]
        assert transaction.message.account_keys[0] == svm_signer.pubkey
        assert transaction.signatures[0] != Signature.default()

    @pytest.mark.asyncio
    async def test_relay_requires_instructions(self, svm_signer):
        with pytest.raises(ValueError):
            await svm_signer.relay([])

    @pytest.mark.asyncio
    async def test_rejected_transaction(self, svm_signer, client):
        client.send_transaction.side_effect = RPCException("custom program error: 0x1")
        with pytest.raises(ProtocolViolation, match="rejected"):
            await svm_signer.relay([noop_instruction()])

    @pytest.mark.asyncio
    async def test_rpc_failure_is_transient(self, svm_signer, client):
        client.get_latest_blockhash.side_effect = rpc_failure()
        with pytest.raises(TransientError):
            await svm_signer.relay([noop_instruction()])

    @pytest.mark.asyncio
    async def test_missing_account(self, svm_signer):
        address = Pubkey.new_unique()
        assert await svm_signer.get_account_data(address) is None
        assert await svm_signer.get_account_owner(address) is None

    @pytest.mark.asyncio
    async def test_account_data_and_owner(self, svm_signer, client):
        owner = Pubkey.new_unique()
        client.get_account_info.return_value = SimpleNamespace(value=SimpleNamespace(data=b"\x01\x02", owner=owner))

        assert await svm_signer.get_account_data(Pubkey.new_unique()) == b"\x01\x02"
        assert await svm_signer.get_account_owner(Pubkey.new_unique()) == owner


class TestKeypairFromSecret:
    """Tests for loading the Solana secret key."""

    def test_hex_secret(self):
        keypair = Keypair()
        assert keypair_from_secret(bytes(keypair).hex()).pubkey() == keypair.pubkey()
        assert keypair_from_secret("0x" + bytes(keypair).hex()).pubkey() == keypair.pubkey()

    def test_base58_secret(self):
        keypair = Keypair()
        assert keypair_from_secret(str(keypair)).pubkey() == keypair.pubkey()

    def test_invalid_secret(self):
        with pytest.raises(SigningKeyError):
            keypair_from_secret("definitely-not-a-key")
