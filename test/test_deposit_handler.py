#!/usr/bin/env python3
"""Unit tests for the DepositHandler module."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from solders.signature import Signature

from bridge_oracle.deposit_handler import DepositHandler
from bridge_oracle.errors import (
    InsufficientBalanceError,
    SubscriptionClosedError,
    TransactionFailedError,
    TransientError,
    UnconfirmedTransactionError,
)
from bridge_oracle.event_processor import EventProcessor
from bridge_oracle.utils.state_manager import ProcessedSet

CALL_DATA = (30_000).to_bytes(8, "big") + b"\x00" + b"\x01\x02"


@pytest.fixture
def mock_signer():
    """Create a mock EvmSigner that always succeeds."""
    signer = MagicMock()
    signer.relay = AsyncMock(return_value="0x" + "ab" * 32)
    return signer


@pytest.fixture
def handler(mock_signer):
    return DepositHandler(signer=mock_signer, processor=EventProcessor(), dedupe_window=100)


@pytest.fixture
def signature():
    return str(Signature.new_unique())


class TestDepositHandler:
    """Test suite for DepositHandler."""

    @pytest.mark.asyncio
    async def test_relays_each_deposit(self, handler, mock_signer, deposit_log_line, signature):
        logs = [deposit_log_line(CALL_DATA), deposit_log_line(CALL_DATA)]
        tx_hashes = await handler.handle_logs(signature, 10, logs)

        assert len(tx_hashes) == 2
        assert mock_signer.relay.await_count == 2
        relayed = mock_signer.relay.await_args_list[0].args[0]
        assert relayed.gas == 30_000
        assert relayed.data == b"\x01\x02"
        assert handler.get_metrics()["deposits_relayed"] == 2

    @pytest.mark.asyncio
    async def test_redelivery_relays_once(self, handler, mock_signer, deposit_log_line, signature):
        """The same transaction delivered twice produces one relay."""
        logs = [deposit_log_line(CALL_DATA)]
        await handler.handle_logs(signature, 10, logs)
        second = await handler.handle_logs(signature, 10, logs)

        assert second == []
        mock_signer.relay.assert_awaited_once()
        assert handler.get_metrics()["deposits_duplicated"] == 1

    @pytest.mark.asyncio
    async def test_invalid_deposit_skipped(self, handler, mock_signer, deposit_log_line, signature):
        logs = [deposit_log_line(CALL_DATA, version=3), deposit_log_line(CALL_DATA)]
        tx_hashes = await handler.handle_logs(signature, 10, logs)

        assert len(tx_hashes) == 1
        mock_signer.relay.assert_awaited_once()
        assert handler.get_metrics()["deposits_invalid"] == 1

    @pytest.mark.asyncio
    async def test_transient_failure_allows_retry(self, handler, mock_signer, deposit_log_line, signature):
        """A relay that failed before broadcasting is forgotten so a redelivery retries it."""
        mock_signer.relay.side_effect = [TransientError("get_balance timed out"), "0x" + "cd" * 32]
        logs = [deposit_log_line(CALL_DATA)]

        assert await handler.handle_logs(signature, 10, logs) == []
        assert await handler.handle_logs(signature, 10, logs) == ["0x" + "cd" * 32]
        assert mock_signer.relay.await_count == 2

    @pytest.mark.asyncio
    async def test_unconfirmed_relay_not_repeated(self, handler, mock_signer, deposit_log_line, signature):
        """A broadcast transaction without a receipt keeps its key, so redelivery sends nothing."""
        mock_signer.relay.side_effect = UnconfirmedTransactionError("0x" + "cd" * 32, "no receipt after 120s")
        logs = [deposit_log_line(CALL_DATA)]

        assert await handler.handle_logs(signature, 10, logs) == []
        assert await handler.handle_logs(signature, 10, logs) == []
        mock_signer.relay.assert_awaited_once()
        metrics = handler.get_metrics()
        assert metrics["deposits_unconfirmed"] == 1
        assert metrics["deposits_duplicated"] == 1

    @pytest.mark.asyncio
    async def test_unexpected_failure_does_not_stop_batch(self, handler, mock_signer, deposit_log_line, signature):
        mock_signer.relay.side_effect = [RuntimeError("boom"), "0x" + "cd" * 32]
        logs = [deposit_log_line(CALL_DATA), deposit_log_line(CALL_DATA)]

        assert await handler.handle_logs(signature, 10, logs) == ["0x" + "cd" * 32]
        assert mock_signer.relay.await_count == 2
        assert handler.get_metrics()["relay_failures"] == 1

    @pytest.mark.asyncio
    async def test_fatal_error_propagates(self, handler, mock_signer, deposit_log_line, signature):
        mock_signer.relay.side_effect = SubscriptionClosedError("provider closed")
        with pytest.raises(SubscriptionClosedError):
            await handler.handle_logs(signature, 10, [deposit_log_line(CALL_DATA)])

    @pytest.mark.asyncio
    async def test_protocol_violation_not_retried(self, handler, mock_signer, deposit_log_line, signature):
        """Rejected relays stay marked so the same failure is not repeated."""
        mock_signer.relay.side_effect = InsufficientBalanceError(balance=1, required=2)
        logs = [deposit_log_line(CALL_DATA)]

        assert await handler.handle_logs(signature, 10, logs) == []
        assert await handler.handle_logs(signature, 10, logs) == []
        mock_signer.relay.assert_awaited_once()
        assert handler.get_metrics()["relay_failures"] == 1

    @pytest.mark.asyncio
    async def test_failed_receipt_is_reported(self, handler, mock_signer, deposit_log_line, signature):
        mock_signer.relay.side_effect = TransactionFailedError("0x" + "ef" * 32, 0)
        assert await handler.handle_logs(signature, 10, [deposit_log_line(CALL_DATA)]) == []
        assert handler.get_metrics()["deposits_relayed"] == 0


class TestProcessedSet:
    """Tests for the bounded dedup set."""

    def test_add_reports_new_keys(self):
        processed = ProcessedSet(max_size=10)
        assert processed.add(("sig", 0))
        assert not processed.add(("sig", 0))
        assert ("sig", 0) in processed

    def test_evicts_oldest(self):
        processed = ProcessedSet(max_size=2)
        for key in ("a", "b", "c"):
            processed.add(key)
        assert "a" not in processed
        assert len(processed) == 2
        assert processed.get_stats() == {"processed": 2, "max_size": 2, "evicted": 1}

    def test_discard(self):
        processed = ProcessedSet()
        processed.add("a")
        processed.discard("a")
        processed.discard("missing")
        assert "a" not in processed

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            ProcessedSet(max_size=0)
