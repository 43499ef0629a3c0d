#!/usr/bin/env python3
"""Unit tests for the polling event listener."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from bridge_oracle.errors import SubscriptionClosedError
from bridge_oracle.models import CursorMode, IndexerCursor
from bridge_oracle.utils.polling_event_listener import PollingEventListener

CONTRACT = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
TOPIC = "0x" + "11" * 32


class FakeEth:
    """Async eth namespace with a settable head and canned logs."""

    def __init__(self, head: int, logs: list | None = None):
        self.head = head
        self.get_logs = AsyncMock(return_value=logs or [])

    @property
    def block_number(self):
        async def head():
            return self.head
        return head()


class FakeWeb3:
    def __init__(self, eth: FakeEth):
        self.eth = eth


def log(block: int, index: int) -> dict:
    return {"blockNumber": block, "logIndex": index}


@pytest.fixture
def cursor():
    return IndexerCursor(mode=CursorMode.POLLING, last_processed=99)


class TestIndexerCursor:
    """Tests for cursor movement."""

    def test_never_moves_backwards(self):
        cursor = IndexerCursor(mode=CursorMode.POLLING)
        assert cursor.next_height is None
        assert cursor.advance(10)
        assert not cursor.advance(5)
        assert not cursor.advance(10)
        assert cursor.next_height == 11


class TestPollingEventListener:
    """Test suite for PollingEventListener."""

    @pytest.mark.asyncio
    async def test_batch_sorted_and_cursor_advanced(self, cursor):
        eth = FakeEth(head=105, logs=[log(104, 1), log(101, 3), log(104, 0)])
        listener = PollingEventListener(FakeWeb3(eth), CONTRACT, TOPIC, cursor=cursor)
        callback = AsyncMock()

        handled = await listener.poll_for_events(callback)

        assert handled == 3
        batch = callback.await_args.args[0]
        assert [(entry["blockNumber"], entry["logIndex"]) for entry in batch] == [(101, 3), (104, 0), (104, 1)]
        query = eth.get_logs.await_args.args[0]
        assert query["fromBlock"] == 100 and query["toBlock"] == 105
        assert cursor.last_processed == 105
        assert cursor.next_height == 106

    @pytest.mark.asyncio
    async def test_query_failure_keeps_cursor(self, cursor):
        eth = FakeEth(head=105)
        eth.get_logs.side_effect = ConnectionError("node down")
        listener = PollingEventListener(FakeWeb3(eth), CONTRACT, TOPIC, cursor=cursor)

        assert await listener.poll_for_events(AsyncMock()) == 0
        assert cursor.last_processed == 99
        assert listener.get_status()["failed_polls"] == 1

    @pytest.mark.asyncio
    async def test_query_timeout_keeps_cursor(self, cursor):
        eth = FakeEth(head=105)

        async def slow_logs(_):
            await asyncio.sleep(1)

        eth.get_logs = slow_logs
        listener = PollingEventListener(FakeWeb3(eth), CONTRACT, TOPIC, cursor=cursor, filter_timeout=0.01)

        assert await listener.poll_for_events(AsyncMock()) == 0
        assert cursor.last_processed == 99

    @pytest.mark.asyncio
    async def test_handler_failure_keeps_cursor(self, cursor):
        eth = FakeEth(head=105, logs=[log(102, 0)])
        listener = PollingEventListener(FakeWeb3(eth), CONTRACT, TOPIC, cursor=cursor)

        assert await listener.poll_for_events(AsyncMock(side_effect=RuntimeError("boom"))) == 0
        assert cursor.last_processed == 99

    @pytest.mark.asyncio
    async def test_fatal_handler_error_propagates(self, cursor):
        eth = FakeEth(head=105, logs=[log(102, 0)])
        listener = PollingEventListener(FakeWeb3(eth), CONTRACT, TOPIC, cursor=cursor)

        with pytest.raises(SubscriptionClosedError):
            await listener.poll_for_events(AsyncMock(side_effect=SubscriptionClosedError("gone")))

    @pytest.mark.asyncio
    async def test_empty_range_advances_without_callback(self, cursor):
        listener = PollingEventListener(FakeWeb3(FakeEth(head=103)), CONTRACT, TOPIC, cursor=cursor)
        callback = AsyncMock()

        assert await listener.poll_for_events(callback) == 0
        callback.assert_not_awaited()
        assert cursor.last_processed == 103

    @pytest.mark.asyncio
    async def test_no_new_blocks(self, cursor):
        eth = FakeEth(head=99)
        listener = PollingEventListener(FakeWeb3(eth), CONTRACT, TOPIC, cursor=cursor)

        assert await listener.poll_for_events(AsyncMock()) == 0
        eth.get_logs.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_large_range_is_chunked(self, cursor):
        eth = FakeEth(head=1_000)
        listener = PollingEventListener(FakeWeb3(eth), CONTRACT, TOPIC, cursor=cursor, max_block_range=100)

        await listener.poll_for_events(AsyncMock())
        assert cursor.last_processed == 199
        assert listener.behind

    @pytest.mark.asyncio
    async def test_first_poll_without_cursor_starts_at_head(self):
        eth = FakeEth(head=500)
        listener = PollingEventListener(FakeWeb3(eth), CONTRACT, TOPIC)

        await listener.poll_for_events(AsyncMock())
        assert eth.get_logs.await_args.args[0]["fromBlock"] == 500

    @pytest.mark.asyncio
    async def test_start_and_stop(self, cursor):
        listener = PollingEventListener(FakeWeb3(FakeEth(head=100)), CONTRACT, TOPIC, cursor=cursor)
        task = asyncio.create_task(listener.start_polling(AsyncMock(), interval=60))
        await asyncio.sleep(0.05)
        assert listener.get_status()["is_running"]

        await listener.stop()
        await asyncio.wait_for(task, timeout=1)
        assert not listener.get_status()["is_running"]
