"""Tests for PriceFeedSubscriber"""

import asyncio
from decimal import Decimal

import pytest

from hedgegrid.core.models import UNAVAILABLE, PriceSnapshot
from hedgegrid.core.price_feed import PriceFeedSubscriber


class QueueSource:
    """Ticker source fed by the test; exceptions put on the queue are raised."""

    def __init__(self) -> None:
        self.queues: dict[str, asyncio.Queue] = {}
        self.calls: dict[str, int] = {}

    def queue(self, symbol: str) -> asyncio.Queue:
        return self.queues.setdefault(symbol, asyncio.Queue())

    async def watch_ticker(self, symbol: str) -> dict:
        self.calls[symbol] = self.calls.get(symbol, 0) + 1
        item = await self.queue(symbol).get()
        if isinstance(item, Exception):
            raise item
        return item


async def _drain() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.fixture
async def feed():
    source = QueueSource()
    subscriber = PriceFeedSubscriber(source, stale_after=30.0, backoff_base=0.01)
    subscriber.source = source
    yield subscriber
    await subscriber.close()


# =============================================================================
# Subscriptions
# =============================================================================


class TestSubscriptions:
    async def test_one_stream_per_symbol(self, feed):
        first = await feed.subscribe("BTCUSDT")
        second = await feed.subscribe("BTCUSDT")

        assert first.handle_id != second.handle_id
        assert feed.subscriber_count("BTCUSDT") == 2
        assert len(feed._tasks) == 1

    async def test_stream_stops_with_last_handle(self, feed):
        first = await feed.subscribe("BTCUSDT")
        second = await feed.subscribe("BTCUSDT")
        task = feed._tasks["BTCUSDT"]

        await feed.unsubscribe(first)
        assert not task.done()

        await feed.unsubscribe(second)
        assert task.cancelled()
        assert feed.symbols() == []

    async def test_double_unsubscribe_is_noop(self, feed):
        handle = await feed.subscribe("ETHUSDT")
        await feed.unsubscribe(handle)
        await feed.unsubscribe(handle)
        assert feed.subscriber_count("ETHUSDT") == 0


# =============================================================================
# Price reads
# =============================================================================


class TestCurrentPrice:
    async def test_unavailable_before_first_tick(self, feed):
        await feed.subscribe("BTCUSDT")
        assert feed.current_price("BTCUSDT") is UNAVAILABLE

    async def test_tick_updates_snapshot(self, feed):
        await feed.subscribe("BTCUSDT")
        feed.source.queue("BTCUSDT").put_nowait({"last": 50000.5, "timestamp": 1000})
        await _drain()

        snapshot = feed.current_price("BTCUSDT")
        assert isinstance(snapshot, PriceSnapshot)
        assert snapshot.price == Decimal("50000.5")
        assert snapshot.timestamp == 1000

    async def test_stale_price_is_unavailable(self, feed):
        feed._on_tick("BTCUSDT", {"last": 100, "timestamp": 1})
        feed.stale_after = 0.0
        await asyncio.sleep(0.01)
        assert feed.current_price("BTCUSDT") is UNAVAILABLE

    def test_out_of_order_tick_dropped(self, feed):
        assert feed._on_tick("BTCUSDT", {"last": 100, "timestamp": 2000})
        assert not feed._on_tick("BTCUSDT", {"last": 90, "timestamp": 1000})
        assert feed.current_price("BTCUSDT").price == Decimal("100")

    def test_unusable_tick_dropped(self, feed):
        assert not feed._on_tick("BTCUSDT", {"last": None, "close": None})
        assert not feed._on_tick("BTCUSDT", {"last": 0})

    def test_close_used_when_last_missing(self, feed):
        assert feed._on_tick("BTCUSDT", {"close": 42, "timestamp": 5})
        assert feed.current_price("BTCUSDT").price == Decimal("42")

    def test_listeners(self, feed):
        seen = []
        remove = feed.listen("BTCUSDT", seen.append)

        feed._on_tick("BTCUSDT", {"last": 1, "timestamp": 1})
        remove()
        feed._on_tick("BTCUSDT", {"last": 2, "timestamp": 2})

        assert [s.price for s in seen] == [Decimal("1")]


# =============================================================================
# Reconnects
# =============================================================================


class TestReconnect:
    async def test_stream_error_reconnects(self, feed):
        await feed.subscribe("BTCUSDT")
        queue = feed.source.queue("BTCUSDT")
        queue.put_nowait(ConnectionError("socket closed"))
        queue.put_nowait({"last": 10, "timestamp": 1})

        await asyncio.sleep(0.05)

        assert feed.get_statistics()["reconnects"] == {"BTCUSDT": 1}
        assert feed.current_price("BTCUSDT").price == Decimal("10")

    def test_backoff_is_capped(self, feed):
        feed.backoff_factor = 2.0
        feed.backoff_max = 30.0
        assert feed.next_backoff(1.0) == 2.0
        assert feed.next_backoff(20.0) == 30.0
