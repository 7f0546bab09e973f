"""
Price Feed Subscriber.

One ticker stream task per symbol, shared by every strategy watching that
symbol through a reference count. Readers get immutable PriceSnapshot
objects and never wait on the stream.
"""

import asyncio
import itertools
import time
from collections.abc import Awaitable, Callable
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol

from hedgegrid.core.models import UNAVAILABLE, PriceSnapshot, SubscriptionHandle, _Unavailable
from hedgegrid.utils.logger import LoggerMixin

TickCallback = Callable[[PriceSnapshot], None]


class TickerSource(Protocol):
    """Anything that can wait for the next ticker of a symbol (ExchangeAPIClient does)."""

    def watch_ticker(self, symbol: str) -> Awaitable[dict[str, Any]]: ...


class PriceFeedSubscriber(LoggerMixin):
    """
    Refcounted price stream registry.

    Args:
        source: ticker source, usually a public ExchangeAPIClient
        stale_after: seconds after which the last tick no longer counts
        backoff_base: first reconnect delay in seconds
        backoff_factor: multiplier per consecutive failure
        backoff_max: reconnect delay cap in seconds
    """

    def __init__(
        self,
        source: TickerSource,
        stale_after: float = 30.0,
        backoff_base: float = 1.0,
        backoff_factor: float = 2.0,
        backoff_max: float = 30.0,
    ) -> None:
        self._source = source
        self.stale_after = stale_after
        self.backoff_base = backoff_base
        self.backoff_factor = backoff_factor
        self.backoff_max = backoff_max

        self._lock = asyncio.Lock()
        self._handle_ids = itertools.count(1)
        self._handles: dict[int, str] = {}
        self._refcounts: dict[str, int] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._snapshots: dict[str, PriceSnapshot] = {}
        self._listeners: dict[str, list[TickCallback]] = {}
        self._reconnects: dict[str, int] = {}

    # =========================================================================
    # Subscription registry
    # =========================================================================

    async def subscribe(self, symbol: str) -> SubscriptionHandle:
        """Register interest in a symbol, starting its stream on first use."""
        async with self._lock:
            handle = SubscriptionHandle(symbol=symbol, handle_id=next(self._handle_ids))
            self._handles[handle.handle_id] = symbol
            self._refcounts[symbol] = self._refcounts.get(symbol, 0) + 1

            if symbol not in self._tasks:
                self._tasks[symbol] = asyncio.create_task(
                    self._stream(symbol), name=f"price-feed-{symbol}"
                )
                self.logger.info("price_stream_started", symbol=symbol)

            return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        """Release a handle. Releasing twice is a no-op."""
        task: asyncio.Task | None = None
        async with self._lock:
            symbol = self._handles.pop(handle.handle_id, None)
            if symbol is None:
                return

            self._refcounts[symbol] -= 1
            if self._refcounts[symbol] > 0:
                return

            del self._refcounts[symbol]
            task = self._tasks.pop(symbol, None)
            self._snapshots.pop(symbol, None)
            self._listeners.pop(symbol, None)
            self._reconnects.pop(symbol, None)

        if task is not None:
            await self._cancel(task)
            self.logger.info("price_stream_stopped", symbol=symbol)

    def current_price(self, symbol: str) -> PriceSnapshot | _Unavailable:
        """Latest fresh snapshot for a symbol, or UNAVAILABLE."""
        snapshot = self._snapshots.get(symbol)
        if snapshot is None:
            return UNAVAILABLE
        if time.monotonic() - snapshot.received_at > self.stale_after:
            return UNAVAILABLE
        return snapshot

    def listen(self, symbol: str, callback: TickCallback) -> Callable[[], None]:
        """
        Call `callback` with every accepted tick of a subscribed symbol.

        Returns a function that removes the callback.
        """
        self._listeners.setdefault(symbol, []).append(callback)

        def remove() -> None:
            callbacks = self._listeners.get(symbol)
            if callbacks and callback in callbacks:
                callbacks.remove(callback)

        return remove

    def symbols(self) -> list[str]:
        return sorted(self._refcounts)

    def subscriber_count(self, symbol: str) -> int:
        return self._refcounts.get(symbol, 0)

    async def close(self) -> None:
        """Cancel every stream and drop all subscriptions."""
        async with self._lock:
            tasks = list(self._tasks.values())
            self._tasks.clear()
            self._handles.clear()
            self._refcounts.clear()
            self._snapshots.clear()
            self._listeners.clear()
            self._reconnects.clear()

        for task in tasks:
            await self._cancel(task)
        self.logger.info("price_feed_closed", streams=len(tasks))

    def get_statistics(self) -> dict[str, Any]:
        return {
            "symbols": self.symbols(),
            "subscribers": dict(self._refcounts),
            "reconnects": dict(self._reconnects),
        }

    # =========================================================================
    # Stream task
    # =========================================================================

    def next_backoff(self, delay: float) -> float:
        return min(delay * self.backoff_factor, self.backoff_max)

    async def _stream(self, symbol: str) -> None:
        delay = self.backoff_base
        while True:
            try:
                ticker = await self._source.watch_ticker(symbol)
                if self._on_tick(symbol, ticker):
                    delay = self.backoff_base
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._reconnects[symbol] = self._reconnects.get(symbol, 0) + 1
                self.logger.warning(
                    "price_stream_error",
                    symbol=symbol,
                    error=str(e),
                    retry_in=delay,
                )
                await asyncio.sleep(delay)
                delay = self.next_backoff(delay)

    def _on_tick(self, symbol: str, ticker: dict[str, Any]) -> bool:
        """Store a tick. Returns False when it was unusable or out of order."""
        raw_price = ticker.get("last") or ticker.get("close")
        try:
            price = Decimal(str(raw_price))
        except (InvalidOperation, ValueError):
            return False
        if raw_price is None or price <= 0:
            return False

        timestamp = ticker.get("timestamp") or int(time.time() * 1000)
        previous = self._snapshots.get(symbol)
        if previous is not None and timestamp < previous.timestamp:
            self.logger.debug(
                "price_tick_out_of_order",
                symbol=symbol,
                timestamp=timestamp,
                last_timestamp=previous.timestamp,
            )
            return False

        snapshot = PriceSnapshot(
            symbol=symbol,
            price=price,
            timestamp=int(timestamp),
            received_at=time.monotonic(),
        )
        self._snapshots[symbol] = snapshot

        for callback in list(self._listeners.get(symbol, ())):
            try:
                callback(snapshot)
            except Exception as e:
                self.logger.error("price_listener_failed", symbol=symbol, error=str(e))
        return True

    @staticmethod
    async def _cancel(task: asyncio.Task) -> None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
