"""
Exchange API client for USDT-M perpetual futures, built on the ccxt.pro wrapper.

Features:
- Async rate limiting (non-blocking, adaptive)
- Hedge-mode market orders with explicit position side
- Position, balance, leverage and margin-mode management
- OHLCV and market precision rules for the optimizer
- WebSocket ticker streaming for the price feed
- Exception mapping that keeps exchange error codes intact
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal
from typing import Any

import ccxt.pro as ccxtpro
from ccxt.async_support import Exchange as CCXTExchange
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from hedgegrid.api.exceptions import (
    CredentialError,
    ExchangeAPIError,
    ExchangeNotAvailableError,
    ExchangeRateLimitError,
    ExchangeRejectionError,
    InsufficientFundsError,
    InvalidOrderError,
    NetworkError,
    OrderNotFoundError,
)
from hedgegrid.utils.logger import get_logger

logger = get_logger(__name__)

# Binance codes that ccxt does not always classify the way the engine needs
_RATE_LIMIT_CODES = {-1003, 429}
_CREDENTIAL_CODES = {-2014, -2015, -1022}
MARGIN_TYPE_UNCHANGED_CODE = -4046


@dataclass(frozen=True)
class MarketRules:
    """Trading rules for one symbol (ccxt TICK_SIZE precision mode)."""

    symbol: str
    tick_size: Decimal
    step_size: Decimal
    min_price: Decimal
    min_qty: Decimal
    max_qty: Decimal
    min_notional: Decimal

    def floor_quantity(self, quantity: Decimal) -> Decimal:
        """Floor a quantity to the step size."""
        if self.step_size <= 0:
            return quantity
        steps = (quantity / self.step_size).to_integral_value(rounding=ROUND_DOWN)
        return (steps * self.step_size).normalize()

    def floor_price(self, price: Decimal) -> Decimal:
        """Floor a price to the tick size."""
        if self.tick_size <= 0:
            return price
        ticks = (price / self.tick_size).to_integral_value(rounding=ROUND_DOWN)
        return (ticks * self.tick_size).normalize()


def _dec(value: Any, default: str = "0") -> Decimal:
    if value is None or value == "":
        return Decimal(default)
    return Decimal(str(value))


class ExchangeAPIClient:
    """
    Wrapper around ccxt for Binance USDT-M futures access.

    One instance serves one credential. Symbols are accepted either as
    exchange ids ("BTCUSDT") or unified ccxt symbols ("BTC/USDT:USDT").
    """

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        exchange_id: str = "binanceusdm",
        sandbox: bool = False,
        rate_limit: bool = True,
        timeout_ms: int = 10000,
        max_retries: int = 3,
    ) -> None:
        self.exchange_id = exchange_id
        self._api_key = api_key
        self._api_secret = api_secret
        self._sandbox = sandbox
        self._rate_limit = rate_limit
        self._timeout_ms = timeout_ms
        self._max_retries = max_retries

        self._exchange: CCXTExchange | None = None

        # Async rate limiting
        self._rate_lock = asyncio.Lock()
        self._last_request_time = 0.0
        self._min_request_interval = 0.1  # 100ms default
        self._adaptive_interval = 0.1  # Adjusts on rate limit hits

        # Statistics
        self._request_count = 0
        self._error_count = 0
        self._rate_limit_hits = 0
        self._last_error: str | None = None
        self._last_error_time: datetime | None = None
        self._initialized = False
        self._initialized_at: datetime | None = None

        self._latencies: deque[float] = deque(maxlen=100)

        logger.info(
            "exchange_client_created",
            exchange=exchange_id,
            api_key=api_key[:8],
            sandbox=sandbox,
            timeout_ms=timeout_ms,
        )

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def markets(self) -> dict[str, Any]:
        if self._exchange:
            return self._exchange.markets or {}
        return {}

    async def initialize(self) -> None:
        """Create the ccxt instance and load markets."""
        try:
            exchange_class = getattr(ccxtpro, self.exchange_id)
            config = {
                "apiKey": self._api_key,
                "secret": self._api_secret,
                "enableRateLimit": self._rate_limit,
                "timeout": self._timeout_ms,
                "options": {
                    "defaultType": "future",
                },
            }

            self._exchange = exchange_class(config)
            if self._sandbox:
                self._exchange.set_sandbox_mode(True)

            await self._exchange.load_markets()

            self._initialized = True
            self._initialized_at = datetime.now(timezone.utc)

            logger.info(
                "exchange_initialized",
                exchange=self.exchange_id,
                markets_count=len(self._exchange.markets),
            )

        except Exception as e:
            logger.error(
                "exchange_initialize_failed",
                exchange=self.exchange_id,
                error=str(e),
            )
            mapped = self._map_ccxt_exception(e)
            if isinstance(mapped, CredentialError):
                raise mapped from e
            raise ExchangeAPIError(f"Failed to initialize {self.exchange_id}: {e}") from e

    async def close(self) -> None:
        """Close exchange connections."""
        try:
            if self._exchange:
                await self._exchange.close()
            self._initialized = False

            logger.info(
                "exchange_connections_closed",
                exchange=self.exchange_id,
                total_requests=self._request_count,
                total_errors=self._error_count,
            )
        except Exception as e:
            logger.error("exchange_close_failed", error=str(e))

    async def health_check(self) -> bool:
        """Check if exchange connection is healthy."""
        if not self._initialized or not self._exchange:
            return False
        try:
            await self._exchange.fetch_time()
            return True
        except Exception as e:
            logger.warning("exchange_health_check_failed", error=str(e))
            return False

    # =========================================================================
    # Rate Limiting (async, non-blocking)
    # =========================================================================

    async def _handle_rate_limit(self) -> None:
        if not self._rate_limit:
            return

        async with self._rate_lock:
            current_time = time.monotonic()
            elapsed = current_time - self._last_request_time

            if elapsed < self._adaptive_interval:
                await asyncio.sleep(self._adaptive_interval - elapsed)

            self._last_request_time = time.monotonic()

    def _on_rate_limit_hit(self) -> None:
        """Adaptively increase interval on rate limit hits."""
        self._rate_limit_hits += 1
        self._adaptive_interval = min(self._adaptive_interval * 1.5, 2.0)
        logger.warning(
            "rate_limit_hit",
            new_interval=self._adaptive_interval,
            total_hits=self._rate_limit_hits,
        )

    def _on_request_success(self) -> None:
        if self._adaptive_interval > self._min_request_interval:
            self._adaptive_interval = max(
                self._adaptive_interval * 0.95,
                self._min_request_interval,
            )

    # =========================================================================
    # Exception Mapping
    # =========================================================================

    def _map_ccxt_exception(self, e: Exception) -> ExchangeAPIError:
        """Map ccxt exceptions to engine exchange exceptions, keeping the exchange code."""
        if isinstance(e, ExchangeAPIError):
            return e

        message = str(e)
        self._last_error = message
        self._last_error_time = datetime.now(timezone.utc)
        mapped = ExchangeAPIError(message)
        code = mapped.code

        # Check more specific subclasses before their parents
        if isinstance(e, (ccxtpro.RateLimitExceeded, ccxtpro.DDoSProtection)) or (
            code in _RATE_LIMIT_CODES
        ):
            self._on_rate_limit_hit()
            return ExchangeRateLimitError(f"Rate limit exceeded: {message}", code=code)
        elif isinstance(e, ccxtpro.AuthenticationError) or code in _CREDENTIAL_CODES:
            return CredentialError(f"Credential rejected: {message}", code=code)
        elif isinstance(e, ccxtpro.InsufficientFunds):
            return InsufficientFundsError(f"Insufficient margin: {message}", code=code)
        elif isinstance(e, ccxtpro.OrderNotFound):
            return OrderNotFoundError(f"Order not found: {message}", code=code)
        elif isinstance(e, ccxtpro.InvalidOrder):
            return InvalidOrderError(f"Invalid order: {message}", code=code)
        elif isinstance(e, ccxtpro.ExchangeNotAvailable):
            return ExchangeNotAvailableError(f"Exchange not available: {message}", code=code)
        elif isinstance(e, ccxtpro.NetworkError):
            return NetworkError(f"Network error: {message}", code=code)
        elif isinstance(e, ccxtpro.ExchangeError):
            return ExchangeRejectionError(f"Exchange rejected request: {message}", code=code)
        else:
            return mapped

    def _ensure_initialized(self) -> None:
        if not self._exchange:
            raise ExchangeAPIError("Exchange not initialized")

    async def _tracked_request(self, coro):
        """Execute a request with rate limiting, stats tracking, and latency measurement."""
        await self._handle_rate_limit()
        self._request_count += 1
        start = time.monotonic()
        try:
            result = await coro
            latency = (time.monotonic() - start) * 1000  # ms
            self._latencies.append(latency)
            self._on_request_success()
            return result
        except Exception as e:
            self._error_count += 1
            raise self._map_ccxt_exception(e) from e

    def unified_symbol(self, symbol: str) -> str:
        """Resolve an exchange id like 'BTCUSDT' to the unified ccxt symbol."""
        if "/" in symbol:
            return symbol
        self._ensure_initialized()
        try:
            return self._exchange.market(symbol)["symbol"]
        except Exception as e:
            raise InvalidOrderError(f"Unknown symbol: {symbol}") from e

    # =========================================================================
    # Market Data
    # =========================================================================

    @retry(
        retry=retry_if_exception_type((NetworkError, ExchangeRateLimitError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def fetch_ticker(self, symbol: str) -> dict[str, Any]:
        """Fetch ticker data for a symbol."""
        self._ensure_initialized()
        return await self._tracked_request(
            self._exchange.fetch_ticker(self.unified_symbol(symbol))
        )

    @retry(
        retry=retry_if_exception_type((NetworkError, ExchangeRateLimitError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def fetch_ohlcv(
        self,
        symbol: str,
        timeframe: str = "4h",
        since: int | None = None,
        limit: int | None = None,
    ) -> list[list]:
        """
        Fetch OHLCV candlestick data.

        Args:
            symbol: Trading pair symbol (e.g., 'BTCUSDT')
            timeframe: Candle timeframe (e.g., '1h', '4h', '1d')
            since: Timestamp in ms to start from
            limit: Maximum number of candles to return

        Returns:
            List of [timestamp, open, high, low, close, volume] lists.
        """
        self._ensure_initialized()
        return await self._tracked_request(
            self._exchange.fetch_ohlcv(
                self.unified_symbol(symbol), timeframe, since=since, limit=limit
            )
        )

    def market_rules(self, symbol: str) -> MarketRules:
        """Return precision and size limits for a symbol from the loaded markets."""
        self._ensure_initialized()
        try:
            market = self._exchange.market(symbol)
        except Exception as e:
            raise InvalidOrderError(f"Unknown symbol: {symbol}") from e

        precision = market.get("precision") or {}
        limits = market.get("limits") or {}
        amount_limits = limits.get("amount") or {}
        price_limits = limits.get("price") or {}
        cost_limits = limits.get("cost") or {}

        return MarketRules(
            symbol=market.get("id", symbol),
            tick_size=_dec(precision.get("price"), "0"),
            step_size=_dec(precision.get("amount"), "0"),
            min_price=_dec(price_limits.get("min"), "0"),
            min_qty=_dec(amount_limits.get("min"), "0"),
            max_qty=_dec(amount_limits.get("max"), "Infinity"),
            min_notional=_dec(cost_limits.get("min"), "0"),
        )

    # =========================================================================
    # Account
    # =========================================================================

    @retry(
        retry=retry_if_exception_type((NetworkError, ExchangeRateLimitError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def fetch_balance(self) -> dict[str, Any]:
        """Fetch futures wallet balance."""
        self._ensure_initialized()
        return await self._tracked_request(self._exchange.fetch_balance())

    @retry(
        retry=retry_if_exception_type((NetworkError, ExchangeRateLimitError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def fetch_positions(self, symbols: list[str] | None = None) -> list[dict[str, Any]]:
        """
        Fetch hedge-mode positions, normalized to exchange ids.

        Returns:
            List of dicts with symbol, position_side (LONG/SHORT),
            position_amt (absolute), entry_price and leverage.
        """
        self._ensure_initialized()
        unified = [self.unified_symbol(s) for s in symbols] if symbols else None
        raw_positions = await self._tracked_request(self._exchange.fetch_positions(unified))

        positions: list[dict[str, Any]] = []
        for position in raw_positions or []:
            info = position.get("info") or {}
            side = (info.get("positionSide") or position.get("side") or "").upper()
            if side not in ("LONG", "SHORT"):
                continue
            amount = info.get("positionAmt")
            if amount is None:
                amount = position.get("contracts")
            leverage = info.get("leverage") or position.get("leverage")
            positions.append(
                {
                    "symbol": info.get("symbol") or position.get("symbol"),
                    "position_side": side,
                    "position_amt": abs(_dec(amount)),
                    "entry_price": _dec(info.get("entryPrice") or position.get("entryPrice")),
                    "leverage": int(float(leverage)) if leverage else None,
                }
            )
        return positions

    @retry(
        retry=retry_if_exception_type((NetworkError, ExchangeRateLimitError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def set_leverage(self, leverage: int, symbol: str) -> dict[str, Any]:
        """Set leverage for a symbol."""
        self._ensure_initialized()
        result = await self._tracked_request(
            self._exchange.set_leverage(leverage, self.unified_symbol(symbol))
        )
        logger.info("leverage_set", symbol=symbol, leverage=leverage)
        return result

    async def max_leverage(self, symbol: str) -> int | None:
        """Highest leverage the exchange allows for a symbol, or None if unknown."""
        self._ensure_initialized()
        unified = self.unified_symbol(symbol)
        try:
            tiers = await self._tracked_request(self._exchange.fetch_leverage_tiers([unified]))
        except ExchangeAPIError as e:
            logger.warning("max_leverage_unavailable", symbol=symbol, error=str(e))
            return None
        brackets = (tiers or {}).get(unified) or []
        values = [int(t["maxLeverage"]) for t in brackets if t.get("maxLeverage")]
        return max(values) if values else None

    @retry(
        retry=retry_if_exception_type((NetworkError, ExchangeRateLimitError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def set_margin_mode(self, margin_type: str, symbol: str) -> dict[str, Any]:
        """
        Set margin mode for a symbol.

        Accepts CROSSED/CROSS or ISOLATED. An unchanged margin mode is not an error.
        """
        self._ensure_initialized()
        mode = "cross" if margin_type.upper().startswith("CROSS") else "isolated"
        try:
            return await self._tracked_request(
                self._exchange.set_margin_mode(mode, self.unified_symbol(symbol))
            )
        except ExchangeRejectionError as e:
            if e.code == MARGIN_TYPE_UNCHANGED_CODE:
                return {}
            raise

    # =========================================================================
    # Order Management
    # =========================================================================

    @retry(
        retry=retry_if_exception_type(ExchangeRateLimitError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def create_market_order(
        self,
        symbol: str,
        side: str,
        amount: Decimal,
        position_side: str,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Create a hedge-mode market order.

        Only rate limit errors are retried: a network failure may have placed
        the order already.
        """
        self._ensure_initialized()
        order_params = {"positionSide": position_side, **(params or {})}
        result = await self._tracked_request(
            self._exchange.create_market_order(
                symbol=self.unified_symbol(symbol),
                side=side,
                amount=float(amount),
                params=order_params,
            )
        )
        logger.info(
            "market_order_created",
            symbol=symbol,
            side=side,
            position_side=position_side,
            amount=str(amount),
            order_id=result.get("id"),
        )
        return result

    @retry(
        retry=retry_if_exception_type((NetworkError, ExchangeRateLimitError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def cancel_order(self, order_id: str, symbol: str) -> dict[str, Any]:
        """Cancel an order."""
        self._ensure_initialized()
        result = await self._tracked_request(
            self._exchange.cancel_order(id=order_id, symbol=self.unified_symbol(symbol))
        )
        logger.info("order_cancelled", order_id=order_id, symbol=symbol)
        return result

    async def fetch_order(self, order_id: str, symbol: str) -> dict[str, Any]:
        """Fetch order details. Callers own the retry policy."""
        self._ensure_initialized()
        return await self._tracked_request(
            self._exchange.fetch_order(id=order_id, symbol=self.unified_symbol(symbol))
        )

    # =========================================================================
    # WebSocket Streams
    # =========================================================================

    async def watch_ticker(self, symbol: str) -> dict[str, Any]:
        """Wait for the next ticker update via WebSocket."""
        self._ensure_initialized()
        try:
            return await self._exchange.watch_ticker(self.unified_symbol(symbol))
        except ExchangeAPIError:
            raise
        except Exception as e:
            raise self._map_ccxt_exception(e) from e

    # =========================================================================
    # Statistics
    # =========================================================================

    def get_statistics(self) -> dict[str, Any]:
        """Get client statistics."""
        avg_latency = sum(self._latencies) / len(self._latencies) if self._latencies else 0.0
        return {
            "exchange": self.exchange_id,
            "initialized": self._initialized,
            "initialized_at": self._initialized_at.isoformat() if self._initialized_at else None,
            "total_requests": self._request_count,
            "total_errors": self._error_count,
            "rate_limit_hits": self._rate_limit_hits,
            "error_rate": (
                self._error_count / self._request_count if self._request_count > 0 else 0.0
            ),
            "avg_latency_ms": round(avg_latency, 2),
            "adaptive_interval": round(self._adaptive_interval, 4),
            "last_error": self._last_error,
            "last_error_time": self._last_error_time.isoformat() if self._last_error_time else None,
        }
