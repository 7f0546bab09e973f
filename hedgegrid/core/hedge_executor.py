"""
Hedge Order Executor.

Turns order intents into exchange calls:
- opens and closes hedge legs in batches, isolating failures per item
- runs symbols concurrently under a semaphore, legs of one symbol sequentially
- sets leverage synchronously for small batches, in the background for large ones
- reports symbols whose hedge lost one side
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import replace
from decimal import Decimal
from enum import Enum
from typing import Any

from hedgegrid.api.client_pool import Credential, ExchangeClientPool
from hedgegrid.api.exceptions import (
    CredentialError,
    ExchangeAPIError,
    ExchangeRejectionError,
)
from hedgegrid.api.exchange_client import ExchangeAPIClient, MarketRules
from hedgegrid.core.exceptions import ValidationError
from hedgegrid.core.models import (
    BatchResult,
    CloseMode,
    ImbalancedHedge,
    IntentAction,
    LeverageBatchResult,
    LeverageResult,
    LeverageSetting,
    OrderIntent,
    OrderResult,
    PositionSide,
)
from hedgegrid.utils.logger import LoggerMixin

MIN_LEVERAGE = 1
MAX_LEVERAGE = 125
SYNC_LEVERAGE_BATCH_LIMIT = 5
NEW_ACCOUNT_LEVERAGE_CAP_CODE = -4300
NEW_ACCOUNT_LEVERAGE = 20
QUOTE_ASSET = "USDT"


class DelayProfile(str, Enum):
    """Random pause between legs of the same symbol"""

    SHORT = "short"
    MEDIUM = "medium"
    LONG = "long"


DELAY_RANGES: dict[DelayProfile, tuple[float, float]] = {
    DelayProfile.SHORT: (0.2, 0.5),
    DelayProfile.MEDIUM: (0.3, 0.6),
    DelayProfile.LONG: (0.5, 1.0),
}

_HEDGE_SIDES = (PositionSide.LONG.value, PositionSide.SHORT.value)


def validate_leverage_setting(setting: LeverageSetting) -> None:
    """Raise ValidationError unless symbol is a non-empty string and leverage an int in range."""
    if not isinstance(setting.symbol, str) or not setting.symbol.strip():
        raise ValidationError(f"Invalid symbol: {setting.symbol!r}")
    leverage = setting.leverage
    if isinstance(leverage, bool) or not isinstance(leverage, int):
        raise ValidationError(f"Leverage for {setting.symbol} must be an integer, got {leverage!r}")
    if not MIN_LEVERAGE <= leverage <= MAX_LEVERAGE:
        raise ValidationError(
            f"Leverage for {setting.symbol} must be between {MIN_LEVERAGE} and "
            f"{MAX_LEVERAGE}, got {leverage}"
        )


def _failed(intent: OrderIntent, error: str, code: int | None = None) -> OrderResult:
    return OrderResult(
        symbol=intent.symbol,
        position_side=intent.position_side,
        action=intent.action,
        success=False,
        quantity=intent.quantity,
        error=error,
        error_code=code,
        strategy_id=intent.strategy_id,
    )


def _dec(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    return Decimal(str(value))


class HedgeOrderExecutor(LoggerMixin):
    """
    Batched, hedged order execution against per-credential exchange clients.

    Args:
        client_pool: source of initialized clients per credential
        max_concurrency: symbols processed at the same time
        delay_profile: pause range between legs of one symbol
        leverage_delay: seconds between leverage calls of a synchronous batch
    """

    def __init__(
        self,
        client_pool: ExchangeClientPool,
        max_concurrency: int = 5,
        delay_profile: DelayProfile = DelayProfile.SHORT,
        leverage_delay: float = 0.1,
    ) -> None:
        self._pool = client_pool
        self.max_concurrency = max_concurrency
        self.delay_range = DELAY_RANGES[DelayProfile(delay_profile)]
        self.leverage_delay = leverage_delay
        self._background_tasks: set[asyncio.Task] = set()

    async def client_for(self, credential: Credential) -> ExchangeAPIClient:
        return await self._pool.get(credential)

    # =========================================================================
    # Batch plumbing
    # =========================================================================

    async def _run_by_symbol(
        self,
        items: list[tuple[int, OrderIntent]],
        worker: Callable[[OrderIntent], Awaitable[OrderResult]],
        results: list[OrderResult | None],
    ) -> None:
        """
        Run items grouped by symbol: symbols concurrently (bounded), legs of a
        symbol one after another with a random pause. A CredentialError from
        any item cancels the rest and propagates.
        """
        groups: dict[str, list[tuple[int, OrderIntent]]] = {}
        for index, intent in items:
            groups.setdefault(intent.symbol, []).append((index, intent))

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run_group(group: list[tuple[int, OrderIntent]]) -> None:
            async with semaphore:
                for position, (index, intent) in enumerate(group):
                    if position > 0:
                        await asyncio.sleep(random.uniform(*self.delay_range))
                    results[index] = await worker(intent)

        tasks = [asyncio.create_task(run_group(group)) for group in groups.values()]
        try:
            await asyncio.gather(*tasks)
        except CredentialError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _reference_price(
        self,
        client: ExchangeAPIClient,
        symbol: str,
        reference_prices: dict[str, Decimal] | None,
    ) -> Decimal:
        if reference_prices and reference_prices.get(symbol):
            return Decimal(str(reference_prices[symbol]))
        ticker = await client.fetch_ticker(symbol)
        price = _dec(ticker.get("last") or ticker.get("close"))
        if not price or price <= 0:
            raise ExchangeRejectionError(f"No price available for {symbol}")
        return price

    async def _submit(
        self,
        client: ExchangeAPIClient,
        intent: OrderIntent,
        quantity: Decimal,
    ) -> OrderResult:
        """Place one market order; exchange errors other than credential become a failed item."""
        try:
            order = await client.create_market_order(
                symbol=intent.symbol,
                side=intent.order_side.value.lower(),
                amount=quantity,
                position_side=str(getattr(intent.position_side, "value", intent.position_side)),
            )
        except CredentialError:
            raise
        except ExchangeAPIError as e:
            self.logger.warning(
                "order_failed",
                symbol=intent.symbol,
                position_side=str(intent.position_side),
                action=intent.action.value,
                error=str(e),
                code=e.code,
            )
            result = _failed(intent, str(e), e.code)
            result.quantity = quantity
            return result

        return OrderResult(
            symbol=intent.symbol,
            position_side=intent.position_side,
            action=intent.action,
            success=True,
            quantity=quantity,
            order_id=str(order.get("id")) if order.get("id") is not None else None,
            average_price=_dec(order.get("average") or order.get("price")),
            filled_quantity=_dec(order.get("filled")),
            status=order.get("status"),
            strategy_id=intent.strategy_id,
        )

    def _validate_side(self, intent: OrderIntent) -> str | None:
        side = str(getattr(intent.position_side, "value", intent.position_side))
        if side not in _HEDGE_SIDES:
            return f"Invalid position side: {side!r}"
        if not isinstance(intent.symbol, str) or not intent.symbol:
            return f"Invalid symbol: {intent.symbol!r}"
        return None

    # =========================================================================
    # Open
    # =========================================================================

    async def _open_one(
        self,
        client: ExchangeAPIClient,
        intent: OrderIntent,
        reference_prices: dict[str, Decimal] | None = None,
    ) -> OrderResult:
        error = self._validate_side(intent)
        if error:
            return _failed(intent, error)
        if intent.quantity is None and intent.amount is None:
            return _failed(intent, "Either quantity or amount is required")
        if (intent.quantity is not None and intent.quantity <= 0) or (
            intent.amount is not None and intent.amount <= 0
        ):
            return _failed(intent, "Quantity and amount must be positive")

        try:
            rules: MarketRules = client.market_rules(intent.symbol)
            price = await self._reference_price(client, intent.symbol, reference_prices)
        except CredentialError:
            raise
        except ExchangeAPIError as e:
            return _failed(intent, str(e), e.code)

        raw_quantity = intent.quantity if intent.quantity is not None else intent.amount / price
        quantity = rules.floor_quantity(raw_quantity)
        if quantity <= 0 or quantity < rules.min_qty:
            return _failed(intent, f"Quantity {raw_quantity} below minimum {rules.min_qty}")

        notional = quantity * price
        if rules.min_notional and notional < rules.min_notional:
            return _failed(
                intent, f"Order notional {notional:.4f} below minimum {rules.min_notional}"
            )

        return await self._submit(client, intent, quantity)

    async def build_positions(
        self,
        credential: Credential,
        intents: list[OrderIntent],
        reference_prices: dict[str, Decimal] | None = None,
    ) -> BatchResult:
        """
        Open hedge legs with market orders.

        One symbol's rejection never aborts another. A rejected credential
        aborts the whole batch with CredentialError.
        """
        client = await self.client_for(credential)
        results: list[OrderResult | None] = [None] * len(intents)

        async def worker(intent: OrderIntent) -> OrderResult:
            return await self._open_one(client, intent, reference_prices)

        await self._run_by_symbol(list(enumerate(intents)), worker, results)
        batch = BatchResult.from_results([r for r in results if r is not None])

        self.logger.info(
            "build_positions_completed",
            api_key=credential.masked_key,
            **batch.summary.to_dict(),
        )
        return batch

    # =========================================================================
    # Close
    # =========================================================================

    def _close_quantity(
        self,
        intent: OrderIntent,
        mode: CloseMode,
        position_amount: Decimal,
        price: Decimal | None,
    ) -> tuple[Decimal | None, str | None]:
        if mode == CloseMode.QUANTITY:
            if intent.quantity is None:
                return None, "quantity is required in quantity mode"
            if intent.quantity <= 0:
                return None, "quantity must be positive"
            return min(intent.quantity, position_amount), None
        if mode == CloseMode.PERCENTAGE:
            if intent.percentage is None:
                return None, "percentage is required in percentage mode"
            if not Decimal("0") < intent.percentage <= Decimal("100"):
                return None, "percentage must be in (0, 100]"
            return abs(position_amount) * intent.percentage / Decimal("100"), None
        if intent.amount is None:
            return None, "amount is required in amount mode"
        if intent.amount <= 0:
            return None, "amount must be positive"
        if not price:
            return None, "no price available for amount mode"
        return min(intent.amount / price, position_amount), None

    async def close_positions(
        self,
        credential: Credential,
        intents: list[OrderIntent],
        mode: str = CloseMode.QUANTITY.value,
        reference_prices: dict[str, Decimal] | None = None,
    ) -> BatchResult:
        """
        Reduce hedge legs by amount, quantity or percentage of the live position.

        Items with an invalid symbol or side, a non-USDT pair, no live position
        or a missing mode value are reported as failed without an order.
        """
        try:
            close_mode = CloseMode(mode)
        except ValueError as e:
            raise ValidationError(f"Unsupported close mode {mode!r}") from e

        client = await self.client_for(credential)
        positions = await client.fetch_positions()
        live: dict[tuple[str, str], Decimal] = {
            (p["symbol"], p["position_side"]): p["position_amt"] for p in positions
        }

        results: list[OrderResult | None] = [None] * len(intents)
        valid: list[tuple[int, OrderIntent]] = []

        for index, intent in enumerate(intents):
            error = self._validate_side(intent)
            if error is None and not intent.symbol.upper().endswith(QUOTE_ASSET):
                error = f"Only {QUOTE_ASSET} pairs are supported: {intent.symbol}"
            position_amount = Decimal("0")
            if error is None:
                side = str(getattr(intent.position_side, "value", intent.position_side))
                position_amount = live.get((intent.symbol, side), Decimal("0"))
                if position_amount <= 0:
                    error = f"No open {side} position for {intent.symbol}"
            if error is None:
                price = None
                if close_mode == CloseMode.AMOUNT:
                    try:
                        price = await self._reference_price(
                            client, intent.symbol, reference_prices
                        )
                    except CredentialError:
                        raise
                    except ExchangeAPIError as e:
                        error = str(e)
                if error is None:
                    quantity, error = self._close_quantity(
                        intent, close_mode, position_amount, price
                    )

            if error is not None:
                results[index] = _failed(intent, error)
            else:
                valid.append((index, replace(intent, quantity=quantity)))

        if not valid:
            batch = BatchResult.from_results([r for r in results if r is not None])
            self.logger.warning("close_positions_no_valid_items", total=len(intents))
            return batch

        async def worker(intent: OrderIntent) -> OrderResult:
            return await self._close_one(client, intent, intent.quantity)

        await self._run_by_symbol(valid, worker, results)
        batch = BatchResult.from_results([r for r in results if r is not None])

        self.logger.info(
            "close_positions_completed",
            api_key=credential.masked_key,
            mode=close_mode.value,
            **batch.summary.to_dict(),
        )
        return batch

    async def _close_one(
        self,
        client: ExchangeAPIClient,
        intent: OrderIntent,
        quantity: Decimal,
    ) -> OrderResult:
        try:
            rules = client.market_rules(intent.symbol)
        except ExchangeAPIError as e:
            return _failed(intent, str(e), e.code)

        rounded = rules.floor_quantity(quantity)
        if rounded <= 0:
            return _failed(intent, f"Close quantity {quantity} rounds to zero")
        return await self._submit(client, intent, rounded)

    # =========================================================================
    # Grid runner entry
    # =========================================================================

    async def execute(
        self,
        credential: Credential,
        intents: list[OrderIntent],
        reference_prices: dict[str, Decimal] | None = None,
    ) -> BatchResult:
        """
        Execute grid intents as given: opens by quantity, closes by quantity
        without a position pre-check so exchange rejections such as a
        reduce-only refusal reach the caller with their code.
        """
        client = await self.client_for(credential)
        results: list[OrderResult | None] = [None] * len(intents)

        async def worker(intent: OrderIntent) -> OrderResult:
            if intent.action == IntentAction.OPEN:
                return await self._open_one(client, intent, reference_prices)
            error = self._validate_side(intent)
            if error:
                return _failed(intent, error)
            if intent.quantity is None or intent.quantity <= 0:
                return _failed(intent, "Close quantity must be positive")
            return await self._close_one(client, intent, intent.quantity)

        await self._run_by_symbol(list(enumerate(intents)), worker, results)
        return BatchResult.from_results([r for r in results if r is not None])

    # =========================================================================
    # Leverage
    # =========================================================================

    async def set_leverage(
        self,
        credential: Credential,
        settings: list[LeverageSetting],
        delay: float | None = None,
    ) -> LeverageBatchResult:
        """
        Apply leverage settings.

        Every setting is validated before any exchange call. Up to five
        settings run now and return per-item results; larger batches are
        accepted and run in a background task whose failures are only logged.
        """
        if not settings:
            raise ValidationError("At least one leverage setting is required")
        for setting in settings:
            validate_leverage_setting(setting)

        delay = self.leverage_delay if delay is None else delay
        client = await self.client_for(credential)

        if len(settings) <= SYNC_LEVERAGE_BATCH_LIMIT:
            results = await self._apply_leverage_batch(client, settings, delay)
            success = sum(1 for r in results if r.success)
            summary = {
                "total": len(results),
                "success": success,
                "failed": len(results) - success,
                "success_rate": f"{success / len(results) * 100:.2f}%",
            }
            self.logger.info("leverage_batch_completed", api_key=credential.masked_key, **summary)
            return LeverageBatchResult(accepted=False, results=results, summary=summary)

        task = asyncio.create_task(
            self._apply_leverage_background(client, credential, settings, delay),
            name=f"leverage-batch-{credential.masked_key}",
        )
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

        self.logger.info(
            "leverage_batch_accepted", api_key=credential.masked_key, total=len(settings)
        )
        return LeverageBatchResult(accepted=True, results=[], summary={"total": len(settings)})

    async def _apply_leverage_batch(
        self,
        client: ExchangeAPIClient,
        settings: list[LeverageSetting],
        delay: float,
    ) -> list[LeverageResult]:
        results = []
        for index, setting in enumerate(settings):
            if index > 0 and delay > 0:
                await asyncio.sleep(delay)
            results.append(await self._apply_leverage(client, setting.symbol, setting.leverage))
        return results

    async def _apply_leverage_background(
        self,
        client: ExchangeAPIClient,
        credential: Credential,
        settings: list[LeverageSetting],
        delay: float,
    ) -> None:
        try:
            results = await self._apply_leverage_batch(client, settings, delay)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error(
                "leverage_background_batch_failed",
                api_key=credential.masked_key,
                error=str(e),
            )
            return

        for result in results:
            if not result.success:
                self.logger.warning(
                    "leverage_background_item_failed",
                    api_key=credential.masked_key,
                    symbol=result.symbol,
                    leverage=result.leverage,
                    error=result.error,
                )
        self.logger.info(
            "leverage_background_batch_completed",
            api_key=credential.masked_key,
            total=len(results),
            success=sum(1 for r in results if r.success),
        )

    async def _apply_leverage(
        self, client: ExchangeAPIClient, symbol: str, leverage: int
    ) -> LeverageResult:
        applied = leverage
        adjusted = False
        try:
            maximum = await client.max_leverage(symbol)
            if maximum and leverage > maximum:
                applied = maximum
                adjusted = True

            try:
                await client.set_leverage(applied, symbol)
            except ExchangeRejectionError as e:
                if e.code != NEW_ACCOUNT_LEVERAGE_CAP_CODE or applied <= NEW_ACCOUNT_LEVERAGE:
                    raise
                self.logger.warning(
                    "leverage_capped_for_new_account", symbol=symbol, requested=applied
                )
                applied = NEW_ACCOUNT_LEVERAGE
                adjusted = True
                await client.set_leverage(applied, symbol)

        except CredentialError:
            raise
        except ExchangeAPIError as e:
            return LeverageResult(
                symbol=symbol,
                leverage=leverage,
                success=False,
                error=str(e),
                error_code=e.code,
            )

        return LeverageResult(
            symbol=symbol,
            leverage=leverage,
            success=True,
            applied_leverage=applied,
            adjusted=adjusted,
        )

    # =========================================================================
    # Hedge symmetry
    # =========================================================================

    async def inspect_hedge_symmetry(self, credential: Credential) -> list[ImbalancedHedge]:
        """Symbols where exactly one of the LONG/SHORT legs holds a position."""
        client = await self.client_for(credential)
        positions = await client.fetch_positions()

        legs: dict[str, dict[str, Decimal]] = {}
        for position in positions:
            side = position["position_side"]
            if side not in _HEDGE_SIDES:
                continue
            amounts = legs.setdefault(
                position["symbol"],
                {PositionSide.LONG.value: Decimal("0"), PositionSide.SHORT.value: Decimal("0")},
            )
            amounts[side] += abs(position["position_amt"])

        imbalanced = []
        for symbol in sorted(legs):
            long_amount = legs[symbol][PositionSide.LONG.value]
            short_amount = legs[symbol][PositionSide.SHORT.value]
            if (long_amount > 0) != (short_amount > 0):
                imbalanced.append(
                    ImbalancedHedge(
                        symbol=symbol, long_amount=long_amount, short_amount=short_amount
                    )
                )

        if imbalanced:
            self.logger.warning(
                "hedge_imbalance_detected",
                api_key=credential.masked_key,
                symbols=[h.symbol for h in imbalanced],
            )
        return imbalanced

    async def shutdown(self) -> None:
        """Cancel background leverage batches."""
        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background_tasks.clear()
