"""
Grid Runner - the per-strategy timed execution loop.

Each running strategy owns one GridRunner task. Every polling interval it:
1. reads the latest price snapshot (skips the tick if unavailable)
2. evaluates the lifecycle rules (limits, SL/TP, pause conditions)
3. asks the GridEngine for intents and hands them to the executor
4. confirms fills, updates leg state and persists history + runtime state
"""

import asyncio
from copy import deepcopy
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from hedgegrid.api.client_pool import Credential
from hedgegrid.api.exceptions import CredentialError, ExchangeAPIError
from hedgegrid.api.exchange_client import ExchangeAPIClient
from hedgegrid.core.exceptions import GridEngineError, PersistenceError
from hedgegrid.core.grid_engine import GridEngine
from hedgegrid.core.hedge_executor import HedgeOrderExecutor
from hedgegrid.core.models import (
    GridConfig,
    IntentAction,
    LegState,
    OrderIntent,
    OrderResult,
    PauseReason,
    PositionSide,
    StrategyStatus,
    SubscriptionHandle,
)
from hedgegrid.core.price_feed import PriceFeedSubscriber
from hedgegrid.core.state_machine import StrategyStateMachine
from hedgegrid.database.manager import DatabaseManager
from hedgegrid.database.models import GridTradeHistory
from hedgegrid.utils.logger import LoggerMixin, log_context

REDUCE_ONLY_REJECTED_CODE = -2022
FILL_INFERENCE_TOLERANCE = Decimal("0.001")  # fraction of the order quantity

EXECUTION_CONFIRMED = "CONFIRMED"
EXECUTION_INFERRED = "INFERRED"


def _same_symbol(exchange_symbol: str | None, trading_pair: str) -> bool:
    """Compare BTCUSDT against BTCUSDT or BTC/USDT:USDT."""
    if not exchange_symbol:
        return False
    normalized = exchange_symbol.split(":")[0].replace("/", "").upper()
    return normalized == trading_pair.replace("/", "").upper()


def _str_or_none(value: Any) -> str | None:
    return str(value) if value is not None else None


class GridRunner(LoggerMixin):
    """
    Timed loop for one strategy.

    Ticks are single-flight: a tick that comes due while the previous one is
    still running is skipped and counted. pause/resume/stop take effect at
    the next tick boundary; an in-flight tick always completes.
    """

    def __init__(
        self,
        config: GridConfig,
        credential: Credential,
        price_feed: PriceFeedSubscriber,
        executor: HedgeOrderExecutor,
        db: DatabaseManager,
        status: StrategyStatus = StrategyStatus.RUNNING,
        pause_reason: PauseReason | None = None,
        fill_confirm_attempts: int = 3,
        fill_confirm_delay: float = 2.0,
    ) -> None:
        self.config = config
        self.credential = credential
        self.engine = GridEngine(config)
        self.state = StrategyStateMachine(
            status=status, pause_reason=pause_reason, strategy_id=config.strategy_id
        )
        self.legs: dict[PositionSide, LegState] = {
            PositionSide.LONG: LegState(side=PositionSide.LONG),
            PositionSide.SHORT: LegState(side=PositionSide.SHORT),
        }

        self._feed = price_feed
        self._executor = executor
        self._db = db
        self.fill_confirm_attempts = fill_confirm_attempts
        self.fill_confirm_delay = fill_confirm_delay

        # Counters mirrored to the strategy row
        self.total_trades = 0
        self.successful_trades = 0
        self.failed_trades = 0
        self.total_pairing_times = 0
        self.total_profit_loss = Decimal("0")
        self.last_trade_time: datetime | None = None

        # Loop bookkeeping
        self.ticks = 0
        self.skipped_ticks = 0
        self.last_price: Decimal | None = None
        self._in_flight = False
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._tick_task: asyncio.Task | None = None
        self._subscription: SubscriptionHandle | None = None

    @classmethod
    def from_strategy(
        cls,
        strategy: Any,
        credential: Credential,
        price_feed: PriceFeedSubscriber,
        executor: HedgeOrderExecutor,
        db: DatabaseManager,
        **kwargs: Any,
    ) -> "GridRunner":
        """Build a runner from a GridStrategy row, restoring persisted targets and counters."""
        runner = cls(
            GridConfig.from_strategy(strategy),
            credential,
            price_feed,
            executor,
            db,
            status=StrategyStatus(strategy.status),
            pause_reason=PauseReason(strategy.pause_reason) if strategy.pause_reason else None,
            **kwargs,
        )
        long_leg = runner.legs[PositionSide.LONG]
        short_leg = runner.legs[PositionSide.SHORT]
        long_leg.rise_target = getattr(strategy, "next_expected_rise_price_long", None)
        long_leg.fall_target = getattr(strategy, "next_expected_fall_price_long", None)
        short_leg.rise_target = getattr(strategy, "next_expected_rise_price_short", None)
        short_leg.fall_target = getattr(strategy, "next_expected_fall_price_short", None)

        runner.total_trades = getattr(strategy, "total_trades", 0) or 0
        runner.successful_trades = getattr(strategy, "successful_trades", 0) or 0
        runner.failed_trades = getattr(strategy, "failed_trades", 0) or 0
        runner.total_pairing_times = getattr(strategy, "total_pairing_times", 0) or 0
        runner.total_profit_loss = getattr(strategy, "total_profit_loss", None) or Decimal("0")
        runner.last_trade_time = getattr(strategy, "last_trade_time", None)
        return runner

    @property
    def strategy_id(self) -> int | None:
        return self.config.strategy_id

    @property
    def symbol(self) -> str:
        return self.config.trading_pair

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Subscribe to the price feed, sync with the exchange and start ticking."""
        if self.is_running:
            self.logger.warning("grid_runner_already_running", strategy_id=self.strategy_id)
            return

        if self.state.status == StrategyStatus.CREATED:
            self.state.start()

        self._stop_event.clear()
        self._subscription = await self._feed.subscribe(self.symbol)

        with log_context(strategy_id=self.strategy_id, symbol=self.symbol):
            try:
                await self._startup()
            except BaseException:
                await self._release_feed()
                raise

        self._task = asyncio.create_task(self._run(), name=f"grid-runner-{self.strategy_id}")
        self.logger.info(
            "grid_runner_started",
            strategy_id=self.strategy_id,
            symbol=self.symbol,
            status=self.state.status.value,
            polling_interval_ms=self.config.polling_interval,
        )

    async def stop(self) -> None:
        """Stop at the next tick boundary and wait for the in-flight tick."""
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        else:
            await self._release_feed()
        self.logger.info("grid_runner_stopped", strategy_id=self.strategy_id)

    def pause(self) -> bool:
        """Manually pause; rules stay suspended until resume."""
        return self.state.pause(PauseReason.MANUAL)

    def resume(self) -> bool:
        return self.state.resume()

    def update_config(self, config: GridConfig) -> None:
        """Swap the configuration; the next tick sees the new values."""
        self.config = config
        self.engine.update_config(config)
        self.logger.info("grid_runner_config_updated", strategy_id=self.strategy_id)

    async def _release_feed(self) -> None:
        if self._subscription is not None:
            await self._feed.unsubscribe(self._subscription)
            self._subscription = None

    # =========================================================================
    # Startup sync
    # =========================================================================

    async def _startup(self) -> None:
        """Sync legs with live positions, set leverage/margin, top up legs below minimum."""
        client = await self._executor.client_for(self.credential)
        await self._sync_positions(client)

        try:
            await client.set_leverage(self.config.leverage, self.symbol)
        except ExchangeAPIError as e:
            self.logger.warning("startup_set_leverage_failed", error=str(e), code=e.code)
        try:
            await client.set_margin_mode(self.config.margin_type.value, self.symbol)
        except ExchangeAPIError as e:
            self.logger.warning("startup_set_margin_mode_failed", error=str(e), code=e.code)

        if self.state.status != StrategyStatus.RUNNING:
            return

        minimum = self.config.min_open_position_quantity
        if not minimum:
            return

        top_ups = []
        for side in self.config.managed_sides:
            leg = self.legs[side]
            if leg.quantity < minimum:
                quantity = minimum - leg.quantity + self.engine.open_quantity(leg)
                top_ups.append(
                    OrderIntent(
                        symbol=self.symbol,
                        position_side=side,
                        action=IntentAction.OPEN,
                        quantity=quantity,
                        strategy_id=self.strategy_id,
                        reason="startup_top_up",
                    )
                )
        if top_ups:
            self.logger.info(
                "startup_top_up",
                legs=[intent.to_dict() for intent in top_ups],
            )
            await self._execute(top_ups, price=None)

    async def _sync_positions(self, client: ExchangeAPIClient) -> None:
        try:
            positions = await client.fetch_positions([self.symbol])
        except CredentialError:
            raise
        except ExchangeAPIError as e:
            self.logger.warning("startup_position_sync_failed", error=str(e))
            return

        for position in positions:
            if not _same_symbol(position["symbol"], self.symbol):
                continue
            leg = self.legs.get(PositionSide(position["position_side"]))
            if leg is None:
                continue
            leg.quantity = position["position_amt"]
            entry = position.get("entry_price")
            leg.entry_price = entry if entry and leg.quantity > 0 else None

        self.logger.info(
            "startup_positions_synced",
            legs={side.value: str(leg.quantity) for side, leg in self.legs.items()},
        )

    # =========================================================================
    # Tick loop
    # =========================================================================

    async def _run(self) -> None:
        try:
            while not self._stop_event.is_set():
                if self._in_flight:
                    self.skipped_ticks += 1
                    self.logger.warning(
                        "grid_tick_skipped",
                        strategy_id=self.strategy_id,
                        skipped_ticks=self.skipped_ticks,
                    )
                else:
                    self._tick_task = asyncio.create_task(self.tick())

                try:
                    await asyncio.wait_for(
                        self._stop_event.wait(),
                        timeout=self.config.polling_interval / 1000,
                    )
                except asyncio.TimeoutError:
                    pass
        finally:
            if self._tick_task is not None and not self._tick_task.done():
                await asyncio.gather(self._tick_task, return_exceptions=True)
            await self._release_feed()

    async def tick(self) -> bool:
        """
        Run one tick unless another is in flight.

        Returns:
            False when the tick was skipped
        """
        if self._in_flight:
            self.skipped_ticks += 1
            return False

        self._in_flight = True
        try:
            with log_context(strategy_id=self.strategy_id, symbol=self.symbol):
                await self._tick()
        except Exception as e:
            self.logger.error("grid_tick_failed", error=str(e), exc_info=True)
            await self._record_error(str(e))
        finally:
            self._in_flight = False
        return True

    async def _tick(self) -> None:
        config = self.config
        snapshot = self._feed.current_price(config.trading_pair)
        if not snapshot:
            self.logger.warning("grid_tick_price_unavailable")
            return

        price = snapshot.price
        self.last_price = price
        self.ticks += 1

        evaluation = self.state.evaluate(price, config, self.legs)
        if evaluation.changed:
            await self._persist_status()

        if evaluation.close_all:
            self.logger.warning(
                "grid_closing_all_legs",
                reason=evaluation.reason,
                price=str(price),
                legs=len(evaluation.close_all),
            )
            await self._execute(evaluation.close_all, price)

        if self.state.is_terminal:
            self._stop_event.set()
            return
        if not evaluation.can_trade:
            return

        for side in config.managed_sides:
            self.logger.info(
                "grid_profit_estimate",
                side=side.value,
                price=str(price),
                estimate=str(self.engine.grid_profit_estimate(price, side)),
            )

        intents = self.engine.decide_all(price, self.legs)
        if intents:
            await self._execute(intents, price)

    # =========================================================================
    # Execution and fills
    # =========================================================================

    async def _execute(self, intents: list[OrderIntent], price: Decimal | None) -> None:
        reference = {self.symbol: price} if price else None
        batch = await self._executor.execute(self.credential, intents, reference)

        for intent, result in zip(intents, batch.results):
            leg = self.legs[PositionSide(intent.position_side)]
            if result.success:
                await self._handle_fill(intent, result, leg)
            else:
                await self._handle_failure(intent, result, leg)

    async def _handle_failure(
        self, intent: OrderIntent, result: OrderResult, leg: LegState
    ) -> None:
        self.failed_trades += 1
        self.total_trades += 1
        self.logger.warning(
            "grid_order_failed",
            side=leg.side.value,
            action=intent.action.value,
            error=result.error,
            code=result.error_code,
        )

        if intent.action == IntentAction.CLOSE and result.error_code == REDUCE_ONLY_REJECTED_CODE:
            # The exchange holds no position to reduce
            leg.clear()
            self.logger.warning("grid_leg_cleared_after_reduce_only_rejection", side=leg.side.value)

        if self.strategy_id is not None:
            try:
                await self._db.save_runtime_state(self.strategy_id, self.runtime_state())
            except PersistenceError as e:
                self.logger.error("grid_state_persist_failed", error=str(e))
        await self._record_error(result.error or "order failed")

    async def _handle_fill(self, intent: OrderIntent, result: OrderResult, leg: LegState) -> None:
        fill = await self._confirm_fill(result, leg)
        if fill is None:
            self.failed_trades += 1
            self.total_trades += 1
            self.logger.error(
                "grid_fill_unconfirmed",
                side=leg.side.value,
                action=intent.action.value,
                order_id=result.order_id,
            )
            await self._record_error(f"Fill of order {result.order_id} could not be confirmed")
            return

        fill_price, fill_quantity, execution_type = fill
        leg_snapshot = deepcopy(leg)
        counters = self._counters()

        outcome = self.engine.apply_fill(
            leg, intent.action, fill_price, fill_quantity, result.order_id
        )
        now = datetime.now(timezone.utc)
        self.total_trades += 1
        self.successful_trades += 1
        self.last_trade_time = now
        if intent.action == IntentAction.CLOSE:
            self.total_pairing_times += 1
            if outcome.realized_pnl is not None:
                self.total_profit_loss += outcome.realized_pnl

        history = GridTradeHistory(
            grid_id=self.strategy_id,
            trading_pair=self.symbol,
            api_key=self.config.api_key,
            position_side=leg.side.value,
            trade_direction=intent.action.value,
            side=intent.order_side.value,
            position_quantity=fill_quantity,
            grid_price_difference=self.config.grid_price_difference,
            grid_trade_quantity=self.config.grid_trade_quantity,
            leverage=self.config.leverage,
            execution_type=execution_type,
            remark=intent.reason or None,
        )
        if intent.action == IntentAction.OPEN:
            history.entry_order_id = result.order_id
            history.entry_price = fill_price
            history.entry_time = now
        else:
            history.entry_order_id = outcome.matched_order_id
            history.entry_price = outcome.matched_entry_price
            history.exit_order_id = result.order_id
            history.exit_price = fill_price
            history.exit_time = now
            history.profit_loss = outcome.realized_pnl

        try:
            await self._db.record_fill(history, self.runtime_state())
        except PersistenceError as e:
            self.legs[leg.side] = leg_snapshot
            self._restore_counters(counters)
            self.logger.error("grid_fill_persist_failed", order_id=result.order_id, error=str(e))
            return

        self.logger.info(
            "grid_fill_applied",
            side=leg.side.value,
            action=intent.action.value,
            price=str(fill_price),
            quantity=str(fill_quantity),
            execution_type=execution_type,
            realized_pnl=_str_or_none(outcome.realized_pnl),
            leg_quantity=str(leg.quantity),
            rise_target=_str_or_none(leg.rise_target),
            fall_target=_str_or_none(leg.fall_target),
        )

    async def _confirm_fill(
        self, result: OrderResult, leg: LegState
    ) -> tuple[Decimal, Decimal, str] | None:
        """
        Return (price, quantity, execution_type) for a placed order.

        The order is queried up to fill_confirm_attempts times; after that the
        fill is inferred from the position change.
        """
        if result.status == "closed" and result.filled_quantity and result.average_price:
            return result.average_price, result.filled_quantity, EXECUTION_CONFIRMED

        client = await self._executor.client_for(self.credential)
        if result.order_id:
            for attempt in range(1, self.fill_confirm_attempts + 1):
                try:
                    order = await client.fetch_order(result.order_id, self.symbol)
                except CredentialError:
                    raise
                except ExchangeAPIError as e:
                    self.logger.debug(
                        "grid_fill_query_failed",
                        order_id=result.order_id,
                        attempt=attempt,
                        error=str(e),
                    )
                    order = None

                if order:
                    filled = Decimal(str(order.get("filled") or 0))
                    average = order.get("average") or order.get("price")
                    if order.get("status") == "closed" and filled > 0 and average:
                        return Decimal(str(average)), filled, EXECUTION_CONFIRMED

                if attempt < self.fill_confirm_attempts:
                    await asyncio.sleep(self.fill_confirm_delay)

        return await self._infer_fill(client, result, leg)

    async def _infer_fill(
        self, client: ExchangeAPIClient, result: OrderResult, leg: LegState
    ) -> tuple[Decimal, Decimal, str] | None:
        quantity = result.quantity
        price = result.average_price or self.last_price
        if not quantity or not price:
            return None

        try:
            positions = await client.fetch_positions([self.symbol])
        except CredentialError:
            raise
        except ExchangeAPIError as e:
            self.logger.warning("grid_fill_inference_failed", error=str(e))
            return None

        actual = Decimal("0")
        for position in positions:
            same_leg = position["position_side"] == leg.side.value
            if same_leg and _same_symbol(position["symbol"], self.symbol):
                actual = position["position_amt"]

        if result.action == IntentAction.OPEN:
            expected = leg.quantity + quantity
        else:
            expected = max(Decimal("0"), leg.quantity - quantity)

        if abs(actual - expected) <= quantity * FILL_INFERENCE_TOLERANCE:
            self.logger.info(
                "grid_fill_inferred",
                order_id=result.order_id,
                side=leg.side.value,
                expected=str(expected),
                actual=str(actual),
            )
            return price, quantity, EXECUTION_INFERRED
        return None

    # =========================================================================
    # Persistence helpers
    # =========================================================================

    def runtime_state(self) -> dict[str, Any]:
        """Runtime columns of the strategy row."""
        long_leg = self.legs[PositionSide.LONG]
        short_leg = self.legs[PositionSide.SHORT]
        return {
            "next_expected_rise_price_long": long_leg.rise_target,
            "next_expected_fall_price_long": long_leg.fall_target,
            "next_expected_rise_price_short": short_leg.rise_target,
            "next_expected_fall_price_short": short_leg.fall_target,
            "total_open_position_quantity": sum(
                (self.legs[side].quantity for side in self.config.managed_sides), Decimal("0")
            ),
            **self._counters(),
        }

    def _counters(self) -> dict[str, Any]:
        return {
            "total_pairing_times": self.total_pairing_times,
            "total_profit_loss": self.total_profit_loss,
            "total_trades": self.total_trades,
            "successful_trades": self.successful_trades,
            "failed_trades": self.failed_trades,
            "last_trade_time": self.last_trade_time,
        }

    def _restore_counters(self, counters: dict[str, Any]) -> None:
        for key, value in counters.items():
            setattr(self, key, value)

    async def _persist_status(self) -> None:
        values = {
            "status": self.state.status.value,
            "paused": self.state.manually_paused,
            "pause_reason": self.state.pause_reason.value if self.state.pause_reason else None,
            "stop_reason": self.state.stop_reason,
        }
        try:
            await self._db.update_strategy(self.strategy_id, values)
        except GridEngineError as e:
            self.logger.error("grid_status_persist_failed", error=str(e))

    async def _record_error(self, message: str) -> None:
        if self.strategy_id is None:
            return
        try:
            await self._db.record_error(self.strategy_id, message)
        except PersistenceError as e:
            self.logger.error("grid_error_persist_failed", error=str(e))

    # =========================================================================
    # Status
    # =========================================================================

    def get_status(self) -> dict[str, Any]:
        return {
            "strategy_id": self.strategy_id,
            "symbol": self.symbol,
            "position_side": self.config.position_side.value,
            "status": self.state.status.value,
            "pause_reason": self.state.pause_reason.value if self.state.pause_reason else None,
            "stop_reason": self.state.stop_reason,
            "running": self.is_running,
            "in_flight": self._in_flight,
            "ticks": self.ticks,
            "skipped_ticks": self.skipped_ticks,
            "last_price": _str_or_none(self.last_price),
            "legs": {
                side.value: self.legs[side].to_dict() for side in self.config.managed_sides
            },
            "total_trades": self.total_trades,
            "successful_trades": self.successful_trades,
            "failed_trades": self.failed_trades,
            "total_pairing_times": self.total_pairing_times,
            "total_profit_loss": str(self.total_profit_loss),
        }
