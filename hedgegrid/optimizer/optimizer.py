"""
Grid Parameter Optimizer.

Derives grid spacing, per-order trade value and grid count from a candle
window and a capital budget. The search walks ATR multiples for the spacing
and trade values in steps of 2 USDT, scoring each point by the selected
optimize target.
"""

import math
from collections.abc import Callable
from decimal import ROUND_DOWN, Decimal

import pandas as pd

from hedgegrid.api.exceptions import CredentialError, ExchangeAPIError
from hedgegrid.api.exchange_client import ExchangeAPIClient
from hedgegrid.core.exceptions import (
    DataUnavailableError,
    InvalidBudgetError,
    NoFeasibleGridError,
    ValidationError,
)
from hedgegrid.optimizer.indicators import (
    calculate_atr,
    calculate_volatility,
    candles_to_frame,
    estimate_trade_frequency,
    support_resistance,
)
from hedgegrid.optimizer.models import (
    FEE_RATE,
    INTERVAL_HOURS,
    GridCandidate,
    MarketProfile,
    OptimizationResult,
    OptimizeTarget,
    PrecisionRules,
    RiskAssessment,
    RiskLevel,
    VolatilityLevel,
)
from hedgegrid.utils.logger import get_logger

logger = get_logger(__name__)

CANDLE_LIMIT = 100
MIN_CANDLES = 11
MAX_TURNOVER_RATIO = 5.0
TRADE_VALUE_STEP = 2.0

# ATR multiples, generated from integer steps to avoid float drift
PROFIT_ATR_MULTIPLES = [round(0.3 + 0.1 * i, 2) for i in range(48)]  # 0.3 .. 5.0
COST_ATR_MULTIPLES = [round(0.1 + 0.05 * i, 2) for i in range(39)]  # 0.1 .. 2.0
BOUNDARY_ATR_MULTIPLES = [round(10 - 0.2 * i, 2) for i in range(48)]  # 10 .. 0.6


def floor_to_step(value: float, step: float, minimum: float) -> float:
    """Floor to a step size, never below the minimum."""
    if step <= 0 or value <= 0 or math.isnan(value):
        return value
    d_step = Decimal(str(step))
    steps = (Decimal(str(value)) / d_step).to_integral_value(rounding=ROUND_DOWN)
    adjusted = float(steps * d_step)
    return max(adjusted, minimum)


def assess_risk(
    volatility_level: VolatilityLevel,
    leverage: int,
    spacing_percent: float,
    volatility_percent: float,
) -> RiskAssessment:
    """Weighted risk score: volatility 30%, leverage 40%, spacing/volatility ratio 30%."""
    volatility_score = {
        VolatilityLevel.HIGH: 0.8,
        VolatilityLevel.MID: 0.5,
        VolatilityLevel.LOW: 0.2,
    }[volatility_level]

    if leverage <= 5:
        leverage_score = 0.2
    elif leverage <= 20:
        leverage_score = 0.5
    else:
        leverage_score = 0.8

    if spacing_percent > 0 and volatility_percent > 0:
        ratio = spacing_percent / volatility_percent
        # Tight spacing relative to volatility gets trapped more easily
        ratio_score = 0.8 if ratio < 0.1 else 0.5 if ratio < 0.3 else 0.2
    else:
        ratio_score = 0.5

    score = round(volatility_score * 0.3 + leverage_score * 0.4 + ratio_score * 0.3, 2)

    if score < 0.35:
        level = RiskLevel.CONSERVATIVE
    elif score < 0.65:
        level = RiskLevel.BALANCED
    else:
        level = RiskLevel.AGGRESSIVE
    return RiskAssessment(level=level, score=score)


class GridParameterOptimizer:
    """
    Computes grid parameters for a symbol.

    Usage:
        optimizer = GridParameterOptimizer()
        result = await optimizer.optimize(client, "BTCUSDT", "4h", 1000, "profit")

    `analyze` is the pure part and works on an already-fetched candle frame.
    """

    def __init__(self, leverage: int = 20, fee_rate: float = FEE_RATE) -> None:
        self.leverage = leverage
        self.fee_rate = fee_rate

    # =========================================================================
    # Validation
    # =========================================================================

    @staticmethod
    def validate_request(
        interval: str,
        total_capital: float,
        optimize_target: str,
        min_trade_value: float,
        max_trade_value: float,
    ) -> OptimizeTarget:
        if interval not in INTERVAL_HOURS:
            raise ValidationError(
                f"Unsupported interval {interval!r}, expected one of {list(INTERVAL_HOURS)}"
            )
        try:
            target = OptimizeTarget(optimize_target)
        except ValueError as e:
            raise ValidationError(f"Unsupported optimize target {optimize_target!r}") from e

        if total_capital is None or total_capital <= 0:
            raise InvalidBudgetError("total_capital must be greater than 0")
        if min_trade_value <= 0 or max_trade_value <= 0:
            raise InvalidBudgetError("trade values must be greater than 0")
        if min_trade_value > max_trade_value:
            raise InvalidBudgetError("min_trade_value must not exceed max_trade_value")
        if min_trade_value > total_capital:
            raise InvalidBudgetError("min_trade_value exceeds total_capital")
        return target

    # =========================================================================
    # Entry point with exchange data
    # =========================================================================

    async def optimize(
        self,
        client: ExchangeAPIClient,
        symbol: str,
        interval: str,
        total_capital: float,
        optimize_target: str = "profit",
        min_trade_value: float = 20,
        max_trade_value: float = 100,
        enable_boundary_defense: bool = False,
    ) -> OptimizationResult:
        """
        Fetch candles and market rules, then run the search.

        Raises:
            ValidationError / InvalidBudgetError: bad request
            DataUnavailableError: unknown symbol or missing candle history
            NoFeasibleGridError: nothing satisfies the constraints
            CredentialError: the credential was rejected
        """
        self.validate_request(
            interval, total_capital, optimize_target, min_trade_value, max_trade_value
        )

        try:
            rules = PrecisionRules.from_market_rules(client.market_rules(symbol))
        except CredentialError:
            raise
        except ExchangeAPIError as e:
            raise DataUnavailableError(f"Market rules unavailable for {symbol}: {e}") from e

        try:
            ohlcv = await client.fetch_ohlcv(symbol, interval, limit=CANDLE_LIMIT)
        except CredentialError:
            raise
        except ExchangeAPIError as e:
            raise DataUnavailableError(f"Candle history unavailable for {symbol}: {e}") from e

        if not ohlcv or len(ohlcv) < MIN_CANDLES:
            raise DataUnavailableError(
                f"Need at least {MIN_CANDLES} candles for {symbol}, got {len(ohlcv or [])}"
            )

        candles = candles_to_frame(ohlcv)
        current_price = float(candles["close"].iloc[-1])
        try:
            ticker = await client.fetch_ticker(symbol)
            if ticker.get("last"):
                current_price = float(ticker["last"])
        except ExchangeAPIError as e:
            logger.warning("optimizer_ticker_unavailable", symbol=symbol, error=str(e))

        return self.analyze(
            symbol=symbol,
            interval=interval,
            candles=candles,
            rules=rules,
            total_capital=total_capital,
            optimize_target=optimize_target,
            min_trade_value=min_trade_value,
            max_trade_value=max_trade_value,
            enable_boundary_defense=enable_boundary_defense,
            current_price=current_price,
        )

    # =========================================================================
    # Pure computation
    # =========================================================================

    def analyze(
        self,
        symbol: str,
        interval: str,
        candles: pd.DataFrame,
        rules: PrecisionRules,
        total_capital: float,
        optimize_target: str = "profit",
        min_trade_value: float = 20,
        max_trade_value: float = 100,
        enable_boundary_defense: bool = False,
        current_price: float | None = None,
    ) -> OptimizationResult:
        target = self.validate_request(
            interval, total_capital, optimize_target, min_trade_value, max_trade_value
        )
        if len(candles) < MIN_CANDLES:
            raise DataUnavailableError(f"Need at least {MIN_CANDLES} candles, got {len(candles)}")

        atr = calculate_atr(candles)
        volatility = calculate_volatility(candles)
        support, resistance = support_resistance(candles, volatility)
        avg_price = float(candles["close"].mean())

        market = MarketProfile(
            current_price=current_price if current_price else float(candles["close"].iloc[-1]),
            support=support,
            resistance=resistance,
            avg_price=avg_price,
            volatility=volatility,
            atr=atr,
            candle_count=len(candles),
        )

        # The exchange minimum notional lifts the low end; nothing may exceed the budget
        low_value = max(min_trade_value, rules.min_notional)
        high_value = min(max(max_trade_value, low_value), total_capital)
        low_value = min(low_value, total_capital)
        candles_per_day = 24 / INTERVAL_HOURS[interval]

        searches: dict[OptimizeTarget, Callable[..., list[GridCandidate]]] = {
            OptimizeTarget.PROFIT: self._search_profit,
            OptimizeTarget.COST: self._search_cost,
            OptimizeTarget.BOUNDARY: self._search_boundary,
        }
        candidates = searches[target](
            candles, market, rules, total_capital, low_value, high_value, candles_per_day
        )

        if not candidates:
            logger.warning(
                "optimizer_no_feasible_grid",
                symbol=symbol,
                target=target.value,
                support=round(support, 6),
                resistance=round(resistance, 6),
                volatility=round(volatility, 6),
            )
            raise NoFeasibleGridError(
                f"No grid configuration fits {symbol} between {support:.6f} and "
                f"{resistance:.6f} (volatility {volatility * 100:.2f}%) "
                f"with capital {total_capital}"
            )

        ranked = self._rank(target, candidates)
        best = ranked[0]
        top_n = 5 if target == OptimizeTarget.PROFIT else 3

        by_range = math.floor(market.price_range / best.grid_spacing)
        by_capital = math.floor(total_capital / best.trade_value)
        grid_number = max(1, min(by_range, by_capital))

        boundary_defense = None
        if enable_boundary_defense:
            boundary = self._search_boundary(
                candles, market, rules, total_capital, low_value, high_value, candles_per_day
            )
            if boundary:
                boundary_defense = self._rank(OptimizeTarget.BOUNDARY, boundary)[0]

        risk = assess_risk(
            market.volatility_level,
            self.leverage,
            best.spacing_percent(avg_price),
            volatility * 100,
        )

        result = OptimizationResult(
            symbol=symbol,
            interval=interval,
            optimize_target=target,
            total_capital=total_capital,
            grid_spacing=best.grid_spacing,
            grid_number=grid_number,
            trade_value=best.trade_value,
            upper_bound=resistance,
            lower_bound=support,
            recommended=best,
            market=market,
            risk=risk,
            top_candidates=ranked[:top_n],
            candidate_count=len(candidates),
            boundary_defense=boundary_defense,
            fee_rate=self.fee_rate,
        )

        logger.info(
            "optimizer_completed",
            symbol=symbol,
            target=target.value,
            grid_spacing=result.grid_spacing,
            grid_number=result.grid_number,
            trade_value=result.trade_value,
            candidates=len(candidates),
        )
        return result

    # =========================================================================
    # Search helpers
    # =========================================================================

    @staticmethod
    def _trade_values(low: float, high: float) -> list[float]:
        values = []
        value = low
        while value <= high + 1e-9:
            values.append(round(value, 8))
            value += TRADE_VALUE_STEP
        return values

    def _evaluate(
        self,
        grid_spacing: float,
        trade_value: float,
        daily_frequency: float,
        avg_price: float,
        rules: PrecisionRules,
        total_capital: float,
    ) -> GridCandidate | None:
        trade_quantity = floor_to_step(trade_value / avg_price, rules.step_size, rules.min_qty)
        if trade_quantity > rules.max_qty:
            return None

        gross_profit = grid_spacing * trade_quantity
        fee = trade_value * self.fee_rate * 2
        net_profit = gross_profit - fee
        daily_profit = net_profit * daily_frequency

        return GridCandidate(
            grid_spacing=grid_spacing,
            trade_value=trade_value,
            trade_quantity=trade_quantity,
            daily_frequency=daily_frequency,
            net_profit=net_profit,
            daily_profit=daily_profit,
            daily_fee=fee * daily_frequency,
            turnover_ratio=trade_value * daily_frequency / total_capital,
            daily_roi=daily_profit / total_capital,
        )

    def _spacing(self, atr: float, multiple: float, rules: PrecisionRules) -> float:
        return floor_to_step(atr * multiple, rules.tick_size, rules.min_price)

    def _search_profit(
        self,
        candles: pd.DataFrame,
        market: MarketProfile,
        rules: PrecisionRules,
        total_capital: float,
        low_value: float,
        high_value: float,
        candles_per_day: float,
    ) -> list[GridCandidate]:
        candidates = []
        for multiple in PROFIT_ATR_MULTIPLES:
            spacing = self._spacing(market.atr, multiple, rules)
            if spacing <= 0 or spacing > market.price_range * 0.5 or spacing < rules.min_price:
                continue
            frequency = estimate_trade_frequency(
                candles, spacing, market.support, market.resistance
            )
            if frequency <= 0:
                continue

            for trade_value in self._trade_values(low_value, high_value):
                candidate = self._evaluate(
                    spacing,
                    trade_value,
                    frequency * candles_per_day,
                    market.avg_price,
                    rules,
                    total_capital,
                )
                if candidate is None or candidate.net_profit <= 0:
                    continue
                if candidate.turnover_ratio > MAX_TURNOVER_RATIO:
                    continue
                candidates.append(candidate)
        return candidates

    def _search_cost(
        self,
        candles: pd.DataFrame,
        market: MarketProfile,
        rules: PrecisionRules,
        total_capital: float,
        low_value: float,
        high_value: float,
        candles_per_day: float,
    ) -> list[GridCandidate]:
        candidates = []
        for multiple in COST_ATR_MULTIPLES:
            spacing = self._spacing(market.atr, multiple, rules)
            if spacing <= 0 or spacing < rules.min_price or spacing > market.price_range * 0.3:
                continue
            frequency = estimate_trade_frequency(
                candles, spacing, market.support, market.resistance
            )
            if frequency <= 0:
                continue

            for trade_value in self._trade_values(low_value, high_value):
                candidate = self._evaluate(
                    spacing,
                    trade_value,
                    frequency * candles_per_day,
                    market.avg_price,
                    rules,
                    total_capital,
                )
                if candidate is None or candidate.net_profit < 0:
                    continue
                if candidate.turnover_ratio > MAX_TURNOVER_RATIO:
                    continue
                loss_penalty = (
                    abs(candidate.daily_profit) / candidate.daily_fee
                    if candidate.daily_profit < 0 and candidate.daily_fee > 0
                    else 0.0
                )
                candidate.efficiency = candidate.turnover_ratio / (1 + loss_penalty)
                candidates.append(candidate)
        return candidates

    def _search_boundary(
        self,
        candles: pd.DataFrame,
        market: MarketProfile,
        rules: PrecisionRules,
        total_capital: float,
        low_value: float,
        high_value: float,
        candles_per_day: float,
    ) -> list[GridCandidate]:
        # Fixed at the smallest order size
        trade_value = low_value
        candidates = []
        for multiple in BOUNDARY_ATR_MULTIPLES:
            spacing = self._spacing(market.atr, multiple, rules)
            if spacing <= 0 or spacing > market.price_range * 0.8:
                continue
            if spacing < rules.min_price or spacing < market.avg_price * 0.001:
                continue
            frequency = estimate_trade_frequency(
                candles, spacing, market.support, market.resistance
            )
            if frequency <= 0:
                continue

            candidate = self._evaluate(
                spacing,
                trade_value,
                frequency * candles_per_day,
                market.avg_price,
                rules,
                total_capital,
            )
            if candidate is None or candidate.net_profit < 0:
                continue
            candidates.append(candidate)
        return candidates

    @staticmethod
    def _rank(target: OptimizeTarget, candidates: list[GridCandidate]) -> list[GridCandidate]:
        if target == OptimizeTarget.PROFIT:
            return sorted(candidates, key=lambda c: c.daily_profit, reverse=True)
        if target == OptimizeTarget.COST:
            return sorted(candidates, key=lambda c: c.efficiency, reverse=True)
        return sorted(candidates, key=lambda c: c.daily_frequency)
