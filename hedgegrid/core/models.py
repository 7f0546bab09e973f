"""
Core domain types shared by the grid engine, runner and executor.
"""

from dataclasses import dataclass, field, fields
from decimal import ROUND_DOWN, Decimal
from enum import Enum
from typing import Any


class PositionSide(str, Enum):
    """Hedge-mode position side"""

    LONG = "LONG"
    SHORT = "SHORT"
    BOTH = "BOTH"


class StrategyStatus(str, Enum):
    """Strategy lifecycle states"""

    CREATED = "CREATED"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    STOPPED = "STOPPED"
    DELETED = "DELETED"


class PauseReason(str, Enum):
    MANUAL = "manual"
    AUTO = "auto"


class MarginType(str, Enum):
    CROSSED = "CROSSED"
    ISOLATED = "ISOLATED"


class IntentAction(str, Enum):
    """Whether an intent grows or shrinks a leg"""

    OPEN = "OPEN"
    CLOSE = "CLOSE"


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class CloseMode(str, Enum):
    """How close_positions interprets an intent's size"""

    AMOUNT = "amount"
    QUANTITY = "quantity"
    PERCENTAGE = "percentage"


def order_side_for(position_side: str, action: str) -> OrderSide:
    """Exchange order side for opening or closing a hedge leg."""
    opening = action == IntentAction.OPEN
    if position_side == PositionSide.LONG:
        return OrderSide.BUY if opening else OrderSide.SELL
    return OrderSide.SELL if opening else OrderSide.BUY


def floor_to_precision(value: Decimal, precision: int) -> Decimal:
    """Floor a decimal to a number of fractional digits."""
    quantum = Decimal(1).scaleb(-precision)
    return value.quantize(quantum, rounding=ROUND_DOWN)


# =============================================================================
# Price feed
# =============================================================================


class _Unavailable:
    """Sentinel returned when no fresh price exists for a symbol."""

    _instance: "_Unavailable | None" = None

    def __new__(cls) -> "_Unavailable":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "UNAVAILABLE"


UNAVAILABLE = _Unavailable()


@dataclass(frozen=True)
class PriceSnapshot:
    """Immutable latest-price record for one symbol"""

    symbol: str
    price: Decimal
    timestamp: int  # exchange time, ms
    received_at: float  # time.monotonic() at receipt


@dataclass(frozen=True)
class SubscriptionHandle:
    symbol: str
    handle_id: int


# =============================================================================
# Strategy configuration snapshot
# =============================================================================


@dataclass(frozen=True)
class GridConfig:
    """
    Immutable view of a strategy's trading configuration.

    Runners hold one of these and swap it wholesale on update, so a tick
    never sees a half-applied change.
    """

    strategy_id: int | None
    api_key: str
    trading_pair: str
    position_side: PositionSide
    grid_price_difference: Decimal
    grid_trade_quantity: Decimal | None = None
    grid_long_open_quantity: Decimal | None = None
    grid_long_close_quantity: Decimal | None = None
    grid_short_open_quantity: Decimal | None = None
    grid_short_close_quantity: Decimal | None = None
    max_open_position_quantity: Decimal | None = None
    min_open_position_quantity: Decimal | None = None
    fall_prevention_coefficient: Decimal = Decimal("0")
    polling_interval: int = 10000
    price_precision: int = 8
    quantity_precision: int = 8
    leverage: int = 20
    margin_type: MarginType = MarginType.ISOLATED
    stop_loss_price: Decimal | None = None
    take_profit_price: Decimal | None = None
    gt_limitation_price: Decimal | None = None
    lt_limitation_price: Decimal | None = None
    is_above_open_price: bool = False
    is_below_open_price: bool = False
    priority_close_on_trend: bool = True

    @classmethod
    def from_strategy(cls, strategy: Any) -> "GridConfig":
        """Build from a GridStrategy row (or any object with matching attributes)."""
        values: dict[str, Any] = {}
        for f in fields(cls):
            if f.name == "strategy_id":
                values[f.name] = getattr(strategy, "id", None)
            elif hasattr(strategy, f.name):
                values[f.name] = getattr(strategy, f.name)
        values["position_side"] = PositionSide(values.get("position_side") or PositionSide.BOTH)
        values["margin_type"] = MarginType(values.get("margin_type") or MarginType.ISOLATED)
        for key in ("fall_prevention_coefficient",):
            if values.get(key) is None:
                values[key] = Decimal("0")
        if values.get("priority_close_on_trend") is None:
            values["priority_close_on_trend"] = True
        return cls(**values)

    @property
    def managed_sides(self) -> list[PositionSide]:
        if self.position_side == PositionSide.BOTH:
            return [PositionSide.LONG, PositionSide.SHORT]
        return [self.position_side]

    def open_quantity(self, side: PositionSide) -> Decimal:
        """Split open quantity for the leg, else the grid quantity."""
        split = (
            self.grid_long_open_quantity
            if side == PositionSide.LONG
            else self.grid_short_open_quantity
        )
        return split or self.grid_trade_quantity or Decimal("0")

    def close_quantity(self, side: PositionSide) -> Decimal:
        """Split close quantity for the leg, else the grid quantity."""
        split = (
            self.grid_long_close_quantity
            if side == PositionSide.LONG
            else self.grid_short_close_quantity
        )
        return split or self.grid_trade_quantity or Decimal("0")


# =============================================================================
# Per-leg runtime state
# =============================================================================


@dataclass
class OpenFill:
    price: Decimal
    quantity: Decimal
    order_id: str | None = None


@dataclass
class LegState:
    """Runtime state of one hedge leg (LONG or SHORT)"""

    side: PositionSide
    quantity: Decimal = Decimal("0")
    entry_price: Decimal | None = None
    open_fills: list[OpenFill] = field(default_factory=list)
    rise_target: Decimal | None = None
    fall_target: Decimal | None = None
    open_divisor: Decimal = Decimal("1")
    last_fill_price: Decimal | None = None

    @property
    def has_history(self) -> bool:
        return bool(self.open_fills)

    def clear(self) -> None:
        """Forget open fills and targets, e.g. after the position vanished."""
        self.open_fills.clear()
        self.rise_target = None
        self.fall_target = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "side": self.side.value,
            "quantity": str(self.quantity),
            "entry_price": str(self.entry_price) if self.entry_price is not None else None,
            "open_fills": len(self.open_fills),
            "rise_target": str(self.rise_target) if self.rise_target is not None else None,
            "fall_target": str(self.fall_target) if self.fall_target is not None else None,
            "open_divisor": str(self.open_divisor),
        }


# =============================================================================
# Orders and batches
# =============================================================================


@dataclass
class OrderIntent:
    """A request to open or close part of a hedge leg"""

    symbol: str
    position_side: str
    action: IntentAction
    quantity: Decimal | None = None
    amount: Decimal | None = None  # USDT notional
    percentage: Decimal | None = None
    strategy_id: int | None = None
    reason: str = ""

    @property
    def order_side(self) -> OrderSide:
        return order_side_for(self.position_side, self.action)

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "position_side": str(getattr(self.position_side, "value", self.position_side)),
            "action": self.action.value,
            "quantity": str(self.quantity) if self.quantity is not None else None,
            "amount": str(self.amount) if self.amount is not None else None,
            "percentage": str(self.percentage) if self.percentage is not None else None,
            "strategy_id": self.strategy_id,
            "reason": self.reason,
        }


@dataclass
class OrderResult:
    """Outcome of one intent"""

    symbol: str
    position_side: str
    action: IntentAction
    success: bool
    quantity: Decimal | None = None
    order_id: str | None = None
    average_price: Decimal | None = None
    filled_quantity: Decimal | None = None
    status: str | None = None
    error: str | None = None
    error_code: int | None = None
    strategy_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "position_side": str(getattr(self.position_side, "value", self.position_side)),
            "action": self.action.value,
            "success": self.success,
            "quantity": str(self.quantity) if self.quantity is not None else None,
            "order_id": self.order_id,
            "average_price": str(self.average_price) if self.average_price is not None else None,
            "filled_quantity": (
                str(self.filled_quantity) if self.filled_quantity is not None else None
            ),
            "status": self.status,
            "error": self.error,
            "error_code": self.error_code,
        }


@dataclass(frozen=True)
class BatchSummary:
    total: int
    success: int
    failed: int

    @classmethod
    def from_results(cls, results: list[Any]) -> "BatchSummary":
        success = sum(1 for r in results if r.success)
        return cls(total=len(results), success=success, failed=len(results) - success)

    def to_dict(self) -> dict[str, int]:
        return {"total": self.total, "success": self.success, "failed": self.failed}


@dataclass
class BatchResult:
    """Per-item results plus aggregate counts for an order batch"""

    success: bool
    results: list[OrderResult]
    summary: BatchSummary

    @classmethod
    def from_results(cls, results: list[OrderResult]) -> "BatchResult":
        summary = BatchSummary.from_results(results)
        return cls(success=summary.success > 0, results=results, summary=summary)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "results": [r.to_dict() for r in self.results],
            "summary": self.summary.to_dict(),
        }


@dataclass
class LeverageSetting:
    symbol: Any
    leverage: Any

    def to_dict(self) -> dict[str, Any]:
        return {"symbol": self.symbol, "leverage": self.leverage}


@dataclass
class LeverageResult:
    symbol: str
    leverage: int
    success: bool
    applied_leverage: int | None = None
    adjusted: bool = False
    error: str | None = None
    error_code: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "leverage": self.leverage,
            "success": self.success,
            "applied_leverage": self.applied_leverage,
            "adjusted": self.adjusted,
            "error": self.error,
            "error_code": self.error_code,
        }


@dataclass
class LeverageBatchResult:
    """
    Leverage batch outcome.

    accepted is True for the background path, where results stay empty
    and the summary only carries the total.
    """

    accepted: bool
    results: list[LeverageResult]
    summary: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "accepted": self.accepted,
            "results": [r.to_dict() for r in self.results],
            "summary": dict(self.summary),
        }


@dataclass(frozen=True)
class ImbalancedHedge:
    """A symbol where only one hedge leg holds a position"""

    symbol: str
    long_amount: Decimal
    short_amount: Decimal

    @property
    def missing_side(self) -> PositionSide:
        return PositionSide.SHORT if self.long_amount > 0 else PositionSide.LONG

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "long_amount": str(self.long_amount),
            "short_amount": str(self.short_amount),
            "missing_side": self.missing_side.value,
        }
