"""
Grid parameter optimizer data models: enums, precision rules, candidates, results.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from hedgegrid.api.exchange_client import MarketRules

FEE_RATE = 0.0005  # per side

# Hours covered by one candle of each supported interval
INTERVAL_HOURS: dict[str, int] = {
    "1h": 1,
    "4h": 4,
    "1d": 24,
    "1w": 168,
    "1M": 720,
}


# =============================================================================
# Enums
# =============================================================================


class OptimizeTarget(str, Enum):
    """What the grid search maximizes."""

    PROFIT = "profit"  # Highest daily net profit
    COST = "cost"  # Highest turnover for cost averaging
    BOUNDARY = "boundary"  # Lowest trade frequency, widest safe spacing


class VolatilityLevel(str, Enum):
    HIGH = "high"
    MID = "mid"
    LOW = "low"


class RiskLevel(str, Enum):
    CONSERVATIVE = "conservative"
    BALANCED = "balanced"
    AGGRESSIVE = "aggressive"


# =============================================================================
# Inputs
# =============================================================================


@dataclass(frozen=True)
class PrecisionRules:
    """Price and quantity rules the optimizer rounds to."""

    tick_size: float
    min_price: float
    step_size: float
    min_qty: float
    max_qty: float
    min_notional: float = 0.0

    @classmethod
    def from_market_rules(cls, rules: MarketRules) -> "PrecisionRules":
        return cls(
            tick_size=float(rules.tick_size),
            min_price=float(rules.min_price),
            step_size=float(rules.step_size),
            min_qty=float(rules.min_qty),
            max_qty=float(rules.max_qty),
            min_notional=float(rules.min_notional),
        )


# =============================================================================
# Outputs
# =============================================================================


@dataclass
class MarketProfile:
    """Market statistics derived from the candle window."""

    current_price: float
    support: float
    resistance: float
    avg_price: float
    volatility: float  # std(close) / mean(close)
    atr: float
    candle_count: int

    @property
    def price_range(self) -> float:
        return self.resistance - self.support

    @property
    def volatility_level(self) -> VolatilityLevel:
        if self.volatility > 0.05:
            return VolatilityLevel.HIGH
        if self.volatility > 0.02:
            return VolatilityLevel.MID
        return VolatilityLevel.LOW

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_price": round(self.current_price, 6),
            "support": round(self.support, 6),
            "resistance": round(self.resistance, 6),
            "avg_price": round(self.avg_price, 6),
            "price_range": round(self.price_range, 6),
            "volatility_pct": round(self.volatility * 100, 2),
            "volatility_level": self.volatility_level.value,
            "atr": round(self.atr, 6),
            "candle_count": self.candle_count,
        }


@dataclass
class GridCandidate:
    """One evaluated (spacing, trade value) point of the search."""

    grid_spacing: float
    trade_value: float
    trade_quantity: float
    daily_frequency: float
    net_profit: float  # per round trip, after fees
    daily_profit: float
    daily_fee: float
    turnover_ratio: float
    daily_roi: float
    efficiency: float = 0.0

    def spacing_percent(self, avg_price: float) -> float:
        return self.grid_spacing / avg_price * 100 if avg_price > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "grid_spacing": round(self.grid_spacing, 8),
            "trade_value": round(self.trade_value, 2),
            "trade_quantity": round(self.trade_quantity, 8),
            "expected_daily_frequency": round(self.daily_frequency, 2),
            "single_net_profit": round(self.net_profit, 6),
            "expected_daily_profit": round(self.daily_profit, 4),
            "expected_daily_fee": round(self.daily_fee, 4),
            "expected_daily_roi_pct": round(self.daily_roi * 100, 4),
            "turnover_ratio_pct": round(self.turnover_ratio * 100, 2),
            "efficiency": round(self.efficiency, 6),
        }


@dataclass(frozen=True)
class RiskAssessment:
    level: RiskLevel
    score: float

    def to_dict(self) -> dict[str, Any]:
        return {"level": self.level.value, "score": self.score}


@dataclass
class OptimizationResult:
    """Recommended grid geometry plus the analysis behind it."""

    symbol: str
    interval: str
    optimize_target: OptimizeTarget
    total_capital: float
    grid_spacing: float
    grid_number: int
    trade_value: float
    upper_bound: float
    lower_bound: float
    recommended: GridCandidate
    market: MarketProfile
    risk: RiskAssessment
    top_candidates: list[GridCandidate] = field(default_factory=list)
    candidate_count: int = 0
    boundary_defense: GridCandidate | None = None
    fee_rate: float = FEE_RATE

    @property
    def trade_quantity(self) -> float:
        return self.recommended.trade_quantity

    @property
    def committed_capital(self) -> float:
        return self.grid_number * self.trade_value

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "interval": self.interval,
            "optimize_target": self.optimize_target.value,
            "total_capital": self.total_capital,
            "fee_rate": self.fee_rate,
            "grid_spacing": round(self.grid_spacing, 8),
            "grid_number": self.grid_number,
            "trade_value": round(self.trade_value, 2),
            "upper_bound": round(self.upper_bound, 8),
            "lower_bound": round(self.lower_bound, 8),
            "recommended": self.recommended.to_dict(),
            "market": self.market.to_dict(),
            "risk": self.risk.to_dict(),
            "analysis": {
                "candidate_count": self.candidate_count,
                "top_candidates": [c.to_dict() for c in self.top_candidates],
            },
            "boundary_defense": (
                self.boundary_defense.to_dict() if self.boundary_defense else None
            ),
        }
