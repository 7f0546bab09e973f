"""Core grid trading components"""

from hedgegrid.core.grid_engine import GridEngine
from hedgegrid.core.hedge_executor import DelayProfile, HedgeOrderExecutor
from hedgegrid.core.models import (
    UNAVAILABLE,
    BatchResult,
    BatchSummary,
    GridConfig,
    IntentAction,
    LegState,
    OrderIntent,
    OrderResult,
    PositionSide,
    PriceSnapshot,
    StrategyStatus,
)
from hedgegrid.core.price_feed import PriceFeedSubscriber
from hedgegrid.core.state_machine import StrategyStateMachine

# GridRunner lives in hedgegrid.core.grid_runner; it depends on the database
# package, which itself imports hedgegrid.core.exceptions.

__all__ = [
    "UNAVAILABLE",
    "BatchResult",
    "BatchSummary",
    "DelayProfile",
    "GridConfig",
    "GridEngine",
    "HedgeOrderExecutor",
    "IntentAction",
    "LegState",
    "OrderIntent",
    "OrderResult",
    "PositionSide",
    "PriceFeedSubscriber",
    "PriceSnapshot",
    "StrategyStatus",
    "StrategyStateMachine",
]
