"""Grid parameter optimizer"""

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
from hedgegrid.optimizer.optimizer import GridParameterOptimizer, assess_risk

__all__ = [
    "FEE_RATE",
    "INTERVAL_HOURS",
    "GridCandidate",
    "GridParameterOptimizer",
    "MarketProfile",
    "OptimizationResult",
    "OptimizeTarget",
    "PrecisionRules",
    "RiskAssessment",
    "RiskLevel",
    "VolatilityLevel",
    "assess_risk",
]
