"""Strategy lifecycle orchestration: the service surface and startup recovery."""

from hedgegrid.orchestrator.recovery import CredentialProvider, RecoveryReport, StrategyRecovery
from hedgegrid.orchestrator.strategy_service import GridStrategyService

__all__ = [
    "GridStrategyService",
    "StrategyRecovery",
    "RecoveryReport",
    "CredentialProvider",
]
