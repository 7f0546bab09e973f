"""Configuration management modules"""

from hedgegrid.config.manager import ConfigManager, substitute_env
from hedgegrid.config.schemas import (
    AppConfig,
    EngineSettings,
    ExchangeSettings,
    ExecutorSettings,
    FeedSettings,
    GridStrategyCreate,
    GridStrategyUpdate,
    LeverageSettingModel,
    OptimizeRequest,
    RecoverySettings,
)

__all__ = [
    "ConfigManager",
    "substitute_env",
    "AppConfig",
    "ExchangeSettings",
    "EngineSettings",
    "FeedSettings",
    "ExecutorSettings",
    "RecoverySettings",
    "GridStrategyCreate",
    "GridStrategyUpdate",
    "OptimizeRequest",
    "LeverageSettingModel",
]
