"""Pytest configuration and shared fixtures"""

from collections.abc import AsyncGenerator
from decimal import Decimal
from pathlib import Path
from typing import Any

import pytest

from hedgegrid.api.client_pool import Credential
from hedgegrid.api.exchange_client import MarketRules
from hedgegrid.database.manager import DatabaseManager
from hedgegrid.database.models import GridStrategy


@pytest.fixture
async def db() -> AsyncGenerator[DatabaseManager, None]:
    """Fresh in-memory database per test for full isolation."""
    manager = DatabaseManager("sqlite+aiosqlite:///:memory:")
    await manager.initialize()
    await manager.create_all_tables()

    yield manager

    await manager.close()


@pytest.fixture
def credential() -> Credential:
    return Credential(api_key="test_api_key_0001", api_secret="test_secret")


@pytest.fixture
def other_credential() -> Credential:
    return Credential(api_key="other_api_key_0002", api_secret="other_secret")


@pytest.fixture
def btc_rules() -> MarketRules:
    return MarketRules(
        symbol="BTCUSDT",
        tick_size=Decimal("0.1"),
        step_size=Decimal("0.001"),
        min_price=Decimal("0.1"),
        min_qty=Decimal("0.001"),
        max_qty=Decimal("1000"),
        min_notional=Decimal("5"),
    )


def make_strategy(api_key: str = "test_api_key_0001", **overrides: Any) -> GridStrategy:
    """Unsaved GridStrategy row with sensible defaults."""
    values: dict[str, Any] = {
        "api_key": api_key,
        "trading_pair": "BTCUSDT",
        "position_side": "BOTH",
        "grid_price_difference": Decimal("50"),
        "grid_trade_quantity": Decimal("10"),
        "max_open_position_quantity": Decimal("100"),
        "status": "RUNNING",
        "paused": False,
    }
    values.update(overrides)
    return GridStrategy(**values)


@pytest.fixture
def strategy_factory():
    return make_strategy


@pytest.fixture
def test_config_dir(tmp_path: Path) -> Path:
    """Create a temporary directory for test configs"""
    config_dir = tmp_path / "configs"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def example_config_yaml(test_config_dir: Path) -> Path:
    """Create an example YAML config file"""
    config_file = test_config_dir / "hedgegrid.yaml"
    config_file.write_text(
        """
database_url: "sqlite+aiosqlite:///:memory:"
database_pool_size: 5
log_level: INFO
log_to_file: false
log_to_console: true
json_logs: false

exchange:
  exchange_id: binanceusdm
  timeout_ms: 10000
  sandbox: true

executor:
  max_concurrency: 3
  delay_profile: medium

recovery:
  strategies_per_second: 2
  batch_delay: 0.5
"""
    )
    return config_file
