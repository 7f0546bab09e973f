"""Tests for configuration schemas"""

from decimal import Decimal

import pytest
from pydantic import ValidationError

from hedgegrid.config.schemas import (
    AppConfig,
    ExecutorSettings,
    GridStrategyCreate,
    GridStrategyUpdate,
    LeverageSettingModel,
    OptimizeRequest,
)
from hedgegrid.core.hedge_executor import DelayProfile
from hedgegrid.core.models import MarginType, PositionSide


def _create(**overrides) -> GridStrategyCreate:
    values = {
        "trading_pair": "BTCUSDT",
        "grid_price_difference": "50",
        "grid_trade_quantity": "0.01",
    }
    values.update(overrides)
    return GridStrategyCreate(**values)


# =============================================================================
# GridStrategyCreate
# =============================================================================


class TestGridStrategyCreate:
    def test_defaults(self):
        config = _create()
        assert config.position_side == PositionSide.BOTH
        assert config.leverage == 20
        assert config.margin_type == MarginType.ISOLATED
        assert config.polling_interval == 10000
        assert config.fall_prevention_coefficient == Decimal("0")
        assert config.priority_close_on_trend is True
        assert config.exchange == "BINANCE"
        assert config.exchange_type == "USDT-M"

    @pytest.mark.parametrize("pair", ["btcusdt", " BTCUSDT ", "BTC/USDT"])
    def test_trading_pair_normalized(self, pair):
        assert _create(trading_pair=pair).trading_pair == "BTCUSDT"

    def test_grid_price_difference_required(self):
        with pytest.raises(ValidationError):
            GridStrategyCreate(trading_pair="BTCUSDT", grid_trade_quantity="0.01")

    @pytest.mark.parametrize("value", ["0", "-1"])
    def test_grid_price_difference_positive(self, value):
        with pytest.raises(ValidationError):
            _create(grid_price_difference=value)

    def test_quantity_required(self):
        with pytest.raises(ValidationError, match="grid_trade_quantity"):
            _create(grid_trade_quantity=None)

    def test_split_quantities_for_both_legs(self):
        config = _create(
            grid_trade_quantity=None,
            grid_long_open_quantity="0.01",
            grid_long_close_quantity="0.01",
            grid_short_open_quantity="0.02",
            grid_short_close_quantity="0.02",
        )
        assert config.grid_short_open_quantity == Decimal("0.02")

    def test_split_quantities_missing_short_leg(self):
        with pytest.raises(ValidationError, match="grid_short"):
            _create(
                grid_trade_quantity=None,
                grid_long_open_quantity="0.01",
                grid_long_close_quantity="0.01",
            )

    def test_split_quantities_single_side(self):
        config = _create(
            position_side="LONG",
            grid_trade_quantity=None,
            grid_long_open_quantity="0.01",
            grid_long_close_quantity="0.01",
        )
        assert config.position_side == PositionSide.LONG

    def test_min_above_max_rejected(self):
        with pytest.raises(ValidationError, match="min_open_position_quantity"):
            _create(min_open_position_quantity="2", max_open_position_quantity="1")

    @pytest.mark.parametrize("lt,gt", [("100", "100"), ("110", "100")])
    def test_limitation_prices_ordered(self, lt, gt):
        with pytest.raises(ValidationError, match="lt_limitation_price"):
            _create(lt_limitation_price=lt, gt_limitation_price=gt)

    @pytest.mark.parametrize("leverage", [0, 126, "20", 2.5])
    def test_leverage_rejected(self, leverage):
        with pytest.raises(ValidationError):
            _create(leverage=leverage)

    def test_invalid_position_side(self):
        with pytest.raises(ValidationError):
            _create(position_side="SIDEWAYS")


# =============================================================================
# GridStrategyUpdate
# =============================================================================


class TestGridStrategyUpdate:
    def test_only_set_fields_dumped(self):
        update = GridStrategyUpdate(grid_price_difference="75")
        assert update.model_dump(exclude_unset=True) == {"grid_price_difference": Decimal("75")}

    @pytest.mark.parametrize("field", ["trading_pair", "position_side", "unknown"])
    def test_extra_fields_forbidden(self, field):
        with pytest.raises(ValidationError):
            GridStrategyUpdate(**{field: "X"})

    def test_field_rules_apply(self):
        with pytest.raises(ValidationError):
            GridStrategyUpdate(leverage=200)


# =============================================================================
# Requests
# =============================================================================


class TestRequests:
    def test_optimize_request_defaults(self):
        request = OptimizeRequest(symbol="eth/usdt", total_capital=1000)
        assert request.symbol == "ETHUSDT"
        assert request.interval == "4h"
        assert request.optimize_target == "profit"
        assert request.min_trade_value == 20
        assert request.max_trade_value == 100
        assert request.enable_boundary_defense is False

    def test_leverage_setting(self):
        assert LeverageSettingModel(symbol="BTCUSDT", leverage=50).leverage == 50

    @pytest.mark.parametrize("leverage", [0, 126, "10", True])
    def test_leverage_setting_rejected(self, leverage):
        with pytest.raises(ValidationError):
            LeverageSettingModel(symbol="BTCUSDT", leverage=leverage)


# =============================================================================
# AppConfig
# =============================================================================


class TestAppConfig:
    def test_defaults(self):
        config = AppConfig(database_url="sqlite+aiosqlite:///:memory:")
        assert config.log_level == "INFO"
        assert config.exchange.exchange_id == "binanceusdm"
        assert config.executor.delay_profile == DelayProfile.SHORT
        assert config.recovery.enabled is True

    def test_database_url_required(self):
        with pytest.raises(ValidationError):
            AppConfig()

    def test_log_level_pattern(self):
        with pytest.raises(ValidationError):
            AppConfig(database_url="sqlite://", log_level="VERBOSE")

    def test_delay_profile_parsed(self):
        assert ExecutorSettings(delay_profile="long").delay_profile == DelayProfile.LONG

    def test_delay_profile_rejected(self):
        with pytest.raises(ValidationError):
            ExecutorSettings(delay_profile="forever")
