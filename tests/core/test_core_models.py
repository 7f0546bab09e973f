"""Tests for core domain types"""

from decimal import Decimal
from types import SimpleNamespace

import pytest

from hedgegrid.core.models import (
    UNAVAILABLE,
    BatchResult,
    GridConfig,
    ImbalancedHedge,
    IntentAction,
    LegState,
    MarginType,
    OpenFill,
    OrderIntent,
    OrderResult,
    OrderSide,
    PositionSide,
    floor_to_precision,
    order_side_for,
)


def _result(success: bool) -> OrderResult:
    return OrderResult(
        symbol="BTCUSDT", position_side="LONG", action=IntentAction.OPEN, success=success
    )


# =============================================================================
# Order sides
# =============================================================================


class TestOrderSides:
    @pytest.mark.parametrize(
        ("position_side", "action", "expected"),
        [
            ("LONG", IntentAction.OPEN, OrderSide.BUY),
            ("LONG", IntentAction.CLOSE, OrderSide.SELL),
            ("SHORT", IntentAction.OPEN, OrderSide.SELL),
            ("SHORT", IntentAction.CLOSE, OrderSide.BUY),
        ],
    )
    def test_order_side_for(self, position_side, action, expected):
        assert order_side_for(position_side, action) == expected

    def test_intent_order_side(self):
        intent = OrderIntent(symbol="BTCUSDT", position_side="SHORT", action=IntentAction.OPEN)
        assert intent.order_side == OrderSide.SELL


class TestPrecision:
    def test_floors_not_rounds(self):
        assert floor_to_precision(Decimal("1.23456"), 3) == Decimal("1.234")

    def test_zero_digits(self):
        assert floor_to_precision(Decimal("9.99"), 0) == Decimal("9")


class TestUnavailable:
    def test_is_falsy_singleton(self):
        assert not UNAVAILABLE
        assert type(UNAVAILABLE)() is UNAVAILABLE
        assert repr(UNAVAILABLE) == "UNAVAILABLE"


# =============================================================================
# GridConfig
# =============================================================================


class TestGridConfig:
    def test_from_strategy_fills_defaults(self):
        row = SimpleNamespace(
            id=5,
            api_key="key",
            trading_pair="BTCUSDT",
            position_side=None,
            grid_price_difference=Decimal("50"),
            grid_trade_quantity=Decimal("1"),
            fall_prevention_coefficient=None,
            margin_type="CROSSED",
            priority_close_on_trend=None,
        )

        config = GridConfig.from_strategy(row)

        assert config.strategy_id == 5
        assert config.position_side == PositionSide.BOTH
        assert config.margin_type == MarginType.CROSSED
        assert config.fall_prevention_coefficient == Decimal("0")
        assert config.priority_close_on_trend is True

    def test_managed_sides(self):
        both = GridConfig(None, "k", "BTCUSDT", PositionSide.BOTH, Decimal("1"))
        short = GridConfig(None, "k", "BTCUSDT", PositionSide.SHORT, Decimal("1"))
        assert both.managed_sides == [PositionSide.LONG, PositionSide.SHORT]
        assert short.managed_sides == [PositionSide.SHORT]

    def test_split_quantity_takes_precedence(self):
        config = GridConfig(
            None,
            "k",
            "BTCUSDT",
            PositionSide.BOTH,
            Decimal("1"),
            grid_trade_quantity=Decimal("10"),
            grid_long_open_quantity=Decimal("3"),
            grid_short_close_quantity=Decimal("4"),
        )
        assert config.open_quantity(PositionSide.LONG) == Decimal("3")
        assert config.close_quantity(PositionSide.LONG) == Decimal("10")
        assert config.open_quantity(PositionSide.SHORT) == Decimal("10")
        assert config.close_quantity(PositionSide.SHORT) == Decimal("4")


# =============================================================================
# Leg state
# =============================================================================


class TestLegState:
    def test_clear_forgets_history_and_targets(self):
        leg = LegState(
            side=PositionSide.LONG,
            quantity=Decimal("2"),
            open_fills=[OpenFill(Decimal("100"), Decimal("2"))],
            rise_target=Decimal("110"),
            fall_target=Decimal("90"),
        )

        leg.clear()

        assert not leg.has_history
        assert leg.rise_target is None
        assert leg.fall_target is None

    def test_to_dict(self):
        leg = LegState(side=PositionSide.SHORT, rise_target=Decimal("101"))
        data = leg.to_dict()
        assert data["side"] == "SHORT"
        assert data["rise_target"] == "101"
        assert data["entry_price"] is None


# =============================================================================
# Batches
# =============================================================================


class TestBatchResult:
    def test_success_when_any_item_succeeds(self):
        batch = BatchResult.from_results([_result(True), _result(False), _result(False)])
        assert batch.success is True
        assert batch.summary.to_dict() == {"total": 3, "success": 1, "failed": 2}

    def test_failure_when_none_succeed(self):
        batch = BatchResult.from_results([_result(False)])
        assert batch.success is False

    def test_empty_batch(self):
        batch = BatchResult.from_results([])
        assert batch.success is False
        assert batch.summary.total == 0


class TestImbalancedHedge:
    def test_missing_side(self):
        assert (
            ImbalancedHedge("BTCUSDT", Decimal("1"), Decimal("0")).missing_side
            == PositionSide.SHORT
        )
        assert (
            ImbalancedHedge("BTCUSDT", Decimal("0"), Decimal("2")).missing_side
            == PositionSide.LONG
        )
