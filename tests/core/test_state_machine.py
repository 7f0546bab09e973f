"""Tests for StrategyStateMachine"""

from decimal import Decimal

import pytest

from hedgegrid.core.exceptions import InvalidTransitionError
from hedgegrid.core.models import (
    GridConfig,
    IntentAction,
    LegState,
    PauseReason,
    PositionSide,
    StrategyStatus,
)
from hedgegrid.core.state_machine import StrategyStateMachine, weighted_entry_price


def _config(**overrides) -> GridConfig:
    values = {
        "strategy_id": 1,
        "api_key": "key",
        "trading_pair": "BTCUSDT",
        "position_side": PositionSide.BOTH,
        "grid_price_difference": Decimal("50"),
        "grid_trade_quantity": Decimal("1"),
    }
    values.update(overrides)
    return GridConfig(**values)


def _legs(long_qty="0", long_entry=None, short_qty="0", short_entry=None):
    return {
        PositionSide.LONG: LegState(
            side=PositionSide.LONG,
            quantity=Decimal(long_qty),
            entry_price=Decimal(long_entry) if long_entry else None,
        ),
        PositionSide.SHORT: LegState(
            side=PositionSide.SHORT,
            quantity=Decimal(short_qty),
            entry_price=Decimal(short_entry) if short_entry else None,
        ),
    }


@pytest.fixture
def machine():
    return StrategyStateMachine(StrategyStatus.RUNNING, strategy_id=1)


# =============================================================================
# Transitions
# =============================================================================


class TestTransitions:
    def test_start_from_created(self):
        machine = StrategyStateMachine()
        machine.start()
        assert machine.status == StrategyStatus.RUNNING

    def test_pause_and_resume(self, machine):
        assert machine.pause() is True
        assert machine.status == StrategyStatus.PAUSED
        assert machine.pause_reason == PauseReason.MANUAL

        assert machine.resume() is True
        assert machine.status == StrategyStatus.RUNNING
        assert machine.pause_reason is None

    def test_pause_is_idempotent(self, machine):
        machine.pause()
        assert machine.pause() is False
        assert machine.resume() is True
        assert machine.resume() is False

    def test_manual_pause_pins_auto_pause(self, machine):
        machine.pause(PauseReason.AUTO)
        machine.pause(PauseReason.MANUAL)
        assert machine.manually_paused

    def test_resume_stopped_raises(self, machine):
        machine.stop("stop_loss")
        with pytest.raises(InvalidTransitionError):
            machine.resume()

    def test_stopped_can_only_be_deleted(self, machine):
        machine.stop("upper_price_limit")
        assert machine.stop_reason == "upper_price_limit"
        assert machine.is_terminal
        assert machine.delete() is True
        assert machine.status == StrategyStatus.DELETED

    def test_deleted_is_final(self, machine):
        machine.delete()
        with pytest.raises(InvalidTransitionError):
            machine.pause()

    def test_require_transition_leaves_state(self, machine):
        machine.require_transition(StrategyStatus.PAUSED)
        machine.require_transition(StrategyStatus.RUNNING)
        assert machine.status == StrategyStatus.RUNNING
        assert machine.pause_reason is None

        machine.stop("stop_loss")
        with pytest.raises(InvalidTransitionError):
            machine.require_transition(StrategyStatus.RUNNING)
        assert machine.status == StrategyStatus.STOPPED

    def test_paused_row_without_reason_is_manual(self):
        machine = StrategyStateMachine(StrategyStatus.PAUSED)
        assert machine.pause_reason == PauseReason.MANUAL


# =============================================================================
# Rule evaluation
# =============================================================================


class TestPriceLimits:
    def test_lower_limit_stops(self, machine):
        config = _config(lt_limitation_price=Decimal("90"))
        evaluation = machine.evaluate(Decimal("90"), config, _legs())

        assert evaluation.status == StrategyStatus.STOPPED
        assert evaluation.reason == "lower_price_limit"
        assert evaluation.can_trade is False
        assert evaluation.changed is True

    def test_upper_limit_stops(self, machine):
        config = _config(gt_limitation_price=Decimal("110"))
        evaluation = machine.evaluate(Decimal("111"), config, _legs())
        assert evaluation.reason == "upper_price_limit"

    def test_within_limits_trades(self, machine):
        config = _config(lt_limitation_price=Decimal("90"), gt_limitation_price=Decimal("110"))
        evaluation = machine.evaluate(Decimal("100"), config, _legs())
        assert evaluation.can_trade is True
        assert evaluation.changed is False


class TestStopLossTakeProfit:
    def test_long_stop_loss_closes_all(self, machine):
        config = _config(stop_loss_price=Decimal("95"))
        legs = _legs(long_qty="2", long_entry="100", short_qty="3", short_entry="100")

        evaluation = machine.evaluate(Decimal("94"), config, legs)

        assert evaluation.status == StrategyStatus.STOPPED
        assert evaluation.reason == "stop_loss"
        closes = {i.position_side: i.quantity for i in evaluation.close_all}
        assert closes == {PositionSide.LONG: Decimal("2"), PositionSide.SHORT: Decimal("3")}
        assert all(i.action == IntentAction.CLOSE for i in evaluation.close_all)

    def test_take_profit(self, machine):
        config = _config(take_profit_price=Decimal("120"))
        evaluation = machine.evaluate(Decimal("121"), config, _legs(long_qty="1"))
        assert evaluation.reason == "take_profit"

    def test_short_direction_inverted(self, machine):
        config = _config(position_side=PositionSide.SHORT, stop_loss_price=Decimal("105"))
        evaluation = machine.evaluate(Decimal("106"), config, _legs(short_qty="1"))
        assert evaluation.reason == "stop_loss"

    def test_empty_legs_not_closed(self, machine):
        config = _config(stop_loss_price=Decimal("95"))
        evaluation = machine.evaluate(Decimal("90"), config, _legs())
        assert evaluation.close_all == []


class TestPauseConditions:
    def test_auto_pause_and_resume(self, machine):
        config = _config(is_above_open_price=True)
        legs = _legs(long_qty="1", long_entry="100")

        paused = machine.evaluate(Decimal("101"), config, legs)
        assert paused.status == StrategyStatus.PAUSED
        assert paused.reason == "price_above_open"
        assert paused.changed is True
        assert machine.pause_reason == PauseReason.AUTO

        resumed = machine.evaluate(Decimal("99"), config, legs)
        assert resumed.status == StrategyStatus.RUNNING
        assert resumed.can_trade is True
        assert resumed.changed is True

    def test_below_open(self, machine):
        config = _config(is_below_open_price=True)
        evaluation = machine.evaluate(Decimal("99"), config, _legs(long_qty="1", long_entry="100"))
        assert evaluation.reason == "price_below_open"

    def test_no_position_no_pause(self, machine):
        config = _config(is_above_open_price=True)
        evaluation = machine.evaluate(Decimal("1000"), config, _legs())
        assert evaluation.can_trade is True

    def test_manual_pause_skips_every_rule(self, machine):
        machine.pause(PauseReason.MANUAL)
        config = _config(lt_limitation_price=Decimal("90"))

        evaluation = machine.evaluate(Decimal("50"), config, _legs())

        assert evaluation.status == StrategyStatus.PAUSED
        assert evaluation.can_trade is False
        assert evaluation.reason == "manual_pause"


class TestWeightedEntry:
    def test_weighted_by_quantity(self):
        legs = _legs(long_qty="1", long_entry="100", short_qty="3", short_entry="200")
        assert weighted_entry_price(list(legs.values())) == Decimal("175")

    def test_none_without_position(self):
        assert weighted_entry_price(list(_legs().values())) is None
