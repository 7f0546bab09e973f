"""Tests for optimizer candle indicators"""

import pandas as pd
import pytest

from hedgegrid.optimizer.indicators import (
    calculate_atr,
    calculate_volatility,
    candles_to_frame,
    estimate_trade_frequency,
    support_resistance,
)


def _frame(rows: list[tuple[float, float, float, float]]) -> pd.DataFrame:
    """Rows of (open, high, low, close)."""
    return candles_to_frame([[i * 1000, o, h, l, c, 1.0] for i, (o, h, l, c) in enumerate(rows)])


class TestCandlesToFrame:
    def test_columns_are_float(self):
        df = candles_to_frame([[0, "1", "2", "0.5", "1.5", "10"]])
        assert list(df.columns) == ["timestamp", "open", "high", "low", "close", "volume"]
        assert df["close"].iloc[0] == 1.5


class TestATR:
    def test_short_history_uses_mean_range(self):
        df = _frame([(10, 12, 9, 11), (11, 13, 10, 12)])
        assert calculate_atr(df, period=14) == pytest.approx(3.0)

    def test_true_range_includes_gaps(self):
        # Each candle gaps 5 above the previous close with a range of 1
        rows = [(100 + 5 * i, 101 + 5 * i, 100 + 5 * i, 100.5 + 5 * i) for i in range(16)]
        df = _frame(rows)
        assert calculate_atr(df, period=14) == pytest.approx(5.5)


class TestVolatility:
    def test_flat_market(self):
        df = _frame([(10, 10, 10, 10)] * 5)
        assert calculate_volatility(df) == 0.0

    def test_relative_std(self):
        df = _frame([(0, 0, 0, 90), (0, 0, 0, 110)])
        assert calculate_volatility(df) == pytest.approx(0.1)


class TestSupportResistance:
    def test_within_volatility_band(self):
        rows = [(100, 100 + i % 5, 100 - i % 5, 100 + (i % 3 - 1)) for i in range(40)]
        df = _frame(rows)
        volatility = calculate_volatility(df)

        support, resistance = support_resistance(df, volatility)

        avg = df["close"].mean()
        assert avg - 2 * volatility * avg <= support < resistance
        assert resistance <= avg + 2 * volatility * avg

    def test_falls_back_to_band(self):
        df = _frame([(100, 100, 100, 100)] * 10)
        support, resistance = support_resistance(df, 0.05)
        assert (support, resistance) == pytest.approx((90.0, 110.0))


class TestTradeFrequency:
    def test_counts_crossings_inside_range(self):
        df = _frame([(100, 110, 100, 105), (100, 130, 80, 105)])
        # Candle 1: 10 / 2 = 5; candle 2 clipped to [90, 120]: 30 / 2 = 15
        assert estimate_trade_frequency(df, 2.0, 90.0, 120.0) == pytest.approx(10.0)

    def test_zero_spacing(self):
        df = _frame([(1, 2, 1, 1)])
        assert estimate_trade_frequency(df, 0.0, 0.0, 10.0) == 0.0
