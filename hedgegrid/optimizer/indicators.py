"""
Candle indicators for the grid optimizer (numpy/pandas).
"""

import numpy as np
import pandas as pd

OHLCV_COLUMNS = ["timestamp", "open", "high", "low", "close", "volume"]


def candles_to_frame(ohlcv: list[list]) -> pd.DataFrame:
    """Convert ccxt OHLCV rows into a float DataFrame."""
    df = pd.DataFrame(ohlcv, columns=OHLCV_COLUMNS)
    for col in OHLCV_COLUMNS[1:]:
        df[col] = df[col].astype(float)
    return df.reset_index(drop=True)


def calculate_atr(df: pd.DataFrame, period: int = 14) -> float:
    """
    Average True Range as the simple mean of the last `period` true ranges.

    With fewer than period + 1 candles there is no full window, so the mean
    candle range (high - low) is used instead.
    """
    if len(df) < period + 1:
        return float((df["high"] - df["low"]).mean())

    prev_close = df["close"].shift(1)
    tr1 = df["high"] - df["low"]
    tr2 = (df["high"] - prev_close).abs()
    tr3 = (df["low"] - prev_close).abs()
    true_range = pd.concat([tr1, tr2, tr3], axis=1).max(axis=1)

    # First row has no previous close
    return float(true_range.iloc[1:].tail(period).mean())


def calculate_volatility(df: pd.DataFrame) -> float:
    """Population standard deviation of closes relative to their mean."""
    closes = df["close"].to_numpy()
    mean = closes.mean()
    if mean <= 0:
        return 0.0
    return float(np.std(closes) / mean)


def support_resistance(
    df: pd.DataFrame,
    volatility: float,
    trim_percentile: float = 5.0,
) -> tuple[float, float]:
    """
    Support and resistance for the candle window.

    Swing extremes are the lows/highs trimmed to the given percentile so
    single wicks do not stretch the band. They are intersected with the
    volatility band avg +/- 2 * vol * avg; if that leaves nothing, the
    volatility band alone is returned.
    """
    avg_price = float(df["close"].mean())
    band_low = avg_price - 2 * volatility * avg_price
    band_high = avg_price + 2 * volatility * avg_price

    swing_low = float(np.percentile(df["low"].to_numpy(), trim_percentile))
    swing_high = float(np.percentile(df["high"].to_numpy(), 100 - trim_percentile))

    support = max(swing_low, band_low)
    resistance = min(swing_high, band_high)

    if resistance <= support:
        return band_low, band_high
    return support, resistance


def estimate_trade_frequency(
    df: pd.DataFrame,
    grid_spacing: float,
    support: float,
    resistance: float,
) -> float:
    """Mean number of grid lines each candle crosses inside [support, resistance]."""
    if grid_spacing <= 0 or df.empty:
        return 0.0

    effective_high = np.minimum(df["high"].to_numpy(), resistance)
    effective_low = np.maximum(df["low"].to_numpy(), support)
    effective_range = np.maximum(0.0, effective_high - effective_low)
    crosses = np.floor(effective_range / grid_spacing)
    return float(crosses.mean())
