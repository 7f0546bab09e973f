"""
hedgegrid - Hedged grid trading engine for perpetual futures.

Runs long/short grid strategies on Binance USDT-M futures, derives grid
geometry from historical candles, and executes hedged order batches with
partial-failure isolation.
"""

__version__ = "1.0.0"
