"""Trade journal analytics.

Portfolio metrics and market-data caching for a personal trading journal:
per-trade valuation, risk-reward, streaks, exposure, capital and drawdown,
with cached quotes and OHLCV series in front of fallible external sources.
"""

__version__ = "1.0.0"
