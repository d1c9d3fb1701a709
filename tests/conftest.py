"""
Pytest configuration and fixtures for the portfolio analytics tests.

This module provides:
- Builders for business-day value series that move once per month
- A flat risk-free series
- A deterministic in-memory market data provider
- A fresh market data cache per test
"""

from itertools import cycle

import pandas as pd
import pytest

import config
from data_loader import StaticMarketDataProvider, TTLMarketDataCache


# =============================================================================
# SERIES BUILDERS
# =============================================================================


def stepped_series(start, end, monthly_returns=0.0, initial=100.0) -> pd.Series:
    """
    Business-day series whose value is constant within each calendar month
    and steps by the next monthly return at every month change.

    `monthly_returns` is a constant or an iterable cycled month by month.
    """
    days = pd.bdate_range(start, end)
    months = days.to_period("M")

    if isinstance(monthly_returns, (int, float)):
        returns = cycle([float(monthly_returns)])
    else:
        returns = cycle(list(monthly_returns))

    levels = {}
    value = float(initial)
    for i, month in enumerate(months.unique()):
        if i > 0:
            value *= 1 + next(returns)
        levels[month] = value

    series = pd.Series([levels[m] for m in months], index=pd.DatetimeIndex(days), dtype=float)
    series.index.name = "date"
    return series


def flat_rate_series(start, end, rate=0.0) -> pd.Series:
    days = pd.bdate_range(start, end)
    return pd.Series(float(rate), index=pd.DatetimeIndex(days), dtype=float)


@pytest.fixture
def make_series():
    """Factory fixture for stepped business-day series."""
    return stepped_series


@pytest.fixture
def make_rates():
    """Factory fixture for flat risk-free series (annual percent)."""
    return flat_rate_series


# =============================================================================
# MARKET DATA FIXTURES
# =============================================================================


@pytest.fixture
def market_series():
    """Benchmark closes and a 2% T-bill rate covering 2019-2024."""
    benchmark = stepped_series("2019-01-01", "2024-06-28", [0.02, -0.01, 0.015, -0.005], initial=5000.0)
    risk_free = flat_rate_series("2019-01-01", "2024-06-28", 2.0)
    return benchmark, risk_free


@pytest.fixture
def static_provider(market_series) -> StaticMarketDataProvider:
    """Offline provider answering the configured benchmark and risk-free symbols."""
    benchmark, risk_free = market_series
    return StaticMarketDataProvider(
        {
            config.BENCHMARK_TICKER: benchmark,
            config.RISK_FREE_TICKER: risk_free,
        }
    )


@pytest.fixture
def market_cache() -> TTLMarketDataCache:
    """Isolated cache so tests never share fetched series."""
    return TTLMarketDataCache(maxsize=8, ttl=60)
