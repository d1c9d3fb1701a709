import logging
import os
import sys

from dotenv import load_dotenv

# ============================================================
# ENVIRONMENT (SECURE LOAD)
# ============================================================

# Load the .env file immediately so every constant below sees it
load_dotenv()


def _env_int(name, default):
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        print(f"⚠️ WARNING: {name}={raw!r} is not an integer. Using {default}.")
        return default


# ============================================================
# MARKET DATA
# ============================================================
BENCHMARK_TICKER = os.environ.get("BENCHMARK_TICKER", "^SP500TR")
BENCHMARK_NAME = os.environ.get("BENCHMARK_NAME", "S&P 500 TR")

# ^IRX quotes the 13-week T-bill yield in percent (5.2 == 5.2%)
RISK_FREE_TICKER = os.environ.get("RISK_FREE_TICKER", "^IRX")

MARKET_DATA_CACHE_TTL_SECONDS = _env_int("MARKET_DATA_CACHE_TTL_SECONDS", 60 * 60)
MARKET_DATA_CACHE_SIZE = _env_int("MARKET_DATA_CACHE_SIZE", 32)

# Extra calendar days fetched on each side of the requested range
MARKET_DATA_PADDING_DAYS = _env_int("MARKET_DATA_PADDING_DAYS", 7)
MARKET_DATA_FETCH_ATTEMPTS = 3

# ============================================================
# ANALYSIS PARAMETERS
# ============================================================
MONTHS_PER_YEAR = 12

# Prior calendar years evaluated after YTD
MAX_PRIOR_YEARS = 4

CUMULATIVE_PERIOD_NAME = "3Y Cumulative"
CUMULATIVE_YEARS = 3
CHART_YEARS_BACK = 3

# Sample-size thresholds (resolved monthly returns)
RELIABLE_MONTHS = 12
RECOMMENDED_MONTHS = 36

MIN_BETA_OBSERVATIONS = 3

RETURN_DECIMALS = 4
RATIO_DECIMALS = 2

# ============================================================
# MONTE CARLO ASSUMPTIONS
# ============================================================
MONTE_CARLO_SIMULATIONS = _env_int("MONTE_CARLO_SIMULATIONS", 10000)

# Annual volatility per asset class; everything not listed is "other"
ASSET_CLASS_VOLATILITIES = {
    "stocks": 0.18,
    "bonds": 0.06,
    "cash": 0.01,
}
OTHER_ASSET_VOLATILITY = 0.12

# Long-term NOMINAL annual returns used for years 2+
LONG_TERM_NOMINAL_RETURNS = {
    "stocks": 0.10,
    "bonds": 0.05,
    "real_estate": 0.08,
    "commodities": 0.04,
    "cash": 0.03,
    "alternatives": 0.08,
}

# Never show 100% certainty to a client
MAX_DISPLAY_PROBABILITY = 0.99

# ============================================================
# LOGGING
# ============================================================
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")


def setup_logging(level=None):
    """Configure stdout logging for scripts and notebooks using the engine."""
    level_name = (level or LOG_LEVEL).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    # Reduce noise from the market data stack
    logging.getLogger("yfinance").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
