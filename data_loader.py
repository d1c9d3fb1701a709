import io
import logging
import re
import threading
from typing import Optional, Protocol, Tuple

import pandas as pd
import yfinance as yf
from cachetools import TTLCache

import config
from errors import DataUnavailable, MalformedInput
from financial_math import build_time_series, to_timestamp

logger = logging.getLogger(__name__)

# ============================================================
# PROVIDER PROTOCOLS
# ============================================================


class MarketDataProvider(Protocol):
    """
    Source of daily closes (benchmark) or quoted rates (risk-free).

    Implementations return a validated TimeSeries covering at most
    [start, end] and raise DataUnavailable when nothing is available.
    """

    def fetch_history(self, symbol: str, start, end) -> pd.Series:
        ...


class MarketDataCache(Protocol):
    """Key/value store for fetched series; entries may expire."""

    def get(self, key) -> Optional[pd.Series]:
        ...

    def set(self, key, series: pd.Series) -> None:
        ...


# ------------------------------------------------------------
# Yahoo Finance
# ------------------------------------------------------------

def _pick_close(raw: pd.DataFrame, symbol: str) -> pd.Series:
    # Prioritize Close (Standard); ^SP500TR already carries dividends
    if isinstance(raw.columns, pd.MultiIndex):
        level0 = raw.columns.get_level_values(0)
        if "Close" in level0:
            prices = raw.xs("Close", axis=1, level=0)
        elif "Adj Close" in level0:
            prices = raw.xs("Adj Close", axis=1, level=0)
        else:
            prices = raw.xs(level0[0], axis=1, level=0)
    else:
        cols = list(raw.columns)
        if "Close" in cols:
            prices = raw["Close"]
        elif "Adj Close" in cols:
            prices = raw["Adj Close"]
        else:
            prices = raw.iloc[:, 0]

    if isinstance(prices, pd.DataFrame):
        if symbol in prices.columns:
            prices = prices[symbol]
        else:
            prices = prices.iloc[:, 0]
    return prices


class YahooFinanceProvider:
    """Daily history from yfinance with a few retries for flaky responses."""

    def __init__(self, attempts: int = config.MARKET_DATA_FETCH_ATTEMPTS):
        self.attempts = max(1, attempts)

    def _download(self, symbol, start, end) -> pd.DataFrame:
        raw = pd.DataFrame()
        for attempt in range(1, self.attempts + 1):
            try:
                raw = yf.download(
                    symbol,
                    start=start.strftime("%Y-%m-%d"),
                    # yfinance treats `end` as exclusive
                    end=(end + pd.Timedelta(days=1)).strftime("%Y-%m-%d"),
                    progress=False,
                    auto_adjust=False,
                )
            except Exception as e:  # yfinance surfaces network errors untyped
                logger.warning("yfinance attempt %d/%d for %s failed: %s", attempt, self.attempts, symbol, e)
                continue
            if raw is not None and not raw.empty:
                return raw
            logger.warning("yfinance attempt %d/%d for %s returned no rows", attempt, self.attempts, symbol)
        return pd.DataFrame()

    def fetch_history(self, symbol: str, start, end) -> pd.Series:
        start = to_timestamp(start)
        end = to_timestamp(end)

        raw = self._download(symbol, start, end)
        if raw.empty:
            raise DataUnavailable(
                f"yfinance returned no data for {symbol} after {self.attempts} attempts",
                symbol=symbol,
            )

        # Strip timezones immediately (Yahoo sends exchange-local timestamps)
        if isinstance(raw.index, pd.DatetimeIndex) and raw.index.tz is not None:
            raw.index = raw.index.tz_localize(None)

        prices = _pick_close(raw, symbol).dropna()
        prices = prices[(prices.index >= start) & (prices.index <= end)].sort_index()
        if prices.empty:
            raise DataUnavailable(f"No {symbol} closes between {start:%Y-%m-%d} and {end:%Y-%m-%d}", symbol=symbol)

        return build_time_series(prices, label=symbol, allow_negative=True)


# ------------------------------------------------------------
# In-memory provider (tests / offline runs)
# ------------------------------------------------------------

class StaticMarketDataProvider:
    """Serves pre-loaded series by symbol and counts the fetches it answers."""

    def __init__(self, series_by_symbol: dict):
        self._series = {
            symbol.upper(): build_time_series(data, label=symbol, allow_negative=True)
            for symbol, data in series_by_symbol.items()
        }
        self.calls = []

    def fetch_history(self, symbol: str, start, end) -> pd.Series:
        self.calls.append((symbol, to_timestamp(start), to_timestamp(end)))

        series = self._series.get(symbol.upper())
        if series is None:
            raise DataUnavailable(f"No data loaded for {symbol}", symbol=symbol)

        window = series[(series.index >= to_timestamp(start)) & (series.index <= to_timestamp(end))]
        if window.empty:
            raise DataUnavailable(f"No {symbol} data between {start} and {end}", symbol=symbol)
        return window.copy()


# ------------------------------------------------------------
# Caching
# ------------------------------------------------------------

class TTLMarketDataCache:
    """Thread-safe TTL cache keyed by (symbol, start, end)."""

    def __init__(self, maxsize: int = config.MARKET_DATA_CACHE_SIZE, ttl: int = config.MARKET_DATA_CACHE_TTL_SECONDS):
        self._cache = TTLCache(maxsize=maxsize, ttl=ttl)
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            return self._cache.get(key)

    def set(self, key, series):
        with self._lock:
            self._cache[key] = series

    def keys(self):
        with self._lock:
            return list(self._cache.keys())

    def clear(self):
        with self._lock:
            self._cache.clear()


class CachedMarketDataProvider:
    """
    Wraps a provider so a request is answered from any cached entry for the
    same symbol whose date range contains it. Misses fetch and store.
    """

    def __init__(self, provider: MarketDataProvider, cache=None):
        self.provider = provider
        self.cache = cache if cache is not None else TTLMarketDataCache()

    def _lookup(self, symbol, start, end):
        direct = self.cache.get((symbol, start, end))
        if direct is not None:
            return direct

        for key in getattr(self.cache, "keys", lambda: [])():
            cached_symbol, cached_start, cached_end = key
            if cached_symbol != symbol or cached_start > start or cached_end < end:
                continue
            series = self.cache.get(key)
            if series is not None:
                return series
        return None

    def fetch_history(self, symbol: str, start, end) -> pd.Series:
        symbol = symbol.upper()
        start = to_timestamp(start)
        end = to_timestamp(end)

        cached = self._lookup(symbol, start, end)
        if cached is not None:
            logger.debug("Cache hit for %s %s..%s", symbol, start.date(), end.date())
            window = cached[(cached.index >= start) & (cached.index <= end)]
            if not window.empty:
                return window.copy()

        series = self.provider.fetch_history(symbol, start, end)
        self.cache.set((symbol, start, end), series)
        return series.copy()


# Shared cache so repeated runs in one process reuse the same pull
_MARKET_DATA_CACHE = TTLMarketDataCache()


def fetch_market_data(start, end, provider=None, cache=None) -> Tuple[pd.Series, pd.Series]:
    """
    Fetch (benchmark closes, risk-free rates) once each for [start, end],
    padded by MARKET_DATA_PADDING_DAYS so holidays at either edge still
    have a prior close to forward-fill from.
    """
    padding = pd.Timedelta(days=config.MARKET_DATA_PADDING_DAYS)
    start = to_timestamp(start) - padding
    end = to_timestamp(end) + padding

    source = CachedMarketDataProvider(
        provider or YahooFinanceProvider(),
        cache if cache is not None else _MARKET_DATA_CACHE,
    )

    logger.info(
        "Fetching %s and %s from %s to %s",
        config.BENCHMARK_TICKER,
        config.RISK_FREE_TICKER,
        start.date(),
        end.date(),
    )
    benchmark = source.fetch_history(config.BENCHMARK_TICKER, start, end)
    risk_free = source.fetch_history(config.RISK_FREE_TICKER, start, end)
    return benchmark, risk_free


# ============================================================
# PORTFOLIO CSV
# ============================================================

CSV_DATE_FORMATS = ("%m/%d/%y", "%m/%d/%Y", "%Y-%m-%d")


def parse_csv_date(raw: str) -> pd.Timestamp:
    """Parse MM/DD/YY, MM/DD/YYYY or YYYY-MM-DD; two-digit years 69-99 are 19xx."""
    text = str(raw).strip().strip("\"'")

    for fmt in CSV_DATE_FORMATS:
        try:
            parsed = pd.to_datetime(text, format=fmt)
        except (ValueError, TypeError):
            continue
        if not pd.isna(parsed):
            return parsed

    raise MalformedInput(f"Unparseable date {raw!r}")


def parse_csv_value(raw: str):
    """Numeric cell with $ and thousands separators stripped; blanks and '-' are None."""
    if raw is None or pd.isna(raw):
        return None
    text = str(raw).strip().strip("\"'")
    if text in ("", "-"):
        return None

    cleaned = re.sub(r"[$,\s]", "", text)
    try:
        return float(cleaned)
    except ValueError:
        raise MalformedInput(f"Unparseable value {raw!r}")


def sniff_delimiter(text: str) -> str:
    header = next((line for line in text.splitlines() if line.strip()), "")
    if "\t" in header:
        return "\t"
    if ";" in header and "," not in header:
        return ";"
    return ","


def load_portfolio_csv(path_or_buffer) -> dict:
    """
    Read a wide CSV (Date, Portfolio A, Portfolio B, ...) into one
    TimeSeries per portfolio column.

    The delimiter is sniffed from the header (tab, semicolon, else comma).
    Empty, '-' and non-positive cells are skipped so a portfolio can start
    later than the file.
    """
    if hasattr(path_or_buffer, "read"):
        text = path_or_buffer.read()
    else:
        with open(path_or_buffer, encoding="utf-8-sig") as fh:
            text = fh.read()
    if isinstance(text, bytes):
        text = text.decode("utf-8-sig")

    try:
        df = pd.read_csv(
            io.StringIO(text),
            sep=sniff_delimiter(text),
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
        )
    except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise MalformedInput(f"Could not read portfolio CSV: {e}")

    df.columns = [str(c).strip().strip("\"'") for c in df.columns]
    if len(df.columns) < 2:
        raise MalformedInput("CSV must have a Date column and at least one portfolio column")

    date_col, names = df.columns[0], list(df.columns[1:])
    df = df[df[date_col].str.strip() != ""]
    if df.empty:
        raise MalformedInput("CSV has no data rows")

    dates = [parse_csv_date(d) for d in df[date_col]]

    portfolios = {}
    for name in names:
        points = []
        for ts, cell in zip(dates, df[name]):
            value = parse_csv_value(cell)
            if value is None or value <= 0:
                continue
            points.append((ts, value))

        if not points:
            logger.warning("Portfolio column %r has no values; skipping", name)
            continue

        points.sort(key=lambda p: p[0])
        portfolios[name] = build_time_series(points, label=name)

    if not portfolios:
        raise MalformedInput("CSV contains no portfolio values")
    return portfolios
