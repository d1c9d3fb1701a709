"""
Unit tests for the market data boundary and the portfolio CSV adapter.
"""

import io

import pandas as pd
import pytest

import config
import data_loader
from data_loader import (
    CachedMarketDataProvider,
    StaticMarketDataProvider,
    TTLMarketDataCache,
    YahooFinanceProvider,
    fetch_market_data,
    load_portfolio_csv,
    parse_csv_date,
    parse_csv_value,
    sniff_delimiter,
)
from errors import DataUnavailable, MalformedInput


# =============================================================================
# PROVIDERS
# =============================================================================


class TestStaticProvider:
    """Tests for the in-memory provider."""

    def test_returns_requested_window(self, static_provider):
        series = static_provider.fetch_history(config.BENCHMARK_TICKER, "2020-03-01", "2020-03-31")

        assert series.index[0] >= pd.Timestamp("2020-03-01")
        assert series.index[-1] <= pd.Timestamp("2020-03-31")
        assert len(static_provider.calls) == 1

    def test_unknown_symbol_unavailable(self, static_provider):
        with pytest.raises(DataUnavailable) as exc:
            static_provider.fetch_history("NOPE", "2020-01-01", "2020-12-31")

        assert exc.value.symbol == "NOPE"
        assert exc.value.code == "DATA_UNAVAILABLE"

    def test_empty_window_unavailable(self, static_provider):
        with pytest.raises(DataUnavailable):
            static_provider.fetch_history(config.BENCHMARK_TICKER, "2030-01-01", "2030-12-31")


class TestCachedProvider:
    """Tests for range-containment caching."""

    def test_contained_range_served_from_cache(self, static_provider, market_cache):
        """
        GIVEN a cached full-year pull
        WHEN I request a quarter inside it
        THEN the provider is not called again and the window is trimmed
        """
        cached = CachedMarketDataProvider(static_provider, market_cache)

        cached.fetch_history(config.BENCHMARK_TICKER, "2020-01-01", "2020-12-31")
        quarter = cached.fetch_history(config.BENCHMARK_TICKER, "2020-04-01", "2020-06-30")

        assert len(static_provider.calls) == 1
        assert quarter.index[0] >= pd.Timestamp("2020-04-01")
        assert quarter.index[-1] <= pd.Timestamp("2020-06-30")

    def test_wider_range_fetches_again(self, static_provider, market_cache):
        cached = CachedMarketDataProvider(static_provider, market_cache)

        cached.fetch_history(config.BENCHMARK_TICKER, "2020-04-01", "2020-06-30")
        cached.fetch_history(config.BENCHMARK_TICKER, "2020-01-01", "2020-12-31")

        assert len(static_provider.calls) == 2

    def test_ttl_cache_get_set(self):
        cache = TTLMarketDataCache(maxsize=2, ttl=60)
        series = pd.Series([1.0], index=pd.DatetimeIndex(["2024-01-02"]))

        cache.set(("X", 1, 2), series)

        assert cache.get(("X", 1, 2)) is series
        assert cache.get(("Y", 1, 2)) is None
        cache.clear()
        assert cache.keys() == []


class TestFetchMarketData:
    """Tests for the padded benchmark / risk-free pull."""

    def test_pads_range_and_fetches_both_symbols(self, static_provider, market_cache):
        benchmark, risk_free = fetch_market_data(
            "2022-01-10", "2022-06-30", provider=static_provider, cache=market_cache
        )

        assert [c[0] for c in static_provider.calls] == [config.BENCHMARK_TICKER, config.RISK_FREE_TICKER]
        assert static_provider.calls[0][1] == pd.Timestamp("2022-01-03")
        assert static_provider.calls[0][2] == pd.Timestamp("2022-07-07")
        assert benchmark.index[0] < pd.Timestamp("2022-01-10")
        assert (risk_free == 2.0).all()


class TestYahooFinanceProvider:
    """Tests for the yfinance adapter with the download patched out."""

    def test_prefers_close_and_strips_timezone(self, monkeypatch):
        index = pd.date_range("2024-01-02", periods=3, freq="D", tz="America/New_York")
        raw = pd.DataFrame(
            {"Adj Close": [1.0, 2.0, 3.0], "Close": [10.0, 11.0, 12.0]},
            index=index,
        )
        monkeypatch.setattr(data_loader.yf, "download", lambda *a, **k: raw.copy())

        series = YahooFinanceProvider().fetch_history("^SP500TR", "2024-01-01", "2024-01-31")

        assert list(series) == [10.0, 11.0, 12.0]
        assert series.index.tz is None
        assert series.index[0] == pd.Timestamp("2024-01-02")

    def test_retries_then_unavailable(self, monkeypatch):
        calls = []

        def empty_download(*args, **kwargs):
            calls.append(args)
            return pd.DataFrame()

        monkeypatch.setattr(data_loader.yf, "download", empty_download)

        with pytest.raises(DataUnavailable):
            YahooFinanceProvider(attempts=3).fetch_history("^IRX", "2024-01-01", "2024-01-31")

        assert len(calls) == 3

    def test_network_error_retried(self, monkeypatch):
        index = pd.date_range("2024-01-02", periods=2, freq="D")
        responses = [ConnectionError("reset"), pd.DataFrame({"Close": [5.1, 5.2]}, index=index)]

        def flaky_download(*args, **kwargs):
            outcome = responses.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        monkeypatch.setattr(data_loader.yf, "download", flaky_download)

        series = YahooFinanceProvider().fetch_history("^IRX", "2024-01-01", "2024-01-31")

        assert list(series) == [5.1, 5.2]


# =============================================================================
# CSV ADAPTER
# =============================================================================


class TestCsvParsing:
    """Tests for cell-level parsing."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("12/09/20", "2020-12-09"),
            ("1/5/99", "1999-01-05"),
            ("1/5/69", "1969-01-05"),
            ("1/5/68", "2068-01-05"),
            ("3/4/2021", "2021-03-04"),
            ("03/04/2021", "2021-03-04"),
            ("2021-03-04", "2021-03-04"),
        ],
    )
    def test_dates(self, raw, expected):
        assert parse_csv_date(raw) == pd.Timestamp(expected)

    @pytest.mark.parametrize("raw", ["13/45/20", "March 4", ""])
    def test_bad_dates(self, raw):
        with pytest.raises(MalformedInput):
            parse_csv_date(raw)

    @pytest.mark.parametrize(
        "raw,expected",
        [("$1,234.50", 1234.5), ("  100 ", 100.0), ("-", None), ("", None), ('"2,000"', 2000.0)],
    )
    def test_values(self, raw, expected):
        assert parse_csv_value(raw) == expected

    def test_bad_value(self):
        with pytest.raises(MalformedInput):
            parse_csv_value("n/a")

    @pytest.mark.parametrize(
        "header,expected",
        [("Date\tA\tB", "\t"), ("Date;A;B", ";"), ("Date,A,B", ",")],
    )
    def test_sniff_delimiter(self, header, expected):
        assert sniff_delimiter(header + "\n01/02/20\t1\t2\n") == expected


class TestLoadPortfolioCsv:
    """Tests for the wide-format portfolio file."""

    def test_tab_file_with_currency_formatting(self):
        """
        GIVEN a tab-delimited export with $ and thousands separators
        WHEN I load it
        THEN each column becomes a series and '-' cells are skipped
        """
        text = (
            "Date\tGrowth\tIncome\n"
            "12/31/19\t$100,000.00\t-\n"
            "01/02/20\t$101,250.50\t$50,000\n"
            "01/03/20\t$100,900.00\t$50,100\n"
        )

        portfolios = load_portfolio_csv(io.StringIO(text))

        assert list(portfolios) == ["Growth", "Income"]
        assert list(portfolios["Growth"]) == [100000.0, 101250.5, 100900.0]
        assert portfolios["Income"].index[0] == pd.Timestamp("2020-01-02")

    def test_comma_file_with_quoted_values(self, tmp_path):
        path = tmp_path / "portfolios.csv"
        path.write_text('Date,Model A\n2020-01-02,"1,000"\n2020-01-03,"1,010"\n\n', encoding="utf-8")

        portfolios = load_portfolio_csv(str(path))

        assert list(portfolios["Model A"]) == [1000.0, 1010.0]

    def test_unsorted_rows_sorted(self):
        text = "Date,A\n01/03/20,101\n01/02/20,100\n"

        series = load_portfolio_csv(io.StringIO(text))["A"]

        assert list(series) == [100.0, 101.0]

    def test_bad_date_raises(self):
        with pytest.raises(MalformedInput):
            load_portfolio_csv(io.StringIO("Date,A\nyesterday,100\n"))

    def test_needs_a_portfolio_column(self):
        with pytest.raises(MalformedInput):
            load_portfolio_csv(io.StringIO("Date\n01/02/20\n"))
