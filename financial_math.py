import logging
import math
from datetime import date, datetime

import numpy as np
import pandas as pd

import config
from analysis_models import PeriodDefinition, PeriodMetrics, SeriesMetrics, ValuePoint
from errors import DataUnavailable, InsufficientData, MalformedInput

logger = logging.getLogger(__name__)

# ============================================================
# CONFIG / CONSTANTS
# ============================================================

# Aligned daily frame
PORTFOLIO_VALUE = "portfolio_value"
PORTFOLIO_RETURN = "portfolio_return"
BENCHMARK_VALUE = "benchmark_value"
BENCHMARK_RETURN = "benchmark_return"
RISK_FREE_RATE = "risk_free_rate"  # annual, percent units (^IRX style)

ALIGNED_COLUMNS = [
    PORTFOLIO_VALUE,
    PORTFOLIO_RETURN,
    BENCHMARK_VALUE,
    BENCHMARK_RETURN,
    RISK_FREE_RATE,
]

# Monthly frame (adds to the value/rate columns above)
RF_MONTHLY = "rf_monthly"
PORTFOLIO_EXCESS = "portfolio_excess"
BENCHMARK_EXCESS = "benchmark_excess"

MONTHLY_COLUMNS = [
    PORTFOLIO_VALUE,
    BENCHMARK_VALUE,
    RISK_FREE_RATE,
    PORTFOLIO_RETURN,
    BENCHMARK_RETURN,
    RF_MONTHLY,
    PORTFOLIO_EXCESS,
    BENCHMARK_EXCESS,
]

ROLE_COLUMNS = {
    "portfolio": (PORTFOLIO_VALUE, PORTFOLIO_RETURN),
    "benchmark": (BENCHMARK_VALUE, BENCHMARK_RETURN),
}


# ------------------------------------------------------------
# Time series construction & validation
# ------------------------------------------------------------

def to_timestamp(value) -> pd.Timestamp:
    """Coerce a date-like value to a tz-naive midnight Timestamp."""
    if isinstance(value, pd.Timestamp):
        ts = value
    elif isinstance(value, (datetime, date, np.datetime64)):
        ts = pd.Timestamp(value)
    elif isinstance(value, str):
        try:
            ts = pd.Timestamp(value.strip())
        except (ValueError, TypeError) as e:
            raise MalformedInput(f"Unparseable date {value!r}: {e}")
    else:
        raise MalformedInput(f"Unsupported date value {value!r}")

    if ts is pd.NaT or pd.isna(ts):
        raise MalformedInput(f"Missing date value {value!r}")
    if ts.tzinfo is not None:
        ts = ts.tz_localize(None)
    return ts.normalize()


def _parse_value(raw, position: int, allow_negative: bool) -> float:
    if isinstance(raw, bool):
        raise MalformedInput(f"Row {position}: boolean is not a value")
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise MalformedInput(f"Row {position}: unparseable value {raw!r}")
    if not math.isfinite(value):
        raise MalformedInput(f"Row {position}: value must be finite, got {raw!r}")
    if value < 0 and not allow_negative:
        raise MalformedInput(f"Row {position}: value must be non-negative, got {value}")
    return value


def _split_point(point, position: int):
    if isinstance(point, ValuePoint):
        return point.date, point.value
    if isinstance(point, dict):
        if "date" not in point or "value" not in point:
            raise MalformedInput(f"Row {position}: expected 'date' and 'value' keys")
        return point["date"], point["value"]
    try:
        raw_date, raw_value = point
    except (TypeError, ValueError):
        raise MalformedInput(f"Row {position}: expected a (date, value) pair, got {point!r}")
    return raw_date, raw_value


def validate_time_series(series: pd.Series, label: str = "series", allow_negative: bool = False) -> pd.Series:
    """
    Fail fast unless `series` is a non-empty float Series on a strictly
    increasing DatetimeIndex with finite (and, by default, non-negative) values.
    """
    if not isinstance(series, pd.Series):
        raise MalformedInput(f"{label}: expected a pandas Series, got {type(series).__name__}")
    if series.empty:
        raise MalformedInput(f"{label}: time series is empty")
    if not isinstance(series.index, pd.DatetimeIndex):
        raise MalformedInput(f"{label}: index must be a DatetimeIndex")
    if series.index.hasnans:
        raise MalformedInput(f"{label}: index contains missing dates")

    idx = series.index
    if idx.has_duplicates:
        dupes = idx[idx.duplicated()].unique()
        raise MalformedInput(
            f"{label}: duplicate dates {', '.join(d.strftime('%Y-%m-%d') for d in dupes[:3])}"
        )
    if not idx.is_monotonic_increasing:
        out_of_order = np.flatnonzero(idx[1:] <= idx[:-1])[0] + 1
        raise MalformedInput(
            f"{label}: dates must be strictly increasing "
            f"({idx[out_of_order - 1]:%Y-%m-%d} followed by {idx[out_of_order]:%Y-%m-%d})"
        )

    values = series.to_numpy(dtype=float)
    if not np.isfinite(values).all():
        raise MalformedInput(f"{label}: values must be finite")
    if not allow_negative and (values < 0).any():
        raise MalformedInput(f"{label}: values must be non-negative")
    return series


def build_time_series(points, label: str = "series", allow_negative: bool = False) -> pd.Series:
    """
    Build a validated TimeSeries from `{date, value}` mappings, ValuePoints,
    (date, value) pairs or an existing Series.

    Duplicate dates keep the LAST observation. Out-of-order dates are an
    error rather than something to silently sort away.
    """
    if isinstance(points, pd.Series):
        series = points.copy()
        try:
            series.index = pd.DatetimeIndex([to_timestamp(d) for d in series.index])
            series = series.astype(float)
        except (TypeError, ValueError) as e:
            raise MalformedInput(f"{label}: {e}")
    else:
        dates = []
        values = []
        for position, point in enumerate(points):
            raw_date, raw_value = _split_point(point, position)
            dates.append(to_timestamp(raw_date))
            values.append(_parse_value(raw_value, position, allow_negative))
        series = pd.Series(values, index=pd.DatetimeIndex(dates), dtype=float)

    if series.empty:
        raise MalformedInput(f"{label}: time series is empty")

    dupes = series.index.duplicated(keep="last")
    if dupes.any():
        logger.debug("%s: dropping %d duplicate-date observations", label, int(dupes.sum()))
        series = series[~dupes]

    series.index.name = "date"
    series.name = label
    return validate_time_series(series, label=label, allow_negative=allow_negative)


def coerce_time_series(data, label: str, allow_negative: bool = False) -> pd.Series:
    """Series are validated as-is; anything else goes through build_time_series."""
    if isinstance(data, pd.Series):
        return validate_time_series(data, label=label, allow_negative=allow_negative)
    return build_time_series(data, label=label, allow_negative=allow_negative)


def prepare_market_series(benchmark_raw, risk_free_raw):
    """Validate the two market inputs, raising DataUnavailable when either is empty."""
    if benchmark_raw is None or len(benchmark_raw) == 0:
        raise DataUnavailable("No benchmark data available for the requested range")
    if risk_free_raw is None or len(risk_free_raw) == 0:
        raise DataUnavailable("No risk-free rate data available for the requested range")

    benchmark = coerce_time_series(benchmark_raw, "benchmark")
    risk_free = coerce_time_series(risk_free_raw, "risk_free", allow_negative=True)
    return benchmark, risk_free


# ------------------------------------------------------------
# Series Normalizer
# ------------------------------------------------------------

def _simple_returns(values: pd.Series) -> pd.Series:
    rets = values / values.shift(1) - 1
    rets.iloc[0] = 0.0
    return rets


def normalize(portfolio_series, benchmark_raw_prices, risk_free_raw_rates) -> pd.DataFrame:
    """
    Align a portfolio value series with benchmark closes and risk-free rates.

      - Benchmark and risk-free observations are left-joined onto the
        portfolio's dates. Benchmark gaps (holidays on the index calendar)
        are forward-filled from the last known close, including closes that
        precede the first portfolio date.
      - Risk-free rates are forward-filled, then back-filled to cover a
        leading gap.
      - Portfolio dates before any benchmark observation are dropped.
      - Daily returns are simple pct-changes; the first row's return is 0.

    The benchmark column is rescaled so its first aligned value EQUALS the
    portfolio's first value: an equal-dollars-invested-at-inception
    comparison, not an index based at 100. Percentage returns are unchanged
    by the rescale but the dollar level is portfolio-relative.
    """
    benchmark, risk_free = prepare_market_series(benchmark_raw_prices, risk_free_raw_rates)
    portfolio = coerce_time_series(portfolio_series, "portfolio")

    dates = portfolio.index

    # Forward-fill across the union so pre-inception closes can seed the first rows
    bench_close = benchmark.reindex(dates.union(benchmark.index)).ffill().reindex(dates)
    rf_rate = risk_free.reindex(dates.union(risk_free.index)).ffill().bfill().reindex(dates)

    frame = pd.DataFrame(
        {
            PORTFOLIO_VALUE: portfolio.astype(float),
            "benchmark_close": bench_close,
            RISK_FREE_RATE: rf_rate,
        },
        index=dates,
    )

    missing = frame["benchmark_close"].isna()
    if missing.any():
        logger.warning(
            "Dropping %d portfolio dates before the first benchmark observation (%s)",
            int(missing.sum()),
            benchmark.index[0].strftime("%Y-%m-%d"),
        )
        frame = frame[~missing].copy()

    if frame.empty:
        raise DataUnavailable("No overlapping data between portfolio and benchmark")

    port_start = frame[PORTFOLIO_VALUE].iloc[0]
    bench_start = frame["benchmark_close"].iloc[0]
    if port_start <= 0:
        raise MalformedInput(
            f"portfolio: first value on {frame.index[0]:%Y-%m-%d} must be positive to anchor the benchmark"
        )
    if bench_start <= 0:
        raise MalformedInput(f"benchmark: first close on {frame.index[0]:%Y-%m-%d} must be positive")

    frame[BENCHMARK_VALUE] = frame["benchmark_close"] / bench_start * port_start
    frame[PORTFOLIO_RETURN] = _simple_returns(frame[PORTFOLIO_VALUE])
    frame[BENCHMARK_RETURN] = _simple_returns(frame[BENCHMARK_VALUE])

    aligned = frame[ALIGNED_COLUMNS].copy()
    aligned.index.name = "date"
    return aligned


# ------------------------------------------------------------
# Period Resampler
# ------------------------------------------------------------

def slice_period(aligned: pd.DataFrame, start_date=None, end_date=None) -> pd.DataFrame:
    """Rows of `aligned` within [start_date, end_date] (inclusive, either bound optional)."""
    mask = np.ones(len(aligned), dtype=bool)
    if start_date is not None:
        mask &= aligned.index >= to_timestamp(start_date)
    if end_date is not None:
        mask &= aligned.index <= to_timestamp(end_date)
    return aligned.loc[mask]


def to_monthly(aligned: pd.DataFrame, start_date=None, end_date=None) -> pd.DataFrame:
    """
    Month-end resample (Morningstar convention) of the aligned rows in
    [start_date, end_date].

    One row per calendar month: last portfolio value, last benchmark value,
    mean risk-free rate. The first month's returns and excess returns are
    NaN and drop out of every statistic downstream.
    """
    daily = slice_period(aligned, start_date, end_date)
    if daily.empty:
        empty = pd.DataFrame(columns=MONTHLY_COLUMNS, dtype=float)
        empty.index = pd.PeriodIndex([], freq="M", name="year_month")
        return empty

    grouped = daily.groupby(daily.index.to_period("M"))
    monthly = pd.DataFrame(
        {
            PORTFOLIO_VALUE: grouped[PORTFOLIO_VALUE].last(),
            BENCHMARK_VALUE: grouped[BENCHMARK_VALUE].last(),
            RISK_FREE_RATE: grouped[RISK_FREE_RATE].mean(),
        }
    )
    monthly.index.name = "year_month"

    monthly[PORTFOLIO_RETURN] = monthly[PORTFOLIO_VALUE] / monthly[PORTFOLIO_VALUE].shift(1) - 1
    monthly[BENCHMARK_RETURN] = monthly[BENCHMARK_VALUE] / monthly[BENCHMARK_VALUE].shift(1) - 1

    # Annual percent -> monthly decimal
    monthly[RF_MONTHLY] = monthly[RISK_FREE_RATE] / 100.0 / config.MONTHS_PER_YEAR
    monthly[PORTFOLIO_EXCESS] = monthly[PORTFOLIO_RETURN] - monthly[RF_MONTHLY]
    monthly[BENCHMARK_EXCESS] = monthly[BENCHMARK_RETURN] - monthly[RF_MONTHLY]

    return monthly[MONTHLY_COLUMNS]


def average_risk_free_rate(monthly: pd.DataFrame):
    """Mean annual risk-free rate over the period's months, as a decimal."""
    if monthly.empty:
        return None
    rates = monthly[RISK_FREE_RATE].dropna()
    if rates.empty:
        return None
    return float(rates.mean()) / 100.0


# ------------------------------------------------------------
# Statistics
# ------------------------------------------------------------

def _is_constant(values: np.ndarray) -> bool:
    return bool(len(values) > 0 and (values == values[0]).all())


def annualized_std_dev(monthly_returns):
    """Population std-dev of the non-null monthly returns times sqrt(12)."""
    rets = pd.Series(monthly_returns, dtype=float).dropna().to_numpy()
    if len(rets) < 2:
        return None
    if _is_constant(rets):
        return 0.0
    return float(np.std(rets, ddof=0)) * math.sqrt(config.MONTHS_PER_YEAR)


def _paired(a, b) -> pd.DataFrame:
    return pd.concat(
        [pd.Series(a, dtype=float).rename("a"), pd.Series(b, dtype=float).rename("b")],
        axis=1,
    ).dropna()


def calculate_beta(portfolio_excess, benchmark_excess):
    """
    Cov(portfolio excess, benchmark excess) / Var(benchmark excess) over
    paired months. None below MIN_BETA_OBSERVATIONS pairs or when the
    benchmark excess has zero variance.
    """
    paired = _paired(portfolio_excess, benchmark_excess)
    n = len(paired)
    if n < config.MIN_BETA_OBSERVATIONS:
        return None

    y = paired["a"].to_numpy()
    x = paired["b"].to_numpy()
    if _is_constant(x):
        return None

    x_dev = x - x.mean()
    y_dev = y - y.mean()
    variance = float((x_dev * x_dev).sum()) / (n - 1)
    if variance == 0:
        return None
    covariance = float((y_dev * x_dev).sum()) / (n - 1)
    return covariance / variance


def calculate_alpha(portfolio_excess, benchmark_excess, beta):
    """Jensen's alpha, annualized: (mean Rp-Rf - beta * mean Rb-Rf) * 12."""
    if beta is None:
        return None
    paired = _paired(portfolio_excess, benchmark_excess)
    if len(paired) < config.MIN_BETA_OBSERVATIONS:
        return None
    return (float(paired["a"].mean()) - beta * float(paired["b"].mean())) * config.MONTHS_PER_YEAR


def sharpe_ratio(total_return, risk_free_annual, std_dev):
    if total_return is None or std_dev is None or std_dev == 0:
        return None
    rf = risk_free_annual or 0.0
    value = (total_return - rf) / std_dev
    return value if math.isfinite(value) else None


def compute_drawdown_series(values) -> pd.Series:
    """
    Drawdown vs the running high-water mark: value / cummax(value) - 1.
    Always within [-1, 0] for non-negative values.
    """
    series = pd.Series(values, dtype=float).dropna()
    if series.empty:
        return pd.Series(dtype=float)

    hwm = series.cummax()
    drawdown = series / hwm - 1
    # A zero high-water mark means nothing was ever invested
    return drawdown.where(hwm > 0, 0.0)


def max_drawdown(values):
    drawdown = compute_drawdown_series(values)
    if drawdown.empty:
        return None
    return min(float(drawdown.min()), 0.0)


def capture_ratio(portfolio_returns, benchmark_returns, up: bool = True):
    """
    Compound portfolio return over the months the benchmark rose (up=True)
    or fell (up=False), divided by the benchmark's compound return over the
    same months.
    """
    paired = _paired(portfolio_returns, benchmark_returns)
    mask = paired["b"] > 0 if up else paired["b"] < 0
    if not mask.any():
        return None

    port_compound = float((1 + paired.loc[mask, "a"]).prod()) - 1
    bench_compound = float((1 + paired.loc[mask, "b"]).prod()) - 1
    if bench_compound == 0:
        return None
    return port_compound / bench_compound


def round_metric(value, decimals: int):
    """Round for presentation; None/NaN/inf become None and -0.0 becomes 0.0."""
    if value is None:
        return None
    value = float(value)
    if not math.isfinite(value):
        return None
    # Halves round toward +inf
    scale = 10 ** decimals
    rounded = math.floor(value * scale + 0.5) / scale
    return 0.0 if rounded == 0 else rounded


# ------------------------------------------------------------
# Metrics Engine
# ------------------------------------------------------------

def compute_series_metrics(
    period_daily: pd.DataFrame,
    period_monthly: pd.DataFrame,
    role: str = "portfolio",
    risk_free_annual=None,
) -> SeriesMetrics:
    """
    Statistic set for one series role over one period (unrounded).

    Daily data drives total return and max drawdown; monthly data drives
    volatility, beta, alpha, Sharpe and capture. The benchmark evaluated
    against itself has alpha 0, beta 1 and capture 1 by construction.
    """
    if role not in ROLE_COLUMNS:
        raise ValueError(f"Unsupported series role: {role}")
    value_col, return_col = ROLE_COLUMNS[role]

    values = period_daily[value_col].dropna()
    total_return = None
    if len(values) >= 2 and values.iloc[0] > 0:
        total_return = float(values.iloc[-1] / values.iloc[0]) - 1

    if risk_free_annual is None:
        risk_free_annual = average_risk_free_rate(period_monthly)

    std = annualized_std_dev(period_monthly[return_col])
    sharpe = sharpe_ratio(total_return, risk_free_annual, std)
    mdd = max_drawdown(values)

    if role == "benchmark":
        alpha, beta, up, down = 0.0, 1.0, 1.0, 1.0
    else:
        beta = calculate_beta(period_monthly[PORTFOLIO_EXCESS], period_monthly[BENCHMARK_EXCESS])
        alpha = calculate_alpha(period_monthly[PORTFOLIO_EXCESS], period_monthly[BENCHMARK_EXCESS], beta)
        up = capture_ratio(period_monthly[PORTFOLIO_RETURN], period_monthly[BENCHMARK_RETURN], up=True)
        down = capture_ratio(period_monthly[PORTFOLIO_RETURN], period_monthly[BENCHMARK_RETURN], up=False)

    return SeriesMetrics(
        total_return=total_return,
        std_dev=std,
        alpha=alpha,
        beta=beta,
        sharpe_ratio=sharpe,
        max_drawdown=mdd,
        up_capture=up,
        down_capture=down,
    )


def calculate_period_metrics(aligned: pd.DataFrame, period: PeriodDefinition) -> PeriodMetrics:
    """
    Compute and round the full metric set for one period.

    Raises InsufficientData when the period holds fewer than two daily rows;
    every other unmet precondition only nulls the affected statistic.
    """
    daily = slice_period(aligned, period.start_date, period.end_date)
    if len(daily) < 2:
        raise InsufficientData(f"Insufficient data for period {period.name}")

    monthly = to_monthly(aligned, period.start_date, period.end_date)
    rf_annual = average_risk_free_rate(monthly)

    port = compute_series_metrics(daily, monthly, "portfolio", rf_annual)
    bench = compute_series_metrics(daily, monthly, "benchmark", rf_annual)

    excess = None
    if port.total_return is not None and bench.total_return is not None:
        excess = port.total_return - bench.total_return

    r4 = config.RETURN_DECIMALS
    r2 = config.RATIO_DECIMALS

    return PeriodMetrics(
        period_name=period.name,
        start_date=daily.index[0].date(),
        end_date=daily.index[-1].date(),
        portfolio_return=round_metric(port.total_return, r4),
        benchmark_return=round_metric(bench.total_return, r4),
        excess_return=round_metric(excess, r4),
        # Portfolio metrics
        portfolio_std_dev=round_metric(port.std_dev, r4),
        portfolio_alpha=round_metric(port.alpha, r4),
        portfolio_beta=round_metric(port.beta, r2),
        portfolio_sharpe_ratio=round_metric(port.sharpe_ratio, r2),
        portfolio_max_drawdown=round_metric(port.max_drawdown, r4),
        portfolio_up_capture=round_metric(port.up_capture, r2),
        portfolio_down_capture=round_metric(port.down_capture, r2),
        # Benchmark metrics
        benchmark_std_dev=round_metric(bench.std_dev, r4),
        benchmark_alpha=bench.alpha,
        benchmark_beta=bench.beta,
        benchmark_sharpe_ratio=round_metric(bench.sharpe_ratio, r2),
        benchmark_max_drawdown=round_metric(bench.max_drawdown, r4),
        benchmark_up_capture=bench.up_capture,
        benchmark_down_capture=bench.down_capture,
        # Context
        risk_free_rate=round_metric(rf_annual, r4),
        num_months=int(monthly[PORTFOLIO_RETURN].notna().sum()),
    )
