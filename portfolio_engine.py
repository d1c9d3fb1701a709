import logging
import re
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import pandas as pd

import config
from analysis_models import (
    AnalysisResult,
    ChartSeries,
    ComparisonData,
    MultiPortfolioResult,
    PeriodDefinition,
)
from data_loader import fetch_market_data
from errors import AnalyticsError, InsufficientData, MalformedInput
from financial_math import (
    BENCHMARK_VALUE,
    PORTFOLIO_VALUE,
    calculate_period_metrics,
    coerce_time_series,
    normalize,
    prepare_market_series,
    round_metric,
    slice_period,
    to_timestamp,
)

logger = logging.getLogger(__name__)

# Failures inside a single period never abort the analysis
RECOVERABLE_ERRORS = (AnalyticsError, ValueError, ArithmeticError)

# (comparison key, PeriodMetrics suffix, display name)
COMPARISON_METRICS = [
    ("return", "return", "Returns"),
    ("std_dev", "std_dev", "Risk (Std Dev)"),
    ("alpha", "alpha", "Alpha"),
    ("beta", "beta", "Beta"),
    ("sharpe", "sharpe_ratio", "Sharpe Ratio"),
    ("max_drawdown", "max_drawdown", "Max Drawdown"),
    ("up_capture", "up_capture", "Up Capture"),
    ("down_capture", "down_capture", "Down Capture"),
]


def _reason(exc):
    return getattr(exc, "message", None) or str(exc) or type(exc).__name__


# =============================================================
# PERIOD RESOLUTION
# =============================================================

def _last_on_or_before(index: pd.DatetimeIndex, ts: pd.Timestamp):
    eligible = index[index <= ts]
    return eligible[-1] if len(eligible) else None


def _last_before(index: pd.DatetimeIndex, ts: pd.Timestamp):
    eligible = index[index < ts]
    return eligible[-1] if len(eligible) else None


def _as_of(aligned: pd.DataFrame, as_of=None) -> pd.Timestamp:
    if as_of is None:
        return aligned.index[-1]
    return to_timestamp(as_of)


def generate_periods(aligned: pd.DataFrame, as_of=None):
    """
    Auto-generate YTD plus up to MAX_PRIOR_YEARS full calendar years.

    Period starts snap to the last trading day BEFORE the boundary (the
    return is measured from the prior close); ends snap to the last trading
    day on or before it. A year is only offered when the data has a trading
    day before its Jan 1 and a December close inside it.
    """
    index = aligned.index
    as_of_ts = _as_of(aligned, as_of)
    periods = []

    jan1 = pd.Timestamp(year=as_of_ts.year, month=1, day=1)
    ytd_start = _last_before(index, jan1)
    ytd_end = _last_on_or_before(index, as_of_ts)
    if ytd_start is not None and ytd_end is not None and ytd_end > ytd_start:
        periods.append(PeriodDefinition("YTD", ytd_start.date(), ytd_end.date()))

    for year in range(as_of_ts.year - 1, as_of_ts.year - 1 - config.MAX_PRIOR_YEARS, -1):
        start = _last_before(index, pd.Timestamp(year=year, month=1, day=1))
        end = _last_on_or_before(index, pd.Timestamp(year=year, month=12, day=31))
        if start is None or end is None:
            continue
        if end.year != year or end.month != 12:
            continue
        periods.append(PeriodDefinition(str(year), start.date(), end.date()))

    return periods


def generate_3y_period(aligned: pd.DataFrame, as_of=None):
    """Trailing window back to as-of minus CUMULATIVE_YEARS, or None if the data is too short."""
    index = aligned.index
    as_of_ts = _as_of(aligned, as_of)
    target = as_of_ts - pd.DateOffset(years=config.CUMULATIVE_YEARS)

    if index[0] > target:
        return None

    start = _last_on_or_before(index, target)
    end = _last_on_or_before(index, as_of_ts)
    if start is None or end is None or end <= start:
        return None
    return PeriodDefinition(config.CUMULATIVE_PERIOD_NAME, start.date(), end.date())


def _coerce_period(item) -> PeriodDefinition:
    if isinstance(item, PeriodDefinition):
        return item
    try:
        if isinstance(item, dict):
            return PeriodDefinition(item["name"], item["start_date"], item["end_date"])
        name, start, end = item
    except (KeyError, TypeError, ValueError):
        raise MalformedInput(f"Period {item!r}: expected name, start_date, end_date")
    return PeriodDefinition(name, start, end)


def resolve_periods(aligned: pd.DataFrame, periods):
    """
    Snap caller-supplied periods onto trading days in `aligned`.

    Returns (resolved, warnings); a period that cannot be placed inside the
    data is reported rather than raised.
    """
    index = aligned.index
    resolved = []
    warnings = []

    for item in periods:
        period = _coerce_period(item)
        try:
            start = _last_on_or_before(index, to_timestamp(period.start_date))
            end = _last_on_or_before(index, to_timestamp(period.end_date))
        except AnalyticsError as e:
            warnings.append(f"{period.name}: Could not calculate - {_reason(e)}")
            continue

        if start is None:
            # Window opens before the data; measure from the first observation
            start = index[0]
        if end is None or end <= start:
            warnings.append(f"{period.name}: Could not calculate - no data within the requested range")
            continue

        resolved.append(PeriodDefinition(period.name, start.date(), end.date()))

    return resolved, warnings


def sample_size_warning(period_name: str, num_months: int):
    if num_months < config.RELIABLE_MONTHS:
        return f"{period_name}: Only {num_months} months of data. Results may be unreliable."
    if num_months < config.RECOMMENDED_MONTHS:
        return (
            f"{period_name}: {num_months} months is below the recommended "
            f"{config.RECOMMENDED_MONTHS} months for statistical reliability."
        )
    return None


def _evaluate(aligned, period, warnings):
    try:
        metrics = calculate_period_metrics(aligned, period)
    except RECOVERABLE_ERRORS as e:
        logger.warning("Period %s skipped: %s", period.name, _reason(e))
        warnings.append(f"{period.name}: Could not calculate - {_reason(e)}")
        return None

    notice = sample_size_warning(period.name, metrics.num_months)
    if notice:
        warnings.append(notice)
    return metrics


# =============================================================
# CHART
# =============================================================

def generate_chart_data(
    aligned: pd.DataFrame,
    portfolio_name: str,
    as_of=None,
    years_back: int = config.CHART_YEARS_BACK,
    benchmark_name: str = config.BENCHMARK_NAME,
) -> ChartSeries:
    """
    Cumulative returns over the trailing `years_back` window (or the full
    span if shorter). Both series are re-anchored to 0.0 at the window's
    first date, independently of the statistics' anchors.
    """
    as_of_ts = _as_of(aligned, as_of)
    window_start = max(aligned.index[0], as_of_ts - pd.DateOffset(years=years_back))
    window = slice_period(aligned, window_start, as_of_ts)
    if window.empty:
        raise InsufficientData("No data inside the chart window")

    port = window[PORTFOLIO_VALUE]
    bench = window[BENCHMARK_VALUE]
    port_cum = [round_metric(v, config.RETURN_DECIMALS) for v in (port / port.iloc[0] - 1)]
    bench_cum = [round_metric(v, config.RETURN_DECIMALS) for v in (bench / bench.iloc[0] - 1)]

    return ChartSeries(
        dates=tuple(ts.date() for ts in window.index),
        portfolio_returns=tuple(port_cum),
        benchmark_returns=tuple(bench_cum),
        portfolio_name=portfolio_name,
        benchmark_name=benchmark_name,
        start_date=window.index[0].date(),
        end_date=window.index[-1].date(),
        portfolio_final_return=port_cum[-1],
        benchmark_final_return=bench_cum[-1],
        chart_title=f"{years_back}-Year Cumulative Returns vs {benchmark_name}",
    )


# =============================================================
# SINGLE PORTFOLIO
# =============================================================

def get_methodology(benchmark_name: str = config.BENCHMARK_NAME) -> dict:
    return {
        "benchmark": f"{benchmark_name} ({config.BENCHMARK_TICKER}), rescaled to the portfolio's first value",
        "risk_free_rate": f"3-Month Treasury Bill ({config.RISK_FREE_TICKER}), annual percent, averaged per month",
        "frequency": "Month-end observations for every period, annualized with sqrt(12)",
        "std_dev": "Population standard deviation of monthly returns x sqrt(12)",
        "max_drawdown": "Daily data for true peak-to-trough calculation",
        "beta_formula": "Cov(Portfolio Excess, Benchmark Excess) / Var(Benchmark Excess)",
        "alpha_formula": "Jensen's Alpha: (Avg Excess - Beta x Benchmark Excess) x 12",
        "sharpe_formula": "(Period Return - Avg Risk-Free Rate) / Annualized Std Dev",
        "capture_formula": "Compound return in up/down months divided by benchmark compound",
        "periods": f"YTD, up to {config.MAX_PRIOR_YEARS} prior full years, {config.CUMULATIVE_PERIOD_NAME}",
        "chart_data": "Cumulative returns starting from 0% at the chart window start",
        "rounding": "Returns, alpha, std dev, drawdown: 4 dp; beta, Sharpe, capture: 2 dp",
    }


def analyze_portfolio(
    portfolio,
    benchmark,
    risk_free,
    as_of=None,
    periods=None,
    portfolio_name: str = "Portfolio",
    benchmark_name: str = config.BENCHMARK_NAME,
    generated_at=None,
) -> AnalysisResult:
    """
    Full single-portfolio pipeline: normalize, pick periods, compute each.

    Per-period problems land in `warnings`; only missing market data or a
    malformed input series raise.
    """
    aligned = normalize(portfolio, benchmark, risk_free)
    as_of_ts = _as_of(aligned, as_of)
    if as_of_ts < aligned.index[0]:
        raise InsufficientData(
            f"As-of date {as_of_ts:%Y-%m-%d} precedes the first aligned observation "
            f"{aligned.index[0]:%Y-%m-%d}"
        )

    warnings = []
    if periods is None:
        definitions = generate_periods(aligned, as_of_ts)
    else:
        definitions, unresolved = resolve_periods(aligned, periods)
        warnings.extend(unresolved)

    results = []
    for period in definitions:
        metrics = _evaluate(aligned, period, warnings)
        if metrics is not None:
            results.append(metrics)

    cumulative = None
    cumulative_def = generate_3y_period(aligned, as_of_ts)
    if cumulative_def is not None:
        cumulative = _evaluate(aligned, cumulative_def, warnings)

    chart = None
    try:
        chart = generate_chart_data(aligned, portfolio_name, as_of_ts, benchmark_name=benchmark_name)
    except RECOVERABLE_ERRORS as e:
        warnings.append(f"Chart: Could not calculate - {_reason(e)}")

    logger.info(
        "Analyzed %s: %d periods, %d warnings", portfolio_name, len(results), len(warnings)
    )

    return AnalysisResult(
        portfolio_name=portfolio_name,
        as_of_date=as_of_ts.date(),
        generated_at=generated_at or datetime.now(timezone.utc),
        data_start_date=aligned.index[0].date(),
        data_end_date=aligned.index[-1].date(),
        periods=tuple(results),
        cumulative_3y=cumulative,
        chart=chart,
        methodology=get_methodology(benchmark_name),
        warnings=tuple(warnings),
    )


# =============================================================
# MULTI PORTFOLIO
# =============================================================

def _natural_key(name: str):
    return [int(part) if part.isdigit() else part.casefold() for part in re.split(r"(\d+)", str(name))]


def sort_portfolio_names(names):
    """Natural sort so 'Model 2' precedes 'Model 10'."""
    return sorted(names, key=_natural_key)


def build_comparison(results: dict) -> ComparisonData:
    """
    Side-by-side view keyed metric -> period -> portfolio name, with the
    benchmark's value per period and a combined chart.
    """
    names = sort_portfolio_names(results)
    first = results[names[0]]

    period_names = []
    for name in names:
        for p in results[name].periods:
            if p.period_name not in period_names:
                period_names.append(p.period_name)

    metrics = {}
    for key, suffix, display in COMPARISON_METRICS:
        by_period = {}
        benchmark = {}
        for period_name in period_names:
            by_period[period_name] = {}
            for name in names:
                period = results[name].period(period_name)
                if period is None:
                    continue
                by_period[period_name][name] = getattr(period, f"portfolio_{suffix}")
                benchmark.setdefault(period_name, getattr(period, f"benchmark_{suffix}"))
        metrics[key] = {"display_name": display, "by_period": by_period, "benchmark": benchmark}

    cumulative = None
    holders = [n for n in names if results[n].cumulative_3y is not None]
    if holders:
        bench_3y = results[holders[0]].cumulative_3y
        cumulative = {
            "portfolios": {
                n: {
                    "return": results[n].cumulative_3y.portfolio_return,
                    "std_dev": results[n].cumulative_3y.portfolio_std_dev,
                    "alpha": results[n].cumulative_3y.portfolio_alpha,
                    "beta": results[n].cumulative_3y.portfolio_beta,
                    "sharpe": results[n].cumulative_3y.portfolio_sharpe_ratio,
                    "max_drawdown": results[n].cumulative_3y.portfolio_max_drawdown,
                }
                for n in holders
            },
            "benchmark": {
                "return": bench_3y.benchmark_return,
                "std_dev": bench_3y.benchmark_std_dev,
                "sharpe": bench_3y.benchmark_sharpe_ratio,
                "max_drawdown": bench_3y.benchmark_max_drawdown,
            },
        }

    chart = None
    if first.chart is not None:
        chart = {
            "dates": [d.isoformat() for d in first.chart.dates],
            "benchmark_name": first.chart.benchmark_name,
            "benchmark_returns": list(first.chart.benchmark_returns),
            "benchmark_final_return": first.chart.benchmark_final_return,
            "portfolios": {
                n: {
                    "returns": list(results[n].chart.portfolio_returns),
                    "final_return": results[n].chart.portfolio_final_return,
                }
                for n in names
                if results[n].chart is not None
            },
            "chart_title": first.chart.chart_title,
        }

    return ComparisonData(
        portfolio_names=tuple(names),
        period_names=tuple(period_names),
        metrics=metrics,
        cumulative_3y=cumulative,
        chart=chart,
    )


def analyze_multiple_portfolios(
    portfolios: dict,
    benchmark,
    risk_free,
    as_of=None,
    periods=None,
    benchmark_name: str = config.BENCHMARK_NAME,
    max_workers=None,
) -> MultiPortfolioResult:
    """
    Run the single-portfolio pipeline for each named series against one
    shared benchmark/risk-free pull.

    With `max_workers` the portfolios run on a thread pool; results and
    warnings come back in the same order as the sequential run.
    """
    # Empty market data is fatal for every portfolio, so fail once up front
    benchmark, risk_free = prepare_market_series(benchmark, risk_free)
    generated_at = datetime.now(timezone.utc)

    def run_one(name):
        try:
            result = analyze_portfolio(
                portfolios[name],
                benchmark,
                risk_free,
                as_of=as_of,
                periods=periods,
                portfolio_name=name,
                benchmark_name=benchmark_name,
                generated_at=generated_at,
            )
            return name, result, None
        except RECOVERABLE_ERRORS as e:
            logger.warning("Portfolio %s failed: %s", name, _reason(e))
            return name, None, _reason(e)

    names = list(portfolios)
    if max_workers and len(names) > 1:
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            outcomes = list(pool.map(run_one, names))
    else:
        outcomes = [run_one(name) for name in names]

    results = {}
    warnings = []
    for name, result, error in outcomes:
        if error is not None:
            warnings.append(f"[{name}] Analysis failed: {error}")
            continue
        results[name] = result
        warnings.extend(f"[{name}] {w}" for w in result.warnings)

    if not results:
        raise InsufficientData("No portfolios could be analyzed")

    ordered = {name: results[name] for name in sort_portfolio_names(results)}
    first = next(iter(ordered.values()))

    return MultiPortfolioResult(
        as_of_date=to_timestamp(as_of).date() if as_of is not None else first.as_of_date,
        generated_at=generated_at,
        data_start_date=first.data_start_date,
        data_end_date=first.data_end_date,
        portfolios=ordered,
        comparison=build_comparison(ordered),
        methodology=get_methodology(benchmark_name),
        warnings=tuple(warnings),
    )


# =============================================================
# ENTRY POINT
# =============================================================

def run_engine(
    portfolios: dict,
    as_of=None,
    provider=None,
    cache=None,
    periods=None,
    max_workers=None,
) -> MultiPortfolioResult:
    """
    Fetch the benchmark and risk-free series once for the union of the
    portfolios' date ranges, then run the multi-portfolio analysis.
    """
    if not portfolios:
        raise InsufficientData("No portfolios supplied")

    series = {name: coerce_time_series(data, name) for name, data in portfolios.items()}

    start = min(s.index[0] for s in series.values())
    end = max(s.index[-1] for s in series.values())
    if as_of is not None:
        end = max(end, to_timestamp(as_of))

    benchmark, risk_free = fetch_market_data(start, end, provider=provider, cache=cache)

    return analyze_multiple_portfolios(
        series,
        benchmark,
        risk_free,
        as_of=as_of,
        periods=periods,
        max_workers=max_workers,
    )
