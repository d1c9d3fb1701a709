"""
Immutable records produced by the analytics engine.

Every record exposes ``to_dict()`` returning plain JSON-able values
(ISO-8601 date strings, floats, ``None``) so the caller can pick any
serialization target.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, Optional, Tuple


def _iso(value):
    if value is None:
        return None
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


# ------------------------------------------------------------
# Inputs
# ------------------------------------------------------------

@dataclass(frozen=True)
class ValuePoint:
    """One observation of a portfolio's or index's market value."""

    date: date
    value: float

    def to_dict(self) -> dict:
        return {"date": _iso(self.date), "value": self.value}


@dataclass(frozen=True)
class PeriodDefinition:
    """A named evaluation window whose bounds are trading days in the data."""

    name: str
    start_date: date
    end_date: date

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
        }


# ------------------------------------------------------------
# Metrics
# ------------------------------------------------------------

@dataclass(frozen=True)
class SeriesMetrics:
    """Unrounded statistic set for one series role within one period."""

    total_return: Optional[float]
    std_dev: Optional[float]
    alpha: Optional[float]
    beta: Optional[float]
    sharpe_ratio: Optional[float]
    max_drawdown: Optional[float]
    up_capture: Optional[float]
    down_capture: Optional[float]


@dataclass(frozen=True)
class PeriodMetrics:
    period_name: str
    start_date: date
    end_date: date

    # Returns
    portfolio_return: Optional[float]
    benchmark_return: Optional[float]
    excess_return: Optional[float]

    # Risk metrics - Portfolio
    portfolio_std_dev: Optional[float]
    portfolio_alpha: Optional[float]
    portfolio_beta: Optional[float]
    portfolio_sharpe_ratio: Optional[float]
    portfolio_max_drawdown: Optional[float]
    portfolio_up_capture: Optional[float]
    portfolio_down_capture: Optional[float]

    # Risk metrics - Benchmark
    benchmark_std_dev: Optional[float]
    benchmark_alpha: Optional[float]
    benchmark_beta: Optional[float]
    benchmark_sharpe_ratio: Optional[float]
    benchmark_max_drawdown: Optional[float]
    benchmark_up_capture: Optional[float]
    benchmark_down_capture: Optional[float]

    # Context
    risk_free_rate: Optional[float]
    num_months: int

    def to_dict(self) -> dict:
        return {
            "period_name": self.period_name,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "portfolio_return": self.portfolio_return,
            "benchmark_return": self.benchmark_return,
            "excess_return": self.excess_return,
            "portfolio_std_dev": self.portfolio_std_dev,
            "portfolio_alpha": self.portfolio_alpha,
            "portfolio_beta": self.portfolio_beta,
            "portfolio_sharpe_ratio": self.portfolio_sharpe_ratio,
            "portfolio_max_drawdown": self.portfolio_max_drawdown,
            "portfolio_up_capture": self.portfolio_up_capture,
            "portfolio_down_capture": self.portfolio_down_capture,
            "benchmark_std_dev": self.benchmark_std_dev,
            "benchmark_alpha": self.benchmark_alpha,
            "benchmark_beta": self.benchmark_beta,
            "benchmark_sharpe_ratio": self.benchmark_sharpe_ratio,
            "benchmark_max_drawdown": self.benchmark_max_drawdown,
            "benchmark_up_capture": self.benchmark_up_capture,
            "benchmark_down_capture": self.benchmark_down_capture,
            "risk_free_rate": self.risk_free_rate,
            "num_months": self.num_months,
        }


# ------------------------------------------------------------
# Reports
# ------------------------------------------------------------

@dataclass(frozen=True)
class ChartSeries:
    """Cumulative returns for both series, reset to 0.0 at the window start."""

    dates: Tuple[date, ...]
    portfolio_returns: Tuple[float, ...]
    benchmark_returns: Tuple[float, ...]
    portfolio_name: str
    benchmark_name: str
    start_date: date
    end_date: date
    portfolio_final_return: float
    benchmark_final_return: float
    chart_title: str

    def to_dict(self) -> dict:
        return {
            "dates": [_iso(d) for d in self.dates],
            "portfolio_returns": list(self.portfolio_returns),
            "benchmark_returns": list(self.benchmark_returns),
            "portfolio_name": self.portfolio_name,
            "benchmark_name": self.benchmark_name,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "portfolio_final_return": self.portfolio_final_return,
            "benchmark_final_return": self.benchmark_final_return,
            "chart_title": self.chart_title,
        }


@dataclass(frozen=True)
class AnalysisResult:
    portfolio_name: str
    as_of_date: date
    generated_at: datetime
    data_start_date: date
    data_end_date: date

    periods: Tuple[PeriodMetrics, ...]
    cumulative_3y: Optional[PeriodMetrics]
    chart: Optional[ChartSeries]

    methodology: Dict[str, str] = field(default_factory=dict)
    warnings: Tuple[str, ...] = ()

    def period(self, name: str) -> Optional[PeriodMetrics]:
        """Look up a period by name, including the cumulative window."""
        for p in self.periods:
            if p.period_name == name:
                return p
        if self.cumulative_3y is not None and self.cumulative_3y.period_name == name:
            return self.cumulative_3y
        return None

    def to_dict(self) -> dict:
        return {
            "portfolio_name": self.portfolio_name,
            "as_of_date": _iso(self.as_of_date),
            "generated_at": _iso(self.generated_at),
            "data_start_date": _iso(self.data_start_date),
            "data_end_date": _iso(self.data_end_date),
            "periods": [p.to_dict() for p in self.periods],
            "cumulative_3y": self.cumulative_3y.to_dict() if self.cumulative_3y else None,
            "chart": self.chart.to_dict() if self.chart else None,
            "methodology": dict(self.methodology),
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class ComparisonData:
    """Side-by-side view keyed metric -> period -> portfolio name."""

    portfolio_names: Tuple[str, ...]
    period_names: Tuple[str, ...]
    metrics: Dict[str, dict]
    cumulative_3y: Optional[dict] = None
    chart: Optional[dict] = None

    def to_dict(self) -> dict:
        out = {
            "portfolio_names": list(self.portfolio_names),
            "period_names": list(self.period_names),
            "metrics": self.metrics,
        }
        if self.cumulative_3y is not None:
            out["cumulative_3y"] = self.cumulative_3y
        if self.chart is not None:
            out["chart"] = self.chart
        return out


@dataclass(frozen=True)
class MultiPortfolioResult:
    as_of_date: date
    generated_at: datetime
    data_start_date: date
    data_end_date: date

    portfolios: Dict[str, AnalysisResult]
    comparison: ComparisonData

    methodology: Dict[str, str] = field(default_factory=dict)
    warnings: Tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "as_of_date": _iso(self.as_of_date),
            "generated_at": _iso(self.generated_at),
            "data_start_date": _iso(self.data_start_date),
            "data_end_date": _iso(self.data_end_date),
            "portfolios": {name: r.to_dict() for name, r in self.portfolios.items()},
            "comparison": self.comparison.to_dict(),
            "methodology": dict(self.methodology),
            "warnings": list(self.warnings),
        }


# ------------------------------------------------------------
# Monte Carlo
# ------------------------------------------------------------

@dataclass(frozen=True)
class GoalSimulationResult:
    median: float
    upside: float      # 95th percentile
    downside: float    # 5th percentile
    probability_of_success: float
    simulations: int

    def to_dict(self) -> dict:
        return {
            "median": self.median,
            "upside": self.upside,
            "downside": self.downside,
            "probability_of_success": self.probability_of_success,
            "simulations": self.simulations,
        }
