import logging
import math

import numpy as np

import config
from analysis_models import GoalSimulationResult

logger = logging.getLogger(__name__)

# Percentiles reported by the goal simulator
DOWNSIDE_PERCENTILE = 0.05
MEDIAN_PERCENTILE = 0.50
UPSIDE_PERCENTILE = 0.95


def _make_rng(rng):
    if isinstance(rng, np.random.Generator):
        return rng
    # None -> fresh OS entropy (results vary run to run)
    return np.random.default_rng(rng)


def _standard_normals(rng: np.random.Generator, size: int) -> np.ndarray:
    """Box-Muller transform on uniform draws."""
    u1 = 1.0 - rng.random(size)  # (0, 1], keeps log() finite
    u2 = rng.random(size)
    return np.sqrt(-2.0 * np.log(u1)) * np.cos(2.0 * np.pi * u2)


def _horizon_months(horizon_years) -> int:
    months = int(round(horizon_years * config.MONTHS_PER_YEAR))
    if months < 1:
        raise ValueError(f"horizon_years must cover at least one month, got {horizon_years}")
    return months


def _validate(current_amount, goal_amount, monthly_contribution, annual_volatility, simulation_count):
    for name, value in (
        ("current_amount", current_amount),
        ("goal_amount", goal_amount),
        ("monthly_contribution", monthly_contribution),
        ("annual_volatility", annual_volatility),
    ):
        if value is None or not math.isfinite(value):
            raise ValueError(f"{name} must be a finite number, got {value!r}")
        if value < 0:
            raise ValueError(f"{name} must be non-negative, got {value}")
    if int(simulation_count) < 1:
        raise ValueError(f"simulation_count must be at least 1, got {simulation_count}")


def _percentile_index(n: int, p: float) -> int:
    return min(int(math.floor(n * p)), n - 1)


def simulate_terminal_values(
    current_amount,
    horizon_years,
    monthly_contribution,
    year1_annual_return,
    steady_state_annual_return,
    annual_volatility,
    simulation_count=config.MONTE_CARLO_SIMULATIONS,
    rng=None,
) -> np.ndarray:
    """
    Simulate `simulation_count` paths and return the terminal values sorted
    ascending.

    Each month the contribution lands first, then the month's return
    (annual / 12 mean, annual_volatility / sqrt(12) spread) is applied.
    Months 0-11 use the year-1 return; later months use the steady state.
    """
    n_sims = int(simulation_count)
    n_steps = _horizon_months(horizon_years)
    generator = _make_rng(rng)

    monthly_vol = annual_volatility / math.sqrt(config.MONTHS_PER_YEAR)
    values = np.full(n_sims, float(current_amount))

    for month in range(n_steps):
        annual = year1_annual_return if month < config.MONTHS_PER_YEAR else steady_state_annual_return
        mean = annual / config.MONTHS_PER_YEAR
        values += monthly_contribution
        values *= 1.0 + mean + monthly_vol * _standard_normals(generator, n_sims)

    values.sort()
    return values


def simulate_goal_probability(
    current_amount,
    goal_amount,
    horizon_years,
    monthly_contribution,
    year1_annual_return,
    steady_state_annual_return,
    annual_volatility,
    simulation_count=config.MONTE_CARLO_SIMULATIONS,
    rng=None,
) -> GoalSimulationResult:
    """
    Estimate the odds of reaching `goal_amount` after `horizon_years`.

    Returns the 5th/50th/95th percentile terminal values (index
    floor(N * p) of the sorted outcomes) and the share of paths ending at
    or above the goal. Pass a seed or numpy Generator as `rng` for
    reproducible output.
    """
    _validate(current_amount, goal_amount, monthly_contribution, annual_volatility, simulation_count)

    terminal = simulate_terminal_values(
        current_amount,
        horizon_years,
        monthly_contribution,
        year1_annual_return,
        steady_state_annual_return,
        annual_volatility,
        simulation_count=simulation_count,
        rng=rng,
    )
    n = len(terminal)

    return GoalSimulationResult(
        median=float(terminal[_percentile_index(n, MEDIAN_PERCENTILE)]),
        upside=float(terminal[_percentile_index(n, UPSIDE_PERCENTILE)]),
        downside=float(terminal[_percentile_index(n, DOWNSIDE_PERCENTILE)]),
        probability_of_success=float(np.count_nonzero(terminal >= goal_amount)) / n,
        simulations=n,
    )


# ------------------------------------------------------------
# Allocation assumptions
# ------------------------------------------------------------

def blend_volatility(allocation: dict, multiplier: float = 1.0) -> float:
    """
    Weighted annual volatility from allocation percentages (0-100).

    Stocks, bonds and cash use their own figure; whatever is left of 100%
    is treated as "other". `multiplier` scales the result (e.g. a
    cycle-phase adjustment).
    """
    vols = config.ASSET_CLASS_VOLATILITIES
    weights = {k: float(allocation.get(k, 0.0) or 0.0) / 100.0 for k in vols}
    other = max(0.0, 1.0 - sum(weights.values()))

    blended = sum(weights[k] * vols[k] for k in vols) + other * config.OTHER_ASSET_VOLATILITY
    return blended * multiplier


def calculate_expected_return(allocation: dict) -> float:
    """Long-term nominal return blend, normalized when weights do not sum to 100."""
    returns = config.LONG_TERM_NOMINAL_RETURNS
    weights = {k: float(allocation.get(k, 0.0) or 0.0) for k in returns}
    total = sum(weights.values())
    if total == 0:
        return 0.0
    return sum(weights[k] / total * returns[k] for k in returns)


def project_future_value(starting_value, year1_return, steady_state_return, monthly_contribution, years) -> float:
    """Deterministic path: year-1 rate for the first 12 months, steady state after."""
    value = float(starting_value)
    for month in range(_horizon_months(years)):
        annual = year1_return if month < config.MONTHS_PER_YEAR else steady_state_return
        value += monthly_contribution
        value *= 1.0 + annual / config.MONTHS_PER_YEAR
    return value


def cap_probability(probability: float) -> float:
    """Never show 100% certainty."""
    return min(probability, config.MAX_DISPLAY_PROBABILITY)


def calculate_goal_probability(
    current_amount,
    goal_amount,
    horizon_years,
    monthly_contribution,
    allocation: dict,
    year1_return=None,
    volatility_multiplier: float = 1.0,
    simulation_count=config.MONTE_CARLO_SIMULATIONS,
    rng=None,
) -> dict:
    """
    Client-facing goal summary for an asset allocation.

    Years 2+ compound at the allocation's long-term nominal return; year 1
    uses `year1_return` when supplied (e.g. from holdings-level targets).
    Probabilities are capped at MAX_DISPLAY_PROBABILITY.
    """
    _validate(current_amount, goal_amount, monthly_contribution, 0.0, simulation_count)

    long_term = calculate_expected_return(allocation)
    year1 = long_term if year1_return is None else year1_return
    volatility = blend_volatility(allocation, volatility_multiplier)

    terminal = simulate_terminal_values(
        current_amount,
        horizon_years,
        monthly_contribution,
        year1,
        long_term,
        volatility,
        simulation_count=simulation_count,
        rng=rng,
    )
    n = len(terminal)
    i5 = _percentile_index(n, DOWNSIDE_PERCENTILE)
    i50 = _percentile_index(n, MEDIAN_PERCENTILE)
    i95 = _percentile_index(n, UPSIDE_PERCENTILE)

    overall = float(np.count_nonzero(terminal >= goal_amount)) / n

    # Odds conditioned on landing at the bear / bull outcome
    if terminal[i5] >= goal_amount:
        downside_prob = (n - i5) / n
    else:
        downside_prob = DOWNSIDE_PERCENTILE
    if terminal[i95] >= goal_amount:
        upside_prob = 0.90 + (terminal[i95] - goal_amount) / goal_amount * 0.09 if goal_amount else 1.0
    else:
        upside_prob = (n - i95) / n

    projected = {
        "downside": float(terminal[i5]),
        "median": float(terminal[i50]),
        "upside": float(terminal[i95]),
    }

    logger.debug(
        "Goal %.0f over %sy: p=%.3f, year1=%.4f, long_term=%.4f, vol=%.4f",
        goal_amount,
        horizon_years,
        overall,
        year1,
        long_term,
        volatility,
    )

    return {
        "probability_of_success": {
            "downside": cap_probability(float(downside_prob)),
            "median": cap_probability(overall),
            "upside": cap_probability(float(upside_prob)),
        },
        "projected_values": projected,
        "shortfall": {k: v - goal_amount for k, v in projected.items()},
        "deterministic_value": project_future_value(
            current_amount, year1, long_term, monthly_contribution, horizon_years
        ),
        "expected_return": long_term,
        "year1_return": year1,
        "volatility": volatility,
        "simulations": n,
    }
