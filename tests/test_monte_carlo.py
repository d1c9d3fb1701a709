"""
Unit tests for the goal-probability Monte Carlo simulator.
"""

import numpy as np
import pytest

import config
from components.monte_carlo import (
    blend_volatility,
    calculate_expected_return,
    calculate_goal_probability,
    cap_probability,
    project_future_value,
    simulate_goal_probability,
)


def _simulate(**overrides):
    params = dict(
        current_amount=100000.0,
        goal_amount=150000.0,
        horizon_years=5,
        monthly_contribution=500.0,
        year1_annual_return=0.08,
        steady_state_annual_return=0.07,
        annual_volatility=0.15,
        simulation_count=2000,
        rng=42,
    )
    params.update(overrides)
    return simulate_goal_probability(**params)


class TestSimulateGoalProbability:
    """Tests for the random-walk simulation."""

    @pytest.mark.parametrize("seed", [0, 1, 42, 2024, None])
    @pytest.mark.parametrize("volatility", [0.15, 0.8])
    def test_percentiles_ordered_and_probability_bounded(self, seed, volatility):
        result = _simulate(rng=seed, annual_volatility=volatility)

        assert result.downside <= result.median <= result.upside
        assert 0.0 <= result.probability_of_success <= 1.0
        assert result.simulations == 2000

    def test_high_volatility_widens_the_spread(self):
        result = _simulate(current_amount=1000.0, monthly_contribution=0.0, annual_volatility=0.8, rng=5)
        expected = project_future_value(1000.0, 0.08, 0.07, 0.0, 5)

        assert result.downside < expected < result.upside

    def test_seeded_runs_reproducible(self):
        assert _simulate(rng=7) == _simulate(rng=7)
        assert _simulate(rng=np.random.default_rng(7)) == _simulate(rng=7)

    def test_zero_volatility_matches_deterministic_projection(self):
        """
        GIVEN no volatility
        WHEN I simulate
        THEN every path equals the deterministic year-1 + steady-state projection
        """
        result = _simulate(annual_volatility=0.0, simulation_count=10)
        expected = project_future_value(100000.0, 0.08, 0.07, 500.0, 5)

        assert result.median == pytest.approx(expected)
        assert result.downside == pytest.approx(expected)
        assert result.upside == pytest.approx(expected)

    def test_goal_already_met_without_risk(self):
        result = _simulate(goal_amount=50000.0, annual_volatility=0.0, simulation_count=10)
        assert result.probability_of_success == 1.0

    def test_unreachable_goal(self):
        result = _simulate(goal_amount=1e12)
        assert result.probability_of_success == 0.0

    def test_single_simulation(self):
        result = _simulate(simulation_count=1)
        assert result.downside == result.median == result.upside

    @pytest.mark.parametrize(
        "overrides",
        [
            {"annual_volatility": -0.1},
            {"horizon_years": 0},
            {"simulation_count": 0},
            {"current_amount": float("nan")},
            {"monthly_contribution": -1.0},
        ],
    )
    def test_invalid_arguments(self, overrides):
        with pytest.raises(ValueError):
            _simulate(**overrides)


class TestAllocationAssumptions:
    """Tests for volatility and return blending."""

    def test_blend_volatility(self):
        assert blend_volatility({"stocks": 60, "bonds": 40}) == pytest.approx(0.6 * 0.18 + 0.4 * 0.06)

    def test_unlisted_classes_use_other_volatility(self):
        assert blend_volatility({"stocks": 50, "real_estate": 50}) == pytest.approx(0.09 + 0.5 * 0.12)

    def test_volatility_multiplier(self):
        base = blend_volatility({"stocks": 70, "cash": 30})
        assert blend_volatility({"stocks": 70, "cash": 30}, multiplier=1.2) == pytest.approx(base * 1.2)

    def test_expected_return_normalized(self):
        assert calculate_expected_return({"stocks": 60, "bonds": 40}) == pytest.approx(0.08)
        assert calculate_expected_return({"stocks": 30, "bonds": 20}) == pytest.approx(0.08)
        assert calculate_expected_return({}) == 0.0

    def test_projection_without_growth(self):
        assert project_future_value(1000.0, 0.0, 0.0, 100.0, 2) == pytest.approx(3400.0)

    def test_cap_probability(self):
        assert cap_probability(1.0) == config.MAX_DISPLAY_PROBABILITY
        assert cap_probability(0.5) == 0.5


class TestCalculateGoalProbability:
    """Tests for the client-facing summary."""

    def test_summary_shape_and_caps(self):
        summary = calculate_goal_probability(
            current_amount=200000.0,
            goal_amount=100000.0,
            horizon_years=10,
            monthly_contribution=1000.0,
            allocation={"stocks": 60, "bonds": 30, "cash": 10},
            simulation_count=1000,
            rng=1,
        )

        probs = summary["probability_of_success"]
        assert all(0.0 <= p <= config.MAX_DISPLAY_PROBABILITY for p in probs.values())
        assert probs["median"] == config.MAX_DISPLAY_PROBABILITY

        projected = summary["projected_values"]
        assert projected["downside"] <= projected["median"] <= projected["upside"]
        assert summary["shortfall"]["median"] == pytest.approx(projected["median"] - 100000.0)
        assert summary["expected_return"] == pytest.approx(0.6 * 0.10 + 0.3 * 0.05 + 0.1 * 0.03)
        assert summary["year1_return"] == summary["expected_return"]
        assert summary["simulations"] == 1000

    def test_year1_override(self):
        summary = calculate_goal_probability(
            current_amount=50000.0,
            goal_amount=80000.0,
            horizon_years=3,
            monthly_contribution=0.0,
            allocation={"stocks": 100},
            year1_return=0.15,
            simulation_count=500,
            rng=3,
        )

        assert summary["year1_return"] == 0.15
        assert summary["volatility"] == pytest.approx(0.18)
