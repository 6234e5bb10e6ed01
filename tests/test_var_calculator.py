"""
Tests for VaR Calculator
========================

Historical-simulation VaR, expected shortfall and horizon scaling.
"""

import random

import pytest

from risk_engine import WAD
from risk_engine.config import CONFIDENCE_95, CONFIDENCE_99, VaRConfig
from risk_engine.exceptions import (
    InsufficientDataError,
    InvalidConfidenceLevelError,
    InvalidParameterError,
)
from risk_engine.var_calculator import VaRCalculator, percentile_index

from tests.conftest import PORTFOLIO_MANAGER


@pytest.fixture
def calculator():
    return VaRCalculator(VaRConfig())


@pytest.fixture
def fat_tail_returns():
    """Four losing days among twenty-six small gains."""
    return [-500, -300, -200, -100] + [50] * 26


class TestPercentileIndex:
    """Test the rank of the VaR observation."""

    def test_thirty_points_at_95(self):
        assert percentile_index(9_500, 30) == 2

    def test_rounds_half_up(self):
        assert percentile_index(9_500, 100) == 5
        assert percentile_index(9_500, 10) == 1

    def test_clamped_to_one(self):
        assert percentile_index(9_900, 30) == 1
        assert percentile_index(9_900, 100) == 1


class TestCalculateVaR:
    """Test historical VaR."""

    def test_second_smallest_at_95(self, calculator, linear_returns):
        result = calculator.calculate_var(linear_returns, CONFIDENCE_95)

        assert result.var_bps == 20
        assert result.percentile_index == 2
        assert result.data_points == 30
        assert result.expected_shortfall_bps == 15

    def test_smallest_at_99(self, calculator, linear_returns):
        result = calculator.calculate_var(linear_returns, CONFIDENCE_99)

        assert result.var_bps == 10
        assert result.expected_shortfall_bps == 10

    def test_losses_reported_as_magnitudes(self, calculator, fat_tail_returns):
        var_95 = calculator.calculate_var(fat_tail_returns, CONFIDENCE_95)
        var_99 = calculator.calculate_var(fat_tail_returns, CONFIDENCE_99)

        assert var_95.var_bps == 300
        assert var_95.expected_shortfall_bps == 400
        assert var_99.var_bps == 500
        assert var_99.var_bps >= var_95.var_bps

    def test_mixed_sign_tail_offsets(self, calculator):
        returns = [-50] + list(range(10, 291, 10))

        result = calculator.calculate_var(returns, CONFIDENCE_95)

        # Tail is [-50, 10]: mean -20
        assert result.percentile_index == 2
        assert result.expected_shortfall_bps == 20

    def test_order_does_not_matter(self, calculator, fat_tail_returns):
        shuffled = list(fat_tail_returns)
        random.Random(7).shuffle(shuffled)

        assert calculator.calculate_var(shuffled, CONFIDENCE_95) == calculator.calculate_var(
            fat_tail_returns, CONFIDENCE_95
        )

    @pytest.mark.parametrize("confidence", [CONFIDENCE_95, CONFIDENCE_99])
    def test_insufficient_data(self, calculator, confidence):
        with pytest.raises(InsufficientDataError):
            calculator.calculate_var(list(range(29)), confidence)

    @pytest.mark.parametrize("confidence", [9_000, 9_501, 9_950, 10_000])
    def test_unsupported_confidence_rejected(self, calculator, linear_returns, confidence):
        with pytest.raises(InvalidConfidenceLevelError):
            calculator.calculate_var(linear_returns, confidence)

    def test_confidence_checked_before_data(self, calculator):
        with pytest.raises(InvalidConfidenceLevelError):
            calculator.calculate_var([], 9_000)


class TestHorizonScaling:
    """Test the square-root-of-time rule."""

    def test_four_days_doubles(self, calculator, linear_returns):
        result = calculator.calculate_var(linear_returns, CONFIDENCE_95, horizon_days=4)
        assert result.var_bps == 40
        assert result.horizon_days == 4

    def test_ten_days(self, calculator, linear_returns):
        result = calculator.calculate_var(linear_returns, CONFIDENCE_95, horizon_days=10)
        assert result.var_bps == 63

    def test_zero_horizon_rejected(self, calculator, linear_returns):
        with pytest.raises(InvalidParameterError):
            calculator.calculate_var(linear_returns, CONFIDENCE_95, horizon_days=0)


class TestVaRResult:
    """Test result helpers."""

    def test_loss_amount(self, calculator, fat_tail_returns):
        result = calculator.calculate_var(fat_tail_returns, CONFIDENCE_95)
        assert result.loss_amount(1_000 * WAD) == 30 * WAD

    def test_to_dict(self, calculator, linear_returns):
        payload = calculator.calculate_var(linear_returns, CONFIDENCE_95).to_dict()
        assert payload["var_bps"] == 20
        assert "timestamp" in payload

    def test_calculate_both(self, calculator, linear_returns):
        var_95, var_99 = calculator.calculate_both(linear_returns)
        assert (var_95.confidence_bps, var_99.confidence_bps) == (CONFIDENCE_95, CONFIDENCE_99)


class TestPortfolioVaR:
    """Test VaR over a registered portfolio's series."""

    def test_uses_committed_series(self, engine, portfolio, linear_returns):
        engine.add_returns(PORTFOLIO_MANAGER, portfolio, linear_returns)

        result = engine.calculate_var(portfolio, CONFIDENCE_95)

        assert result.var_bps == 20

    def test_requires_repository(self, calculator):
        with pytest.raises(InvalidParameterError):
            calculator.calculate_portfolio_var("P1", CONFIDENCE_95)
