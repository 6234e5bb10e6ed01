"""
Tests for Portfolio Margin Calculator
=====================================

The four margin methods and explicit method switching.
"""

from dataclasses import replace

import pytest

from risk_engine import WAD, EventType, MarginMethod, Portfolio, Position
from risk_engine.exceptions import InvalidParameterError, UnauthorizedError
from risk_engine.fixed_point import bps_of

from tests.conftest import PORTFOLIO_MANAGER, RISK_MANAGER


def book(*legs, collateral=0):
    """Portfolio from (asset, quantity) legs priced at 100."""
    return Portfolio("P1", "pm", collateral_value=collateral, positions=tuple(
        Position(position_id=i, asset=asset, quantity=qty, entry_price=100 * WAD, current_price=100 * WAD)
        for i, (asset, qty) in enumerate(legs, 1)
    ))


@pytest.fixture
def calculator(engine):
    return engine.margin_calculator


class TestPositionMargin:
    """Test standalone position margin."""

    def test_default_volatility(self, calculator):
        position = book(("ETH", WAD)).positions[0]

        # 10% base + 100 x 50% vol x 50% add-on rate
        assert calculator.position_margin(position) == 35 * WAD

    def test_configured_volatility(self, engine, calculator):
        engine.set_volatility(RISK_MANAGER, "ETH", 2_000)

        assert calculator.position_margin(book(("ETH", WAD)).positions[0]) == 20 * WAD

    def test_short_uses_market_value(self, calculator):
        assert calculator.position_margin(book(("ETH", -WAD)).positions[0]) == 35 * WAD

    def test_initial_margin(self, calculator):
        assert calculator.calculate_initial_margin(-100 * WAD, 2_000) == 20 * WAD

    def test_initial_margin_ratio_out_of_range(self, calculator):
        with pytest.raises(InvalidParameterError):
            calculator.calculate_initial_margin(100 * WAD, 0)


class TestStandardMethod:
    """Test the sum of standalone margins."""

    def test_sum(self, calculator):
        result = calculator.calculate_margin(book(("ETH", WAD), ("BTC", WAD)), MarginMethod.STANDARD)

        assert result.gross_margin == 70 * WAD
        assert result.final_margin == 70 * WAD
        assert result.diversification_benefit == 0
        assert result.concentration_penalty == 0

    def test_empty_book(self, calculator):
        assert calculator.calculate_margin(book()).final_margin == 0


class TestPortfolioMethod:
    """Test correlation netting, the diversification cap and the concentration penalty."""

    def test_fully_correlated_longs_get_no_benefit(self, calculator):
        result = calculator.calculate_margin(book(("ETH", WAD), ("BTC", WAD)), MarginMethod.PORTFOLIO)

        assert result.gross_margin == 70 * WAD
        assert result.diversification_benefit == 0
        # Each asset is 50% of gross exposure, 10% over the 40% threshold
        assert result.concentration_penalty == 7 * WAD
        assert result.final_margin == 77 * WAD

    def test_uncorrelated_assets_get_partial_benefit(self, engine, calculator):
        engine.set_correlation(RISK_MANAGER, "ETH", "BTC", 0)

        result = calculator.calculate_margin(book(("ETH", WAD), ("BTC", WAD)), MarginMethod.PORTFOLIO)

        assert 0 < result.diversification_benefit < bps_of(result.gross_margin, 5_000)
        assert result.net_margin == result.gross_margin - result.diversification_benefit
        assert result.final_margin == result.net_margin + result.concentration_penalty

    def test_hedge_capped(self, calculator):
        result = calculator.calculate_margin(book(("ETH", WAD), ("BTC", -WAD)), MarginMethod.PORTFOLIO)

        assert result.diversification_benefit == bps_of(70 * WAD, 5_000)
        assert result.net_margin == 35 * WAD

    def test_no_penalty_below_threshold(self, calculator):
        result = calculator.calculate_margin(
            book(("ETH", WAD), ("BTC", WAD), ("SOL", WAD)), MarginMethod.PORTFOLIO
        )

        assert result.concentration_penalty == 0

    def test_empty_book(self, calculator):
        result = calculator.calculate_margin(book(), MarginMethod.PORTFOLIO)

        assert result.final_margin == 0
        assert result.method == MarginMethod.PORTFOLIO


class TestRiskBasedMethod:
    """Test the volatility-scaled single figure."""

    def test_single_asset(self, calculator):
        portfolio = book(("ETH", WAD), collateral=1_000_000 * WAD)

        result = calculator.calculate_margin(portfolio, MarginMethod.RISK_BASED)

        # 1,000,000 portfolio value x 50% vol x 2.0 multiplier
        assert result.final_margin == 1_000_000 * WAD
        assert result.diversification_benefit == 0

    def test_scales_with_portfolio_value_not_exposure(self, calculator):
        small = calculator.calculate_margin(book(("ETH", WAD), collateral=1_000 * WAD), MarginMethod.RISK_BASED)
        large = calculator.calculate_margin(book(("ETH", 5 * WAD), collateral=1_000 * WAD), MarginMethod.RISK_BASED)

        assert small.final_margin == large.final_margin == 1_000 * WAD

    def test_includes_unrealized_pnl(self, calculator):
        portfolio = book(("ETH", WAD), collateral=1_000 * WAD)
        marked = Portfolio(
            "P1", "pm", collateral_value=1_000 * WAD,
            positions=(replace(portfolio.positions[0], current_price=120 * WAD, unrealized_pnl=20 * WAD),),
        )

        result = calculator.calculate_margin(marked, MarginMethod.RISK_BASED)

        assert result.final_margin == 1_020 * WAD

    def test_no_collateral(self, calculator):
        assert calculator.calculate_margin(book(("ETH", WAD)), MarginMethod.RISK_BASED).final_margin == 0

    def test_portfolio_volatility(self, calculator):
        assert calculator.portfolio_volatility_bps(book(("ETH", WAD))) == 5_000
        assert calculator.portfolio_volatility_bps(book()) == 0

    def test_offsetting_exposure(self, calculator):
        portfolio = book(("ETH", WAD), ("ETH", -WAD), collateral=1_000 * WAD)

        result = calculator.calculate_margin(portfolio, MarginMethod.RISK_BASED)

        assert result.final_margin == 0


class TestSpanMethod:
    """Test the worst-case scenario loss."""

    def test_long_book(self, calculator):
        result = calculator.calculate_margin(book(("ETH", WAD)), MarginMethod.SPAN)

        assert result.final_margin == 30 * WAD
        assert result.gross_margin == result.net_margin == result.final_margin

    @pytest.mark.parametrize("method", list(MarginMethod))
    def test_same_shape_for_every_method(self, calculator, method):
        result = calculator.calculate_margin(book(("ETH", WAD)), method)

        assert result.method == method
        assert set(result.to_dict()) == {
            "method", "gross_margin", "net_margin", "diversification_benefit",
            "concentration_penalty", "final_margin", "timestamp",
        }


class TestSetMarginMethod:
    """Test explicit method switching."""

    def test_switch_commits_maintenance_margin(self, engine, funded_portfolio):
        engine.open_position(PORTFOLIO_MANAGER, funded_portfolio, "ETH", WAD, 100 * WAD)

        result = engine.set_margin_method(RISK_MANAGER, funded_portfolio, MarginMethod.SPAN)
        portfolio = engine.get_portfolio(funded_portfolio)

        assert portfolio.margin_method == MarginMethod.SPAN
        assert portfolio.maintenance_margin == result.final_margin == 30 * WAD

    def test_switch_signal(self, engine, portfolio):
        engine.set_margin_method(RISK_MANAGER, portfolio, MarginMethod.PORTFOLIO)

        event = engine.bus.get_event_history(EventType.MARGIN_METHOD_CHANGED)[0]
        assert (event.previous, event.current) == ("standard", "portfolio")

    def test_requires_risk_manager(self, engine, portfolio):
        with pytest.raises(UnauthorizedError):
            engine.set_margin_method(PORTFOLIO_MANAGER, portfolio, MarginMethod.SPAN)

    def test_rejects_unknown_method(self, engine, portfolio):
        with pytest.raises(InvalidParameterError):
            engine.set_margin_method(RISK_MANAGER, portfolio, "span")
