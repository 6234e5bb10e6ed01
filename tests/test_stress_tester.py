"""
Tests for Stress Testing
========================

Scenario registry, evaluation and the worst-case loss used by SPAN margin.
"""

import pytest

from risk_engine import WAD, Portfolio, Position
from risk_engine.authorization import AccessController, Role
from risk_engine.exceptions import (
    ArrayLengthMismatchError,
    InvalidParameterError,
    UnauthorizedError,
)
from risk_engine.stress_tester import (
    PREDEFINED_SCENARIOS,
    WILDCARD,
    StressScenario,
    StressTester,
)


@pytest.fixture
def access():
    access = AccessController("admin")
    access.grant_role("admin", Role.RISK_MANAGER, "rm")
    return access


@pytest.fixture
def tester(access):
    return StressTester(access)


def book(*legs):
    """Portfolio from (asset, quantity) legs priced at 100."""
    return Portfolio("P1", "pm", positions=tuple(
        Position(position_id=i, asset=asset, quantity=qty, entry_price=100 * WAD, current_price=100 * WAD)
        for i, (asset, qty) in enumerate(legs, 1)
    ))


class TestScenarioDefinition:
    """Test scenario validation."""

    def test_predefined_loaded(self, tester):
        assert {s.scenario_id for s in tester.get_all_scenarios()} == set(PREDEFINED_SCENARIOS)

    def test_from_lists_length_mismatch(self):
        with pytest.raises(ArrayLengthMismatchError):
            StressScenario.from_lists("s", "S", ["ETH", "BTC"], [-1_000])

    @pytest.mark.parametrize("shock", [-10_001, 10_001, 0.1])
    def test_shock_out_of_range(self, shock):
        with pytest.raises(InvalidParameterError):
            StressScenario("s", "S", "", {"ETH": shock})

    def test_no_shocks(self):
        with pytest.raises(InvalidParameterError):
            StressScenario("s", "S", "", {})

    def test_shocks_copied(self):
        shocks = {"ETH": -1_000}
        scenario = StressScenario("s", "S", "", shocks)
        shocks["ETH"] = -9_000

        assert scenario.shock_for("ETH") == -1_000

    def test_explicit_shock_overrides_wildcard(self):
        scenario = StressScenario("s", "S", "", {WILDCARD: -1_000, "BTC": -4_000})

        assert scenario.shock_for("BTC") == -4_000
        assert scenario.shock_for("ETH") == -1_000


class TestScenarioRegistry:
    """Test adding and toggling scenarios."""

    def test_add_scenario(self, tester):
        scenario = tester.add_scenario("rm", "eth_depeg", "ETH depeg", ["ETH"], [-6_000])

        assert tester.get_scenario("eth_depeg") == scenario

    def test_add_requires_risk_manager(self, tester):
        with pytest.raises(UnauthorizedError):
            tester.add_scenario("pm", "x", "X", ["ETH"], [-100])

    def test_deactivate(self, tester):
        tester.set_scenario_active("rm", "market_crash", False)

        assert "market_crash" not in {s.scenario_id for s in tester.active_scenarios()}
        assert tester.get_status()["active_scenarios"] == len(PREDEFINED_SCENARIOS) - 1

    def test_unknown_scenario(self, tester):
        with pytest.raises(InvalidParameterError):
            tester.set_scenario_active("rm", "missing", False)
        with pytest.raises(InvalidParameterError):
            tester.evaluate_scenario(book(), "missing")


class TestEvaluation:
    """Test scenario impact on positions."""

    def test_long_book_crash(self, tester):
        outcome = tester.evaluate_scenario(book(("ETH", WAD)), "market_crash")

        assert outcome.pnl_impact == -30 * WAD
        assert outcome.loss == 30 * WAD
        assert outcome.position_impacts == {"ETH": -30 * WAD}

    def test_short_book_squeeze(self, tester):
        outcome = tester.evaluate_scenario(book(("ETH", -WAD)), "short_squeeze")

        assert outcome.pnl_impact == -25 * WAD

    def test_gain_has_no_loss(self, tester):
        outcome = tester.evaluate_scenario(book(("ETH", -WAD)), "market_crash")

        assert outcome.pnl_impact == 30 * WAD
        assert outcome.loss == 0

    def test_run_all_worst_first(self, tester):
        outcomes = tester.run_all_scenarios(book(("ETH", WAD)))

        assert outcomes[0].scenario_id == "market_crash"
        assert [o.pnl_impact for o in outcomes] == sorted(o.pnl_impact for o in outcomes)

    def test_worst_case_loss(self, tester):
        assert tester.worst_case_loss(book(("ETH", WAD))) == 30 * WAD
        assert tester.worst_case_loss(book(("ETH", -WAD))) == 25 * WAD

    def test_worst_case_ignores_inactive(self, tester):
        tester.set_scenario_active("rm", "market_crash", False)

        assert tester.worst_case_loss(book(("ETH", WAD))) == 20 * WAD

    def test_hedged_book(self, tester):
        tester.add_scenario("rm", "rotation", "Rotation", ["ETH", "BTC"], [-2_000, 1_000])

        outcome = tester.evaluate_scenario(book(("ETH", WAD), ("BTC", WAD)), "rotation")

        assert outcome.pnl_impact == -10 * WAD

    def test_no_scenarios(self, access):
        tester = StressTester(access, use_predefined=False)

        assert tester.worst_case_loss(book(("ETH", WAD))) == 0
