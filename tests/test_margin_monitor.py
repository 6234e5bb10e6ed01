"""
Tests for Margin Call Monitor
=============================
"""

from datetime import datetime, timezone

import pytest

from risk_engine import WAD, EventType, MarginMethod, RiskLevel
from risk_engine.exceptions import UnauthorizedError
from risk_engine.margin_monitor import MarginCallMonitor, margin_call_severity

from tests.conftest import ADMIN, EMERGENCY, PORTFOLIO_MANAGER, RISK_MANAGER


@pytest.fixture
def margined_portfolio(engine, portfolio):
    """2,000 of collateral backing a 5,000 ETH long (maintenance 1,750)."""
    engine.deposit_collateral(PORTFOLIO_MANAGER, portfolio, 2_000 * WAD)
    engine.open_position(PORTFOLIO_MANAGER, portfolio, "ETH", 100 * WAD, 50 * WAD)
    return portfolio


class TestCheckMarginRequirements:
    """Test margin call decisions."""

    def test_empty_portfolio_is_adequate(self, engine, portfolio):
        result = engine.check_margin_requirements(RISK_MANAGER, portfolio)

        assert result.required == 0
        assert result.available == 0
        assert not result.margin_call
        assert len(engine.bus.get_event_history(EventType.MARGIN_ADEQUATE)) == 1

    def test_adequate(self, engine, margined_portfolio):
        result = engine.check_margin_requirements(RISK_MANAGER, margined_portfolio)

        assert result.required == 1_750 * WAD
        assert result.available == 2_000 * WAD
        assert result.shortfall == 0
        assert not result.margin_call

    def test_margin_call(self, engine, margined_portfolio):
        engine.set_obligations(PORTFOLIO_MANAGER, margined_portfolio, 500 * WAD)

        result = engine.check_margin_requirements(RISK_MANAGER, margined_portfolio)

        assert result.margin_call
        assert result.available == 1_500 * WAD
        assert result.shortfall == 250 * WAD
        event = engine.bus.get_event_history(EventType.MARGIN_CALL)[0]
        assert event.shortfall == 250 * WAD
        assert event.required == 1_750 * WAD

    def test_equality_is_not_a_call(self, engine, margined_portfolio):
        engine.set_obligations(PORTFOLIO_MANAGER, margined_portfolio, 250 * WAD)

        result = engine.check_margin_requirements(RISK_MANAGER, margined_portfolio)

        assert result.available == result.required
        assert not result.margin_call

    def test_available_can_be_negative(self, engine, margined_portfolio):
        engine.set_obligations(PORTFOLIO_MANAGER, margined_portfolio, 3_000 * WAD)

        result = engine.check_margin_requirements(RISK_MANAGER, margined_portfolio)

        assert result.available == -1_000 * WAD
        assert result.shortfall == 2_750 * WAD

    def test_idempotent(self, engine, margined_portfolio):
        engine.set_obligations(PORTFOLIO_MANAGER, margined_portfolio, 500 * WAD)

        first = engine.check_margin_requirements(RISK_MANAGER, margined_portfolio)
        state = engine.get_portfolio(margined_portfolio)
        second = engine.check_margin_requirements(RISK_MANAGER, margined_portfolio)

        assert first == second
        assert engine.get_portfolio(margined_portfolio) is state

    def test_recomputes_after_volatility_change(self, engine, margined_portfolio):
        engine.set_volatility(RISK_MANAGER, "ETH", 8_000)

        result = engine.check_margin_requirements(RISK_MANAGER, margined_portfolio)

        # 500 base + 5,000 x 80% x 50%
        assert result.required == 2_500 * WAD
        assert result.margin_call
        assert engine.get_portfolio(margined_portfolio).maintenance_margin == 2_500 * WAD

    def test_uses_portfolio_method(self, engine, margined_portfolio):
        engine.set_margin_method(RISK_MANAGER, margined_portfolio, MarginMethod.SPAN)

        result = engine.check_margin_requirements(RISK_MANAGER, margined_portfolio)

        assert result.method == MarginMethod.SPAN
        assert result.required == 1_500 * WAD

    def test_reports_shutdown(self, engine, margined_portfolio):
        engine.emergency_shutdown(EMERGENCY, margined_portfolio, "manual")

        assert engine.check_margin_requirements(RISK_MANAGER, margined_portfolio).trading_halted


class TestCheckAll:
    """Test the sweep over every active portfolio."""

    def test_margin_calls_first(self, engine, margined_portfolio):
        engine.register_portfolio(PORTFOLIO_MANAGER, "P2")
        engine.set_obligations(PORTFOLIO_MANAGER, margined_portfolio, 500 * WAD)

        results = engine.check_all_margins(RISK_MANAGER)

        assert [r.portfolio_id for r in results] == [margined_portfolio, "P2"]
        assert results[0].margin_call and not results[1].margin_call

    def test_empty_sweep(self, engine):
        assert engine.check_all_margins(PORTFOLIO_MANAGER) == []

    def test_skips_inactive(self, engine, margined_portfolio):
        engine.set_obligations(PORTFOLIO_MANAGER, margined_portfolio, 500 * WAD)
        engine.deactivate_portfolio(ADMIN, margined_portfolio)

        assert engine.check_all_margins(RISK_MANAGER) == []
        assert engine.get_margin_calls(margined_portfolio) == []


class TestMarginCallRecords:
    """Test severity, deadline and the call history."""

    def test_shortfall_up_to_half_is_high(self, engine, margined_portfolio):
        # Shortfall of exactly half the 1,750 requirement
        engine.set_obligations(PORTFOLIO_MANAGER, margined_portfolio, 1_125 * WAD)

        result = engine.check_margin_requirements(RISK_MANAGER, margined_portfolio)

        assert result.shortfall == 875 * WAD
        assert result.severity == RiskLevel.HIGH

    def test_shortfall_over_half_is_critical(self, engine, margined_portfolio):
        engine.set_obligations(PORTFOLIO_MANAGER, margined_portfolio, 1_125 * WAD + 1)

        result = engine.check_margin_requirements(RISK_MANAGER, margined_portfolio)

        assert result.shortfall == 875 * WAD + 1
        assert result.severity == RiskLevel.CRITICAL
        event = engine.bus.get_event_history(EventType.MARGIN_CALL)[0]
        assert event.severity == "critical"

    @pytest.mark.parametrize("required,shortfall,severity", [
        (10, 5, RiskLevel.HIGH),
        (10, 6, RiskLevel.CRITICAL),
        (11, 5, RiskLevel.HIGH),
        (11, 6, RiskLevel.CRITICAL),
        (10, 15, RiskLevel.CRITICAL),
    ])
    def test_severity_boundary(self, required, shortfall, severity):
        assert margin_call_severity(required, shortfall) == severity

    def test_deadline_is_a_day_out(self, engine, margined_portfolio):
        engine.set_obligations(PORTFOLIO_MANAGER, margined_portfolio, 500 * WAD)

        result = engine.check_margin_requirements(RISK_MANAGER, margined_portfolio)

        assert result.call.issued_at == datetime(2026, 1, 2, 14, 30, tzinfo=timezone.utc)
        assert result.deadline == datetime(2026, 1, 3, 14, 30, tzinfo=timezone.utc)
        assert engine.bus.get_event_history(EventType.MARGIN_CALL)[0].deadline == result.deadline
        assert result.to_dict()["call"]["deadline"] == "2026-01-03T14:30:00+00:00"

    def test_adequate_has_no_call(self, engine, margined_portfolio):
        result = engine.check_margin_requirements(RISK_MANAGER, margined_portfolio)

        assert result.call is None
        assert result.severity is None
        assert result.deadline is None
        assert engine.get_margin_calls(margined_portfolio) == []

    def test_history_per_portfolio(self, engine, margined_portfolio):
        engine.register_portfolio(PORTFOLIO_MANAGER, "P2")
        engine.set_obligations(PORTFOLIO_MANAGER, margined_portfolio, 500 * WAD)

        engine.check_margin_requirements(RISK_MANAGER, margined_portfolio)
        engine.set_obligations(PORTFOLIO_MANAGER, margined_portfolio, 1_500 * WAD)
        engine.check_margin_requirements(PORTFOLIO_MANAGER, margined_portfolio)
        engine.check_margin_requirements(RISK_MANAGER, "P2")

        calls = engine.get_margin_calls(margined_portfolio)
        assert [c.shortfall for c in calls] == [250 * WAD, 1_250 * WAD]
        assert [c.severity for c in calls] == [RiskLevel.HIGH, RiskLevel.CRITICAL]
        assert engine.get_margin_calls("P2") == []

    def test_history_is_bounded(self, engine, margined_portfolio):
        monitor = MarginCallMonitor(
            engine.repository, engine.access, engine.margin_calculator, engine.bus, max_history=2,
        )

        for obligations in (600, 700, 800):
            engine.set_obligations(PORTFOLIO_MANAGER, margined_portfolio, obligations * WAD)
            monitor.check_margin_requirements(RISK_MANAGER, margined_portfolio)

        assert [c.shortfall for c in monitor.get_margin_calls(margined_portfolio)] == [450 * WAD, 550 * WAD]

    def test_calls_in_last_24h(self, engine, margined_portfolio, clock):
        engine.set_obligations(PORTFOLIO_MANAGER, margined_portfolio, 500 * WAD)

        engine.check_margin_requirements(RISK_MANAGER, margined_portfolio)
        clock.advance(20 * 3_600)
        engine.check_margin_requirements(RISK_MANAGER, margined_portfolio)
        clock.advance(5 * 3_600)

        assert engine.margin_monitor.margin_calls_last_24h(margined_portfolio) == 1
        assert engine.margin_monitor.margin_calls_last_24h("P9") == 0
        assert engine.get_status()["margin_calls_24h"] == 1
        assert len(engine.get_margin_calls(margined_portfolio)) == 2


class TestMarginCheckAccess:
    """Test role gating of the committing checks."""

    @pytest.mark.parametrize("caller", [EMERGENCY, ADMIN, "stranger"])
    def test_check_requires_risk_or_portfolio_manager(self, engine, margined_portfolio, caller):
        engine.set_volatility(RISK_MANAGER, "ETH", 8_000)

        with pytest.raises(UnauthorizedError):
            engine.check_margin_requirements(caller, margined_portfolio)

        # Nothing recomputed or committed
        assert engine.get_portfolio(margined_portfolio).maintenance_margin == 1_750 * WAD
        assert engine.bus.get_event_history(EventType.MARGIN_CALL) == []

    def test_portfolio_manager_may_check(self, engine, margined_portfolio):
        assert not engine.check_margin_requirements(PORTFOLIO_MANAGER, margined_portfolio).margin_call

    def test_sweep_requires_role(self, engine, margined_portfolio):
        with pytest.raises(UnauthorizedError):
            engine.check_all_margins(EMERGENCY)
