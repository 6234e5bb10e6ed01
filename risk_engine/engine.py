"""
Risk Engine
===========

Single entry point that wires every component around one portfolio
repository, one signal bus and one access controller.

Initialization order:
1. Configuration and logging
2. Repository, access control, signal bus
3. Market data: correlations, volatilities, price feeds, stress scenarios
4. Calculators: VaR, margin
5. Limits, metrics, ledger and margin monitor

Each operation is delegated to the component that owns it; role checks are
enforced there, so calling a component directly is exactly as safe as going
through the engine.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

from risk_engine.authorization import AccessController, Role, requires_role
from risk_engine.config import EngineConfig, load_config
from risk_engine.correlation_store import CorrelationStore
from risk_engine.event_bus import SignalBus
from risk_engine.logging_config import LoggingConfig, configure_logging
from risk_engine.margin_calculator import PortfolioMarginCalculator
from risk_engine.margin_monitor import MarginCall, MarginCallMonitor, MarginCheckResult
from risk_engine.models import (
    MarginCalculationResult,
    MarginMethod,
    Portfolio,
    Position,
    RiskLimits,
    RiskMetrics,
)
from risk_engine.position_ledger import PositionLedger
from risk_engine.price_oracle import PriceFeedRegistry, PriceOracleAdapter
from risk_engine.repository import Clock, PortfolioRepository
from risk_engine.return_series import ReturnSeriesStore
from risk_engine.risk_limits import RiskLimitValidator, RiskValidationResult
from risk_engine.risk_metrics import BetaProvider, RiskMetricsEngine
from risk_engine.stress_tester import ScenarioOutcome, StressScenario, StressTester
from risk_engine.var_calculator import VaRCalculator, VaRResult


logger = logging.getLogger(__name__)


class RiskEngine:
    """
    Portfolio risk and margining engine.

    Args:
        owner: Identity that receives ADMIN and may grant every other role
        config: Deployment configuration (defaults if omitted)
        clock: Time source shared by every component
        beta_provider: Beta source for risk snapshots (neutral if omitted)
        bus: Signal bus to publish on (a fresh one if omitted)
    """

    def __init__(
        self,
        owner: str,
        config: EngineConfig | None = None,
        clock: Clock | None = None,
        beta_provider: BetaProvider | None = None,
        bus: SignalBus | None = None,
    ):
        self.config = config or EngineConfig()

        self.repository = PortfolioRepository(clock)
        self.access = AccessController(owner)
        self.bus = bus or SignalBus()

        self.correlations = CorrelationStore(self.access, self.bus, self.config.margin)
        self.price_feeds = PriceFeedRegistry(self.access, self.bus, self.config.oracle, self.repository.clock)
        self.stress_tester = StressTester(self.access)

        self.var_calculator = VaRCalculator(self.config.var, self.repository)
        self.margin_calculator = PortfolioMarginCalculator(
            self.correlations,
            self.stress_tester,
            self.repository,
            self.access,
            self.bus,
            self.config.margin,
        )

        self.returns = ReturnSeriesStore(self.repository, self.access, self.config.var)
        self.limits = RiskLimitValidator(self.repository, self.access, self.bus)
        self.metrics = RiskMetricsEngine(
            self.repository,
            self.access,
            self.bus,
            self.var_calculator,
            self.limits,
            self.config.metrics,
            beta_provider,
        )
        self.ledger = PositionLedger(
            self.repository,
            self.access,
            self.bus,
            self.margin_calculator,
            self.metrics,
            self.limits,
            self.price_feeds,
        )
        self.margin_monitor = MarginCallMonitor(self.repository, self.access, self.margin_calculator, self.bus)

        logger.info(f"RiskEngine initialized (owner={owner}, method={self.config.margin.default_method})")

    @classmethod
    def from_config_file(
        cls,
        owner: str,
        path: str | Path = "config.yaml",
        clock: Clock | None = None,
        apply_logging: bool = True,
    ) -> "RiskEngine":
        """Build an engine from a YAML file, applying its logging section."""
        config = load_config(path)
        if apply_logging:
            configure_logging(LoggingConfig.from_settings(config.logging))
        return cls(owner, config=config, clock=clock)

    # ------------------------------------------------------------------
    # Portfolios
    # ------------------------------------------------------------------

    @requires_role(Role.PORTFOLIO_MANAGER, Role.ADMIN)
    def register_portfolio(
        self,
        caller: str,
        portfolio_id: str,
        owner: str | None = None,
        initial_margin_ratio_bps: int | None = None,
        margin_method: MarginMethod | None = None,
    ) -> Portfolio:
        """Create a portfolio with default limits and no positions."""
        if margin_method is None:
            margin_method = MarginMethod(self.config.margin.default_method)
        if initial_margin_ratio_bps is None:
            initial_margin_ratio_bps = self.config.margin.default_initial_margin_ratio_bps
        return self.repository.register(
            portfolio_id,
            owner or caller,
            initial_margin_ratio_bps,
            margin_method,
        )

    @requires_role(Role.ADMIN)
    def deactivate_portfolio(self, caller: str, portfolio_id: str) -> Portfolio:
        logger.warning(f"Deactivation of {portfolio_id} requested by {caller}")
        return self.repository.deactivate(portfolio_id)

    def get_portfolio(self, portfolio_id: str) -> Portfolio:
        return self.repository.get(portfolio_id)

    # ------------------------------------------------------------------
    # Returns and metrics
    # ------------------------------------------------------------------

    def add_return(self, caller: str, portfolio_id: str, return_bps: int) -> int:
        return self.returns.add_return(caller, portfolio_id, return_bps)

    def add_returns(self, caller: str, portfolio_id: str, returns: Iterable[int]) -> int:
        return self.returns.add_returns(caller, portfolio_id, returns)

    def calculate_var(self, portfolio_id: str, confidence_bps: int, horizon_days: int = 1) -> VaRResult:
        return self.var_calculator.calculate_portfolio_var(portfolio_id, confidence_bps, horizon_days)

    def update_risk_metrics(self, caller: str, portfolio_id: str) -> RiskMetrics:
        return self.metrics.update_risk_metrics(caller, portfolio_id)

    def get_risk_metrics(self, portfolio_id: str) -> RiskMetrics | None:
        return self.metrics.get_risk_metrics(portfolio_id)

    # ------------------------------------------------------------------
    # Limits and shutdown
    # ------------------------------------------------------------------

    def set_risk_limits(self, caller: str, portfolio_id: str, limits: RiskLimits) -> RiskLimits:
        return self.limits.set_risk_limits(caller, portfolio_id, limits)

    def validate_transaction(
        self,
        portfolio_id: str,
        asset: str,
        amount: int,
        is_buy: bool,
    ) -> RiskValidationResult:
        return self.limits.validate_transaction(portfolio_id, asset, amount, is_buy)

    def emergency_shutdown(self, caller: str, portfolio_id: str, reason: str) -> None:
        self.limits.emergency_shutdown(caller, portfolio_id, reason)

    def resume_portfolio(self, caller: str, portfolio_id: str) -> bool:
        return self.limits.resume_portfolio(caller, portfolio_id)

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    def set_correlation(self, caller: str, asset_a: str, asset_b: str, value: int) -> None:
        self.correlations.set_correlation(caller, asset_a, asset_b, value)

    def set_correlations(
        self,
        caller: str,
        assets_a: Sequence[str],
        assets_b: Sequence[str],
        values: Sequence[int],
    ) -> int:
        return self.correlations.set_correlations(caller, assets_a, assets_b, values)

    def set_volatility(self, caller: str, asset: str, value: int) -> None:
        self.correlations.set_volatility(caller, asset, value)

    def update_price_feed(self, caller: str, asset: str, feed: PriceOracleAdapter | None) -> None:
        self.price_feeds.update_price_feed(caller, asset, feed)

    # ------------------------------------------------------------------
    # Margin
    # ------------------------------------------------------------------

    def calculate_margin(self, portfolio_id: str, method: MarginMethod | None = None) -> MarginCalculationResult:
        return self.margin_calculator.calculate_margin(self.repository.get(portfolio_id), method)

    def set_margin_method(self, caller: str, portfolio_id: str, method: MarginMethod) -> MarginCalculationResult:
        return self.margin_calculator.set_margin_method(caller, portfolio_id, method)

    def check_margin_requirements(self, caller: str, portfolio_id: str) -> MarginCheckResult:
        return self.margin_monitor.check_margin_requirements(caller, portfolio_id)

    def check_all_margins(self, caller: str) -> list[MarginCheckResult]:
        return self.margin_monitor.check_all(caller)

    def get_margin_calls(self, portfolio_id: str) -> list[MarginCall]:
        return self.margin_monitor.get_margin_calls(portfolio_id)

    # ------------------------------------------------------------------
    # Positions and collateral
    # ------------------------------------------------------------------

    def open_position(
        self,
        caller: str,
        portfolio_id: str,
        asset: str,
        quantity: int,
        entry_price: int,
    ) -> Position:
        return self.ledger.open_position(caller, portfolio_id, asset, quantity, entry_price)

    def close_position(self, caller: str, portfolio_id: str, index: int, exit_price: int) -> int:
        return self.ledger.close_position(caller, portfolio_id, index, exit_price)

    def update_prices(self, caller: str, portfolio_id: str) -> tuple[Position, ...]:
        return self.ledger.update_prices(caller, portfolio_id)

    def get_positions(self, portfolio_id: str) -> tuple[Position, ...]:
        return self.ledger.get_positions(portfolio_id)

    def deposit_collateral(self, caller: str, portfolio_id: str, amount: int) -> int:
        return self.ledger.deposit_collateral(caller, portfolio_id, amount)

    def withdraw_collateral(self, caller: str, portfolio_id: str, amount: int) -> int:
        return self.ledger.withdraw_collateral(caller, portfolio_id, amount)

    def set_obligations(self, caller: str, portfolio_id: str, amount: int) -> None:
        self.ledger.set_obligations(caller, portfolio_id, amount)

    # ------------------------------------------------------------------
    # Stress testing
    # ------------------------------------------------------------------

    def add_scenario(
        self,
        caller: str,
        scenario_id: str,
        name: str,
        assets: Sequence[str],
        shocks: Sequence[int],
        description: str = "",
    ) -> StressScenario:
        return self.stress_tester.add_scenario(caller, scenario_id, name, assets, shocks, description)

    def evaluate_scenario(self, portfolio_id: str, scenario_id: str) -> ScenarioOutcome:
        return self.stress_tester.evaluate_scenario(self.repository.get(portfolio_id), scenario_id)

    def run_all_scenarios(self, portfolio_id: str) -> list[ScenarioOutcome]:
        return self.stress_tester.run_all_scenarios(self.repository.get(portfolio_id))

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> dict[str, Any]:
        """Engine-wide status for dashboards and health checks."""
        portfolios: Mapping[str, Portfolio] = {
            pid: self.repository.get(pid) for pid in self.repository.portfolio_ids()
        }
        return {
            "portfolios": len(portfolios),
            "active_portfolios": sum(1 for p in portfolios.values() if p.active),
            "shutdown_portfolios": sorted(pid for pid, p in portfolios.items() if p.is_shutdown),
            "margin": self.margin_calculator.get_status(),
            "stress": self.stress_tester.get_status(),
            "price_feeds": self.price_feeds.get_status(),
            "bus": self.bus.get_status(),
            "margin_calls_24h": self.margin_monitor.margin_calls_last_24h(),
        }
