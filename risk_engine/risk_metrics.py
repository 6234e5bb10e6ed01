"""
Risk Metrics Engine
===================

Derives the full risk snapshot of a portfolio from its return series and
positions.

Features:
- VaR 95/99 and expected shortfall (via VaRCalculator)
- Sharpe and Sortino ratios over the configured risk-free rate
- Max drawdown of the compounded equity path
- Annualised volatility
- Liquidity score, concentration and leverage from positions
- Pluggable beta (neutral by default, regression against a benchmark)
- Letter risk grade

The snapshot is built completely before it is committed in one assignment,
so a failure at any step leaves the previous snapshot in place. Breach
signals are evaluated after the commit.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Sequence

from scipy import stats

from risk_engine.authorization import AccessController, Role, requires_role
from risk_engine.config import CONFIDENCE_95, CONFIDENCE_99, MetricsConfig
from risk_engine.event_bus import SignalBus
from risk_engine.events import ConcentrationAlertEvent, RiskEvent, RiskMetricsCalculatedEvent
from risk_engine.fixed_point import BPS, WAD, isqrt, quantize_bps, ratio_bps
from risk_engine.logging_config import get_calculation_timer, get_context_logger
from risk_engine.models import Portfolio, RiskGrade, RiskMetrics
from risk_engine.repository import PortfolioRepository
from risk_engine.risk_limits import RiskLimitValidator
from risk_engine.var_calculator import VaRCalculator


logger = logging.getLogger(__name__)
timer = get_calculation_timer(__name__)

NEUTRAL_BETA = BPS


class BetaProvider(ABC):
    """Source of a portfolio's beta (bps, 10000 == 1.0)."""

    @abstractmethod
    def beta(self, portfolio_id: str, returns: Sequence[int]) -> int:
        ...


class NeutralBetaProvider(BetaProvider):
    """Beta of 1.0 for every portfolio, used when no benchmark is wired in."""

    def beta(self, portfolio_id: str, returns: Sequence[int]) -> int:
        return NEUTRAL_BETA


class BenchmarkBetaProvider(BetaProvider):
    """
    OLS beta of portfolio returns on benchmark returns.

    The two series are aligned on their most recent observations. With fewer
    than two aligned points, or a flat benchmark, beta falls back to neutral.
    """

    def __init__(self, benchmark_returns: Sequence[int]):
        self._benchmark = list(benchmark_returns)

    def update_benchmark(self, benchmark_returns: Sequence[int]) -> None:
        self._benchmark = list(benchmark_returns)

    def beta(self, portfolio_id: str, returns: Sequence[int]) -> int:
        length = min(len(self._benchmark), len(returns))
        if length < 2:
            return NEUTRAL_BETA

        benchmark = self._benchmark[-length:]
        if len(set(benchmark)) == 1:
            return NEUTRAL_BETA

        regression = stats.linregress(benchmark, list(returns)[-length:])
        logger.debug(
            f"Beta for {portfolio_id}: slope={regression.slope:.4f} r={regression.rvalue:.4f}"
        )
        return quantize_bps(float(regression.slope))


# Sub-score thresholds for the letter grade, as (upper bound, score).
_VAR_SCORES = ((200, 100), (500, 75), (1_000, 50), (1_500, 25))
_DRAWDOWN_SCORES = ((500, 100), (1_000, 75), (2_000, 50), (3_000, 25))
_SHARPE_SCORES = ((20_000, 100), (10_000, 75), (5_000, 50), (0, 25))


class RiskMetricsEngine:
    """Computes, commits and signals risk snapshots."""

    def __init__(
        self,
        repository: PortfolioRepository,
        access: AccessController,
        bus: SignalBus,
        var_calculator: VaRCalculator,
        limit_validator: RiskLimitValidator,
        config: MetricsConfig | None = None,
        beta_provider: BetaProvider | None = None,
    ):
        self._repository = repository
        self.access = access
        self._bus = bus
        self._var = var_calculator
        self._limits = limit_validator
        self._config = config or MetricsConfig()
        self.beta_provider: BetaProvider = beta_provider or NeutralBetaProvider()

    @property
    def min_data_points(self) -> int:
        """Series length needed before a snapshot can be computed."""
        return self._var.min_data_points

    # ------------------------------------------------------------------
    # Return-series statistics
    # ------------------------------------------------------------------

    def _excess_numerator(self, returns: Sequence[int]) -> int:
        """n * T * (mean - rf_daily), kept integral."""
        days = self._config.trading_days_per_year
        return sum(returns) * days - len(returns) * self._config.risk_free_rate_bps

    def sharpe_ratio(self, returns: Sequence[int]) -> int:
        """
        Mean excess return over sample standard deviation, in bps.

        Zero when the deviation is zero; floored at zero.
        """
        n = len(returns)
        if n < 2:
            return 0
        total = sum(returns)
        spread = n * sum(r * r for r in returns) - total * total
        std_scaled = isqrt(spread * BPS * BPS // (n * (n - 1)))
        if std_scaled == 0:
            return 0
        days = self._config.trading_days_per_year
        sharpe = self._excess_numerator(returns) * BPS * BPS // (n * days * std_scaled)
        return max(sharpe, 0)

    def sortino_ratio(self, returns: Sequence[int]) -> int:
        """Like Sharpe but over downside deviation; zero with no losing days."""
        n = len(returns)
        if n == 0:
            return 0
        downside = sum(r * r for r in returns if r < 0)
        deviation_scaled = isqrt(downside * BPS * BPS // n)
        if deviation_scaled == 0:
            return 0
        days = self._config.trading_days_per_year
        sortino = self._excess_numerator(returns) * BPS * BPS // (n * days * deviation_scaled)
        return max(sortino, 0)

    @staticmethod
    def max_drawdown(returns: Sequence[int]) -> int:
        """Largest bps loss from a running peak of the equity path starting at 1.0."""
        equity = WAD
        peak = WAD
        worst = 0
        for r in returns:
            equity = max(equity * (BPS + r) // BPS, 0)
            if equity > peak:
                peak = equity
            drawdown = (peak - equity) * BPS // peak
            if drawdown > worst:
                worst = drawdown
        return worst

    def volatility(self, returns: Sequence[int]) -> int:
        """Annualised volatility in bps: sqrt(sample variance x trading days)."""
        n = len(returns)
        if n < 2:
            return 0
        total = sum(returns)
        spread = n * sum(r * r for r in returns) - total * total
        return isqrt(spread * self._config.trading_days_per_year // (n * (n - 1)))

    # ------------------------------------------------------------------
    # Position statistics
    # ------------------------------------------------------------------

    def liquidity_score(self, portfolio: Portfolio) -> int:
        """Base score plus a bonus per distinct asset beyond the first, capped at 100."""
        breadth = max(len(portfolio.held_assets()) - 1, 0)
        score = self._config.liquidity_base_score + breadth * self._config.liquidity_breadth_bonus
        return min(score, 100)

    @staticmethod
    def concentration(portfolio: Portfolio) -> int:
        """Largest single-asset exposure over total exposure, bps (0 when flat)."""
        per_asset: dict[str, int] = {}
        for position in portfolio.positions:
            per_asset[position.asset] = per_asset.get(position.asset, 0) + position.market_value
        total = sum(per_asset.values())
        if total == 0:
            return 0
        return ratio_bps(max(per_asset.values()), total)

    @staticmethod
    def leverage(portfolio: Portfolio) -> int:
        """Gross exposure over collateral, bps (0 without collateral)."""
        return ratio_bps(portfolio.gross_exposure, portfolio.collateral_value)

    @staticmethod
    def _score(value: int, table: tuple[tuple[int, int], ...], higher_is_better: bool) -> int:
        for bound, score in table:
            if (value > bound) if higher_is_better else (value < bound):
                return score
        return 0

    def risk_grade(self, var_95: int, sharpe: int, drawdown: int) -> RiskGrade:
        """Average of VaR, Sharpe and drawdown sub-scores mapped to A..F."""
        average = (
            self._score(var_95, _VAR_SCORES, higher_is_better=False)
            + self._score(sharpe, _SHARPE_SCORES, higher_is_better=True)
            + self._score(drawdown, _DRAWDOWN_SCORES, higher_is_better=False)
        ) // 3
        return RiskGrade.from_score(average)

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def compute(self, portfolio: Portfolio) -> RiskMetrics:
        """
        Build a complete snapshot for a portfolio state. Pure.

        Raises:
            InsufficientDataError: Return series below the VaR minimum
        """
        returns = portfolio.returns
        with timer.measure("risk_metrics"):
            var_95 = self._var.calculate_var(returns, CONFIDENCE_95)
            var_99 = self._var.calculate_var(returns, CONFIDENCE_99)
            sharpe = self.sharpe_ratio(returns)
            drawdown = self.max_drawdown(returns)

            return RiskMetrics(
                var_95=var_95.var_bps,
                var_99=var_99.var_bps,
                expected_shortfall=var_95.expected_shortfall_bps,
                sharpe_ratio=sharpe,
                sortino_ratio=self.sortino_ratio(returns),
                max_drawdown=drawdown,
                volatility=self.volatility(returns),
                liquidity_score=self.liquidity_score(portfolio),
                concentration=self.concentration(portfolio),
                beta=self.beta_provider.beta(portfolio.portfolio_id, returns),
                leverage=self.leverage(portfolio),
                risk_grade=self.risk_grade(var_95.var_bps, sharpe, drawdown),
                data_points=len(returns),
                timestamp=self._repository.clock(),
            )

    def signals_for(self, portfolio: Portfolio, metrics: RiskMetrics) -> list[RiskEvent]:
        """Signals that follow a committed snapshot: calculated, breaches, alerts."""
        signals: list[RiskEvent] = [
            RiskMetricsCalculatedEvent(
                portfolio_id=portfolio.portfolio_id,
                var_95=metrics.var_95,
                var_99=metrics.var_99,
                sharpe_ratio=metrics.sharpe_ratio,
            )
        ]
        signals.extend(self._limits.check_breaches(portfolio.portfolio_id, metrics, portfolio.limits))

        alert_threshold = self._config.concentration_alert_bps
        if alert_threshold and metrics.concentration > alert_threshold:
            signals.append(ConcentrationAlertEvent(
                portfolio_id=portfolio.portfolio_id,
                concentration=metrics.concentration,
                threshold=alert_threshold,
            ))
        return signals

    @requires_role(Role.RISK_MANAGER, Role.PORTFOLIO_MANAGER)
    def update_risk_metrics(self, caller: str, portfolio_id: str) -> RiskMetrics:
        """
        Recompute and commit the risk snapshot, then signal breaches.

        Raises:
            InsufficientDataError: Return series below the VaR minimum
        """
        log = get_context_logger(__name__, portfolio=portfolio_id)

        with self._repository.transaction(portfolio_id) as tx:
            metrics = self.compute(tx.portfolio)
            committed = replace(tx.portfolio, metrics=metrics)
            tx.commit(committed)

        log.info(
            f"Risk metrics updated by {caller}: VaR95={metrics.var_95}bps "
            f"VaR99={metrics.var_99}bps sharpe={metrics.sharpe_ratio} grade={metrics.risk_grade.value}"
        )
        self._bus.publish_all(self.signals_for(committed, metrics))
        return metrics

    def get_risk_metrics(self, portfolio_id: str) -> RiskMetrics | None:
        return self._repository.get(portfolio_id).metrics
