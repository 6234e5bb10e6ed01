"""
Portfolio Margin Calculator
===========================

Maintenance margin under four methods, selected per portfolio:

- STANDARD: sum of standalone position margins
- PORTFOLIO: gross margin netted through the correlation structure, with a
  capped diversification benefit and a concentration penalty
- RISK_BASED: portfolio value x portfolio volatility x multiplier
- SPAN: worst loss across the active stress scenarios

Every method returns a ``MarginCalculationResult`` with the same fields.
All arithmetic is integer (WAD amounts, bps rates); square roots go through
``math.isqrt``.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any

from risk_engine.authorization import AccessController, Role, requires_role
from risk_engine.config import MarginConfig
from risk_engine.correlation_store import CorrelationStore
from risk_engine.event_bus import SignalBus
from risk_engine.events import MarginMethodChangedEvent
from risk_engine.exceptions import InvalidParameterError
from risk_engine.fixed_point import BPS, bps_of, isqrt, mul_div
from risk_engine.logging_config import timed
from risk_engine.models import MarginCalculationResult, MarginMethod, Portfolio, Position
from risk_engine.repository import PortfolioRepository
from risk_engine.stress_tester import StressTester


logger = logging.getLogger(__name__)


class PortfolioMarginCalculator:
    """
    Margin calculator with cross-asset netting.

    The diversification cap and the concentration threshold are deployment
    constants from ``MarginConfig``, not per-portfolio settings.
    """

    def __init__(
        self,
        correlations: CorrelationStore,
        stress_tester: StressTester,
        repository: PortfolioRepository,
        access: AccessController,
        bus: SignalBus,
        config: MarginConfig | None = None,
    ):
        self._correlations = correlations
        self._stress_tester = stress_tester
        self._repository = repository
        self.access = access
        self._bus = bus
        self._config = config or MarginConfig()

        logger.info(
            f"PortfolioMarginCalculator initialized: base={self._config.base_margin_rate_bps}bps, "
            f"cap={self._config.max_diversification_benefit_bps}bps, "
            f"concentration={self._config.concentration_threshold_bps}bps"
        )

    # ------------------------------------------------------------------
    # Building blocks
    # ------------------------------------------------------------------

    def position_margin(self, position: Position) -> int:
        """Standalone margin: base rate plus a volatility-scaled add-on."""
        market_value = position.market_value
        volatility = self._correlations.get_volatility(position.asset)
        base = bps_of(market_value, self._config.base_margin_rate_bps)
        addon = mul_div(market_value, volatility * self._config.volatility_addon_rate_bps, BPS * BPS)
        return base + addon

    def with_position_margins(self, positions: tuple[Position, ...]) -> tuple[Position, ...]:
        """Positions with ``margin_requirement`` refreshed."""
        return tuple(replace(p, margin_requirement=self.position_margin(p)) for p in positions)

    @staticmethod
    def calculate_initial_margin(value: int, ratio_bps: int) -> int:
        """Initial margin for a new position of (signed) notional ``value``."""
        if not 0 < ratio_bps <= BPS:
            raise InvalidParameterError(f"Initial margin ratio out of range: {ratio_bps}")
        return bps_of(abs(value), ratio_bps)

    def portfolio_volatility_bps(self, portfolio: Portfolio) -> int:
        """Annualised volatility of the net exposures, in bps of gross exposure."""
        gross = portfolio.gross_exposure
        if gross == 0:
            return 0
        return mul_div(self._exposure_sd(portfolio), BPS, gross)

    def _exposure_sd(self, portfolio: Portfolio) -> int:
        """
        Standard deviation of portfolio value (WAD).

        sqrt(sum_ij e_i e_j vol_i vol_j rho_ij) over net per-asset exposures.
        """
        exposures = portfolio.exposure_by_asset()
        assets = sorted(exposures)
        vols = [self._correlations.get_volatility(a) for a in assets]
        rho = self._correlations.correlation_matrix(assets)

        total = 0
        for i, a in enumerate(assets):
            for j, b in enumerate(assets):
                total += exposures[a] * exposures[b] * vols[i] * vols[j] * rho[i][j]

        return isqrt(max(total // BPS**3, 0))

    # ------------------------------------------------------------------
    # Methods
    # ------------------------------------------------------------------

    @timed(threshold_ms=20.0)
    def calculate_margin(
        self,
        portfolio: Portfolio,
        method: MarginMethod | None = None,
    ) -> MarginCalculationResult:
        """
        Margin requirement for a portfolio snapshot. Pure: no state changes.

        Args:
            portfolio: Committed or candidate portfolio state
            method: Override of the portfolio's own method
        """
        method = method or portfolio.margin_method

        if method == MarginMethod.STANDARD:
            result = self._standard(portfolio)
        elif method == MarginMethod.PORTFOLIO:
            result = self._portfolio(portfolio)
        elif method == MarginMethod.RISK_BASED:
            result = self._single_figure(method, self._risk_based(portfolio))
        elif method == MarginMethod.SPAN:
            result = self._single_figure(method, self._stress_tester.worst_case_loss(portfolio))
        else:
            raise InvalidParameterError(f"Unknown margin method: {method}")

        logger.debug(
            f"Margin for {portfolio.portfolio_id} ({method.value}): "
            f"gross={result.gross_margin} final={result.final_margin}"
        )
        return result

    @staticmethod
    def _single_figure(method: MarginMethod, amount: int) -> MarginCalculationResult:
        return MarginCalculationResult(
            method=method,
            gross_margin=amount,
            net_margin=amount,
            diversification_benefit=0,
            concentration_penalty=0,
            final_margin=amount,
        )

    def _standard(self, portfolio: Portfolio) -> MarginCalculationResult:
        gross = sum(self.position_margin(p) for p in portfolio.positions)
        return self._single_figure(MarginMethod.STANDARD, gross)

    def _portfolio(self, portfolio: Portfolio) -> MarginCalculationResult:
        positions = portfolio.positions
        margins = [self.position_margin(p) for p in positions]
        gross = sum(margins)

        if gross == 0:
            return MarginCalculationResult(MarginMethod.PORTFOLIO, 0, 0, 0, 0, 0)

        # Directional margins netted through the correlation matrix.
        assets = sorted({p.asset for p in positions})
        index = {a: i for i, a in enumerate(assets)}
        rho = self._correlations.correlation_matrix(assets)
        signed = [p.direction * m for p, m in zip(positions, margins)]

        total = 0
        for i, pi in enumerate(positions):
            for j, pj in enumerate(positions):
                total += signed[i] * signed[j] * rho[index[pi.asset]][index[pj.asset]]
        netted = isqrt(max(total // BPS, 0))

        risk_factor = max(mul_div(gross - netted, BPS, gross), 0)
        diversification = min(
            mul_div(gross, risk_factor, BPS),
            bps_of(gross, self._config.max_diversification_benefit_bps),
        )

        penalty = self._concentration_penalty(positions, margins)
        net = gross - diversification

        return MarginCalculationResult(
            method=MarginMethod.PORTFOLIO,
            gross_margin=gross,
            net_margin=net,
            diversification_benefit=diversification,
            concentration_penalty=penalty,
            final_margin=net + penalty,
        )

    def _concentration_penalty(self, positions: tuple[Position, ...], margins: list[int]) -> int:
        """Extra margin on assets whose share of gross exposure tops the threshold."""
        exposure: dict[str, int] = {}
        asset_margin: dict[str, int] = {}
        for position, margin in zip(positions, margins):
            exposure[position.asset] = exposure.get(position.asset, 0) + position.market_value
            asset_margin[position.asset] = asset_margin.get(position.asset, 0) + margin

        total = sum(exposure.values())
        if total == 0:
            return 0

        threshold = self._config.concentration_threshold_bps
        penalty = 0
        for asset, value in exposure.items():
            share = mul_div(value, BPS, total)
            if share > threshold:
                penalty += mul_div(asset_margin[asset], share - threshold, BPS)
        return penalty

    def _risk_based(self, portfolio: Portfolio) -> int:
        """Portfolio value (collateral plus unrealized P&L) x volatility x multiplier."""
        scale = self.portfolio_volatility_bps(portfolio) * self._config.volatility_multiplier_bps
        return mul_div(portfolio.portfolio_value, scale, BPS * BPS)

    # ------------------------------------------------------------------
    # Method selection
    # ------------------------------------------------------------------

    @requires_role(Role.RISK_MANAGER)
    def set_margin_method(self, caller: str, portfolio_id: str, method: MarginMethod) -> MarginCalculationResult:
        """
        Switch a portfolio's margin method and recompute its maintenance margin.

        There are no automatic transitions; only this call changes the method.
        """
        if not isinstance(method, MarginMethod):
            raise InvalidParameterError(f"Unknown margin method: {method!r}")

        with self._repository.transaction(portfolio_id) as tx:
            previous = tx.portfolio.margin_method
            candidate = replace(tx.portfolio, margin_method=method)
            result = self.calculate_margin(candidate)
            tx.commit(replace(candidate, maintenance_margin=result.final_margin))

        logger.info(
            f"Margin method for {portfolio_id} changed {previous.value} -> {method.value} by {caller}"
        )
        self._bus.publish(MarginMethodChangedEvent(
            portfolio_id=portfolio_id,
            previous=previous.value,
            current=method.value,
        ))
        return result

    def get_status(self) -> dict[str, Any]:
        return {
            "base_margin_rate_bps": self._config.base_margin_rate_bps,
            "volatility_addon_rate_bps": self._config.volatility_addon_rate_bps,
            "volatility_multiplier_bps": self._config.volatility_multiplier_bps,
            "max_diversification_benefit_bps": self._config.max_diversification_benefit_bps,
            "concentration_threshold_bps": self._config.concentration_threshold_bps,
        }
