"""
Risk Limit Validator
====================

Per-portfolio risk limits, the pre-trade gate and the emergency shutdown.

Features:
- Pre-trade validation with one reason code per rejection path
  (shutdown, position size, VaR, liquidity, leverage)
- Breach detection on fresh risk snapshots (zero limit == unset)
- Emergency shutdown and resume with an audit trail

The pre-trade check fails closed: while the shutdown flag is set nothing is
approved, whatever the other metrics say.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from risk_engine.authorization import AccessController, Role, requires_role
from risk_engine.event_bus import SignalBus
from risk_engine.events import (
    BreachMetric,
    EmergencyShutdownEvent,
    PortfolioResumedEvent,
    RiskLimitBreachedEvent,
)
from risk_engine.exceptions import InvalidParameterError, PortfolioShutdownError
from risk_engine.fixed_point import ratio_bps
from risk_engine.models import Portfolio, RiskLimits, RiskMetrics
from risk_engine.repository import PortfolioRepository


logger = logging.getLogger(__name__)

SHUTDOWN_MESSAGE = "Portfolio under emergency shutdown"

# Reported for a ratio whose denominator (portfolio value, collateral) is zero.
UNBOUNDED_RATIO_BPS = 1_000_000


class RejectionReason(str, Enum):
    """Distinct reason code for each pre-trade rejection path."""
    SHUTDOWN = "shutdown"
    POSITION_SIZE = "position_size"
    VAR = "var"
    LIQUIDITY = "liquidity"
    LEVERAGE = "leverage"


@dataclass(frozen=True)
class RiskCheckResult:
    """Result of a single risk check."""
    check_name: str
    passed: bool
    current_value: int
    limit_value: int
    message: str = ""


@dataclass(frozen=True)
class RiskValidationResult:
    """Complete result of a pre-trade validation."""
    approved: bool
    checks: tuple[RiskCheckResult, ...] = ()
    reason: RejectionReason | None = None
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "approved": self.approved,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "checks": [
                {
                    "check_name": c.check_name,
                    "passed": c.passed,
                    "current_value": c.current_value,
                    "limit_value": c.limit_value,
                    "message": c.message,
                }
                for c in self.checks
            ],
        }


@dataclass
class _ShutdownRecord:
    portfolio_id: str
    reason: str
    triggered_by: str
    triggered_at: str
    resumed_by: str | None = None
    resumed_at: str | None = None


class RiskLimitValidator:
    """Gates trades against limits and owns the emergency shutdown flag."""

    def __init__(
        self,
        repository: PortfolioRepository,
        access: AccessController,
        bus: SignalBus,
        max_history: int = 1_000,
    ):
        self._repository = repository
        self.access = access
        self._bus = bus
        self._shutdown_history: deque[_ShutdownRecord] = deque(maxlen=max_history)
        self._history_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Limits
    # ------------------------------------------------------------------

    @requires_role(Role.RISK_MANAGER)
    def set_risk_limits(self, caller: str, portfolio_id: str, limits: RiskLimits) -> RiskLimits:
        """
        Replace a portfolio's limits.

        The shutdown flag in ``limits`` is ignored: only the emergency path
        changes it.
        """
        if not isinstance(limits, RiskLimits):
            raise InvalidParameterError(f"Expected RiskLimits, got {type(limits).__name__}")

        with self._repository.transaction(portfolio_id) as tx:
            current = tx.portfolio.limits
            updated = replace(limits, emergency_shutdown=current.emergency_shutdown)
            tx.commit(replace(tx.portfolio, limits=updated))

        logger.info(f"Risk limits for {portfolio_id} updated by {caller}: {updated.to_dict()}")
        return updated

    def get_risk_limits(self, portfolio_id: str) -> RiskLimits:
        return self._repository.get(portfolio_id).limits

    # ------------------------------------------------------------------
    # Pre-trade gate
    # ------------------------------------------------------------------

    def validate_transaction(
        self,
        portfolio_id: str,
        asset: str,
        amount: int,
        is_buy: bool,
    ) -> RiskValidationResult:
        """
        Check a proposed trade against the portfolio's limits.

        Args:
            portfolio_id: Portfolio the trade belongs to
            asset: Traded asset
            amount: Trade notional (WAD, positive)
            is_buy: Direction of the trade

        Returns:
            RiskValidationResult; never raises for a limit failure
        """
        if amount <= 0:
            raise InvalidParameterError(f"Trade amount must be positive, got {amount}")

        portfolio = self._repository.get(portfolio_id)

        if portfolio.is_shutdown:
            logger.warning(f"Trade in {asset} rejected for {portfolio_id}: emergency shutdown")
            return RiskValidationResult(
                approved=False,
                checks=(RiskCheckResult("shutdown", False, 1, 0, SHUTDOWN_MESSAGE),),
                reason=RejectionReason.SHUTDOWN,
                message=SHUTDOWN_MESSAGE,
            )

        checks = (
            self._check_position_size(portfolio, asset, amount, is_buy),
            self._check_var(portfolio),
            self._check_liquidity(portfolio),
            self._check_leverage(portfolio, asset, amount, is_buy),
        )

        for check in checks:
            if not check.passed:
                logger.warning(f"Trade in {asset} rejected for {portfolio_id}: {check.message}")
                return RiskValidationResult(
                    approved=False,
                    checks=checks,
                    reason=RejectionReason(check.check_name),
                    message=check.message,
                )

        return RiskValidationResult(approved=True, checks=checks)

    @staticmethod
    def _projected_exposures(portfolio: Portfolio, asset: str, amount: int, is_buy: bool) -> dict[str, int]:
        exposures = portfolio.exposure_by_asset()
        exposures[asset] = exposures.get(asset, 0) + (amount if is_buy else -amount)
        return exposures

    def _check_position_size(
        self,
        portfolio: Portfolio,
        asset: str,
        amount: int,
        is_buy: bool,
    ) -> RiskCheckResult:
        limit = portfolio.limits.max_position_size_bps
        projected = abs(self._projected_exposures(portfolio, asset, amount, is_buy)[asset])
        value = portfolio.portfolio_value

        if value == 0:
            size = UNBOUNDED_RATIO_BPS if projected else 0
        else:
            size = ratio_bps(projected, value)

        passed = limit == 0 or size <= limit
        return RiskCheckResult(
            check_name=RejectionReason.POSITION_SIZE.value,
            passed=passed,
            current_value=size,
            limit_value=limit,
            message="" if passed else f"Position size {size}bps exceeds limit {limit}bps",
        )

    @staticmethod
    def _check_var(portfolio: Portfolio) -> RiskCheckResult:
        limit = portfolio.limits.max_var_95_bps
        var_95 = portfolio.metrics.var_95 if portfolio.metrics else 0
        passed = limit == 0 or var_95 <= limit
        return RiskCheckResult(
            check_name=RejectionReason.VAR.value,
            passed=passed,
            current_value=var_95,
            limit_value=limit,
            message="" if passed else f"VaR95 {var_95}bps exceeds limit {limit}bps",
        )

    @staticmethod
    def _check_liquidity(portfolio: Portfolio) -> RiskCheckResult:
        limit = portfolio.limits.min_liquidity_score
        # Without a snapshot there is no score to hold against the limit.
        score = portfolio.metrics.liquidity_score if portfolio.metrics else 100
        passed = limit == 0 or score >= limit
        return RiskCheckResult(
            check_name=RejectionReason.LIQUIDITY.value,
            passed=passed,
            current_value=score,
            limit_value=limit,
            message="" if passed else f"Liquidity score {score} below minimum {limit}",
        )

    def _check_leverage(
        self,
        portfolio: Portfolio,
        asset: str,
        amount: int,
        is_buy: bool,
    ) -> RiskCheckResult:
        limit = portfolio.limits.max_leverage_bps
        gross = sum(abs(e) for e in self._projected_exposures(portfolio, asset, amount, is_buy).values())

        if portfolio.collateral_value == 0:
            leverage = UNBOUNDED_RATIO_BPS if gross else 0
        else:
            leverage = ratio_bps(gross, portfolio.collateral_value)

        passed = limit == 0 or leverage <= limit
        return RiskCheckResult(
            check_name=RejectionReason.LEVERAGE.value,
            passed=passed,
            current_value=leverage,
            limit_value=limit,
            message="" if passed else f"Leverage {leverage}bps exceeds limit {limit}bps",
        )

    # ------------------------------------------------------------------
    # Breach detection
    # ------------------------------------------------------------------

    def check_breaches(
        self,
        portfolio_id: str,
        metrics: RiskMetrics,
        limits: RiskLimits | None = None,
    ) -> list[RiskLimitBreachedEvent]:
        """
        Compare a fresh snapshot to the limits. Zero limits are skipped.

        VaR, drawdown and liquidity are evaluated independently, so one
        snapshot can produce up to three breach signals.
        """
        limits = limits or self._repository.get(portfolio_id).limits
        breaches: list[RiskLimitBreachedEvent] = []

        if limits.max_var_95_bps and metrics.var_95 > limits.max_var_95_bps:
            breaches.append(RiskLimitBreachedEvent(
                portfolio_id=portfolio_id,
                metric=BreachMetric.VAR_95,
                value=metrics.var_95,
                limit=limits.max_var_95_bps,
            ))

        if limits.max_drawdown_bps and metrics.max_drawdown > limits.max_drawdown_bps:
            breaches.append(RiskLimitBreachedEvent(
                portfolio_id=portfolio_id,
                metric=BreachMetric.MAX_DRAWDOWN,
                value=metrics.max_drawdown,
                limit=limits.max_drawdown_bps,
            ))

        if limits.min_liquidity_score and metrics.liquidity_score < limits.min_liquidity_score:
            breaches.append(RiskLimitBreachedEvent(
                portfolio_id=portfolio_id,
                metric=BreachMetric.LIQUIDITY,
                value=metrics.liquidity_score,
                limit=limits.min_liquidity_score,
            ))

        for breach in breaches:
            logger.warning(
                f"Risk limit breached for {portfolio_id}: {breach.metric.value}="
                f"{breach.value} (limit {breach.limit})"
            )
        return breaches

    # ------------------------------------------------------------------
    # Emergency shutdown
    # ------------------------------------------------------------------

    @requires_role(Role.EMERGENCY)
    def emergency_shutdown(self, caller: str, portfolio_id: str, reason: str) -> None:
        """Set the shutdown flag; every pre-trade check fails until resumed."""
        with self._repository.transaction(portfolio_id) as tx:
            portfolio = tx.portfolio
            tx.commit(replace(portfolio, limits=replace(portfolio.limits, emergency_shutdown=True)))

        now = self._repository.clock().isoformat()
        with self._history_lock:
            self._shutdown_history.append(_ShutdownRecord(portfolio_id, reason, caller, now))

        logger.critical(f"EMERGENCY SHUTDOWN for {portfolio_id} by {caller}: {reason}")
        self._bus.publish(EmergencyShutdownEvent(
            portfolio_id=portfolio_id,
            reason=reason,
            triggered_by=caller,
        ))

    @requires_role(Role.EMERGENCY, Role.ADMIN)
    def resume_portfolio(self, caller: str, portfolio_id: str) -> bool:
        """
        Clear the shutdown flag.

        Returns:
            False if the portfolio was not shut down
        """
        with self._repository.transaction(portfolio_id) as tx:
            portfolio = tx.portfolio
            if not portfolio.is_shutdown:
                return False
            tx.commit(replace(portfolio, limits=replace(portfolio.limits, emergency_shutdown=False)))

        now = self._repository.clock().isoformat()
        with self._history_lock:
            for record in reversed(self._shutdown_history):
                if record.portfolio_id == portfolio_id and record.resumed_at is None:
                    record.resumed_by = caller
                    record.resumed_at = now
                    break

        logger.warning(f"Portfolio {portfolio_id} resumed by {caller}")
        self._bus.publish(PortfolioResumedEvent(portfolio_id=portfolio_id, resumed_by=caller))
        return True

    def require_trading_allowed(self, portfolio_id: str) -> None:
        """Raise PortfolioShutdownError if the portfolio is shut down."""
        if self._repository.get(portfolio_id).is_shutdown:
            raise PortfolioShutdownError(SHUTDOWN_MESSAGE, portfolio_id=portfolio_id)

    def get_shutdown_history(self, portfolio_id: str | None = None) -> list[dict[str, Any]]:
        """Audit trail of shutdowns (and their resumptions)."""
        with self._history_lock:
            records = list(self._shutdown_history)
        return [
            {
                "portfolio_id": r.portfolio_id,
                "reason": r.reason,
                "triggered_by": r.triggered_by,
                "triggered_at": r.triggered_at,
                "resumed_by": r.resumed_by,
                "resumed_at": r.resumed_at,
            }
            for r in records
            if portfolio_id is None or r.portfolio_id == portfolio_id
        ]
