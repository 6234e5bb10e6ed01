"""
Margin Call Monitor
===================

Compares each portfolio's margin requirement with the collateral it has
available and raises margin calls.

A check recomputes the requirement under the portfolio's current method,
commits it as the new maintenance margin and signals either a margin call
or adequacy. Repeating a check on an unchanged portfolio gives the same
answer and the same committed state.

Features:
- Margin call records with severity and a 24h cure deadline
- Bounded call history per portfolio
- Rolling 24h call count
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any

from risk_engine.authorization import AccessController, Role, requires_role
from risk_engine.event_bus import SignalBus
from risk_engine.events import MarginAdequateEvent, MarginCallEvent
from risk_engine.logging_config import get_context_logger
from risk_engine.margin_calculator import PortfolioMarginCalculator
from risk_engine.models import MarginCalculationResult, MarginMethod, RiskLevel
from risk_engine.repository import PortfolioRepository


logger = logging.getLogger(__name__)

MARGIN_CALL_DEADLINE = timedelta(hours=24)


def margin_call_severity(required: int, shortfall: int) -> RiskLevel:
    """CRITICAL when more than half the requirement is uncovered, else HIGH."""
    return RiskLevel.CRITICAL if shortfall > required // 2 else RiskLevel.HIGH


@dataclass(frozen=True)
class MarginCall:
    """An issued margin call; the shortfall must be covered by ``deadline``."""
    portfolio_id: str
    required: int
    available: int
    shortfall: int
    severity: RiskLevel
    issued_at: datetime
    deadline: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "portfolio_id": self.portfolio_id,
            "required": self.required,
            "available": self.available,
            "shortfall": self.shortfall,
            "severity": self.severity.value,
            "issued_at": self.issued_at.isoformat(),
            "deadline": self.deadline.isoformat(),
        }


@dataclass(frozen=True)
class MarginCheckResult:
    """Outcome of one margin check (amounts in WAD)."""
    portfolio_id: str
    method: MarginMethod
    required: int
    available: int
    margin_call: bool
    trading_halted: bool
    calculation: MarginCalculationResult
    call: MarginCall | None = None
    timestamp: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc), compare=False
    )

    @property
    def shortfall(self) -> int:
        return max(self.required - self.available, 0)

    @property
    def severity(self) -> RiskLevel | None:
        return self.call.severity if self.call else None

    @property
    def deadline(self) -> datetime | None:
        return self.call.deadline if self.call else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "portfolio_id": self.portfolio_id,
            "method": self.method.value,
            "required": self.required,
            "available": self.available,
            "shortfall": self.shortfall,
            "margin_call": self.margin_call,
            "trading_halted": self.trading_halted,
            "call": self.call.to_dict() if self.call else None,
            "timestamp": self.timestamp.isoformat(),
        }


class MarginCallMonitor:
    """Runs margin checks, records margin calls and emits their signals."""

    def __init__(
        self,
        repository: PortfolioRepository,
        access: AccessController,
        margin_calculator: PortfolioMarginCalculator,
        bus: SignalBus,
        max_history: int = 100,
    ):
        self._repository = repository
        self.access = access
        self._margin = margin_calculator
        self._bus = bus
        self._max_history = max_history
        self._calls: dict[str, deque[MarginCall]] = {}
        self._calls_lock = threading.Lock()

    @requires_role(Role.RISK_MANAGER, Role.PORTFOLIO_MANAGER)
    def check_margin_requirements(self, caller: str, portfolio_id: str) -> MarginCheckResult:
        """
        Check one portfolio.

        Available margin is collateral net of obligations and may be
        negative. A margin call is raised only when it is strictly below the
        requirement. The check reads positions as they were last marked; it
        does not pull prices itself.
        """
        return self._check(portfolio_id)

    @requires_role(Role.RISK_MANAGER, Role.PORTFOLIO_MANAGER)
    def check_all(self, caller: str) -> list[MarginCheckResult]:
        """Check every active portfolio; margin calls first."""
        results = [
            self._check(pid)
            for pid in self._repository.portfolio_ids()
            if self._repository.get(pid).active
        ]
        results.sort(key=lambda r: (not r.margin_call, -r.shortfall, r.portfolio_id))
        calls = sum(1 for r in results if r.margin_call)
        if calls:
            logger.warning(f"Margin sweep by {caller}: {calls}/{len(results)} portfolios under-margined")
        return results

    def _check(self, portfolio_id: str) -> MarginCheckResult:
        log = get_context_logger(__name__, portfolio=portfolio_id)

        with self._repository.transaction(portfolio_id, require_active=False) as tx:
            portfolio = tx.portfolio
            calculation = self._margin.calculate_margin(portfolio)
            required = calculation.final_margin
            available = portfolio.collateral_value - portfolio.obligations
            if portfolio.maintenance_margin != required:
                tx.commit(replace(portfolio, maintenance_margin=required))

        if available >= required:
            log.debug(f"Margin adequate: required={required} available={available}")
            self._bus.publish(MarginAdequateEvent(
                portfolio_id=portfolio_id,
                required=required,
                available=available,
            ))
            return MarginCheckResult(
                portfolio_id=portfolio_id,
                method=calculation.method,
                required=required,
                available=available,
                margin_call=False,
                trading_halted=portfolio.is_shutdown,
                calculation=calculation,
            )

        call = self._record_call(portfolio_id, required, available)
        log.warning(
            f"MARGIN CALL ({call.severity.value}): required={required} available={available} "
            f"shortfall={call.shortfall} due {call.deadline.isoformat()}"
        )
        self._bus.publish(MarginCallEvent(
            portfolio_id=portfolio_id,
            required=required,
            available=available,
            shortfall=call.shortfall,
            severity=call.severity.value,
            deadline=call.deadline,
        ))
        return MarginCheckResult(
            portfolio_id=portfolio_id,
            method=calculation.method,
            required=required,
            available=available,
            margin_call=True,
            trading_halted=portfolio.is_shutdown,
            calculation=calculation,
            call=call,
        )

    def _record_call(self, portfolio_id: str, required: int, available: int) -> MarginCall:
        shortfall = required - available
        issued_at = self._repository.clock()
        call = MarginCall(
            portfolio_id=portfolio_id,
            required=required,
            available=available,
            shortfall=shortfall,
            severity=margin_call_severity(required, shortfall),
            issued_at=issued_at,
            deadline=issued_at + MARGIN_CALL_DEADLINE,
        )
        with self._calls_lock:
            history = self._calls.setdefault(portfolio_id, deque(maxlen=self._max_history))
            history.append(call)
        return call

    # ------------------------------------------------------------------
    # Call history
    # ------------------------------------------------------------------

    def get_margin_calls(self, portfolio_id: str) -> list[MarginCall]:
        """Margin calls issued to a portfolio, oldest first."""
        with self._calls_lock:
            return list(self._calls.get(portfolio_id, ()))

    def margin_calls_last_24h(self, portfolio_id: str | None = None) -> int:
        """Calls issued in the last 24 hours, for one portfolio or all of them."""
        cutoff = self._repository.clock() - timedelta(hours=24)
        with self._calls_lock:
            histories = (
                [self._calls.get(portfolio_id, ())] if portfolio_id is not None
                else list(self._calls.values())
            )
            return sum(1 for calls in histories for call in calls if call.issued_at > cutoff)
