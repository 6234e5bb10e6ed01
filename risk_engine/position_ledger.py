"""
Position Ledger
===============

Opens, closes and marks positions, and moves collateral.

Every operation runs inside the portfolio's transaction: the new position
set, its margins and (when the return series is long enough) a fresh risk
snapshot are computed off to the side and committed together. Signals are
published after the commit.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from risk_engine.authorization import AccessController, Role, requires_role
from risk_engine.event_bus import SignalBus
from risk_engine.events import PositionClosedEvent, PositionOpenedEvent, RiskEvent
from risk_engine.exceptions import (
    InsufficientMarginError,
    InvalidParameterError,
    InvalidPositionError,
    RiskLimitExceededError,
)
from risk_engine.fixed_point import wad_mul
from risk_engine.logging_config import get_context_logger
from risk_engine.margin_calculator import PortfolioMarginCalculator
from risk_engine.models import Portfolio, Position, RiskLevel
from risk_engine.price_oracle import PriceFeedRegistry
from risk_engine.repository import PortfolioRepository
from risk_engine.risk_limits import RiskLimitValidator
from risk_engine.risk_metrics import RiskMetricsEngine


logger = logging.getLogger(__name__)


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class PositionLedger:
    """Position and collateral book of every portfolio."""

    def __init__(
        self,
        repository: PortfolioRepository,
        access: AccessController,
        bus: SignalBus,
        margin_calculator: PortfolioMarginCalculator,
        metrics_engine: RiskMetricsEngine,
        limit_validator: RiskLimitValidator,
        price_feeds: PriceFeedRegistry,
    ):
        self._repository = repository
        self.access = access
        self._bus = bus
        self._margin = margin_calculator
        self._metrics = metrics_engine
        self._limits = limit_validator
        self._prices = price_feeds

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _remargin(self, portfolio: Portfolio, positions: tuple[Position, ...]) -> Portfolio:
        """Candidate state with refreshed margins, maintenance margin and risk levels."""
        candidate = replace(portfolio, positions=self._margin.with_position_margins(positions))
        value = candidate.portfolio_value
        candidate = replace(candidate, positions=tuple(
            replace(p, risk_level=RiskLevel.for_position(p.market_value, value))
            for p in candidate.positions
        ))
        result = self._margin.calculate_margin(candidate)
        return replace(candidate, maintenance_margin=result.final_margin)

    def _with_metrics(self, candidate: Portfolio) -> tuple[Portfolio, list[RiskEvent]]:
        """Attach a fresh snapshot when the return series supports one."""
        if len(candidate.returns) < self._metrics.min_data_points:
            return candidate, []
        metrics = self._metrics.compute(candidate)
        candidate = replace(candidate, metrics=metrics)
        return candidate, self._metrics.signals_for(candidate, metrics)

    def _mark(self, position: Position, price: int) -> Position:
        return replace(
            position,
            current_price=price,
            unrealized_pnl=wad_mul(position.quantity, price - position.entry_price),
            last_updated=self._repository.clock(),
        )

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    @requires_role(Role.PORTFOLIO_MANAGER)
    def open_position(
        self,
        caller: str,
        portfolio_id: str,
        asset: str,
        quantity: int,
        entry_price: int,
    ) -> Position:
        """
        Open a position after the pre-trade limit checks and the initial margin check.

        Args:
            quantity: Signed WAD quantity (positive is long)
            entry_price: WAD price, strictly positive

        Raises:
            InvalidPositionError: Bad quantity, price or asset, or a zero notional
            PortfolioShutdownError: Portfolio under emergency shutdown
            RiskLimitExceededError: A pre-trade limit check failed
            InsufficientMarginError: Available margin below the initial margin
        """
        if not asset:
            raise InvalidPositionError("Asset must not be empty")
        if not _is_int(quantity) or quantity == 0:
            raise InvalidPositionError(f"Quantity must be a non-zero int, got {quantity!r}")
        if not _is_int(entry_price) or entry_price <= 0:
            raise InvalidPositionError(f"Entry price must be a positive int, got {entry_price!r}")

        log = get_context_logger(__name__, portfolio=portfolio_id)

        with self._repository.transaction(portfolio_id) as tx:
            portfolio = tx.portfolio
            self._limits.require_trading_allowed(portfolio_id)

            notional = wad_mul(quantity, entry_price)
            if notional == 0:
                raise InvalidPositionError(f"Notional of {quantity} @ {entry_price} rounds to zero")

            admission = self._limits.validate_transaction(portfolio_id, asset, abs(notional), quantity > 0)
            if not admission.approved:
                failed = next(c for c in admission.checks if not c.passed)
                log.warning(f"Open {asset} rejected by limits: {admission.message}")
                raise RiskLimitExceededError(
                    admission.message,
                    portfolio_id=portfolio_id,
                    reason=admission.reason.value,
                    current=failed.current_value,
                    limit=failed.limit_value,
                )

            required = self._margin.calculate_initial_margin(notional, portfolio.initial_margin_ratio_bps)
            available = portfolio.available_margin
            if available < required:
                log.warning(f"Open {asset} rejected: initial margin {required} > available {available}")
                raise InsufficientMarginError(
                    f"Initial margin {required} exceeds available margin {available}",
                    portfolio_id=portfolio_id,
                    required=required,
                    available=available,
                )

            position = Position(
                position_id=portfolio.next_position_id,
                asset=asset,
                quantity=quantity,
                entry_price=entry_price,
                current_price=entry_price,
                last_updated=self._repository.clock(),
            )
            candidate = self._remargin(
                replace(portfolio, next_position_id=portfolio.next_position_id + 1),
                portfolio.positions + (position,),
            )
            candidate, signals = self._with_metrics(candidate)
            tx.commit(candidate)

        opened = candidate.positions[-1]
        log.info(
            f"Opened {'long' if quantity > 0 else 'short'} {asset} qty={quantity} @ {entry_price} "
            f"by {caller}; maintenance margin={candidate.maintenance_margin}"
        )
        self._bus.publish(PositionOpenedEvent(
            portfolio_id=portfolio_id,
            asset=asset,
            quantity=quantity,
            price=entry_price,
        ))
        self._bus.publish_all(signals)
        return opened

    @requires_role(Role.PORTFOLIO_MANAGER)
    def close_position(self, caller: str, portfolio_id: str, index: int, exit_price: int) -> int:
        """
        Close the position at ``index`` and return its realized P&L.

        Removal swaps the last position into ``index``, so the order of the
        remaining positions is not preserved.

        Raises:
            InvalidPositionError: Index out of range or non-positive exit price
        """
        if not _is_int(exit_price) or exit_price <= 0:
            raise InvalidPositionError(f"Exit price must be a positive int, got {exit_price!r}")

        log = get_context_logger(__name__, portfolio=portfolio_id)

        with self._repository.transaction(portfolio_id) as tx:
            portfolio = tx.portfolio
            positions = list(portfolio.positions)
            if not _is_int(index) or not 0 <= index < len(positions):
                raise InvalidPositionError(
                    f"Invalid position index {index!r} ({len(positions)} open)",
                    portfolio_id=portfolio_id,
                )

            closing = positions[index]
            realized = wad_mul(closing.quantity, exit_price - closing.entry_price)

            positions[index] = positions[-1]
            positions.pop()

            candidate = self._remargin(
                replace(portfolio, realized_pnl=portfolio.realized_pnl + realized),
                tuple(positions),
            )
            candidate, signals = self._with_metrics(candidate)
            tx.commit(candidate)

        log.info(f"Closed {closing.asset} qty={closing.quantity} @ {exit_price} by {caller}: pnl={realized}")
        self._bus.publish(PositionClosedEvent(
            portfolio_id=portfolio_id,
            asset=closing.asset,
            quantity=closing.quantity,
            price=exit_price,
            realized_pnl=realized,
        ))
        self._bus.publish_all(signals)
        return realized

    @requires_role(Role.PORTFOLIO_MANAGER)
    def update_prices(self, caller: str, portfolio_id: str) -> tuple[Position, ...]:
        """
        Mark every position to its price feed.

        A stale or invalid quote for any held asset aborts the whole update.
        """
        with self._repository.transaction(portfolio_id) as tx:
            portfolio = tx.portfolio
            quotes = self._prices.get_prices(sorted(portfolio.held_assets()))
            marked = tuple(self._mark(p, quotes[p.asset].price) for p in portfolio.positions)
            candidate, signals = self._with_metrics(self._remargin(portfolio, marked))
            tx.commit(candidate)

        logger.debug(f"Marked {len(marked)} positions of {portfolio_id} to market by {caller}")
        self._bus.publish_all(signals)
        return candidate.positions

    def get_positions(self, portfolio_id: str) -> tuple[Position, ...]:
        return self._repository.get(portfolio_id).positions

    # ------------------------------------------------------------------
    # Collateral
    # ------------------------------------------------------------------

    @requires_role(Role.PORTFOLIO_MANAGER)
    def deposit_collateral(self, caller: str, portfolio_id: str, amount: int) -> int:
        """Add collateral; returns the new collateral value."""
        if not _is_int(amount) or amount <= 0:
            raise InvalidParameterError(f"Deposit must be a positive int, got {amount!r}")

        with self._repository.transaction(portfolio_id) as tx:
            collateral = tx.portfolio.collateral_value + amount
            tx.commit(replace(tx.portfolio, collateral_value=collateral))

        logger.info(f"Collateral deposit of {amount} to {portfolio_id} by {caller}")
        return collateral

    @requires_role(Role.PORTFOLIO_MANAGER)
    def withdraw_collateral(self, caller: str, portfolio_id: str, amount: int) -> int:
        """
        Remove collateral; returns the new collateral value.

        Raises:
            InsufficientMarginError: The withdrawal would leave collateral net of
                obligations below the maintenance margin
        """
        if not _is_int(amount) or amount <= 0:
            raise InvalidParameterError(f"Withdrawal must be a positive int, got {amount!r}")

        with self._repository.transaction(portfolio_id) as tx:
            portfolio = tx.portfolio
            collateral = portfolio.collateral_value - amount
            if collateral - portfolio.obligations < portfolio.maintenance_margin:
                raise InsufficientMarginError(
                    f"Withdrawal of {amount} would leave {portfolio_id} under-margined",
                    portfolio_id=portfolio_id,
                    required=portfolio.maintenance_margin,
                    available=collateral - portfolio.obligations,
                )
            tx.commit(replace(portfolio, collateral_value=collateral))

        logger.info(f"Collateral withdrawal of {amount} from {portfolio_id} by {caller}")
        return collateral

    @requires_role(Role.PORTFOLIO_MANAGER)
    def set_obligations(self, caller: str, portfolio_id: str, amount: int) -> None:
        """Record outstanding obligations netted from available margin."""
        if not _is_int(amount) or amount < 0:
            raise InvalidParameterError(f"Obligations must be a non-negative int, got {amount!r}")

        with self._repository.transaction(portfolio_id) as tx:
            tx.commit(replace(tx.portfolio, obligations=amount))

        logger.info(f"Obligations of {portfolio_id} set to {amount} by {caller}")
