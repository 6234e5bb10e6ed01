"""
Return Series Store
===================

Rolling window of signed daily returns (basis points) per portfolio.

The window is bounded: once full, each new observation evicts the oldest
one (FIFO). The committed series is a tuple, so readers get an immutable
view and never a half-appended batch.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import replace
from typing import Iterable

from risk_engine.authorization import AccessController, Role, requires_role
from risk_engine.config import VaRConfig
from risk_engine.exceptions import InvalidParameterError
from risk_engine.repository import PortfolioRepository


logger = logging.getLogger(__name__)

# A daily return below -100% is not a return.
MIN_RETURN_BPS = -10_000


class ReturnSeriesStore:
    """Append-only, size-bounded store of return observations."""

    def __init__(
        self,
        repository: PortfolioRepository,
        access: AccessController,
        config: VaRConfig | None = None,
    ):
        self._repository = repository
        self.access = access
        self._config = config or VaRConfig()

    @property
    def window(self) -> int:
        return self._config.lookback_window

    @property
    def min_data_points(self) -> int:
        return self._config.min_data_points

    @requires_role(Role.PORTFOLIO_MANAGER)
    def add_return(self, caller: str, portfolio_id: str, return_bps: int) -> int:
        """Append one observation; returns the new series length."""
        return self.add_returns(caller, portfolio_id, [return_bps])

    @requires_role(Role.PORTFOLIO_MANAGER)
    def add_returns(self, caller: str, portfolio_id: str, returns: Iterable[int]) -> int:
        """
        Append a batch of observations in order.

        The whole batch is validated before anything is appended.

        Raises:
            InvalidParameterError: Non-integer or below -10000 bps observation
        """
        batch = list(returns)
        for value in batch:
            if not isinstance(value, int) or isinstance(value, bool):
                raise InvalidParameterError(f"Return must be an int in bps, got {value!r}")
            if value < MIN_RETURN_BPS:
                raise InvalidParameterError(f"Return below -10000 bps: {value}")

        with self._repository.transaction(portfolio_id) as tx:
            series = deque(tx.portfolio.returns, maxlen=self.window)
            series.extend(batch)
            tx.commit(replace(tx.portfolio, returns=tuple(series)))

        logger.debug(
            f"Appended {len(batch)} returns to {portfolio_id} (size={len(series)})"
        )
        return len(series)

    def get_returns(self, portfolio_id: str) -> tuple[int, ...]:
        return self._repository.get(portfolio_id).returns

    def size(self, portfolio_id: str) -> int:
        return len(self._repository.get(portfolio_id).returns)

    def has_minimum(self, portfolio_id: str) -> bool:
        """True once the series is long enough for VaR."""
        return self.size(portfolio_id) >= self.min_data_points
