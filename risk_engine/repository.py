"""
Portfolio Repository
====================

In-memory store of committed portfolio state, keyed by portfolio id.

Each portfolio has its own guard. A mutating operation opens a
``transaction``, reads the committed ``Portfolio``, builds the new one off
to the side and calls ``commit`` once at the end. Raising anywhere before
the commit leaves the committed state untouched; the guard is released on
every exit path.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Iterator

from risk_engine.exceptions import (
    InvalidParameterError,
    PortfolioInactiveError,
    PortfolioNotFoundError,
    ReentrancyError,
)
from risk_engine.models import MarginMethod, Portfolio


logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PortfolioGuard:
    """
    Non-reentrant per-portfolio lock.

    Other threads block until the guard is released; the owning thread
    trying to acquire it again gets ReentrancyError instead of deadlocking.
    """

    def __init__(self, portfolio_id: str):
        self.portfolio_id = portfolio_id
        self._lock = threading.Lock()
        self._owner: int | None = None

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    def held_by_current_thread(self) -> bool:
        return self._owner == threading.get_ident()

    def acquire(self) -> None:
        if self.held_by_current_thread():
            logger.error(f"Re-entrant mutation rejected for portfolio {self.portfolio_id}")
            raise ReentrancyError(
                f"Portfolio {self.portfolio_id} is already being modified by this thread",
                portfolio_id=self.portfolio_id,
            )
        self._lock.acquire()
        self._owner = threading.get_ident()

    def release(self) -> None:
        self._owner = None
        self._lock.release()

    def __enter__(self) -> "PortfolioGuard":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


@dataclass
class _Entry:
    guard: PortfolioGuard
    state: Portfolio


class Transaction:
    """Handle passed to a mutating operation while it holds the guard."""

    def __init__(self, entry: _Entry):
        self._entry = entry
        self.committed = False

    @property
    def portfolio(self) -> Portfolio:
        return self._entry.state

    def commit(self, portfolio: Portfolio) -> None:
        if portfolio.portfolio_id != self._entry.state.portfolio_id:
            raise InvalidParameterError("Cannot commit state of a different portfolio")
        self._entry.state = portfolio
        self.committed = True


class PortfolioRepository:
    """One authoritative copy of every portfolio."""

    def __init__(self, clock: Clock | None = None):
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self.clock: Clock = clock or utc_now

    def register(
        self,
        portfolio_id: str,
        owner: str,
        initial_margin_ratio_bps: int,
        margin_method: MarginMethod = MarginMethod.STANDARD,
    ) -> Portfolio:
        """Create a portfolio. Ids are never reused, even after deactivation."""
        if not portfolio_id:
            raise InvalidParameterError("Portfolio id must not be empty")
        if not 0 < initial_margin_ratio_bps <= 10_000:
            raise InvalidParameterError(
                f"Initial margin ratio must be in (0, 10000] bps, got {initial_margin_ratio_bps}",
            )

        portfolio = Portfolio(
            portfolio_id=portfolio_id,
            owner=owner,
            margin_method=margin_method,
            initial_margin_ratio_bps=initial_margin_ratio_bps,
            created_at=self.clock(),
        )
        with self._lock:
            if portfolio_id in self._entries:
                raise InvalidParameterError(
                    f"Portfolio already registered: {portfolio_id}",
                    portfolio_id=portfolio_id,
                )
            self._entries[portfolio_id] = _Entry(PortfolioGuard(portfolio_id), portfolio)

        logger.info(f"Registered portfolio {portfolio_id} for {owner}")
        return portfolio

    def _entry(self, portfolio_id: str) -> _Entry:
        with self._lock:
            entry = self._entries.get(portfolio_id)
        if entry is None:
            raise PortfolioNotFoundError(
                f"Portfolio not found: {portfolio_id}",
                portfolio_id=portfolio_id,
            )
        return entry

    def get(self, portfolio_id: str) -> Portfolio:
        """Committed snapshot; never blocks on a running mutation."""
        return self._entry(portfolio_id).state

    def exists(self, portfolio_id: str) -> bool:
        with self._lock:
            return portfolio_id in self._entries

    def portfolio_ids(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def guard(self, portfolio_id: str) -> PortfolioGuard:
        return self._entry(portfolio_id).guard

    @contextmanager
    def transaction(self, portfolio_id: str, require_active: bool = True) -> Iterator[Transaction]:
        """
        Hold the portfolio guard for the duration of a mutating operation.

        Raises:
            PortfolioNotFoundError: Unknown portfolio id
            PortfolioInactiveError: Portfolio deactivated and require_active set
            ReentrancyError: Guard already held by the calling thread
        """
        entry = self._entry(portfolio_id)
        with entry.guard:
            if require_active and not entry.state.active:
                raise PortfolioInactiveError(
                    f"Portfolio {portfolio_id} is inactive",
                    portfolio_id=portfolio_id,
                )
            yield Transaction(entry)

    def deactivate(self, portfolio_id: str) -> Portfolio:
        """Mark a portfolio inactive. Inactive portfolios reject every mutation."""
        with self.transaction(portfolio_id) as tx:
            updated = replace(tx.portfolio, active=False)
            tx.commit(updated)
        logger.warning(f"Portfolio {portfolio_id} deactivated")
        return updated
