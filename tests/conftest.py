"""
Pytest Configuration
====================

Shared fixtures for testing.
"""

from datetime import datetime, timedelta, timezone

import pytest

from risk_engine import RiskEngine, Role, WAD
from risk_engine.price_oracle import StaticPriceFeed


ADMIN = "admin"
RISK_MANAGER = "rm"
PORTFOLIO_MANAGER = "pm"
EMERGENCY = "emergency"


class FakeClock:
    """Deterministic clock shared by every engine component."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 2, 14, 30, tzinfo=timezone.utc))


@pytest.fixture
def engine(clock):
    """Engine with one account per role."""
    engine = RiskEngine(ADMIN, clock=clock)
    engine.access.grant_role(ADMIN, Role.RISK_MANAGER, RISK_MANAGER)
    engine.access.grant_role(ADMIN, Role.PORTFOLIO_MANAGER, PORTFOLIO_MANAGER)
    engine.access.grant_role(ADMIN, Role.EMERGENCY, EMERGENCY)
    return engine


@pytest.fixture
def portfolio(engine):
    """Registered, unfunded portfolio id."""
    engine.register_portfolio(PORTFOLIO_MANAGER, "P1")
    return "P1"


@pytest.fixture
def funded_portfolio(engine, portfolio):
    """Portfolio with 1,000,000 of collateral."""
    engine.deposit_collateral(PORTFOLIO_MANAGER, portfolio, 1_000_000 * WAD)
    return portfolio


@pytest.fixture
def price_feed(engine, clock):
    """Static feed registered for ETH and BTC."""
    feed = StaticPriceFeed("chainlink-eth-usd", clock)
    engine.update_price_feed(RISK_MANAGER, "ETH", feed)
    engine.update_price_feed(RISK_MANAGER, "BTC", feed)
    return feed


@pytest.fixture
def linear_returns():
    """10, 20, ..., 300 bps: thirty strictly positive observations."""
    return list(range(10, 301, 10))


@pytest.fixture
def alternating_returns():
    """+100 / -50 bps, fifteen times each."""
    return [100, -50] * 15
