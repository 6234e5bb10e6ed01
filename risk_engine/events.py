"""
Risk Engine Signals
===================

Immutable signals emitted by the engine for monitoring and UI collaborators.

All signals are frozen dataclasses so that a subscriber can never alter what
other subscribers (or the audit history) see.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class EventType(Enum):
    """Signal types published on the signal bus."""
    RISK_METRICS_CALCULATED = "risk_metrics_calculated"
    RISK_LIMIT_BREACHED = "risk_limit_breached"
    EMERGENCY_SHUTDOWN = "emergency_shutdown_triggered"
    PORTFOLIO_RESUMED = "portfolio_resumed"
    MARGIN_CALL = "margin_call"
    MARGIN_ADEQUATE = "margin_adequate"
    POSITION_OPENED = "position_opened"
    POSITION_CLOSED = "position_closed"
    CORRELATION_UPDATED = "correlation_updated"
    VOLATILITY_UPDATED = "volatility_updated"
    PRICE_FEED_UPDATED = "price_feed_updated"
    MARGIN_METHOD_CHANGED = "margin_method_changed"
    CONCENTRATION_ALERT = "concentration_alert"


class BreachMetric(str, Enum):
    """Metrics that can breach a configured limit."""
    VAR_95 = "var_95"
    MAX_DRAWDOWN = "max_drawdown"
    LIQUIDITY = "liquidity"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


@dataclass(frozen=True, kw_only=True)
class RiskEvent:
    """Base signal."""
    source: str = "risk_engine"
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=_utc_now)

    @property
    def event_type(self) -> EventType:
        raise NotImplementedError

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        payload = {key: _plain(value) for key, value in self.__dict__.items()}
        payload["event_type"] = self.event_type.value
        return payload


@dataclass(frozen=True, kw_only=True)
class RiskMetricsCalculatedEvent(RiskEvent):
    portfolio_id: str
    var_95: int
    var_99: int
    sharpe_ratio: int

    @property
    def event_type(self) -> EventType:
        return EventType.RISK_METRICS_CALCULATED


@dataclass(frozen=True, kw_only=True)
class RiskLimitBreachedEvent(RiskEvent):
    portfolio_id: str
    metric: BreachMetric
    value: int
    limit: int

    @property
    def event_type(self) -> EventType:
        return EventType.RISK_LIMIT_BREACHED


@dataclass(frozen=True, kw_only=True)
class EmergencyShutdownEvent(RiskEvent):
    portfolio_id: str
    reason: str
    triggered_by: str

    @property
    def event_type(self) -> EventType:
        return EventType.EMERGENCY_SHUTDOWN


@dataclass(frozen=True, kw_only=True)
class PortfolioResumedEvent(RiskEvent):
    portfolio_id: str
    resumed_by: str

    @property
    def event_type(self) -> EventType:
        return EventType.PORTFOLIO_RESUMED


@dataclass(frozen=True, kw_only=True)
class MarginCallEvent(RiskEvent):
    portfolio_id: str
    required: int
    available: int
    shortfall: int
    severity: str
    deadline: datetime

    @property
    def event_type(self) -> EventType:
        return EventType.MARGIN_CALL


@dataclass(frozen=True, kw_only=True)
class MarginAdequateEvent(RiskEvent):
    portfolio_id: str
    required: int
    available: int

    @property
    def event_type(self) -> EventType:
        return EventType.MARGIN_ADEQUATE


@dataclass(frozen=True, kw_only=True)
class PositionOpenedEvent(RiskEvent):
    portfolio_id: str
    asset: str
    quantity: int
    price: int

    @property
    def event_type(self) -> EventType:
        return EventType.POSITION_OPENED


@dataclass(frozen=True, kw_only=True)
class PositionClosedEvent(RiskEvent):
    portfolio_id: str
    asset: str
    quantity: int
    price: int
    realized_pnl: int

    @property
    def event_type(self) -> EventType:
        return EventType.POSITION_CLOSED


@dataclass(frozen=True, kw_only=True)
class CorrelationUpdatedEvent(RiskEvent):
    asset_a: str
    asset_b: str
    value: int

    @property
    def event_type(self) -> EventType:
        return EventType.CORRELATION_UPDATED


@dataclass(frozen=True, kw_only=True)
class VolatilityUpdatedEvent(RiskEvent):
    asset: str
    value: int

    @property
    def event_type(self) -> EventType:
        return EventType.VOLATILITY_UPDATED


@dataclass(frozen=True, kw_only=True)
class PriceFeedUpdatedEvent(RiskEvent):
    asset: str
    feed: str

    @property
    def event_type(self) -> EventType:
        return EventType.PRICE_FEED_UPDATED


@dataclass(frozen=True, kw_only=True)
class MarginMethodChangedEvent(RiskEvent):
    portfolio_id: str
    previous: str
    current: str

    @property
    def event_type(self) -> EventType:
        return EventType.MARGIN_METHOD_CHANGED


@dataclass(frozen=True, kw_only=True)
class ConcentrationAlertEvent(RiskEvent):
    portfolio_id: str
    concentration: int
    threshold: int

    @property
    def event_type(self) -> EventType:
        return EventType.CONCENTRATION_ALERT
