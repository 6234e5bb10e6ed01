"""
Risk Engine
===========

Portfolio risk and margining engine: historical VaR, risk snapshots,
pre-trade limits, emergency shutdown, cross-margining and margin calls.

Money is 18-decimal fixed point (WAD); rates and ratios are basis points.
"""

from risk_engine.authorization import AccessController, Role
from risk_engine.config import EngineConfig, load_config
from risk_engine.engine import RiskEngine
from risk_engine.event_bus import SignalBus
from risk_engine.events import BreachMetric, EventType, RiskEvent
from risk_engine.exceptions import (
    ArrayLengthMismatchError,
    InsufficientDataError,
    InsufficientMarginError,
    InvalidConfidenceLevelError,
    InvalidParameterError,
    InvalidPositionError,
    InvalidPriceFeedError,
    PortfolioShutdownError,
    ReentrancyError,
    RiskEngineError,
    StalePriceError,
    UnauthorizedError,
)
from risk_engine.fixed_point import BPS, WAD
from risk_engine.models import (
    MarginCalculationResult,
    MarginMethod,
    Portfolio,
    Position,
    RiskGrade,
    RiskLevel,
    RiskLimits,
    RiskMetrics,
)
from risk_engine.price_oracle import StaticPriceFeed
from risk_engine.risk_limits import RejectionReason, RiskValidationResult

__version__ = "0.1.0"

__all__ = [
    # Engine
    "RiskEngine",
    "EngineConfig",
    "load_config",
    "SignalBus",
    # Access control
    "AccessController",
    "Role",
    # Model
    "Portfolio",
    "Position",
    "RiskLimits",
    "RiskMetrics",
    "RiskLevel",
    "RiskGrade",
    "MarginMethod",
    "MarginCalculationResult",
    "RiskValidationResult",
    "RejectionReason",
    "StaticPriceFeed",
    # Signals
    "EventType",
    "BreachMetric",
    "RiskEvent",
    # Errors
    "RiskEngineError",
    "InsufficientDataError",
    "StalePriceError",
    "InvalidConfidenceLevelError",
    "PortfolioShutdownError",
    "InvalidPriceFeedError",
    "InvalidParameterError",
    "ArrayLengthMismatchError",
    "InvalidPositionError",
    "UnauthorizedError",
    "ReentrancyError",
    "InsufficientMarginError",
    # Units
    "BPS",
    "WAD",
]
