"""
Risk Engine Errors
==================

Error taxonomy for the risk and margining engine.

Every error is raised before any state is committed, so a caught error means
the portfolio is exactly as it was before the call.
"""

from __future__ import annotations

from typing import Any


class RiskEngineError(Exception):
    """Base class for all risk engine errors."""

    code = "risk_engine_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging or API responses."""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class InsufficientDataError(RiskEngineError):
    """Return series below the minimum population."""
    code = "insufficient_data"


class StalePriceError(RiskEngineError):
    """Price feed older than the configured threshold."""
    code = "stale_price"


class InvalidConfidenceLevelError(RiskEngineError):
    """Confidence level other than 95% or 99%."""
    code = "invalid_confidence_level"


class PortfolioShutdownError(RiskEngineError):
    """Emergency shutdown flag is set for the portfolio."""
    code = "portfolio_shutdown"


class RiskLimitExceededError(RiskEngineError):
    """A named metric is over its configured limit."""
    code = "risk_limit_exceeded"


class InvalidPriceFeedError(RiskEngineError):
    """Missing or placeholder feed, or a non-positive price."""
    code = "invalid_price_feed"


class InvalidParameterError(RiskEngineError, ValueError):
    """Malformed input."""
    code = "invalid_parameter"


class ArrayLengthMismatchError(InvalidParameterError):
    """Parallel input lists of different lengths."""
    code = "array_length_mismatch"


class InvalidPositionError(InvalidParameterError):
    """Bad quantity, price or position index."""
    code = "invalid_position"


class UnauthorizedError(RiskEngineError, PermissionError):
    """Caller lacks every role the operation accepts."""
    code = "unauthorized"


class ReentrancyError(RiskEngineError):
    """Mutating operation re-entered on the same portfolio."""
    code = "reentrancy"


class PortfolioNotFoundError(RiskEngineError, KeyError):
    """Unknown portfolio identifier."""
    code = "portfolio_not_found"

    def __str__(self) -> str:
        return self.message


class PortfolioInactiveError(RiskEngineError):
    """Portfolio has been deactivated."""
    code = "portfolio_inactive"


class InsufficientMarginError(RiskEngineError):
    """Available margin does not cover the requirement."""
    code = "insufficient_margin"


class ArithmeticOverflowError(RiskEngineError, ArithmeticError):
    """Fixed-point operation left the representable range."""
    code = "arithmetic_overflow"
