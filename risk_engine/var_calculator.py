"""
Value at Risk Calculator
========================

Historical-simulation VaR over a portfolio's daily return series.

The series is sorted and the loss at the confidence percentile is read
directly; multi-day horizons use the square-root-of-time rule with an
integer square root. Everything is integer basis points, so the result is
exact and independent of the order the returns were recorded in.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Sequence

from risk_engine.config import CONFIDENCE_95, CONFIDENCE_99, VaRConfig
from risk_engine.exceptions import (
    InsufficientDataError,
    InvalidConfidenceLevelError,
    InvalidParameterError,
)
from risk_engine.fixed_point import BPS, bps_of, scale_by_sqrt
from risk_engine.logging_config import timed
from risk_engine.repository import PortfolioRepository


logger = logging.getLogger(__name__)

SUPPORTED_CONFIDENCE_LEVELS = (CONFIDENCE_95, CONFIDENCE_99)


@dataclass(frozen=True)
class VaRResult:
    """Result of a VaR calculation. Loss figures are non-negative bps."""
    confidence_bps: int
    horizon_days: int
    var_bps: int
    expected_shortfall_bps: int
    data_points: int
    percentile_index: int
    timestamp: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc), compare=False
    )

    def loss_amount(self, portfolio_value: int) -> int:
        """VaR expressed as an amount of a (WAD) portfolio value."""
        return bps_of(portfolio_value, self.var_bps)

    def to_dict(self) -> dict[str, Any]:
        return {
            "confidence_bps": self.confidence_bps,
            "horizon_days": self.horizon_days,
            "var_bps": self.var_bps,
            "expected_shortfall_bps": self.expected_shortfall_bps,
            "data_points": self.data_points,
            "percentile_index": self.percentile_index,
            "timestamp": self.timestamp.isoformat(),
        }


def percentile_index(confidence_bps: int, n: int) -> int:
    """
    1-based index of the VaR observation in the ascending series.

    round((1 - confidence) * n) with round-half-up, clamped to [1, n].

        >>> percentile_index(9500, 30)
        2
    """
    index = ((BPS - confidence_bps) * n + BPS // 2) // BPS
    return min(max(index, 1), n)


class VaRCalculator:
    """
    Historical VaR calculator.

    Only 95% and 99% confidence are supported; anything else is rejected,
    never rounded to the nearest supported level.
    """

    def __init__(
        self,
        config: VaRConfig | None = None,
        repository: PortfolioRepository | None = None,
    ):
        self._config = config or VaRConfig()
        self._repository = repository
        logger.info(
            f"VaRCalculator initialized: min_points={self._config.min_data_points}, "
            f"levels={list(self._config.confidence_levels)}"
        )

    @property
    def min_data_points(self) -> int:
        return self._config.min_data_points

    def _validate(self, returns: Sequence[int], confidence_bps: int, horizon_days: int) -> None:
        if confidence_bps not in SUPPORTED_CONFIDENCE_LEVELS:
            raise InvalidConfidenceLevelError(
                f"Unsupported confidence level: {confidence_bps} bps",
                confidence_bps=confidence_bps,
                supported=list(SUPPORTED_CONFIDENCE_LEVELS),
            )
        if not isinstance(horizon_days, int) or horizon_days < 1:
            raise InvalidParameterError(f"Horizon must be at least 1 day, got {horizon_days!r}")
        if len(returns) < self._config.min_data_points:
            raise InsufficientDataError(
                f"Need {self._config.min_data_points} returns, have {len(returns)}",
                data_points=len(returns),
                required=self._config.min_data_points,
            )

    @timed(threshold_ms=20.0)
    def calculate_var(
        self,
        returns: Sequence[int],
        confidence_bps: int,
        horizon_days: int = 1,
    ) -> VaRResult:
        """
        Calculate historical VaR.

        Args:
            returns: Signed daily returns in bps
            confidence_bps: 9500 or 9900
            horizon_days: Holding period; VaR scales with sqrt(horizon)

        Returns:
            VaRResult with VaR and expected shortfall in bps

        Raises:
            InvalidConfidenceLevelError: Confidence not 9500 or 9900
            InvalidParameterError: Horizon below one day
            InsufficientDataError: Fewer than min_data_points returns
        """
        self._validate(returns, confidence_bps, horizon_days)

        ordered = sorted(returns)
        index = percentile_index(confidence_bps, len(ordered))

        var_bps = abs(ordered[index - 1])
        tail = ordered[:index]
        # Magnitude of the signed tail mean; gains in the tail offset losses
        expected_shortfall = abs(sum(tail)) // len(tail)

        var_bps = scale_by_sqrt(var_bps, horizon_days)
        expected_shortfall = scale_by_sqrt(expected_shortfall, horizon_days)

        logger.debug(
            f"VaR {confidence_bps}bps/{horizon_days}d over {len(ordered)} points: "
            f"{var_bps}bps (ES {expected_shortfall}bps)"
        )

        return VaRResult(
            confidence_bps=confidence_bps,
            horizon_days=horizon_days,
            var_bps=var_bps,
            expected_shortfall_bps=expected_shortfall,
            data_points=len(ordered),
            percentile_index=index,
        )

    def calculate_portfolio_var(
        self,
        portfolio_id: str,
        confidence_bps: int,
        horizon_days: int = 1,
    ) -> VaRResult:
        """VaR over a registered portfolio's committed return series (read-only)."""
        if self._repository is None:
            raise InvalidParameterError("VaRCalculator has no portfolio repository")
        returns = self._repository.get(portfolio_id).returns
        return self.calculate_var(returns, confidence_bps, horizon_days)

    def calculate_both(self, returns: Sequence[int], horizon_days: int = 1) -> tuple[VaRResult, VaRResult]:
        """95% and 99% VaR over the same series."""
        return (
            self.calculate_var(returns, CONFIDENCE_95, horizon_days),
            self.calculate_var(returns, CONFIDENCE_99, horizon_days),
        )
