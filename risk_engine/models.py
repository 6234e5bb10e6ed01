"""
Risk Engine Data Model
======================

Immutable records shared by every engine component.

Money (prices, quantities, collateral, margin, P&L) is WAD fixed point;
ratios, rates, volatilities and correlations are basis points. A committed
``Portfolio`` is never modified in place: operations build a new one with
``dataclasses.replace`` and the repository swaps it in with one assignment,
so readers always see a consistent snapshot.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from risk_engine.exceptions import InvalidParameterError
from risk_engine.fixed_point import ratio_bps, wad_mul


class RiskLevel(Enum):
    """Per-position risk classification from its share of portfolio value."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @classmethod
    def from_share_bps(cls, share_bps: int) -> "RiskLevel":
        if share_bps <= 2_500:
            return cls.LOW
        if share_bps <= 5_000:
            return cls.MEDIUM
        if share_bps <= 7_500:
            return cls.HIGH
        return cls.CRITICAL

    @classmethod
    def for_position(cls, market_value: int, portfolio_value: int) -> "RiskLevel":
        """Critical whenever there is no portfolio value to hold the position."""
        if portfolio_value <= 0:
            return cls.CRITICAL
        return cls.from_share_bps(ratio_bps(market_value, portfolio_value))


class MarginMethod(Enum):
    """Margin methodology selected per portfolio."""
    STANDARD = "standard"
    PORTFOLIO = "portfolio"
    RISK_BASED = "risk_based"
    SPAN = "span"


class RiskGrade(Enum):
    A = "A"
    B = "B"
    C = "C"
    D = "D"
    F = "F"

    @classmethod
    def from_score(cls, score: int) -> "RiskGrade":
        if score >= 80:
            return cls.A
        if score >= 60:
            return cls.B
        if score >= 40:
            return cls.C
        if score >= 20:
            return cls.D
        return cls.F


@dataclass(frozen=True)
class Position:
    """Open position. ``quantity`` is signed: positive is long."""
    position_id: int
    asset: str
    quantity: int
    entry_price: int
    current_price: int
    unrealized_pnl: int = 0
    margin_requirement: int = 0
    risk_level: RiskLevel = RiskLevel.LOW
    last_updated: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_long(self) -> bool:
        return self.quantity > 0

    @property
    def direction(self) -> int:
        return 1 if self.quantity > 0 else -1

    @property
    def exposure(self) -> int:
        """Signed market value at the current price."""
        return wad_mul(self.quantity, self.current_price)

    @property
    def market_value(self) -> int:
        return abs(self.exposure)

    def to_dict(self) -> dict[str, Any]:
        return {
            "position_id": self.position_id,
            "asset": self.asset,
            "quantity": self.quantity,
            "entry_price": self.entry_price,
            "current_price": self.current_price,
            "unrealized_pnl": self.unrealized_pnl,
            "margin_requirement": self.margin_requirement,
            "risk_level": self.risk_level.value,
            "last_updated": self.last_updated.isoformat(),
        }


@dataclass(frozen=True)
class RiskLimits:
    """
    Per-portfolio limits. A zero limit means the limit is unset.

    ``max_leverage_bps`` is gross exposure over collateral (20000 == 2x).
    """
    max_position_size_bps: int = 0
    max_leverage_bps: int = 0
    max_drawdown_bps: int = 0
    min_liquidity_score: int = 0
    max_var_95_bps: int = 0
    emergency_shutdown: bool = False

    def __post_init__(self):
        for name in (
            "max_position_size_bps",
            "max_leverage_bps",
            "max_drawdown_bps",
            "min_liquidity_score",
            "max_var_95_bps",
        ):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise InvalidParameterError(f"{name} must be a non-negative int, got {value!r}")
        if self.min_liquidity_score > 100:
            raise InvalidParameterError("min_liquidity_score must be between 0 and 100")

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_position_size_bps": self.max_position_size_bps,
            "max_leverage_bps": self.max_leverage_bps,
            "max_drawdown_bps": self.max_drawdown_bps,
            "min_liquidity_score": self.min_liquidity_score,
            "max_var_95_bps": self.max_var_95_bps,
            "emergency_shutdown": self.emergency_shutdown,
        }


@dataclass(frozen=True)
class RiskMetrics:
    """Risk snapshot, always recomputed wholesale."""
    var_95: int
    var_99: int
    expected_shortfall: int
    sharpe_ratio: int
    sortino_ratio: int
    max_drawdown: int
    volatility: int
    liquidity_score: int
    concentration: int
    beta: int
    leverage: int
    risk_grade: RiskGrade
    data_points: int
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "var_95": self.var_95,
            "var_99": self.var_99,
            "expected_shortfall": self.expected_shortfall,
            "sharpe_ratio": self.sharpe_ratio,
            "sortino_ratio": self.sortino_ratio,
            "max_drawdown": self.max_drawdown,
            "volatility": self.volatility,
            "liquidity_score": self.liquidity_score,
            "concentration": self.concentration,
            "beta": self.beta,
            "leverage": self.leverage,
            "risk_grade": self.risk_grade.value,
            "data_points": self.data_points,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class MarginCalculationResult:
    """Output of every margin method, so callers never branch on method."""
    method: MarginMethod
    gross_margin: int
    net_margin: int
    diversification_benefit: int
    concentration_penalty: int
    final_margin: int
    timestamp: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc), compare=False
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "method": self.method.value,
            "gross_margin": self.gross_margin,
            "net_margin": self.net_margin,
            "diversification_benefit": self.diversification_benefit,
            "concentration_penalty": self.concentration_penalty,
            "final_margin": self.final_margin,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class Portfolio:
    """Committed portfolio state."""
    portfolio_id: str
    owner: str
    positions: tuple[Position, ...] = ()
    limits: RiskLimits = field(default_factory=RiskLimits)
    metrics: RiskMetrics | None = None
    returns: tuple[int, ...] = ()
    margin_method: MarginMethod = MarginMethod.STANDARD
    collateral_value: int = 0
    obligations: int = 0
    initial_margin_ratio_bps: int = 2_000
    maintenance_margin: int = 0
    active: bool = True
    realized_pnl: int = 0
    next_position_id: int = 1
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_shutdown(self) -> bool:
        return self.limits.emergency_shutdown

    @property
    def gross_exposure(self) -> int:
        return sum(p.market_value for p in self.positions)

    @property
    def unrealized_pnl(self) -> int:
        return sum(p.unrealized_pnl for p in self.positions)

    @property
    def portfolio_value(self) -> int:
        """Collateral plus unrealized P&L, floored at zero."""
        return max(self.collateral_value + self.unrealized_pnl, 0)

    @property
    def available_margin(self) -> int:
        """Collateral not already consumed by maintenance margin."""
        return self.collateral_value - self.maintenance_margin

    def held_assets(self) -> set[str]:
        return {p.asset for p in self.positions}

    def exposure_by_asset(self) -> dict[str, int]:
        """Net signed exposure per asset."""
        exposures: dict[str, int] = {}
        for position in self.positions:
            exposures[position.asset] = exposures.get(position.asset, 0) + position.exposure
        return exposures

    def to_dict(self) -> dict[str, Any]:
        return {
            "portfolio_id": self.portfolio_id,
            "owner": self.owner,
            "positions": [p.to_dict() for p in self.positions],
            "limits": self.limits.to_dict(),
            "metrics": self.metrics.to_dict() if self.metrics else None,
            "data_points": len(self.returns),
            "margin_method": self.margin_method.value,
            "collateral_value": self.collateral_value,
            "obligations": self.obligations,
            "initial_margin_ratio_bps": self.initial_margin_ratio_bps,
            "maintenance_margin": self.maintenance_margin,
            "active": self.active,
            "realized_pnl": self.realized_pnl,
            "created_at": self.created_at.isoformat(),
        }
