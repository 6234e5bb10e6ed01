"""
Stress Testing Module
=====================

Named price-shock scenarios evaluated against portfolio positions.

The worst loss across the active scenarios is the SPAN-style margin
requirement. Shocks are signed basis points per asset; the ``"*"`` key
applies to every asset the scenario does not list explicitly.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Sequence

from risk_engine.authorization import AccessController, Role, requires_role
from risk_engine.exceptions import ArrayLengthMismatchError, InvalidParameterError
from risk_engine.fixed_point import BPS, signed_mul_div
from risk_engine.models import Portfolio


logger = logging.getLogger(__name__)

WILDCARD = "*"


class ScenarioType(Enum):
    """Type of stress scenario."""
    MARKET_CRASH = "market_crash"
    FLASH_CRASH = "flash_crash"
    SHORT_SQUEEZE = "short_squeeze"
    LIQUIDITY_CRISIS = "liquidity_crisis"
    CUSTOM = "custom"


@dataclass(frozen=True)
class StressScenario:
    """Definition of a stress scenario."""
    scenario_id: str
    name: str
    description: str
    price_shocks: Mapping[str, int]  # asset -> signed bps
    scenario_type: ScenarioType = ScenarioType.CUSTOM
    active: bool = True

    def __post_init__(self):
        if not self.scenario_id:
            raise InvalidParameterError("Scenario id must not be empty")
        if not self.price_shocks:
            raise InvalidParameterError(f"Scenario {self.scenario_id} has no price shocks")
        for asset, shock in self.price_shocks.items():
            if not asset:
                raise InvalidParameterError(f"Scenario {self.scenario_id} has an empty asset")
            if not isinstance(shock, int) or isinstance(shock, bool) or not -BPS <= shock <= BPS:
                raise InvalidParameterError(
                    f"Shock for {asset} must be an int in [-10000, 10000] bps, got {shock!r}",
                    scenario_id=self.scenario_id,
                )
        # Private copy so a caller's dict cannot change a registered scenario.
        object.__setattr__(self, "price_shocks", dict(self.price_shocks))

    @classmethod
    def from_lists(
        cls,
        scenario_id: str,
        name: str,
        assets: Sequence[str],
        shocks: Sequence[int],
        description: str = "",
        scenario_type: ScenarioType = ScenarioType.CUSTOM,
    ) -> "StressScenario":
        """
        Build from parallel asset/shock lists.

        Raises:
            ArrayLengthMismatchError: Lists of different lengths
        """
        if len(assets) != len(shocks):
            raise ArrayLengthMismatchError(
                f"Scenario {scenario_id}: {len(assets)} assets but {len(shocks)} shocks",
                scenario_id=scenario_id,
            )
        return cls(
            scenario_id=scenario_id,
            name=name,
            description=description,
            price_shocks=dict(zip(assets, shocks)),
            scenario_type=scenario_type,
        )

    def shock_for(self, asset: str) -> int:
        return self.price_shocks.get(asset, self.price_shocks.get(WILDCARD, 0))

    def to_dict(self) -> dict[str, Any]:
        return {
            "scenario_id": self.scenario_id,
            "name": self.name,
            "description": self.description,
            "price_shocks": dict(self.price_shocks),
            "scenario_type": self.scenario_type.value,
            "active": self.active,
        }


@dataclass(frozen=True)
class ScenarioOutcome:
    """Impact of one scenario on one portfolio (amounts in WAD)."""
    scenario_id: str
    scenario_name: str
    portfolio_id: str
    pnl_impact: int
    position_impacts: Mapping[str, int] = field(default_factory=dict)
    timestamp: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc), compare=False
    )

    @property
    def loss(self) -> int:
        return max(-self.pnl_impact, 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "scenario_id": self.scenario_id,
            "scenario_name": self.scenario_name,
            "portfolio_id": self.portfolio_id,
            "pnl_impact": self.pnl_impact,
            "loss": self.loss,
            "position_impacts": dict(self.position_impacts),
            "timestamp": self.timestamp.isoformat(),
        }


# =============================================================================
# PREDEFINED SCENARIOS
# =============================================================================

PREDEFINED_SCENARIOS: dict[str, StressScenario] = {
    "market_crash": StressScenario(
        scenario_id="market_crash",
        name="Market Crash (-30%)",
        scenario_type=ScenarioType.MARKET_CRASH,
        description="Broad decline of 30% across every held asset",
        price_shocks={WILDCARD: -3_000},
    ),
    "market_correction": StressScenario(
        scenario_id="market_correction",
        name="Market Correction (-10%)",
        scenario_type=ScenarioType.MARKET_CRASH,
        description="Moderate correction of 10%",
        price_shocks={WILDCARD: -1_000},
    ),
    "flash_crash": StressScenario(
        scenario_id="flash_crash",
        name="Flash Crash (-20%)",
        scenario_type=ScenarioType.FLASH_CRASH,
        description="Intraday liquidity gap of 20%",
        price_shocks={WILDCARD: -2_000},
    ),
    "short_squeeze": StressScenario(
        scenario_id="short_squeeze",
        name="Short Squeeze (+25%)",
        scenario_type=ScenarioType.SHORT_SQUEEZE,
        description="Sharp rally of 25%, the worst case for short books",
        price_shocks={WILDCARD: 2_500},
    ),
}


class StressTester:
    """
    Registry and evaluator of stress scenarios.

    Scenarios are engine-wide; only risk managers may add or toggle them.
    """

    def __init__(self, access: AccessController, use_predefined: bool = True):
        self.access = access
        self._scenarios: dict[str, StressScenario] = {}
        self._lock = threading.Lock()
        if use_predefined:
            self._scenarios = dict(PREDEFINED_SCENARIOS)
            logger.info(f"Loaded {len(PREDEFINED_SCENARIOS)} predefined scenarios")

    @requires_role(Role.RISK_MANAGER)
    def add_scenario(
        self,
        caller: str,
        scenario_id: str,
        name: str,
        assets: Sequence[str],
        shocks: Sequence[int],
        description: str = "",
    ) -> StressScenario:
        """
        Register (or replace) a scenario from parallel asset/shock lists.

        Raises:
            ArrayLengthMismatchError: Lists of different lengths
            InvalidParameterError: Shock outside [-10000, 10000] bps or empty input
        """
        scenario = StressScenario.from_lists(scenario_id, name, assets, shocks, description)
        with self._lock:
            replaced = scenario_id in self._scenarios
            self._scenarios[scenario_id] = scenario
        logger.info(
            f"{'Replaced' if replaced else 'Added'} scenario {scenario_id} "
            f"({len(scenario.price_shocks)} shocks) by {caller}"
        )
        return scenario

    @requires_role(Role.RISK_MANAGER)
    def set_scenario_active(self, caller: str, scenario_id: str, active: bool) -> StressScenario:
        with self._lock:
            scenario = self._scenarios.get(scenario_id)
            if scenario is None:
                raise InvalidParameterError(f"Unknown scenario: {scenario_id}")
            scenario = replace(scenario, active=active)
            self._scenarios[scenario_id] = scenario
        logger.info(f"Scenario {scenario_id} {'activated' if active else 'deactivated'} by {caller}")
        return scenario

    def get_scenario(self, scenario_id: str) -> StressScenario | None:
        with self._lock:
            return self._scenarios.get(scenario_id)

    def get_all_scenarios(self) -> list[StressScenario]:
        with self._lock:
            return list(self._scenarios.values())

    def active_scenarios(self) -> list[StressScenario]:
        return [s for s in self.get_all_scenarios() if s.active]

    def evaluate_scenario(self, portfolio: Portfolio, scenario_id: str) -> ScenarioOutcome:
        """Apply one scenario's shocks to every held position and sum the impact."""
        scenario = self.get_scenario(scenario_id)
        if scenario is None:
            raise InvalidParameterError(f"Unknown scenario: {scenario_id}")
        return self._evaluate(portfolio, scenario)

    def _evaluate(self, portfolio: Portfolio, scenario: StressScenario) -> ScenarioOutcome:
        impacts: dict[str, int] = {}
        for position in portfolio.positions:
            impact = signed_mul_div(position.exposure, scenario.shock_for(position.asset), BPS)
            impacts[position.asset] = impacts.get(position.asset, 0) + impact

        return ScenarioOutcome(
            scenario_id=scenario.scenario_id,
            scenario_name=scenario.name,
            portfolio_id=portfolio.portfolio_id,
            pnl_impact=sum(impacts.values()),
            position_impacts=impacts,
        )

    def run_all_scenarios(self, portfolio: Portfolio) -> list[ScenarioOutcome]:
        """Evaluate every active scenario, worst (most negative impact) first."""
        outcomes = [self._evaluate(portfolio, s) for s in self.active_scenarios()]
        outcomes.sort(key=lambda o: (o.pnl_impact, o.scenario_id))
        return outcomes

    def worst_case_loss(self, portfolio: Portfolio) -> int:
        """Largest loss across active scenarios (0 if none loses money)."""
        outcomes = self.run_all_scenarios(portfolio)
        if not outcomes:
            return 0
        return outcomes[0].loss

    def get_status(self) -> dict[str, Any]:
        scenarios = self.get_all_scenarios()
        return {
            "total_scenarios": len(scenarios),
            "active_scenarios": sum(1 for s in scenarios if s.active),
            "predefined_scenarios": len(PREDEFINED_SCENARIOS),
        }
