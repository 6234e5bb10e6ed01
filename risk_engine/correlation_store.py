"""
Correlation Store
=================

Symmetric pairwise correlations and per-asset volatilities used by the
margin calculator.

Features:
- Both (a, b) and (b, a) written in one locked step, so the matrix is
  symmetric after every write
- Batch updates validated as a whole before any entry changes
- Calibration from raw return histories (NumPy), quantised to basis points
- Tabular view as a pandas DataFrame
"""

from __future__ import annotations

import logging
import math
import threading
from typing import Mapping, Sequence

import numpy as np
import pandas as pd

from risk_engine.authorization import AccessController, Role, requires_role
from risk_engine.config import MarginConfig
from risk_engine.event_bus import SignalBus
from risk_engine.events import CorrelationUpdatedEvent, VolatilityUpdatedEvent
from risk_engine.exceptions import ArrayLengthMismatchError, InvalidParameterError
from risk_engine.fixed_point import BPS, quantize_bps


logger = logging.getLogger(__name__)

MAX_VOLATILITY_BPS = 100_000  # 1000% annualised


def _pair(asset_a: str, asset_b: str) -> tuple[str, str]:
    return (asset_a, asset_b) if asset_a <= asset_b else (asset_b, asset_a)


class CorrelationStore:
    """
    Correlation matrix (bps, 0 to 10000) plus per-asset volatility (bps).

    The diagonal is implicitly 10000. Pairs never set fall back to
    ``default_correlation_bps``; assets without a volatility fall back to
    ``default_volatility_bps``.
    """

    def __init__(
        self,
        access: AccessController,
        bus: SignalBus,
        config: MarginConfig | None = None,
    ):
        self.access = access
        self._bus = bus
        self._config = config or MarginConfig()
        self._correlations: dict[tuple[str, str], int] = {}
        self._volatilities: dict[str, int] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @staticmethod
    def _check_correlation(asset_a: str, asset_b: str, value: int) -> None:
        if not asset_a or not asset_b:
            raise InvalidParameterError("Asset must not be empty")
        if asset_a == asset_b:
            raise InvalidParameterError(f"Self-correlation of {asset_a} is fixed at 10000")
        if not isinstance(value, int) or isinstance(value, bool) or not 0 <= value <= BPS:
            raise InvalidParameterError(
                f"Correlation must be an int in [0, 10000] bps, got {value!r}",
                asset_a=asset_a,
                asset_b=asset_b,
            )

    @requires_role(Role.RISK_MANAGER)
    def set_correlation(self, caller: str, asset_a: str, asset_b: str, value: int) -> None:
        """Set corr(a, b) == corr(b, a) == value."""
        self._check_correlation(asset_a, asset_b, value)

        with self._lock:
            self._correlations[_pair(asset_a, asset_b)] = value

        logger.info(f"Correlation {asset_a}/{asset_b} set to {value}bps by {caller}")
        self._bus.publish(CorrelationUpdatedEvent(asset_a=asset_a, asset_b=asset_b, value=value))

    @requires_role(Role.RISK_MANAGER)
    def set_correlations(
        self,
        caller: str,
        assets_a: Sequence[str],
        assets_b: Sequence[str],
        values: Sequence[int],
    ) -> int:
        """
        Batch update; either every pair is written or none is.

        Raises:
            ArrayLengthMismatchError: Input lists of different lengths
            InvalidParameterError: Any pair invalid
        """
        if not len(assets_a) == len(assets_b) == len(values):
            raise ArrayLengthMismatchError(
                "Correlation inputs must have equal lengths",
                lengths=[len(assets_a), len(assets_b), len(values)],
            )
        for a, b, v in zip(assets_a, assets_b, values):
            self._check_correlation(a, b, v)

        with self._lock:
            for a, b, v in zip(assets_a, assets_b, values):
                self._correlations[_pair(a, b)] = v

        logger.info(f"{len(values)} correlations updated by {caller}")
        self._bus.publish_all([
            CorrelationUpdatedEvent(asset_a=a, asset_b=b, value=v)
            for a, b, v in zip(assets_a, assets_b, values)
        ])
        return len(values)

    @requires_role(Role.RISK_MANAGER)
    def set_volatility(self, caller: str, asset: str, value: int) -> None:
        """Set an asset's annualised volatility in bps."""
        if not asset:
            raise InvalidParameterError("Asset must not be empty")
        if not isinstance(value, int) or isinstance(value, bool) or not 0 < value <= MAX_VOLATILITY_BPS:
            raise InvalidParameterError(
                f"Volatility must be an int in (0, {MAX_VOLATILITY_BPS}] bps, got {value!r}",
                asset=asset,
            )

        with self._lock:
            self._volatilities[asset] = value

        logger.info(f"Volatility of {asset} set to {value}bps by {caller}")
        self._bus.publish(VolatilityUpdatedEvent(asset=asset, value=value))

    @requires_role(Role.RISK_MANAGER)
    def estimate_from_returns(
        self,
        caller: str,
        histories: Mapping[str, Sequence[int]],
        trading_days_per_year: int = 252,
    ) -> pd.DataFrame:
        """
        Calibrate correlations and volatilities from aligned return histories.

        Histories are daily returns in bps, aligned on their most recent
        observations. Negative correlations are clamped to 0 (no hedge credit
        beyond full independence). Returns the resulting correlation view.

        Raises:
            InvalidParameterError: Fewer than two assets or two observations
        """
        assets = sorted(histories)
        if len(assets) < 2:
            raise InvalidParameterError("Need at least two assets to estimate correlations")

        length = min(len(histories[a]) for a in assets)
        if length < 2:
            raise InvalidParameterError("Need at least two aligned observations per asset")

        matrix = np.array(
            [list(histories[a])[-length:] for a in assets], dtype=float
        ) / BPS

        stdevs = matrix.std(axis=1, ddof=1)
        if np.any(stdevs == 0):
            flat = [a for a, s in zip(assets, stdevs) if s == 0]
            raise InvalidParameterError(f"Constant return history for {flat}")

        corr = np.corrcoef(matrix)
        annualised = stdevs * math.sqrt(trading_days_per_year)

        pairs_a: list[str] = []
        pairs_b: list[str] = []
        values: list[int] = []
        for i in range(len(assets)):
            for j in range(i + 1, len(assets)):
                pairs_a.append(assets[i])
                pairs_b.append(assets[j])
                values.append(min(max(quantize_bps(float(corr[i, j])), 0), BPS))

        vols = {
            asset: min(max(quantize_bps(float(v)), 1), MAX_VOLATILITY_BPS)
            for asset, v in zip(assets, annualised)
        }

        with self._lock:
            for a, b, v in zip(pairs_a, pairs_b, values):
                self._correlations[_pair(a, b)] = v
            self._volatilities.update(vols)

        logger.info(f"Calibrated {len(values)} correlations over {length} observations by {caller}")
        self._bus.publish_all(
            [CorrelationUpdatedEvent(asset_a=a, asset_b=b, value=v) for a, b, v in zip(pairs_a, pairs_b, values)]
            + [VolatilityUpdatedEvent(asset=a, value=v) for a, v in vols.items()]
        )
        return self.as_dataframe(assets)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_correlation(self, asset_a: str, asset_b: str) -> int:
        if asset_a == asset_b:
            return BPS
        with self._lock:
            return self._correlations.get(_pair(asset_a, asset_b), self._config.default_correlation_bps)

    def has_correlation(self, asset_a: str, asset_b: str) -> bool:
        with self._lock:
            return asset_a == asset_b or _pair(asset_a, asset_b) in self._correlations

    def get_volatility(self, asset: str) -> int:
        with self._lock:
            return self._volatilities.get(asset, self._config.default_volatility_bps)

    def correlation_matrix(self, assets: Sequence[str]) -> list[list[int]]:
        """Dense matrix for a set of assets, read under one lock."""
        with self._lock:
            correlations = dict(self._correlations)
        default = self._config.default_correlation_bps
        return [
            [BPS if a == b else correlations.get(_pair(a, b), default) for b in assets]
            for a in assets
        ]

    def known_assets(self) -> list[str]:
        with self._lock:
            assets = set(self._volatilities)
            for a, b in self._correlations:
                assets.update((a, b))
        return sorted(assets)

    def as_dataframe(self, assets: Sequence[str] | None = None) -> pd.DataFrame:
        """Correlation matrix in bps as a labelled DataFrame."""
        assets = list(assets) if assets is not None else self.known_assets()
        return pd.DataFrame(self.correlation_matrix(assets), index=assets, columns=assets)
