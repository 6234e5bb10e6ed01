"""
Engine Configuration
====================

Deployment-level constants for the risk engine, loaded from ``config.yaml``.

Every value here is tuned by the owning deployment, never by an individual
caller. Sections missing from the YAML fall back to the dataclass defaults;
values that are present are validated by ``ConfigValidator`` before use.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from risk_engine.config_validator import ConfigValidator


logger = logging.getLogger(__name__)

CONFIDENCE_95 = 9_500
CONFIDENCE_99 = 9_900


@dataclass(frozen=True)
class VaRConfig:
    lookback_window: int = 365
    min_data_points: int = 30
    confidence_levels: tuple[int, ...] = (CONFIDENCE_95, CONFIDENCE_99)


@dataclass(frozen=True)
class MarginConfig:
    """Margin constants (rates in bps of market value)."""
    base_margin_rate_bps: int = 1_000
    volatility_addon_rate_bps: int = 5_000
    volatility_multiplier_bps: int = 20_000
    default_volatility_bps: int = 5_000
    default_correlation_bps: int = 10_000
    max_diversification_benefit_bps: int = 5_000
    concentration_threshold_bps: int = 4_000
    default_initial_margin_ratio_bps: int = 2_000
    default_method: str = "standard"


@dataclass(frozen=True)
class MetricsConfig:
    risk_free_rate_bps: int = 200  # annual
    trading_days_per_year: int = 252
    liquidity_base_score: int = 50
    liquidity_breadth_bonus: int = 10
    concentration_alert_bps: int = 4_000


@dataclass(frozen=True)
class OracleConfig:
    stale_threshold_seconds: int = 3_600


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "INFO"
    format: str = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
    slow_operation_threshold_ms: float = 50.0
    module_levels: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class EngineConfig:
    """Root of the configuration tree."""
    var: VaRConfig = field(default_factory=VaRConfig)
    margin: MarginConfig = field(default_factory=MarginConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    oracle: OracleConfig = field(default_factory=OracleConfig)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None, strict: bool = True) -> "EngineConfig":
        """
        Build a configuration tree from a raw dictionary.

        Unknown keys inside a section are ignored with a warning.

        Raises:
            ConfigValidationError: If strict and the dictionary fails validation
        """
        data = data or {}
        ConfigValidator().validate(data, strict=strict)

        var_section = dict(data.get("var") or {})
        if "confidence_levels" in var_section:
            var_section["confidence_levels"] = tuple(sorted(var_section["confidence_levels"]))

        return cls(
            var=_build_section(VaRConfig, var_section, "var"),
            margin=_build_section(MarginConfig, data.get("margin"), "margin"),
            metrics=_build_section(MetricsConfig, data.get("metrics"), "metrics"),
            oracle=_build_section(OracleConfig, data.get("oracle"), "oracle"),
            logging=_build_section(LoggingSettings, data.get("logging"), "logging"),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _build_section(section_cls: type, raw: dict[str, Any] | None, name: str) -> Any:
    raw = raw or {}
    known = {f.name for f in fields(section_cls)}
    for key in raw:
        if key not in known:
            logger.warning(f"Ignoring unknown config key: {name}.{key}")
    return section_cls(**{k: v for k, v in raw.items() if k in known})


def load_config(path: str | Path = "config.yaml", strict: bool = True) -> EngineConfig:
    """
    Load and validate the engine configuration from a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist
        ConfigValidationError: If strict and validation fails
    """
    config_file = Path(path)

    if not config_file.exists():
        logger.error(f"Config file not found: {config_file}")
        raise FileNotFoundError(f"Config file not found: {config_file}")

    with open(config_file, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    config = EngineConfig.from_dict(raw, strict=strict)
    logger.info(f"Loaded configuration from {config_file}")
    return config
