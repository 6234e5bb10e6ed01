"""
Configuration Validation
========================

Checks the raw ``config.yaml`` dictionary before it becomes an
``EngineConfig``.

Features:
- Declarative per-field schema (type, range, allowed values, predicate)
- Cross-field rules between sections
- Warnings for sections the engine does not read
- Strict mode raising ConfigValidationError with a readable report
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)

_MISSING = object()

KNOWN_SECTIONS = ("var", "margin", "metrics", "oracle", "logging")
MARGIN_METHODS = ("standard", "portfolio", "risk_based", "span")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigValidationError(ValueError):
    """Strict validation failed; ``result`` holds every issue found."""

    def __init__(self, message: str, result: "ValidationResult"):
        super().__init__(message)
        self.result = result


class ValidationSeverity(Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class ValidationIssue:
    severity: ValidationSeverity
    path: str
    message: str
    suggestion: str | None = None

    def __str__(self) -> str:
        text = f"{self.severity.value.upper():<8}{self.path}: {self.message}"
        return f"{text} (fix: {self.suggestion})" if self.suggestion else text


@dataclass
class ValidationResult:
    """Issues collected by one validation run."""
    valid: bool = True
    issues: list[ValidationIssue] = field(default_factory=list)
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def add_error(self, path: str, message: str, suggestion: str | None = None) -> None:
        self.issues.append(ValidationIssue(ValidationSeverity.ERROR, path, message, suggestion))
        self.valid = False

    def add_warning(self, path: str, message: str, suggestion: str | None = None) -> None:
        self.issues.append(ValidationIssue(ValidationSeverity.WARNING, path, message, suggestion))

    def _of(self, severity: ValidationSeverity) -> list[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity is severity]

    def get_errors(self) -> list[ValidationIssue]:
        return self._of(ValidationSeverity.ERROR)

    def get_warnings(self) -> list[ValidationIssue]:
        return self._of(ValidationSeverity.WARNING)

    def summary(self) -> str:
        return (
            f"config.yaml {'valid' if self.valid else 'INVALID'}: "
            f"{len(self.get_errors())} error(s), {len(self.get_warnings())} warning(s)"
        )

    def report(self, include_warnings: bool = True) -> str:
        """Summary line followed by one line per issue, errors first."""
        shown = self.get_errors() + (self.get_warnings() if include_warnings else [])
        return "\n".join([self.summary(), *(f"  {issue}" for issue in shown)])


@dataclass(frozen=True)
class FieldSchema:
    """Constraints on one dotted config path."""
    path: str
    field_type: type | tuple[type, ...]
    required: bool = False
    min_value: int | float | None = None
    max_value: int | float | None = None
    allowed_values: tuple | None = None
    predicate: Callable[[Any], bool] | None = None
    description: str = ""

    def problem(self, value: Any) -> str | None:
        """Why ``value`` is unacceptable, or None."""
        # bool is an int subclass; never accept it for numeric fields
        if not isinstance(value, self.field_type) or (
            isinstance(value, bool) and self.field_type is not bool
        ):
            return f"expected {_type_name(self.field_type)}, got {type(value).__name__}"
        if self.min_value is not None and value < self.min_value:
            return f"{value} is below the minimum of {self.min_value}"
        if self.max_value is not None and value > self.max_value:
            return f"{value} is above the maximum of {self.max_value}"
        if self.allowed_values is not None and value not in self.allowed_values:
            return f"{value!r} is not one of {', '.join(map(str, self.allowed_values))}"
        if self.predicate is not None and not self.predicate(value):
            return f"{value!r} is not acceptable ({self.description or 'custom check'})"
        return None


def _type_name(field_type: type | tuple[type, ...]) -> str:
    if isinstance(field_type, tuple):
        return " or ".join(t.__name__ for t in field_type)
    return field_type.__name__


def _bps(path: str, description: str, low: int = 0, high: int = 10_000) -> FieldSchema:
    return FieldSchema(path, int, min_value=low, max_value=high, description=description)


def _count(path: str, low: int, high: int, description: str = "") -> FieldSchema:
    return FieldSchema(path, int, min_value=low, max_value=high, description=description)


ENGINE_SCHEMA: tuple[FieldSchema, ...] = (
    _count("var.lookback_window", 2, 10_000, "daily returns kept per portfolio"),
    _count("var.min_data_points", 2, 10_000, "observations required for VaR"),
    FieldSchema(
        "var.confidence_levels", list,
        predicate=lambda levels: sorted(levels) == [9_500, 9_900],
        description="exactly 9500 and 9900 bps",
    ),
    _bps("margin.base_margin_rate_bps", "base rate on market value"),
    _bps("margin.volatility_addon_rate_bps", "rate on the volatility add-on"),
    _bps("margin.volatility_multiplier_bps", "risk-based multiplier", low=1, high=100_000),
    _bps("margin.default_volatility_bps", "volatility for unset assets", low=1, high=100_000),
    _bps("margin.default_correlation_bps", "correlation for unset pairs"),
    _bps("margin.max_diversification_benefit_bps", "cap on diversification benefit"),
    _bps("margin.concentration_threshold_bps", "share that starts the penalty"),
    _bps("margin.default_initial_margin_ratio_bps", "initial margin for new portfolios", low=1),
    FieldSchema("margin.default_method", str, allowed_values=MARGIN_METHODS),
    _bps("metrics.risk_free_rate_bps", "annual risk-free rate", high=5_000),
    _count("metrics.trading_days_per_year", 1, 366),
    _count("metrics.liquidity_base_score", 0, 100),
    _count("metrics.liquidity_breadth_bonus", 0, 100),
    _bps("metrics.concentration_alert_bps", "concentration alert level"),
    _count("oracle.stale_threshold_seconds", 1, 7 * 86_400, "maximum price age"),
    FieldSchema("logging.level", str, allowed_values=LOG_LEVELS),
    FieldSchema("logging.slow_operation_threshold_ms", (int, float), min_value=0),
    FieldSchema("logging.module_levels", dict),
)


def lookup(config: dict, path: str) -> Any:
    """Value at a dotted path, or ``_MISSING``."""
    node: Any = config
    for key in path.split("."):
        if not isinstance(node, dict) or node.get(key) is None:
            return _MISSING
        node = node[key]
    return node


def check_var_window(config: dict, result: ValidationResult) -> None:
    window = lookup(config, "var.lookback_window")
    minimum = lookup(config, "var.min_data_points")
    if isinstance(window, int) and isinstance(minimum, int) and minimum > window:
        result.add_error(
            "var",
            f"min_data_points ({minimum}) exceeds lookback_window ({window})",
            "raise the window or lower the minimum; VaR could never run",
        )


def check_margin_tuning(config: dict, result: ValidationResult) -> None:
    cap = lookup(config, "margin.max_diversification_benefit_bps")
    if isinstance(cap, int) and cap > 8_000:
        result.add_warning(
            "margin.max_diversification_benefit_bps",
            f"a {cap} bps cap leaves hedged books almost unmargined",
            "keep the cap at or below 5000",
        )
    if lookup(config, "margin.concentration_threshold_bps") == 0:
        result.add_warning(
            "margin.concentration_threshold_bps",
            "a zero threshold penalises every position",
        )


def check_unknown_sections(config: dict, result: ValidationResult) -> None:
    for section in config:
        if section not in KNOWN_SECTIONS:
            result.add_warning(section, "section is not read by the engine")


class ConfigValidator:
    """
    Validates the raw configuration dictionary.

    Every field is optional (dataclass defaults apply); a field that is
    present must satisfy its schema. Basis-point fields must be ints so no
    float reaches the fixed-point arithmetic.
    """

    def __init__(self):
        self._schemas: list[FieldSchema] = list(ENGINE_SCHEMA)
        self._rules: list[Callable[[dict, ValidationResult], None]] = [
            check_var_window,
            check_margin_tuning,
            check_unknown_sections,
        ]

    def add_schema(self, schema: FieldSchema) -> None:
        self._schemas.append(schema)

    def add_rule(self, rule: Callable[[dict, ValidationResult], None]) -> None:
        self._rules.append(rule)

    def validate(self, config: dict, strict: bool = False) -> ValidationResult:
        """
        Check ``config`` against every schema and rule.

        Raises:
            ConfigValidationError: If strict and any error was found
        """
        result = ValidationResult()

        for schema in self._schemas:
            value = lookup(config, schema.path)
            if value is _MISSING:
                if schema.required:
                    result.add_error(schema.path, "required field is missing")
                continue
            problem = schema.problem(value)
            if problem:
                result.add_error(schema.path, problem)

        for rule in self._rules:
            rule(config, result)

        log = logger.info if result.valid else logger.error
        log(result.summary())
        for issue in result.issues:
            log_issue = logger.error if issue.severity is ValidationSeverity.ERROR else logger.warning
            log_issue(str(issue))

        if strict and not result.valid:
            raise ConfigValidationError(result.report(include_warnings=False), result)
        return result
