"""
Logging Configuration
=====================

Central logging setup for the risk engine.

Features:
- One handler and format for every engine module
- Per-module level overrides from config.yaml
- Calculation timing with slow-call warnings (``CalculationTimer``, ``@timed``)
- Portfolio context prefixes (``get_context_logger``)
"""

from __future__ import annotations

import functools
import logging
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator

import numpy as np


DEFAULT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

# Shutdowns and margin calls must always reach the operator, so the
# monitoring modules never go above INFO.
MODULE_LOG_LEVELS = {
    "risk_engine.var_calculator": logging.INFO,
    "risk_engine.risk_metrics": logging.INFO,
    "risk_engine.correlation_store": logging.INFO,
    "risk_engine.margin_calculator": logging.INFO,
    "risk_engine.stress_tester": logging.INFO,
    "risk_engine.risk_limits": logging.INFO,
    "risk_engine.position_ledger": logging.INFO,
    "risk_engine.margin_monitor": logging.INFO,
    "risk_engine.price_oracle": logging.INFO,
    "risk_engine.event_bus": logging.INFO,
    "risk_engine.authorization": logging.INFO,
    "risk_engine.engine": logging.INFO,
}

# Samples kept per timed operation.
TIMING_WINDOW = 1_000


@dataclass
class LoggingConfig:
    """
    Process-wide logging settings.

    ``module_levels`` starts from MODULE_LOG_LEVELS; entries from the
    ``logging.module_levels`` section of config.yaml override it.
    """
    level: int = logging.INFO
    fmt: str = DEFAULT_FORMAT
    datefmt: str = "%Y-%m-%dT%H:%M:%S%z"
    module_levels: dict[str, int] = field(default_factory=lambda: dict(MODULE_LOG_LEVELS))
    slow_operation_threshold_ms: float = 50.0

    @classmethod
    def from_settings(cls, settings: Any) -> "LoggingConfig":
        """Build from a ``LoggingSettings`` section; level names are case-insensitive."""
        levels = dict(MODULE_LOG_LEVELS)
        levels.update({
            name: logging.getLevelName(level.upper())
            for name, level in settings.module_levels.items()
        })
        return cls(
            level=logging.getLevelName(settings.level.upper()),
            fmt=settings.format,
            module_levels=levels,
            slow_operation_threshold_ms=settings.slow_operation_threshold_ms,
        )

    def apply(self) -> None:
        """Replace the root handlers with one stream handler and set module levels."""
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(self.fmt, self.datefmt))

        root = logging.getLogger()
        root.handlers[:] = [handler]
        root.setLevel(self.level)

        for name, level in self.module_levels.items():
            logging.getLogger(name).setLevel(level)


_active_config = LoggingConfig()


def configure_logging(config: LoggingConfig | None = None) -> LoggingConfig:
    """Apply a configuration (defaults if none given) and make it the active one."""
    global _active_config
    _active_config = config or LoggingConfig()
    _active_config.apply()
    return _active_config


def slow_threshold_ms() -> float:
    """Slow-call threshold of the active configuration."""
    return _active_config.slow_operation_threshold_ms


class CalculationTimer:
    """
    Times calculations and warns when one exceeds its threshold.

    Without an explicit threshold the active configuration's
    ``slow_operation_threshold_ms`` applies, so config.yaml can tighten it
    after the timer was created.

    Example:
        with timer.measure("portfolio_margin"):
            result = calculator.calculate_margin(portfolio)
    """

    def __init__(self, logger: logging.Logger, threshold_ms: float | None = None):
        self.logger = logger
        self.threshold_ms = threshold_ms
        self._samples: dict[str, deque[float]] = {}
        self._lock = threading.Lock()

    @property
    def effective_threshold_ms(self) -> float:
        return self.threshold_ms if self.threshold_ms is not None else slow_threshold_ms()

    @contextmanager
    def measure(self, operation: str) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            elapsed_ms = (time.perf_counter() - start) * 1000
            with self._lock:
                self._samples.setdefault(operation, deque(maxlen=TIMING_WINDOW)).append(elapsed_ms)

            threshold = self.effective_threshold_ms
            if elapsed_ms > threshold:
                self.logger.warning(f"Slow {operation}: {elapsed_ms:.2f}ms > {threshold}ms")
            else:
                self.logger.debug(f"{operation}: {elapsed_ms:.2f}ms")

    def get_stats(self, operation: str) -> dict[str, float]:
        """Latency summary over the retained samples; empty if never measured."""
        with self._lock:
            samples = np.array(self._samples.get(operation, ()), dtype=float)

        if samples.size == 0:
            return {}

        p50, p95 = np.percentile(samples, [50, 95])
        return {
            "count": int(samples.size),
            "mean_ms": float(samples.mean()),
            "p50_ms": float(p50),
            "p95_ms": float(p95),
            "max_ms": float(samples.max()),
        }


def get_calculation_timer(name: str, threshold_ms: float | None = None) -> CalculationTimer:
    return CalculationTimer(logging.getLogger(name), threshold_ms)


def timed(operation: str | None = None, threshold_ms: float | None = None) -> Callable:
    """
    Decorator timing every call of a calculation.

    The timer is exposed as ``wrapper.timer`` for latency stats.

    Example:
        @timed(threshold_ms=20.0)
        def calculate_var(self, returns, confidence_bps, horizon_days=1):
            ...
    """
    def decorator(func: Callable) -> Callable:
        timer = get_calculation_timer(func.__module__, threshold_ms)
        name = operation or func.__qualname__

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            with timer.measure(name):
                return func(*args, **kwargs)

        wrapper.timer = timer  # type: ignore[attr-defined]
        return wrapper
    return decorator


class ContextLogger(logging.LoggerAdapter):
    """
    Adapter prefixing every message with key=value context.

    ``get_context_logger(__name__, portfolio="P1").warning("Margin call")``
    logs ``[portfolio=P1] Margin call``.
    """

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        if not self.extra:
            return msg, kwargs
        context = " ".join(f"{key}={value}" for key, value in self.extra.items())
        return f"[{context}] {msg}", kwargs

    def with_context(self, **context: Any) -> "ContextLogger":
        return ContextLogger(self.logger, {**self.extra, **context})


def get_context_logger(name: str, **context: Any) -> ContextLogger:
    return ContextLogger(logging.getLogger(name), context)
