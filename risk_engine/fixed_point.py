"""
Fixed-Point Arithmetic
======================

Integer fixed-point helpers used for every financial quantity in the engine.

Conventions:
- Notional amounts (prices, quantities, collateral, margin) are ints scaled
  by WAD (1.0 == 10**18)
- Ratios, rates, correlations and volatilities are ints in basis points
  (1.0 == 10_000)

All multiplications and divisions go through the checked helpers below so
that results stay inside the unsigned 256-bit range used by the host ledger.
"""

from __future__ import annotations

import math
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal

from risk_engine.exceptions import ArithmeticOverflowError, InvalidParameterError


WAD = 10**18
BPS = 10_000
MAX_UINT256 = 2**256 - 1
MAX_INT256 = 2**255 - 1


def _check_range(value: int, signed: bool = False) -> int:
    """Raise if value falls outside the 256-bit storage range."""
    if signed:
        if value > MAX_INT256 or value < -MAX_INT256 - 1:
            raise ArithmeticOverflowError(f"Signed value out of range: {value}")
    elif value < 0 or value > MAX_UINT256:
        raise ArithmeticOverflowError(f"Unsigned value out of range: {value}")
    return value


def to_wad(value: Decimal | int | str) -> int:
    """
    Convert a human-readable amount to WAD fixed point.

    Floats are refused so that binary rounding never leaks into a
    financial value.
    """
    if isinstance(value, float):
        raise InvalidParameterError("Floats are not accepted for financial values")
    scaled = (Decimal(value) * WAD).to_integral_value(rounding=ROUND_DOWN)
    return _check_range(int(scaled), signed=True)


def from_wad(value: int) -> Decimal:
    """Convert a WAD integer back to a Decimal for display."""
    return Decimal(value) / Decimal(WAD)


def to_bps(value: Decimal | int | str) -> int:
    """Convert a ratio (e.g. Decimal("0.05")) to basis points, half-up."""
    if isinstance(value, float):
        raise InvalidParameterError("Floats are not accepted for financial values")
    return int((Decimal(value) * BPS).to_integral_value(rounding=ROUND_HALF_UP))


def quantize_bps(ratio: float) -> int:
    """
    Quantise a statistical estimate (correlation, beta) to basis points.

    Only used at the boundary with floating-point estimators; goes through
    Decimal so the rounding mode is explicit.
    """
    if not math.isfinite(ratio):
        raise InvalidParameterError(f"Non-finite estimate: {ratio}")
    return int((Decimal(repr(ratio)) * BPS).to_integral_value(rounding=ROUND_HALF_UP))


def mul_div(a: int, b: int, denominator: int) -> int:
    """
    Compute a * b // denominator with range checks.

    Rounds toward negative infinity like Python floor division; callers that
    need truncation toward zero for signed values use ``signed_mul_div``.
    """
    if denominator == 0:
        raise ArithmeticOverflowError("Division by zero")
    _check_range(abs(a), signed=False)
    _check_range(abs(b), signed=False)
    return (a * b) // denominator


def signed_mul_div(a: int, b: int, denominator: int) -> int:
    """a * b / denominator truncated toward zero, for signed P&L math."""
    if denominator == 0:
        raise ArithmeticOverflowError("Division by zero")
    product = a * b
    result = abs(product) // abs(denominator)
    if (product < 0) != (denominator < 0):
        result = -result
    return _check_range(result, signed=True)


def wad_mul(a: int, b: int) -> int:
    """Multiply two WAD values (signed-safe, truncates toward zero)."""
    return signed_mul_div(a, b, WAD)


def wad_div(a: int, b: int) -> int:
    """Divide two WAD values (signed-safe, truncates toward zero)."""
    return signed_mul_div(a, WAD, b)


def bps_of(amount: int, rate_bps: int) -> int:
    """Apply a basis-point rate to a non-negative amount."""
    if amount < 0 or rate_bps < 0:
        raise InvalidParameterError(
            f"bps_of expects non-negative operands (amount={amount}, rate={rate_bps})"
        )
    return _check_range(mul_div(amount, rate_bps, BPS))


def ratio_bps(numerator: int, denominator: int) -> int:
    """numerator / denominator expressed in basis points (0 if denominator is 0)."""
    if denominator == 0:
        return 0
    return signed_mul_div(numerator, BPS, denominator)


def checked_sub(a: int, b: int) -> int:
    """Unsigned subtraction that refuses to go negative."""
    if b > a:
        raise ArithmeticOverflowError(f"Subtraction underflow: {a} - {b}")
    return a - b


def saturating_sub(a: int, b: int) -> int:
    """Unsigned subtraction clamped at zero."""
    return a - b if a > b else 0


def isqrt(value: int) -> int:
    """Integer square root of a non-negative value."""
    if value < 0:
        raise ArithmeticOverflowError(f"Square root of negative value: {value}")
    return math.isqrt(value)


def sqrt_bps(value: int) -> int:
    """
    Square root of an integer, returned in basis points.

    sqrt_bps(4) == 20_000 (2.0), sqrt_bps(10) == 31_622 (3.1622).
    """
    return isqrt(value * BPS * BPS)


def scale_by_sqrt(amount: int, factor: int) -> int:
    """Scale amount by sqrt(factor) with four decimal places of precision."""
    if factor <= 1:
        return amount
    return mul_div(amount, sqrt_bps(factor), BPS)
