"""Checked integer fixed-point helpers for the venue.

Every function operates on plain Python ints. Division floors toward -inf
unless the name says otherwise; callers pick the rounding that favours the
vault. Results outside ``[-MAX_UINT256, MAX_UINT256]`` raise
``ArithmeticOverflowError`` so stored quantities stay representable.
"""

from __future__ import annotations

from ..constants import BPS_SCALE, MAX_UINT256
from ..exceptions import ArithmeticOverflowError


def checked(value: int) -> int:
    """Return *value* if it fits the stored range, else raise."""
    if value > MAX_UINT256 or value < -MAX_UINT256:
        raise ArithmeticOverflowError(f"value out of range: {value}")
    return value


def mul_div(a: int, b: int, denominator: int) -> int:
    """``floor(a * b / denominator)``."""
    if denominator == 0:
        raise ArithmeticOverflowError("division by zero")
    return checked(a * b // denominator)


def mul_div_up(a: int, b: int, denominator: int) -> int:
    """``ceil(a * b / denominator)``."""
    if denominator == 0:
        raise ArithmeticOverflowError("division by zero")
    return checked(-((-a * b) // denominator))


def ceil_div(a: int, b: int) -> int:
    if b == 0:
        raise ArithmeticOverflowError("division by zero")
    return -((-a) // b)


def div_trunc(a: int, b: int) -> int:
    """Integer division truncated toward zero."""
    if b == 0:
        raise ArithmeticOverflowError("division by zero")
    q = abs(a) // abs(b)
    return q if (a >= 0) == (b > 0) else -q


def div_round(a: int, b: int) -> int:
    """Non-negative division rounded half up."""
    if b <= 0:
        raise ArithmeticOverflowError("non-positive divisor")
    return checked((2 * a + b) // (2 * b))


def bps_of(amount: int, bps: int) -> int:
    """``floor(amount * bps / 10_000)``."""
    return mul_div(amount, bps, BPS_SCALE)


def sub_floor_zero(a: int, b: int) -> int:
    """``max(a - b, 0)``."""
    return a - b if a > b else 0


def clamp(value: int, low: int, high: int) -> int:
    if value < low:
        return low
    if value > high:
        return high
    return value
