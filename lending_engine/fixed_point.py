"""Fixed-point constants and integer arithmetic shared by every component.

All token amounts are raw integers in the token's own decimals. Values are
compared only after ``to_base_value`` brings them to a common WAD base using
the token's decimals *and* the price feed's decimals.
"""
from __future__ import annotations

from decimal import Decimal

from .errors import InvariantViolation

WAD = 10**18
RAY = 10**27
BPS = 10_000
YEAR_IN_SECONDS = 365 * 24 * 60 * 60


def checked_sub(a: int, b: int) -> int:
    """Subtract, refusing to go below zero."""
    if b > a:
        raise InvariantViolation(f"Subtraction underflow: {a} - {b}")
    return a - b


def mul_div_down(a: int, b: int, denominator: int) -> int:
    """``a * b / denominator`` with the full product before dividing, floored."""
    if denominator == 0:
        raise InvariantViolation("Division by zero")
    if a < 0 or b < 0 or denominator < 0:
        raise InvariantViolation(f"Negative operand in mul_div: {a}, {b}, {denominator}")
    return (a * b) // denominator


def mul_div_up(a: int, b: int, denominator: int) -> int:
    """``a * b / denominator`` rounded up."""
    if denominator == 0:
        raise InvariantViolation("Division by zero")
    if a < 0 or b < 0 or denominator < 0:
        raise InvariantViolation(f"Negative operand in mul_div: {a}, {b}, {denominator}")
    return -((-(a * b)) // denominator)


def bps_of(amount: int, bps: int) -> int:
    return mul_div_down(amount, bps, BPS)


def rpow(x: int, n: int, base: int) -> int:
    """Exponentiation by squaring in fixed point, rounding half up at each step."""
    if n < 0:
        raise InvariantViolation(f"Negative exponent: {n}")
    half = base // 2
    z = base
    while n:
        if n & 1:
            z = (z * x + half) // base
        n >>= 1
        if n:
            x = (x * x + half) // base
    return z


def to_base_value(
    amount: int, token_decimals: int, price: int, price_decimals: int
) -> int:
    """Value of ``amount`` tokens at ``price``, as a WAD-scaled integer.

    value = amount / 10^token_decimals × price / 10^price_decimals, scaled by
    10^18. The full product is taken before the single division so nothing
    is truncated until the end.
    """
    if amount < 0 or price < 0:
        raise InvariantViolation(f"Negative amount or price: {amount}, {price}")
    return mul_div_down(amount * price, WAD, 10 ** (token_decimals + price_decimals))


def wad_to_decimal(value: int) -> Decimal:
    return Decimal(value) / Decimal(WAD)
