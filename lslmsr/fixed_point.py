"""
Signed 64.64 fixed-point arithmetic. Pure math, no state.

A value is a plain Python int holding the real number scaled by 2^64.
Every value must stay within [MIN_64X64, MAX_64X64], i.e. a signed
128-bit integer. Operations that would leave that range raise instead
of wrapping.

Notation:
    x, y: raw 64.64 values (int)
    ONE: 1.0 in 64.64 (1 << 64)

The transcendental functions (ln, exp and their base-2 forms) are
approximations. They live behind the ExpLog strategy so the pricing
engine can swap the series without touching its own code.

Error bounds (BinaryExpLog, measured against exact math):
    log_2: squaring-and-halving, one bit per iteration, 64 iterations.
           Absolute error below 2^-60 for every positive input.
    exp_2: Taylor series of 2^f = e^(f*ln2) on f in [0, 1).
           PRECISE (20 terms): truncation error below 2^-70, total error
           a few units of least precision.
           SHORT_SERIES (5 terms): relative error below 1.7e-4.
"""

from decimal import Decimal, ROUND_FLOOR, localcontext
from typing import Protocol


MIN_64X64 = -(1 << 127)
MAX_64X64 = (1 << 127) - 1
ONE = 1 << 64

# ln(2) scaled by 2^64
LN2 = 0xB17217F7D1CF79AB

_MAX_INT64 = (1 << 63) - 1
_MIN_INT64 = -(1 << 63)
_MAX_UINT256 = (1 << 256) - 1
_FRACTION_MASK = ONE - 1


class FixedPointError(ArithmeticError):
    pass


class Overflow(FixedPointError):
    pass


class Underflow(FixedPointError):
    pass


class DivideByZero(FixedPointError, ZeroDivisionError):
    pass


class DomainError(FixedPointError, ValueError):
    pass


def _checked(x: int, below=Underflow) -> int:
    if x > MAX_64X64:
        raise Overflow(f"{x:#x} exceeds MAX_64X64")
    if x < MIN_64X64:
        raise below(f"{x:#x} is below MIN_64X64")
    return x


# ---------------------------------------------------------------------------
# Integer conversions
# ---------------------------------------------------------------------------

def from_int(x: int) -> int:
    """Signed integer to 64.64. The source must fit in int64."""
    if x > _MAX_INT64 or x < _MIN_INT64:
        raise Overflow(f"from_int: {x} does not fit in 64 bits")
    return x << 64


def from_uint(x: int) -> int:
    """Unsigned integer to 64.64. The source must not exceed 2^63 - 1."""
    if x < 0:
        raise DomainError(f"from_uint: negative input {x}")
    if x > _MAX_INT64:
        raise Overflow(f"from_uint: {x} exceeds 2^63 - 1")
    return x << 64


def to_int(x: int) -> int:
    """64.64 to integer, truncating toward zero."""
    if x < 0:
        return -((-x) >> 64)
    return x >> 64


def to_uint(x: int) -> int:
    if x < 0:
        raise DomainError(f"to_uint: negative input {x:#x}")
    return x >> 64


def to_decimal(x: int) -> Decimal:
    """Exact decimal rendering of a 64.64 value."""
    with localcontext() as ctx:
        ctx.prec = 80
        return Decimal(x) / Decimal(ONE)


def from_decimal(d) -> int:
    """Parse a decimal (or string) into 64.64, flooring excess precision."""
    with localcontext() as ctx:
        ctx.prec = 80
        scaled = (Decimal(d) * ONE).to_integral_value(rounding=ROUND_FLOOR)
    return _checked(int(scaled))


# ---------------------------------------------------------------------------
# Checked arithmetic
# ---------------------------------------------------------------------------

def add(x: int, y: int) -> int:
    return _checked(x + y)


def sub(x: int, y: int) -> int:
    return _checked(x - y)


def neg(x: int) -> int:
    return _checked(-x)


def abs_(x: int) -> int:
    return _checked(abs(x))


def mul(x: int, y: int) -> int:
    """x * y, rounded toward negative infinity."""
    return _checked((x * y) >> 64, below=Overflow)


def div(x: int, y: int) -> int:
    """x / y, rounded toward zero."""
    if y == 0:
        raise DivideByZero("div: division by zero")
    q = (abs(x) << 64) // abs(y)
    if (x < 0) != (y < 0):
        q = -q
    return _checked(q, below=Overflow)


def divu(x: int, y: int) -> int:
    """Unsigned integer x / unsigned integer y as 64.64.

    Bridges external token amounts into fixed point:
    divu(amount, 10 ** decimals).
    """
    if y == 0:
        raise DivideByZero("divu: division by zero")
    if x < 0 or y < 0:
        raise DomainError(f"divu: negative operand ({x}, {y})")
    return _checked((x << 64) // y)


def mulu(x: int, y: int) -> int:
    """64.64 x times unsigned integer y, as an unsigned integer (floor).

    The inverse bridge: mulu(price, 10 ** decimals) is a token amount.
    """
    if y == 0:
        return 0
    if x < 0:
        raise DomainError(f"mulu: negative multiplicand {x:#x}")
    if y < 0:
        raise DomainError(f"mulu: negative multiplier {y}")
    result = (x * y) >> 64
    if result > _MAX_UINT256:
        raise Overflow("mulu: result exceeds 256 bits")
    return result


# ---------------------------------------------------------------------------
# Logarithm / exponential
# ---------------------------------------------------------------------------

class ExpLog(Protocol):
    """Transcendental strategy used by the pricing engine."""

    def log_2(self, x: int) -> int: ...

    def ln(self, x: int) -> int: ...

    def exp_2(self, x: int) -> int: ...

    def exp(self, x: int) -> int: ...


class BinaryExpLog:
    """
    Binary logarithm by repeated squaring, 2^f by a Taylor series.

    terms: number of series terms after the leading 1 used for 2^f.
    """

    def __init__(self, terms: int = 20):
        if terms < 1:
            raise ValueError("terms must be at least 1")
        self.terms = terms

    def __repr__(self) -> str:
        return f"BinaryExpLog(terms={self.terms})"

    def log_2(self, x: int) -> int:
        if x <= 0:
            raise DomainError(f"log_2: non-positive input {x:#x}")

        # Normalize into [1, 2); at most 63 halvings or 64 doublings.
        result = 0
        while x >= 2 * ONE:
            x >>= 1
            result += ONE
        while x < ONE:
            x <<= 1
            result -= ONE

        bit = ONE >> 1
        for _ in range(64):
            x = (x * x) >> 64
            if x >= 2 * ONE:
                x >>= 1
                result += bit
            bit >>= 1
        return result

    def ln(self, x: int) -> int:
        if x <= 0:
            raise DomainError(f"ln: non-positive input {x:#x}")
        return mul(self.log_2(x), LN2)

    def exp_2(self, x: int) -> int:
        # Arithmetic shift floors, so f is always in [0, 1) even for x < 0.
        n = x >> 64
        f = x & _FRACTION_MASK
        if n >= 128:
            raise Overflow(f"exp_2: exponent {n} too large")
        if n <= -128:
            raise Underflow(f"exp_2: exponent {n} too small")

        frac = self._exp_2_fraction(f)
        if n >= 0:
            return _checked(frac << n)
        return frac >> -n

    def exp(self, x: int) -> int:
        return self.exp_2(div(x, LN2))

    def _exp_2_fraction(self, f: int) -> int:
        """2^f for f in [0, 1): sum of z^k / k! with z = f * ln 2."""
        z = mul(f, LN2)
        total = ONE
        term = ONE
        for k in range(1, self.terms + 1):
            term = ((term * z) >> 64) // k
            if term == 0:
                break
            total += term
        return total


PRECISE = BinaryExpLog(terms=20)
SHORT_SERIES = BinaryExpLog(terms=5)


def log_2(x: int) -> int:
    return PRECISE.log_2(x)


def ln(x: int) -> int:
    return PRECISE.ln(x)


def exp_2(x: int) -> int:
    return PRECISE.exp_2(x)


def exp(x: int) -> int:
    return PRECISE.exp(x)
