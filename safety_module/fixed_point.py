"""
Integer fixed-point helpers.

Amounts are plain ints in the token's smallest unit; ratios are scaled by WAD.
"""
from safety_module.errors import ValidationError

WAD = 10 ** 18
BPS = 10_000

SECONDS_PER_DAY = 86400
SECONDS_PER_YEAR = 365 * SECONDS_PER_DAY


def mul_div(a: int, b: int, denominator: int, round_up: bool = False) -> int:
    """Compute a * b / denominator without intermediate loss of precision."""
    if denominator == 0:
        raise ValidationError("Division by zero")
    product = a * b
    if round_up:
        return -(-product // denominator)
    return product // denominator


def wad_mul(a: int, b: int) -> int:
    return mul_div(a, b, WAD)


def wad_div(a: int, b: int) -> int:
    return mul_div(a, WAD, b)


def wad_pow(base: int, exponent: int) -> int:
    """
    Raise a WAD-scaled base to a non-negative integer power.

    Uses square-and-multiply so long decay schedules stay cheap.
    """
    if exponent < 0:
        raise ValidationError("Negative exponent")
    result = WAD
    while exponent:
        if exponent & 1:
            result = wad_mul(result, base)
        base = wad_mul(base, base)
        exponent >>= 1
    return result
