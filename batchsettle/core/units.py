"""
Fixed-point amounts.

Every amount in the core is a non-negative int in the settlement asset's
smallest unit. The asset carries 6 decimal places, so 1 whole unit is
1_000_000 base units. Floats are never accepted.
"""

from decimal import Decimal, InvalidOperation
from typing import Union

from batchsettle.core.exceptions import Reason, ValidationError

DECIMALS = 6

UINT256_MAX = 2 ** 256 - 1


def units(whole: Union[int, str], decimals: int = DECIMALS) -> int:
    """Whole units to base units: units(1000) == 1_000_000_000."""
    return parse_amount(str(whole), decimals)


def parse_amount(value: Union[int, str], decimals: int = DECIMALS) -> int:
    """
    Parse an amount.

    int  → already in base units, returned unchanged
    str  → decimal string in whole units ("1000", "0.25"), converted exactly

    Raises ValueError for floats, negatives, or strings with more fractional
    digits than the asset supports.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValueError(f"amount must be int or decimal string, got {value!r}")
    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"amount must be non-negative, got {value}")
        return value
    if not isinstance(value, str):
        raise ValueError(f"amount must be int or decimal string, got {type(value).__name__}")
    try:
        dec = Decimal(value.strip().replace("_", ""))
    except InvalidOperation:
        raise ValueError(f"not a decimal amount: {value!r}")
    if not dec.is_finite() or dec < 0:
        raise ValueError(f"amount must be finite and non-negative, got {value!r}")
    scaled = dec.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValueError(f"{value!r} has more than {decimals} decimal places")
    return int(scaled)


def require_amount(amount: int) -> None:
    """
    Guard for amounts handed to a mutating call: a plain positive int.

    Bools, floats and other numeric types raise ValidationError(zero_amount)
    before anything changes.
    """
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError(Reason.ZERO_AMOUNT, f"amount must be an int, got {amount!r}")
    if amount <= 0:
        raise ValidationError(Reason.ZERO_AMOUNT, details={"amount": amount})


def format_amount(base_units: int, decimals: int = DECIMALS) -> str:
    """format_amount(1_500_000) == '1.500000'"""
    sign = "-" if base_units < 0 else ""
    whole, frac = divmod(abs(base_units), 10 ** decimals)
    return f"{sign}{whole}.{frac:0{decimals}d}"
