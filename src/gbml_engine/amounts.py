"""Amount normalization between human-readable and smallest token units.

The router accepts amounts as decimal strings in one of two shapes: a literal
containing a decimal point is a human-readable token amount and is scaled by
10**decimals; a literal without one is taken as already being in smallest
units. ``AmountUnit`` lets a caller state the unit explicitly instead of
relying on that heuristic.
"""
from __future__ import annotations

from decimal import Decimal, localcontext
from enum import Enum
from typing import Union

from .exceptions import ValidationError
from .validators import validate_amount_string, validate_decimals


class AmountUnit(str, Enum):
    """How an amount literal should be interpreted."""
    AUTO = "auto"          # "1.5" is token units, "15" is smallest units
    DECIMAL = "decimal"    # always token units, scaled by 10**decimals
    SMALLEST = "smallest"  # always smallest units, must be an integer


AmountLike = Union[str, int, Decimal]


def parse_units(amount: AmountLike, decimals: int) -> int:
    """Scale a human-readable amount to smallest units.

    Raises:
        ValidationError: If the amount has more fractional digits than the
            token supports.
    """
    literal = validate_amount_string(amount)
    decimals = validate_decimals(decimals)

    with localcontext() as ctx:
        ctx.prec = len(literal) + decimals + 10
        scaled = Decimal(literal).scaleb(decimals)
        if scaled != scaled.to_integral_value():
            raise ValidationError(
                f"amount {literal} has more than {decimals} decimal places",
                field="amount",
            )
        return int(scaled)


def format_units(value: int, decimals: int) -> str:
    """Render a smallest-unit integer as a human-readable decimal string."""
    decimals = validate_decimals(decimals)
    with localcontext() as ctx:
        ctx.prec = len(str(abs(value))) + decimals + 10
        rendered = Decimal(value).scaleb(-decimals)
    text = format(rendered, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def to_smallest_unit(
    amount: AmountLike,
    decimals: int,
    unit: AmountUnit = AmountUnit.AUTO,
) -> int:
    """Normalize ``amount`` to the token's smallest unit.

    >>> to_smallest_unit("1.5", 18)
    1500000000000000000
    >>> to_smallest_unit("1500000000000000000", 18)
    1500000000000000000
    """
    literal = validate_amount_string(amount)
    unit = AmountUnit(unit)

    if unit is AmountUnit.DECIMAL:
        return parse_units(literal, decimals)

    if unit is AmountUnit.SMALLEST:
        if "." in literal:
            raise ValidationError(
                "amount in smallest units must be an integer",
                field="amount",
            )
        return int(literal)

    if "." in literal:
        return parse_units(literal, decimals)
    return int(literal)


__all__ = [
    "AmountUnit",
    "AmountLike",
    "parse_units",
    "format_units",
    "to_smallest_unit",
]
