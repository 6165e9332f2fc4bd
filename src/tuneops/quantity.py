"""Cluster resource quantities (``500m``, ``2Gi``, ``1e3``) as decimals."""

from __future__ import annotations

import decimal
import re
from typing import Any

from tuneops.models import DataShapeError

_QUANTITY_RE = re.compile(
    r"^(?P<number>[+-]?(?:\d+(?:\.\d*)?|\.\d+))"
    r"(?:(?P<exponent>[eE][+-]?\d+)|(?P<suffix>Ki|Mi|Gi|Ti|Pi|Ei|n|u|m|k|M|G|T|P|E))?$"
)

_SUFFIXES: dict[str, decimal.Decimal] = {
    "n": decimal.Decimal("1e-9"),
    "u": decimal.Decimal("1e-6"),
    "m": decimal.Decimal("1e-3"),
    "k": decimal.Decimal(10) ** 3,
    "M": decimal.Decimal(10) ** 6,
    "G": decimal.Decimal(10) ** 9,
    "T": decimal.Decimal(10) ** 12,
    "P": decimal.Decimal(10) ** 15,
    "E": decimal.Decimal(10) ** 18,
    "Ki": decimal.Decimal(2) ** 10,
    "Mi": decimal.Decimal(2) ** 20,
    "Gi": decimal.Decimal(2) ** 30,
    "Ti": decimal.Decimal(2) ** 40,
    "Pi": decimal.Decimal(2) ** 50,
    "Ei": decimal.Decimal(2) ** 60,
}


def parse_quantity(value: Any) -> decimal.Decimal:
    """Parse a string or numeric quantity into a decimal in base units."""
    if isinstance(value, bool):
        raise DataShapeError(f"could not parse quantity {value!r}")
    if isinstance(value, decimal.Decimal):
        return value
    if isinstance(value, (int, float)):
        return decimal.Decimal(str(value))
    if not isinstance(value, str):
        raise DataShapeError(f"could not parse quantity {value!r}")
    match = _QUANTITY_RE.match(value.strip())
    if match is None:
        raise DataShapeError(f"could not parse quantity {value!r}")
    number = decimal.Decimal(match.group("number"))
    if match.group("exponent"):
        number = number.scaleb(int(match.group("exponent")[1:]))
    suffix = match.group("suffix")
    if suffix:
        number *= _SUFFIXES[suffix]
    return number


def _round_up(value: decimal.Decimal) -> int:
    return int(value.to_integral_value(rounding=decimal.ROUND_CEILING))


def milli_value(value: Any) -> int:
    """Return the quantity in thousandths of its base unit, rounded up."""
    return _round_up(parse_quantity(value) * 1000)


def scaled_value(value: Any, unit: str) -> int:
    """Return the quantity expressed in ``unit`` (for example ``Mi``), rounded up."""
    if unit not in _SUFFIXES:
        raise DataShapeError(f"unknown quantity unit '{unit}'")
    return _round_up(parse_quantity(value) / _SUFFIXES[unit])


def is_zero(value: Any) -> bool:
    return parse_quantity(value) == 0
