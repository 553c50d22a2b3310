"""Parsing of Kubernetes resource quantities for policy validation."""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Union

from .errors import ValidationError

_BINARY_SUFFIXES = {
    "Ki": Decimal(2) ** 10,
    "Mi": Decimal(2) ** 20,
    "Gi": Decimal(2) ** 30,
    "Ti": Decimal(2) ** 40,
    "Pi": Decimal(2) ** 50,
    "Ei": Decimal(2) ** 60,
}
_DECIMAL_SUFFIXES = {
    "n": Decimal("1e-9"),
    "u": Decimal("1e-6"),
    "m": Decimal("1e-3"),
    "": Decimal(1),
    "k": Decimal("1e3"),
    "M": Decimal("1e6"),
    "G": Decimal("1e9"),
    "T": Decimal("1e12"),
    "P": Decimal("1e15"),
    "E": Decimal("1e18"),
}
_QUANTITY_PATTERN = re.compile(r"^([+-]?[0-9.]+(?:[eE][+-]?[0-9]+)?)([a-zA-Z]{0,2})$")


def parse_quantity(value: Union[str, int, float]) -> Decimal:
    """Return the numeric value of a quantity such as ``500m`` or ``2Gi``."""

    if isinstance(value, (int, float)):
        return Decimal(str(value))
    text = str(value).strip()
    match = _QUANTITY_PATTERN.match(text)
    if not match:
        raise ValidationError(f"invalid quantity: {value!r}")
    number, suffix = match.groups()
    multiplier = _BINARY_SUFFIXES.get(suffix)
    if multiplier is None:
        multiplier = _DECIMAL_SUFFIXES.get(suffix)
    if multiplier is None:
        raise ValidationError(f"invalid quantity suffix: {value!r}")
    try:
        return Decimal(number) * multiplier
    except InvalidOperation as exc:
        raise ValidationError(f"invalid quantity: {value!r}") from exc


__all__ = ["parse_quantity"]
