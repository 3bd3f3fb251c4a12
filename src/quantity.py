"""
Resource quantities such as ``10G``, ``512Mi`` or ``1e3``.
"""

import re
from decimal import Decimal, InvalidOperation

_BINARY_SUFFIXES = {
    "Ki": 2**10,
    "Mi": 2**20,
    "Gi": 2**30,
    "Ti": 2**40,
    "Pi": 2**50,
    "Ei": 2**60,
}
_DECIMAL_SUFFIXES = {
    "n": Decimal("1e-9"),
    "u": Decimal("1e-6"),
    "m": Decimal("1e-3"),
    "k": Decimal("1e3"),
    "M": Decimal("1e6"),
    "G": Decimal("1e9"),
    "T": Decimal("1e12"),
    "P": Decimal("1e15"),
    "E": Decimal("1e18"),
}

NUMBER = r"[+-]?(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+)"
SUFFIX = r"[eE][+-]?[0-9]+|[numkMGTPE]|[KMGTPE]i"

# Usable as a JSON Schema "pattern"
QUANTITY_PATTERN = rf"^{NUMBER}(?:{SUFFIX})?$"

_QUANTITY_RE = re.compile(rf"^(?P<number>{NUMBER})(?P<suffix>{SUFFIX})?$")


def parse_quantity(value) -> Decimal:
    """
    Parse a quantity into its numeric value.

    Raises:
        ValueError: If the value is not a valid quantity.
    """
    match = _QUANTITY_RE.match(str(value).strip())
    if not match:
        raise ValueError(f"invalid quantity: {value!r}")

    try:
        number = Decimal(match.group("number"))
    except InvalidOperation:
        raise ValueError(f"invalid quantity: {value!r}")

    suffix = match.group("suffix") or ""
    if not suffix:
        return number
    if suffix in _BINARY_SUFFIXES:
        return number * _BINARY_SUFFIXES[suffix]
    if suffix in _DECIMAL_SUFFIXES:
        return number * _DECIMAL_SUFFIXES[suffix]
    return number * (Decimal(10) ** int(suffix[1:]))


def quantity_to_bytes(value) -> int:
    """Parse a quantity and round it up to whole bytes."""
    return int(parse_quantity(value).to_integral_value(rounding="ROUND_CEILING"))


def is_zero(value) -> bool:
    """True for unset or zero quantities. Malformed values count as set."""
    if value in (None, ""):
        return True
    try:
        return parse_quantity(value) == 0
    except ValueError:
        return False
