"""Parsing of Kubernetes resource quantities."""

import re

from .exceptions import InvalidUnitError, QuantityParseError

__all__ = ["to_bytes", "to_milli_cpus"]

_INT64_MAX = 2**63 - 1
_INT64_MIN = -(2**63)

_INTEGER_REGEX = re.compile(r"[+-]?[0-9]+")
_SUFFIX_REGEX = re.compile(r"[A-Za-z]{1,2}$")

_MULTIPLIERS = {
    "Ki": 1024,
    "Mi": 1024**2,
    "Gi": 1024**3,
    "Ti": 1024**4,
    "Pi": 1024**5,
    "Ei": 1024**6,
    "k": 1000,
    "M": 1000**2,
    "G": 1000**3,
    "T": 1000**4,
    "P": 1000**5,
    "E": 1000**6,
}


def _parse_int(quantity: str, number: str) -> int:
    """Parse the numeric part of a quantity as a 64-bit integer."""
    if not _INTEGER_REGEX.fullmatch(number):
        raise QuantityParseError(f'Cannot parse quantity "{quantity}"')
    return _check_range(quantity, int(number))


def _check_range(quantity: str, value: int) -> int:
    """Reject values that do not fit in a Kubernetes quantity."""
    if not _INT64_MIN <= value <= _INT64_MAX:
        raise QuantityParseError(f'Quantity "{quantity}" is out of range')
    return value


def to_bytes(quantity: str) -> int:
    """Convert a Kubernetes storage or memory quantity to bytes.

    Binary suffixes (``Ki`` through ``Ei``) scale by powers of 1024, decimal
    suffixes (``k`` through ``E``) by powers of 1000, and ``m`` denotes
    thousandths, rounded down. A quantity without an alphabetic suffix is a
    plain byte count. Fractional values are not supported.

    Parameters
    ----------
    quantity
        Quantity as found in a Kubernetes object, such as ``5Gi``.

    Returns
    -------
    int
        Equivalent number of bytes.

    Raises
    ------
    InvalidUnitError
        Raised if the quantity ends in an unrecognized unit.
    QuantityParseError
        Raised if the numeric part is not an integer or the result does not
        fit in a signed 64-bit integer.
    """
    match = _SUFFIX_REGEX.search(quantity)
    if not match:
        return _parse_int(quantity, quantity)
    unit = match.group(0)
    number = quantity[: match.start()]
    if unit == "m":
        return _parse_int(quantity, number) // 1000
    if unit not in _MULTIPLIERS:
        raise InvalidUnitError(quantity, unit)
    amount = _parse_int(quantity, number)
    return _check_range(quantity, amount * _MULTIPLIERS[unit])


def to_milli_cpus(quantity: str) -> int:
    """Convert a Kubernetes CPU quantity to millicores.

    Parameters
    ----------
    quantity
        CPU quantity, either in millicores (``1536m``) or whole cores
        (``4``).

    Returns
    -------
    int
        Equivalent number of millicores.

    Raises
    ------
    QuantityParseError
        Raised if the quantity is not an integer with an optional ``m``
        suffix, or is out of range.
    """
    if quantity.endswith("m"):
        return _parse_int(quantity, quantity.removesuffix("m"))
    cores = _parse_int(quantity, quantity)
    return _check_range(quantity, cores * 1000)
