"""Helper functions to validate input data and produce error messages."""

from __future__ import annotations

import math
import numbers
from collections.abc import Iterable
from typing import Any

from lensremap.errors import ConfigurationError


def convert_iterable_to_string_of_types(iterable_var: Iterable[Any]) -> str:
    """Convert an iterable of values to a string of their types.

    Parameters
    ----------
    iterable_var : iterable
        An iterable of variables, e.g. a list of floats.

    Returns
    -------
    str
        String representation of the types in `iterable_var`. One per item
        in `iterable_var`. Separated by commas.

    """
    types = [str(type(var_i)) for var_i in iterable_var]
    return ", ".join(types)


def is_single_number(val: object) -> bool:
    """Check whether a variable is a real number (``bool`` excluded)."""
    return isinstance(val, numbers.Real) and not isinstance(val, bool)


def is_iterable_of_numbers(iterable_var: Any) -> bool:
    """Check whether `iterable_var` contains only real numbers.

    Parameters
    ----------
    iterable_var : iterable
        An iterable of items, e.g. a distortion coefficient vector.

    Returns
    -------
    bool
        Whether `iterable_var` only contains numbers.
        If `iterable_var` was empty, ``True`` will be returned.

    """
    if isinstance(iterable_var, (str, bytes)):
        return False
    try:
        items = list(iterable_var)
    except TypeError:
        return False
    return all(is_single_number(item) or hasattr(item, "__float__") for item in items)


def assert_is_iterable_of_numbers(iterable_var: Any, name: str) -> None:
    """Raise if `iterable_var` is not an iterable of numbers.

    Parameters
    ----------
    iterable_var : iterable
        See :func:`~lensremap.validation.is_iterable_of_numbers`.

    name : str
        Name of the value, used in the error message.

    """
    if is_iterable_of_numbers(iterable_var):
        return
    if isinstance(iterable_var, (str, bytes)) or not isinstance(iterable_var, Iterable):
        raise ConfigurationError(
            f"Expected '{name}' to be an iterable of numbers. "
            f"Got instead a single instance of: {type(iterable_var).__name__}."
        )
    raise ConfigurationError(
        f"Expected '{name}' to be an iterable of numbers. "
        f"Got an iterable of types: {convert_iterable_to_string_of_types(iterable_var)}."
    )


def assert_finite(value: object, name: str) -> float:
    """Return `value` as ``float``, raising if it is not a finite number."""
    if not is_single_number(value) and not hasattr(value, "__float__"):
        raise ConfigurationError(
            f"Expected '{name}' to be a number, got {type(value).__name__}."
        )
    as_float = float(value)  # type: ignore[arg-type]
    if not math.isfinite(as_float):
        raise ConfigurationError(f"Expected '{name}' to be finite, got {as_float}.")
    return as_float


def assert_in_range(value: float, name: str, low: float, high: float) -> None:
    """Raise if `value` is outside of the closed interval ``[low, high]``."""
    if not low <= value <= high:
        raise ConfigurationError(
            f"Expected '{name}' to be in the interval [{low}, {high}], got {value}."
        )


def assert_positive_int(value: object, name: str) -> int:
    """Return `value` as ``int``, raising unless it is an integer ``>= 1``."""
    if isinstance(value, bool) or not isinstance(value, numbers.Integral):
        raise ConfigurationError(
            f"Expected '{name}' to be an integer, got {type(value).__name__}."
        )
    if value < 1:
        raise ConfigurationError(f"Expected '{name}' to be >= 1, got {value}.")
    return int(value)


__all__ = [
    "assert_finite",
    "assert_in_range",
    "assert_is_iterable_of_numbers",
    "assert_positive_int",
    "convert_iterable_to_string_of_types",
    "is_iterable_of_numbers",
    "is_single_number",
]
