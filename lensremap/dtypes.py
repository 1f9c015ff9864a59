"""Functions to gate the numpy dtypes of frames and maps."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import numpy as np
from numpy.typing import NDArray

_UINT8_DTYPE = np.dtype("uint8")
_FLOAT32_DTYPE = np.dtype("float32")

# Cache of parsed "uint8 float32"-style strings.
_DTYPE_STR_TO_DTYPES_CACHE: dict[str, frozenset[np.dtype[Any]]] = {}


def normalize_dtype(dtype: object) -> np.dtype[Any]:
    """Convert dtype-like, array or numpy scalar to a numpy dtype."""
    assert not isinstance(dtype, list), "Expected a single dtype-like, got a list instead."
    if isinstance(dtype, (np.ndarray, np.generic)):
        return dtype.dtype
    return np.dtype(dtype)


def normalize_dtypes(dtypes: object) -> list[np.dtype[Any]]:
    """Normalize an array, dtype or iterable of either to a list of dtypes."""
    if isinstance(dtypes, (np.ndarray, np.generic, np.dtype, str, type)):
        return [normalize_dtype(dtypes)]
    if isinstance(dtypes, Iterable):
        return [normalize_dtype(dtype) for dtype in dtypes]
    return [normalize_dtype(dtypes)]


def _convert_dtype_strs_to_types(dtypes: str) -> frozenset[np.dtype[Any]]:
    cached = _DTYPE_STR_TO_DTYPES_CACHE.get(dtypes)
    if cached is None:
        cached = frozenset(np.dtype(name) for name in dtypes.split())
        _DTYPE_STR_TO_DTYPES_CACHE[dtypes] = cached
    return cached


def _dtype_names_to_string(dtypes: Iterable[np.dtype[Any]]) -> str:
    return ", ".join(sorted(np.dtype(dt).name for dt in dtypes))


def gate_dtypes_strs(
    dtypes: NDArray[Any] | Iterable[NDArray[Any]] | Iterable[np.dtype[Any]],
    allowed: str,
    owner: str | None = None,
) -> None:
    """Verify that input dtypes are among the allowed ones.

    Parameters
    ----------
    dtypes : numpy.ndarray or iterable of numpy.ndarray or iterable of numpy.dtype
        One or more input dtypes to verify.

    allowed : str
        Names of allowed dtypes, separated by single spaces.

    owner : None or str, optional
        Name of the component doing the gating. Used to improve error
        messages.

    Raises
    ------
    ValueError
        If any dtype is not in `allowed`.

    """
    allowed_set = _convert_dtype_strs_to_types(allowed)
    normalized = normalize_dtypes(dtypes)
    invalid = {dt for dt in normalized if dt not in allowed_set}
    if invalid:
        where = f" in {owner}" if owner else ""
        raise ValueError(
            f"Got dtype(s) {_dtype_names_to_string(invalid)}{where}, "
            f"but only the following dtypes are supported: "
            f"{_dtype_names_to_string(allowed_set)}."
        )


def allow_only_uint8(
    dtypes: NDArray[Any] | Iterable[NDArray[Any]] | Iterable[np.dtype[Any]],
    owner: str | None = None,
) -> None:
    """Verify that input dtypes are uint8."""
    gate_dtypes_strs(dtypes, allowed="uint8", owner=owner)


def as_float32_map(arr: NDArray[Any]) -> NDArray[np.float32]:
    """Return a C-contiguous float32 version of a coordinate map.

    No copy is made if `arr` already satisfies both requirements.

    """
    return np.ascontiguousarray(arr, dtype=_FLOAT32_DTYPE)


__all__ = [
    "allow_only_uint8",
    "as_float32_map",
    "gate_dtypes_strs",
    "normalize_dtype",
    "normalize_dtypes",
]
