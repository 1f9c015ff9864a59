"""CuPy detection and host/device transfer helpers for the CUDA engine.

CuPy is optional. It is imported dynamically so that the rest of lensremap
imports and type-checks on machines without a CUDA toolkit.
"""
from __future__ import annotations

import importlib
from typing import Any, TypeGuard

import numpy as np

from lensremap.errors import BackendUnavailableError, DependencyMissingError

try:
    cp: Any = importlib.import_module("cupy")
    CUDA_AVAILABLE = True
    _CUDA_IMPORT_ERROR: Exception | None = None
except Exception as exc:
    CUDA_AVAILABLE = False
    cp = None
    _CUDA_IMPORT_ERROR = exc


def is_available() -> bool:
    """Check whether CuPy is importable and a CUDA device is accessible.

    Returns
    -------
    bool
        True if frames can be remapped on the GPU, False otherwise.
    """
    if not CUDA_AVAILABLE or cp is None:
        return False
    try:
        _ = cp.cuda.Device(0).compute_capability
    except Exception:
        return False
    return True


def require() -> None:
    """Raise an error if the CUDA engine cannot be used.

    Raises
    ------
    DependencyMissingError
        If CuPy is not installed.
    BackendUnavailableError
        If CuPy is installed but no CUDA device is accessible.
    """
    if not CUDA_AVAILABLE or cp is None:
        raise DependencyMissingError(
            "The cuda accelerator needs `cupy`, which could not be imported. "
            "Install the extra matching your CUDA runtime, e.g. `pip install lensremap[cuda]`."
        ) from _CUDA_IMPORT_ERROR

    try:
        _ = cp.cuda.Device(0).compute_capability
    except Exception as exc:
        raise BackendUnavailableError(
            "CuPy is installed but no CUDA device is accessible."
        ) from exc


def is_cupy_array(arr: object) -> TypeGuard[Any]:
    """Return True if ``arr`` is a ``cupy.ndarray``."""
    if not CUDA_AVAILABLE or cp is None:
        return False
    return isinstance(arr, cp.ndarray)


def to_device(arr: np.ndarray) -> Any:
    """Upload a host array, making it contiguous first (strided plane views)."""
    require()
    if is_cupy_array(arr):
        return arr
    return cp.asarray(np.ascontiguousarray(arr))


def to_host(arr: object, out: np.ndarray | None = None) -> np.ndarray:
    """Download a device array, optionally into the (possibly strided) host view `out`."""
    host = cp.asnumpy(arr) if is_cupy_array(arr) else np.asarray(arr)
    if out is None:
        return host
    np.copyto(out, host.reshape(out.shape))
    return out


__all__ = [
    "CUDA_AVAILABLE",
    "cp",
    "is_available",
    "is_cupy_array",
    "require",
    "to_device",
    "to_host",
]
