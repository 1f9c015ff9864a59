"""CUDA lookup-table engine using CuPy.

Notes
-----
- This engine requires a CUDA-compatible GPU and a CuPy installation
  (``pip install lensremap[cuda]``).
- Without CuPy, importing this package still works; constructing
  :class:`CudaMeshLut` raises
  :class:`~lensremap.errors.DependencyMissingError`.
"""
from __future__ import annotations

from ._core import CUDA_AVAILABLE, cp, is_available, require
from .lut import CudaMeshLut

__all__ = [
    "CUDA_AVAILABLE",
    "CudaMeshLut",
    "cp",
    "is_available",
    "require",
]
