"""Benchmarking utilities for lensremap.

This package is kept separate from the main library code. It is meant to be
executed from the repository root, e.g.:

    python -m benchmarks.runner --platform cpu
"""

from __future__ import annotations

__all__ = []
