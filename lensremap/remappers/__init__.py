"""Frame remapping strategies behind one :class:`Remapper` protocol."""

from __future__ import annotations

from .base import FlowReturn, IdentityRemapper, RemapStats, Remapper
from .hardware import HardwareRemapper
from .software import SoftwareRemapper

__all__ = [
    "FlowReturn",
    "HardwareRemapper",
    "IdentityRemapper",
    "RemapStats",
    "Remapper",
    "SoftwareRemapper",
]
