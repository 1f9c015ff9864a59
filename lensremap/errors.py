"""Custom exceptions for lensremap."""

from __future__ import annotations


class LensRemapError(Exception):
    """Base class for lensremap exceptions."""


class DependencyMissingError(ImportError, LensRemapError):
    """Raised when an optional dependency is missing."""


class BackendUnavailableError(RuntimeError, LensRemapError):
    """Raised when a backend is installed but not usable on this system."""


class BackendCapabilityError(RuntimeError, LensRemapError):
    """Raised when a backend lacks a required capability."""


class ConfigurationError(ValueError, LensRemapError):
    """Raised when a configuration value or key is invalid."""


class InvalidCameraModelError(ConfigurationError):
    """Raised when camera intrinsics or distortion coefficients are invalid."""


class AllocationError(MemoryError, LensRemapError):
    """Raised when a scratch, aligned or mesh buffer cannot be allocated."""


class AcceleratorInitError(RuntimeError, LensRemapError):
    """Raised when an accelerator context cannot be created."""


class AcceleratorRuntimeError(RuntimeError, LensRemapError):
    """Raised when a single lookup-table transform fails."""


class AcceleratorContextLostError(AcceleratorRuntimeError):
    """Raised when the accelerator context is no longer usable."""


class GeometryMismatchError(ValueError, LensRemapError):
    """Raised when a frame does not match the negotiated geometry."""


__all__ = [
    "AcceleratorContextLostError",
    "AcceleratorInitError",
    "AcceleratorRuntimeError",
    "AllocationError",
    "BackendCapabilityError",
    "BackendUnavailableError",
    "ConfigurationError",
    "DependencyMissingError",
    "GeometryMismatchError",
    "InvalidCameraModelError",
    "LensRemapError",
]
