"""Typed configuration of the undistortion filter.

:class:`UndistortConfig` replaces a property table addressed by name. All
fields are set together, the object is immutable, and a new configuration
only takes effect at the next geometry negotiation
(:meth:`lensremap.filter.UndistortFilter.set_info`).
"""

from __future__ import annotations

import dataclasses
import json
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from lensremap.camera import CameraModel
from lensremap.errors import ConfigurationError
from lensremap.validation import assert_finite, assert_positive_int

Backend = Literal["software", "hardware"]
Interpolation = Literal["linear", "nearest"]
RemapLibrary = Literal["cv2", "scipy"]

ENV_BACKEND = "LENSREMAP_BACKEND"
ENV_ACCELERATOR = "LENSREMAP_ACCELERATOR"

_CAMERA_KEYS = frozenset(f.name for f in dataclasses.fields(CameraModel))
_BACKENDS = ("software", "hardware")
_INTERPOLATIONS = ("linear", "nearest")
_BORDER_MODES = ("edge", "constant")
_REMAP_LIBRARIES = ("cv2", "scipy")
_MAP_LIBRARIES = ("cv2", "numpy")


def _check_choice(value: str, name: str, choices: tuple[str, ...]) -> None:
    if value not in choices:
        raise ConfigurationError(f"Expected '{name}' to be one of {list(choices)}, got {value!r}.")


@dataclass(frozen=True)
class UndistortConfig:
    """Complete configuration of one filter instance.

    Attributes
    ----------
    camera : CameraModel
        Intrinsics and distortion coefficients. An uncalibrated model
        (``fx`` or ``fy`` equal to ``0``) selects bypass mode.
    silent : bool
        Suppress informational log messages.
    backend : {'software', 'hardware'}
        ``software`` samples frames through the dense map,
        ``hardware`` drives a mesh lookup-table engine.
    accelerator : str
        Engine used by the hardware backend, see
        :func:`lensremap.accelerators.list_accelerators`.
    step_x, step_y : int
        Mesh sampling steps of the hardware backend.
    interpolation : {'linear', 'nearest'}
        Software backend sampling.
    border_mode : {'edge', 'constant'}
        Handling of source coordinates outside of the frame.
    cval : int
        Fill value for ``border_mode='constant'``.
    remap_library : {'cv2', 'scipy'}
        Library the software backend samples with.
    map_library : {'cv2', 'numpy'}
        Library the dense map is generated with.
    """

    camera: CameraModel = field(default_factory=CameraModel)
    silent: bool = False
    backend: Backend = "software"
    accelerator: str = "cpu"
    step_x: int = 16
    step_y: int = 8
    interpolation: Interpolation = "linear"
    border_mode: str = "edge"
    cval: int = 0
    remap_library: RemapLibrary = "cv2"
    map_library: str = "cv2"

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        self.camera.validate()
        _check_choice(self.backend, "backend", _BACKENDS)
        _check_choice(self.interpolation, "interpolation", _INTERPOLATIONS)
        _check_choice(self.border_mode, "border_mode", _BORDER_MODES)
        _check_choice(self.remap_library, "remap_library", _REMAP_LIBRARIES)
        _check_choice(self.map_library, "map_library", _MAP_LIBRARIES)
        assert_positive_int(self.step_x, "step_x")
        assert_positive_int(self.step_y, "step_y")
        if not 0 <= int(self.cval) <= 255:
            raise ConfigurationError(f"Expected 'cval' in [0, 255], got {self.cval}.")

    def replace(self, **changes: Any) -> UndistortConfig:
        """Return a copy with `changes` applied.

        Camera parameters may be passed by their flat names (``fx=...``).

        """
        camera_changes = {
            k: assert_finite(changes.pop(k), k) for k in list(changes) if k in _CAMERA_KEYS
        }
        camera = changes.pop("camera", self.camera)
        if camera_changes:
            camera = dataclasses.replace(camera, **camera_changes)
        unknown = set(changes) - {f.name for f in dataclasses.fields(self)}
        if unknown:
            raise ConfigurationError(f"Unknown configuration key(s): {sorted(unknown)}.")
        return dataclasses.replace(self, camera=camera, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Return the flat ``{name: value}`` form accepted by :meth:`from_mapping`."""
        data = dataclasses.asdict(self)
        data.update(data.pop("camera"))
        return data

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> UndistortConfig:
        """Build a configuration from flat keys such as ``{"fx": 800, "k1": -0.2}``."""
        return cls().replace(**dict(data))

    def with_env_overrides(self, environ: Mapping[str, str] | None = None) -> UndistortConfig:
        """Apply ``LENSREMAP_BACKEND`` / ``LENSREMAP_ACCELERATOR`` if they are set.

        :meth:`lensremap.filter.UndistortFilter.set_info` calls this on every
        negotiation.

        """
        environ = os.environ if environ is None else environ
        changes: dict[str, Any] = {}
        backend = environ.get(ENV_BACKEND, "").strip().lower()
        if backend:
            changes["backend"] = backend
        accelerator = environ.get(ENV_ACCELERATOR, "").strip().lower()
        if accelerator:
            changes["accelerator"] = accelerator
        return self.replace(**changes) if changes else self


def load_config(path: str | Path) -> UndistortConfig:
    """Read a configuration from a JSON file of flat keys.

    A nested ``"camera_matrix"`` (3x3) plus ``"dist_coeffs"`` pair, as
    written by most calibration tools, is accepted in place of the
    individual camera keys.

    """
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Invalid JSON in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"Expected a JSON object in {path}, got {type(data).__name__}.")

    if "camera_matrix" in data:
        camera = CameraModel.from_matrix(data.pop("camera_matrix"), data.pop("dist_coeffs", None))
        for key, value in dataclasses.asdict(camera).items():
            data.setdefault(key, value)
    return UndistortConfig.from_mapping(data)


__all__ = [
    "ENV_ACCELERATOR",
    "ENV_BACKEND",
    "Backend",
    "Interpolation",
    "RemapLibrary",
    "UndistortConfig",
    "load_config",
]
