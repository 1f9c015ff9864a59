"""Dense undistortion map generation.

For every destination pixel ``(u, v)`` the dense map stores the source pixel
``(map_x[v, u], map_y[v, u])`` that has to be sampled to undo the lens
distortion. Values outside of the image are valid and left to the sampling
policy of the remapper.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

import cv2
import numpy as np

from lensremap.camera import CameraModel
from lensremap.dtypes import as_float32_map
from lensremap.errors import ConfigurationError
from lensremap.validation import assert_positive_int

_LOGGER = logging.getLogger(__name__)

MapLibrary = Literal["cv2", "numpy"]


@dataclass(frozen=True, eq=False)
class DenseMap:
    """Per-pixel source coordinates for a ``width x height`` frame.

    Attributes
    ----------
    map_x, map_y : numpy.ndarray
        C-contiguous ``float32`` arrays of shape ``(height, width)``. Both
        are flagged read-only. Writeable inputs are copied first, so the
        arrays passed in stay writeable.
    """

    map_x: np.ndarray
    map_y: np.ndarray

    def __post_init__(self) -> None:
        if self.map_x.shape != self.map_y.shape or self.map_x.ndim != 2:
            raise ValueError(
                "Expected map_x and map_y to be 2D arrays of identical shape, "
                f"got {self.map_x.shape} and {self.map_y.shape}."
            )
        for name in ("map_x", "map_y"):
            arr = getattr(self, name)
            if arr.dtype != np.float32:
                raise ValueError(f"Expected float32 maps, got dtype {arr.dtype.name}.")
            if arr.flags.writeable:
                # Never freeze an array the caller still holds.
                arr = np.array(arr, copy=True)
                object.__setattr__(self, name, arr)
            arr.setflags(write=False)

    @property
    def height(self) -> int:
        return int(self.map_x.shape[0])

    @property
    def width(self) -> int:
        return int(self.map_x.shape[1])

    @property
    def shape(self) -> tuple[int, int]:
        return self.height, self.width

    def matches(self, width: int, height: int) -> bool:
        return self.width == width and self.height == height

    def half_resolution(self) -> DenseMap:
        """Return the map for a plane subsampled by two in both directions.

        Used for the interleaved chroma plane of NV12 frames. Chroma pixel
        ``(uc, vc)`` reads from the luma-space source coordinate of
        ``(2 * uc, 2 * vc)``, scaled down by two.

        """
        map_x = self.map_x[::2, ::2] * np.float32(0.5)
        map_y = self.map_y[::2, ::2] * np.float32(0.5)
        return DenseMap(as_float32_map(map_x), as_float32_map(map_y))

    @classmethod
    def identity(cls, width: int, height: int) -> DenseMap:
        """Return the map that leaves every pixel in place."""
        map_x, map_y = np.meshgrid(
            np.arange(width, dtype=np.float32),
            np.arange(height, dtype=np.float32),
        )
        return cls(as_float32_map(map_x), as_float32_map(map_y))


def _generate_cv2(camera: CameraModel, width: int, height: int) -> tuple[np.ndarray, np.ndarray]:
    cam_mat = camera.camera_matrix()
    map_x, map_y = cv2.initUndistortRectifyMap(
        cam_mat,
        camera.dist_coeffs(),
        None,
        cam_mat,
        (int(width), int(height)),
        cv2.CV_32FC1,
    )
    return map_x, map_y


def _generate_numpy(camera: CameraModel, width: int, height: int) -> tuple[np.ndarray, np.ndarray]:
    # Back-project, distort in normalized space, re-project.
    u, v = np.meshgrid(
        np.arange(width, dtype=np.float64),
        np.arange(height, dtype=np.float64),
    )
    x = (u - camera.cx) / camera.fx
    y = (v - camera.cy) / camera.fy

    x2 = x * x
    y2 = y * y
    xy = x * y
    r2 = x2 + y2
    radial = 1.0 + r2 * (camera.k1 + r2 * (camera.k2 + r2 * camera.k3))

    x_d = x * radial + 2.0 * camera.p1 * xy + camera.p2 * (r2 + 2.0 * x2)
    y_d = y * radial + camera.p1 * (r2 + 2.0 * y2) + 2.0 * camera.p2 * xy

    map_x = camera.fx * x_d + camera.cx
    map_y = camera.fy * y_d + camera.cy
    return map_x, map_y


_GENERATORS = {
    "cv2": _generate_cv2,
    "numpy": _generate_numpy,
}


def generate_dense_map(
    camera: CameraModel,
    width: int,
    height: int,
    *,
    library: MapLibrary = "cv2",
) -> DenseMap | None:
    """Derive the dense undistortion map for a frame size.

    Parameters
    ----------
    camera : lensremap.camera.CameraModel
        Intrinsics and distortion coefficients. It is validated first.

    width, height : int
        Frame size in pixels. The map has shape ``(height, width)``.

    library : {'cv2', 'numpy'}, optional
        ``cv2`` uses ``cv2.initUndistortRectifyMap``, ``numpy`` evaluates the
        distortion model directly. Both yield the same field up to float32
        rounding.

    Returns
    -------
    DenseMap or None
        ``None`` if the camera is uncalibrated (``fx <= 0`` or ``fy <= 0``),
        which selects bypass mode. The result is deterministic for
        identical inputs.

    """
    width = assert_positive_int(width, "width")
    height = assert_positive_int(height, "height")
    camera.validate()

    if not camera.is_calibrated:
        _LOGGER.debug("Camera is uncalibrated, no dense map generated for %dx%d.", width, height)
        return None

    generator = _GENERATORS.get(library)
    if generator is None:
        raise ConfigurationError(
            f"Unknown map library {library!r}, expected one of {sorted(_GENERATORS)}."
        )

    map_x, map_y = generator(camera, width, height)
    return DenseMap(as_float32_map(map_x), as_float32_map(map_y))


__all__ = ["DenseMap", "MapLibrary", "generate_dense_map"]
