"""Pinhole camera model with Brown-Conrady lens distortion.

The model holds the intrinsic matrix entries ``fx, fy, cx, cy`` and the
radial (``k1, k2, k3``) and tangential (``p1, p2``) distortion coefficients.
A model with ``fx <= 0`` or ``fy <= 0`` is *uncalibrated*: it is valid, but
selects bypass mode, i.e. frames pass through unmodified.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass

import numpy as np

from lensremap.errors import InvalidCameraModelError
from lensremap.validation import (
    assert_finite,
    assert_in_range,
    assert_is_iterable_of_numbers,
)

# Accepted interval of every distortion coefficient.
DISTORTION_COEFF_RANGE: tuple[float, float] = (-10.0, 10.0)

_INTRINSIC_NAMES = ("fx", "fy", "cx", "cy")
_DISTORTION_NAMES = ("k1", "k2", "p1", "p2", "k3")


@dataclass(frozen=True)
class CameraModel:
    """Camera intrinsics plus radial/tangential distortion coefficients.

    Attributes
    ----------
    fx, fy : float
        Focal lengths in pixels. Both must be ``> 0`` for correction to be
        active; ``0`` means "uncalibrated".
    cx, cy : float
        Principal point in pixels.
    k1, k2, k3 : float
        Radial distortion coefficients.
    p1, p2 : float
        Tangential distortion coefficients.
    """

    fx: float = 0.0
    fy: float = 0.0
    cx: float = 0.0
    cy: float = 0.0
    k1: float = 0.0
    k2: float = 0.0
    k3: float = 0.0
    p1: float = 0.0
    p2: float = 0.0

    @property
    def is_calibrated(self) -> bool:
        """Whether the focal lengths allow an undistortion map to be derived."""
        return self.fx > 0 and self.fy > 0

    @property
    def has_distortion(self) -> bool:
        return any(getattr(self, name) != 0.0 for name in _DISTORTION_NAMES)

    def validate(self) -> CameraModel:
        """Check all parameters and return ``self``.

        Raises
        ------
        lensremap.errors.InvalidCameraModelError
            If a value is not a finite number, a focal length is negative or
            a distortion coefficient lies outside of ``[-10, 10]``.

        """
        try:
            for name in _INTRINSIC_NAMES + _DISTORTION_NAMES:
                assert_finite(getattr(self, name), name)
            for name in ("fx", "fy"):
                value = float(getattr(self, name))
                if value < 0:
                    raise InvalidCameraModelError(
                        f"Expected '{name}' to be >= 0 (0 meaning uncalibrated), got {value}."
                    )
            low, high = DISTORTION_COEFF_RANGE
            for name in _DISTORTION_NAMES:
                assert_in_range(float(getattr(self, name)), name, low, high)
        except InvalidCameraModelError:
            raise
        except ValueError as exc:
            raise InvalidCameraModelError(str(exc)) from exc
        return self

    def camera_matrix(self) -> np.ndarray:
        """Return the 3x3 float64 intrinsic matrix."""
        return np.array(
            [
                [self.fx, 0.0, self.cx],
                [0.0, self.fy, self.cy],
                [0.0, 0.0, 1.0],
            ],
            dtype=np.float64,
        )

    def dist_coeffs(self) -> np.ndarray:
        """Return the coefficients in OpenCV order ``(k1, k2, p1, p2, k3)``."""
        return np.array(
            [[self.k1, self.k2, self.p1, self.p2, self.k3]],
            dtype=np.float64,
        )

    def scaled(self, sx: float, sy: float | None = None) -> CameraModel:
        """Return the model for a frame rescaled by ``(sx, sy)``.

        Distortion coefficients act on normalized coordinates and are
        therefore unchanged.

        """
        sy = sx if sy is None else sy
        return dataclasses.replace(
            self,
            fx=self.fx * sx,
            fy=self.fy * sy,
            cx=self.cx * sx,
            cy=self.cy * sy,
        )

    @classmethod
    def from_matrix(
        cls,
        camera_matrix: np.ndarray | list[list[float]],
        dist_coeffs: np.ndarray | list[float] | None = None,
    ) -> CameraModel:
        """Build a model from an intrinsic matrix and an OpenCV coefficient vector.

        Parameters
        ----------
        camera_matrix : array-like
            ``3x3`` intrinsic matrix.

        dist_coeffs : None or array-like, optional
            Four or five coefficients ``(k1, k2, p1, p2[, k3])``. Longer
            vectors (rational/thin-prism models) are rejected.

        Returns
        -------
        CameraModel
            Validated camera model.

        """
        mat = np.asarray(camera_matrix, dtype=np.float64)
        if mat.shape != (3, 3):
            raise InvalidCameraModelError(
                f"Expected camera matrix of shape (3, 3), got {mat.shape}."
            )

        coeffs: list[float] = []
        if dist_coeffs is not None:
            flat = np.asarray(dist_coeffs, dtype=np.float64).ravel()
            assert_is_iterable_of_numbers(flat.tolist(), "dist_coeffs")
            if flat.size not in (0, 4, 5):
                raise InvalidCameraModelError(
                    "Expected 4 or 5 distortion coefficients (k1, k2, p1, p2[, k3]), "
                    f"got {flat.size}."
                )
            coeffs = [float(v) for v in flat]
        coeffs += [0.0] * (5 - len(coeffs))
        k1, k2, p1, p2, k3 = coeffs

        return cls(
            fx=float(mat[0, 0]),
            fy=float(mat[1, 1]),
            cx=float(mat[0, 2]),
            cy=float(mat[1, 2]),
            k1=k1,
            k2=k2,
            k3=k3,
            p1=p1,
            p2=p2,
        ).validate()


__all__ = ["DISTORTION_COEFF_RANGE", "CameraModel"]
