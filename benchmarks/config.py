"""Benchmark configuration (filter setups + frame geometries)."""

from __future__ import annotations

from collections.abc import Callable

from lensremap import CameraModel, UndistortConfig

# (width, height, pixel format)
BENCHMARK_CONFIGS: list[tuple[int, int, str]] = [
    (640, 480, "BGR"),
    (1280, 720, "BGR"),
    (1280, 720, "NV12"),
    (1920, 1080, "NV12"),
]


def _camera(width: int, height: int) -> CameraModel:
    # Same lens for every size: focal length scales with the frame width.
    scale = width / 1280.0
    return CameraModel(fx=800, fy=800, cx=640, cy=360, k1=-0.2, k2=0.1).scaled(
        scale, height / 720.0
    )


# NOTE: Keep these factories side-effect free. The runner calls them once per
# geometry and expects a fresh configuration each time.
CASES: dict[str, Callable[[int, int], UndistortConfig]] = {
    "bypass": lambda w, h: UndistortConfig(silent=True),
    "software_cv2": lambda w, h: UndistortConfig(camera=_camera(w, h), silent=True),
    "software_scipy": lambda w, h: UndistortConfig(
        camera=_camera(w, h), remap_library="scipy", silent=True
    ),
    "hardware_cpu": lambda w, h: UndistortConfig(
        camera=_camera(w, h), backend="hardware", accelerator="cpu", silent=True
    ),
    "hardware_cuda": lambda w, h: UndistortConfig(
        camera=_camera(w, h), backend="hardware", accelerator="cuda", silent=True
    ),
}
