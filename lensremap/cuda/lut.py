"""Mesh lookup-table engine on CUDA devices via CuPy.

The mesh is expanded to per-pixel coordinates once per mesh and kept on the
device. Each frame plane is uploaded, sampled bilinearly with
``cupyx.scipy.ndimage.map_coordinates`` and downloaded into the
destination frame.
"""
from __future__ import annotations

import importlib
import logging
from typing import Any

from lensremap.accelerators import (
    AcceleratorCaps,
    AcceleratorContext,
    LutInitParams,
    LutTask,
    check_task,
)
from lensremap.errors import (
    AcceleratorInitError,
    AcceleratorRuntimeError,
    DependencyMissingError,
)
from lensremap.frames import PixelFormat
from lensremap.mesh import Mesh, expand_mesh
from ._core import cp, require, to_device, to_host

_LOGGER = logging.getLogger(__name__)

# Border names to cupyx.scipy.ndimage modes.
_BORDER_MODES_NDIMAGE = {
    "edge": "nearest",
    "constant": "constant",
}


def _ndimage() -> Any:
    try:
        return importlib.import_module("cupyx.scipy.ndimage")
    except Exception as exc:  # pragma: no cover
        raise DependencyMissingError(
            "cupyx.scipy.ndimage is required for the cuda accelerator. "
            "Install a CuPy build that includes cupyx."
        ) from exc


def _to_uint8(y: Any) -> Any:
    y = cp.floor(y + 0.5)
    y = cp.clip(y, 0.0, 255.0)
    return y.astype(cp.uint8)


class _CudaContext(AcceleratorContext):
    def __init__(self, params: LutInitParams) -> None:
        super().__init__(params)
        self.mesh: Mesh | None = None
        self.plane_coords: list[Any] = []


class CudaMeshLut:
    """Mesh lookup-table engine on the first CUDA device."""

    name = "cuda"

    def __init__(self, caps: AcceleratorCaps | None = None) -> None:
        require()
        self._ndimage = _ndimage()
        self._caps = caps if caps is not None else AcceleratorCaps(
            formats=frozenset({PixelFormat.NV12, PixelFormat.BGR, PixelFormat.RGB})
        )

    @property
    def capabilities(self) -> AcceleratorCaps:
        return self._caps

    def init(self, params: LutInitParams) -> AcceleratorContext:
        try:
            self._caps.check_format(params.src.format)
        except Exception as exc:
            raise AcceleratorInitError(str(exc)) from exc
        if params.border_mode not in _BORDER_MODES_NDIMAGE:
            raise AcceleratorInitError(f"Unsupported border mode {params.border_mode!r}.")
        return _CudaContext(params)

    def _plane_coords(self, context: _CudaContext, mesh: Mesh) -> list[Any]:
        if context.mesh is not mesh:
            dense = expand_mesh(mesh)
            maps = [dense]
            if not context.params.src.format.is_packed:
                maps.append(dense.half_resolution())
            # map_coordinates wants (row, col) coordinate planes.
            context.plane_coords = [
                cp.stack([to_device(m.map_y), to_device(m.map_x)]) for m in maps
            ]
            context.mesh = mesh
        return context.plane_coords

    def _sample(self, image: Any, coords: Any, params: LutInitParams) -> Any:
        mode = _BORDER_MODES_NDIMAGE[params.border_mode]
        x = image.astype(cp.float32, copy=False)
        if x.ndim == 2:
            y = self._ndimage.map_coordinates(
                x, coords, order=1, mode=mode, cval=float(params.cval), prefilter=False
            )
        else:
            y = cp.stack(
                [
                    self._ndimage.map_coordinates(
                        x[..., c],
                        coords,
                        order=1,
                        mode=mode,
                        cval=float(params.cval),
                        prefilter=False,
                    )
                    for c in range(x.shape[2])
                ],
                axis=-1,
            )
        return _to_uint8(y)

    def run(self, context: AcceleratorContext, task: LutTask) -> None:
        assert isinstance(context, _CudaContext), (
            f"Expected a context created by {type(self).__name__}, got {type(context).__name__}."
        )
        check_task(context, task)
        try:
            coords = self._plane_coords(context, task.mesh)
            for src_img, dst_img, plane_coords in zip(task.src.images(), task.dst.images(), coords):
                result = self._sample(to_device(src_img), plane_coords, context.params)
                to_host(result, out=dst_img)
        except (
            cp.cuda.runtime.CUDARuntimeError,
            cp.cuda.driver.CUDADriverError,
            cp.cuda.memory.OutOfMemoryError,
        ) as exc:
            raise AcceleratorRuntimeError(f"CUDA remap failed: {exc}") from exc
        context.tasks_run += 1

    def deinit(self, context: AcceleratorContext) -> None:
        if isinstance(context, _CudaContext):
            context.mesh = None
            context.plane_coords = []
        context.alive = False


__all__ = ["CudaMeshLut"]
