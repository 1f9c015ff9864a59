"""Mesh lookup-table engines.

A lookup-table engine remaps a frame from a coarse :class:`~lensremap.mesh.Mesh`
instead of a dense map. The API follows typical remap hardware libraries:
create a context for a source/destination geometry, run one task per frame,
destroy the context.

Two engines are provided:

- ``cpu``: reference engine built on OpenCV. It expands the mesh into a
  dense field once per mesh (the bilinear node interpolation the hardware
  performs) and samples frames with ``cv2.remap``.
- ``cuda``: the same contract on an NVIDIA GPU via CuPy, see
  :mod:`lensremap.cuda`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Literal, Protocol

import cv2
import numpy as np

from lensremap.buffers import DestinationLayout, align_up
from lensremap.errors import (
    AcceleratorContextLostError,
    AcceleratorInitError,
    AcceleratorRuntimeError,
    BackendCapabilityError,
    ConfigurationError,
)
from lensremap.frames import FrameBuffer, PixelFormat, VideoInfo
from lensremap.maps import DenseMap
from lensremap.mesh import Mesh, MeshConstraints, expand_mesh

_LOGGER = logging.getLogger(__name__)

BorderMode = Literal["edge", "constant"]

_BORDER_MODES_CV2 = {
    "edge": cv2.BORDER_REPLICATE,
    "constant": cv2.BORDER_CONSTANT,
}


@dataclass(frozen=True)
class AcceleratorCaps:
    """Declared requirements and abilities of an engine.

    The default alignments are those of common embedded LUT units: source
    rows aligned to 64 bytes and an even source height, destination rows
    aligned to 16 bytes and destination height to 8 rows.
    """

    formats: frozenset[PixelFormat] = frozenset({PixelFormat.NV12})
    src_stride_alignment: int = 64
    src_height_alignment: int = 2
    dst_stride_alignment: int = 16
    dst_height_alignment: int = 8
    mesh: MeshConstraints = field(default_factory=MeshConstraints)

    def check_format(self, fmt: PixelFormat) -> None:
        if fmt not in self.formats:
            raise BackendCapabilityError(
                f"Pixel format {fmt.value} is not supported, expected one of "
                f"{sorted(f.value for f in self.formats)}."
            )


@dataclass(frozen=True)
class LutInitParams:
    """Geometry a context is created for."""

    src: VideoInfo
    src_stride: int
    src_height_stride: int
    dst: DestinationLayout
    border_mode: BorderMode = "edge"
    cval: int = 0

    @classmethod
    def for_info(
        cls,
        info: VideoInfo,
        caps: AcceleratorCaps,
        border_mode: BorderMode = "edge",
        cval: int = 0,
    ) -> LutInitParams:
        row_bytes = info.plane_shapes()[0][1]
        return cls(
            src=info,
            src_stride=align_up(row_bytes, caps.src_stride_alignment),
            src_height_stride=align_up(info.height, caps.src_height_alignment),
            dst=DestinationLayout.aligned(
                info, caps.dst_stride_alignment, caps.dst_height_alignment
            ),
            border_mode=border_mode,
            cval=cval,
        )


@dataclass(frozen=True, eq=False)
class LutTask:
    """One remap job: read `src`, write `dst`, sample through `mesh`."""

    src: FrameBuffer
    dst: FrameBuffer
    mesh: Mesh


class AcceleratorContext:
    """Per-geometry engine state. Engines subclass it to attach their data."""

    def __init__(self, params: LutInitParams) -> None:
        self.params = params
        self.alive = True
        self.tasks_run = 0

    def ensure_alive(self) -> None:
        if not self.alive:
            raise AcceleratorContextLostError("Accelerator context was destroyed.")


class Accelerator(Protocol):
    """Protocol implemented by mesh lookup-table engines."""

    name: str

    @property
    def capabilities(self) -> AcceleratorCaps:
        ...

    def init(self, params: LutInitParams) -> AcceleratorContext:
        ...

    def run(self, context: AcceleratorContext, task: LutTask) -> None:
        ...

    def deinit(self, context: AcceleratorContext) -> None:
        ...


def check_task(context: AcceleratorContext, task: LutTask) -> None:
    """Validate a task against the geometry its context was created for."""
    context.ensure_alive()
    params = context.params
    if task.src.info != params.src:
        raise AcceleratorRuntimeError(
            f"Source frame {task.src.width}x{task.src.height} does not match context "
            f"geometry {params.src.width}x{params.src.height}."
        )
    if task.dst.info != params.dst.info:
        raise AcceleratorRuntimeError("Destination frame does not match context geometry.")
    if not task.mesh.matches(params.src.width, params.src.height):
        raise AcceleratorRuntimeError(
            f"Mesh was reduced for {task.mesh.frame_width}x{task.mesh.frame_height}, "
            f"context expects {params.src.width}x{params.src.height}."
        )


class _CpuContext(AcceleratorContext):
    def __init__(self, params: LutInitParams) -> None:
        super().__init__(params)
        self.mesh: Mesh | None = None
        self.plane_maps: list[DenseMap] = []


class CpuMeshLut:
    """Reference mesh lookup-table engine running on the CPU with OpenCV."""

    name = "cpu"

    def __init__(self, caps: AcceleratorCaps | None = None) -> None:
        self._caps = caps if caps is not None else AcceleratorCaps(
            formats=frozenset({PixelFormat.NV12, PixelFormat.BGR, PixelFormat.RGB})
        )

    @property
    def capabilities(self) -> AcceleratorCaps:
        return self._caps

    def init(self, params: LutInitParams) -> AcceleratorContext:
        try:
            self._caps.check_format(params.src.format)
        except BackendCapabilityError as exc:
            raise AcceleratorInitError(str(exc)) from exc
        if params.border_mode not in _BORDER_MODES_CV2:
            raise ConfigurationError(
                f"Unsupported border mode {params.border_mode!r}, expected one of "
                f"{sorted(_BORDER_MODES_CV2)}."
            )
        return _CpuContext(params)

    def _plane_maps(self, context: _CpuContext, mesh: Mesh) -> list[DenseMap]:
        if context.mesh is not mesh:
            dense = expand_mesh(mesh)
            maps = [dense]
            if not context.params.src.format.is_packed:
                maps.append(dense.half_resolution())
            context.plane_maps = maps
            context.mesh = mesh
        return context.plane_maps

    def run(self, context: AcceleratorContext, task: LutTask) -> None:
        assert isinstance(context, _CpuContext), (
            f"Expected a context created by {type(self).__name__}, got {type(context).__name__}."
        )
        check_task(context, task)
        params = context.params
        border_mode = _BORDER_MODES_CV2[params.border_mode]
        try:
            maps = self._plane_maps(context, task.mesh)
            for src_img, dst_img, plane_map in zip(task.src.images(), task.dst.images(), maps):
                nb_channels = 1 if src_img.ndim == 2 else src_img.shape[2]
                result = cv2.remap(
                    np.ascontiguousarray(src_img),
                    plane_map.map_x,
                    plane_map.map_y,
                    interpolation=cv2.INTER_LINEAR,
                    borderMode=border_mode,
                    borderValue=tuple([params.cval] * nb_channels),
                )
                if result.ndim != dst_img.ndim:
                    result = result.reshape(dst_img.shape)
                np.copyto(dst_img, result)
        except cv2.error as exc:
            raise AcceleratorRuntimeError(f"cv2.remap failed: {exc}") from exc
        context.tasks_run += 1

    def deinit(self, context: AcceleratorContext) -> None:
        if isinstance(context, _CpuContext):
            context.mesh = None
            context.plane_maps = []
        context.alive = False


def build_accelerator(name: str) -> Accelerator:
    """Factory that returns a lookup-table engine by name."""
    name_lower = name.lower()
    if name_lower == "cpu":
        return CpuMeshLut()
    if name_lower in ("cuda", "gpu"):
        from lensremap.cuda import CudaMeshLut

        return CudaMeshLut()
    raise ConfigurationError(f"Unknown accelerator {name!r}, expected one of {list_accelerators()}.")


def list_accelerators() -> tuple[str, ...]:
    return ("cpu", "cuda")


__all__ = [
    "Accelerator",
    "AcceleratorCaps",
    "AcceleratorContext",
    "BorderMode",
    "CpuMeshLut",
    "LutInitParams",
    "LutTask",
    "build_accelerator",
    "check_task",
    "list_accelerators",
]
