"""Mesh remapping through a lookup-table engine.

The engine writes into an aligned destination buffer owned by the
:class:`~lensremap.buffers.BufferManager`. After a successful run every
plane is copied back into the frame row by row, since the destination and
the frame generally use different strides. When a run fails the frame is
left untouched and the stream continues.
"""

from __future__ import annotations

import logging

from lensremap.accelerators import (
    Accelerator,
    AcceleratorContext,
    BorderMode,
    LutInitParams,
    LutTask,
)
from lensremap.buffers import BufferManager
from lensremap.errors import (
    AcceleratorContextLostError,
    AcceleratorInitError,
    AcceleratorRuntimeError,
    BackendCapabilityError,
    GeometryMismatchError,
)
from lensremap.frames import FrameBuffer, VideoInfo, copy_plane_rows
from lensremap.mesh import Mesh
from .base import FlowReturn, RemapStats

_LOGGER = logging.getLogger(__name__)


class HardwareRemapper:
    """Remap frames by driving an :class:`~lensremap.accelerators.Accelerator`."""

    def __init__(
        self,
        mesh: Mesh,
        accelerator: Accelerator,
        *,
        buffers: BufferManager | None = None,
        border_mode: BorderMode = "edge",
        cval: int = 0,
        stats: RemapStats | None = None,
    ) -> None:
        self.mesh = mesh
        self.accelerator = accelerator
        self.buffers = buffers if buffers is not None else BufferManager()
        self.border_mode = border_mode
        self.cval = int(cval)
        self.stats = stats if stats is not None else RemapStats()
        self._info: VideoInfo | None = None
        self._context: AcceleratorContext | None = None
        self._destination: FrameBuffer | None = None

    @property
    def info(self) -> VideoInfo | None:
        return self._info

    @property
    def context(self) -> AcceleratorContext | None:
        return self._context

    def prepare(self, info: VideoInfo) -> None:
        """Create the engine context and the aligned destination buffer.

        Raises
        ------
        lensremap.errors.AcceleratorInitError
            If the engine rejects the geometry or format. Nothing stays
            allocated in that case.

        lensremap.errors.AllocationError
            If the destination buffer cannot be allocated. The context
            created before is destroyed again.

        """
        if self._info == info and self._context is not None and self._context.alive:
            return
        self.release()
        self.buffers.invalidate(info)
        if not self.mesh.matches(info.width, info.height):
            raise GeometryMismatchError(
                f"Mesh was reduced for {self.mesh.frame_width}x{self.mesh.frame_height}, "
                f"negotiated frames are {info.width}x{info.height}."
            )
        caps = self.accelerator.capabilities
        try:
            caps.check_format(info.format)
        except BackendCapabilityError as exc:
            raise AcceleratorInitError(str(exc)) from exc

        params = LutInitParams.for_info(info, caps, border_mode=self.border_mode, cval=self.cval)
        context = self.accelerator.init(params)
        try:
            self._destination = self.buffers.destination_for(params.dst)
        except Exception:
            self.accelerator.deinit(context)
            raise
        self._context = context
        self._info = info

    def apply(self, frame: FrameBuffer) -> FlowReturn:
        if self._info is None:
            raise RuntimeError("HardwareRemapper.apply() called before prepare().")
        frame.check(self._info)
        if self._context is None or self._destination is None or not self._context.alive:
            raise AcceleratorContextLostError("No live accelerator context for this geometry.")

        task = LutTask(src=frame, dst=self._destination, mesh=self.mesh)
        try:
            self.accelerator.run(self._context, task)
        except AcceleratorContextLostError:
            raise
        except AcceleratorRuntimeError as exc:
            self.stats.accelerator_failures += 1
            _LOGGER.warning("Lookup-table run failed, passing frame through: %s", exc)
            return FlowReturn.OK

        for dst_plane, src_plane in zip(frame.planes, self._destination.planes):
            copy_plane_rows(dst_plane, src_plane)
        self.stats.corrected += 1
        return FlowReturn.OK

    def release(self) -> None:
        if self._context is not None:
            self.accelerator.deinit(self._context)
            self._context = None
        self._destination = None
        self._info = None


__all__ = ["HardwareRemapper"]
