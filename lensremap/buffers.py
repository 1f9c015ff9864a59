"""Ownership of the scratch and aligned destination buffers.

Buffers are sized to the negotiated frame geometry and reused across
frames. They are reallocated only when the requested geometry changes and
dropped together on teardown.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

from lensremap.errors import AllocationError
from lensremap.frames import FrameBuffer, PixelFormat, VideoInfo

_LOGGER = logging.getLogger(__name__)

PAGE_ALIGNMENT = 4096


def align_up(value: int, alignment: int) -> int:
    """Round `value` up to a multiple of a power-of-two `alignment`."""
    if alignment < 1 or alignment & (alignment - 1):
        raise ValueError(f"Expected a power-of-two alignment, got {alignment}.")
    return (int(value) + alignment - 1) & ~(alignment - 1)


def aligned_empty(nbytes: int, alignment: int = PAGE_ALIGNMENT, zero: bool = False) -> np.ndarray:
    """Allocate a ``uint8`` array whose data pointer is a multiple of `alignment`.

    numpy offers no aligned allocator, so this over-allocates by
    `alignment` bytes and returns the aligned slice.

    Raises
    ------
    lensremap.errors.AllocationError
        If the memory cannot be allocated.

    """
    align_up(0, alignment)
    try:
        alloc = np.zeros if zero else np.empty
        raw = alloc(nbytes + alignment, dtype=np.uint8)
    except (MemoryError, ValueError) as exc:
        raise AllocationError(f"Failed to allocate {nbytes} bytes aligned to {alignment}.") from exc
    offset = (-raw.ctypes.data) % alignment
    return raw[offset : offset + nbytes]


@dataclass(frozen=True)
class DestinationLayout:
    """Geometry of an accelerator output buffer.

    Every plane uses the same row `stride`. For NV12 the chroma plane starts
    after ``stride * height_stride`` bytes of luma.
    """

    info: VideoInfo
    stride: int
    height_stride: int

    @classmethod
    def aligned(cls, info: VideoInfo, stride_alignment: int, height_alignment: int) -> DestinationLayout:
        row_bytes = info.plane_shapes()[0][1]
        return cls(
            info=info,
            stride=align_up(row_bytes, stride_alignment),
            height_stride=align_up(info.height, height_alignment),
        )

    @property
    def plane_offsets(self) -> list[int]:
        if self.info.format is PixelFormat.NV12:
            return [0, self.stride * self.height_stride]
        return [0]

    @property
    def nbytes(self) -> int:
        luma = self.stride * self.height_stride
        if self.info.format is PixelFormat.NV12:
            return luma + self.stride * (self.height_stride // 2)
        return luma

    def wrap(self, buffer: np.ndarray) -> FrameBuffer:
        return FrameBuffer.wrap(
            buffer,
            self.info,
            strides=[self.stride] * self.info.format.n_planes,
            offsets=self.plane_offsets,
        )


class BufferManager:
    """Owns the per-instance working buffers.

    Attributes
    ----------
    allocation_count : int
        Number of (re)allocations performed so far. A request for the same
        geometry as the current buffers does not allocate.
    """

    def __init__(self, alignment: int = PAGE_ALIGNMENT) -> None:
        self.alignment = alignment
        self.allocation_count = 0
        self._scratch: list[np.ndarray] | None = None
        self._scratch_shapes: tuple[tuple[int, ...], ...] | None = None
        self._destination: FrameBuffer | None = None
        self._destination_layout: DestinationLayout | None = None

    @property
    def has_scratch(self) -> bool:
        return self._scratch is not None

    @property
    def has_destination(self) -> bool:
        return self._destination is not None

    @property
    def destination_layout(self) -> DestinationLayout | None:
        return self._destination_layout

    def scratch_for(self, shapes: Sequence[tuple[int, ...]]) -> list[np.ndarray]:
        """Return one ``uint8`` scratch image per entry in `shapes`.

        The arrays are reused while `shapes` stays the same.

        """
        key = tuple(tuple(int(dim) for dim in shape) for shape in shapes)
        if self._scratch is not None and self._scratch_shapes == key:
            return self._scratch
        self._scratch = None
        self._scratch_shapes = None
        try:
            scratch = [np.empty(shape, dtype=np.uint8) for shape in key]
        except (MemoryError, ValueError) as exc:
            raise AllocationError(f"Failed to allocate scratch buffer(s) of shape {key}.") from exc
        self._scratch = scratch
        self._scratch_shapes = key
        self.allocation_count += 1
        _LOGGER.debug("Allocated scratch buffer(s) %s.", key)
        return scratch

    def destination_for(self, layout: DestinationLayout) -> FrameBuffer:
        """Return the aligned destination frame for `layout`, allocating if needed."""
        if self._destination is not None and self._destination_layout == layout:
            return self._destination
        self._destination = None
        self._destination_layout = None
        raw = aligned_empty(layout.nbytes, self.alignment, zero=True)
        self._destination = layout.wrap(raw)
        self._destination_layout = layout
        self.allocation_count += 1
        _LOGGER.debug(
            "Allocated aligned destination buffer (%d bytes, stride %d, height stride %d).",
            layout.nbytes,
            layout.stride,
            layout.height_stride,
        )
        return self._destination

    def invalidate(self, info: VideoInfo) -> None:
        """Drop buffers that do not fit the geometry `info`."""
        if self._destination_layout is not None and self._destination_layout.info != info:
            self._destination = None
            self._destination_layout = None
        if self._scratch_shapes is not None:
            expected = tuple(tuple(img_shape) for img_shape in image_shapes(info))
            if self._scratch_shapes != expected:
                self._scratch = None
                self._scratch_shapes = None

    def release(self, *, scratch: bool = True, destination: bool = True) -> None:
        """Drop the scratch buffers, the destination buffer, or both."""
        if scratch:
            self._scratch = None
            self._scratch_shapes = None
        if destination:
            self._destination = None
            self._destination_layout = None


def image_shapes(info: VideoInfo) -> list[tuple[int, ...]]:
    """Return the shape of every plane image as the remappers sample it."""
    if info.format.is_packed:
        return [(info.height, info.width, 3)]
    return [(info.height, info.width), (info.height // 2, info.width // 2, 2)]


__all__ = [
    "PAGE_ALIGNMENT",
    "BufferManager",
    "DestinationLayout",
    "align_up",
    "aligned_empty",
    "image_shapes",
]
