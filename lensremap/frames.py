"""Frame geometry and strided views over externally owned pixel memory.

A :class:`FrameBuffer` never owns its pixels. It wraps the memory handed
over by the host (a ``bytearray``, ``memoryview``, mapped buffer or numpy
array) as one 2D ``uint8`` array per plane. Each plane array has shape
``(rows, row_bytes)``; its first numpy stride is the plane's byte stride,
which may be larger than ``row_bytes`` because of row alignment.
"""

from __future__ import annotations

import enum
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import numpy as np
from numpy.lib.stride_tricks import as_strided

from lensremap.dtypes import allow_only_uint8
from lensremap.errors import ConfigurationError, GeometryMismatchError


class PixelFormat(enum.Enum):
    """Pixel layouts the remappers operate on."""

    BGR = "BGR"
    RGB = "RGB"
    NV12 = "NV12"

    @property
    def is_packed(self) -> bool:
        return self in (PixelFormat.BGR, PixelFormat.RGB)

    @property
    def n_planes(self) -> int:
        return 1 if self.is_packed else 2

    @classmethod
    def parse(cls, value: PixelFormat | str) -> PixelFormat:
        if isinstance(value, PixelFormat):
            return value
        try:
            return cls(str(value).upper())
        except ValueError as exc:
            raise ConfigurationError(
                f"Unsupported pixel format {value!r}, expected one of "
                f"{[fmt.value for fmt in cls]}."
            ) from exc


@dataclass(frozen=True)
class VideoInfo:
    """Negotiated frame geometry."""

    width: int
    height: int
    format: PixelFormat = PixelFormat.BGR

    def __post_init__(self) -> None:
        object.__setattr__(self, "format", PixelFormat.parse(self.format))
        if self.width < 1 or self.height < 1:
            raise ConfigurationError(
                f"Expected positive frame size, got {self.width}x{self.height}."
            )
        if self.format is PixelFormat.NV12 and (self.width % 2 or self.height % 2):
            raise ConfigurationError(
                f"NV12 frames need even width and height, got {self.width}x{self.height}."
            )

    @property
    def size(self) -> tuple[int, int]:
        return self.width, self.height

    def plane_shapes(self) -> list[tuple[int, int]]:
        """Return ``(rows, row_bytes)`` of the visible part of every plane."""
        if self.format.is_packed:
            return [(self.height, self.width * 3)]
        # Luma, then interleaved CbCr at half vertical/horizontal resolution.
        return [(self.height, self.width), (self.height // 2, self.width)]

    def default_strides(self, alignment: int = 1) -> list[int]:
        return [_round_up(row_bytes, alignment) for _, row_bytes in self.plane_shapes()]


def _round_up(value: int, multiple: int) -> int:
    return -(-value // multiple) * multiple


def _strided_plane(base: np.ndarray, offset: int, rows: int, row_bytes: int, stride: int) -> np.ndarray:
    if stride < row_bytes:
        raise ConfigurationError(f"Plane stride {stride} is smaller than its row size {row_bytes}.")
    needed = offset + (rows - 1) * stride + row_bytes
    if needed > base.size:
        raise ConfigurationError(
            f"Buffer of {base.size} bytes is too small for plane at offset {offset} "
            f"({rows} rows, stride {stride}); need {needed} bytes."
        )
    return as_strided(base[offset:], shape=(rows, row_bytes), strides=(stride, 1))


@dataclass(frozen=True, eq=False)
class FrameBuffer:
    """Mutable view over one frame's planes.

    Attributes
    ----------
    info : VideoInfo
        Geometry and pixel format of the frame.
    planes : tuple of numpy.ndarray
        One ``uint8`` array of shape ``(rows, row_bytes)`` per plane.
    """

    info: VideoInfo
    planes: tuple[np.ndarray, ...]

    def __post_init__(self) -> None:
        expected = self.info.plane_shapes()
        if len(self.planes) != len(expected):
            raise ConfigurationError(
                f"{self.info.format.value} frames have {len(expected)} plane(s), "
                f"got {len(self.planes)}."
            )
        allow_only_uint8(list(self.planes), owner="FrameBuffer")
        for idx, (plane, shape) in enumerate(zip(self.planes, expected)):
            if plane.shape != shape or plane.strides[1] != 1:
                raise ConfigurationError(
                    f"Plane {idx} has shape {plane.shape} and strides {plane.strides}, "
                    f"expected shape {shape} with contiguous rows."
                )

    @property
    def width(self) -> int:
        return self.info.width

    @property
    def height(self) -> int:
        return self.info.height

    @property
    def format(self) -> PixelFormat:
        return self.info.format

    @property
    def strides(self) -> tuple[int, ...]:
        return tuple(int(plane.strides[0]) for plane in self.planes)

    def check(self, info: VideoInfo) -> None:
        """Raise :class:`GeometryMismatchError` unless the frame matches `info`."""
        if self.info != info:
            raise GeometryMismatchError(
                f"Frame is {self.width}x{self.height} {self.format.value}, negotiated "
                f"geometry is {info.width}x{info.height} {info.format.value}."
            )

    def as_image(self) -> np.ndarray:
        """Return a writable ``(H, W, 3)`` view of a packed frame."""
        if not self.format.is_packed:
            raise ValueError(f"as_image() needs a packed format, got {self.format.value}.")
        plane = self.planes[0]
        return as_strided(
            plane, shape=(self.height, self.width, 3), strides=(plane.strides[0], 3, 1)
        )

    def luma(self) -> np.ndarray:
        if self.format is not PixelFormat.NV12:
            raise ValueError(f"luma() needs NV12, got {self.format.value}.")
        return self.planes[0]

    def chroma(self) -> np.ndarray:
        """Return a writable ``(H/2, W/2, 2)`` view of the interleaved CbCr plane."""
        if self.format is not PixelFormat.NV12:
            raise ValueError(f"chroma() needs NV12, got {self.format.value}.")
        plane = self.planes[1]
        return as_strided(
            plane,
            shape=(self.height // 2, self.width // 2, 2),
            strides=(plane.strides[0], 2, 1),
        )

    def images(self) -> list[np.ndarray]:
        """Return the per-plane pixel views in the layout the remappers sample."""
        if self.format.is_packed:
            return [self.as_image()]
        return [self.luma(), self.chroma()]

    def copy(self) -> FrameBuffer:
        """Return a tightly packed copy that owns its memory."""
        return FrameBuffer(self.info, tuple(np.array(plane, copy=True) for plane in self.planes))

    def tobytes(self) -> bytes:
        """Return the visible pixels of all planes, row padding excluded."""
        return b"".join(np.ascontiguousarray(plane).tobytes() for plane in self.planes)

    @classmethod
    def wrap(
        cls,
        buffer: Any,
        info: VideoInfo,
        strides: Sequence[int] | None = None,
        offsets: Sequence[int] | None = None,
    ) -> FrameBuffer:
        """Wrap a writable buffer object without copying.

        Parameters
        ----------
        buffer : buffer-like
            Any object exposing the buffer protocol, e.g. ``bytearray``,
            ``memoryview``, ``mmap`` or a ``uint8`` numpy array.

        info : VideoInfo
            Geometry of the frame stored in `buffer`.

        strides : None or sequence of int, optional
            Byte stride of each plane. Defaults to tightly packed rows.

        offsets : None or sequence of int, optional
            Byte offset of each plane. Defaults to planes stored back to back.

        """
        if isinstance(buffer, np.ndarray):
            if not buffer.flags.c_contiguous:
                raise ConfigurationError("Frame buffers must be C-contiguous numpy arrays.")
            base = buffer
        else:
            base = np.frombuffer(buffer, dtype=np.uint8)
        base = base.reshape(-1)
        if base.dtype != np.uint8:
            base = base.view(np.uint8)
        if not base.flags.writeable:
            raise ConfigurationError("Frame buffers must be writable, got a read-only buffer.")

        shapes = info.plane_shapes()
        strides = list(strides) if strides is not None else info.default_strides()
        if len(strides) != len(shapes):
            raise ConfigurationError(f"Expected {len(shapes)} stride(s), got {len(strides)}.")
        if offsets is None:
            offsets = []
            position = 0
            for (rows, _), stride in zip(shapes, strides):
                offsets.append(position)
                position += rows * stride
        if len(offsets) != len(shapes):
            raise ConfigurationError(f"Expected {len(shapes)} offset(s), got {len(offsets)}.")

        planes = tuple(
            _strided_plane(base, int(offset), rows, row_bytes, int(stride))
            for (rows, row_bytes), stride, offset in zip(shapes, strides, offsets)
        )
        return cls(info, planes)

    @classmethod
    def from_image(cls, image: np.ndarray, format: PixelFormat | str = PixelFormat.BGR) -> FrameBuffer:
        """Wrap a ``(H, W, 3)`` ``uint8`` image (possibly with padded rows)."""
        allow_only_uint8(image, owner="FrameBuffer.from_image")
        if image.ndim != 3 or image.shape[2] != 3:
            raise ConfigurationError(f"Expected image of shape (H, W, 3), got {image.shape}.")
        if image.strides[1:] != (3, 1):
            raise ConfigurationError(
                f"Expected pixel-contiguous image rows, got strides {image.strides}."
            )
        height, width = image.shape[:2]
        plane = as_strided(image, shape=(height, width * 3), strides=(image.strides[0], 1))
        return cls(VideoInfo(width, height, PixelFormat.parse(format)), (plane,))

    @classmethod
    def from_nv12(cls, luma: np.ndarray, chroma: np.ndarray) -> FrameBuffer:
        """Wrap an NV12 luma plane ``(H, W)`` and CbCr plane ``(H/2, W)`` or ``(H/2, W/2, 2)``."""
        if luma.ndim != 2:
            raise ConfigurationError(f"Expected luma plane of shape (H, W), got {luma.shape}.")
        if chroma.ndim == 3:
            if chroma.shape[2] != 2 or chroma.strides[1:] != (2, 1):
                raise ConfigurationError(
                    f"Expected interleaved chroma of shape (H/2, W/2, 2), got {chroma.shape}."
                )
            chroma = as_strided(
                chroma,
                shape=(chroma.shape[0], chroma.shape[1] * 2),
                strides=(chroma.strides[0], 1),
            )
        height, width = luma.shape
        return cls(VideoInfo(width, height, PixelFormat.NV12), (luma, chroma))


def copy_plane_rows(dst: np.ndarray, src: np.ndarray) -> None:
    """Copy the visible rows of `src` into `dst`, each side using its own stride.

    With identical strides the rows form one block and are copied in a
    single pass.

    """
    if dst.shape != src.shape:
        raise GeometryMismatchError(f"Cannot copy plane of shape {src.shape} into {dst.shape}.")
    if dst.strides == src.strides and dst.flags.c_contiguous and src.flags.c_contiguous:
        np.copyto(dst, src)
        return
    for row in range(dst.shape[0]):
        dst[row] = src[row]


__all__ = [
    "FrameBuffer",
    "PixelFormat",
    "VideoInfo",
    "copy_plane_rows",
]
