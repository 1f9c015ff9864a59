"""Dense-map remapping on the CPU.

Every destination pixel is sampled bilinearly (or nearest) from the source
frame at the coordinate stored in the dense map. Sampling writes into a
reusable scratch buffer which is then copied back over the frame, row by
row where the frame rows are padded.
"""

from __future__ import annotations

import logging

import cv2
import numpy as np
from scipy import ndimage

from lensremap.buffers import BufferManager, image_shapes
from lensremap.config import Interpolation, RemapLibrary
from lensremap.errors import ConfigurationError, GeometryMismatchError
from lensremap.frames import FrameBuffer, VideoInfo, copy_plane_rows
from lensremap.maps import DenseMap
from .base import FlowReturn, RemapStats

_LOGGER = logging.getLogger(__name__)

_MAPPING_MODE_CV2 = {
    "edge": cv2.BORDER_REPLICATE,
    "constant": cv2.BORDER_CONSTANT,
}
_MAPPING_MODE_SCIPY = {
    "edge": "nearest",
    "constant": "constant",
}
_MAPPING_ORDER_CV2 = {
    "nearest": cv2.INTER_NEAREST,
    "linear": cv2.INTER_LINEAR,
}
_MAPPING_ORDER_SCIPY = {
    "nearest": 0,
    "linear": 1,
}


def _normalize_cv2_input_arr(arr: np.ndarray) -> np.ndarray:
    if not arr.flags["C_CONTIGUOUS"]:
        arr = np.ascontiguousarray(arr)
    return arr


class SoftwareRemapper:
    """Remap frames through a dense map with OpenCV or SciPy.

    Parameters
    ----------
    dense : lensremap.maps.DenseMap
        Map for the full-resolution plane.

    buffers : None or lensremap.buffers.BufferManager, optional
        Owner of the scratch buffer. A private one is created if not given.

    interpolation : {'linear', 'nearest'}, optional
        Sampling between source pixels.

    border_mode : {'edge', 'constant'}, optional
        Clamp-to-edge or fill with `cval` for coordinates outside the frame.

    cval : int, optional
        Fill value for ``border_mode='constant'``.

    library : {'cv2', 'scipy'}, optional
        ``cv2`` converts the maps once to OpenCV's fixed-point format and
        samples with ``cv2.remap``. ``scipy`` samples with
        ``scipy.ndimage.map_coordinates``.

    stats : None or RemapStats, optional
        Counters to update.

    """

    def __init__(
        self,
        dense: DenseMap,
        *,
        buffers: BufferManager | None = None,
        interpolation: Interpolation = "linear",
        border_mode: str = "edge",
        cval: int = 0,
        library: RemapLibrary = "cv2",
        stats: RemapStats | None = None,
    ) -> None:
        if library not in ("cv2", "scipy"):
            raise ConfigurationError(f"Unknown remap library {library!r}.")
        if interpolation not in _MAPPING_ORDER_CV2:
            raise ConfigurationError(f"Unknown interpolation {interpolation!r}.")
        if border_mode not in _MAPPING_MODE_CV2:
            raise ConfigurationError(f"Unknown border mode {border_mode!r}.")
        self.dense = dense
        self.buffers = buffers if buffers is not None else BufferManager()
        self.interpolation = interpolation
        self.border_mode = border_mode
        self.cval = int(cval)
        self.library = library
        self.stats = stats if stats is not None else RemapStats()
        self._info: VideoInfo | None = None
        self._plane_maps: list[tuple[np.ndarray, np.ndarray]] = []

    @property
    def info(self) -> VideoInfo | None:
        return self._info

    def prepare(self, info: VideoInfo) -> None:
        if not self.dense.matches(info.width, info.height):
            raise GeometryMismatchError(
                f"Dense map is {self.dense.width}x{self.dense.height}, "
                f"negotiated frames are {info.width}x{info.height}."
            )
        maps = [self.dense]
        if not info.format.is_packed:
            maps.append(self.dense.half_resolution())

        plane_maps = []
        for plane_map in maps:
            if self.library == "cv2":
                is_nearest_neighbour = self.interpolation == "nearest"
                map1, map2 = cv2.convertMaps(
                    plane_map.map_x,
                    plane_map.map_y,
                    cv2.CV_16SC2,
                    nninterpolation=is_nearest_neighbour,
                )
                plane_maps.append((map1, map2))
            else:
                # map_coordinates expects (row, col) coordinates.
                plane_maps.append((plane_map.map_y, plane_map.map_x))

        self.buffers.invalidate(info)
        self._plane_maps = plane_maps
        self._info = info

    def _remap_cv2(self, image: np.ndarray, maps: tuple[np.ndarray, np.ndarray], out: np.ndarray) -> None:
        nb_channels = 1 if image.ndim == 2 else image.shape[2]
        result = cv2.remap(
            _normalize_cv2_input_arr(image),
            maps[0],
            maps[1],
            interpolation=_MAPPING_ORDER_CV2[self.interpolation],
            borderMode=_MAPPING_MODE_CV2[self.border_mode],
            borderValue=tuple([self.cval] * nb_channels),
            dst=out,
        )
        if result is not out:
            np.copyto(out, result.reshape(out.shape))

    def _remap_scipy(self, image: np.ndarray, maps: tuple[np.ndarray, np.ndarray], out: np.ndarray) -> None:
        coords = np.stack(maps)
        channels = [image] if image.ndim == 2 else [image[..., c] for c in range(image.shape[2])]
        for c, channel in enumerate(channels):
            sampled = ndimage.map_coordinates(
                channel.astype(np.float32),
                coords,
                order=_MAPPING_ORDER_SCIPY[self.interpolation],
                mode=_MAPPING_MODE_SCIPY[self.border_mode],
                cval=float(self.cval),
                prefilter=False,
            )
            sampled = np.clip(np.floor(sampled + 0.5), 0, 255).astype(np.uint8)
            if out.ndim == 2:
                out[...] = sampled
            else:
                out[..., c] = sampled

    def apply(self, frame: FrameBuffer) -> FlowReturn:
        if self._info is None:
            raise RuntimeError("SoftwareRemapper.apply() called before prepare().")
        frame.check(self._info)

        scratch = self.buffers.scratch_for(image_shapes(self._info))
        remap = self._remap_cv2 if self.library == "cv2" else self._remap_scipy
        for image, maps, out in zip(frame.images(), self._plane_maps, scratch):
            remap(image, maps, out)

        for plane, out in zip(frame.planes, scratch):
            copy_plane_rows(plane, out.reshape(plane.shape))

        self.stats.corrected += 1
        return FlowReturn.OK

    def release(self) -> None:
        self._plane_maps = []
        self._info = None


__all__ = ["SoftwareRemapper"]
