"""Host-facing undistortion filter.

:class:`UndistortFilter` is the part a media pipeline talks to. It exposes
the stream callbacks and converts every failure into their return values,
so no exception reaches the host:

- :meth:`UndistortFilter.start` when a stream begins. Resets the counters.
- :meth:`UndistortFilter.set_info` on geometry negotiation. Applies the
  staged configuration (and the ``LENSREMAP_BACKEND`` /
  ``LENSREMAP_ACCELERATOR`` environment overrides) and builds the dense
  map, the mesh and the accelerator context. A context that was torn down
  is rebuilt even for an unchanged geometry. Returns ``False`` (and falls
  back to bypass) if that fails.
- :meth:`UndistortFilter.transform_frame_ip` once per frame. Corrects the
  frame in place and returns a :class:`~lensremap.remappers.FlowReturn`.
- :meth:`UndistortFilter.stop` on teardown. Releases everything; the filter
  can be negotiated again afterwards.

Example
-------
>>> from lensremap import CameraModel, FrameBuffer, UndistortConfig, UndistortFilter, VideoInfo
>>> camera = CameraModel(fx=800, fy=800, cx=640, cy=360, k1=-0.2, k2=0.1)
>>> with UndistortFilter(UndistortConfig(camera=camera)) as filt:  # doctest: +SKIP
...     filt.set_info(VideoInfo(1280, 720))
...     status = filt.transform_frame_ip(FrameBuffer.from_image(frame))
"""

from __future__ import annotations

import logging
from typing import Any

import cv2
import numpy as np

from lensremap.accelerators import Accelerator, build_accelerator
from lensremap.buffers import BufferManager
from lensremap.camera import CameraModel
from lensremap.config import UndistortConfig
from lensremap.errors import (
    AcceleratorContextLostError,
    AllocationError,
    ConfigurationError,
    GeometryMismatchError,
    LensRemapError,
)
from lensremap.frames import FrameBuffer, PixelFormat, VideoInfo
from lensremap.maps import DenseMap, generate_dense_map
from lensremap.mesh import Mesh, reduce_dense_map
from lensremap.remappers import (
    FlowReturn,
    HardwareRemapper,
    IdentityRemapper,
    RemapStats,
    Remapper,
    SoftwareRemapper,
)

_LOGGER = logging.getLogger(__name__)


class UndistortFilter:
    """Lens undistortion for one video stream.

    Parameters
    ----------
    config : None or lensremap.config.UndistortConfig, optional
        Initial configuration. Defaults to an uncalibrated camera, i.e.
        bypass mode.

    accelerator : None or lensremap.accelerators.Accelerator, optional
        Engine for the hardware backend. If not given, it is built from
        ``config.accelerator`` when first needed.

    buffers : None or lensremap.buffers.BufferManager, optional
        Owner of the working buffers.

    """

    def __init__(
        self,
        config: UndistortConfig | None = None,
        *,
        accelerator: Accelerator | None = None,
        buffers: BufferManager | None = None,
    ) -> None:
        self._config = config if config is not None else UndistortConfig()
        self._pending: UndistortConfig | None = None
        self._accelerator_override = accelerator
        self._accelerators: dict[str, Accelerator] = {}
        self.buffers = buffers if buffers is not None else BufferManager()
        self.stats = RemapStats()
        self._remapper: Remapper | None = None
        self._info: VideoInfo | None = None
        self._dense: DenseMap | None = None
        self._mesh: Mesh | None = None
        self._built_for: tuple[UndistortConfig, VideoInfo] | None = None

    def __enter__(self) -> UndistortFilter:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    @property
    def config(self) -> UndistortConfig:
        """Configuration the current mapping was built with."""
        return self._config

    @property
    def pending_config(self) -> UndistortConfig | None:
        """Configuration staged for the next :meth:`set_info`, if any."""
        return self._pending

    @property
    def info(self) -> VideoInfo | None:
        return self._info

    @property
    def dense_map(self) -> DenseMap | None:
        return self._dense

    @property
    def mesh(self) -> Mesh | None:
        return self._mesh

    @property
    def remapper(self) -> Remapper | None:
        return self._remapper

    @property
    def bypass(self) -> bool:
        return self._remapper is None or isinstance(self._remapper, IdentityRemapper)

    def set_config(self, config: UndistortConfig | None = None, **changes: Any) -> UndistortConfig:
        """Stage a new configuration; it is applied by the next :meth:`set_info`.

        Either pass a complete `config`, or keyword `changes` applied on top
        of the most recent configuration (staged or active).

        """
        base = config if config is not None else (self._pending or self._config)
        staged = base.replace(**changes) if changes else base
        self._pending = staged
        return staged

    def _accelerator_for(self, config: UndistortConfig) -> Accelerator:
        if self._accelerator_override is not None:
            return self._accelerator_override
        accelerator = self._accelerators.get(config.accelerator)
        if accelerator is None:
            accelerator = build_accelerator(config.accelerator)
            self._accelerators[config.accelerator] = accelerator
        return accelerator

    def _build(self, config: UndistortConfig, info: VideoInfo) -> Remapper:
        dense = generate_dense_map(
            config.camera, info.width, info.height, library=config.map_library
        )
        if dense is None:
            _LOGGER.warning("fx/fy not set, bypassing undistortion (identity).")
            remapper: Remapper = IdentityRemapper(self.stats)
            remapper.prepare(info)
            return remapper

        if config.backend == "software":
            remapper = SoftwareRemapper(
                dense,
                buffers=self.buffers,
                interpolation=config.interpolation,
                border_mode=config.border_mode,
                cval=config.cval,
                library=config.remap_library,
                stats=self.stats,
            )
            remapper.prepare(info)
            self._dense = dense
            if not config.silent:
                _LOGGER.info("Prepared undistort maps (%dx%d).", info.width, info.height)
            return remapper

        accelerator = self._accelerator_for(config)
        mesh = reduce_dense_map(dense, config.step_x, config.step_y, accelerator.capabilities.mesh)
        remapper = HardwareRemapper(
            mesh,
            accelerator,
            buffers=self.buffers,
            border_mode=config.border_mode,  # type: ignore[arg-type]
            cval=config.cval,
            stats=self.stats,
        )
        remapper.prepare(info)
        self._dense = dense
        self._mesh = mesh
        if not config.silent:
            layout = self.buffers.destination_layout
            _LOGGER.info(
                "Prepared %s mesh (%d x %d), dst stride=%d/hgtstride=%d.",
                accelerator.name,
                mesh.width,
                mesh.height,
                layout.stride if layout else 0,
                layout.height_stride if layout else 0,
            )
        return remapper

    def _release_mapping(self) -> None:
        if self._remapper is not None:
            self._remapper.release()
        self._remapper = None
        self._dense = None
        self._mesh = None
        self._built_for = None

    def set_info(self, info: VideoInfo) -> bool:
        """Negotiate the frame geometry and (re)build the mapping.

        Returns
        -------
        bool
            ``True`` if the mapping (or bypass, for an uncalibrated camera)
            is ready. ``False`` if building it failed; the filter then runs
            in bypass mode with nothing left allocated.

        """
        if self._pending is not None:
            self._config = self._pending
            self._pending = None
        try:
            config = self._config.with_env_overrides()
        except ConfigurationError as exc:
            _LOGGER.error("Ignoring invalid environment override: %s", exc)
            config = self._config
        if config != self._config:
            _LOGGER.debug(
                "Environment overrides backend=%s accelerator=%s.", config.backend, config.accelerator
            )

        if self._built_for == (config, info) and self._mapping_is_live():
            return True

        self._release_mapping()
        self.buffers.invalidate(info)
        self._info = info
        try:
            self._remapper = self._build(config, info)
        except (LensRemapError, MemoryError, cv2.error) as exc:
            _LOGGER.error("Failed to prepare undistortion for %dx%d: %s", info.width, info.height, exc)
            self._release_mapping()
            self.buffers.release()
            fallback = IdentityRemapper(self.stats)
            fallback.prepare(info)
            self._remapper = fallback
            return False
        # Buffers of the other backend are not used at this geometry.
        if not isinstance(self._remapper, SoftwareRemapper):
            self.buffers.release(destination=False)
        if not isinstance(self._remapper, HardwareRemapper):
            self.buffers.release(scratch=False)
        self._built_for = (config, info)
        return True

    def _mapping_is_live(self) -> bool:
        if self._remapper is None:
            return False
        if isinstance(self._remapper, HardwareRemapper):
            context = self._remapper.context
            return context is not None and context.alive
        return True

    def transform_frame_ip(self, frame: FrameBuffer) -> FlowReturn:
        """Correct one frame in place.

        Returns
        -------
        FlowReturn
            ``OK`` for corrected, bypassed and passed-through frames
            (including a failed lookup-table run), ``DROP`` for a frame that
            does not match the negotiated geometry, ``ERROR`` if the filter
            cannot continue (lost accelerator context, allocation failure).

        """
        self.stats.frames += 1
        if self._remapper is None:
            self.stats.bypassed += 1
            return FlowReturn.OK
        try:
            return self._remapper.apply(frame)
        except GeometryMismatchError as exc:
            self.stats.dropped += 1
            _LOGGER.warning("Dropping frame: %s", exc)
            return FlowReturn.DROP
        except (AcceleratorContextLostError, AllocationError, MemoryError) as exc:
            self.stats.errors += 1
            _LOGGER.error("Undistortion cannot continue: %s", exc)
            return FlowReturn.ERROR
        except (LensRemapError, cv2.error) as exc:
            self.stats.errors += 1
            _LOGGER.error("Undistortion failed: %s", exc)
            return FlowReturn.ERROR

    def start(self) -> None:
        """Begin a new stream: reset the frame counters."""
        self.stats.reset()

    def stop(self) -> None:
        """Release maps, mesh, accelerator context and buffers."""
        self._release_mapping()
        self.buffers.release()
        self._info = None


def undistort_image(
    image: np.ndarray,
    camera: CameraModel,
    *,
    format: PixelFormat | str = PixelFormat.BGR,
    **config_kwargs: Any,
) -> np.ndarray:
    """Return an undistorted copy of a single ``(H, W, 3)`` ``uint8`` image.

    Keyword arguments other than `format` are passed on to
    :class:`~lensremap.config.UndistortConfig`.

    """
    result = np.array(image, copy=True)
    frame = FrameBuffer.from_image(result, format=format)
    with UndistortFilter(UndistortConfig(camera=camera, **config_kwargs)) as filt:
        if not filt.set_info(frame.info):
            raise LensRemapError("Failed to prepare undistortion, see log for details.")
        status = filt.transform_frame_ip(frame)
    if status is not FlowReturn.OK:
        raise LensRemapError(f"Undistortion returned {status.value}.")
    return result


__all__ = ["UndistortFilter", "undistort_image"]
