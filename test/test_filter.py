import logging
import os
import unittest
from unittest import mock

import numpy as np
import pytest

from lensremap import (
    CameraModel,
    FlowReturn,
    FrameBuffer,
    LensRemapError,
    UndistortConfig,
    UndistortFilter,
    VideoInfo,
    undistort_image,
)
from lensremap.accelerators import AcceleratorCaps, CpuMeshLut
from lensremap.errors import AcceleratorRuntimeError, AllocationError
from lensremap.remappers import HardwareRemapper, IdentityRemapper, SoftwareRemapper


CAMERA = CameraModel(fx=800, fy=800, cx=640, cy=360, k1=-0.2, k2=0.1)


def _vertical_gradient(height, width):
    column = np.linspace(0, 255, height).round().astype(np.uint8)
    image = np.empty((height, width, 3), dtype=np.uint8)
    image[...] = column[:, np.newaxis, np.newaxis]
    image[..., 1] = 255 - image[..., 0]
    return image


def _random_image(height, width, seed=0):
    rng = np.random.default_rng(seed)
    return rng.integers(0, 256, size=(height, width, 3), dtype=np.uint8)


def _nv12_frame(width, height, seed=0):
    rng = np.random.default_rng(seed)
    memory = rng.integers(0, 256, size=width * height * 3 // 2, dtype=np.uint8)
    return memory, FrameBuffer.wrap(memory, VideoInfo(width, height, "NV12"))


class TestUndistortFilterSoftware(unittest.TestCase):
    def test_end_to_end_barrel_correction(self):
        image = _vertical_gradient(720, 1280)
        original = image.copy()
        with UndistortFilter(UndistortConfig(camera=CAMERA, silent=True)) as filt:
            assert filt.set_info(VideoInfo(1280, 720))
            status = filt.transform_frame_ip(FrameBuffer.from_image(image))

        assert status is FlowReturn.OK
        # Distortion vanishes at the principal point.
        assert np.array_equal(image[360, 640], original[360, 640])
        # Border rows sample from closer to the center.
        assert image[0, 640, 0] > original[0, 640, 0]
        assert image[719, 640, 0] < original[719, 640, 0]
        # Still a monotonic gradient along the center column.
        assert np.all(np.diff(image[:, 640, 0].astype(np.int16)) >= 0)
        assert not np.array_equal(image, original)

    def test_uncalibrated_camera_bypasses(self):
        for camera in (CameraModel(), CameraModel(fx=800, fy=0, k1=-0.2)):
            with self.subTest(camera=camera):
                image = _random_image(48, 64)
                expected = image.copy()
                filt = UndistortFilter(UndistortConfig(camera=camera))
                with self.assertLogs("lensremap.filter", level=logging.WARNING):
                    assert filt.set_info(VideoInfo(64, 48))
                assert filt.bypass
                assert filt.dense_map is None
                assert filt.transform_frame_ip(FrameBuffer.from_image(image)) is FlowReturn.OK
                assert np.array_equal(image, expected)
                assert filt.stats.bypassed == 1
                assert filt.buffers.allocation_count == 0

    def test_transform_before_set_info_bypasses(self):
        image = _random_image(8, 8)
        filt = UndistortFilter(UndistortConfig(camera=CAMERA))
        assert filt.transform_frame_ip(FrameBuffer.from_image(image)) is FlowReturn.OK
        assert filt.stats.bypassed == 1

    def test_same_geometry_does_not_reallocate(self):
        filt = UndistortFilter(UndistortConfig(camera=CAMERA.scaled(0.25), silent=True))
        info = VideoInfo(320, 180)
        assert filt.set_info(info)
        remapper = filt.remapper
        filt.transform_frame_ip(FrameBuffer.from_image(_random_image(180, 320)))
        assert filt.buffers.allocation_count == 1

        for seed in range(3):
            assert filt.set_info(VideoInfo(320, 180))
            filt.transform_frame_ip(FrameBuffer.from_image(_random_image(180, 320, seed)))
        assert filt.remapper is remapper
        assert filt.buffers.allocation_count == 1

    def test_size_change_regenerates_maps(self):
        filt = UndistortFilter(UndistortConfig(camera=CAMERA, silent=True))
        assert filt.set_info(VideoInfo(1280, 720))
        filt.transform_frame_ip(FrameBuffer.from_image(_vertical_gradient(720, 1280)))
        assert filt.dense_map.shape == (720, 1280)
        assert filt.buffers.allocation_count == 1

        assert filt.set_info(VideoInfo(640, 480))
        assert filt.dense_map.shape == (480, 640)
        image = _vertical_gradient(480, 640)
        assert filt.transform_frame_ip(FrameBuffer.from_image(image)) is FlowReturn.OK
        assert filt.buffers.allocation_count == 2
        assert filt.stats.corrected == 2

    def test_frame_of_stale_geometry_is_dropped(self):
        filt = UndistortFilter(UndistortConfig(camera=CAMERA, silent=True))
        filt.set_info(VideoInfo(640, 480))
        image = _random_image(720, 1280)
        expected = image.copy()
        status = filt.transform_frame_ip(FrameBuffer.from_image(image))
        assert status is FlowReturn.DROP
        assert np.array_equal(image, expected)
        assert filt.stats.dropped == 1

    def test_config_applies_at_next_set_info(self):
        filt = UndistortFilter(UndistortConfig(silent=True))
        info = VideoInfo(64, 48)
        filt.set_info(info)
        assert filt.bypass

        staged = filt.set_config(fx=60, fy=60, cx=32, cy=24, k1=-0.1)
        assert filt.pending_config is staged
        assert filt.bypass
        assert not filt.config.camera.is_calibrated

        assert filt.set_info(info)
        assert filt.pending_config is None
        assert filt.config is staged
        assert isinstance(filt.remapper, SoftwareRemapper)

    def test_config_change_with_same_geometry_rebuilds(self):
        filt = UndistortFilter(UndistortConfig(camera=CAMERA.scaled(0.05), silent=True))
        info = VideoInfo(64, 36)
        filt.set_info(info)
        first = filt.dense_map
        filt.set_config(k1=-0.3)
        filt.set_info(info)
        assert filt.dense_map is not first
        assert not np.array_equal(filt.dense_map.map_x, first.map_x)

    def test_stop_releases_everything(self):
        filt = UndistortFilter(UndistortConfig(camera=CAMERA.scaled(0.05), silent=True))
        filt.set_info(VideoInfo(64, 36))
        filt.transform_frame_ip(FrameBuffer.from_image(_random_image(36, 64)))
        assert filt.buffers.has_scratch
        filt.stop()
        assert filt.remapper is None
        assert filt.dense_map is None
        assert filt.info is None
        assert not filt.buffers.has_scratch

    def test_scipy_and_cv2_agree(self):
        image = _vertical_gradient(36, 64)
        results = []
        for library in ("cv2", "scipy"):
            result = undistort_image(
                image, CAMERA.scaled(0.05), remap_library=library, silent=True
            )
            results.append(result.astype(np.int16))
        assert np.max(np.abs(results[0] - results[1])) <= 2

    def test_undistort_image_does_not_modify_input(self):
        image = _vertical_gradient(36, 64)
        original = image.copy()
        result = undistort_image(image, CAMERA.scaled(0.05), silent=True)
        assert np.array_equal(image, original)
        assert result.shape == image.shape
        assert not np.array_equal(result, original)


class TestUndistortFilterHardware(unittest.TestCase):
    def _filter(self, accelerator=None, **kwargs):
        config = UndistortConfig(
            camera=CAMERA.scaled(0.1), backend="hardware", silent=True, **kwargs
        )
        return UndistortFilter(config, accelerator=accelerator)

    def test_nv12_stream(self):
        filt = self._filter()
        assert filt.set_info(VideoInfo(128, 72, "NV12"))
        assert isinstance(filt.remapper, HardwareRemapper)
        assert (filt.mesh.width, filt.mesh.height) == (9, 10)
        assert filt.buffers.allocation_count == 1

        memory, frame = _nv12_frame(128, 72)
        original = memory.copy()
        assert filt.transform_frame_ip(frame) is FlowReturn.OK
        assert not np.array_equal(memory, original)
        assert filt.stats.corrected == 1

    def test_mesh_uses_configured_steps(self):
        filt = self._filter(step_x=32, step_y=16)
        filt.set_info(VideoInfo(128, 72, "NV12"))
        assert (filt.mesh.step_x, filt.mesh.step_y) == (32, 16)
        assert (filt.mesh.width, filt.mesh.height) == (5, 6)

    def test_same_geometry_does_not_reallocate(self):
        filt = self._filter()
        for _ in range(3):
            assert filt.set_info(VideoInfo(128, 72, "NV12"))
        assert filt.buffers.allocation_count == 1

        assert filt.set_info(VideoInfo(64, 36, "NV12"))
        assert filt.buffers.allocation_count == 2
        assert filt.mesh.frame_width == 64

    def test_accelerator_failure_passes_frame_through(self):
        accelerator = CpuMeshLut()
        filt = self._filter(accelerator)
        filt.set_info(VideoInfo(128, 72, "NV12"))
        memory, frame = _nv12_frame(128, 72, seed=2)
        original = memory.copy()
        with mock.patch.object(accelerator, "run", side_effect=AcceleratorRuntimeError("timeout")):
            with self.assertLogs("lensremap.remappers.hardware", level=logging.WARNING):
                status = filt.transform_frame_ip(frame)
        assert status is FlowReturn.OK
        assert np.array_equal(memory, original)
        assert filt.stats.accelerator_failures == 1

    def test_lost_context_is_an_error(self):
        accelerator = CpuMeshLut()
        filt = self._filter(accelerator)
        filt.set_info(VideoInfo(128, 72, "NV12"))
        accelerator.deinit(filt.remapper.context)
        _, frame = _nv12_frame(128, 72)
        assert filt.transform_frame_ip(frame) is FlowReturn.ERROR
        assert filt.stats.errors == 1

    def test_renegotiation_rebuilds_lost_context(self):
        accelerator = CpuMeshLut()
        filt = self._filter(accelerator)
        info = VideoInfo(128, 72, "NV12")
        filt.set_info(info)
        lost = filt.remapper.context
        accelerator.deinit(lost)

        assert filt.set_info(info)
        assert filt.remapper.context is not lost
        assert filt.remapper.context.alive
        _, frame = _nv12_frame(128, 72)
        assert filt.transform_frame_ip(frame) is FlowReturn.OK
        assert filt.stats.corrected == 1

    def test_memory_error_is_an_error(self):
        accelerator = CpuMeshLut()
        filt = self._filter(accelerator)
        filt.set_info(VideoInfo(128, 72, "NV12"))
        memory, frame = _nv12_frame(128, 72, seed=3)
        original = memory.copy()
        with mock.patch.object(accelerator, "run", side_effect=MemoryError("device memory")):
            with self.assertLogs("lensremap.filter", level=logging.ERROR):
                status = filt.transform_frame_ip(frame)
        assert status is FlowReturn.ERROR
        assert np.array_equal(memory, original)
        assert filt.stats.errors == 1

    def test_switch_to_software_releases_destination(self):
        filt = self._filter()
        info = VideoInfo(128, 72, "NV12")
        filt.set_info(info)
        assert filt.buffers.has_destination

        filt.set_config(backend="software")
        assert filt.set_info(info)
        assert isinstance(filt.remapper, SoftwareRemapper)
        assert not filt.buffers.has_destination

        _, frame = _nv12_frame(128, 72)
        assert filt.transform_frame_ip(frame) is FlowReturn.OK
        assert filt.buffers.has_scratch

        filt.set_config(backend="hardware")
        assert filt.set_info(info)
        assert filt.buffers.has_destination
        assert not filt.buffers.has_scratch

    def test_allocation_failure_is_an_error(self):
        filt = self._filter()
        filt.set_info(VideoInfo(128, 72, "NV12"))
        _, frame = _nv12_frame(128, 72)
        with mock.patch.object(
            filt.remapper, "apply", side_effect=AllocationError("out of memory")
        ):
            assert filt.transform_frame_ip(frame) is FlowReturn.ERROR

    def test_init_failure_falls_back_to_bypass(self):
        filt = self._filter(CpuMeshLut(AcceleratorCaps()))
        with self.assertLogs("lensremap.filter", level=logging.ERROR):
            assert not filt.set_info(VideoInfo(128, 72, "BGR"))
        assert filt.bypass
        assert isinstance(filt.remapper, IdentityRemapper)
        assert not filt.buffers.has_destination

        image = _random_image(72, 128)
        expected = image.copy()
        assert filt.transform_frame_ip(FrameBuffer.from_image(image)) is FlowReturn.OK
        assert np.array_equal(image, expected)

    def test_stop_destroys_context(self):
        filt = self._filter()
        filt.set_info(VideoInfo(128, 72, "NV12"))
        context = filt.remapper.context
        filt.stop()
        assert not context.alive
        assert not filt.buffers.has_destination

        assert filt.set_info(VideoInfo(128, 72, "NV12"))
        assert filt.remapper.context.alive

    def test_accelerator_is_built_from_config(self):
        filt = self._filter()
        filt.set_info(VideoInfo(128, 72, "NV12"))
        assert isinstance(filt.remapper.accelerator, CpuMeshLut)


class TestEnvironmentOverrides(unittest.TestCase):
    def test_backend_override_selects_hardware(self):
        filt = UndistortFilter(UndistortConfig(camera=CAMERA.scaled(0.1), silent=True))
        with mock.patch.dict(os.environ, {"LENSREMAP_BACKEND": "hardware"}):
            assert filt.set_info(VideoInfo(128, 72, "NV12"))
        assert isinstance(filt.remapper, HardwareRemapper)
        assert isinstance(filt.remapper.accelerator, CpuMeshLut)
        assert filt.config.backend == "software"

    def test_removing_override_rebuilds(self):
        filt = UndistortFilter(UndistortConfig(camera=CAMERA.scaled(0.1), silent=True))
        info = VideoInfo(128, 72, "NV12")
        with mock.patch.dict(os.environ, {"LENSREMAP_BACKEND": "hardware"}):
            filt.set_info(info)
        with mock.patch.dict(os.environ, {"LENSREMAP_BACKEND": ""}):
            assert filt.set_info(info)
        assert isinstance(filt.remapper, SoftwareRemapper)

    def test_invalid_override_is_ignored(self):
        filt = UndistortFilter(UndistortConfig(camera=CAMERA.scaled(0.1), silent=True))
        environ = {"LENSREMAP_BACKEND": "gpu", "LENSREMAP_ACCELERATOR": "quantum"}
        with mock.patch.dict(os.environ, environ):
            with self.assertLogs("lensremap.filter", level=logging.ERROR):
                assert filt.set_info(VideoInfo(128, 72, "NV12"))
        assert isinstance(filt.remapper, SoftwareRemapper)


class TestStreamLifecycle(unittest.TestCase):
    def test_start_resets_counters(self):
        filt = UndistortFilter(UndistortConfig(camera=CAMERA.scaled(0.05), silent=True))
        filt.set_info(VideoInfo(64, 36))
        filt.transform_frame_ip(FrameBuffer.from_image(_random_image(36, 64)))
        assert filt.stats.frames == 1
        filt.stop()

        filt.start()
        assert filt.stats.frames == 0
        assert filt.stats.corrected == 0

    def test_context_manager_starts_fresh(self):
        filt = UndistortFilter()
        filt.transform_frame_ip(FrameBuffer.from_image(_random_image(8, 8)))
        with filt:
            assert filt.stats.frames == 0
            assert filt.stats.bypassed == 0


def test_undistort_image_failure_raises():
    camera = CameraModel(fx=10, fy=10, cx=4, cy=4, k1=-0.1)
    image = np.zeros((8, 8, 3), dtype=np.uint8)
    with mock.patch(
        "lensremap.filter.SoftwareRemapper.apply", side_effect=AcceleratorRuntimeError("x")
    ):
        with pytest.raises(LensRemapError):
            undistort_image(image, camera, silent=True)
