import unittest

import cv2
import numpy as np

from lensremap.accelerators import (
    AcceleratorCaps,
    CpuMeshLut,
    LutInitParams,
    LutTask,
    build_accelerator,
    list_accelerators,
)
from lensremap.buffers import aligned_empty
from lensremap.camera import CameraModel
from lensremap.errors import (
    AcceleratorContextLostError,
    AcceleratorInitError,
    AcceleratorRuntimeError,
    BackendCapabilityError,
    ConfigurationError,
)
from lensremap.frames import FrameBuffer, PixelFormat, VideoInfo
from lensremap.maps import DenseMap, generate_dense_map
from lensremap.mesh import expand_mesh, reduce_dense_map


def _random_frame(info, seed=0):
    rng = np.random.default_rng(seed)
    memory = rng.integers(0, 256, size=sum(r * b for r, b in info.plane_shapes()), dtype=np.uint8)
    return FrameBuffer.wrap(memory, info)


def _destination(params):
    return params.dst.wrap(aligned_empty(params.dst.nbytes, zero=True))


class TestAcceleratorCaps(unittest.TestCase):
    def test_defaults(self):
        caps = AcceleratorCaps()
        assert caps.src_stride_alignment == 64
        assert caps.src_height_alignment == 2
        assert caps.dst_stride_alignment == 16
        assert caps.dst_height_alignment == 8
        caps.check_format(PixelFormat.NV12)
        with self.assertRaises(BackendCapabilityError):
            caps.check_format(PixelFormat.BGR)

    def test_init_params_for_info(self):
        params = LutInitParams.for_info(VideoInfo(100, 50, "NV12"), AcceleratorCaps())
        assert params.src_stride == 128
        assert params.src_height_stride == 50
        assert params.dst.stride == 112
        assert params.dst.height_stride == 56


class TestCpuMeshLut(unittest.TestCase):
    def test_identity_mesh_leaves_frame_unchanged(self):
        # width - 1 and height - 1 are multiples of the steps, so every
        # fringe node of the identity mesh is exact.
        info = VideoInfo(65, 33, "BGR")
        mesh = reduce_dense_map(DenseMap.identity(65, 33), 16, 8)
        frame = _random_frame(info)

        lut = CpuMeshLut()
        params = LutInitParams.for_info(info, lut.capabilities)
        context = lut.init(params)
        dst = _destination(params)
        lut.run(context, LutTask(frame, dst, mesh))

        assert dst.tobytes() == frame.tobytes()
        assert context.tasks_run == 1

    def test_matches_dense_remap_of_expanded_mesh(self):
        info = VideoInfo(96, 64, "NV12")
        dense = generate_dense_map(CameraModel(fx=90, fy=90, cx=48, cy=32, k1=-0.3), 96, 64)
        mesh = reduce_dense_map(dense, 16, 8)
        frame = _random_frame(info, seed=1)

        lut = CpuMeshLut()
        params = LutInitParams.for_info(info, lut.capabilities)
        context = lut.init(params)
        dst = _destination(params)
        lut.run(context, LutTask(frame, dst, mesh))

        expanded = expand_mesh(mesh)
        expected_luma = cv2.remap(
            np.ascontiguousarray(frame.luma()),
            expanded.map_x,
            expanded.map_y,
            interpolation=cv2.INTER_LINEAR,
            borderMode=cv2.BORDER_REPLICATE,
        )
        assert np.array_equal(dst.luma(), expected_luma)
        assert dst.chroma().shape == (32, 48, 2)

    def test_init_rejects_unsupported_format(self):
        lut = CpuMeshLut(AcceleratorCaps())
        params = LutInitParams.for_info(VideoInfo(64, 32, "BGR"), lut.capabilities)
        with self.assertRaises(AcceleratorInitError):
            lut.init(params)

    def test_run_after_deinit(self):
        info = VideoInfo(64, 32, "NV12")
        lut = CpuMeshLut()
        params = LutInitParams.for_info(info, lut.capabilities)
        context = lut.init(params)
        lut.deinit(context)
        mesh = reduce_dense_map(DenseMap.identity(64, 32))
        with self.assertRaises(AcceleratorContextLostError):
            lut.run(context, LutTask(_random_frame(info), _destination(params), mesh))

    def test_run_rejects_foreign_geometry(self):
        info = VideoInfo(64, 32, "NV12")
        lut = CpuMeshLut()
        params = LutInitParams.for_info(info, lut.capabilities)
        context = lut.init(params)
        mesh = reduce_dense_map(DenseMap.identity(32, 32))
        with self.assertRaises(AcceleratorRuntimeError):
            lut.run(context, LutTask(_random_frame(info), _destination(params), mesh))
        other = VideoInfo(32, 32, "NV12")
        with self.assertRaises(AcceleratorRuntimeError):
            lut.run(context, LutTask(_random_frame(other), _destination(params), mesh))


class TestBuildAccelerator(unittest.TestCase):
    def test_cpu(self):
        assert isinstance(build_accelerator("CPU"), CpuMeshLut)
        assert "cpu" in list_accelerators()

    def test_unknown(self):
        with self.assertRaises(ConfigurationError):
            build_accelerator("fpga")
