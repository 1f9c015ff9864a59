import unittest

import numpy as np

from lensremap.camera import CameraModel
from lensremap.errors import BackendCapabilityError, ConfigurationError
from lensremap.maps import DenseMap, generate_dense_map
from lensremap.mesh import (
    DEFAULT_STEP_X,
    DEFAULT_STEP_Y,
    MeshConstraints,
    expand_mesh,
    iter_fringe_nodes,
    mesh_size,
    reduce_dense_map,
)


# Coefficients of the synthetic affine maps x = ax*u + bx*v + cx, y = ay*u + by*v + cy.
_AX, _BX, _CX = 1.5, 0.25, 3.0
_AY, _BY, _CY = 0.5, 2.0, -1.0


def _affine_x(u, v):
    return _AX * u + _BX * v + _CX


def _affine_y(u, v):
    return _AY * u + _BY * v + _CY


def _affine_dense(width, height):
    u, v = np.meshgrid(np.arange(width, dtype=np.float64), np.arange(height, dtype=np.float64))
    return DenseMap(
        _affine_x(u, v).astype(np.float32),
        _affine_y(u, v).astype(np.float32),
    )


class TestMeshSize(unittest.TestCase):
    def test_defaults(self):
        assert DEFAULT_STEP_X == 16
        assert DEFAULT_STEP_Y == 8

    def test_sizes(self):
        assert mesh_size(1280, 720, 16, 8) == (81, 91)
        assert mesh_size(100, 50, 16, 8) == (8, 8)
        assert mesh_size(97, 49, 16, 8) == (8, 8)
        assert mesh_size(1, 1, 16, 8) == (2, 2)


class TestReduceDenseMap(unittest.TestCase):
    def test_interior_nodes_equal_dense_map(self):
        dense = generate_dense_map(
            CameraModel(fx=800, fy=800, cx=640, cy=360, k1=-0.2, k2=0.1), 1280, 720
        )
        mesh = reduce_dense_map(dense)
        assert (mesh.width, mesh.height) == (81, 91)
        inner = mesh.xy[: mesh.height - 1, : mesh.width - 1]
        assert np.array_equal(inner[..., 0], dense.map_x[::8, ::16])
        assert np.array_equal(inner[..., 1], dense.map_y[::8, ::16])

    def test_affine_fringe_is_exact(self):
        for width, height in [(100, 50), (97, 49), (1280, 720), (33, 17)]:
            with self.subTest(width=width, height=height):
                mesh = reduce_dense_map(_affine_dense(width, height), 16, 8)
                fringe = list(iter_fringe_nodes(mesh))
                corner = (mesh.height - 1, mesh.width - 1)
                assert fringe[-1] == corner
                for mesh_row, mesh_col in fringe[:-1]:
                    u, v = mesh_col * 16, mesh_row * 8
                    assert np.isclose(mesh.x[mesh_row, mesh_col], _affine_x(u, v), atol=1e-3)
                    assert np.isclose(mesh.y[mesh_row, mesh_col], _affine_y(u, v), atol=1e-3)

    def test_corner_extrapolates_from_bottom_fringe(self):
        width, height = 100, 50
        dense = _affine_dense(width, height)
        mesh = reduce_dense_map(dense, 16, 8)

        # The corner takes the right-border rule within the last mesh row,
        # reading the already extrapolated bottom node next to it.
        last_col = (mesh.width - 2) * 16
        a = (width - 1) - last_col
        b = (mesh.width - 1) * 16 - (width - 1)
        for channel, dense_channel in enumerate((dense.map_x, dense.map_y)):
            neighbour = mesh.xy[mesh.height - 1, mesh.width - 2, channel]
            expected = (16 * dense_channel[height - 1, width - 1] - b * neighbour) / a
            assert np.isclose(mesh.xy[mesh.height - 1, mesh.width - 1, channel], expected, atol=1e-3)

    def test_corner_differs_from_affine_value_with_vertical_slope(self):
        mesh = reduce_dense_map(_affine_dense(100, 50), 16, 8)
        u, v = (mesh.width - 1) * 16, (mesh.height - 1) * 8
        assert not np.isclose(mesh.y[-1, -1], _affine_y(u, v), atol=1e-1)

    def test_last_sample_on_edge_continues_slope(self):
        # width - 1 and height - 1 are multiples of the steps.
        mesh = reduce_dense_map(_affine_dense(97, 49), 16, 8)
        assert np.isclose(mesh.x[0, -1], _affine_x(112, 0), atol=1e-3)
        assert np.isclose(mesh.y[-1, 0], _affine_y(0, 56), atol=1e-3)
        assert np.isclose(mesh.x[-1, -1], _affine_x(112, 56), atol=1e-3)
        assert np.isclose(mesh.y[-1, -1], _affine_y(112, 56), atol=1e-3)

    def test_single_pixel_frame(self):
        dense = DenseMap(np.full((1, 1), 3.0, np.float32), np.full((1, 1), 4.0, np.float32))
        mesh = reduce_dense_map(dense, 16, 8)
        assert np.allclose(mesh.x, 3.0)
        assert np.allclose(mesh.y, 4.0)

    def test_alignment_constraints_pad_the_stride(self):
        constraints = MeshConstraints(width_alignment=16, height_alignment=4)
        mesh = reduce_dense_map(_affine_dense(100, 50), 16, 8, constraints)
        assert (mesh.width, mesh.height) == (8, 8)
        assert mesh.stride == 16
        assert mesh.height_stride == 8
        assert mesh.merged().size == 16 * 8 * 2
        assert mesh.merged().dtype == np.float32
        assert np.all(mesh.nodes[:, mesh.width:] == 0)

    def test_merged_is_interleaved(self):
        mesh = reduce_dense_map(_affine_dense(100, 50), 16, 8)
        merged = mesh.merged()
        assert merged[0] == mesh.x[0, 0]
        assert merged[1] == mesh.y[0, 0]
        assert merged[2] == mesh.x[0, 1]

    def test_rejected_step(self):
        constraints = MeshConstraints(allowed_steps_x=(16, 32), allowed_steps_y=(8,))
        with self.assertRaises(BackendCapabilityError):
            reduce_dense_map(_affine_dense(100, 50), 8, 8, constraints)

    def test_invalid_step(self):
        with self.assertRaises(ConfigurationError):
            reduce_dense_map(_affine_dense(100, 50), 0, 8)


class TestExpandMesh(unittest.TestCase):
    def test_reproduces_dense_map_at_borders(self):
        dense = generate_dense_map(
            CameraModel(fx=300, fy=300, cx=160, cy=90, k1=-0.3, k2=0.1), 330, 185
        )
        expanded = expand_mesh(reduce_dense_map(dense, 16, 8))
        assert expanded.shape == dense.shape
        rows = np.arange(0, 185 - 1, 8)
        cols = np.arange(0, 330, 16)
        # Last column at node rows, last row at node columns.
        assert np.allclose(expanded.map_x[rows, -1], dense.map_x[rows, -1], atol=1e-2)
        assert np.allclose(expanded.map_y[rows, -1], dense.map_y[rows, -1], atol=1e-2)
        assert np.allclose(expanded.map_x[-1, cols], dense.map_x[-1, cols], atol=1e-2)
        assert np.allclose(expanded.map_y[-1, cols], dense.map_y[-1, cols], atol=1e-2)

    def test_interior_nodes(self):
        dense = _affine_dense(100, 50)
        expanded = expand_mesh(reduce_dense_map(dense, 16, 8))
        assert np.allclose(expanded.map_x[:49:8, :97:16], dense.map_x[:49:8, :97:16])

    def test_affine_map_away_from_corner_block(self):
        dense = _affine_dense(100, 50)
        expanded = expand_mesh(reduce_dense_map(dense, 16, 8))
        assert np.allclose(expanded.map_x[:48], dense.map_x[:48], atol=1e-3)
        assert np.allclose(expanded.map_y[:, :96], dense.map_y[:, :96], atol=1e-3)

    def test_rejects_larger_frame(self):
        mesh = reduce_dense_map(_affine_dense(100, 50), 16, 8)
        with self.assertRaises(ValueError):
            expand_mesh(mesh, 200, 50)
