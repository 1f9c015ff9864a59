"""Reduction of dense undistortion maps to coarse lookup meshes.

Fixed-function remapping hardware does not consume one coordinate per pixel.
It reads a coarse grid of ``(x, y)`` source coordinates sampled every
``step_x`` columns and ``step_y`` rows and interpolates bilinearly between
the nodes. To cover the last image column and row the grid carries one
extra column and row whose values are linearly extrapolated so that
interpolation at the image border reproduces the dense map there.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable
from dataclasses import dataclass

import numpy as np

from lensremap.errors import AllocationError, BackendCapabilityError
from lensremap.maps import DenseMap
from lensremap.validation import assert_positive_int

_LOGGER = logging.getLogger(__name__)

DEFAULT_STEP_X = 16
DEFAULT_STEP_Y = 8


@dataclass(frozen=True)
class MeshConstraints:
    """Layout requirements a lookup-table engine places on its mesh.

    Attributes
    ----------
    width_alignment, height_alignment : int
        The allocated mesh row length (stride) and row count are rounded up
        to multiples of these.
    allowed_steps_x, allowed_steps_y : None or tuple of int
        Sampling steps the engine accepts. ``None`` accepts any step.
    """

    width_alignment: int = 1
    height_alignment: int = 1
    allowed_steps_x: tuple[int, ...] | None = None
    allowed_steps_y: tuple[int, ...] | None = None

    def check_steps(self, step_x: int, step_y: int) -> None:
        for name, step, allowed in (
            ("step_x", step_x, self.allowed_steps_x),
            ("step_y", step_y, self.allowed_steps_y),
        ):
            if allowed is not None and step not in allowed:
                raise BackendCapabilityError(
                    f"Mesh {name}={step} is not supported, expected one of {list(allowed)}."
                )


def mesh_size(width: int, height: int, step_x: int, step_y: int) -> tuple[int, int]:
    """Return ``(mesh_w, mesh_h)`` for a frame size and sampling steps.

    The ``+ 2`` covers the node at column/row zero plus the extrapolated
    fringe beyond the last sampled column/row.

    """
    return (width - 1) // step_x + 2, (height - 1) // step_y + 2


def _round_up(value: int, multiple: int) -> int:
    return int(math.ceil(value / multiple) * multiple)


@dataclass(frozen=True, eq=False)
class Mesh:
    """Coarse grid of source coordinates.

    Attributes
    ----------
    nodes : numpy.ndarray
        ``float32`` array of shape ``(stride_h, stride_w, 2)`` holding the
        interleaved ``(x, y)`` pairs. Only the top-left ``(height, width)``
        window is meaningful, the rest is alignment padding.
    width, height : int
        Mesh size in nodes.
    step_x, step_y : int
        Sampling steps in pixels.
    frame_width, frame_height : int
        Size of the frame the mesh was reduced from.
    """

    nodes: np.ndarray
    width: int
    height: int
    step_x: int
    step_y: int
    frame_width: int
    frame_height: int

    @property
    def stride(self) -> int:
        return int(self.nodes.shape[1])

    @property
    def height_stride(self) -> int:
        return int(self.nodes.shape[0])

    @property
    def xy(self) -> np.ndarray:
        """View of the valid ``(height, width, 2)`` window."""
        return self.nodes[: self.height, : self.width]

    @property
    def x(self) -> np.ndarray:
        return self.xy[..., 0]

    @property
    def y(self) -> np.ndarray:
        return self.xy[..., 1]

    def merged(self) -> np.ndarray:
        """Return the nodes as one flat interleaved ``x0 y0 x1 y1 ...`` buffer.

        The buffer includes alignment padding, i.e. it has
        ``stride_h * stride_w * 2`` elements.

        """
        return self.nodes.reshape(-1)

    def matches(self, width: int, height: int) -> bool:
        return self.frame_width == width and self.frame_height == height


def _extrapolate(
    step: int,
    value_at_edge: np.ndarray | np.float32,
    value_at_last_sampled: np.ndarray | np.float32,
    value_before_last_sampled: np.ndarray | np.float32 | None,
    a: int,
    b: int,
) -> np.ndarray | np.float32:
    if a > 0:
        return (np.float32(step) * value_at_edge - np.float32(b) * value_at_last_sampled) / np.float32(a)
    # Last sampled node lies on the edge: continue the last interior slope.
    if value_before_last_sampled is None:
        return value_at_last_sampled
    return np.float32(2.0) * value_at_last_sampled - value_before_last_sampled


def reduce_dense_map(
    dense: DenseMap,
    step_x: int = DEFAULT_STEP_X,
    step_y: int = DEFAULT_STEP_Y,
    constraints: MeshConstraints | None = None,
) -> Mesh:
    """Sample a dense map into a mesh with extrapolated right/bottom fringe.

    Interior nodes copy ``dense[row, col]`` for ``row = j * step_y`` and
    ``col = i * step_x``. A node whose column lies beyond the image is
    extrapolated from the node at the last sampled column ``last_col`` and
    the dense value at the last image column::

        a = (width - 1) - last_col
        b = col - (width - 1)
        value = (step_x * dense[min(row, height - 1), width - 1] - b * mesh[j, last]) / a

    Nodes beyond the bottom edge use the symmetric rule with ``step_y``.
    Nodes are produced row by row, left to right, and the corner node is
    computed by the column rule from the already extrapolated bottom node
    of the same row.

    Parameters
    ----------
    dense : lensremap.maps.DenseMap
        Dense map to reduce.

    step_x, step_y : int, optional
        Sampling steps in pixels.

    constraints : None or MeshConstraints, optional
        Alignment and step requirements of the consuming engine.

    Returns
    -------
    Mesh
        The reduced mesh.

    """
    step_x = assert_positive_int(step_x, "step_x")
    step_y = assert_positive_int(step_y, "step_y")
    constraints = constraints if constraints is not None else MeshConstraints()
    constraints.check_steps(step_x, step_y)

    width, height = dense.width, dense.height
    mesh_w, mesh_h = mesh_size(width, height, step_x, step_y)
    stride_w = _round_up(mesh_w, constraints.width_alignment)
    stride_h = _round_up(mesh_h, constraints.height_alignment)

    try:
        nodes = np.zeros((stride_h, stride_w, 2), dtype=np.float32)
    except MemoryError as exc:
        raise AllocationError(
            f"Failed to allocate mesh of {stride_w}x{stride_h} nodes."
        ) from exc

    map_x, map_y = dense.map_x, dense.map_y

    # Every column but the last and every row but the last lie inside the image.
    inner_w, inner_h = mesh_w - 1, mesh_h - 1
    nodes[:inner_h, :inner_w, 0] = map_x[::step_y, ::step_x]
    nodes[:inner_h, :inner_w, 1] = map_y[::step_y, ::step_x]

    last_col = (inner_w - 1) * step_x
    last_row = (inner_h - 1) * step_y

    for mesh_row in range(mesh_h):
        row = mesh_row * step_y

        if row >= height:
            a = (height - 1) - last_row
            b = row - (height - 1)
            prev = nodes[inner_h - 2, :inner_w] if inner_h >= 2 else None
            for channel, dense_channel in enumerate((map_x, map_y)):
                nodes[mesh_row, :inner_w, channel] = _extrapolate(
                    step_y,
                    dense_channel[height - 1, 0:width:step_x],
                    nodes[inner_h - 1, :inner_w, channel],
                    prev[:, channel] if prev is not None else None,
                    a,
                    b,
                )

        col = inner_w * step_x
        a = (width - 1) - last_col
        b = col - (width - 1)
        edge_row = min(row, height - 1)
        for channel, dense_channel in enumerate((map_x, map_y)):
            nodes[mesh_row, inner_w, channel] = _extrapolate(
                step_x,
                dense_channel[edge_row, width - 1],
                nodes[mesh_row, inner_w - 1, channel],
                nodes[mesh_row, inner_w - 2, channel] if inner_w >= 2 else None,
                a,
                b,
            )

    _LOGGER.debug(
        "Reduced %dx%d dense map to %dx%d mesh (steps %d/%d, stride %d).",
        width,
        height,
        mesh_w,
        mesh_h,
        step_x,
        step_y,
        stride_w,
    )
    return Mesh(
        nodes=nodes,
        width=mesh_w,
        height=mesh_h,
        step_x=step_x,
        step_y=step_y,
        frame_width=width,
        frame_height=height,
    )


def _interpolation_weights(size: int, step: int) -> tuple[np.ndarray, np.ndarray]:
    pos = np.arange(size)
    idx = pos // step
    frac = (pos % step).astype(np.float64) / float(step)
    return idx, frac


def expand_mesh(mesh: Mesh, width: int | None = None, height: int | None = None) -> DenseMap:
    """Bilinearly interpolate a mesh back to one coordinate per pixel.

    This is the sampling a mesh-based lookup-table engine performs. At
    interior nodes and along the last image column/row the result equals
    the dense map the mesh was reduced from.

    """
    width = mesh.frame_width if width is None else width
    height = mesh.frame_height if height is None else height
    ix, tx = _interpolation_weights(width, mesh.step_x)
    iy, ty = _interpolation_weights(height, mesh.step_y)
    if ix[-1] + 1 >= mesh.width or iy[-1] + 1 >= mesh.height:
        raise ValueError(
            f"Mesh of {mesh.width}x{mesh.height} nodes does not cover a {width}x{height} frame."
        )

    xy = mesh.xy.astype(np.float64)
    tx = tx[np.newaxis, :, np.newaxis]
    ty = ty[:, np.newaxis, np.newaxis]
    top = xy[iy][:, ix] * (1.0 - tx) + xy[iy][:, ix + 1] * tx
    bottom = xy[iy + 1][:, ix] * (1.0 - tx) + xy[iy + 1][:, ix + 1] * tx
    dense = top * (1.0 - ty) + bottom * ty
    return DenseMap(
        np.ascontiguousarray(dense[..., 0], dtype=np.float32),
        np.ascontiguousarray(dense[..., 1], dtype=np.float32),
    )


def iter_fringe_nodes(mesh: Mesh) -> Iterable[tuple[int, int]]:
    """Yield ``(mesh_row, mesh_col)`` of all extrapolated nodes, row-major."""
    for mesh_row in range(mesh.height):
        if mesh_row * mesh.step_y >= mesh.frame_height:
            for mesh_col in range(mesh.width):
                yield mesh_row, mesh_col
        else:
            yield mesh_row, mesh.width - 1


__all__ = [
    "DEFAULT_STEP_X",
    "DEFAULT_STEP_Y",
    "Mesh",
    "MeshConstraints",
    "expand_mesh",
    "iter_fringe_nodes",
    "mesh_size",
    "reduce_dense_map",
]
