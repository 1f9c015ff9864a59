"""Imports for package lensremap."""

from lensremap.camera import CameraModel
from lensremap.config import UndistortConfig, load_config
from lensremap.errors import LensRemapError
from lensremap.filter import UndistortFilter, undistort_image
from lensremap.frames import FrameBuffer, PixelFormat, VideoInfo
from lensremap.maps import DenseMap, generate_dense_map
from lensremap.mesh import Mesh, MeshConstraints, expand_mesh, reduce_dense_map
from lensremap.remappers import FlowReturn

import lensremap.accelerators as accelerators
import lensremap.buffers as buffers
import lensremap.errors as errors
import lensremap.remappers as remappers

__version__ = "0.1.0"
