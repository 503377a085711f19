"""Utility modules for the SfM core."""

from .config_manager import (
    ConfigManager,
    SfMConfig,
    SiftOptions,
    CameraConfig,
    BundleAdjustmentConfig,
)
from .geometry_utils import (
    angle_axis_rotate_point,
    approximate_inverse_radial_distortion,
    decompose_projection_matrix,
)
from .image_utils import find_images, get_img_dims
from .log_utils import setup_logging

__all__ = [
    "ConfigManager",
    "SfMConfig",
    "SiftOptions",
    "CameraConfig",
    "BundleAdjustmentConfig",
    "angle_axis_rotate_point",
    "approximate_inverse_radial_distortion",
    "decompose_projection_matrix",
    "find_images",
    "get_img_dims",
    "setup_logging",
]
