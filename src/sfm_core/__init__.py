"""
Bookkeeping and camera-modeling core for incremental Structure-from-Motion.

This package implements:
- Pinhole camera models with optional radial distortion and residuals for bundle adjustment
- A track store partitioning observations into reconstructed and pending cameras
- A dataset tying cameras, pairwise matches, tracks and registered cameras together
- Batched SIFT feature detection with a shared detector
"""

from .models import (
    Camera,
    StandardCamera,
    StandardCameraRadial,
    InvalidCameraError,
    NViewMatch,
    SplitNViewMatch,
    PointData,
    CameraPair,
)
from .core import (
    Points,
    Dataset,
    PairMap,
    detect_features,
    detect_features_single,
    BundleAdjuster,
)
from .utils import ConfigManager, SfMConfig, SiftOptions, setup_logging

__version__ = "0.1.0"

__all__ = [
    'Camera',
    'StandardCamera',
    'StandardCameraRadial',
    'InvalidCameraError',
    'NViewMatch',
    'SplitNViewMatch',
    'PointData',
    'CameraPair',
    'Points',
    'Dataset',
    'PairMap',
    'detect_features',
    'detect_features_single',
    'BundleAdjuster',
    'ConfigManager',
    'SfMConfig',
    'SiftOptions',
    'setup_logging',
]
