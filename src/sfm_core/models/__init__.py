"""Data models, camera models and residual functions."""

from .data_models import NViewMatch, SplitNViewMatch, PointData, CameraPair
from .camera_model import (
    Camera,
    StandardCamera,
    StandardCameraRadial,
    InvalidCameraError,
    create_camera,
)
from .cost_functions import ReprojectionError, ParamsConstraintsCost

__all__ = [
    'NViewMatch',
    'SplitNViewMatch',
    'PointData',
    'CameraPair',
    'Camera',
    'StandardCamera',
    'StandardCameraRadial',
    'InvalidCameraError',
    'create_camera',
    'ReprojectionError',
    'ParamsConstraintsCost',
]
