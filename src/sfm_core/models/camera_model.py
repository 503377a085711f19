"""
Camera models for incremental SfM.

This module provides the camera hierarchy whose parameters are refined by
bundle adjustment:
- Camera: image identity and feature storage
- StandardCamera: axis-angle rotation, center and a single focal length
- StandardCameraRadial: StandardCamera with two radial distortion terms
"""

import copy
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Sequence, Tuple, Union

import numpy as np
import torch
from scipy.spatial.transform import Rotation

from ..utils.config_manager import CameraConfig
from ..utils.geometry_utils import approximate_inverse_radial_distortion, decompose_projection_matrix
from ..utils.image_utils import get_img_dims
from .cost_functions import (
    ParamsConstraintsCost,
    ReprojectionError,
    make_forward_model,
    radial_projection,
    standard_projection,
    ROT_IDX,
    C_IDX,
    F_IDX,
    RAD_IDX,
)

logger = logging.getLogger(__name__)


class InvalidCameraError(RuntimeError):
    """Raised when geometry is requested from a camera whose image could not be probed."""


class Camera(ABC):
    """Image identity plus the features detected in it"""

    def __init__(self,
                 img_filename: Union[str, Path],
                 img_width: Optional[int] = None,
                 img_height: Optional[int] = None):
        """
        Args:
            img_filename: Path to the image
            img_width: Image width in pixels; probed from the file if None
            img_height: Image height in pixels; probed from the file if None
        """
        self._img_filename = str(img_filename)

        if img_width is not None and img_height is not None:
            self._img_width, self._img_height = int(img_width), int(img_height)
        else:
            try:
                self._img_width, self._img_height = get_img_dims(self._img_filename)
            except OSError as e:
                logger.error(f"Could not read image dimensions of {self._img_filename}: {e}")
                self._img_width, self._img_height = -1, -1

        self._keys = np.zeros((0, 2))
        self._scales = np.zeros((0,))
        self._orientations = np.zeros((0,))
        self._descr = np.zeros((0, 0), dtype=np.float32)

    @property
    def img_filename(self) -> str:
        return self._img_filename

    @property
    def img_width(self) -> int:
        return self._img_width

    @property
    def img_height(self) -> int:
        return self._img_height

    def is_valid(self) -> bool:
        """False if the image dimensions could not be determined."""
        return self._img_width > 0 and self._img_height > 0

    def _check_valid(self) -> None:
        if not self.is_valid():
            raise InvalidCameraError(f"Camera for {self._img_filename} has no valid image dimensions")

    # Features

    def resize_features(self, num: int, dim: int) -> None:
        """Allocate storage for `num` zero-initialized features of descriptor size `dim`."""
        self._keys = np.zeros((num, 2))
        self._scales = np.zeros((num,))
        self._orientations = np.zeros((num,))
        self._descr = np.zeros((num, dim), dtype=np.float32)

    def add_feature(self, x: float, y: float, descr: Sequence[float],
                    scale: float = 0.0, orientation: float = 0.0) -> None:
        """Append one feature."""
        descr = np.asarray(descr, dtype=np.float32).reshape(1, -1)
        if self.num_features() == 0 and self._descr.shape[1] == 0:
            self._descr = np.zeros((0, descr.shape[1]), dtype=np.float32)
        elif descr.shape[1] != self._descr.shape[1]:
            raise ValueError(f"Descriptor size {descr.shape[1]} does not match {self._descr.shape[1]}")

        self._keys = np.vstack([self._keys, [[x, y]]])
        self._scales = np.append(self._scales, scale)
        self._orientations = np.append(self._orientations, orientation)
        self._descr = np.vstack([self._descr, descr])

    def set_feature(self, i: int, x: float, y: float, scale: float, orientation: float,
                    descr: Sequence[float]) -> None:
        """Overwrite feature `i` of storage allocated by `resize_features`."""
        self._keys[i] = (x, y)
        self._scales[i] = scale
        self._orientations[i] = orientation
        self._descr[i] = descr

    def set_features(self, keys: np.ndarray, descr: np.ndarray) -> None:
        """
        Replace all features at once.

        Args:
            keys: (N, 4) array of [x, y, scale, orientation]
            descr: (N, D) descriptors
        """
        keys = np.asarray(keys, dtype=np.float64).reshape(-1, 4)
        descr = np.asarray(descr, dtype=np.float32)
        if len(descr) != len(keys):
            raise ValueError(f"Got {len(descr)} descriptors for {len(keys)} keypoints")
        self._keys = keys[:, :2].copy()
        self._scales = keys[:, 2].copy()
        self._orientations = keys[:, 3].copy()
        self._descr = descr.reshape(len(keys), -1).copy()

    def clear_descriptors(self) -> None:
        """Free descriptor memory; keypoints are kept."""
        self._descr = np.zeros((0, 0), dtype=np.float32)

    def num_features(self) -> int:
        return len(self._keys)

    @property
    def keys(self) -> np.ndarray:
        return self._keys

    def key(self, i: int) -> np.ndarray:
        return self._keys[i]

    @property
    def scales(self) -> np.ndarray:
        return self._scales

    @property
    def orientations(self) -> np.ndarray:
        return self._orientations

    @property
    def descr(self) -> np.ndarray:
        return self._descr

    # Geometry

    @abstractmethod
    def project(self, point: Sequence[float]) -> np.ndarray:
        """Project a 3D point to pixel coordinates."""

    @abstractmethod
    def key_normalized(self, i: int) -> np.ndarray:
        """Keypoint `i` mapped back to the normalized image plane."""

    @abstractmethod
    def params(self) -> np.ndarray:
        """Parameter vector in the variant's fixed layout."""

    @abstractmethod
    def set_params(self, params: Sequence[float]) -> None:
        """Inverse of `params`."""

    @abstractmethod
    def set_params_from_projection(self, P: np.ndarray) -> None:
        """Initialize the parameters from a 3x4 projection matrix."""

    @abstractmethod
    def cost_function(self, key_idx: int) -> ReprojectionError:
        """Reprojection residual of keypoint `key_idx`."""

    @abstractmethod
    def constraints_cost_function(self) -> Optional[ParamsConstraintsCost]:
        """Residual of the soft parameter priors, None if there are none."""

    def clone(self) -> 'Camera':
        """Deep, independent copy."""
        return copy.deepcopy(self)

    def __repr__(self) -> str:
        return (f"{type(self).__name__}({self._img_filename!r}, "
                f"{self._img_width}x{self._img_height}, features={self.num_features()})")


class StandardCamera(Camera):
    """
    Pinhole camera with axis-angle rotation, center and a single focal length.

    Parameter layout: [rotation(3), center(3), focal(1)]. The principal point
    is fixed to the image center.
    """

    ROT_IDX = ROT_IDX
    C_IDX = C_IDX
    F_IDX = F_IDX
    N_PARAMS = 7

    _projection = staticmethod(standard_projection)

    def __init__(self,
                 img_filename: Union[str, Path],
                 img_width: Optional[int] = None,
                 img_height: Optional[int] = None):
        super().__init__(img_filename, img_width, img_height)
        self._rot = np.zeros(3)
        self._C = np.zeros(3)
        self._f = 0.0

        # assume the image center to be the principal point
        self._x0 = np.array([0.5 * (self.img_width - 1), 0.5 * (self.img_height - 1)])

        self._params_constraints = np.zeros(self.N_PARAMS)
        self._params_constraints_weights = np.zeros(self.N_PARAMS)

    @property
    def rot(self) -> np.ndarray:
        """Axis-angle rotation vector."""
        return self._rot.copy()

    @property
    def C(self) -> np.ndarray:
        return self._C.copy()

    @property
    def f(self) -> float:
        return self._f

    @property
    def x0(self) -> np.ndarray:
        return self._x0.copy()

    def set_focal(self, f: float) -> None:
        self._f = float(f)

    def set_rotation(self, R: np.ndarray) -> None:
        self._rot = Rotation.from_matrix(np.asarray(R, dtype=np.float64)).as_rotvec()

    def set_C(self, C: Sequence[float]) -> None:
        self._C = np.array(C, dtype=np.float64).reshape(3)

    def constrain_focal(self, constraint: float, weight: float) -> None:
        self._params_constraints[self.F_IDX] = constraint
        self._params_constraints_weights[self.F_IDX] = weight

    def set_params_constraints(self, constraints: Sequence[float], weights: Sequence[float]) -> None:
        constraints = np.array(constraints, dtype=np.float64).reshape(-1)
        weights = np.array(weights, dtype=np.float64).reshape(-1)
        if len(constraints) != self.N_PARAMS or len(weights) != self.N_PARAMS:
            raise ValueError(f"Expected {self.N_PARAMS} constraints and weights, "
                             f"got {len(constraints)} and {len(weights)}")
        self._params_constraints = constraints
        self._params_constraints_weights = weights

    @property
    def params_constraints(self) -> Tuple[np.ndarray, np.ndarray]:
        """(targets, weights)"""
        return self._params_constraints.copy(), self._params_constraints_weights.copy()

    def R(self) -> np.ndarray:
        return Rotation.from_rotvec(self._rot).as_matrix()

    def K(self) -> np.ndarray:
        K = np.eye(3)
        K[0, 0] = K[1, 1] = self._f
        K[:2, 2] = self._x0
        return K

    def pose(self) -> np.ndarray:
        """3x4 world-to-camera transform R [I | -C]."""
        return self.R() @ np.hstack([np.eye(3), -self._C.reshape(3, 1)])

    def P(self) -> np.ndarray:
        return self.K() @ self.pose()

    def _forward_model(self):
        return make_forward_model(self._projection, self._x0)

    def project(self, point: Sequence[float]) -> np.ndarray:
        self._check_valid()
        params_t = torch.as_tensor(self.params())
        point_t = torch.as_tensor(np.asarray(point, dtype=np.float64).reshape(3))
        with torch.no_grad():
            return self._forward_model()(params_t, point_t).numpy()

    def key_normalized(self, i: int) -> np.ndarray:
        return (self.key(i) - self._x0) / self._f

    def params(self) -> np.ndarray:
        return np.concatenate([self._rot, self._C, [self._f]])

    def _check_params_size(self, params: np.ndarray) -> None:
        if params.size != self.N_PARAMS:
            raise ValueError(f"{type(self).__name__} expects {self.N_PARAMS} parameters, got {params.size}")

    def set_params(self, params: Sequence[float]) -> None:
        params = np.asarray(params, dtype=np.float64).reshape(-1)
        self._check_params_size(params)
        self._rot = params[self.ROT_IDX:self.ROT_IDX + 3].copy()
        self._C = params[self.C_IDX:self.C_IDX + 3].copy()
        self._f = float(params[self.F_IDX])

    def set_params_from_projection(self, P: np.ndarray) -> None:
        K, R, C = decompose_projection_matrix(P)
        self._f = 0.5 * (K[0, 0] + K[1, 1])
        self._C = C
        self.set_rotation(R)

    def cost_function(self, key_idx: int) -> ReprojectionError:
        self._check_valid()
        return ReprojectionError(self.key(key_idx), self._forward_model(), self.N_PARAMS)

    def constraints_cost_function(self) -> Optional[ParamsConstraintsCost]:
        if not np.any(self._params_constraints_weights):
            return None
        return ParamsConstraintsCost(self._params_constraints, self._params_constraints_weights)


class StandardCameraRadial(StandardCamera):
    """
    StandardCamera with radial distortion 1 + k1 r^2 + k2 r^4.

    Parameter layout: [rotation(3), center(3), focal(1), k1, k2]. The inverse
    distortion used by `key_normalized` is a 4-term polynomial fitted whenever
    the forward parameters change; its largest radius error over the image is
    kept in `inverse_distortion_error`.
    """

    RAD_IDX = RAD_IDX
    N_PARAMS = 9
    N_INV_RAD_PARAMS = 4

    _projection = staticmethod(radial_projection)

    def __init__(self,
                 img_filename: Union[str, Path],
                 img_width: Optional[int] = None,
                 img_height: Optional[int] = None,
                 config: Optional[CameraConfig] = None):
        super().__init__(img_filename, img_width, img_height)
        self.config = config or CameraConfig()
        self._rad_params = np.zeros(2)
        self._inv_rad_params = np.zeros(self.N_INV_RAD_PARAMS)
        self.inverse_distortion_error = 0.0

    @property
    def rad_params(self) -> np.ndarray:
        return self._rad_params.copy()

    @property
    def inv_rad_params(self) -> np.ndarray:
        return self._inv_rad_params.copy()

    def constrain_radial(self, constraints: Sequence[float], weights: Sequence[float]) -> None:
        self._params_constraints[self.RAD_IDX:self.RAD_IDX + 2] = constraints
        self._params_constraints_weights[self.RAD_IDX:self.RAD_IDX + 2] = weights

    def set_radial(self, k1: float, k2: float) -> None:
        self._rad_params = np.array([k1, k2], dtype=np.float64)
        self._update_inverse_rad_params()

    def set_focal(self, f: float) -> None:
        super().set_focal(f)
        self._update_inverse_rad_params()

    def max_radius(self) -> float:
        """Normalized radius of the image corner farthest from the principal point."""
        if self._f == 0.0:
            return 0.0
        x_max = self.img_width - self._x0[0]
        y_max = self.img_height - self._x0[1]
        return float(np.hypot(x_max, y_max) / abs(self._f))

    def _update_inverse_rad_params(self) -> None:
        forward = [0.0, self._rad_params[0], 0.0, self._rad_params[1]]
        self._inv_rad_params, self.inverse_distortion_error = approximate_inverse_radial_distortion(
            forward, self.N_INV_RAD_PARAMS, self.max_radius(),
            n_samples=self.config.inverse_distortion_samples
        )
        if self.inverse_distortion_error > self.config.inverse_distortion_tolerance:
            logger.warning(f"Inverse distortion of {self.img_filename} approximated with error "
                           f"{self.inverse_distortion_error:.2e} > tolerance "
                           f"{self.config.inverse_distortion_tolerance:.2e} "
                           f"(k1={self._rad_params[0]:.4g}, k2={self._rad_params[1]:.4g})")

    def key_normalized(self, i: int) -> np.ndarray:
        distorted = super().key_normalized(i)
        radius = np.linalg.norm(distorted)
        b = self._inv_rad_params
        undistort_factor = 1.0 + radius * (b[0] + radius * (b[1] + radius * (b[2] + radius * b[3])))
        return undistort_factor * distorted

    def params(self) -> np.ndarray:
        return np.concatenate([super().params(), self._rad_params])

    def set_params(self, params: Sequence[float]) -> None:
        params = np.asarray(params, dtype=np.float64).reshape(-1)
        super().set_params(params)
        self._rad_params = params[self.RAD_IDX:self.RAD_IDX + 2].copy()
        self._update_inverse_rad_params()

    def set_params_from_projection(self, P: np.ndarray) -> None:
        super().set_params_from_projection(P)
        self._rad_params = np.zeros(2)
        self._inv_rad_params = np.zeros(self.N_INV_RAD_PARAMS)
        self.inverse_distortion_error = 0.0


CAMERA_TYPES = {
    'standard': StandardCamera,
    'radial': StandardCameraRadial,
}


def create_camera(img_filename: Union[str, Path],
                  config: Optional[CameraConfig] = None,
                  img_width: Optional[int] = None,
                  img_height: Optional[int] = None) -> StandardCamera:
    """Create a camera of the configured type."""
    config = config or CameraConfig()
    if config.camera_type == 'radial':
        return StandardCameraRadial(img_filename, img_width, img_height, config=config)
    return CAMERA_TYPES[config.camera_type](img_filename, img_width, img_height)
