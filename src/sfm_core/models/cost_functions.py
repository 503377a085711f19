"""
Residual functions handed to the nonlinear least-squares solver.

The forward projection models live here so that a camera's `project` and the
residuals built from it evaluate the very same formula. Residuals are written
with torch operations in float64 and differentiated with autograd, so the
solver gets exact Jacobians for every parameter block.
"""

from functools import partial
from typing import Callable, Sequence, Tuple
import logging

import numpy as np
import torch

from ..utils.geometry_utils import angle_axis_rotate_point, hnormalize

logger = logging.getLogger(__name__)

# Parameter layout shared by the standard camera variants
ROT_IDX = 0
C_IDX = 3
F_IDX = 6
RAD_IDX = 7

ForwardModel = Callable[[torch.Tensor, torch.Tensor], torch.Tensor]


def _to_tensor(values) -> torch.Tensor:
    return torch.as_tensor(np.asarray(values, dtype=np.float64))


def standard_projection(params: torch.Tensor, point: torch.Tensor, x0: torch.Tensor) -> torch.Tensor:
    """Pinhole projection with parameters [rotation(3), center(3), focal(1)]."""
    rot = params[ROT_IDX:ROT_IDX + 3]
    C = params[C_IDX:C_IDX + 3]
    f = params[F_IDX]
    pt_cam = hnormalize(angle_axis_rotate_point(rot, point - C))
    return f * pt_cam + x0


def radial_projection(params: torch.Tensor, point: torch.Tensor, x0: torch.Tensor) -> torch.Tensor:
    """Pinhole projection with two radial distortion terms appended to the standard layout."""
    rot = params[ROT_IDX:ROT_IDX + 3]
    C = params[C_IDX:C_IDX + 3]
    f = params[F_IDX]
    k1 = params[RAD_IDX]
    k2 = params[RAD_IDX + 1]
    pt_cam = hnormalize(angle_axis_rotate_point(rot, point - C))
    r2 = torch.dot(pt_cam, pt_cam)
    distortion = 1.0 + r2 * (k1 + r2 * k2)
    return f * distortion * pt_cam + x0


def make_forward_model(projection: Callable, x0: np.ndarray) -> ForwardModel:
    """Bind a fixed principal point to a projection function."""
    return partial(projection, x0=_to_tensor(x0).clone())


class ReprojectionError:
    """
    Reprojection residual of one observation.

    Evaluates `project(camera_params, point) - key`. Parameter blocks are the
    full camera parameter vector and the 3D point.
    """

    num_residuals = 2

    def __init__(self, key: Sequence[float], forward_model: ForwardModel, n_params: int):
        """
        Args:
            key: Observed (x, y) pixel coordinates
            forward_model: Projection function of (camera params, point)
            n_params: Size of the camera parameter block
        """
        self.key = np.array(key, dtype=np.float64).reshape(2)
        self._key_t = _to_tensor(self.key)
        self._forward_model = forward_model
        self.parameter_block_sizes = (n_params, 3)

    def _residual(self, params: torch.Tensor, point: torch.Tensor) -> torch.Tensor:
        return self._forward_model(params, point) - self._key_t

    def _check_blocks(self, camera_params, point) -> Tuple[torch.Tensor, torch.Tensor]:
        params_t = _to_tensor(camera_params).reshape(-1)
        point_t = _to_tensor(point).reshape(-1)
        if params_t.numel() != self.parameter_block_sizes[0] or point_t.numel() != 3:
            raise ValueError(f"Expected parameter blocks of sizes {self.parameter_block_sizes}, "
                             f"got ({params_t.numel()}, {point_t.numel()})")
        return params_t, point_t

    def __call__(self, camera_params, point) -> np.ndarray:
        params_t, point_t = self._check_blocks(camera_params, point)
        with torch.no_grad():
            return self._residual(params_t, point_t).numpy()

    def jacobians(self, camera_params, point) -> Tuple[np.ndarray, np.ndarray]:
        """
        Jacobians of the residual with respect to both parameter blocks.

        Returns:
            J_cam: (2, n_params)
            J_point: (2, 3)
        """
        params_t, point_t = self._check_blocks(camera_params, point)
        J_cam, J_point = torch.autograd.functional.jacobian(self._residual, (params_t, point_t))
        return J_cam.numpy(), J_point.numpy()


class ParamsConstraintsCost:
    """
    Soft prior on camera parameters.

    Produces `weight_i * (param_i - target_i)` for every parameter with a
    nonzero weight.
    """

    def __init__(self, targets: Sequence[float], weights: Sequence[float]):
        targets = np.array(targets, dtype=np.float64)
        weights = np.array(weights, dtype=np.float64)
        if targets.shape != weights.shape:
            raise ValueError(f"Targets {targets.shape} and weights {weights.shape} differ in shape")

        self.active = np.flatnonzero(weights)
        self.targets = targets[self.active]
        self.weights = weights[self.active]
        self.parameter_block_sizes = (len(targets),)
        self.num_residuals = len(self.active)

    def __call__(self, camera_params) -> np.ndarray:
        params = np.asarray(camera_params, dtype=np.float64).reshape(-1)
        if params.size != self.parameter_block_sizes[0]:
            raise ValueError(f"Expected {self.parameter_block_sizes[0]} parameters, got {params.size}")
        return self.weights * (params[self.active] - self.targets)

    def jacobian(self, camera_params) -> np.ndarray:
        """(num_residuals, n_params) Jacobian; constant in the parameters."""
        J = np.zeros((self.num_residuals, self.parameter_block_sizes[0]))
        J[np.arange(self.num_residuals), self.active] = self.weights
        return J
