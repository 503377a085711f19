"""
Geometric utilities for the SfM core.

This module provides the rotation, projection-matrix and lens-distortion
helpers shared by the camera models.
"""

import numpy as np
import torch
from scipy.linalg import rq
from scipy.optimize import brentq
from typing import List, Optional, Sequence, Tuple, TypeVar
import logging

logger = logging.getLogger(__name__)

T = TypeVar('T')

# Below this squared angle the rotation is replaced by its first-order expansion.
SMALL_ANGLE_EPS = np.finfo(np.float64).eps

# Forward distortion slope below which the inverse is too steep to fit with a polynomial.
MIN_DISTORTION_SLOPE = 0.5


def angle_axis_rotate_point(angle_axis: torch.Tensor, point: torch.Tensor) -> torch.Tensor:
    """
    Rotate a 3D point by an axis-angle vector (Rodrigues' formula).

    Args:
        angle_axis: (3,) tensor, rotation axis scaled by the angle in radians
        point: (3,) tensor

    Returns:
        rotated: (3,) tensor
    """
    theta2 = torch.dot(angle_axis, angle_axis)
    if float(theta2) > SMALL_ANGLE_EPS:
        theta = torch.sqrt(theta2)
        axis = angle_axis / theta
        cos_theta = torch.cos(theta)
        sin_theta = torch.sin(theta)
        return (point * cos_theta
                + torch.cross(axis, point, dim=0) * sin_theta
                + axis * torch.dot(axis, point) * (1.0 - cos_theta))

    # Near zero the first-order expansion keeps the derivative well defined
    return point + torch.cross(angle_axis, point, dim=0)


def hnormalize(point: torch.Tensor) -> torch.Tensor:
    """Drop the homogeneous coordinate: (x, y, z) -> (x / z, y / z)."""
    return point[:2] / point[2]


def decompose_projection_matrix(P: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Decompose a projection matrix P = K R [I | -C].

    Args:
        P: (3, 4) projection matrix, defined up to scale

    Returns:
        K: (3, 3) upper triangular calibration with positive diagonal, K[2, 2] == 1
        R: (3, 3) rotation with det(R) == +1
        C: (3,) camera center
    """
    P = np.asarray(P, dtype=np.float64)
    if P.shape != (3, 4):
        raise ValueError(f"Projection matrix must be 3x4, got {P.shape}")

    M = P[:, :3]
    if abs(np.linalg.det(M)) < 1e-12:
        raise ValueError("Projection matrix has a singular left 3x3 block")

    C = -np.linalg.solve(M, P[:, 3])

    # P is only defined up to scale, flip it so that det(R) ends up positive
    if np.linalg.det(M) < 0:
        M = -M

    K, R = rq(M)
    D = np.diag(np.sign(np.diag(K)))
    K = K @ D
    R = D @ R
    K = K / K[2, 2]

    return K, R, C


def _first_positive_root(coeffs: np.ndarray) -> Optional[float]:
    """Smallest positive real root of a polynomial given by increasing-power coefficients."""
    roots = np.polynomial.polynomial.polyroots(coeffs)
    real = roots[np.abs(roots.imag) < 1e-9].real
    real = real[real > 0]
    return float(real.min()) if len(real) else None


def approximate_inverse_radial_distortion(forward_params: Sequence[float],
                                          n_inverse: int,
                                          max_radius: float,
                                          n_samples: int = 100) -> Tuple[np.ndarray, float]:
    """
    Fit a polynomial approximating the inverse of a radial distortion.

    The forward model maps an undistorted radius r to
    rd = r * (1 + sum_j a_j * r^(j+1)). The inverse is approximated as
    r ~= rd * (1 + sum_j b_j * rd^(j+1)), fitted in least squares over
    distorted radii in [0, max_radius].

    Strong barrel distortion folds the forward model back before it reaches
    max_radius. The fit then stops where the forward slope drops to
    MIN_DISTORTION_SLOPE; no projected point lands much beyond that radius.

    Args:
        forward_params: Coefficients a_j of the forward model
        n_inverse: Number of inverse coefficients b_j to fit
        max_radius: Largest distorted radius the fit has to cover
        n_samples: Number of radii sampled for the fit

    Returns:
        inverse_params: (n_inverse,) fitted coefficients
        max_error: Largest absolute radius error of the fit over the sampled range
    """
    a = np.asarray(forward_params, dtype=np.float64)
    inverse_params = np.zeros(n_inverse)

    if not np.any(a) or max_radius <= 0:
        return inverse_params, 0.0
    if n_samples < n_inverse:
        raise ValueError(f"Need at least {n_inverse} samples, got {n_samples}")

    powers = np.arange(1, len(a) + 1)

    def distort(r):
        r = np.asarray(r, dtype=np.float64)
        return r * (1.0 + np.sum(a * r[..., None] ** powers, axis=-1))

    # slope of the forward model is 1 + sum_j (j+2) a_j r^(j+1), shifted by the threshold
    slope_coeffs = np.concatenate([[1.0 - MIN_DISTORTION_SLOPE], a * (powers + 1)])
    r_limit = _first_positive_root(slope_coeffs)

    if r_limit is not None and distort(r_limit) < max_radius:
        r_hi = r_limit
    else:
        upper = r_limit if r_limit is not None else max_radius
        # slope stays above MIN_DISTORTION_SLOPE here, so this terminates
        while distort(upper) < max_radius:
            upper *= 2.0
        r_hi = brentq(lambda r: float(distort(r)) - max_radius, 0.0, upper)

    r = np.linspace(0.0, r_hi, n_samples * 4)[1:]
    rd = distort(r)

    A = np.stack([rd ** (j + 1) for j in range(n_inverse)], axis=1)
    target = r / rd - 1.0
    inverse_params, *_ = np.linalg.lstsq(A, target, rcond=None)

    approx = rd * (1.0 + A @ inverse_params)
    max_error = float(np.max(np.abs(approx - r)))

    covered = float(rd.max())
    if covered < max_radius * 0.999:
        logger.debug(f"Inverse distortion fit covers radii up to {covered:.4f} of {max_radius:.4f}")

    return inverse_params, max_error


def filter_vector(keep: Sequence[bool], items: List[T]) -> List[T]:
    """Return the items whose mask entry is True, preserving order."""
    if len(keep) != len(items):
        raise ValueError(f"Mask length {len(keep)} does not match {len(items)} items")
    return [item for item, k in zip(items, keep) if k]


def filter_out_indices(indices: Sequence[int], items: List[T]) -> List[T]:
    """Return the items without the given indices, preserving order."""
    drop = set(indices)
    return [item for i, item in enumerate(items) if i not in drop]
