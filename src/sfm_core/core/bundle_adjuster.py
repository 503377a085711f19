"""Bundle Adjustment Module

This module refines registered cameras and 3D points by feeding the cameras'
residual functions to scipy's nonlinear least-squares solver.
"""

import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix
from tqdm import tqdm

from ..models.cost_functions import ParamsConstraintsCost, ReprojectionError
from ..utils.config_manager import BundleAdjustmentConfig
from .dataset import Dataset

logger = logging.getLogger(__name__)


@dataclass
class BundleAdjustmentResult:
    """Results from bundle adjustment optimization"""
    initial_cost: float
    final_cost: float
    nfev: int
    success: bool
    message: str
    num_cameras: int
    num_points: int
    num_observations: int
    elapsed_time: float


@dataclass
class _Observation:
    cam_idx: int
    pt_idx: int
    cost: ReprojectionError


class BundleAdjuster:
    """Joint refinement of registered cameras and the points they reconstruct"""

    def __init__(self, config: Optional[BundleAdjustmentConfig] = None):
        """
        Args:
            config: Solver configuration
        """
        self.config = config or BundleAdjustmentConfig()

    def _collect_problem(self, dataset: Dataset, fixed_cams: Sequence[int]):
        """Build residual functions and parameter offsets"""
        reconstructed = dataset.reconstructed_cams
        fixed = set(fixed_cams)

        observations: List[_Observation] = []
        for pt_idx, entry in enumerate(dataset.points.pt_data):
            for cam_idx, key_idx in entry.reconstructed.items():
                if cam_idx in reconstructed:
                    cost = dataset.cam(cam_idx).cost_function(key_idx)
                    observations.append(_Observation(cam_idx, pt_idx, cost))

        variable_cams = sorted({obs.cam_idx for obs in observations} - fixed)
        point_idxs = sorted({obs.pt_idx for obs in observations})

        offsets: Dict[Tuple[str, int], int] = {}
        n_params = 0
        for cam_idx in variable_cams:
            offsets[('cam', cam_idx)] = n_params
            n_params += dataset.cam(cam_idx).N_PARAMS
        for pt_idx in point_idxs:
            offsets[('pt', pt_idx)] = n_params
            n_params += 3

        constraints: List[Tuple[int, ParamsConstraintsCost]] = []
        for cam_idx in variable_cams:
            cost = dataset.cam(cam_idx).constraints_cost_function()
            if cost is not None and cost.num_residuals > 0:
                constraints.append((cam_idx, cost))

        return observations, variable_cams, point_idxs, offsets, n_params, constraints

    def optimize(self, dataset: Dataset, fixed_cams: Sequence[int] = ()) -> BundleAdjustmentResult:
        """
        Run bundle adjustment on the dataset in place

        Uses every reconstructed observation of a registered camera. Cameras
        in `fixed_cams` keep their parameters but still constrain the points.

        Args:
            dataset: Dataset whose registered cameras and points are refined
            fixed_cams: Cameras held constant (e.g. to fix the gauge)

        Returns:
            BundleAdjustmentResult with costs and problem size
        """
        start_time = time.time()

        with dataset.locked():
            (observations, variable_cams, point_idxs, offsets,
             n_params, constraints) = self._collect_problem(dataset, fixed_cams)

            if not observations:
                logger.warning("No observations to adjust")
                return BundleAdjustmentResult(0.0, 0.0, 0, True, "empty problem", 0, 0, 0, 0.0)

            fixed_params = {obs.cam_idx: dataset.cam(obs.cam_idx).params()
                            for obs in observations if ('cam', obs.cam_idx) not in offsets}

            x0 = np.zeros(n_params)
            for cam_idx in variable_cams:
                offset = offsets[('cam', cam_idx)]
                x0[offset:offset + dataset.cam(cam_idx).N_PARAMS] = dataset.cam(cam_idx).params()
            for pt_idx in point_idxs:
                offset = offsets[('pt', pt_idx)]
                x0[offset:offset + 3] = dataset.points.pt_coord[pt_idx]

            cam_sizes = {cam_idx: dataset.cam(cam_idx).N_PARAMS for cam_idx in variable_cams}
            n_residuals = 2 * len(observations) + sum(cost.num_residuals for _, cost in constraints)

            def cam_params(x: np.ndarray, cam_idx: int) -> np.ndarray:
                key = ('cam', cam_idx)
                if key in offsets:
                    return x[offsets[key]:offsets[key] + cam_sizes[cam_idx]]
                return fixed_params[cam_idx]

            def point(x: np.ndarray, pt_idx: int) -> np.ndarray:
                offset = offsets[('pt', pt_idx)]
                return x[offset:offset + 3]

            def evaluate(x: np.ndarray) -> np.ndarray:
                out = np.empty(n_residuals)
                row = 0
                for obs in observations:
                    out[row:row + 2] = obs.cost(cam_params(x, obs.cam_idx), point(x, obs.pt_idx))
                    row += 2
                for cam_idx, cost in constraints:
                    out[row:row + cost.num_residuals] = cost(cam_params(x, cam_idx))
                    row += cost.num_residuals
                return out

            def residuals(x: np.ndarray) -> np.ndarray:
                pbar.update(1)
                return evaluate(x)

            def jacobian(x: np.ndarray):
                J = lil_matrix((n_residuals, n_params))
                row = 0
                for obs in observations:
                    J_cam, J_pt = obs.cost.jacobians(cam_params(x, obs.cam_idx), point(x, obs.pt_idx))
                    key = ('cam', obs.cam_idx)
                    if key in offsets:
                        offset = offsets[key]
                        J[row:row + 2, offset:offset + J_cam.shape[1]] = J_cam
                    offset = offsets[('pt', obs.pt_idx)]
                    J[row:row + 2, offset:offset + 3] = J_pt
                    row += 2
                for cam_idx, cost in constraints:
                    offset = offsets[('cam', cam_idx)]
                    J[row:row + cost.num_residuals, offset:offset + cam_sizes[cam_idx]] = cost.jacobian(
                        cam_params(x, cam_idx))
                    row += cost.num_residuals
                return J.tocsr()

            logger.info(f"Starting bundle adjustment with {len(variable_cams)} cameras "
                        f"({len(fixed_params)} fixed), {len(point_idxs)} points, "
                        f"{len(observations)} observations, {n_params} parameters")

            initial_cost = 0.5 * float(np.sum(evaluate(x0) ** 2))

            # one tick per solver function evaluation, matches result.nfev
            pbar = tqdm(desc="Bundle adjustment", unit="eval", disable=not self.config.show_progress)

            try:
                result = least_squares(
                    residuals,
                    x0,
                    jac=jacobian,
                    method='trf',
                    loss=self.config.loss,
                    f_scale=self.config.f_scale,
                    ftol=self.config.ftol,
                    x_scale='jac',
                    max_nfev=self.config.max_nfev,
                    verbose=self.config.verbose,
                )
            finally:
                pbar.close()

            for cam_idx in variable_cams:
                dataset.cam(cam_idx).set_params(cam_params(result.x, cam_idx))
            for pt_idx in point_idxs:
                dataset.points.pt_coord_view(pt_idx)[:] = point(result.x, pt_idx)

        elapsed = time.time() - start_time
        final_cost = 0.5 * float(np.sum(result.fun ** 2))
        logger.info(f"Bundle adjustment done: status={result.status}, nfev={result.nfev}, "
                    f"cost {initial_cost:.3e} -> {final_cost:.3e} in {elapsed:.1f}s")

        return BundleAdjustmentResult(
            initial_cost=initial_cost,
            final_cost=final_cost,
            nfev=int(result.nfev),
            success=bool(result.success),
            message=str(result.message),
            num_cameras=len(variable_cams),
            num_points=len(point_idxs),
            num_observations=len(observations),
            elapsed_time=elapsed
        )
