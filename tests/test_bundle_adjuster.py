"""Tests for bundle adjustment over a synthetic scene"""

import numpy as np
import pytest

from sfm_core import BundleAdjuster, Dataset
from sfm_core.utils import BundleAdjustmentConfig


def test_points_converge_with_fixed_cameras(scene, scene_points, rng):
    for pt_idx in range(scene.points.num_pts()):
        scene.points.pt_coord_view(pt_idx)[:] += rng.normal(scale=0.05, size=3)
    params_before = [cam.params() for cam in scene.cams]

    result = BundleAdjuster(BundleAdjustmentConfig(loss="linear")).optimize(scene, fixed_cams=[0, 1, 2])

    assert result.num_cameras == 0
    assert result.num_points == 20
    assert result.num_observations == 60
    assert result.final_cost < result.initial_cost
    assert result.final_cost < 1e-10
    np.testing.assert_allclose(scene.points.pt_coord, scene_points, atol=1e-5)
    for cam, params in zip(scene.cams, params_before):
        np.testing.assert_array_equal(cam.params(), params)


def test_camera_focal_is_recovered(scene, scene_points):
    true_f = scene.cam(2).f
    scene.cam(2).set_focal(true_f * 1.05)

    result = BundleAdjuster(BundleAdjustmentConfig(loss="linear", max_nfev=200)).optimize(
        scene, fixed_cams=[0, 1])

    assert result.num_cameras == 1
    assert result.final_cost < 1e-8
    assert scene.cam(2).f == pytest.approx(true_f, rel=1e-4)
    np.testing.assert_allclose(scene.points.pt_coord, scene_points, atol=1e-4)


def test_unregistered_cameras_are_ignored(scene):
    scene.points.pt_data[0].to_reconstruct[3] = 0
    scene.points.pt_data[0].reconstructed[5] = 0

    result = BundleAdjuster().optimize(scene, fixed_cams=[0, 1, 2])

    assert result.num_observations == 60


def test_focal_prior_enters_problem(scene):
    scene.cam(2).constrain_focal(scene.cam(2).f, 1.0)

    result = BundleAdjuster(BundleAdjustmentConfig(loss="huber")).optimize(scene, fixed_cams=[0, 1])

    assert result.success
    assert result.initial_cost == pytest.approx(0.0, abs=1e-12)
    assert scene.cam(2).f == pytest.approx(500.0, rel=1e-6)


def test_empty_problem():
    result = BundleAdjuster().optimize(Dataset())

    assert result.num_observations == 0
    assert result.final_cost == 0.0


class RecordingBar:
    """Stand-in for tqdm that records how it was driven"""

    instances = []

    def __init__(self, *args, **kwargs):
        self.kwargs = kwargs
        self.n = 0
        self.closed = False
        RecordingBar.instances.append(self)

    def update(self, n=1):
        self.n += n

    def close(self):
        self.closed = True


def test_progress_counts_solver_evaluations(scene, monkeypatch):
    RecordingBar.instances = []
    monkeypatch.setattr("sfm_core.core.bundle_adjuster.tqdm", RecordingBar)
    scene.points.pt_coord_view(0)[:] += 0.1

    result = BundleAdjuster(BundleAdjustmentConfig(max_nfev=5)).optimize(scene, fixed_cams=[0, 1, 2])

    bar, = RecordingBar.instances
    assert "total" not in bar.kwargs
    assert bar.n == result.nfev
    assert bar.closed
