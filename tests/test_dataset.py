"""Tests for the dataset aggregate"""

import logging
import threading

import numpy as np
import pytest
from PIL import Image

from sfm_core import Dataset, PairMap
from sfm_core.models import CameraPair, SplitNViewMatch, StandardCamera, StandardCameraRadial
from sfm_core.utils import CameraConfig

from conftest import make_standard_camera


@pytest.fixture
def dataset():
    ds = Dataset("work")
    for name in ("a.jpg", "b.jpg", "c.jpg"):
        ds.add_camera(make_standard_camera(name))
    ds.points.matches_to_reconstruct = [{0: 0, 1: 0, 2: 0}, {0: 1, 1: 1, 2: 1}]
    ds.points.add_points((0, 1), [0, 1], np.zeros((2, 3)))
    ds.mark_cam_as_reconstructed(0)
    ds.mark_cam_as_reconstructed(1)
    return ds


def test_pair_map_is_symmetric():
    pairs = PairMap()
    pair = CameraPair(matches=[[0, 1], [2, 3]], dists=[0.1, 0.2])

    pairs[(3, 1)] = pair

    assert pairs[(1, 3)] is pair
    assert (3, 1) in pairs
    assert list(pairs) == [(1, 3)]
    assert (2, 2) not in pairs
    with pytest.raises(ValueError):
        pairs[(2, 2)] = pair

    del pairs[(1, 3)]
    assert len(pairs) == 0


def test_camera_pair_validates_shapes():
    with pytest.raises(ValueError):
        CameraPair(matches=[[0, 1]], dists=[0.1, 0.2])
    with pytest.raises(ValueError):
        CameraPair(F=np.eye(2))
    assert CameraPair().num_matches() == 0


def test_registration_updates_tracks(dataset):
    assert dataset.reconstructed_cams == {0, 1}
    assert dataset.is_reconstructed(1)
    assert not dataset.is_reconstructed(2)

    dataset.mark_cam_as_reconstructed(2, corresponding_points=[0, 1], corresponding_points_inliers=[1])

    assert dataset.reconstructed_cams == {0, 1, 2}
    assert dataset.points.pt_data[0].reconstructed == {0: 0, 1: 0}
    assert dataset.points.pt_data[1].reconstructed == {0: 1, 1: 1, 2: 1}
    assert dataset.points.is_consistent()


def test_registration_with_array_inliers(dataset):
    dataset.mark_cam_as_reconstructed(2, np.array([0, 1]), np.array([0]))

    assert dataset.is_reconstructed(2)
    assert dataset.points.pt_data[0].reconstructed == {0: 0, 1: 0, 2: 0}
    assert dataset.points.pt_data[1].to_reconstruct == {}


def test_registration_is_logged(dataset, caplog):
    with caplog.at_level(logging.INFO, logger="sfm_core.core.dataset"):
        dataset.mark_cam_as_reconstructed(2)

    assert any("Camera 2 registered (3 of 3)" in record.message for record in caplog.records)


def test_rejected_registration_leaves_dataset_unchanged(dataset):
    with pytest.raises(ValueError):
        dataset.mark_cam_as_reconstructed(2, corresponding_points=[5])
    with pytest.raises(ValueError):
        dataset.mark_cam_as_reconstructed(7)

    assert dataset.reconstructed_cams == {0, 1}
    assert dataset.points.pt_data[0].to_reconstruct == {2: 0}


def test_reconstructed_cams_is_a_copy(dataset):
    dataset.reconstructed_cams.add(2)

    assert not dataset.is_reconstructed(2)


def test_copy_is_independent(dataset):
    dataset.pairs[(0, 1)] = CameraPair(matches=[[0, 0]], dists=[1.0])

    other = dataset.copy()
    other.cam(0).set_focal(123.0)
    other.pairs[(0, 1)].matches[0] = [5, 5]
    other.mark_cam_as_reconstructed(2)

    assert other.cam(0) is not dataset.cam(0)
    assert dataset.cam(0).f == 500.0
    np.testing.assert_array_equal(dataset.pairs[(0, 1)].matches, [[0, 0]])
    assert dataset.reconstructed_cams == {0, 1}
    assert dataset.points.pt_data[0].to_reconstruct == {2: 0}
    assert other.points.pt_data[0].reconstructed == {0: 0, 1: 0, 2: 0}


def test_copy_module_uses_dataset_copy(dataset):
    import copy

    other = copy.copy(dataset)

    assert other.cam(1) is not dataset.cam(1)
    assert other.reconstructed_cams == dataset.reconstructed_cams


def test_add_cameras_from_dir(tmp_path):
    for name, size in (("b.png", (40, 30)), ("a.jpg", (20, 10))):
        Image.new("RGB", size).save(tmp_path / name)
    (tmp_path / "notes.txt").write_text("not an image")

    ds = Dataset(tmp_path)
    idxs = ds.add_cameras_from_dir(tmp_path, CameraConfig(camera_type="standard"))

    assert idxs == [0, 1]
    assert [type(cam) for cam in ds.cams] == [StandardCamera, StandardCamera]
    assert (ds.cam(0).img_width, ds.cam(0).img_height) == (20, 10)
    assert (ds.cam(1).img_width, ds.cam(1).img_height) == (40, 30)


def test_add_cameras_keeps_invalid_camera(tmp_path):
    ds = Dataset()
    ds.add_cameras([tmp_path / "missing.jpg"])

    assert ds.num_cams() == 1
    assert isinstance(ds.cam(0), StandardCameraRadial)
    assert not ds.cam(0).is_valid()


def test_clear_descriptors(dataset):
    dataset.cam(0).add_feature(1.0, 1.0, np.ones(8))

    dataset.clear_descriptors()

    assert dataset.cam(0).num_features() == 1
    assert dataset.cam(0).descr.size == 0


def test_registration_waits_for_locked_readers(dataset):
    dataset.points.add_split_points(np.zeros((1, 3)), [SplitNViewMatch({0: 2}, {2: 2})])
    worker = threading.Thread(target=dataset.mark_cam_as_reconstructed, args=(2,))

    with dataset.locked():
        worker.start()
        worker.join(timeout=0.2)
        assert worker.is_alive()
        assert not dataset.is_reconstructed(2)
        assert all(2 in entry.to_reconstruct for entry in dataset.points.pt_data)

    worker.join(timeout=5.0)
    assert not worker.is_alive()
    assert dataset.is_reconstructed(2)
    assert all(2 in entry.reconstructed for entry in dataset.points.pt_data)
