"""Tests for batched SIFT feature detection"""

import io

import numpy as np
import pytest

from sfm_core.core.feature_detector import (
    DESCRIPTOR_DIM,
    BaseSiftDetector,
    OpenCVSiftDetector,
    detect_features,
    detect_features_single,
)
from sfm_core.models import StandardCamera
from sfm_core.utils import SiftOptions


class FakeDetector(BaseSiftDetector):
    """Returns one feature per image, keyed by image name"""

    instances = []

    def __init__(self, init_ok=True, unreadable=()):
        self.init_ok = init_ok
        self.unreadable = set(unreadable)
        self.init_args = None
        self.runs = []
        FakeDetector.instances.append(self)

    def initialize(self, options, max_width, max_height):
        self.init_args = (max_width, max_height)
        return self.init_ok

    def run(self, image_path):
        self.runs.append(image_path)
        if image_path in self.unreadable:
            return None
        keys = np.array([[float(len(self.runs)), 2.0, 1.5, 0.25]])
        return keys, np.ones((1, DESCRIPTOR_DIM), dtype=np.float32)

    def get_method_name(self):
        return "fake"


@pytest.fixture(autouse=True)
def reset_instances():
    FakeDetector.instances = []


@pytest.fixture
def cams():
    sizes = [(640, 480), (800, 300), (320, 900)]
    return [StandardCamera(f"img{i}.jpg", img_width=w, img_height=h) for i, (w, h) in enumerate(sizes)]


def test_detector_shared_across_batch(cams):
    calls = []
    marker = object()

    detect_features(SiftOptions(), cams, callback=lambda obj, n: calls.append((obj, n)),
                    callback_obj=marker, detector_factory=FakeDetector)

    assert len(FakeDetector.instances) == 1
    detector = FakeDetector.instances[0]
    assert detector.init_args == (800, 900)
    assert detector.runs == ["img0.jpg", "img1.jpg", "img2.jpg"]
    assert calls == [(marker, 1), (marker, 2), (marker, 3)]
    for i, cam in enumerate(cams, start=1):
        assert cam.num_features() == 1
        np.testing.assert_array_equal(cam.key(0), [float(i), 2.0])
        assert cam.scales[0] == 1.5
        assert cam.orientations[0] == 0.25
        assert cam.descr.shape == (1, DESCRIPTOR_DIM)


def test_failed_initialization_skips_batch(cams):
    calls = []

    detect_features(SiftOptions(), cams, callback=lambda obj, n: calls.append(n), callback_obj="x",
                    detector_factory=lambda: FakeDetector(init_ok=False))

    assert FakeDetector.instances[0].runs == []
    assert calls == []
    assert all(cam.num_features() == 0 for cam in cams)


def test_callback_needs_callback_obj(cams):
    calls = []

    detect_features(SiftOptions(), cams, callback=lambda obj, n: calls.append(n),
                    detector_factory=FakeDetector)

    assert calls == []
    assert all(cam.num_features() == 1 for cam in cams)


def test_unreadable_image_leaves_camera_untouched(cams):
    calls = []
    cams[1].add_feature(9.0, 9.0, np.zeros(4))

    detect_features(SiftOptions(), cams, callback=lambda obj, n: calls.append(n), callback_obj=1,
                    detector_factory=lambda: FakeDetector(unreadable={"img1.jpg"}))

    assert calls == [1, 2, 3]
    assert cams[0].num_features() == 1
    np.testing.assert_array_equal(cams[1].key(0), [9.0, 9.0])
    assert cams[2].num_features() == 1


def test_empty_batch_creates_no_detector():
    detect_features(SiftOptions(), [], detector_factory=FakeDetector)

    assert FakeDetector.instances == []


def test_single_camera_detection(cams):
    assert detect_features_single(SiftOptions(), cams[2], detector_factory=FakeDetector)
    assert FakeDetector.instances[0].init_args == (320, 900)
    assert cams[2].num_features() == 1

    assert not detect_features_single(SiftOptions(), cams[0],
                                      detector_factory=lambda: FakeDetector(init_ok=False))
    assert cams[0].num_features() == 0


def test_opencv_detector_on_image(image_file):
    cam = StandardCamera(image_file)

    detect_features(SiftOptions(), [cam])

    assert cam.num_features() > 0
    assert cam.descr.shape == (cam.num_features(), DESCRIPTOR_DIM)
    assert cam.descr.dtype == np.float32
    assert np.all((cam.keys >= 0) & (cam.keys < [cam.img_width, cam.img_height]))
    assert np.all(cam.scales > 0)


def test_opencv_detector_options(image_file):
    cam = StandardCamera(image_file)
    options = SiftOptions(max_working_dimension=240, first_octave=0, dog_levels_in_an_octave=3,
                          dog_thresh=0.005, edge_thresh=10.0, detect_upright_sift=True)

    assert detect_features_single(options, cam)

    assert cam.num_features() > 0
    assert np.all(cam.orientations == 0.0)
    # keypoints are reported in full-resolution image coordinates
    assert np.all(cam.keys < [cam.img_width, cam.img_height])


def test_opencv_detector_rejects_empty_size():
    assert not OpenCVSiftDetector().initialize(SiftOptions(), 0, 480)


def test_opencv_detector_requires_initialize(image_file):
    with pytest.raises(RuntimeError):
        OpenCVSiftDetector().run(image_file)


def test_opencv_detector_unreadable_image(tmp_path):
    detector = OpenCVSiftDetector()
    assert detector.initialize(SiftOptions(), 100, 100)

    assert detector.run(tmp_path / "missing.png") is None


def test_sift_options():
    options = SiftOptions(max_working_dimension=2000, dog_thresh=0.01)

    assert options.is_set_max_working_dimension()
    assert options.is_set_dog_thresh()
    assert not options.is_set_max_octaves()
    assert not options.is_set_edge_thresh()
    assert not options.is_set_dog_levels_in_an_octave()

    stream = io.StringIO()
    options.write(stream)
    lines = stream.getvalue().splitlines()
    assert len(lines) == 8
    assert " max_working_dimension: 2000" in lines
    assert " detect_upright_sift: False" in lines


def test_sift_options_validation():
    with pytest.raises(ValueError):
        SiftOptions(max_octaves=0)
    with pytest.raises(ValueError):
        SiftOptions(verbosity_level=-1)
