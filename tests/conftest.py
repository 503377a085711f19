"""Shared fixtures for the SfM core tests."""

import cv2
import numpy as np
import pytest

from sfm_core import Dataset, SplitNViewMatch, StandardCamera, StandardCameraRadial

IMG_WIDTH = 640
IMG_HEIGHT = 480
FOCAL = 500.0


def make_standard_camera(name="cam.jpg", rot=(0.0, 0.0, 0.0), C=(0.0, 0.0, -5.0), f=FOCAL):
    cam = StandardCamera(name, img_width=IMG_WIDTH, img_height=IMG_HEIGHT)
    cam.set_params(np.concatenate([rot, C, [f]]))
    return cam


def make_radial_camera(name="cam.jpg", rot=(0.0, 0.0, 0.0), C=(0.0, 0.0, -5.0), f=FOCAL,
                       k1=-0.05, k2=0.01, config=None):
    cam = StandardCameraRadial(name, img_width=IMG_WIDTH, img_height=IMG_HEIGHT, config=config)
    cam.set_params(np.concatenate([rot, C, [f, k1, k2]]))
    return cam


@pytest.fixture
def rng():
    return np.random.default_rng(0)


@pytest.fixture
def scene_points(rng):
    """20 points around the origin, in front of every scene camera."""
    return rng.uniform(-1.0, 1.0, size=(20, 3))


@pytest.fixture
def scene(scene_points):
    """Dataset of three registered cameras observing every scene point exactly.

    Keypoint `i` of each camera is the projection of point `i`.
    """
    dataset = Dataset("scene")
    cams = [
        make_standard_camera("a.jpg", rot=(0.0, 0.1, 0.0), C=(-1.0, 0.0, -5.0)),
        make_standard_camera("b.jpg", rot=(0.02, 0.0, 0.0), C=(0.0, 0.5, -5.0)),
        make_standard_camera("c.jpg", rot=(0.0, -0.1, 0.05), C=(1.0, 0.0, -5.0)),
    ]
    for cam in cams:
        keys = np.array([cam.project(pt) for pt in scene_points])
        cam.set_features(np.hstack([keys, np.ones((len(keys), 1)), np.zeros((len(keys), 1))]),
                         np.zeros((len(keys), 8)))
        dataset.add_camera(cam)

    splits = [SplitNViewMatch({cam_idx: i for cam_idx in range(len(cams))}, {})
              for i in range(len(scene_points))]
    dataset.points.add_split_points(scene_points, splits)
    for cam_idx in range(len(cams)):
        dataset.mark_cam_as_reconstructed(cam_idx)
    return dataset


@pytest.fixture
def image_file(tmp_path):
    """Textured 320x240 grayscale image SIFT finds features in."""
    rng = np.random.default_rng(1)
    noise = rng.uniform(0, 255, size=(60, 80)).astype(np.uint8)
    img = cv2.resize(noise, (320, 240), interpolation=cv2.INTER_CUBIC)
    img = cv2.GaussianBlur(img, (5, 5), 1.5)
    path = tmp_path / "textured.png"
    cv2.imwrite(str(path), img)
    return path
