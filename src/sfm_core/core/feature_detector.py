"""Feature Detection Module

This module runs a SIFT detector over a batch of cameras and stores the
keypoints and descriptors in each camera. One detector is initialized for the
largest image of the batch and reused for every camera.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Optional, Sequence, Tuple, Union

import cv2
import numpy as np
from tqdm import tqdm

from ..models.camera_model import Camera
from ..utils.config_manager import SiftOptions

logger = logging.getLogger(__name__)

DESCRIPTOR_DIM = 128

# (callback_obj, completed_count) -> None
ProgressCallback = Callable[[Any, int], None]

Features = Tuple[np.ndarray, np.ndarray]


class BaseSiftDetector(ABC):
    """Abstract detector context shared by all cameras of a batch"""

    @abstractmethod
    def initialize(self, options: SiftOptions, max_width: int, max_height: int) -> bool:
        """
        Prepare the detector for images up to the given size

        Args:
            options: Detector options
            max_width: Largest image width of the batch
            max_height: Largest image height of the batch

        Returns:
            False if the detector could not be set up
        """
        pass

    @abstractmethod
    def run(self, image_path: Union[str, Path]) -> Optional[Features]:
        """
        Detect features in one image

        Returns:
            keys: (N, 4) array of [x, y, scale, orientation]
            descr: (N, 128) float32 descriptors
            or None if the image could not be processed
        """
        pass

    @abstractmethod
    def get_method_name(self) -> str:
        """Return the name of the detection method"""
        pass


class OpenCVSiftDetector(BaseSiftDetector):
    """SIFT detection with OpenCV"""

    def __init__(self):
        self.sift = None
        self.options = SiftOptions()
        self.max_width = 0
        self.max_height = 0

    def initialize(self, options: SiftOptions, max_width: int, max_height: int) -> bool:
        if max_width <= 0 or max_height <= 0:
            logger.error(f"Cannot size the detector for images of {max_width}x{max_height}")
            return False

        n_octave_layers = options.dog_levels_in_an_octave if options.is_set_dog_levels_in_an_octave() else 3
        kwargs = {'nOctaveLayers': n_octave_layers}
        if options.is_set_dog_thresh():
            # OpenCV divides the contrast threshold by the number of layers
            kwargs['contrastThreshold'] = options.dog_thresh * n_octave_layers
        if options.is_set_edge_thresh():
            kwargs['edgeThreshold'] = options.edge_thresh

        try:
            self.sift = cv2.SIFT_create(**kwargs)
        except (AttributeError, cv2.error) as e:
            logger.error(f"Could not create the SIFT detector: {e}")
            return False

        self.options = options
        self.max_width = max_width
        self.max_height = max_height
        logger.info(f"Initialized SIFT detector for images up to {max_width}x{max_height}")
        return True

    def _image_scale(self, width: int, height: int) -> float:
        """Resize factor applied before detection"""
        scale = 1.0
        if self.options.is_set_max_working_dimension():
            largest = max(width, height)
            if largest > self.options.max_working_dimension:
                scale = self.options.max_working_dimension / largest

        # OpenCV always starts at octave -1, emulate other first octaves by resizing
        scale *= 2.0 ** -(self.options.first_octave + 1)
        return scale

    def _octave_index(self, kp: cv2.KeyPoint) -> int:
        """Octave of a keypoint counted from the first octave"""
        octave = kp.octave & 255
        if octave >= 128:
            octave -= 256
        return octave + 1

    def run(self, image_path: Union[str, Path]) -> Optional[Features]:
        if self.sift is None:
            raise RuntimeError("Detector used before initialize()")

        img = cv2.imread(str(image_path), cv2.IMREAD_GRAYSCALE)
        if img is None:
            logger.error(f"Could not load image: {image_path}")
            return None

        h, w = img.shape
        scale = self._image_scale(w, h)
        if scale != 1.0:
            interpolation = cv2.INTER_AREA if scale < 1.0 else cv2.INTER_LINEAR
            img = cv2.resize(img, (max(1, round(w * scale)), max(1, round(h * scale))),
                             interpolation=interpolation)

        keypoints = self.sift.detect(img, None)

        if self.options.is_set_max_octaves():
            keypoints = [kp for kp in keypoints if self._octave_index(kp) < self.options.max_octaves]

        if self.options.detect_upright_sift:
            # fixed orientation, at most one orientation per feature
            upright = {}
            for kp in keypoints:
                location = (round(kp.pt[0], 3), round(kp.pt[1], 3), round(kp.size, 3))
                if location not in upright:
                    kp.angle = 0.0
                    upright[location] = kp
            keypoints = list(upright.values())

        if len(keypoints) == 0:
            return np.zeros((0, 4)), np.zeros((0, DESCRIPTOR_DIM), dtype=np.float32)

        keypoints, descriptors = self.sift.compute(img, keypoints)
        if descriptors is None:
            return np.zeros((0, 4)), np.zeros((0, DESCRIPTOR_DIM), dtype=np.float32)

        keys = np.array([[kp.pt[0] / scale, kp.pt[1] / scale, kp.size / scale, np.deg2rad(kp.angle)]
                         for kp in keypoints])

        log = logger.info if self.options.verbosity_level > 0 else logger.debug
        log(f"Extracted {len(keys)} SIFT features from {Path(image_path).name}")

        return keys, descriptors.astype(np.float32)

    def get_method_name(self) -> str:
        return "opencv_sift"


def _detect_camera(detector: BaseSiftDetector, cam: Camera) -> bool:
    """Run the detector on one camera; the camera is untouched on failure"""
    result = detector.run(cam.img_filename)
    if result is None:
        logger.warning(f"No features stored for {cam.img_filename}")
        return False

    keys, descr = result
    cam.set_features(keys, descr)
    if len(keys) == 0:
        logger.warning(f"No SIFT features found in {cam.img_filename}")
    return True


def detect_features(options: SiftOptions,
                    cams: Sequence[Camera],
                    callback: Optional[ProgressCallback] = None,
                    callback_obj: Any = None,
                    detector_factory: Callable[[], BaseSiftDetector] = OpenCVSiftDetector,
                    show_progress: bool = False) -> None:
    """
    Detect features in all cameras with one shared detector

    The detector is sized for the largest image and cameras are processed
    sequentially. After each camera, `callback(callback_obj, completed_count)`
    is called if both are given. If the detector cannot be initialized no
    camera is processed; callers detect that by the empty feature sets.

    Args:
        options: Detector options
        cams: Cameras to process
        callback: Progress callback
        callback_obj: Opaque object passed back to the callback
        detector_factory: Creates the detector context
        show_progress: Show a progress bar
    """
    if len(cams) == 0:
        return

    max_width = max(cam.img_width for cam in cams)
    max_height = max(cam.img_height for cam in cams)

    detector = detector_factory()
    if not detector.initialize(options, max_width, max_height):
        logger.error(f"Detector initialization failed, skipping feature detection for {len(cams)} cameras")
        return

    n_failed = 0
    for done, cam in enumerate(tqdm(cams, desc="Detecting features", disable=not show_progress), start=1):
        if not _detect_camera(detector, cam):
            n_failed += 1
        if callback is not None and callback_obj is not None:
            callback(callback_obj, done)

    logger.info(f"Detected features in {len(cams) - n_failed} of {len(cams)} cameras "
                f"with {detector.get_method_name()}")


def detect_features_single(options: SiftOptions,
                           cam: Camera,
                           detector_factory: Callable[[], BaseSiftDetector] = OpenCVSiftDetector) -> bool:
    """
    Detect features in one camera with a detector of its own

    Returns:
        True if features were stored in the camera
    """
    detector = detector_factory()
    if not detector.initialize(options, cam.img_width, cam.img_height):
        logger.error(f"Detector initialization failed for {cam.img_filename}")
        return False
    return _detect_camera(detector, cam)
