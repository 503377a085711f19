"""Dataset Module

This module aggregates cameras, pairwise data, the track store and the set of
registered cameras, and keeps them consistent when a camera gets registered.
"""

import logging
import threading
from collections.abc import MutableMapping
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Set, Tuple, Union

from ..models.camera_model import Camera, create_camera
from ..models.data_models import CameraPair
from ..utils.config_manager import CameraConfig
from ..utils.image_utils import find_images
from .points import Points

logger = logging.getLogger(__name__)

IntPair = Tuple[int, int]


class PairMap(MutableMapping):
    """Mapping keyed by unordered camera pairs

    `(i, j)` and `(j, i)` address the same entry, stored under `(min, max)`.
    Pair data is expected to be oriented the same way.
    """

    def __init__(self, data: Optional[Dict[IntPair, CameraPair]] = None):
        self._data: Dict[IntPair, CameraPair] = {}
        if data:
            self.update(data)

    @staticmethod
    def normalize_key(key: IntPair) -> IntPair:
        i, j = (int(k) for k in key)
        if i == j:
            raise ValueError(f"A camera pair needs two different cameras, got ({i}, {j})")
        return (i, j) if i < j else (j, i)

    def __getitem__(self, key: IntPair) -> CameraPair:
        return self._data[self.normalize_key(key)]

    def __setitem__(self, key: IntPair, value: CameraPair) -> None:
        self._data[self.normalize_key(key)] = value

    def __delitem__(self, key: IntPair) -> None:
        del self._data[self.normalize_key(key)]

    def __iter__(self) -> Iterator[IntPair]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key) -> bool:
        try:
            return self.normalize_key(key) in self._data
        except (TypeError, ValueError):
            return False

    def copy(self) -> 'PairMap':
        return PairMap({key: pair.copy() for key, pair in self._data.items()})

    def __repr__(self) -> str:
        return f"PairMap({len(self._data)} pairs)"


class Dataset:
    """Cameras, pairwise matches, tracks and registered cameras of one reconstruction

    The dataset owns its cameras; copies clone them. Registration updates the
    registered set and the track store under one lock, so a reader holding
    `locked()` never sees a camera registered while a track still lists it as
    pending, or the other way around.
    """

    def __init__(self, dir: Union[str, Path] = "."):
        """
        Args:
            dir: Working directory of the reconstruction
        """
        self._dir = str(dir)
        self._cams: List[Camera] = []
        self._pairs = PairMap()
        self._points = Points()
        self._reconstructed_cams: Set[int] = set()
        self._lock = threading.RLock()

    @property
    def dir(self) -> str:
        return self._dir

    @property
    def cams(self) -> List[Camera]:
        return self._cams

    def cam(self, idx: int) -> Camera:
        return self._cams[idx]

    def num_cams(self) -> int:
        return len(self._cams)

    @property
    def pairs(self) -> PairMap:
        return self._pairs

    @property
    def points(self) -> Points:
        return self._points

    @property
    def reconstructed_cams(self) -> Set[int]:
        """Registered cameras; a copy, change it through `mark_cam_as_reconstructed`"""
        with self._lock:
            return set(self._reconstructed_cams)

    def is_reconstructed(self, cam_idx: int) -> bool:
        with self._lock:
            return cam_idx in self._reconstructed_cams

    @contextmanager
    def locked(self):
        """Hold the registration lock to read cameras and tracks consistently"""
        with self._lock:
            yield self

    def add_camera(self, cam: Camera) -> int:
        """Take ownership of a camera and return its index"""
        self._cams.append(cam)
        return len(self._cams) - 1

    def add_cameras(self,
                    filenames: Sequence[Union[str, Path]],
                    config: Optional[CameraConfig] = None) -> List[int]:
        """Create one camera per image of the configured type

        Args:
            filenames: Image paths
            config: Camera configuration (type, distortion fit settings)

        Returns:
            Indices of the added cameras
        """
        config = config or CameraConfig()
        idxs = []
        for filename in filenames:
            cam = create_camera(filename, config=config)
            if not cam.is_valid():
                logger.warning(f"Added camera {filename} without valid image dimensions")
            idxs.append(self.add_camera(cam))
        logger.info(f"Added {len(idxs)} {config.camera_type} cameras")
        return idxs

    def add_cameras_from_dir(self,
                             img_dir: Union[str, Path],
                             config: Optional[CameraConfig] = None) -> List[int]:
        """Create cameras for all images found in a directory"""
        return self.add_cameras(find_images(img_dir), config)

    def clear_descriptors(self) -> None:
        for cam in self._cams:
            cam.clear_descriptors()

    def mark_cam_as_reconstructed(self,
                                  cam_idx: int,
                                  corresponding_points: Optional[Sequence[int]] = None,
                                  corresponding_points_inliers: Optional[Sequence[int]] = None) -> None:
        """Register a camera and update the tracks observing it

        See `Points.mark_cam_as_reconstructed` for the meaning of the optional
        point lists. The track store is updated first; if it rejects the
        arguments the registered set is left unchanged.
        """
        if not 0 <= cam_idx < self.num_cams():
            raise ValueError(f"Camera index {cam_idx} out of range for {self.num_cams()} cameras")

        with self._lock:
            self._points.mark_cam_as_reconstructed(cam_idx, corresponding_points,
                                                   corresponding_points_inliers)
            self._reconstructed_cams.add(cam_idx)
            logger.info(f"Camera {cam_idx} registered ({len(self._reconstructed_cams)} of {self.num_cams()})")

    def copy(self) -> 'Dataset':
        """Fully independent copy: cameras cloned, everything else value-copied"""
        other = Dataset(self._dir)
        with self._lock:
            other._cams = [cam.clone() for cam in self._cams]
            other._pairs = self._pairs.copy()
            other._points = self._points.copy()
            other._reconstructed_cams = set(self._reconstructed_cams)
        return other

    def __copy__(self) -> 'Dataset':
        return self.copy()

    def __deepcopy__(self, memo) -> 'Dataset':
        return self.copy()

    def __repr__(self) -> str:
        return (f"Dataset(dir={self._dir!r}, cams={self.num_cams()}, pairs={len(self._pairs)}, "
                f"points={self._points.num_pts()}, reconstructed={len(self._reconstructed_cams)})")
