"""Track Store Module

This module keeps the 3D point estimates and, for every point, which cameras
already confirmed its observation and which cameras still could.
"""

import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np

from ..models.data_models import NViewMatch, PointData, SplitNViewMatch
from ..utils.geometry_utils import filter_out_indices, filter_vector

logger = logging.getLogger(__name__)


class Points:
    """3D points and their per-camera observation partitions

    `pt_coord[i]` and `pt_data[i]` describe the same track. Every mutator
    checks its arguments before touching any state, so a rejected call leaves
    the store unchanged.
    """

    def __init__(self):
        self._pt_coord = np.zeros((0, 3))
        self._pt_data: List[PointData] = []
        self._matches_to_reconstruct: List[NViewMatch] = []

    @property
    def pt_coord(self) -> np.ndarray:
        """(N, 3) coordinates; rows are reallocated by add/remove calls"""
        return self._pt_coord

    @property
    def pt_data(self) -> List[PointData]:
        return self._pt_data

    @property
    def matches_to_reconstruct(self) -> List[NViewMatch]:
        """N-view matches not yet turned into points"""
        return self._matches_to_reconstruct

    @matches_to_reconstruct.setter
    def matches_to_reconstruct(self, matches: Sequence[NViewMatch]):
        self._matches_to_reconstruct = [dict(m) for m in matches]

    def num_pts(self) -> int:
        return len(self._pt_coord)

    def pt_coord_view(self, pt_idx: int) -> np.ndarray:
        """Writable view of one point's coordinates

        Lets the optimizer write refined values in place. The view must not
        be kept across `add_points`/`remove_points`, which reallocate storage.
        """
        if not 0 <= pt_idx < self.num_pts():
            raise IndexError(f"Point index {pt_idx} out of range for {self.num_pts()} points")
        return self._pt_coord[pt_idx]

    def add_points(self,
                   cams_idxs: Tuple[int, int],
                   matches_to_reconstruct_idxs: Sequence[int],
                   coords: np.ndarray) -> None:
        """Create points triangulated from a pair of registered cameras

        Args:
            cams_idxs: The two cameras the points were triangulated from
            matches_to_reconstruct_idxs: Index into `matches_to_reconstruct` for each point
            coords: (N, 3) triangulated coordinates

        The two cameras seed `reconstructed`, the remaining cameras of each
        match go to `to_reconstruct`. Consumed matches are removed from
        `matches_to_reconstruct`.
        """
        cam_a, cam_b = cams_idxs
        if cam_a == cam_b:
            raise ValueError(f"Camera pair must contain two different cameras, got {cams_idxs}")

        coords = np.asarray(coords, dtype=np.float64).reshape(-1, 3)
        idxs = [int(i) for i in matches_to_reconstruct_idxs]
        if len(idxs) != len(coords):
            raise ValueError(f"Got {len(coords)} coordinates for {len(idxs)} matches")
        if len(set(idxs)) != len(idxs):
            raise ValueError("A match can only be turned into one point")

        n_matches = len(self._matches_to_reconstruct)
        for idx in idxs:
            if not 0 <= idx < n_matches:
                raise ValueError(f"Match index {idx} out of range for {n_matches} pending matches")
            match = self._matches_to_reconstruct[idx]
            if cam_a not in match or cam_b not in match:
                raise ValueError(f"Pending match {idx} does not observe both cameras {cams_idxs}")

        new_data = []
        for idx in idxs:
            match = self._matches_to_reconstruct[idx]
            to_reconstruct = dict(match)
            del to_reconstruct[cam_a]
            del to_reconstruct[cam_b]
            new_data.append(PointData(
                reconstructed={cam_a: match[cam_a], cam_b: match[cam_b]},
                to_reconstruct=to_reconstruct
            ))

        self._pt_coord = np.vstack([self._pt_coord, coords])
        self._pt_data.extend(new_data)
        self._matches_to_reconstruct = filter_out_indices(idxs, self._matches_to_reconstruct)

        logger.debug(f"Added {len(idxs)} points from cameras {cams_idxs}, "
                     f"{len(self._matches_to_reconstruct)} matches still pending")

    def add_split_points(self,
                         coords: np.ndarray,
                         split_matches: Sequence[SplitNViewMatch]) -> None:
        """Import points whose observation partition was computed upstream

        Args:
            coords: (N, 3) coordinates
            split_matches: Observed/unobserved partition for each point
        """
        coords = np.asarray(coords, dtype=np.float64).reshape(-1, 3)
        if len(split_matches) != len(coords):
            raise ValueError(f"Got {len(coords)} coordinates for {len(split_matches)} partitions")

        new_data = []
        for i, split in enumerate(split_matches):
            overlap = split.observed_part.keys() & split.unobserved_part.keys()
            if overlap:
                raise ValueError(f"Partition {i} lists cameras {sorted(overlap)} as both observed and unobserved")
            new_data.append(PointData(dict(split.observed_part), dict(split.unobserved_part)))

        self._pt_coord = np.vstack([self._pt_coord, coords])
        self._pt_data.extend(new_data)

    def remove_points(self, keep: Sequence[bool]) -> None:
        """Drop the points whose mask entry is False, preserving order

        Args:
            keep: One flag per current point
        """
        keep = np.asarray(keep, dtype=bool).reshape(-1)
        if len(keep) != self.num_pts():
            raise ValueError(f"Mask length {len(keep)} does not match {self.num_pts()} points")

        self._pt_coord = self._pt_coord[keep]
        self._pt_data = filter_vector(keep, self._pt_data)

        logger.debug(f"Removed {int((~keep).sum())} points, {self.num_pts()} remaining")

    def mark_cam_as_reconstructed(self,
                                  cam_idx: int,
                                  corresponding_points: Optional[Sequence[int]] = None,
                                  corresponding_points_inliers: Optional[Sequence[int]] = None) -> None:
        """Move a newly registered camera's observations to the reconstructed side

        Without point lists, every point that lists `cam_idx` as pending gets
        it promoted.

        With point lists, only `corresponding_points` are touched: those at
        positions `corresponding_points_inliers` (indices into
        `corresponding_points`) get `cam_idx` promoted, and every listed point
        loses its pending `cam_idx` entry. Outliers therefore drop the
        observation for good.

        Args:
            cam_idx: Camera being registered
            corresponding_points: Points matched to the camera during registration
            corresponding_points_inliers: Inlier positions within `corresponding_points`
        """
        if corresponding_points is None:
            if corresponding_points_inliers is not None:
                raise ValueError("Inliers given without corresponding points")
            n_promoted = 0
            for entry in self._pt_data:
                if cam_idx in entry.to_reconstruct:
                    entry.reconstructed[cam_idx] = entry.to_reconstruct.pop(cam_idx)
                    n_promoted += 1
            logger.debug(f"Camera {cam_idx}: promoted {n_promoted} observations")
            return

        points = [int(p) for p in corresponding_points]
        inliers = [] if corresponding_points_inliers is None else [int(i) for i in corresponding_points_inliers]

        for pt_idx in points:
            if not 0 <= pt_idx < self.num_pts():
                raise ValueError(f"Point index {pt_idx} out of range for {self.num_pts()} points")
        for inlier_idx in inliers:
            if not 0 <= inlier_idx < len(points):
                raise ValueError(f"Inlier index {inlier_idx} out of range for {len(points)} corresponding points")
            entry = self._pt_data[points[inlier_idx]]
            if cam_idx not in entry.to_reconstruct:
                raise ValueError(f"Point {points[inlier_idx]} has no pending observation in camera {cam_idx}")

        for inlier_idx in inliers:
            entry = self._pt_data[points[inlier_idx]]
            entry.reconstructed[cam_idx] = entry.to_reconstruct[cam_idx]
        for pt_idx in points:
            self._pt_data[pt_idx].to_reconstruct.pop(cam_idx, None)

        n_inlier_points = len({points[i] for i in inliers})
        logger.debug(f"Camera {cam_idx}: promoted {n_inlier_points} observations, "
                     f"discarded {len(set(points)) - n_inlier_points}")

    def is_consistent(self) -> bool:
        """True if the arrays are aligned and no partition overlaps"""
        return (len(self._pt_coord) == len(self._pt_data)
                and all(entry.is_consistent() for entry in self._pt_data))

    def copy(self) -> 'Points':
        """Independent value copy"""
        other = Points()
        other._pt_coord = self._pt_coord.copy()
        other._pt_data = [entry.copy() for entry in self._pt_data]
        other._matches_to_reconstruct = [dict(m) for m in self._matches_to_reconstruct]
        return other

    def __repr__(self) -> str:
        return f"Points(num_pts={self.num_pts()}, pending_matches={len(self._matches_to_reconstruct)})"
