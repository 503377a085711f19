"""
Data models for the SfM core.

This module provides the structured containers exchanged between the track
store, the dataset and the external matcher.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional
import numpy as np

# camera index -> feature index in that camera
NViewMatch = Dict[int, int]


@dataclass
class SplitNViewMatch:
    """One n-view match split into cameras with and without a known pose."""
    observed_part: NViewMatch = field(default_factory=dict)
    unobserved_part: NViewMatch = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate that the two parts are disjoint."""
        overlap = self.observed_part.keys() & self.unobserved_part.keys()
        if overlap:
            raise ValueError(f"Cameras {sorted(overlap)} are both observed and unobserved")


@dataclass
class PointData:
    """Observation partition of one track."""
    reconstructed: NViewMatch = field(default_factory=dict)  # cameras with known pose
    to_reconstruct: NViewMatch = field(default_factory=dict)  # cameras still pending

    def is_consistent(self) -> bool:
        """True if no camera is both reconstructed and pending."""
        return not (self.reconstructed.keys() & self.to_reconstruct.keys())

    def copy(self) -> 'PointData':
        return PointData(dict(self.reconstructed), dict(self.to_reconstruct))


@dataclass
class CameraPair:
    """Pairwise data between two cameras, oriented as (smaller index, larger index)."""
    matches: np.ndarray = field(default_factory=lambda: np.zeros((0, 2), dtype=int))  # (M, 2) feature indices
    dists: np.ndarray = field(default_factory=lambda: np.zeros((0,), dtype=np.float32))  # (M,) descriptor distances
    F: Optional[np.ndarray] = None  # (3, 3) fundamental matrix

    def __post_init__(self) -> None:
        """Validate array shapes."""
        self.matches = np.asarray(self.matches, dtype=int).reshape(-1, 2)
        self.dists = np.asarray(self.dists, dtype=np.float32).reshape(-1)
        if len(self.dists) and len(self.dists) != len(self.matches):
            raise ValueError(f"Got {len(self.dists)} distances for {len(self.matches)} matches")
        if self.F is not None and np.shape(self.F) != (3, 3):
            raise ValueError(f"Fundamental matrix must be 3x3, got {np.shape(self.F)}")

    def num_matches(self) -> int:
        return len(self.matches)

    def copy(self) -> 'CameraPair':
        return CameraPair(
            matches=self.matches.copy(),
            dists=self.dists.copy(),
            F=None if self.F is None else np.array(self.F, copy=True)
        )
