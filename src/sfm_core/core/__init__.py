"""Track bookkeeping, dataset aggregation, feature ingestion and bundle adjustment."""

from .points import Points
from .dataset import Dataset, PairMap
from .feature_detector import (
    BaseSiftDetector,
    OpenCVSiftDetector,
    detect_features,
    detect_features_single,
)
from .bundle_adjuster import BundleAdjuster, BundleAdjustmentResult

__all__ = [
    "Points",
    "Dataset",
    "PairMap",
    "BaseSiftDetector",
    "OpenCVSiftDetector",
    "detect_features",
    "detect_features_single",
    "BundleAdjuster",
    "BundleAdjustmentResult",
]
