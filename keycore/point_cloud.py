"""
Point Cloud Frame Module

Input contract from the sensor/tracking collaborator. A frame carries the
sparse 3D points sampled in one sensor tick, the tracking quality reported
for that tick, and an optional normalized region of interest.

The core never depends on a particular depth/AR framework: anything that can
produce an (N, 3) array of float32 points can feed it.

Usage:
    from keycore.point_cloud import PointCloudFrame, TrackingQuality

    frame = PointCloudFrame(
        points=raw_points,                 # (N, 3) array-like
        tracking=TrackingQuality.normal(),
    )
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

import numpy as np


class TrackingState(str, Enum):
    """Coarse tracking state reported by the sensor collaborator."""

    NORMAL = "normal"
    LIMITED = "limited"
    UNAVAILABLE = "unavailable"


class LimitedReason(str, Enum):
    """Why tracking is limited (only meaningful for TrackingState.LIMITED)."""

    INITIALIZING = "initializing"
    RELOCALIZING = "relocalizing"
    EXCESSIVE_MOTION = "excessive-motion"
    INSUFFICIENT_FEATURES = "insufficient-features"
    OTHER = "other"


LIMITED_MESSAGES = {
    LimitedReason.INITIALIZING: "Initializing tracking...",
    LimitedReason.RELOCALIZING: "Relocalizing... Move device slowly",
    LimitedReason.EXCESSIVE_MOTION: "Too much motion. Hold device still",
    LimitedReason.INSUFFICIENT_FEATURES: "Not enough features. Improve lighting or move closer",
    LimitedReason.OTHER: "Tracking limited",
}


@dataclass(frozen=True)
class TrackingQuality:
    """
    Tracking-quality tag attached to every frame.

    Attributes:
        state: Normal, Limited or Unavailable.
        reason: Limitation reason when state is LIMITED, otherwise None.
    """

    state: TrackingState
    reason: Optional[LimitedReason] = None

    @classmethod
    def normal(cls) -> "TrackingQuality":
        return cls(TrackingState.NORMAL)

    @classmethod
    def limited(cls, reason: LimitedReason = LimitedReason.OTHER) -> "TrackingQuality":
        return cls(TrackingState.LIMITED, LimitedReason(reason))

    @classmethod
    def unavailable(cls) -> "TrackingQuality":
        return cls(TrackingState.UNAVAILABLE)

    @property
    def is_available(self) -> bool:
        return self.state != TrackingState.UNAVAILABLE

    @property
    def advisory_message(self) -> Optional[str]:
        """User guidance for a limited tracking state, None otherwise."""
        if self.state != TrackingState.LIMITED:
            return None
        return LIMITED_MESSAGES[self.reason or LimitedReason.OTHER]


@dataclass(frozen=True)
class RegionOfInterest:
    """
    Normalized rectangle (all values in [0, 1]) selecting the target object.

    Attributes:
        x, y: Top-left corner.
        width, height: Extent of the rectangle.
    """

    x: float
    y: float
    width: float
    height: float

    def __post_init__(self):
        for name in ("x", "y", "width", "height"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"ROI {name} must be in [0, 1], got {value}")
        if self.x + self.width > 1.0 + 1e-6 or self.y + self.height > 1.0 + 1e-6:
            raise ValueError("ROI must lie inside the normalized frame")


def as_point_array(points) -> np.ndarray:
    """
    Convert an array-like of 3D points to a read-only (N, 3) float32 array.

    An empty input becomes an array of shape (0, 3).

    Raises:
        ValueError: If the input cannot be interpreted as (N, 3).
    """
    array = np.asarray(points, dtype=np.float32)
    if array.size == 0:
        array = np.zeros((0, 3), dtype=np.float32)
    if array.ndim != 2 or array.shape[1] != 3:
        raise ValueError(f"points must be (N, 3), got {array.shape}")
    array = np.array(array, dtype=np.float32, copy=True)
    array.setflags(write=False)
    return array


@dataclass(frozen=True)
class PointCloudFrame:
    """
    One sensor tick: points, tracking quality and optional ROI.

    Frames are immutable; the points array is copied and marked read-only.
    """

    points: np.ndarray
    tracking: TrackingQuality = TrackingQuality(TrackingState.NORMAL)
    roi: Optional[RegionOfInterest] = None

    def __post_init__(self):
        object.__setattr__(self, "points", as_point_array(self.points))

    @property
    def n_points(self) -> int:
        return len(self.points)

    @property
    def is_empty(self) -> bool:
        return len(self.points) == 0

    @property
    def has_finite_points(self) -> bool:
        """True if at least one point has all-finite coordinates."""
        return len(finite_points(self.points)) > 0


def finite_points(points: np.ndarray) -> np.ndarray:
    """Rows of a point array whose three coordinates are all finite."""
    points = np.asarray(points)
    if len(points) == 0:
        return points
    return points[np.all(np.isfinite(points), axis=1)]


def bounding_box(points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Axis-aligned bounding box of the finite points in an array.

    Returns:
        (min_bounds, max_bounds), each shape (3,). Zeros when no finite
        point is present.
    """
    points = finite_points(points)
    if len(points) == 0:
        zeros = np.zeros(3, dtype=np.float32)
        return zeros, zeros.copy()
    return points.min(axis=0), points.max(axis=0)


def bounding_box_volume(points: np.ndarray) -> float:
    """Volume of the axis-aligned bounding box (0.0 without finite points)."""
    min_bounds, max_bounds = bounding_box(points)
    extents = (max_bounds - min_bounds).astype(np.float64)
    return float(np.prod(extents))
