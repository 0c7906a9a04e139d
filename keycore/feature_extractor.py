"""
Feature Extractor Module

Turns a sparse 3D point cloud into a fixed-length geometric descriptor that
can be compared with cosine similarity. The descriptor is built from four
blocks, concatenated in this order:

1. Geometric (12): centroid, bounding-box extents, bounding-box center,
   diagonal of the point covariance matrix.
2. Distribution (distance_bins + azimuth_bins, default 24): histogram of
   point distances from the centroid and histogram of azimuth angles around
   the centroid, both normalized by point count.
3. Surface (4): mean local normal (3) and normal variance (1), estimated on
   the first `surface_sample_size` points in input order.
4. Statistical (7): per-axis mean and variance, then point density.

The concatenated vector is min-max normalized over its own elements, so every
output value lies in [0, 1]. Extraction is deterministic and has no side
effects.

Usage:
    from keycore.feature_extractor import FeatureExtractor

    extractor = FeatureExtractor()
    vector = extractor.extract(points)   # (D,) float32, D == extractor.dimension
"""

import logging
from typing import Any, Dict, List, Optional

import numpy as np
from scipy.spatial import cKDTree

from keycore.errors import EmptyPointCloud
from keycore.point_cloud import PointCloudFrame, as_point_array, bounding_box

logger = logging.getLogger(__name__)

GEOMETRIC_SIZE = 12
SURFACE_SIZE = 4
STATISTICAL_SIZE = 7

# Values are clipped to this magnitude before normalization so that the
# max - min range cannot overflow.
_MAX_MAGNITUDE = 1e300


class FeatureExtractor:
    """
    Stateless point cloud → feature vector transform.

    Args:
        config: Optional dictionary (the "feature" config section) with keys:
            - surface_sample_size: Points used for normal estimation (default 100)
            - max_neighbors: Upper bound on k for the neighbor search (default 10)
            - distance_bins: Bins of the centroid-distance histogram (default 8)
            - azimuth_bins: Bins of the azimuth histogram (default 16)
            - min_normal_length: Shorter cross products are discarded (default 0.001)
            - uniform_range_epsilon: Ranges at or below this produce a
              constant 0.5 vector (default 0.001)
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        if config is None:
            config = {}
        self.surface_sample_size = int(config.get("surface_sample_size", 100))
        self.max_neighbors = int(config.get("max_neighbors", 10))
        self.distance_bins = int(config.get("distance_bins", 8))
        self.azimuth_bins = int(config.get("azimuth_bins", 16))
        self.min_normal_length = float(config.get("min_normal_length", 0.001))
        self.uniform_range_epsilon = float(config.get("uniform_range_epsilon", 0.001))

        if self.distance_bins < 1 or self.azimuth_bins < 1:
            raise ValueError("histogram bin counts must be >= 1")
        if self.surface_sample_size < 0:
            raise ValueError("surface_sample_size must be >= 0")

    @property
    def dimension(self) -> int:
        """Length D of every vector this extractor produces."""
        return (
            GEOMETRIC_SIZE
            + self.distance_bins
            + self.azimuth_bins
            + SURFACE_SIZE
            + STATISTICAL_SIZE
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def extract(self, points) -> np.ndarray:
        """
        Extract a normalized feature vector from a point cloud.

        Args:
            points: (N, 3) array-like of points, or a PointCloudFrame.
                    Points with NaN/Inf coordinates are ignored.

        Returns:
            (D,) float32 array, every element in [0, 1].

        Raises:
            EmptyPointCloud: If no finite points remain.
        """
        if isinstance(points, PointCloudFrame):
            points = points.points
        cloud = as_point_array(points).astype(np.float64)
        cloud = cloud[np.all(np.isfinite(cloud), axis=1)]

        if len(cloud) == 0:
            raise EmptyPointCloud()

        logger.debug(f"Extracting features from {len(cloud)} points")

        centroid = cloud.mean(axis=0)
        raw = np.concatenate([
            self._geometric_features(cloud, centroid),
            self._distribution_features(cloud, centroid),
            self._surface_features(cloud),
            self._statistical_features(cloud),
        ])

        return self._normalize(raw)

    __call__ = extract

    # ------------------------------------------------------------------
    # Feature blocks
    # ------------------------------------------------------------------

    def _geometric_features(self, cloud: np.ndarray, centroid: np.ndarray) -> np.ndarray:
        min_bounds, max_bounds = bounding_box(cloud)
        extents = max_bounds - min_bounds
        box_center = (min_bounds + max_bounds) / 2.0

        # Covariance diagonal stands in for the principal axes.
        diffs = cloud - centroid
        covariance_diagonal = np.mean(diffs * diffs, axis=0)

        return np.concatenate([centroid, extents, box_center, covariance_diagonal])

    def _distribution_features(self, cloud: np.ndarray, centroid: np.ndarray) -> np.ndarray:
        n_points = len(cloud)
        relative = cloud - centroid

        distances = np.linalg.norm(relative, axis=1)
        max_distance = distances.max()
        if max_distance > 0:
            distance_idx = np.floor(distances / max_distance * self.distance_bins).astype(int)
            distance_idx = np.minimum(distance_idx, self.distance_bins - 1)
        else:
            # All points coincide with the centroid
            distance_idx = np.zeros(n_points, dtype=int)
        distance_hist = np.bincount(distance_idx, minlength=self.distance_bins)

        theta = np.arctan2(relative[:, 1], relative[:, 0])
        azimuth_idx = np.floor((theta + np.pi) / (2.0 * np.pi) * self.azimuth_bins).astype(int)
        azimuth_idx = azimuth_idx % self.azimuth_bins
        azimuth_hist = np.bincount(azimuth_idx, minlength=self.azimuth_bins)

        return np.concatenate([distance_hist, azimuth_hist]).astype(np.float64) / n_points

    def _surface_features(self, cloud: np.ndarray) -> np.ndarray:
        normals = self._estimate_normals(cloud)
        if len(normals) == 0:
            return np.zeros(SURFACE_SIZE)

        mean_normal = normals.mean(axis=0)
        variance = float(np.mean(np.sum((normals - mean_normal) ** 2, axis=1)))

        norm = np.linalg.norm(mean_normal)
        average_normal = mean_normal / norm if norm > 0 else np.zeros(3)

        return np.concatenate([average_normal, [variance]])

    def _statistical_features(self, cloud: np.ndarray) -> np.ndarray:
        means = cloud.mean(axis=0)
        variances = cloud.var(axis=0)

        min_bounds, max_bounds = bounding_box(cloud)
        volume = float(np.prod(max_bounds - min_bounds))
        density = len(cloud) / volume if volume > 0 else 0.0

        # Interleaved: x mean, x var, y mean, y var, z mean, z var, density
        stats = np.empty(STATISTICAL_SIZE)
        stats[0:6:2] = means
        stats[1:6:2] = variances
        stats[6] = density
        return stats

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _estimate_normals(self, cloud: np.ndarray) -> np.ndarray:
        """
        Estimate unit normals for the first `surface_sample_size` points.

        Each normal is the cross product of the vectors to the point's two
        nearest neighbors (the point itself excluded). Points with fewer than
        two neighbors or a degenerate cross product are skipped.
        """
        n_points = len(cloud)
        k = min(self.max_neighbors, n_points // 4)
        n_sample = min(self.surface_sample_size, n_points)
        if k < 2 or n_sample == 0:
            return np.zeros((0, 3))

        tree = cKDTree(cloud)
        # One extra neighbor because the query point is returned too.
        _, indices = tree.query(cloud[:n_sample], k=min(k + 1, n_points))

        normals: List[np.ndarray] = []
        for i, row in enumerate(indices):
            neighbors = [j for j in row if j != i][:k]
            if len(neighbors) < 2:
                continue

            point = cloud[i]
            normal = np.cross(cloud[neighbors[0]] - point, cloud[neighbors[1]] - point)
            length = np.linalg.norm(normal)
            if length <= self.min_normal_length:
                continue
            normals.append(normal / length)

        if not normals:
            return np.zeros((0, 3))
        return np.asarray(normals)

    def _normalize(self, raw: np.ndarray) -> np.ndarray:
        """Min-max normalize into [0, 1]; near-uniform vectors become 0.5."""
        values = np.nan_to_num(raw, nan=0.0, posinf=_MAX_MAGNITUDE, neginf=-_MAX_MAGNITUDE)
        values = np.clip(values, -_MAX_MAGNITUDE, _MAX_MAGNITUDE)

        min_value = values.min()
        value_range = values.max() - min_value
        if value_range <= self.uniform_range_epsilon:
            return np.full(len(values), 0.5, dtype=np.float32)

        normalized = np.clip((values - min_value) / value_range, 0.0, 1.0)
        return normalized.astype(np.float32)


def extract_features(points, config: Optional[Dict[str, Any]] = None) -> np.ndarray:
    """Convenience wrapper: FeatureExtractor(config).extract(points)."""
    return FeatureExtractor(config).extract(points)
