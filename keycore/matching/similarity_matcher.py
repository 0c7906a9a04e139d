"""
Similarity Matcher: compare a feature vector against an enrolled template.

Concrete TemplateMatcher using cosine similarity. For each template vector
of the same length as the query, the raw cosine similarity in [-1, 1] is
remapped to [0, 1] via (cos + 1) / 2, and the best score across the template
is reported. Vectors of a different length are skipped, not treated as an
error, so templates enrolled with an older descriptor layout degrade to
"no match" instead of failing.
"""

import logging
import math
from typing import Any, Dict, Optional, Sequence

import numpy as np

from keycore.matching.interfaces import MatchResult, TemplateMatcher

logger = logging.getLogger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 0.85


class SimilarityMatcher(TemplateMatcher):
    """
    Cosine-similarity matcher with a single tunable threshold.

    Args:
        config: Optional dictionary (the "matching" config section) with keys:
            - similarity_threshold: Score needed for a per-frame match
              (default 0.85)
            - min_norm: Vectors whose norm product is at or below this
              compare as 0.0 (default 0.001)
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        if config is None:
            config = {}
        self.threshold = float(config.get("similarity_threshold", DEFAULT_SIMILARITY_THRESHOLD))
        self.min_norm = float(config.get("min_norm", 0.001))

        if not 0.0 <= self.threshold <= 1.0:
            raise ValueError(f"similarity_threshold must be in [0, 1], got {self.threshold}")

    def best_match_score(self, query: np.ndarray, template: Sequence[np.ndarray]) -> float:
        return self.compare(query, template).score

    def is_match(self, score: float) -> bool:
        return score >= self.threshold

    def compare(self, query: np.ndarray, template: Sequence[np.ndarray]) -> MatchResult:
        """
        Compare a query vector against every vector in a template.

        Args:
            query: (D,) feature vector.
            template: Ordered sequence of feature vectors.

        Returns:
            MatchResult whose score is the best remapped cosine similarity,
            with details on how many vectors were compared or skipped.
        """
        query = np.asarray(query, dtype=np.float32).ravel()

        best_score = 0.0
        best_index = -1
        scores = []
        skipped = 0

        for index, stored in enumerate(template):
            stored = np.asarray(stored, dtype=np.float32).ravel()
            if stored.shape[0] != query.shape[0]:
                logger.warning(
                    f"Feature vector length mismatch: {query.shape[0]} vs {stored.shape[0]}"
                )
                skipped += 1
                continue

            score = self.cosine_score(query, stored)
            scores.append(score)
            if score > best_score:
                best_score = score
                best_index = index

        if len(template) == 0:
            logger.warning("Empty template")

        details = {
            "method": "cosine",
            "compared": len(scores),
            "skipped": skipped,
            "best_index": best_index,
            "threshold": self.threshold,
        }
        if scores:
            details["score_min"] = min(scores)
            details["score_max"] = max(scores)
            logger.debug(
                f"Best score: {best_score:.4f}, "
                f"range: [{details['score_min']:.4f}, {details['score_max']:.4f}]"
            )

        return MatchResult(score=best_score, is_match=self.is_match(best_score), details=details)

    def cosine_score(self, a: np.ndarray, b: np.ndarray) -> float:
        """
        Cosine similarity of two equal-length vectors remapped to [0, 1].

        Returns 0.0 for empty vectors or when either vector is (near) zero.
        """
        if a.shape[0] == 0 or a.shape != b.shape:
            return 0.0

        a64 = a.astype(np.float64)
        b64 = b.astype(np.float64)
        denominator = float(np.linalg.norm(a64) * np.linalg.norm(b64))
        if not denominator > self.min_norm:
            return 0.0

        raw_cosine = float(np.dot(a64, b64)) / denominator
        if not math.isfinite(raw_cosine):
            return 0.0

        # Clamp to [-1, 1] for numerical stability
        raw_cosine = max(-1.0, min(1.0, raw_cosine))

        # Map [-1, 1] → [0, 1]
        return (raw_cosine + 1.0) / 2.0

    @staticmethod
    def l2_distance(a: np.ndarray, b: np.ndarray) -> float:
        """
        Euclidean distance between two vectors (diagnostic only).

        Returns inf for empty or mismatched-length vectors.
        """
        a = np.asarray(a, dtype=np.float64).ravel()
        b = np.asarray(b, dtype=np.float64).ravel()
        if a.shape[0] == 0 or a.shape != b.shape:
            return float("inf")
        return float(np.linalg.norm(a - b))
