"""
Matching Interfaces Module

This module defines the result type and abstract interface for comparing a
query feature vector against an enrolled key template.

A template is an ordered collection of feature vectors captured during
enrollment; a matcher reports the best similarity between the query and any
of them, plus a per-frame match decision.

Usage:
    from keycore.matching.interfaces import MatchResult, TemplateMatcher
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Sequence

import numpy as np


@dataclass
class MatchResult:
    """
    Result of a matching operation.

    Attributes:
        score: Similarity score between 0.0 and 1.0.
               0.0 = nothing comparable / completely different
               1.0 = identical direction in feature space
        is_match: Boolean decision based on threshold comparison for this
                  single frame (before temporal smoothing).
        details: Algorithm-specific diagnostics, e.g.
                 {"compared": 12, "skipped": 0, "best_index": 3}
    """

    score: float
    is_match: bool
    details: Dict[str, Any] = field(default_factory=dict)


class TemplateMatcher(ABC):
    """
    Abstract base class for query-vs-template matching.

    Implementations must be stateless: the same inputs always give the
    same result, and no history is kept between calls.
    """

    @abstractmethod
    def best_match_score(
        self, query: np.ndarray, template: Sequence[np.ndarray]
    ) -> float:
        """
        Best similarity between the query and any template vector.

        Args:
            query: (D,) feature vector.
            template: Ordered sequence of feature vectors.

        Returns:
            Score in [0, 1]; 0.0 when nothing could be compared.
        """

    @abstractmethod
    def is_match(self, score: float) -> bool:
        """Pure threshold comparison on a score."""

    def compare(self, query: np.ndarray, template: Sequence[np.ndarray]) -> MatchResult:
        """Score a query against a template and apply the threshold."""
        score = self.best_match_score(query, template)
        return MatchResult(score=score, is_match=self.is_match(score))
