"""
Matching Module for Key Verification

Components:
    - interfaces: MatchResult and the abstract TemplateMatcher
    - similarity_matcher: cosine-similarity matcher with a tunable threshold
    - temporal_smoother: sliding-window confirmation of per-frame matches

Usage:
    from keycore.matching import SimilarityMatcher, TemporalSmoother
"""

from keycore.matching.interfaces import MatchResult, TemplateMatcher
from keycore.matching.similarity_matcher import (
    DEFAULT_SIMILARITY_THRESHOLD,
    SimilarityMatcher,
)
from keycore.matching.temporal_smoother import TemporalSmoother

__all__ = [
    "MatchResult",
    "TemplateMatcher",
    "SimilarityMatcher",
    "DEFAULT_SIMILARITY_THRESHOLD",
    "TemporalSmoother",
]
