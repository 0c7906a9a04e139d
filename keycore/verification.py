"""
Verification Session Module

Streaming state machine that checks live frames against one enrolled key.

States:
    IDLE → ACTIVE (until stop())

For every frame the session emits exactly one ScanResult:
- Unevaluable frames (tracking unavailable, no finite points, extraction
  failure)
  produce a no-match result and are NOT fed to the temporal smoother, so a
  brief tracking loss does not reset progress toward a confirmed match.
- Evaluated frames are scored against the template; the per-frame decision
  goes through the TemporalSmoother and the result reports the confirmed
  verdict together with the frame's best score.

The session does not stop itself on a confirmed match; the caller decides
when to stop().

Usage:
    from keycore.verification import VerificationSession

    session = VerificationSession(on_result=ui.show)
    session.start(key.template)
    for frame in sensor_frames:
        session.on_frame(frame)
    session.stop()
"""

import logging
import threading
from enum import Enum
from typing import Any, Callable, Dict, Optional

from keycore.errors import EmptyPointCloud, EmptyTemplate, ErrorReason, SessionConflict
from keycore.feature_extractor import FeatureExtractor
from keycore.key_template import KeyTemplate, ScanResult
from keycore.matching import SimilarityMatcher, TemporalSmoother
from keycore.point_cloud import PointCloudFrame

logger = logging.getLogger(__name__)


class VerificationPhase(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"


class VerificationSession:
    """
    Confirms a key match over consecutive evaluated frames.

    Frame calls are serialized by an internal lock; stop() may be called from
    another thread and, once it returns, no further ScanResult is emitted.

    Args:
        config: Optional dictionary with "matching" and "smoothing"
                sub-dictionaries (see SimilarityMatcher / TemporalSmoother).
        extractor: FeatureExtractor to use (default: a new one).
        matcher: SimilarityMatcher to use (default: built from config).
        on_result: Handler called with every emitted ScanResult.
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        extractor: Optional[FeatureExtractor] = None,
        matcher: Optional[SimilarityMatcher] = None,
        on_result: Optional[Callable[[ScanResult], None]] = None,
    ):
        if config is None:
            config = {}
        self.extractor = extractor or FeatureExtractor()
        self.matcher = matcher or SimilarityMatcher(config.get("matching"))
        self.smoother = TemporalSmoother(config.get("smoothing"))
        self.on_result = on_result

        self._phase = VerificationPhase.IDLE
        self._template: Optional[KeyTemplate] = None
        self._lock = threading.RLock()

    @property
    def phase(self) -> VerificationPhase:
        return self._phase

    @property
    def is_active(self) -> bool:
        return self._phase == VerificationPhase.ACTIVE

    @property
    def template(self) -> Optional[KeyTemplate]:
        return self._template

    def start(self, template: KeyTemplate) -> None:
        """
        Begin verifying against a template.

        Raises:
            EmptyTemplate: If the template has no feature vectors.
            SessionConflict: If the session is already active.
        """
        with self._lock:
            if self._phase == VerificationPhase.ACTIVE:
                raise SessionConflict("Verification session already active")
            if template is None or template.is_empty:
                raise EmptyTemplate()

            self.smoother.reset()
            self._template = template
            self._phase = VerificationPhase.ACTIVE
            logger.info(
                f"Starting verification for key {template.id[:8]} "
                f"({template.n_vectors} vectors)"
            )

    def stop(self) -> None:
        """Return to IDLE, clearing the window and template. Idempotent."""
        with self._lock:
            if self._phase == VerificationPhase.IDLE:
                return
            self.smoother.reset()
            self._template = None
            self._phase = VerificationPhase.IDLE
            logger.info("Verification stopped")

    def on_frame(self, frame: PointCloudFrame) -> Optional[ScanResult]:
        """
        Process one frame and emit its ScanResult.

        Returns:
            The emitted result, or None if the session is not active.
        """
        with self._lock:
            if self._phase != VerificationPhase.ACTIVE:
                logger.debug("Dropping frame: verification not active")
                return None

            result = self._evaluate(frame)
            if self.on_result is not None:
                self.on_result(result)
            return result

    def _evaluate(self, frame: PointCloudFrame) -> ScanResult:
        if not frame.tracking.is_available or not frame.has_finite_points:
            logger.debug("Unevaluable frame: no points or tracking unavailable")
            return ScanResult.no_match(0.0, ErrorReason.TOO_FAR_OR_UNTRACKED)

        try:
            features = self.extractor.extract(frame.points)
        except (EmptyPointCloud, ValueError) as e:
            logger.warning(f"Failed to extract features: {e}")
            return ScanResult.no_match(0.0, ErrorReason.UNKNOWN)

        match = self.matcher.compare(features, self._template.feature_vectors)
        confirmed = self.smoother.add_frame(match.is_match)

        logger.debug(
            f"Score {match.score:.4f} (threshold {self.matcher.threshold}), "
            f"raw match: {match.is_match}, window: {self.smoother.recent_matches}"
        )

        if confirmed:
            logger.info(f"Match confirmed for key {self._template.id[:8]}, score {match.score:.4f}")
            return ScanResult.match(match.score)
        return ScanResult.no_match(
            match.score, None if match.is_match else ErrorReason.NO_MATCH
        )
