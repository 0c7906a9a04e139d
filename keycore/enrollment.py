"""
Enrollment Session Module

Streaming state machine that accumulates a key template from live frames.

States:
    IDLE → AWAITING_SELECTION → CAPTURING → {COMPLETED | ABORTED}

A session started without a region of interest waits for the user to select
the object; frames received meanwhile are dropped and not counted. Once
capturing, every frame goes through a quality gate (tracking, point count,
bounding-box volume) before feature extraction. Accepted vectors are kept in
arrival order up to `max_frames`; `complete()` turns them into a KeyTemplate
once at least `min_frames` were accepted.

Every processed frame produces one EnrollmentProgress event, returned to the
caller and delivered to the registered handler.

Usage:
    from keycore.enrollment import EnrollmentSession

    session = EnrollmentSession(on_progress=ui.update)
    session.start()
    for frame in sensor_frames:
        session.on_frame(frame, selection=user_selection)
    template = session.complete()
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from keycore.errors import (
    EmptyPointCloud,
    InsufficientFrames,
    InvalidSessionState,
    RejectionReason,
    SessionConflict,
)
from keycore.feature_extractor import FeatureExtractor
from keycore.key_template import KeyTemplate
from keycore.point_cloud import PointCloudFrame, RegionOfInterest, bounding_box_volume

logger = logging.getLogger(__name__)

MSG_SELECT_OBJECT = "Tap on the object you want to enroll"
MSG_OBJECT_SELECTED = "Object selected! Move it slowly through different angles"
MSG_GOOD_FRAME = "Good! Continue moving the object slowly"
MSG_ALMOST_DONE = "Almost done! Capture a few more angles"
MSG_CAPACITY = "Enough angles captured. Finish enrollment"

REJECTION_MESSAGES = {
    RejectionReason.POOR_TRACKING: "Tracking not available. Move device slowly",
    RejectionReason.NO_POINTS: "No points detected. Move closer or improve lighting",
    RejectionReason.TOO_FAR: "Object too far. Move closer",
    RejectionReason.TOO_CLOSE: "Object too close. Move farther away",
    RejectionReason.EXTRACTION_FAILED: "Failed to extract features. Try again",
    RejectionReason.AWAITING_SELECTION: MSG_SELECT_OBJECT,
    RejectionReason.CAPACITY_REACHED: MSG_CAPACITY,
}

# Progress at which the advisory switches to "almost done"
ALMOST_DONE_PROGRESS = 0.8


class EnrollmentPhase(str, Enum):
    IDLE = "idle"
    AWAITING_SELECTION = "awaiting-selection"
    CAPTURING = "capturing"
    COMPLETED = "completed"
    ABORTED = "aborted"


TERMINAL_PHASES = (EnrollmentPhase.COMPLETED, EnrollmentPhase.ABORTED)


@dataclass(frozen=True)
class EnrollmentProgress:
    """
    Per-frame enrollment event for the presentation collaborator.

    Attributes:
        progress: Accepted vectors / max_frames, capped at 1.0.
        advisory_message: User guidance for this frame.
        accepted: True if the frame's vector was added to the template.
        rejection_reason: Why the frame was not added, or None.
        frame_count: Number of vectors accumulated so far.
    """

    progress: float
    advisory_message: str
    accepted: bool = False
    rejection_reason: Optional[RejectionReason] = None
    frame_count: int = 0


@dataclass(frozen=True)
class EnrollmentState:
    """Snapshot of a session's mutable state."""

    phase: EnrollmentPhase
    frame_count: int
    progress: float
    awaiting_selection: bool


class EnrollmentSession:
    """
    Accumulates feature vectors from a frame stream into a KeyTemplate.

    Frames must be submitted in arrival order; calls are serialized by an
    internal lock, and abort() may be called from any thread. After abort()
    returns, no further progress event is emitted.

    Args:
        config: Optional dictionary (the "enrollment" config section) with:
            - min_frames: Vectors needed before complete() (default 8)
            - max_frames: Vectors kept at most (default 12)
            - min_volume / max_volume: Accepted bounding-box volume range
              (defaults 0.001 / 1.0 cubic units)
        extractor: FeatureExtractor to use (default: a new one).
        on_progress: Handler called with every EnrollmentProgress.
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        extractor: Optional[FeatureExtractor] = None,
        on_progress: Optional[Callable[[EnrollmentProgress], None]] = None,
    ):
        if config is None:
            config = {}
        self.min_frames = int(config.get("min_frames", 8))
        self.max_frames = int(config.get("max_frames", 12))
        self.min_volume = float(config.get("min_volume", 0.001))
        self.max_volume = float(config.get("max_volume", 1.0))

        if self.min_frames < 1 or self.min_frames > self.max_frames:
            raise ValueError(
                f"need 1 <= min_frames <= max_frames, got {self.min_frames}/{self.max_frames}"
            )
        if self.min_volume > self.max_volume:
            raise ValueError("min_volume must not exceed max_volume")

        self.extractor = extractor or FeatureExtractor()
        self.on_progress = on_progress

        self._phase = EnrollmentPhase.IDLE
        self._vectors: List[np.ndarray] = []
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def phase(self) -> EnrollmentPhase:
        return self._phase

    @property
    def frame_count(self) -> int:
        return len(self._vectors)

    @property
    def progress(self) -> float:
        return min(1.0, len(self._vectors) / self.max_frames)

    @property
    def is_active(self) -> bool:
        return self._phase in (EnrollmentPhase.AWAITING_SELECTION, EnrollmentPhase.CAPTURING)

    @property
    def state(self) -> EnrollmentState:
        with self._lock:
            return EnrollmentState(
                phase=self._phase,
                frame_count=len(self._vectors),
                progress=self.progress,
                awaiting_selection=self._phase == EnrollmentPhase.AWAITING_SELECTION,
            )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def start(self, initial_roi: Optional[RegionOfInterest] = None) -> EnrollmentProgress:
        """
        Begin enrollment.

        Without an ROI the session waits for a selection event; with one it
        starts capturing immediately.

        Raises:
            SessionConflict: If the session was already started.
        """
        with self._lock:
            if self._phase != EnrollmentPhase.IDLE:
                raise SessionConflict(f"Enrollment session already {self._phase.value}")

            self._vectors = []
            if initial_roi is not None:
                logger.info(f"Starting enrollment with ROI: {initial_roi}")
                self._phase = EnrollmentPhase.CAPTURING
                event = self._event(MSG_OBJECT_SELECTED)
            else:
                logger.info("Starting enrollment - waiting for object selection")
                self._phase = EnrollmentPhase.AWAITING_SELECTION
                event = self._event(MSG_SELECT_OBJECT)

            self._emit(event)
            return event

    def on_frame(
        self,
        frame: PointCloudFrame,
        selection: Optional[RegionOfInterest] = None,
    ) -> Optional[EnrollmentProgress]:
        """
        Process one frame.

        Args:
            frame: The sensor frame.
            selection: Selection event (the ROI the user picked). A frame's
                       own `roi` also counts as a selection while waiting.

        Returns:
            The progress event for this frame, or None if the session has
            already completed or been aborted.

        Raises:
            InvalidSessionState: If the session was never started.
        """
        with self._lock:
            if self._phase == EnrollmentPhase.IDLE:
                raise InvalidSessionState("Enrollment session not started")
            if self._phase in TERMINAL_PHASES:
                logger.debug(f"Dropping frame: enrollment {self._phase.value}")
                return None

            if self._phase == EnrollmentPhase.AWAITING_SELECTION:
                selection = selection or frame.roi
                if selection is None:
                    event = self._reject(RejectionReason.AWAITING_SELECTION)
                    self._emit(event)
                    return event
                logger.info(f"Object selected, capturing from ROI: {selection}")
                self._phase = EnrollmentPhase.CAPTURING

            event = self._capture(frame)
            self._emit(event)
            return event

    def complete(
        self, persist: Optional[Callable[[KeyTemplate], None]] = None
    ) -> KeyTemplate:
        """
        Build the KeyTemplate from all accumulated vectors.

        Args:
            persist: Optional callable invoked with the template before the
                     session is marked completed. If it raises, the session
                     stays capturing and the exception propagates, so the
                     caller can retry.

        Raises:
            InsufficientFrames: Fewer than min_frames vectors were accepted.
            InvalidSessionState: The session is not awaiting or capturing.
        """
        with self._lock:
            if not self.is_active:
                raise InvalidSessionState(f"Cannot complete enrollment: {self._phase.value}")
            if len(self._vectors) < self.min_frames:
                logger.warning(f"Not enough frames: {len(self._vectors)} < {self.min_frames}")
                raise InsufficientFrames(len(self._vectors), self.min_frames)

            template = KeyTemplate.create(self._vectors)
            if persist is not None:
                persist(template)

            self._phase = EnrollmentPhase.COMPLETED
            self._vectors = []
            logger.info(
                f"Enrollment completed: template {template.id} "
                f"({template.n_vectors} vectors)"
            )
            return template

    def abort(self) -> None:
        """Discard all accumulated vectors. Idempotent; no-op once terminal."""
        with self._lock:
            if self._phase in TERMINAL_PHASES:
                return
            logger.info(f"Enrollment aborted with {len(self._vectors)} vectors")
            self._phase = EnrollmentPhase.ABORTED
            self._vectors = []

    # ------------------------------------------------------------------
    # Frame processing
    # ------------------------------------------------------------------

    def _capture(self, frame: PointCloudFrame) -> EnrollmentProgress:
        reason = self._quality_gate(frame)
        if reason is not None:
            logger.warning(f"Enrollment frame rejected: {reason.value}")
            return self._reject(reason)

        if len(self._vectors) >= self.max_frames:
            return self._reject(RejectionReason.CAPACITY_REACHED)

        try:
            vector = self.extractor.extract(frame.points)
        except (EmptyPointCloud, ValueError) as e:
            logger.warning(f"Failed to extract features: {e}")
            return self._reject(RejectionReason.EXTRACTION_FAILED)

        self._vectors.append(vector)
        logger.debug(f"Added features. Total: {len(self._vectors)}/{self.max_frames}")

        message = MSG_ALMOST_DONE if self.progress >= ALMOST_DONE_PROGRESS else MSG_GOOD_FRAME
        return self._event(frame.tracking.advisory_message or message, accepted=True)

    def _quality_gate(self, frame: PointCloudFrame) -> Optional[RejectionReason]:
        """Return the first failing check, or None if the frame is usable."""
        if not frame.tracking.is_available:
            return RejectionReason.POOR_TRACKING
        if not frame.has_finite_points:
            return RejectionReason.NO_POINTS

        # Small box = object far away, large box = too close.
        # Non-finite points are ignored here as they are by the extractor.
        volume = bounding_box_volume(frame.points)
        if volume < self.min_volume:
            return RejectionReason.TOO_FAR
        if volume > self.max_volume:
            return RejectionReason.TOO_CLOSE
        return None

    def _reject(self, reason: RejectionReason) -> EnrollmentProgress:
        return self._event(REJECTION_MESSAGES[reason], rejection_reason=reason)

    def _event(
        self,
        message: str,
        accepted: bool = False,
        rejection_reason: Optional[RejectionReason] = None,
    ) -> EnrollmentProgress:
        return EnrollmentProgress(
            progress=self.progress,
            advisory_message=message,
            accepted=accepted,
            rejection_reason=rejection_reason,
            frame_count=len(self._vectors),
        )

    def _emit(self, event: EnrollmentProgress) -> None:
        if self.on_progress is not None:
            self.on_progress(event)
