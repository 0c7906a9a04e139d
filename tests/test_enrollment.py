"""
Unit Tests for the Enrollment Session Module

This module tests the EnrollmentSession state machine:
- Start with and without a region of interest
- Selection handling while awaiting selection
- Quality gate rejections and their reason codes
- Progress reporting and capacity limit
- complete() / abort() transitions

Usage:
    pytest tests/test_enrollment.py -v
"""

import sys
from pathlib import Path

import numpy as np
import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from keycore.enrollment import (
    MSG_ALMOST_DONE,
    MSG_GOOD_FRAME,
    MSG_OBJECT_SELECTED,
    MSG_SELECT_OBJECT,
    EnrollmentPhase,
    EnrollmentSession,
)
from keycore.errors import (
    EmptyPointCloud,
    InsufficientFrames,
    InvalidSessionState,
    RejectionReason,
    SessionConflict,
)
from keycore.feature_extractor import FeatureExtractor
from keycore.point_cloud import (
    LimitedReason,
    PointCloudFrame,
    RegionOfInterest,
    TrackingQuality,
)


ROI = RegionOfInterest(0.25, 0.25, 0.5, 0.5)


def object_frame(seed=0, tracking=None, size=(0.2, 0.1, 0.15), n_points=400):
    """Frame of a mug-sized object (bounding-box volume ~0.003)."""
    rng = np.random.default_rng(seed)
    points = rng.uniform(-0.5, 0.5, (n_points, 3)) * np.array(size)
    return PointCloudFrame(points=points, tracking=tracking or TrackingQuality.normal())


# ============================================================
# Test Fixtures
# ============================================================

@pytest.fixture
def events():
    return []


@pytest.fixture
def session(events):
    return EnrollmentSession(on_progress=events.append)


@pytest.fixture
def capturing(session):
    session.start(ROI)
    return session


def feed(session, count, start_seed=0):
    return [session.on_frame(object_frame(seed=start_seed + i)) for i in range(count)]


# ============================================================
# Start and selection
# ============================================================

class TestStart:
    """Tests for session start and object selection."""

    def test_initial_state(self, session):
        assert session.phase == EnrollmentPhase.IDLE
        assert session.frame_count == 0
        assert session.progress == 0.0

    def test_start_without_roi_awaits_selection(self, session, events):
        event = session.start()
        assert session.phase == EnrollmentPhase.AWAITING_SELECTION
        assert session.state.awaiting_selection is True
        assert event.advisory_message == MSG_SELECT_OBJECT
        assert events == [event]

    def test_start_with_roi_captures(self, session):
        event = session.start(ROI)
        assert session.phase == EnrollmentPhase.CAPTURING
        assert event.advisory_message == MSG_OBJECT_SELECTED

    def test_double_start_rejected(self, capturing):
        with pytest.raises(SessionConflict):
            capturing.start()

    def test_frame_before_start_rejected(self, session):
        with pytest.raises(InvalidSessionState):
            session.on_frame(object_frame())

    def test_frames_dropped_until_selection(self, session):
        session.start()
        for seed in range(5):
            event = session.on_frame(object_frame(seed))
            assert event.accepted is False
            assert event.rejection_reason == RejectionReason.AWAITING_SELECTION
        assert session.frame_count == 0
        assert session.phase == EnrollmentPhase.AWAITING_SELECTION

    def test_selection_event_starts_capture(self, session):
        session.start()
        event = session.on_frame(object_frame(), selection=ROI)
        assert session.phase == EnrollmentPhase.CAPTURING
        assert event.accepted is True
        assert session.frame_count == 1

    def test_frame_roi_counts_as_selection(self, session):
        session.start()
        frame = PointCloudFrame(points=object_frame().points, roi=ROI)
        session.on_frame(frame)
        assert session.phase == EnrollmentPhase.CAPTURING


# ============================================================
# Quality gate
# ============================================================

class TestQualityGate:
    """Tests for frame rejection reasons."""

    def test_tracking_unavailable(self, capturing):
        event = capturing.on_frame(object_frame(tracking=TrackingQuality.unavailable()))
        assert event.rejection_reason == RejectionReason.POOR_TRACKING
        assert capturing.frame_count == 0
        assert capturing.phase == EnrollmentPhase.CAPTURING

    def test_tracking_checked_before_points(self, capturing):
        frame = PointCloudFrame(points=np.zeros((0, 3)), tracking=TrackingQuality.unavailable())
        assert capturing.on_frame(frame).rejection_reason == RejectionReason.POOR_TRACKING

    def test_no_points(self, capturing):
        event = capturing.on_frame(PointCloudFrame(points=[]))
        assert event.rejection_reason == RejectionReason.NO_POINTS
        assert "No points detected" in event.advisory_message

    def test_too_far(self, capturing):
        event = capturing.on_frame(object_frame(size=(0.05, 0.05, 0.05)))
        assert event.rejection_reason == RejectionReason.TOO_FAR
        assert event.advisory_message == "Object too far. Move closer"

    def test_too_close(self, capturing):
        event = capturing.on_frame(object_frame(size=(2.0, 2.0, 2.0)))
        assert event.rejection_reason == RejectionReason.TOO_CLOSE

    def test_flat_cloud_is_too_far(self, capturing):
        points = object_frame().points.copy()
        points[:, 2] = 0.0
        event = capturing.on_frame(PointCloudFrame(points=points))
        assert event.rejection_reason == RejectionReason.TOO_FAR

    def test_non_finite_only_is_no_points(self, capturing):
        points = np.full((10, 3), np.nan)
        event = capturing.on_frame(PointCloudFrame(points=points))
        assert event.rejection_reason == RejectionReason.NO_POINTS
        assert capturing.frame_count == 0

    def test_non_finite_point_does_not_bypass_volume(self, capturing):
        small = object_frame(size=(0.01, 0.01, 0.01)).points
        assert capturing.on_frame(PointCloudFrame(points=small)).rejection_reason == RejectionReason.TOO_FAR

        with_nan = np.vstack([small, [[np.nan, 0.0, 0.0]]])
        event = capturing.on_frame(PointCloudFrame(points=with_nan))
        assert event.accepted is False
        assert event.rejection_reason == RejectionReason.TOO_FAR
        assert capturing.frame_count == 0

    def test_non_finite_points_ignored_in_good_frame(self, capturing):
        points = np.vstack([object_frame().points, [[np.inf, 0.0, 0.0]]])
        event = capturing.on_frame(PointCloudFrame(points=points))
        assert event.accepted is True

    def test_extraction_failure(self, events):
        class BrokenExtractor(FeatureExtractor):
            def extract(self, points):
                raise EmptyPointCloud()

        session = EnrollmentSession(extractor=BrokenExtractor(), on_progress=events.append)
        session.start(ROI)
        event = session.on_frame(object_frame())
        assert event.rejection_reason == RejectionReason.EXTRACTION_FAILED
        assert session.frame_count == 0

    def test_limited_tracking_accepted_with_advice(self, capturing):
        tracking = TrackingQuality.limited(LimitedReason.EXCESSIVE_MOTION)
        event = capturing.on_frame(object_frame(tracking=tracking))
        assert event.accepted is True
        assert event.advisory_message == "Too much motion. Hold device still"

    def test_custom_volume_range(self):
        session = EnrollmentSession({"min_volume": 0.0001, "max_volume": 0.001})
        session.start(ROI)
        assert session.on_frame(object_frame(size=(0.05, 0.05, 0.05))).accepted is True
        assert session.on_frame(object_frame()).rejection_reason == RejectionReason.TOO_CLOSE


# ============================================================
# Progress and capacity
# ============================================================

class TestProgress:
    """Tests for progress events and the frame cap."""

    def test_progress_per_accepted_frame(self, capturing):
        events = feed(capturing, 3)
        assert [e.frame_count for e in events] == [1, 2, 3]
        assert events[-1].progress == pytest.approx(3 / 12)
        assert events[-1].advisory_message == MSG_GOOD_FRAME

    def test_almost_done_message(self, capturing):
        events = feed(capturing, 10)
        assert events[-1].progress == pytest.approx(10 / 12)
        assert events[-1].advisory_message == MSG_ALMOST_DONE

    def test_rejections_do_not_count(self, capturing):
        feed(capturing, 2)
        capturing.on_frame(PointCloudFrame(points=[]))
        assert capturing.frame_count == 2

    def test_capacity_reached(self, capturing):
        feed(capturing, 12)
        assert capturing.progress == 1.0
        event = capturing.on_frame(object_frame(seed=99))
        assert event.accepted is False
        assert event.rejection_reason == RejectionReason.CAPACITY_REACHED
        assert capturing.frame_count == 12

    def test_handler_receives_every_event(self, session, events):
        session.start(ROI)
        feed(session, 2)
        session.on_frame(PointCloudFrame(points=[]))
        assert len(events) == 4


# ============================================================
# Completion and abort
# ============================================================

class TestCompleteAndAbort:
    """Tests for terminal transitions."""

    def test_complete_too_early(self, capturing):
        feed(capturing, 7)
        with pytest.raises(InsufficientFrames) as excinfo:
            capturing.complete()
        assert excinfo.value.count == 7
        assert excinfo.value.required == 8
        assert capturing.phase == EnrollmentPhase.CAPTURING

    def test_complete_callable_again_later(self, capturing):
        feed(capturing, 7)
        with pytest.raises(InsufficientFrames):
            capturing.complete()
        feed(capturing, 1, start_seed=50)
        template = capturing.complete()
        assert template.n_vectors == 8

    def test_complete_returns_all_vectors(self, capturing):
        feed(capturing, 10)
        template = capturing.complete()
        assert template.n_vectors == 10
        assert template.vector_dim == 47
        assert capturing.phase == EnrollmentPhase.COMPLETED
        assert capturing.frame_count == 0

    def test_complete_capped_at_max(self, capturing):
        feed(capturing, 15)
        assert capturing.complete().n_vectors == 12

    def test_complete_while_awaiting_selection(self, session):
        session.start()
        with pytest.raises(InsufficientFrames):
            session.complete()

    def test_complete_before_start(self, session):
        with pytest.raises(InvalidSessionState):
            session.complete()

    def test_failed_persist_keeps_session_open(self, capturing):
        feed(capturing, 8)

        def failing_persist(template):
            raise OSError("disk full")

        with pytest.raises(OSError):
            capturing.complete(persist=failing_persist)
        assert capturing.phase == EnrollmentPhase.CAPTURING
        assert capturing.frame_count == 8

    def test_persist_receives_template(self, capturing):
        feed(capturing, 8)
        saved = []
        template = capturing.complete(persist=saved.append)
        assert saved == [template]

    def test_abort_discards_vectors(self, capturing):
        feed(capturing, 5)
        capturing.abort()
        assert capturing.phase == EnrollmentPhase.ABORTED
        assert capturing.frame_count == 0

    def test_abort_idempotent(self, capturing):
        capturing.abort()
        capturing.abort()
        assert capturing.phase == EnrollmentPhase.ABORTED

    def test_abort_from_idle(self, session):
        session.abort()
        assert session.phase == EnrollmentPhase.ABORTED

    def test_no_events_after_abort(self, session, events):
        session.start(ROI)
        session.abort()
        count = len(events)
        assert session.on_frame(object_frame()) is None
        assert len(events) == count

    def test_complete_after_abort_rejected(self, capturing):
        feed(capturing, 8)
        capturing.abort()
        with pytest.raises(InvalidSessionState):
            capturing.complete()

    def test_invalid_config(self):
        with pytest.raises(ValueError):
            EnrollmentSession({"min_frames": 13, "max_frames": 12})


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
