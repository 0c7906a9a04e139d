"""
Core Module for 3D Physical-Key Verification

This package verifies that an object presented to a depth sensor is the same
object previously enrolled as a key, using geometric features computed from
its 3D point cloud.

Main components:
    - config: Configuration loading and management
    - point_cloud: Sensor frame contract (points, tracking quality, ROI)
    - feature_extractor: Point cloud → fixed-length feature vector
    - matching: Template similarity and temporal smoothing
    - key_template: KeyTemplate / ScanResult / Key data classes
    - template_store: Template persistence (in-memory and npz + SQLite)
    - enrollment: Enrollment state machine
    - verification: Verification state machine
    - key_manager: Key registry and session arbitration

Usage:
    from keycore import KeyManager, InMemoryTemplateStore, PointCloudFrame
"""

from keycore.config import (
    get_config,
    get_section,
    get_feature_config,
    get_matching_config,
    get_smoothing_config,
    get_enrollment_config,
    get_storage_config,
    setup_logging,
)

from keycore.errors import (
    KeyCoreError,
    EmptyPointCloud,
    InsufficientFrames,
    EmptyTemplate,
    SessionConflict,
    InvalidSessionState,
    KeyNotFound,
    StorageFailure,
    RejectionReason,
    ErrorReason,
)

from keycore.point_cloud import (
    PointCloudFrame,
    TrackingQuality,
    TrackingState,
    LimitedReason,
    RegionOfInterest,
)

from keycore.feature_extractor import FeatureExtractor, extract_features

from keycore.matching import MatchResult, SimilarityMatcher, TemporalSmoother

from keycore.key_template import KeyTemplate, ScanResult, Key, generate_key_id

from keycore.template_store import (
    TemplateStore,
    InMemoryTemplateStore,
    TemplateManager,
    get_template_manager,
)

from keycore.enrollment import (
    EnrollmentSession,
    EnrollmentPhase,
    EnrollmentProgress,
    EnrollmentState,
)

from keycore.verification import VerificationSession, VerificationPhase

from keycore.key_manager import KeyManager

__all__ = [
    # Configuration
    "get_config",
    "get_section",
    "get_feature_config",
    "get_matching_config",
    "get_smoothing_config",
    "get_enrollment_config",
    "get_storage_config",
    "setup_logging",
    # Errors
    "KeyCoreError",
    "EmptyPointCloud",
    "InsufficientFrames",
    "EmptyTemplate",
    "SessionConflict",
    "InvalidSessionState",
    "KeyNotFound",
    "StorageFailure",
    "RejectionReason",
    "ErrorReason",
    # Sensor input
    "PointCloudFrame",
    "TrackingQuality",
    "TrackingState",
    "LimitedReason",
    "RegionOfInterest",
    # Features and matching
    "FeatureExtractor",
    "extract_features",
    "MatchResult",
    "SimilarityMatcher",
    "TemporalSmoother",
    # Templates and storage
    "KeyTemplate",
    "ScanResult",
    "Key",
    "generate_key_id",
    "TemplateStore",
    "InMemoryTemplateStore",
    "TemplateManager",
    "get_template_manager",
    # Sessions
    "EnrollmentSession",
    "EnrollmentPhase",
    "EnrollmentProgress",
    "EnrollmentState",
    "VerificationSession",
    "VerificationPhase",
    "KeyManager",
]
