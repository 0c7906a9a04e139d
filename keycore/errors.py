"""
Errors and caller-facing reason codes.

Exceptions are raised for operations that cannot proceed (empty template,
early completion, storage problems). Per-frame outcomes that the caller only
needs to surface as user guidance are reported through the reason enums
instead, so a bad frame never interrupts a session.
"""

from enum import Enum
from typing import Optional


class KeyCoreError(Exception):
    """Base class for all errors raised by the key verification core."""


class EmptyPointCloud(KeyCoreError):
    """Raised when feature extraction is given a cloud with no points."""

    def __init__(self, message: str = "Point cloud contains no points"):
        super().__init__(message)


class InsufficientFrames(KeyCoreError):
    """Raised by complete() when fewer than min_frames vectors were accepted."""

    def __init__(self, count: int, required: int):
        self.count = count
        self.required = required
        super().__init__(f"Not enough frames: {count} < {required}")


class EmptyTemplate(KeyCoreError):
    """Raised when verification is started against a template with no vectors."""

    def __init__(self, message: str = "Template has no feature vectors"):
        super().__init__(message)


class SessionConflict(KeyCoreError):
    """Raised when a session is started while another one is still active."""


class InvalidSessionState(KeyCoreError):
    """Raised when an operation is not valid in the session's current state."""


class KeyNotFound(KeyCoreError):
    """Raised when a key id is not present in the registry."""

    def __init__(self, key_id: str):
        self.key_id = key_id
        super().__init__(f"Key not found: {key_id}")


class StorageFailure(KeyCoreError):
    """
    Raised when the template store cannot save, load or delete a record.

    Attributes:
        operation: "init", "save", "load", "load_all" or "delete".
        key_id: Key the operation was about, if any.
    """

    def __init__(self, operation: str, key_id: Optional[str] = None, message: str = ""):
        self.operation = operation
        self.key_id = key_id
        detail = f" ({message})" if message else ""
        target = f" for key {key_id}" if key_id else ""
        super().__init__(f"Template store {operation} failed{target}{detail}")


class RejectionReason(str, Enum):
    """Why an enrollment frame was not added to the template."""

    NO_POINTS = "no-points"
    TOO_FAR = "too-far"
    TOO_CLOSE = "too-close"
    POOR_TRACKING = "poor-tracking"
    EXTRACTION_FAILED = "extraction-failed"
    AWAITING_SELECTION = "awaiting-selection"
    CAPACITY_REACHED = "capacity-reached"


class ErrorReason(str, Enum):
    """Why a verification frame did not produce a match."""

    TOO_FAR_OR_UNTRACKED = "tooFarOrUntracked"
    NO_MATCH = "noMatch"
    UNKNOWN = "unknown"
    # Advisory values kept for record compatibility with existing clients.
    BLURRY_IMAGE = "blurryImage"
    LOW_LIGHT = "lowLight"
    LOW_TEXTURE = "lowTexture"
    TOO_FAR = "tooFar"
    TOO_CLOSE = "tooClose"
