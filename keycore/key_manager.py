"""
Key Manager Module

Owns the registry of enrolled keys for one key-management context and
arbitrates sessions: at most one enrollment or verification session is
active at a time. Starting another one while a session is active is
rejected with SessionConflict; the caller must stop or abort first.

Persistence goes through an injected TemplateStore:
- enrollment completion → store.save (on failure nothing is registered and
  the enrollment stays open so the caller can retry)
- key removal → store.delete (on failure the key stays registered)

Usage:
    from keycore.key_manager import KeyManager
    from keycore.template_store import get_template_manager

    manager = KeyManager(get_template_manager())
    manager.start_enrollment(name="Blue Mug", on_progress=ui.update)
    for frame in frames:
        manager.submit_enrollment_frame(frame, selection=roi)
    key = manager.complete_enrollment()

    manager.start_verification(key.id, on_result=ui.show)
    for frame in frames:
        manager.submit_verification_frame(frame)
    manager.stop_verification()
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from keycore.enrollment import EnrollmentProgress, EnrollmentSession
from keycore.errors import InvalidSessionState, KeyNotFound, SessionConflict
from keycore.feature_extractor import FeatureExtractor
from keycore.key_template import Key, KeyTemplate, ScanResult
from keycore.point_cloud import PointCloudFrame, RegionOfInterest
from keycore.template_store import TemplateStore
from keycore.verification import VerificationSession

logger = logging.getLogger(__name__)


class KeyManager:
    """
    Key registry plus enrollment/verification session arbitration.

    Args:
        store: Persistence capability for templates.
        config: Optional full configuration dictionary; the "feature",
                "matching", "smoothing" and "enrollment" sections are used.

    Raises:
        StorageFailure: If the existing keys cannot be enumerated.
    """

    def __init__(self, store: TemplateStore, config: Optional[Dict[str, Any]] = None):
        if config is None:
            config = {}
        self.config = config
        self.store = store
        self.extractor = FeatureExtractor(config.get("feature"))

        self._keys: Dict[str, Key] = {}
        self._enrollment: Optional[EnrollmentSession] = None
        self._enrollment_name: Optional[str] = None
        self._verification: Optional[VerificationSession] = None
        self._verification_key_id: Optional[str] = None
        self._lock = threading.RLock()

        self.reload_keys()

    @classmethod
    def from_config(cls, store: Optional[TemplateStore] = None) -> "KeyManager":
        """Build a manager from config.yaml, defaulting to the shared TemplateManager."""
        from keycore.config import get_config
        from keycore.template_store import get_template_manager

        return cls(store or get_template_manager(), get_config())

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def reload_keys(self) -> None:
        """Replace the in-memory registry with the templates in the store."""
        templates = self.store.load_all()
        with self._lock:
            self._keys = {t.id: Key(template=t) for t in templates}
        logger.info(f"Loaded {len(templates)} keys")

    def get_key(self, key_id: str) -> Optional[Key]:
        with self._lock:
            return self._keys.get(key_id)

    def has_key(self, key_id: str) -> bool:
        with self._lock:
            return key_id in self._keys

    @property
    def all_keys(self) -> List[Key]:
        with self._lock:
            return list(self._keys.values())

    def rename_key(self, key_id: str, name: Optional[str]) -> Key:
        with self._lock:
            key = self._require_key(key_id)
            key.name = name
            return key

    def remove_key(self, key_id: str) -> None:
        """
        Delete a key from the store, then from the registry.

        Raises:
            KeyNotFound: If the key is not registered.
            SessionConflict: If the key is being verified.
            StorageFailure: If the store delete failed (key stays registered).
        """
        with self._lock:
            self._require_key(key_id)
            self._release_finished()
            if self._verification is not None and self._verification_key_id == key_id:
                raise SessionConflict(f"Key {key_id} is being verified; stop verification first")

            if not self.store.delete(key_id):
                logger.warning(f"Key {key_id} had no stored template")
            del self._keys[key_id]
            logger.info(f"Removed key {key_id}")

    def _require_key(self, key_id: str) -> Key:
        key = self._keys.get(key_id)
        if key is None:
            raise KeyNotFound(key_id)
        return key

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @property
    def active_session(self) -> Optional[object]:
        """The active EnrollmentSession or VerificationSession, if any."""
        with self._lock:
            self._release_finished()
            return self._enrollment or self._verification

    def _release_finished(self) -> None:
        """Free slots whose session was stopped, aborted or completed directly."""
        if self._enrollment is not None and not self._enrollment.is_active:
            logger.debug(f"Releasing finished enrollment ({self._enrollment.phase.value})")
            self._enrollment = None
            self._enrollment_name = None
        if self._verification is not None and not self._verification.is_active:
            logger.debug("Releasing stopped verification")
            self._verification = None
            self._verification_key_id = None

    def _ensure_idle(self) -> None:
        self._release_finished()
        if self._enrollment is not None:
            raise SessionConflict("An enrollment session is active; abort or complete it first")
        if self._verification is not None:
            raise SessionConflict("A verification session is active; stop it first")

    def start_enrollment(
        self,
        name: Optional[str] = None,
        initial_roi: Optional[RegionOfInterest] = None,
        on_progress: Optional[Callable[[EnrollmentProgress], None]] = None,
    ) -> EnrollmentSession:
        """
        Start enrolling a new key.

        Raises:
            SessionConflict: If any session is already active.
        """
        with self._lock:
            self._ensure_idle()
            session = EnrollmentSession(
                self.config.get("enrollment"),
                extractor=self.extractor,
                on_progress=on_progress,
            )
            session.start(initial_roi)
            self._enrollment = session
            self._enrollment_name = name
            return session

    def submit_enrollment_frame(
        self, frame: PointCloudFrame, selection: Optional[RegionOfInterest] = None
    ) -> Optional[EnrollmentProgress]:
        with self._lock:
            session = self._enrollment
        if session is None:
            raise InvalidSessionState("No enrollment session active")
        return session.on_frame(frame, selection)

    def complete_enrollment(self) -> Key:
        """
        Finish enrollment, persist the template and register the key.

        Raises:
            InvalidSessionState: If no enrollment is active.
            InsufficientFrames: Too few frames; the session stays open.
            StorageFailure: The save failed; nothing is registered and the
                            session stays open.
        """
        with self._lock:
            session = self._enrollment
            if session is None:
                raise InvalidSessionState("No enrollment session active")

            template = session.complete(persist=self.store.save)
            key = Key(template=template, name=self._enrollment_name)
            self._keys[key.id] = key
            self._enrollment = None
            self._enrollment_name = None

        logger.info(f"Enrollment completed! Created key: {key.id[:8]}")
        return key

    def abort_enrollment(self) -> None:
        """Abort the active enrollment, if any. Idempotent."""
        with self._lock:
            session = self._enrollment
            self._enrollment = None
            self._enrollment_name = None
        if session is not None:
            session.abort()

    def start_verification(
        self,
        key_id: str,
        on_result: Optional[Callable[[ScanResult], None]] = None,
    ) -> VerificationSession:
        """
        Start verifying frames against a registered key.

        Raises:
            KeyNotFound: If the key is not registered.
            SessionConflict: If any session is already active.
            EmptyTemplate: If the key's template has no vectors.
        """
        with self._lock:
            key = self._require_key(key_id)
            self._ensure_idle()
            session = VerificationSession(
                {
                    "matching": self.config.get("matching"),
                    "smoothing": self.config.get("smoothing"),
                },
                extractor=self.extractor,
                on_result=on_result,
            )
            session.start(key.template)
            self._verification = session
            self._verification_key_id = key_id
            return session

    def submit_verification_frame(self, frame: PointCloudFrame) -> Optional[ScanResult]:
        """Process one frame; returns None when no verification is active."""
        with self._lock:
            session = self._verification
        if session is None:
            return None
        return session.on_frame(frame)

    def stop_verification(self) -> None:
        """Stop the active verification, if any. Idempotent."""
        with self._lock:
            session = self._verification
            self._verification = None
            self._verification_key_id = None
        if session is not None:
            session.stop()

    def enroll_template(self, template: KeyTemplate, name: Optional[str] = None) -> Key:
        """
        Persist and register an already-built template (e.g. an import).

        Raises:
            StorageFailure: If the save failed; nothing is registered.
        """
        self.store.save(template)
        key = Key(template=template, name=name)
        with self._lock:
            self._keys[key.id] = key
        return key
