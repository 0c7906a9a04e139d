"""
Key Template Module

Data classes exchanged with the persistence and presentation collaborators:

- KeyTemplate: the enrolled representation of one physical key, an ordered
  collection of feature vectors. Immutable; replacing a key means creating a
  new template.
- ScanResult: one verification verdict per processed frame.
- Key: a registry entry wrapping a template with a display name.

Templates serialize to a record with a fixed shape, shared with every
store implementation:

    {
        "id": "0b6f2f8e-...",                      # opaque unique id
        "enrolledDate": "2026-10-19T08:30:00.123456+00:00",
        "featureVectors": [[0.0, 0.25, ...], ...]  # float32 values
    }

Usage:
    from keycore.key_template import KeyTemplate

    template = KeyTemplate.create(vectors)
    record = template.to_record()
    same = KeyTemplate.from_record(record)
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Tuple

import numpy as np

from keycore.errors import ErrorReason


def generate_key_id() -> str:
    """
    Generate a unique key ID.

    Returns:
        A random UUID4 string (e.g., "0b6f2f8e-4c1d-4e57-9a55-3c7a1f0d2b19").
    """
    return str(uuid.uuid4())


def _frozen_vector(vector) -> np.ndarray:
    array = np.array(vector, dtype=np.float32, copy=True).ravel()
    array.setflags(write=False)
    return array


def parse_timestamp(value: str) -> datetime:
    """
    Parse an ISO-8601 timestamp; a trailing "Z" and naive values mean UTC.

    Raises:
        ValueError: If the string is not a valid ISO-8601 timestamp.
    """
    if not isinstance(value, str):
        raise ValueError(f"timestamp must be an ISO-8601 string, got {type(value).__name__}")
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class KeyTemplate:
    """
    Enrolled template for one physical key.

    Attributes:
        id: Opaque unique identifier, also the storage key.
        enrolled_at: Timezone-aware enrollment timestamp.
        feature_vectors: Ordered tuple of read-only (D,) float32 arrays.
    """

    id: str
    enrolled_at: datetime
    feature_vectors: Tuple[np.ndarray, ...] = field(default_factory=tuple)

    def __post_init__(self):
        vectors = tuple(_frozen_vector(v) for v in self.feature_vectors)
        object.__setattr__(self, "feature_vectors", vectors)
        if self.enrolled_at.tzinfo is None:
            object.__setattr__(self, "enrolled_at", self.enrolled_at.replace(tzinfo=timezone.utc))

    @classmethod
    def create(cls, feature_vectors: Iterable, key_id: Optional[str] = None) -> "KeyTemplate":
        """Build a new template stamped with a fresh id and the current time."""
        return cls(
            id=key_id or generate_key_id(),
            enrolled_at=datetime.now(timezone.utc),
            feature_vectors=tuple(feature_vectors),
        )

    @property
    def n_vectors(self) -> int:
        return len(self.feature_vectors)

    @property
    def is_empty(self) -> bool:
        return len(self.feature_vectors) == 0

    @property
    def vector_dim(self) -> int:
        """Length of the first vector (0 for an empty template)."""
        return len(self.feature_vectors[0]) if self.feature_vectors else 0

    def to_record(self) -> Dict[str, Any]:
        """Serialize to the persistence record shape."""
        return {
            "id": self.id,
            "enrolledDate": self.enrolled_at.isoformat(),
            "featureVectors": [vector.tolist() for vector in self.feature_vectors],
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "KeyTemplate":
        """
        Rebuild a template from a persistence record.

        Raises:
            ValueError: If a required field is missing or malformed.
        """
        if not isinstance(record, dict):
            raise ValueError(f"Key template record must be an object, got {type(record).__name__}")
        try:
            key_id = record["id"]
            enrolled_at = parse_timestamp(record["enrolledDate"])
            raw_vectors = record["featureVectors"]
        except (KeyError, TypeError) as e:
            raise ValueError(f"Invalid key template record: {e}") from e

        if not isinstance(key_id, str) or not key_id:
            raise ValueError("Key template record has no id")
        if not isinstance(raw_vectors, list):
            raise ValueError("featureVectors must be a list of lists")

        vectors = []
        for raw in raw_vectors:
            vector = np.asarray(raw, dtype=np.float32)
            if vector.ndim != 1:
                raise ValueError("each feature vector must be a flat list of numbers")
            vectors.append(vector)

        return cls(id=key_id, enrolled_at=enrolled_at, feature_vectors=tuple(vectors))

    def to_json(self) -> str:
        return json.dumps(self.to_record())

    @classmethod
    def from_json(cls, payload: str) -> "KeyTemplate":
        try:
            record = json.loads(payload)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid key template JSON: {e}") from e
        return cls.from_record(record)

    def __eq__(self, other):
        if not isinstance(other, KeyTemplate):
            return NotImplemented
        return (
            self.id == other.id
            and self.enrolled_at == other.enrolled_at
            and len(self.feature_vectors) == len(other.feature_vectors)
            and all(
                np.array_equal(a, b)
                for a, b in zip(self.feature_vectors, other.feature_vectors)
            )
        )

    def __hash__(self):
        return hash((self.id, self.enrolled_at))


@dataclass(frozen=True)
class ScanResult:
    """
    Verdict for one verification frame.

    Attributes:
        is_match: True only once the temporal smoother confirmed the match.
        confidence_score: Best similarity score for this frame, in [0, 1].
        error_reason: Why the frame is not a match, or None.
    """

    is_match: bool
    confidence_score: float = 0.0
    error_reason: Optional[ErrorReason] = None

    @classmethod
    def match(cls, confidence_score: float) -> "ScanResult":
        return cls(True, float(confidence_score), None)

    @classmethod
    def no_match(
        cls, confidence_score: float = 0.0, error_reason: Optional[ErrorReason] = None
    ) -> "ScanResult":
        return cls(False, float(confidence_score), error_reason)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isMatch": self.is_match,
            "confidenceScore": self.confidence_score,
            "errorReason": self.error_reason.value if self.error_reason else None,
        }


@dataclass
class Key:
    """
    A physical key known to the registry.

    Attributes:
        template: The enrolled template (its id is the key id).
        name: Optional user-friendly name (e.g. "Blue Mug").
        created_at: When the key was enrolled.
    """

    template: KeyTemplate
    name: Optional[str] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = self.template.enrolled_at

    @property
    def id(self) -> str:
        return self.template.id
