"""
Tests for the key template data classes.

This test suite verifies:
- KeyTemplate creation, immutability and record shape
- Record / JSON round-trips (exact float equality)
- Timestamp parsing and invalid records
- ScanResult and Key helpers

Run with: pytest tests/test_key_template.py -v
"""

import json
import sys
from datetime import datetime, timezone
from pathlib import Path

import numpy as np
import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from keycore.errors import ErrorReason
from keycore.key_template import (
    Key,
    KeyTemplate,
    ScanResult,
    generate_key_id,
    parse_timestamp,
)


@pytest.fixture
def vectors():
    rng = np.random.default_rng(5)
    return [rng.uniform(0, 1, 47).astype(np.float32) for _ in range(10)]


@pytest.fixture
def template(vectors):
    return KeyTemplate.create(vectors)


class TestKeyTemplate:
    """Tests for the KeyTemplate dataclass."""

    def test_create(self, template, vectors):
        assert template.n_vectors == 10
        assert template.vector_dim == 47
        assert template.enrolled_at.tzinfo is not None
        assert not template.is_empty
        for stored, original in zip(template.feature_vectors, vectors):
            assert np.array_equal(stored, original)
            assert stored.dtype == np.float32

    def test_vectors_are_copied_and_read_only(self, vectors):
        template = KeyTemplate.create(vectors)
        vectors[0][0] = 99.0
        assert template.feature_vectors[0][0] != 99.0
        with pytest.raises(ValueError):
            template.feature_vectors[0][0] = 1.0

    def test_frozen(self, template):
        with pytest.raises(AttributeError):
            template.id = "other"

    def test_empty_template(self):
        template = KeyTemplate.create([])
        assert template.is_empty
        assert template.vector_dim == 0

    def test_explicit_id(self, vectors):
        assert KeyTemplate.create(vectors, key_id="key-1").id == "key-1"

    def test_naive_timestamp_becomes_utc(self, vectors):
        template = KeyTemplate(id="k", enrolled_at=datetime(2026, 1, 2, 3, 4, 5), feature_vectors=vectors)
        assert template.enrolled_at.tzinfo == timezone.utc

    def test_record_shape(self, template):
        record = template.to_record()
        assert set(record) == {"id", "enrolledDate", "featureVectors"}
        assert record["id"] == template.id
        assert len(record["featureVectors"]) == 10
        assert all(len(v) == 47 for v in record["featureVectors"])
        assert all(isinstance(x, float) for x in record["featureVectors"][0])
        assert parse_timestamp(record["enrolledDate"]) == template.enrolled_at

    def test_record_round_trip(self, template):
        restored = KeyTemplate.from_record(template.to_record())
        assert restored.id == template.id
        assert restored.enrolled_at == template.enrolled_at
        for a, b in zip(restored.feature_vectors, template.feature_vectors):
            assert np.array_equal(a, b)
        assert restored == template

    def test_json_round_trip(self, template):
        payload = template.to_json()
        assert json.loads(payload)["id"] == template.id
        assert KeyTemplate.from_json(payload) == template

    def test_ragged_vectors_round_trip(self):
        template = KeyTemplate.create([np.ones(47), np.ones(35)])
        restored = KeyTemplate.from_json(template.to_json())
        assert [len(v) for v in restored.feature_vectors] == [47, 35]

    def test_missing_field_rejected(self, template):
        record = template.to_record()
        del record["featureVectors"]
        with pytest.raises(ValueError):
            KeyTemplate.from_record(record)

    def test_bad_timestamp_rejected(self, template):
        record = template.to_record()
        record["enrolledDate"] = "yesterday"
        with pytest.raises(ValueError):
            KeyTemplate.from_record(record)

    def test_numeric_timestamp_rejected(self, template):
        record = template.to_record()
        record["enrolledDate"] = 1700000000
        with pytest.raises(ValueError):
            KeyTemplate.from_record(record)

    def test_non_object_record_rejected(self):
        with pytest.raises(ValueError):
            KeyTemplate.from_json("[1, 2, 3]")
        with pytest.raises(ValueError):
            KeyTemplate.from_json("null")

    def test_nested_vector_rejected(self, template):
        record = template.to_record()
        record["featureVectors"] = [[[1.0, 2.0]]]
        with pytest.raises(ValueError):
            KeyTemplate.from_record(record)

    def test_invalid_json_rejected(self):
        with pytest.raises(ValueError):
            KeyTemplate.from_json("{not json")

    def test_equality_compares_vectors(self, template):
        other = KeyTemplate(
            id=template.id,
            enrolled_at=template.enrolled_at,
            feature_vectors=[np.zeros(47)] * template.n_vectors,
        )
        assert other != template


class TestTimestamps:
    """Tests for ISO-8601 parsing."""

    def test_zulu_suffix(self):
        parsed = parse_timestamp("2026-10-19T08:30:00Z")
        assert parsed == datetime(2026, 10, 19, 8, 30, tzinfo=timezone.utc)

    def test_naive_is_utc(self):
        assert parse_timestamp("2026-10-19T08:30:00").tzinfo == timezone.utc

    def test_microseconds_preserved(self):
        parsed = parse_timestamp("2026-10-19T08:30:00.123456+00:00")
        assert parsed.microsecond == 123456


class TestGenerateKeyId:
    """Tests for key id generation."""

    def test_unique(self):
        ids = [generate_key_id() for _ in range(100)]
        assert len(set(ids)) == 100

    def test_uuid_format(self):
        key_id = generate_key_id()
        assert len(key_id) == 36
        assert key_id.count("-") == 4


class TestScanResult:
    """Tests for ScanResult helpers."""

    def test_match(self):
        result = ScanResult.match(0.93)
        assert result.is_match is True
        assert result.confidence_score == pytest.approx(0.93)
        assert result.error_reason is None

    def test_no_match(self):
        result = ScanResult.no_match(0.4, ErrorReason.NO_MATCH)
        assert result.is_match is False
        assert result.error_reason == ErrorReason.NO_MATCH

    def test_to_dict(self):
        assert ScanResult.no_match(0.0, ErrorReason.TOO_FAR_OR_UNTRACKED).to_dict() == {
            "isMatch": False,
            "confidenceScore": 0.0,
            "errorReason": "tooFarOrUntracked",
        }
        assert ScanResult.match(1.0).to_dict()["errorReason"] is None


class TestKey:
    """Tests for the Key registry entry."""

    def test_id_and_created_at_follow_template(self, template):
        key = Key(template=template, name="Blue Mug")
        assert key.id == template.id
        assert key.created_at == template.enrolled_at
        assert key.name == "Blue Mug"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
