"""Tests for threadgraph.models: records and their wire form."""

import re
from datetime import UTC, datetime, timedelta, timezone

import pytest

from threadgraph.errors import InvalidRecordError
from threadgraph.models import (
    LEGACY_FLAG_PREFIX,
    Entity,
    KnowledgeGraph,
    Observation,
    Relation,
    format_timestamp,
    new_observation_id,
)


def _entity_dict(**overrides):
    d = {
        "name": "Alice",
        "entityType": "Person",
        "observations": ["likes tea"],
        "agentThreadId": "t1",
        "timestamp": "2024-01-01T00:00:00.000Z",
        "confidence": 0.9,
        "importance": 0.5,
    }
    d.update(overrides)
    return d


class TestTimestamps:
    def test_utc_millisecond_z_form(self):
        dt = datetime(2024, 3, 5, 7, 8, 9, 123456, tzinfo=UTC)
        assert format_timestamp(dt) == "2024-03-05T07:08:09.123Z"

    def test_offset_converted_to_utc(self):
        dt = datetime(2024, 1, 1, 10, 0, tzinfo=timezone(timedelta(hours=2)))
        assert format_timestamp(dt) == "2024-01-01T08:00:00.000Z"

    def test_naive_taken_as_utc(self):
        assert format_timestamp(datetime(2024, 1, 1)) == "2024-01-01T00:00:00.000Z"

    def test_observation_id_format(self):
        assert re.fullmatch(r"obs-[0-9a-f]{12}", new_observation_id())
        assert new_observation_id() != new_observation_id()


class TestEntity:
    def test_round_trip(self):
        d = _entity_dict()
        assert Entity.from_dict(d).to_dict() == d

    def test_wire_names(self):
        e = Entity.from_dict(_entity_dict())
        assert e.entity_type == "Person"
        assert e.agent_thread_id == "t1"
        assert e.observations_v2 is None

    def test_flag_fields_only_serialized_when_flagged(self):
        e = Entity.from_dict(_entity_dict())
        assert "flagged" not in e.to_dict()

        e.flagged = True
        e.flag_reason = "stale"
        e.flagged_by = "bob"
        e.flagged_at = "2024-02-01T00:00:00.000Z"
        d = e.to_dict()
        assert d["flagged"] is True
        assert d["flagReason"] == "stale"
        assert Entity.from_dict(d).flagged_by == "bob"

    def test_missing_required_field_rejected(self):
        d = _entity_dict()
        del d["agentThreadId"]
        with pytest.raises(InvalidRecordError):
            Entity.from_dict(d)

    def test_bool_is_not_a_score(self):
        with pytest.raises(InvalidRecordError):
            Entity.from_dict(_entity_dict(confidence=True))

    def test_observations_must_be_strings(self):
        with pytest.raises(InvalidRecordError):
            Entity.from_dict(_entity_dict(observations=["ok", 3]))

    def test_versioned_observations_parsed(self):
        v2 = [{
            "id": "obs-000000000001",
            "content": "drinks coffee",
            "timestamp": "2024-01-02T00:00:00.000Z",
            "version": 1,
            "agentThreadId": "t1",
            "confidence": 0.8,
            "importance": 0.4,
        }]
        e = Entity.from_dict(_entity_dict(observationsV2=v2))
        assert isinstance(e.observations_v2[0], Observation)
        assert e.to_dict()["observationsV2"] == v2

    def test_observation_texts_include_unmirrored_versioned_content(self):
        e = Entity.from_dict(_entity_dict())
        e.observations_v2 = [
            Observation("obs-1", "likes tea", "2024-01-01T00:00:00.000Z", "t1", 1.0, 0.5),
            Observation("obs-2", "plays chess", "2024-01-01T00:00:00.000Z", "t1", 1.0, 0.5),
        ]
        assert e.observation_texts() == ["likes tea", "plays chess"]

    def test_legacy_flag_detected(self):
        e = Entity.from_dict(_entity_dict(observations=[f"{LEGACY_FLAG_PREFIX} outdated]"]))
        assert e.has_legacy_flag
        assert not e.flagged


class TestObservation:
    def test_version_must_be_positive_int(self):
        d = {
            "id": "obs-1", "content": "x", "timestamp": "2024-01-01T00:00:00.000Z",
            "version": 0, "agentThreadId": "t1", "confidence": 1, "importance": 1,
        }
        with pytest.raises(InvalidRecordError):
            Observation.from_dict(d)

    def test_supersedes_kept(self):
        o = Observation("obs-2", "x", "2024-01-01T00:00:00.000Z", "t1", 1.0, 0.5, version=2, supersedes="obs-1")
        assert Observation.from_dict(o.to_dict()) == o


class TestRelation:
    def test_wire_form(self):
        r = Relation("Alice", "Acme", "works_at", "t1", "2024-01-01T00:00:00.000Z", 1.0, 0.7)
        d = r.to_dict()
        assert d["from"] == "Alice"
        assert d["to"] == "Acme"
        assert d["relationType"] == "works_at"
        assert Relation.from_dict(d) == r

    def test_key_and_touches(self):
        r = Relation("A", "B", "knows", "t1", "2024-01-01T00:00:00.000Z", 1.0, 0.7)
        assert r.key == ("A", "B", "knows")
        assert r.touches("A")
        assert r.touches("B")
        assert not r.touches("C")


class TestKnowledgeGraph:
    def test_thread_ids_from_entities_and_relations(self):
        g = KnowledgeGraph(
            entities=[Entity.from_dict(_entity_dict())],
            relations=[Relation("Alice", "Alice", "self", "t2", "2024-01-01T00:00:00.000Z", 1.0, 0.7)],
        )
        assert g.thread_ids() == {"t1", "t2"}

    def test_copy_is_deep(self):
        g = KnowledgeGraph(entities=[Entity.from_dict(_entity_dict())])
        c = g.copy()
        c.entities[0].observations.append("new")
        assert g.entities[0].observations == ["likes tea"]
