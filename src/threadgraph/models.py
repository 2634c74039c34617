"""Data models for the thread-partitioned knowledge graph.

Attributes are snake_case; ``to_dict`` / ``from_dict`` convert to and from the
camelCase wire form stored in thread files:

    {"type": "entity", "name": ..., "entityType": ..., "observations": [...],
     "observationsV2": [...], "agentThreadId": ..., "timestamp": ...,
     "confidence": 0.9, "importance": 0.5}
    {"type": "relation", "from": ..., "to": ..., "relationType": ...,
     "agentThreadId": ..., "timestamp": ..., "confidence": ..., "importance": ...}
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from threadgraph.errors import InvalidRecordError

# Observations written before review flags became entity fields carried the
# flag inside the observation text.
LEGACY_FLAG_PREFIX = "[FLAGGED FOR REVIEW:"


def format_timestamp(dt: datetime) -> str:
    """Canonical form: UTC, millisecond precision, ``Z`` suffix."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def now_timestamp() -> str:
    return format_timestamp(datetime.now(UTC))


def new_observation_id() -> str:
    """Generate a compact observation ID: obs-<12 hex chars>."""
    return "obs-" + uuid.uuid4().hex[:12]


# ---------------------------------------------------------------------------
# Field checks used by from_dict
# ---------------------------------------------------------------------------


def _require_str(d: dict[str, Any], key: str, kind: str) -> str:
    value = d.get(key)
    if not isinstance(value, str) or not value:
        msg = f"{kind} record missing required field {key!r}"
        raise InvalidRecordError(msg)
    return value


def _require_number(d: dict[str, Any], key: str, kind: str) -> float:
    value = d.get(key)
    # bool is an int subclass; true/false is not a score
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        msg = f"{kind} record field {key!r} must be a number"
        raise InvalidRecordError(msg)
    return value


def _optional_str(d: dict[str, Any], key: str, kind: str) -> str | None:
    value = d.get(key)
    if value is not None and not isinstance(value, str):
        msg = f"{kind} record field {key!r} must be a string"
        raise InvalidRecordError(msg)
    return value


@dataclass
class Observation:
    """A versioned atomic fact attached to an entity."""

    id: str
    content: str
    timestamp: str
    agent_thread_id: str
    confidence: float
    importance: float
    version: int = 1
    supersedes: str | None = None     # id of the observation this one replaces

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Observation:
        if not isinstance(d, dict):
            msg = "observation record must be an object"
            raise InvalidRecordError(msg)
        version = d.get("version")
        if isinstance(version, bool) or not isinstance(version, int) or version < 1:
            msg = "observation record field 'version' must be an integer >= 1"
            raise InvalidRecordError(msg)
        content = d.get("content")
        if not isinstance(content, str):
            msg = "observation record missing required field 'content'"
            raise InvalidRecordError(msg)
        return cls(
            id=_require_str(d, "id", "observation"),
            content=content,
            timestamp=_require_str(d, "timestamp", "observation"),
            agent_thread_id=_require_str(d, "agentThreadId", "observation"),
            confidence=_require_number(d, "confidence", "observation"),
            importance=_require_number(d, "importance", "observation"),
            version=version,
            supersedes=_optional_str(d, "supersedes", "observation"),
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "content": self.content,
            "timestamp": self.timestamp,
            "version": self.version,
        }
        if self.supersedes:
            d["supersedes"] = self.supersedes
        d["agentThreadId"] = self.agent_thread_id
        d["confidence"] = self.confidence
        d["importance"] = self.importance
        return d


@dataclass
class Entity:
    """A named, typed node. ``name`` is unique across all threads."""

    name: str
    entity_type: str
    agent_thread_id: str
    timestamp: str
    confidence: float
    importance: float
    observations: list[str] = field(default_factory=list)
    observations_v2: list[Observation] | None = None   # None until first versioned write

    # Review state (serialized only while flagged)
    flagged: bool = False
    flag_reason: str | None = None
    flagged_by: str | None = None
    flagged_at: str | None = None

    @property
    def has_legacy_flag(self) -> bool:
        return any(o.startswith(LEGACY_FLAG_PREFIX) for o in self.observations)

    def observation_texts(self) -> list[str]:
        """Legacy strings plus any versioned content not mirrored into them."""
        texts = list(self.observations)
        if self.observations_v2:
            seen = set(texts)
            texts.extend(o.content for o in self.observations_v2 if o.content not in seen)
        return texts

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Entity:
        observations = d.get("observations")
        if not isinstance(observations, list) or not all(isinstance(o, str) for o in observations):
            msg = "entity record field 'observations' must be a list of strings"
            raise InvalidRecordError(msg)

        raw_v2 = d.get("observationsV2")
        observations_v2: list[Observation] | None = None
        if raw_v2 is not None:
            if not isinstance(raw_v2, list):
                msg = "entity record field 'observationsV2' must be a list"
                raise InvalidRecordError(msg)
            observations_v2 = [Observation.from_dict(o) for o in raw_v2]

        return cls(
            name=_require_str(d, "name", "entity"),
            entity_type=_require_str(d, "entityType", "entity"),
            agent_thread_id=_require_str(d, "agentThreadId", "entity"),
            timestamp=_require_str(d, "timestamp", "entity"),
            confidence=_require_number(d, "confidence", "entity"),
            importance=_require_number(d, "importance", "entity"),
            observations=list(observations),
            observations_v2=observations_v2,
            flagged=d.get("flagged") is True,
            flag_reason=_optional_str(d, "flagReason", "entity"),
            flagged_by=_optional_str(d, "flaggedBy", "entity"),
            flagged_at=_optional_str(d, "flaggedAt", "entity"),
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "name": self.name,
            "entityType": self.entity_type,
            "observations": list(self.observations),
        }
        if self.observations_v2 is not None:
            d["observationsV2"] = [o.to_dict() for o in self.observations_v2]
        d["agentThreadId"] = self.agent_thread_id
        d["timestamp"] = self.timestamp
        d["confidence"] = self.confidence
        d["importance"] = self.importance
        if self.flagged:
            d["flagged"] = True
            d["flagReason"] = self.flag_reason
            d["flaggedBy"] = self.flagged_by
            d["flaggedAt"] = self.flagged_at
        return d


@dataclass
class Relation:
    """A directed, typed edge. Identity is (from, to, relationType)."""

    from_entity: str
    to_entity: str
    relation_type: str
    agent_thread_id: str
    timestamp: str
    confidence: float
    importance: float

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.from_entity, self.to_entity, self.relation_type)

    def touches(self, name: str) -> bool:
        return self.from_entity == name or self.to_entity == name

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Relation:
        return cls(
            from_entity=_require_str(d, "from", "relation"),
            to_entity=_require_str(d, "to", "relation"),
            relation_type=_require_str(d, "relationType", "relation"),
            agent_thread_id=_require_str(d, "agentThreadId", "relation"),
            timestamp=_require_str(d, "timestamp", "relation"),
            confidence=_require_number(d, "confidence", "relation"),
            importance=_require_number(d, "importance", "relation"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "from": self.from_entity,
            "to": self.to_entity,
            "relationType": self.relation_type,
            "agentThreadId": self.agent_thread_id,
            "timestamp": self.timestamp,
            "confidence": self.confidence,
            "importance": self.importance,
        }


@dataclass
class KnowledgeGraph:
    """A full graph snapshot: every entity and relation across threads."""

    entities: list[Entity] = field(default_factory=list)
    relations: list[Relation] = field(default_factory=list)

    def entity_names(self) -> set[str]:
        return {e.name for e in self.entities}

    def find_entity(self, name: str) -> Entity | None:
        for e in self.entities:
            if e.name == name:
                return e
        return None

    def thread_ids(self) -> set[str]:
        return {e.agent_thread_id for e in self.entities} | {r.agent_thread_id for r in self.relations}

    def copy(self) -> KnowledgeGraph:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entities": [e.to_dict() for e in self.entities],
            "relations": [r.to_dict() for r in self.relations],
        }
