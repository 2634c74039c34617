"""Read-only operations over an in-memory KnowledgeGraph.

Every function here is pure: it takes a loaded graph and returns new objects,
never mutating its input. MemoryStore loads the graph and delegates here.

Thread scoping: when ``thread_id`` is given, only entities and relations
authored under that thread are considered, and returned relations must join
two returned entities.
"""

from __future__ import annotations

import re
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from threadgraph.models import Entity, KnowledgeGraph, Relation, format_timestamp

if TYPE_CHECKING:
    from collections.abc import Iterable

NEGATION_WORDS = frozenset({"not", "no", "never", "neither", "none", "doesn't", "don't", "isn't", "aren't"})
CONFLICT_REASON = "Potential contradiction with negation"
_MIN_SHARED_WORDS = 2
_MIN_CONTENT_WORD_LEN = 4
_WORD_RE = re.compile(r"[a-z0-9']+")

_ANALYTICS_LIMIT = 10
_ACTIVITY_DAYS = 7


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class QueryFilters:
    """Conjunctive ranges for query_nodes. Bounds are inclusive; None = open."""

    timestamp_start: str | None = None
    timestamp_end: str | None = None
    confidence_min: float | None = None
    confidence_max: float | None = None
    importance_min: float | None = None
    importance_max: float | None = None
    thread_id: str | None = None

    def matches(self, record: Entity | Relation) -> bool:
        if self.timestamp_start is not None and record.timestamp < self.timestamp_start:
            return False
        if self.timestamp_end is not None and record.timestamp > self.timestamp_end:
            return False
        if self.confidence_min is not None and record.confidence < self.confidence_min:
            return False
        if self.confidence_max is not None and record.confidence > self.confidence_max:
            return False
        if self.importance_min is not None and record.importance < self.importance_min:
            return False
        return not (self.importance_max is not None and record.importance > self.importance_max)


@dataclass
class PathResult:
    found: bool
    path: list[str] = field(default_factory=list)
    relations: list[Relation] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "found": self.found,
            "path": list(self.path),
            "relations": [r.to_dict() for r in self.relations],
        }


@dataclass
class MemoryStats:
    entity_count: int
    relation_count: int
    thread_count: int
    entity_types: dict[str, int]
    avg_confidence: float
    avg_importance: float
    recent_activity: list[tuple[str, int]]   # (YYYY-MM-DD, entities), ascending

    def to_dict(self) -> dict[str, Any]:
        return {
            "entityCount": self.entity_count,
            "relationCount": self.relation_count,
            "threadCount": self.thread_count,
            "entityTypes": dict(self.entity_types),
            "avgConfidence": self.avg_confidence,
            "avgImportance": self.avg_importance,
            "recentActivity": [{"timestamp": day, "entityCount": n} for day, n in self.recent_activity],
        }


@dataclass
class Conflict:
    obs1: str
    obs2: str
    reason: str = CONFLICT_REASON


@dataclass
class EntityConflicts:
    entity_name: str
    conflicts: list[Conflict]

    def to_dict(self) -> dict[str, Any]:
        return {
            "entityName": self.entity_name,
            "conflicts": [{"obs1": c.obs1, "obs2": c.obs2, "reason": c.reason} for c in self.conflicts],
        }


@dataclass
class ConversationSummary:
    agent_thread_id: str
    entity_count: int
    relation_count: int
    first_created: str
    last_updated: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "agentThreadId": self.agent_thread_id,
            "entityCount": self.entity_count,
            "relationCount": self.relation_count,
            "firstCreated": self.first_created,
            "lastUpdated": self.last_updated,
        }


@dataclass
class Analytics:
    """Four thread-scoped reports; each entry is a plain wire-form dict."""

    recent_changes: list[dict[str, Any]]
    top_important: list[dict[str, Any]]
    most_connected: list[dict[str, Any]]
    orphaned_entities: list[dict[str, Any]]

    def to_dict(self) -> dict[str, Any]:
        return {
            "recent_changes": self.recent_changes,
            "top_important": self.top_important,
            "most_connected": self.most_connected,
            "orphaned_entities": self.orphaned_entities,
        }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def scope_to_thread(graph: KnowledgeGraph, thread_id: str | None) -> KnowledgeGraph:
    if thread_id is None:
        return graph
    return KnowledgeGraph(
        entities=[e for e in graph.entities if e.agent_thread_id == thread_id],
        relations=[r for r in graph.relations if r.agent_thread_id == thread_id],
    )


def induced_relations(relations: Iterable[Relation], names: set[str]) -> list[Relation]:
    """Relations whose endpoints are both in ``names``."""
    return [r for r in relations if r.from_entity in names and r.to_entity in names]


def _subgraph(entities: list[Entity], relations: Iterable[Relation]) -> KnowledgeGraph:
    names = {e.name for e in entities}
    return KnowledgeGraph(entities=entities, relations=induced_relations(relations, names))


# ---------------------------------------------------------------------------
# Filtered reads
# ---------------------------------------------------------------------------


def read_graph(
    graph: KnowledgeGraph,
    thread_id: str | None = None,
    min_importance: float | None = None,
) -> KnowledgeGraph:
    """Whole graph, or the thread's part of it, optionally above an importance floor."""
    if thread_id is None and min_importance is None:
        return graph
    scoped = scope_to_thread(graph, thread_id)
    entities = scoped.entities
    relations = scoped.relations
    if min_importance is not None:
        entities = [e for e in entities if e.importance >= min_importance]
        relations = [r for r in relations if r.importance >= min_importance]
    return _subgraph(entities, relations)


def search_nodes(graph: KnowledgeGraph, query: str, thread_id: str | None = None) -> KnowledgeGraph:
    """Case-insensitive substring match on name, type, or any observation."""
    scoped = scope_to_thread(graph, thread_id)
    q = query.lower()
    matched = [
        e for e in scoped.entities
        if q in e.name.lower()
        or q in e.entity_type.lower()
        or any(q in o.lower() for o in e.observation_texts())
    ]
    return _subgraph(matched, scoped.relations)


def open_nodes(graph: KnowledgeGraph, names: Iterable[str], thread_id: str | None = None) -> KnowledgeGraph:
    scoped = scope_to_thread(graph, thread_id)
    wanted = set(names)
    return _subgraph([e for e in scoped.entities if e.name in wanted], scoped.relations)


def list_entities(
    graph: KnowledgeGraph,
    thread_id: str | None = None,
    entity_type: str | None = None,
    name_pattern: str | None = None,
) -> list[tuple[str, str]]:
    """(name, entityType) pairs; exact type match, case-insensitive name substring."""
    entities = scope_to_thread(graph, thread_id).entities
    if entity_type:
        entities = [e for e in entities if e.entity_type == entity_type]
    if name_pattern:
        pattern = name_pattern.lower()
        entities = [e for e in entities if pattern in e.name.lower()]
    return [(e.name, e.entity_type) for e in entities]


def query_nodes(graph: KnowledgeGraph, filters: QueryFilters | None = None) -> KnowledgeGraph:
    if filters is None:
        return graph
    scoped = scope_to_thread(graph, filters.thread_id)
    entities = [e for e in scoped.entities if filters.matches(e)]
    names = {e.name for e in entities}
    relations = [r for r in induced_relations(scoped.relations, names) if filters.matches(r)]
    return KnowledgeGraph(entities=entities, relations=relations)


def get_recent_changes(graph: KnowledgeGraph, since: str, thread_id: str | None = None) -> KnowledgeGraph:
    """Entities and relations stamped at or after ``since`` (canonical form)."""
    scoped = scope_to_thread(graph, thread_id)
    return KnowledgeGraph(
        entities=[e for e in scoped.entities if e.timestamp >= since],
        relations=[r for r in scoped.relations if r.timestamp >= since],
    )


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------


def get_memory_stats(graph: KnowledgeGraph, now: datetime | None = None) -> MemoryStats:
    entities = graph.entities
    entity_types: dict[str, int] = {}
    for e in entities:
        entity_types[e.entity_type] = entity_types.get(e.entity_type, 0) + 1

    n = len(entities)
    avg_confidence = sum(e.confidence for e in entities) / n if n else 0.0
    avg_importance = sum(e.importance for e in entities) / n if n else 0.0

    cutoff = format_timestamp((now or datetime.now(UTC)) - timedelta(days=_ACTIVITY_DAYS))
    by_day: dict[str, int] = {}
    for e in entities:
        if e.timestamp >= cutoff:
            day = e.timestamp[:10]
            by_day[day] = by_day.get(day, 0) + 1

    return MemoryStats(
        entity_count=n,
        relation_count=len(graph.relations),
        thread_count=len(graph.thread_ids()),
        entity_types=entity_types,
        avg_confidence=avg_confidence,
        avg_importance=avg_importance,
        recent_activity=sorted(by_day.items()),
    )


def list_conversations(graph: KnowledgeGraph) -> list[ConversationSummary]:
    """Per-thread counts and time span, most recently updated first."""
    counts: dict[str, list[int]] = {}
    stamps: dict[str, list[str]] = {}
    for e in graph.entities:
        counts.setdefault(e.agent_thread_id, [0, 0])[0] += 1
        stamps.setdefault(e.agent_thread_id, []).append(e.timestamp)
    for r in graph.relations:
        counts.setdefault(r.agent_thread_id, [0, 0])[1] += 1
        stamps.setdefault(r.agent_thread_id, []).append(r.timestamp)

    summaries = [
        ConversationSummary(
            agent_thread_id=thread_id,
            entity_count=n_entities,
            relation_count=n_relations,
            first_created=min(stamps[thread_id], default=""),
            last_updated=max(stamps[thread_id], default=""),
        )
        for thread_id, (n_entities, n_relations) in counts.items()
    ]
    summaries.sort(key=lambda s: s.last_updated, reverse=True)
    return summaries


def get_analytics(graph: KnowledgeGraph, thread_id: str) -> Analytics:
    scoped = scope_to_thread(graph, thread_id)
    entities = scoped.entities
    relations = scoped.relations

    # "updated" means some versioned observation went past version 1
    recent = sorted(entities, key=lambda e: e.timestamp, reverse=True)[:_ANALYTICS_LIMIT]
    recent_changes = [
        {
            "entityName": e.name,
            "entityType": e.entity_type,
            "lastModified": e.timestamp,
            "changeType": "updated" if any(o.version > 1 for o in e.observations_v2 or []) else "created",
        }
        for e in recent
    ]

    important = sorted(entities, key=lambda e: e.importance, reverse=True)[:_ANALYTICS_LIMIT]
    top_important = [
        {
            "entityName": e.name,
            "entityType": e.entity_type,
            "importance": e.importance,
            "observationCount": len(e.observations),
        }
        for e in important
    ]

    neighbours: dict[str, dict[str, None]] = {}   # insertion-ordered sets
    for r in relations:
        neighbours.setdefault(r.from_entity, {})[r.to_entity] = None
        neighbours.setdefault(r.to_entity, {})[r.from_entity] = None
    connected = sorted(entities, key=lambda e: len(neighbours.get(e.name, {})), reverse=True)
    most_connected = [
        {
            "entityName": e.name,
            "entityType": e.entity_type,
            "relationCount": len(neighbours.get(e.name, {})),
            "connectedTo": list(neighbours.get(e.name, {})),
        }
        for e in connected[:_ANALYTICS_LIMIT]
    ]

    names = {e.name for e in entities}
    orphaned_entities: list[dict[str, Any]] = []
    for e in entities:
        touching = [r for r in relations if r.touches(e.name)]
        if not touching:
            reason = "no_relations"
        elif any(r.from_entity not in names or r.to_entity not in names for r in touching):
            reason = "broken_relation"
        else:
            continue
        orphaned_entities.append({"entityName": e.name, "entityType": e.entity_type, "reason": reason})

    return Analytics(
        recent_changes=recent_changes,
        top_important=top_important,
        most_connected=most_connected,
        orphaned_entities=orphaned_entities,
    )


# ---------------------------------------------------------------------------
# Traversal
# ---------------------------------------------------------------------------


def find_relation_path(graph: KnowledgeGraph, from_name: str, to_name: str, max_depth: int = 5) -> PathResult:
    """Shortest path by breadth-first search, following relations either way.

    Outgoing edges of a node are tried before incoming ones, each in stored
    order; the first path reaching ``to_name`` is returned. Paths have at
    most ``max_depth`` hops.
    """
    if from_name == to_name:
        return PathResult(found=True, path=[from_name])

    outgoing: dict[str, list[Relation]] = {}
    incoming: dict[str, list[Relation]] = {}
    for r in graph.relations:
        outgoing.setdefault(r.from_entity, []).append(r)
        incoming.setdefault(r.to_entity, []).append(r)

    queue: deque[tuple[str, list[str], list[Relation]]] = deque([(from_name, [from_name], [])])
    visited = {from_name}
    while queue:
        current, path, used = queue.popleft()
        if len(used) >= max_depth:
            continue
        steps = [(r, r.to_entity) for r in outgoing.get(current, [])]
        steps += [(r, r.from_entity) for r in incoming.get(current, [])]
        for rel, nxt in steps:
            if nxt == to_name:
                return PathResult(found=True, path=[*path, nxt], relations=[*used, rel])
            if nxt not in visited:
                visited.add(nxt)
                queue.append((nxt, [*path, nxt], [*used, rel]))

    return PathResult(found=False)


def get_context(
    graph: KnowledgeGraph,
    names: Iterable[str],
    depth: int = 1,
    thread_id: str | None = None,
) -> KnowledgeGraph:
    """Expand ``names`` by ``depth`` rounds of neighbours; return the induced sub-graph."""
    scoped = scope_to_thread(graph, thread_id)
    closure = set(names)
    for _ in range(max(0, depth)):
        frontier = set(closure)
        for r in scoped.relations:
            if r.from_entity in frontier or r.to_entity in frontier:
                closure.add(r.from_entity)
                closure.add(r.to_entity)
        if closure == frontier:
            break
    return KnowledgeGraph(
        entities=[e for e in scoped.entities if e.name in closure],
        relations=induced_relations(scoped.relations, closure),
    )


# ---------------------------------------------------------------------------
# Conflict heuristic
# ---------------------------------------------------------------------------


def _words(text: str) -> list[str]:
    return _WORD_RE.findall(text.lower())


def _content_words(words: list[str]) -> set[str]:
    return {w for w in words if len(w) >= _MIN_CONTENT_WORD_LEN and w not in NEGATION_WORDS}


def observations_conflict(a: str, b: str) -> bool:
    """Exactly one side negated, and the two share enough content words.

    Enough means two, or every content word of the sparser observation when
    it has fewer than two ("is employed" / "is not employed").
    """
    words_a, words_b = _words(a), _words(b)
    negated_a = any(w in NEGATION_WORDS for w in words_a)
    negated_b = any(w in NEGATION_WORDS for w in words_b)
    if negated_a == negated_b:
        return False
    content_a, content_b = _content_words(words_a), _content_words(words_b)
    needed = max(1, min(_MIN_SHARED_WORDS, len(content_a), len(content_b)))
    return len(content_a & content_b) >= needed


def detect_conflicts(graph: KnowledgeGraph) -> list[EntityConflicts]:
    results: list[EntityConflicts] = []
    for e in graph.entities:
        obs = e.observations
        found = [
            Conflict(obs1=obs[i], obs2=obs[j])
            for i in range(len(obs))
            for j in range(i + 1, len(obs))
            if observations_conflict(obs[i], obs[j])
        ]
        if found:
            results.append(EntityConflicts(entity_name=e.name, conflicts=found))
    return results
