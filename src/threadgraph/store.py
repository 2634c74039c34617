"""MemoryStore: every graph operation, bound to one storage adapter.

Mutations run load -> mutate -> save inside ``storage.locked()`` and save at
most once per call. Inputs are checked before the lock is taken, so a
rejected call never writes anything. Reads load a fresh snapshot and hand it
to the pure functions in ``threadgraph.queries``.
"""

from __future__ import annotations

import contextlib
import copy
import logging
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

from threadgraph import queries
from threadgraph.errors import EntityNotFoundError, ValidationError
from threadgraph.models import (
    Entity,
    KnowledgeGraph,
    Observation,
    Relation,
    new_observation_id,
    now_timestamp,
)
from threadgraph.pruning import PruneOptions, PruneResult, prune_graph
from threadgraph.storage import JsonlStorage, StorageAdapter
from threadgraph.validation import (
    check_required,
    check_score,
    check_thread_id,
    normalize_timestamp,
    validate_entity_type,
    validate_observation,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    from threadgraph.config import ThreadgraphConfig

logger = logging.getLogger("threadgraph.store")

DEFAULT_ENTITY_CONFIDENCE = 1.0
DEFAULT_ENTITY_IMPORTANCE = 0.5
DEFAULT_RELATION_CONFIDENCE = 1.0
DEFAULT_RELATION_IMPORTANCE = 0.7


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


@dataclass
class ObservationRequest:
    """New observation strings for one entity, with the metadata to stamp."""

    entity_name: str
    contents: list[str]
    agent_thread_id: str
    timestamp: str
    confidence: float
    importance: float


@dataclass
class ObservationDeletion:
    entity_name: str
    observations: list[str]


@dataclass
class EntityUpdate:
    entity_name: str
    confidence: float | None = None
    importance: float | None = None
    add_observations: list[str] = field(default_factory=list)


@dataclass
class MemoryRelationInput:
    target_entity: str
    relation_type: str
    importance: float | None = None


@dataclass
class MemoryEntityInput:
    """One entity of a save_memory batch, with its outgoing relations."""

    name: str
    entity_type: str
    observations: list[str]
    relations: list[MemoryRelationInput] = field(default_factory=list)
    confidence: float | None = None
    importance: float | None = None


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class ObservationResult:
    entity_name: str
    added_observations: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {"entityName": self.entity_name, "addedObservations": list(self.added_observations)}


@dataclass
class VersionedObservationResult:
    entity_name: str
    added_observations: list[Observation]

    def to_dict(self) -> dict[str, Any]:
        return {
            "entityName": self.entity_name,
            "addedObservations": [o.to_dict() for o in self.added_observations],
        }


@dataclass
class BulkUpdateResult:
    updated: int
    not_found: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {"updated": self.updated, "notFound": list(self.not_found)}


@dataclass
class SaveMemoryResult:
    success: bool
    created_entities: int = 0
    created_relations: int = 0
    warnings: list[str] = field(default_factory=list)
    quality_score: float = 0.0
    validation_errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "created": {"entities": self.created_entities, "relations": self.created_relations},
            "warnings": list(self.warnings),
            "quality_score": self.quality_score,
            "validation_errors": list(self.validation_errors),
        }


# ---------------------------------------------------------------------------
# Boundary checks
# ---------------------------------------------------------------------------


def _checked_observation(o: Observation) -> Observation:
    check_score("confidence", o.confidence)
    check_score("importance", o.importance)
    return replace(o, timestamp=normalize_timestamp(o.timestamp))


def _checked_entity(e: Entity) -> Entity:
    """Validated deep copy with canonical timestamps."""
    check_required("name", e.name)
    check_required("entityType", e.entity_type)
    check_thread_id(e.agent_thread_id)
    check_score("confidence", e.confidence)
    check_score("importance", e.importance)
    e = copy.deepcopy(e)
    e.timestamp = normalize_timestamp(e.timestamp)
    if e.observations_v2 is not None:
        e.observations_v2 = [_checked_observation(o) for o in e.observations_v2]
    if e.flagged_at is not None:
        e.flagged_at = normalize_timestamp(e.flagged_at)
    return e


def _checked_relation(r: Relation) -> Relation:
    check_required("from", r.from_entity)
    check_required("to", r.to_entity)
    check_required("relationType", r.relation_type)
    check_thread_id(r.agent_thread_id)
    check_score("confidence", r.confidence)
    check_score("importance", r.importance)
    return replace(r, timestamp=normalize_timestamp(r.timestamp))


def _checked_request(req: ObservationRequest) -> ObservationRequest:
    check_thread_id(req.agent_thread_id)
    check_score("confidence", req.confidence)
    check_score("importance", req.importance)
    return replace(req, contents=list(req.contents), timestamp=normalize_timestamp(req.timestamp))


def _check_optional_scores(update: EntityUpdate) -> None:
    if update.confidence is not None:
        check_score("confidence", update.confidence)
    if update.importance is not None:
        check_score("importance", update.importance)


def _remove_entities(graph: KnowledgeGraph, names: set[str]) -> bool:
    before = (len(graph.entities), len(graph.relations))
    graph.entities = [e for e in graph.entities if e.name not in names]
    graph.relations = [r for r in graph.relations if r.from_entity not in names and r.to_entity not in names]
    return before != (len(graph.entities), len(graph.relations))


class MemoryStore:
    """All operations over one persisted graph."""

    def __init__(self, storage: StorageAdapter) -> None:
        self.storage = storage

    @classmethod
    def from_config(cls, cfg: ThreadgraphConfig) -> MemoryStore:
        return cls(JsonlStorage(cfg.memory_dir))

    @contextlib.contextmanager
    def _editing(self) -> Iterator[KnowledgeGraph]:
        """Hold the writer lock around a fresh load. Callers save explicitly."""
        with self.storage.locked():
            yield self.storage.load()

    def _require(self, graph: KnowledgeGraph, name: str) -> Entity:
        entity = graph.find_entity(name)
        if entity is None:
            raise EntityNotFoundError(name)
        return entity

    # ------------------------------------------------------------------
    # Entities and relations
    # ------------------------------------------------------------------

    def create_entities(self, entities: Iterable[Entity]) -> list[Entity]:
        """Add entities whose names are new; return exactly those added."""
        incoming = [_checked_entity(e) for e in entities]
        with self._editing() as graph:
            seen = graph.entity_names()
            added: list[Entity] = []
            for e in incoming:
                if e.name in seen:
                    continue
                seen.add(e.name)
                added.append(e)
            if added:
                graph.entities.extend(added)
                self.storage.save(graph)
        return copy.deepcopy(added)

    def create_relations(self, relations: Iterable[Relation]) -> list[Relation]:
        """Add relations between existing entities, skipping known triples."""
        incoming = [_checked_relation(r) for r in relations]
        with self._editing() as graph:
            names = graph.entity_names()
            seen = {r.key for r in graph.relations}
            added: list[Relation] = []
            for r in incoming:
                if r.from_entity not in names or r.to_entity not in names:
                    logger.warning(
                        "skipping relation %s -[%s]-> %s: one or both entities do not exist",
                        r.from_entity, r.relation_type, r.to_entity,
                    )
                    continue
                if r.key in seen:
                    continue
                seen.add(r.key)
                added.append(r)
            if added:
                graph.relations.extend(added)
                self.storage.save(graph)
        return copy.deepcopy(added)

    def delete_entities(self, names: Iterable[str]) -> None:
        """Delete entities in any thread, with every relation touching them."""
        doomed = set(names)
        with self._editing() as graph:
            if _remove_entities(graph, doomed):
                self.storage.save(graph)

    def delete_relations(self, relations: Iterable[Relation | tuple[str, str, str]]) -> None:
        """Delete relations in any thread by (from, to, relationType)."""
        keys = {r.key if isinstance(r, Relation) else tuple(r) for r in relations}
        with self._editing() as graph:
            kept = [r for r in graph.relations if r.key not in keys]
            if len(kept) != len(graph.relations):
                graph.relations = kept
                self.storage.save(graph)

    # ------------------------------------------------------------------
    # Observations
    # ------------------------------------------------------------------

    def add_observations(self, requests: Iterable[ObservationRequest]) -> list[ObservationResult]:
        checked = [_checked_request(req) for req in requests]
        results: list[ObservationResult] = []
        with self._editing() as graph:
            for req in checked:
                entity = self._require(graph, req.entity_name)
                added: list[str] = []
                for content in req.contents:
                    if content not in entity.observations:
                        entity.observations.append(content)
                        added.append(content)
                entity.timestamp = req.timestamp
                entity.confidence = req.confidence
                entity.importance = req.importance
                results.append(ObservationResult(entity_name=entity.name, added_observations=added))
            self.storage.save(graph)
        return results

    def add_observations_v2(self, requests: Iterable[ObservationRequest]) -> list[VersionedObservationResult]:
        """Versioned append. Legacy strings migrate to version 1 on first use."""
        checked = [_checked_request(req) for req in requests]
        results: list[VersionedObservationResult] = []
        with self._editing() as graph:
            for req in checked:
                entity = self._require(graph, req.entity_name)
                if entity.observations_v2 is None:
                    entity.observations_v2 = [
                        Observation(
                            id=new_observation_id(),
                            content=text,
                            timestamp=entity.timestamp,
                            agent_thread_id=entity.agent_thread_id,
                            confidence=entity.confidence,
                            importance=entity.importance,
                        )
                        for text in entity.observations
                    ]

                known = {o.content for o in entity.observations_v2}
                added: list[Observation] = []
                for content in req.contents:
                    if content in known:
                        continue
                    known.add(content)
                    obs = Observation(
                        id=new_observation_id(),
                        content=content,
                        timestamp=req.timestamp,
                        agent_thread_id=req.agent_thread_id,
                        confidence=req.confidence,
                        importance=req.importance,
                    )
                    entity.observations_v2.append(obs)
                    added.append(obs)
                    if content not in entity.observations:
                        entity.observations.append(content)

                entity.timestamp = req.timestamp
                entity.confidence = req.confidence
                entity.importance = req.importance
                results.append(VersionedObservationResult(entity_name=entity.name, added_observations=added))
            self.storage.save(graph)
        return copy.deepcopy(results)

    def get_observation_history(self, name: str) -> list[Observation]:
        entity = self._require(self.storage.load(), name)
        return list(entity.observations_v2 or [])

    def delete_observations(self, deletions: Iterable[ObservationDeletion]) -> None:
        """Remove strings from the legacy list; unknown entities are ignored."""
        deletions = list(deletions)
        with self._editing() as graph:
            changed = False
            for d in deletions:
                entity = graph.find_entity(d.entity_name)
                if entity is None:
                    continue
                doomed = set(d.observations)
                kept = [o for o in entity.observations if o not in doomed]
                if len(kept) != len(entity.observations):
                    entity.observations = kept
                    changed = True
            if changed:
                self.storage.save(graph)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def bulk_update(self, updates: Iterable[EntityUpdate]) -> BulkUpdateResult:
        updates = list(updates)
        for u in updates:
            _check_optional_scores(u)
        updated = 0
        not_found: list[str] = []
        with self._editing() as graph:
            now = now_timestamp()
            for u in updates:
                entity = graph.find_entity(u.entity_name)
                if entity is None:
                    not_found.append(u.entity_name)
                    continue
                if u.confidence is not None:
                    entity.confidence = u.confidence
                if u.importance is not None:
                    entity.importance = u.importance
                for content in u.add_observations:
                    if content not in entity.observations:
                        entity.observations.append(content)
                entity.timestamp = now
                updated += 1
            if updated:
                self.storage.save(graph)
        return BulkUpdateResult(updated=updated, not_found=not_found)

    def flag_for_review(self, name: str, reason: str, reviewer: str | None = None) -> Entity:
        with self._editing() as graph:
            entity = self._require(graph, name)
            if entity.flagged and entity.flag_reason == reason and entity.flagged_by == reviewer:
                return copy.deepcopy(entity)
            now = now_timestamp()
            entity.flagged = True
            entity.flag_reason = reason
            entity.flagged_by = reviewer
            entity.flagged_at = now
            entity.timestamp = now
            self.storage.save(graph)
            return copy.deepcopy(entity)

    def get_flagged_entities(self) -> list[Entity]:
        """Flagged entities, including ones marked with the old in-text prefix."""
        return [e for e in self.storage.load().entities if e.flagged or e.has_legacy_flag]

    def prune_memory(self, options: PruneOptions, thread_id: str | None = None) -> PruneResult:
        if options.older_than is not None:
            options = replace(options, older_than=normalize_timestamp(options.older_than))
        if options.keep_min_entities is not None and options.keep_min_entities < 0:
            msg = f"keepMinEntities must be >= 0, got {options.keep_min_entities}"
            raise ValidationError(msg)
        with self._editing() as graph:
            pruned, result = prune_graph(graph, options, thread_id)
            if result.removed_entities or result.removed_relations:
                self.storage.save(pruned)
                logger.info(
                    "pruned %d entities and %d relations%s",
                    result.removed_entities, result.removed_relations,
                    f" from thread {thread_id}" if thread_id else "",
                )
        return result

    # ------------------------------------------------------------------
    # Validated batch save
    # ------------------------------------------------------------------

    def save_memory(self, entities: Iterable[MemoryEntityInput], thread_id: str) -> SaveMemoryResult:
        """Create a batch of entities and their relations, all or nothing.

        Every entity needs at least one relation, every relation must target
        another entity of the same batch, and every observation must pass
        ``validate_observation``. Any failure returns ``success=False`` with
        the collected errors and leaves storage untouched.
        """
        batch = list(entities)
        errors: list[str] = []
        warnings: list[str] = []

        if not batch:
            errors.append("At least one entity is required")
        try:
            check_thread_id(thread_id)
        except ValidationError as exc:
            errors.append(str(exc))

        batch_names = {e.name for e in batch}
        for e in batch:
            for label, value in [("name", e.name), ("entityType", e.entity_type)]:
                try:
                    check_required(label, value)
                except ValidationError as exc:
                    errors.append(f"Entity '{e.name}': {exc}")
            for rel in e.relations:
                try:
                    check_required("relationType", rel.relation_type)
                except ValidationError as exc:
                    errors.append(f"Entity '{e.name}': {exc}")
            if not e.relations:
                errors.append(f"Entity '{e.name}' must have at least 1 relation")
            for text in e.observations:
                check = validate_observation(text)
                if not check.valid:
                    errors.append(f"Entity '{e.name}': {check.error}")
            for rel in e.relations:
                if rel.target_entity not in batch_names:
                    errors.append(
                        f"Entity '{e.name}': Target entity '{rel.target_entity}' not found in request. "
                        "All relations must reference entities in the same save_memory call."
                    )
            scores = [("confidence", e.confidence), ("importance", e.importance)]
            scores += [("relation importance", rel.importance) for rel in e.relations]
            for label, value in scores:
                if value is None:
                    continue
                try:
                    check_score(label, value)
                except ValidationError as exc:
                    errors.append(f"Entity '{e.name}': {exc}")
            warnings.extend(validate_entity_type(e.entity_type))

        if errors:
            return SaveMemoryResult(success=False, warnings=warnings, validation_errors=errors)

        now = now_timestamp()
        new_entities = [
            Entity(
                name=e.name,
                entity_type=e.entity_type,
                agent_thread_id=thread_id,
                timestamp=now,
                confidence=DEFAULT_ENTITY_CONFIDENCE if e.confidence is None else e.confidence,
                importance=DEFAULT_ENTITY_IMPORTANCE if e.importance is None else e.importance,
                observations=list(e.observations),
            )
            for e in batch
        ]
        new_relations = [
            Relation(
                from_entity=e.name,
                to_entity=rel.target_entity,
                relation_type=rel.relation_type,
                agent_thread_id=thread_id,
                timestamp=now,
                confidence=DEFAULT_RELATION_CONFIDENCE,
                importance=DEFAULT_RELATION_IMPORTANCE if rel.importance is None else rel.importance,
            )
            for e in batch
            for rel in e.relations
        ]

        with self._editing() as graph:
            names = graph.entity_names()
            created_entities = 0
            for ent in new_entities:
                if ent.name not in names:
                    names.add(ent.name)
                    graph.entities.append(ent)
                    created_entities += 1
            keys = {r.key for r in graph.relations}
            created_relations = 0
            for rel in new_relations:
                if rel.key not in keys:
                    keys.add(rel.key)
                    graph.relations.append(rel)
                    created_relations += 1
            if created_entities or created_relations:
                self.storage.save(graph)

        return SaveMemoryResult(
            success=True,
            created_entities=created_entities,
            created_relations=created_relations,
            warnings=warnings,
            quality_score=min(1.0, len(new_relations) / len(batch) / 3),
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def read_graph(self, thread_id: str | None = None, min_importance: float | None = None) -> KnowledgeGraph:
        return queries.read_graph(self.storage.load(), thread_id, min_importance)

    def search_nodes(self, query: str, thread_id: str | None = None) -> KnowledgeGraph:
        return queries.search_nodes(self.storage.load(), query, thread_id)

    def open_nodes(self, names: Iterable[str], thread_id: str | None = None) -> KnowledgeGraph:
        return queries.open_nodes(self.storage.load(), names, thread_id)

    def list_entities(
        self,
        thread_id: str | None = None,
        entity_type: str | None = None,
        name_pattern: str | None = None,
    ) -> list[tuple[str, str]]:
        return queries.list_entities(self.storage.load(), thread_id, entity_type, name_pattern)

    def query_nodes(self, filters: queries.QueryFilters | None = None) -> KnowledgeGraph:
        if filters is not None:
            filters = replace(
                filters,
                timestamp_start=normalize_timestamp(filters.timestamp_start) if filters.timestamp_start else None,
                timestamp_end=normalize_timestamp(filters.timestamp_end) if filters.timestamp_end else None,
            )
        return queries.query_nodes(self.storage.load(), filters)

    def get_memory_stats(self) -> queries.MemoryStats:
        return queries.get_memory_stats(self.storage.load())

    def get_recent_changes(self, since: str, thread_id: str | None = None) -> KnowledgeGraph:
        return queries.get_recent_changes(self.storage.load(), normalize_timestamp(since), thread_id)

    def find_relation_path(self, from_name: str, to_name: str, max_depth: int = 5) -> queries.PathResult:
        return queries.find_relation_path(self.storage.load(), from_name, to_name, max_depth)

    def get_context(
        self,
        names: Iterable[str],
        depth: int = 1,
        thread_id: str | None = None,
    ) -> KnowledgeGraph:
        return queries.get_context(self.storage.load(), names, depth, thread_id)

    def detect_conflicts(self) -> list[queries.EntityConflicts]:
        return queries.detect_conflicts(self.storage.load())

    def list_conversations(self) -> list[queries.ConversationSummary]:
        return queries.list_conversations(self.storage.load())

    def get_analytics(self, thread_id: str) -> queries.Analytics:
        return queries.get_analytics(self.storage.load(), thread_id)

