"""Importance/age pruning with guaranteed minimum retention."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from threadgraph.models import Entity, KnowledgeGraph


@dataclass
class PruneOptions:
    older_than: str | None = None              # canonical timestamp; older entities go
    importance_less_than: float | None = None
    keep_min_entities: int | None = None


@dataclass
class PruneResult:
    removed_entities: int
    removed_relations: int

    def to_dict(self) -> dict[str, Any]:
        return {"removedEntities": self.removed_entities, "removedRelations": self.removed_relations}


def _backfill(survivors: list[Entity], removed: list[Entity], keep_min: int) -> list[Entity]:
    """Restore removed entities, most important (then newest) first."""
    missing = keep_min - len(survivors)
    if missing <= 0 or not removed:
        return []
    candidates = sorted(removed, key=lambda e: e.timestamp, reverse=True)
    candidates.sort(key=lambda e: e.importance, reverse=True)   # stable: timestamp breaks ties
    return candidates[:missing]


def prune_graph(
    graph: KnowledgeGraph,
    options: PruneOptions,
    thread_id: str | None = None,
) -> tuple[KnowledgeGraph, PruneResult]:
    """Return the pruned graph and what was removed. ``graph`` is not modified.

    With ``thread_id`` only that thread's entities are candidates; entities of
    other threads always survive. Any relation touching a pruned entity is
    dropped with it, whichever thread authored the relation.
    """
    def in_scope(e: Entity) -> bool:
        return thread_id is None or e.agent_thread_id == thread_id

    candidates = [e for e in graph.entities if in_scope(e)]
    survivors = candidates
    if options.older_than is not None:
        survivors = [e for e in survivors if e.timestamp >= options.older_than]
    if options.importance_less_than is not None:
        survivors = [e for e in survivors if e.importance >= options.importance_less_than]

    if options.keep_min_entities:
        kept_ids = {id(e) for e in survivors}
        removed = [e for e in candidates if id(e) not in kept_ids]
        survivors = survivors + _backfill(survivors, removed, options.keep_min_entities)

    kept_ids = {id(e) for e in survivors}
    entities = [e for e in graph.entities if not in_scope(e) or id(e) in kept_ids]
    pruned_names = {e.name for e in candidates if id(e) not in kept_ids}

    if thread_id is None:
        names = {e.name for e in entities}
        relations = [r for r in graph.relations if r.from_entity in names and r.to_entity in names]
    else:
        relations = [
            r for r in graph.relations
            if r.from_entity not in pruned_names and r.to_entity not in pruned_names
        ]

    result = PruneResult(
        removed_entities=len(graph.entities) - len(entities),
        removed_relations=len(graph.relations) - len(relations),
    )
    return KnowledgeGraph(entities=entities, relations=relations), result
