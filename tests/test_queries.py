"""Tests for threadgraph.queries: pure reads over an in-memory graph."""

from datetime import UTC, datetime

import pytest

from threadgraph import queries
from threadgraph.models import KnowledgeGraph, Observation
from threadgraph.queries import QueryFilters


@pytest.fixture
def chain(make_entity, make_relation):
    """A -> B <- C -> D, all in t1; E isolated in t2."""
    return KnowledgeGraph(
        entities=[make_entity(n) for n in "ABCD"] + [make_entity("E", "t2")],
        relations=[
            make_relation("A", "B", "knows"),
            make_relation("C", "B", "manages"),
            make_relation("C", "D", "owns"),
        ],
    )


class TestFindRelationPath:
    def test_trivial_path(self, chain):
        result = queries.find_relation_path(chain, "A", "A")
        assert result.found
        assert result.path == ["A"]
        assert result.relations == []

    def test_traverses_relations_in_either_direction(self, chain):
        result = queries.find_relation_path(chain, "A", "C")
        assert result.found
        assert result.path == ["A", "B", "C"]
        # directional records preserved
        assert [r.key for r in result.relations] == [("A", "B", "knows"), ("C", "B", "manages")]

    def test_respects_max_depth(self, chain):
        assert queries.find_relation_path(chain, "A", "D", max_depth=3).found
        result = queries.find_relation_path(chain, "A", "D", max_depth=2)
        assert not result.found
        assert result.path == []
        assert result.relations == []

    def test_no_path(self, chain):
        assert not queries.find_relation_path(chain, "A", "E").found

    def test_shortest_path_wins(self, make_entity, make_relation):
        graph = KnowledgeGraph(
            entities=[make_entity(n) for n in "ABCD"],
            relations=[
                make_relation("A", "B"),
                make_relation("B", "C"),
                make_relation("C", "D"),
                make_relation("D", "A", "reports_to"),
            ],
        )
        result = queries.find_relation_path(graph, "A", "D")
        assert result.path == ["A", "D"]
        assert result.relations[0].relation_type == "reports_to"

    def test_to_dict(self, chain):
        d = queries.find_relation_path(chain, "A", "B").to_dict()
        assert d["found"] is True
        assert d["relations"][0]["from"] == "A"


class TestGetContext:
    def test_depth_one(self, chain):
        ctx = queries.get_context(chain, ["A"], depth=1)
        assert sorted(e.name for e in ctx.entities) == ["A", "B"]
        assert [r.key for r in ctx.relations] == [("A", "B", "knows")]

    def test_depth_two(self, chain):
        ctx = queries.get_context(chain, ["A"], depth=2)
        assert sorted(e.name for e in ctx.entities) == ["A", "B", "C"]
        assert len(ctx.relations) == 2

    def test_depth_zero_is_just_the_names(self, chain):
        ctx = queries.get_context(chain, ["A", "D"], depth=0)
        assert sorted(e.name for e in ctx.entities) == ["A", "D"]
        assert ctx.relations == []

    def test_thread_scoped(self, chain):
        assert queries.get_context(chain, ["A"], depth=3, thread_id="t2").entities == []


class TestDetectConflicts:
    def _graph(self, make_entity, *observations):
        return KnowledgeGraph(entities=[make_entity("A", observations=list(observations))])

    def test_negated_pair_flagged(self, make_entity):
        [ec] = queries.detect_conflicts(self._graph(make_entity, "is employed", "is not employed"))
        assert ec.entity_name == "A"
        [c] = ec.conflicts
        assert (c.obs1, c.obs2) == ("is employed", "is not employed")
        assert c.reason == "Potential contradiction with negation"

    def test_unrelated_pair_not_flagged(self, make_entity):
        assert queries.detect_conflicts(self._graph(make_entity, "is happy", "likes tea")) == []

    def test_both_negated_not_flagged(self, make_entity):
        graph = self._graph(make_entity, "does not like green tea", "never drinks green tea")
        assert queries.detect_conflicts(graph) == []

    def test_two_shared_words_required_for_longer_observations(self, make_entity):
        one_shared = self._graph(make_entity, "works remotely from Berlin", "never works weekends")
        assert queries.detect_conflicts(one_shared) == []

        two_shared = self._graph(make_entity, "works remotely from Berlin", "never works remotely")
        assert len(queries.detect_conflicts(two_shared)) == 1

    def test_cue_words_matched_as_whole_tokens(self, make_entity):
        # "know" and "nothing" contain "no" but are not negations
        graph = self._graph(make_entity, "they know python well", "nothing about python well")
        assert queries.detect_conflicts(graph) == []

    def test_contraction_cue(self, make_entity):
        graph = self._graph(make_entity, "likes spicy food", "doesn't like spicy food")
        assert len(queries.detect_conflicts(graph)) == 1


class TestThreadIsolation:
    def test_read_graph_by_thread(self, make_entity, make_relation):
        graph = KnowledgeGraph(
            entities=[make_entity("A", "t1"), make_entity("B", "t1"), make_entity("C", "t2")],
            relations=[
                make_relation("A", "B", thread="t1"),
                make_relation("A", "C", thread="t2"),
                make_relation("B", "A", thread="t2"),
            ],
        )
        t1 = queries.read_graph(graph, "t1")
        assert sorted(e.name for e in t1.entities) == ["A", "B"]
        assert [r.key for r in t1.relations] == [("A", "B", "knows")]

        t2 = queries.read_graph(graph, "t2")
        assert [e.name for e in t2.entities] == ["C"]
        assert t2.relations == []

    def test_read_graph_min_importance(self, make_entity):
        graph = KnowledgeGraph(entities=[make_entity("A", importance=0.2), make_entity("B", importance=0.8)])
        assert [e.name for e in queries.read_graph(graph, min_importance=0.5).entities] == ["B"]

    def test_unscoped_read_returns_everything(self, chain):
        assert queries.read_graph(chain) is chain


class TestSearchAndOpen:
    def test_search_case_insensitive_on_name_type_and_observations(self, make_entity, make_relation):
        graph = KnowledgeGraph(
            entities=[
                make_entity("Alice", observations=["Likes TEA"]),
                make_entity("Acme", entity_type="Company"),
                make_entity("Bob"),
            ],
            relations=[make_relation("Alice", "Acme"), make_relation("Bob", "Alice")],
        )
        assert [e.name for e in queries.search_nodes(graph, "tea").entities] == ["Alice"]
        assert [e.name for e in queries.search_nodes(graph, "company").entities] == ["Acme"]

        result = queries.search_nodes(graph, "a")
        assert len(result.entities) == 2   # Alice, Acme; Bob has no "a"
        assert [r.key for r in result.relations] == [("Alice", "Acme", "knows")]

    def test_search_versioned_content(self, make_entity):
        e = make_entity("A")
        e.observations_v2 = [Observation("obs-1", "speaks Finnish", "2024-01-01T00:00:00.000Z", "t1", 1.0, 0.5)]
        graph = KnowledgeGraph(entities=[e])
        assert len(queries.search_nodes(graph, "finnish").entities) == 1

    def test_open_nodes_induced_relations(self, chain):
        result = queries.open_nodes(chain, ["C", "D", "Nope"])
        assert sorted(e.name for e in result.entities) == ["C", "D"]
        assert [r.key for r in result.relations] == [("C", "D", "owns")]

    def test_list_entities(self, make_entity):
        graph = KnowledgeGraph(entities=[
            make_entity("Alice"),
            make_entity("Acme", entity_type="Company"),
            make_entity("ALBERT", "t2"),
        ])
        assert queries.list_entities(graph, name_pattern="al") == [("Alice", "Person"), ("ALBERT", "Person")]
        assert queries.list_entities(graph, entity_type="Company") == [("Acme", "Company")]
        assert queries.list_entities(graph, thread_id="t2") == [("ALBERT", "Person")]


class TestQueryNodes:
    def test_ranges_are_conjunctive(self, make_entity, make_relation):
        graph = KnowledgeGraph(
            entities=[
                make_entity("A", importance=0.9, timestamp="2024-03-01T00:00:00.000Z"),
                make_entity("B", importance=0.9, timestamp="2023-03-01T00:00:00.000Z"),
                make_entity("C", importance=0.1, timestamp="2024-03-01T00:00:00.000Z"),
                make_entity("D", importance=0.8, timestamp="2024-04-01T00:00:00.000Z"),
            ],
            relations=[
                make_relation("A", "D", importance=0.9),
                make_relation("D", "A", "likes", importance=0.2),
                make_relation("A", "C"),
            ],
        )
        filters = QueryFilters(timestamp_start="2024-01-01T00:00:00.000Z", importance_min=0.5)
        result = queries.query_nodes(graph, filters)
        assert [e.name for e in result.entities] == ["A", "D"]
        assert [r.key for r in result.relations] == [("A", "D", "knows")]

    def test_no_filters(self, chain):
        assert queries.query_nodes(chain, None) is chain

    def test_inclusive_bounds(self, make_entity):
        graph = KnowledgeGraph(entities=[make_entity("A", confidence=0.5)])
        assert len(queries.query_nodes(graph, QueryFilters(confidence_min=0.5, confidence_max=0.5)).entities) == 1


class TestAggregates:
    def test_memory_stats(self, make_entity, make_relation):
        graph = KnowledgeGraph(
            entities=[
                make_entity("A", timestamp="2024-05-09T10:00:00.000Z", confidence=1.0, importance=1.0),
                make_entity("B", timestamp="2024-05-09T11:00:00.000Z", confidence=0.5, importance=0.0),
                make_entity("C", "t2", entity_type="Company", timestamp="2024-05-08T00:00:00.000Z"),
                make_entity("D", timestamp="2024-01-01T00:00:00.000Z"),
            ],
            relations=[make_relation("A", "B", thread="t3")],
        )
        stats = queries.get_memory_stats(graph, now=datetime(2024, 5, 10, tzinfo=UTC))
        assert stats.entity_count == 4
        assert stats.relation_count == 1
        assert stats.thread_count == 3
        assert stats.entity_types == {"Person": 3, "Company": 1}
        assert stats.recent_activity == [("2024-05-08", 1), ("2024-05-09", 2)]
        assert stats.to_dict()["recentActivity"][0] == {"timestamp": "2024-05-08", "entityCount": 1}

    def test_empty_stats(self):
        stats = queries.get_memory_stats(KnowledgeGraph())
        assert stats.avg_confidence == 0
        assert stats.avg_importance == 0
        assert stats.recent_activity == []

    def test_recent_changes(self, make_entity, make_relation):
        graph = KnowledgeGraph(
            entities=[make_entity("A", timestamp="2024-05-01T00:00:00.000Z"), make_entity("B")],
            relations=[make_relation("A", "B", timestamp="2024-05-02T00:00:00.000Z")],
        )
        recent = queries.get_recent_changes(graph, "2024-05-01T00:00:00.000Z")
        assert [e.name for e in recent.entities] == ["A"]
        assert len(recent.relations) == 1

    def test_list_conversations(self, make_entity, make_relation):
        graph = KnowledgeGraph(
            entities=[
                make_entity("A", "old", timestamp="2024-01-01T00:00:00.000Z"),
                make_entity("B", "new", timestamp="2024-02-01T00:00:00.000Z"),
                make_entity("C", "new", timestamp="2024-03-01T00:00:00.000Z"),
            ],
            relations=[make_relation("B", "C", thread="new", timestamp="2024-04-01T00:00:00.000Z")],
        )
        convs = queries.list_conversations(graph)
        assert [c.agent_thread_id for c in convs] == ["new", "old"]
        assert convs[0].entity_count == 2
        assert convs[0].relation_count == 1
        assert convs[0].first_created == "2024-02-01T00:00:00.000Z"
        assert convs[0].last_updated == "2024-04-01T00:00:00.000Z"
        assert convs[1].to_dict()["agentThreadId"] == "old"


class TestAnalytics:
    def test_reports(self, make_entity, make_relation):
        versioned = make_entity("V", importance=0.95, timestamp="2024-06-01T00:00:00.000Z")
        versioned.observations_v2 = [
            Observation("obs-1", "x", "2024-06-01T00:00:00.000Z", "t1", 1.0, 0.5, version=2),
        ]
        graph = KnowledgeGraph(
            entities=[
                make_entity("Hub", importance=0.4),
                make_entity("A"),
                make_entity("B"),
                make_entity("Lonely", importance=0.1),
                versioned,
                make_entity("Other", "t2"),
            ],
            relations=[
                make_relation("Hub", "A"),
                make_relation("B", "Hub"),
                make_relation("Hub", "A", "likes"),
                make_relation("V", "Other"),
            ],
        )
        report = queries.get_analytics(graph, "t1")

        assert report.recent_changes[0]["entityName"] == "V"
        assert report.recent_changes[0]["changeType"] == "updated"
        assert {r["changeType"] for r in report.recent_changes[1:]} == {"created"}

        assert report.top_important[0]["entityName"] == "V"

        hub = report.most_connected[0]
        assert hub["entityName"] == "Hub"
        assert hub["relationCount"] == 2
        assert sorted(hub["connectedTo"]) == ["A", "B"]

        orphans = {o["entityName"]: o["reason"] for o in report.orphaned_entities}
        assert orphans == {"Lonely": "no_relations", "V": "broken_relation"}

    def test_to_dict_keys(self):
        d = queries.get_analytics(KnowledgeGraph(), "t1").to_dict()
        assert set(d) == {"recent_changes", "top_important", "most_connected", "orphaned_entities"}


class TestLinearChain:
    """A -> B -> C plus an unrelated D."""

    @pytest.fixture
    def graph(self, make_entity, make_relation):
        return KnowledgeGraph(
            entities=[make_entity(n) for n in "ABCD"],
            relations=[make_relation("A", "B"), make_relation("B", "C")],
        )

    def test_path(self, graph):
        result = queries.find_relation_path(graph, "A", "C", 5)
        assert result.found
        assert result.path == ["A", "B", "C"]
        assert len(result.relations) == 2

    def test_context_depth_two_excludes_unrelated(self, graph):
        ctx = queries.get_context(graph, ["A"], depth=2)
        assert sorted(e.name for e in ctx.entities) == ["A", "B", "C"]

    def test_other_thread_read_sees_nothing(self, graph, make_entity):
        graph.entities.append(make_entity("Z", "t2"))
        t2 = queries.read_graph(graph, "t2")
        assert [e.name for e in t2.entities] == ["Z"]
        assert t2.relations == []
