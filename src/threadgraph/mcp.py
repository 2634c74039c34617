"""Stdio MCP server exposing every MemoryStore operation as a tool.

Tool names match the store methods (create_entities, save_memory,
find_relation_path, ...). Arguments use the camelCase wire names of the
persisted records; results come back as JSON text. Store errors
(unknown entity, out-of-range score, bad timestamp, missing argument) are
returned as ``isError`` results rather than JSON-RPC errors.

Protocol: JSON-RPC 2.0 over stdin/stdout (MCP spec). Logging goes to stderr.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import TYPE_CHECKING, Any

from threadgraph import __version__
from threadgraph.errors import ThreadgraphError
from threadgraph.models import Entity, Relation, now_timestamp
from threadgraph.pruning import PruneOptions
from threadgraph.queries import QueryFilters
from threadgraph.store import (
    DEFAULT_ENTITY_CONFIDENCE,
    DEFAULT_ENTITY_IMPORTANCE,
    DEFAULT_RELATION_CONFIDENCE,
    DEFAULT_RELATION_IMPORTANCE,
    EntityUpdate,
    MemoryEntityInput,
    MemoryRelationInput,
    MemoryStore,
    ObservationDeletion,
    ObservationRequest,
)

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger("threadgraph.mcp")

_PROTOCOL_VERSION = "2024-11-05"

_THREAD_ID = {"type": "string", "description": "Agent thread (conversation) id"}
_SCORE = {"type": "number", "minimum": 0, "maximum": 1}
_TIMESTAMP = {"type": "string", "description": "ISO-8601; defaults to now"}

_ENTITY_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": "string"},
        "entityType": {"type": "string"},
        "observations": {"type": "array", "items": {"type": "string"}},
        "agentThreadId": _THREAD_ID,
        "timestamp": _TIMESTAMP,
        "confidence": _SCORE,
        "importance": _SCORE,
    },
    "required": ["name", "entityType", "agentThreadId"],
}

_RELATION_SCHEMA = {
    "type": "object",
    "properties": {
        "from": {"type": "string"},
        "to": {"type": "string"},
        "relationType": {"type": "string", "description": "Active voice, e.g. works_at"},
        "agentThreadId": _THREAD_ID,
        "timestamp": _TIMESTAMP,
        "confidence": _SCORE,
        "importance": _SCORE,
    },
    "required": ["from", "to", "relationType", "agentThreadId"],
}

_OBSERVATION_REQUEST_SCHEMA = {
    "type": "object",
    "properties": {
        "entityName": {"type": "string"},
        "contents": {"type": "array", "items": {"type": "string"}},
        "agentThreadId": _THREAD_ID,
        "timestamp": _TIMESTAMP,
        "confidence": _SCORE,
        "importance": _SCORE,
    },
    "required": ["entityName", "contents", "agentThreadId", "confidence", "importance"],
}


def _object(properties: dict[str, Any] | None = None, required: list[str] | None = None) -> dict[str, Any]:
    schema: dict[str, Any] = {"type": "object", "properties": properties or {}}
    if required:
        schema["required"] = required
    return schema


def _tool_defs() -> list[dict[str, Any]]:
    return [
        {
            "name": "create_entities",
            "description": "Create entities. Names already in the graph (any thread) are skipped.",
            "inputSchema": _object({"entities": {"type": "array", "items": _ENTITY_SCHEMA}}, ["entities"]),
        },
        {
            "name": "create_relations",
            "description": "Create relations between existing entities. Duplicates and unknown endpoints are skipped.",
            "inputSchema": _object({"relations": {"type": "array", "items": _RELATION_SCHEMA}}, ["relations"]),
        },
        {
            "name": "save_memory",
            "description": (
                "Atomically save entities with their relations. Every entity needs at least one "
                "relation to another entity in the same call; observations must be atomic "
                "(max 150 chars, max 2 sentences). Nothing is saved if validation fails."
            ),
            "inputSchema": _object(
                {
                    "entities": {
                        "type": "array",
                        "items": _object(
                            {
                                "name": {"type": "string"},
                                "entityType": {"type": "string"},
                                "observations": {"type": "array", "items": {"type": "string"}},
                                "relations": {
                                    "type": "array",
                                    "items": _object(
                                        {
                                            "targetEntity": {"type": "string"},
                                            "relationType": {"type": "string"},
                                            "importance": _SCORE,
                                        },
                                        ["targetEntity", "relationType"],
                                    ),
                                },
                                "confidence": _SCORE,
                                "importance": _SCORE,
                            },
                            ["name", "entityType", "observations", "relations"],
                        ),
                    },
                    "threadId": _THREAD_ID,
                },
                ["entities", "threadId"],
            ),
        },
        {
            "name": "add_observations",
            "description": "Append observations to existing entities and overwrite their scores.",
            "inputSchema": _object(
                {"observations": {"type": "array", "items": _OBSERVATION_REQUEST_SCHEMA}}, ["observations"],
            ),
        },
        {
            "name": "add_observations_v2",
            "description": "Append versioned observations (with ids and per-observation metadata).",
            "inputSchema": _object(
                {"observations": {"type": "array", "items": _OBSERVATION_REQUEST_SCHEMA}}, ["observations"],
            ),
        },
        {
            "name": "get_observation_history",
            "description": "Versioned observations of an entity (empty if never versioned).",
            "inputSchema": _object({"entityName": {"type": "string"}}, ["entityName"]),
        },
        {
            "name": "delete_entities",
            "description": "Delete entities in any thread, with all their relations.",
            "inputSchema": _object(
                {"entityNames": {"type": "array", "items": {"type": "string"}}}, ["entityNames"],
            ),
        },
        {
            "name": "delete_observations",
            "description": "Remove observation strings from entities. Unknown entities are ignored.",
            "inputSchema": _object(
                {
                    "deletions": {
                        "type": "array",
                        "items": _object(
                            {
                                "entityName": {"type": "string"},
                                "observations": {"type": "array", "items": {"type": "string"}},
                            },
                            ["entityName", "observations"],
                        ),
                    },
                },
                ["deletions"],
            ),
        },
        {
            "name": "delete_relations",
            "description": "Delete relations in any thread by (from, to, relationType).",
            "inputSchema": _object(
                {
                    "relations": {
                        "type": "array",
                        "items": _object(
                            {"from": {"type": "string"}, "to": {"type": "string"}, "relationType": {"type": "string"}},
                            ["from", "to", "relationType"],
                        ),
                    },
                },
                ["relations"],
            ),
        },
        {
            "name": "read_graph",
            "description": "Read the whole graph, or one thread's part of it.",
            "inputSchema": _object({"threadId": _THREAD_ID, "minImportance": _SCORE}),
        },
        {
            "name": "search_nodes",
            "description": "Case-insensitive substring search over names, types and observations.",
            "inputSchema": _object({"query": {"type": "string"}, "threadId": _THREAD_ID}, ["query"]),
        },
        {
            "name": "open_nodes",
            "description": "Fetch entities by exact name, with the relations between them.",
            "inputSchema": _object(
                {"names": {"type": "array", "items": {"type": "string"}}, "threadId": _THREAD_ID}, ["names"],
            ),
        },
        {
            "name": "query_nodes",
            "description": "Filter entities and relations by timestamp, confidence and importance ranges.",
            "inputSchema": _object(
                {
                    "timestampStart": {"type": "string"},
                    "timestampEnd": {"type": "string"},
                    "confidenceMin": _SCORE,
                    "confidenceMax": _SCORE,
                    "importanceMin": _SCORE,
                    "importanceMax": _SCORE,
                    "threadId": _THREAD_ID,
                },
            ),
        },
        {
            "name": "list_entities",
            "description": "List entity names and types, optionally by thread, exact type or name substring.",
            "inputSchema": _object(
                {"threadId": _THREAD_ID, "entityType": {"type": "string"}, "namePattern": {"type": "string"}},
            ),
        },
        {
            "name": "get_memory_stats",
            "description": "Counts, type histogram, mean scores and the last 7 days of activity.",
            "inputSchema": _object(),
        },
        {
            "name": "get_recent_changes",
            "description": "Entities and relations stamped at or after a timestamp.",
            "inputSchema": _object({"since": {"type": "string"}, "threadId": _THREAD_ID}, ["since"]),
        },
        {
            "name": "find_relation_path",
            "description": "Shortest relation path between two entities, following relations either way.",
            "inputSchema": _object(
                {
                    "fromEntity": {"type": "string"},
                    "toEntity": {"type": "string"},
                    "maxDepth": {"type": "integer", "default": 5},
                },
                ["fromEntity", "toEntity"],
            ),
        },
        {
            "name": "get_context",
            "description": "Entities within `depth` relation hops of the given ones, with relations between them.",
            "inputSchema": _object(
                {
                    "entityNames": {"type": "array", "items": {"type": "string"}},
                    "depth": {"type": "integer", "default": 1},
                    "threadId": _THREAD_ID,
                },
                ["entityNames"],
            ),
        },
        {
            "name": "detect_conflicts",
            "description": "Observation pairs on one entity that look contradictory (negation heuristic).",
            "inputSchema": _object(),
        },
        {
            "name": "prune_memory",
            "description": "Remove old or unimportant entities, keeping at least keepMinEntities.",
            "inputSchema": _object(
                {
                    "olderThan": {"type": "string"},
                    "importanceLessThan": _SCORE,
                    "keepMinEntities": {"type": "integer", "minimum": 0},
                    "threadId": _THREAD_ID,
                },
            ),
        },
        {
            "name": "bulk_update",
            "description": "Update scores and append observations on many entities at once.",
            "inputSchema": _object(
                {
                    "updates": {
                        "type": "array",
                        "items": _object(
                            {
                                "entityName": {"type": "string"},
                                "confidence": _SCORE,
                                "importance": _SCORE,
                                "addObservations": {"type": "array", "items": {"type": "string"}},
                            },
                            ["entityName"],
                        ),
                    },
                },
                ["updates"],
            ),
        },
        {
            "name": "flag_for_review",
            "description": "Mark an entity for human review.",
            "inputSchema": _object(
                {"entityName": {"type": "string"}, "reason": {"type": "string"}, "reviewer": {"type": "string"}},
                ["entityName", "reason"],
            ),
        },
        {
            "name": "get_flagged_entities",
            "description": "Entities currently flagged for review.",
            "inputSchema": _object(),
        },
        {
            "name": "list_conversations",
            "description": "Threads with entity/relation counts and time span, most recent first.",
            "inputSchema": _object(),
        },
        {
            "name": "get_analytics",
            "description": "Recent changes, most important, most connected and orphaned entities of a thread.",
            "inputSchema": _object({"threadId": _THREAD_ID}, ["threadId"]),
        },
    ]


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def _entity_from_args(raw: dict[str, Any]) -> Entity:
    defaults = {
        "observations": [],
        "timestamp": now_timestamp(),
        "confidence": DEFAULT_ENTITY_CONFIDENCE,
        "importance": DEFAULT_ENTITY_IMPORTANCE,
    }
    return Entity.from_dict({**defaults, **raw})


def _relation_from_args(raw: dict[str, Any]) -> Relation:
    defaults = {
        "timestamp": now_timestamp(),
        "confidence": DEFAULT_RELATION_CONFIDENCE,
        "importance": DEFAULT_RELATION_IMPORTANCE,
    }
    return Relation.from_dict({**defaults, **raw})


def _observation_request(raw: dict[str, Any]) -> ObservationRequest:
    return ObservationRequest(
        entity_name=raw["entityName"],
        contents=list(raw["contents"]),
        agent_thread_id=raw["agentThreadId"],
        timestamp=raw.get("timestamp") or now_timestamp(),
        confidence=raw["confidence"],
        importance=raw["importance"],
    )


def _memory_entity(raw: dict[str, Any]) -> MemoryEntityInput:
    return MemoryEntityInput(
        name=raw["name"],
        entity_type=raw["entityType"],
        observations=list(raw.get("observations", [])),
        relations=[
            MemoryRelationInput(
                target_entity=r["targetEntity"],
                relation_type=r["relationType"],
                importance=r.get("importance"),
            )
            for r in raw.get("relations", [])
        ],
        confidence=raw.get("confidence"),
        importance=raw.get("importance"),
    )


def _dumps(obj: Any) -> str:
    return json.dumps(obj, indent=2, ensure_ascii=False)


class ThreadgraphServer:
    def __init__(self, store: MemoryStore) -> None:
        self.store = store

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _call_create_entities(self, args: dict[str, Any]) -> str:
        created = self.store.create_entities(_entity_from_args(e) for e in args["entities"])
        return _dumps([e.to_dict() for e in created])

    def _call_create_relations(self, args: dict[str, Any]) -> str:
        created = self.store.create_relations(_relation_from_args(r) for r in args["relations"])
        return _dumps([r.to_dict() for r in created])

    def _call_save_memory(self, args: dict[str, Any]) -> str:
        result = self.store.save_memory([_memory_entity(e) for e in args["entities"]], args["threadId"])
        return _dumps(result.to_dict())

    def _call_add_observations(self, args: dict[str, Any]) -> str:
        results = self.store.add_observations(_observation_request(o) for o in args["observations"])
        return _dumps([r.to_dict() for r in results])

    def _call_add_observations_v2(self, args: dict[str, Any]) -> str:
        results = self.store.add_observations_v2(_observation_request(o) for o in args["observations"])
        return _dumps([r.to_dict() for r in results])

    def _call_get_observation_history(self, args: dict[str, Any]) -> str:
        history = self.store.get_observation_history(args["entityName"])
        return _dumps([o.to_dict() for o in history])

    def _call_delete_entities(self, args: dict[str, Any]) -> str:
        self.store.delete_entities(args["entityNames"])
        return "Entities deleted successfully"

    def _call_delete_observations(self, args: dict[str, Any]) -> str:
        self.store.delete_observations(
            ObservationDeletion(entity_name=d["entityName"], observations=list(d["observations"]))
            for d in args["deletions"]
        )
        return "Observations deleted successfully"

    def _call_delete_relations(self, args: dict[str, Any]) -> str:
        self.store.delete_relations((r["from"], r["to"], r["relationType"]) for r in args["relations"])
        return "Relations deleted successfully"

    def _call_bulk_update(self, args: dict[str, Any]) -> str:
        result = self.store.bulk_update(
            EntityUpdate(
                entity_name=u["entityName"],
                confidence=u.get("confidence"),
                importance=u.get("importance"),
                add_observations=list(u.get("addObservations", [])),
            )
            for u in args["updates"]
        )
        return _dumps(result.to_dict())

    def _call_flag_for_review(self, args: dict[str, Any]) -> str:
        entity = self.store.flag_for_review(args["entityName"], args["reason"], args.get("reviewer"))
        return _dumps(entity.to_dict())

    def _call_prune_memory(self, args: dict[str, Any]) -> str:
        options = PruneOptions(
            older_than=args.get("olderThan"),
            importance_less_than=args.get("importanceLessThan"),
            keep_min_entities=args.get("keepMinEntities"),
        )
        return _dumps(self.store.prune_memory(options, args.get("threadId")).to_dict())

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _call_read_graph(self, args: dict[str, Any]) -> str:
        graph = self.store.read_graph(args.get("threadId"), args.get("minImportance"))
        return _dumps(graph.to_dict())

    def _call_search_nodes(self, args: dict[str, Any]) -> str:
        return _dumps(self.store.search_nodes(args["query"], args.get("threadId")).to_dict())

    def _call_open_nodes(self, args: dict[str, Any]) -> str:
        return _dumps(self.store.open_nodes(args["names"], args.get("threadId")).to_dict())

    def _call_query_nodes(self, args: dict[str, Any]) -> str:
        filters = QueryFilters(
            timestamp_start=args.get("timestampStart"),
            timestamp_end=args.get("timestampEnd"),
            confidence_min=args.get("confidenceMin"),
            confidence_max=args.get("confidenceMax"),
            importance_min=args.get("importanceMin"),
            importance_max=args.get("importanceMax"),
            thread_id=args.get("threadId"),
        )
        return _dumps(self.store.query_nodes(filters).to_dict())

    def _call_list_entities(self, args: dict[str, Any]) -> str:
        pairs = self.store.list_entities(args.get("threadId"), args.get("entityType"), args.get("namePattern"))
        return _dumps([{"name": name, "entityType": etype} for name, etype in pairs])

    def _call_get_memory_stats(self, args: dict[str, Any]) -> str:
        return _dumps(self.store.get_memory_stats().to_dict())

    def _call_get_recent_changes(self, args: dict[str, Any]) -> str:
        return _dumps(self.store.get_recent_changes(args["since"], args.get("threadId")).to_dict())

    def _call_find_relation_path(self, args: dict[str, Any]) -> str:
        result = self.store.find_relation_path(
            args["fromEntity"], args["toEntity"], int(args.get("maxDepth", 5)),
        )
        return _dumps(result.to_dict())

    def _call_get_context(self, args: dict[str, Any]) -> str:
        graph = self.store.get_context(args["entityNames"], int(args.get("depth", 1)), args.get("threadId"))
        return _dumps(graph.to_dict())

    def _call_detect_conflicts(self, args: dict[str, Any]) -> str:
        return _dumps([c.to_dict() for c in self.store.detect_conflicts()])

    def _call_get_flagged_entities(self, args: dict[str, Any]) -> str:
        return _dumps([e.to_dict() for e in self.store.get_flagged_entities()])

    def _call_list_conversations(self, args: dict[str, Any]) -> str:
        return _dumps([c.to_dict() for c in self.store.list_conversations()])

    def _call_get_analytics(self, args: dict[str, Any]) -> str:
        return _dumps(self.store.get_analytics(args["threadId"]).to_dict())

    def call_tool(self, name: str, arguments: dict[str, Any]) -> str:
        dispatch = {
            "create_entities": self._call_create_entities,
            "create_relations": self._call_create_relations,
            "save_memory": self._call_save_memory,
            "add_observations": self._call_add_observations,
            "add_observations_v2": self._call_add_observations_v2,
            "get_observation_history": self._call_get_observation_history,
            "delete_entities": self._call_delete_entities,
            "delete_observations": self._call_delete_observations,
            "delete_relations": self._call_delete_relations,
            "read_graph": self._call_read_graph,
            "search_nodes": self._call_search_nodes,
            "open_nodes": self._call_open_nodes,
            "query_nodes": self._call_query_nodes,
            "list_entities": self._call_list_entities,
            "get_memory_stats": self._call_get_memory_stats,
            "get_recent_changes": self._call_get_recent_changes,
            "find_relation_path": self._call_find_relation_path,
            "get_context": self._call_get_context,
            "detect_conflicts": self._call_detect_conflicts,
            "prune_memory": self._call_prune_memory,
            "bulk_update": self._call_bulk_update,
            "flag_for_review": self._call_flag_for_review,
            "get_flagged_entities": self._call_get_flagged_entities,
            "list_conversations": self._call_list_conversations,
            "get_analytics": self._call_get_analytics,
        }
        if name not in dispatch:
            msg = f"Unknown tool: {name}"
            raise ValueError(msg)
        return dispatch[name](arguments)

    # ------------------------------------------------------------------
    # JSON-RPC
    # ------------------------------------------------------------------

    def _tool_result(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        try:
            text = self.call_tool(name, arguments)
        except KeyError as exc:
            text, is_error = f"Error: missing argument {exc.args[0]!r}", True
        except (ThreadgraphError, ValueError, LookupError, TypeError) as exc:
            text, is_error = f"Error: {exc}", True
        except Exception as exc:
            logger.exception("tool %s failed", name)
            text, is_error = f"Error: {exc}", True
        else:
            is_error = False
        return {"content": [{"type": "text", "text": text}], "isError": is_error}

    def handle_message(self, msg: dict[str, Any]) -> dict[str, Any] | None:
        """Response for one JSON-RPC message, or None for notifications."""
        method = msg.get("method", "")
        msg_id = msg.get("id")

        if method == "initialize":
            result: dict[str, Any] = {
                "protocolVersion": _PROTOCOL_VERSION,
                "capabilities": {"tools": {}},
                "serverInfo": {"name": "threadgraph", "version": __version__},
            }
        elif method == "notifications/initialized":
            return None
        elif method == "tools/list":
            result = {"tools": _tool_defs()}
        elif method == "tools/call":
            params = msg.get("params") or {}
            result = self._tool_result(params.get("name", ""), params.get("arguments") or {})
        elif msg_id is not None:
            return {
                "jsonrpc": "2.0",
                "id": msg_id,
                "error": {"code": -32601, "message": f"Method not found: {method}"},
            }
        else:
            return None
        return {"jsonrpc": "2.0", "id": msg_id, "result": result}


async def _run_server(server: ThreadgraphServer) -> None:
    reader = asyncio.StreamReader()
    loop = asyncio.get_running_loop()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)

    writer_transport, _ = await loop.connect_write_pipe(asyncio.BaseProtocol, sys.stdout.buffer)

    def write_json(obj: Any) -> None:
        line = json.dumps(obj, ensure_ascii=False) + "\n"
        writer_transport.write(line.encode())

    while True:
        try:
            line = await reader.readline()
        except (asyncio.IncompleteReadError, EOFError):
            break
        if not line:
            break
        try:
            msg = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("ignoring malformed JSON-RPC line (%d bytes)", len(line))
            continue
        if not isinstance(msg, dict):
            continue

        response = server.handle_message(msg)
        if response is not None:
            write_json(response)


def run_server(config_root: Path | None = None) -> None:
    """Entry point for `threadgraph serve`."""
    from threadgraph.config import load_config
    cfg = load_config(config_root)
    cfg.ensure_dirs()
    logger.info("serving memory store at %s", cfg.memory_dir)
    server = ThreadgraphServer(MemoryStore.from_config(cfg))
    asyncio.run(_run_server(server))
