"""Thread-partitioned knowledge graph memory for agents: JSONL files per thread.

Layout:
    <memory_dir>/
        thread-<agentThreadId>.jsonl   # entities + relations authored in that thread
        .lock                          # writer lock (flock)

thread-*.jsonl line types:
    {"type":"entity", "name":..., "entityType":..., "observations":[...], "agentThreadId":...,
     "timestamp":..., "confidence":..., "importance":...}
    {"type":"relation", "from":..., "to":..., "relationType":..., "agentThreadId":...,
     "timestamp":..., "confidence":..., "importance":...}

Entity names are unique across threads. Every mutation is load -> mutate ->
save of the whole graph under the writer lock; saves rewrite each thread file
by atomic rename.
"""

__version__ = "0.1.0"

from threadgraph.config import ThreadgraphConfig, init_config, load_config  # noqa: E402
from threadgraph.models import Entity, KnowledgeGraph, Observation, Relation  # noqa: E402
from threadgraph.storage import InMemoryStorage, JsonlStorage, StorageAdapter  # noqa: E402
from threadgraph.store import MemoryStore  # noqa: E402

__all__ = [
    "Entity",
    "InMemoryStorage",
    "JsonlStorage",
    "KnowledgeGraph",
    "MemoryStore",
    "Observation",
    "Relation",
    "StorageAdapter",
    "ThreadgraphConfig",
    "init_config",
    "load_config",
]
