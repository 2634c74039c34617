"""
Pytest fixtures and test configuration for threadgraph tests.
"""

import pytest

from threadgraph.config import ENV_HOST, ENV_MEMORY_DIR, ENV_PORT
from threadgraph.models import Entity, Relation
from threadgraph.storage import InMemoryStorage, JsonlStorage
from threadgraph.store import MemoryStore

TS = "2024-01-01T00:00:00.000Z"


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep the host environment from leaking into config resolution."""
    for key in (ENV_MEMORY_DIR, ENV_HOST, ENV_PORT):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def make_entity():
    def _make(name, thread="t1", **overrides):
        fields = {
            "name": name,
            "entity_type": "Person",
            "agent_thread_id": thread,
            "timestamp": TS,
            "confidence": 0.9,
            "importance": 0.5,
            "observations": [],
        }
        fields.update(overrides)
        return Entity(**fields)

    return _make


@pytest.fixture
def make_relation():
    def _make(src, dst, rel_type="knows", thread="t1", **overrides):
        fields = {
            "from_entity": src,
            "to_entity": dst,
            "relation_type": rel_type,
            "agent_thread_id": thread,
            "timestamp": TS,
            "confidence": 0.9,
            "importance": 0.7,
        }
        fields.update(overrides)
        return Relation(**fields)

    return _make


@pytest.fixture
def memory_dir(tmp_path):
    return tmp_path / "memory"


@pytest.fixture
def storage(memory_dir):
    return JsonlStorage(memory_dir)


@pytest.fixture
def store(storage):
    return MemoryStore(storage)


@pytest.fixture
def mem_store():
    """Store backed by InMemoryStorage: nothing touches disk."""
    return MemoryStore(InMemoryStorage())
