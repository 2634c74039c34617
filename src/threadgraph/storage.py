"""Storage adapters: load and save a whole KnowledgeGraph.

Every adapter follows the same contract:
    graph = storage.load()      # full graph; empty graph if nothing persisted
    storage.save(graph)         # replaces everything previously persisted

JsonlStorage layout (one file per thread):

    <root>/
        thread-<agentThreadId>.jsonl
        .lock                   # flock target for the single-writer section

Each line is one record: {"type": "entity", ...} or {"type": "relation", ...}.

Saves reconcile the directory with the graph: threads absent from the graph
lose their file, and a thread with nothing left is deleted rather than
written empty (an empty file would bring the thread back on next load).
"""

from __future__ import annotations

import contextlib
import fcntl
import json
import logging
import re
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import IO, TYPE_CHECKING

from threadgraph.errors import InvalidRecordError
from threadgraph.models import Entity, KnowledgeGraph, Relation
from threadgraph.validation import check_thread_id

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = logging.getLogger("threadgraph.storage")

THREAD_FILE_PREFIX = "thread-"
THREAD_FILE_SUFFIX = ".jsonl"
_THREAD_FILE_RE = re.compile(r"^thread-(.+)\.jsonl$")
_LOCK_FILENAME = ".lock"


class StorageAdapter(ABC):
    """Persists a complete graph snapshot."""

    @abstractmethod
    def load(self) -> KnowledgeGraph:
        """Return the complete current graph."""

    @abstractmethod
    def save(self, graph: KnowledgeGraph) -> None:
        """Persist ``graph``, replacing everything stored before."""

    @abstractmethod
    def locked(self) -> contextlib.AbstractContextManager[None]:
        """Single-writer section: hold it across load -> mutate -> save."""


# ---------------------------------------------------------------------------
# Writer locks (one per storage root, shared by every adapter on that root)
# ---------------------------------------------------------------------------


class _RootLock:
    """Re-entrant in-process lock plus an exclusive flock on <root>/.lock."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._rlock = threading.RLock()
        self._depth = 0
        self._fh: IO[str] | None = None

    @contextlib.contextmanager
    def hold(self) -> Iterator[None]:
        with self._rlock:
            if self._depth == 0:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                fh = self.path.open("a")
                try:
                    fcntl.flock(fh, fcntl.LOCK_EX)
                except OSError:
                    fh.close()
                    raise
                self._fh = fh
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
                if self._depth == 0 and self._fh is not None:
                    fcntl.flock(self._fh, fcntl.LOCK_UN)
                    self._fh.close()
                    self._fh = None


_root_locks: dict[Path, _RootLock] = {}
_root_locks_guard = threading.Lock()


def _lock_for(root: Path) -> _RootLock:
    key = root.resolve()
    with _root_locks_guard:
        lock = _root_locks.get(key)
        if lock is None:
            lock = _RootLock(key / _LOCK_FILENAME)
            _root_locks[key] = lock
        return lock


# ---------------------------------------------------------------------------
# JSONL, one file per thread
# ---------------------------------------------------------------------------


class JsonlStorage(StorageAdapter):
    """Directory of thread-<id>.jsonl files."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)

    def thread_path(self, thread_id: str) -> Path:
        return self.root / f"{THREAD_FILE_PREFIX}{thread_id}{THREAD_FILE_SUFFIX}"

    def thread_files(self) -> list[Path]:
        """Existing thread files, sorted by name. Empty if root is missing."""
        try:
            return sorted(
                p for p in self.root.iterdir()
                if _THREAD_FILE_RE.match(p.name) and p.is_file()
            )
        except FileNotFoundError:
            return []

    def locked(self) -> contextlib.AbstractContextManager[None]:
        return _lock_for(self.root).hold()

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def load(self) -> KnowledgeGraph:
        graph = KnowledgeGraph()
        for path in self.thread_files():
            self._load_file(path, graph)
        return graph

    def _load_file(self, path: Path, graph: KnowledgeGraph) -> None:
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            # deleted by a concurrent save between listing and reading
            return

        for lineno, raw in enumerate(data.splitlines(), start=1):
            try:
                line = raw.decode("utf-8").strip()
            except UnicodeDecodeError as exc:
                logger.warning("skipping undecodable line %s:%d: %s", path.name, lineno, exc)
                continue
            if not line:
                continue
            try:
                obj = json.loads(line)
            except json.JSONDecodeError:
                logger.warning(
                    "skipping malformed JSON line %s:%d (line length: %d chars)",
                    path.name, lineno, len(line),
                )
                continue
            if not isinstance(obj, dict):
                logger.warning("skipping non-object line %s:%d", path.name, lineno)
                continue

            kind = obj.get("type")
            try:
                if kind == "entity":
                    graph.entities.append(Entity.from_dict(obj))
                elif kind == "relation":
                    graph.relations.append(Relation.from_dict(obj))
            except InvalidRecordError as exc:
                logger.warning("skipping %s at %s:%d: %s", kind, path.name, lineno, exc)

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def save(self, graph: KnowledgeGraph) -> None:
        groups: dict[str, tuple[list[Entity], list[Relation]]] = {}
        for e in graph.entities:
            groups.setdefault(e.agent_thread_id, ([], []))[0].append(e)
        for r in graph.relations:
            groups.setdefault(r.agent_thread_id, ([], []))[1].append(r)

        # Reject unusable thread ids before touching any file
        for thread_id in groups:
            check_thread_id(thread_id)

        self.root.mkdir(parents=True, exist_ok=True)
        for thread_id, (entities, relations) in groups.items():
            self._write_thread(thread_id, entities, relations)
        self._remove_stale(set(groups))

    def _write_thread(self, thread_id: str, entities: list[Entity], relations: list[Relation]) -> None:
        path = self.thread_path(thread_id)
        lines = [json.dumps({"type": "entity", **e.to_dict()}, ensure_ascii=False) for e in entities]
        lines += [json.dumps({"type": "relation", **r.to_dict()}, ensure_ascii=False) for r in relations]

        if not lines:
            self._unlink_quietly(path, "empty")
            return

        # Write to tmp then rename so readers never see a half-written file
        tmp = path.with_name(path.name + ".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            f.write("\n".join(lines) + "\n")
        tmp.replace(path)

    def _remove_stale(self, keep: set[str]) -> None:
        """Delete thread files whose thread no longer has any records."""
        try:
            paths = self.thread_files()
        except OSError as exc:
            logger.warning("failed to list thread files for cleanup: %s", exc)
            return
        for path in paths:
            match = _THREAD_FILE_RE.match(path.name)
            if match and match.group(1) not in keep:
                self._unlink_quietly(path, "stale")

    def _unlink_quietly(self, path: Path, why: str) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("failed to delete %s thread file %s: %s", why, path, exc)


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class InMemoryStorage(StorageAdapter):
    """Keeps one deep-copied snapshot; nothing touches disk."""

    def __init__(self, graph: KnowledgeGraph | None = None) -> None:
        self._graph = graph.copy() if graph is not None else KnowledgeGraph()
        self._lock = threading.RLock()

    def load(self) -> KnowledgeGraph:
        return self._graph.copy()

    def save(self, graph: KnowledgeGraph) -> None:
        self._graph = graph.copy()

    @contextlib.contextmanager
    def locked(self) -> Iterator[None]:
        with self._lock:
            yield
