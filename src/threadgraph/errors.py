"""Exception types raised by the store."""

from __future__ import annotations


class ThreadgraphError(Exception):
    """Base class for threadgraph errors."""


class ValidationError(ThreadgraphError, ValueError):
    """Input rejected at the operation boundary (bad score, timestamp, thread id)."""


class InvalidRecordError(ThreadgraphError, ValueError):
    """A persisted record is missing required fields or has wrong field types."""


class EntityNotFoundError(ThreadgraphError, LookupError):
    """An operation referenced an entity name that does not exist."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Entity with name {name} not found")
