"""Event store implementations."""

from .memory import InMemoryEventStore
from .sql import SqlEventStore

__all__ = ["InMemoryEventStore", "SqlEventStore"]
