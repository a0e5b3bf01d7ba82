"""Persistence interfaces.

These protocols define the durability boundary of the ledger. Implementations
live in `lpengine.storage` (in-memory and SQL).
"""

from .interfaces import PersistenceStore

__all__ = ["PersistenceStore"]
