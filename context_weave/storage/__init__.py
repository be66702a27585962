"""
Persistent storage: SQLite tables for items, entities, conversations and
usage patterns, linked to the vector index by integer vector ids.
"""

from context_weave.storage.sqlite_store import ContextStore

__all__ = ["ContextStore"]
