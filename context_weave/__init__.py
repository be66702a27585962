"""
context-weave: retrieval-augmented context engine for coding assistants.

Indexes a workspace into a SQLite store plus a vector index, and assembles
token-bounded, relevance-ranked context bundles for queries.
"""

from context_weave.config import EngineConfig
from context_weave.engine import ContextEngine, FileEvent
from context_weave.models import ContextItem, ContextResult, ContextSource, ContextType

__version__ = "0.1.0"

__all__ = [
    "ContextEngine",
    "ContextItem",
    "ContextResult",
    "ContextSource",
    "ContextType",
    "EngineConfig",
    "FileEvent",
]
