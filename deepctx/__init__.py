"""
deepctx — persistent project memory for LLM coding assistants.

Three kinds of memory live in one SQLite file per project: constraints
(always injected), decisions (ranked by relevance) and heuristics (only
for judgment calls).  Friction feedback moves memories up or down the
ranking over time.
"""

__version__ = "0.4.0"

from deepctx.types import (
    ContextRetrieval,
    FrictionEvent,
    MemoryRecord,
    MemoryStats,
    RetrievalResult,
    Session,
    SessionMemory,
)
from deepctx.config import MemoryConfig
from deepctx.embeddings import Embedder, HashEmbedder, create_embedder
from deepctx.store import MemoryStore
from deepctx.retriever import MemoryRetriever
from deepctx.context import BuiltContext, ContextBuilder
from deepctx.system import MemorySystem

__all__ = [
    "__version__",
    "MemoryRecord",
    "FrictionEvent",
    "Session",
    "SessionMemory",
    "RetrievalResult",
    "ContextRetrieval",
    "MemoryStats",
    "MemoryConfig",
    "Embedder",
    "HashEmbedder",
    "create_embedder",
    "MemoryStore",
    "MemoryRetriever",
    "ContextBuilder",
    "BuiltContext",
    "MemorySystem",
]
