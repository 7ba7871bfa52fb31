"""
Memory System — one project's wired-up core

Owns the store, embedder, retriever and context builder for a project root
and exposes the entry points external callers use (MCP tools, scripts):

    add_memory, retrieve_for_context, search, record_friction_event,
    log_friction, boost, apply_decay, get_stats, build

Friction feedback conveniences:
    log_friction(description)  search related memories and apply the
                               correction delta to each one whose adjusted
                               score clears ``friction_match_threshold``
    boost(memory_id)           apply the acceptance delta to one memory
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

import httpx

from deepctx.config import MemoryConfig, config_path, load_config
from deepctx.context import BuiltContext, ContextBuilder, Message
from deepctx.embeddings import Embedder, create_embedder
from deepctx.errors import DimensionMismatch
from deepctx.policy import ContentPolicy
from deepctx.retriever import MemoryRetriever
from deepctx.store import MemoryStore
from deepctx.types import ContextRetrieval, MemoryRecord, MemoryStats, RetrievalResult

logger = logging.getLogger(__name__)


class MemorySystem:
    """Facade over store + embedder + retriever + context builder."""

    def __init__(
        self,
        store: MemoryStore,
        embedder: Embedder,
        config: Optional[MemoryConfig] = None,
        project_root: Optional[Path] = None,
    ):
        if store.dimension != embedder.dimensions:
            raise DimensionMismatch(store.dimension, embedder.dimensions)
        self.config = config or MemoryConfig()
        self.project_root = project_root
        self.session_id: Optional[str] = None
        self.store = store
        self.embedder = embedder
        self.policy = ContentPolicy(self.config.policy)
        self.retriever = MemoryRetriever(
            store, embedder, self.config.retrieval, self.policy,
        )
        self.builder = ContextBuilder(self.retriever, self.config.context)

    @classmethod
    def open(
        cls,
        project_root: Union[str, Path],
        config: Optional[MemoryConfig] = None,
        embedder: Optional[Embedder] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> MemorySystem:
        """Open the project's store, reading ``.dc/config.json`` unless given.

        The store dimension follows the embedder, so reopening a database
        with a different provider raises DimensionMismatch.
        """
        root = Path(project_root).resolve()
        if config is None:
            config = load_config(config_path(root))
        if embedder is None:
            embedder = create_embedder(config.embeddings, transport=transport)
        db_path = Path(config.store.db_path)
        if not db_path.is_absolute():
            db_path = root / db_path
        store = MemoryStore(
            db_path,
            dimension=embedder.dimensions,
            wal_mode=config.store.wal_mode,
            busy_timeout_ms=config.store.busy_timeout_ms,
        )
        return cls(store, embedder, config, project_root=root)

    @classmethod
    def in_memory(
        cls,
        config: Optional[MemoryConfig] = None,
        embedder: Optional[Embedder] = None,
    ) -> MemorySystem:
        """Throwaway system backed by an in-memory database."""
        config = config or MemoryConfig()
        if embedder is None:
            embedder = create_embedder(config.embeddings)
        store = MemoryStore(":memory:", dimension=embedder.dimensions)
        return cls(store, embedder, config)

    # -- Memories ----------------------------------------------------------

    def add_memory(
        self, kind: str, text: str, metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        return self.retriever.add_memory(kind, text, metadata)

    def update_memory(self, memory_id: str, new_text: str) -> bool:
        """Replace a memory's text and re-embed it in the same transaction."""
        self.policy.check(new_text)
        embedding = self.embedder.embed(new_text)
        return self.store.update_content(memory_id, new_text, embedding)

    def remove_memory(self, memory_id: str) -> bool:
        """Soft-delete. The record stays in the database for audit."""
        return self.store.soft_delete(memory_id)

    def get_memory(self, memory_id: str) -> Optional[MemoryRecord]:
        return self.store.get_by_id(memory_id)

    def list_memories(
        self,
        kind: Optional[str] = None,
        limit: Optional[int] = 50,
        offset: int = 0,
        include_inactive: bool = False,
    ) -> List[MemoryRecord]:
        return self.store.list_memories(
            kind=kind, limit=limit, offset=offset,
            include_inactive=include_inactive,
        )

    # -- Retrieval ---------------------------------------------------------

    def retrieve_for_context(
        self, task: str, include_heuristics: Optional[bool] = None,
    ) -> ContextRetrieval:
        self.policy.check_query(task, "task")
        return self.retriever.retrieve_for_context(
            task, include_heuristics_override=include_heuristics,
        )

    def search(
        self,
        query: str,
        kind: Union[str, Iterable[str], None] = None,
        limit: int = 10,
    ) -> List[RetrievalResult]:
        self.policy.check_query(query)
        return self.retriever.search(query, kind=kind, limit=limit)

    def build(
        self,
        user_prompt: str,
        history: Optional[Sequence[Message]] = None,
        include_memory: bool = True,
        force_heuristics: Optional[bool] = None,
    ) -> BuiltContext:
        return self.builder.build(
            user_prompt, history,
            include_memory=include_memory, force_heuristics=force_heuristics,
        )

    # -- Friction ----------------------------------------------------------

    def record_friction_event(
        self,
        memory_id: str,
        event_type: str,
        delta: float,
        note: Optional[str] = None,
    ) -> Optional[str]:
        return self.store.record_friction_event(memory_id, event_type, delta, note)

    def log_friction(
        self,
        description: str,
        why: Optional[str] = None,
        memory_id: Optional[str] = None,
    ) -> List[str]:
        """Down-rank the memories behind an approach that did not work.

        With ``memory_id`` only that memory is corrected.  Otherwise the
        description is searched and every hit whose adjusted score reaches
        ``friction_match_threshold`` is corrected.

        Returns:
            Ids of the memories that received a correction event.
        """
        self.policy.check_query(description, "description")
        fcfg = self.config.friction
        note = why or description

        if memory_id:
            event = self.store.record_friction_event(
                memory_id, "correction", fcfg.correction_delta, note,
            )
            return [memory_id] if event is not None else []

        threshold = self.config.retrieval.friction_match_threshold
        related = self.retriever.search(description, limit=fcfg.match_limit)
        affected: List[str] = []
        for result in related:
            if result.adjusted_score < threshold:
                continue
            event = self.store.record_friction_event(
                result.record.id, "correction", fcfg.correction_delta, note,
            )
            if event is not None:
                affected.append(result.record.id)
        logger.info(f"Logged friction for {len(affected)} memories")
        return affected

    def boost(self, memory_id: str, reason: Optional[str] = None) -> Optional[str]:
        """Up-rank a memory that proved helpful. None if it does not exist."""
        return self.store.record_friction_event(
            memory_id, "acceptance", self.config.friction.boost_delta,
            reason or "Memory was helpful",
        )

    def apply_decay(self, half_life_days: Optional[float] = None) -> int:
        """One decay step with the configured (or given) half-life."""
        if half_life_days is None:
            half_life_days = self.config.friction.decay_half_life_days
        return self.store.apply_friction_decay(half_life_days)

    # -- Stats / lifecycle -------------------------------------------------

    def get_stats(self) -> MemoryStats:
        return self.store.get_stats()

    def start_session(self) -> str:
        """Open a store session; it is ended by ``close()``."""
        self.session_id = self.store.start_session()
        return self.session_id

    def close(self) -> None:
        if self.session_id is not None:
            self.store.end_session(self.session_id)
            self.session_id = None
        self.store.close()
        close = getattr(self.embedder, "close", None)
        if callable(close):
            close()

    def __enter__(self) -> MemorySystem:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
