"""
Memory Retriever — ranking and two-tier retrieval

Turns a free-text task description into a type-segmented memory set:

1. Constraints: all of them, always (mandatory rules, never ranked).
2. Decisions: cosine similarity against the task, re-weighted by friction.
3. Heuristics: same ranking, but only when the prompt asks for a judgment
   call (``detects_ambiguity``) or the caller forces them.

Friction re-weighting::

    adjusted = similarity * (1 + 0.5 * tanh(friction / 3))

so the multiplier saturates inside (0.5, 1.5): +5 gives ~1.46x, -5 ~0.54x,
0 leaves the similarity unchanged.
"""

from __future__ import annotations

import logging
import math
import re
from typing import Any, Dict, Iterable, List, Optional, Union

from deepctx.config import RetrievalConfig
from deepctx.embeddings import Embedder
from deepctx.policy import ContentPolicy
from deepctx.store import MemoryStore
from deepctx.types import (
    ContextRetrieval,
    MemoryRecord,
    RetrievalResult,
    check_kind,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Ambiguity detection
# ---------------------------------------------------------------------------

_AMBIGUITY_PATTERNS = [
    re.compile(r"should i", re.IGNORECASE),
    re.compile(r"what('s| is) (the )?best", re.IGNORECASE),
    re.compile(r"how should", re.IGNORECASE),
    re.compile(r"which (one|approach|method|way)", re.IGNORECASE),
    re.compile(r"which\b.*\bshould", re.IGNORECASE),
    re.compile(r"recommend", re.IGNORECASE),
    re.compile(r"prefer", re.IGNORECASE),
    re.compile(r"or should", re.IGNORECASE),
    re.compile(r"better to", re.IGNORECASE),
    re.compile(r"what do you think", re.IGNORECASE),
    re.compile(r"would you suggest", re.IGNORECASE),
    re.compile(r"\?.*\?", re.DOTALL),  # several questions
    re.compile(r"either.*or", re.IGNORECASE | re.DOTALL),
    re.compile(r"trade-?off", re.IGNORECASE),
]


def detects_ambiguity(prompt: str) -> bool:
    """True when the prompt asks for a judgment call rather than a task."""
    return any(p.search(prompt) for p in _AMBIGUITY_PATTERNS)


def friction_modifier(similarity: float, friction: float) -> float:
    """Scale similarity by a friction-derived factor in (0.5, 1.5)."""
    return similarity * (1 + 0.5 * math.tanh(friction / 3))


# Metadata keys accepted by add_memory, per kind
_KIND_FIELDS = {
    "constraint": ("scope", "severity"),
    "decision": ("rationale", "alternatives", "related_artifacts"),
    "heuristic": ("applicable_when", "strength"),
}


# ---------------------------------------------------------------------------
# Retriever
# ---------------------------------------------------------------------------

class MemoryRetriever:
    """Embeds queries, searches the store and ranks the results."""

    def __init__(
        self,
        store: MemoryStore,
        embedder: Embedder,
        config: Optional[RetrievalConfig] = None,
        policy: Optional[ContentPolicy] = None,
    ):
        self.store = store
        self.embedder = embedder
        self.config = config or RetrievalConfig()
        self.policy = policy or ContentPolicy()

    def retrieve(
        self,
        query: str,
        kind: Union[str, Iterable[str], None] = None,
        limit: int = 10,
        min_similarity: Optional[float] = None,
        include_friction_adjustment: bool = True,
    ) -> List[RetrievalResult]:
        """Ranked memories for ``query``, best adjusted score first.

        Over-fetches ``limit * overfetch_factor`` candidates so the
        similarity cut-off does not leave the result short.
        """
        if min_similarity is None:
            min_similarity = self.config.default_min_similarity
        if limit <= 0:
            return []

        query_vec = self.embedder.embed(query)
        candidates = self.store.vector_search(
            query_vec, limit=limit * self.config.overfetch_factor, kinds=kind,
        )

        results: List[RetrievalResult] = []
        for record, similarity in candidates:
            if similarity < min_similarity:
                continue
            adjusted = (
                friction_modifier(similarity, record.friction_score)
                if include_friction_adjustment else similarity
            )
            results.append(RetrievalResult(record, similarity, adjusted))

        results.sort(key=lambda r: r.adjusted_score, reverse=True)
        logger.debug(
            f"retrieve({query[:40]!r}): {len(candidates)} candidates, "
            f"{len(results)} above {min_similarity}"
        )
        return results[:limit]

    def get_all_constraints(self) -> List[MemoryRecord]:
        """Every active constraint, regardless of any query."""
        return self.store.get_all_constraints()

    def detects_ambiguity(self, prompt: str) -> bool:
        return detects_ambiguity(prompt)

    def retrieve_for_context(
        self,
        prompt: str,
        max_decisions: Optional[int] = None,
        max_heuristics: Optional[int] = None,
        include_heuristics_override: Optional[bool] = None,
    ) -> ContextRetrieval:
        """Constraints always; decisions by relevance; heuristics when ambiguous.

        ``include_heuristics_override``: True forces heuristics, False
        suppresses them, None lets ambiguity detection decide.
        """
        cfg = self.config
        if max_decisions is None:
            max_decisions = cfg.max_decisions
        if max_heuristics is None:
            max_heuristics = cfg.max_heuristics

        constraints = self.get_all_constraints()
        decisions = self.retrieve(
            prompt, kind="decision", limit=max_decisions,
            min_similarity=cfg.decision_min_similarity,
        )
        ambiguous = self.detects_ambiguity(prompt)

        heuristics: List[RetrievalResult] = []
        if include_heuristics_override is True or (
            include_heuristics_override is not False and ambiguous
        ):
            heuristics = self.retrieve(
                prompt, kind="heuristic", limit=max_heuristics,
                min_similarity=cfg.heuristic_min_similarity,
            )

        return ContextRetrieval(
            constraints=constraints,
            decisions=decisions,
            heuristics=heuristics,
            was_ambiguous=ambiguous,
        )

    def add_memory(
        self,
        kind: str,
        text: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Validate, embed and store a memory. Returns its id.

        ``metadata`` may carry ``note``, ``origin`` and the variant fields of
        the kind (e.g. ``rationale`` for decisions); other keys are ignored.

        Raises:
            UnknownMemoryKind: ``kind`` is not constraint/decision/heuristic.
            ValidationError: Text rejected by the content policy.
        """
        check_kind(kind)
        self.policy.check(text)
        metadata = metadata or {}
        common = {
            "note": metadata.get("note"),
            "origin": metadata.get("origin") or "user",
        }
        variant = {
            k: metadata[k] for k in _KIND_FIELDS[kind]
            if metadata.get(k) is not None
        }

        embedding = self.embedder.embed(text)
        if kind == "constraint":
            return self.store.add_constraint(text, embedding=embedding, **common, **variant)
        if kind == "decision":
            return self.store.add_decision(text, embedding=embedding, **common, **variant)
        return self.store.add_heuristic(text, embedding=embedding, **common, **variant)

    def search(
        self,
        query: str,
        kind: Union[str, Iterable[str], None] = None,
        limit: int = 10,
    ) -> List[RetrievalResult]:
        """Exploratory lookup with the looser search threshold."""
        return self.retrieve(
            query, kind=kind, limit=limit,
            min_similarity=self.config.search_min_similarity,
        )
