"""
Context Builder — token-budgeted prompt assembly

Produces the message list for one LLM call:

    [system: base instructions + Project Memory]  +  history  +  [user: prompt]

History is trimmed to ``conversation_tokens`` by walking from the newest
message backwards and stopping at the first one that no longer fits, so
the oldest messages go first and no message is ever cut in half.

Token counts are estimated as ``ceil(chars / 4)``: coarse, but monotonic
in content length.  Memory retrieval failures degrade to a prompt without
memory rather than failing the call.
"""

from __future__ import annotations

import logging
import math
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from deepctx.config import ContextConfig
from deepctx.errors import DeepContextError
from deepctx.formatting import format_memories
from deepctx.retriever import MemoryRetriever
from deepctx.types import ContextRetrieval

logger = logging.getLogger(__name__)

Message = Dict[str, str]

BASE_SYSTEM_PROMPT = (
    "You are Deep Context, an AI coding assistant with persistent memory.\n"
    "You remember past decisions and constraints for this project.\n"
    "Always consider the project context when giving advice."
)

CONSTRAINT_INSTRUCTION = (
    "**Important:** The constraints above are rules that MUST be followed."
)
DECISION_INSTRUCTION = (
    "The decisions above represent past choices made for this project. "
    "Consider them when giving advice, but they can be reconsidered if "
    "there's good reason."
)


def estimate_tokens(text: str) -> int:
    """Approximate token count: one token per four characters, rounded up."""
    return math.ceil(len(text) / 4)


def truncate_history(history: Sequence[Message], max_tokens: int) -> List[Message]:
    """Keep the newest messages that fit in ``max_tokens``, in original order."""
    kept: List[Message] = []
    total = 0
    for msg in reversed(history):
        tokens = estimate_tokens(msg.get("content", ""))
        if total + tokens > max_tokens:
            break
        kept.append(msg)
        total += tokens
    kept.reverse()
    return kept


@dataclass
class BuiltContext:
    """Messages ready for an LLM call, plus what went into them."""

    messages: List[Message]
    token_estimate: int
    memory_stats: Dict[str, Any] = field(default_factory=dict)


class ContextBuilder:
    """Assembles system prompt, trimmed history and user prompt."""

    def __init__(
        self,
        retriever: Optional[MemoryRetriever],
        config: Optional[ContextConfig] = None,
        base_prompt: str = BASE_SYSTEM_PROMPT,
    ):
        self.retriever = retriever
        self.config = config or ContextConfig()
        self.base_prompt = base_prompt

    def build(
        self,
        user_prompt: str,
        history: Optional[Sequence[Message]] = None,
        include_memory: bool = True,
        force_heuristics: Optional[bool] = None,
    ) -> BuiltContext:
        """Build the message list for ``user_prompt``.

        ``force_heuristics`` is passed through as the heuristic override
        (True forces, False suppresses, None lets ambiguity decide).
        """
        retrieved = ContextRetrieval()
        degraded = False
        if include_memory and self.retriever is not None:
            try:
                retrieved = self.retriever.retrieve_for_context(
                    user_prompt, include_heuristics_override=force_heuristics,
                )
            except (DeepContextError, sqlite3.Error) as exc:
                logger.warning(f"Memory retrieval failed, building without memory: {exc}")
                degraded = True

        messages: List[Message] = [
            {"role": "system", "content": self.build_system_prompt(retrieved)},
        ]
        messages.extend(truncate_history(history or [], self.config.conversation_tokens))
        messages.append({"role": "user", "content": user_prompt})

        token_estimate = sum(estimate_tokens(m.get("content", "")) for m in messages)
        return BuiltContext(
            messages=messages,
            token_estimate=token_estimate,
            memory_stats={
                "constraints_included": len(retrieved.constraints),
                "decisions_included": len(retrieved.decisions),
                "heuristics_included": len(retrieved.heuristics),
                "was_ambiguous": retrieved.was_ambiguous,
                "degraded": degraded,
            },
        )

    def build_system_prompt(self, retrieved: ContextRetrieval) -> str:
        """Base instructions, then the Project Memory block when non-empty."""
        sections: List[str] = [self.base_prompt]

        if retrieved.total:
            sections.append("\n# Project Memory\n")
            sections.append(format_memories(
                retrieved.constraints, retrieved.decisions, retrieved.heuristics,
            ))
        if retrieved.constraints:
            sections.append(f"\n{CONSTRAINT_INSTRUCTION}")
        if retrieved.decisions:
            sections.append(f"\n{DECISION_INSTRUCTION}")

        return "\n".join(sections)


def build_simple_context(
    user_prompt: str,
    history: Optional[Sequence[Message]] = None,
    system_prompt: Optional[str] = None,
) -> List[Message]:
    """Messages without any memory: optional system prompt, history, prompt."""
    messages: List[Message] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.extend(history or [])
    messages.append({"role": "user", "content": user_prompt})
    return messages
