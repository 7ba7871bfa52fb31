"""
Memory Context Formatting

Renders retrieved memories into the "Project Memory" block that the context
builder places in the system prompt.  Section order is fixed: constraints,
then decisions (with relevance), then heuristics.

Entry layout::

    [CONSTRAINT] Always validate input
      Scope: src/api/**
      Context: agreed in the security review
"""

from __future__ import annotations

from typing import List

from deepctx.types import MemoryRecord, RetrievalResult

CONSTRAINTS_HEADER = "## Project Constraints (Always Apply)"
DECISIONS_HEADER = "## Relevant Past Decisions"
HEURISTICS_HEADER = "## Applicable Heuristics"


def format_memory(record: MemoryRecord) -> str:
    """Render one memory as a tagged entry with its variant details."""
    lines: List[str] = [f"[{record.kind.upper()}] {record.text}"]

    if record.kind == "constraint":
        if record.scope:
            lines.append(f"  Scope: {record.scope}")
    elif record.kind == "decision":
        if record.rationale:
            lines.append(f"  Rationale: {record.rationale}")
        if record.alternatives:
            lines.append(f"  Alternatives considered: {', '.join(record.alternatives)}")
    elif record.kind == "heuristic":
        if record.applicable_when:
            lines.append(f"  Applicable when: {record.applicable_when}")

    if record.note:
        lines.append(f"  Context: {record.note}")

    return "\n".join(lines)


def format_relevance(score: float) -> str:
    """Adjusted score as a whole percentage, e.g. ``(relevance: 73%)``."""
    return f"(relevance: {score * 100:.0f}%)"


def format_memories(
    constraints: List[MemoryRecord],
    decisions: List[RetrievalResult],
    heuristics: List[RetrievalResult],
) -> str:
    """Render the three sections; empty sections are omitted."""
    sections: List[str] = []

    if constraints:
        sections.append(CONSTRAINTS_HEADER)
        sections.append("\n\n".join(format_memory(c) for c in constraints))

    if decisions:
        sections.append(DECISIONS_HEADER)
        sections.append("\n\n".join(
            f"{format_memory(d.record)} {format_relevance(d.adjusted_score)}"
            for d in decisions
        ))

    if heuristics:
        sections.append(HEURISTICS_HEADER)
        sections.append("\n\n".join(format_memory(h.record) for h in heuristics))

    return "\n\n".join(sections)
