"""
deepctx MCP Tools — seven project-memory tools for MCP clients.

Thin wrappers around MemorySystem.  Each tool runs the same sequence:

    ① Argument checks   — ranges and optional-field sizes
    ② Tool execution    — policy and business logic live in MemorySystem
    ③ Session + registry — record surfaced memories, bump usage counters
    ④ Audit log         — always, including on failure (finally block)

Tools:
    WRITE:     dc_memory_add
    PRIMARY:   dc_memory_context  — constraints + relevant decisions/heuristics
    DISCOVERY: dc_memory_search, dc_memory_list
    FEEDBACK:  dc_log_friction, dc_memory_boost
    HEALTH:    dc_stats

Every tool returns a dict with ``status`` ("ok" or "error").  Validation
and provider failures come back as ``status="error"`` with a message;
they are never raised into the MCP transport.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from deepctx.errors import DeepContextError, ValidationError
from deepctx.formatting import format_memories
from deepctx.types import VALID_KINDS, ContextRetrieval

logger = logging.getLogger(__name__)

NO_CONTEXT_MESSAGE = (
    "No relevant memories found for this task. "
    "This may be a new area of the project."
)

SEARCH_LIMIT_RANGE = (1, 50)
LIST_LIMIT_RANGE = (1, 100)
MAX_MEMORY_ID_LENGTH = 50


def _check_limit(limit: int, bounds: tuple) -> int:
    lo, hi = bounds
    if isinstance(limit, bool) or not isinstance(limit, int) or not lo <= limit <= hi:
        raise ValidationError(f"limit must be an integer in [{lo}, {hi}], got {limit!r}")
    return limit


def _check_optional(value: Optional[str], name: str, max_len: int) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string")
    if len(value) > max_len:
        raise ValidationError(f"{name} exceeds {max_len} characters")
    return value or None


def _check_type(memory_type: Optional[str]) -> Optional[str]:
    if memory_type is not None and memory_type not in VALID_KINDS:
        raise ValidationError(
            f"type must be one of {', '.join(VALID_KINDS)}, got {memory_type!r}"
        )
    return memory_type


def _check_memory_id(memory_id: str) -> str:
    if not isinstance(memory_id, str) or not memory_id.strip():
        raise ValidationError("memory_id must be a non-empty string")
    memory_id = memory_id.strip()
    if len(memory_id) > MAX_MEMORY_ID_LENGTH:
        raise ValidationError(f"memory_id exceeds {MAX_MEMORY_ID_LENGTH} characters")
    return memory_id


def _preview(text: str, width: int = 50) -> str:
    return text if len(text) <= width else text[:width] + "..."


def register_memory_tools(
    mcp,
    system,
    *,
    session_id: Optional[str] = None,
    registry=None,
    project_root: Optional[Path] = None,
    audit=None,
) -> None:
    """
    Register the seven dc_* tools on a FastMCP server instance.

    Args:
        mcp: FastMCP server instance (anything exposing ``tool()``).
        system: Open MemorySystem for the project.
        session_id: Store session that surfaced memories are linked to.
        registry: ProjectRegistry updated after every call (best effort).
        project_root: Registry key. Defaults to ``system.project_root``.
        audit: AuditLogger; defaults to one writing to stderr.
    """
    from deepctx.mcp.audit import AuditLogger

    if audit is None:
        audit = AuditLogger()
    if project_root is None:
        project_root = system.project_root
    max_content = system.config.policy.max_content_length

    def _track() -> None:
        if registry is None or project_root is None:
            return
        try:
            registry.touch(project_root, system.get_stats().total_count)
        except (OSError, TypeError, ValueError) as exc:
            logger.debug(f"Registry update skipped: {exc}")

    def _record_session(retrieved: ContextRetrieval) -> None:
        if session_id is None:
            return
        for record in retrieved.constraints:
            system.store.record_session_memory(session_id, record.id, 1.0)
        for result in (*retrieved.decisions, *retrieved.heuristics):
            system.store.record_session_memory(
                session_id, result.record.id, result.adjusted_score,
            )
        system.store.increment_session_counters(
            session_id, prompts=1, memory_hits=retrieved.total,
        )

    # =====================================================================
    # WRITE
    # =====================================================================

    @mcp.tool()
    def dc_memory_add(
        type: str,
        content: str,
        rationale: Optional[str] = None,
        context: Optional[str] = None,
        scope: Optional[str] = None,
        applicable_when: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Add a memory to the project's persistent context.

        Use this when establishing a coding rule (constraint), making an
        architectural decision (decision) or stating a soft preference
        (heuristic). It is retrieved automatically in future sessions when
        relevant.

        Args:
            type: constraint | decision | heuristic.
            content: The memory text.
            rationale: Why this was decided (decisions).
            context: Additional context stored as the memory's note.
            scope: Where a constraint applies, e.g. a path glob.
            applicable_when: When a heuristic applies.

        Returns:
            id: The new memory id.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {"type": type}
        try:
            _check_type(type)
            metadata: Dict[str, Any] = {
                "origin": "auto",
                "note": _check_optional(context, "context", max_content),
                "rationale": _check_optional(rationale, "rationale", max_content),
                "scope": _check_optional(scope, "scope", max_content),
                "applicable_when": _check_optional(
                    applicable_when, "applicable_when", max_content,
                ),
            }
            if isinstance(content, str):
                content = content.strip()
                detail.update(audit.content_detail(content))
            memory_id = system.add_memory(type, content, metadata)
            _track()
            detail["id"] = memory_id
            return {
                "status": "ok",
                "id": memory_id,
                "type": type,
                "message": f'Added {type}: "{_preview(content)}"',
            }
        except DeepContextError as e:
            outcome = "error"
            return {"status": "error", "message": f"Add failed: {e}"}
        finally:
            audit.log("dc_memory_add", rid, session_id, outcome, detail,
                      (time.monotonic() - t0) * 1000)

    # =====================================================================
    # PRIMARY: context for a task
    # =====================================================================

    @mcp.tool()
    def dc_memory_context(
        task: str,
        include_heuristics: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """Project memory relevant to the task you are about to do.

        Call this before starting a coding task. Returns every project
        constraint, the most relevant past decisions and, for judgment
        calls, applicable heuristics.

        Args:
            task: Description of the coding task.
            include_heuristics: Force (True) or suppress (False) heuristics.
                None lets ambiguity detection decide.

        Returns:
            context: Formatted memory block (or a "no memories" message).
            counts: constraints / decisions / heuristics included.
            was_ambiguous: Whether the task read as a judgment call.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            if isinstance(task, str):
                task = task.strip()
            retrieved = system.retrieve_for_context(task, include_heuristics)
            _record_session(retrieved)
            _track()
            counts = {
                "constraints": len(retrieved.constraints),
                "decisions": len(retrieved.decisions),
                "heuristics": len(retrieved.heuristics),
            }
            detail = {"task_len": len(task), **counts}
            if not retrieved.total:
                text = NO_CONTEXT_MESSAGE
            else:
                text = format_memories(
                    retrieved.constraints, retrieved.decisions, retrieved.heuristics,
                )
            return {
                "status": "ok",
                "context": text,
                "counts": counts,
                "was_ambiguous": retrieved.was_ambiguous,
            }
        except DeepContextError as e:
            outcome = "error"
            return {"status": "error", "message": f"Context retrieval failed: {e}"}
        finally:
            audit.log("dc_memory_context", rid, session_id, outcome, detail,
                      (time.monotonic() - t0) * 1000)

    # =====================================================================
    # DISCOVERY
    # =====================================================================

    @mcp.tool()
    def dc_memory_search(
        query: str,
        type: Optional[str] = None,
        limit: int = 5,
    ) -> Dict[str, Any]:
        """Search project memories by meaning.

        Args:
            query: What to look for.
            type: Restrict to constraint | decision | heuristic.
            limit: Maximum results, 1-50 (default 5).

        Returns:
            count: Number of results.
            results: Memories with similarity and adjusted score.
            formatted: Human-readable listing with relevance percentages.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            _check_type(type)
            _check_limit(limit, SEARCH_LIMIT_RANGE)
            if isinstance(query, str):
                query = query.strip()
            results = system.search(query, kind=type, limit=limit)
            _track()
            detail = {"query_len": len(query), "matched": len(results)}
            if results:
                formatted = "\n\n".join(
                    f"[{r.record.kind.upper()}] {r.record.text}\n"
                    f"  Relevance: {r.adjusted_score * 100:.0f}%"
                    for r in results
                )
            else:
                formatted = f'No memories found matching "{query}"'
            return {
                "status": "ok",
                "count": len(results),
                "results": [r.to_dict() for r in results],
                "formatted": formatted,
            }
        except DeepContextError as e:
            outcome = "error"
            return {"status": "error", "message": f"Search failed: {e}"}
        finally:
            audit.log("dc_memory_search", rid, session_id, outcome, detail,
                      (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def dc_memory_list(
        type: Optional[str] = None,
        limit: int = 20,
    ) -> Dict[str, Any]:
        """List stored memories, newest first.

        Args:
            type: Restrict to constraint | decision | heuristic.
            limit: Maximum results, 1-100 (default 20).
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            _check_type(type)
            _check_limit(limit, LIST_LIMIT_RANGE)
            records = system.list_memories(kind=type, limit=limit)
            _track()
            detail = {"count": len(records)}
            return {
                "status": "ok",
                "count": len(records),
                "memories": [r.to_dict() for r in records],
                "formatted": "\n\n".join(
                    f"[{r.kind.upper()}] {r.text}" for r in records
                ) or "No memories stored yet.",
            }
        except DeepContextError as e:
            outcome = "error"
            return {"status": "error", "message": f"List failed: {e}"}
        finally:
            audit.log("dc_memory_list", rid, session_id, outcome, detail,
                      (time.monotonic() - t0) * 1000)

    # =====================================================================
    # FEEDBACK
    # =====================================================================

    @mcp.tool()
    def dc_log_friction(
        what_failed: str,
        why: Optional[str] = None,
        correction: Optional[str] = None,
        memory_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Report an approach that did not work so related memories rank lower.

        With memory_id only that memory is corrected; otherwise memories
        closely matching what_failed are.

        Args:
            what_failed: The approach that failed.
            why: Why it failed.
            correction: What was done instead.
            memory_id: Specific memory to correct, if known.

        Returns:
            affected: Ids of memories that received a correction.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            why = _check_optional(why, "why", max_content)
            correction = _check_optional(correction, "correction", max_content)
            if memory_id is not None:
                memory_id = _check_memory_id(memory_id)
            if isinstance(what_failed, str):
                what_failed = what_failed.strip()
            affected: List[str] = system.log_friction(
                what_failed, why=why, memory_id=memory_id,
            )
            _track()
            detail = {"affected": len(affected), "targeted": memory_id is not None}
            lines = [
                f"Logged friction for {len(affected)} related memories.",
                f"What failed: {what_failed}",
            ]
            if why:
                lines.append(f"Why: {why}")
            if correction:
                lines.append(f"Correction: {correction}")
            return {
                "status": "ok",
                "affected": affected,
                "message": "\n".join(lines),
            }
        except DeepContextError as e:
            outcome = "error"
            return {"status": "error", "message": f"Friction logging failed: {e}"}
        finally:
            audit.log("dc_log_friction", rid, session_id, outcome, detail,
                      (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def dc_memory_boost(
        memory_id: str,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Mark a memory as helpful so it ranks higher in future retrievals.

        Args:
            memory_id: Id of the memory to boost.
            reason: Why it helped.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            memory_id = _check_memory_id(memory_id)
            reason = _check_optional(reason, "reason", max_content)
            detail = {"id": memory_id}
            event_id = system.boost(memory_id, reason)
            if event_id is None:
                outcome = "error"
                return {"status": "error", "message": f"Memory not found: {memory_id}"}
            _track()
            record = system.get_memory(memory_id)
            return {
                "status": "ok",
                "id": memory_id,
                "event_id": event_id,
                "friction_score": record.friction_score if record else None,
            }
        except DeepContextError as e:
            outcome = "error"
            return {"status": "error", "message": f"Boost failed: {e}"}
        finally:
            audit.log("dc_memory_boost", rid, session_id, outcome, detail,
                      (time.monotonic() - t0) * 1000)

    # =====================================================================
    # HEALTH
    # =====================================================================

    @mcp.tool()
    def dc_stats() -> Dict[str, Any]:
        """Memory counts per type, friction events and average friction score."""
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        try:
            stats = system.get_stats()
            _track()
            return {"status": "ok", **stats.to_dict()}
        except DeepContextError as e:
            outcome = "error"
            return {"status": "error", "message": f"Stats failed: {e}"}
        finally:
            audit.log("dc_stats", rid, session_id, outcome, None,
                      (time.monotonic() - t0) * 1000)
