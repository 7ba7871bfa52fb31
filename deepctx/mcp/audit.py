"""
MCP Audit Trail — one JSONL line per tool call.

Record layout (schema v1)::

    {"v":1,"ts":"2026-01-05T10:12:03.412Z","rid":"…","tool":"dc_memory_add",
     "sid":"SES-…","outcome":"ok","d":{…},"ms":3.1}

Memory text is never written in full: content-carrying tools log its size,
a SHA-256 digest and a short single-line preview.

Writing is best effort.  A closed or failing output only drops the audit
line; the tool result is unaffected.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, TextIO, Union

logger = logging.getLogger(__name__)

AUDIT_SCHEMA_VERSION = 1
PREVIEW_MAX_CHARS = 80


def _utc_millis() -> str:
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


class AuditLogger:
    """JSONL audit writer for MCP tool calls (stderr by default)."""

    def __init__(self, output: Optional[TextIO] = None):
        self._output = output if output is not None else sys.stderr
        self._owns_output = False

    @classmethod
    def to_file(cls, path: Union[str, Path]) -> AuditLogger:
        """Append to ``path``. The file stays open until ``close()``."""
        audit = cls(open(path, "a", encoding="utf-8"))
        audit._owns_output = True
        return audit

    def close(self) -> None:
        """Close the output if ``to_file()`` opened it; streams passed in are left alone."""
        if self._owns_output:
            self._output.close()

    def new_rid(self) -> str:
        return uuid.uuid4().hex

    def log(
        self,
        tool: str,
        rid: str,
        session_id: Optional[str],
        outcome: str,
        detail: Optional[Dict[str, Any]] = None,
        latency_ms: float = 0.0,
    ) -> None:
        """Append one record.

        Args:
            tool: Tool name, e.g. ``dc_memory_search``.
            rid: Request id from ``new_rid()``.
            session_id: Store session id, or None outside a session.
            outcome: ``ok`` or ``error``.
            detail: Tool-specific fields.
            latency_ms: Wall-clock duration of the call.
        """
        record: Dict[str, Any] = {
            "v": AUDIT_SCHEMA_VERSION,
            "ts": _utc_millis(),
            "rid": rid,
            "tool": tool,
            "sid": session_id,
            "outcome": outcome,
        }
        if detail:
            record["d"] = detail
        record["ms"] = round(latency_ms, 1)
        try:
            self._output.write(json.dumps(record, ensure_ascii=False, separators=(",", ":")) + "\n")
            self._output.flush()
        except (OSError, ValueError) as exc:
            logger.debug(f"Audit record dropped for {tool}: {exc}")

    @staticmethod
    def content_detail(content: str) -> Dict[str, Any]:
        """Size, digest and preview of a memory text."""
        data = content.encode("utf-8")
        preview = " ".join(content[:PREVIEW_MAX_CHARS].split())
        if len(content) > PREVIEW_MAX_CHARS:
            preview += "…"
        return {
            "bytes": len(data),
            "sha256": hashlib.sha256(data).hexdigest(),
            "preview": preview,
        }
