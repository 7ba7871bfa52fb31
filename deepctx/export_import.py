"""
Export/Import — JSONL Backup, Migration, and Sharing

Export serializes memory records as one JSON object per line (JSONL),
without embeddings: vectors depend on the provider and are recomputed on
import.

Import is all-or-nothing.  Every line is parsed and checked against the
content policy first, the whole batch is embedded, and only then are the
records written inside a single store transaction.  A bad line, an
embedding failure or a store error leaves the database untouched.

Records already present (same id, or same kind and text) are skipped.
"""

from __future__ import annotations

import json
import sys
from dataclasses import dataclass
from typing import IO, Any, Callable, Dict, List, Optional, Set, Tuple, Union

from deepctx.errors import ValidationError
from deepctx.types import MemoryRecord, _generate_id


# ---------------------------------------------------------------------------
# Result type
# ---------------------------------------------------------------------------


@dataclass
class ImportResult:
    """Counts from an import operation."""

    total_lines: int = 0
    imported: int = 0
    skipped_dedup: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_lines": self.total_lines,
            "imported": self.imported,
            "skipped_dedup": self.skipped_dedup,
        }


def _default_log(msg: str) -> None:
    """Log to stderr."""
    print(msg, file=sys.stderr)


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


def export_memories(
    system,
    *,
    kind: Optional[str] = None,
    include_inactive: bool = True,
    output: IO[str] = sys.stdout,
    log: Callable[[str], None] = _default_log,
) -> int:
    """Write memories as JSONL, newest first. Returns the number written.

    Args:
        system: An open MemorySystem.
        kind: Only export this kind. None = all.
        include_inactive: Also export soft-deleted records (default: True).
        output: Writable stream for JSONL output (default: stdout).
        log: Callable for progress messages (default: stderr).
    """
    records = system.store.list_memories(
        kind=kind, limit=None, include_inactive=include_inactive,
    )
    for record in records:
        output.write(record.to_json() + "\n")
    log(f"[export] {len(records)} memory(ies) exported")
    return len(records)


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------


def _parse_lines(fh: IO[str], policy) -> Tuple[List[MemoryRecord], int]:
    records: List[MemoryRecord] = []
    total = 0
    for lineno, line in enumerate(fh, 1):
        line = line.strip()
        if not line:
            continue
        total += 1
        try:
            data = json.loads(line)
            if not isinstance(data, dict):
                raise TypeError(f"expected a JSON object, got {type(data).__name__}")
            record = MemoryRecord.from_dict(data)
        except (json.JSONDecodeError, TypeError, ValueError) as exc:
            raise ValidationError(f"line {lineno}: invalid memory: {exc}") from exc
        try:
            policy.check(record.text)
        except ValidationError as exc:
            raise ValidationError(f"line {lineno}: {exc}") from exc
        records.append(record)
    return records, total


def import_memories(
    system,
    source: Union[IO[str], str],
    *,
    preserve_ids: bool = False,
    dry_run: bool = False,
    log: Callable[[str], None] = _default_log,
) -> ImportResult:
    """Import memories from JSONL in one transaction.

    Args:
        system: An open MemorySystem (its embedder re-embeds every record).
        source: File path (str) or readable IO stream.
        preserve_ids: Keep original ids. If False, generate new ids.
        dry_run: Validate and count without writing.
        log: Callable for progress messages (default: stderr).

    Raises:
        ValidationError: A line is malformed or rejected by policy; nothing
            is imported.
    """
    if isinstance(source, str):
        with open(source, "r", encoding="utf-8") as fh:
            records, total = _parse_lines(fh, system.policy)
    else:
        records, total = _parse_lines(source, system.policy)

    result = ImportResult(total_lines=total)

    existing = system.store.list_memories(limit=None, include_inactive=True)
    seen_ids: Set[str] = {r.id for r in existing}
    seen_content: Set[Tuple[str, str]] = {(r.kind, r.text) for r in existing}

    pending: List[MemoryRecord] = []
    for record in records:
        key = (record.kind, record.text)
        if key in seen_content or (preserve_ids and record.id in seen_ids):
            result.skipped_dedup += 1
            continue
        if not preserve_ids:
            record.id = _generate_id("MEM")
        seen_ids.add(record.id)
        seen_content.add(key)
        pending.append(record)

    if dry_run:
        result.imported = len(pending)
        log(f"[import] dry run: {result.imported} of {total} would be imported")
        return result

    vectors = system.embedder.embed_batch([r.text for r in pending])

    def _write() -> int:
        for record, vector in zip(pending, vectors):
            system.store.insert_record(record, vector)
        return len(pending)

    result.imported = system.store.run_in_transaction(_write)
    log(
        f"[import] {result.imported} imported, "
        f"{result.skipped_dedup} duplicate(s) skipped"
    )
    return result
