"""
Global project registry (``~/.deep-context/projects.json``)

Operator-facing usage record: which projects have used deepctx, when, and
how much.  Written best-effort by the MCP server and never read by
retrieval or ranking, so a broken or unwritable registry only loses
bookkeeping.

Writes go to a temp file in the same directory and are renamed over the
registry, so readers never see a half-written file.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

from deepctx.types import _now_iso

logger = logging.getLogger(__name__)

GLOBAL_DC_DIR = ".deep-context"
PROJECTS_FILE = "projects.json"


def default_registry_path() -> Path:
    return Path.home() / GLOBAL_DC_DIR / PROJECTS_FILE


@dataclass
class ProjectEntry:
    """Usage record for one project root."""

    path: str
    first_used: str
    last_used: str
    memory_count: int = 0
    mcp_calls: int = 0

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> ProjectEntry:
        """Build from a stored entry.

        Raises:
            TypeError: A field is missing or has the wrong JSON type.
        """
        entry = cls(**{k: v for k, v in d.items() if k in cls.__dataclass_fields__})
        for name in ("path", "first_used", "last_used"):
            if not isinstance(getattr(entry, name), str):
                raise TypeError(f"registry field {name!r} must be a string")
        for name in ("memory_count", "mcp_calls"):
            value = getattr(entry, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise TypeError(f"registry field {name!r} must be an integer")
        return entry


class ProjectRegistry:
    """Best-effort JSON registry keyed by absolute project path."""

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path is not None else default_registry_path()

    def load(self) -> Dict[str, ProjectEntry]:
        """Current entries; empty when the file is missing or unreadable."""
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as exc:
            logger.debug(f"Ignoring unreadable registry {self.path}: {exc}")
            return {}
        if not isinstance(raw, dict):
            return {}
        entries: Dict[str, ProjectEntry] = {}
        for key, value in raw.items():
            if not isinstance(value, dict):
                continue
            try:
                entries[key] = ProjectEntry.from_dict({"path": key, **value})
            except TypeError as exc:
                logger.debug(f"Skipping registry entry {key!r}: {exc}")
                continue
        return entries

    def touch(self, project_path: Union[str, Path], memory_count: int) -> bool:
        """Record one call against a project. Returns False if the write failed."""
        key = str(Path(project_path).resolve())
        entries = self.load()
        now = _now_iso()
        entry = entries.get(key)
        if entry is None:
            entries[key] = ProjectEntry(
                path=key, first_used=now, last_used=now,
                memory_count=memory_count, mcp_calls=1,
            )
        else:
            entry.last_used = now
            entry.memory_count = memory_count
            entry.mcp_calls += 1
        return self._save(entries)

    def remove(self, project_path: Union[str, Path]) -> bool:
        """Drop a project. False if it was not registered or the write failed."""
        key = str(Path(project_path).resolve())
        entries = self.load()
        if entries.pop(key, None) is None:
            return False
        return self._save(entries)

    def _save(self, entries: Dict[str, ProjectEntry]) -> bool:
        tmp = self.path.with_name(f"{self.path.name}.tmp.{os.getpid()}")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            payload = {key: asdict(e) for key, e in entries.items()}
            tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            os.chmod(tmp, 0o600)
            os.replace(tmp, self.path)
        except OSError as exc:
            logger.debug(f"Registry write skipped ({self.path}): {exc}")
            try:
                tmp.unlink()
            except OSError:
                pass
            return False
        return True
