"""
Memory Data Model

A memory is one of three kinds sharing a common shape:

    constraint  mandatory rule, always injected (scope, severity)
    decision    past architectural choice (rationale, alternatives, artifacts)
    heuristic   soft preference, injected on ambiguous prompts
                (applicable_when, strength)

MemoryRecord is a single tagged dataclass: ``kind`` is the discriminant and
variant fields stay None/empty on the kinds that do not use them.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from deepctx.errors import UnknownMemoryKind, ValidationError

# ---------------------------------------------------------------------------
# Type aliases (Literal unions for validation)
# ---------------------------------------------------------------------------

MemoryKind = Literal["constraint", "decision", "heuristic"]
MemoryOrigin = Literal["user", "auto", "git"]
FrictionEventType = Literal[
    "iteration", "correction", "revert", "rejection", "acceptance",
]
Severity = Literal["error", "warning"]
Strength = Literal["strong", "moderate", "weak"]

# Valid values for runtime checks
VALID_KINDS: tuple = ("constraint", "decision", "heuristic")
VALID_ORIGINS: set = {"user", "auto", "git"}
VALID_EVENT_TYPES: set = {
    "iteration", "correction", "revert", "rejection", "acceptance",
}
VALID_SEVERITIES: set = {"error", "warning"}
VALID_STRENGTHS: set = {"strong", "moderate", "weak"}

FRICTION_MIN = -10.0
FRICTION_MAX = 10.0

# Fields that only exist on one kind, keyed by kind
VARIANT_FIELDS: Dict[str, tuple] = {
    "constraint": ("scope", "severity"),
    "decision": ("rationale", "alternatives", "related_artifacts"),
    "heuristic": ("applicable_when", "strength"),
}


def _now_iso() -> str:
    """Current UTC time as ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def _generate_id(prefix: str = "MEM") -> str:
    """Generate a unique ID with prefix."""
    short = uuid.uuid4().hex[:12]
    return f"{prefix}-{short}"


def clamp_friction(score: float) -> float:
    """Clamp a friction score into [-10, 10]."""
    return max(FRICTION_MIN, min(FRICTION_MAX, score))


def check_kind(kind: Any) -> str:
    """Return kind unchanged, or raise UnknownMemoryKind."""
    if kind not in VALID_KINDS:
        raise UnknownMemoryKind(kind)
    return kind


def _check_choice(name: str, value: Any, allowed: set) -> None:
    if value not in allowed:
        raise ValidationError(
            f"{name}: {value!r} not in {sorted(allowed)}"
        )


# ---------------------------------------------------------------------------
# Memory record
# ---------------------------------------------------------------------------

@dataclass
class MemoryRecord:
    """A remembered project fact: constraint, decision or heuristic."""

    kind: MemoryKind
    text: str
    id: str = field(default_factory=_generate_id)
    note: Optional[str] = None
    origin: MemoryOrigin = "user"
    friction_score: float = 0.0
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    active: bool = True

    # constraint
    scope: Optional[str] = None
    severity: Optional[Severity] = None
    # decision
    rationale: Optional[str] = None
    alternatives: List[str] = field(default_factory=list)
    related_artifacts: List[str] = field(default_factory=list)
    # heuristic
    applicable_when: Optional[str] = None
    strength: Optional[Strength] = None

    def __post_init__(self) -> None:
        check_kind(self.kind)
        _check_choice("origin", self.origin, VALID_ORIGINS)
        if self.kind == "constraint":
            if self.severity is None:
                self.severity = "warning"
            _check_choice("severity", self.severity, VALID_SEVERITIES)
        elif self.kind == "decision":
            if self.rationale is None:
                self.rationale = ""
        elif self.kind == "heuristic":
            if self.strength is None:
                self.strength = "moderate"
            _check_choice("strength", self.strength, VALID_STRENGTHS)

    def variant_fields(self) -> Dict[str, Any]:
        """Return only the fields that belong to this record's kind."""
        return {name: getattr(self, name) for name in VARIANT_FIELDS[self.kind]}

    def metadata_json(self) -> str:
        """Variant fields as a JSON object (persisted in the metadata column)."""
        return json.dumps(self.variant_fields(), ensure_ascii=False)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a plain dictionary, dropping other kinds' fields."""
        d = {
            "id": self.id,
            "kind": self.kind,
            "text": self.text,
            "note": self.note,
            "origin": self.origin,
            "friction_score": self.friction_score,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "active": self.active,
        }
        d.update(self.variant_fields())
        return d

    def to_json(self) -> str:
        """Serialize to a JSON string."""
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> MemoryRecord:
        """Deserialize from a dictionary, ignoring unknown keys."""
        known = cls.__dataclass_fields__
        kwargs = {k: v for k, v in d.items() if k in known}
        kwargs["alternatives"] = list(kwargs.get("alternatives") or [])
        kwargs["related_artifacts"] = list(kwargs.get("related_artifacts") or [])
        return cls(**kwargs)

    @classmethod
    def from_json(cls, s: str) -> MemoryRecord:
        """Deserialize from a JSON string."""
        return cls.from_dict(json.loads(s))


# ---------------------------------------------------------------------------
# Friction events
# ---------------------------------------------------------------------------

@dataclass
class FrictionEvent:
    """Append-only feedback entry.

    ``delta`` is what the caller asked for; ``applied_delta`` is what the
    score actually moved after clamping to [-10, 10].
    """

    memory_id: str
    event_type: FrictionEventType
    delta: float
    applied_delta: float = 0.0
    note: Optional[str] = None
    id: str = field(default_factory=lambda: _generate_id("FRC"))
    created_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a plain dictionary."""
        return asdict(self)


# ---------------------------------------------------------------------------
# Sessions (audit only)
# ---------------------------------------------------------------------------

@dataclass
class Session:
    """One interactive run. Observational; never read by retrieval."""

    id: str = field(default_factory=lambda: _generate_id("SES"))
    started_at: str = field(default_factory=_now_iso)
    ended_at: Optional[str] = None
    prompt_count: int = 0
    memory_hit_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a plain dictionary."""
        return asdict(self)


@dataclass
class SessionMemory:
    """A memory surfaced during a session, with its relevance."""

    session_id: str
    memory_id: str
    relevance_score: float
    was_helpful: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a plain dictionary."""
        return asdict(self)


# ---------------------------------------------------------------------------
# Retrieval results
# ---------------------------------------------------------------------------

@dataclass
class RetrievalResult:
    """A record with its raw cosine similarity and friction-adjusted score."""

    record: MemoryRecord
    similarity: float
    adjusted_score: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "memory": self.record.to_dict(),
            "similarity": round(self.similarity, 4),
            "adjusted_score": round(self.adjusted_score, 4),
        }


@dataclass
class ContextRetrieval:
    """Type-segmented memory set for one task description."""

    constraints: List[MemoryRecord] = field(default_factory=list)
    decisions: List[RetrievalResult] = field(default_factory=list)
    heuristics: List[RetrievalResult] = field(default_factory=list)
    was_ambiguous: bool = False

    @property
    def total(self) -> int:
        return len(self.constraints) + len(self.decisions) + len(self.heuristics)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "constraints": [c.to_dict() for c in self.constraints],
            "decisions": [d.to_dict() for d in self.decisions],
            "heuristics": [h.to_dict() for h in self.heuristics],
            "was_ambiguous": self.was_ambiguous,
        }


@dataclass
class MemoryStats:
    """Aggregate view of the active memory set."""

    total_count: int = 0
    per_kind_counts: Dict[str, int] = field(
        default_factory=lambda: {k: 0 for k in VALID_KINDS}
    )
    total_friction_events: int = 0
    average_friction_score: float = 0.0
    oldest_created_at: Optional[str] = None
    newest_created_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a plain dictionary."""
        return asdict(self)
