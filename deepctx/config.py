"""
Deep Context Configuration

Configuration dataclasses for deepctx: store, embeddings, retrieval
thresholds, friction feedback, context budget and write policy.  Includes
load_config() for reading a JSON config file with silent fallback to
compiled defaults, and the project-layout helpers (``.dc/`` directory).
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from deepctx.errors import ConfigurationError, ValidationError

logger = logging.getLogger(__name__)

DC_DIR = ".dc"
CONFIG_FILE = "config.json"
MEMORY_DB = "memory.db"
DCIGNORE = ".dcignore"

_GITIGNORE = """# Deep Context local files
memory.db
memory.db-journal
memory.db-wal
memory.db-shm
"""


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _check_range(
    errors: List[str], name: str, value, lo, hi, typ=None,
) -> None:
    """Append an error message if value is out of [lo, hi] or wrong type."""
    if typ is float and isinstance(value, int) and not isinstance(value, bool):
        value = float(value)
    if typ is not None and not isinstance(value, typ):
        errors.append(f"{name}: expected {typ.__name__}, got {type(value).__name__}")
        return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


@dataclass
class StoreConfig:
    """SQLite store configuration."""
    db_path: str = f"{DC_DIR}/{MEMORY_DB}"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "store.busy_timeout_ms",
                      self.busy_timeout_ms, 0, 600000, int)
        return errors


@dataclass
class EmbeddingsConfig:
    """Embedding provider selection."""
    provider: str = "simple"
    model: Optional[str] = None
    dimensions: Optional[int] = None
    ollama_url: str = "http://127.0.0.1:11434"
    openai_api_key: Optional[str] = None
    openai_base_url: str = "https://api.openai.com/v1"
    timeout_s: float = 30.0

    def resolved_api_key(self) -> Optional[str]:
        """Explicit key, else $OPENAI_API_KEY."""
        return self.openai_api_key or os.environ.get("OPENAI_API_KEY") or None

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        if self.provider not in ("simple", "local", "ollama", "openai"):
            errors.append(f"embeddings.provider: unknown provider {self.provider!r}")
        if self.dimensions is not None:
            _check_range(errors, "embeddings.dimensions",
                          self.dimensions, 8, 8192, int)
        _check_range(errors, "embeddings.timeout_s",
                      self.timeout_s, 0.1, 600.0, float)
        return errors


@dataclass
class RetrievalConfig:
    """Similarity thresholds and limits.

    The defaults are tuned for the hash fallback embedder.  A stronger model
    spreads similarities differently; re-tune these per backend.
    """
    default_min_similarity: float = 0.3
    decision_min_similarity: float = 0.4
    heuristic_min_similarity: float = 0.35
    search_min_similarity: float = 0.2
    friction_match_threshold: float = 0.55
    overfetch_factor: int = 3
    max_decisions: int = 5
    max_heuristics: int = 3

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        for name in (
            "default_min_similarity", "decision_min_similarity",
            "heuristic_min_similarity", "search_min_similarity",
            "friction_match_threshold",
        ):
            _check_range(errors, f"retrieval.{name}",
                          getattr(self, name), -1.0, 1.0, float)
        _check_range(errors, "retrieval.overfetch_factor",
                      self.overfetch_factor, 1, 100, int)
        _check_range(errors, "retrieval.max_decisions",
                      self.max_decisions, 0, 100, int)
        _check_range(errors, "retrieval.max_heuristics",
                      self.max_heuristics, 0, 100, int)
        return errors


@dataclass
class FrictionConfig:
    """Feedback scoring configuration."""
    decay_half_life_days: float = 30.0
    correction_delta: float = -0.5
    boost_delta: float = 0.5
    match_limit: int = 3

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "friction.decay_half_life_days",
                      self.decay_half_life_days, 0.01, 36500.0, float)
        _check_range(errors, "friction.correction_delta",
                      self.correction_delta, -10.0, 0.0, float)
        _check_range(errors, "friction.boost_delta",
                      self.boost_delta, 0.0, 10.0, float)
        _check_range(errors, "friction.match_limit",
                      self.match_limit, 1, 50, int)
        return errors


@dataclass
class ContextConfig:
    """Token budget for assembled prompts.

    Only ``conversation_tokens`` is enforced; the per-category budgets are
    carried for callers that want to report them.
    """
    max_tokens: int = 8000
    system_tokens: int = 500
    constraint_tokens: int = 1000
    conversation_tokens: int = 3000
    decision_tokens: int = 2000
    heuristic_tokens: int = 500

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        for name in (
            "system_tokens", "constraint_tokens", "conversation_tokens",
            "decision_tokens", "heuristic_tokens",
        ):
            _check_range(errors, f"context.{name}",
                          getattr(self, name), 0, 1000000, int)
        _check_range(errors, "context.max_tokens",
                      self.max_tokens, 1, 1000000, int)
        return errors


@dataclass
class PolicyConfig:
    """Write governance configuration."""
    max_content_length: int = 2000
    max_query_length: int = 500
    secret_patterns_enabled: bool = True

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "policy.max_content_length",
                      self.max_content_length, 10, 100000, int)
        _check_range(errors, "policy.max_query_length",
                      self.max_query_length, 10, 100000, int)
        return errors


@dataclass
class MemoryConfig:
    """Top-level deepctx configuration."""
    version: int = 1
    store: StoreConfig = field(default_factory=StoreConfig)
    embeddings: EmbeddingsConfig = field(default_factory=EmbeddingsConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    friction: FrictionConfig = field(default_factory=FrictionConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> MemoryConfig:
        """Build config from a nested dict (e.g. JSON)."""
        kwargs: Dict[str, Any] = {}
        if "version" in d:
            kwargs["version"] = int(d["version"])
        if "store" in d:
            kwargs["store"] = StoreConfig(**d["store"])
        if "embeddings" in d:
            kwargs["embeddings"] = EmbeddingsConfig(**d["embeddings"])
        if "retrieval" in d:
            kwargs["retrieval"] = RetrievalConfig(**d["retrieval"])
        if "friction" in d:
            kwargs["friction"] = FrictionConfig(**d["friction"])
        if "context" in d:
            kwargs["context"] = ContextConfig(**d["context"])
        if "policy" in d:
            kwargs["policy"] = PolicyConfig(**d["policy"])
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a nested dict. The API key is never written out."""
        d = asdict(self)
        d["embeddings"].pop("openai_api_key", None)
        return d

    def validate(self) -> List[str]:
        """Validate all config sections. Returns list of error messages."""
        errors: List[str] = []
        errors.extend(self.store.validate())
        errors.extend(self.embeddings.validate())
        errors.extend(self.retrieval.validate())
        errors.extend(self.friction.validate())
        errors.extend(self.context.validate())
        errors.extend(self.policy.validate())
        return errors


def load_config(
    path: Optional[Union[str, Path]] = None, *, strict: bool = False,
) -> MemoryConfig:
    """Load config from a JSON file. Returns defaults if file missing/invalid.

    Args:
        path: Path to config.json. If None, returns compiled defaults.
        strict: If True, raise ValidationError on invalid config values.

    Returns:
        MemoryConfig with values from file or defaults.

    Raises:
        ValidationError: If strict=True and config values are out of range.
    """
    if path is None:
        cfg = MemoryConfig()
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            cfg = MemoryConfig.from_dict(data)
        except FileNotFoundError:
            cfg = MemoryConfig()
        except (json.JSONDecodeError, TypeError, KeyError, ValueError,
                AttributeError) as exc:
            logger.warning(f"Ignoring unreadable config {path}: {exc}")
            cfg = MemoryConfig()

    if strict:
        errors = cfg.validate()
        if errors:
            raise ValidationError(
                f"Config validation failed: {'; '.join(errors)}"
            )

    return cfg


def save_config(cfg: MemoryConfig, path: Union[str, Path]) -> None:
    """Write config as indented JSON, owner-readable only."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(cfg.to_dict(), indent=2) + "\n", encoding="utf-8")
    os.chmod(p, 0o600)


# ---------------------------------------------------------------------------
# Dotted-key access ("retrieval.decision_min_similarity")
# ---------------------------------------------------------------------------


def get_config_value(cfg: MemoryConfig, key: str) -> Any:
    """Read a value by dotted key. Raises ConfigurationError if unknown."""
    current: Any = cfg
    for part in key.split("."):
        if not hasattr(current, "__dataclass_fields__") or not hasattr(current, part):
            raise ConfigurationError(f"Invalid config key: {key}")
        current = getattr(current, part)
    return current


def set_config_value(cfg: MemoryConfig, key: str, value: str) -> MemoryConfig:
    """Set a value by dotted key, coercing the string to the existing type.

    The updated config is validated; out-of-range values raise
    ValidationError and leave ``cfg`` untouched.
    """
    parts = key.split(".")
    data = asdict(cfg)
    current = data
    for part in parts[:-1]:
        if not isinstance(current.get(part), dict):
            raise ConfigurationError(f"Invalid config key: {key}")
        current = current[part]
    last = parts[-1]
    if last not in current or isinstance(current[last], dict):
        raise ConfigurationError(f"Invalid config key: {key}")

    existing = current[last]
    if isinstance(existing, bool):
        current[last] = value.lower() == "true"
    elif isinstance(existing, int):
        current[last] = int(value)
    elif isinstance(existing, float):
        current[last] = float(value)
    elif existing is None and value.isdigit():
        current[last] = int(value)
    else:
        current[last] = value

    updated = MemoryConfig.from_dict(data)
    errors = updated.validate()
    if errors:
        raise ValidationError(f"Config validation failed: {'; '.join(errors)}")
    return updated


# ---------------------------------------------------------------------------
# Project layout
# ---------------------------------------------------------------------------


def find_project_root(start: Optional[Union[str, Path]] = None) -> Optional[Path]:
    """Walk up from ``start`` (default: cwd) to the first directory holding ``.dc/``."""
    current = Path(start or os.getcwd()).resolve()
    for candidate in (current, *current.parents):
        if (candidate / DC_DIR).is_dir():
            return candidate
    return None


def dc_path(project_root: Union[str, Path]) -> Path:
    return Path(project_root) / DC_DIR


def config_path(project_root: Union[str, Path]) -> Path:
    return dc_path(project_root) / CONFIG_FILE


def memory_db_path(project_root: Union[str, Path]) -> Path:
    return dc_path(project_root) / MEMORY_DB


def init_project(
    project_root: Union[str, Path], force: bool = False,
) -> Path:
    """Create ``.dc/`` with a default config and a .gitignore for the database.

    Raises:
        ConfigurationError: If the project is already initialised and
            ``force`` is False.
    """
    dc = dc_path(project_root)
    if dc.exists() and not force:
        raise ConfigurationError(
            f"Deep Context already initialized in {project_root}. "
            "Use force=True to reinitialize."
        )
    dc.mkdir(parents=True, exist_ok=True)
    os.chmod(dc, 0o700)
    save_config(MemoryConfig(), config_path(project_root))
    (dc / ".gitignore").write_text(_GITIGNORE, encoding="utf-8")
    logger.info(f"Initialized project memory at {dc}")
    return dc


def is_project_disabled(project_root: Union[str, Path]) -> bool:
    """A ``.dcignore`` file at the project root opts the project out."""
    return (Path(project_root) / DCIGNORE).exists()
