"""
Write Governance — Content Policy

Checks memory text before it is embedded or stored.  Every memory ends up
verbatim in a system prompt, so the rules are hard blocks:

- empty or whitespace-only text
- text longer than ``max_content_length``
- secrets (private keys, API keys, tokens, passwords)
- prompt-injection phrases ("ignore previous instructions", ...)

Queries only have a length limit.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional

from deepctx.config import PolicyConfig
from deepctx.errors import ValidationError

logger = logging.getLogger(__name__)


@dataclass
class PolicyVerdict:
    """Result of evaluating one piece of text."""

    reasons: List[str] = field(default_factory=list)

    @property
    def accepted(self) -> bool:
        return not self.reasons


# ---------------------------------------------------------------------------
# Pattern sets
# ---------------------------------------------------------------------------

# Secrets detection patterns (conservative)
_SECRET_PATTERNS = [
    re.compile(r"-----BEGIN\s+(?:RSA\s+|EC\s+|OPENSSH\s+)?PRIVATE\s+KEY-----", re.IGNORECASE),
    re.compile(r"(?:api[_-]?key|apikey)\s*[:=]\s*\S{8,}", re.IGNORECASE),
    re.compile(r"(?:secret|token|password|passwd|pwd)\s*[:=]\s*\S{8,}", re.IGNORECASE),
    re.compile(r"(?:aws_access_key_id|aws_secret_access_key)\s*[:=]\s*\S+", re.IGNORECASE),
    re.compile(r"AKIA[0-9A-Z]{16}"),                      # AWS access key id
    re.compile(r"gh[pousr]_[A-Za-z0-9]{36,}"),            # GitHub tokens
    re.compile(r"sk-(?:ant-|proj-)?[A-Za-z0-9_-]{20,}"),  # OpenAI / Anthropic keys
    re.compile(r"xox[baprs]-[A-Za-z0-9-]{10,}"),          # Slack tokens
    re.compile(r"eyJ[A-Za-z0-9_-]{20,}\.[A-Za-z0-9_-]{20,}"),  # JWT
]

# Injection / prompt override patterns
_INJECTION_PATTERNS = [
    re.compile(r"ignore\s+(?:all\s+)?(?:the\s+)?previous\s+instructions?", re.IGNORECASE),
    re.compile(r"forget\s+(?:all\s+)?(?:your\s+)?(?:previous\s+)?instructions?", re.IGNORECASE),
    re.compile(r"disregard\s+(?:all\s+)?(?:the\s+)?(?:above|prior|previous)", re.IGNORECASE),
    re.compile(r"override\s+(?:system|safety|security)", re.IGNORECASE),
    re.compile(r"<\s*/?\s*system\s*>", re.IGNORECASE),
    re.compile(r"\[\s*SYSTEM\s*\]", re.IGNORECASE),
]


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------

class ContentPolicy:
    """Hard checks on memory text and query text."""

    def __init__(self, config: Optional[PolicyConfig] = None):
        self.config = config or PolicyConfig()

    def evaluate(self, text: object, field_name: str = "text") -> PolicyVerdict:
        """Collect every rule ``text`` breaks (empty list = acceptable)."""
        verdict = PolicyVerdict()
        if not isinstance(text, str) or not text.strip():
            verdict.reasons.append(f"{field_name} must be a non-empty string")
            return verdict

        limit = self.config.max_content_length
        if len(text) > limit:
            verdict.reasons.append(
                f"{field_name} too long ({len(text)} chars, max {limit})"
            )
        if self.config.secret_patterns_enabled:
            for pat in _SECRET_PATTERNS:
                if pat.search(text):
                    verdict.reasons.append(f"{field_name} looks like it contains a secret")
                    break
        for pat in _INJECTION_PATTERNS:
            if pat.search(text):
                verdict.reasons.append(
                    f"{field_name} contains a prompt-injection pattern"
                )
                break
        return verdict

    def check(self, text: object, field_name: str = "text") -> str:
        """Return ``text`` if acceptable, else raise ValidationError."""
        verdict = self.evaluate(text, field_name)
        if not verdict.accepted:
            logger.info(f"Rejected {field_name}: {'; '.join(verdict.reasons)}")
            raise ValidationError("; ".join(verdict.reasons))
        return text  # type: ignore[return-value]

    def check_query(self, query: object, field_name: str = "query") -> str:
        """Queries must be non-empty strings within ``max_query_length``."""
        if not isinstance(query, str) or not query.strip():
            raise ValidationError(f"{field_name} must be a non-empty string")
        limit = self.config.max_query_length
        if len(query) > limit:
            raise ValidationError(
                f"{field_name} too long ({len(query)} chars, max {limit})"
            )
        return query
