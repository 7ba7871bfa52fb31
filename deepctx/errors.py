"""
Error Taxonomy

All exceptions raised by deepctx derive from DeepContextError so callers can
catch the whole family.  Four kinds are distinguished:

    validation      ValidationError, DimensionMismatch, UnknownMemoryKind
    configuration   ConfigurationError, AuthError
    transient I/O   ConnectError, EmbeddingTimeout, StoreLockedError
    store failure   StoreError

Not-found is never an exception: lookups return None and mutations return
False.  The core never retries transient errors; retry policy belongs to
the caller.
"""

from __future__ import annotations


class DeepContextError(Exception):
    """Base class for every deepctx error."""


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(DeepContextError, ValueError):
    """Input rejected before any persistence (empty text, bad value, ...)."""


class DimensionMismatch(ValidationError):
    """Embedding length differs from the store's fixed dimension."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Embedding dimension mismatch: expected {expected}, got {actual}"
        )


class UnknownMemoryKind(ValidationError):
    """Memory kind is not one of constraint, decision, heuristic."""

    def __init__(self, kind: object):
        self.kind = kind
        super().__init__(f"Unknown memory kind: {kind!r}")


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ConfigurationError(DeepContextError):
    """Missing credentials, unknown provider, uninitialised project."""


# ---------------------------------------------------------------------------
# Embedding providers
# ---------------------------------------------------------------------------


class EmbeddingError(DeepContextError):
    """Embedding provider failure.

    Raised as-is for answers that will not improve on retry: an HTTP error
    status, a body that is not a JSON object, or vectors of the wrong count
    or length.
    """


class ConnectError(EmbeddingError):
    """Provider unreachable: transport failure before any response arrived."""


class EmbeddingTimeout(ConnectError):
    """Provider did not answer within the caller-supplied timeout."""


class AuthError(EmbeddingError):
    """Provider rejected the credentials."""


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class StoreError(DeepContextError):
    """Unexpected failure of the persistent store."""


class StoreLockedError(StoreError):
    """Another writer holds the database lock past the busy timeout."""
