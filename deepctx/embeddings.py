"""
Embedding Providers

Every provider satisfies one small contract (``Embedder``):

    name          short provider name ("simple", "local", "ollama", "openai")
    dimensions    fixed vector length for the instance
    initialize()  connect / load the model; fails fast on bad configuration
    embed(text)   one vector
    embed_batch   one vector per text, same order

Providers:
    HashEmbedder    deterministic character/word hashing, no I/O (fallback)
    LocalEmbedder   sentence-transformers all-MiniLM-L6-v2, in process
    OllamaEmbedder  Ollama /api/embed over HTTP
    OpenAIEmbedder  OpenAI /embeddings over HTTP

Network providers never retry. Transport failures raise ConnectError (or
EmbeddingTimeout), rejected credentials raise AuthError, and any other bad
answer (HTTP error status, non-JSON body, wrong vector count or length)
raises EmbeddingError. A batch only returns once the whole response has
been parsed, so callers never see partial results.
"""

from __future__ import annotations

import logging
import math
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import httpx

from deepctx.config import EmbeddingsConfig
from deepctx.errors import (
    AuthError,
    ConfigurationError,
    ConnectError,
    EmbeddingError,
    EmbeddingTimeout,
)
from deepctx.similarity import normalize

logger = logging.getLogger(__name__)

LOCAL_EMBEDDING_DIM = 384
OLLAMA_EMBEDDING_DIM = 768
OPENAI_EMBEDDING_DIM = 1536

DEFAULT_LOCAL_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
DEFAULT_OLLAMA_MODEL = "nomic-embed-text"
DEFAULT_OPENAI_MODEL = "text-embedding-3-small"


@runtime_checkable
class Embedder(Protocol):
    """Text to fixed-length vector."""

    name: str
    dimensions: int

    def initialize(self) -> None:
        ...

    def embed(self, text: str) -> List[float]:
        ...

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        ...


# ---------------------------------------------------------------------------
# Hash fallback
# ---------------------------------------------------------------------------

_WS_RE = re.compile(r"\s+")


def _word_hash(word: str) -> int:
    """31-multiplier string hash, wrapped to signed 32 bits, absolute value."""
    h = 0
    for ch in word:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h)


class HashEmbedder:
    """Deterministic embedding from character and word hashes.

    Good enough for tests and offline use; its similarities are weak
    semantically (shared letters dominate), which is why the retrieval
    thresholds are configurable.
    """

    name = "simple"

    def __init__(self, dimensions: int = LOCAL_EMBEDDING_DIM):
        self.dimensions = dimensions

    def initialize(self) -> None:
        pass

    def embed(self, text: str) -> List[float]:
        dim = self.dimensions
        normalized = text.lower().strip()
        n = len(normalized)

        # Length-dependent base so "" still yields a non-zero vector
        vec = [math.sin(i * 0.1 + n * 0.01) * 0.01 for i in range(dim)]

        for i, ch in enumerate(normalized):
            code = ord(ch)
            pos = i % dim
            vec[pos] += math.sin(code * 0.1) * 0.1
            vec[(pos + 1) % dim] += math.cos(code * 0.1) * 0.1
            vec[code % dim] += 0.05

        for word in _WS_RE.split(normalized):
            vec[_word_hash(word) % dim] += 0.1

        return normalize(vec)

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        return [self.embed(t) for t in texts]


# ---------------------------------------------------------------------------
# Local sentence-transformers model
# ---------------------------------------------------------------------------

class LocalEmbedder:
    """sentence-transformers model loaded in process (lazy)."""

    name = "local"

    def __init__(self, model_name: Optional[str] = None):
        self.model_name = model_name or DEFAULT_LOCAL_MODEL
        self.dimensions = LOCAL_EMBEDDING_DIM
        self._model: Any = None

    def initialize(self) -> None:
        """Load the model. Raises ConfigurationError if the package is missing."""
        if self._model is not None:
            return
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as exc:
            raise ConfigurationError(
                "Local embeddings need sentence-transformers "
                "(pip install 'deepctx[local]')"
            ) from exc
        logger.info(f"Loading embedding model {self.model_name}")
        self._model = SentenceTransformer(self.model_name)
        self.dimensions = int(self._model.get_sentence_embedding_dimension())

    def embed(self, text: str) -> List[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        if self._model is None:
            self.initialize()
        if not texts:
            return []
        vectors = self._model.encode(
            list(texts), convert_to_numpy=True, normalize_embeddings=True,
        )
        return [[float(x) for x in v] for v in vectors]


# ---------------------------------------------------------------------------
# HTTP providers
# ---------------------------------------------------------------------------

def _request_texts(texts: List[str]) -> List[str]:
    # Remote APIs reject empty inputs; a single space embeds as "nothing".
    return [t if t.strip() else " " for t in texts]


class _HttpEmbedder(ABC):
    """Shared request/response handling for HTTP embedding APIs."""

    name = "http"

    def __init__(
        self,
        base_url: str,
        dimensions: int,
        timeout_s: float = 30.0,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.dimensions = dimensions
        self.timeout_s = timeout_s
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout_s),
            headers=headers or {},
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise EmbeddingTimeout(
                f"{self.name}: no response from {self.base_url} "
                f"within {self.timeout_s}s"
            ) from exc
        except httpx.TransportError as exc:
            raise ConnectError(
                f"{self.name}: failed to connect to {self.base_url}: {exc}"
            ) from exc

        if response.status_code in (401, 403):
            raise AuthError(
                f"{self.name}: credentials rejected ({response.status_code})"
            )
        if response.status_code >= 400:
            raise EmbeddingError(
                f"{self.name}: {method} {path} failed "
                f"({response.status_code}): {response.text[:200]}"
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise EmbeddingError(f"{self.name}: invalid JSON from {path}") from exc
        if not isinstance(body, dict):
            raise EmbeddingError(f"{self.name}: expected a JSON object from {path}")
        return body

    def _check_vectors(self, vectors: Any, expected: int) -> List[List[float]]:
        if not isinstance(vectors, list) or len(vectors) != expected:
            got = len(vectors) if isinstance(vectors, list) else type(vectors).__name__
            raise EmbeddingError(
                f"{self.name}: expected {expected} embeddings, got {got}"
            )
        for v in vectors:
            if not isinstance(v, list) or len(v) != self.dimensions:
                got = len(v) if isinstance(v, list) else type(v).__name__
                raise EmbeddingError(
                    f"{self.name}: expected {self.dimensions}-dimensional "
                    f"embeddings, got {got}"
                )
        try:
            return [[float(x) for x in v] for v in vectors]
        except (TypeError, ValueError) as exc:
            raise EmbeddingError(f"{self.name}: non-numeric embedding") from exc

    def embed(self, text: str) -> List[float]:
        return self.embed_batch([text])[0]

    @abstractmethod
    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """One vector per text, same order."""


class OllamaEmbedder(_HttpEmbedder):
    """Embeddings from a local Ollama server."""

    name = "ollama"

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:11434",
        model: str = DEFAULT_OLLAMA_MODEL,
        dimensions: int = OLLAMA_EMBEDDING_DIM,
        timeout_s: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        super().__init__(base_url, dimensions, timeout_s, transport=transport)
        self.model = model

    def initialize(self) -> None:
        """Check the server answers and pull the model if it is missing."""
        data = self._request("GET", "/api/tags")
        names = [m.get("name", "") for m in data.get("models") or []]
        if not any(self.model in n for n in names):
            logger.warning(f"Ollama model {self.model} not found, pulling")
            self._request(
                "POST", "/api/pull", json={"name": self.model, "stream": False},
            )

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        data = self._request(
            "POST", "/api/embed",
            json={"model": self.model, "input": _request_texts(texts)},
        )
        return self._check_vectors(data.get("embeddings") or [], len(texts))


class OpenAIEmbedder(_HttpEmbedder):
    """Embeddings from the OpenAI API (or a compatible endpoint)."""

    name = "openai"

    def __init__(
        self,
        api_key: Optional[str],
        model: str = DEFAULT_OPENAI_MODEL,
        dimensions: Optional[int] = None,
        base_url: str = "https://api.openai.com/v1",
        timeout_s: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        if not api_key:
            raise ConfigurationError(
                "OpenAI API key required for OpenAI embeddings "
                "(set embeddings.openai_api_key or OPENAI_API_KEY)"
            )
        super().__init__(
            base_url,
            dimensions or OPENAI_EMBEDDING_DIM,
            timeout_s,
            headers={"Authorization": f"Bearer {api_key}"},
            transport=transport,
        )
        self.model = model
        self._request_dimensions = dimensions

    def initialize(self) -> None:
        """Validate the key with a one-word request."""
        self.embed("test")

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        payload: Dict[str, Any] = {
            "model": self.model,
            "input": _request_texts(texts),
        }
        if self._request_dimensions:
            payload["dimensions"] = self._request_dimensions
        data = self._request("POST", "/embeddings", json=payload)
        try:
            items = sorted(data.get("data") or [], key=lambda d: d["index"])
            vectors = [d["embedding"] for d in items]
        except (KeyError, TypeError) as exc:
            raise EmbeddingError(f"{self.name}: malformed embeddings response") from exc
        return self._check_vectors(vectors, len(texts))


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def create_embedder(
    config: Optional[EmbeddingsConfig] = None,
    transport: Optional[httpx.BaseTransport] = None,
) -> Embedder:
    """Build and initialize the provider named by ``config.provider``.

    Raises:
        ConfigurationError: Unknown provider or missing credentials.
        ConnectError: Network provider unreachable during initialization.
        AuthError: Credentials rejected during initialization.
    """
    config = config or EmbeddingsConfig()
    provider = config.provider

    embedder: Embedder
    if provider == "simple":
        embedder = HashEmbedder(config.dimensions or LOCAL_EMBEDDING_DIM)
    elif provider == "local":
        embedder = LocalEmbedder(config.model)
    elif provider == "ollama":
        embedder = OllamaEmbedder(
            base_url=config.ollama_url,
            model=config.model or DEFAULT_OLLAMA_MODEL,
            dimensions=config.dimensions or OLLAMA_EMBEDDING_DIM,
            timeout_s=config.timeout_s,
            transport=transport,
        )
    elif provider == "openai":
        embedder = OpenAIEmbedder(
            api_key=config.resolved_api_key(),
            model=config.model or DEFAULT_OPENAI_MODEL,
            dimensions=config.dimensions,
            base_url=config.openai_base_url,
            timeout_s=config.timeout_s,
            transport=transport,
        )
    else:
        raise ConfigurationError(f"Unknown embedder provider: {provider}")

    embedder.initialize()
    logger.info(f"Embedder ready: {embedder.name} ({embedder.dimensions} dims)")
    return embedder
