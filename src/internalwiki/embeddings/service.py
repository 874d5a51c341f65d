"""Embedding backends for the evidence pipeline."""

from __future__ import annotations

import hashlib
import math
from dataclasses import dataclass
from typing import Mapping, Protocol, Sequence, Tuple

import httpx

from internalwiki.metrics.observability import get_logger

LOGGER = get_logger("embeddings")

DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"
DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_DIMENSIONS = 1536
BATCH_SIZE = 100

Vector = Tuple[float, ...]


@dataclass(frozen=True)
class EmbeddingConfig:
    """Configuration for embedding backends."""

    model: str = DEFAULT_EMBEDDING_MODEL
    dim: int = DEFAULT_DIMENSIONS
    api_key: str | None = None
    base_url: str = DEFAULT_BASE_URL
    timeout_seconds: float = 30.0


class EmbeddingProviderError(RuntimeError):
    """Raised when the remote embedding provider returns an unusable response."""


class EmbeddingBackend(Protocol):
    """Protocol describing embedding behaviour."""

    def embed_texts(self, texts: Sequence[str]) -> list[Vector]:
        """Return one vector per text, in input order."""

    def embed_query(self, query: str) -> Vector:
        """Return embedding vector for a query string."""


def hash_embedding(text: str, dimensions: int = DEFAULT_DIMENSIONS) -> Vector:
    """Deterministic character-hash embedding used when no provider is reachable."""

    vector = [0.0] * dimensions
    for index, char in enumerate(text.lower()):
        code = ord(char)
        slot = (code * 31 + index * 17) % dimensions
        vector[slot] += ((code % 13) + 1) / 13
    norm = math.sqrt(sum(value * value for value in vector)) or 1.0
    return tuple(value / norm for value in vector)


def _batched(values: Sequence[str], size: int) -> list[Sequence[str]]:
    return [values[index : index + size] for index in range(0, len(values), size)]


def _parse_vectors(body: object, expected: int, dimensions: int) -> list[Vector]:
    if not isinstance(body, Mapping):
        raise EmbeddingProviderError("OpenAI embeddings response is not a JSON object")
    data = body.get("data")
    if not isinstance(data, list) or len(data) != expected:
        raise EmbeddingProviderError("OpenAI embeddings response was incomplete")
    by_index: dict[int, Vector] = {}
    for item in data:
        if not isinstance(item, Mapping) or not isinstance(item.get("index"), int):
            raise EmbeddingProviderError("OpenAI embeddings item is malformed")
        values = item.get("embedding")
        if not isinstance(values, list) or len(values) != dimensions:
            raise EmbeddingProviderError(f"OpenAI embedding does not have {dimensions} dimensions")
        by_index[item["index"]] = tuple(float(value) for value in values)
    if sorted(by_index) != list(range(expected)):
        raise EmbeddingProviderError("OpenAI embeddings indexes do not match the input")
    return [by_index[index] for index in range(expected)]


def _request_embeddings(
    client: httpx.Client,
    texts: Sequence[str],
    *,
    api_key: str,
    model: str,
    base_url: str,
    dimensions: int,
) -> list[Vector]:
    outputs: list[Vector] = []
    for group in _batched(texts, BATCH_SIZE):
        response = client.post(
            f"{base_url.rstrip('/')}/embeddings",
            headers={"Authorization": f"Bearer {api_key}"},
            json={"model": model, "input": list(group), "dimensions": dimensions},
        )
        if response.status_code >= 400:
            raise EmbeddingProviderError(f"OpenAI embeddings request failed ({response.status_code})")
        outputs.extend(_parse_vectors(response.json(), len(group), dimensions))
    return outputs


def embed_texts(
    texts: Sequence[str],
    *,
    api_key: str | None = None,
    model: str = DEFAULT_EMBEDDING_MODEL,
    base_url: str = DEFAULT_BASE_URL,
    dimensions: int = DEFAULT_DIMENSIONS,
    timeout: float = 30.0,
    client: httpx.Client | None = None,
) -> list[Vector]:
    """Embed ``texts`` with OpenAI, falling back to hash vectors without a key or on failure."""

    if not texts:
        return []
    if not api_key:
        return [hash_embedding(text, dimensions) for text in texts]

    owns_client = client is None
    http = client or httpx.Client(timeout=timeout)
    try:
        return _request_embeddings(
            http, texts, api_key=api_key, model=model, base_url=base_url, dimensions=dimensions
        )
    except (httpx.HTTPError, EmbeddingProviderError, ValueError, KeyError, TypeError) as exc:
        trace = hashlib.sha1(str(exc).encode("utf-8")).hexdigest()[:8]
        LOGGER.warning("embeddings.fallback", trace=trace, reason=type(exc).__name__)
        return [hash_embedding(text, dimensions) for text in texts]
    finally:
        if owns_client:
            http.close()


class HashEmbeddingBackend:
    """Deterministic lightweight embedding backend used for tests and offline runs."""

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self._config = config or EmbeddingConfig()

    def embed_texts(self, texts: Sequence[str]) -> list[Vector]:
        return [hash_embedding(text, self._config.dim) for text in texts]

    def embed_query(self, query: str) -> Vector:
        return hash_embedding(query, self._config.dim)


class OpenAIEmbeddingBackend:
    """Embedding backend calling the OpenAI embeddings endpoint."""

    def __init__(self, config: EmbeddingConfig, client: httpx.Client | None = None) -> None:
        self._config = config
        self._client = client
        LOGGER.info("embeddings.backend", model=config.model, dim=config.dim)

    def embed_texts(self, texts: Sequence[str]) -> list[Vector]:
        return embed_texts(
            texts,
            api_key=self._config.api_key,
            model=self._config.model,
            base_url=self._config.base_url,
            dimensions=self._config.dim,
            timeout=self._config.timeout_seconds,
            client=self._client,
        )

    def embed_query(self, query: str) -> Vector:
        vectors = self.embed_texts([query])
        return vectors[0] if vectors else hash_embedding(query, self._config.dim)


def build_embedding_backend(config: EmbeddingConfig) -> EmbeddingBackend:
    if config.api_key:
        return OpenAIEmbeddingBackend(config)
    LOGGER.info("embeddings.backend", model="hash", dim=config.dim)
    return HashEmbeddingBackend(config)
