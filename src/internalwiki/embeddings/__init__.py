"""Embedding services and the chunk store."""

from .service import (
    EmbeddingBackend,
    EmbeddingConfig,
    EmbeddingProviderError,
    HashEmbeddingBackend,
    OpenAIEmbeddingBackend,
    build_embedding_backend,
    embed_texts,
    hash_embedding,
)
from .store import ChromaEmbeddingStore, EvidenceStore, HybridSearchRequest, HybridSearchResult, is_visible

__all__ = [
    "ChromaEmbeddingStore",
    "EmbeddingBackend",
    "EmbeddingConfig",
    "EmbeddingProviderError",
    "EvidenceStore",
    "HashEmbeddingBackend",
    "HybridSearchRequest",
    "HybridSearchResult",
    "OpenAIEmbeddingBackend",
    "build_embedding_backend",
    "embed_texts",
    "hash_embedding",
    "is_visible",
]
