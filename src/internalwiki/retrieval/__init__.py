"""Retrieval components."""

from .expansion import classify_query_intent, generate_query_variations
from .rerank import rerank_hybrid
from .service import ChunkRetriever, RetrievalConfig, RetrievalRequest, RetrievalResult, Retriever, to_document_chunks

__all__ = [
    "ChunkRetriever",
    "RetrievalConfig",
    "RetrievalRequest",
    "RetrievalResult",
    "Retriever",
    "classify_query_intent",
    "generate_query_variations",
    "rerank_hybrid",
    "to_document_chunks",
]
