"""Wiring of the evidence pipeline from settings, shared by the API and the eval CLI."""

from __future__ import annotations

from dataclasses import dataclass

import chromadb
from chromadb.api import ClientAPI

from internalwiki.cache import CacheClient
from internalwiki.config import Settings
from internalwiki.embeddings import ChromaEmbeddingStore, EmbeddingConfig, build_embedding_backend
from internalwiki.ingestion import DocumentIndexer, IndexingConfig
from internalwiki.quality import AnswerQualityPolicy, QualityContractLedger, build_quality_ledger
from internalwiki.retrieval import ChunkRetriever, RetrievalConfig
from internalwiki.services.generation import get_ai_provider
from internalwiki.services.query import AssistantQueryService, PromptBuilder, PromptBuilderConfig


@dataclass(frozen=True)
class AppDependencies:
    store: ChromaEmbeddingStore
    indexer: DocumentIndexer
    retriever: ChunkRetriever
    query_service: AssistantQueryService
    ledger: QualityContractLedger
    cache: CacheClient | None = None


def build_chroma_client(settings: Settings) -> ClientAPI | None:
    if settings.chroma_host:
        return chromadb.HttpClient(
            host=settings.chroma_host,
            port=settings.chroma_port or 8000,
            ssl=settings.chroma_ssl,
        )
    return None


def build_dependencies(
    settings: Settings,
    *,
    cache: CacheClient | None = None,
    chroma_client: ClientAPI | None = None,
) -> AppDependencies:
    """Build every pipeline component; ``cache`` must already be connected."""

    embedding_backend = build_embedding_backend(
        EmbeddingConfig(
            model=settings.openai_embedding_model,
            dim=settings.embedding_dim,
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            timeout_seconds=settings.provider_timeout_seconds,
        ),
    )
    client = chroma_client or build_chroma_client(settings)
    store = ChromaEmbeddingStore(
        embedding_backend,
        collection_name=settings.chroma_collection,
        documents_collection_name=settings.chroma_documents_collection,
        client=client,
        persist_directory=None if client else settings.chroma_persist_dir,
    )
    indexer = DocumentIndexer(
        store,
        IndexingConfig(chunk_size=settings.chunk_size, chunk_overlap=settings.chunk_overlap),
        cache=cache,
        cache_key_prefix=settings.cache_key_prefix,
    )
    retriever = ChunkRetriever(
        store,
        RetrievalConfig(
            limit=settings.retrieval_limit,
            fallback_documents=settings.retrieval_fallback_documents,
            cache_ttl_seconds=settings.cache_query_results_ttl_seconds,
            document_cache_ttl_seconds=settings.cache_document_metadata_ttl_seconds,
            cache_key_prefix=settings.cache_key_prefix,
        ),
        embedding_backend=embedding_backend,
        cache=cache,
    )
    ledger = build_quality_ledger(cache, key_prefix=settings.cache_key_prefix)
    query_service = AssistantQueryService(
        retriever,
        get_ai_provider(settings),
        ledger=ledger,
        policy=AnswerQualityPolicy.from_settings(settings),
        prompt_builder=PromptBuilder(PromptBuilderConfig(max_context_tokens=settings.retrieval_max_context_tokens)),
        max_candidates=settings.retrieval_limit,
        expand_with_provider=settings.query_expansion_with_provider,
    )
    return AppDependencies(
        store=store,
        indexer=indexer,
        retriever=retriever,
        query_service=query_service,
        ledger=ledger,
        cache=cache,
    )
