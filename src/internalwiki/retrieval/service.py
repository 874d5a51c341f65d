"""Chunk retrieval orchestrated on top of the hybrid-search store."""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, fields, replace
from typing import Protocol, Sequence

from internalwiki.cache import CacheClient, build_cache_key, cached_call, digest
from internalwiki.embeddings.service import DEFAULT_DIMENSIONS, EmbeddingBackend, EmbeddingConfig, HashEmbeddingBackend
from internalwiki.embeddings.store import EvidenceStore, HybridSearchRequest, HybridSearchResult, is_visible
from internalwiki.metrics.observability import PipelineMetrics, get_logger
from internalwiki.models import ChunkSearchRecord, DocumentChunk, DocumentRecord, QueryFilters, RankedChunk
from internalwiki.retrieval.rerank import rerank_hybrid
from internalwiki.scoring.service import compute_source_score

LOGGER = get_logger("retrieval")


@dataclass(frozen=True)
class RetrievalConfig:
    """Configuration for retrieval."""

    limit: int = 8
    fallback_documents: int = 4
    cache_ttl_seconds: int = 300
    document_cache_ttl_seconds: int = 3600
    cache_key_prefix: str = "cache"


@dataclass(frozen=True)
class RetrievalRequest:
    organization_id: str
    question: str
    query_embedding: Sequence[float] | None = None
    filters: QueryFilters | None = None
    viewer_principal_keys: Sequence[str] | None = None
    limit: int | None = None


@dataclass(frozen=True)
class RetrievalResult:
    chunks: Sequence[RankedChunk]
    filtered_out_count: int = 0
    fallback_used: bool = False


class Retriever(Protocol):
    """Retrieve ranked evidence chunks for a question."""

    def retrieve(self, request: RetrievalRequest) -> RetrievalResult:
        """Return the ranked chunks for the request."""


def to_document_chunks(records: Sequence[ChunkSearchRecord]) -> list[DocumentChunk]:
    """Convert raw search rows into chunks, keeping row order as the ordinal."""

    chunk_fields = {item.name for item in fields(DocumentChunk)}
    chunks: list[DocumentChunk] = []
    for index, record in enumerate(records):
        values = {name: getattr(record, name) for name in chunk_fields if hasattr(record, name)}
        chunks.append(DocumentChunk(rank=index, **values))
    return chunks


def _summary_chunk(document: DocumentRecord, rank: int) -> RankedChunk:
    score = compute_source_score(
        document.updated_at,
        document.source_authority,
        document.author_authority,
        document.citation_coverage,
    )
    return RankedChunk(
        chunk_id=f"{document.document_id}-summary",
        doc_version_id=document.doc_version_id or f"{document.document_id}-v1",
        text=document.summary or f"Summary unavailable for {document.title}.",
        rank=rank,
        source_url=document.source_url,
        source_score=float(score.total),
        document_id=document.document_id,
        document_title=document.title,
        connector_type=document.source_type,
        author=document.author,
        updated_at=document.updated_at,
        source_format=document.source_format,
        source_external_id=document.source_external_id,
        canonical_source_url=document.source_url,
        sync_run_id=document.sync_run_id,
        source_checksum=document.source_checksum,
        principal_keys=tuple(document.principal_keys),
        combined_score=0.0,
    )


def _serialize_result(result: HybridSearchResult) -> str:
    return json.dumps(
        {
            "records": [record.to_dict() for record in result.records],
            "filtered_out_count": result.filtered_out_count,
        }
    )


def _deserialize_result(raw: str) -> HybridSearchResult:
    payload = json.loads(raw)
    return HybridSearchResult(
        records=[ChunkSearchRecord.from_dict(item) for item in payload.get("records", [])],
        filtered_out_count=int(payload.get("filtered_out_count", 0)),
    )


def _search_cache_key(request: HybridSearchRequest) -> str:
    fingerprint = json.dumps(
        {
            "query": request.query_text,
            "embedding": digest(json.dumps([round(float(value), 6) for value in request.query_embedding])),
            "limit": request.limit,
            "source_type": request.source_type,
            "date_from": request.date_from,
            "date_to": request.date_to,
            "author": request.author,
            "min_source_score": request.min_source_score,
            "document_ids": sorted(request.document_ids or []),
            "viewer": sorted(request.viewer_principal_keys or []),
        },
        sort_keys=True,
    )
    return build_cache_key("retrieval", request.organization_id, digest(fingerprint))


def _documents_cache_key(organization_id: str) -> str:
    # Lives under the retrieval prefix so re-indexing invalidates it with the search results.
    return build_cache_key("retrieval", organization_id, "documents")


def _serialize_documents(documents: Sequence[DocumentRecord]) -> str:
    return json.dumps([asdict(document) for document in documents])


def _deserialize_documents(raw: str) -> list[DocumentRecord]:
    return [
        DocumentRecord(**{**item, "principal_keys": tuple(item.get("principal_keys") or ())})
        for item in json.loads(raw)
    ]


class ChunkRetriever:
    """Hybrid retrieval with re-ranking and a document-summary fallback."""

    def __init__(
        self,
        store: EvidenceStore,
        config: RetrievalConfig | None = None,
        *,
        embedding_backend: EmbeddingBackend | None = None,
        cache: CacheClient | None = None,
    ) -> None:
        self._store = store
        self._config = config or RetrievalConfig()
        self._embedding_backend = embedding_backend or HashEmbeddingBackend(EmbeddingConfig(dim=DEFAULT_DIMENSIONS))
        self._search = cached_call(
            store.hybrid_search,
            cache=cache,
            key_builder=_search_cache_key,
            ttl_seconds=self._config.cache_ttl_seconds,
            key_prefix=self._config.cache_key_prefix,
            serialize=_serialize_result,
            deserialize=_deserialize_result,
        )
        self._list_documents = cached_call(
            self._all_documents,
            cache=cache,
            key_builder=_documents_cache_key,
            ttl_seconds=self._config.document_cache_ttl_seconds,
            key_prefix=self._config.cache_key_prefix,
            serialize=_serialize_documents,
            deserialize=_deserialize_documents,
        )

    def retrieve(self, request: RetrievalRequest) -> RetrievalResult:
        start = time.perf_counter()
        limit = request.limit or self._config.limit
        filters = request.filters or QueryFilters()
        embedding = request.query_embedding
        if embedding is None:
            embedding = self._embedding_backend.embed_query(request.question)
        date_range = filters.date_range
        search = self._search(
            HybridSearchRequest(
                organization_id=request.organization_id,
                query_text=request.question,
                query_embedding=list(embedding),
                limit=limit * 2,
                source_type=filters.source_type,
                viewer_principal_keys=list(request.viewer_principal_keys) if request.viewer_principal_keys else None,
                date_from=date_range.from_ if date_range else None,
                date_to=date_range.to if date_range else None,
                author=filters.author,
                min_source_score=filters.min_source_score,
                document_ids=list(filters.document_ids) if filters.document_ids else None,
            )
        )

        records = list(search.records)
        fallback_used = False
        if records:
            ranked = rerank_hybrid(
                to_document_chunks(records),
                [record.lexical_score for record in records],
                [record.vector_similarity for record in records],
                limit=limit,
            )
            chunks = [replace(chunk, rank=index) for index, chunk in enumerate(ranked)]
        else:
            chunks = self._fallback(request, filters)
            fallback_used = bool(chunks)

        duration = time.perf_counter() - start
        PipelineMetrics.observe_retrieval(
            duration,
            len(chunks),
            [chunk.combined_score for chunk in chunks],
            fallback_used=fallback_used,
        )
        LOGGER.info(
            "retrieval.complete",
            organization_id=request.organization_id,
            chunk_count=len(chunks),
            filtered_out_count=search.filtered_out_count,
            fallback_used=fallback_used,
            duration_seconds=duration,
        )
        return RetrievalResult(chunks=chunks, filtered_out_count=search.filtered_out_count, fallback_used=fallback_used)

    def get_chunk_candidates(self, request: RetrievalRequest) -> list[RankedChunk]:
        return list(self.retrieve(request).chunks)

    def _fallback(self, request: RetrievalRequest, filters: QueryFilters) -> list[RankedChunk]:
        documents = self._list_documents(request.organization_id)
        selected = [
            document
            for document in documents
            if is_visible(document.principal_keys, request.viewer_principal_keys)
            and (not filters.source_type or document.source_type == filters.source_type)
            and (not filters.document_ids or document.document_id in filters.document_ids)
        ][: self._config.fallback_documents]
        return [_summary_chunk(document, index) for index, document in enumerate(selected)]

    def _all_documents(self, organization_id: str) -> list[DocumentRecord]:
        # Unfiltered by ACL so one cached entry serves every viewer; visibility is applied per request.
        return list(self._store.list_documents(organization_id, enforce_acl=False))
