"""Document indexing service: normalise, chunk, score and store a document version."""

from __future__ import annotations

import hashlib
import re
import time
import unicodedata
from dataclasses import dataclass, field
from typing import List, Sequence

from langchain_text_splitters import RecursiveCharacterTextSplitter

from internalwiki.cache import CacheClient, build_cache_key
from internalwiki.embeddings.store import EvidenceStore
from internalwiki.metrics.observability import PipelineMetrics, get_logger
from internalwiki.models import CONNECTOR_TYPES, DocumentChunk, DocumentRecord, is_absolute_http_url, parse_timestamp
from internalwiki.scoring.service import compute_source_score

SUMMARY_CHARS = 280


class IndexingError(RuntimeError):
    """Raised when a document cannot be indexed."""


@dataclass(frozen=True)
class IndexingConfig:
    """Configuration for document chunking."""

    chunk_size: int = 900
    chunk_overlap: int = 120


@dataclass(frozen=True)
class IndexDocumentRequest:
    organization_id: str
    document_id: str
    title: str
    source_type: str
    source_url: str
    updated_at: str
    content: str
    author: str | None = None
    summary: str | None = None
    source_authority: float = 0.5
    author_authority: float = 0.5
    citation_coverage: float = 0.5
    principal_keys: Sequence[str] = field(default_factory=tuple)
    source_format: str | None = None
    source_external_id: str | None = None
    canonical_source_url: str | None = None
    sync_run_id: str | None = None
    source_version_label: str | None = None


@dataclass(frozen=True)
class IndexingResult:
    document: DocumentRecord
    chunk_ids: Sequence[str]
    source_score: int


def _normalize_text(raw: str) -> str:
    normalized = unicodedata.normalize("NFKC", raw)
    normalized = normalized.replace("\u00a0", " ")
    normalized = re.sub(r"\s+", " ", normalized)
    return normalized.strip()


def content_checksum(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class DocumentIndexer:
    """Split documents with LangChain's recursive splitter and persist them to the store.

    Each indexing call produces a new ``doc_version_id`` derived from the
    content checksum; the store drops the chunks of any previous version.
    """

    _logger = get_logger("ingestion")

    def __init__(
        self,
        store: EvidenceStore,
        config: IndexingConfig | None = None,
        *,
        cache: CacheClient | None = None,
        cache_key_prefix: str = "cache",
    ) -> None:
        self._store = store
        self._config = config or IndexingConfig()
        self._cache = cache
        self._cache_key_prefix = cache_key_prefix
        if self._config.chunk_overlap >= self._config.chunk_size:
            raise IndexingError("chunk_overlap must be smaller than chunk_size")
        self._splitter = RecursiveCharacterTextSplitter(
            chunk_size=self._config.chunk_size,
            chunk_overlap=self._config.chunk_overlap,
        )

    def index(self, request: IndexDocumentRequest) -> IndexingResult:
        if request.source_type not in CONNECTOR_TYPES:
            raise IndexingError(f"Unsupported source type: {request.source_type}")
        if parse_timestamp(request.updated_at) is None:
            raise IndexingError(f"updated_at is not an ISO-8601 timestamp: {request.updated_at!r}")
        for url in (request.source_url, request.canonical_source_url):
            if url is not None and not is_absolute_http_url(url):
                raise IndexingError(f"Source URL must be an absolute http(s) URL: {url!r}")

        start = time.perf_counter()
        text = _normalize_text(request.content)
        checksum = content_checksum(text)
        doc_version_id = f"{request.document_id}-{checksum[:12]}"
        principal_keys = tuple(request.principal_keys) or (f"org:{request.organization_id}",)
        score = compute_source_score(
            request.updated_at,
            request.source_authority,
            request.author_authority,
            request.citation_coverage,
        )

        document = DocumentRecord(
            document_id=request.document_id,
            organization_id=request.organization_id,
            title=request.title,
            source_type=request.source_type,
            source_url=request.source_url,
            updated_at=request.updated_at,
            doc_version_id=doc_version_id,
            author=request.author,
            summary=request.summary or (text[:SUMMARY_CHARS] if text else None),
            source_authority=request.source_authority,
            author_authority=request.author_authority,
            citation_coverage=request.citation_coverage,
            principal_keys=principal_keys,
            source_format=request.source_format,
            source_external_id=request.source_external_id,
            sync_run_id=request.sync_run_id,
            source_checksum=checksum,
        )

        chunks: List[DocumentChunk] = []
        for order, piece in enumerate(self._splitter.split_text(text) if text else []):
            chunks.append(
                DocumentChunk(
                    chunk_id=f"{doc_version_id}-{order}",
                    doc_version_id=doc_version_id,
                    text=piece,
                    rank=order,
                    source_url=request.source_url,
                    source_score=float(score.total),
                    document_id=request.document_id,
                    document_title=request.title,
                    connector_type=request.source_type,
                    author=request.author,
                    updated_at=request.updated_at,
                    source_format=request.source_format,
                    source_external_id=request.source_external_id,
                    canonical_source_url=request.canonical_source_url or request.source_url,
                    sync_run_id=request.sync_run_id,
                    source_checksum=checksum,
                    source_version_label=request.source_version_label,
                    principal_keys=principal_keys,
                )
            )

        chunk_ids = self._store.upsert_document(document, chunks)
        self._invalidate(request.organization_id)
        duration = time.perf_counter() - start
        PipelineMetrics.observe_indexing(duration, len(chunks))
        self._logger.info(
            "ingestion.complete",
            organization_id=request.organization_id,
            document_id=request.document_id,
            doc_version_id=doc_version_id,
            chunk_count=len(chunks),
            source_score=score.total,
            duration_seconds=duration,
        )
        return IndexingResult(document=document, chunk_ids=list(chunk_ids), source_score=score.total)

    def _invalidate(self, organization_id: str) -> None:
        """Drop cached retrieval results for the organisation after its corpus changed."""

        if self._cache is None:
            return
        pattern = build_cache_key(self._cache_key_prefix, "retrieval", organization_id, "*")
        try:
            removed = self._cache.delete_pattern(pattern)
        except Exception as exc:  # noqa: BLE001 - stale entries expire on their own TTL
            self._logger.warning("cache.invalidate_failed", pattern=pattern, detail=str(exc))
            return
        self._logger.info("cache.invalidated", pattern=pattern, removed=removed)
